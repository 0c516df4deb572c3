"""
Service-layer errors.

Raised by the pricing, job order and RBAC services and mapped to HTTP
responses by the exception handler registered in main.py.
"""
from typing import Optional


class ServiceError(Exception):
    status_code = 500

    def __init__(self, detail: str):
        super().__init__(detail)
        self.detail = detail

    def to_dict(self) -> dict:
        return {"detail": self.detail}


class ValidationFailed(ServiceError):
    """Missing or invalid input, rejected before any write"""
    status_code = 400

    def __init__(self, field: Optional[str], detail: str):
        super().__init__(detail)
        self.field = field

    def to_dict(self) -> dict:
        return {"detail": self.detail, "field": self.field}


class AccessDenied(ServiceError):
    status_code = 403


class NotFound(ServiceError):
    """Missing entity, or one outside the caller's branch scope"""
    status_code = 404


class Conflict(ServiceError):
    """State conflict such as an illegal job order transition"""
    status_code = 409

    def __init__(self, detail: str, current_status: Optional[str] = None):
        super().__init__(detail)
        self.current_status = current_status

    def to_dict(self) -> dict:
        return {"detail": self.detail, "current_status": self.current_status}
