from pydantic import BaseModel, EmailStr, field_validator
from typing import Optional, List, Dict
from datetime import datetime, date
from enum import Enum
from models import UserRole, RecordStatus, CatalogItemType, PricingType, JobOrderStatus


class Pagination(BaseModel):
    total: int
    limit: int
    offset: int


# Reference summaries embedded in other responses
class BranchSummary(BaseModel):
    id: int
    name: str
    code: str

    class Config:
        from_attributes = True


class CustomerSummary(BaseModel):
    id: int
    full_name: str
    contact_number: Optional[str] = None
    email: Optional[str] = None

    class Config:
        from_attributes = True


class VehicleSummary(BaseModel):
    id: int
    plate_number: str
    model: Optional[str] = None
    vehicle_type: Optional[str] = None

    class Config:
        from_attributes = True


class CatalogItemSummary(BaseModel):
    id: int
    name: str
    type: CatalogItemType
    base_price: float
    is_global: bool
    branch_id: Optional[int] = None
    status: RecordStatus

    class Config:
        from_attributes = True


# Job Order Schemas
class JobOrderItemCreate(BaseModel):
    catalog_item_id: int
    quantity: Optional[int] = None  # Defaults to 1


class JobOrderCreate(BaseModel):
    """Schema for creating a job order; prices are resolved server-side"""
    branch_id: int
    customer_id: int
    vehicle_id: int
    notes: Optional[str] = None
    items: List[JobOrderItemCreate] = []


class JobOrderUpdate(BaseModel):
    """Only notes are mutable after creation"""
    notes: Optional[str] = None


class ApprovalDecision(str, Enum):
    APPROVED = "approved"
    REJECTED = "rejected"


class ApprovalRecord(BaseModel):
    """Customer decision recorded by the front desk"""
    decision: ApprovalDecision
    notes: Optional[str] = None


class CancelRequest(BaseModel):
    reason: Optional[str] = None


class JobOrderItemResponse(BaseModel):
    id: int
    catalog_item_id: Optional[int] = None
    catalog_item_name: str
    catalog_item_type: CatalogItemType
    quantity: int
    base_price: float
    labor_price: Optional[float] = None
    packaging_price: Optional[float] = None
    line_total: float

    class Config:
        from_attributes = True


class ThirdPartyRepairResponse(BaseModel):
    id: int
    job_order_id: int
    provider_name: str
    description: str
    cost: float
    repair_date: date
    notes: Optional[str] = None
    created_by: Optional[int] = None
    created_at: datetime
    updated_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class JobOrderResponse(BaseModel):
    id: int
    order_number: str
    branch_id: int
    customer_id: int
    vehicle_id: int
    status: JobOrderStatus
    total_amount: float
    notes: Optional[str] = None
    approved_at: Optional[datetime] = None
    approved_by: Optional[int] = None
    approval_notes: Optional[str] = None
    created_by: Optional[int] = None
    created_at: datetime
    updated_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class JobOrderDetailResponse(JobOrderResponse):
    """Order with its references, items, repairs and payable totals"""
    branch: Optional[BranchSummary] = None
    customer: Optional[CustomerSummary] = None
    vehicle: Optional[VehicleSummary] = None
    items: List[JobOrderItemResponse] = []
    repairs: List[ThirdPartyRepairResponse] = []
    third_party_total: float = 0.0
    grand_total: float = 0.0


class JobOrderCreatedResponse(JobOrderDetailResponse):
    warnings: List[str] = []


class JobOrderListResponse(BaseModel):
    data: List[JobOrderResponse]
    pagination: Pagination


class JobOrderHistoryResponse(BaseModel):
    id: int
    job_order_id: int
    action: str
    from_status: Optional[str] = None
    to_status: Optional[str] = None
    performed_by: Optional[int] = None
    details: Optional[dict] = None
    created_at: datetime

    class Config:
        from_attributes = True


# Pricing Schemas
class PricingMatrixCreate(BaseModel):
    catalog_item_id: int
    branch_id: int
    pricing_type: PricingType
    price: float
    status: RecordStatus = RecordStatus.ACTIVE
    description: Optional[str] = None


class PricingMatrixUpdate(BaseModel):
    """Partial update; catalog item and branch are fixed once created"""
    pricing_type: Optional[PricingType] = None
    price: Optional[float] = None
    status: Optional[RecordStatus] = None
    description: Optional[str] = None


class PricingMatrixResponse(BaseModel):
    id: int
    catalog_item_id: int
    branch_id: int
    pricing_type: PricingType
    price: float
    status: RecordStatus
    description: Optional[str] = None
    created_by: Optional[int] = None
    created_at: datetime
    updated_at: Optional[datetime] = None
    catalog_item: Optional[CatalogItemSummary] = None
    branch: Optional[BranchSummary] = None

    class Config:
        from_attributes = True


class PricingMatrixListResponse(BaseModel):
    data: List[PricingMatrixResponse]
    pagination: Pagination


class PricingRuleSummary(BaseModel):
    id: int
    pricing_type: PricingType
    price: float
    description: Optional[str] = None

    class Config:
        from_attributes = True


class ResolvedPrices(BaseModel):
    base_price: float
    labor: Optional[float] = None
    packaging: Optional[float] = None


class ResolvedPricingResponse(BaseModel):
    catalog_item: CatalogItemSummary
    pricing_rules: List[PricingRuleSummary]
    resolved_prices: ResolvedPrices
    warnings: List[str] = []
    has_warnings: bool = False


# Third-Party Repair Schemas
class ThirdPartyRepairCreate(BaseModel):
    # Required fields are checked by the service so the error names the field
    job_order_id: int
    provider_name: Optional[str] = None
    description: Optional[str] = None
    cost: Optional[float] = None
    repair_date: Optional[date] = None
    notes: Optional[str] = None


class ThirdPartyRepairUpdate(BaseModel):
    provider_name: Optional[str] = None
    description: Optional[str] = None
    cost: Optional[float] = None
    repair_date: Optional[date] = None
    notes: Optional[str] = None


class ThirdPartyRepairListResponse(BaseModel):
    data: List[ThirdPartyRepairResponse]
    pagination: Pagination


# RBAC Schemas
class RoleInfo(BaseModel):
    code: UserRole
    name: str
    description: str
    level: int


class BranchAssignmentResponse(BaseModel):
    branch_id: int
    is_primary: bool
    branch: Optional[BranchSummary] = None

    class Config:
        from_attributes = True


class UserProfileResponse(BaseModel):
    id: int
    email: str
    full_name: str
    phone: Optional[str] = None
    is_active: bool
    roles: List[UserRole] = []
    branch_assignments: List[BranchAssignmentResponse] = []
    created_at: datetime

    @field_validator("roles", mode="before")
    @classmethod
    def flatten_roles(cls, value):
        # ORM rows carry UserRoleAssignment objects
        return [getattr(item, "role", item) for item in value or []]

    class Config:
        from_attributes = True


class UserProfileCreate(BaseModel):
    """Register a profile for a user that already exists at the identity provider"""
    email: EmailStr
    full_name: str
    phone: Optional[str] = None
    roles: List[UserRole]
    branch_ids: List[int] = []
    primary_branch_id: Optional[int] = None


class RolesUpdate(BaseModel):
    roles: List[UserRole]


class BranchesUpdate(BaseModel):
    branch_ids: List[int]
    primary_branch_id: Optional[int] = None


class StatusUpdate(BaseModel):
    is_active: bool


# Audit Schemas
class AuditLogResponse(BaseModel):
    id: int
    action: str
    entity_type: str
    entity_id: Optional[str] = None
    performed_by_user_id: Optional[int] = None
    performed_by_branch_id: Optional[int] = None
    old_values: Optional[dict] = None
    new_values: Optional[dict] = None
    status: str
    created_at: datetime

    class Config:
        from_attributes = True


class AuditLogListResponse(BaseModel):
    data: List[AuditLogResponse]
    pagination: Pagination


class AuditStatsResponse(BaseModel):
    days: int
    since: datetime
    total: int
    failed: int
    by_action: Dict[str, int]
    by_entity_type: Dict[str, int]
