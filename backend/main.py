from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.exception_handlers import http_exception_handler
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException
import logging

from config import settings
from database import init_db
from exceptions import ServiceError
from job_orders import router as job_orders_router
from pricing_api import router as pricing_router
from third_party_repairs import router as third_party_repairs_router
from rbac import router as rbac_router
from audit_api import router as audit_router

logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
)

app = FastAPI(title=settings.APP_NAME, version="1.0.0")

logger = logging.getLogger(__name__)

CORS_ORIGINS = settings.cors_origins_list

app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
    expose_headers=["*"],
    max_age=3600,  # Cache preflight responses for 1 hour
)


def _with_cors(request: Request, response):
    origin = request.headers.get('origin')
    if origin and origin in CORS_ORIGINS:
        response.headers['Access-Control-Allow-Origin'] = origin
        response.headers['Access-Control-Allow-Credentials'] = 'true'
    return response


# ==================== CUSTOM EXCEPTION HANDLERS ====================

@app.exception_handler(ServiceError)
async def service_error_handler(request: Request, exc: ServiceError):
    """Validation, authorization, not-found and conflict errors from the services"""
    if exc.status_code >= 500:
        logger.error(f"Service error: {exc.detail}")
    return _with_cors(request, JSONResponse(status_code=exc.status_code, content=exc.to_dict()))


@app.exception_handler(StarletteHTTPException)
async def custom_http_exception_handler(request: Request, exc: StarletteHTTPException):
    """
    Ensures CORS headers are included in error responses.

    HTTPException raised in dependencies (authentication, permission checks)
    would otherwise reach the browser without CORS headers and be blocked.
    """
    response = await http_exception_handler(request, exc)
    return _with_cors(request, response)


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception):
    """Anything not mapped above becomes an opaque 500, with CORS headers kept."""
    logger.error(f"Unexpected error: {exc}", exc_info=True)

    response = JSONResponse(
        status_code=500,
        content={"detail": "Internal server error"}
    )
    return _with_cors(request, response)

# ==================== END EXCEPTION HANDLERS ====================

app.include_router(job_orders_router)
app.include_router(pricing_router)
app.include_router(third_party_repairs_router)
app.include_router(rbac_router)
app.include_router(audit_router)


@app.on_event("startup")
async def startup_event():
    logger.info(f"Starting {settings.APP_NAME} (branch-scoped job order service)")
    try:
        await init_db()
    except Exception as e:
        logger.critical(f"Startup aborted, database unavailable: {e}")
        raise


@app.get("/")
async def root():
    return {"service": settings.APP_NAME, "status": "running"}


@app.get("/health")
async def health_check():
    """Health check endpoint for container platforms"""
    return {"status": "healthy", "service": "api"}


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
