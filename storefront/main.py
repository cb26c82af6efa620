"""
Storefront Checkout Service
Card authorization and order recording with structured logging and health checks
"""

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException
from contextlib import asynccontextmanager
import os

from storefront.core import ServiceHealth, setup_logging, RequestLoggingMiddleware, get_logger
from storefront.core_settings import get_settings
from storefront.api.routes import router as orders_router
from storefront.infrastructure.checkout_lock import CheckoutLock
from storefront.infrastructure.db import engine, init_models
from storefront.infrastructure.gateway import AuthorizeNetClient

settings = get_settings()

SERVICE_NAME = settings.SERVICE_NAME
SERVICE_VERSION = settings.SERVICE_VERSION
SERVICE_DESCRIPTION = "Storefront checkout and order lifecycle service"

# Setup structured logging
setup_logging(
    service_name=SERVICE_NAME,
    level=settings.LOG_LEVEL
)

logger = get_logger(__name__)

@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifecycle management"""
    logger.info(f"Starting {SERVICE_NAME} version {SERVICE_VERSION}")

    try:
        init_models()
        logger.info("Database models initialized")
    except Exception as e:
        logger.error(f"Failed to initialize database models: {e}")
        raise

    if not hasattr(app.state, "payment_gateway"):
        app.state.payment_gateway = AuthorizeNetClient(
            api_login_id=settings.AUTHORIZE_NET_API_LOGIN_ID,
            transaction_key=settings.AUTHORIZE_NET_TRANSACTION_KEY,
            environment=settings.AUTHORIZE_NET_ENVIRONMENT,
            timeout=settings.PAYMENT_GATEWAY_TIMEOUT_SECONDS,
        )
    if not getattr(app.state.payment_gateway, "configured", True):
        logger.warning("Authorize.Net credentials are not set, checkout will fail until they are")
    if not hasattr(app.state, "checkout_lock"):
        app.state.checkout_lock = CheckoutLock.from_url(settings.REDIS_URL, settings.CHECKOUT_LOCK_TTL_SECONDS)

    logger.info(f"{SERVICE_NAME} started successfully")

    yield

    # Shutdown
    logger.info(f"Shutting down {SERVICE_NAME}")
    close = getattr(app.state.payment_gateway, "close", None)
    if close is not None:
        await close()

# Create FastAPI application
app = FastAPI(
    title=SERVICE_NAME,
    description=SERVICE_DESCRIPTION,
    version=SERVICE_VERSION,
    lifespan=lifespan,
    docs_url="/api/docs",
    redoc_url="/api/redoc",
    openapi_url="/api/openapi.json"
)

# Add CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Add request logging middleware
app.add_middleware(RequestLoggingMiddleware)

@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    first = exc.errors()[0] if exc.errors() else {}
    location = ".".join(str(part) for part in first.get("loc", ())[1:])
    message = first.get("msg", "Invalid request")
    return JSONResponse(
        status_code=400,
        content={"error": f"{location}: {message}" if location else message},
    )

@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException):
    return JSONResponse(status_code=exc.status_code, content={"error": exc.detail}, headers=exc.headers)

@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception):
    logger.error(f"Unhandled error on {request.method} {request.url.path}: {exc}", exc_info=True)
    return JSONResponse(status_code=500, content={"error": "Internal server error"})

def _gateway_configured() -> bool:
    gateway = getattr(app.state, "payment_gateway", None)
    return bool(gateway is not None and getattr(gateway, "configured", True))

# Initialize health checks
health_service = ServiceHealth(
    SERVICE_NAME,
    SERVICE_VERSION,
    engine=engine,
    redis_url=settings.REDIS_URL,
    gateway_configured=_gateway_configured,
)
app.include_router(health_service.create_health_router())

# Include business logic routes
app.include_router(orders_router)

@app.get("/")
async def root():
    """Root endpoint"""
    return {
        "service": SERVICE_NAME,
        "version": SERVICE_VERSION,
        "status": "running",
        "docs": "/api/docs"
    }

@app.get("/info")
async def info():
    """Service information endpoint"""
    return {
        "service": SERVICE_NAME,
        "version": SERVICE_VERSION,
        "description": SERVICE_DESCRIPTION,
        "environment": os.getenv("ENVIRONMENT", "development"),
        "paymentEnvironment": settings.AUTHORIZE_NET_ENVIRONMENT,
        "endpoints": {
            "orders": "/orders",
            "health": "/health",
            "ready": "/health/ready",
            "live": "/health/live",
            "metrics": "/metrics",
            "docs": "/api/docs"
        }
    }
