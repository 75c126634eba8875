"""
Storefront Backend Application.

FastAPI application exposing the payment and inventory
consistency engine of the online store.
"""

from contextlib import asynccontextmanager
from typing import AsyncGenerator

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import ORJSONResponse
from loguru import logger

from app.api.v1 import router as api_v1_router
from app.core.config import settings
from app.core.database import Database
from app.core.errors import ErrorKind, ShopError
from app.core.logging import configure_logging
from app.modules.shop.gateway import StripeGateway

ERROR_STATUS = {
    ErrorKind.NOT_FOUND: 404,
    ErrorKind.CONFLICT: 409,
    ErrorKind.INSUFFICIENT_STOCK: 409,
    ErrorKind.GATEWAY_UNAVAILABLE: 503,
    ErrorKind.INVALID_AMOUNT: 400,
}


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan manager."""
    configure_logging()
    logger.info("Starting Storefront Backend...")

    # Persistence handle lives for the whole process
    db = Database(settings.database_url)
    await db.create_all()
    app.state.db = db
    logger.info("Database initialized")

    app.state.gateway = StripeGateway()
    if not settings.stripe_secret_key:
        logger.warning("Stripe secret key not configured - payment intents will fail")

    logger.info("Storefront Backend started successfully")

    yield

    # Shutdown
    logger.info("Shutting down Storefront Backend...")

    await db.close()

    logger.info("Shutdown complete")


# Create FastAPI application
app = FastAPI(
    title=settings.app_name,
    version=settings.app_version,
    description="""
    Storefront Backend

    ## Features

    - **Payments**: Stripe payment intents with idempotent confirmation
    - **Inventory**: Stock is taken exactly once per completed payment
    - **Webhooks**: Stripe callbacks reconciled through the same path

    ## Documentation

    - [API Docs](/docs) - Interactive Swagger UI
    - [ReDoc](/redoc) - Alternative documentation
    """,
    openapi_url=f"{settings.api_v1_prefix}/openapi.json",
    docs_url="/docs",
    redoc_url="/redoc",
    default_response_class=ORJSONResponse,
    lifespan=lifespan,
)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include API router
app.include_router(api_v1_router, prefix=settings.api_v1_prefix)


@app.exception_handler(ShopError)
async def shop_error_handler(request: Request, exc: ShopError) -> ORJSONResponse:
    """Map domain errors to a stable JSON error body."""
    status_code = ERROR_STATUS.get(exc.kind, 400)
    if status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc.kind.value} {exc.message}")
    else:
        logger.info(f"{request.method} {request.url.path} rejected: {exc.kind.value} {exc.message}")

    return ORJSONResponse(
        status_code=status_code,
        content={
            "success": False,
            "error": exc.kind.value,
            "message": exc.message,
        },
    )


@app.get("/health", tags=["System"])
async def health_check() -> dict:
    """Health check endpoint for monitoring."""
    return {
        "status": "healthy",
        "version": settings.app_version,
    }


@app.get("/", tags=["System"])
async def root() -> dict:
    """Root endpoint with API information."""
    return {
        "name": settings.app_name,
        "version": settings.app_version,
        "docs": "/docs",
        "api": settings.api_v1_prefix,
    }
