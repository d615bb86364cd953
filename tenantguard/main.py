"""
FastAPI Application - TenantGuard Identity API
Refresh token rotation and admin impersonation for the tenant platform
"""

import uuid
from collections.abc import AsyncGenerator, Awaitable, Callable
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware

from tenantguard.api.errors import store_unavailable_handler
from tenantguard.api.v1 import router as api_v1_router
from tenantguard.config import settings
from tenantguard.core.container import ServiceContainer, build_container
from tenantguard.core.logging import clear_request_context, configure_logging, get_logger, set_request_context
from tenantguard.services.credential_store import StoreUnavailableError

logger = get_logger(__name__)


def create_app(container: ServiceContainer | None = None) -> FastAPI:
    """
    Build the application.

    Args:
        container: Pre-built services (tests). When omitted, the container is
            built on startup and closed on shutdown.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        """Lifespan context manager for startup and shutdown events"""
        configure_logging()
        owned = container is None
        services = container if container is not None else build_container()
        app.state.container = services
        if owned:
            await services.start()
        logger.info(
            "api_starting",
            environment=settings.ENVIRONMENT,
            database=settings.DATABASE_URL.split("@")[1] if "@" in settings.DATABASE_URL else "configured",
        )
        yield
        if owned:
            await services.close()
        logger.info("api_shutdown")

    app = FastAPI(
        title=settings.PROJECT_NAME,
        description="Identity and delegated access: token rotation and admin impersonation",
        version=settings.VERSION,
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan,
    )
    if container is not None:
        # Available without running lifespan (ASGI test transports skip it)
        app.state.container = container

    # Configure CORS
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.add_exception_handler(StoreUnavailableError, store_unavailable_handler)

    @app.middleware("http")
    async def request_context(
        request: Request, call_next: Callable[[Request], Awaitable[Response]]
    ) -> Response:
        """Tag every log line and audit entry of a request with one request ID."""
        request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        set_request_context(request_id)
        try:
            response = await call_next(request)
        finally:
            clear_request_context()
        response.headers["X-Request-ID"] = request_id
        return response

    @app.get("/health")
    async def health() -> dict[str, str]:
        """Health check endpoint"""
        return {"status": "healthy"}

    app.include_router(api_v1_router, prefix=settings.API_V1_STR)

    return app


app = create_app()
