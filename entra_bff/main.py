"""
FastAPI Application Factory
===========================

Entry point of the Backend-for-Frontend that signs browser users in with
Microsoft Entra ID and keeps their tokens on the server.

Architecture:
    Browser SPA -> BFF (this service) -> Microsoft Entra ID

Routers:
    - /auth/*   : Silent SSO, login, callback, status and logout
    - /health   : Health check endpoint

Environment Variables:
    - TENANT_ID, CLIENT_ID, CLIENT_SECRET: Entra ID app registration
    - BASE_URL: Externally visible URL (redirect URI, Secure cookies)
    - SESSION_SECRET: Session cookie signing key
    - REDIS_URL: Optional Redis for sessions shared between instances
    - LOG_LEVEL: Logging level (default: INFO)

Running the Service:
    Development:
        uvicorn entra_bff.main:app --reload --host 0.0.0.0 --port 8080

    Production:
        uvicorn entra_bff.main:app --host 0.0.0.0 --port 8080 --proxy-headers
"""

import logging
import sys
from contextlib import asynccontextmanager
from typing import Optional

import uvicorn
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, RedirectResponse

from entra_bff import __version__
from entra_bff.auth.exceptions import AuthError, ProviderUnavailable, SilentSsoDeclined
from entra_bff.auth.flow import AuthFlow
from entra_bff.auth.provider import OIDCProviderClient
from entra_bff.auth.routes import SSO_FAILED_REDIRECT, auth_router
from entra_bff.auth.session import SessionCookieMiddleware
from entra_bff.config import Settings, get_settings, validate_configuration
from entra_bff.models import HealthResponse
from entra_bff.store import SessionStore, select_session_store

SERVICE_NAME = "entra-bff"


LOG_FORMAT = (
    '{"timestamp": "%(asctime)s", "service": "' + SERVICE_NAME + '", "level": "%(levelname)s", '
    '"logger": "%(name)s", "message": "%(message)s", "function": "%(funcName)s"}'
)

# HTTP client loggers only report warnings and errors
QUIET_LOGGERS = ("httpx", "httpcore")


def configure_logging(settings: Settings) -> None:
    """Send one JSON object per line to stdout at settings.LOG_LEVEL."""
    logging.basicConfig(
        level=settings.LOG_LEVEL,
        format=LOG_FORMAT,
        handlers=[logging.StreamHandler(sys.stdout)],
    )
    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def report_configuration(settings: Settings, logger: logging.Logger) -> None:
    report = validate_configuration(settings)
    for warning in report["warnings"]:
        logger.warning(f"Configuration warning: {warning}")
    for error in report["errors"]:
        logger.error(f"Configuration error: {error}")


# Create FastAPI application
def create_app(
    settings: Optional[Settings] = None,
    session_store: Optional[SessionStore] = None,
    provider: Optional[OIDCProviderClient] = None,
) -> FastAPI:
    """
    Application factory function.

    Creates and configures the FastAPI application instance with:
        - Lifespan management (session store selection, discovery warm-up)
        - Session cookie and optional CORS middleware
        - Route handlers
        - Exception handlers

    Args:
        settings: Settings to use instead of get_settings()
        session_store: Pre-built store; skips store selection at startup
        provider: Pre-built provider client (tests inject a stubbed transport)

    Returns:
        FastAPI: Configured application instance
    """
    settings = settings or get_settings()
    provider = provider or OIDCProviderClient(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """
        Application lifespan manager.

        Startup tasks:
            - Report configuration warnings
            - Select the session store (Redis with in-memory fallback)
            - Warm up provider discovery (failure is retried lazily)

        Shutdown tasks:
            - Close the session store
        """
        configure_logging(settings)
        logger = logging.getLogger("entra_bff.main")

        report_configuration(settings, logger)

        if app.state.session_store is None:
            app.state.session_store = await select_session_store(settings)

        try:
            await provider.discover()
        except ProviderUnavailable:
            logger.warning("Provider discovery failed at startup; will retry on first login")

        logger.info(
            "BFF service started",
            extra={
                "base_url": settings.BASE_URL,
                "callback_url": settings.redirect_uri,
                "session_store": app.state.session_store.name,
            }
        )

        yield

        logger.info("Shutting down BFF service")
        await app.state.session_store.close()

    app = FastAPI(
        title="Entra ID BFF",
        description="Backend-for-Frontend handling OIDC sign-in with server-side tokens",
        version=__version__,
        lifespan=lifespan,
    )

    app.state.settings = settings
    app.state.session_store = session_store
    app.state.auth_flow = AuthFlow(settings, provider)

    app.add_middleware(SessionCookieMiddleware)

    if settings.allowed_origins_list:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=settings.allowed_origins_list,
            allow_credentials=True,
            allow_methods=["GET", "POST", "OPTIONS"],
            allow_headers=["Content-Type", "X-CSRF-Token"],
        )

    app.include_router(auth_router)

    # Health check endpoint
    @app.get("/health", tags=["System"], response_model=HealthResponse)
    async def health_check(request: Request) -> HealthResponse:
        store = request.app.state.session_store
        return HealthResponse(
            status="ok",
            service=SERVICE_NAME,
            version=__version__,
            session_store=store.name if store is not None else "uninitialized",
        )

    @app.exception_handler(SilentSsoDeclined)
    async def silent_sso_declined_handler(request: Request, exc: SilentSsoDeclined) -> RedirectResponse:
        return RedirectResponse(url=SSO_FAILED_REDIRECT, status_code=302)

    @app.exception_handler(AuthError)
    async def auth_error_handler(request: Request, exc: AuthError) -> JSONResponse:
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

    # Global exception handler
    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        """
        Global exception handler for unhandled errors.

        Logs the error and returns a standardized error response.
        """
        logger = logging.getLogger("entra_bff.main")
        logger.error(
            f"Unhandled exception: {str(exc)}",
            extra={
                "path": request.url.path,
                "method": request.method,
                "exception_type": type(exc).__name__
            },
            exc_info=True
        )

        return JSONResponse(
            status_code=500,
            content={
                "error": "internal_server_error",
                "message": "An unexpected error occurred",
                "detail": str(exc) if settings.LOG_LEVEL == "DEBUG" else None
            }
        )

    return app


# Create app instance for uvicorn
app = create_app()


if __name__ == "__main__":
    """
    Direct execution entry point.

    This allows running the service directly with: python -m entra_bff.main
    """
    settings = get_settings()

    uvicorn.run(
        "entra_bff.main:app",
        host=settings.HOST,
        port=settings.PORT,
        proxy_headers=True,
        log_level=settings.LOG_LEVEL.lower()
    )
