"""Pulse Identity: Main FastAPI Application.

Sign in with Slack and a team directory kept in sync with a Slack channel.
"""

from contextlib import asynccontextmanager
import logging

from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .api import api_router
from .core import close_db, get_settings, init_db
from .integrations.slack.errors import AuthConfigMissing
from .integrations.slack.oidc import OIDCClient
from .schemas import ErrorResponse

logger = logging.getLogger(__name__)
settings = get_settings()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan: startup and shutdown."""
    # Startup - skip init_db in production (migrations own the schema)
    if settings.environment != "production":
        try:
            await init_db()
        except Exception as e:
            logger.warning(f"Could not initialize database: {e}")

    try:
        app.state.oidc_client = OIDCClient.from_settings(settings)
    except AuthConfigMissing as e:
        # Logged once here; the login routes answer 503 from now on
        logger.warning(f"Sign in with Slack disabled: {e}")
        app.state.oidc_client = None

    yield

    # Shutdown
    if app.state.oidc_client is not None:
        await app.state.oidc_client.close()
    await close_db()


app = FastAPI(
    title=settings.app_name,
    version=settings.app_version,
    description="""
    ## Pulse Identity API

    Identity and team directory for Team Pulse.

    ### Key Features

    - **Sign in with Slack**: OpenID Connect login with single-use state and verified identity tokens.
    - **Directory Sync**: The team directory follows the members of a Slack channel.
    - **Slack Interactions**: `/pulse` commands and message buttons.

    ### Authentication

    Browser endpoints use the `pulse_session` cookie set by the Slack login.
    Slack webhooks are verified with the app's signing secret.
    """,
    openapi_url=f"{settings.api_prefix}/openapi.json",
    docs_url=f"{settings.api_prefix}/docs",
    redoc_url=f"{settings.api_prefix}/redoc",
    lifespan=lifespan,
)

# CORS middleware with explicit origins (credentials require explicit origins, not "*")
cors_origins = [origin for origin in settings.allowed_origins if origin]
if settings.frontend_url not in cors_origins:
    cors_origins.append(settings.frontend_url)

app.add_middleware(
    CORSMiddleware,
    allow_origins=cors_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["*"],
    max_age=86400,
)


# Global exception handler
@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """Handle unexpected exceptions."""
    logger.exception(f"Unhandled exception on {request.method} {request.url.path}")

    message = "An unexpected error occurred"
    if settings.debug:
        message = f"{message}: {str(exc)[:200]}"

    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content=ErrorResponse(
            error="internal_error",
            message=message,
            details=[],
        ).model_dump(),
    )


# Health check endpoint
@app.get("/health", tags=["health"])
async def health_check():
    """Health check endpoint."""
    return {
        "status": "healthy",
        "version": settings.app_version,
        "slack_login": settings.slack_oidc_enabled,
    }


# Include API routes
app.include_router(api_router, prefix=settings.api_prefix)


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "pulse_identity.main:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.debug,
    )
