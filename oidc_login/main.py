"""
FastAPI application for OpenID Connect logins.

This module wires dependencies and configures the application.
Business logic is in oidc_login/core, infrastructure in oidc_login/infrastructure.
"""

import logging
import os
from contextlib import asynccontextmanager
from datetime import UTC, datetime

# Configure logging FIRST, before other local imports
from oidc_login.logging_config import setup_global_logging

setup_global_logging()

# Now import other modules (they will use the configured logging)
from fastapi import FastAPI, Request, status  # noqa: E402
from fastapi.responses import JSONResponse  # noqa: E402
from starlette.middleware.sessions import SessionMiddleware  # noqa: E402

from oidc_login.core.exceptions import (  # noqa: E402
    AccessDeniedError,
    ProviderNotFoundError,
)
from oidc_login.openid_connect import router as openid_connect_router  # noqa: E402
from oidc_login.openid_connect.config import get_oidc_config  # noqa: E402
from oidc_login.openid_connect.dependencies import (  # noqa: E402
    Messages,
    RequiredAccount,
    SessionDep,
)

logger = logging.getLogger(__name__)


# ============================================================================
# Application Lifecycle
# ============================================================================


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan context manager.

    Handles startup and shutdown events using modern FastAPI pattern.
    """
    config = get_oidc_config()
    logger.info(
        "Application starting up...",
        extra={"providers": config.get_configured_providers()},
    )
    yield
    logger.info("Shutting down application...")


app = FastAPI(
    title="OpenID Connect Login",
    description="Relying party for OpenID Connect authorization-code logins",
    version="1.0.0",
    lifespan=lifespan,
)

# Session middleware carries the server-side session id
SESSION_SECRET_KEY = os.getenv("SESSION_SECRET_KEY")
if not SESSION_SECRET_KEY:
    raise ValueError("SESSION_SECRET_KEY is not set in the environment.")
app.add_middleware(
    SessionMiddleware,
    secret_key=SESSION_SECRET_KEY,
    https_only=os.getenv("BASE_URL", "").startswith("https"),
)


# ============================================================================
# Centralized Exception Handlers
# ============================================================================


@app.exception_handler(AccessDeniedError)
async def access_denied_handler(request: Request, exc: AccessDeniedError):
    """
    Handle a failed state token check on the provider callback.

    Returns 403 Forbidden; nothing else about the request is processed.
    """
    logger.warning(
        f"Access denied: {exc}",
        extra={"path": request.url.path},
    )
    return JSONResponse(
        status_code=status.HTTP_403_FORBIDDEN,
        content={"status": "error", "message": "Access denied"},
    )


@app.exception_handler(ProviderNotFoundError)
async def provider_not_found_handler(request: Request, exc: ProviderNotFoundError):
    """
    Handle callbacks visited outside of a login flow or for unknown providers.

    Returns 404 Not Found.
    """
    return JSONResponse(
        status_code=status.HTTP_404_NOT_FOUND,
        content={"status": "error", "message": "Not found"},
    )


# ============================================================================
# Health Check Endpoints
# ============================================================================


@app.get("/")
async def root():
    """Health check endpoint."""
    return {
        "status": "healthy",
        "service": "oidc-login",
        "timestamp": datetime.now(UTC).isoformat(),
    }


@app.get("/health")
async def health():
    """Health check endpoint for Cloud Run."""
    return {"status": "healthy"}


# ============================================================================
# Account Endpoints
# ============================================================================


@app.get("/user")
async def user(account: RequiredAccount, messages: Messages):
    """
    Default landing page after login.

    Requires a logged-in account. Returns pending notices and clears them.

    Args:
        account: Current logged-in account
        messages: Session notices

    Returns:
        Account summary and notices
    """
    logger.info(f"User page accessed by account: {account.uid}")

    return {
        "status": "success",
        "user": {
            "uid": account.uid,
            "name": account.name,
            "mail": account.mail,
            "properties": account.properties,
        },
        "messages": messages.drain(),
    }


@app.get("/messages")
async def pending_messages(messages: Messages):
    """Return and clear pending notices (works for anonymous sessions too)."""
    return {"status": "success", "messages": messages.drain()}


@app.post("/logout")
async def logout(request: Request, session: SessionDep):
    """Log out by dropping the session."""
    session.clear()
    request.session.clear()
    return {"status": "success", "message": "Logged out"}


# ============================================================================
# Include Routers
# ============================================================================

app.include_router(openid_connect_router.router)


# ============================================================================
# Main Entry Point
# ============================================================================

if __name__ == "__main__":
    import uvicorn

    port = int(os.getenv("PORT", 8080))
    uvicorn.run(app, host="0.0.0.0", port=port)
