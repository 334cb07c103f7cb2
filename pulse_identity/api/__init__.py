"""API routes for the Pulse identity service."""

from fastapi import APIRouter

from .auth import router as auth_router
from .directory import router as directory_router
from .slack import router as slack_router

# Main API router
api_router = APIRouter()

# Sign in with Slack
api_router.include_router(auth_router)

# Admin directory sync
api_router.include_router(directory_router)

# Slack webhooks (events, commands, interactions)
api_router.include_router(slack_router)

__all__ = ["api_router"]
