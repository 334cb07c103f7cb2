"""SQLAlchemy ORM models for Pulse Identity."""

from .base import Base, TimestampMixin, UUIDMixin, ensure_aware, utcnow
from .models import (
    # Enums
    BillingEventType,
    SyncTrigger,
    TaskStatus,
    UserRole,
    # Models
    BillingEvent,
    Organization,
    ScheduledTask,
    SyncRun,
    User,
    WebSession,
)

__all__ = [
    # Base
    "Base",
    "UUIDMixin",
    "TimestampMixin",
    "utcnow",
    "ensure_aware",
    # Enums
    "UserRole",
    "BillingEventType",
    "SyncTrigger",
    "TaskStatus",
    # Models
    "Organization",
    "User",
    "WebSession",
    "BillingEvent",
    "SyncRun",
    "ScheduledTask",
]
