"""SQLAlchemy ORM models for the identity and directory-sync engine.

Tables:
- organizations: tenant plus its Slack workspace and Stripe linkage
- users: the internal directory (never hard-deleted by sync)
- web_sessions: server-side browser sessions (login state lives here)
- billing_events: one row per seat-count notification
- sync_runs: history of reconciliation runs
- scheduled_tasks: durable delayed-task queue
"""

from datetime import datetime
from enum import Enum as PyEnum
from typing import Any
from uuid import UUID

from sqlalchemy import (
    Boolean,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from .base import Base, TimestampMixin, UUIDMixin, utcnow


# =============================================================================
# ENUMS
# =============================================================================


class UserRole(str, PyEnum):
    """Directory roles."""

    OWNER = "owner"
    ADMIN = "admin"
    MEMBER = "member"


class BillingEventType(str, PyEnum):
    """Seat-count changes reported to billing."""

    USER_ADDED = "user_added"
    USER_REMOVED = "user_removed"


class SyncTrigger(str, PyEnum):
    """What started a reconciliation run."""

    SCHEDULED = "scheduled"
    MEMBERSHIP_EVENT = "membership_event"
    MANUAL = "manual"


class TaskStatus(str, PyEnum):
    """Lifecycle of a scheduled task."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


def _enum_column(enum_cls: type[PyEnum], name: str) -> Enum:
    return Enum(
        enum_cls,
        name=name,
        values_callable=lambda x: [e.value for e in x],
        native_enum=False,
        length=32,
    )


# =============================================================================
# TENANCY
# =============================================================================


class Organization(Base, UUIDMixin, TimestampMixin):
    """A tenant, linked to at most one Slack workspace."""

    __tablename__ = "organizations"

    name: Mapped[str] = mapped_column(String(255), nullable=False)
    slug: Mapped[str] = mapped_column(String(100), unique=True, nullable=False)

    # Slack workspace
    slack_team_id: Mapped[str | None] = mapped_column(String(50), index=True)
    slack_team_name: Mapped[str | None] = mapped_column(String(255))
    slack_bot_token: Mapped[str | None] = mapped_column(Text)  # Fernet-encrypted
    slack_sync_channel_id: Mapped[str | None] = mapped_column(String(50))
    slack_sync_channel_name: Mapped[str | None] = mapped_column(String(255))
    last_synced_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    # Stripe
    stripe_customer_id: Mapped[str | None] = mapped_column(String(255))
    stripe_subscription_id: Mapped[str | None] = mapped_column(String(255))

    users: Mapped[list["User"]] = relationship(back_populates="organization", lazy="noload")

    def __repr__(self) -> str:
        return f"<Organization {self.slug}>"


# =============================================================================
# DIRECTORY
# =============================================================================


class User(Base, UUIDMixin, TimestampMixin):
    """Internal directory record.

    Synced users start with no password and a one-time setup token; only the
    token's hash is stored.
    """

    __tablename__ = "users"

    organization_id: Mapped[UUID] = mapped_column(
        ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False
    )
    slack_user_id: Mapped[str | None] = mapped_column(String(50))
    email: Mapped[str] = mapped_column(String(255), nullable=False)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    role: Mapped[UserRole] = mapped_column(
        _enum_column(UserRole, "user_role"), default=UserRole.MEMBER, nullable=False
    )
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    password_hash: Mapped[str | None] = mapped_column(String(255))
    setup_token_hash: Mapped[str | None] = mapped_column(String(64), index=True)
    setup_token_expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    organization: Mapped[Organization] = relationship(back_populates="users", lazy="noload")

    __table_args__ = (
        UniqueConstraint("organization_id", "slack_user_id", name="uq_users_org_slack_user"),
        UniqueConstraint("organization_id", "email", name="uq_users_org_email"),
        Index("idx_users_org_active", "organization_id", "is_active"),
    )

    @property
    def is_admin(self) -> bool:
        return self.role in (UserRole.OWNER, UserRole.ADMIN)

    def __repr__(self) -> str:
        return f"<User {self.email}>"


# =============================================================================
# SESSIONS
# =============================================================================


class WebSession(Base, UUIDMixin):
    """Server-side session; the browser only holds an opaque cookie value."""

    __tablename__ = "web_sessions"

    token_hash: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    data: Mapped[dict[str, Any]] = mapped_column(default=dict, nullable=False)
    created_at: Mapped[datetime] = mapped_column(default=utcnow, nullable=False)
    expires_at: Mapped[datetime] = mapped_column(nullable=False, index=True)


# =============================================================================
# BILLING
# =============================================================================


class BillingEvent(Base, UUIDMixin):
    """Audit row for every seat-count notification."""

    __tablename__ = "billing_events"

    organization_id: Mapped[UUID] = mapped_column(
        ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False, index=True
    )
    event_type: Mapped[BillingEventType] = mapped_column(
        _enum_column(BillingEventType, "billing_event_type"), nullable=False
    )
    user_count: Mapped[int] = mapped_column(Integer, nullable=False)
    active_seats: Mapped[int] = mapped_column(Integer, nullable=False)
    reason: Mapped[str | None] = mapped_column(String(255))
    stripe_synced: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    created_at: Mapped[datetime] = mapped_column(default=utcnow, nullable=False)


# =============================================================================
# SYNC HISTORY
# =============================================================================


class SyncRun(Base, UUIDMixin):
    """One reconciliation run and its outcome."""

    __tablename__ = "sync_runs"

    organization_id: Mapped[UUID] = mapped_column(
        ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False
    )
    trigger: Mapped[SyncTrigger] = mapped_column(
        _enum_column(SyncTrigger, "sync_trigger"), nullable=False
    )
    created: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    reactivated: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    deactivated: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    onboarded: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    onboarding_errors: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    error_code: Mapped[str | None] = mapped_column(String(50))
    error_detail: Mapped[dict[str, Any] | None] = mapped_column()
    started_at: Mapped[datetime] = mapped_column(default=utcnow, nullable=False)
    finished_at: Mapped[datetime | None] = mapped_column()

    __table_args__ = (
        Index("idx_sync_runs_org_started", "organization_id", "started_at"),
    )


# =============================================================================
# DELAYED TASKS
# =============================================================================


class ScheduledTask(Base, UUIDMixin):
    """A unit of deferred work that survives process restarts."""

    __tablename__ = "scheduled_tasks"

    organization_id: Mapped[UUID] = mapped_column(
        ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False
    )
    kind: Mapped[str] = mapped_column(String(50), nullable=False)
    payload: Mapped[dict[str, Any]] = mapped_column(default=dict, nullable=False)
    run_at: Mapped[datetime] = mapped_column(nullable=False)
    status: Mapped[TaskStatus] = mapped_column(
        _enum_column(TaskStatus, "task_status"), default=TaskStatus.PENDING, nullable=False
    )
    attempts: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    last_error: Mapped[str | None] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(default=utcnow, nullable=False)
    completed_at: Mapped[datetime | None] = mapped_column()

    __table_args__ = (
        Index("idx_scheduled_tasks_due", "status", "run_at"),
    )
