"""Durable delayed tasks.

Work that must happen later ("remind me tomorrow") is stored as a
ScheduledTask row instead of an in-process timer, so it survives restarts.
The scheduled job drains due tasks with TaskRunner.run_due().
"""

from collections.abc import Awaitable, Callable
from datetime import datetime, timedelta, timezone
from typing import Any
from uuid import UUID, uuid4
import logging

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from ..core.config import get_settings
from ..core.security import generate_setup_token
from ..integrations.slack.messages import SlackBlocks, SlackMessenger
from ..models import Organization, ScheduledTask, TaskStatus, User
from .user_sync import build_slack_client

logger = logging.getLogger(__name__)
settings = get_settings()

SETUP_REMINDER = "setup_reminder"

TaskHandler = Callable[[AsyncSession, ScheduledTask], Awaitable[None]]


async def enqueue_task(
    session: AsyncSession,
    organization_id: UUID,
    kind: str,
    payload: dict[str, Any],
    *,
    run_at: datetime | None = None,
    delay: timedelta | None = None,
) -> ScheduledTask:
    """Persist a task; the caller commits."""
    if run_at is None:
        run_at = datetime.now(timezone.utc) + (delay or timedelta())

    task = ScheduledTask(
        id=uuid4(),
        organization_id=organization_id,
        kind=kind,
        payload=payload,
        run_at=run_at,
        status=TaskStatus.PENDING,
    )
    session.add(task)
    await session.flush()
    logger.info(f"Scheduled {kind} task {task.id} for {run_at.isoformat()}")
    return task


class TaskRunner:
    """Dispatches due tasks to handlers registered by kind."""

    def __init__(
        self,
        max_attempts: int = 3,
        retry_delay: timedelta = timedelta(minutes=15),
        lease: timedelta = timedelta(minutes=30),
    ):
        self.handlers: dict[str, TaskHandler] = {}
        self.max_attempts = max_attempts
        self.retry_delay = retry_delay
        self.lease = lease

    def register(self, kind: str) -> Callable[[TaskHandler], TaskHandler]:
        def decorator(handler: TaskHandler) -> TaskHandler:
            self.handlers[kind] = handler
            return handler

        return decorator

    async def claim_due(
        self, session: AsyncSession, now: datetime, limit: int = 50
    ) -> list[ScheduledTask]:
        """Lease due tasks so a concurrent runner skips them.

        A claim pushes run_at forward by the lease. A RUNNING row whose lease
        has lapsed belonged to a runner that died mid-task and is claimed
        again, unless it already used up its attempts.
        """
        result = await session.execute(
            select(ScheduledTask)
            .where(
                ScheduledTask.status.in_([TaskStatus.PENDING, TaskStatus.RUNNING]),
                ScheduledTask.run_at <= now,
            )
            .order_by(ScheduledTask.run_at)
            .limit(limit)
            .with_for_update(skip_locked=True)
        )
        claimed = []
        for task in result.scalars().all():
            if task.status == TaskStatus.RUNNING:
                logger.warning(f"Task {task.id} ({task.kind}) lease expired on attempt {task.attempts}")
                if task.attempts >= self.max_attempts:
                    task.status = TaskStatus.FAILED
                    task.last_error = f"Lease expired after {task.attempts} attempts"
                    continue
            task.status = TaskStatus.RUNNING
            task.attempts += 1
            task.run_at = now + self.lease
            claimed.append(task)
        await session.commit()
        return claimed

    async def run_due(
        self, session: AsyncSession, now: datetime | None = None, limit: int = 50
    ) -> dict[str, int]:
        now = now or datetime.now(timezone.utc)
        results = {"completed": 0, "retried": 0, "failed": 0}

        for task in await self.claim_due(session, now, limit):
            # Plain copies: a handler failure rolls back and expires the ORM row
            task_id, kind, attempts = task.id, task.kind, task.attempts
            handler = self.handlers.get(kind)
            try:
                if handler is None:
                    raise LookupError(f"No handler registered for task kind '{kind}'")
                await handler(session, task)
            except Exception as e:
                await session.rollback()
                retry = handler is not None and attempts < self.max_attempts
                await self._finish(
                    session,
                    task_id,
                    TaskStatus.PENDING if retry else TaskStatus.FAILED,
                    error=f"{type(e).__name__}: {e}"[:1000],
                    run_at=now + self.retry_delay if retry else None,
                )
                results["retried" if retry else "failed"] += 1
                logger.warning(f"Task {task_id} ({kind}) failed on attempt {attempts}: {e}")
                continue

            await self._finish(session, task_id, TaskStatus.COMPLETED, completed_at=now)
            results["completed"] += 1

        if any(results.values()):
            logger.info(f"Delayed tasks processed: {results}")
        return results

    @staticmethod
    async def _finish(
        session: AsyncSession,
        task_id: UUID,
        status: TaskStatus,
        *,
        error: str | None = None,
        run_at: datetime | None = None,
        completed_at: datetime | None = None,
    ) -> None:
        task = await session.get(ScheduledTask, task_id, populate_existing=True)
        if task is None:
            return
        task.status = status
        if error is not None:
            task.last_error = error
        if run_at is not None:
            task.run_at = run_at
        if completed_at is not None:
            task.completed_at = completed_at
        await session.commit()


# =============================================================================
# HANDLERS
# =============================================================================


task_runner = TaskRunner()


@task_runner.register(SETUP_REMINDER)
async def send_setup_reminder(session: AsyncSession, task: ScheduledTask) -> None:
    """Re-send the account setup link with a fresh one-time token."""
    user = await session.get(User, UUID(task.payload["user_id"]))
    if user is None or not user.is_active or user.password_hash:
        logger.info(f"Setup reminder {task.id} no longer needed")
        return
    if not user.slack_user_id:
        raise ValueError(f"User {user.id} has no Slack id to remind")

    organization = await session.get(Organization, user.organization_id)
    if organization is None:
        raise LookupError(f"Organization {user.organization_id} not found")

    client = build_slack_client(organization)
    if client is None:
        raise RuntimeError(f"No Slack bot token for org {organization.slug}")

    # The previous token's hash is replaced, so only the newest link works
    setup = generate_setup_token()
    user.setup_token_hash = setup.token_hash
    user.setup_token_expires_at = setup.expires_at
    await session.flush()

    setup_url = f"{settings.app_base_url.rstrip('/')}/setup?token={setup.token}"
    async with client:
        await SlackMessenger(client).send_direct_message(
            user.slack_user_id,
            text=f"Reminder: finish setting up your Team Pulse account: {setup_url}",
            blocks=SlackBlocks.setup_reminder(user.name, setup_url),
        )
