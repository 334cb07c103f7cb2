"""Directory services: reconciliation, side effects, sync, interactions, tasks."""

from .interactions import InteractionContext, InteractionReply, InteractionRouter, Visibility
from .reconciliation import (
    DirectoryStore,
    InMemoryDirectoryStore,
    InternalUserRecord,
    ReconciliationEngine,
    ReconciliationOutcome,
    ReconciliationResult,
    SqlDirectoryStore,
    SyncErrorInfo,
)
from .side_effects import SideEffectCoordinator
from .tasks import SETUP_REMINDER, TaskRunner, enqueue_task, task_runner
from .user_sync import handle_channel_membership_event, sync_organization_directory

__all__ = [
    "DirectoryStore",
    "InMemoryDirectoryStore",
    "InteractionContext",
    "InteractionReply",
    "InteractionRouter",
    "InternalUserRecord",
    "ReconciliationEngine",
    "ReconciliationOutcome",
    "ReconciliationResult",
    "SETUP_REMINDER",
    "SideEffectCoordinator",
    "SqlDirectoryStore",
    "SyncErrorInfo",
    "TaskRunner",
    "Visibility",
    "enqueue_task",
    "handle_channel_membership_event",
    "sync_organization_directory",
    "task_runner",
]
