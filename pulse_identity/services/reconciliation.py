"""
Reconciliation Engine: converge the internal directory on channel membership.

Given the fetched channel members and the organization's existing directory
records, the engine computes and applies the minimal set of mutations:

1. Match each active member by external id, then by email.
2. Matched records get a minimal diff (backfill external id, rename,
   reactivate); an empty diff is never written. Unmatched members are
   created with no password and a one-time setup token.
3. Only after every member has been processed, active records whose
   external id is no longer in the channel are deactivated. Records are
   never deleted.

Running the engine twice with unchanged input produces zero counts on the
second run. Writes go record by record; a failure on one record is logged
and excluded from the counts without aborting the rest.
"""

from collections.abc import Callable, Iterable
from dataclasses import asdict, dataclass, field, replace
from datetime import datetime
from typing import Any, Protocol
from uuid import UUID, uuid4
import logging

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from ..core.security import SetupToken, generate_setup_token
from ..integrations.slack.directory import ExternalIdentity
from ..models import User, UserRole

logger = logging.getLogger(__name__)


# =============================================================================
# DTOs
# =============================================================================


@dataclass(frozen=True)
class InternalUserRecord:
    """Snapshot of a directory record; the engine never holds ORM objects."""

    id: UUID
    organization_id: UUID
    external_id: str | None
    email: str
    name: str
    role: str
    is_active: bool

    @classmethod
    def from_model(cls, user: User) -> "InternalUserRecord":
        return cls(
            id=user.id,
            organization_id=user.organization_id,
            external_id=user.slack_user_id,
            email=user.email,
            name=user.name,
            role=user.role.value if isinstance(user.role, UserRole) else str(user.role),
            is_active=user.is_active,
        )


@dataclass(frozen=True)
class RecordChanges:
    """A minimal diff; fields left as None are untouched."""

    external_id: str | None = None
    name: str | None = None
    is_active: bool | None = None

    @property
    def is_empty(self) -> bool:
        return self.external_id is None and self.name is None and self.is_active is None

    @property
    def reactivates(self) -> bool:
        return self.is_active is True

    def apply_to(self, record: InternalUserRecord) -> InternalUserRecord:
        return replace(
            record,
            external_id=self.external_id if self.external_id is not None else record.external_id,
            name=self.name if self.name is not None else record.name,
            is_active=self.is_active if self.is_active is not None else record.is_active,
        )


@dataclass(frozen=True)
class NewRecord:
    external_id: str | None
    email: str
    name: str
    setup_token_hash: str
    setup_token_expires_at: datetime
    role: str = UserRole.MEMBER.value


@dataclass(frozen=True)
class PendingOnboarding:
    """A newly created member still owed a setup message. Holds the raw token."""

    external_id: str | None
    email: str
    setup_token: str
    name: str
    record_id: UUID


@dataclass(frozen=True)
class SyncErrorInfo:
    """Structured error for administrators; never shown to end users."""

    code: str
    message: str
    remediation: str = ""
    detail: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "error_code": self.code,
            "message": self.message,
            "remediation": self.remediation,
            "detail": self.detail,
        }


@dataclass
class ReconciliationOutcome:
    """The sole return value of a sync run: counts, or an error."""

    created: int = 0
    reactivated: int = 0
    deactivated: int = 0
    onboarded: int = 0
    onboarding_errors: int = 0
    error: SyncErrorInfo | None = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @property
    def seats_added(self) -> int:
        return self.created + self.reactivated

    @classmethod
    def failed(cls, error: SyncErrorInfo) -> "ReconciliationOutcome":
        return cls(error=error)

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["error"] = self.error.to_dict() if self.error else None
        return data


@dataclass
class ReconciliationResult:
    outcome: ReconciliationOutcome
    pending_onboarding: list[PendingOnboarding] = field(default_factory=list)


# =============================================================================
# STORES
# =============================================================================


class DirectoryStore(Protocol):
    """Persistence seam for directory records."""

    async def list_records(self, organization_id: UUID) -> list[InternalUserRecord]:
        ...

    async def update_record(
        self, organization_id: UUID, record_id: UUID, changes: RecordChanges
    ) -> InternalUserRecord:
        ...

    async def create_record(self, organization_id: UUID, new_record: NewRecord) -> InternalUserRecord:
        ...


class SqlDirectoryStore:
    """Directory store over the users table.

    Each mutation is committed on its own so that a crash mid-run leaves a
    consistent, resumable directory; a failed mutation is rolled back alone.
    """

    def __init__(self, session: AsyncSession):
        self.session = session

    async def list_records(self, organization_id: UUID) -> list[InternalUserRecord]:
        result = await self.session.execute(
            select(User).where(User.organization_id == organization_id).order_by(User.created_at)
        )
        return [InternalUserRecord.from_model(user) for user in result.scalars().all()]

    async def update_record(
        self, organization_id: UUID, record_id: UUID, changes: RecordChanges
    ) -> InternalUserRecord:
        values: dict[str, Any] = {}
        if changes.external_id is not None:
            values["slack_user_id"] = changes.external_id
        if changes.name is not None:
            values["name"] = changes.name
        if changes.is_active is not None:
            values["is_active"] = changes.is_active

        try:
            await self.session.execute(
                update(User)
                .where(User.id == record_id, User.organization_id == organization_id)
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            await self.session.commit()
        except Exception:
            await self.session.rollback()
            raise

        user = await self.session.get(User, record_id, populate_existing=True)
        if user is None:
            raise LookupError(f"User {record_id} disappeared during update")
        return InternalUserRecord.from_model(user)

    async def create_record(self, organization_id: UUID, new_record: NewRecord) -> InternalUserRecord:
        user = User(
            id=uuid4(),
            organization_id=organization_id,
            slack_user_id=new_record.external_id,
            email=new_record.email,
            name=new_record.name,
            role=UserRole(new_record.role),
            is_active=True,
            password_hash=None,
            setup_token_hash=new_record.setup_token_hash,
            setup_token_expires_at=new_record.setup_token_expires_at,
        )
        self.session.add(user)
        try:
            await self.session.commit()
        except Exception:
            await self.session.rollback()
            raise
        return InternalUserRecord.from_model(user)


class InMemoryDirectoryStore:
    """Dict-backed store for dry runs and tests.

    Enforces the same uniqueness rules as the users table.
    """

    def __init__(self, records: Iterable[InternalUserRecord] = ()):
        self.records: dict[UUID, InternalUserRecord] = {r.id: r for r in records}
        self.writes = 0

    async def list_records(self, organization_id: UUID) -> list[InternalUserRecord]:
        return [r for r in self.records.values() if r.organization_id == organization_id]

    def _check_unique(self, candidate: InternalUserRecord) -> None:
        for other in self.records.values():
            if other.id == candidate.id or other.organization_id != candidate.organization_id:
                continue
            if candidate.external_id and other.external_id == candidate.external_id:
                raise ValueError(f"Duplicate external id {candidate.external_id}")
            if other.email.lower() == candidate.email.lower():
                raise ValueError(f"Duplicate email {candidate.email}")

    async def update_record(
        self, organization_id: UUID, record_id: UUID, changes: RecordChanges
    ) -> InternalUserRecord:
        current = self.records[record_id]
        updated = changes.apply_to(current)
        self._check_unique(updated)
        self.records[record_id] = updated
        self.writes += 1
        return updated

    async def create_record(self, organization_id: UUID, new_record: NewRecord) -> InternalUserRecord:
        record = InternalUserRecord(
            id=uuid4(),
            organization_id=organization_id,
            external_id=new_record.external_id,
            email=new_record.email,
            name=new_record.name,
            role=new_record.role,
            is_active=True,
        )
        self._check_unique(record)
        self.records[record.id] = record
        self.writes += 1
        return record


# =============================================================================
# ENGINE
# =============================================================================


def fallback_email(external_id: str) -> str:
    """Placeholder address for members whose profile hides their email."""
    return f"{external_id.lower()}@slack.local"


class ReconciliationEngine:
    """Diffs fetched membership against the directory and applies the result."""

    def __init__(
        self,
        store: DirectoryStore,
        token_factory: Callable[[], SetupToken] = generate_setup_token,
    ):
        self.store = store
        self.token_factory = token_factory

    async def reconcile(
        self,
        organization_id: UUID,
        fetched: Iterable[ExternalIdentity],
        protected_external_ids: Iterable[str] = (),
    ) -> ReconciliationResult:
        """Apply one reconciliation pass.

        `protected_external_ids` are members whose profile could not be
        fetched this run; they are neither matched nor deactivated.
        """
        fetched = list(fetched)
        protected = set(protected_external_ids)
        existing = await self.store.list_records(organization_id)

        by_external_id: dict[str, InternalUserRecord] = {}
        by_email: dict[str, InternalUserRecord] = {}
        for record in existing:
            self._index(record, by_external_id, by_email)

        outcome = ReconciliationOutcome()
        pending: list[PendingOnboarding] = []
        matched_record_ids: set[UUID] = set()

        # Step 2: create / update
        for identity in fetched:
            if not identity.is_active:
                continue

            record = self._match(identity, by_external_id, by_email)
            if record is not None:
                matched_record_ids.add(record.id)
                changes = self.diff(record, identity)
                if changes.is_empty:
                    continue
                try:
                    updated = await self.store.update_record(organization_id, record.id, changes)
                except Exception:
                    logger.exception(
                        f"Failed to update user {record.id} from Slack member {identity.external_id}"
                    )
                    continue

                self._index(updated, by_external_id, by_email)
                if changes.reactivates:
                    outcome.reactivated += 1
                    logger.info(f"Reactivated user: {updated.name} ({identity.external_id})")
                continue

            try:
                created, onboarding = await self._create(organization_id, identity)
            except Exception:
                logger.exception(f"Failed to create user for Slack member {identity.external_id}")
                continue

            matched_record_ids.add(created.id)
            self._index(created, by_external_id, by_email)
            outcome.created += 1
            pending.append(onboarding)
            logger.info(f"Created new user: {created.name} ({identity.external_id})")

        # Step 3: deactivate, strictly after every member was processed
        active_external_ids = {
            identity.external_id
            for identity in fetched
            if identity.is_active and identity.external_id
        }
        for record in existing:
            if not record.external_id or not record.is_active:
                continue
            if (
                record.external_id in active_external_ids
                or record.external_id in protected
                or record.id in matched_record_ids
            ):
                continue

            try:
                await self.store.update_record(
                    organization_id, record.id, RecordChanges(is_active=False)
                )
            except Exception:
                logger.exception(f"Failed to deactivate user {record.id} ({record.external_id})")
                continue

            outcome.deactivated += 1
            logger.info(f"Deactivated user: {record.name} ({record.external_id})")

        logger.info(
            f"Reconciled organization {organization_id}: created={outcome.created} "
            f"reactivated={outcome.reactivated} deactivated={outcome.deactivated}"
        )
        return ReconciliationResult(outcome=outcome, pending_onboarding=pending)

    @staticmethod
    def diff(record: InternalUserRecord, identity: ExternalIdentity) -> RecordChanges:
        """Minimal changes that bring `record` in line with `identity`."""
        return RecordChanges(
            external_id=(
                identity.external_id
                if identity.external_id and not record.external_id
                else None
            ),
            name=(
                identity.display_name
                if identity.display_name and identity.display_name != record.name
                else None
            ),
            is_active=True if not record.is_active else None,
        )

    @staticmethod
    def _match(
        identity: ExternalIdentity,
        by_external_id: dict[str, InternalUserRecord],
        by_email: dict[str, InternalUserRecord],
    ) -> InternalUserRecord | None:
        if identity.external_id and identity.external_id in by_external_id:
            return by_external_id[identity.external_id]
        if identity.email:
            return by_email.get(identity.email.lower())
        return None

    @staticmethod
    def _index(
        record: InternalUserRecord,
        by_external_id: dict[str, InternalUserRecord],
        by_email: dict[str, InternalUserRecord],
    ) -> None:
        if record.external_id:
            by_external_id[record.external_id] = record
        if record.email:
            by_email[record.email.lower()] = record

    async def _create(
        self, organization_id: UUID, identity: ExternalIdentity
    ) -> tuple[InternalUserRecord, PendingOnboarding]:
        if not identity.external_id and not identity.email:
            raise ValueError("Member has neither an external id nor an email")

        setup = self.token_factory()
        email = (identity.email or fallback_email(identity.external_id)).lower()
        created = await self.store.create_record(
            organization_id,
            NewRecord(
                external_id=identity.external_id or None,
                email=email,
                name=identity.display_name,
                setup_token_hash=setup.token_hash,
                setup_token_expires_at=setup.expires_at,
            ),
        )
        onboarding = PendingOnboarding(
            external_id=created.external_id,
            email=created.email,
            setup_token=setup.token,
            name=created.name,
            record_id=created.id,
        )
        return created, onboarding
