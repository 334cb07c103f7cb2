"""Single-use CSRF state for the Slack login flow.

State lives in the caller's session mapping and is consumed by the first
validation attempt, whatever its result.
"""

from collections.abc import Callable, MutableMapping
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any
import logging

from ...core.security import generate_state_token, tokens_match
from .errors import StateExpired, StateMismatch, StateMissing

logger = logging.getLogger(__name__)

STATE_TTL = timedelta(minutes=10)

# Session keys owned by the state store
STATE_KEY = "oauth_state"
ORG_SLUG_KEY = "oauth_org_slug"
ISSUED_AT_KEY = "oauth_state_issued_at"
EXPIRES_AT_KEY = "oauth_state_expires_at"
REDIRECT_URI_KEY = "oauth_redirect_uri"

_STATE_KEYS = (STATE_KEY, ORG_SLUG_KEY, ISSUED_AT_KEY, EXPIRES_AT_KEY, REDIRECT_URI_KEY)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class IssuedState:
    """What a successful validation hands back to the callback."""

    state: str
    organization_slug: str
    redirect_uri: str | None
    issued_at: datetime
    expires_at: datetime


class StateStore:
    """Issues and validates login state inside a session mapping."""

    def __init__(
        self,
        ttl: timedelta = STATE_TTL,
        clock: Callable[[], datetime] = _utcnow,
        token_factory: Callable[[], str] = generate_state_token,
    ):
        if ttl > STATE_TTL:
            raise ValueError("Login state must not live longer than 10 minutes")
        self.ttl = ttl
        self.clock = clock
        self.token_factory = token_factory

    def issue(
        self,
        session: MutableMapping[str, Any],
        organization_slug: str,
        redirect_uri: str | None = None,
    ) -> IssuedState:
        """Store fresh state in the session, replacing any earlier attempt."""
        issued_at = self.clock()
        expires_at = issued_at + self.ttl
        state = self.token_factory()

        session[STATE_KEY] = state
        session[ORG_SLUG_KEY] = organization_slug
        session[ISSUED_AT_KEY] = issued_at.timestamp()
        session[EXPIRES_AT_KEY] = expires_at.timestamp()
        session[REDIRECT_URI_KEY] = redirect_uri

        return IssuedState(
            state=state,
            organization_slug=organization_slug,
            redirect_uri=redirect_uri,
            issued_at=issued_at,
            expires_at=expires_at,
        )

    def validate(self, session: MutableMapping[str, Any], received: str | None) -> IssuedState:
        """Consume the session's state and check it against `received`.

        Raises StateMissing, StateExpired or StateMismatch. Expiry is checked
        before the token itself, so an expired state never validates.
        """
        stored = {key: session.pop(key, None) for key in _STATE_KEYS}

        state = stored[STATE_KEY]
        if not state:
            raise StateMissing("No login state in session")

        expires_at = datetime.fromtimestamp(float(stored[EXPIRES_AT_KEY] or 0), tz=timezone.utc)
        issued_ts = stored[ISSUED_AT_KEY]
        issued_at = (
            datetime.fromtimestamp(float(issued_ts), tz=timezone.utc)
            if issued_ts is not None
            else expires_at - self.ttl
        )

        now = self.clock()
        if now > expires_at:
            raise StateExpired(f"Login state expired at {expires_at.isoformat()}")

        if not received or not tokens_match(state, received):
            raise StateMismatch("Received state does not match the session")

        return IssuedState(
            state=state,
            organization_slug=stored[ORG_SLUG_KEY],
            redirect_uri=stored[REDIRECT_URI_KEY],
            issued_at=issued_at,
            expires_at=expires_at,
        )

    @staticmethod
    def has_pending_state(session: MutableMapping[str, Any]) -> bool:
        return bool(session.get(STATE_KEY))
