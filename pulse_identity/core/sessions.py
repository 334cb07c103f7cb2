"""Server-side browser sessions.

The browser holds an opaque random cookie; the session's data lives in the
`web_sessions` table keyed by the cookie's SHA-256. Route handlers receive a
ServerSession (a plain mutable mapping) and call save_server_session() once
they are done with it.
"""

from collections.abc import Iterator, MutableMapping
from datetime import datetime, timedelta, timezone
from typing import Any
import logging
from uuid import uuid4

from fastapi import Response
from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from ..models import WebSession, ensure_aware
from .config import get_settings
from .security import generate_session_token, hash_token

logger = logging.getLogger(__name__)
settings = get_settings()


class ServerSession(MutableMapping[str, Any]):
    """Mapping view over one session's data, tracking modifications."""

    def __init__(
        self,
        token: str | None = None,
        data: dict[str, Any] | None = None,
        record_id: Any = None,
    ):
        self.token = token
        self.record_id = record_id
        self._data: dict[str, Any] = dict(data or {})
        self.modified = False
        self.rotated = False
        self.cleared = False

    def __getitem__(self, key: str) -> Any:
        return self._data[key]

    def __setitem__(self, key: str, value: Any) -> None:
        self._data[key] = value
        self.modified = True

    def __delitem__(self, key: str) -> None:
        del self._data[key]
        self.modified = True

    def __iter__(self) -> Iterator[str]:
        return iter(self._data)

    def __len__(self) -> int:
        return len(self._data)

    @property
    def is_new(self) -> bool:
        return self.record_id is None

    def to_dict(self) -> dict[str, Any]:
        return dict(self._data)

    def rotate(self) -> None:
        """Issue a new identifier on save (after privilege changes such as login)."""
        self.rotated = True
        self.modified = True

    def clear(self) -> None:
        self._data.clear()
        self.cleared = True
        self.modified = True


async def load_server_session(db: AsyncSession, token: str | None) -> ServerSession:
    """Load the session for a cookie value, or start an empty one."""
    if not token:
        return ServerSession()

    result = await db.execute(
        select(WebSession).where(WebSession.token_hash == hash_token(token))
    )
    record = result.scalar_one_or_none()
    if record is None:
        return ServerSession()

    if ensure_aware(record.expires_at) <= datetime.now(timezone.utc):
        logger.debug("Discarding expired web session")
        await db.delete(record)
        await db.flush()
        return ServerSession()

    return ServerSession(token=token, data=record.data, record_id=record.id)


async def save_server_session(
    db: AsyncSession,
    server_session: ServerSession,
    response: Response,
) -> None:
    """Persist a modified session and set (or clear) its cookie on the response."""
    if not server_session.modified:
        return

    if server_session.record_id is not None and (
        server_session.rotated or server_session.cleared
    ):
        await db.execute(delete(WebSession).where(WebSession.id == server_session.record_id))
        server_session.record_id = None

    if server_session.cleared and not server_session.to_dict():
        response.delete_cookie(settings.session_cookie_name, path="/")
        await db.flush()
        return

    expires_at = datetime.now(timezone.utc) + timedelta(hours=settings.session_ttl_hours)

    if server_session.record_id is None:
        token = generate_session_token()
        record = WebSession(
            id=uuid4(),
            token_hash=hash_token(token),
            data=server_session.to_dict(),
            expires_at=expires_at,
        )
        db.add(record)
        server_session.token = token
        server_session.record_id = record.id
    else:
        record = await db.get(WebSession, server_session.record_id)
        if record is None:
            raise LookupError("Web session vanished while the request was in flight")
        record.data = server_session.to_dict()
        record.expires_at = expires_at

    await db.flush()
    server_session.modified = False
    server_session.rotated = False
    server_session.cleared = False

    response.set_cookie(
        key=settings.session_cookie_name,
        value=server_session.token,
        max_age=settings.session_ttl_hours * 3600,
        httponly=True,
        secure=settings.session_cookie_secure,
        samesite="lax",
        path="/",
    )
