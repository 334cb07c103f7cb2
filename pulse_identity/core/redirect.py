"""Redirect URI resolution for the Slack login callback.

The resolver is built once at startup from settings. Each strategy either
produces a URI or declines, and the first one that produces wins:

1. HeaderDerivedStrategy - the host and scheme the browser actually used,
   taken from proxy headers when present.
2. OverrideStrategy - an explicit URI from the environment.
3. FallbackStrategy - the production base URL.
"""

import logging
from dataclasses import dataclass, field
from typing import Mapping, Protocol

from .config import Settings

logger = logging.getLogger(__name__)

CALLBACK_PATH = "/auth/slack/callback"


def _first_header_value(value: str | None) -> str | None:
    """Proxies append to forwarded headers; the client-facing value is first."""
    if not value:
        return None
    first = value.split(",")[0].strip()
    return first or None


@dataclass
class RequestHints:
    """The parts of an inbound request that influence the redirect URI."""

    headers: Mapping[str, str] = field(default_factory=dict)
    scheme: str | None = None

    def header(self, name: str) -> str | None:
        for key, value in self.headers.items():
            if key.lower() == name.lower():
                return value
        return None


class RedirectStrategy(Protocol):
    name: str

    def resolve(self, hints: RequestHints | None, path: str) -> str | None:
        ...


@dataclass
class HeaderDerivedStrategy:
    """Build the URI from X-Forwarded-Host/Host and X-Forwarded-Proto."""

    allowed_hosts: list[str] = field(default_factory=list)
    name: str = "header"

    def resolve(self, hints: RequestHints | None, path: str) -> str | None:
        if hints is None:
            return None

        host = _first_header_value(hints.header("x-forwarded-host")) or _first_header_value(
            hints.header("host")
        )
        if not host:
            return None

        if self.allowed_hosts and host.lower() not in self.allowed_hosts:
            logger.warning(f"Ignoring untrusted host header for redirect URI: {host}")
            return None

        proto = _first_header_value(hints.header("x-forwarded-proto")) or hints.scheme or "https"
        return f"{proto}://{host}{path}"


@dataclass
class OverrideStrategy:
    """Use an explicitly configured redirect URI."""

    uri: str | None
    name: str = "override"

    def resolve(self, hints: RequestHints | None, path: str) -> str | None:
        return self.uri or None


@dataclass
class FallbackStrategy:
    """Last resort: the production base URL."""

    base_url: str
    name: str = "fallback"

    def resolve(self, hints: RequestHints | None, path: str) -> str | None:
        return f"{self.base_url.rstrip('/')}{path}"


class RedirectUriResolver:
    """Applies redirect strategies in precedence order."""

    def __init__(self, strategies: list[RedirectStrategy], callback_path: str = CALLBACK_PATH):
        if not strategies:
            raise ValueError("At least one redirect strategy is required")
        self.strategies = strategies
        self.callback_path = callback_path

    @classmethod
    def from_settings(cls, settings: Settings) -> "RedirectUriResolver":
        callback_path = f"{settings.api_prefix}{CALLBACK_PATH}"
        return cls(
            strategies=[
                HeaderDerivedStrategy(allowed_hosts=settings.allowed_redirect_hosts),
                OverrideStrategy(
                    uri=settings.slack_redirect_uri_override or settings.slack_redirect_uri
                ),
                FallbackStrategy(base_url=settings.app_base_url),
            ],
            callback_path=callback_path,
        )

    def resolve(self, hints: RequestHints | None = None) -> str:
        for strategy in self.strategies:
            uri = strategy.resolve(hints, self.callback_path)
            if uri:
                logger.debug(f"Redirect URI resolved by '{strategy.name}' strategy: {uri}")
                return uri
        # FallbackStrategy always answers; reaching here means it was left out.
        raise RuntimeError("No redirect strategy produced a URI")
