"""Sign in with Slack (OpenID Connect).

Flow:
    issue state -> authorization URL -> Slack -> callback(code, state)
    -> validate state -> exchange code -> verify id_token -> session

The id_token is verified against Slack's published key set (JWKS); decoding
without checking the signature is never acceptable.
"""

from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any
from urllib.parse import urlencode
import logging
import time

import httpx
import jwt
from jwt import PyJWKSet

from ...core.config import Settings
from .errors import (
    AudienceMismatch,
    AuthConfigMissing,
    IssuerMismatch,
    SignatureInvalid,
    TokenExchangeFailed,
    TokenExpired,
)

logger = logging.getLogger(__name__)

SLACK_AUTHORIZE_URL = "https://slack.com/openid/connect/authorize"
SLACK_TOKEN_URL = "https://slack.com/api/openid.connect.token"
SLACK_JWKS_URL = "https://slack.com/openid/connect/keys"
SLACK_ISSUER = "https://slack.com"

# Identity claims only; login never asks for messaging scopes
LOGIN_SCOPES = ("openid", "profile", "email")
ALLOWED_ALGORITHMS = ["RS256"]
CLOCK_SKEW_SECONDS = 300

CLAIM_USER_ID = "https://slack.com/user_id"
CLAIM_TEAM_ID = "https://slack.com/team_id"
CLAIM_TEAM_NAME = "https://slack.com/team_name"


# =============================================================================
# RESULT TYPES
# =============================================================================


@dataclass(frozen=True)
class TokenSet:
    """What the token endpoint returned."""

    id_token: str
    access_token: str | None = None
    team_id: str | None = None


@dataclass(frozen=True)
class SlackIdentity:
    """Verified claims of a signed-in Slack user."""

    sub: str
    email: str
    name: str
    slack_user_id: str
    team_id: str | None = None
    team_name: str | None = None
    picture: str | None = None
    claims: dict[str, Any] = field(default_factory=dict, repr=False, compare=False)

    @classmethod
    def from_claims(cls, claims: dict[str, Any]) -> "SlackIdentity":
        return cls(
            sub=claims["sub"],
            email=claims["email"].strip().lower(),
            name=claims["name"],
            slack_user_id=claims.get(CLAIM_USER_ID) or claims["sub"],
            team_id=claims.get(CLAIM_TEAM_ID),
            team_name=claims.get(CLAIM_TEAM_NAME),
            picture=claims.get("picture"),
            claims=claims,
        )


# =============================================================================
# KEY SET
# =============================================================================


class JWKSCache:
    """Fetches Slack's JWKS and keeps it for `ttl_seconds`."""

    def __init__(
        self,
        http_client: httpx.AsyncClient,
        url: str = SLACK_JWKS_URL,
        ttl_seconds: int = 3600,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.http_client = http_client
        self.url = url
        self.ttl_seconds = ttl_seconds
        self.clock = clock
        self._key_set: PyJWKSet | None = None
        self._fetched_at: float | None = None

    def _is_fresh(self) -> bool:
        return (
            self._key_set is not None
            and self._fetched_at is not None
            and self.clock() - self._fetched_at < self.ttl_seconds
        )

    async def _fetch(self) -> PyJWKSet:
        try:
            response = await self.http_client.get(self.url)
            response.raise_for_status()
            key_set = PyJWKSet.from_dict(response.json())
        except (httpx.HTTPError, ValueError, jwt.PyJWKSetError) as e:
            raise SignatureInvalid(f"Could not load signing keys from {self.url}: {e}") from e

        self._key_set = key_set
        self._fetched_at = self.clock()
        return key_set

    async def get_signing_key(self, kid: str | None) -> Any:
        """Return the key for `kid`, refreshing once if it is unknown."""
        key_set = self._key_set if self._is_fresh() else await self._fetch()

        for attempt in range(2):
            match = self._find(key_set, kid)
            if match is not None:
                return match.key
            if attempt == 0:
                logger.info(f"Signing key {kid!r} not in cached JWKS, refreshing")
                key_set = await self._fetch()

        raise SignatureInvalid(f"No signing key matches kid {kid!r}")

    @staticmethod
    def _find(key_set: PyJWKSet, kid: str | None) -> Any:
        if kid is None:
            # Only unambiguous when the set has a single key
            return key_set.keys[0] if len(key_set.keys) == 1 else None
        for key in key_set.keys:
            if key.key_id == kid:
                return key
        return None


# =============================================================================
# CLIENT
# =============================================================================


class OIDCClient:
    """Builds authorization URLs, exchanges codes and verifies id_tokens."""

    def __init__(
        self,
        client_id: str,
        client_secret: str,
        *,
        http_client: httpx.AsyncClient | None = None,
        timeout: float = 15.0,
        jwks_cache_seconds: int = 3600,
        authorize_url: str = SLACK_AUTHORIZE_URL,
        token_url: str = SLACK_TOKEN_URL,
        jwks_url: str = SLACK_JWKS_URL,
        issuer: str = SLACK_ISSUER,
    ):
        if not client_id or not client_secret:
            raise AuthConfigMissing("SLACK_CLIENT_ID and SLACK_CLIENT_SECRET are required")

        self.client_id = client_id
        self.client_secret = client_secret
        self.authorize_url = authorize_url
        self.token_url = token_url
        self.issuer = issuer
        self._owns_client = http_client is None
        self.http_client = http_client or httpx.AsyncClient(timeout=timeout)
        self.jwks = JWKSCache(self.http_client, url=jwks_url, ttl_seconds=jwks_cache_seconds)

    @classmethod
    def from_settings(
        cls, settings: Settings, http_client: httpx.AsyncClient | None = None
    ) -> "OIDCClient":
        """Raises AuthConfigMissing when the client credentials are absent."""
        return cls(
            client_id=settings.slack_client_id or "",
            client_secret=settings.slack_client_secret or "",
            http_client=http_client,
            timeout=settings.slack_http_timeout_seconds,
            jwks_cache_seconds=settings.slack_jwks_cache_seconds,
        )

    async def close(self) -> None:
        if self._owns_client:
            await self.http_client.aclose()

    def build_authorization_url(self, state: str, redirect_uri: str, nonce: str | None = None) -> str:
        params = {
            "response_type": "code",
            "client_id": self.client_id,
            "scope": " ".join(LOGIN_SCOPES),
            "redirect_uri": redirect_uri,
            "state": state,
        }
        if nonce:
            params["nonce"] = nonce
        return f"{self.authorize_url}?{urlencode(params)}"

    async def exchange_code(self, code: str, redirect_uri: str) -> TokenSet:
        """Trade an authorization code for tokens.

        Slack answers most failures with HTTP 200 and `ok: false`, so both
        the status and the body are checked.
        """
        form = {
            "client_id": self.client_id,
            "client_secret": self.client_secret,
            "code": code,
            "redirect_uri": redirect_uri,
            "grant_type": "authorization_code",
        }

        try:
            response = await self.http_client.post(self.token_url, data=form)
        except httpx.HTTPError as e:
            raise TokenExchangeFailed(f"Token endpoint unreachable: {e!r}") from e

        if not response.is_success:
            raise TokenExchangeFailed(f"Token endpoint returned HTTP {response.status_code}")

        try:
            data = response.json()
        except ValueError as e:
            raise TokenExchangeFailed("Token endpoint returned a non-JSON body") from e

        if not data.get("ok", True):
            raise TokenExchangeFailed(f"Token endpoint error: {data.get('error', 'unknown')}")

        id_token = data.get("id_token")
        if not id_token:
            raise TokenExchangeFailed("Token endpoint response had no id_token")

        return TokenSet(
            id_token=id_token,
            access_token=data.get("access_token"),
            team_id=(data.get("team") or {}).get("id"),
        )

    async def verify_identity_token(self, id_token: str) -> SlackIdentity:
        """Verify signature, algorithm, issuer, audience and lifetime."""
        try:
            header = jwt.get_unverified_header(id_token)
        except jwt.InvalidTokenError as e:
            raise SignatureInvalid(f"Malformed id_token header: {e}") from e

        algorithm = header.get("alg")
        if algorithm not in ALLOWED_ALGORITHMS:
            raise SignatureInvalid(f"Unexpected signing algorithm {algorithm!r}")

        signing_key = await self.jwks.get_signing_key(header.get("kid"))

        try:
            claims = jwt.decode(
                id_token,
                key=signing_key,
                algorithms=ALLOWED_ALGORITHMS,
                audience=self.client_id,
                issuer=self.issuer,
                leeway=CLOCK_SKEW_SECONDS,
                options={"require": ["exp", "iat", "iss", "aud", "sub"]},
            )
        except jwt.InvalidAudienceError as e:
            raise AudienceMismatch(f"id_token audience rejected: {e}") from e
        except jwt.InvalidIssuerError as e:
            raise IssuerMismatch(f"id_token issuer rejected: {e}") from e
        except jwt.ExpiredSignatureError as e:
            raise TokenExpired(f"id_token expired: {e}") from e
        except jwt.InvalidTokenError as e:
            raise SignatureInvalid(f"id_token rejected: {e}") from e

        missing = [
            claim
            for claim in ("email", "name")
            if not isinstance(claims.get(claim), str) or not claims[claim].strip()
        ]
        if missing:
            raise SignatureInvalid(f"id_token lacks required claims: {', '.join(missing)}")

        return SlackIdentity.from_claims(claims)
