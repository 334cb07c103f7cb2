"""Slack integration: login, directory enumeration, and messaging."""

from .client import SlackApiError, SlackWebClient
from .directory import (
    ChannelNotFound,
    DirectoryFetcher,
    DirectoryFetchResult,
    ExternalIdentity,
    FetchFailure,
    InvalidAuth,
    MembersFetchError,
    MissingScope,
    MissingToken,
    NoMembers,
)
from .errors import (
    AudienceMismatch,
    AuthConfigMissing,
    IssuerMismatch,
    LoginError,
    SignatureInvalid,
    StateExpired,
    StateMismatch,
    StateMissing,
    TokenExchangeFailed,
    TokenExpired,
)
from .messages import SlackBlocks, SlackMessenger
from .oidc import OIDCClient, SlackIdentity, TokenSet
from .state import IssuedState, StateStore

__all__ = [
    "SlackApiError",
    "SlackWebClient",
    "DirectoryFetcher",
    "DirectoryFetchResult",
    "ExternalIdentity",
    "FetchFailure",
    "MissingToken",
    "InvalidAuth",
    "MissingScope",
    "ChannelNotFound",
    "NoMembers",
    "MembersFetchError",
    "LoginError",
    "AuthConfigMissing",
    "StateMissing",
    "StateMismatch",
    "StateExpired",
    "TokenExchangeFailed",
    "SignatureInvalid",
    "IssuerMismatch",
    "AudienceMismatch",
    "TokenExpired",
    "SlackBlocks",
    "SlackMessenger",
    "OIDCClient",
    "SlackIdentity",
    "TokenSet",
    "StateStore",
    "IssuedState",
]
