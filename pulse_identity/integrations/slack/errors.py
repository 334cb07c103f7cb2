"""Login-flow errors for Sign in with Slack.

Every error carries a stable `code` for logs and metrics, a generic
`user_message` safe to show in the browser, and an internal diagnostic
(`str(exc)`) that is only ever logged.
"""

GENERIC_LOGIN_MESSAGE = "We couldn't sign you in with Slack. Please try again."


class LoginError(Exception):
    """Base class for every failure between issuing state and verifying identity."""

    code = "login_failed"
    user_message = GENERIC_LOGIN_MESSAGE

    def __init__(self, diagnostic: str = ""):
        super().__init__(diagnostic or self.code)


class AuthConfigMissing(LoginError):
    """Client id/secret are not configured; the login feature is disabled."""

    code = "auth_config_missing"
    user_message = "Sign in with Slack is not available right now."


# State (CSRF) failures: the user has to start the login again.


class StateMissing(LoginError):
    code = "state_missing"


class StateMismatch(LoginError):
    code = "state_mismatch"


class StateExpired(LoginError):
    code = "state_expired"


# Token endpoint


class TokenExchangeFailed(LoginError):
    code = "token_exchange_failed"


# Identity token verification


class SignatureInvalid(LoginError):
    code = "signature_invalid"


class IssuerMismatch(LoginError):
    code = "issuer_mismatch"


class AudienceMismatch(LoginError):
    code = "audience_mismatch"


class TokenExpired(LoginError):
    code = "token_expired"


# Session establishment


class WorkspaceMismatch(LoginError):
    """The identity belongs to a different Slack workspace than the organization."""

    code = "workspace_mismatch"


class UnknownOrganization(LoginError):
    code = "unknown_organization"
