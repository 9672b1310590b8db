"""Exception hierarchy shared by the token, playback and publish layers."""


class VisualizerError(Exception):
    """Base class for everything this package raises on purpose."""


class ConfigError(VisualizerError):
    """Required configuration is missing; fatal at startup."""


# -- OAuth / tokens --


class OAuthError(VisualizerError):
    """The Spotify accounts service rejected a token or profile request.

    ``status`` is the HTTP status (0 for network failures) and ``error`` the
    OAuth error code from the response body, e.g. ``invalid_grant``.
    """

    def __init__(self, status: int, error: str = "", description: str = ""):
        self.status = status
        self.error = error
        self.description = description
        super().__init__(f"OAuth request failed ({status}): {error or description or 'no detail'}")


class AuthError(VisualizerError):
    def __init__(self, user_id: str, message: str = ""):
        self.user_id = user_id
        super().__init__(message or f"{self.__class__.__name__} for {user_id}")


class TokenNotFound(AuthError):
    """No token record exists for the user."""


class ReauthRequired(AuthError):
    """The refresh token was revoked; the user must log in again."""


class TransientAuthError(AuthError):
    """Refresh failed for a reason that may clear up on a later cycle."""

    def __init__(self, user_id: str, message: str = "", status: int = 0):
        self.status = status
        super().__init__(user_id, message)


class StateMismatch(VisualizerError):
    """The OAuth callback's state does not match the one issued at login."""


# -- Playback --


class FetchError(VisualizerError):
    def __init__(self, status_code: int, message: str = ""):
        self.status_code = status_code
        super().__init__(message or f"Spotify API error ({status_code})")


class RateLimited(FetchError):
    def __init__(self, retry_after: int | None = None):
        self.retry_after = retry_after
        super().__init__(429, f"Spotify API rate limit exceeded (retry after {retry_after}s)")


class ProviderError(FetchError):
    """Any other non-success answer (or network failure, status 0)."""


# -- Publishing --


class PublishError(VisualizerError):
    reason = "error"


class PublishTimeout(PublishError):
    reason = "timeout"


class NotConnected(PublishError):
    reason = "not_connected"


class BrokerRejected(PublishError):
    reason = "broker_rejected"
