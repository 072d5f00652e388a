"""Session-level exceptions."""


class SessionError(Exception):
    """Base exception for session manager errors."""


class ConfigurationError(SessionError):
    """Raised when the client identity or scopes are invalid."""


class NotInitializedError(SessionError):
    """Raised when a session operation runs before ``initialize``."""

    def __init__(self, message: str | None = None):
        super().__init__(message or "Session manager not initialized. Call initialize() first.")


class NoTokenError(SessionError):
    """Raised when a signed client is requested but no token can be obtained."""

    def __init__(self, message: str | None = None):
        default_msg = (
            "No valid access token could be obtained.\n\n"
            "Options:\n"
            "  1. Run 'graph-session connect' to sign in\n"
            "  2. Run 'graph-session switch-user' to sign in with a different account"
        )
        super().__init__(message or default_msg)
