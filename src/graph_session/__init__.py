"""Single-user session manager for delegated Microsoft Graph access.

Usage:
    from graph_session import get_session_manager

    manager = get_session_manager()
    manager.initialize("client-id", ["User.Read"])

    if await manager.connect():
        token = await manager.get_valid_token()
"""

from .auth import (
    AccessToken,
    AcquisitionResult,
    AcquisitionStatus,
    CredentialAcquisitionError,
    CredentialProvider,
    InteractionCancelledError,
    MsalCredentialProvider,
    Principal,
    SessionChange,
    SessionManager,
    get_session_manager,
    reset_session_manager,
)
from .errors import ConfigurationError, NoTokenError, NotInitializedError, SessionError

__version__ = "0.1.0"

__all__ = [
    "AccessToken",
    "AcquisitionResult",
    "AcquisitionStatus",
    "ConfigurationError",
    "CredentialAcquisitionError",
    "CredentialProvider",
    "InteractionCancelledError",
    "MsalCredentialProvider",
    "NoTokenError",
    "NotInitializedError",
    "Principal",
    "SessionChange",
    "SessionError",
    "SessionManager",
    "get_session_manager",
    "reset_session_manager",
]
