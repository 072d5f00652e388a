"""Authentication module: session state and credential providers.

Usage:
    from graph_session.auth import SessionManager

    manager = SessionManager()
    manager.initialize("client-id", ["User.Read", "Mail.Read"])
    token = await manager.get_valid_token()
"""

from .manager import SessionChange, SessionManager, get_session_manager, reset_session_manager
from .provider import (
    AccessToken,
    AcquisitionResult,
    AcquisitionStatus,
    CredentialAcquisitionError,
    CredentialProvider,
    InteractionCancelledError,
    MsalCredentialProvider,
    Principal,
)

__all__ = [
    "AccessToken",
    "AcquisitionResult",
    "AcquisitionStatus",
    "CredentialAcquisitionError",
    "CredentialProvider",
    "InteractionCancelledError",
    "MsalCredentialProvider",
    "Principal",
    "SessionChange",
    "SessionManager",
    "get_session_manager",
    "reset_session_manager",
]
