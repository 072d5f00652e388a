"""Microsoft Graph API client."""

from .client import (
    GRAPH_API_BASE,
    BearerTokenAuth,
    GraphAuthError,
    GraphClient,
    GraphError,
    GraphRateLimitError,
    SessionTokenAuth,
    resolve_user_id,
)

__all__ = [
    "GRAPH_API_BASE",
    "BearerTokenAuth",
    "GraphAuthError",
    "GraphClient",
    "GraphError",
    "GraphRateLimitError",
    "SessionTokenAuth",
    "resolve_user_id",
]
