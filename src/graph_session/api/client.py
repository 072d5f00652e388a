"""Microsoft Graph API client - bearer-signed wrapper around httpx."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, AsyncGenerator, Generator

import httpx

from ..config import settings
from ..errors import NoTokenError

if TYPE_CHECKING:
    from ..auth.manager import SessionManager

GRAPH_API_BASE = "https://graph.microsoft.com/v1.0"


class GraphError(Exception):
    """Base exception for Graph API errors.

    ``code`` carries Graph's own error code (``error.code`` in the response
    body), e.g. ``InvalidAuthenticationToken`` or ``Request_ResourceNotFound``.
    """

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        response: dict | None = None,
        code: str | None = None,
    ):
        self.message = message
        self.status_code = status_code
        self.response = response
        self.code = code
        super().__init__(self.message)


class GraphAuthError(GraphError):
    """Authentication error."""

    pass


class GraphRateLimitError(GraphError):
    """Request throttled by Graph."""

    def __init__(self, *args: Any, retry_after: float | None = None, **kwargs: Any):
        super().__init__(*args, **kwargs)
        self.retry_after = retry_after


def _error_body(response: httpx.Response) -> dict | None:
    """Decode an error response body, tolerating empty or non-JSON payloads."""
    if not response.content:
        return None
    try:
        body = response.json()
    except ValueError:
        return {"raw": response.text}
    return body if isinstance(body, dict) else {"raw": body}


def _graph_error_detail(body: dict | None) -> tuple[str | None, str | None]:
    """Pull ``(code, message)`` out of Graph's ``{"error": {...}}`` envelope."""
    error = (body or {}).get("error")
    if not isinstance(error, dict):
        return None, None
    return error.get("code"), error.get("message")


def _retry_after(response: httpx.Response) -> float | None:
    value = response.headers.get("Retry-After")
    try:
        return float(value) if value is not None else None
    except ValueError:
        return None


class BearerTokenAuth(httpx.Auth):
    """Attach a fixed bearer token to every request."""

    def __init__(self, token: str):
        self.token = token

    def auth_flow(self, request: httpx.Request) -> Generator[httpx.Request, httpx.Response, None]:
        request.headers["Authorization"] = f"Bearer {self.token}"
        yield request


class SessionTokenAuth(httpx.Auth):
    """Ask the session manager for a currently valid token on every request.

    Long-lived clients built with this auth never send a token that expired
    after the client was constructed.
    """

    def __init__(self, manager: "SessionManager"):
        self.manager = manager

    def sync_auth_flow(self, request: httpx.Request) -> Generator[httpx.Request, httpx.Response, None]:
        raise RuntimeError("SessionTokenAuth requires an httpx.AsyncClient")

    async def async_auth_flow(
        self, request: httpx.Request
    ) -> AsyncGenerator[httpx.Request, httpx.Response]:
        token = await self.manager.get_valid_token()
        if not token:
            raise NoTokenError()
        request.headers["Authorization"] = f"Bearer {token}"
        yield request


class GraphClient:
    """Microsoft Graph client with bearer authentication.

    Usage:
        async with GraphClient(BearerTokenAuth(token)) as client:
            me = await client.me()
    """

    def __init__(
        self,
        auth: httpx.Auth,
        base_url: str | None = None,
        timeout: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.base_url = (base_url or settings.graph_base_url).rstrip("/")
        self.auth = auth

        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            auth=auth,
            headers={"Content-Type": "application/json"},
            timeout=timeout if timeout is not None else settings.http_timeout_seconds,
            transport=transport,
        )

    async def __aenter__(self):
        return self

    async def __aexit__(self, *args):
        await self.close()

    async def close(self):
        """Close the HTTP client."""
        await self._client.aclose()

    async def _request(
        self,
        method: str,
        path: str,
        params: dict | None = None,
        json: dict | None = None,
    ) -> dict[str, Any]:
        """Make an API request, mapping Graph error envelopes to GraphError."""
        response = await self._client.request(
            method=method,
            url=path,
            params=params,
            json=json,
        )
        if response.is_success:
            return response.json() if response.content else {}

        body = _error_body(response)
        code, detail = _graph_error_detail(body)
        status = response.status_code

        if status == 401:
            raise GraphAuthError(
                f"Access token rejected: {detail or 'token invalid or expired'}",
                status,
                body,
                code=code,
            )

        if status == 429:
            retry_after = _retry_after(response)
            hint = f"retry after {retry_after:g}s" if retry_after is not None else "wait and retry"
            raise GraphRateLimitError(
                f"Throttled by Graph ({hint})",
                status,
                body,
                code=code,
                retry_after=retry_after,
            )

        message = f"{method} {path} failed with {status}"
        if detail:
            message = f"{message}: {detail}"
        raise GraphError(message, status, body, code=code)

    async def get(self, path: str, params: dict | None = None) -> dict[str, Any]:
        return await self._request("GET", path, params=params)

    async def me(self) -> dict[str, Any]:
        """Get the profile of the signed-in user."""
        return await self._request("GET", "/me")


async def resolve_user_id(
    token: str,
    base_url: str | None = None,
    transport: httpx.AsyncBaseTransport | None = None,
) -> str:
    """Resolve the stable id of the user who owns ``token``.

    Raises:
        GraphError: If the call fails or the profile carries no id
    """
    async with GraphClient(BearerTokenAuth(token), base_url=base_url, transport=transport) as client:
        profile = await client.me()

    user_id = profile.get("id")
    if not user_id:
        raise GraphError("User profile has no id", response=profile)
    return user_id
