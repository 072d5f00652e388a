"""Credential providers for delegated Microsoft identity.

A provider performs the actual credential exchange for the session manager:
1. Silent refresh for a remembered principal
2. Interactive prompt (browser login / consent)
3. Listing and forgetting remembered principals

The session manager only depends on the ``CredentialProvider`` protocol.
``MsalCredentialProvider`` is the default binding, backed by MSAL's
public client application.
"""

from __future__ import annotations

import asyncio
import logging
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Callable, Protocol, Sequence

import msal

from ..config import settings

logger = logging.getLogger(__name__)

# MSAL error codes that mean the user backed out of the prompt
CANCELLATION_ERRORS = frozenset({"access_denied", "authentication_canceled", "user_canceled"})


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class AccessToken:
    """A bearer token and the moment it stops being valid."""

    token: str
    expires_on: datetime

    def expires_in_seconds(self, now: datetime) -> int:
        """Seconds until the token expires (never negative)."""
        return max(0, int((self.expires_on - now).total_seconds()))

    def needs_refresh(self, now: datetime, margin: timedelta) -> bool:
        """True once ``now`` is inside the refresh margin before expiry."""
        return now >= self.expires_on - margin


@dataclass(frozen=True)
class Principal:
    """An account remembered by the credential provider."""

    id: str
    username: str | None = None
    raw: Any = None


class AcquisitionStatus(Enum):
    SUCCEEDED = "succeeded"
    CANCELLED = "cancelled"
    FAILED = "failed"


@dataclass(frozen=True)
class AcquisitionResult:
    """Outcome of one pass through the token acquisition policy."""

    status: AcquisitionStatus
    token: AccessToken | None = None
    error: Exception | None = None

    @property
    def succeeded(self) -> bool:
        return self.status is AcquisitionStatus.SUCCEEDED and self.token is not None

    @classmethod
    def success(cls, token: AccessToken) -> "AcquisitionResult":
        return cls(AcquisitionStatus.SUCCEEDED, token=token)

    @classmethod
    def failure(cls, error: Exception) -> "AcquisitionResult":
        status = (
            AcquisitionStatus.CANCELLED
            if isinstance(error, InteractionCancelledError)
            else AcquisitionStatus.FAILED
        )
        return cls(status, error=error)


class CredentialAcquisitionError(Exception):
    """Silent or interactive token acquisition failed."""

    def __init__(self, message: str, error_code: str | None = None, details: dict | None = None):
        super().__init__(message)
        self.error_code = error_code
        self.details = details or {}


class InteractionCancelledError(CredentialAcquisitionError):
    """The user dismissed or declined the interactive prompt."""


class CredentialProvider(Protocol):
    """Capability the session manager uses to obtain tokens."""

    async def acquire_silent(
        self, scopes: Sequence[str], principal: Principal
    ) -> AccessToken | None: ...

    async def acquire_interactive(self, scopes: Sequence[str]) -> AccessToken: ...

    async def list_remembered(self) -> list[Principal]: ...

    async def forget(self, principal: Principal) -> None: ...


class MsalCredentialProvider:
    """Credential provider backed by ``msal.PublicClientApplication``.

    MSAL is synchronous, so every call is pushed to a worker thread to keep
    the event loop free while a browser prompt is open. The MSAL application
    itself fetches authority metadata when built, so it is created on the
    first credential call rather than in the constructor.

    Usage:
        provider = MsalCredentialProvider("client-id", ["User.Read"])
        token = await provider.acquire_interactive(["User.Read"])
    """

    def __init__(
        self,
        client_id: str,
        scopes: Sequence[str] = (),
        authority: str | None = None,
        clock: Callable[[], datetime] = utcnow,
        app: Any = None,
    ):
        """Initialize the provider.

        Args:
            client_id: Application (client) ID registered with Entra ID
            scopes: Scopes the session will request (kept for reference)
            authority: Authority URL (defaults to settings.authority)
            clock: Source of "now" used to turn ``expires_in`` into a timestamp
            app: Pre-built MSAL application (tests)
        """
        self.client_id = client_id
        self.scopes = list(scopes)
        self.authority = authority or settings.authority
        self._clock = clock
        self._app = app
        self._app_lock = threading.Lock()

    def _get_app(self) -> Any:
        """Build the MSAL application on first use. Runs in a worker thread.

        Raises:
            CredentialAcquisitionError: If the authority cannot be reached or
                the client configuration is rejected
        """
        with self._app_lock:
            if self._app is None:
                try:
                    self._app = msal.PublicClientApplication(
                        self.client_id, authority=self.authority
                    )
                except Exception as e:
                    raise CredentialAcquisitionError(
                        f"Could not create MSAL application for {self.authority}: {e}",
                        error_code="app_unavailable",
                        details={"authority": self.authority},
                    ) from e
            return self._app

    def _call(self, method: str, *args: Any, **kwargs: Any) -> Any:
        return getattr(self._get_app(), method)(*args, **kwargs)

    async def acquire_silent(
        self, scopes: Sequence[str], principal: Principal
    ) -> AccessToken | None:
        result = await asyncio.to_thread(
            self._call, "acquire_token_silent", list(scopes), account=principal.raw
        )
        if not result:
            return None
        return self._parse_result(result)

    async def acquire_interactive(self, scopes: Sequence[str]) -> AccessToken:
        result = await asyncio.to_thread(self._call, "acquire_token_interactive", list(scopes))
        if not result:
            raise CredentialAcquisitionError(
                "Interactive acquisition returned no result", error_code="empty_result"
            )
        return self._parse_result(result)

    async def list_remembered(self) -> list[Principal]:
        accounts = await asyncio.to_thread(self._call, "get_accounts")
        return [
            Principal(
                id=account.get("home_account_id") or account.get("username", ""),
                username=account.get("username"),
                raw=account,
            )
            for account in accounts or []
        ]

    async def forget(self, principal: Principal) -> None:
        await asyncio.to_thread(self._call, "remove_account", principal.raw)

    def _parse_result(self, result: dict[str, Any]) -> AccessToken:
        """Convert an MSAL result dict into an AccessToken.

        Raises:
            InteractionCancelledError: If the user cancelled the prompt
            CredentialAcquisitionError: For any other MSAL error or a malformed result
        """
        if "error" in result:
            error = result.get("error")
            description = result.get("error_description") or error
            error_cls = (
                InteractionCancelledError
                if error in CANCELLATION_ERRORS
                else CredentialAcquisitionError
            )
            raise error_cls(
                f"Token acquisition failed: {description}",
                error_code=error,
                details={k: v for k, v in result.items() if k != "access_token"},
            )

        try:
            token = result["access_token"]
            expires_in = int(result.get("expires_in", 3600))
        except (KeyError, TypeError, ValueError) as e:
            raise CredentialAcquisitionError(
                f"Invalid token response: {e}",
                error_code="invalid_response",
                details={"response_keys": list(result.keys())},
            )

        return AccessToken(token=token, expires_on=self._clock() + timedelta(seconds=expires_in))
