"""Session manager for delegated Microsoft Graph access.

Owns the signed-in user's access token: caches it, refreshes it silently
before it expires, falls back to an interactive prompt when silent refresh
is impossible, and publishes authentication state changes to observers.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Iterable, Sequence

from ..api.client import BearerTokenAuth, GraphClient, SessionTokenAuth, resolve_user_id
from ..config import settings
from ..errors import ConfigurationError, NoTokenError, NotInitializedError, SessionError
from .provider import (
    AccessToken,
    AcquisitionResult,
    AcquisitionStatus,
    CredentialAcquisitionError,
    CredentialProvider,
    InteractionCancelledError,
    MsalCredentialProvider,
    Principal,
    utcnow,
)

logger = logging.getLogger(__name__)

ProviderFactory = Callable[[str, Sequence[str]], CredentialProvider]
IdentityResolver = Callable[[str], Awaitable[str]]


@dataclass(frozen=True)
class SessionChange:
    """A single observable property transition."""

    property_name: str
    old_value: Any
    new_value: Any


SessionObserver = Callable[[SessionChange], None]


def _flatten_scopes(scope_groups: Iterable[Any]) -> list[str]:
    """Flatten (possibly nested) scope groups, keeping first-seen order.

    Raises:
        ConfigurationError: On empty groups, blank scopes or non-string entries
    """
    scopes: dict[str, None] = {}

    def _walk(group: Any) -> None:
        if isinstance(group, str):
            if not group.strip():
                raise ConfigurationError("Scopes must be non-empty strings")
            scopes.setdefault(group.strip(), None)
            return
        try:
            items = list(group)
        except TypeError:
            raise ConfigurationError(f"Invalid scope entry: {group!r}")
        if not items:
            raise ConfigurationError("Scope groups must not be empty")
        for item in items:
            _walk(item)

    for group in scope_groups:
        _walk(group)
    return list(scopes)


class SessionManager:
    """Single-user session manager with silent refresh and interactive fallback.

    Handles:
    - Client configuration (client id + deduplicated scopes)
    - Token caching with a refresh margin before expiry
    - Silent refresh, falling back to an interactive prompt
    - Authentication state (user id, authenticated flag) with change notification

    Provider calls run outside the state lock; results are re-validated
    against the session epoch before they are committed, so a sign-out or
    user switch that lands mid-refresh wins.

    Usage:
        manager = get_session_manager()
        manager.initialize("client-id", ["User.Read"])

        if await manager.connect():
            print(f"Signed in as {manager.current_user_id}")

        async with await manager.build_authenticated_client() as client:
            profile = await client.me()
    """

    _STATE_ATTRS = {
        "is_initialized": "_initialized",
        "is_authenticated": "_authenticated",
        "current_user_id": "_current_user_id",
    }

    def __init__(
        self,
        provider_factory: ProviderFactory | None = None,
        identity_resolver: IdentityResolver | None = None,
        clock: Callable[[], datetime] = utcnow,
        refresh_margin: timedelta | None = None,
        graph_base_url: str | None = None,
    ):
        """Initialize the session manager.

        Args:
            provider_factory: Builds the credential provider from (client_id, scopes)
            identity_resolver: Resolves a token's owner id (defaults to Graph /me)
            clock: Source of the current UTC time
            refresh_margin: How long before expiry a token is refreshed
            graph_base_url: Graph endpoint for identity lookup and built clients
        """
        self._provider_factory = provider_factory or MsalCredentialProvider
        self._graph_base_url = graph_base_url or settings.graph_base_url
        self._identity_resolver = identity_resolver or self._resolve_with_graph
        self._clock = clock
        self._refresh_margin = (
            refresh_margin
            if refresh_margin is not None
            else timedelta(seconds=settings.refresh_margin_seconds)
        )

        self._lock = threading.Lock()
        self._observers: list[SessionObserver] = []

        self._client_id: str | None = None
        self._scopes: tuple[str, ...] = ()
        self._provider: CredentialProvider | None = None
        self._initialized = False
        self._authenticated = False
        self._current_user_id = ""
        self._cached: AccessToken | None = None
        self._last_acquisition: AcquisitionResult | None = None
        # Bumped whenever the session identity is reset or replaced
        self._epoch = 0

    # Observable state

    @property
    def client_id(self) -> str | None:
        return self._client_id

    @property
    def scopes(self) -> frozenset[str]:
        return frozenset(self._scopes)

    @property
    def is_initialized(self) -> bool:
        return self._initialized

    @property
    def is_authenticated(self) -> bool:
        return self._authenticated

    @property
    def current_user_id(self) -> str:
        return self._current_user_id

    @property
    def cached_token(self) -> AccessToken | None:
        return self._cached

    @property
    def last_acquisition(self) -> AcquisitionResult | None:
        """Result of the most recent acquisition attempt."""
        return self._last_acquisition

    def subscribe(self, observer: SessionObserver) -> Callable[[], None]:
        """Register a callback for state changes.

        Returns:
            A function that removes the callback again
        """
        with self._lock:
            self._observers.append(observer)

        def unsubscribe() -> None:
            with self._lock:
                if observer in self._observers:
                    self._observers.remove(observer)

        return unsubscribe

    def status(self) -> dict[str, Any]:
        """Get a snapshot of the session (never includes the token itself)."""
        with self._lock:
            cached = self._cached
            return {
                "initialized": self._initialized,
                "client_id": self._client_id,
                "scopes": list(self._scopes),
                "authenticated": self._authenticated,
                "current_user_id": self._current_user_id,
                "token_expires_in_seconds": (
                    cached.expires_in_seconds(self._clock()) if cached else None
                ),
            }

    # Lifecycle

    def initialize(self, client_id: str, *scope_groups: Any) -> None:
        """Configure the client identity and scopes.

        Re-initializing an initialized manager signs the session out locally
        first, so no token minted for the old configuration survives.

        Args:
            client_id: Application (client) id
            *scope_groups: One or more scope strings or iterables of them

        Raises:
            ConfigurationError: If client_id is empty or no scopes are given
        """
        if not isinstance(client_id, str) or not client_id.strip():
            raise ConfigurationError("client_id is required")
        if not scope_groups:
            raise ConfigurationError("At least one scope group is required")

        scopes = _flatten_scopes(scope_groups)
        if not scopes:
            raise ConfigurationError("At least one scope is required")

        try:
            provider = self._provider_factory(client_id, scopes)
        except ValueError as e:
            raise ConfigurationError(f"Could not create credential provider: {e}") from e

        with self._lock:
            if self._initialized:
                logger.warning(
                    "Session manager re-initialized; discarding cached credentials for %s",
                    self._client_id,
                )
            self._epoch += 1
            self._cached = None
            self._client_id = client_id
            self._scopes = tuple(scopes)
            self._provider = provider
            changes = self._apply(
                is_authenticated=False,
                current_user_id="",
                is_initialized=True,
            )

        logger.debug("Session manager initialized for %s with scopes %s", client_id, scopes)
        self._notify(changes)

    async def connect(self) -> bool:
        """Establish a session for the remembered (or prompted) user.

        Returns:
            True if a token was obtained and its owner resolved
        """
        with self._lock:
            self._ensure_initialized()
            epoch = self._epoch

        result = await self.acquire_token()
        if not result.succeeded:
            return False

        user_id = await self._resolve_identity(result.token)
        if not user_id:
            return False

        with self._lock:
            if epoch != self._epoch:
                logger.info("Session reset while connecting; connect result discarded")
                return False
            changes = self._apply(current_user_id=user_id, is_authenticated=True)

        self._notify(changes)
        return True

    async def connect_as_another_user(self) -> bool:
        """Prompt interactively, replacing the current user on success.

        Returns:
            True if the new user signed in and was resolved
        """
        with self._lock:
            self._ensure_initialized()
            provider = self._provider
            scopes = list(self._scopes)
            epoch = self._epoch

        result = await self._acquire_interactive(provider, scopes)
        if not result.succeeded:
            self._record(result)
            return False

        user_id = await self._resolve_identity(result.token)
        if not user_id:
            return False

        with self._lock:
            if epoch != self._epoch:
                logger.info("Session reset during sign-in; new user discarded")
                return False
            # Refreshes started for the previous user must not land
            self._epoch += 1
            self._cached = result.token
            self._last_acquisition = result
            changes = self._apply(current_user_id=user_id, is_authenticated=True)

        self._notify(changes)
        return True

    async def sign_out(self) -> None:
        """Forget all remembered principals and clear the local session."""
        with self._lock:
            self._ensure_initialized()
            provider = self._provider
            self._epoch += 1
            self._cached = None
            changes = self._apply(is_authenticated=False, current_user_id="")

        self._notify(changes)

        for principal in await self._list_remembered(provider):
            try:
                await provider.forget(principal)
            except Exception:
                logger.warning("Could not forget principal %s", principal.id, exc_info=True)

    # Tokens

    async def get_valid_token(self) -> str | None:
        """Get a currently valid access token.

        Returns:
            The bearer token, or None if none could be obtained
        """
        result = await self.acquire_token()
        return result.token.token if result.succeeded else None

    async def acquire_token(self) -> AcquisitionResult:
        """Run the refresh policy and report how it went.

        1. Nothing cached: silent for the most recent principal, else prompt
        2. Cached and outside the refresh margin: return it unchanged
        3. Cached but inside the margin: silent for the earliest principal
        4. Silent failure always falls back to a single interactive prompt
        """
        with self._lock:
            self._ensure_initialized()
            provider = self._provider
            scopes = list(self._scopes)
            epoch = self._epoch
            cached = self._cached

        if cached is not None and not cached.needs_refresh(self._clock(), self._refresh_margin):
            return self._record(AcquisitionResult.success(cached))

        principals = await self._list_remembered(provider)
        token = None
        if principals:
            principal = principals[-1] if cached is None else principals[0]
            token = await self._acquire_silent(provider, scopes, principal)
        else:
            logger.info("No remembered principal; skipping silent acquisition")

        if token is not None:
            result = AcquisitionResult.success(token)
        else:
            result = await self._acquire_interactive(provider, scopes)

        return self._commit(result, epoch)

    async def build_authenticated_client(
        self, refresh_per_request: bool = False, **client_kwargs: Any
    ) -> GraphClient:
        """Build a Graph client that signs every request with a bearer token.

        Args:
            refresh_per_request: Fetch a valid token for each request instead
                of fixing the token at construction time
            **client_kwargs: Passed through to GraphClient

        Raises:
            NoTokenError: If no token can be obtained
        """
        token = await self.get_valid_token()
        if not token:
            raise NoTokenError()

        auth = SessionTokenAuth(self) if refresh_per_request else BearerTokenAuth(token)
        client_kwargs.setdefault("base_url", self._graph_base_url)
        return GraphClient(auth, **client_kwargs)

    # Internals

    def _ensure_initialized(self) -> None:
        if not self._initialized:
            raise NotInitializedError()

    def _apply(self, **values: Any) -> list[SessionChange]:
        """Set observable attributes; caller holds the lock."""
        changes = []
        for name, new_value in values.items():
            attr = self._STATE_ATTRS[name]
            old_value = getattr(self, attr)
            if old_value != new_value:
                setattr(self, attr, new_value)
                changes.append(SessionChange(name, old_value, new_value))
        return changes

    def _notify(self, changes: list[SessionChange]) -> None:
        if not changes:
            return
        with self._lock:
            observers = list(self._observers)
        for change in changes:
            for observer in observers:
                try:
                    observer(change)
                except Exception:
                    logger.warning(
                        "Session observer failed on %s change", change.property_name, exc_info=True
                    )

    def _record(self, result: AcquisitionResult) -> AcquisitionResult:
        with self._lock:
            self._last_acquisition = result
        return result

    def _commit(self, result: AcquisitionResult, epoch: int) -> AcquisitionResult:
        """Store an acquired token unless the session moved on meanwhile."""
        with self._lock:
            current = self._cached
            if epoch != self._epoch:
                logger.info("Session reset during token acquisition; result discarded")
                if current is not None and not current.needs_refresh(
                    self._clock(), self._refresh_margin
                ):
                    # A user switch already stored a fresh token for the new session
                    result = AcquisitionResult.success(current)
                else:
                    result = AcquisitionResult(
                        AcquisitionStatus.FAILED,
                        error=SessionError("Session was reset during token acquisition"),
                    )
            elif result.succeeded:
                if current is not None and current.expires_on > result.token.expires_on:
                    # A concurrent refresh already stored a longer-lived token
                    result = AcquisitionResult.success(current)
                else:
                    self._cached = result.token
            self._last_acquisition = result
        return result

    async def _list_remembered(self, provider: CredentialProvider) -> list[Principal]:
        try:
            return list(await provider.list_remembered())
        except Exception:
            logger.warning("Could not list remembered principals", exc_info=True)
            return []

    async def _acquire_silent(
        self, provider: CredentialProvider, scopes: list[str], principal: Principal
    ) -> AccessToken | None:
        try:
            token = await provider.acquire_silent(scopes, principal)
        except CredentialAcquisitionError as e:
            logger.info("Silent token acquisition failed for %s: %s", principal.id, e)
            return None
        except Exception:
            logger.warning("Unexpected error during silent token acquisition", exc_info=True)
            return None

        if token is None:
            logger.info("Silent token acquisition returned nothing for %s", principal.id)
        return token

    async def _acquire_interactive(
        self, provider: CredentialProvider, scopes: list[str]
    ) -> AcquisitionResult:
        try:
            token = await provider.acquire_interactive(scopes)
        except InteractionCancelledError as e:
            logger.info("Interactive sign-in cancelled: %s", e)
            return AcquisitionResult.failure(e)
        except CredentialAcquisitionError as e:
            logger.warning("Interactive token acquisition failed: %s", e)
            return AcquisitionResult.failure(e)
        except Exception as e:
            logger.warning("Unexpected error during interactive token acquisition", exc_info=True)
            return AcquisitionResult.failure(e)

        if token is None:
            return AcquisitionResult.failure(
                CredentialAcquisitionError(
                    "Interactive acquisition returned no token", error_code="empty_result"
                )
            )
        return AcquisitionResult.success(token)

    async def _resolve_identity(self, token: AccessToken) -> str | None:
        try:
            user_id = await self._identity_resolver(token.token)
        except Exception:
            logger.warning("Could not resolve the signed-in user", exc_info=True)
            return None
        if not user_id:
            logger.warning("Identity resolver returned an empty user id")
            return None
        return user_id

    async def _resolve_with_graph(self, token: str) -> str:
        return await resolve_user_id(token, base_url=self._graph_base_url)


_instance: SessionManager | None = None
_instance_lock = threading.Lock()


def get_session_manager() -> SessionManager:
    """Get the process-wide session manager, creating it on first use."""
    global _instance
    if _instance is None:
        with _instance_lock:
            if _instance is None:
                _instance = SessionManager()
    return _instance


def reset_session_manager() -> None:
    """Drop the process-wide session manager."""
    global _instance
    with _instance_lock:
        _instance = None
