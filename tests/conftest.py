"""Shared test fixtures for the graph-session test suite."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock

import pytest

from graph_session.auth.manager import SessionManager, reset_session_manager
from graph_session.auth.provider import AccessToken, InteractionCancelledError, Principal

SAMPLE_CLIENT_ID = "app-1"
SAMPLE_USER_ID = "user_test789"
SAMPLE_OTHER_USER_ID = "user_other456"
START_TIME = datetime(2024, 1, 15, 10, 0, tzinfo=timezone.utc)


class FakeClock:
    """Manually advanced UTC clock."""

    def __init__(self, start: datetime = START_TIME):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


class FakeCredentialProvider:
    """Scripted credential provider.

    Queue outcomes (AccessToken, None or an exception) in ``silent_results``
    and ``interactive_results``; an empty interactive queue behaves like the
    user closing the prompt.
    """

    def __init__(self, clock: FakeClock):
        self.clock = clock
        self.principals: list[Principal] = []
        self.silent_results: list = []
        self.interactive_results: list = []
        self.silent_calls: list[Principal] = []
        self.interactive_calls = 0
        self.forgotten: list[Principal] = []
        self.prompted_principal = Principal(id="principal-prompted", username="user@example.com")

    def token(self, value: str, expires_in: int = 3600) -> AccessToken:
        return AccessToken(token=value, expires_on=self.clock() + timedelta(seconds=expires_in))

    async def acquire_silent(self, scopes, principal):
        self.silent_calls.append(principal)
        outcome = self.silent_results.pop(0) if self.silent_results else None
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    async def acquire_interactive(self, scopes):
        self.interactive_calls += 1
        if self.interactive_results:
            outcome = self.interactive_results.pop(0)
        else:
            outcome = InteractionCancelledError("User closed the prompt", error_code="user_canceled")
        if isinstance(outcome, Exception):
            raise outcome
        if outcome is not None and self.prompted_principal not in self.principals:
            self.principals.append(self.prompted_principal)
        return outcome

    async def list_remembered(self):
        return list(self.principals)

    async def forget(self, principal):
        self.forgotten.append(principal)
        self.principals.remove(principal)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def provider(clock):
    return FakeCredentialProvider(clock)


@pytest.fixture
def identity_resolver():
    return AsyncMock(return_value=SAMPLE_USER_ID)


@pytest.fixture
def provider_factory(provider):
    """Factory that records the configuration it was built with."""
    calls = []

    def _factory(client_id, scopes):
        calls.append((client_id, list(scopes)))
        return provider

    _factory.calls = calls
    return _factory


@pytest.fixture
def manager(provider_factory, identity_resolver, clock):
    """Uninitialized SessionManager wired to fakes."""
    return SessionManager(
        provider_factory=provider_factory,
        identity_resolver=identity_resolver,
        clock=clock,
        graph_base_url="https://graph.test/v1.0",
    )


@pytest.fixture
def initialized_manager(manager):
    manager.initialize(SAMPLE_CLIENT_ID, ["User.Read"])
    return manager


@pytest.fixture(autouse=True)
def _reset_global_manager():
    reset_session_manager()
    yield
    reset_session_manager()
