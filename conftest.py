"""
Shared pytest fixtures for the admission pipeline test suites.
"""

from typing import Any, Iterable, List, Mapping, Optional

import pytest

from service_admission.app.auth.authenticator import Authenticator
from service_admission.app.domain.models import Principal, Request
from service_admission.app.lifecycle.shutdown import ShutdownCoordinator
from service_admission.app.pipeline.pipeline import Pipeline
from service_admission.app.ratelimit.token_bucket import TokenBucketRateLimiter
from service_admission.app.validation.validator import Validator
from shared.errors import ForbiddenError, UnauthorizedError
from shared.metrics import MetricsCollector
from shared.test_helpers import FakeClock, TestDataFactory, TestUser


class StaticVerifier:
    """Credential verifier backed by a fixed token table.

    Tokens listed in ``forbidden`` raise :class:`ForbiddenError`. Every call
    is recorded in ``calls``.
    """

    def __init__(self, users: Iterable[TestUser] = (), forbidden: Iterable[str] = ()):
        self._users = {user.token: user for user in users}
        self._forbidden = set(forbidden)
        self.calls: List[str] = []

    async def __call__(self, credential: str) -> Principal:
        self.calls.append(credential)
        if credential in self._forbidden:
            raise ForbiddenError("Account suspended")
        user = self._users.get(credential)
        if user is None:
            raise UnauthorizedError("Invalid token")
        return Principal(subject=user.user_id, scopes=frozenset(user.scopes))


def build_request(
    method: str = "GET",
    path: str = "/api/v1/orders",
    *,
    headers: Optional[Mapping[str, str]] = None,
    query: Optional[Mapping[str, Any]] = None,
    body: Any = None,
    client_host: Optional[str] = "10.0.0.1",
    token: Optional[str] = None,
) -> Request:
    """Build a pipeline request, optionally carrying a bearer token."""
    all_headers = dict(headers or {})
    if token is not None:
        all_headers["Authorization"] = f"Bearer {token}"
    return Request(
        method=method,
        path=path,
        headers=all_headers,
        query=query or {},
        body=body,
        client_host=client_host,
    )


@pytest.fixture
def fake_clock():
    """Clock starting at t=0 that only moves when advanced."""
    return FakeClock()


@pytest.fixture
def test_users():
    return TestDataFactory.create_test_users()


@pytest.fixture
def verifier(test_users):
    """Verifier accepting the factory users' tokens."""
    return StaticVerifier(test_users, forbidden=["token-suspended"])


@pytest.fixture
def make_request():
    """Factory fixture for pipeline requests."""
    return build_request


@pytest.fixture
def metrics():
    return MetricsCollector("admission")


@pytest.fixture
def make_pipeline(fake_clock, verifier, metrics):
    """Factory for pipelines on the fake clock with tunable limits."""

    def _make(
        capacity: float = 10,
        refill_per_second: float = 1.0,
        drain_timeout_seconds: float = 5.0,
        **kwargs: Any,
    ) -> Pipeline:
        limiter = TokenBucketRateLimiter(capacity, refill_per_second, clock=fake_clock)
        shutdown = ShutdownCoordinator(drain_timeout_seconds, clock=fake_clock)
        kwargs.setdefault("validator", Validator())
        return Pipeline(
            limiter,
            Authenticator(kwargs.pop("verifier", verifier)),
            kwargs.pop("validator"),
            shutdown=shutdown,
            metrics=metrics,
            **kwargs,
        )

    return _make
