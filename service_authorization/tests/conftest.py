"""
Shared fixtures for Authorization Service tests.
"""

import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from service_authorization.app.cache.backends import MemoryCacheBackend
from service_authorization.app.permissions.models import AuthenticatedUser, Role


class FakeClock:
    """Controllable UTC clock."""

    def __init__(self, start: datetime = None):
        self.now = start or datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)


class DummyMetrics:
    """Minimal metrics collector stub."""

    def __init__(self):
        self.counters = []
        self.histograms = []
        self.gauges = []

    def increment_counter(self, metric_name: str, amount: float = 1, **labels):
        self.counters.append((metric_name, amount, labels))

    def observe_histogram(self, metric_name: str, value: float, **labels):
        self.histograms.append((metric_name, value, labels))

    def set_gauge(self, metric_name: str, value: float, **labels):
        self.gauges.append((metric_name, value, labels))


class GatedBackend(MemoryCacheBackend):
    """Memory backend that holds writes until ``release`` is set.

    Build it inside a running event loop.
    """

    def __init__(self):
        super().__init__()
        self.entered = asyncio.Event()
        self.release = asyncio.Event()

    async def set(self, key, value, ttl_seconds):
        self.entered.set()
        await self.release.wait()
        await super().set(key, value, ttl_seconds)


def make_user(user_id: str, role: Role) -> AuthenticatedUser:
    return AuthenticatedUser(id=user_id, email=f"{user_id}@example.org", role=role)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def admin_user():
    return make_user("a1", Role.ADMIN)


@pytest.fixture
def dinas_user():
    return make_user("u1", Role.DINAS)


@pytest.fixture
def popt_user():
    return make_user("p1", Role.POPT)


@pytest.fixture
def ppl_user():
    return make_user("u9", Role.PPL)
