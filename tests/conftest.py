"""Shared fixtures for rate limit tests."""

import pytest

from izibrokerz.app.ratelimit.backends import InMemoryBucketBackend
from izibrokerz.app.ratelimit.gate import RateLimitGate
from izibrokerz.app.ratelimit.metrics import RateLimitMetrics


class FakeClock:
    """Manually advanced seconds source for bucket backends."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def memory_backend(clock):
    return InMemoryBucketBackend(clock=clock)


@pytest.fixture
def metrics():
    return RateLimitMetrics()


@pytest.fixture
def gate(memory_backend, metrics):
    return RateLimitGate(backend=memory_backend, metrics=metrics)
