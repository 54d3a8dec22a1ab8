"""Shared pytest fixtures."""

import asyncio
from collections.abc import Awaitable, Callable

import pytest

from converge import (
    ClientConfig,
    MemoryTransport,
    ResourceCache,
    ResourceClient,
    RetryPolicy,
)


@pytest.fixture
def cache() -> ResourceCache:
    """Create a fresh ResourceCache for each test."""
    return ResourceCache()


@pytest.fixture
def sleeps() -> list[float]:
    """Delays passed to the retry policy's sleep."""
    return []


@pytest.fixture
def retry(sleeps: list[float]) -> RetryPolicy:
    """Retry policy that records its delays instead of sleeping."""

    async def record(delay: float) -> None:
        sleeps.append(delay)

    return RetryPolicy(max_attempts=3, base_delay="100ms", jitter=False, sleep=record)


@pytest.fixture
def transport() -> MemoryTransport:
    """Create an in-process transport with no routes."""
    return MemoryTransport()


@pytest.fixture
def client(retry: RetryPolicy, transport: MemoryTransport) -> ResourceClient:
    """Create a client whose reads stay fresh for a minute."""
    return ResourceClient(
        config=ClientConfig(stale_time="1m"),
        retry=retry,
        transport=transport,
    )


@pytest.fixture
def settle() -> Callable[[], Awaitable[None]]:
    """Let scheduled tasks run until they block."""

    async def run() -> None:
        for _ in range(20):
            await asyncio.sleep(0)

    return run
