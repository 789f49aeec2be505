"""
Shared test helpers: a manual clock and loop settling.
"""
import asyncio

import pytest

from observability.event_store import event_store


class FakeClock:
    """Monotonic clock advanced only by the injected sleep."""

    def __init__(self, start: float = 0.0):
        self.t = start
        self.sleeps = []

    def now(self) -> float:
        return self.t

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.t += seconds
        await asyncio.sleep(0)


async def settle(rounds: int = 20) -> None:
    """Let scheduled tasks and call_soon callbacks run."""
    for _ in range(rounds):
        await asyncio.sleep(0)


async def block_forever(_seconds: float) -> None:
    await asyncio.Event().wait()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture(autouse=True)
def clean_event_store():
    event_store.clear()
    yield
    event_store.clear()
