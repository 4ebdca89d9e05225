"""Shared test fixtures for the delivery pipeline."""
import asyncio
from typing import Optional, Union

import pytest

from channels.base import MessagingClient, SendResult
from config.settings import QueueConfig, RateLimitConfig
from job_queue.dispatcher import QueueDispatcher
from job_queue.jobs import EffectRegistry
from job_queue.store_memory import InMemoryJobStore
from job_queue.supersession import ChannelTracker
from models.schemas import MessageOptions


class FakeClock:
    """Millisecond clock that only moves when told to."""

    def __init__(self, start: float = 1_700_000_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, ms: float) -> None:
        self.now += ms


class RecordingClient(MessagingClient):
    """
    MessagingClient that records every send. Scripted outcomes are consumed
    in order; once the script is empty every send succeeds.
    """

    def __init__(self, script: list[Union[SendResult, Exception]] = None):
        self.sent: list[tuple[str, str, Optional[MessageOptions]]] = []
        self.script = list(script or [])
        self.closed = False
        self._next_id = 100

    async def send(self, target: str, content: str, options: Optional[MessageOptions] = None) -> SendResult:
        self.sent.append((target, content, options))
        if self.script:
            outcome = self.script.pop(0)
            if isinstance(outcome, Exception):
                raise outcome
            return outcome
        self._next_id += 1
        return SendResult.ok(self._next_id)

    async def close(self) -> None:
        self.closed = True

    @property
    def texts(self) -> list[str]:
        return [text for _, text, _ in self.sent]


async def wait_for(predicate, timeout: float = 2.0, interval: float = 0.01) -> None:
    """Poll `predicate` until true or fail the test."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met before timeout")
        await asyncio.sleep(interval)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def queue_config() -> QueueConfig:
    return QueueConfig(
        concurrency=1,
        poll_interval=0.01,
        maintenance_interval=0.05,
        dispatch_rate_limit=1000,
        lease_timeout_ms=30000,
    )


@pytest.fixture
def rate_limit_config() -> RateLimitConfig:
    return RateLimitConfig()


@pytest.fixture
def store(queue_config, clock) -> InMemoryJobStore:
    return InMemoryJobStore(queue_config, clock=clock)


@pytest.fixture
def client() -> RecordingClient:
    return RecordingClient()


@pytest.fixture
def effects() -> EffectRegistry:
    return EffectRegistry()


@pytest.fixture
def tracker(store, effects, queue_config) -> ChannelTracker:
    return ChannelTracker(store, queue_config.channel_tracking_ttl_seconds, effects)


@pytest.fixture
def dispatcher(store, client, tracker, effects, queue_config) -> QueueDispatcher:
    return QueueDispatcher(store, client, tracker, effects, queue_config)
