"""
Tests for job store backends.

Covers:
  - InMemoryJobStore: priority/FIFO claim order, delays, retries with
    backoff, exhaustion, leases and stalled recovery, lease tokens,
    pause/clear, pointers
  - QueueJob serialisation and validation
  - RedisJobStore score layout, error translation, and the Lua scripts
    themselves against fakeredis
  - Store factory (memory vs redis selection)
"""
from unittest.mock import AsyncMock, MagicMock

import pytest
import pytest_asyncio
from fakeredis import FakeServer
from fakeredis.aioredis import FakeRedis
from redis.exceptions import ConnectionError as RedisConnectionError

from config.settings import QueueConfig
from core.errors import BackingStoreError
from job_queue.jobs import QueueJob
from job_queue.store_factory import create_job_store
from job_queue.store_memory import InMemoryJobStore
from job_queue.store_redis import RedisJobStore, wait_score
from models.channel import ActionChannels
from models.schemas import JobKind, JobState, MessageOptions


def message_job(chat_id="100", text="hi", priority=0, **kwargs) -> QueueJob:
    return QueueJob(kind=JobKind.MESSAGE, target=chat_id, text=text, priority=priority, **kwargs)


# ──────────────────────────────────────────────────────────────
#  Enqueue & claim order
# ──────────────────────────────────────────────────────────────

class TestClaimOrder:
    @pytest.mark.asyncio
    async def test_enqueue_assigns_increasing_ids(self, store):
        first = await store.enqueue(message_job())
        second = await store.enqueue(message_job())
        assert int(second) > int(first)
        job = await store.get_job(first)
        assert job.state == JobState.WAITING.value

    @pytest.mark.asyncio
    async def test_higher_priority_claimed_first(self, store):
        for priority in (-10, 0, 10):
            await store.enqueue(message_job(text=str(priority), priority=priority))
        claimed = [(await store.claim_next()).text for _ in range(3)]
        assert claimed == ["10", "0", "-10"]

    @pytest.mark.asyncio
    async def test_fifo_within_priority(self, store):
        for text in ("a", "b", "c"):
            await store.enqueue(message_job(text=text))
        claimed = [(await store.claim_next()).text for _ in range(3)]
        assert claimed == ["a", "b", "c"]

    @pytest.mark.asyncio
    async def test_claim_empty_returns_none(self, store):
        assert await store.claim_next() is None

    @pytest.mark.asyncio
    async def test_claim_increments_attempt_and_activates(self, store):
        job_id = await store.enqueue(message_job())
        job = await store.claim_next()
        assert job.job_id == job_id
        assert job.attempt == 1
        assert job.state == JobState.ACTIVE.value
        stats = await store.counts()
        assert stats.active == 1
        assert stats.waiting == 0

    @pytest.mark.asyncio
    async def test_delayed_job_waits_for_ready_time(self, store, clock):
        await store.enqueue(message_job(), delay_ms=1000)
        assert (await store.counts()).delayed == 1
        assert await store.claim_next() is None
        clock.advance(1000)
        job = await store.claim_next()
        assert job is not None
        assert (await store.counts()).delayed == 0

    def test_priority_out_of_range_rejected(self):
        with pytest.raises(ValueError):
            message_job(priority=5000)


# ──────────────────────────────────────────────────────────────
#  Outcomes
# ──────────────────────────────────────────────────────────────

class TestOutcomes:
    @pytest.mark.asyncio
    async def test_mark_completed(self, store):
        job_id = await store.enqueue(message_job())
        claimed = await store.claim_next()
        assert await store.mark_completed(claimed, {"success": True})
        job = await store.get_job(job_id)
        assert job.state == JobState.COMPLETED.value
        assert job.result == {"success": True}
        assert (await store.counts()).completed == 1

    @pytest.mark.asyncio
    async def test_report_for_unclaimed_job_ignored(self, store):
        job_id = await store.enqueue(message_job())
        unclaimed = await store.get_job(job_id)
        assert await store.mark_completed(unclaimed) is False
        assert await store.mark_failed(unclaimed, "boom") is None

    @pytest.mark.asyncio
    async def test_second_completion_ignored(self, store):
        await store.enqueue(message_job())
        claimed = await store.claim_next()
        assert await store.mark_completed(claimed)
        assert await store.mark_completed(claimed) is False
        assert (await store.counts()).completed == 1

    @pytest.mark.asyncio
    async def test_failure_schedules_exponential_backoff(self, store, clock):
        await store.enqueue(message_job())

        claimed = await store.claim_next()
        first = await store.mark_failed(claimed, "boom")
        assert first.retried and first.attempt == 1 and first.delay_ms == 2000

        clock.advance(1999)
        assert await store.claim_next() is None
        clock.advance(1)
        job = await store.claim_next()
        assert job.attempt == 2

        second = await store.mark_failed(job, "boom")
        assert second.retried and second.delay_ms == 4000

    @pytest.mark.asyncio
    async def test_explicit_retry_delay(self, store, clock):
        job_id = await store.enqueue(message_job())
        claimed = await store.claim_next()
        outcome = await store.mark_failed(claimed, "429", retry_delay_ms=5000)
        assert outcome.delay_ms == 5000
        clock.advance(4999)
        assert await store.claim_next() is None
        clock.advance(1)
        assert (await store.claim_next()).job_id == job_id

    @pytest.mark.asyncio
    async def test_exhaustion_after_max_attempts(self, store, clock):
        job_id = await store.enqueue(message_job(max_attempts=3))
        for _ in range(2):
            claimed = await store.claim_next()
            assert (await store.mark_failed(claimed, "boom")).retried
            clock.advance(10_000)
        claimed = await store.claim_next()
        final = await store.mark_failed(claimed, "boom")
        assert not final.retried
        assert final.attempt == 3
        job = await store.get_job(job_id)
        assert job.state == JobState.FAILED.value
        assert job.last_error == "boom"
        assert (await store.counts()).failed == 1

    @pytest.mark.asyncio
    async def test_non_retryable_fails_immediately(self, store):
        await store.enqueue(message_job())
        claimed = await store.claim_next()
        outcome = await store.mark_failed(claimed, "gone", retryable=False)
        assert not outcome.retried
        assert (await store.counts()).failed == 1

    @pytest.mark.asyncio
    async def test_finished_jobs_pruned_after_retention(self, queue_config, clock):
        queue_config.completed_retention_seconds = 10
        store = InMemoryJobStore(queue_config, clock=clock)
        job_id = await store.enqueue(message_job())
        await store.mark_completed(await store.claim_next())
        clock.advance(10_001)
        await store.claim_next()
        assert await store.get_job(job_id) is None
        assert (await store.counts()).completed == 1


# ──────────────────────────────────────────────────────────────
#  Remove / clear / pause
# ──────────────────────────────────────────────────────────────

class TestQueueControl:
    @pytest.mark.asyncio
    async def test_remove_waiting_job(self, store):
        job_id = await store.enqueue(message_job())
        assert await store.remove(job_id)
        assert (await store.get_job(job_id)).state == JobState.REMOVED.value
        assert await store.claim_next() is None

    @pytest.mark.asyncio
    async def test_remove_delayed_job(self, store):
        job_id = await store.enqueue(message_job(), delay_ms=500)
        assert await store.remove(job_id)
        assert (await store.counts()).delayed == 0

    @pytest.mark.asyncio
    async def test_cannot_remove_active_job(self, store):
        job_id = await store.enqueue(message_job())
        await store.claim_next()
        assert await store.remove(job_id) is False

    @pytest.mark.asyncio
    async def test_remove_unknown_job(self, store):
        assert await store.remove("999") is False

    @pytest.mark.asyncio
    async def test_pause_blocks_claims(self, store):
        await store.enqueue(message_job())
        await store.pause()
        assert await store.is_paused()
        assert await store.claim_next() is None
        assert (await store.counts()).paused
        await store.resume()
        assert await store.claim_next() is not None

    @pytest.mark.asyncio
    async def test_enqueue_while_paused(self, store):
        await store.pause()
        await store.enqueue(message_job())
        assert (await store.counts()).waiting == 1

    @pytest.mark.asyncio
    async def test_clear_removes_waiting_and_delayed(self, store):
        await store.enqueue(message_job(text="a"))
        await store.enqueue(message_job(text="b"), delay_ms=1000)
        await store.enqueue(message_job(text="c", priority=10))
        active = await store.claim_next()

        removed = await store.clear()

        assert sorted(job.text for job in removed) == ["a", "b"]
        stats = await store.counts()
        assert stats.waiting == 0 and stats.delayed == 0 and stats.active == 1
        assert await store.mark_completed(active)


# ──────────────────────────────────────────────────────────────
#  Leases & stalled recovery
# ──────────────────────────────────────────────────────────────

class TestStalledRecovery:
    @pytest.mark.asyncio
    async def test_expired_lease_requeued(self, store, clock):
        job_id = await store.enqueue(message_job())
        await store.claim_next()
        clock.advance(30_000)

        recovered = await store.recover_stalled()

        assert [(s.job_id, s.state) for s in recovered] == [(job_id, JobState.WAITING)]
        job = await store.claim_next()
        assert job.job_id == job_id
        assert job.attempt == 2

    @pytest.mark.asyncio
    async def test_live_lease_not_recovered(self, store, clock):
        await store.enqueue(message_job())
        await store.claim_next()
        clock.advance(29_999)
        assert await store.recover_stalled() == []

    @pytest.mark.asyncio
    async def test_extend_lease(self, store, clock):
        await store.enqueue(message_job())
        claimed = await store.claim_next()
        clock.advance(20_000)
        assert await store.extend_lease(claimed)
        clock.advance(20_000)
        assert await store.recover_stalled() == []

    @pytest.mark.asyncio
    async def test_stalled_out_of_attempts_fails(self, store, clock):
        job_id = await store.enqueue(message_job(max_attempts=1))
        await store.claim_next()
        clock.advance(30_000)
        recovered = await store.recover_stalled()
        assert recovered[0].state == JobState.FAILED
        assert (await store.get_job(job_id)).state == JobState.FAILED.value

    @pytest.mark.asyncio
    async def test_late_report_after_recovery_ignored(self, store, clock):
        await store.enqueue(message_job())
        claimed = await store.claim_next()
        clock.advance(30_000)
        await store.recover_stalled()
        assert await store.mark_completed(claimed) is False
        assert await store.extend_lease(claimed) is False

    @pytest.mark.asyncio
    async def test_report_from_previous_claim_ignored(self, store, clock):
        job_id = await store.enqueue(message_job())
        first = await store.claim_next()
        clock.advance(30_000)
        await store.recover_stalled()
        second = await store.claim_next()
        assert second.lease != first.lease

        assert await store.mark_failed(first, "late", retryable=False) is None
        assert await store.mark_completed(first) is False
        assert await store.extend_lease(first) is False

        assert await store.mark_completed(second)
        job = await store.get_job(job_id)
        assert job.state == JobState.COMPLETED.value
        assert (await store.counts()).failed == 0


# ──────────────────────────────────────────────────────────────
#  Channel pointers
# ──────────────────────────────────────────────────────────────

class TestPointers:
    @pytest.mark.asyncio
    async def test_pointer_expires(self, store, clock):
        await store.set_pointer("k", "1", 300)
        assert await store.get_pointer("k") == "1"
        clock.advance(300_000)
        assert await store.get_pointer("k") is None

    @pytest.mark.asyncio
    async def test_delete_pointer_if_matches(self, store):
        await store.set_pointer("k", "1", 300)
        assert await store.delete_pointer_if("k", "2") is False
        assert await store.get_pointer("k") == "1"
        assert await store.delete_pointer_if("k", "1")
        assert await store.get_pointer("k") is None

    @pytest.mark.asyncio
    async def test_enqueue_points_replaceable_channel_at_job(self, store):
        nav = ActionChannels.UserInterface.navigation
        job_id = await store.enqueue(message_job(channel=nav.to_dict()), pointer_ttl=300)
        assert await store.get_pointer(nav.tracking_key("100")) == job_id

    @pytest.mark.asyncio
    async def test_enqueue_leaves_other_jobs_untracked(self, store):
        nav = ActionChannels.UserInterface.navigation
        game = ActionChannels.Game.action
        await store.enqueue(message_job(channel=game.to_dict()), pointer_ttl=300)
        await store.enqueue(message_job(channel=nav.to_dict()))
        assert await store.get_pointer(game.tracking_key("100")) is None
        assert await store.get_pointer(nav.tracking_key("100")) is None


# ──────────────────────────────────────────────────────────────
#  QueueJob
# ──────────────────────────────────────────────────────────────

class TestQueueJob:
    def test_serialised_form_is_all_strings(self):
        job = message_job(
            options=MessageOptions(parse_mode="HTML").model_dump(exclude_none=True),
            channel=ActionChannels.UserInterface.navigation.to_dict(),
        )
        data = job.to_dict()
        assert all(isinstance(v, str) for v in data.values())

        restored = QueueJob.from_dict(data)
        assert restored.action_channel == ActionChannels.UserInterface.navigation
        assert restored.has_replaceable_channel
        assert restored.message_options.parse_mode == "HTML"
        assert restored.tracking_key == "channel:UserInterface:navigation:user:100"

    def test_job_without_channel(self):
        restored = QueueJob.from_dict(message_job().to_dict())
        assert restored.channel is None
        assert restored.tracking_key is None
        assert restored.message_options is None


# ──────────────────────────────────────────────────────────────
#  RedisJobStore & factory
# ──────────────────────────────────────────────────────────────

def mock_redis():
    redis = MagicMock()
    redis.register_script.side_effect = lambda source: AsyncMock(name="script")
    return redis


class TestRedisJobStore:
    def test_wait_score_orders_priority_then_seq(self):
        scores = [wait_score(10, 5), wait_score(0, 1), wait_score(0, 2), wait_score(-10, 0)]
        assert scores == sorted(scores)

    def test_keys_use_queue_name(self):
        store = RedisJobStore(mock_redis(), QueueConfig(name="q"))
        assert store.keys["wait"] == "q:wait"
        assert store.job_key("7") == "q:job:7"

    @pytest.mark.asyncio
    async def test_claim_maps_script_reply(self, clock):
        redis = mock_redis()
        store = RedisJobStore(redis, QueueConfig(), clock=clock)
        reply = message_job(text="hello").to_dict()
        reply.update(job_id="3", state="active", attempt="1")
        store._claim.return_value = [item for pair in reply.items() for item in pair]

        job = await store.claim_next()

        assert job.job_id == "3"
        assert job.text == "hello"
        assert job.attempt == 1

    @pytest.mark.asyncio
    async def test_mark_failed_ignored_when_not_active(self):
        store = RedisJobStore(mock_redis(), QueueConfig())
        store._fail.return_value = [-1, 0, 0]
        assert await store.mark_failed(message_job(job_id="3", lease="stale"), "boom") is None
        assert store._fail.call_args.kwargs["args"][-1] == "stale"

    @pytest.mark.asyncio
    async def test_report_without_lease_never_reaches_redis(self):
        store = RedisJobStore(mock_redis(), QueueConfig())
        unclaimed = message_job(job_id="3")
        assert await store.mark_completed(unclaimed) is False
        assert await store.mark_failed(unclaimed, "boom") is None
        assert await store.extend_lease(unclaimed) is False
        store._complete.assert_not_called()
        store._fail.assert_not_called()
        store._extend.assert_not_called()

    @pytest.mark.asyncio
    async def test_enqueue_writes_pointer_inside_transaction(self, clock):
        redis = mock_redis()
        redis.incr = AsyncMock(return_value=7)
        pipe = MagicMock()
        pipe.execute = AsyncMock(return_value=[])
        redis.pipeline.return_value = pipe
        store = RedisJobStore(redis, QueueConfig(), clock=clock)
        nav = ActionChannels.UserInterface.navigation

        job_id = await store.enqueue(message_job(channel=nav.to_dict()), pointer_ttl=300)

        assert job_id == "7"
        redis.pipeline.assert_called_once_with(transaction=True)
        calls = [name for name, _, _ in pipe.method_calls if name != "execute"]
        assert calls == ["hset", "setex", "zadd"]
        pipe.setex.assert_called_once_with(nav.tracking_key("100"), 300, "7")

    @pytest.mark.asyncio
    async def test_redis_errors_become_backing_store_errors(self):
        store = RedisJobStore(mock_redis(), QueueConfig())
        store._claim.side_effect = RedisConnectionError("down")
        with pytest.raises(BackingStoreError) as exc:
            await store.claim_next()
        assert exc.value.operation == "claim_next"


# ──────────────────────────────────────────────────────────────
#  RedisJobStore Lua scripts (fakeredis)
# ──────────────────────────────────────────────────────────────

@pytest_asyncio.fixture
async def redis_store(queue_config, clock):
    redis = FakeRedis(server=FakeServer(), decode_responses=True)
    yield RedisJobStore(redis, queue_config, clock=clock)
    await redis.aclose()


class TestRedisJobStoreScripts:
    @pytest.mark.asyncio
    async def test_claim_order_priority_then_fifo(self, redis_store):
        for text, priority in (("low", -10), ("a", 0), ("b", 0), ("high", 10)):
            await redis_store.enqueue(message_job(text=text, priority=priority))
        claimed = [(await redis_store.claim_next()).text for _ in range(4)]
        assert claimed == ["high", "a", "b", "low"]
        assert await redis_store.claim_next() is None

    @pytest.mark.asyncio
    async def test_claim_activates_with_lease(self, redis_store):
        job_id = await redis_store.enqueue(message_job())
        job = await redis_store.claim_next()
        assert job.job_id == job_id
        assert job.attempt == 1
        assert job.state == JobState.ACTIVE.value
        assert job.lease
        stats = await redis_store.counts()
        assert stats.active == 1 and stats.waiting == 0

    @pytest.mark.asyncio
    async def test_backoff_then_exhaustion(self, redis_store, clock):
        job_id = await redis_store.enqueue(message_job(max_attempts=3))

        first = await redis_store.mark_failed(await redis_store.claim_next(), "boom")
        assert first.retried and first.attempt == 1 and first.delay_ms == 2000
        clock.advance(1999)
        assert await redis_store.claim_next() is None
        clock.advance(1)

        second = await redis_store.mark_failed(await redis_store.claim_next(), "boom")
        assert second.retried and second.attempt == 2 and second.delay_ms == 4000
        clock.advance(4000)

        final = await redis_store.mark_failed(await redis_store.claim_next(), "boom")
        assert not final.retried and final.attempt == 3
        job = await redis_store.get_job(job_id)
        assert job.state == JobState.FAILED.value
        assert job.last_error == "boom"
        assert (await redis_store.counts()).failed == 1

    @pytest.mark.asyncio
    async def test_completion_counted_once(self, redis_store):
        job_id = await redis_store.enqueue(message_job())
        claimed = await redis_store.claim_next()
        assert await redis_store.mark_completed(claimed, {"success": True})
        assert await redis_store.mark_completed(claimed) is False
        job = await redis_store.get_job(job_id)
        assert job.state == JobState.COMPLETED.value
        assert job.result == {"success": True}
        assert (await redis_store.counts()).completed == 1

    @pytest.mark.asyncio
    async def test_stalled_job_reclaimed_and_old_claim_rejected(self, redis_store, clock):
        job_id = await redis_store.enqueue(message_job())
        first = await redis_store.claim_next()
        clock.advance(30_000)

        recovered = await redis_store.recover_stalled()
        assert [(s.job_id, s.state, s.attempt) for s in recovered] == [(job_id, JobState.WAITING, 1)]

        second = await redis_store.claim_next()
        assert second.attempt == 2
        assert await redis_store.mark_failed(first, "late", retryable=False) is None
        assert await redis_store.extend_lease(first) is False
        assert await redis_store.extend_lease(second)
        assert await redis_store.mark_completed(second)
        assert (await redis_store.counts()).failed == 0

    @pytest.mark.asyncio
    async def test_stalled_out_of_attempts_fails(self, redis_store, clock):
        job_id = await redis_store.enqueue(message_job(max_attempts=1))
        await redis_store.claim_next()
        clock.advance(30_000)
        recovered = await redis_store.recover_stalled()
        assert recovered[0].state == JobState.FAILED
        assert (await redis_store.get_job(job_id)).state == JobState.FAILED.value

    @pytest.mark.asyncio
    async def test_clear_and_remove(self, redis_store):
        await redis_store.enqueue(message_job(text="a"))
        delayed_id = await redis_store.enqueue(message_job(text="b"), delay_ms=1000)
        await redis_store.enqueue(message_job(text="c", priority=10))
        active = await redis_store.claim_next()
        assert await redis_store.remove(active.job_id) is False

        removed = await redis_store.clear()

        assert sorted(job.text for job in removed) == ["a", "b"]
        assert (await redis_store.get_job(delayed_id)).state == JobState.REMOVED.value
        stats = await redis_store.counts()
        assert stats.waiting == 0 and stats.delayed == 0 and stats.active == 1
        assert await redis_store.mark_completed(active)

    @pytest.mark.asyncio
    async def test_pause_blocks_claims(self, redis_store):
        await redis_store.enqueue(message_job())
        await redis_store.pause()
        assert await redis_store.claim_next() is None
        await redis_store.resume()
        assert await redis_store.claim_next() is not None

    @pytest.mark.asyncio
    async def test_enqueue_sets_pointer_with_ttl(self, redis_store):
        nav = ActionChannels.UserInterface.navigation
        key = nav.tracking_key("100")
        job_id = await redis_store.enqueue(message_job(channel=nav.to_dict()), pointer_ttl=300)

        assert await redis_store.get_pointer(key) == job_id
        assert 0 < await redis_store._redis.ttl(key) <= 300
        assert await redis_store.delete_pointer_if(key, "other") is False
        assert await redis_store.delete_pointer_if(key, job_id)
        assert await redis_store.get_pointer(key) is None


class TestStoreFactory:
    def test_memory_default(self):
        assert isinstance(create_job_store(QueueConfig()), InMemoryJobStore)

    def test_redis_backend(self):
        store = create_job_store(QueueConfig(backend="redis"), redis=mock_redis())
        assert isinstance(store, RedisJobStore)

    def test_redis_backend_requires_client(self):
        with pytest.raises(ValueError):
            create_job_store(QueueConfig(backend="redis"))
