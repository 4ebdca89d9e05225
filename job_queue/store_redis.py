"""
RedisJobStore — production store shared by every worker process.

Key layout ({q} = QueueConfig.name):
  {q}:id            INCR counter, source of job ids (and FIFO seq)
  {q}:job:{id}      hash, QueueJob.to_dict() + "wait_score" ("lease" = current claim token)
  {q}:wait          zset of claimable ids,    score = -priority * 1e12 + seq
  {q}:delayed       zset of not-yet-ready ids, score = ready_at (ms)
  {q}:active        zset of claimed ids,       score = lease deadline (ms)
  {q}:counts        hash {completed, failed}
  {q}:paused        flag; claim_next returns nothing while present
  channel:{Domain}:{context}:user:{target}   channel pointer (string, TTL)

Every state transition that reads-then-writes runs as a Lua script, so two
workers can never claim or report the same job. Scores are passed to ZADD
as strings because Lua would print large numbers in exponent form.
"""
from __future__ import annotations

import json
from typing import Any, Optional

import structlog

from config.settings import QueueConfig
from database.redis_client import translate_redis_errors
from job_queue.jobs import QueueJob
from job_queue.store_base import Clock, JobStore, new_lease_token
from models.schemas import FailureOutcome, JobState, QueueStats, StalledJob

logger = structlog.get_logger()

SEQ_SPAN = 10 ** 12


def wait_score(priority: int, seq: int) -> int:
    """Lower scores pop first: higher priority, then earlier seq."""
    return -priority * SEQ_SPAN + seq


# KEYS: wait, delayed, active, paused   ARGV: now, lease_ms, job_prefix, lease_token
_CLAIM = """
if redis.call('EXISTS', KEYS[4]) == 1 then return nil end
local due = redis.call('ZRANGEBYSCORE', KEYS[2], '-inf', ARGV[1])
for _, id in ipairs(due) do
  redis.call('ZREM', KEYS[2], id)
  local key = ARGV[3] .. id
  local score = redis.call('HGET', key, 'wait_score')
  if score then
    redis.call('HSET', key, 'state', 'waiting')
    redis.call('ZADD', KEYS[1], score, id)
  end
end
local popped = redis.call('ZPOPMIN', KEYS[1])
if #popped == 0 then return nil end
local id = popped[1]
local key = ARGV[3] .. id
redis.call('ZADD', KEYS[3], string.format('%.0f', tonumber(ARGV[1]) + tonumber(ARGV[2])), id)
redis.call('HSET', key, 'state', 'active', 'lease', ARGV[4])
redis.call('HINCRBY', key, 'attempt', 1)
return redis.call('HGETALL', key)
"""

# KEYS: active, counts, job   ARGV: id, result_json, now, retention, lease_token
_COMPLETE = """
if redis.call('HGET', KEYS[3], 'lease') ~= ARGV[5] then return 0 end
if redis.call('ZREM', KEYS[1], ARGV[1]) == 0 then return 0 end
redis.call('HSET', KEYS[3], 'state', 'completed', 'result', ARGV[2], 'finished_at', ARGV[3])
redis.call('EXPIRE', KEYS[3], ARGV[4])
redis.call('HINCRBY', KEYS[2], 'completed', 1)
return 1
"""

# KEYS: active, delayed, counts, job
# ARGV: id, error, now, base_ms, override_ms (-1 = none), retryable (1/0), retention, lease_token
_FAIL = """
if redis.call('HGET', KEYS[4], 'lease') ~= ARGV[8] then return {-1, 0, 0} end
if redis.call('ZREM', KEYS[1], ARGV[1]) == 0 then return {-1, 0, 0} end
local attempt = tonumber(redis.call('HGET', KEYS[4], 'attempt') or '0')
local max_attempts = tonumber(redis.call('HGET', KEYS[4], 'max_attempts') or '1')
redis.call('HSET', KEYS[4], 'last_error', ARGV[2])
if ARGV[6] == '1' and attempt < max_attempts then
  local delay = tonumber(ARGV[5])
  if delay < 0 then delay = tonumber(ARGV[4]) * (2 ^ (attempt - 1)) end
  local ready_at = string.format('%.0f', tonumber(ARGV[3]) + delay)
  redis.call('HSET', KEYS[4], 'state', 'delayed', 'ready_at', ready_at)
  redis.call('ZADD', KEYS[2], ready_at, ARGV[1])
  return {1, attempt, delay}
end
redis.call('HSET', KEYS[4], 'state', 'failed', 'finished_at', ARGV[3])
redis.call('EXPIRE', KEYS[4], ARGV[7])
redis.call('HINCRBY', KEYS[3], 'failed', 1)
return {0, attempt, 0}
"""

# KEYS: wait, delayed, job   ARGV: id, now, retention
_REMOVE = """
local state = redis.call('HGET', KEYS[3], 'state')
if state == 'waiting' then
  redis.call('ZREM', KEYS[1], ARGV[1])
elseif state == 'delayed' then
  redis.call('ZREM', KEYS[2], ARGV[1])
else
  return 0
end
redis.call('HSET', KEYS[3], 'state', 'removed', 'finished_at', ARGV[2])
redis.call('EXPIRE', KEYS[3], ARGV[3])
return 1
"""

# KEYS: active, wait, counts   ARGV: now, job_prefix, retention
_RECOVER = """
local stalled = redis.call('ZRANGEBYSCORE', KEYS[1], '-inf', ARGV[1])
local out = {}
for _, id in ipairs(stalled) do
  redis.call('ZREM', KEYS[1], id)
  local key = ARGV[2] .. id
  redis.call('HSET', key, 'lease', '')
  local attempt = tonumber(redis.call('HGET', key, 'attempt') or '0')
  local max_attempts = tonumber(redis.call('HGET', key, 'max_attempts') or '1')
  local state = 'waiting'
  if attempt >= max_attempts then
    state = 'failed'
    redis.call('HSET', key, 'state', 'failed', 'last_error', 'stalled', 'finished_at', ARGV[1])
    redis.call('EXPIRE', key, ARGV[3])
    redis.call('HINCRBY', KEYS[3], 'failed', 1)
  else
    redis.call('HSET', key, 'state', 'waiting')
    redis.call('ZADD', KEYS[2], redis.call('HGET', key, 'wait_score'), id)
  end
  table.insert(out, id)
  table.insert(out, state)
  table.insert(out, tostring(attempt))
end
return out
"""

# KEYS: wait, delayed   ARGV: job_prefix, retention, now
_CLEAR = """
local out = {}
for _, zkey in ipairs(KEYS) do
  for _, id in ipairs(redis.call('ZRANGE', zkey, 0, -1)) do
    table.insert(out, id)
    redis.call('HSET', ARGV[1] .. id, 'state', 'removed', 'finished_at', ARGV[3])
    redis.call('EXPIRE', ARGV[1] .. id, ARGV[2])
  end
  redis.call('DEL', zkey)
end
return out
"""

# KEYS: active, job   ARGV: id, deadline, lease_token
_EXTEND = """
if redis.call('HGET', KEYS[2], 'lease') ~= ARGV[3] then return 0 end
if not redis.call('ZSCORE', KEYS[1], ARGV[1]) then return 0 end
redis.call('ZADD', KEYS[1], ARGV[2], ARGV[1])
return 1
"""

# KEYS: pointer   ARGV: job id
_DELETE_IF = """
if redis.call('GET', KEYS[1]) == ARGV[1] then return redis.call('DEL', KEYS[1]) end
return 0
"""


class RedisJobStore(JobStore):
    """
    Crash-resilient store: a worker that dies mid-job leaves its lease to
    expire, and whichever process runs recover_stalled() next re-queues it.
    Expects a client created with decode_responses=True.
    """

    def __init__(self, redis, config: QueueConfig = None, clock: Clock = None):
        super().__init__(config, clock)
        self._redis = redis
        prefix = self.config.name
        self.keys = {
            "id": f"{prefix}:id",
            "wait": f"{prefix}:wait",
            "delayed": f"{prefix}:delayed",
            "active": f"{prefix}:active",
            "counts": f"{prefix}:counts",
            "paused": f"{prefix}:paused",
        }
        self.job_prefix = f"{prefix}:job:"
        self._claim = redis.register_script(_CLAIM)
        self._complete = redis.register_script(_COMPLETE)
        self._fail = redis.register_script(_FAIL)
        self._remove = redis.register_script(_REMOVE)
        self._recover = redis.register_script(_RECOVER)
        self._clear = redis.register_script(_CLEAR)
        self._extend = redis.register_script(_EXTEND)
        self._delete_if = redis.register_script(_DELETE_IF)

    def job_key(self, job_id: str) -> str:
        return f"{self.job_prefix}{job_id}"

    @property
    def _retention(self) -> int:
        return self.config.completed_retention_seconds

    @staticmethod
    def _pairs_to_dict(flat: list[Any]) -> dict[str, Any]:
        return dict(zip(flat[::2], flat[1::2]))

    # ── Jobs ──────────────────────────────────────────────

    @translate_redis_errors("enqueue")
    async def enqueue(self, job: QueueJob, delay_ms: int = 0, pointer_ttl: Optional[int] = None) -> str:
        now = self._clock()
        seq = int(await self._redis.incr(self.keys["id"]))
        job.job_id = str(seq)
        job.seq = seq
        job.created_at = now
        job.ready_at = now + max(0, delay_ms)
        job.lease = ""
        job.state = (JobState.DELAYED if delay_ms > 0 else JobState.WAITING).value

        mapping = job.to_dict()
        mapping["wait_score"] = str(wait_score(job.priority, seq))

        # MULTI/EXEC: the pointer and the claimable id appear together
        pipe = self._redis.pipeline(transaction=True)
        pipe.hset(self.job_key(job.job_id), mapping=mapping)
        if pointer_ttl and job.has_replaceable_channel:
            pipe.setex(job.tracking_key, pointer_ttl, job.job_id)
        if delay_ms > 0:
            pipe.zadd(self.keys["delayed"], {job.job_id: job.ready_at})
        else:
            pipe.zadd(self.keys["wait"], {job.job_id: wait_score(job.priority, seq)})
        await pipe.execute()
        return job.job_id

    @translate_redis_errors("claim_next")
    async def claim_next(self) -> Optional[QueueJob]:
        flat = await self._claim(
            keys=[self.keys["wait"], self.keys["delayed"], self.keys["active"], self.keys["paused"]],
            args=[int(self._clock()), self.config.lease_timeout_ms, self.job_prefix, new_lease_token()],
        )
        if not flat:
            return None
        return QueueJob.from_dict(self._pairs_to_dict(flat))

    @translate_redis_errors("mark_completed")
    async def mark_completed(self, job: QueueJob, result: dict[str, Any] = None) -> bool:
        if not job.lease:
            return False
        done = await self._complete(
            keys=[self.keys["active"], self.keys["counts"], self.job_key(job.job_id)],
            args=[job.job_id, json.dumps(result or {}), int(self._clock()), self._retention, job.lease],
        )
        return bool(done)

    @translate_redis_errors("mark_failed")
    async def mark_failed(
        self,
        job: QueueJob,
        error: str,
        retry_delay_ms: Optional[int] = None,
        retryable: bool = True,
    ) -> Optional[FailureOutcome]:
        if not job.lease:
            return None
        status, attempt, delay = await self._fail(
            keys=[self.keys["active"], self.keys["delayed"], self.keys["counts"], self.job_key(job.job_id)],
            args=[
                job.job_id,
                error[:500],
                int(self._clock()),
                self.config.retry_backoff_base_ms,
                -1 if retry_delay_ms is None else int(retry_delay_ms),
                1 if retryable else 0,
                self._retention,
                job.lease,
            ],
        )
        if int(status) < 0:
            return None
        return FailureOutcome(retried=int(status) == 1, attempt=int(attempt), delay_ms=int(delay))

    @translate_redis_errors("remove")
    async def remove(self, job_id: str) -> bool:
        removed = await self._remove(
            keys=[self.keys["wait"], self.keys["delayed"], self.job_key(job_id)],
            args=[job_id, int(self._clock()), self._retention],
        )
        return bool(removed)

    @translate_redis_errors("get_job")
    async def get_job(self, job_id: str) -> Optional[QueueJob]:
        data = await self._redis.hgetall(self.job_key(job_id))
        return QueueJob.from_dict(data) if data else None

    @translate_redis_errors("extend_lease")
    async def extend_lease(self, job: QueueJob) -> bool:
        if not job.lease:
            return False
        deadline = int(self._clock()) + self.config.lease_timeout_ms
        extended = await self._extend(
            keys=[self.keys["active"], self.job_key(job.job_id)],
            args=[job.job_id, deadline, job.lease],
        )
        return bool(extended)

    @translate_redis_errors("recover_stalled")
    async def recover_stalled(self) -> list[StalledJob]:
        flat = await self._recover(
            keys=[self.keys["active"], self.keys["wait"], self.keys["counts"]],
            args=[int(self._clock()), self.job_prefix, self._retention],
        )
        return [
            StalledJob(job_id=flat[i], state=JobState(flat[i + 1]), attempt=int(flat[i + 2]))
            for i in range(0, len(flat or []), 3)
        ]

    @translate_redis_errors("counts")
    async def counts(self) -> QueueStats:
        pipe = self._redis.pipeline(transaction=False)
        pipe.zcard(self.keys["wait"])
        pipe.zcard(self.keys["active"])
        pipe.zcard(self.keys["delayed"])
        pipe.hmget(self.keys["counts"], "completed", "failed")
        pipe.exists(self.keys["paused"])
        waiting, active, delayed, (completed, failed), paused = await pipe.execute()
        return QueueStats(
            waiting=waiting,
            active=active,
            completed=int(completed or 0),
            failed=int(failed or 0),
            delayed=delayed,
            paused=bool(paused),
        )

    @translate_redis_errors("clear")
    async def clear(self) -> list[QueueJob]:
        ids = await self._clear(
            keys=[self.keys["wait"], self.keys["delayed"]],
            args=[self.job_prefix, self._retention, int(self._clock())],
        )
        if not ids:
            return []
        pipe = self._redis.pipeline(transaction=False)
        for job_id in ids:
            pipe.hgetall(self.job_key(job_id))
        return [QueueJob.from_dict(data) for data in await pipe.execute() if data]

    # ── Processing control ────────────────────────────────

    @translate_redis_errors("pause")
    async def pause(self) -> None:
        await self._redis.set(self.keys["paused"], "1")

    @translate_redis_errors("resume")
    async def resume(self) -> None:
        await self._redis.delete(self.keys["paused"])

    @translate_redis_errors("is_paused")
    async def is_paused(self) -> bool:
        return bool(await self._redis.exists(self.keys["paused"]))

    # ── Channel pointers ──────────────────────────────────

    @translate_redis_errors("get_pointer")
    async def get_pointer(self, key: str) -> Optional[str]:
        return await self._redis.get(key)

    @translate_redis_errors("set_pointer")
    async def set_pointer(self, key: str, job_id: str, ttl_seconds: int) -> None:
        await self._redis.setex(key, ttl_seconds, job_id)

    @translate_redis_errors("delete_pointer_if")
    async def delete_pointer_if(self, key: str, job_id: str) -> bool:
        return bool(await self._delete_if(keys=[key], args=[job_id]))
