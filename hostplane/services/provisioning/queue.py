from __future__ import annotations

import asyncio
import logging
import time
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Protocol

from arq import create_pool
from arq.connections import RedisSettings
from pydantic import BaseModel, Field
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import TimeoutError as RedisTimeoutError

from hostplane.core.config import get_settings
from hostplane.core.errors import QueueUnavailableError
from hostplane.domain.state import OPERATIONS, Operation


logger = logging.getLogger(__name__)

LANE_CRITICAL = "critical"
LANE_DEFAULT = "default"
LANE_LOW = "low"
# Dequeue order: a lower lane is served only when every higher lane is empty.
LANES = (LANE_CRITICAL, LANE_DEFAULT, LANE_LOW)

OUTCOME_REQUEUED = "requeued"
OUTCOME_DEAD_LETTERED = "dead_lettered"

_redis_pool = None
_redis_pool_loop = None
_redis_lock = asyncio.Lock()
_inline_queue: "InMemoryTaskQueue | None" = None


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def parse_lane_map(raw: str) -> dict[str, str]:
    """Parse ``operation=lane`` pairs, falling back to ``default`` for unknown lanes."""
    mapping = {operation: LANE_DEFAULT for operation in OPERATIONS}
    for chunk in (raw or "").split(","):
        if "=" not in chunk:
            continue
        operation, lane = (part.strip() for part in chunk.split("=", 1))
        if operation not in OPERATIONS:
            logger.warning("lane_map_unknown_operation operation=%s", operation)
            continue
        if lane not in LANES:
            logger.warning("lane_map_unknown_lane operation=%s lane=%s", operation, lane)
            continue
        mapping[operation] = lane
    return mapping


def lane_for(operation: str) -> str:
    return parse_lane_map(get_settings().queue_lane_map).get(operation, LANE_DEFAULT)


def requeue_delay_s(attempts: int) -> float:
    # Doubling delay between redeliveries of a failed task.
    base = get_settings().queue_requeue_delay_s
    return float(base * (2 ** max(0, attempts - 1)))


class ProvisioningTask(BaseModel):
    # Wire format shared by the API, the broker and every worker.
    task_id: str
    resource_id: str
    operation: Operation
    payload: dict[str, Any] = Field(default_factory=dict)
    lane: str = LANE_DEFAULT
    enqueued_at: datetime = Field(default_factory=_utc_now)
    visibility_deadline: datetime | None = None
    attempts: int = 0
    last_error: str | None = None

    @classmethod
    def build(
        cls,
        *,
        resource_id: str,
        operation: Operation,
        payload: dict[str, Any] | None = None,
        task_id: str | None = None,
    ) -> "ProvisioningTask":
        return cls(
            task_id=task_id or f"{operation}:{resource_id}:{uuid.uuid4().hex[:12]}",
            resource_id=resource_id,
            operation=operation,
            payload=payload or {},
            lane=lane_for(operation),
        )


class TaskQueue(Protocol):
    async def enqueue(self, task: ProvisioningTask, *, delay_s: float = 0.0) -> bool:
        ...

    async def dequeue(self, timeout_s: float = 0.0) -> ProvisioningTask | None:
        ...

    async def ack(self, task: ProvisioningTask) -> None:
        ...

    async def fail(self, task: ProvisioningTask, error: str, *, retry_in_s: float | None = None) -> str:
        ...

    async def defer(self, task: ProvisioningTask, delay_s: float) -> None:
        ...

    async def extend(self, task: ProvisioningTask, visibility_s: float) -> bool:
        ...

    async def reclaim_expired(self) -> int:
        ...

    async def depth(self) -> dict[str, int]:
        ...

    async def dead_letters(self, limit: int = 100) -> list[ProvisioningTask]:
        ...

    async def replay_dead_letter(self, task_id: str) -> bool:
        ...


class InMemoryTaskQueue:
    """Process-local queue with the same lane, visibility and dead-letter rules as Redis."""

    def __init__(
        self,
        *,
        visibility_timeout_s: float | None = None,
        max_attempts: int | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        settings = get_settings()
        self._visibility_s = float(visibility_timeout_s or settings.queue_visibility_timeout_s)
        self._max_attempts = max_attempts or settings.queue_max_attempts
        self._clock = clock
        self._tasks: dict[str, ProvisioningTask] = {}
        self._lanes: dict[str, dict[str, float]] = {lane: {} for lane in LANES}
        self._reserved: dict[str, float] = {}
        self._dead: dict[str, float] = {}
        self._wakeup = asyncio.Event()

    def _schedule(self, task: ProvisioningTask, available_at: float) -> None:
        lane = task.lane if task.lane in self._lanes else LANE_DEFAULT
        self._lanes[lane][task.task_id] = available_at
        self._wakeup.set()

    def _reserve(self) -> ProvisioningTask | None:
        now = self._clock()
        for lane in LANES:
            ready = [(at, task_id) for task_id, at in self._lanes[lane].items() if at <= now]
            if not ready:
                continue
            _, task_id = min(ready)
            del self._lanes[lane][task_id]
            deadline = now + self._visibility_s
            self._reserved[task_id] = deadline
            task = self._tasks[task_id].model_copy(
                update={"visibility_deadline": datetime.fromtimestamp(deadline, tz=timezone.utc)}
            )
            self._tasks[task_id] = task
            return task
        return None

    def _next_available_in(self) -> float | None:
        pending = [at for lane in LANES for at in self._lanes[lane].values()]
        if not pending:
            return None
        return max(0.0, min(pending) - self._clock())

    async def enqueue(self, task: ProvisioningTask, *, delay_s: float = 0.0) -> bool:
        # Idempotent on task_id while the task is pending or reserved; a fresh request supersedes a dead letter.
        if task.task_id in self._tasks and task.task_id not in self._dead:
            return False
        self._dead.pop(task.task_id, None)
        self._tasks[task.task_id] = task
        self._schedule(task, self._clock() + delay_s)
        return True

    async def dequeue(self, timeout_s: float = 0.0) -> ProvisioningTask | None:
        deadline = time.monotonic() + timeout_s
        while True:
            task = self._reserve()
            if task is not None:
                return task
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return None
            next_in = self._next_available_in()
            wait_s = remaining if next_in is None else min(remaining, max(next_in, 0.01))
            self._wakeup.clear()
            try:
                await asyncio.wait_for(self._wakeup.wait(), timeout=wait_s)
            except asyncio.TimeoutError:
                pass

    async def ack(self, task: ProvisioningTask) -> None:
        self._reserved.pop(task.task_id, None)
        for lane in LANES:
            self._lanes[lane].pop(task.task_id, None)
        self._tasks.pop(task.task_id, None)

    async def fail(self, task: ProvisioningTask, error: str, *, retry_in_s: float | None = None) -> str:
        self._reserved.pop(task.task_id, None)
        attempts = task.attempts + 1
        updated = task.model_copy(update={"attempts": attempts, "last_error": error, "visibility_deadline": None})
        self._tasks[task.task_id] = updated
        if attempts >= self._max_attempts:
            self._dead[task.task_id] = self._clock()
            return OUTCOME_DEAD_LETTERED
        delay = requeue_delay_s(attempts) if retry_in_s is None else retry_in_s
        self._schedule(updated, self._clock() + delay)
        return OUTCOME_REQUEUED

    async def defer(self, task: ProvisioningTask, delay_s: float) -> None:
        self._reserved.pop(task.task_id, None)
        updated = task.model_copy(update={"visibility_deadline": None})
        self._tasks[task.task_id] = updated
        self._schedule(updated, self._clock() + delay_s)

    async def extend(self, task: ProvisioningTask, visibility_s: float) -> bool:
        if task.task_id not in self._reserved:
            return False
        self._reserved[task.task_id] = self._clock() + visibility_s
        return True

    async def reclaim_expired(self) -> int:
        now = self._clock()
        expired = [task_id for task_id, deadline in self._reserved.items() if deadline <= now]
        for task_id in expired:
            del self._reserved[task_id]
            task = self._tasks[task_id]
            attempts = task.attempts + 1
            updated = task.model_copy(update={"attempts": attempts, "visibility_deadline": None})
            if attempts >= self._max_attempts:
                updated = updated.model_copy(update={"last_error": "visibility timeout expired"})
                self._tasks[task_id] = updated
                self._dead[task_id] = now
                continue
            self._tasks[task_id] = updated
            self._schedule(updated, now)
        return len(expired)

    async def depth(self) -> dict[str, int]:
        counts = {lane: len(self._lanes[lane]) for lane in LANES}
        counts["reserved"] = len(self._reserved)
        counts["dead_letter"] = len(self._dead)
        return counts

    async def dead_letters(self, limit: int = 100) -> list[ProvisioningTask]:
        ordered = sorted(self._dead.items(), key=lambda item: item[1])[:limit]
        return [self._tasks[task_id] for task_id, _ in ordered]

    async def replay_dead_letter(self, task_id: str) -> bool:
        if self._dead.pop(task_id, None) is None:
            return False
        task = self._tasks[task_id].model_copy(update={"attempts": 0, "last_error": None})
        self._tasks[task_id] = task
        self._schedule(task, self._clock())
        return True


# KEYS: tasks hash, lane zset, dead zset. ARGV: task_id, body, available_ms. A dead letter with the same id is replaced.
_ENQUEUE_LUA = r"""
if redis.call("ZREM", KEYS[3], ARGV[1]) == 1 then
  redis.call("HDEL", KEYS[1], ARGV[1])
end
if redis.call("HSETNX", KEYS[1], ARGV[1], ARGV[2]) == 1 then
  redis.call("ZADD", KEYS[2], ARGV[3], ARGV[1])
  return 1
end
return 0
"""

# KEYS: tasks hash, reserved zset, lane zsets in priority order. ARGV: now_ms, visibility_ms.
_RESERVE_LUA = r"""
local now_ms = tonumber(ARGV[1])
local visibility_ms = tonumber(ARGV[2])
for i = 3, #KEYS do
  local ids = redis.call("ZRANGEBYSCORE", KEYS[i], "-inf", now_ms, "LIMIT", 0, 1)
  if #ids > 0 then
    local task_id = ids[1]
    redis.call("ZREM", KEYS[i], task_id)
    redis.call("ZADD", KEYS[2], now_ms + visibility_ms, task_id)
    return {task_id, redis.call("HGET", KEYS[1], task_id)}
  end
end
return nil
"""

# KEYS: tasks hash, reserved zset, dead zset, lane prefix. ARGV: now_ms, max_attempts.
_RECLAIM_LUA = r"""
local now_ms = tonumber(ARGV[1])
local max_attempts = tonumber(ARGV[2])
local ids = redis.call("ZRANGEBYSCORE", KEYS[2], "-inf", now_ms)
for _, task_id in ipairs(ids) do
  redis.call("ZREM", KEYS[2], task_id)
  local raw = redis.call("HGET", KEYS[1], task_id)
  if raw then
    local task = cjson.decode(raw)
    task["attempts"] = (tonumber(task["attempts"]) or 0) + 1
    task["visibility_deadline"] = cjson.null
    if task["attempts"] >= max_attempts then
      task["last_error"] = "visibility timeout expired"
      redis.call("HSET", KEYS[1], task_id, cjson.encode(task))
      redis.call("ZADD", KEYS[3], now_ms, task_id)
    else
      redis.call("HSET", KEYS[1], task_id, cjson.encode(task))
      redis.call("ZADD", KEYS[4] .. task["lane"], now_ms, task_id)
    end
  end
end
return #ids
"""

# KEYS: tasks hash, dead zset, lane prefix. ARGV: task_id, now_ms.
_REPLAY_LUA = r"""
if redis.call("ZREM", KEYS[2], ARGV[1]) == 0 then
  return 0
end
local raw = redis.call("HGET", KEYS[1], ARGV[1])
if not raw then
  return 0
end
local task = cjson.decode(raw)
task["attempts"] = 0
task["last_error"] = cjson.null
redis.call("HSET", KEYS[1], ARGV[1], cjson.encode(task))
redis.call("ZADD", KEYS[3] .. task["lane"], tonumber(ARGV[2]), ARGV[1])
return 1
"""


async def get_redis_pool():
    # Cache the Redis pool per event loop to avoid reconnecting on every call.
    global _redis_pool, _redis_pool_loop
    current_loop = asyncio.get_running_loop()
    if _redis_pool is not None and _redis_pool_loop == current_loop:
        return _redis_pool
    if _redis_pool is not None and _redis_pool_loop != current_loop:
        # Drop loop-bound pools to avoid cross-loop errors in tests.
        _redis_pool = None
    async with _redis_lock:
        if _redis_pool is None:
            settings = get_settings()
            try:
                _redis_pool = await create_pool(RedisSettings.from_dsn(settings.redis_url))
            except (OSError, RedisConnectionError, RedisTimeoutError) as exc:
                raise QueueUnavailableError(f"redis unavailable: {exc}") from exc
            _redis_pool_loop = current_loop
    return _redis_pool


class RedisTaskQueue:
    """Lane-ordered task broker on Redis sorted sets.

    Pending tasks are scored by the epoch-ms at which they become visible,
    reserved tasks by their visibility deadline. Task bodies live in one
    hash as JSON. Reserve, reclaim and replay run as Lua scripts so every
    move between sets is atomic.
    """

    def __init__(
        self,
        redis: Any | None = None,
        *,
        prefix: str | None = None,
        visibility_timeout_s: float | None = None,
        max_attempts: int | None = None,
        idle_poll_s: float | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        settings = get_settings()
        self._redis = redis
        self._prefix = prefix or settings.queue_prefix
        self._visibility_s = float(visibility_timeout_s or settings.queue_visibility_timeout_s)
        self._max_attempts = max_attempts or settings.queue_max_attempts
        self._idle_poll_s = idle_poll_s or settings.worker_idle_poll_s
        self._clock = clock

    @property
    def _tasks_key(self) -> str:
        return f"{self._prefix}:tasks"

    @property
    def _reserved_key(self) -> str:
        return f"{self._prefix}:reserved"

    @property
    def _dead_key(self) -> str:
        return f"{self._prefix}:dead"

    @property
    def _lane_prefix(self) -> str:
        return f"{self._prefix}:lane:"

    def _lane_key(self, lane: str) -> str:
        return f"{self._lane_prefix}{lane if lane in LANES else LANE_DEFAULT}"

    def _now_ms(self) -> int:
        return int(self._clock() * 1000)

    async def _client(self):
        if self._redis is None:
            self._redis = await get_redis_pool()
        return self._redis

    async def _run(self, action: str, call: Callable[[Any], Any]) -> Any:
        # Map broker connectivity failures onto QueueUnavailableError.
        try:
            redis = await self._client()
            return await call(redis)
        except (OSError, RedisConnectionError, RedisTimeoutError) as exc:
            logger.warning("task_queue_unavailable action=%s error=%s", action, exc)
            raise QueueUnavailableError(f"task broker unavailable during {action}") from exc

    async def enqueue(self, task: ProvisioningTask, *, delay_s: float = 0.0) -> bool:
        available_ms = self._now_ms() + int(delay_s * 1000)
        created = await self._run(
            "enqueue",
            lambda redis: redis.eval(
                _ENQUEUE_LUA,
                3,
                self._tasks_key,
                self._lane_key(task.lane),
                self._dead_key,
                task.task_id,
                task.model_dump_json(),
                available_ms,
            ),
        )
        if not created:
            logger.info("task_enqueue_duplicate task_id=%s", task.task_id)
        return bool(created)

    async def _reserve(self) -> ProvisioningTask | None:
        keys = [self._tasks_key, self._reserved_key] + [self._lane_key(lane) for lane in LANES]
        now_ms = self._now_ms()
        visibility_ms = int(self._visibility_s * 1000)
        result = await self._run(
            "dequeue",
            lambda redis: redis.eval(_RESERVE_LUA, len(keys), *keys, now_ms, visibility_ms),
        )
        if not result:
            return None
        task_id, raw = result
        if raw is None:
            # Body vanished (acked elsewhere); drop the dangling reservation.
            await self._run("dequeue", lambda redis: redis.zrem(self._reserved_key, task_id))
            return None
        task = ProvisioningTask.model_validate_json(raw)
        deadline = datetime.fromtimestamp((now_ms + visibility_ms) / 1000.0, tz=timezone.utc)
        return task.model_copy(update={"visibility_deadline": deadline})

    async def dequeue(self, timeout_s: float = 0.0) -> ProvisioningTask | None:
        deadline = time.monotonic() + timeout_s
        while True:
            task = await self._reserve()
            if task is not None:
                return task
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return None
            await asyncio.sleep(min(self._idle_poll_s, remaining))

    async def ack(self, task: ProvisioningTask) -> None:
        async def _ack(redis):
            pipe = redis.pipeline(transaction=True)
            pipe.zrem(self._reserved_key, task.task_id)
            for lane in LANES:
                pipe.zrem(self._lane_key(lane), task.task_id)
            pipe.hdel(self._tasks_key, task.task_id)
            return await pipe.execute()

        await self._run("ack", _ack)

    async def _move(self, task: ProvisioningTask, *, target_key: str, score_ms: int, action: str) -> None:
        async def _write(redis):
            pipe = redis.pipeline(transaction=True)
            pipe.zrem(self._reserved_key, task.task_id)
            pipe.hset(self._tasks_key, task.task_id, task.model_dump_json())
            pipe.zadd(target_key, {task.task_id: score_ms})
            return await pipe.execute()

        await self._run(action, _write)

    async def fail(self, task: ProvisioningTask, error: str, *, retry_in_s: float | None = None) -> str:
        attempts = task.attempts + 1
        updated = task.model_copy(update={"attempts": attempts, "last_error": error, "visibility_deadline": None})
        if attempts >= self._max_attempts:
            await self._move(updated, target_key=self._dead_key, score_ms=self._now_ms(), action="dead_letter")
            return OUTCOME_DEAD_LETTERED
        delay = requeue_delay_s(attempts) if retry_in_s is None else retry_in_s
        await self._move(
            updated,
            target_key=self._lane_key(updated.lane),
            score_ms=self._now_ms() + int(delay * 1000),
            action="requeue",
        )
        return OUTCOME_REQUEUED

    async def defer(self, task: ProvisioningTask, delay_s: float) -> None:
        updated = task.model_copy(update={"visibility_deadline": None})
        await self._move(
            updated,
            target_key=self._lane_key(updated.lane),
            score_ms=self._now_ms() + int(delay_s * 1000),
            action="defer",
        )

    async def extend(self, task: ProvisioningTask, visibility_s: float) -> bool:
        deadline_ms = self._now_ms() + int(visibility_s * 1000)
        changed = await self._run(
            "extend",
            lambda redis: redis.zadd(self._reserved_key, {task.task_id: deadline_ms}, xx=True, ch=True),
        )
        return bool(changed)

    async def reclaim_expired(self) -> int:
        reclaimed = await self._run(
            "reclaim",
            lambda redis: redis.eval(
                _RECLAIM_LUA,
                4,
                self._tasks_key,
                self._reserved_key,
                self._dead_key,
                self._lane_prefix,
                self._now_ms(),
                self._max_attempts,
            ),
        )
        return int(reclaimed or 0)

    async def depth(self) -> dict[str, int]:
        async def _depth(redis):
            pipe = redis.pipeline(transaction=False)
            for lane in LANES:
                pipe.zcard(self._lane_key(lane))
            pipe.zcard(self._reserved_key)
            pipe.zcard(self._dead_key)
            return await pipe.execute()

        values = await self._run("depth", _depth)
        counts = {lane: int(value) for lane, value in zip(LANES, values)}
        counts["reserved"] = int(values[len(LANES)])
        counts["dead_letter"] = int(values[len(LANES) + 1])
        return counts

    async def dead_letters(self, limit: int = 100) -> list[ProvisioningTask]:
        async def _load(redis):
            task_ids = await redis.zrange(self._dead_key, 0, max(0, limit - 1))
            if not task_ids:
                return []
            return await redis.hmget(self._tasks_key, task_ids)

        rows = await self._run("dead_letters", _load)
        return [ProvisioningTask.model_validate_json(raw) for raw in rows if raw]

    async def replay_dead_letter(self, task_id: str) -> bool:
        replayed = await self._run(
            "replay",
            lambda redis: redis.eval(
                _REPLAY_LUA, 3, self._tasks_key, self._dead_key, self._lane_prefix, task_id, self._now_ms()
            ),
        )
        return bool(replayed)


def is_inline_mode() -> bool:
    return get_settings().queue_execution_mode.lower() == "inline"


def get_task_queue() -> TaskQueue:
    # Inline mode shares one in-process queue between the API and its embedded pool.
    global _inline_queue
    if is_inline_mode():
        if _inline_queue is None:
            _inline_queue = InMemoryTaskQueue()
        return _inline_queue
    return RedisTaskQueue()


def reset_task_queue() -> None:
    global _inline_queue
    _inline_queue = None


def _heartbeat_key() -> str:
    return f"{get_settings().queue_prefix}:worker:heartbeat"


async def set_worker_heartbeat(*, timestamp: datetime | None = None) -> None:
    # Persist a heartbeat for the ops queue endpoint.
    if is_inline_mode():
        return
    settings = get_settings()
    redis = await get_redis_pool()
    heartbeat_time = timestamp or _utc_now()
    await redis.set(_heartbeat_key(), heartbeat_time.isoformat(), ex=settings.worker_heartbeat_stale_after_s * 10)


async def get_worker_heartbeat() -> datetime | None:
    # Return None when the heartbeat is missing or Redis is unavailable.
    if is_inline_mode():
        return None
    try:
        redis = await get_redis_pool()
        raw_value = await redis.get(_heartbeat_key())
    except Exception:  # noqa: BLE001 - ops endpoints handle degraded Redis
        return None
    if not raw_value:
        return None
    value = raw_value.decode("utf-8") if isinstance(raw_value, (bytes, bytearray)) else str(raw_value)
    try:
        return datetime.fromisoformat(value)
    except ValueError:
        return None


def heartbeat_is_stale(heartbeat: datetime | None, *, now: datetime | None = None) -> bool:
    if heartbeat is None:
        return True
    stale_after = timedelta(seconds=get_settings().worker_heartbeat_stale_after_s)
    return (now or _utc_now()) - heartbeat > stale_after
