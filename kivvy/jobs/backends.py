"""
Kivvy Queue Stores

Pluggable persistence for the task queue:
- InMemory: single process, lost on restart (development, tests, degraded mode)
- Redis: durable, shared by every worker process, atomic claim via Lua

Both implement the same lease protocol: a claimed task sits in the active set
with a lease deadline; the owner renews it while running and removes it on
complete/retry/fail. A task whose lease expires is recovered by
``recover_stalled``.
"""

from __future__ import annotations

import asyncio
import heapq
import itertools
import json
import time
from abc import ABC, abstractmethod
from collections import deque
from datetime import datetime, timezone
from typing import Any, Deque, Dict, List, Optional, Tuple

import structlog
from redis import asyncio as aioredis
from redis.exceptions import RedisError

from kivvy.jobs.envelope import (
    QueueName,
    Task,
    TaskKind,
    TaskState,
    kinds_for_queue,
    utcnow,
)

logger = structlog.get_logger(__name__)

DEFAULT_RETENTION = (50, 50)
STALLED_ERROR = "job stalled more than allowable limit"


def _epoch(value: Optional[datetime]) -> float:
    return value.timestamp() if value else time.time()


class QueueStore(ABC):
    """Abstract base class for queue stores."""

    mode: str = "abstract"
    durable: bool = False

    def __init__(
        self,
        retention: Optional[Dict[str, Tuple[int, int]]] = None,
        max_stalled_count: int = 1,
        dedup_ttl_seconds: int = 86400,
    ):
        self.retention = retention or {}
        self.max_stalled_count = max_stalled_count
        self.dedup_ttl_seconds = dedup_ttl_seconds

    def _retention_for(self, queue: QueueName) -> Tuple[int, int]:
        return self.retention.get(queue.value, DEFAULT_RETENTION)

    @staticmethod
    def _stage(task: Task) -> None:
        """Pick waiting or delayed for a task about to be stored."""
        if task.run_at and task.run_at.timestamp() > time.time():
            task.state = TaskState.DELAYED
        else:
            task.state = TaskState.WAITING

    def _stall(self, task: Task) -> None:
        """Apply stall bookkeeping; the caller persists the result."""
        task.stalled_count += 1
        task.worker_id = None
        if task.stalled_count > self.max_stalled_count:
            task.state = TaskState.FAILED
            task.error = STALLED_ERROR
            task.finished_at = utcnow()
        else:
            task.state = TaskState.WAITING
            task.started_at = None

    @abstractmethod
    async def initialize(self) -> None:
        """Open connections. Raises when the store is unreachable."""

    @abstractmethod
    async def shutdown(self) -> None:
        """Release connections."""

    @abstractmethod
    async def ping(self) -> bool:
        """True when the store answers."""

    @abstractmethod
    async def push(self, task: Task) -> bool:
        """Persist a new task. Returns False when its dedup key is already taken."""

    @abstractmethod
    async def claim_next(
        self,
        queue: QueueName,
        kind: TaskKind,
        worker_id: str,
        lease_seconds: float,
    ) -> Optional[Task]:
        """Atomically claim the best eligible task of ``kind`` on ``queue``."""

    @abstractmethod
    async def extend_lease(self, task: Task, lease_seconds: float) -> bool:
        """Push the lease deadline forward. False when the task is no longer owned."""

    @abstractmethod
    async def complete(self, task: Task) -> bool:
        """Move an owned active task to completed."""

    @abstractmethod
    async def retry(self, task: Task, delay_ms: int) -> bool:
        """Move an owned active task back to delayed for another attempt."""

    @abstractmethod
    async def fail(self, task: Task) -> bool:
        """Move an owned active task to failed."""

    @abstractmethod
    async def recover_stalled(self, now: Optional[float] = None) -> List[Task]:
        """Requeue (or fail) active tasks whose lease expired before ``now``."""

    @abstractmethod
    async def get_task(self, task_id: str) -> Optional[Task]:
        """Get task by ID."""

    @abstractmethod
    async def get_counts(self, queue: QueueName) -> Dict[str, int]:
        """Counts per state for one queue."""

    @abstractmethod
    async def list_tasks(self, queue: QueueName, state: TaskState, limit: int = 50) -> List[Task]:
        """Tasks of ``queue`` in ``state``, most relevant first."""

    @abstractmethod
    async def clean(self, queue: QueueName) -> int:
        """Drop retained completed and failed tasks. Returns how many were removed."""

    @abstractmethod
    async def set_paused(self, queue: QueueName, paused: bool) -> None:
        """Paused queues keep accepting tasks but hand none out."""

    @abstractmethod
    async def is_paused(self, queue: QueueName) -> bool:
        ...

    @abstractmethod
    async def set_marker(self, key: str, ttl_seconds: int, value: str = "1") -> bool:
        """Set ``key`` unless present. True when this call created it."""

    @abstractmethod
    async def has_marker(self, key: str) -> bool:
        ...


class InMemoryQueueStore(QueueStore):
    """In-memory queue store for development/testing and degraded mode."""

    mode = "memory"
    durable = False

    def __init__(self, **kwargs: Any):
        super().__init__(**kwargs)
        # Records are stored serialized so callers never share mutable state with the store
        self._records: Dict[str, Dict[str, Any]] = {}
        self._waiting: Dict[Tuple[QueueName, TaskKind], List[Tuple[int, int, str]]] = {}
        self._delayed: Dict[QueueName, List[Tuple[float, int, str]]] = {}
        self._active: Dict[QueueName, Dict[str, Tuple[float, str]]] = {}
        self._finished: Dict[Tuple[QueueName, TaskState], Deque[str]] = {}
        self._markers: Dict[str, Tuple[float, str]] = {}
        self._paused: set = set()
        self._seq = itertools.count()
        self._lock = asyncio.Lock()

    async def initialize(self) -> None:
        logger.info("InMemory queue store initialized")

    async def shutdown(self) -> None:
        logger.info("InMemory queue store shutdown", tasks=len(self._records))

    async def ping(self) -> bool:
        return True

    def _save(self, task: Task) -> None:
        self._records[task.id] = task.to_dict()

    def _load(self, task_id: str) -> Optional[Task]:
        data = self._records.get(task_id)
        return Task.from_dict(data) if data else None

    def _enqueue_waiting(self, task: Task) -> None:
        heap = self._waiting.setdefault((task.queue, task.kind), [])
        heapq.heappush(heap, (task.priority.value, next(self._seq), task.id))

    def _enqueue_delayed(self, task: Task) -> None:
        heap = self._delayed.setdefault(task.queue, [])
        heapq.heappush(heap, (_epoch(task.run_at), next(self._seq), task.id))

    def _archive(self, task: Task) -> None:
        keep_completed, keep_failed = self._retention_for(task.queue)
        keep = keep_completed if task.state == TaskState.COMPLETED else keep_failed
        retained = self._finished.setdefault((task.queue, task.state), deque())
        retained.appendleft(task.id)
        self._save(task)
        while len(retained) > keep:
            self._records.pop(retained.pop(), None)

    def _marker_alive(self, key: str) -> bool:
        entry = self._markers.get(key)
        if entry is None:
            return False
        if entry[0] <= time.time():
            del self._markers[key]
            return False
        return True

    def _owned(self, task: Task) -> bool:
        lease = self._active.get(task.queue, {}).get(task.id)
        return lease is not None and lease[1] == task.worker_id

    def _promote_due(self, queue: QueueName, now: float) -> None:
        heap = self._delayed.get(queue, [])
        while heap and heap[0][0] <= now:
            _, _, task_id = heapq.heappop(heap)
            task = self._load(task_id)
            if task is None or task.state != TaskState.DELAYED:
                continue
            task.state = TaskState.WAITING
            self._save(task)
            self._enqueue_waiting(task)

    async def push(self, task: Task) -> bool:
        async with self._lock:
            if task.dedup_key:
                marker = f"dedup:{task.dedup_key}"
                if self._marker_alive(marker):
                    return False
                self._markers[marker] = (time.time() + self.dedup_ttl_seconds, task.id)

            self._stage(task)
            self._save(task)
            if task.state == TaskState.DELAYED:
                self._enqueue_delayed(task)
            else:
                self._enqueue_waiting(task)
        return True

    async def claim_next(
        self,
        queue: QueueName,
        kind: TaskKind,
        worker_id: str,
        lease_seconds: float,
    ) -> Optional[Task]:
        async with self._lock:
            if queue in self._paused:
                return None
            now = time.time()
            self._promote_due(queue, now)

            heap = self._waiting.get((queue, kind), [])
            while heap:
                _, _, task_id = heapq.heappop(heap)
                task = self._load(task_id)
                if task is None or task.state != TaskState.WAITING:
                    continue
                task.state = TaskState.ACTIVE
                task.attempts_made += 1
                task.worker_id = worker_id
                task.started_at = utcnow()
                self._save(task)
                self._active.setdefault(queue, {})[task.id] = (now + lease_seconds, worker_id)
                return task
        return None

    async def extend_lease(self, task: Task, lease_seconds: float) -> bool:
        async with self._lock:
            if not self._owned(task):
                return False
            self._active[task.queue][task.id] = (time.time() + lease_seconds, task.worker_id)
            return True

    async def complete(self, task: Task) -> bool:
        async with self._lock:
            if not self._owned(task):
                return False
            del self._active[task.queue][task.id]
            task.state = TaskState.COMPLETED
            task.finished_at = task.finished_at or utcnow()
            self._archive(task)
            return True

    async def retry(self, task: Task, delay_ms: int) -> bool:
        async with self._lock:
            if not self._owned(task):
                return False
            del self._active[task.queue][task.id]
            task.state = TaskState.DELAYED
            task.worker_id = None
            task.run_at = datetime.fromtimestamp(time.time() + delay_ms / 1000.0, tz=timezone.utc)
            self._save(task)
            self._enqueue_delayed(task)
            return True

    async def fail(self, task: Task) -> bool:
        async with self._lock:
            if not self._owned(task):
                return False
            del self._active[task.queue][task.id]
            task.state = TaskState.FAILED
            task.finished_at = task.finished_at or utcnow()
            self._archive(task)
            return True

    async def recover_stalled(self, now: Optional[float] = None) -> List[Task]:
        now = time.time() if now is None else now
        recovered: List[Task] = []
        async with self._lock:
            for queue, leases in self._active.items():
                expired = [tid for tid, (deadline, _) in leases.items() if deadline <= now]
                for task_id in expired:
                    del leases[task_id]
                    task = self._load(task_id)
                    if task is None:
                        continue
                    self._stall(task)
                    if task.state == TaskState.FAILED:
                        self._archive(task)
                    else:
                        self._save(task)
                        self._enqueue_waiting(task)
                    recovered.append(task)
        return recovered

    async def get_task(self, task_id: str) -> Optional[Task]:
        return self._load(task_id)

    async def get_counts(self, queue: QueueName) -> Dict[str, int]:
        async with self._lock:
            waiting = sum(
                1
                for kind in kinds_for_queue(queue)
                for _, _, tid in self._waiting.get((queue, kind), [])
                if tid in self._records and self._records[tid]["state"] == TaskState.WAITING.value
            )
            delayed = sum(
                1
                for _, _, tid in self._delayed.get(queue, [])
                if tid in self._records and self._records[tid]["state"] == TaskState.DELAYED.value
            )
            return {
                "waiting": waiting,
                "active": len(self._active.get(queue, {})),
                "completed": len(self._finished.get((queue, TaskState.COMPLETED), ())),
                "failed": len(self._finished.get((queue, TaskState.FAILED), ())),
                "delayed": delayed,
            }

    async def list_tasks(self, queue: QueueName, state: TaskState, limit: int = 50) -> List[Task]:
        async with self._lock:
            if state in (TaskState.COMPLETED, TaskState.FAILED):
                ids = list(self._finished.get((queue, state), ()))
            elif state == TaskState.ACTIVE:
                ids = list(self._active.get(queue, {}))
            elif state == TaskState.DELAYED:
                ids = [tid for _, _, tid in sorted(self._delayed.get(queue, []))]
            else:
                entries = []
                for kind in kinds_for_queue(queue):
                    entries.extend(self._waiting.get((queue, kind), []))
                ids = [tid for _, _, tid in sorted(entries)]

            tasks = [self._load(tid) for tid in ids]
            return [t for t in tasks if t is not None and t.state == state][:limit]

    async def clean(self, queue: QueueName) -> int:
        removed = 0
        async with self._lock:
            for state in (TaskState.COMPLETED, TaskState.FAILED):
                retained = self._finished.pop((queue, state), deque())
                for task_id in retained:
                    if self._records.pop(task_id, None) is not None:
                        removed += 1
        logger.info("Queue cleaned", queue=queue.value, removed=removed)
        return removed

    async def set_paused(self, queue: QueueName, paused: bool) -> None:
        if paused:
            self._paused.add(queue)
        else:
            self._paused.discard(queue)

    async def is_paused(self, queue: QueueName) -> bool:
        return queue in self._paused

    async def set_marker(self, key: str, ttl_seconds: int, value: str = "1") -> bool:
        async with self._lock:
            if self._marker_alive(key):
                return False
            self._markers[key] = (time.time() + ttl_seconds, value)
            return True

    async def has_marker(self, key: str) -> bool:
        return self._marker_alive(key)


class RedisQueueStore(QueueStore):
    """
    Redis-based queue store for production.

    Layout (all keys under ``prefix``):
    - ``tasks``                    hash  id -> task JSON
    - ``owner``                    hash  id -> worker id holding the lease
    - ``wait:{queue}:{kind}``      zset  id scored by priority * 1e13 + sequence
    - ``delayed:{queue}``          zset  "kind|priority|id" scored by run time (ms)
    - ``active:{queue}``           zset  id scored by lease deadline (ms)
    - ``completed:{queue}``        list  newest first, trimmed to retention
    - ``failed:{queue}``           list  newest first, trimmed to retention
    - ``paused:{queue}``           flag
    - ``marker:{key}``             string with TTL (dedup, idempotency)

    Task JSON is opaque to the Lua scripts; only ids and routing move
    between structures atomically.
    """

    # Store a new task, honouring its dedup marker
    PUSH_SCRIPT = """
    local tasks_key = KEYS[1]
    local seq_key = KEYS[2]
    local target_key = KEYS[3]
    local marker_key = KEYS[4]
    local task_id = ARGV[1]
    local task_json = ARGV[2]
    local mode = ARGV[3]
    local priority = tonumber(ARGV[4])
    local run_at = tonumber(ARGV[5])
    local member = ARGV[6]
    local marker_ttl = tonumber(ARGV[7])

    if marker_key ~= '' then
        if not redis.call('SET', marker_key, task_id, 'NX', 'EX', marker_ttl) then
            return 0
        end
    end

    redis.call('HSET', tasks_key, task_id, task_json)
    if mode == 'delayed' then
        redis.call('ZADD', target_key, run_at, member)
    else
        local seq = redis.call('INCR', seq_key)
        redis.call('ZADD', target_key, priority * 10000000000000 + seq, task_id)
    end
    return 1
    """

    # Promote due delayed tasks of the queue, then pop the best waiting one
    CLAIM_SCRIPT = """
    local wait_key = KEYS[1]
    local delayed_key = KEYS[2]
    local active_key = KEYS[3]
    local owner_key = KEYS[4]
    local seq_key = KEYS[5]
    local paused_key = KEYS[6]
    local now = tonumber(ARGV[1])
    local deadline = tonumber(ARGV[2])
    local worker_id = ARGV[3]
    local wait_prefix = ARGV[4]

    if redis.call('EXISTS', paused_key) == 1 then
        return false
    end

    local due = redis.call('ZRANGEBYSCORE', delayed_key, '-inf', now, 'LIMIT', 0, 100)
    for _, member in ipairs(due) do
        local kind, priority, task_id = string.match(member, '^([^|]+)|([^|]+)|(.+)$')
        redis.call('ZREM', delayed_key, member)
        local seq = redis.call('INCR', seq_key)
        redis.call('ZADD', wait_prefix .. kind, tonumber(priority) * 10000000000000 + seq, task_id)
    end

    local head = redis.call('ZRANGE', wait_key, 0, 0)
    if #head == 0 then
        return false
    end
    local task_id = head[1]
    redis.call('ZREM', wait_key, task_id)
    redis.call('ZADD', active_key, deadline, task_id)
    redis.call('HSET', owner_key, task_id, worker_id)
    return task_id
    """

    EXTEND_SCRIPT = """
    local active_key = KEYS[1]
    local owner_key = KEYS[2]
    if redis.call('HGET', owner_key, ARGV[1]) ~= ARGV[2] then
        return 0
    end
    redis.call('ZADD', active_key, 'XX', tonumber(ARGV[3]), ARGV[1])
    return 1
    """

    # Leave the active set: archive (complete/fail) or reschedule (retry)
    FINISH_SCRIPT = """
    local active_key = KEYS[1]
    local owner_key = KEYS[2]
    local tasks_key = KEYS[3]
    local target_key = KEYS[4]
    local task_id = ARGV[1]
    local worker_id = ARGV[2]
    local task_json = ARGV[3]
    local mode = ARGV[4]
    local keep = tonumber(ARGV[5])
    local member = ARGV[6]
    local run_at = tonumber(ARGV[7])

    if redis.call('HGET', owner_key, task_id) ~= worker_id then
        return 0
    end
    if redis.call('ZREM', active_key, task_id) == 0 then
        return 0
    end
    redis.call('HDEL', owner_key, task_id)
    redis.call('HSET', tasks_key, task_id, task_json)

    if mode == 'delayed' then
        redis.call('ZADD', target_key, run_at, member)
        return 1
    end

    redis.call('LPUSH', target_key, task_id)
    local overflow = redis.call('LRANGE', target_key, keep, -1)
    for _, old_id in ipairs(overflow) do
        redis.call('HDEL', tasks_key, old_id)
    end
    if keep == 0 then
        redis.call('DEL', target_key)
    else
        redis.call('LTRIM', target_key, 0, keep - 1)
    end
    return 1
    """

    # Requeue (waiting) or archive (failed) one expired lease. The id leaves
    # the active set in the same step, and only while its lease is still expired.
    STALL_SCRIPT = """
    local active_key = KEYS[1]
    local owner_key = KEYS[2]
    local tasks_key = KEYS[3]
    local target_key = KEYS[4]
    local seq_key = KEYS[5]
    local task_id = ARGV[1]
    local task_json = ARGV[2]
    local mode = ARGV[3]
    local now = tonumber(ARGV[4])
    local priority = tonumber(ARGV[5])
    local keep = tonumber(ARGV[6])

    local deadline = redis.call('ZSCORE', active_key, task_id)
    if not deadline or tonumber(deadline) > now then
        return 0
    end
    redis.call('ZREM', active_key, task_id)
    redis.call('HDEL', owner_key, task_id)
    redis.call('HSET', tasks_key, task_id, task_json)

    if mode == 'waiting' then
        local seq = redis.call('INCR', seq_key)
        redis.call('ZADD', target_key, priority * 10000000000000 + seq, task_id)
        return 1
    end

    redis.call('LPUSH', target_key, task_id)
    local overflow = redis.call('LRANGE', target_key, keep, -1)
    for _, old_id in ipairs(overflow) do
        redis.call('HDEL', tasks_key, old_id)
    end
    if keep == 0 then
        redis.call('DEL', target_key)
    else
        redis.call('LTRIM', target_key, 0, keep - 1)
    end
    return 1
    """

    mode = "redis"
    durable = True

    def __init__(
        self,
        redis_url: str = "redis://localhost:6379/0",
        prefix: str = "kivvy:jobs:",
        connect_timeout: float = 2.0,
        socket_timeout: float = 5.0,
        client: Optional[Any] = None,
        **kwargs: Any,
    ):
        super().__init__(**kwargs)
        self.redis_url = redis_url
        self.prefix = prefix
        self.connect_timeout = connect_timeout
        self.socket_timeout = socket_timeout
        self._client = client
        self._scripts: Dict[str, Any] = {}

    def _get_client(self):
        """Get or create Redis client."""
        if self._client is None:
            self._client = aioredis.from_url(
                self.redis_url,
                decode_responses=True,
                socket_connect_timeout=self.connect_timeout,
                socket_timeout=self.socket_timeout,
            )
        return self._client

    def _key(self, *parts: str) -> str:
        return self.prefix + ":".join(parts)

    def _wait_key(self, queue: QueueName, kind: TaskKind) -> str:
        return self._key("wait", queue.value, kind.value)

    def _delayed_key(self, queue: QueueName) -> str:
        return self._key("delayed", queue.value)

    def _active_key(self, queue: QueueName) -> str:
        return self._key("active", queue.value)

    def _finished_key(self, queue: QueueName, state: TaskState) -> str:
        return self._key(state.value, queue.value)

    def _paused_key(self, queue: QueueName) -> str:
        return self._key("paused", queue.value)

    def _marker_key(self, key: str) -> str:
        return self._key("marker", key)

    @staticmethod
    def _delayed_member(task: Task) -> str:
        return f"{task.kind.value}|{task.priority.value}|{task.id}"

    async def initialize(self) -> None:
        client = self._get_client()
        await client.ping()

        self._scripts["push"] = client.register_script(self.PUSH_SCRIPT)
        self._scripts["claim"] = client.register_script(self.CLAIM_SCRIPT)
        self._scripts["extend"] = client.register_script(self.EXTEND_SCRIPT)
        self._scripts["finish"] = client.register_script(self.FINISH_SCRIPT)
        self._scripts["stall"] = client.register_script(self.STALL_SCRIPT)

        logger.info("Redis queue store initialized", url=self.redis_url, prefix=self.prefix)

    async def shutdown(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None
        logger.info("Redis queue store shutdown")

    async def ping(self) -> bool:
        try:
            return bool(await self._get_client().ping())
        except (RedisError, OSError) as e:
            logger.warning("Redis ping failed", error=str(e))
            return False

    async def _write(self, task: Task) -> None:
        await self._get_client().hset(self._key("tasks"), task.id, json.dumps(task.to_dict()))

    async def _read(self, task_id: str) -> Optional[Task]:
        raw = await self._get_client().hget(self._key("tasks"), task_id)
        return Task.from_dict(json.loads(raw)) if raw else None

    async def push(self, task: Task) -> bool:
        self._stage(task)
        delayed = task.state == TaskState.DELAYED
        created = await self._scripts["push"](
            keys=[
                self._key("tasks"),
                self._key("seq"),
                self._delayed_key(task.queue) if delayed else self._wait_key(task.queue, task.kind),
                self._marker_key(f"dedup:{task.dedup_key}") if task.dedup_key else "",
            ],
            args=[
                task.id,
                json.dumps(task.to_dict()),
                "delayed" if delayed else "waiting",
                task.priority.value,
                int(_epoch(task.run_at) * 1000),
                self._delayed_member(task),
                self.dedup_ttl_seconds,
            ],
        )
        return bool(created)

    async def claim_next(
        self,
        queue: QueueName,
        kind: TaskKind,
        worker_id: str,
        lease_seconds: float,
    ) -> Optional[Task]:
        now = time.time()
        task_id = await self._scripts["claim"](
            keys=[
                self._wait_key(queue, kind),
                self._delayed_key(queue),
                self._active_key(queue),
                self._key("owner"),
                self._key("seq"),
                self._paused_key(queue),
            ],
            args=[
                int(now * 1000),
                int((now + lease_seconds) * 1000),
                worker_id,
                self._key("wait", queue.value, ""),
            ],
        )
        if not task_id:
            return None

        task = await self._read(task_id)
        if task is None:
            logger.warning("Claimed task has no record", task_id=task_id, queue=queue.value)
            await self._drop_lease(queue, task_id)
            return None

        task.state = TaskState.ACTIVE
        task.attempts_made += 1
        task.worker_id = worker_id
        task.started_at = utcnow()
        await self._write(task)
        return task

    async def extend_lease(self, task: Task, lease_seconds: float) -> bool:
        extended = await self._scripts["extend"](
            keys=[self._active_key(task.queue), self._key("owner")],
            args=[task.id, task.worker_id or "", int((time.time() + lease_seconds) * 1000)],
        )
        return bool(extended)

    async def _finish(self, task: Task, worker_id: str) -> bool:
        keep_completed, keep_failed = self._retention_for(task.queue)
        delayed = task.state == TaskState.DELAYED
        if delayed:
            target = self._delayed_key(task.queue)
            keep = 0
        else:
            target = self._finished_key(task.queue, task.state)
            keep = keep_completed if task.state == TaskState.COMPLETED else keep_failed

        done = await self._scripts["finish"](
            keys=[self._active_key(task.queue), self._key("owner"), self._key("tasks"), target],
            args=[
                task.id,
                worker_id,
                json.dumps(task.to_dict()),
                "delayed" if delayed else "archive",
                keep,
                self._delayed_member(task),
                int(_epoch(task.run_at) * 1000),
            ],
        )
        return bool(done)

    async def complete(self, task: Task) -> bool:
        owner = task.worker_id or ""
        task.state = TaskState.COMPLETED
        task.finished_at = task.finished_at or utcnow()
        return await self._finish(task, owner)

    async def retry(self, task: Task, delay_ms: int) -> bool:
        owner = task.worker_id or ""
        task.state = TaskState.DELAYED
        task.worker_id = None
        task.run_at = datetime.fromtimestamp(time.time() + delay_ms / 1000.0, tz=timezone.utc)
        return await self._finish(task, owner)

    async def fail(self, task: Task) -> bool:
        owner = task.worker_id or ""
        task.state = TaskState.FAILED
        task.finished_at = task.finished_at or utcnow()
        return await self._finish(task, owner)

    async def _drop_lease(self, queue: QueueName, task_id: str) -> None:
        async with self._get_client().pipeline(transaction=True) as pipe:
            pipe.zrem(self._active_key(queue), task_id)
            pipe.hdel(self._key("owner"), task_id)
            await pipe.execute()

    async def recover_stalled(self, now: Optional[float] = None) -> List[Task]:
        """
        Requeue or fail every task whose lease expired before ``now``.

        An id stays in the active set until the stall script has moved it, so
        a pass interrupted by a Redis error leaves the task for the next pass.
        """
        now = time.time() if now is None else now
        now_ms = int(now * 1000)
        client = self._get_client()
        recovered: List[Task] = []

        for queue in QueueName:
            expired = await client.zrangebyscore(self._active_key(queue), "-inf", now_ms, start=0, num=100)
            for task_id in expired:
                task = await self._read(task_id)
                if task is None:
                    logger.warning("Stalled task has no record", task_id=task_id, queue=queue.value)
                    await self._drop_lease(queue, task_id)
                    continue

                self._stall(task)
                if task.state == TaskState.FAILED:
                    target = self._finished_key(queue, TaskState.FAILED)
                    keep = self._retention_for(queue)[1]
                else:
                    target = self._wait_key(queue, task.kind)
                    keep = 0

                moved = await self._scripts["stall"](
                    keys=[
                        self._active_key(queue),
                        self._key("owner"),
                        self._key("tasks"),
                        target,
                        self._key("seq"),
                    ],
                    args=[
                        task.id,
                        json.dumps(task.to_dict()),
                        task.state.value,
                        now_ms,
                        task.priority.value,
                        keep,
                    ],
                )
                if moved:
                    recovered.append(task)
        return recovered

    async def get_task(self, task_id: str) -> Optional[Task]:
        return await self._read(task_id)

    async def get_counts(self, queue: QueueName) -> Dict[str, int]:
        client = self._get_client()
        async with client.pipeline(transaction=False) as pipe:
            for kind in kinds_for_queue(queue):
                pipe.zcard(self._wait_key(queue, kind))
            pipe.zcard(self._active_key(queue))
            pipe.llen(self._finished_key(queue, TaskState.COMPLETED))
            pipe.llen(self._finished_key(queue, TaskState.FAILED))
            pipe.zcard(self._delayed_key(queue))
            results = await pipe.execute()

        waiting_counts = results[:-4]
        active, completed, failed, delayed = results[-4:]
        return {
            "waiting": int(sum(waiting_counts)),
            "active": int(active),
            "completed": int(completed),
            "failed": int(failed),
            "delayed": int(delayed),
        }

    async def list_tasks(self, queue: QueueName, state: TaskState, limit: int = 50) -> List[Task]:
        client = self._get_client()
        if state in (TaskState.COMPLETED, TaskState.FAILED):
            ids = await client.lrange(self._finished_key(queue, state), 0, limit - 1)
        elif state == TaskState.ACTIVE:
            ids = await client.zrange(self._active_key(queue), 0, limit - 1)
        elif state == TaskState.DELAYED:
            members = await client.zrange(self._delayed_key(queue), 0, limit - 1)
            ids = [m.split("|", 2)[2] for m in members]
        else:
            scored: List[Tuple[float, str]] = []
            for kind in kinds_for_queue(queue):
                entries = await client.zrange(self._wait_key(queue, kind), 0, limit - 1, withscores=True)
                scored.extend((score, tid) for tid, score in entries)
            ids = [tid for _, tid in sorted(scored)[:limit]]

        if not ids:
            return []
        raw = await client.hmget(self._key("tasks"), ids)
        return [Task.from_dict(json.loads(r)) for r in raw if r]

    async def clean(self, queue: QueueName) -> int:
        client = self._get_client()
        removed = 0
        for state in (TaskState.COMPLETED, TaskState.FAILED):
            key = self._finished_key(queue, state)
            ids = await client.lrange(key, 0, -1)
            async with client.pipeline(transaction=True) as pipe:
                if ids:
                    pipe.hdel(self._key("tasks"), *ids)
                pipe.delete(key)
                await pipe.execute()
            removed += len(ids)
        logger.info("Queue cleaned", queue=queue.value, removed=removed)
        return removed

    async def set_paused(self, queue: QueueName, paused: bool) -> None:
        client = self._get_client()
        if paused:
            await client.set(self._paused_key(queue), "1")
        else:
            await client.delete(self._paused_key(queue))

    async def is_paused(self, queue: QueueName) -> bool:
        return bool(await self._get_client().exists(self._paused_key(queue)))

    async def set_marker(self, key: str, ttl_seconds: int, value: str = "1") -> bool:
        created = await self._get_client().set(self._marker_key(key), value, nx=True, ex=ttl_seconds)
        return bool(created)

    async def has_marker(self, key: str) -> bool:
        return bool(await self._get_client().exists(self._marker_key(key)))


def _store_kwargs(config) -> Dict[str, Any]:
    return {
        "retention": {
            name: (policy.retain_completed, policy.retain_failed)
            for name, policy in config.queues.items()
        },
        "max_stalled_count": config.worker.max_stalled_count,
        "dedup_ttl_seconds": config.scheduler.dedup_ttl_seconds,
    }


async def open_queue_store(config) -> QueueStore:
    """
    Select and initialize the queue store for ``config.queue_backend``.

    ``memory`` never touches Redis. ``redis`` requires it and raises when it
    is unreachable. ``auto`` probes Redis and degrades to the in-memory store
    with a warning, so the process keeps working without durability.
    """
    kwargs = _store_kwargs(config)

    if config.queue_backend == "memory":
        store: QueueStore = InMemoryQueueStore(**kwargs)
        await store.initialize()
        return store

    redis_store = RedisQueueStore(
        redis_url=config.redis.url,
        prefix=config.redis.prefix,
        connect_timeout=config.redis.connect_timeout,
        socket_timeout=config.redis.socket_timeout,
        **kwargs,
    )
    try:
        await redis_store.initialize()
        return redis_store
    except (RedisError, OSError) as e:
        if config.queue_backend == "redis":
            raise
        await redis_store.shutdown()
        logger.warning(
            "Redis unreachable, queue store degraded to memory",
            reason=str(e),
            redis_url=config.redis.url,
            mode="memory",
            durable=False,
        )

    store = InMemoryQueueStore(**kwargs)
    await store.initialize()
    return store
