"""Redis-backed storage for leased, scheduled and periodic tasks."""

from __future__ import annotations

import enum
import json
import logging
import os
import time
import uuid
from dataclasses import dataclass
from typing import Any, Callable

import redis.asyncio as aioredis

logger = logging.getLogger(__name__)

UPDATE_CHANNEL = "UPDATE"
ITEM_KEY = "ITEM"
LEASE_TIME_KEY = "LEASE_TIME"
PERIODIC_END_TIME_KEY = "PERIODIC_END_TIME"
PERIODIC_INTERVAL_KEY = "PERIODIC_INTERVAL"
PERIODIC_QUEUE = "PERIODICITY"
PERIODIC_LEASE_TIME_MS = 10000

_GET_TASKS_SCRIPT = """
local queue_name = ARGV[1]
local lease_queue_name = ARGV[2]
local lease_time_prefix = ARGV[3]
local now = tonumber(ARGV[4])
local no_of_tasks = tonumber(ARGV[5])
local tasks = redis.call('ZRANGEBYSCORE', queue_name, '-inf', now, 'LIMIT', 0, no_of_tasks)

for _, task in ipairs(tasks) do
    local lease_time = tonumber(redis.call('HGET', lease_time_prefix, task))
    redis.call('ZREM', queue_name, task)
    redis.call('ZADD', lease_queue_name, now + lease_time, task)
end

return tasks
"""

_ACK_SCRIPT = """
local lease_time_prefix = ARGV[1]
local lease_queue_name = ARGV[2]
local item_prefix = ARGV[3]
local task_id = ARGV[4]

redis.call('HDEL', lease_time_prefix, task_id)
redis.call('HDEL', item_prefix, task_id)
redis.call('ZREM', lease_queue_name, task_id)

return true
"""

_LEASE_TIMEOUT_SCRIPT = """
local lease_queue_name = ARGV[1]
local queue_name = ARGV[2]
local task_id = ARGV[3]
local now = tonumber(ARGV[4])

redis.call('ZREM', lease_queue_name, task_id)
redis.call('ZADD', queue_name, now, task_id)
"""

_SCHEDULE_PERIODIC_SCRIPT = """
local periodic_set_name = ARGV[1]
local now = tonumber(ARGV[2])

local tasksDue = redis.call('ZRANGEBYSCORE', periodic_set_name, '-inf', now, 'WITHSCORES')
local tasksToQueue = {}

for i = 1, #tasksDue, 2 do
    local task = tasksDue[i]
    local current_start_time = tonumber(tasksDue[i+1])

    local interval = tonumber(redis.call('HGET', 'PERIODIC_INTERVAL', task))
    local end_time = tonumber(redis.call('HGET', 'PERIODIC_END_TIME', task))

    local next_start_time = current_start_time + interval

    if next_start_time <= end_time then
        redis.call('ZADD', periodic_set_name, next_start_time, task)
        table.insert(tasksToQueue, task)
    else
        redis.call('ZREM', periodic_set_name, task)
    end
end

return tasksToQueue
"""


class UpdateType(enum.Enum):
    """Kinds of change announced on the update channel."""

    ADD_JOB = "AddJob"
    ITEM_LEASED = "ItemLeased"
    ITEM_ACKED = "ItemAcked"


@dataclass
class Update:
    """A change to a queue, published as JSON on the update channel."""

    queue_name: str = ""
    task_id: str = ""
    update_type: UpdateType = UpdateType.ADD_JOB
    to_be_consumed_at: int | None = None

    def to_json(self) -> str:
        """Serialize to compact JSON."""
        return json.dumps(
            {
                "queue_name": self.queue_name,
                "task_id": self.task_id,
                "update_type": self.update_type.value,
                "to_be_consumed_at": self.to_be_consumed_at,
            },
            separators=(",", ":"),
            ensure_ascii=False,
        )

    @classmethod
    def from_json(cls, payload: str | bytes) -> Update:
        """Parse an update; raises ``ValueError`` on malformed input."""
        data = json.loads(payload)
        if not isinstance(data, dict):
            raise ValueError("update must be a JSON object")
        for name in ("queue_name", "task_id", "update_type"):
            if name not in data:
                raise ValueError(f"update is missing field {name!r}")
            if not isinstance(data[name], str):
                raise ValueError(f"update field {name!r} must be a string")
        consumed_at = data.get("to_be_consumed_at")
        if consumed_at is not None and (
            isinstance(consumed_at, bool)
            or not isinstance(consumed_at, int)
            or consumed_at < 0
        ):
            raise ValueError("to_be_consumed_at must be a non-negative integer")
        return cls(
            queue_name=data["queue_name"],
            task_id=data["task_id"],
            update_type=UpdateType(data["update_type"]),
            to_be_consumed_at=consumed_at,
        )


def lease_queue_name(queue_name: str) -> str:
    """Name of the sorted set holding leased tasks of a queue."""
    return f"LEASE_SETS:{queue_name}"


def insert_queue_name(queue_name: str) -> str:
    """Name of the sorted set holding tasks waiting to be leased."""
    return f"INSERT_QUEUE:{queue_name}"


def periodic_set_name(queue_name: str) -> str:
    """Name of the sorted set holding periodic tasks by next start time."""
    return f"PERIODIC_SETS:{queue_name}"


def connection_url(host: str, port: str | int) -> str:
    """Build a Redis connection URL."""
    return f"redis://{host}:{port}"


def _now_ms() -> int:
    return time.time_ns() // 1_000_000


def _require_env(name: str) -> str:
    try:
        return os.environ[name]
    except KeyError:
        raise KeyError(f"environment variable {name} is not set") from None


class RedisStore:
    """Task storage on top of an asyncio Redis client with decoded responses."""

    def __init__(self, client: Any, clock: Callable[[], int] | None = None) -> None:
        self.client = client
        self._clock = clock or _now_ms

    @classmethod
    def from_env(cls) -> RedisStore:
        """Create a store from the ``REDIS_HOST`` and ``REDIS_PORT`` variables."""
        host = _require_env("REDIS_HOST")
        port = _require_env("REDIS_PORT")
        client = aioredis.Redis.from_url(connection_url(host, port), decode_responses=True)
        return cls(client)

    def open_pubsub(self) -> Any:
        """Return a new pub/sub handle on the same server."""
        return self.client.pubsub()

    async def close(self) -> None:
        """Close the underlying connection pool."""
        await self.client.aclose()

    async def get_task_by_id(self, task_id: str) -> str:
        """Return the stored body of a task; ``KeyError`` if it does not exist."""
        task = await self.client.hget(ITEM_KEY, task_id)
        if task is None:
            raise KeyError(task_id)
        return task

    async def get_lease_time_by_id(self, task_id: str) -> int:
        """Return a task's lease time in milliseconds; ``KeyError`` if unknown."""
        lease_time = await self.client.hget(LEASE_TIME_KEY, task_id)
        if lease_time is None:
            raise KeyError(task_id)
        return int(lease_time)

    async def add_scheduled_task(
        self, queue_name: str, task: str, time: int, lease_time: int
    ) -> str:
        """Store a task due at ``time`` (ms) and announce it; returns its id."""
        task_id = str(uuid.uuid4())
        await self.client.hset(ITEM_KEY, task_id, task)
        await self.client.hset(LEASE_TIME_KEY, task_id, str(lease_time))
        await self.client.zadd(insert_queue_name(queue_name), {task_id: float(time)})
        await self.publish_update(
            Update(queue_name, task_id, UpdateType.ADD_JOB, time + lease_time)
        )
        return task_id

    async def get_tasks(self, queue_name: str, no_of_tasks: int) -> list[str]:
        """Lease up to ``no_of_tasks`` due tasks and return their ids."""
        now = self._clock()
        task_ids = await self.client.eval(
            _GET_TASKS_SCRIPT,
            0,
            insert_queue_name(queue_name),
            lease_queue_name(queue_name),
            LEASE_TIME_KEY,
            str(now),
            str(no_of_tasks),
        )
        task_ids = list(task_ids or [])
        for task_id in task_ids:
            lease_time = await self.get_lease_time_by_id(task_id)
            await self.publish_update(
                Update(queue_name, task_id, UpdateType.ITEM_LEASED, lease_time + now)
            )
        return task_ids

    async def ack_task(self, queue_name: str, task_id: str) -> bool:
        """Remove a completed task; returns ``False`` if it was not present."""
        if not await self.client.hexists(ITEM_KEY, task_id):
            return False
        acked = bool(
            await self.client.eval(
                _ACK_SCRIPT,
                0,
                LEASE_TIME_KEY,
                lease_queue_name(queue_name),
                ITEM_KEY,
                task_id,
            )
        )
        logger.debug("acked %s: %s", task_id, acked)
        await self.publish_update(Update(queue_name, task_id, UpdateType.ITEM_ACKED, None))
        return acked

    async def handle_lease_timeout(self, queue_name: str, task_id: str) -> None:
        """Put a task whose lease expired back into its queue, due now."""
        if not await self.client.hexists(ITEM_KEY, task_id):
            return
        now = self._clock()
        await self.client.eval(
            _LEASE_TIMEOUT_SCRIPT,
            0,
            lease_queue_name(queue_name),
            insert_queue_name(queue_name),
            task_id,
            str(now),
        )
        await self.publish_update(Update(queue_name, task_id, UpdateType.ADD_JOB, now))

    async def add_periodic_task(
        self,
        queue_name: str,
        task: str,
        lease_time: int,
        task_start_time: int,
        task_end_time: int,
        task_interval: int,
    ) -> bool:
        """Store a periodic task in the shared periodic set."""
        task_id = str(uuid.uuid4())
        await self.client.hset(ITEM_KEY, task_id, task)
        await self.client.hset(LEASE_TIME_KEY, task_id, str(lease_time))
        await self.client.hset(PERIODIC_END_TIME_KEY, task_id, str(task_end_time))
        await self.client.hset(PERIODIC_INTERVAL_KEY, task_id, str(task_interval))
        await self.client.zadd(
            periodic_set_name(PERIODIC_QUEUE), {task_id: float(task_start_time)}
        )
        return True

    async def schedule_periodic_tasks(self, queue_name: str) -> bool:
        """Advance due periodic tasks and enqueue one run of each into ``queue_name``."""
        now = self._clock()
        due = await self.client.eval(
            _SCHEDULE_PERIODIC_SCRIPT, 0, periodic_set_name(queue_name), str(now)
        )
        for task in due or []:
            logger.info("Scheduled %s", task)
            await self.add_scheduled_task(queue_name, task, now, PERIODIC_LEASE_TIME_MS)
        return True

    async def publish_update(self, update: Update) -> None:
        """Publish an update on the update channel."""
        await self.client.publish(UPDATE_CHANNEL, update.to_json())