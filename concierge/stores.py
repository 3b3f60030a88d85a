"""Persistent collaborators: the Tier 2 cache store and the escalation sink.

Each has a Redis implementation and an in-memory one used in LITE MODE
(no ``REDIS_URL``) and in tests. Only single-key atomicity is assumed.
"""

import json
import logging
from typing import Protocol

import redis.asyncio as aioredis

from .models import CacheEntry, EscalationRecord, EscalationStatus

logger = logging.getLogger(__name__)


async def connect_redis(url: str, timeout: float = 5.0) -> "aioredis.Redis | None":
    """Connect to Redis, returning None when unconfigured or unreachable."""
    if not url:
        print("Storage: Using in-memory (no Redis configured)")
        return None
    client = aioredis.from_url(url, decode_responses=True, socket_connect_timeout=timeout)
    try:
        await client.ping()
    except Exception as e:
        print(f"Storage: Redis unavailable ({e}), using in-memory")
        await client.aclose()
        return None
    print(f"Storage: Redis connected ({url})")
    return client


class CacheStore(Protocol):
    async def read(self, key: str, language: str) -> CacheEntry | None: ...

    async def upsert(self, entry: CacheEntry) -> None: ...

    async def delete(self, key: str) -> None: ...

    async def clear(self) -> int: ...

    async def count(self) -> int: ...


class EscalationSink(Protocol):
    async def create_case(self, record: EscalationRecord) -> str: ...

    async def find_open_case(self, user_id: str) -> EscalationRecord | None: ...

    async def get_case(self, case_id: str) -> EscalationRecord | None: ...

    async def update_case(self, record: EscalationRecord) -> None: ...

    async def list_cases(self, since: float = 0.0) -> list[EscalationRecord]: ...


# ============================================================================
# In-memory implementations
# ============================================================================

class MemoryCacheStore:
    """Dict-backed persistent tier for LITE MODE."""

    __slots__ = ("_entries",)

    def __init__(self):
        self._entries: dict[str, CacheEntry] = {}

    async def read(self, key: str, language: str) -> CacheEntry | None:
        entry = self._entries.get(key)
        if entry is None or entry.language != language:
            return None
        return CacheEntry.from_dict(entry.to_dict())

    async def upsert(self, entry: CacheEntry) -> None:
        self._entries[entry.key] = CacheEntry.from_dict(entry.to_dict())

    async def delete(self, key: str) -> None:
        self._entries.pop(key, None)

    async def clear(self) -> int:
        count = len(self._entries)
        self._entries.clear()
        return count

    async def count(self) -> int:
        return len(self._entries)


class MemoryEscalationStore:
    """Dict-backed escalation sink for LITE MODE."""

    __slots__ = ("_cases",)

    def __init__(self):
        self._cases: dict[str, EscalationRecord] = {}

    async def create_case(self, record: EscalationRecord) -> str:
        self._cases[record.id] = record
        return record.id

    async def find_open_case(self, user_id: str) -> EscalationRecord | None:
        active = [c for c in self._cases.values() if c.user_id == user_id and c.is_active]
        if not active:
            return None
        return max(active, key=lambda c: c.created_at)

    async def get_case(self, case_id: str) -> EscalationRecord | None:
        return self._cases.get(case_id)

    async def update_case(self, record: EscalationRecord) -> None:
        self._cases[record.id] = record

    async def list_cases(self, since: float = 0.0) -> list[EscalationRecord]:
        return [c for c in self._cases.values() if c.created_at >= since]


# ============================================================================
# Redis implementations
# ============================================================================

class RedisCacheStore:
    """Persistent tier stored as one JSON string per entry."""

    PREFIX = "concierge:qc:"

    __slots__ = ("redis",)

    def __init__(self, redis):
        self.redis = redis

    def _key(self, key: str) -> str:
        return f"{self.PREFIX}{key}"

    async def read(self, key: str, language: str) -> CacheEntry | None:
        data = await self.redis.get(self._key(key))
        if not data:
            return None
        entry = CacheEntry.from_dict(json.loads(data))
        return entry if entry.language == language else None

    async def upsert(self, entry: CacheEntry) -> None:
        await self.redis.set(self._key(entry.key), json.dumps(entry.to_dict()))

    async def delete(self, key: str) -> None:
        await self.redis.delete(self._key(key))

    async def clear(self) -> int:
        keys = [k async for k in self.redis.scan_iter(match=f"{self.PREFIX}*")]
        if keys:
            await self.redis.delete(*keys)
        return len(keys)

    async def count(self) -> int:
        return len([k async for k in self.redis.scan_iter(match=f"{self.PREFIX}*")])


class RedisEscalationStore:
    """Escalation cases as JSON strings plus a per-user open-case pointer.

    Keys:
    - concierge:esc:case:{id}     - case JSON
    - concierge:esc:open:{user}   - id of the user's active case
    - concierge:esc:index         - sorted set of ids by created_at
    """

    CASE = "concierge:esc:case:"
    OPEN = "concierge:esc:open:"
    INDEX = "concierge:esc:index"

    __slots__ = ("redis",)

    def __init__(self, redis):
        self.redis = redis

    async def create_case(self, record: EscalationRecord) -> str:
        async with self.redis.pipeline(transaction=True) as pipe:
            pipe.set(f"{self.CASE}{record.id}", json.dumps(record.to_dict()))
            pipe.set(f"{self.OPEN}{record.user_id}", record.id)
            pipe.zadd(self.INDEX, {record.id: record.created_at})
            await pipe.execute()
        return record.id

    async def get_case(self, case_id: str) -> EscalationRecord | None:
        data = await self.redis.get(f"{self.CASE}{case_id}")
        return EscalationRecord.from_dict(json.loads(data)) if data else None

    async def find_open_case(self, user_id: str) -> EscalationRecord | None:
        case_id = await self.redis.get(f"{self.OPEN}{user_id}")
        if not case_id:
            return None
        record = await self.get_case(case_id)
        if record is None or not record.is_active:
            await self.redis.delete(f"{self.OPEN}{user_id}")
            return None
        return record

    async def update_case(self, record: EscalationRecord) -> None:
        await self.redis.set(f"{self.CASE}{record.id}", json.dumps(record.to_dict()))
        if record.status == EscalationStatus.RESOLVED:
            open_id = await self.redis.get(f"{self.OPEN}{record.user_id}")
            if open_id == record.id:
                await self.redis.delete(f"{self.OPEN}{record.user_id}")

    async def list_cases(self, since: float = 0.0) -> list[EscalationRecord]:
        ids = await self.redis.zrangebyscore(self.INDEX, since, "+inf")
        records = []
        for case_id in ids:
            if record := await self.get_case(case_id):
                records.append(record)
        return records
