import asyncio
import heapq
import logging
import secrets
import threading
import time
from datetime import datetime, timezone
from typing import Callable, Dict, Iterable, List, Literal, Optional, Protocol, Tuple

import redis.asyncio as redis
from redis.exceptions import RedisError, ResponseError
from pydantic import BaseModel, ConfigDict, ValidationError

from rules import RequestAttributes, Verdict

logger = logging.getLogger("gatekeeper.audit")


# ======================================================
# Tunables
# ======================================================

DEFAULT_TTL_SECONDS = 24 * 60 * 60
DEFAULT_TIMEOUT = 2.0
DEFAULT_PREFIX = "log:"


# ======================================================
# Errors
# ======================================================

class StorageUnavailable(Exception):
    """Backing store unreachable or timed out."""


class MalformedRecord(ValueError):
    """A stored entry could not be parsed back into an AuditRecord."""


# ======================================================
# Record
# ======================================================

class AuditRecord(BaseModel):
    model_config = ConfigDict(frozen=True)

    timestamp: datetime
    source_ip: str
    country: Optional[str] = None
    path: str
    query_string: str = ""
    method: str
    user_agent: Optional[str] = None
    reason: str
    action: Literal["BLOCKED"] = "BLOCKED"


def sort_newest_first(records: Iterable[AuditRecord]) -> List[AuditRecord]:
    return sorted(records, key=lambda r: r.timestamp, reverse=True)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ======================================================
# Key/value backends
# ======================================================

class KeyValueStore(Protocol):
    async def put(self, key: str, value: str, ttl_seconds: int) -> None: ...

    async def list(self, prefix: str = "") -> List[str]: ...

    async def get(self, key: str) -> Optional[str]: ...


class RedisKeyValueStore:
    """
    Redis-backed store. Expiry is native (SET ... EX).
    """

    def __init__(self, client: redis.Redis, scan_count: int = 500):
        self._client = client
        self._scan_count = scan_count

    async def put(self, key: str, value: str, ttl_seconds: int) -> None:
        try:
            await self._client.set(key, value, ex=ttl_seconds)
        except RedisError as e:
            raise StorageUnavailable(f"Redis write failed: {e}") from e

    async def list(self, prefix: str = "") -> List[str]:
        try:
            return [
                key async for key in self._client.scan_iter(
                    match=f"{prefix}*", count=self._scan_count
                )
            ]
        except RedisError as e:
            raise StorageUnavailable(f"Redis scan failed: {e}") from e

    async def get(self, key: str) -> Optional[str]:
        try:
            return await self._client.get(key)
        except ResponseError as e:
            # e.g. WRONGTYPE: the key exists but is not a string value
            raise MalformedRecord(f"Unreadable audit entry {key}: {e}") from e
        except RedisError as e:
            raise StorageUnavailable(f"Redis read failed: {e}") from e


class InMemoryKeyValueStore:
    """
    Process-local store with per-key expiry. Used for local runs and tests.

    Expired entries are dropped on every operation, earliest expiry first.
    """

    def __init__(self, clock: Callable[[], float] = time.time):
        self._clock = clock
        self._data: Dict[str, Tuple[str, float]] = {}  # key -> (value, expires_at)
        self._expiry: List[Tuple[float, str]] = []     # heap of (expires_at, key)
        self._lock = threading.Lock()

    def _purge(self, now: float) -> None:
        while self._expiry and self._expiry[0][0] <= now:
            expires_at, key = heapq.heappop(self._expiry)
            entry = self._data.get(key)
            # Skip heap entries superseded by a later put of the same key
            if entry is not None and entry[1] == expires_at:
                del self._data[key]

    def size(self) -> int:
        with self._lock:
            return len(self._data)

    async def put(self, key: str, value: str, ttl_seconds: int) -> None:
        with self._lock:
            now = self._clock()
            self._purge(now)
            expires_at = now + ttl_seconds
            self._data[key] = (value, expires_at)
            heapq.heappush(self._expiry, (expires_at, key))

    async def list(self, prefix: str = "") -> List[str]:
        with self._lock:
            self._purge(self._clock())
            return [k for k in self._data if k.startswith(prefix)]

    async def get(self, key: str) -> Optional[str]:
        with self._lock:
            self._purge(self._clock())
            entry = self._data.get(key)
            return entry[0] if entry is not None else None


# ======================================================
# Audit log
# ======================================================

class AuditLogStore:
    """
    Time-bounded log of denials.

    Keys carry creation time plus a random suffix, so concurrent writers never
    collide. Listing makes no ordering promise; use sort_newest_first().
    """

    def __init__(
        self,
        kv: KeyValueStore,
        *,
        ttl_seconds: int = DEFAULT_TTL_SECONDS,
        timeout: float = DEFAULT_TIMEOUT,
        prefix: str = DEFAULT_PREFIX,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self._kv = kv
        self.ttl_seconds = ttl_seconds
        self.timeout = timeout
        self.prefix = prefix
        self._clock = clock

    def _make_key(self, timestamp: datetime) -> str:
        millis = int(timestamp.timestamp() * 1000)
        return f"{self.prefix}{millis:013d}-{secrets.token_hex(4)}"

    async def _bounded(self, coro, operation: str):
        try:
            return await asyncio.wait_for(coro, timeout=self.timeout)
        except asyncio.TimeoutError as e:
            raise StorageUnavailable(f"Audit store {operation} timed out after {self.timeout}s") from e

    def build_record(self, attrs: RequestAttributes, verdict: Verdict) -> AuditRecord:
        return AuditRecord(
            timestamp=self._clock(),
            source_ip=attrs.source_ip,
            country=attrs.country,
            path=attrs.path,
            query_string=attrs.query_string,
            method=attrs.method,
            user_agent=attrs.user_agent,
            reason=verdict.reason,
        )

    async def put(self, record: AuditRecord) -> str:
        key = self._make_key(record.timestamp)
        await self._bounded(
            self._kv.put(key, record.model_dump_json(), self.ttl_seconds),
            "put",
        )
        return key

    async def get(self, key: str) -> Optional[AuditRecord]:
        raw = await self._bounded(self._kv.get(key), "get")
        if raw is None:
            return None
        try:
            return AuditRecord.model_validate_json(raw)
        except ValidationError as e:
            raise MalformedRecord(f"Unparseable audit entry {key}") from e

    async def list_recent(self, max_count: int) -> List[AuditRecord]:
        if max_count <= 0:
            return []

        keys = await self._bounded(self._kv.list(self.prefix), "list")
        # Zero-padded millis in the key: lexical order is creation order
        keys = sorted(keys, reverse=True)[:max_count]

        records: List[AuditRecord] = []
        for key in keys:
            try:
                record = await self.get(key)
            except MalformedRecord as e:
                logger.warning(f"Skipping audit entry: {e}")
                continue
            # Expired between list and get
            if record is not None:
                records.append(record)

        return records
