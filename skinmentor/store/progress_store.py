from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from enum import Enum
import json
import logging
import os
import time
from typing import Callable, Optional, Protocol

from pydantic import BaseModel, ConfigDict, Field
import redis.asyncio as aioredis
from redis.exceptions import RedisError


logger = logging.getLogger("skin-mentor.progress-store")


class Stage(str, Enum):
    CONNECTING = "connecting"
    UPLOADING = "uploading"
    ANALYZING = "analyzing"
    SCORING = "scoring"
    COMPLETE = "complete"
    ERROR = "error"


STAGE_ORDER: dict[Stage, int] = {
    Stage.CONNECTING: 0,
    Stage.UPLOADING: 1,
    Stage.ANALYZING: 2,
    Stage.SCORING: 3,
    Stage.COMPLETE: 4,
    Stage.ERROR: 4,
}

TERMINAL_STAGES = frozenset({Stage.COMPLETE, Stage.ERROR})


class ProgressRecord(BaseModel):
    model_config = ConfigDict(frozen=True, extra="ignore")

    job_id: str
    stage: Stage
    progress: int = Field(ge=0, le=100)
    message: str = ""
    updated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def is_terminal(self) -> bool:
        return self.stage in TERMINAL_STAGES


class ProgressStore(Protocol):
    async def get(self, job_id: str) -> Optional[ProgressRecord]: ...

    async def put(self, record: ProgressRecord) -> None: ...

    async def delete(self, job_id: str) -> bool: ...

    async def sweep(self, idle_timeout_s: float) -> int: ...

    async def close(self) -> None: ...


MAX_JOB_ID_LENGTH = 200


def _normalize_job_id(job_id: str) -> str:
    if not isinstance(job_id, str):
        raise TypeError("job_id must be a string")
    normalized = job_id.strip()
    if not normalized:
        raise ValueError("job_id must be non-empty")
    if len(normalized) > MAX_JOB_ID_LENGTH:
        raise ValueError("job_id too long")
    return normalized


class InMemoryProgressStore(ProgressStore):
    """Records keyed by job id; each write replaces the whole (frozen) record."""

    def __init__(self, *, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._lock = asyncio.Lock()
        self._items: dict[str, tuple[ProgressRecord, float]] = {}

    async def get(self, job_id: str) -> Optional[ProgressRecord]:
        key = _normalize_job_id(job_id)
        async with self._lock:
            item = self._items.get(key)
            return item[0] if item else None

    async def put(self, record: ProgressRecord) -> None:
        key = _normalize_job_id(record.job_id)
        async with self._lock:
            self._items[key] = (record, self._clock())

    async def delete(self, job_id: str) -> bool:
        key = _normalize_job_id(job_id)
        async with self._lock:
            return self._items.pop(key, None) is not None

    async def sweep(self, idle_timeout_s: float) -> int:
        if idle_timeout_s <= 0:
            return 0
        now = self._clock()
        async with self._lock:
            stale = [k for k, (_, touched) in self._items.items() if now - touched >= idle_timeout_s]
            for key in stale:
                self._items.pop(key, None)
        return len(stale)

    async def contains(self, job_id: str) -> bool:
        return (await self.get(job_id)) is not None

    def __len__(self) -> int:
        return len(self._items)

    async def close(self) -> None:
        return None


class RedisProgressStore(ProgressStore):
    """Redis-backed store; the key TTL doubles as the idle timeout."""

    def __init__(
        self,
        *,
        redis_url: str,
        idle_timeout_s: float = 300.0,
        connect_timeout_s: float = 1.0,
        socket_timeout_s: float = 1.0,
        key_prefix: str = "skin_progress",
    ) -> None:
        self._redis_url = redis_url
        self._idle_timeout_s = idle_timeout_s
        self._key_prefix = key_prefix.strip(":") or "skin_progress"
        self._redis = aioredis.from_url(
            self._redis_url,
            decode_responses=True,
            socket_connect_timeout=connect_timeout_s,
            socket_timeout=socket_timeout_s,
        )

    async def ping(self) -> None:
        await self._redis.ping()

    def _key(self, job_id: str) -> str:
        return f"{self._key_prefix}:{_normalize_job_id(job_id)}"

    async def get(self, job_id: str) -> Optional[ProgressRecord]:
        raw = await self._redis.get(self._key(job_id))
        if not raw:
            return None
        try:
            obj = json.loads(raw)
        except ValueError:
            logger.warning("redis_progress_parse_failed job_id=%s", job_id)
            return None
        if not isinstance(obj, dict):
            return None
        return ProgressRecord.model_validate(obj)

    async def put(self, record: ProgressRecord) -> None:
        value = record.model_dump_json()
        ttl = int(max(1.0, self._idle_timeout_s)) if self._idle_timeout_s > 0 else 0
        if ttl > 0:
            await self._redis.set(self._key(record.job_id), value, ex=ttl)
        else:
            await self._redis.set(self._key(record.job_id), value)

    async def delete(self, job_id: str) -> bool:
        return bool(await self._redis.delete(self._key(job_id)))

    async def sweep(self, idle_timeout_s: float) -> int:
        # Expiry is handled by redis itself.
        return 0

    async def close(self) -> None:
        try:
            await self._redis.aclose()
        except RedisError as exc:
            logger.info("redis_progress_close_failed err=%s", exc)


class PersistentProgressStore(ProgressStore):
    """Uses redis when REDIS_URL is set and reachable, memory otherwise.

    A redis failure at runtime drops the store back to memory for the rest
    of the process lifetime.
    """

    def __init__(
        self,
        *,
        redis_url: Optional[str] = None,
        idle_timeout_s: Optional[float] = None,
        connect_timeout_s: float = 1.0,
        socket_timeout_s: float = 1.0,
        key_prefix: str = "skin_progress",
    ) -> None:
        self._redis_url = redis_url
        self._idle_timeout_s = idle_timeout_s if idle_timeout_s is not None else env_float("PROGRESS_IDLE_TIMEOUT_S", 300.0)
        self._connect_timeout_s = connect_timeout_s
        self._socket_timeout_s = socket_timeout_s
        self._key_prefix = key_prefix
        self._backend: ProgressStore = InMemoryProgressStore()
        self._backend_kind = "memory"

    @property
    def backend_kind(self) -> str:
        return self._backend_kind

    async def initialize(self) -> None:
        redis_url = (self._redis_url or os.getenv("REDIS_URL") or "").strip() or None
        if not redis_url:
            self._backend = InMemoryProgressStore()
            self._backend_kind = "memory"
            logger.info("progress_store_backend=memory reason=missing_REDIS_URL")
            return

        redis_backend: Optional[RedisProgressStore] = None
        try:
            redis_backend = RedisProgressStore(
                redis_url=redis_url,
                idle_timeout_s=self._idle_timeout_s,
                connect_timeout_s=self._connect_timeout_s,
                socket_timeout_s=self._socket_timeout_s,
                key_prefix=self._key_prefix,
            )
            await redis_backend.ping()
        except (RedisError, OSError, ValueError) as exc:
            if redis_backend is not None:
                await redis_backend.close()
            self._backend = InMemoryProgressStore()
            self._backend_kind = "memory"
            logger.warning("progress_store_backend=memory reason=redis_unavailable err=%s", exc)
            return

        self._backend = redis_backend
        self._backend_kind = "redis"
        logger.info("progress_store_backend=redis")

    async def get(self, job_id: str) -> Optional[ProgressRecord]:
        try:
            return await self._backend.get(job_id)
        except RedisError as exc:
            logger.warning("progress_store_get_failed backend=%s err=%s", self._backend_kind, exc)
            await self._fallback_to_memory(reason="redis_error")
            return None

    async def put(self, record: ProgressRecord) -> None:
        try:
            await self._backend.put(record)
        except RedisError as exc:
            logger.warning("progress_store_put_failed backend=%s err=%s", self._backend_kind, exc)
            await self._fallback_to_memory(reason="redis_error")
            await self._backend.put(record)

    async def delete(self, job_id: str) -> bool:
        try:
            return await self._backend.delete(job_id)
        except RedisError as exc:
            logger.warning("progress_store_delete_failed backend=%s err=%s", self._backend_kind, exc)
            await self._fallback_to_memory(reason="redis_error")
            return False

    async def sweep(self, idle_timeout_s: float) -> int:
        return await self._backend.sweep(idle_timeout_s)

    async def _fallback_to_memory(self, *, reason: str) -> None:
        if self._backend_kind == "memory":
            return
        await self._backend.close()
        self._backend = InMemoryProgressStore()
        self._backend_kind = "memory"
        logger.warning("progress_store_backend=memory reason=%s", reason)

    async def close(self) -> None:
        await self._backend.close()


def env_float(name: str, default: float) -> float:
    raw = (os.getenv(name) or "").strip()
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        return default


def env_bool(name: str, default: bool = False) -> bool:
    raw = (os.getenv(name) or "").strip().lower()
    if not raw:
        return default
    return raw in {"1", "true", "yes", "y"}
