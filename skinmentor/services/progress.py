from __future__ import annotations

import asyncio
import json
import logging
from typing import AsyncIterator, Awaitable, Callable, Optional, Union

from pydantic import ValidationError

from skinmentor.services.errors import validation_error
from skinmentor.store.progress_store import (
    MAX_JOB_ID_LENGTH,
    STAGE_ORDER,
    ProgressRecord,
    ProgressStore,
    Stage,
    env_bool,
    env_float,
)

logger = logging.getLogger("skin-mentor.progress")

PLACEHOLDER_MESSAGE = "preparing"


class ProgressChannel:
    """Publish/subscribe over a ProgressStore.

    Producers overwrite the record for a job (last write wins). Subscribers
    poll the store every ``poll_interval_s`` and re-emit the current record on
    every tick, whether or not it changed, until a terminal stage shows up.
    The terminal record is removed from the store as it is handed to the
    first observer that sees it.
    """

    def __init__(
        self,
        store: ProgressStore,
        *,
        poll_interval_s: Optional[float] = None,
        idle_timeout_s: Optional[float] = None,
        sweep_interval_s: Optional[float] = None,
        strict: Optional[bool] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._store = store
        self._poll_interval_s = poll_interval_s if poll_interval_s is not None else env_float("PROGRESS_POLL_INTERVAL_S", 1.0)
        self._idle_timeout_s = idle_timeout_s if idle_timeout_s is not None else env_float("PROGRESS_IDLE_TIMEOUT_S", 300.0)
        self._sweep_interval_s = sweep_interval_s if sweep_interval_s is not None else env_float("PROGRESS_SWEEP_INTERVAL_S", 30.0)
        self._strict = strict if strict is not None else env_bool("PROGRESS_STRICT_STAGES", False)
        self._sleep = sleep
        self._sweeper: Optional[asyncio.Task[None]] = None

    @property
    def store(self) -> ProgressStore:
        return self._store

    @property
    def poll_interval_s(self) -> float:
        return self._poll_interval_s

    @staticmethod
    def job_key(job_id: str) -> str:
        key = (job_id or "").strip() if isinstance(job_id, str) else ""
        if not key:
            raise validation_error("Analysis ID required")
        if len(key) > MAX_JOB_ID_LENGTH:
            raise validation_error(
                "Invalid analysis ID: too long",
                detail={"max_length": MAX_JOB_ID_LENGTH, "length": len(key)},
            )
        return key

    async def publish(
        self,
        job_id: str,
        stage: Union[Stage, str],
        progress: int,
        message: str = "",
    ) -> ProgressRecord:
        key = self.job_key(job_id)
        try:
            record = ProgressRecord(job_id=key, stage=stage, progress=progress, message=message or "")
        except ValidationError as exc:
            raise validation_error("Invalid progress update", cause=exc, detail={"job_id": key}) from exc

        if self._strict:
            current = await self._store.get(key)
            if current is not None:
                self._check_transition(current, record)

        await self._store.put(record)
        logger.debug("progress_published job_id=%s stage=%s progress=%s", key, record.stage.value, record.progress)
        return record

    @staticmethod
    def _check_transition(current: ProgressRecord, incoming: ProgressRecord) -> None:
        if current.is_terminal:
            raise validation_error(
                "Invalid progress update: job already finished",
                detail={"job_id": current.job_id, "stage": current.stage.value},
            )
        if STAGE_ORDER[incoming.stage] < STAGE_ORDER[current.stage]:
            raise validation_error(
                "Invalid progress update: stage cannot move backwards",
                detail={"job_id": current.job_id, "from": current.stage.value, "to": incoming.stage.value},
            )

    async def subscribe(self, job_id: str) -> AsyncIterator[ProgressRecord]:
        key = self.job_key(job_id)

        seen = False
        first = True
        try:
            while True:
                record = await self._store.get(key)
                if record is None:
                    if seen:
                        logger.info("progress_subscription_ended job_id=%s reason=record_gone", key)
                        return
                    if first:
                        yield ProgressRecord(job_id=key, stage=Stage.CONNECTING, progress=0, message=PLACEHOLDER_MESSAGE)
                elif record.is_terminal:
                    await self._store.delete(key)
                    logger.info("progress_subscription_ended job_id=%s reason=%s", key, record.stage.value)
                    yield record
                    return
                else:
                    seen = True
                    yield record
                first = False
                await self._sleep(self._poll_interval_s)
        finally:
            logger.debug("progress_subscription_closed job_id=%s", key)

    async def sse_events(self, job_id: str) -> AsyncIterator[str]:
        async for record in self.subscribe(job_id):
            yield f"data: {record.model_dump_json()}\n\n"
            if record.is_terminal:
                event = "complete" if record.stage == Stage.COMPLETE else "failed"
                payload = json.dumps({"job_id": record.job_id, "stage": record.stage.value, "message": record.message}, ensure_ascii=False)
                yield f"event: {event}\ndata: {payload}\n\n"

    async def sweep_once(self) -> int:
        removed = await self._store.sweep(self._idle_timeout_s)
        if removed:
            logger.info("progress_sweep removed=%s idle_timeout_s=%s", removed, self._idle_timeout_s)
        return removed

    async def run_sweeper(self) -> None:
        while True:
            await asyncio.sleep(self._sweep_interval_s)
            try:
                await self.sweep_once()
            except Exception as exc:
                logger.warning("progress_sweep_failed err=%s", exc)

    def start_sweeper(self) -> None:
        if self._sweeper is None or self._sweeper.done():
            self._sweeper = asyncio.create_task(self.run_sweeper())

    async def stop_sweeper(self) -> None:
        task = self._sweeper
        self._sweeper = None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
