from __future__ import annotations

import asyncio
import logging
from typing import Optional
import uuid

from pydantic import BaseModel, ConfigDict

from skinmentor.services.errors import classify, validation_error
from skinmentor.services.image_prep import DEFAULT_MAX_DIMENSION, DEFAULT_QUALITY, EncodedImage, validate_upload
from skinmentor.services.progress import ProgressChannel
from skinmentor.services.quality_gate import ImageQualityResult, QualityGate, quality_message
from skinmentor.services.retry import DEFAULT_INITIAL_DELAY_MS, DEFAULT_MAX_ATTEMPTS, run_with_retry
from skinmentor.services.scoring import ScoringService
from skinmentor.store.progress_store import Stage
from skinmentor.store.report_store import AnalysisReport, ReportStore

logger = logging.getLogger("skin-mentor.analysis")


class Submission(BaseModel):
    model_config = ConfigDict(frozen=True)

    job_id: str
    quality: ImageQualityResult
    forced: bool = False


class AnalysisService:
    """Runs the gate -> score -> report pipeline and reports each stage."""

    def __init__(
        self,
        *,
        channel: ProgressChannel,
        scorer: ScoringService,
        reports: ReportStore,
        gate: Optional[QualityGate] = None,
        max_dimension: int = DEFAULT_MAX_DIMENSION,
        quality: float = DEFAULT_QUALITY,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        initial_delay_ms: float = DEFAULT_INITIAL_DELAY_MS,
    ) -> None:
        self._channel = channel
        self._scorer = scorer
        self._reports = reports
        self._gate = gate or QualityGate()
        self._max_dimension = max_dimension
        self._quality = quality
        self._max_attempts = max_attempts
        self._initial_delay_ms = initial_delay_ms
        self._tasks: set[asyncio.Task[None]] = set()

    @property
    def gate(self) -> QualityGate:
        return self._gate

    async def check(self, blob: bytes, content_type: Optional[str], *, max_dimension: Optional[int] = None, quality: Optional[float] = None) -> tuple[EncodedImage, ImageQualityResult]:
        validate_upload(blob, content_type)
        return await asyncio.to_thread(
            self._gate.prepare_and_assess,
            blob,
            self._max_dimension if max_dimension is None else max_dimension,
            self._quality if quality is None else quality,
        )

    async def submit(self, blob: bytes, content_type: Optional[str], *, force: bool = False) -> Submission:
        image, result = await self.check(blob, content_type)
        if not result.is_good and not force:
            raise validation_error(
                "Invalid image: " + quality_message(result),
                detail={"quality": result.model_dump()},
            )

        job_id = uuid.uuid4().hex
        await self._channel.publish(job_id, Stage.CONNECTING, 0, "preparing")
        logger.info("analysis_submitted job_id=%s forced=%s reasons=%s", job_id, force and not result.is_good, ",".join(result.reasons))
        self._spawn(self.run(job_id, image, result))
        return Submission(job_id=job_id, quality=result, forced=force and not result.is_good)

    def _spawn(self, coro) -> None:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def run(self, job_id: str, image: EncodedImage, result: ImageQualityResult) -> Optional[AnalysisReport]:
        try:
            await self._channel.publish(job_id, Stage.UPLOADING, 20, "uploading image")
            await self._channel.publish(job_id, Stage.ANALYZING, 50, "analyzing skin")
            scored = await run_with_retry(
                lambda: self._scorer.score(image),
                max_attempts=self._max_attempts,
                initial_delay_ms=self._initial_delay_ms,
            )
            await self._channel.publish(job_id, Stage.SCORING, 80, "computing scores")
            report = AnalysisReport(
                job_id=job_id,
                scores=scored.scores,
                overall_score=scored.overall_score,
                primary_concern=scored.primary_concern,
                confidence=scored.confidence,
                uncertainty=scored.uncertainty,
                quality=result,
            )
            await self._reports.put(report)
            await self._channel.publish(job_id, Stage.COMPLETE, 100, "analysis complete")
            logger.info("analysis_complete job_id=%s overall=%s concern=%s", job_id, report.overall_score, report.primary_concern)
            return report
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            classified = classify(exc)
            logger.warning("analysis_failed job_id=%s kind=%s err=%s", job_id, classified.kind.value, classified.cause or classified)
            await self._channel.publish(job_id, Stage.ERROR, 100, classified.message)
            return None

    async def report(self, job_id: str) -> Optional[AnalysisReport]:
        return await self._reports.get(job_id)

    async def drain(self) -> None:
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
