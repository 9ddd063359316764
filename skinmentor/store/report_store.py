from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from skinmentor.services.quality_gate import ImageQualityResult


class AnalysisReport(BaseModel):
    model_config = ConfigDict(frozen=True)

    job_id: str
    scores: dict[str, float]
    overall_score: float
    primary_concern: str
    confidence: float
    uncertainty: float
    quality: ImageQualityResult
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class ReportStore:
    def __init__(self, *, max_items: int = 1000) -> None:
        self._lock = asyncio.Lock()
        self._max_items = max_items
        self._reports: dict[str, AnalysisReport] = {}

    async def get(self, job_id: str) -> Optional[AnalysisReport]:
        async with self._lock:
            return self._reports.get(job_id)

    async def put(self, report: AnalysisReport) -> None:
        async with self._lock:
            self._reports.pop(report.job_id, None)
            self._reports[report.job_id] = report
            # Oldest insertions go first once the cap is hit.
            while len(self._reports) > self._max_items:
                self._reports.pop(next(iter(self._reports)))
