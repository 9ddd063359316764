from __future__ import annotations

import logging
from typing import Optional

from skinmentor.services.analysis import AnalysisService
from skinmentor.services.mentor import MentorMatcher
from skinmentor.services.progress import ProgressChannel
from skinmentor.services.scoring import ScoringService, build_scoring_service
from skinmentor.store.mentor_repository import MentorTipRepository, build_mentor_repository
from skinmentor.store.progress_store import PersistentProgressStore, ProgressStore
from skinmentor.store.report_store import ReportStore

logger = logging.getLogger("skin-mentor.wiring")


class AppServices:
    """Owns every stateful collaborator of one app instance."""

    def __init__(
        self,
        *,
        progress_store: Optional[ProgressStore] = None,
        channel: Optional[ProgressChannel] = None,
        mentor_repository: Optional[MentorTipRepository] = None,
        matcher: Optional[MentorMatcher] = None,
        scorer: Optional[ScoringService] = None,
        reports: Optional[ReportStore] = None,
        analysis: Optional[AnalysisService] = None,
        run_sweeper: bool = True,
    ) -> None:
        self.progress_store: ProgressStore = progress_store or PersistentProgressStore()
        self.channel = channel or ProgressChannel(self.progress_store)
        self.mentor_repository = mentor_repository or build_mentor_repository()
        self.matcher = matcher or MentorMatcher(self.mentor_repository)
        self.scorer = scorer or build_scoring_service()
        self.reports = reports or ReportStore()
        self.analysis = analysis or AnalysisService(channel=self.channel, scorer=self.scorer, reports=self.reports)
        self._run_sweeper = run_sweeper

    @property
    def progress_backend_kind(self) -> str:
        return getattr(self.progress_store, "backend_kind", "memory")

    async def startup(self) -> None:
        initialize = getattr(self.progress_store, "initialize", None)
        if initialize is not None:
            await initialize()
        if self._run_sweeper:
            self.channel.start_sweeper()
        logger.info("services_started progress_backend=%s", self.progress_backend_kind)

    async def shutdown(self) -> None:
        await self.channel.stop_sweeper()
        await self.analysis.drain()
        await self.scorer.close()
        await self.mentor_repository.close()
        await self.progress_store.close()
        logger.info("services_stopped")
