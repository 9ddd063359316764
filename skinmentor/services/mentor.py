from __future__ import annotations

from datetime import datetime, timezone
import logging
import random
from typing import Any, Callable, Optional

from pydantic import BaseModel, ConfigDict

from skinmentor.services.errors import classify, validation_error
from skinmentor.store.mentor_repository import MentorTipRepository, RankedCandidate

logger = logging.getLogger("skin-mentor.mentor")

NO_MATCH_MESSAGE = "No matching mentor was found."
DEFAULT_TREATMENT = "Procedure"


class MentorMatch(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    age: Optional[int] = None
    gender: Optional[str] = None
    # Cosmetic figures for display; they never take part in ranking.
    match_rate: int
    satisfaction: int
    sessions: int
    score: float
    concern: str
    treatment: str
    comment: str
    before_image_url: Optional[str] = None
    after_image_url: Optional[str] = None
    is_verified: bool = False
    visit_count: int = 0
    verified_facility_name: Optional[str] = None


def _current_year() -> int:
    return datetime.now(timezone.utc).year


class MentorMatcher:
    def __init__(
        self,
        repository: MentorTipRepository,
        *,
        rng: Optional[random.Random] = None,
        current_year: Callable[[], int] = _current_year,
    ) -> None:
        self._repository = repository
        self._rng = rng or random.Random()
        self._current_year = current_year

    async def find_match(self, concern: Optional[str], my_score: Any) -> Optional[MentorMatch]:
        """Best comparable mentor for ``concern`` scoring above ``my_score``.

        Returns None when nobody qualifies; that is an expected outcome, not
        an error. Missing inputs raise a validation error.
        """
        concern_norm = concern.strip() if isinstance(concern, str) else ""
        if not concern_norm or my_score is None or isinstance(my_score, bool):
            raise validation_error("Invalid input: primary concern and score are required")
        try:
            score = float(my_score)
        except (TypeError, ValueError) as exc:
            raise validation_error("Invalid input: score must be a number", cause=exc) from exc

        try:
            ranked = await self._repository.best_candidate(concern_norm, score)
        except Exception as exc:
            classified = classify(exc)
            logger.warning("mentor_lookup_failed concern=%s kind=%s err=%s", concern_norm, classified.kind.value, exc)
            raise classified from exc

        if ranked is None:
            logger.info("mentor_no_match concern=%s my_score=%s reason=no_candidate", concern_norm, score)
            return None
        if ranked.subject is None or not ranked.subject.is_active:
            reason = "subject_missing" if ranked.subject is None else "subject_inactive"
            logger.info("mentor_no_match concern=%s my_score=%s reason=%s", concern_norm, score, reason)
            return None
        return self._to_match(ranked)

    def _to_match(self, ranked: RankedCandidate) -> MentorMatch:
        tip = ranked.candidate
        subject = ranked.subject

        age = tip.subject_age
        if subject is not None and subject.birth_year:
            age = self._current_year() - subject.birth_year
        gender = (subject.gender if subject is not None else None) or tip.subject_gender

        return MentorMatch(
            id=tip.id,
            age=age,
            gender=gender,
            match_rate=self._rng.randint(93, 99),
            satisfaction=self._rng.randint(85, 94),
            sessions=self._rng.randint(3, 5),
            score=tip.skin_score,
            concern=tip.primary_concern,
            treatment=tip.procedure_name or DEFAULT_TREATMENT,
            comment=tip.comment,
            before_image_url=tip.before_image_url,
            after_image_url=tip.after_image_url,
            is_verified=tip.is_verified,
            visit_count=tip.visit_count,
            verified_facility_name=tip.verified_facility_name,
        )
