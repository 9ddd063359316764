from __future__ import annotations

import asyncio
import logging
import os
from typing import Any, Iterable, Optional, Protocol

import httpx
from pydantic import BaseModel, ConfigDict, Field

from skinmentor.services.retry import run_with_retry

logger = logging.getLogger("skin-mentor.mentor-repository")


class MentorCandidate(BaseModel):
    model_config = ConfigDict(frozen=True, extra="ignore")

    id: str
    user_id: str
    skin_score: float
    primary_concern: str
    procedure_name: Optional[str] = None
    comment: str = ""
    before_image_url: Optional[str] = None
    after_image_url: Optional[str] = None
    is_verified: bool = False
    visit_count: int = 0
    verified_facility_name: Optional[str] = None
    subject_age: Optional[int] = None
    subject_gender: Optional[str] = None
    is_active: bool = True


class MentorSubject(BaseModel):
    """The person behind a tip; its activity flag is independent of the tip's."""

    model_config = ConfigDict(frozen=True, extra="ignore")

    id: str
    birth_year: Optional[int] = None
    gender: Optional[str] = None
    is_active: bool = False


class RankedCandidate(BaseModel):
    model_config = ConfigDict(frozen=True)

    candidate: MentorCandidate
    subject: Optional[MentorSubject] = None


class MentorTipRepository(Protocol):
    async def best_candidate(self, concern: str, above_score: float) -> Optional[RankedCandidate]: ...

    async def close(self) -> None: ...


class InMemoryMentorTipRepository(MentorTipRepository):
    def __init__(
        self,
        candidates: Iterable[MentorCandidate] = (),
        subjects: Iterable[MentorSubject] = (),
    ) -> None:
        self._lock = asyncio.Lock()
        self._candidates: list[MentorCandidate] = list(candidates)
        self._subjects: dict[str, MentorSubject] = {s.id: s for s in subjects}

    async def add(self, candidate: MentorCandidate, subject: Optional[MentorSubject] = None) -> None:
        async with self._lock:
            self._candidates.append(candidate)
            if subject is not None:
                self._subjects[subject.id] = subject

    async def best_candidate(self, concern: str, above_score: float) -> Optional[RankedCandidate]:
        async with self._lock:
            eligible = [
                c
                for c in self._candidates
                if c.primary_concern == concern and c.skin_score > above_score and c.is_active
            ]
            if not eligible:
                return None
            # sorted() is stable, so ties keep insertion order.
            top = sorted(eligible, key=lambda c: c.skin_score, reverse=True)[0]
            return RankedCandidate(candidate=top, subject=self._subjects.get(top.user_id))

    async def close(self) -> None:
        return None


_PROFILE_SELECT = "*,profiles:user_id(id,birth_year,gender,is_active)"


def candidate_from_row(row: dict[str, Any]) -> RankedCandidate:
    profile = row.get("profiles")
    subject = MentorSubject.model_validate(profile) if isinstance(profile, dict) and profile.get("id") else None
    candidate = MentorCandidate(
        id=str(row.get("id") or ""),
        user_id=str(row.get("user_id") or ""),
        skin_score=float(row.get("skin_score") or 0.0),
        primary_concern=str(row.get("primary_concern") or ""),
        procedure_name=row.get("procedure_name") or None,
        comment=str(row.get("comment") or ""),
        before_image_url=row.get("before_image_url") or None,
        after_image_url=row.get("after_image_url") or None,
        is_verified=bool(row.get("is_hospital_verified") or row.get("is_verified") or False),
        visit_count=int(row.get("visit_count") or 0),
        verified_facility_name=row.get("verified_hospital_name") or row.get("verified_facility_name") or None,
        subject_gender=subject.gender if subject else None,
        is_active=bool(row.get("is_active", True)),
    )
    return RankedCandidate(candidate=candidate, subject=subject)


class RestMentorTipRepository(MentorTipRepository):
    """Reads mentor tips from a PostgREST-style endpoint (e.g. Supabase)."""

    def __init__(
        self,
        *,
        base_url: str,
        api_key: Optional[str] = None,
        table: str = "mentor_tips",
        timeout_s: float = 10.0,
        max_attempts: int = 3,
        initial_delay_ms: float = 1000.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._api_key = api_key
        self._table = table
        self._max_attempts = max_attempts
        self._initial_delay_ms = initial_delay_ms
        self._client = httpx.AsyncClient(timeout=timeout_s, transport=transport)

    def _headers(self) -> dict[str, str]:
        headers = {"Accept": "application/json"}
        if self._api_key:
            headers["apikey"] = self._api_key
            headers["Authorization"] = f"Bearer {self._api_key}"
        return headers

    async def _fetch(self, params: dict[str, str]) -> list[dict[str, Any]]:
        res = await self._client.get(f"{self._base_url}/rest/v1/{self._table}", params=params, headers=self._headers())
        res.raise_for_status()
        data = res.json()
        return [r for r in data if isinstance(r, dict)] if isinstance(data, list) else []

    async def best_candidate(self, concern: str, above_score: float) -> Optional[RankedCandidate]:
        params = {
            "select": _PROFILE_SELECT,
            "primary_concern": f"eq.{concern}",
            "skin_score": f"gt.{above_score}",
            "is_active": "eq.true",
            "order": "skin_score.desc",
            "limit": "1",
        }
        rows = await run_with_retry(
            lambda: self._fetch(params),
            max_attempts=self._max_attempts,
            initial_delay_ms=self._initial_delay_ms,
        )
        if not rows:
            return None
        return candidate_from_row(rows[0])

    async def close(self) -> None:
        await self._client.aclose()


def build_mentor_repository() -> MentorTipRepository:
    base_url = (os.getenv("MENTOR_REST_URL") or "").strip()
    if not base_url:
        logger.info("mentor_repository_backend=memory reason=missing_MENTOR_REST_URL")
        return InMemoryMentorTipRepository()
    logger.info("mentor_repository_backend=rest")
    return RestMentorTipRepository(
        base_url=base_url,
        api_key=(os.getenv("MENTOR_REST_KEY") or "").strip() or None,
        timeout_s=float(os.getenv("UPSTREAM_TIMEOUT_S") or "10"),
    )
