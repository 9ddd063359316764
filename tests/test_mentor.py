from __future__ import annotations

from pathlib import Path
import random
import sys
import unittest

import httpx

ROOT = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(ROOT))

from skinmentor.services.errors import ClassifiedError, ErrorKind
from skinmentor.services.mentor import DEFAULT_TREATMENT, MentorMatcher
from skinmentor.store.mentor_repository import (
    InMemoryMentorTipRepository,
    MentorCandidate,
    MentorSubject,
    RestMentorTipRepository,
)


def tip(tip_id: str, score: float, *, concern: str = "acne", active: bool = True, user_id: str | None = None, **extra) -> MentorCandidate:
    return MentorCandidate(
        id=tip_id,
        user_id=user_id or f"user_{tip_id}",
        skin_score=score,
        primary_concern=concern,
        comment=f"comment {tip_id}",
        is_active=active,
        **extra,
    )


def active_subject(user_id: str, **extra) -> MentorSubject:
    return MentorSubject(id=user_id, is_active=True, **extra)


class TestMentorMatcher(unittest.IsolatedAsyncioTestCase):
    def _matcher(self, candidates, subjects=()) -> MentorMatcher:
        repo = InMemoryMentorTipRepository(candidates, subjects)
        return MentorMatcher(repo, rng=random.Random(7), current_year=lambda: 2026)

    async def test_returns_higher_scoring_candidate(self) -> None:
        matcher = self._matcher(
            [tip("t80", 80), tip("t40", 40)],
            [active_subject("user_t80"), active_subject("user_t40")],
        )
        match = await matcher.find_match("acne", 50)
        self.assertIsNotNone(match)
        assert match is not None
        self.assertEqual(match.id, "t80")
        self.assertEqual(match.score, 80)

    async def test_no_match_when_nobody_scores_higher(self) -> None:
        matcher = self._matcher(
            [tip("t80", 80), tip("t40", 40)],
            [active_subject("user_t80"), active_subject("user_t40")],
        )
        self.assertIsNone(await matcher.find_match("acne", 90))

    async def test_equal_score_is_not_eligible(self) -> None:
        matcher = self._matcher([tip("t80", 80)], [active_subject("user_t80")])
        self.assertIsNone(await matcher.find_match("acne", 80))

    async def test_best_score_wins_and_filters_concern_and_inactive_tips(self) -> None:
        matcher = self._matcher(
            [
                tip("t70", 70),
                tip("t95_inactive", 95, active=False),
                tip("t99_pores", 99, concern="pores"),
                tip("t85", 85),
            ],
            [active_subject("user_t70"), active_subject("user_t85")],
        )
        match = await matcher.find_match("acne", 60)
        assert match is not None
        self.assertEqual(match.id, "t85")

    async def test_inactive_subject_yields_no_match(self) -> None:
        matcher = self._matcher(
            [tip("t90", 90), tip("t80", 80)],
            [MentorSubject(id="user_t90", is_active=False), active_subject("user_t80")],
        )
        self.assertIsNone(await matcher.find_match("acne", 50))

    async def test_missing_subject_yields_no_match(self) -> None:
        matcher = self._matcher([tip("t80", 80)])
        self.assertIsNone(await matcher.find_match("acne", 50))

    async def test_presentation_fields(self) -> None:
        matcher = self._matcher(
            [tip("t80", 80, procedure_name="Laser toning", is_verified=True, visit_count=4, verified_facility_name="Clinic A")],
            [active_subject("user_t80", birth_year=1996, gender="female")],
        )
        match = await matcher.find_match("acne", 50)
        assert match is not None
        self.assertEqual(match.age, 30)
        self.assertEqual(match.gender, "female")
        self.assertEqual(match.treatment, "Laser toning")
        self.assertTrue(match.is_verified)
        self.assertEqual(match.visit_count, 4)
        self.assertEqual(match.verified_facility_name, "Clinic A")
        self.assertTrue(93 <= match.match_rate <= 99)
        self.assertTrue(85 <= match.satisfaction <= 94)
        self.assertTrue(3 <= match.sessions <= 5)

    async def test_jitter_never_changes_selection(self) -> None:
        repo = InMemoryMentorTipRepository(
            [tip("t80", 80), tip("t90", 90), tip("t60", 60)],
            [active_subject("user_t80"), active_subject("user_t90"), active_subject("user_t60")],
        )
        for seed in range(20):
            match = await MentorMatcher(repo, rng=random.Random(seed)).find_match("acne", 10)
            assert match is not None
            self.assertEqual(match.id, "t90")

    async def test_missing_procedure_uses_default_treatment(self) -> None:
        matcher = self._matcher([tip("t80", 80)], [active_subject("user_t80")])
        match = await matcher.find_match("acne", 50)
        assert match is not None
        self.assertEqual(match.treatment, DEFAULT_TREATMENT)
        self.assertIsNone(match.age)

    async def test_missing_inputs_are_validation_errors(self) -> None:
        matcher = self._matcher([])
        for concern, score in [(None, 50), ("", 50), ("acne", None), ("acne", "high")]:
            with self.assertRaises(ClassifiedError) as ctx:
                await matcher.find_match(concern, score)
            self.assertEqual(ctx.exception.kind, ErrorKind.VALIDATION)

    async def test_numeric_string_score_is_accepted(self) -> None:
        matcher = self._matcher([tip("t80", 80)], [active_subject("user_t80")])
        match = await matcher.find_match("acne", "50")
        assert match is not None
        self.assertEqual(match.id, "t80")


class TestRestMentorTipRepository(unittest.IsolatedAsyncioTestCase):
    async def test_queries_postgrest_and_maps_row(self) -> None:
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(
                200,
                json=[
                    {
                        "id": "tip_1",
                        "user_id": "u1",
                        "skin_score": 88,
                        "primary_concern": "acne",
                        "procedure_name": None,
                        "comment": "worked for me",
                        "is_hospital_verified": True,
                        "visit_count": 3,
                        "verified_hospital_name": "Clinic B",
                        "is_active": True,
                        "profiles": {"id": "u1", "birth_year": 1990, "gender": "male", "is_active": True},
                    }
                ],
            )

        repo = RestMentorTipRepository(base_url="https://db.example.test", api_key="k", transport=httpx.MockTransport(handler))
        matcher = MentorMatcher(repo, rng=random.Random(1), current_year=lambda: 2026)
        try:
            match = await matcher.find_match("acne", 50)
        finally:
            await repo.close()

        assert match is not None
        self.assertEqual(match.id, "tip_1")
        self.assertEqual(match.age, 36)
        self.assertTrue(match.is_verified)
        self.assertEqual(match.verified_facility_name, "Clinic B")

        params = seen[0].url.params
        self.assertEqual(seen[0].url.path, "/rest/v1/mentor_tips")
        self.assertEqual(params["primary_concern"], "eq.acne")
        self.assertEqual(params["skin_score"], "gt.50.0")
        self.assertEqual(params["is_active"], "eq.true")
        self.assertEqual(params["order"], "skin_score.desc")
        self.assertEqual(params["limit"], "1")
        self.assertEqual(seen[0].headers["apikey"], "k")

    async def test_empty_result_is_no_match(self) -> None:
        repo = RestMentorTipRepository(base_url="https://db.example.test", transport=httpx.MockTransport(lambda r: httpx.Response(200, json=[])))
        try:
            self.assertIsNone(await MentorMatcher(repo).find_match("acne", 50))
        finally:
            await repo.close()

    async def test_row_without_profile_is_no_match(self) -> None:
        row = {"id": "tip_2", "user_id": "u2", "skin_score": 90, "primary_concern": "acne", "is_active": True, "profiles": None}
        repo = RestMentorTipRepository(base_url="https://db.example.test", transport=httpx.MockTransport(lambda r: httpx.Response(200, json=[row])))
        try:
            self.assertIsNone(await MentorMatcher(repo).find_match("acne", 50))
        finally:
            await repo.close()

    async def test_server_errors_are_retried_then_classified(self) -> None:
        calls = 0

        def handler(request: httpx.Request) -> httpx.Response:
            nonlocal calls
            calls += 1
            return httpx.Response(503, json={"message": "unavailable"})

        repo = RestMentorTipRepository(
            base_url="https://db.example.test",
            transport=httpx.MockTransport(handler),
            max_attempts=3,
            initial_delay_ms=1,
        )
        try:
            with self.assertRaises(ClassifiedError) as ctx:
                await MentorMatcher(repo).find_match("acne", 50)
        finally:
            await repo.close()
        self.assertEqual(calls, 3)
        self.assertEqual(ctx.exception.kind, ErrorKind.SERVER)

    async def test_auth_errors_are_not_retried(self) -> None:
        calls = 0

        def handler(request: httpx.Request) -> httpx.Response:
            nonlocal calls
            calls += 1
            return httpx.Response(401, json={"message": "bad key"})

        repo = RestMentorTipRepository(base_url="https://db.example.test", transport=httpx.MockTransport(handler), initial_delay_ms=1)
        try:
            with self.assertRaises(ClassifiedError) as ctx:
                await MentorMatcher(repo).find_match("acne", 50)
        finally:
            await repo.close()
        self.assertEqual(calls, 1)
        self.assertEqual(ctx.exception.kind, ErrorKind.AUTH)


if __name__ == "__main__":
    unittest.main()
