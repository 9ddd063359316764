from __future__ import annotations

from pathlib import Path
import sys
import unittest

import cv2
import httpx
import numpy as np

ROOT = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(ROOT))

from skinmentor.services.image_prep import EncodedImage, prepare
from skinmentor.services.scoring import (
    HeuristicScoringClient,
    HttpScoringClient,
    ScoreResult,
    normalize_score_value,
    normalize_scores,
)


def sample_image() -> EncodedImage:
    img = np.zeros((480, 640, 3), dtype=np.uint8)
    img[:, :] = (120, 140, 200)
    cv2.circle(img, (320, 240), 60, (60, 60, 220), -1)
    ok, buf = cv2.imencode(".png", img)
    assert ok
    return prepare(buf.tobytes(), 1024, 0.85)


class TestNormalize(unittest.TestCase):
    def test_score_value_shapes(self) -> None:
        self.assertEqual(normalize_score_value(42), 42.0)
        self.assertEqual(normalize_score_value({"score": "37%"}), 37.0)
        self.assertEqual(normalize_score_value(" 12.5 pts"), 12.5)
        self.assertIsNone(normalize_score_value(True))
        self.assertIsNone(normalize_score_value("n/a"))
        self.assertIsNone(normalize_score_value(float("nan")))
        self.assertIsNone(normalize_score_value(None))

    def test_scores_are_clamped_and_unknown_values_dropped(self) -> None:
        out = normalize_scores({"acne": 130, "pores": -4, "wrinkles": "bad", "redness": {"score": 22}})
        self.assertEqual(out, {"acne": 100.0, "pores": 0.0, "redness": 22.0})
        self.assertEqual(normalize_scores(["acne"]), {})

    def test_primary_concern_and_overall(self) -> None:
        result = ScoreResult(scores={"acne": 70, "pores": 30}, confidence=0.8, uncertainty=0.2)
        self.assertEqual(result.primary_concern, "acne")
        self.assertEqual(result.overall_score, 30.0)
        empty = ScoreResult(scores={}, confidence=0.5, uncertainty=0.5)
        self.assertEqual(empty.primary_concern, "unknown")
        self.assertEqual(empty.overall_score, 0.0)


class TestHttpScoringClient(unittest.IsolatedAsyncioTestCase):
    async def test_posts_image_and_parses_scores(self) -> None:
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, json={"scores": {"acne": 55, "pores": "20"}, "confidence": 0.9, "uncertainty": 0.1})

        client = HttpScoringClient(base_url="https://scoring.example.test/", api_key="secret", transport=httpx.MockTransport(handler))
        try:
            result = await client.score(sample_image())
        finally:
            await client.close()

        self.assertEqual(result.scores, {"acne": 55.0, "pores": 20.0})
        self.assertEqual(result.confidence, 0.9)
        self.assertEqual(seen[0].url.path, "/score")
        self.assertEqual(seen[0].headers["Authorization"], "Bearer secret")
        self.assertTrue(seen[0].headers["content-type"].startswith("multipart/form-data"))

    async def test_missing_scores_raise(self) -> None:
        client = HttpScoringClient(
            base_url="https://scoring.example.test",
            transport=httpx.MockTransport(lambda r: httpx.Response(200, json={"scores": {}})),
        )
        try:
            with self.assertRaises(RuntimeError):
                await client.score(sample_image())
        finally:
            await client.close()

    async def test_non_json_body_raises(self) -> None:
        client = HttpScoringClient(
            base_url="https://scoring.example.test",
            transport=httpx.MockTransport(lambda r: httpx.Response(200, text="<html>")),
        )
        try:
            with self.assertRaises(RuntimeError):
                await client.score(sample_image())
        finally:
            await client.close()

    async def test_http_errors_propagate(self) -> None:
        client = HttpScoringClient(
            base_url="https://scoring.example.test",
            transport=httpx.MockTransport(lambda r: httpx.Response(503)),
        )
        try:
            with self.assertRaises(httpx.HTTPStatusError):
                await client.score(sample_image())
        finally:
            await client.close()


class TestHeuristicScoringClient(unittest.IsolatedAsyncioTestCase):
    async def test_scores_are_in_range(self) -> None:
        result = await HeuristicScoringClient().score(sample_image())
        self.assertEqual(set(result.scores), {"pigmentation", "pores", "wrinkles", "acne"})
        for value in result.scores.values():
            self.assertGreaterEqual(value, 0.0)
            self.assertLessEqual(value, 100.0)

    async def test_undecodable_bytes_fail_as_model_error(self) -> None:
        broken = EncodedImage(data=b"nope", mime_type="image/webp", width=1, height=1)
        with self.assertRaises(RuntimeError) as ctx:
            await HeuristicScoringClient().score(broken)
        self.assertIn("Model inference failed", str(ctx.exception))


if __name__ == "__main__":
    unittest.main()
