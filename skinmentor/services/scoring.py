from __future__ import annotations

import asyncio
import logging
import os
import re
from typing import Any, Optional, Protocol

import cv2
import httpx
import numpy as np
from pydantic import BaseModel, ConfigDict, Field

from skinmentor.services.image_prep import EncodedImage

logger = logging.getLogger("skin-mentor.scoring")


class ScoreResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    # Severity per concern, 0 (none) to 100 (severe).
    scores: dict[str, float]
    confidence: float = Field(ge=0.0, le=1.0)
    uncertainty: float = Field(ge=0.0, le=1.0)

    @property
    def primary_concern(self) -> str:
        if not self.scores:
            return "unknown"
        return max(self.scores.items(), key=lambda kv: kv[1])[0]

    @property
    def overall_score(self) -> float:
        if not self.scores:
            return 0.0
        return round(max(0.0, 100.0 - max(self.scores.values())), 1)


class ScoringService(Protocol):
    async def score(self, image: EncodedImage) -> ScoreResult: ...

    async def close(self) -> None: ...


def normalize_score_value(value: Any) -> Optional[float]:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value) if np.isfinite(value) else None
    if isinstance(value, dict) and "score" in value:
        return normalize_score_value(value["score"])
    if isinstance(value, str):
        sanitized = re.sub(r"[^\d.-]", "", value)
        if not sanitized:
            return None
        try:
            return float(sanitized)
        except ValueError:
            return None
    return None


def normalize_scores(raw: Any) -> dict[str, float]:
    if not isinstance(raw, dict):
        return {}
    out: dict[str, float] = {}
    for key, value in raw.items():
        normalized = normalize_score_value(value)
        if normalized is not None:
            out[str(key)] = max(0.0, min(normalized, 100.0))
    return out


class HttpScoringClient(ScoringService):
    def __init__(
        self,
        *,
        base_url: str,
        api_key: Optional[str] = None,
        timeout_s: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self._url = f"{base_url.rstrip('/')}/score"
        self._api_key = api_key
        self._client = httpx.AsyncClient(timeout=timeout_s, transport=transport)

    async def score(self, image: EncodedImage) -> ScoreResult:
        headers: dict[str, str] = {}
        if self._api_key:
            headers["Authorization"] = f"Bearer {self._api_key}"
        ext = "webp" if image.mime_type == "image/webp" else "jpg"
        res = await self._client.post(
            self._url,
            headers=headers,
            files={"image": (f"face.{ext}", image.data, image.mime_type)},
        )
        res.raise_for_status()
        try:
            data = res.json()
        except ValueError as exc:
            raise RuntimeError("Could not parse the AI analysis result") from exc
        if not isinstance(data, dict):
            raise RuntimeError("Could not parse the AI analysis result")

        scores = normalize_scores(data.get("scores") or data.get("skin_condition_scores"))
        if not scores:
            raise RuntimeError("AI analysis returned no scores")
        return ScoreResult(
            scores=scores,
            confidence=_unit(data.get("confidence"), 0.5),
            uncertainty=_unit(data.get("uncertainty"), 0.5),
        )

    async def close(self) -> None:
        await self._client.aclose()


def _unit(value: Any, default: float) -> float:
    normalized = normalize_score_value(value)
    if normalized is None:
        return default
    return max(0.0, min(normalized, 1.0))


class HeuristicScoringClient(ScoringService):
    """Local stand-in for the remote model, derived from simple image statistics."""

    async def score(self, image: EncodedImage) -> ScoreResult:
        return await asyncio.to_thread(self._score_sync, image.data)

    @staticmethod
    def _score_sync(blob: bytes) -> ScoreResult:
        img = cv2.imdecode(np.frombuffer(blob, dtype=np.uint8), cv2.IMREAD_COLOR)
        if img is None:
            raise RuntimeError("Model inference failed: image could not be decoded")

        gray = cv2.cvtColor(img, cv2.COLOR_BGR2GRAY)
        lab = cv2.cvtColor(img, cv2.COLOR_BGR2LAB)
        g = img[:, :, 1].astype(np.float64)
        r = img[:, :, 2].astype(np.float64)

        luma_std = float(gray.std())
        redness = float(np.clip((r - g).mean(), 0.0, 255.0))
        edges = cv2.Canny(gray, 50, 150)
        edge_density = float(np.count_nonzero(edges)) / max(1, edges.size)
        texture = float(cv2.Laplacian(gray, cv2.CV_64F).var())
        a_std = float(lab[:, :, 1].std())

        scores = {
            "pigmentation": min(100.0, a_std * 6.0 + luma_std * 0.4),
            "pores": min(100.0, texture / 20.0),
            "wrinkles": min(100.0, edge_density * 400.0),
            "acne": min(100.0, redness * 1.5),
        }
        scores = {k: round(v, 1) for k, v in scores.items()}
        return ScoreResult(scores=scores, confidence=0.6, uncertainty=0.4)

    async def close(self) -> None:
        return None


def build_scoring_service() -> ScoringService:
    base_url = (os.getenv("SCORING_SERVICE_URL") or "").strip()
    if not base_url:
        logger.info("scoring_backend=heuristic reason=missing_SCORING_SERVICE_URL")
        return HeuristicScoringClient()
    logger.info("scoring_backend=http")
    return HttpScoringClient(
        base_url=base_url,
        api_key=(os.getenv("SCORING_SERVICE_KEY") or "").strip() or None,
        timeout_s=float(os.getenv("SCORING_TIMEOUT_S") or "30"),
    )
