"""Pre-submission image quality gate.

Three independent checks, all evaluated so that ``reasons`` can report
several problems at once:

  1. resolution  -> long edge against a target and a hard floor
  2. sharpness   -> variance of the Laplacian over the luma channel
  3. compression -> bytes per pixel (advisory, never flips ``is_good``)
"""

from __future__ import annotations

import os
from typing import Optional

import cv2
import numpy as np
from pydantic import BaseModel, ConfigDict, Field

from skinmentor.services.errors import ClassifiedError
from skinmentor.services.image_prep import (
    DEFAULT_MAX_DIMENSION,
    DEFAULT_QUALITY,
    EncodedImage,
    ImageFormat,
    decode_image,
    prepare,
)

REASON_INVALID_IMAGE = "invalid_image"
REASON_RESOLUTION_UNUSABLE = "resolution_unusable"
REASON_RESOLUTION_LOW = "resolution_low"
REASON_SHARPNESS_BLURRY = "sharpness_blurry"
REASON_SHARPNESS_BORDERLINE = "sharpness_borderline"
REASON_COMPRESSION_HEAVY = "compression_heavy"

_REASON_MESSAGES: dict[str, str] = {
    REASON_INVALID_IMAGE: "The image could not be read. Please choose another photo.",
    REASON_RESOLUTION_UNUSABLE: "The photo resolution is too low to analyze. Please retake it closer or with a better camera.",
    REASON_RESOLUTION_LOW: "The photo resolution is lower than recommended; results may be less accurate.",
    REASON_SHARPNESS_BLURRY: "The photo is blurry. Please take a sharper photo.",
    REASON_SHARPNESS_BORDERLINE: "Focus could be sharper. Hold the camera steady.",
    REASON_COMPRESSION_HEAVY: "The photo is heavily compressed and may have lost detail.",
}


class QualityThresholds(BaseModel):
    model_config = ConfigDict(frozen=True)

    min_long_edge: int = Field(default_factory=lambda: int(os.getenv("QUALITY_MIN_LONG_EDGE") or "700"))
    resolution_floor: int = 320
    sharpness_cutoff: float = 0.1
    sharpness_ideal: float = 0.3
    # Laplacian variance that maps to a sharpness score of 1.0.
    sharpness_reference: float = 1000.0
    min_bytes_per_pixel: float = 0.02


class ImageQualityResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    is_good: bool
    sharpness_score: float = Field(ge=0.0, le=1.0)
    width: int
    height: int
    reasons: list[str] = Field(default_factory=list)
    byte_size: int = 0
    bytes_per_pixel: float = 0.0


def measure_sharpness(img: np.ndarray, *, reference: float = 1000.0) -> float:
    """Laplacian variance of the luma image, normalized to [0, 1]."""
    if img.ndim == 3:
        gray = cv2.cvtColor(img, cv2.COLOR_BGR2GRAY)
    else:
        gray = img
    if gray.size == 0:
        return 0.0
    laplacian = cv2.Laplacian(gray, cv2.CV_64F)
    variance = float(laplacian.var())
    return max(0.0, min(variance / reference, 1.0))


def evaluate_quality(
    width: int,
    height: int,
    sharpness_score: float,
    byte_size: int,
    thresholds: Optional[QualityThresholds] = None,
) -> ImageQualityResult:
    t = thresholds or QualityThresholds()
    # is_good is judged on the same rounded value that gets reported.
    sharpness = round(max(0.0, min(float(sharpness_score), 1.0)), 4)
    reasons: list[str] = []

    long_edge = max(width, height)
    resolution_ok = long_edge >= t.min_long_edge
    if long_edge < t.resolution_floor:
        reasons.append(REASON_RESOLUTION_UNUSABLE)
    elif not resolution_ok:
        reasons.append(REASON_RESOLUTION_LOW)

    sharpness_ok = sharpness >= t.sharpness_cutoff
    if not sharpness_ok:
        reasons.append(REASON_SHARPNESS_BLURRY)
    elif sharpness < t.sharpness_ideal:
        reasons.append(REASON_SHARPNESS_BORDERLINE)

    pixels = width * height
    bytes_per_pixel = (byte_size / pixels) if pixels > 0 else 0.0
    if pixels > 0 and byte_size > 0 and bytes_per_pixel < t.min_bytes_per_pixel:
        reasons.append(REASON_COMPRESSION_HEAVY)

    return ImageQualityResult(
        is_good=resolution_ok and sharpness_ok,
        sharpness_score=sharpness,
        width=width,
        height=height,
        reasons=reasons,
        byte_size=byte_size,
        bytes_per_pixel=round(bytes_per_pixel, 5),
    )


class QualityGate:
    def __init__(self, thresholds: Optional[QualityThresholds] = None) -> None:
        self._thresholds = thresholds or QualityThresholds()

    @property
    def thresholds(self) -> QualityThresholds:
        return self._thresholds

    def assess(self, blob: bytes) -> ImageQualityResult:
        """Score encoded image bytes. Advisory only: callers decide whether to block."""
        try:
            img = decode_image(blob)
        except ClassifiedError:
            return ImageQualityResult(
                is_good=False,
                sharpness_score=0.0,
                width=0,
                height=0,
                reasons=[REASON_INVALID_IMAGE],
                byte_size=len(blob),
            )
        h, w = img.shape[:2]
        sharpness = measure_sharpness(img, reference=self._thresholds.sharpness_reference)
        return evaluate_quality(w, h, sharpness, len(blob), self._thresholds)

    def prepare_and_assess(
        self,
        blob: bytes,
        max_dimension: int = DEFAULT_MAX_DIMENSION,
        quality: float = DEFAULT_QUALITY,
        *,
        image_format: ImageFormat = "webp",
    ) -> tuple[EncodedImage, ImageQualityResult]:
        encoded = prepare(blob, max_dimension, quality, image_format=image_format)
        return encoded, self.assess(encoded.data)


def quality_message(result: ImageQualityResult) -> str:
    if result.is_good and not result.reasons:
        return "Looks great! This photo is well suited for analysis."
    if result.is_good:
        return "Good to go. " + " ".join(_REASON_MESSAGES[r] for r in result.reasons if r in _REASON_MESSAGES)
    return " ".join(_REASON_MESSAGES.get(r, r) for r in result.reasons)
