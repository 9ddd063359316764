from __future__ import annotations

import logging
import os
from typing import Literal, Optional

import cv2
import numpy as np
from pydantic import BaseModel, ConfigDict

from skinmentor.services.errors import ERROR_MESSAGES, validation_error

logger = logging.getLogger("skin-mentor.image-prep")

DEFAULT_MAX_DIMENSION = int(os.getenv("IMAGE_MAX_DIMENSION") or "1024")
DEFAULT_QUALITY = float(os.getenv("IMAGE_QUALITY") or "0.85")
MAX_UPLOAD_BYTES = 10 * 1024 * 1024
ALLOWED_CONTENT_TYPES = {"image/jpeg", "image/jpg", "image/png", "image/webp", "image/gif"}

ImageFormat = Literal["webp", "jpeg"]

_MIME_BY_FORMAT: dict[str, str] = {"webp": "image/webp", "jpeg": "image/jpeg"}


class EncodedImage(BaseModel):
    model_config = ConfigDict(frozen=True)

    data: bytes
    mime_type: str
    width: int
    height: int

    @property
    def byte_size(self) -> int:
        return len(self.data)


def validate_upload(blob: bytes, content_type: Optional[str]) -> None:
    if not blob:
        raise validation_error(ERROR_MESSAGES["invalid_image"])
    if len(blob) > MAX_UPLOAD_BYTES:
        raise validation_error(
            ERROR_MESSAGES["file_too_large"],
            detail={"status_code": 413, "byte_size": len(blob), "max_bytes": MAX_UPLOAD_BYTES},
        )
    normalized = (content_type or "").split(";")[0].strip().lower()
    if normalized and normalized not in ALLOWED_CONTENT_TYPES:
        raise validation_error(
            ERROR_MESSAGES["unsupported_format"],
            detail={"status_code": 415, "content_type": normalized},
        )


def decode_image(blob: bytes) -> np.ndarray:
    img_array = np.frombuffer(blob, dtype=np.uint8)
    img = cv2.imdecode(img_array, cv2.IMREAD_COLOR) if img_array.size else None
    if img is None:
        raise validation_error(ERROR_MESSAGES["invalid_image"])
    return img


def scaled_size(width: int, height: int, max_dimension: int) -> tuple[int, int]:
    long_edge = max(width, height)
    if long_edge <= max_dimension:
        return width, height
    ratio = max_dimension / float(long_edge)
    return max(1, int(round(width * ratio))), max(1, int(round(height * ratio)))


def encode_image(img: np.ndarray, *, quality: float, image_format: ImageFormat = "webp") -> bytes:
    q = int(round(min(max(quality, 0.0), 1.0) * 100))
    if image_format == "webp":
        ok, buf = cv2.imencode(".webp", img, [cv2.IMWRITE_WEBP_QUALITY, max(1, q)])
    else:
        ok, buf = cv2.imencode(".jpg", img, [cv2.IMWRITE_JPEG_QUALITY, q])
    if not ok:
        raise RuntimeError(f"image encoding failed format={image_format}")
    return buf.tobytes()


def prepare(
    blob: bytes,
    max_dimension: int = DEFAULT_MAX_DIMENSION,
    quality: float = DEFAULT_QUALITY,
    *,
    image_format: ImageFormat = "webp",
) -> EncodedImage:
    """Downscale to ``max_dimension`` on the long edge and re-encode.

    Never upscales. The returned bytes are exactly what gets submitted for
    analysis, so quality checks must run on them rather than on the capture.
    """
    if max_dimension < 1:
        raise validation_error(ERROR_MESSAGES["invalid_input"], detail={"max_dimension": max_dimension})
    if not 0.0 < quality <= 1.0:
        raise validation_error(ERROR_MESSAGES["invalid_input"], detail={"quality": quality})

    img = decode_image(blob)
    h, w = img.shape[:2]
    new_w, new_h = scaled_size(w, h, max_dimension)
    if (new_w, new_h) != (w, h):
        img = cv2.resize(img, (new_w, new_h), interpolation=cv2.INTER_AREA)

    data = encode_image(img, quality=quality, image_format=image_format)
    logger.debug(
        "image_prepared src=%sx%s dst=%sx%s format=%s bytes=%s",
        w,
        h,
        new_w,
        new_h,
        image_format,
        len(data),
    )
    return EncodedImage(data=data, mime_type=_MIME_BY_FORMAT[image_format], width=new_w, height=new_h)
