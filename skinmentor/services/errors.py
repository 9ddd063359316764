from __future__ import annotations

import re
from enum import Enum
from typing import Any, Optional

import httpx


class ErrorKind(str, Enum):
    VALIDATION = "validation"
    NETWORK = "network"
    AUTH = "auth"
    SERVER = "server"
    MODEL = "model"
    UNKNOWN = "unknown"


ERROR_MESSAGES: dict[str, str] = {
    "file_too_large": "The file is too large. Please choose an image of 10MB or less.",
    "unsupported_format": "Unsupported image format. Please upload a JPEG, PNG, WebP or GIF image.",
    "invalid_image": "Only image files can be uploaded.",
    "invalid_input": "Please check your input and try again.",
    "network": "There was a problem with the network connection. Check your connection and try again.",
    "timeout": "The request timed out. Please try again.",
    "auth": "Authentication is required. Please sign in again.",
    "server": "The server had a temporary problem. Please try again shortly.",
    "model": "Something went wrong during the AI analysis. Please try again with another photo.",
    "unknown": "An unknown error occurred.",
}

_RETRYABLE_KINDS = {ErrorKind.NETWORK, ErrorKind.SERVER, ErrorKind.MODEL}


class ClassifiedError(Exception):
    """A failure normalized into the fixed taxonomy, with a retry verdict.

    Raised across component boundaries instead of the raw failure; the
    original exception stays reachable through ``cause``.
    """

    def __init__(
        self,
        kind: ErrorKind,
        message: str,
        *,
        retryable: Optional[bool] = None,
        cause: Optional[BaseException] = None,
        detail: Optional[dict[str, Any]] = None,
    ) -> None:
        super().__init__(message)
        self._kind = ErrorKind(kind)
        self._message = message
        self._retryable = (self._kind in _RETRYABLE_KINDS) if retryable is None else bool(retryable)
        self._cause = cause
        self._detail = dict(detail) if detail else {}

    @property
    def kind(self) -> ErrorKind:
        return self._kind

    @property
    def message(self) -> str:
        return self._message

    @property
    def retryable(self) -> bool:
        return self._retryable

    @property
    def cause(self) -> Optional[BaseException]:
        return self._cause

    @property
    def detail(self) -> dict[str, Any]:
        return dict(self._detail)

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "kind": self._kind.value,
            "message": self._message,
            "retryable": self._retryable,
        }
        if self._detail:
            data["detail"] = self.detail
        return data

    def __repr__(self) -> str:
        return f"ClassifiedError(kind={self._kind.value!r}, message={self._message!r}, retryable={self._retryable})"


def validation_error(message: str, *, cause: Optional[BaseException] = None, detail: Optional[dict[str, Any]] = None) -> ClassifiedError:
    return ClassifiedError(ErrorKind.VALIDATION, message, retryable=False, cause=cause, detail=detail)


_VALIDATION_NEEDLES = ["invalid", "validation", "too large", "not supported", "unsupported", "size limit"]
_AUTH_NEEDLES = ["unauthorized", "unauthenticated", "forbidden", "auth", "token", "credential"]
_NETWORK_NEEDLES = ["network", "fetch", "connection", "timeout", "timed out"]
_SERVER_NEEDLES = [
    "server",
    "internal server error",
    "service unavailable",
    "bad gateway",
    "500",
    "502",
    "503",
    "504",
]
_MODEL_NEEDLES = ["model", "pipeline", "analysis", "inference", "scoring failed", "gemini"]
_MODEL_WORD_RE = re.compile(r"\bai\b")


def _contains_any(haystack: str, needles: list[str]) -> bool:
    return any(n in haystack for n in needles)


def _validation_message(lowered: str) -> str:
    if "too large" in lowered or "size limit" in lowered:
        return ERROR_MESSAGES["file_too_large"]
    if "not supported" in lowered or "unsupported" in lowered or "format" in lowered:
        return ERROR_MESSAGES["unsupported_format"]
    if "invalid" in lowered and "image" in lowered:
        return ERROR_MESSAGES["invalid_image"]
    return ERROR_MESSAGES["invalid_input"]


def _from_status(status: int, exc: BaseException) -> Optional[ClassifiedError]:
    if status in (401, 403):
        return ClassifiedError(ErrorKind.AUTH, ERROR_MESSAGES["auth"], cause=exc)
    if status == 413:
        return ClassifiedError(ErrorKind.VALIDATION, ERROR_MESSAGES["file_too_large"], cause=exc)
    if status == 415:
        return ClassifiedError(ErrorKind.VALIDATION, ERROR_MESSAGES["unsupported_format"], cause=exc)
    if status in (400, 422):
        return ClassifiedError(ErrorKind.VALIDATION, ERROR_MESSAGES["invalid_input"], cause=exc)
    if status == 408 or status == 429:
        return ClassifiedError(ErrorKind.NETWORK, ERROR_MESSAGES["timeout"], cause=exc)
    if status >= 500:
        return ClassifiedError(ErrorKind.SERVER, ERROR_MESSAGES["server"], cause=exc)
    return None


def _structured(exc: BaseException) -> Optional[ClassifiedError]:
    tagged = getattr(exc, "error_kind", None)
    if tagged is not None:
        try:
            kind = ErrorKind(tagged)
        except ValueError:
            kind = None
        if kind is not None:
            return ClassifiedError(kind, str(exc) or ERROR_MESSAGES[kind.value], cause=exc)

    if isinstance(exc, httpx.TimeoutException):
        return ClassifiedError(ErrorKind.NETWORK, ERROR_MESSAGES["timeout"], cause=exc)
    if isinstance(exc, httpx.TransportError):
        return ClassifiedError(ErrorKind.NETWORK, ERROR_MESSAGES["network"], cause=exc)
    if isinstance(exc, httpx.HTTPStatusError):
        return _from_status(exc.response.status_code, exc)
    return None


def classify(raw: Any) -> ClassifiedError:
    """Map any failure into a ClassifiedError. Never raises.

    Structured signals (an existing classification, an ``error_kind`` tag,
    httpx exception types and status codes) win over message matching. The
    message heuristics run in a fixed order so that user-correctable kinds
    (validation, auth) are decided before the retryable buckets.
    """
    if isinstance(raw, ClassifiedError):
        return raw

    exc = raw if isinstance(raw, BaseException) else Exception(str(raw))

    try:
        structured = _structured(exc)
    except Exception:
        structured = None
    if structured is not None:
        return structured

    try:
        original = str(exc)
    except Exception:
        original = ""
    lowered = original.lower()

    if _contains_any(lowered, _VALIDATION_NEEDLES):
        return ClassifiedError(ErrorKind.VALIDATION, _validation_message(lowered), cause=exc)

    if _contains_any(lowered, _AUTH_NEEDLES):
        return ClassifiedError(ErrorKind.AUTH, ERROR_MESSAGES["auth"], cause=exc)

    if _contains_any(lowered, _NETWORK_NEEDLES) or isinstance(exc, (ConnectionError, TimeoutError)):
        message = ERROR_MESSAGES["timeout"] if ("timeout" in lowered or "timed out" in lowered) else ERROR_MESSAGES["network"]
        return ClassifiedError(ErrorKind.NETWORK, message, cause=exc)

    if _contains_any(lowered, _SERVER_NEEDLES):
        return ClassifiedError(ErrorKind.SERVER, ERROR_MESSAGES["server"], cause=exc)

    if _contains_any(lowered, _MODEL_NEEDLES) or _MODEL_WORD_RE.search(lowered):
        # Model failures usually carry a message already meant for the user.
        return ClassifiedError(ErrorKind.MODEL, original or ERROR_MESSAGES["model"], cause=exc)

    return ClassifiedError(ErrorKind.UNKNOWN, original or ERROR_MESSAGES["unknown"], cause=exc)


def status_code_for(error: ClassifiedError) -> int:
    if error.kind == ErrorKind.VALIDATION:
        return int(error.detail.get("status_code") or 400)
    if error.kind == ErrorKind.AUTH:
        return 401
    if error.kind in (ErrorKind.NETWORK, ErrorKind.SERVER, ErrorKind.MODEL):
        return 502
    return 500
