from __future__ import annotations

import os

from fastapi import APIRouter, Request

router = APIRouter()


def _get_commit_sha() -> str | None:
    for key in ("GITHUB_SHA", "COMMIT_SHA", "GIT_SHA"):
        value = os.getenv(key)
        if value:
            return value
    return None


@router.get("/healthz")
def healthz(request: Request):
    services = request.app.state.services
    return {
        "ok": True,
        "service": "skin-mentor-agent",
        "commit_sha": _get_commit_sha(),
        "environment": os.getenv("ENVIRONMENT"),
        "progress_store_backend": services.progress_backend_kind,
    }
