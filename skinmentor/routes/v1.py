from __future__ import annotations

import logging
from typing import Any, Optional

from fastapi import APIRouter, File, Form, Request, UploadFile
from fastapi.responses import JSONResponse, StreamingResponse

from skinmentor.services.errors import validation_error
from skinmentor.services.mentor import NO_MATCH_MESSAGE
from skinmentor.services.quality_gate import quality_message
from skinmentor.services.wiring import AppServices


router = APIRouter()

logger = logging.getLogger("skin-mentor.v1")

SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}


def _services(request: Request) -> AppServices:
    return request.app.state.services


def _first_str(body: dict[str, Any], *keys: str) -> Optional[str]:
    for key in keys:
        value = body.get(key)
        if isinstance(value, str) and value.strip():
            return value.strip()
    return None


@router.post("/analyze/progress")
async def progress_update(body: dict[str, Any], request: Request):
    job_id = _first_str(body, "job_id", "jobId", "analysisId")
    if not job_id:
        raise validation_error("Analysis ID required")
    record = await _services(request).channel.publish(
        job_id,
        body.get("stage"),
        body.get("progress"),
        str(body.get("message") or ""),
    )
    return {"ok": True, "stage": record.stage.value, "progress": record.progress}


@router.get("/analyze/progress")
async def progress_stream(request: Request, id: Optional[str] = None):
    channel = _services(request).channel
    job_id = channel.job_key(id or "")
    logger.info("progress_stream_opened job_id=%s", job_id)
    return StreamingResponse(
        channel.sse_events(job_id),
        media_type="text/event-stream",
        headers=SSE_HEADERS,
    )


@router.post("/analyze")
async def analyze(
    request: Request,
    image: UploadFile = File(...),
    force: bool = Form(default=False),
):
    blob = await image.read()
    submission = await _services(request).analysis.submit(blob, image.content_type, force=force)
    return JSONResponse(
        status_code=202,
        content={
            "job_id": submission.job_id,
            "forced": submission.forced,
            "quality": submission.quality.model_dump(),
            "progress_url": f"/v1/analyze/progress?id={submission.job_id}",
            "report_url": f"/v1/reports/{submission.job_id}",
        },
    )


@router.post("/images/quality")
async def image_quality(
    request: Request,
    image: UploadFile = File(...),
    max_dimension: Optional[int] = Form(default=None),
    quality: Optional[float] = Form(default=None),
):
    blob = await image.read()
    encoded, result = await _services(request).analysis.check(
        blob,
        image.content_type,
        max_dimension=max_dimension,
        quality=quality,
    )
    return {
        "quality": result.model_dump(),
        "message": quality_message(result),
        "encoded": {"mime_type": encoded.mime_type, "width": encoded.width, "height": encoded.height, "byte_size": encoded.byte_size},
    }


@router.get("/reports/{job_id}")
async def get_report(job_id: str, request: Request):
    report = await _services(request).analysis.report(job_id)
    if report is None:
        return JSONResponse(status_code=404, content={"error": {"kind": "not_found", "message": "Report not found", "retryable": False}})
    return report.model_dump(mode="json")


@router.post("/mentor/find")
async def mentor_find(body: dict[str, Any], request: Request):
    concern = _first_str(body, "primaryConcern", "primary_concern", "concern")
    my_score = body.get("myScore", body.get("my_score"))
    match = await _services(request).matcher.find_match(concern, my_score)
    if match is None:
        return {"success": False, "message": NO_MATCH_MESSAGE}
    return {"success": True, "mentor": match.model_dump()}
