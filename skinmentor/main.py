from __future__ import annotations

from contextlib import asynccontextmanager
import logging
import os
from typing import AsyncIterator, Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from skinmentor.routes.health import router as health_router
from skinmentor.routes.v1 import router as v1_router
from skinmentor.services.errors import ClassifiedError, status_code_for
from skinmentor.services.wiring import AppServices

logger = logging.getLogger("skin-mentor.app")


def _parse_cors_origins(raw: Optional[str]) -> list[str]:
    if not raw:
        return ["*"]
    parts = [p.strip() for p in raw.split(",")]
    return [p for p in parts if p] or ["*"]


def _setup_logging() -> None:
    level = (os.getenv("LOG_LEVEL") or "INFO").upper()
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


async def _classified_error_handler(request: Request, exc: ClassifiedError) -> JSONResponse:
    status = status_code_for(exc)
    if status >= 500:
        logger.warning("request_failed path=%s kind=%s err=%s", request.url.path, exc.kind.value, exc.cause or exc)
    return JSONResponse(status_code=status, content={"error": exc.to_dict()})


def create_app(services: Optional[AppServices] = None) -> FastAPI:
    _setup_logging()
    app_services = services or AppServices()

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        await app_services.startup()
        try:
            yield
        finally:
            await app_services.shutdown()

    app = FastAPI(title="Skin Mentor Agent", version="0.1.0", lifespan=lifespan)
    app.state.services = app_services

    origins = _parse_cors_origins(os.getenv("CORS_ORIGINS"))
    allow_all = "*" in origins
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"] if allow_all else origins,
        allow_credentials=False,
        allow_methods=["*"],
        allow_headers=["*"],
        max_age=86400,
    )
    app.add_exception_handler(ClassifiedError, _classified_error_handler)

    app.include_router(health_router)
    app.include_router(v1_router, prefix="/v1")

    return app
