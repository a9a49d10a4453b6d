from __future__ import annotations

import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from lms_import.core.config import get_settings
from lms_import.core.errors import ImportPipelineError
from lms_import.core.logging import configure_logging
from lms_import.db.session import init_db
from lms_import.routers import drive_import_router

LOGGER = logging.getLogger(__name__)

app = FastAPI(title="LMS Drive Import API", version="0.1.0")


@app.on_event("startup")
def on_startup() -> None:
    settings = get_settings()
    configure_logging(settings.log_level.upper(), log_dir=settings.log_dir)
    init_db()


@app.exception_handler(ImportPipelineError)
def handle_pipeline_error(request: Request, exc: ImportPipelineError) -> JSONResponse:
    if exc.status_code >= 500:
        LOGGER.error("%s %s failed: %s", request.method, request.url.path, exc.message)
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.message})


@app.get("/health")
def healthcheck() -> dict[str, str]:
    return {"status": "ok"}


app.include_router(drive_import_router)
