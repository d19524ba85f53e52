from __future__ import annotations

import logging
import re
from contextlib import asynccontextmanager
from pathlib import Path

from fastapi import Depends, FastAPI, File, Form, Query, Request, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.concurrency import run_in_threadpool

from labingest.auth import Principal, get_principal
from labingest.config import Settings, configure_logging, load_settings
from labingest.errors import (
    AccessDenied,
    AuthenticationRequired,
    LabIngestError,
    PipelineBusy,
    SecurityViolation,
    UploadTooLarge,
    ValidationFailure,
    sanitize_error_message,
)
from labingest.pipeline import IngestionService
from labingest.schema_models import Experiment, ExperimentStatus

logger = logging.getLogger(__name__)

ERROR_STATUS_CODES: list[tuple[type[LabIngestError], int]] = [
    (UploadTooLarge, 413),
    (SecurityViolation, 400),
    (ValidationFailure, 400),
    (AuthenticationRequired, 401),
    (AccessDenied, 403),
    (PipelineBusy, 503),
]


def _status_code_for(exc: LabIngestError) -> int:
    for error_type, status_code in ERROR_STATUS_CODES:
        if isinstance(exc, error_type):
            return status_code
    return 500


def _report_filename(original_filename: str) -> str:
    cleaned = re.sub(r"[^a-zA-Z0-9_-]+", "_", Path(original_filename).stem).strip("_")
    return f"{cleaned[:50] or 'experiment'}_report.json"


def _not_found() -> JSONResponse:
    return JSONResponse(status_code=404, content={"status": "warning", "message": "Experiment not found."})


def _visible_experiment(service: IngestionService, experiment_id: str, principal: Principal) -> Experiment | None:
    experiment = service.store.get(experiment_id)
    if experiment is None or not experiment.visible_to(principal.user_id, principal.is_admin):
        return None
    return experiment


def create_app(settings: Settings | None = None, service: IngestionService | None = None) -> FastAPI:
    settings = settings or load_settings()
    service = service or IngestionService.from_settings(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        configure_logging(settings.log_level)
        service.start()
        try:
            yield
        finally:
            service.shutdown(wait=True)

    app = FastAPI(title="Lab Data Ingestion API", lifespan=lifespan)
    app.state.service = service

    @app.middleware("http")
    async def api_prefix_alias(request, call_next):
        """Accept both `/path` and `/api/path` for frontend compatibility."""
        if request.scope.get("path", "").startswith("/api/"):
            request.scope["path"] = request.scope["path"][4:]
        return await call_next(request)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_allowed_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(LabIngestError)
    async def lab_ingest_error_handler(request: Request, exc: LabIngestError):
        status_code = _status_code_for(exc)
        if status_code >= 500:
            logger.error("Request to %s failed (%s)", request.url.path, exc.kind)
        content = {
            "status": "error",
            "message": sanitize_error_message(exc.message),
            "warnings": [],
        }
        if isinstance(exc, SecurityViolation):
            content["threat_category"] = exc.threat_category
        return JSONResponse(status_code=status_code, content=content)

    @app.get("/health")
    def health_check():
        return {"status": "ok"}

    @app.post("/experiments/upload")
    async def upload_experiment(
        file: UploadFile = File(...),
        project_id: str | None = Form(None),
        principal: Principal = Depends(get_principal),
    ):
        content = await file.read(service.max_upload_bytes + 1)
        accepted = await run_in_threadpool(
            service.accept_upload,
            principal,
            content,
            file.filename or "",
            size=file.size if file.size is not None else len(content),
            project_id=project_id,
            content_type=file.content_type,
        )
        return JSONResponse(status_code=202, content=accepted.to_dict())

    @app.get("/experiments")
    def list_experiments(
        limit: int = Query(50, ge=1, le=500),
        principal: Principal = Depends(get_principal),
    ):
        experiments = service.store.list_for(principal.user_id, principal.is_admin, limit=limit)
        return {
            "status": "success",
            "experiments": [experiment.status_payload() for experiment in experiments],
        }

    @app.get("/experiments/{experiment_id}")
    def get_experiment(experiment_id: str, principal: Principal = Depends(get_principal)):
        experiment = _visible_experiment(service, experiment_id, principal)
        if experiment is None:
            return _not_found()
        return experiment.status_payload()

    @app.get("/experiments/{experiment_id}/report/download")
    def download_report(experiment_id: str, principal: Principal = Depends(get_principal)):
        experiment = _visible_experiment(service, experiment_id, principal)
        if experiment is None:
            return _not_found()
        if experiment.status is not ExperimentStatus.COMPLETED or experiment.report is None:
            return JSONResponse(status_code=404, content={"status": "warning", "message": "Report not available."})

        payload = {
            "experiment": {
                "id": experiment.id,
                "filename": experiment.original_filename,
                "analysis_category": experiment.analysis_category.value,
                "detected_file_type": experiment.detected_file_type,
                "status": experiment.status.value,
                "created_at": experiment.created_at.isoformat(),
            },
            "report": experiment.report.model_dump(mode="json"),
            "data": experiment.processed_data,
        }
        filename = _report_filename(experiment.original_filename)
        return JSONResponse(
            content=payload,
            headers={"Content-Disposition": f'attachment; filename="{filename}"'},
        )

    @app.get("/dashboard/stats")
    def dashboard_stats(principal: Principal = Depends(get_principal)):
        return service.store.stats(principal.user_id, principal.is_admin)

    return app


app = create_app()
