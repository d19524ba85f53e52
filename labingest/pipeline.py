from __future__ import annotations

import hashlib
import logging
import time
import uuid
from dataclasses import asdict, dataclass
from functools import partial
from typing import Callable

from labingest.analysis import AnalysisInvoker, build_invoker
from labingest.auth import OpenProjectAccess, Principal, ProjectAccess, check_project_access
from labingest.config import Settings
from labingest.content_validator import (
    ALLOWED_EXTENSIONS,
    ContentValidationResult,
    analysis_category_for,
    check_filename_safety,
    normalize_extension,
    validate_content,
)
from labingest.errors import (
    InvalidTransition,
    LabIngestError,
    PipelineBusy,
    SecurityViolation,
    StorageError,
    UploadTooLarge,
    ValidationFailure,
    error_kind,
)
from labingest.experiment_store import ExperimentStore
from labingest.file_store import StagingArea
from labingest.format_parser import ParsedData, parse_content
from labingest.schema_models import (
    AnalysisCategory,
    Experiment,
    ExperimentMetadata,
    ExperimentStatus,
    Report,
    SecurityScanRecord,
    UploadRecord,
)
from labingest.worker_pool import WorkerPool

logger = logging.getLogger(__name__)

INTERNAL_FAILURE_MESSAGE = "Unexpected internal error during processing."
INTERRUPTED_FAILURE_MESSAGE = "Processing was interrupted by a service restart."
CAPACITY_FAILURE_MESSAGE = "The processing queue is full; try again later."

Validator = Callable[..., ContentValidationResult]
Parser = Callable[[bytes, str, int, str], ParsedData]


@dataclass(frozen=True)
class AcceptedUpload:
    experiment_id: str
    status: str = ExperimentStatus.PROCESSING.value
    message: str = "File accepted; analysis is running in the background."

    def to_dict(self) -> dict:
        return asdict(self)


class IngestionService:
    """Upload acceptance on the request path, parse and analysis on the worker pool."""

    def __init__(
        self,
        store: ExperimentStore,
        staging: StagingArea,
        invoker: AnalysisInvoker,
        pool: WorkerPool,
        validator: Validator = validate_content,
        parser: Parser = parse_content,
        project_access: ProjectAccess | None = None,
        max_upload_bytes: int = 50 * 1024 * 1024,
        allowed_extensions: set[str] | None = None,
        submit_timeout: float = 2.0,
    ):
        self.store = store
        self.staging = staging
        self.invoker = invoker
        self.pool = pool
        self.validator = validator
        self.parser = parser
        self.project_access = project_access or OpenProjectAccess()
        self.max_upload_bytes = max_upload_bytes
        self.allowed_extensions = allowed_extensions or set(ALLOWED_EXTENSIONS)
        self.submit_timeout = submit_timeout

    @classmethod
    def from_settings(cls, settings: Settings, invoker: AnalysisInvoker | None = None) -> "IngestionService":
        return cls(
            store=ExperimentStore(settings.experiments_dir),
            staging=StagingArea(settings.staging_dir),
            invoker=invoker or build_invoker(settings),
            pool=WorkerPool(worker_count=settings.worker_count, queue_size=settings.queue_size),
            max_upload_bytes=settings.max_upload_bytes,
            submit_timeout=settings.queue_put_timeout_seconds,
        )

    def start(self) -> None:
        self.recover_interrupted()
        self.pool.start()

    def shutdown(self, wait: bool = True) -> None:
        self.pool.shutdown(wait=wait)

    def _discard(self, stored_filename: str) -> None:
        try:
            self.staging.secure_delete(stored_filename)
        except StorageError:
            logger.error("Secure deletion of staged file %s failed", stored_filename, exc_info=True)

    def _reject(self, stored_filename: str, result: ContentValidationResult) -> LabIngestError:
        self._discard(stored_filename)
        if result.threat_category:
            logger.warning(
                "Rejected upload %s: threat category %s",
                stored_filename,
                result.threat_category,
            )
            return SecurityViolation(result.message, threat_category=result.threat_category)
        logger.info("Rejected upload %s: %s", stored_filename, result.message)
        return ValidationFailure(result.message)

    def accept_upload(
        self,
        principal: Principal,
        content: bytes,
        filename: str,
        size: int | None = None,
        project_id: str | None = None,
        content_type: str | None = None,
    ) -> AcceptedUpload:
        size = len(content) if size is None else size
        if size > self.max_upload_bytes or len(content) > self.max_upload_bytes:
            raise UploadTooLarge(
                f"File exceeds the maximum upload size of {self.max_upload_bytes // (1024 * 1024)} MB."
            )

        filename_check = check_filename_safety(filename)
        if not filename_check.safe:
            raise ValidationFailure(f"Unsafe filename: {filename_check.reason}")

        project_id = check_project_access(self.project_access, principal, project_id)
        staged = self.staging.stage(content, filename)

        try:
            result = self.validator(content, filename, self.allowed_extensions)
        except Exception:
            self._discard(staged.stored_filename)
            raise
        if not result.accepted:
            raise self._reject(staged.stored_filename, result)

        experiment = Experiment(
            id=uuid.uuid4().hex,
            owner_id=principal.user_id,
            project_id=project_id,
            original_filename=filename,
            declared_file_type=normalize_extension(filename),
            detected_file_type=result.detected_type,
            analysis_category=AnalysisCategory(analysis_category_for(result.detected_type)),
            metadata=ExperimentMetadata(
                upload=UploadRecord(
                    original_filename=filename,
                    stored_filename=staged.stored_filename,
                    size_bytes=staged.size_bytes,
                    declared_mime=content_type,
                    detected_mime=result.detected_mime,
                    sha256=hashlib.sha256(content).hexdigest(),
                ),
                security_scan=SecurityScanRecord(status="passed", threats=list(result.threats)),
            ),
        )
        try:
            experiment = self.store.create(experiment)
        except Exception:
            self._discard(staged.stored_filename)
            raise

        try:
            job = partial(self.run_pipeline, experiment.id, staged.stored_filename)
            self.pool.submit(job, timeout=self.submit_timeout)
        except PipelineBusy:
            self.store.fail(experiment.id, PipelineBusy.kind, CAPACITY_FAILURE_MESSAGE)
            self._discard(staged.stored_filename)
            raise

        logger.info("Queued experiment %s for %s analysis", experiment.id, experiment.analysis_category.value)
        return AcceptedUpload(experiment_id=experiment.id)

    def run_pipeline(self, experiment_id: str, stored_filename: str | None = None) -> None:
        try:
            experiment = self.store.get(experiment_id)
        except StorageError:
            logger.error("Could not load experiment %s for processing", experiment_id, exc_info=True)
            if stored_filename is not None:
                self._discard(stored_filename)
            return
        if experiment is None or experiment.status is not ExperimentStatus.PROCESSING:
            logger.warning("Skipping pipeline run for experiment %s: not in processing state", experiment_id)
            if stored_filename is not None:
                self._discard(stored_filename)
            return

        stored_filename = experiment.metadata.upload.stored_filename
        started = time.perf_counter()
        try:
            content = self.staging.read(stored_filename)
            parsed = self.parser(
                content,
                experiment.original_filename,
                len(content),
                experiment.detected_file_type,
            )
            verdict = self.invoker.analyze(parsed, experiment.analysis_category.value)
            report = Report(
                summary=verdict.summary,
                flags=verdict.flags,
                recommendations=verdict.recommendations,
                confidence=verdict.confidence,
                processing_time_ms=int((time.perf_counter() - started) * 1000),
                provider=verdict.provider,
            )
            raw_data = {"rows": parsed.rows}
            if parsed.headers is not None:
                raw_data["headers"] = parsed.headers
            self.store.complete(
                experiment_id,
                report=report,
                raw_data=raw_data,
                processed_data=parsed.to_dict(),
            )
        except Exception as exc:
            kind = error_kind(exc)
            if isinstance(exc, LabIngestError):
                logger.warning("Experiment %s failed during processing (%s)", experiment_id, kind)
                message = exc.message
            else:
                logger.exception("Experiment %s hit an unexpected error", experiment_id)
                message = INTERNAL_FAILURE_MESSAGE
            try:
                self.store.fail(experiment_id, kind, message)
            except (InvalidTransition, StorageError):
                logger.error("Could not record failure for experiment %s", experiment_id, exc_info=True)
        finally:
            self._discard(stored_filename)

    def recover_interrupted(self) -> dict[str, int]:
        """Fail experiments a previous process left in processing and purge orphaned staged files."""

        interrupted = 0
        for experiment in self.store.list_in_status(ExperimentStatus.PROCESSING):
            try:
                self.store.fail(experiment.id, "interrupted", INTERRUPTED_FAILURE_MESSAGE)
            except (InvalidTransition, StorageError):
                logger.error("Could not fail interrupted experiment %s", experiment.id, exc_info=True)
                continue
            interrupted += 1

        purged = 0
        for stored_filename in self.staging.list_staged():
            self._discard(stored_filename)
            purged += 1

        if interrupted or purged:
            logger.info("Recovered %d interrupted experiments, purged %d staged files", interrupted, purged)
        return {"interrupted": interrupted, "purged": purged}
