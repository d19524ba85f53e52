from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, model_validator

METADATA_SCHEMA_VERSION = 1


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class ExperimentStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (ExperimentStatus.COMPLETED, ExperimentStatus.FAILED)


class AnalysisCategory(str, Enum):
    CHROMATOGRAPHY = "chromatography"
    SPECTROSCOPY = "spectroscopy"
    TABULAR_CSV = "tabular_csv"
    TABULAR_SPREADSHEET = "tabular_spreadsheet"


class FlagLevel(str, Enum):
    INFO = "info"
    WARNING = "warning"
    CRITICAL = "critical"


class Flag(BaseModel):
    level: FlagLevel = FlagLevel.INFO
    parameter: str = ""
    message: str = ""
    value: Any = None
    expected_range: str | None = None


class Report(BaseModel):
    """Analysis outcome; only ever attached to a completed experiment."""

    model_config = ConfigDict(frozen=True)

    summary: str
    flags: list[Flag] = Field(default_factory=list)
    recommendations: str = ""
    confidence: int = Field(ge=0, le=100)
    processing_time_ms: int = Field(ge=0)
    provider: str
    created_at: datetime = Field(default_factory=utc_now)


class UploadRecord(BaseModel):
    original_filename: str
    stored_filename: str
    size_bytes: int = Field(ge=0)
    uploaded_at: datetime = Field(default_factory=utc_now)
    declared_mime: str | None = None
    detected_mime: str | None = None
    sha256: str


class SecurityScanRecord(BaseModel):
    status: str = "passed"
    threats: list[str] = Field(default_factory=list)
    scanned_at: datetime = Field(default_factory=utc_now)


class FailureRecord(BaseModel):
    kind: str
    message: str
    occurred_at: datetime = Field(default_factory=utc_now)


class ExperimentMetadata(BaseModel):
    schema_version: int = METADATA_SCHEMA_VERSION
    upload: UploadRecord
    security_scan: SecurityScanRecord = Field(default_factory=SecurityScanRecord)
    failure: FailureRecord | None = None


class Experiment(BaseModel):
    id: str
    owner_id: str
    project_id: str | None = None
    original_filename: str
    declared_file_type: str
    detected_file_type: str
    analysis_category: AnalysisCategory
    status: ExperimentStatus = ExperimentStatus.PENDING
    raw_data: dict[str, Any] | None = None
    processed_data: dict[str, Any] | None = None
    metadata: ExperimentMetadata
    report: Report | None = None
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)
    completed_at: datetime | None = None

    @model_validator(mode="after")
    def _report_matches_status(self) -> "Experiment":
        if (self.report is not None) != (self.status is ExperimentStatus.COMPLETED):
            raise ValueError("A report is attached exactly when the experiment is completed.")
        if self.metadata.failure is not None and self.status is not ExperimentStatus.FAILED:
            raise ValueError("Failure details are only recorded on failed experiments.")
        return self

    def visible_to(self, user_id: str, is_admin: bool = False) -> bool:
        return is_admin or self.owner_id == user_id

    def status_payload(self) -> dict[str, Any]:
        """Client-facing view: no raw data, no staging details."""

        payload: dict[str, Any] = {
            "id": self.id,
            "original_filename": self.original_filename,
            "project_id": self.project_id,
            "declared_file_type": self.declared_file_type,
            "detected_file_type": self.detected_file_type,
            "analysis_category": self.analysis_category.value,
            "status": self.status.value,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
        }
        if self.report is not None:
            payload["report"] = self.report.model_dump(mode="json")
        if self.metadata.failure is not None:
            payload["error"] = {
                "kind": self.metadata.failure.kind,
                "message": self.metadata.failure.message,
            }
        return payload


def experiment_json_schema() -> dict[str, Any]:
    """Expose JSON schema for tests and tooling."""

    return Experiment.model_json_schema()
