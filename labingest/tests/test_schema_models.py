from __future__ import annotations

import pytest
from pydantic import ValidationError

from labingest.schema_models import (
    Experiment,
    ExperimentMetadata,
    ExperimentStatus,
    FailureRecord,
    Report,
    UploadRecord,
    experiment_json_schema,
)


def _experiment(**overrides) -> Experiment:
    payload = {
        "id": "a" * 32,
        "owner_id": "alice",
        "original_filename": "sample.csv",
        "declared_file_type": ".csv",
        "detected_file_type": ".csv",
        "analysis_category": "tabular_csv",
        "metadata": ExperimentMetadata(
            upload=UploadRecord(
                original_filename="sample.csv",
                stored_filename="20260101T000000000000Z_0123456789abcdef.csv",
                size_bytes=10,
                sha256="0" * 64,
            )
        ),
    }
    payload.update(overrides)
    return Experiment(**payload)


def _report(**overrides) -> Report:
    payload = {"summary": "ok", "confidence": 80, "processing_time_ms": 5, "provider": "local"}
    payload.update(overrides)
    return Report(**payload)


def test_experiment_schema_exposes_required_fields():
    schema = experiment_json_schema()

    required = set(schema.get("required", []))
    assert {"id", "owner_id", "original_filename", "metadata"}.issubset(required)


def test_new_experiment_defaults_to_pending_with_versioned_metadata():
    experiment = _experiment()

    assert experiment.status is ExperimentStatus.PENDING
    assert experiment.metadata.schema_version == 1
    assert experiment.metadata.security_scan.status == "passed"


def test_report_requires_completed_status():
    with pytest.raises(ValidationError):
        _experiment(status="processing", report=_report())


def test_completed_experiment_requires_report():
    with pytest.raises(ValidationError):
        _experiment(status="completed")


def test_failure_detail_only_on_failed_experiment():
    metadata = _experiment().metadata.model_copy(update={"failure": FailureRecord(kind="parse", message="bad")})

    with pytest.raises(ValidationError):
        _experiment(status="processing", metadata=metadata)

    failed = _experiment(status="failed", metadata=metadata)
    assert failed.status_payload()["error"] == {"kind": "parse", "message": "bad"}


def test_report_confidence_bounds_enforced():
    with pytest.raises(ValidationError):
        _report(confidence=101)


def test_status_payload_omits_raw_data():
    experiment = _experiment(status="completed", report=_report(), raw_data={"rows": [{"id": 1}]})

    payload = experiment.status_payload()

    assert payload["status"] == "completed"
    assert payload["report"]["summary"] == "ok"
    assert "raw_data" not in payload
    assert "metadata" not in payload


def test_terminal_statuses():
    assert ExperimentStatus.COMPLETED.is_terminal
    assert ExperimentStatus.FAILED.is_terminal
    assert not ExperimentStatus.PROCESSING.is_terminal
