from __future__ import annotations

import json
import logging
import re
import tempfile
import threading
from datetime import datetime
from pathlib import Path
from typing import Any

from pydantic import ValidationError

from labingest.errors import InvalidTransition, StorageError, sanitize_error_message
from labingest.schema_models import (
    Experiment,
    ExperimentStatus,
    FailureRecord,
    FlagLevel,
    Report,
    utc_now,
)

logger = logging.getLogger(__name__)

_EXPERIMENT_ID_PATTERN = re.compile(r"^[0-9a-f]{32}$")


def _atomic_write_json(path: Path, payload: dict) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    with tempfile.NamedTemporaryFile(
        mode="w",
        encoding="utf-8",
        dir=path.parent,
        prefix=f".{path.name}.",
        suffix=".tmp",
        delete=False,
    ) as handle:
        json.dump(payload, handle, indent=2)
        handle.flush()
        temp_path = Path(handle.name)
    temp_path.replace(path)


class ExperimentStore:
    """One JSON document per experiment; the report lives inside its experiment document."""

    def __init__(self, root: Path):
        self.root = Path(root)
        self._lock = threading.RLock()

    def _path(self, experiment_id: str) -> Path | None:
        if not _EXPERIMENT_ID_PATTERN.fullmatch(experiment_id or ""):
            return None
        return self.root / f"{experiment_id}.json"

    def _load(self, path: Path) -> Experiment:
        try:
            return Experiment.model_validate(json.loads(path.read_text(encoding="utf-8")))
        except (OSError, json.JSONDecodeError, ValidationError) as exc:
            raise StorageError(f"Experiment document {path.name} is unreadable.") from exc

    def _save(self, experiment: Experiment) -> None:
        path = self._path(experiment.id)
        if path is None:
            raise StorageError("Experiment id is not a generated identifier.")
        try:
            _atomic_write_json(path, experiment.model_dump(mode="json"))
        except OSError as exc:
            raise StorageError(f"Could not persist experiment: {exc.strerror or exc}") from exc

    def _require_processing(self, experiment_id: str, target: ExperimentStatus) -> Experiment:
        experiment = self.get(experiment_id)
        if experiment is None:
            raise StorageError(f"Experiment {experiment_id} does not exist.")
        if experiment.status is not ExperimentStatus.PROCESSING:
            raise InvalidTransition(
                f"Experiment {experiment_id} cannot move from {experiment.status.value} to {target.value}."
            )
        return experiment

    def create(self, experiment: Experiment) -> Experiment:
        """Persist a new experiment and move it straight from pending to processing."""

        if experiment.status is not ExperimentStatus.PENDING:
            raise InvalidTransition("New experiments must start in the pending state.")
        with self._lock:
            path = self._path(experiment.id)
            if path is not None and path.exists():
                raise StorageError(f"Experiment {experiment.id} already exists.")
            created = experiment.model_copy(
                update={"status": ExperimentStatus.PROCESSING, "updated_at": utc_now()}
            )
            self._save(created)
        logger.info("Experiment %s created (%s)", created.id, created.analysis_category.value)
        return created

    def get(self, experiment_id: str) -> Experiment | None:
        path = self._path(experiment_id)
        if path is None:
            return None
        with self._lock:
            if not path.exists():
                return None
            return self._load(path)

    def list_all(self) -> list[Experiment]:
        with self._lock:
            if not self.root.exists():
                return []
            experiments = []
            for path in self.root.glob("*.json"):
                if not _EXPERIMENT_ID_PATTERN.fullmatch(path.stem):
                    continue
                try:
                    experiments.append(self._load(path))
                except StorageError:
                    logger.warning("Skipping unreadable experiment document %s", path.name)
        experiments.sort(key=lambda item: item.created_at, reverse=True)
        return experiments

    def list_for(self, user_id: str, is_admin: bool = False, limit: int | None = None) -> list[Experiment]:
        visible = [item for item in self.list_all() if item.visible_to(user_id, is_admin)]
        return visible[:limit] if limit is not None else visible

    def list_in_status(self, status: ExperimentStatus) -> list[Experiment]:
        return [item for item in self.list_all() if item.status is status]

    def complete(
        self,
        experiment_id: str,
        report: Report,
        raw_data: dict[str, Any],
        processed_data: dict[str, Any],
    ) -> Experiment:
        """Attach the report and set the terminal status in a single write."""

        with self._lock:
            experiment = self._require_processing(experiment_id, ExperimentStatus.COMPLETED)
            now = utc_now()
            completed = Experiment.model_validate(
                {
                    **experiment.model_dump(),
                    "status": ExperimentStatus.COMPLETED,
                    "report": report,
                    "raw_data": raw_data,
                    "processed_data": processed_data,
                    "updated_at": now,
                    "completed_at": now,
                }
            )
            self._save(completed)
        logger.info("Experiment %s completed (confidence %d)", experiment_id, report.confidence)
        return completed

    def fail(self, experiment_id: str, kind: str, message: str) -> Experiment:
        with self._lock:
            experiment = self._require_processing(experiment_id, ExperimentStatus.FAILED)
            now = utc_now()
            failure = FailureRecord(kind=kind, message=sanitize_error_message(message), occurred_at=now)
            failed = experiment.model_copy(
                update={
                    "status": ExperimentStatus.FAILED,
                    "metadata": experiment.metadata.model_copy(update={"failure": failure}),
                    "raw_data": None,
                    "processed_data": None,
                    "updated_at": now,
                    "completed_at": now,
                }
            )
            self._save(failed)
        logger.info("Experiment %s failed (%s)", experiment_id, kind)
        return failed

    def stats(self, user_id: str, is_admin: bool = False, now: datetime | None = None) -> dict[str, int]:
        today = (now or utc_now()).date()
        stats = {"active_analyses": 0, "critical_alerts": 0, "completed_today": 0, "failed_today": 0}
        for experiment in self.list_for(user_id, is_admin):
            if experiment.status is ExperimentStatus.PROCESSING:
                stats["active_analyses"] += 1
            elif experiment.status is ExperimentStatus.COMPLETED:
                if experiment.completed_at and experiment.completed_at.date() == today:
                    stats["completed_today"] += 1
                if experiment.report is not None:
                    stats["critical_alerts"] += sum(
                        1 for flag in experiment.report.flags if flag.level is FlagLevel.CRITICAL
                    )
            elif experiment.status is ExperimentStatus.FAILED:
                if experiment.updated_at.date() == today:
                    stats["failed_today"] += 1
        return stats
