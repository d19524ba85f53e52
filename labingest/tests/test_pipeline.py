import unittest
from pathlib import Path
from tempfile import TemporaryDirectory
from unittest.mock import patch

from labingest.analysis import AnalysisVerdict
from labingest.auth import Principal, StaticProjectAccess
from labingest.errors import (
    AccessDenied,
    AnalysisError,
    PipelineBusy,
    SecurityViolation,
    StorageError,
    UploadTooLarge,
    ValidationFailure,
)
from labingest.experiment_store import ExperimentStore
from labingest.file_store import StagingArea
from labingest.pipeline import INTERNAL_FAILURE_MESSAGE, IngestionService
from labingest.schema_models import ExperimentStatus, Flag
from labingest.worker_pool import WorkerPool

SAMPLE_CSV = b"id,ph\nS1,7.0\nS2,13.5\n"
PE_HEADER = b"MZ\x90\x00\x03\x00\x00\x00\x04\x00\x00\x00\xff\xff\x00\x00" + b"\x00" * 48
ALICE = Principal(user_id="alice")


class FakeInvoker:
    name = "fake"

    def __init__(self, error: Exception | None = None):
        self.error = error
        self.calls = []

    def analyze(self, parsed, category):
        self.calls.append((parsed, category))
        if self.error is not None:
            raise self.error
        return AnalysisVerdict(
            summary=f"{len(parsed.rows)} rows reviewed",
            flags=[Flag(level="critical", parameter="ph", message="pH too high", value=13.5)],
            recommendations="Re-measure S2",
            confidence=88,
            provider=self.name,
        )


class ManualPool:
    """Collects jobs so tests decide when the pipeline runs."""

    def __init__(self, accepting: bool = True):
        self.accepting = accepting
        self.jobs = []

    def start(self):
        self.accepting = True

    def submit(self, job, timeout=0.0):
        if not self.accepting:
            raise PipelineBusy("The processing queue is full; try again later.")
        self.jobs.append(job)

    def run_all(self):
        while self.jobs:
            self.jobs.pop(0)()

    def shutdown(self, wait=True):
        self.accepting = False


class PipelineTestCase(unittest.TestCase):
    def setUp(self):
        self._tmp = TemporaryDirectory()
        self.root = Path(self._tmp.name)
        self.addCleanup(self._tmp.cleanup)

    def make_service(self, invoker=None, pool=None, **kwargs) -> IngestionService:
        return IngestionService(
            store=ExperimentStore(self.root / "experiments"),
            staging=StagingArea(self.root / "staging"),
            invoker=invoker or FakeInvoker(),
            pool=pool or ManualPool(),
            **kwargs,
        )

    def staged_files(self) -> list:
        staging = self.root / "staging"
        return list(staging.iterdir()) if staging.exists() else []


class TestAcceptUpload(PipelineTestCase):
    def test_sample_csv_is_accepted_and_queued(self):
        pool = ManualPool()
        service = self.make_service(pool=pool)

        accepted = service.accept_upload(ALICE, SAMPLE_CSV, "sample.csv", content_type="text/csv")

        self.assertEqual(accepted.status, "processing")
        experiment = service.store.get(accepted.experiment_id)
        self.assertIs(experiment.status, ExperimentStatus.PROCESSING)
        self.assertEqual(experiment.detected_file_type, ".csv")
        self.assertEqual(experiment.analysis_category.value, "tabular_csv")
        self.assertEqual(experiment.metadata.upload.declared_mime, "text/csv")
        self.assertEqual(experiment.metadata.upload.size_bytes, len(SAMPLE_CSV))
        self.assertNotIn("sample", experiment.metadata.upload.stored_filename)
        self.assertEqual(len(pool.jobs), 1)
        self.assertEqual(len(self.staged_files()), 1)

    def test_renamed_executable_rejected_without_experiment(self):
        service = self.make_service()

        with self.assertRaises(ValidationFailure) as ctx:
            service.accept_upload(ALICE, PE_HEADER, "data.csv")

        self.assertIn("does not match detected type .exe", ctx.exception.message)
        self.assertEqual(service.store.list_all(), [])
        self.assertEqual(self.staged_files(), [])

    def test_script_content_rejected_as_security_violation(self):
        service = self.make_service()

        with self.assertRaises(SecurityViolation) as ctx:
            service.accept_upload(ALICE, b"id,note\n1,<script>x</script>\n", "sample.csv")

        self.assertEqual(ctx.exception.threat_category, "script_markup")
        self.assertEqual(self.staged_files(), [])

    def test_oversize_upload_rejected_before_staging(self):
        service = self.make_service(max_upload_bytes=8)

        with self.assertRaises(UploadTooLarge):
            service.accept_upload(ALICE, SAMPLE_CSV, "sample.csv")

        self.assertEqual(self.staged_files(), [])

    def test_unsafe_filename_rejected_before_staging(self):
        service = self.make_service()

        with self.assertRaises(ValidationFailure) as ctx:
            service.accept_upload(ALICE, SAMPLE_CSV, "../sample.csv")

        self.assertIn("Unsafe filename", ctx.exception.message)
        self.assertEqual(self.staged_files(), [])

    def test_project_access_is_checked(self):
        access = StaticProjectAccess(grants={"alice": {"proj-1"}})
        service = self.make_service(project_access=access)

        accepted = service.accept_upload(ALICE, SAMPLE_CSV, "sample.csv", project_id="proj-1")
        self.assertEqual(service.store.get(accepted.experiment_id).project_id, "proj-1")

        with self.assertRaises(AccessDenied):
            service.accept_upload(ALICE, SAMPLE_CSV, "sample.csv", project_id="proj-2")

    def test_full_queue_fails_experiment_and_discards_file(self):
        service = self.make_service(pool=ManualPool(accepting=False))

        with self.assertRaises(PipelineBusy):
            service.accept_upload(ALICE, SAMPLE_CSV, "sample.csv")

        (experiment,) = service.store.list_all()
        self.assertIs(experiment.status, ExperimentStatus.FAILED)
        self.assertEqual(experiment.metadata.failure.kind, "capacity")
        self.assertEqual(self.staged_files(), [])


class TestRunPipeline(PipelineTestCase):
    def test_sample_csv_completes_with_report(self):
        pool = ManualPool()
        invoker = FakeInvoker()
        service = self.make_service(invoker=invoker, pool=pool)
        accepted = service.accept_upload(ALICE, SAMPLE_CSV, "sample.csv")

        pool.run_all()

        experiment = service.store.get(accepted.experiment_id)
        self.assertIs(experiment.status, ExperimentStatus.COMPLETED)
        self.assertEqual(experiment.report.confidence, 88)
        self.assertEqual(experiment.report.provider, "fake")
        self.assertEqual(len(experiment.raw_data["rows"]), 2)
        self.assertEqual(experiment.processed_data["metadata"]["row_count"], 2)
        self.assertEqual(invoker.calls[0][1], "tabular_csv")
        self.assertEqual(self.staged_files(), [])

    def test_headers_only_csv_fails_with_empty_data(self):
        pool = ManualPool()
        invoker = FakeInvoker()
        service = self.make_service(invoker=invoker, pool=pool)
        accepted = service.accept_upload(ALICE, b"id,ph\n", "sample.csv")

        pool.run_all()

        experiment = service.store.get(accepted.experiment_id)
        self.assertIs(experiment.status, ExperimentStatus.FAILED)
        self.assertEqual(experiment.metadata.failure.kind, "parse")
        self.assertIn("empty data", experiment.metadata.failure.message)
        self.assertIsNone(experiment.report)
        self.assertEqual(invoker.calls, [])
        self.assertEqual(self.staged_files(), [])

    def test_analysis_error_fails_as_external(self):
        pool = ManualPool()
        service = self.make_service(invoker=FakeInvoker(AnalysisError("Analysis provider openai failed")), pool=pool)
        accepted = service.accept_upload(ALICE, SAMPLE_CSV, "sample.csv")

        pool.run_all()

        failure = service.store.get(accepted.experiment_id).metadata.failure
        self.assertEqual(failure.kind, "external")
        self.assertIn("openai", failure.message)

    def test_unexpected_error_is_not_leaked(self):
        pool = ManualPool()
        service = self.make_service(invoker=FakeInvoker(KeyError("/internal/secret/path")), pool=pool)
        accepted = service.accept_upload(ALICE, SAMPLE_CSV, "sample.csv")

        pool.run_all()

        failure = service.store.get(accepted.experiment_id).metadata.failure
        self.assertEqual(failure.kind, "internal")
        self.assertEqual(failure.message, INTERNAL_FAILURE_MESSAGE)

    def test_staged_file_securely_deleted_exactly_once(self):
        pool = ManualPool()
        service = self.make_service(pool=pool)
        service.accept_upload(ALICE, SAMPLE_CSV, "sample.csv")

        with patch.object(service.staging, "secure_delete", wraps=service.staging.secure_delete) as spy:
            pool.run_all()

        self.assertEqual(spy.call_count, 1)

    def test_secure_delete_failure_does_not_block_completion(self):
        pool = ManualPool()
        service = self.make_service(pool=pool)
        accepted = service.accept_upload(ALICE, SAMPLE_CSV, "sample.csv")

        with patch.object(service.staging, "secure_delete", side_effect=StorageError("disk gone")):
            pool.run_all()

        self.assertIs(service.store.get(accepted.experiment_id).status, ExperimentStatus.COMPLETED)

    def test_unreadable_experiment_still_discards_staged_file(self):
        pool = ManualPool()
        service = self.make_service(pool=pool)
        service.accept_upload(ALICE, SAMPLE_CSV, "sample.csv")

        with patch.object(service.store, "get", side_effect=StorageError("Experiment document is unreadable")):
            pool.run_all()

        self.assertEqual(self.staged_files(), [])

    def test_rerun_of_terminal_experiment_is_ignored(self):
        pool = ManualPool()
        invoker = FakeInvoker()
        service = self.make_service(invoker=invoker, pool=pool)
        accepted = service.accept_upload(ALICE, SAMPLE_CSV, "sample.csv")
        pool.run_all()

        service.run_pipeline(accepted.experiment_id)

        self.assertEqual(len(invoker.calls), 1)
        self.assertIs(service.store.get(accepted.experiment_id).status, ExperimentStatus.COMPLETED)


class TestRecovery(PipelineTestCase):
    def test_interrupted_experiments_fail_and_staging_is_purged(self):
        first = self.make_service(pool=ManualPool())
        accepted = first.accept_upload(ALICE, SAMPLE_CSV, "sample.csv")
        orphan = first.staging.stage(b"id\n1\n", "orphan.csv")

        restarted = self.make_service(pool=ManualPool())
        summary = restarted.recover_interrupted()

        experiment = restarted.store.get(accepted.experiment_id)
        self.assertIs(experiment.status, ExperimentStatus.FAILED)
        self.assertEqual(experiment.metadata.failure.kind, "interrupted")
        self.assertEqual(summary, {"interrupted": 1, "purged": 2})
        self.assertFalse(orphan.path.exists())
        self.assertEqual(self.staged_files(), [])


class TestWithThreadedPool(PipelineTestCase):
    def test_upload_completes_on_worker_pool(self):
        pool = WorkerPool(worker_count=2, queue_size=4)
        service = self.make_service(pool=pool)
        service.start()
        try:
            accepted = service.accept_upload(ALICE, SAMPLE_CSV, "sample.csv")
            self.assertTrue(pool.wait_idle(timeout=10))
        finally:
            service.shutdown()

        self.assertIs(service.store.get(accepted.experiment_id).status, ExperimentStatus.COMPLETED)


if __name__ == "__main__":
    unittest.main()
