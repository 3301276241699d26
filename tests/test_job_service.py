import unittest
from datetime import datetime, timedelta

from billing_case import BillingTestCase
from core import job_service
from core.errors import NotFoundError, ValidationError
from core.models.job_execution import JobExecution, JobStatus


class JobServiceTestCase(BillingTestCase):
    def test_execution_lifecycle(self):
        execution = job_service.start_job_execution(self.session, "demo", description="演示", metadata={"k": 1})
        self.assertEqual(execution.status, JobStatus.RUNNING)
        self.assertEqual(job_service.get_running_jobs(self.session)[0].id, execution.id)

        job_service.record_item_failure(self.session, execution, "church-x", ValueError("bad data"))
        job_service.mark_job_completed(self.session, execution, items_processed=4)
        self.assertEqual(execution.status, JobStatus.COMPLETED)
        self.assertEqual(execution.items_failed, 1)
        self.assertEqual(execution.items_processed, 4)

        data = job_service.execution_to_dict(execution, with_failures=True)
        self.assertEqual(data["failures"][0]["tenant_id"], "church-x")
        self.assertIn("ValueError", data["failures"][0]["stack_trace"])

    def test_mark_failed_records_stack_trace(self):
        execution = job_service.start_job_execution(self.session, "demo")
        try:
            raise RuntimeError("boom")
        except RuntimeError as e:
            job_service.mark_job_failed(self.session, execution, error=e)
        self.assertEqual(execution.status, JobStatus.FAILED)
        self.assertEqual(execution.error_message, "boom")
        self.assertIn("RuntimeError", execution.stack_trace)

    def test_cancel_only_running(self):
        execution = job_service.start_job_execution(self.session, "demo")
        job_service.cancel_job_execution(self.session, execution.id, canceled_by="ops")
        self.assertTrue(job_service.is_cancel_requested(self.session, execution))
        with self.assertRaises(ValidationError):
            job_service.cancel_job_execution(self.session, execution.id)
        with self.assertRaises(NotFoundError):
            job_service.get_execution(self.session, "missing")

    def test_stale_running_executions_are_failed(self):
        execution = job_service.start_job_execution(self.session, "demo")
        execution.start_time = datetime.now() - timedelta(hours=5)
        self.session.commit()
        self.assertEqual(job_service.fail_stale_executions(self.session, "demo"), 1)
        self.assertEqual(execution.status, JobStatus.FAILED)
        self.assertEqual(job_service.fail_stale_executions(self.session, "demo"), 0)

    def test_statistics_and_cleanup(self):
        old = job_service.start_job_execution(self.session, "demo")
        job_service.mark_job_completed(self.session, old)
        old.start_time = datetime.now() - timedelta(days=120)
        self.session.commit()
        recent = job_service.start_job_execution(self.session, "demo")
        job_service.mark_job_failed(self.session, recent, message="x")
        running = job_service.start_job_execution(self.session, "other")
        running.start_time = datetime.now() - timedelta(days=200)
        self.session.commit()

        stats = job_service.get_job_statistics_summary(self.session)
        self.assertEqual(stats["total"], 1)
        self.assertEqual(stats["by_status"]["FAILED"], 1)
        self.assertEqual(stats["success_rate"], 0.0)

        deleted = job_service.cleanup_old_executions(self.session, days=90)
        self.assertEqual(deleted, 1)
        remaining = {x.job_name: x.status for x in self.session.query(JobExecution).all()}
        self.assertEqual(remaining, {"demo": JobStatus.FAILED, "other": JobStatus.RUNNING})
        self.assertEqual(len(job_service.get_executions_for_job(self.session, "demo")), 1)


if __name__ == "__main__":
    unittest.main()
