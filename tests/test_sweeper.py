"""Tests for the periodic repair sweep."""

from datetime import datetime, timedelta

from core.jobs import JobState
from reconcile.sweeper import STALE_JOB_MESSAGE
from reconcile.webhooks import SOURCE

LATER = timedelta(hours=2)


class TestStaleJobs:
    def test_stuck_processing_job_is_failed_and_refunded(self, sweeper, jobs, ledger, dispatched):
        job = dispatched()
        failed = sweeper.sweep_stale_jobs(datetime.utcnow() + LATER)
        assert failed == [job.id]
        current = jobs.get(job.id)
        assert current.state == JobState.FAILED
        assert current.error_message == STALE_JOB_MESSAGE
        assert ledger.balance(job.owner_id) == 100

    def test_stuck_pending_job_is_failed(self, sweeper, jobs, make_job):
        job = make_job()
        assert sweeper.sweep_stale_jobs(datetime.utcnow() + LATER) == [job.id]
        assert jobs.get(job.id).state == JobState.FAILED

    def test_recent_jobs_untouched(self, sweeper, jobs, dispatched):
        job = dispatched()
        assert sweeper.sweep_stale_jobs(datetime.utcnow()) == []
        assert jobs.get(job.id).state == JobState.PROCESSING

    def test_finished_jobs_untouched(self, sweeper, reconciler, ledger, dispatched):
        job = dispatched()
        reconciler.apply_status(job.id, "succeeded", output="https://cdn.example/v.mp4")
        assert sweeper.sweep_stale_jobs(datetime.utcnow() + LATER) == []
        assert ledger.balance(job.owner_id) == 58


class TestOrphanDebits:
    """Debits whose job record never got written."""

    def test_orphan_debit_refunded_after_grace(self, sweeper, ledger):
        ledger.grant("ana@example.com", 100, reason="Signup credits")
        ledger.debit("ana@example.com", 42, related_job_id="job-never-created")

        assert sweeper.reconcile_orphan_debits(datetime.utcnow()) == []
        assert sweeper.reconcile_orphan_debits(datetime.utcnow() + timedelta(minutes=10)) == ["job-never-created"]
        assert ledger.balance("ana@example.com") == 100

        assert sweeper.reconcile_orphan_debits(datetime.utcnow() + timedelta(minutes=20)) == []
        assert ledger.balance("ana@example.com") == 100

    def test_debits_with_jobs_are_left_alone(self, sweeper, ledger, make_job):
        job = make_job()
        assert sweeper.reconcile_orphan_debits(datetime.utcnow() + timedelta(minutes=10)) == []
        assert ledger.balance(job.owner_id) == 58


class TestMissingRefunds:
    def test_failed_job_without_refund_gets_one(self, sweeper, reconciler, jobs, ledger, make_job, monkeypatch):
        job = make_job()
        real_refund = ledger.refund

        def offline(*args, **kwargs):
            raise RuntimeError("ledger offline")

        monkeypatch.setattr(ledger, "refund", offline)
        reconciler.apply_status(job.id, "failed", error="boom")
        assert ledger.balance(job.owner_id) == 58

        monkeypatch.setattr(ledger, "refund", real_refund)
        assert sweeper.retry_missing_refunds() == [job.id]
        assert ledger.balance(job.owner_id) == 100
        assert sweeper.retry_missing_refunds() == []


class TestRunOnce:
    def test_report_and_event_cleanup(self, sweeper, events, dispatched):
        job = dispatched()
        old = datetime.utcnow() - timedelta(days=45)
        events.record("replicate:old:failed", SOURCE, "failed", processed=True, now=old)

        report = sweeper.run_once(datetime.utcnow() + LATER)

        assert report.stale_failed == [job.id]
        assert report.events_removed == 1
        assert report.as_dict()["orphan_refunds"] == []
