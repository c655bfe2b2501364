from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, List, Optional

from core.errors import ServiceError
from core.events import ProcessedEventStore
from core.jobs import JobState, JobStore
from ledger.credits import DEBIT, CreditLedger
from reconcile.completion import Reconciler

logger = logging.getLogger(__name__)

STALE_JOB_MESSAGE = "Generation timed out"


@dataclass
class SweepReport:
    stale_failed: List[str] = field(default_factory=list)
    orphan_refunds: List[str] = field(default_factory=list)
    missing_refunds: List[str] = field(default_factory=list)
    events_removed: int = 0

    def as_dict(self) -> dict:
        return {
            "stale_failed": self.stale_failed,
            "orphan_refunds": self.orphan_refunds,
            "missing_refunds": self.missing_refunds,
            "events_removed": self.events_removed,
        }


class Sweeper:
    def __init__(
        self,
        jobs: JobStore,
        ledger: CreditLedger,
        events: ProcessedEventStore,
        reconciler: Reconciler,
        max_job_age: timedelta = timedelta(hours=1),
        orphan_grace: timedelta = timedelta(minutes=5),
        event_retention: timedelta = timedelta(days=30),
        clock: Callable[[], datetime] = datetime.utcnow,
    ) -> None:
        self.jobs = jobs
        self.ledger = ledger
        self.events = events
        self.reconciler = reconciler
        self.max_job_age = max_job_age
        self.orphan_grace = orphan_grace
        self.event_retention = event_retention
        self.clock = clock

    def run_once(self, now: Optional[datetime] = None) -> SweepReport:
        now = now or self.clock()
        report = SweepReport(
            stale_failed=self.sweep_stale_jobs(now),
            orphan_refunds=self.reconcile_orphan_debits(now),
            missing_refunds=self.retry_missing_refunds(),
            events_removed=self.cleanup_events(now),
        )
        if report.stale_failed or report.orphan_refunds or report.missing_refunds:
            logger.warning("sweep repaired state: %s", report.as_dict())
        return report

    def sweep_stale_jobs(self, now: Optional[datetime] = None) -> List[str]:
        now = now or self.clock()
        failed: List[str] = []
        for job in self.jobs.list_stale(now, self.max_job_age):
            try:
                outcome = self.reconciler.fail(job.id, STALE_JOB_MESSAGE)
            except ServiceError as exc:
                logger.error("could not fail stale job %s: %s", job.id, exc.message)
                continue
            if outcome.changed:
                logger.warning("job %s stuck in %s since %s, failed", job.id, job.state.value, job.created_at)
                failed.append(job.id)
        return failed

    def reconcile_orphan_debits(self, now: Optional[datetime] = None) -> List[str]:
        cutoff = (now or self.clock()) - self.orphan_grace
        refunded: List[str] = []
        for txn in self.ledger.transactions():
            if txn.type != DEBIT or not txn.related_job_id or txn.created_at >= cutoff:
                continue
            if self.jobs.exists(txn.related_job_id) or self.ledger.has_refund(txn.related_job_id):
                continue
            try:
                self.ledger.refund(txn.owner_id, txn.amount, txn.related_job_id, reason="Refund for debit without a job")
            except ServiceError:
                logger.error("refund of orphaned debit %s failed", txn.id, exc_info=True)
                continue
            logger.warning("refunded orphaned debit %s for missing job %s", txn.id, txn.related_job_id)
            refunded.append(txn.related_job_id)
        return refunded

    def retry_missing_refunds(self) -> List[str]:
        repaired: List[str] = []
        for job in self.jobs.list_by_state(JobState.FAILED, JobState.CANCELED):
            if self.ledger.has_refund(job.id):
                continue
            if self.reconciler.refund(job):
                logger.warning("issued missing refund for job %s", job.id)
                repaired.append(job.id)
        return repaired

    def cleanup_events(self, now: Optional[datetime] = None) -> int:
        return self.events.cleanup(self.event_retention, now=now or self.clock())
