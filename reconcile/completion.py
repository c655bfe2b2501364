"""
Completion reconciliation.

Both delivery channels (signed webhooks and the poll fallback) report provider
statuses through ``Reconciler.apply_status``. It is the only place where a job
moves to a terminal state and the only caller of ``CreditLedger.refund`` for
failed jobs, so the success, failure and refund rules live here once.

Every job write is a compare-and-set on the job's version. Two deliveries
racing on the same job cannot both win the terminal transition; the loser
re-reads, sees a terminal job and becomes a no-op.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Optional

from core.errors import ValidationError, VersionConflict
from core.jobs import GenerationJob, JobState, JobStore
from core.storage import LocalObjectStorage, output_key
from ledger.credits import CreditLedger
from providers.base import CANCELED, IN_FLIGHT_STATUSES, PROVIDER_STATUSES, SUCCEEDED, VideoProvider

logger = logging.getLogger(__name__)

NO_OUTPUT_MESSAGE = "No video URL in provider output"
DEFAULT_FAILURE_MESSAGE = "Generation failed"
MAX_WRITE_ATTEMPTS = 5


@dataclass(frozen=True)
class ReconcileOutcome:
    job_id: str
    action: str
    state: JobState
    refunded: bool = False

    @property
    def changed(self) -> bool:
        return self.action != "noop"


def extract_output_url(output: Any) -> Optional[str]:
    if isinstance(output, str):
        return output.strip() or None
    if isinstance(output, (list, tuple)):
        for item in output:
            url = extract_output_url(item)
            if url:
                return url
        return None
    if isinstance(output, dict):
        for key in ("video", "url", "output"):
            if key in output:
                url = extract_output_url(output[key])
                if url:
                    return url
    return None


class OutputRetriever:
    """Copies a finished video from the provider into object storage."""

    def __init__(self, provider: VideoProvider, storage: LocalObjectStorage) -> None:
        self.provider = provider
        self.storage = storage

    def retrieve(self, job: GenerationJob, url: str) -> str:
        key = output_key(job.owner_id, job.id)
        if self.storage.exists(key):
            return key
        data = self.provider.download(url)
        if not data:
            raise ValidationError(f"provider returned an empty file for job {job.id}")
        return self.storage.store(data, key)


class Reconciler:
    def __init__(
        self,
        jobs: JobStore,
        ledger: CreditLedger,
        retriever: OutputRetriever,
        clock: Callable[[], datetime] = datetime.utcnow,
    ) -> None:
        self.jobs = jobs
        self.ledger = ledger
        self.retriever = retriever
        self.clock = clock

    def apply_status(
        self,
        job_id: str,
        reported_status: str,
        output: Any = None,
        error: Optional[str] = None,
    ) -> ReconcileOutcome:
        if reported_status not in PROVIDER_STATUSES:
            raise ValidationError(f"unknown provider status {reported_status!r}")

        conflict: Optional[VersionConflict] = None
        for _ in range(MAX_WRITE_ATTEMPTS):
            job = self.jobs.require(job_id)
            if job.is_terminal:
                logger.info("job %s already %s, ignoring %s", job.id, job.state.value, reported_status)
                return ReconcileOutcome(job.id, "noop", job.state)
            try:
                if reported_status in IN_FLIGHT_STATUSES:
                    return self._mark_processing(job)
                if reported_status == SUCCEEDED:
                    return self._complete(job, output)
                state = JobState.CANCELED if reported_status == CANCELED else JobState.FAILED
                return self._fail(job, state, error or DEFAULT_FAILURE_MESSAGE)
            except VersionConflict as exc:
                logger.warning("job %s changed while applying %s, re-reading", job.id, reported_status)
                conflict = exc
        raise conflict

    def fail(self, job_id: str, message: str) -> ReconcileOutcome:
        return self.apply_status(job_id, "failed", error=message)

    def _mark_processing(self, job: GenerationJob) -> ReconcileOutcome:
        if job.state == JobState.PROCESSING and job.processing_started_at:
            return ReconcileOutcome(job.id, "noop", job.state)
        updated = self.jobs.update(
            job.id,
            expected_version=job.version,
            state=JobState.PROCESSING,
            processing_started_at=job.processing_started_at or self.clock(),
        )
        logger.info("job %s processing", job.id)
        return ReconcileOutcome(updated.id, "processing", updated.state)

    def _complete(self, job: GenerationJob, output: Any) -> ReconcileOutcome:
        url = extract_output_url(output)
        if not url:
            return self._fail(job, JobState.FAILED, NO_OUTPUT_MESSAGE)
        try:
            key = self.retriever.retrieve(job, url)
        except Exception as exc:
            logger.warning("retrieving output for job %s failed: %s", job.id, exc, exc_info=True)
            return self._fail(job, JobState.FAILED, f"Failed to retrieve video: {getattr(exc, 'message', exc)}")

        now = self.clock()
        updated = self.jobs.update(
            job.id,
            expected_version=job.version,
            state=JobState.COMPLETED,
            output_ref=key,
            error_message=None,
            processing_started_at=job.processing_started_at or now,
            completed_at=now,
        )
        logger.info("job %s completed, output stored at %s", job.id, key)
        return ReconcileOutcome(updated.id, "completed", updated.state)

    def _fail(self, job: GenerationJob, state: JobState, message: str) -> ReconcileOutcome:
        updated = self.jobs.update(
            job.id,
            expected_version=job.version,
            state=state,
            error_message=message,
            completed_at=self.clock(),
        )
        logger.info("job %s %s: %s", job.id, state.value, message)
        refunded = self.refund(updated)
        return ReconcileOutcome(updated.id, state.value, updated.state, refunded=refunded)

    def refund(self, job: GenerationJob) -> bool:
        try:
            self.ledger.refund(
                job.owner_id,
                job.credits_reserved,
                job.id,
                reason=f"Refund for {job.state.value} video generation",
            )
        except Exception:
            logger.error("refund for job %s failed; left for the sweeper", job.id, exc_info=True)
            return False
        return True
