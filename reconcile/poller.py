from __future__ import annotations

import logging
from typing import Optional

from core.errors import ServiceError, VersionConflict
from core.jobs import JobStore
from core.queue import TaskQueue
from providers.base import IN_FLIGHT_STATUSES, VideoProvider
from reconcile.completion import ReconcileOutcome, Reconciler

logger = logging.getLogger(__name__)

POLL_TIMEOUT_MESSAGE = "Polling timed out before the provider finished"


class Poller:
    """Status polling for jobs dispatched without a reachable callback URL.

    Each tick queries the provider once and feeds the result to the
    reconciler. In-flight statuses reschedule after ``interval_seconds``,
    provider errors after ``error_delay_seconds``. After ``max_attempts``
    ticks the job is failed here rather than left for the sweeper.
    """

    def __init__(
        self,
        jobs: JobStore,
        provider: VideoProvider,
        reconciler: Reconciler,
        queue: TaskQueue,
        interval_seconds: float = 5.0,
        error_delay_seconds: float = 10.0,
        max_attempts: int = 360,
    ) -> None:
        self.jobs = jobs
        self.provider = provider
        self.reconciler = reconciler
        self.queue = queue
        self.interval_seconds = interval_seconds
        self.error_delay_seconds = error_delay_seconds
        self.max_attempts = max_attempts

    def start(self, job_id: str, external_job_id: str) -> None:
        logger.info("polling %s for job %s every %ss", external_job_id, job_id, self.interval_seconds)
        self.queue.schedule(self.interval_seconds, self.tick, job_id, external_job_id, 1)

    def tick(self, job_id: str, external_job_id: str, attempt: int = 1) -> Optional[ReconcileOutcome]:
        job = self.jobs.get(job_id)
        if not job or job.is_terminal:
            logger.info("stopping poll for job %s", job_id)
            return None
        if attempt > self.max_attempts:
            logger.warning("job %s still unfinished after %s polls, failing it", job_id, self.max_attempts)
            return self.reconciler.fail(job_id, POLL_TIMEOUT_MESSAGE)

        try:
            self.jobs.update(job_id, expected_version=job.version, poll_attempts=attempt)
        except VersionConflict:
            logger.debug("poll counter for job %s skipped, job changed concurrently", job_id)

        try:
            prediction = self.provider.get_prediction(external_job_id)
            outcome = self.reconciler.apply_status(job_id, prediction.status, prediction.output, prediction.error)
        except ServiceError as exc:
            logger.warning(
                "poll %s for job %s failed, retrying in %ss: %s",
                attempt,
                job_id,
                self.error_delay_seconds,
                exc.message,
            )
            self.queue.schedule(self.error_delay_seconds, self.tick, job_id, external_job_id, attempt + 1)
            return None

        if prediction.status in IN_FLIGHT_STATUSES:
            self.queue.schedule(self.interval_seconds, self.tick, job_id, external_job_id, attempt + 1)
        return outcome
