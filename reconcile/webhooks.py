from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Optional

from core.errors import NotFound
from core.events import ProcessedEventStore
from core.jobs import JobStore
from reconcile.completion import Reconciler

logger = logging.getLogger(__name__)

SOURCE = "replicate"


@dataclass(frozen=True)
class WebhookEvent:
    external_job_id: str
    status: str
    output: Any = None
    error: Optional[str] = None


@dataclass(frozen=True)
class IngestResult:
    event_id: str
    duplicate: bool
    action: str
    job_id: Optional[str] = None


def event_key(source: str, external_job_id: str, status: str) -> str:
    return f"{source}:{external_job_id}:{status}"


class WebhookIngestor:
    """Routes verified provider events through the idempotency store.

    ``skip_failed_events`` decides what a record left by a failed attempt
    means. When False (the default) only successfully applied events are
    skipped and a redelivery of a failed one is processed again. When True,
    any existing record suppresses the redelivery.
    """

    def __init__(
        self,
        jobs: JobStore,
        events: ProcessedEventStore,
        reconciler: Reconciler,
        source: str = SOURCE,
        skip_failed_events: bool = False,
    ) -> None:
        self.jobs = jobs
        self.events = events
        self.reconciler = reconciler
        self.source = source
        self.skip_failed_events = skip_failed_events

    def handle(self, event: WebhookEvent) -> IngestResult:
        event_id = event_key(self.source, event.external_job_id, event.status)
        existing = self.events.get(event_id, self.source)
        if existing and (existing.processed or self.skip_failed_events):
            logger.info("duplicate webhook %s (processed=%s), ignoring", event_id, existing.processed)
            metadata = dict(existing.metadata)
            metadata["duplicates"] = metadata.get("duplicates", 0) + 1
            self.events.record(
                event_id,
                self.source,
                existing.event_type,
                processed=existing.processed,
                error_message=existing.error_message,
                metadata=metadata,
            )
            return IngestResult(event_id=event_id, duplicate=True, action="noop")
        if existing:
            logger.warning("re-processing webhook %s after an earlier failed attempt", event_id)

        job = self.jobs.get_by_external_id(event.external_job_id)
        if not job:
            raise NotFound(f"no job for external id {event.external_job_id}", user_message="Video not found")

        try:
            outcome = self.reconciler.apply_status(job.id, event.status, event.output, event.error)
        except Exception as exc:
            self.events.record(
                event_id,
                self.source,
                event.status,
                processed=False,
                error_message=str(exc),
                metadata={"job_id": job.id, "external_job_id": event.external_job_id},
            )
            raise

        self.events.record(
            event_id,
            self.source,
            event.status,
            processed=True,
            metadata={
                "job_id": job.id,
                "external_job_id": event.external_job_id,
                "action": outcome.action,
                "refunded": outcome.refunded,
            },
        )
        return IngestResult(event_id=event_id, duplicate=False, action=outcome.action, job_id=job.id)
