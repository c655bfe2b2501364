from __future__ import annotations

import ipaddress
import logging
import random
from datetime import datetime
from typing import Any, Mapping, Optional
from urllib.parse import urlparse

from core.errors import Forbidden, VersionConflict
from core.jobs import GenerationJob, JobState, JobStore, UserSession, new_job_id
from core.queue import TaskQueue
from core.rate_limit import SlidingWindowLimiter
from core.validation import validate_request
from ledger.credits import CreditLedger
from ledger.pricing import PricingEngine
from models.catalog import ModelCatalog
from providers.base import VideoProvider
from reconcile.completion import Reconciler
from reconcile.poller import Poller

logger = logging.getLogger(__name__)

WEBHOOK_PATH = "/api/webhooks/replicate"
GENERATION_OPERATION = "video_generation"


def is_public_url(url: str) -> bool:
    parsed = urlparse(url or "")
    host = (parsed.hostname or "").lower()
    if parsed.scheme not in {"http", "https"} or not host:
        return False
    if host == "localhost" or host.endswith((".localhost", ".local", ".internal")):
        return False
    try:
        address = ipaddress.ip_address(host)
    except ValueError:
        return "." in host
    return not (address.is_private or address.is_loopback or address.is_link_local or address.is_unspecified)


def callback_url(public_base_url: str) -> Optional[str]:
    if not is_public_url(public_base_url):
        return None
    return public_base_url.rstrip("/") + WEBHOOK_PATH


def provider_inputs(job: GenerationJob) -> dict:
    return {
        "prompt": job.prompt,
        "duration": job.duration_seconds,
        "resolution": job.resolution,
        "aspect_ratio": job.aspect_ratio,
        "seed": random.randint(0, 999_999),
    }


class Orchestrator:
    def __init__(
        self,
        jobs: JobStore,
        ledger: CreditLedger,
        pricing: PricingEngine,
        catalog: ModelCatalog,
        limiter: SlidingWindowLimiter,
        queue: TaskQueue,
        provider: VideoProvider,
        reconciler: Reconciler,
        poller: Poller,
        public_base_url: str = "",
    ) -> None:
        self.jobs = jobs
        self.ledger = ledger
        self.pricing = pricing
        self.catalog = catalog
        self.limiter = limiter
        self.queue = queue
        self.provider = provider
        self.reconciler = reconciler
        self.poller = poller
        self.public_base_url = public_base_url

    def submit(self, session: UserSession, raw: Mapping[str, Any]) -> str:
        request = validate_request(raw)
        self.limiter.check(session.email, GENERATION_OPERATION)
        model, resolution = self.catalog.authorize(request.model, session.plan, request.resolution)
        credits = self.pricing.compute_cost(model.id, request.duration_seconds, resolution)

        job_id = new_job_id()
        self.ledger.debit(session.email, credits, related_job_id=job_id, reason=f"Video generation: {model.name}")
        try:
            job = self.jobs.create(session.email, request, resolution, credits, job_id=job_id)
        except Exception:
            logger.error("creating job %s failed after debit, refunding", job_id, exc_info=True)
            self.ledger.refund(session.email, credits, job_id, reason="Refund for job that could not be created")
            raise

        logger.info("job %s created for %s: %s %ss %s, %s credits", job.id, session.email, model.id, job.duration_seconds, resolution, credits)
        self.queue.submit(self.dispatch, job.id)
        return job.id

    def get_job(self, job_id: str, owner_id: Optional[str] = None) -> GenerationJob:
        job = self.jobs.require(job_id)
        if owner_id is not None and job.owner_id != owner_id:
            raise Forbidden(f"job {job_id} is not owned by {owner_id}", user_message="forbidden")
        return job

    def dispatch(self, job_id: str) -> None:
        job = self.jobs.get(job_id)
        if not job:
            logger.warning("dispatch skipped, job %s not found", job_id)
            return
        if job.state != JobState.PENDING or job.external_job_id:
            logger.info("dispatch skipped, job %s already %s", job_id, job.state.value)
            return

        webhook = callback_url(self.public_base_url)
        try:
            prediction = self.provider.create_prediction(job.model_ref, provider_inputs(job), webhook_url=webhook)
        except Exception as exc:
            message = getattr(exc, "message", None) or str(exc)
            logger.error("dispatch of job %s failed: %s", job_id, message)
            self.reconciler.fail(job_id, f"Video generation request failed: {message}")
            return

        updated = self._record_dispatch(job_id, prediction.id, webhook)
        if updated is None:
            return
        if webhook:
            logger.info("job %s dispatched as %s, awaiting webhook", job_id, prediction.id)
        else:
            logger.info("job %s dispatched as %s, no public callback, polling", job_id, prediction.id)
            self.poller.start(job_id, prediction.id)

    def _record_dispatch(self, job_id: str, external_job_id: str, webhook: Optional[str]) -> Optional[GenerationJob]:
        for _ in range(3):
            job = self.jobs.require(job_id)
            if job.is_terminal:
                logger.warning("job %s became %s during dispatch, prediction %s is orphaned", job_id, job.state.value, external_job_id)
                return None
            try:
                return self.jobs.update(
                    job_id,
                    expected_version=job.version,
                    state=JobState.PROCESSING,
                    external_job_id=external_job_id,
                    callback_url=webhook,
                    processing_started_at=job.processing_started_at or datetime.utcnow(),
                )
            except VersionConflict:
                continue
        raise VersionConflict(job_id, -1, -1)
