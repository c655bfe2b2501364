from __future__ import annotations

import hmac
import logging
import threading
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any, Dict, Optional

from fastapi import Body, FastAPI, Query, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import FileResponse, JSONResponse
from pydantic import ValidationError as PayloadError

from core.auth import session_from_email
from core.config import Settings, settings
from core.errors import Forbidden, NotFound, RateLimited, ServiceError, Unauthenticated, ValidationError
from core.events import ProcessedEventStore
from core.jobs import GenerationJob, JobState, JobStore, UserSession
from core.queue import PeriodicTask, TaskQueue
from core.rate_limit import SlidingWindowLimiter
from core.security import verify_signed_token, verify_webhook_signature
from core.storage import LocalObjectStorage
from ledger.credits import CreditLedger
from ledger.pricing import PricingConfigStore, PricingEngine
from models.catalog import ModelCatalog
from models.schemas import (
    AuthRequest,
    AuthResponse,
    CreditBalanceResponse,
    CreditHistoryResponse,
    CreditTransactionEntry,
    GrantRequest,
    GrantResponse,
    JobCreateResponse,
    JobDetailResponse,
    JobListResponse,
    PricingConfigUpdate,
    PricingMatrixResponse,
    QuoteResponse,
    WebhookPayload,
)
from pipeline import GENERATION_OPERATION, Orchestrator
from providers.base import VideoProvider
from providers.mock_provider import MockVideoProvider
from providers.replicate import ReplicateClient
from providers.retry import RetryPolicy
from reconcile.completion import OutputRetriever, Reconciler
from reconcile.poller import Poller
from reconcile.sweeper import Sweeper
from reconcile.webhooks import WebhookEvent, WebhookIngestor

logger = logging.getLogger(__name__)

DOWNLOAD_TTL_SECONDS = 1200


@dataclass
class Services:
    settings: Settings
    jobs: JobStore
    ledger: CreditLedger
    events: ProcessedEventStore
    catalog: ModelCatalog
    pricing: PricingEngine
    limiter: SlidingWindowLimiter
    queue: TaskQueue
    provider: VideoProvider
    storage: LocalObjectStorage
    reconciler: Reconciler
    ingestor: WebhookIngestor
    poller: Poller
    sweeper: Sweeper
    orchestrator: Orchestrator
    onboarding_lock: threading.Lock = field(default_factory=threading.Lock)

    def session(self, email: Optional[str]) -> UserSession:
        session = session_from_email(email)
        with self.onboarding_lock:
            if not self.ledger.has_account(session.email):
                self.ledger.grant(session.email, self.settings.signup_credits, reason="Signup credits")
                logger.info("opened account for %s with %s credits", session.email, self.settings.signup_credits)
        return session


def build_provider(config: Settings) -> VideoProvider:
    if config.provider == "replicate":
        return ReplicateClient(
            api_token=config.replicate_api_token,
            base_url=config.replicate_base_url,
            timeout_seconds=config.http_timeout_seconds,
            retry_policy=RetryPolicy(max_retries=config.provider_max_retries),
        )
    if config.provider != "mock":
        logger.warning("unknown provider %r, falling back to mock", config.provider)
    return MockVideoProvider()


def build_services(
    config: Settings = settings,
    provider: Optional[VideoProvider] = None,
    queue: Optional[TaskQueue] = None,
) -> Services:
    provider = provider or build_provider(config)
    queue = queue or TaskQueue()
    jobs = JobStore()
    ledger = CreditLedger()
    events = ProcessedEventStore()
    catalog = ModelCatalog()
    pricing = PricingEngine(catalog, PricingConfigStore())
    limiter = SlidingWindowLimiter(
        max_events=config.max_jobs_per_minute,
        operation_limits={GENERATION_OPERATION: config.max_jobs_per_minute},
    )
    storage = LocalObjectStorage(config.storage_dir, secret=config.hmac_secret)
    reconciler = Reconciler(jobs, ledger, OutputRetriever(provider, storage))
    poller = Poller(
        jobs,
        provider,
        reconciler,
        queue,
        interval_seconds=config.poll_interval_seconds,
        error_delay_seconds=config.poll_error_delay_seconds,
        max_attempts=config.poll_max_attempts,
    )
    return Services(
        settings=config,
        jobs=jobs,
        ledger=ledger,
        events=events,
        catalog=catalog,
        pricing=pricing,
        limiter=limiter,
        queue=queue,
        provider=provider,
        storage=storage,
        reconciler=reconciler,
        ingestor=WebhookIngestor(jobs, events, reconciler, skip_failed_events=config.webhook_skip_failed_events),
        poller=poller,
        sweeper=Sweeper(
            jobs,
            ledger,
            events,
            reconciler,
            max_job_age=timedelta(minutes=config.stale_job_max_age_minutes),
            orphan_grace=timedelta(seconds=config.orphan_debit_grace_seconds),
            event_retention=timedelta(days=config.processed_event_retention_days),
        ),
        orchestrator=Orchestrator(
            jobs,
            ledger,
            pricing,
            catalog,
            limiter,
            queue,
            provider,
            reconciler,
            poller,
            public_base_url=config.public_base_url,
        ),
    )


def _job_detail(job: GenerationJob, download_url: Optional[str] = None) -> JobDetailResponse:
    return JobDetailResponse(
        id=job.id,
        status=job.state.value,
        model=job.model_ref,
        prompt=job.prompt,
        duration_seconds=job.duration_seconds,
        resolution=job.resolution,
        aspect_ratio=job.aspect_ratio,
        credits_reserved=job.credits_reserved,
        error_message=job.error_message,
        created_at=job.created_at,
        completed_at=job.completed_at,
        download_url=download_url,
    )


def _error_response(exc: ServiceError) -> JSONResponse:
    headers = None
    if isinstance(exc, RateLimited) and exc.retry_after:
        headers = {"Retry-After": str(int(exc.retry_after) + 1)}
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict(), headers=headers)


def create_app(services: Services) -> FastAPI:
    config = services.settings
    sweep_task = PeriodicTask(services.queue, config.sweep_interval_seconds, services.sweeper.run_once, name="sweeper")

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        sweep_task.start()
        logger.info("%s %s started with provider %s", config.app_name, config.app_version, services.provider.name)
        yield
        sweep_task.stop()
        services.queue.shutdown(wait=False)
        services.provider.close()

    app = FastAPI(title=config.app_name, version=config.app_version, lifespan=lifespan)
    app.state.services = services

    app.add_middleware(
        CORSMiddleware,
        allow_origins=list(config.allowed_origins),
        allow_origin_regex=r"^https?://(localhost|127\.0\.0\.1)(:\d+)?$",
        allow_credentials=True,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["Content-Type", "X-User-Email", "X-Admin-Token"],
    )

    @app.exception_handler(ServiceError)
    async def service_error_handler(request: Request, exc: ServiceError) -> JSONResponse:
        if exc.status_code >= 500:
            logger.error("%s on %s: %s", exc.code, request.url.path, exc.message)
        return _error_response(exc)

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
        return _error_response(ValidationError(str(exc), user_message="Invalid request"))

    def require_admin(request: Request) -> None:
        token = request.headers.get("X-Admin-Token") or ""
        if not config.admin_token or not hmac.compare_digest(token, config.admin_token):
            raise Forbidden("admin token missing or invalid", user_message="forbidden")

    @app.post("/api/auth/login", response_model=AuthResponse)
    async def login(payload: AuthRequest) -> AuthResponse:
        session = services.session(payload.email)
        return AuthResponse(email=session.email, plan=session.plan, balance=services.ledger.balance(session.email))

    @app.post("/api/jobs", response_model=JobCreateResponse)
    async def create_job(request: Request, payload: Dict[str, Any] = Body(...)) -> JobCreateResponse:
        session = services.session(request.headers.get("X-User-Email"))
        job_id = await run_in_threadpool(services.orchestrator.submit, session, payload)
        return JobCreateResponse(id=job_id)

    @app.get("/api/jobs/{job_id}", response_model=JobDetailResponse)
    async def get_job(job_id: str, request: Request) -> JobDetailResponse:
        session = session_from_email(request.headers.get("X-User-Email"))
        job = services.orchestrator.get_job(job_id, owner_id=session.email)

        download_url = None
        if job.state == JobState.COMPLETED and job.output_ref:
            download_url = services.storage.get_url(
                job.output_ref,
                ttl_seconds=DOWNLOAD_TTL_SECONDS,
                job_id=job.id,
                email=session.email,
            )
        return _job_detail(job, download_url)

    @app.get("/api/jobs", response_model=JobListResponse)
    async def list_jobs(request: Request) -> JobListResponse:
        session = session_from_email(request.headers.get("X-User-Email"))
        return JobListResponse(jobs=[_job_detail(job) for job in services.jobs.list_by_owner(session.email)])

    @app.get("/api/files")
    async def download_file(token: str = Query(...)) -> FileResponse:
        payload = verify_signed_token(token, config.hmac_secret)
        if not payload or not payload.get("key"):
            raise Forbidden("download token invalid or expired", user_message="invalid token")

        job = services.jobs.get(payload.get("job_id", ""))
        if not job or job.output_ref != payload["key"]:
            raise Forbidden("download token does not match a stored video", user_message="token mismatch")
        if not services.storage.exists(job.output_ref):
            raise NotFound(f"object {job.output_ref} missing", user_message="video not ready")

        return FileResponse(
            services.storage.path_for(job.output_ref),
            filename=f"clipforge-{job.id}.mp4",
            media_type="video/mp4",
        )

    @app.get("/api/credits", response_model=CreditBalanceResponse)
    async def credits(request: Request) -> CreditBalanceResponse:
        session = services.session(request.headers.get("X-User-Email"))
        stats = services.ledger.stats(session.email)
        return CreditBalanceResponse(
            balance=stats["current_balance"],
            total_granted=stats["total_granted"],
            total_used=stats["total_used"],
            total_refunded=stats["total_refunded"],
            monthly_usage=stats["monthly_usage"],
        )

    @app.get("/api/credits/history", response_model=CreditHistoryResponse)
    async def credit_history(request: Request, limit: int = Query(50, ge=1, le=500)) -> CreditHistoryResponse:
        session = services.session(request.headers.get("X-User-Email"))
        return CreditHistoryResponse(
            transactions=[
                CreditTransactionEntry(
                    id=txn.id,
                    type=txn.type,
                    amount=txn.amount,
                    balance_after=txn.balance_after,
                    related_job_id=txn.related_job_id,
                    reason=txn.reason,
                    created_at=txn.created_at,
                )
                for txn in services.ledger.history(session.email, limit=limit)
            ]
        )

    @app.post("/api/admin/credits/grant", response_model=GrantResponse)
    async def grant_credits(payload: GrantRequest, request: Request) -> GrantResponse:
        require_admin(request)
        session = session_from_email(payload.email)
        balance = services.ledger.grant(session.email, payload.amount, reason=payload.reason)
        logger.info("granted %s credits to %s: %s", payload.amount, session.email, payload.reason)
        return GrantResponse(email=session.email, balance=balance)

    @app.get("/api/pricing/quote", response_model=QuoteResponse)
    async def pricing_quote(
        model: str = Query(...),
        duration: int = Query(...),
        resolution: Optional[str] = Query(None),
    ) -> QuoteResponse:
        quote = services.pricing.quote(model, duration, resolution)
        return QuoteResponse(
            model=quote.model_ref,
            resolution=quote.resolution,
            duration_seconds=quote.duration_seconds,
            credits=quote.credits,
            cost_per_second_usd=str(quote.cost_per_second),
            total_usd=str(quote.total_usd),
        )

    @app.get("/api/pricing/matrix", response_model=PricingMatrixResponse)
    async def pricing_matrix() -> PricingMatrixResponse:
        return PricingMatrixResponse(models=services.pricing.pricing_matrix())

    @app.post("/api/admin/pricing/config")
    async def update_pricing_config(payload: PricingConfigUpdate, request: Request) -> dict:
        require_admin(request)
        updated = services.pricing.config_store.update(
            payload.key,
            payload.value,
            target=payload.resolution,
            model_ref=payload.model,
        )
        return {
            "profit_margin": str(updated.profit_margin),
            "credits_per_dollar": str(updated.credits_per_dollar),
            "resolution_multipliers": {res: str(value) for res, value in updated.resolution_multipliers.items()},
        }

    @app.get("/api/admin/webhooks/stats")
    async def webhook_stats(request: Request, hours: int = Query(24, ge=1, le=24 * 90)) -> dict:
        require_admin(request)
        return services.events.stats(hours=hours)

    @app.post("/api/admin/sweep")
    async def run_sweep(request: Request) -> dict:
        require_admin(request)
        report = await run_in_threadpool(services.sweeper.run_once)
        return report.as_dict()

    @app.post("/api/webhooks/replicate")
    async def replicate_webhook(request: Request) -> JSONResponse:
        body = await request.body()
        verified = verify_webhook_signature(
            config.webhook_secret,
            body,
            request.headers.get("webhook-id"),
            request.headers.get("webhook-timestamp"),
            request.headers.get("webhook-signature"),
        )
        if not verified:
            logger.warning("rejected webhook %s: bad signature", request.headers.get("webhook-id"))
            raise Unauthenticated("invalid webhook signature", user_message="Invalid signature")

        try:
            payload = WebhookPayload.model_validate_json(body)
        except PayloadError as exc:
            raise ValidationError(f"malformed webhook payload: {exc}", user_message="Invalid payload") from exc

        event = WebhookEvent(external_job_id=payload.id, status=payload.status, output=payload.output, error=payload.error)
        try:
            result = await run_in_threadpool(services.ingestor.handle, event)
        except NotFound:
            raise
        except Exception:
            logger.exception("webhook for %s (%s) failed", payload.id, payload.status)
            return JSONResponse(status_code=500, content={"code": "WEBHOOK_FAILED", "message": "Webhook processing failed"})

        return JSONResponse(
            status_code=200,
            content={"received": True, "duplicate": result.duplicate, "action": result.action, "job_id": result.job_id},
        )

    @app.get("/api/health")
    async def health() -> dict:
        return {"ok": True, "service": config.app_name, "provider": services.provider.name}

    return app


logging.basicConfig(
    level=getattr(logging, settings.log_level.upper(), logging.INFO),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)

app = create_app(build_services(settings))
