"""
Shared fixtures: in-memory stores, a recording task queue and the mock
provider wired together the same way ``main.build_services`` does it.
"""

from dataclasses import replace
from datetime import datetime
from decimal import Decimal

import pytest

from core.config import settings
from core.events import ProcessedEventStore
from core.jobs import JobRequest, JobStore
from core.rate_limit import SlidingWindowLimiter
from core.storage import LocalObjectStorage
from ledger.credits import CreditLedger
from ledger.pricing import PricingConfig, PricingConfigStore, PricingEngine
from models.catalog import ModelCatalog
from pipeline import Orchestrator
from providers.mock_provider import MockVideoProvider
from reconcile.completion import OutputRetriever, Reconciler
from reconcile.poller import Poller
from reconcile.sweeper import Sweeper
from reconcile.webhooks import WebhookIngestor

OWNER = "ana@example.com"
PROMPT = "A paper boat drifting down a rainy street at dusk"


class RecordingQueue:
    """Task queue stand-in that records work instead of running it."""

    def __init__(self):
        self.submitted = []
        self.scheduled = []

    def submit(self, fn, *args, **kwargs):
        self.submitted.append((fn, args, kwargs))

    def schedule(self, delay_seconds, fn, *args, **kwargs):
        self.scheduled.append((delay_seconds, fn, args, kwargs))

    def shutdown(self, wait=False):
        pass

    def run_submitted(self):
        while self.submitted:
            fn, args, kwargs = self.submitted.pop(0)
            fn(*args, **kwargs)

    def run_next_scheduled(self):
        delay, fn, args, kwargs = self.scheduled.pop(0)
        return delay, fn(*args, **kwargs)


@pytest.fixture
def queue():
    return RecordingQueue()


@pytest.fixture
def jobs():
    return JobStore()


@pytest.fixture
def ledger():
    return CreditLedger()


@pytest.fixture
def events():
    return ProcessedEventStore()


@pytest.fixture
def catalog():
    return ModelCatalog()


@pytest.fixture
def pricing(catalog):
    return PricingEngine(catalog, PricingConfigStore())


@pytest.fixture
def provider():
    return MockVideoProvider()


@pytest.fixture
def storage(tmp_path):
    return LocalObjectStorage(tmp_path / "objects", secret="test-secret")


@pytest.fixture
def reconciler(jobs, ledger, provider, storage):
    return Reconciler(jobs, ledger, OutputRetriever(provider, storage))


@pytest.fixture
def ingestor(jobs, events, reconciler):
    return WebhookIngestor(jobs, events, reconciler)


@pytest.fixture
def poller(jobs, provider, reconciler, queue):
    return Poller(jobs, provider, reconciler, queue, interval_seconds=5, error_delay_seconds=10, max_attempts=4)


@pytest.fixture
def sweeper(jobs, ledger, events, reconciler):
    return Sweeper(jobs, ledger, events, reconciler)


@pytest.fixture
def limiter():
    return SlidingWindowLimiter(max_events=100)


@pytest.fixture
def make_orchestrator(jobs, ledger, pricing, catalog, limiter, queue, provider, reconciler, poller):
    def build(public_base_url="", **overrides):
        parts = dict(
            jobs=jobs,
            ledger=ledger,
            pricing=pricing,
            catalog=catalog,
            limiter=limiter,
            queue=queue,
            provider=provider,
            reconciler=reconciler,
            poller=poller,
        )
        parts.update(overrides)
        return Orchestrator(public_base_url=public_base_url, **parts)

    return build


@pytest.fixture
def make_job(jobs, ledger):
    """Debit the owner and create a pending job, the way submission does."""

    def build(owner=OWNER, credits=42, balance=100, model="luma/ray-2-720p", resolution="720p"):
        if not ledger.has_account(owner):
            ledger.grant(owner, balance, reason="Signup credits")
        request = JobRequest(prompt=PROMPT, model=model, duration_seconds=5, resolution=resolution)
        job = jobs.create(owner, request, resolution, credits)
        ledger.debit(owner, credits, related_job_id=job.id)
        return job

    return build


@pytest.fixture
def dispatched(jobs, make_job):
    """A processing job already bound to a provider prediction id."""

    def build(external_id="pred-1", **kwargs):
        job = make_job(**kwargs)
        return jobs.update(
            job.id,
            expected_version=job.version,
            state="processing",
            external_job_id=external_id,
            processing_started_at=datetime.utcnow(),
        )

    return build


@pytest.fixture
def scenario_pricing_config():
    """Luma at $0.12/s with a 1.4 margin prices a 5 s video at exactly 42 credits."""
    return PricingConfig(
        profit_margin=Decimal("1.4"),
        cost_table={("luma/ray-2-720p", "720p"): Decimal("0.12")},
    )


@pytest.fixture
def test_settings(tmp_path):
    return replace(
        settings,
        provider="mock",
        hmac_secret="test-hmac-secret",
        webhook_secret="whsec_dGVzdC13ZWJob29rLXNlY3JldA==",
        admin_token="test-admin-token",
        public_base_url="https://api.clipforge.example",
        storage_dir=str(tmp_path / "storage"),
        signup_credits=100,
        max_jobs_per_minute=50,
        webhook_skip_failed_events=False,
    )
