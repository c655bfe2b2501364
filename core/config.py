from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

from dotenv import load_dotenv


ROOT_DIR = Path(__file__).resolve().parents[1]
load_dotenv(ROOT_DIR / ".env")


def _split_origins(raw: str) -> tuple[str, ...]:
    return tuple(origin.strip() for origin in raw.split(",") if origin.strip())


def _flag(raw: str) -> bool:
    return raw.strip().lower() in {"1", "true", "yes", "on"}


@dataclass(frozen=True)
class Settings:
    app_name: str = "Clipforge Studio API"
    app_version: str = "0.2.0"
    allowed_origins: tuple[str, ...] = _split_origins(
        os.getenv(
            "CLIPFORGE_ALLOWED_ORIGIN",
            "http://localhost:3000,http://localhost:5173,http://127.0.0.1:5173",
        )
    )
    hmac_secret: str = os.getenv("CLIPFORGE_HMAC_SECRET", "clipforge-dev-secret")
    webhook_secret: str = os.getenv("CLIPFORGE_WEBHOOK_SECRET", "")
    admin_token: str = os.getenv("CLIPFORGE_ADMIN_TOKEN", "")

    provider: str = os.getenv("CLIPFORGE_PROVIDER", "mock")
    replicate_api_token: str = os.getenv("REPLICATE_API_TOKEN", "")
    replicate_base_url: str = os.getenv("CLIPFORGE_REPLICATE_BASE_URL", "https://api.replicate.com/v1")
    public_base_url: str = os.getenv("CLIPFORGE_PUBLIC_BASE_URL", "")
    http_timeout_seconds: float = float(os.getenv("CLIPFORGE_HTTP_TIMEOUT", "30"))
    provider_max_retries: int = int(os.getenv("CLIPFORGE_PROVIDER_MAX_RETRIES", "3"))

    max_jobs_per_minute: int = int(os.getenv("CLIPFORGE_RATE_LIMIT", "6"))
    signup_credits: int = int(os.getenv("CLIPFORGE_SIGNUP_CREDITS", "100"))

    poll_interval_seconds: float = float(os.getenv("CLIPFORGE_POLL_INTERVAL", "5"))
    poll_error_delay_seconds: float = float(os.getenv("CLIPFORGE_POLL_ERROR_DELAY", "10"))
    poll_max_attempts: int = int(os.getenv("CLIPFORGE_POLL_MAX_ATTEMPTS", "360"))

    stale_job_max_age_minutes: int = int(os.getenv("CLIPFORGE_STALE_JOB_MAX_AGE_MINUTES", "60"))
    sweep_interval_seconds: float = float(os.getenv("CLIPFORGE_SWEEP_INTERVAL", "300"))
    orphan_debit_grace_seconds: int = int(os.getenv("CLIPFORGE_ORPHAN_DEBIT_GRACE", "300"))
    processed_event_retention_days: int = int(os.getenv("CLIPFORGE_EVENT_RETENTION_DAYS", "30"))
    webhook_skip_failed_events: bool = _flag(os.getenv("CLIPFORGE_WEBHOOK_SKIP_FAILED_EVENTS", "false"))

    storage_dir: str = os.getenv("CLIPFORGE_STORAGE_DIR", str(ROOT_DIR / "storage"))
    log_level: str = os.getenv("CLIPFORGE_LOG_LEVEL", "INFO")


settings = Settings()
