from __future__ import annotations

import logging
import os
import tempfile
from pathlib import Path

from core.errors import ExternalServiceError, NotFound, ValidationError
from core.security import create_signed_token

logger = logging.getLogger(__name__)


def output_key(owner_id: str, job_id: str) -> str:
    safe_owner = "".join(ch if ch.isalnum() or ch in "-_." else "_" for ch in owner_id)
    return f"videos/{safe_owner}/{job_id}.mp4"


class LocalObjectStorage:
    """Object storage adapter backed by a local directory."""

    def __init__(self, base_dir: Path | str, secret: str, url_prefix: str = "/api/files") -> None:
        self.base_dir = Path(base_dir)
        self.secret = secret
        self.url_prefix = url_prefix

    def path_for(self, key: str) -> Path:
        parts = Path(key).parts
        if not parts or key.startswith("/") or ".." in parts:
            raise ValidationError(f"invalid storage key {key!r}")
        return self.base_dir / key

    def store(self, data: bytes, key: str) -> str:
        path = self.path_for(key)
        tmp = None
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            # Each writer gets its own temp file; concurrent stores of one key both land whole.
            with tempfile.NamedTemporaryFile(dir=path.parent, prefix=path.name + ".", suffix=".part", delete=False) as f:
                tmp = Path(f.name)
                f.write(data)
            os.replace(tmp, path)
        except OSError as exc:
            if tmp is not None:
                tmp.unlink(missing_ok=True)
            raise ExternalServiceError(f"failed to store {key}: {exc}", retryable=False, service="storage") from exc
        logger.info("stored %s bytes at %s", len(data), key)
        return key

    def exists(self, key: str) -> bool:
        return self.path_for(key).is_file()

    def get_url(self, key: str, ttl_seconds: int, job_id: str = "", email: str = "") -> str:
        if not self.exists(key):
            raise NotFound(f"object {key} not found", user_message="File not found")
        token = create_signed_token(job_id=job_id, email=email, secret=self.secret, ttl_seconds=ttl_seconds, key=key)
        return f"{self.url_prefix}?token={token}"
