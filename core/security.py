from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import json
import time

WEBHOOK_TOLERANCE_SECONDS = 300


def create_signed_token(job_id: str, email: str, secret: str, ttl_seconds: int = 1200, key: str | None = None) -> str:
    payload = {
        "job_id": job_id,
        "email": email,
        "exp": int(time.time() + ttl_seconds),
    }
    if key:
        payload["key"] = key
    raw = json.dumps(payload, separators=(",", ":")).encode("utf-8")
    sig = hmac.new(secret.encode("utf-8"), raw, hashlib.sha256).hexdigest()
    return f"{base64.urlsafe_b64encode(raw).decode('utf-8')}.{sig}"


def verify_signed_token(token: str, secret: str) -> dict | None:
    try:
        payload_b64, sig = token.split(".", 1)
        raw = base64.urlsafe_b64decode(payload_b64.encode("utf-8"))
    except (ValueError, binascii.Error):
        return None
    expected = hmac.new(secret.encode("utf-8"), raw, hashlib.sha256).hexdigest()
    if not hmac.compare_digest(expected, sig):
        return None
    payload = json.loads(raw.decode("utf-8"))
    if int(payload.get("exp", 0)) < int(time.time()):
        return None
    return payload


def _secret_bytes(secret: str) -> bytes:
    if secret.startswith("whsec_"):
        try:
            return base64.b64decode(secret[len("whsec_"):])
        except (ValueError, binascii.Error):
            pass
    return secret.encode("utf-8")


def compute_webhook_signature(secret: str, event_id: str, timestamp: str, body: bytes) -> str:
    signed = f"{event_id}.{timestamp}.".encode("utf-8") + body
    digest = hmac.new(_secret_bytes(secret), signed, hashlib.sha256).digest()
    return base64.b64encode(digest).decode("utf-8")


def verify_webhook_signature(
    secret: str,
    body: bytes,
    event_id: str | None,
    timestamp: str | None,
    signature_header: str | None,
    now: float | None = None,
    tolerance_seconds: int = WEBHOOK_TOLERANCE_SECONDS,
) -> bool:
    if not secret or not event_id or not timestamp or not signature_header:
        return False
    try:
        sent_at = int(timestamp)
    except ValueError:
        return False
    current = time.time() if now is None else now
    if abs(current - sent_at) > tolerance_seconds:
        return False

    expected = compute_webhook_signature(secret, event_id, timestamp, body)
    for entry in signature_header.split():
        version, _, signature = entry.partition(",")
        if version != "v1" or not signature:
            continue
        if hmac.compare_digest(expected.encode("utf-8"), signature.encode("utf-8")):
            return True
    return False
