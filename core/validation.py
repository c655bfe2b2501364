from __future__ import annotations

import re
from typing import Any, List, Mapping

from core.errors import ValidationError
from core.jobs import JobRequest
from ledger.pricing import MAX_DURATION_SECONDS, MIN_DURATION_SECONDS
from models.catalog import RESOLUTIONS

MIN_PROMPT_LENGTH = 10
MAX_PROMPT_LENGTH = 1000
ASPECT_RATIOS = ("16:9", "9:16", "1:1", "4:3", "3:4")

_MODEL_ID = re.compile(r"^[a-z0-9][a-z0-9._-]{0,63}/[a-z0-9][a-z0-9._-]{0,63}$")
_DURATION = re.compile(r"^\s*(\d{1,4})\s*s?\s*$")
_CONTROL_CHARS = re.compile(r"[\x00-\x08\x0b-\x1f\x7f]")
_BLOCKED_MARKUP = re.compile(r"<\s*/?\s*(script|iframe|object|embed)[^>]*>", re.IGNORECASE)


def sanitize_prompt(prompt: str) -> str:
    cleaned = _CONTROL_CHARS.sub(" ", prompt)
    cleaned = _BLOCKED_MARKUP.sub("", cleaned)
    return " ".join(cleaned.split())


def parse_duration(value: Any) -> int:
    if isinstance(value, bool):
        raise ValidationError("duration must be a whole number of seconds")
    if isinstance(value, int):
        return value
    if isinstance(value, float) and value.is_integer():
        return int(value)
    if isinstance(value, str):
        match = _DURATION.match(value)
        if match:
            return int(match.group(1))
    raise ValidationError("duration must be a whole number of seconds")


def validate_request(raw: Mapping[str, Any]) -> JobRequest:
    errors: List[str] = []

    prompt = raw.get("prompt")
    if not isinstance(prompt, str) or not prompt.strip():
        errors.append("Prompt is required")
        prompt = ""
    else:
        prompt = sanitize_prompt(prompt)
        if len(prompt) < MIN_PROMPT_LENGTH:
            errors.append(f"Prompt must be at least {MIN_PROMPT_LENGTH} characters long")
        elif len(prompt) > MAX_PROMPT_LENGTH:
            errors.append(f"Prompt must be less than {MAX_PROMPT_LENGTH} characters")

    model = raw.get("model")
    if not isinstance(model, str) or not _MODEL_ID.match(model.strip()):
        errors.append("Model must look like owner/name")
        model = ""
    else:
        model = model.strip()

    duration = 0
    try:
        duration = parse_duration(raw.get("duration_seconds", raw.get("duration")))
        if not MIN_DURATION_SECONDS <= duration <= MAX_DURATION_SECONDS:
            errors.append(f"Duration must be between {MIN_DURATION_SECONDS} and {MAX_DURATION_SECONDS} seconds")
    except ValidationError as exc:
        errors.append(exc.message.capitalize())

    resolution = raw.get("resolution")
    if resolution is not None and resolution not in RESOLUTIONS:
        errors.append(f"Invalid resolution. Must be one of: {', '.join(RESOLUTIONS)}")

    aspect_ratio = raw.get("aspect_ratio") or "16:9"
    if aspect_ratio not in ASPECT_RATIOS:
        errors.append(f"Invalid aspect ratio. Must be one of: {', '.join(ASPECT_RATIOS)}")

    if errors:
        raise ValidationError("; ".join(errors), details={"errors": errors})

    return JobRequest(
        prompt=prompt,
        model=model,
        duration_seconds=duration,
        resolution=resolution,
        aspect_ratio=aspect_ratio,
    )
