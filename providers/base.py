from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Optional, Protocol

STARTING = "starting"
PROCESSING = "processing"
SUCCEEDED = "succeeded"
FAILED = "failed"
CANCELED = "canceled"

IN_FLIGHT_STATUSES = frozenset({STARTING, PROCESSING})
TERMINAL_STATUSES = frozenset({SUCCEEDED, FAILED, CANCELED})
PROVIDER_STATUSES = IN_FLIGHT_STATUSES | TERMINAL_STATUSES


@dataclass(frozen=True)
class Prediction:
    id: str
    status: str
    output: Any = None
    error: Optional[str] = None

    @classmethod
    def from_payload(cls, payload: dict) -> "Prediction":
        error = payload.get("error")
        return cls(
            id=str(payload["id"]),
            status=str(payload.get("status") or STARTING),
            output=payload.get("output"),
            error=str(error) if error else None,
        )


class VideoProvider(Protocol):
    name: str

    def create_prediction(self, model_ref: str, inputs: dict, webhook_url: Optional[str] = None) -> Prediction:
        ...

    def get_prediction(self, prediction_id: str) -> Prediction:
        ...

    def download(self, url: str) -> bytes:
        ...

    def close(self) -> None:
        ...
