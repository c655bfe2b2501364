from __future__ import annotations

import itertools
import threading
from collections import deque
from typing import Any, Deque, Dict, List, Optional

from core.errors import ExternalServiceError
from providers.base import FAILED, STARTING, SUCCEEDED, Prediction


class MockVideoProvider:
    """In-process stand-in for the video provider.

    Each prediction walks through a scripted list of statuses, one per status
    query. Used for local development and tests.
    """

    name = "mock"

    def __init__(self, statuses: tuple[str, ...] = ("processing", SUCCEEDED), output_host: str = "https://mock.clipforge.local") -> None:
        self.statuses = statuses
        self.output_host = output_host
        self.created: List[Dict[str, Any]] = []
        self.status_calls: List[str] = []
        self.create_errors: Deque[Exception] = deque()
        self.status_errors: Deque[Exception] = deque()
        self.failing_downloads: set[str] = set()
        self._scripts: Dict[str, Deque[Prediction]] = {}
        self._last: Dict[str, Prediction] = {}
        self._ids = itertools.count(1)
        self._lock = threading.Lock()
        self.closed = False

    def close(self) -> None:
        self.closed = True

    def create_prediction(self, model_ref: str, inputs: dict, webhook_url: Optional[str] = None) -> Prediction:
        with self._lock:
            if self.create_errors:
                raise self.create_errors.popleft()
            prediction_id = f"mock-{next(self._ids)}"
            self.created.append({"id": prediction_id, "model": model_ref, "input": inputs, "webhook": webhook_url})
            self._scripts[prediction_id] = deque(self._step(prediction_id, status) for status in self.statuses)
            prediction = Prediction(id=prediction_id, status=STARTING)
            self._last[prediction_id] = prediction
            return prediction

    def script(self, prediction_id: str, *steps: Prediction) -> None:
        with self._lock:
            self._scripts[prediction_id] = deque(steps)

    def get_prediction(self, prediction_id: str) -> Prediction:
        with self._lock:
            self.status_calls.append(prediction_id)
            if self.status_errors:
                raise self.status_errors.popleft()
            if prediction_id not in self._last and prediction_id not in self._scripts:
                raise ExternalServiceError(f"prediction {prediction_id} not found", provider_status=404)
            script = self._scripts.get(prediction_id)
            if script:
                self._last[prediction_id] = script.popleft()
            return self._last[prediction_id]

    def output_url(self, prediction_id: str) -> str:
        return f"{self.output_host}/{prediction_id}.mp4"

    def download(self, url: str) -> bytes:
        if url in self.failing_downloads:
            raise ExternalServiceError(f"download failed for {url}", service="download")
        return b"MOCKMP4:" + url.encode("utf-8")

    def _step(self, prediction_id: str, status: str) -> Prediction:
        if status == SUCCEEDED:
            return Prediction(id=prediction_id, status=status, output=self.output_url(prediction_id))
        if status == FAILED:
            return Prediction(id=prediction_id, status=status, error="mock generation failed")
        return Prediction(id=prediction_id, status=status)
