from __future__ import annotations

import logging
from typing import Any, Optional

import httpx

from core.errors import ExternalServiceError
from providers.base import Prediction
from providers.retry import RETRYABLE_STATUS_CODES, RetryPolicy, call_with_retry

logger = logging.getLogger(__name__)

WEBHOOK_EVENTS = ["start", "completed"]

# Creating a prediction is not idempotent: only resend when the request never
# reached the provider, or when it was rejected before being accepted.
UNSENT_REQUEST_ERRORS = (httpx.ConnectError, httpx.ConnectTimeout, httpx.PoolTimeout)
CREATE_RETRYABLE_STATUS_CODES = frozenset({429})


class ReplicateClient:
    """Replicate predictions API over httpx."""

    name = "replicate"

    def __init__(
        self,
        api_token: str,
        base_url: str = "https://api.replicate.com/v1",
        timeout_seconds: float = 30.0,
        retry_policy: RetryPolicy = RetryPolicy(),
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self.retry_policy = retry_policy
        self._client = httpx.Client(
            base_url=base_url,
            timeout=timeout_seconds,
            headers={"Authorization": f"Bearer {api_token}", "Content-Type": "application/json"},
            transport=transport,
        )
        self._download_client = httpx.Client(timeout=timeout_seconds, follow_redirects=True, transport=transport)

    def close(self) -> None:
        self._client.close()
        self._download_client.close()

    def create_prediction(self, model_ref: str, inputs: dict, webhook_url: Optional[str] = None) -> Prediction:
        body: dict[str, Any] = {"input": inputs}
        if webhook_url:
            body["webhook"] = webhook_url
            body["webhook_events_filter"] = WEBHOOK_EVENTS
        payload = call_with_retry(
            lambda: self._request_json("POST", f"/models/{model_ref}/predictions", idempotent=False, json=body),
            self.retry_policy,
            description=f"create prediction for {model_ref}",
        )
        if not isinstance(payload, dict) or not payload.get("id"):
            raise ExternalServiceError("provider returned no prediction id")
        prediction = Prediction.from_payload(payload)
        logger.info("created prediction %s for %s (status %s)", prediction.id, model_ref, prediction.status)
        return prediction

    def get_prediction(self, prediction_id: str) -> Prediction:
        payload = self._request_json("GET", f"/predictions/{prediction_id}")
        if not isinstance(payload, dict) or not payload.get("id"):
            raise ExternalServiceError(f"malformed status payload for prediction {prediction_id}")
        return Prediction.from_payload(payload)

    def download(self, url: str) -> bytes:
        def fetch() -> bytes:
            try:
                response = self._download_client.get(url)
            except httpx.RequestError as exc:
                raise ExternalServiceError(f"download failed for {url}: {exc}", retryable=True, service="download") from exc
            if response.is_error:
                raise ExternalServiceError(
                    f"download failed for {url}: HTTP {response.status_code}",
                    retryable=response.status_code in RETRYABLE_STATUS_CODES,
                    provider_status=response.status_code,
                    service="download",
                )
            return response.content

        return call_with_retry(fetch, self.retry_policy, description=f"download {url}")

    def _request_json(self, method: str, path: str, idempotent: bool = True, **kwargs: Any) -> Any:
        try:
            response = self._client.request(method, path, **kwargs)
        except httpx.RequestError as exc:
            retryable = idempotent or isinstance(exc, UNSENT_REQUEST_ERRORS)
            raise ExternalServiceError(f"{method} {path} failed: {exc}", retryable=retryable) from exc
        if response.is_error:
            detail = _error_detail(response)
            retry_codes = RETRYABLE_STATUS_CODES if idempotent else CREATE_RETRYABLE_STATUS_CODES
            raise ExternalServiceError(
                f"{method} {path} returned HTTP {response.status_code}: {detail}",
                retryable=response.status_code in retry_codes,
                provider_status=response.status_code,
            )
        try:
            return response.json()
        except ValueError as exc:
            raise ExternalServiceError(f"{method} {path} returned invalid JSON") from exc


def _error_detail(response: httpx.Response) -> str:
    try:
        payload = response.json()
    except ValueError:
        return response.text[:200]
    if isinstance(payload, dict):
        return str(payload.get("detail") or payload.get("title") or payload)[:200]
    return str(payload)[:200]
