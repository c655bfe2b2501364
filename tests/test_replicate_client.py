"""Unit tests for the Replicate client and its retry policy."""

from __future__ import annotations

import json

import httpx
import pytest

from core.errors import ExternalServiceError, ValidationError
from providers.replicate import ReplicateClient
from providers.retry import NO_RETRY, RetryPolicy, call_with_retry, is_retryable

FAST_RETRY = RetryPolicy(max_retries=2, base_delay=0.0, max_delay=0.0)


def client_for(handler, policy=FAST_RETRY) -> ReplicateClient:
    return ReplicateClient(
        api_token="r8_test",
        base_url="https://api.replicate.test/v1",
        retry_policy=policy,
        transport=httpx.MockTransport(handler),
    )


def test_create_prediction_posts_input_and_webhook() -> None:
    """create_prediction should send inputs, webhook and the event filter."""
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(201, json={"id": "pred-1", "status": "starting"}, request=request)

    client = client_for(handler)
    try:
        prediction = client.create_prediction(
            "luma/ray-2-720p",
            {"prompt": "a fox", "duration": 5},
            webhook_url="https://api.clipforge.example/api/webhooks/replicate",
        )
    finally:
        client.close()

    assert prediction.id == "pred-1"
    assert prediction.status == "starting"
    request = seen[0]
    assert request.method == "POST"
    assert request.url.path == "/v1/models/luma/ray-2-720p/predictions"
    assert request.headers["Authorization"] == "Bearer r8_test"
    body = json.loads(request.content)
    assert body["input"] == {"prompt": "a fox", "duration": 5}
    assert body["webhook"].endswith("/api/webhooks/replicate")
    assert body["webhook_events_filter"] == ["start", "completed"]


def test_create_prediction_without_webhook_omits_it() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        assert "webhook" not in json.loads(request.content)
        return httpx.Response(201, json={"id": "pred-2", "status": "starting"}, request=request)

    client = client_for(handler)
    try:
        assert client.create_prediction("luma/ray-2-720p", {"prompt": "a fox"}).id == "pred-2"
    finally:
        client.close()


def test_create_prediction_retries_rate_limit() -> None:
    """429 then 201 should succeed on the second attempt."""
    responses = iter([429, 201])

    def handler(request: httpx.Request) -> httpx.Response:
        status = next(responses)
        if status == 429:
            return httpx.Response(429, json={"detail": "throttled"}, request=request)
        return httpx.Response(201, json={"id": "pred-3", "status": "starting"}, request=request)

    client = client_for(handler)
    try:
        assert client.create_prediction("luma/ray-2-720p", {}).id == "pred-3"
    finally:
        client.close()


def test_create_prediction_does_not_resend_after_server_error() -> None:
    """A 5xx may follow an accepted prediction, so create is sent once."""
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        return httpx.Response(503, json={"detail": "busy"}, request=request)

    client = client_for(handler)
    try:
        with pytest.raises(ExternalServiceError) as exc_info:
            client.create_prediction("luma/ray-2-720p", {})
    finally:
        client.close()

    assert len(calls) == 1
    assert exc_info.value.retryable is False


def test_create_prediction_does_not_resend_after_read_timeout() -> None:
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        raise httpx.ReadTimeout("timed out", request=request)

    client = client_for(handler)
    try:
        with pytest.raises(ExternalServiceError):
            client.create_prediction("luma/ray-2-720p", {})
    finally:
        client.close()

    assert len(calls) == 1


def test_download_retries_server_error() -> None:
    responses = iter([503, 200])

    def handler(request: httpx.Request) -> httpx.Response:
        if next(responses) == 503:
            return httpx.Response(503, request=request)
        return httpx.Response(200, content=b"video", request=request)

    client = client_for(handler)
    try:
        assert client.download("https://replicate.delivery/v.mp4") == b"video"
    finally:
        client.close()


def test_client_error_is_not_retried() -> None:
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        return httpx.Response(422, json={"detail": "input.prompt is required"}, request=request)

    client = client_for(handler)
    try:
        with pytest.raises(ExternalServiceError) as exc_info:
            client.create_prediction("luma/ray-2-720p", {})
    finally:
        client.close()

    assert len(calls) == 1
    assert exc_info.value.provider_status == 422
    assert exc_info.value.retryable is False
    assert "input.prompt is required" in exc_info.value.message


def test_transport_failure_exhausts_retries() -> None:
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        raise httpx.ConnectError("connection refused", request=request)

    client = client_for(handler)
    try:
        with pytest.raises(ExternalServiceError) as exc_info:
            client.create_prediction("luma/ray-2-720p", {})
    finally:
        client.close()

    assert len(calls) == 3
    assert exc_info.value.retryable is True


def test_missing_prediction_id() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(201, json={"status": "starting"}, request=request)

    client = client_for(handler)
    try:
        with pytest.raises(ExternalServiceError, match="no prediction id"):
            client.create_prediction("luma/ray-2-720p", {})
    finally:
        client.close()


def test_get_prediction_parses_output() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.path == "/v1/predictions/pred-1"
        return httpx.Response(
            200,
            json={"id": "pred-1", "status": "succeeded", "output": ["https://replicate.delivery/v.mp4"], "error": None},
            request=request,
        )

    client = client_for(handler)
    try:
        prediction = client.get_prediction("pred-1")
    finally:
        client.close()

    assert prediction.status == "succeeded"
    assert prediction.output == ["https://replicate.delivery/v.mp4"]
    assert prediction.error is None


def test_download_follows_redirect_without_auth_header() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        assert "Authorization" not in request.headers
        if request.url.host == "replicate.delivery":
            return httpx.Response(302, headers={"Location": "https://cdn.example/v.mp4"}, request=request)
        return httpx.Response(200, content=b"\x00\x00\x00\x18ftypmp42", request=request)

    client = client_for(handler)
    try:
        assert client.download("https://replicate.delivery/v.mp4").startswith(b"\x00\x00\x00\x18ftyp")
    finally:
        client.close()


def test_download_not_found_is_not_retried() -> None:
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        return httpx.Response(404, request=request)

    client = client_for(handler)
    try:
        with pytest.raises(ExternalServiceError) as exc_info:
            client.download("https://replicate.delivery/gone.mp4")
    finally:
        client.close()

    assert len(calls) == 1
    assert exc_info.value.service == "download"


class TestRetryPolicy:
    """Backoff and retry classification."""

    def test_delay_grows_and_caps(self):
        policy = RetryPolicy(base_delay=1.0, max_delay=5.0, jitter_factor=0.0)
        assert [policy.delay_for(attempt) for attempt in range(5)] == [1.0, 2.0, 4.0, 5.0, 5.0]

    def test_jitter_stays_within_factor(self):
        policy = RetryPolicy(base_delay=10.0, jitter_factor=0.1)
        assert policy.delay_for(0, rng=lambda: 0.0) == pytest.approx(9.0)
        assert policy.delay_for(0, rng=lambda: 1.0) == pytest.approx(11.0)

    @pytest.mark.parametrize(
        "exc,retryable",
        [
            (ExternalServiceError("busy", retryable=True), True),
            (ExternalServiceError("bad input", retryable=False), False),
            (httpx.ReadTimeout("timed out"), True),
            (ValidationError("nope"), False),
            (RuntimeError("bug"), False),
        ],
    )
    def test_is_retryable(self, exc, retryable):
        assert is_retryable(exc) is retryable

    def test_sleeps_between_attempts(self):
        sleeps = []
        attempts = iter([ExternalServiceError("busy", retryable=True), "ok"])

        def operation():
            value = next(attempts)
            if isinstance(value, Exception):
                raise value
            return value

        policy = RetryPolicy(max_retries=3, base_delay=0.5, jitter_factor=0.0)
        assert call_with_retry(operation, policy, sleep=sleeps.append) == "ok"
        assert sleeps == [0.5]

    def test_no_retry_policy_runs_once(self):
        calls = []

        def operation():
            calls.append(1)
            raise ExternalServiceError("busy", retryable=True)

        with pytest.raises(ExternalServiceError):
            call_with_retry(operation, NO_RETRY, sleep=lambda _: None)
        assert len(calls) == 1
