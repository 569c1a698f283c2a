from datetime import datetime, timedelta, timezone
from email.utils import format_datetime

import httpx
import pytest

from weavr.service.errors import RequestTimeout, RetryExhausted
from weavr.service.http_retry import RetryPolicy, is_retryable_status, parse_retry_after, request_with_retry


class SleepRecorder:
    def __init__(self):
        self.delays = []

    async def __call__(self, seconds):
        self.delays.append(seconds)


def client_for(handler):
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


def no_jitter():
    return 0.0


@pytest.mark.asyncio
async def test_rate_limit_honors_retry_after():
    responses = iter([
        httpx.Response(429, headers={"Retry-After": "2"}, text="slow down"),
        httpx.Response(200, json={"ok": True}),
    ])
    sleep = SleepRecorder()

    async with client_for(lambda request: next(responses)) as client:
        response = await request_with_retry(client, "GET", "https://api.test/items", sleep=sleep, rng=no_jitter)

    assert response.status_code == 200
    assert sleep.delays == [2.0]


@pytest.mark.asyncio
async def test_retry_after_is_capped():
    responses = iter([
        httpx.Response(503, headers={"Retry-After": "9999"}),
        httpx.Response(200),
    ])
    sleep = SleepRecorder()
    policy = RetryPolicy(max_retry_after=5.0)

    async with client_for(lambda request: next(responses)) as client:
        await request_with_retry(client, "GET", "https://api.test/", policy=policy, sleep=sleep)

    assert sleep.delays == [5.0]


@pytest.mark.asyncio
async def test_exhaustion_after_one_plus_max_retries_attempts():
    calls = []

    def handler(request):
        calls.append(request)
        return httpx.Response(500, text="broken upstream")

    sleep = SleepRecorder()
    policy = RetryPolicy(max_retries=2, base_delay=1.0, max_delay=30.0)

    async with client_for(handler) as client:
        with pytest.raises(RetryExhausted) as excinfo:
            await request_with_retry(client, "POST", "https://api.test/", policy=policy, sleep=sleep, rng=no_jitter)

    assert len(calls) == 3
    assert sleep.delays == [1.0, 2.0]
    assert excinfo.value.status == 500
    assert excinfo.value.body_prefix == "broken upstream"
    assert excinfo.value.status_code == 502


@pytest.mark.asyncio
async def test_client_errors_are_returned_without_retry():
    calls = []

    def handler(request):
        calls.append(request)
        return httpx.Response(404, json={"error": "missing"})

    async with client_for(handler) as client:
        response = await request_with_retry(client, "GET", "https://api.test/x", sleep=SleepRecorder())

    assert response.status_code == 404
    assert len(calls) == 1


@pytest.mark.asyncio
async def test_transport_errors_are_retried():
    attempts = []

    def handler(request):
        attempts.append(request)
        if len(attempts) == 1:
            raise httpx.ConnectError("refused", request=request)
        return httpx.Response(200, text="fine")

    sleep = SleepRecorder()
    async with client_for(handler) as client:
        response = await request_with_retry(client, "GET", "https://api.test/", sleep=sleep, rng=no_jitter)

    assert response.text == "fine"
    assert sleep.delays == [1.0]


@pytest.mark.asyncio
async def test_timeout_is_not_retried():
    calls = []

    def handler(request):
        calls.append(request)
        raise httpx.ReadTimeout("slow", request=request)

    async with client_for(handler) as client:
        with pytest.raises(RequestTimeout) as excinfo:
            await request_with_retry(client, "GET", "https://api.test/", sleep=SleepRecorder())

    assert len(calls) == 1
    assert excinfo.value.status_code == 504


def test_backoff_is_exponential_and_capped():
    policy = RetryPolicy(base_delay=1.0, max_delay=5.0)

    assert [policy.backoff(n, no_jitter) for n in range(4)] == [1.0, 2.0, 4.0, 5.0]


def test_parse_retry_after_accepts_seconds_and_dates():
    now = datetime(2024, 1, 1, 12, 0, 0, tzinfo=timezone.utc)
    later = format_datetime(now + timedelta(seconds=30), usegmt=True)

    assert parse_retry_after("7") == 7.0
    assert parse_retry_after(later, now=now) == 30.0
    assert parse_retry_after("-3") == 0.0
    assert parse_retry_after("soon") is None
    assert parse_retry_after(None) is None


@pytest.mark.parametrize("status,expected", [(429, True), (500, True), (503, True), (400, False), (404, False)])
def test_is_retryable_status(status, expected):
    assert is_retryable_status(status) is expected
