import os
import sys
from pathlib import Path

import pytest
import anyio
import httpx

BASE_DIR = Path(__file__).resolve().parents[1]
if str(BASE_DIR) not in sys.path:
    sys.path.insert(0, str(BASE_DIR))

os.environ.setdefault("SMS_PROVIDER", "aliyun")
os.environ.setdefault("SMS_ACCESS_KEY_ID", "test-key-id")
os.environ.setdefault("SMS_ACCESS_KEY_SECRET", "test-key-secret")
os.environ.setdefault("SMS_SIGN_NAME", "TestSign")
os.environ.setdefault("SMS_VERIFICATION_TEMPLATE_ID", "SMS_000001")
os.environ.setdefault("SMS_ADMIN_SECRET", "test-admin-secret")
os.environ.setdefault("SMS_RATE_LIMIT_BACKEND", "memory")

from app.core.config import get_settings
from app.core.rate_limit import InMemoryRateLimitStore, RateLimitConfig
from app.main import app
from app.services import RetryConfig, SMSService, SMSServiceConfig
from app.services.sms_providers import (
    BaseSMSProvider,
    BatchSendRequest,
    BatchSendResult,
    DeliveryStatus,
    DeliveryStatusResult,
    SendRequest,
    SendResult,
)

get_settings.cache_clear()


class FakeClock:
    """Monotonic clock in seconds that only moves when told to."""

    def __init__(self, start: float = 1_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class StubProvider(BaseSMSProvider):
    """Provider double that records calls and replays queued outcomes."""

    name = "stub"

    def __init__(self):
        self.sent: list[SendRequest] = []
        self.batches: list[BatchSendRequest] = []
        self.outcomes: list[SendResult | Exception] = []
        self.history: list[DeliveryStatusResult] = []
        self.history_error: Exception | None = None
        self.closed = False

    @classmethod
    def from_settings(cls, settings) -> "StubProvider":
        return cls()

    def _next(self, phone_number: str) -> SendResult:
        if self.outcomes:
            outcome = self.outcomes.pop(0)
            if isinstance(outcome, Exception):
                raise outcome
            return outcome
        return SendResult(success=True, message_id=f"msg-{len(self.sent)}", code="OK", phone_number=phone_number)

    def send(self, request: SendRequest) -> SendResult:
        self.sent.append(request)
        return self._next(request.phone_number)

    def send_batch(self, request: BatchSendRequest) -> BatchSendResult:
        self.batches.append(request)
        return BatchSendResult.from_results(
            [
                SendResult(success=True, message_id=f"batch-{index}", code="OK", phone_number=phone)
                for index, phone in enumerate(request.phone_numbers)
            ]
        )

    def query_delivery_status(self, message_id, *, phone_number=None, send_date=None):
        return DeliveryStatusResult(
            message_id=message_id,
            phone_number=phone_number or "",
            status=DeliveryStatus.DELIVERED if phone_number else DeliveryStatus.UNKNOWN,
        )

    def query_send_history(self, phone_number, start_date, end_date):
        if self.history_error is not None:
            raise self.history_error
        return list(self.history)

    def close(self) -> None:
        self.closed = True


@pytest.fixture()
def clock():
    return FakeClock()


@pytest.fixture()
def rate_limiter(clock):
    return InMemoryRateLimitStore(RateLimitConfig(window_ms=60_000, max_requests=5), clock=clock)


@pytest.fixture()
def provider():
    return StubProvider()


@pytest.fixture()
def sleeps():
    return []


@pytest.fixture()
def sms_service(provider, rate_limiter, sleeps):
    config = SMSServiceConfig(
        default_sign_name="TestSign",
        verification_template_id="SMS_000001",
        rate_limit=rate_limiter.config,
        retry=RetryConfig(max_retries=2, retry_delay_ms=250),
    )
    return SMSService(provider, rate_limiter, config, sleep=sleeps.append)


@pytest.fixture()
def client(sms_service):
    app.state.sms_service = sms_service

    class _SyncASGIClient:
        def __init__(self, fastapi_app):
            self._client = httpx.AsyncClient(
                transport=httpx.ASGITransport(app=fastapi_app),
                base_url="http://testserver",
            )

        def request(self, method: str, url: str, **kwargs):
            async def _do_request():
                return await self._client.request(method, url, **kwargs)

            return anyio.run(_do_request)

        def get(self, url: str, **kwargs):
            return self.request("GET", url, **kwargs)

        def post(self, url: str, **kwargs):
            return self.request("POST", url, **kwargs)

        def delete(self, url: str, **kwargs):
            return self.request("DELETE", url, **kwargs)

        def close(self):
            async def _do_close():
                await self._client.aclose()

            anyio.run(_do_close)

        def __enter__(self):
            return self

        def __exit__(self, exc_type, exc, tb):
            self.close()

    with _SyncASGIClient(app) as test_client:
        yield test_client

    app.state.sms_service = None
