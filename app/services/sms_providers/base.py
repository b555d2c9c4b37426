from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import date, datetime
from enum import Enum
from typing import Any, Optional

import httpx

from ..exceptions import SMSDeliveryError


class SMSErrorCode:
    """Result codes produced locally. Vendor codes are passed through as-is."""

    INVALID_PHONE_NUMBER = "INVALID_PHONE_NUMBER"
    RATE_LIMIT_EXCEEDED = "RATE_LIMIT_EXCEEDED"
    SEND_ERROR = "SEND_ERROR"
    MAX_RETRIES_EXCEEDED = "MAX_RETRIES_EXCEEDED"
    BATCH_FAILED = "BATCH_FAILED"
    BATCH_PARAMS_UNSUPPORTED = "BATCH_PARAMS_UNSUPPORTED"
    TIMEOUT = "TIMEOUT"
    NETWORK_ERROR = "NETWORK_ERROR"
    SERVICE_UNAVAILABLE = "SERVICE_UNAVAILABLE"
    HTTP_ERROR = "HTTP_ERROR"
    INVALID_RESPONSE = "INVALID_RESPONSE"


class DeliveryStatus(str, Enum):
    PENDING = "PENDING"
    SENT = "SENT"
    DELIVERED = "DELIVERED"
    FAILED = "FAILED"
    REJECTED = "REJECTED"
    UNKNOWN = "UNKNOWN"


@dataclass(slots=True)
class SendRequest:
    phone_number: str
    template_id: str
    template_params: dict[str, str] = field(default_factory=dict)
    sign_name: Optional[str] = None


@dataclass(slots=True)
class BatchSendRequest:
    """One template sent to many recipients.

    ``template_params`` is empty, a single entry shared by every recipient,
    or exactly one entry per recipient.
    """

    phone_numbers: list[str]
    template_id: str
    template_params: list[dict[str, str]] = field(default_factory=list)
    sign_name: Optional[str] = None

    def __post_init__(self) -> None:
        count = len(self.template_params)
        if count > 1 and count != len(self.phone_numbers):
            raise ValueError(
                f"template_params has {count} entries for {len(self.phone_numbers)} phone numbers"
            )

    @property
    def has_per_recipient_params(self) -> bool:
        return len(self.template_params) > 1

    @property
    def has_distinct_recipient_params(self) -> bool:
        if not self.has_per_recipient_params:
            return False
        first = self.template_params[0]
        return any(params != first for params in self.template_params[1:])

    def params_for(self, index: int) -> dict[str, str]:
        if not self.template_params:
            return {}
        if self.has_per_recipient_params:
            return self.template_params[index]
        return self.template_params[0]


@dataclass(slots=True)
class SendResult:
    """Normalized response returned by SMS providers."""

    success: bool
    message_id: Optional[str] = None
    request_id: Optional[str] = None
    code: Optional[str] = None
    message: Optional[str] = None
    phone_number: Optional[str] = None


@dataclass(slots=True)
class BatchSendResult:
    success: bool
    results: list[SendResult]
    success_count: int
    failed_count: int

    @classmethod
    def from_results(cls, results: list[SendResult]) -> "BatchSendResult":
        success_count = sum(1 for result in results if result.success)
        failed_count = len(results) - success_count
        return cls(
            success=bool(results) and failed_count == 0,
            results=results,
            success_count=success_count,
            failed_count=failed_count,
        )


@dataclass(slots=True)
class DeliveryStatusResult:
    message_id: str
    phone_number: str
    status: DeliveryStatus
    send_time: Optional[datetime] = None
    receive_time: Optional[datetime] = None
    error_code: Optional[str] = None


def failure_from_exception(exc: Exception, *, phone_number: str | None = None) -> SendResult:
    """Translate a transport or protocol fault into a failed result."""

    if isinstance(exc, httpx.TimeoutException):
        code = SMSErrorCode.TIMEOUT
    elif isinstance(exc, httpx.TransportError):
        code = SMSErrorCode.NETWORK_ERROR
    elif isinstance(exc, httpx.HTTPStatusError):
        status_code = exc.response.status_code
        code = SMSErrorCode.SERVICE_UNAVAILABLE if status_code >= 500 else SMSErrorCode.HTTP_ERROR
    elif isinstance(exc, SMSDeliveryError):
        code = SMSErrorCode.INVALID_RESPONSE
    else:
        code = SMSErrorCode.SEND_ERROR
    return SendResult(success=False, code=code, message=str(exc) or type(exc).__name__, phone_number=phone_number)


def decode_json(response: httpx.Response) -> dict[str, Any]:
    """Return the JSON object of a vendor response.

    Vendors report their own error codes in 4xx bodies, so those are returned
    as-is; 5xx responses and bodies that are not a JSON object raise.
    """

    if response.status_code >= 500:
        response.raise_for_status()
    try:
        payload = response.json()
    except ValueError as exc:
        response.raise_for_status()
        raise SMSDeliveryError(f"Provider returned a non-JSON body (HTTP {response.status_code})") from exc
    if not isinstance(payload, dict):
        response.raise_for_status()
        raise SMSDeliveryError("Provider returned an unexpected JSON document")
    return payload


class BaseSMSProvider(ABC):
    """Interface all SMS providers must implement.

    Providers translate requests into one vendor call and back. They never
    retry or rate limit, and report ordinary failures as ``SendResult``
    objects instead of raising.
    """

    name: str
    # False when one vendor call can only carry a single parameter set.
    supports_per_recipient_params: bool = True

    @classmethod
    @abstractmethod
    def from_settings(cls, settings: Any) -> "BaseSMSProvider":
        raise NotImplementedError

    @abstractmethod
    def send(self, request: SendRequest) -> SendResult:
        """Send one templated message."""
        raise NotImplementedError

    @abstractmethod
    def send_batch(self, request: BatchSendRequest) -> BatchSendResult:
        """Send one template to several recipients in a single vendor call."""
        raise NotImplementedError

    @abstractmethod
    def query_delivery_status(
        self,
        message_id: str,
        *,
        phone_number: str | None = None,
        send_date: date | None = None,
    ) -> DeliveryStatusResult:
        raise NotImplementedError

    @abstractmethod
    def query_send_history(self, phone_number: str, start_date: date, end_date: date) -> list[DeliveryStatusResult]:
        raise NotImplementedError

    def close(self) -> None:
        client = getattr(self, "_client", None)
        if client is not None:
            client.close()
