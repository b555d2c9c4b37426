from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field, replace
from datetime import date
from typing import Callable, Optional

from app.core.config import DEFAULT_RETRY_ON, Settings
from app.core.observability import correlation_context
from app.core.phone import PhoneNumber, is_valid_phone_number, mask_phone_number, parse_phone_number
from app.core.rate_limit import RateLimitConfig, RateLimitStatus, RateLimitStore

from .exceptions import SMSConfigurationError
from .sms_providers import (
    BaseSMSProvider,
    BatchSendRequest,
    BatchSendResult,
    DeliveryStatusResult,
    SendRequest,
    SendResult,
    SMSErrorCode,
)

logger = logging.getLogger("sms.service")


@dataclass(frozen=True, slots=True)
class RetryConfig:
    max_retries: int = 3
    retry_delay_ms: int = 10_000
    retry_on: frozenset[str] = frozenset(DEFAULT_RETRY_ON)


@dataclass(frozen=True, slots=True)
class SMSServiceConfig:
    default_sign_name: str = ""
    verification_template_id: Optional[str] = None
    verification_param_name: str = "code"
    rate_limit: RateLimitConfig = field(default_factory=RateLimitConfig)
    retry: RetryConfig = field(default_factory=RetryConfig)

    @classmethod
    def from_settings(cls, settings: Settings) -> "SMSServiceConfig":
        return cls(
            default_sign_name=settings.SMS_SIGN_NAME,
            verification_template_id=settings.SMS_VERIFICATION_TEMPLATE_ID,
            verification_param_name=settings.SMS_VERIFICATION_PARAM_NAME,
            rate_limit=RateLimitConfig(
                window_ms=settings.SMS_RATE_LIMIT_WINDOW_MS,
                max_requests=settings.SMS_RATE_LIMIT_MAX_REQUESTS,
            ),
            retry=RetryConfig(
                max_retries=settings.SMS_MAX_RETRIES,
                retry_delay_ms=settings.SMS_RETRY_DELAY_MS,
                retry_on=settings.retry_on_codes,
            ),
        )


class SMSService:
    """Entry point for outbound SMS.

    Validates recipients, applies the per-recipient rate limit and retries
    transient provider failures. Expected failures come back as results with
    a ``code``; only wiring mistakes raise.
    """

    def __init__(
        self,
        provider: BaseSMSProvider,
        rate_limiter: RateLimitStore,
        config: SMSServiceConfig | None = None,
        *,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.provider = provider
        self.rate_limiter = rate_limiter
        self.config = config or SMSServiceConfig()
        self._sleep = sleep

    @property
    def provider_name(self) -> str:
        return self.provider.name

    def start(self) -> None:
        self.rate_limiter.start_sweeper()

    def close(self) -> None:
        self.rate_limiter.stop_sweeper()
        self.provider.close()

    def send(self, request: SendRequest) -> SendResult:
        with correlation_context(prefix="sms"):
            phone = parse_phone_number(request.phone_number)
            if not is_valid_phone_number(phone):
                logger.info("SMS rejected: invalid phone number | phone=%s", mask_phone_number(phone))
                return SendResult(
                    success=False,
                    code=SMSErrorCode.INVALID_PHONE_NUMBER,
                    message="Invalid phone number",
                    phone_number=request.phone_number,
                )

            allowed, count = self.rate_limiter.acquire(phone.e164_format)
            if not allowed:
                logger.info(
                    "SMS rejected: rate limit exceeded | phone=%s | count=%s",
                    mask_phone_number(phone),
                    count,
                )
                return SendResult(
                    success=False,
                    code=SMSErrorCode.RATE_LIMIT_EXCEEDED,
                    message="Too many messages sent to this number, please try again later",
                    phone_number=request.phone_number,
                )

            outbound = replace(
                request,
                phone_number=phone.e164_format,
                sign_name=request.sign_name or self.config.default_sign_name or None,
            )
            result = self._send_with_retry(outbound)
            return replace(result, phone_number=request.phone_number)

    def _attempt(self, request: SendRequest) -> SendResult:
        try:
            return self.provider.send(request)
        except Exception as exc:
            logger.exception(
                "SMS provider raised unexpectedly | provider=%s | phone=%s",
                self.provider_name,
                mask_phone_number(request.phone_number),
            )
            return SendResult(
                success=False,
                code=SMSErrorCode.SEND_ERROR,
                message=str(exc) or type(exc).__name__,
                phone_number=request.phone_number,
            )

    def _send_with_retry(self, request: SendRequest) -> SendResult:
        retry = self.config.retry
        masked = mask_phone_number(request.phone_number)
        last_result: SendResult | None = None

        for attempt in range(retry.max_retries + 1):
            if attempt:
                self._sleep(retry.retry_delay_ms / 1000.0)
            result = self._attempt(request)
            if result.success:
                logger.info(
                    "SMS sent | provider=%s | phone=%s | template=%s | message_id=%s | attempt=%s",
                    self.provider_name,
                    masked,
                    request.template_id,
                    result.message_id,
                    attempt + 1,
                )
                return result

            last_result = result
            if result.code not in retry.retry_on:
                break
            if attempt < retry.max_retries:
                logger.warning(
                    "SMS send failed, retrying | phone=%s | code=%s | attempt=%s/%s",
                    masked,
                    result.code,
                    attempt + 1,
                    retry.max_retries + 1,
                )

        if last_result is None:
            return SendResult(
                success=False,
                code=SMSErrorCode.MAX_RETRIES_EXCEEDED,
                message="No delivery attempt was made",
                phone_number=request.phone_number,
            )
        logger.error(
            "SMS delivery failed | provider=%s | phone=%s | code=%s | message=%s",
            self.provider_name,
            masked,
            last_result.code,
            last_result.message,
        )
        return last_result

    def send_batch(self, request: BatchSendRequest) -> BatchSendResult:
        with correlation_context(prefix="sms-batch"):
            raw_numbers = list(request.phone_numbers)
            phones = [parse_phone_number(raw) for raw in raw_numbers]
            invalid = [not is_valid_phone_number(phone) for phone in phones]

            if any(invalid):
                logger.info(
                    "SMS batch rejected: invalid phone numbers | invalid=%s | total=%s",
                    sum(invalid),
                    len(phones),
                )
                rejected = [
                    SendResult(
                        success=False,
                        code=SMSErrorCode.INVALID_PHONE_NUMBER if is_invalid else SMSErrorCode.BATCH_FAILED,
                        message="Invalid phone number" if is_invalid else "Batch rejected because it contains invalid phone numbers",
                        phone_number=raw,
                    )
                    for raw, is_invalid in zip(raw_numbers, invalid)
                ]
                return BatchSendResult(success=False, results=rejected, success_count=0, failed_count=len(rejected))

            if request.has_distinct_recipient_params and not self.provider.supports_per_recipient_params:
                logger.info(
                    "SMS batch rejected: provider does not take per-recipient params | provider=%s | total=%s",
                    self.provider_name,
                    len(phones),
                )
                return BatchSendResult.from_results(
                    [
                        SendResult(
                            success=False,
                            code=SMSErrorCode.BATCH_PARAMS_UNSUPPORTED,
                            message="Provider batches share one template parameter set; send distinct parameters separately",
                            phone_number=raw,
                        )
                        for raw in raw_numbers
                    ]
                )

            results: list[SendResult | None] = [None] * len(phones)
            allowed_indices: list[int] = []
            for index, phone in enumerate(phones):
                allowed, _ = self.rate_limiter.acquire(phone.e164_format)
                if allowed:
                    allowed_indices.append(index)
                else:
                    results[index] = SendResult(
                        success=False,
                        code=SMSErrorCode.RATE_LIMIT_EXCEEDED,
                        message="Too many messages sent to this number, please try again later",
                        phone_number=raw_numbers[index],
                    )

            if allowed_indices:
                for index, result in zip(allowed_indices, self._send_allowed(request, phones, allowed_indices)):
                    results[index] = replace(result, phone_number=raw_numbers[index])

            batch = BatchSendResult.from_results([result for result in results if result is not None])
            logger.info(
                "SMS batch processed | provider=%s | total=%s | sent=%s | failed=%s | rate_limited=%s",
                self.provider_name,
                len(phones),
                batch.success_count,
                batch.failed_count,
                len(phones) - len(allowed_indices),
            )
            return batch

    def _send_allowed(self, request: BatchSendRequest, phones: list[PhoneNumber], indices: list[int]) -> list[SendResult]:
        if request.has_per_recipient_params:
            template_params = [request.template_params[index] for index in indices]
        else:
            template_params = list(request.template_params)
        sub_request = BatchSendRequest(
            phone_numbers=[phones[index].e164_format for index in indices],
            template_id=request.template_id,
            template_params=template_params,
            sign_name=request.sign_name or self.config.default_sign_name or None,
        )
        try:
            sub_result = self.provider.send_batch(sub_request)
        except Exception as exc:
            logger.exception("SMS provider raised unexpectedly during batch | provider=%s", self.provider_name)
            return [
                SendResult(success=False, code=SMSErrorCode.SEND_ERROR, message=str(exc) or type(exc).__name__)
                for _ in indices
            ]

        if len(sub_result.results) != len(indices):
            logger.error(
                "SMS provider returned %s results for %s recipients | provider=%s",
                len(sub_result.results),
                len(indices),
                self.provider_name,
            )
            return [
                SendResult(
                    success=False,
                    code=SMSErrorCode.SEND_ERROR,
                    message="Provider returned a result list that does not match the recipients",
                )
                for _ in indices
            ]
        return sub_result.results

    def send_verification_code(self, phone_number: str, code: str) -> SendResult:
        template_id = self.config.verification_template_id
        if not template_id:
            raise SMSConfigurationError("SMS_VERIFICATION_TEMPLATE_ID is not configured")
        return self.send(
            SendRequest(
                phone_number=phone_number,
                template_id=template_id,
                template_params={self.config.verification_param_name: code},
            )
        )

    def check_rate_limit(self, phone_number: str) -> bool:
        return self.rate_limiter.check(parse_phone_number(phone_number).e164_format)

    def get_rate_limit_status(self, phone_number: str) -> RateLimitStatus:
        return self.rate_limiter.get_status(parse_phone_number(phone_number).e164_format)

    def reset_rate_limit(self, phone_number: str) -> None:
        phone = parse_phone_number(phone_number)
        self.rate_limiter.reset(phone.e164_format)
        logger.info("Rate limit reset | phone=%s", mask_phone_number(phone))

    def get_delivery_status(
        self,
        message_id: str,
        *,
        phone_number: str | None = None,
        send_date: date | None = None,
    ) -> DeliveryStatusResult:
        e164 = parse_phone_number(phone_number).e164_format if phone_number else None
        return self.provider.query_delivery_status(message_id, phone_number=e164, send_date=send_date)

    def query_send_history(self, phone_number: str, start_date: date, end_date: date) -> list[DeliveryStatusResult]:
        e164 = parse_phone_number(phone_number).e164_format
        return self.provider.query_send_history(e164, start_date, end_date)
