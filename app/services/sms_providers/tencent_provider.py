from __future__ import annotations

import hashlib
import hmac
import json
import logging
import time
from dataclasses import replace
from datetime import date, datetime, time as dt_time, timedelta, timezone
from typing import Any, Callable, Optional
from urllib.parse import urlsplit

import httpx

from app.core.phone import mask_phone_number, parse_phone_number

from ..exceptions import SMSConfigurationError, SMSDeliveryError
from .base import (
    BaseSMSProvider,
    BatchSendRequest,
    BatchSendResult,
    DeliveryStatus,
    DeliveryStatusResult,
    SendRequest,
    SendResult,
    SMSErrorCode,
    decode_json,
    failure_from_exception,
)
from .registry import register_provider

logger = logging.getLogger("sms.tencent")

DEFAULT_ENDPOINT = "https://sms.tencentcloudapi.com"
DEFAULT_REGION = "ap-guangzhou"
SERVICE = "sms"
API_VERSION = "2021-01-11"
ALGORITHM = "TC3-HMAC-SHA256"
CONTENT_TYPE = "application/json; charset=utf-8"
SIGNED_HEADERS = "content-type;host"
SUCCESS_CODE = "Ok"

_REPORT_STATUS = {
    "SUCCESS": DeliveryStatus.DELIVERED,
    "FAIL": DeliveryStatus.FAILED,
}


def _sha256_hex(value: str) -> str:
    return hashlib.sha256(value.encode("utf-8")).hexdigest()


def _hmac_sha256(key: bytes, message: str) -> bytes:
    return hmac.new(key, message.encode("utf-8"), hashlib.sha256).digest()


def build_canonical_request(*, host: str, payload: str, method: str = "POST", uri: str = "/", query: str = "") -> str:
    canonical_headers = f"content-type:{CONTENT_TYPE}\nhost:{host}\n"
    return "\n".join([method, uri, query, canonical_headers, SIGNED_HEADERS, _sha256_hex(payload)])


def build_string_to_sign(canonical_request: str, timestamp: int) -> str:
    day = datetime.fromtimestamp(timestamp, tz=timezone.utc).strftime("%Y-%m-%d")
    return "\n".join([ALGORITHM, str(timestamp), f"{day}/{SERVICE}/tc3_request", _sha256_hex(canonical_request)])


def build_authorization(*, secret_id: str, secret_key: str, host: str, payload: str, timestamp: int) -> str:
    """Compute the TC3-HMAC-SHA256 ``Authorization`` header for a JSON POST."""

    day = datetime.fromtimestamp(timestamp, tz=timezone.utc).strftime("%Y-%m-%d")
    string_to_sign = build_string_to_sign(build_canonical_request(host=host, payload=payload), timestamp)

    secret_date = _hmac_sha256(f"TC3{secret_key}".encode("utf-8"), day)
    secret_service = _hmac_sha256(secret_date, SERVICE)
    secret_signing = _hmac_sha256(secret_service, "tc3_request")
    signature = hmac.new(secret_signing, string_to_sign.encode("utf-8"), hashlib.sha256).hexdigest()

    return (
        f"{ALGORITHM} Credential={secret_id}/{day}/{SERVICE}/tc3_request, "
        f"SignedHeaders={SIGNED_HEADERS}, Signature={signature}"
    )


def _epoch_to_datetime(value: Any) -> Optional[datetime]:
    try:
        seconds = int(value)
    except (TypeError, ValueError):
        return None
    if seconds <= 0:
        return None
    return datetime.fromtimestamp(seconds, tz=timezone.utc)


@register_provider("tencent")
class TencentSMSProvider(BaseSMSProvider):
    """Tencent Cloud SMS implementation of the SMS provider interface."""

    name = "tencent"
    supports_per_recipient_params = False
    PULL_LIMIT = 100
    PULL_MAX_PAGES = 20

    def __init__(
        self,
        *,
        secret_id: str,
        secret_key: str,
        sdk_app_id: str,
        sign_name: str = "",
        region: str | None = None,
        endpoint: str | None = None,
        client: httpx.Client | None = None,
        clock: Callable[[], float] = time.time,
    ):
        if not secret_id or not secret_key:
            raise SMSConfigurationError("Tencent SMS requires a secret id and secret key")
        if not sdk_app_id:
            raise SMSConfigurationError("Tencent SMS requires SMS_SDK_APP_ID")
        self._secret_id = secret_id
        self._secret_key = secret_key
        self.sdk_app_id = sdk_app_id
        self._sign_name = sign_name
        self.region = region or DEFAULT_REGION
        self.endpoint = endpoint or DEFAULT_ENDPOINT
        self.host = urlsplit(self.endpoint).netloc
        self._client = client or httpx.Client(timeout=10.0)
        self._clock = clock

    @classmethod
    def from_settings(cls, settings) -> "TencentSMSProvider":
        return cls(
            secret_id=settings.SMS_ACCESS_KEY_ID,
            secret_key=settings.SMS_ACCESS_KEY_SECRET,
            sdk_app_id=settings.SMS_SDK_APP_ID or "",
            sign_name=settings.SMS_SIGN_NAME,
            region=settings.SMS_REGION,
            endpoint=settings.SMS_ENDPOINT,
        )

    def build_headers(self, action: str, payload: str) -> dict[str, str]:
        timestamp = int(self._clock())
        return {
            "Authorization": build_authorization(
                secret_id=self._secret_id,
                secret_key=self._secret_key,
                host=self.host,
                payload=payload,
                timestamp=timestamp,
            ),
            "Content-Type": CONTENT_TYPE,
            "Host": self.host,
            "X-TC-Action": action,
            "X-TC-Timestamp": str(timestamp),
            "X-TC-Version": API_VERSION,
            "X-TC-Region": self.region,
        }

    def _call(self, action: str, body: dict[str, Any]) -> dict[str, Any]:
        payload = json.dumps(body, ensure_ascii=False, separators=(",", ":"))
        response = self._client.post(
            self.endpoint,
            content=payload.encode("utf-8"),
            headers=self.build_headers(action, payload),
        )
        document = decode_json(response)
        result = document.get("Response")
        if not isinstance(result, dict):
            raise SMSDeliveryError(f"Tencent {action} response has no Response object")
        return result

    def _send_sms(self, phones: list[str], template_id: str, params: dict[str, str], sign_name: str | None) -> list[SendResult]:
        e164_numbers = [parse_phone_number(phone).e164_format for phone in phones]
        body = {
            "PhoneNumberSet": e164_numbers,
            "SmsSdkAppId": self.sdk_app_id,
            "SignName": sign_name or self._sign_name,
            "TemplateId": template_id,
            "TemplateParamSet": [str(value) for value in params.values()],
        }
        try:
            response = self._call("SendSms", body)
        except (httpx.HTTPError, SMSDeliveryError) as exc:
            logger.warning("Tencent SMS request failed | recipients=%s | error=%s", len(phones), exc)
            failure = failure_from_exception(exc)
            return [replace(failure, phone_number=phone) for phone in phones]
        except Exception as exc:
            logger.exception("Unexpected error sending Tencent SMS | recipients=%s", len(phones))
            failure = failure_from_exception(exc)
            return [replace(failure, phone_number=phone) for phone in phones]

        request_id = response.get("RequestId")
        error = response.get("Error")
        if isinstance(error, dict):
            logger.warning(
                "Tencent rejected SMS | recipients=%s | code=%s | message=%s",
                len(phones),
                error.get("Code"),
                error.get("Message"),
            )
            return [
                SendResult(
                    success=False,
                    request_id=request_id,
                    code=error.get("Code"),
                    message=error.get("Message"),
                    phone_number=phone,
                )
                for phone in phones
            ]

        status_set = response.get("SendStatusSet") or []
        by_number = {item.get("PhoneNumber"): item for item in status_set if isinstance(item, dict)}
        results: list[SendResult] = []
        for index, phone in enumerate(phones):
            item = by_number.get(e164_numbers[index])
            if item is None and index < len(status_set):
                item = status_set[index]
            if not item:
                results.append(
                    SendResult(
                        success=False,
                        request_id=request_id,
                        code=SMSErrorCode.INVALID_RESPONSE,
                        message="Recipient missing from SendStatusSet",
                        phone_number=phone,
                    )
                )
                continue
            code = item.get("Code")
            results.append(
                SendResult(
                    success=code == SUCCESS_CODE,
                    message_id=item.get("SerialNo") or None,
                    request_id=request_id,
                    code=code,
                    message=item.get("Message"),
                    phone_number=phone,
                )
            )
            if code != SUCCESS_CODE:
                logger.warning(
                    "Tencent rejected SMS | phone=%s | code=%s | message=%s",
                    mask_phone_number(phone),
                    code,
                    item.get("Message"),
                )
        return results

    def send(self, request: SendRequest) -> SendResult:
        logger.debug(
            "Sending Tencent SMS | phone=%s | template=%s",
            mask_phone_number(request.phone_number),
            request.template_id,
        )
        return self._send_sms([request.phone_number], request.template_id, request.template_params, request.sign_name)[0]

    def send_batch(self, request: BatchSendRequest) -> BatchSendResult:
        phones = list(request.phone_numbers)
        if not phones:
            return BatchSendResult.from_results([])

        # SendSms takes a single TemplateParamSet for every number in the call.
        if request.has_distinct_recipient_params:
            logger.warning(
                "Tencent batch SMS rejected: per-recipient template params are not supported | recipients=%s",
                len(phones),
            )
            return BatchSendResult.from_results(
                [
                    SendResult(
                        success=False,
                        code=SMSErrorCode.BATCH_PARAMS_UNSUPPORTED,
                        message="Tencent SMS batches share one template parameter set; send distinct parameters separately",
                        phone_number=phone,
                    )
                    for phone in phones
                ]
            )

        logger.debug("Sending Tencent batch SMS | recipients=%s | template=%s", len(phones), request.template_id)
        results = self._send_sms(phones, request.template_id, request.params_for(0), request.sign_name)
        return BatchSendResult.from_results(results)

    def _pull_status(self, phone_number: str, begin: datetime, end: datetime) -> list[DeliveryStatusResult]:
        e164 = parse_phone_number(phone_number).e164_format
        statuses: list[DeliveryStatusResult] = []
        for page in range(self.PULL_MAX_PAGES):
            response = self._call(
                "PullSmsSendStatusByPhoneNumber",
                {
                    "BeginTime": int(begin.timestamp()),
                    "EndTime": int(end.timestamp()),
                    "Offset": page * self.PULL_LIMIT,
                    "Limit": self.PULL_LIMIT,
                    "PhoneNumber": e164,
                    "SmsSdkAppId": self.sdk_app_id,
                },
            )
            error = response.get("Error")
            if isinstance(error, dict):
                raise SMSDeliveryError(f"Tencent status pull failed: {error.get('Code')} {error.get('Message')}")

            rows = response.get("PullSmsSendStatusSet") or []
            for row in rows:
                statuses.append(
                    DeliveryStatusResult(
                        message_id=row.get("SerialNo") or "",
                        phone_number=row.get("PhoneNumber") or e164,
                        status=_REPORT_STATUS.get(row.get("ReportStatus"), DeliveryStatus.UNKNOWN),
                        receive_time=_epoch_to_datetime(row.get("UserReceiveTime")),
                        error_code=None if row.get("ReportStatus") == "SUCCESS" else row.get("Description"),
                    )
                )
            if len(rows) < self.PULL_LIMIT:
                break
        return statuses

    def query_delivery_status(
        self,
        message_id: str,
        *,
        phone_number: str | None = None,
        send_date: date | None = None,
    ) -> DeliveryStatusResult:
        if not phone_number:
            return DeliveryStatusResult(message_id=message_id, phone_number="", status=DeliveryStatus.UNKNOWN)

        e164 = parse_phone_number(phone_number).e164_format
        day = send_date or datetime.fromtimestamp(self._clock(), tz=timezone.utc).date()
        begin = datetime.combine(day, dt_time.min, tzinfo=timezone.utc)
        try:
            statuses = self._pull_status(phone_number, begin, begin + timedelta(days=1))
        except (httpx.HTTPError, SMSDeliveryError) as exc:
            logger.warning(
                "Tencent status query failed | phone=%s | message_id=%s | error=%s",
                mask_phone_number(phone_number),
                message_id,
                exc,
            )
            return DeliveryStatusResult(
                message_id=message_id,
                phone_number=e164,
                status=DeliveryStatus.UNKNOWN,
                error_code=failure_from_exception(exc).code,
            )

        for status in statuses:
            if status.message_id == message_id:
                return status
        return DeliveryStatusResult(message_id=message_id, phone_number=e164, status=DeliveryStatus.UNKNOWN)

    def query_send_history(self, phone_number: str, start_date: date, end_date: date) -> list[DeliveryStatusResult]:
        if end_date < start_date:
            return []
        begin = datetime.combine(start_date, dt_time.min, tzinfo=timezone.utc)
        end = datetime.combine(end_date + timedelta(days=1), dt_time.min, tzinfo=timezone.utc)
        try:
            return self._pull_status(phone_number, begin, end)
        except httpx.HTTPError as exc:
            raise SMSDeliveryError(f"Tencent send history query failed: {exc}") from exc
