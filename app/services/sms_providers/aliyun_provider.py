from __future__ import annotations

import base64
import hashlib
import hmac
import json
import logging
import uuid
from dataclasses import replace
from datetime import date, datetime, timedelta, timezone
from typing import Any, Callable, Optional
from urllib.parse import quote

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
    decode_json,
    failure_from_exception,
)
from .registry import register_provider

logger = logging.getLogger("sms.aliyun")

DEFAULT_ENDPOINT = "https://dysmsapi.aliyuncs.com/"
DEFAULT_REGION = "cn-hangzhou"
API_VERSION = "2017-05-25"
SUCCESS_CODE = "OK"
# SendDate and the timestamps in QuerySendDetails are Beijing local time.
VENDOR_TZ = timezone(timedelta(hours=8))

# QuerySendDetails.SendStatus
_SEND_STATUS = {
    1: DeliveryStatus.SENT,
    2: DeliveryStatus.FAILED,
    3: DeliveryStatus.DELIVERED,
}


def percent_encode(value: Any) -> str:
    """RFC 3986 encoding with the vendor's corrections applied."""

    encoded = quote(str(value), safe="")
    return encoded.replace("+", "%20").replace("*", "%2A").replace("%7E", "~")


def canonicalize_query(params: dict[str, Any]) -> str:
    return "&".join(f"{percent_encode(key)}={percent_encode(params[key])}" for key in sorted(params))


def build_string_to_sign(params: dict[str, Any], method: str = "GET") -> str:
    return f"{method}&{percent_encode('/')}&{percent_encode(canonicalize_query(params))}"


def sign_parameters(params: dict[str, Any], access_key_secret: str, method: str = "GET") -> str:
    string_to_sign = build_string_to_sign(params, method)
    digest = hmac.new(f"{access_key_secret}&".encode("utf-8"), string_to_sign.encode("utf-8"), hashlib.sha1).digest()
    return base64.b64encode(digest).decode("ascii")


def to_wire_number(phone_number: str) -> str:
    """Domestic numbers go out without a country code, others as digits only."""

    phone = parse_phone_number(phone_number)
    if phone.country_code == "+86":
        return phone.national_number
    return f"{phone.country_code.lstrip('+')}{phone.national_number}"


def _dump(value: Any) -> str:
    return json.dumps(value, ensure_ascii=False, separators=(",", ":"))


def _parse_datetime(value: Any) -> Optional[datetime]:
    if not value:
        return None
    try:
        return datetime.strptime(str(value), "%Y-%m-%d %H:%M:%S").replace(tzinfo=VENDOR_TZ)
    except ValueError:
        return None


@register_provider("aliyun")
class AliyunSMSProvider(BaseSMSProvider):
    """Aliyun Dysms implementation of the SMS provider interface."""

    name = "aliyun"
    HISTORY_PAGE_SIZE = 50
    HISTORY_MAX_PAGES = 20
    # The vendor keeps send details for 30 days.
    HISTORY_MAX_DAYS = 30

    def __init__(
        self,
        *,
        access_key_id: str,
        access_key_secret: str,
        sign_name: str = "",
        region: str | None = None,
        endpoint: str | None = None,
        client: httpx.Client | None = None,
        clock: Callable[[], datetime] | None = None,
    ):
        if not access_key_id or not access_key_secret:
            raise SMSConfigurationError("Aliyun SMS requires an access key id and secret")
        self._access_key_id = access_key_id
        self._access_key_secret = access_key_secret
        self._sign_name = sign_name
        self.region = region or DEFAULT_REGION
        self.endpoint = endpoint or DEFAULT_ENDPOINT
        self._client = client or httpx.Client(timeout=10.0)
        self._clock = clock or (lambda: datetime.now(tz=timezone.utc))

    @classmethod
    def from_settings(cls, settings) -> "AliyunSMSProvider":
        return cls(
            access_key_id=settings.SMS_ACCESS_KEY_ID,
            access_key_secret=settings.SMS_ACCESS_KEY_SECRET,
            sign_name=settings.SMS_SIGN_NAME,
            region=settings.SMS_REGION,
            endpoint=settings.SMS_ENDPOINT,
        )

    def _vendor_today(self) -> date:
        return self._clock().astimezone(VENDOR_TZ).date()

    def _common_params(self, action: str) -> dict[str, str]:
        return {
            "AccessKeyId": self._access_key_id,
            "Action": action,
            "Format": "JSON",
            "RegionId": self.region,
            "SignatureMethod": "HMAC-SHA1",
            "SignatureNonce": uuid.uuid4().hex,
            "SignatureVersion": "1.0",
            "Timestamp": self._clock().strftime("%Y-%m-%dT%H:%M:%SZ"),
            "Version": API_VERSION,
        }

    def build_signed_url(self, action: str, params: dict[str, Any]) -> str:
        query: dict[str, Any] = self._common_params(action)
        query.update({key: value for key, value in params.items() if value is not None})
        query["Signature"] = sign_parameters(query, self._access_key_secret)
        return f"{self.endpoint}?{canonicalize_query(query)}"

    def _call(self, action: str, params: dict[str, Any]) -> dict[str, Any]:
        response = self._client.get(self.build_signed_url(action, params))
        return decode_json(response)

    @staticmethod
    def _result_from_payload(payload: dict[str, Any], phone_number: str) -> SendResult:
        code = payload.get("Code")
        return SendResult(
            success=code == SUCCESS_CODE,
            message_id=payload.get("BizId"),
            request_id=payload.get("RequestId"),
            code=code,
            message=payload.get("Message"),
            phone_number=phone_number,
        )

    def send(self, request: SendRequest) -> SendResult:
        phone = request.phone_number
        params: dict[str, Any] = {
            "PhoneNumbers": to_wire_number(phone),
            "SignName": request.sign_name or self._sign_name,
            "TemplateCode": request.template_id,
        }
        if request.template_params:
            params["TemplateParam"] = _dump(request.template_params)

        logger.debug("Sending Aliyun SMS | phone=%s | template=%s", mask_phone_number(phone), request.template_id)
        try:
            payload = self._call("SendSms", params)
        except (httpx.HTTPError, SMSDeliveryError) as exc:
            logger.warning("Aliyun SMS request failed | phone=%s | error=%s", mask_phone_number(phone), exc)
            return failure_from_exception(exc, phone_number=phone)
        except Exception as exc:
            logger.exception("Unexpected error sending Aliyun SMS | phone=%s", mask_phone_number(phone))
            return failure_from_exception(exc, phone_number=phone)

        result = self._result_from_payload(payload, phone)
        if not result.success:
            logger.warning(
                "Aliyun rejected SMS | phone=%s | code=%s | message=%s",
                mask_phone_number(phone),
                result.code,
                result.message,
            )
        return result

    def send_batch(self, request: BatchSendRequest) -> BatchSendResult:
        phones = list(request.phone_numbers)
        if not phones:
            return BatchSendResult.from_results([])

        sign_name = request.sign_name or self._sign_name
        params: dict[str, Any] = {
            "PhoneNumberJson": _dump([to_wire_number(phone) for phone in phones]),
            "SignNameJson": _dump([sign_name] * len(phones)),
            "TemplateCode": request.template_id,
        }
        if request.template_params:
            params["TemplateParamJson"] = _dump([request.params_for(index) for index in range(len(phones))])

        logger.debug("Sending Aliyun batch SMS | recipients=%s | template=%s", len(phones), request.template_id)
        try:
            payload = self._call("SendBatchSms", params)
        except (httpx.HTTPError, SMSDeliveryError) as exc:
            logger.warning("Aliyun batch SMS request failed | recipients=%s | error=%s", len(phones), exc)
            failure = failure_from_exception(exc)
            return BatchSendResult.from_results([replace(failure, phone_number=phone) for phone in phones])
        except Exception as exc:
            logger.exception("Unexpected error sending Aliyun batch SMS | recipients=%s", len(phones))
            failure = failure_from_exception(exc)
            return BatchSendResult.from_results([replace(failure, phone_number=phone) for phone in phones])

        # One vendor call yields one outcome for the whole batch.
        results = [self._result_from_payload(payload, phone) for phone in phones]
        if payload.get("Code") != SUCCESS_CODE:
            logger.warning(
                "Aliyun rejected batch SMS | recipients=%s | code=%s | message=%s",
                len(phones),
                payload.get("Code"),
                payload.get("Message"),
            )
        return BatchSendResult.from_results(results)

    def _query_details(
        self,
        phone_number: str,
        send_date: date,
        *,
        biz_id: str | None = None,
    ) -> list[DeliveryStatusResult]:
        details: list[DeliveryStatusResult] = []
        for page in range(1, self.HISTORY_MAX_PAGES + 1):
            payload = self._call(
                "QuerySendDetails",
                {
                    "PhoneNumber": to_wire_number(phone_number),
                    "BizId": biz_id,
                    "SendDate": send_date.strftime("%Y%m%d"),
                    "PageSize": self.HISTORY_PAGE_SIZE,
                    "CurrentPage": page,
                },
            )
            if payload.get("Code") != SUCCESS_CODE:
                raise SMSDeliveryError(f"Aliyun QuerySendDetails failed: {payload.get('Code')} {payload.get('Message')}")

            try:
                rows = (payload.get("SmsSendDetailDTOs") or {}).get("SmsSendDetailDTO") or []
                total = int(payload.get("TotalCount") or 0)
                details.extend(
                    self._status_from_row(row, phone_number=phone_number, message_id=biz_id) for row in rows
                )
            except (AttributeError, TypeError, ValueError) as exc:
                raise SMSDeliveryError(f"Aliyun QuerySendDetails returned a malformed body: {exc}") from exc

            if not rows or len(details) >= total:
                break
        return details

    @staticmethod
    def _status_from_row(row: dict[str, Any], *, phone_number: str, message_id: str | None) -> DeliveryStatusResult:
        try:
            status = _SEND_STATUS.get(int(row.get("SendStatus")), DeliveryStatus.UNKNOWN)
        except (TypeError, ValueError):
            status = DeliveryStatus.UNKNOWN
        error_code = row.get("ErrCode")
        if error_code == "DELIVERED":
            error_code = None
        return DeliveryStatusResult(
            message_id=message_id or row.get("OutId") or "",
            phone_number=parse_phone_number(phone_number).e164_format,
            status=status,
            send_time=_parse_datetime(row.get("SendDate")),
            receive_time=_parse_datetime(row.get("ReceiveDate")),
            error_code=error_code,
        )

    def query_delivery_status(
        self,
        message_id: str,
        *,
        phone_number: str | None = None,
        send_date: date | None = None,
    ) -> DeliveryStatusResult:
        if not phone_number:
            # QuerySendDetails cannot look a BizId up without its recipient.
            return DeliveryStatusResult(message_id=message_id, phone_number="", status=DeliveryStatus.UNKNOWN)

        lookup_date = send_date or self._vendor_today()
        try:
            details = self._query_details(phone_number, lookup_date, biz_id=message_id)
        except (httpx.HTTPError, SMSDeliveryError) as exc:
            logger.warning(
                "Aliyun status query failed | phone=%s | message_id=%s | error=%s",
                mask_phone_number(phone_number),
                message_id,
                exc,
            )
            failure = failure_from_exception(exc)
            return DeliveryStatusResult(
                message_id=message_id,
                phone_number=parse_phone_number(phone_number).e164_format,
                status=DeliveryStatus.UNKNOWN,
                error_code=failure.code,
            )

        if not details:
            return DeliveryStatusResult(
                message_id=message_id,
                phone_number=parse_phone_number(phone_number).e164_format,
                status=DeliveryStatus.UNKNOWN,
            )
        return details[0]

    def query_send_history(self, phone_number: str, start_date: date, end_date: date) -> list[DeliveryStatusResult]:
        if end_date < start_date:
            return []
        today = self._vendor_today()
        last = min(end_date, today)
        current = max(start_date, today - timedelta(days=self.HISTORY_MAX_DAYS - 1))
        history: list[DeliveryStatusResult] = []
        try:
            while current <= last:
                history.extend(self._query_details(phone_number, current))
                current += timedelta(days=1)
        except httpx.HTTPError as exc:
            raise SMSDeliveryError(f"Aliyun send history query failed: {exc}") from exc
        return history
