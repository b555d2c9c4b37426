import base64
import hashlib
import hmac
import json
from datetime import date, datetime, timedelta, timezone
from urllib.parse import quote

import httpx
import pytest

from app.services.exceptions import SMSConfigurationError, SMSDeliveryError
from app.services.sms_providers import (
    AliyunSMSProvider,
    BatchSendRequest,
    DeliveryStatus,
    SendRequest,
    SMSErrorCode,
)
from app.services.sms_providers.aliyun_provider import VENDOR_TZ, percent_encode, to_wire_number

SECRET = "aliyun-secret"


def _provider(handler, now: datetime = datetime(2024, 5, 6, 7, 8, 9, tzinfo=timezone.utc)) -> AliyunSMSProvider:
    return AliyunSMSProvider(
        access_key_id="aliyun-key",
        access_key_secret=SECRET,
        sign_name="DefaultSign",
        client=httpx.Client(transport=httpx.MockTransport(handler)),
        clock=lambda: now,
    )


def _expected_signature(params: dict[str, str]) -> str:
    def enc(value: str) -> str:
        return quote(value, safe="~")

    canonical = "&".join(f"{enc(k)}={enc(params[k])}" for k in sorted(params))
    string_to_sign = "GET&%2F&" + enc(canonical)
    digest = hmac.new(f"{SECRET}&".encode(), string_to_sign.encode(), hashlib.sha1).digest()
    return base64.b64encode(digest).decode()


def test_percent_encode_follows_rfc3986():
    assert percent_encode("a b*c~d/e") == "a%20b%2Ac~d%2Fe"
    assert percent_encode("签名") == "%E7%AD%BE%E5%90%8D"


def test_to_wire_number_strips_domestic_country_code():
    assert to_wire_number("+8613800138000") == "13800138000"
    assert to_wire_number("+85291234567") == "85291234567"


def test_send_signs_request_and_maps_success():
    captured = {}

    def handler(request: httpx.Request) -> httpx.Response:
        captured["method"] = request.method
        captured["params"] = dict(request.url.params)
        return httpx.Response(200, json={"Code": "OK", "Message": "OK", "BizId": "biz-1", "RequestId": "req-1"})

    provider = _provider(handler)
    result = provider.send(
        SendRequest(phone_number="+8613800138000", template_id="SMS_100", template_params={"code": "123456"})
    )

    assert result.success
    assert result.message_id == "biz-1"
    assert result.request_id == "req-1"
    assert result.code == "OK"
    assert result.phone_number == "+8613800138000"

    params = captured["params"]
    assert captured["method"] == "GET"
    assert params["Action"] == "SendSms"
    assert params["PhoneNumbers"] == "13800138000"
    assert params["SignName"] == "DefaultSign"
    assert params["TemplateCode"] == "SMS_100"
    assert json.loads(params["TemplateParam"]) == {"code": "123456"}
    assert params["Timestamp"] == "2024-05-06T07:08:09Z"
    assert params["SignatureMethod"] == "HMAC-SHA1"
    assert params["Version"] == "2017-05-25"

    signature = params.pop("Signature")
    assert signature == _expected_signature(params)


def test_send_omits_template_param_when_empty():
    captured = {}

    def handler(request):
        captured.update(request.url.params)
        return httpx.Response(200, json={"Code": "OK", "BizId": "biz-2"})

    _provider(handler).send(SendRequest(phone_number="+8613800138000", template_id="SMS_100", sign_name="Other"))
    assert "TemplateParam" not in captured
    assert captured["SignName"] == "Other"


def test_send_passes_vendor_error_code_through():
    def handler(request):
        return httpx.Response(
            400,
            json={"Code": "isv.BUSINESS_LIMIT_CONTROL", "Message": "limit", "RequestId": "req-2"},
        )

    result = _provider(handler).send(SendRequest(phone_number="+8613800138000", template_id="SMS_100"))
    assert not result.success
    assert result.code == "isv.BUSINESS_LIMIT_CONTROL"
    assert result.message == "limit"
    assert result.request_id == "req-2"


def _timeout(request):
    raise httpx.ReadTimeout("timed out", request=request)


def _refused(request):
    raise httpx.ConnectError("refused", request=request)


@pytest.mark.parametrize(
    "handler, expected_code",
    [
        (_timeout, SMSErrorCode.TIMEOUT),
        (_refused, SMSErrorCode.NETWORK_ERROR),
        (lambda request: httpx.Response(503, text="unavailable"), SMSErrorCode.SERVICE_UNAVAILABLE),
        (lambda request: httpx.Response(200, text="<html>"), SMSErrorCode.INVALID_RESPONSE),
    ],
)
def test_send_maps_transport_failures(handler, expected_code):
    result = _provider(handler).send(SendRequest(phone_number="+8613800138000", template_id="SMS_100"))
    assert not result.success
    assert result.code == expected_code
    assert result.phone_number == "+8613800138000"


def test_send_batch_builds_json_arrays():
    captured = {}

    def handler(request):
        captured.update(request.url.params)
        return httpx.Response(200, json={"Code": "OK", "BizId": "biz-batch", "RequestId": "req-3"})

    result = _provider(handler).send_batch(
        BatchSendRequest(
            phone_numbers=["+8613800138000", "+85291234567"],
            template_id="SMS_200",
            template_params=[{"name": "A"}, {"name": "B"}],
        )
    )

    assert captured["Action"] == "SendBatchSms"
    assert json.loads(captured["PhoneNumberJson"]) == ["13800138000", "85291234567"]
    assert json.loads(captured["SignNameJson"]) == ["DefaultSign", "DefaultSign"]
    assert json.loads(captured["TemplateParamJson"]) == [{"name": "A"}, {"name": "B"}]
    assert result.success
    assert result.success_count == 2
    assert [item.phone_number for item in result.results] == ["+8613800138000", "+85291234567"]
    assert all(item.message_id == "biz-batch" for item in result.results)


def test_send_batch_shared_params_are_repeated():
    captured = {}

    def handler(request):
        captured.update(request.url.params)
        return httpx.Response(200, json={"Code": "OK", "BizId": "biz"})

    _provider(handler).send_batch(
        BatchSendRequest(
            phone_numbers=["+8613800138000", "+8613900139000"],
            template_id="SMS_200",
            template_params=[{"name": "A"}],
        )
    )
    assert json.loads(captured["TemplateParamJson"]) == [{"name": "A"}, {"name": "A"}]


def test_query_delivery_status_reads_send_details():
    captured = {}

    def handler(request):
        captured.update(request.url.params)
        return httpx.Response(
            200,
            json={
                "Code": "OK",
                "TotalCount": 1,
                "SmsSendDetailDTOs": {
                    "SmsSendDetailDTO": [
                        {
                            "SendStatus": 3,
                            "ErrCode": "DELIVERED",
                            "SendDate": "2024-05-06 07:08:10",
                            "ReceiveDate": "2024-05-06 07:08:15",
                            "PhoneNum": "13800138000",
                        }
                    ]
                },
            },
        )

    status = _provider(handler).query_delivery_status(
        "biz-1", phone_number="+8613800138000", send_date=date(2024, 5, 6)
    )
    assert captured["Action"] == "QuerySendDetails"
    assert captured["BizId"] == "biz-1"
    assert captured["SendDate"] == "20240506"
    assert status.status == DeliveryStatus.DELIVERED
    assert status.message_id == "biz-1"
    assert status.phone_number == "+8613800138000"
    assert status.error_code is None
    assert status.receive_time == datetime(2024, 5, 6, 7, 8, 15, tzinfo=VENDOR_TZ)


def test_query_delivery_status_without_phone_is_unknown():
    def handler(request):
        raise AssertionError("no request expected")

    status = _provider(handler).query_delivery_status("biz-1")
    assert status.status == DeliveryStatus.UNKNOWN


def test_query_delivery_status_failure_reports_code():
    def handler(request):
        return httpx.Response(503)

    status = _provider(handler).query_delivery_status("biz-1", phone_number="+8613800138000")
    assert status.status == DeliveryStatus.UNKNOWN
    assert status.error_code == SMSErrorCode.SERVICE_UNAVAILABLE


def test_missing_credentials_raise_configuration_error():
    with pytest.raises(SMSConfigurationError):
        AliyunSMSProvider(access_key_id="", access_key_secret="secret")


def _details_payload(rows, total):
    return {"Code": "OK", "TotalCount": total, "SmsSendDetailDTOs": {"SmsSendDetailDTO": rows}}


def test_query_delivery_status_defaults_to_vendor_calendar_day():
    captured = {}

    def handler(request):
        captured.update(request.url.params)
        return httpx.Response(200, json=_details_payload([], 0))

    # 18:00 UTC is already the next day in Beijing.
    provider = _provider(handler, now=datetime(2024, 3, 1, 18, 0, tzinfo=timezone.utc))
    provider.query_delivery_status("biz", phone_number="+8613800138000")
    assert captured["SendDate"] == "20240302"


def test_query_send_history_walks_each_day():
    send_dates = []

    def handler(request):
        day = request.url.params["SendDate"]
        send_dates.append(day)
        row = {"SendStatus": 1, "OutId": f"out-{day}", "SendDate": f"{day[:4]}-{day[4:6]}-{day[6:]} 10:00:00"}
        return httpx.Response(200, json=_details_payload([row], 1))

    history = _provider(handler).query_send_history("+8613800138000", date(2024, 5, 4), date(2024, 5, 6))

    assert send_dates == ["20240504", "20240505", "20240506"]
    assert [item.message_id for item in history] == ["out-20240504", "out-20240505", "out-20240506"]
    assert all(item.status == DeliveryStatus.SENT for item in history)
    assert history[0].send_time == datetime(2024, 5, 4, 10, 0, tzinfo=VENDOR_TZ)


def test_query_send_history_is_clamped_to_retention_window():
    send_dates = []

    def handler(request):
        send_dates.append(request.url.params["SendDate"])
        return httpx.Response(200, json=_details_payload([], 0))

    history = _provider(handler).query_send_history("+8613800138000", date(2024, 3, 1), date(2024, 6, 1))

    assert history == []
    assert len(send_dates) == 30
    assert send_dates[0] == (date(2024, 5, 6) - timedelta(days=29)).strftime("%Y%m%d")
    assert send_dates[-1] == "20240506"


def test_query_send_history_follows_pages_until_total():
    pages = []

    def handler(request):
        page = int(request.url.params["CurrentPage"])
        pages.append((page, request.url.params["PageSize"]))
        rows = [{"SendStatus": 3, "OutId": f"p{page}-{index}"} for index in range(2 if page == 1 else 1)]
        return httpx.Response(200, json=_details_payload(rows, 3))

    provider = _provider(handler)
    provider.HISTORY_PAGE_SIZE = 2
    history = provider.query_send_history("+8613800138000", date(2024, 5, 6), date(2024, 5, 6))

    assert pages == [(1, "2"), (2, "2")]
    assert [item.message_id for item in history] == ["p1-0", "p1-1", "p2-0"]


def test_malformed_details_body_is_reported_not_raised():
    def handler(request):
        return httpx.Response(200, json={"Code": "OK", "TotalCount": "many", "SmsSendDetailDTOs": {}})

    status = _provider(handler).query_delivery_status("biz", phone_number="+8613800138000")
    assert status.status == DeliveryStatus.UNKNOWN
    assert status.error_code == SMSErrorCode.INVALID_RESPONSE


def test_malformed_details_body_fails_history_query():
    def handler(request):
        return httpx.Response(200, json={"Code": "OK", "TotalCount": 1, "SmsSendDetailDTOs": "oops"})

    with pytest.raises(SMSDeliveryError):
        _provider(handler).query_send_history("+8613800138000", date(2024, 5, 6), date(2024, 5, 6))
