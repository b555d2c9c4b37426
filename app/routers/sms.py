from dataclasses import asdict
from datetime import date
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status

from app.core.dependencies import get_sms_service, require_admin_secret
from app.schemas.sms import (
    DeliveryStatusRead,
    RateLimitStatusRead,
    SMSBatchSendRequest,
    SMSBatchSendResultRead,
    SMSSendRequest,
    SMSSendResultRead,
    VerificationCodeRequest,
)
from app.services import SMSService
from app.services import exceptions as service_exceptions
from app.services.sms_providers import BatchSendRequest, DeliveryStatusResult, SendRequest

router = APIRouter(prefix="/sms", tags=["sms"], dependencies=[Depends(require_admin_secret)])


def _status_read(result: DeliveryStatusResult) -> DeliveryStatusRead:
    data = asdict(result)
    data["status"] = result.status.value
    return DeliveryStatusRead(**data)


@router.post("/send", response_model=SMSSendResultRead)
def send_sms(payload: SMSSendRequest, service: SMSService = Depends(get_sms_service)):
    result = service.send(SendRequest(**payload.model_dump()))
    return SMSSendResultRead(**asdict(result))


@router.post("/send-batch", response_model=SMSBatchSendResultRead)
def send_sms_batch(payload: SMSBatchSendRequest, service: SMSService = Depends(get_sms_service)):
    result = service.send_batch(BatchSendRequest(**payload.model_dump()))
    return SMSBatchSendResultRead(**asdict(result))


@router.post("/verification-code", response_model=SMSSendResultRead)
def send_verification_code(payload: VerificationCodeRequest, service: SMSService = Depends(get_sms_service)):
    try:
        result = service.send_verification_code(payload.phone_number, payload.code)
    except service_exceptions.SMSConfigurationError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    return SMSSendResultRead(**asdict(result))


@router.get("/rate-limit/{phone_number}", response_model=RateLimitStatusRead)
def get_rate_limit(phone_number: str, service: SMSService = Depends(get_sms_service)):
    limit_status = service.get_rate_limit_status(phone_number)
    return RateLimitStatusRead(
        phone_number=phone_number,
        allowed=service.check_rate_limit(phone_number),
        remaining=limit_status.remaining,
        total=limit_status.total,
        reset_at_ms=limit_status.reset_at_ms,
    )


@router.delete("/rate-limit/{phone_number}", status_code=status.HTTP_204_NO_CONTENT)
def reset_rate_limit(phone_number: str, service: SMSService = Depends(get_sms_service)):
    service.reset_rate_limit(phone_number)


@router.get("/status/{message_id}", response_model=DeliveryStatusRead)
def get_delivery_status(
    message_id: str,
    phone: Optional[str] = Query(default=None),
    send_date: Optional[date] = Query(default=None),
    service: SMSService = Depends(get_sms_service),
):
    return _status_read(service.get_delivery_status(message_id, phone_number=phone, send_date=send_date))


@router.get("/history", response_model=list[DeliveryStatusRead])
def get_send_history(
    phone: str = Query(..., min_length=1),
    start_date: date = Query(...),
    end_date: date = Query(...),
    service: SMSService = Depends(get_sms_service),
):
    if end_date < start_date:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="end_date must not be before start_date")
    try:
        history = service.query_send_history(phone, start_date, end_date)
    except service_exceptions.SMSDeliveryError as exc:
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(exc)) from exc
    return [_status_read(item) for item in history]
