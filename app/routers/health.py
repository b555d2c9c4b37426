from fastapi import APIRouter, Depends

from app.core.dependencies import get_sms_service
from app.schemas.sms import SMSHealth
from app.services import SMSService

router = APIRouter(tags=["health"])


@router.get("/health", response_model=SMSHealth)
def health_check(service: SMSService = Depends(get_sms_service)):
    return SMSHealth(
        status="ok",
        provider=service.provider_name,
        rate_limit_backend=service.rate_limiter.backend,
    )
