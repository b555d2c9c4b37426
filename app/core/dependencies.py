from fastapi import Header, HTTPException, Request, status

from app.core.config import get_settings
from app.services import SMSService


def get_sms_service(request: Request) -> SMSService:
    service = getattr(request.app.state, "sms_service", None)
    if service is None:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="SMS service is not configured")
    return service


def require_admin_secret(x_admin_secret: str | None = Header(default=None)) -> None:
    settings = get_settings()
    if not settings.SMS_ADMIN_SECRET:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Not found")
    if not x_admin_secret or x_admin_secret != settings.SMS_ADMIN_SECRET:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Forbidden")
