from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field, model_validator


class SMSSendRequest(BaseModel):
    phone_number: str = Field(..., min_length=1)
    template_id: str = Field(..., min_length=1)
    template_params: dict[str, str] = Field(default_factory=dict)
    sign_name: Optional[str] = None


class SMSBatchSendRequest(BaseModel):
    phone_numbers: list[str] = Field(..., min_length=1)
    template_id: str = Field(..., min_length=1)
    template_params: list[dict[str, str]] = Field(default_factory=list)
    sign_name: Optional[str] = None

    @model_validator(mode="after")
    def check_params_length(self) -> "SMSBatchSendRequest":
        count = len(self.template_params)
        if count > 1 and count != len(self.phone_numbers):
            raise ValueError("template_params must be empty, a single shared entry, or one entry per phone number")
        return self


class VerificationCodeRequest(BaseModel):
    phone_number: str = Field(..., min_length=1)
    code: str = Field(..., min_length=1, max_length=12)


class SMSSendResultRead(BaseModel):
    success: bool
    message_id: Optional[str] = None
    request_id: Optional[str] = None
    code: Optional[str] = None
    message: Optional[str] = None
    phone_number: Optional[str] = None


class SMSBatchSendResultRead(BaseModel):
    success: bool
    results: list[SMSSendResultRead]
    success_count: int
    failed_count: int


class RateLimitStatusRead(BaseModel):
    phone_number: str
    allowed: bool
    remaining: int
    total: int
    reset_at_ms: Optional[float] = None


class DeliveryStatusRead(BaseModel):
    message_id: str
    phone_number: str
    status: str
    send_time: Optional[datetime] = None
    receive_time: Optional[datetime] = None
    error_code: Optional[str] = None


class SMSHealth(BaseModel):
    status: str
    provider: str
    rate_limit_backend: str
