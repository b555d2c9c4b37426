from .bootstrap import build_sms_service
from .sms_service import RetryConfig, SMSService, SMSServiceConfig
__all__ = [
    "build_sms_service",
    "RetryConfig",
    "SMSService",
    "SMSServiceConfig",
]
