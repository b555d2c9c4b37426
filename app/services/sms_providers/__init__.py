from .base import (
    BaseSMSProvider,
    BatchSendRequest,
    BatchSendResult,
    DeliveryStatus,
    DeliveryStatusResult,
    SendRequest,
    SendResult,
    SMSErrorCode,
)
from .aliyun_provider import AliyunSMSProvider
from .tencent_provider import TencentSMSProvider
from .registry import available_providers, create_provider, get_provider_class, register_provider

__all__ = [
    "BaseSMSProvider",
    "BatchSendRequest",
    "BatchSendResult",
    "DeliveryStatus",
    "DeliveryStatusResult",
    "SendRequest",
    "SendResult",
    "SMSErrorCode",
    "AliyunSMSProvider",
    "TencentSMSProvider",
    "available_providers",
    "create_provider",
    "get_provider_class",
    "register_provider",
]
