import logging

from app.core.config import Settings, get_settings
from app.core.rate_limit import create_rate_limit_store

from .sms_providers import create_provider
from .sms_service import SMSService, SMSServiceConfig

logger = logging.getLogger(__name__)


def build_sms_service(settings: Settings | None = None) -> SMSService:
    """Wire the configured provider, rate-limit store and façade together."""

    settings = settings or get_settings()
    config = SMSServiceConfig.from_settings(settings)
    provider = create_provider(settings)
    rate_limiter = create_rate_limit_store(
        config.rate_limit,
        backend=settings.SMS_RATE_LIMIT_BACKEND,
        redis_url=settings.REDIS_URL,
        sweep_interval_seconds=settings.SMS_RATE_LIMIT_SWEEP_SECONDS,
    )
    logger.info(
        "SMS service configured | provider=%s | rate_limit=%s/%sms | max_retries=%s",
        provider.name,
        config.rate_limit.max_requests,
        config.rate_limit.window_ms,
        config.retry.max_retries,
    )
    return SMSService(provider, rate_limiter, config)
