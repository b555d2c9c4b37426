class ServiceError(Exception):
    """Base exception for service-level errors."""


class SMSConfigurationError(ServiceError):
    """Raised when the SMS subsystem is wired with missing or invalid settings."""


class SMSDeliveryError(ServiceError):
    pass
