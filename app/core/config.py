from functools import lru_cache
from pathlib import Path
from typing import Literal, Optional

from dotenv import load_dotenv
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings


BASE_DIR = Path(__file__).resolve().parent.parent.parent
ENV_FILE = BASE_DIR / ".env"

DEFAULT_RETRY_ON = ["TIMEOUT", "NETWORK_ERROR", "SERVICE_UNAVAILABLE", "InternalError.Timeout"]


class Settings(BaseSettings):
    """Application configuration loaded from environment variables."""

    PROJECT_NAME: str = "SMS Delivery Service"
    API_V1_PREFIX: str = "/api/v1"

    LOG_LEVEL: str = Field(default="INFO")
    LOG_FILE_PATH: Optional[str] = Field(default=None)
    ENVIRONMENT: str = Field(default="development")

    REDIS_URL: Optional[str] = Field(default=None)

    SMS_PROVIDER: Literal["aliyun", "tencent"] = Field(default="aliyun")
    SMS_ACCESS_KEY_ID: str = Field(default="")
    SMS_ACCESS_KEY_SECRET: str = Field(default="")
    # Tencent only: the SMS application id (SmsSdkAppId).
    SMS_SDK_APP_ID: Optional[str] = Field(default=None)
    SMS_SIGN_NAME: str = Field(default="")
    SMS_REGION: Optional[str] = Field(default=None)
    SMS_ENDPOINT: Optional[str] = Field(default=None)

    SMS_VERIFICATION_TEMPLATE_ID: Optional[str] = Field(default=None)
    SMS_VERIFICATION_PARAM_NAME: str = Field(default="code")

    SMS_RATE_LIMIT_WINDOW_MS: int = Field(default=3_600_000, ge=1)
    SMS_RATE_LIMIT_MAX_REQUESTS: int = Field(default=5, ge=1)
    SMS_RATE_LIMIT_SWEEP_SECONDS: float = Field(default=60.0, gt=0)
    SMS_RATE_LIMIT_BACKEND: Literal["memory", "redis"] = Field(default="memory")

    SMS_MAX_RETRIES: int = Field(default=3, ge=0)
    SMS_RETRY_DELAY_MS: int = Field(default=10_000, ge=0)
    # Comma-separated list of result codes that trigger a retry.
    SMS_RETRY_ON: str = Field(default=",".join(DEFAULT_RETRY_ON))

    SMS_ADMIN_SECRET: Optional[str] = Field(default=None)

    class Config:
        case_sensitive = True
        env_file = str(ENV_FILE)
        env_file_encoding = "utf-8"
        extra = "ignore"

    @field_validator("SMS_RETRY_ON", mode="before")
    @classmethod
    def assemble_retry_on(cls, v: str | list[str]) -> str:
        if isinstance(v, (list, tuple, set)):
            return ",".join(str(code).strip() for code in v)
        return str(v).strip().strip('"\'')

    @property
    def retry_on_codes(self) -> frozenset[str]:
        return frozenset(code.strip() for code in self.SMS_RETRY_ON.split(",") if code.strip())


load_dotenv(ENV_FILE)


@lru_cache
def get_settings() -> Settings:
    """Return cached application settings instance."""

    return Settings()
