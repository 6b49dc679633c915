from enum import Enum
from typing import Literal, Optional

from pydantic import AnyHttpUrl
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env")

    # Required: the service refuses to start without provider credentials.
    mpesa_consumer_key: str
    mpesa_consumer_secret: str
    mpesa_business_short_code: str
    mpesa_passkey: str
    mpesa_callback_url: AnyHttpUrl
    callback_token: str

    mpesa_environment: Literal["sandbox", "production"] = "sandbox"
    mpesa_base_url: Optional[AnyHttpUrl] = None
    transaction_desc: str = "NNECFA Registration Payment"
    registration_fee: int = 300
    callback_allowed_ips: list[str] = []

    log_level: str = "INFO"
    bearer_token: Optional[str] = None
    db_url: str = "sqlite:///./payments.db"
    max_retries: int = 3
    retry_backoff_seconds: float = 1.0
    rate_limit_per_minute: int = 60
    status_query_timeout_seconds: float = 5.0
    token_refresh_margin_seconds: int = 60
    push_max_attempts: int = 2
    pending_expiry_seconds: int = 300
    sweep_interval_seconds: int = 120


settings = Settings()

MPESA_BASE_URLS = {
    "sandbox": "https://sandbox.safaricom.co.ke",
    "production": "https://api.safaricom.co.ke",
}

TOKEN_PATH = "/oauth/v1/generate?grant_type=client_credentials"
STK_PUSH_PATH = "/mpesa/stkpush/v1/processrequest"
STK_QUERY_PATH = "/mpesa/stkpushquery/v1/query"


def gateway_base_url() -> str:
    if settings.mpesa_base_url:
        return str(settings.mpesa_base_url).rstrip("/")
    return MPESA_BASE_URLS[settings.mpesa_environment]


class RequestStatus(str, Enum):
    PENDING = "Pending"
    COMPLETED = "Completed"
    FAILED = "Failed"
    EXPIRED = "Expired"


TERMINAL_STATUSES = {RequestStatus.COMPLETED, RequestStatus.FAILED, RequestStatus.EXPIRED}


class ConfirmationSource(str, Enum):
    MANUAL = "manual"
    CALLBACK = "callback"
    POLL = "poll"


class OutboxStatus(str, Enum):
    PENDING = "pending"
    APPLIED = "applied"
    FAILED = "failed"
