import base64
import hmac
from datetime import datetime, timedelta, timezone

from fastapi import Header, HTTPException, Request

from payflow.config import settings
from payflow.logging_config import get_logger


logger = get_logger(__name__)

# Daraja validates timestamps against Kenyan local time (EAT, no DST).
PROVIDER_TZ = timezone(timedelta(hours=3))


def generate_timestamp(now: datetime | None = None) -> str:
    moment = (now or datetime.now(timezone.utc)).astimezone(PROVIDER_TZ)
    return moment.strftime("%Y%m%d%H%M%S")


def compute_password(timestamp: str, short_code: str | None = None, passkey: str | None = None) -> str:
    """
    base64(shortcode + passkey + timestamp), the STK password Daraja checks server-side.
    """
    short_code = short_code if short_code is not None else settings.mpesa_business_short_code
    passkey = passkey if passkey is not None else settings.mpesa_passkey
    return base64.b64encode(f"{short_code}{passkey}{timestamp}".encode()).decode()


def basic_auth_header(consumer_key: str, consumer_secret: str) -> str:
    credentials = base64.b64encode(f"{consumer_key}:{consumer_secret}".encode()).decode()
    return f"Basic {credentials}"


def verify_callback(request: Request, token: str):
    """
    Daraja does not sign callbacks; the secret path token and the optional
    source allowlist are what make a callback trustworthy.
    """
    if not hmac.compare_digest(token, settings.callback_token):
        logger.warning("Rejected provider callback with invalid token from %s", _client_host(request))
        raise HTTPException(status_code=401, detail="invalid callback token")
    if settings.callback_allowed_ips:
        host = _client_host(request)
        if host not in settings.callback_allowed_ips:
            logger.warning("Rejected provider callback from unlisted address %s", host)
            raise HTTPException(status_code=403, detail="callback source not allowed")


def _client_host(request: Request) -> str | None:
    return request.client.host if request.client else None


def require_bearer_token(authorization: str | None = Header(None, alias="Authorization")):
    """
    FastAPI dependency to enforce Authorization: Bearer <token> when configured.
    """
    if not settings.bearer_token:
        return
    if not authorization or not authorization.startswith("Bearer "):
        raise HTTPException(status_code=401, detail="Unauthorized")
    token = authorization.split(" ", 1)[1].strip()
    if not hmac.compare_digest(token, settings.bearer_token):
        raise HTTPException(status_code=401, detail="Unauthorized")
