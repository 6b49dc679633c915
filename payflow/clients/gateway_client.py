import asyncio
import time
from typing import Awaitable, Callable, List, Optional, Tuple

import httpx
from pydantic import ValidationError as SchemaError

from payflow.config import STK_PUSH_PATH, STK_QUERY_PATH, TOKEN_PATH, gateway_base_url, settings
from payflow.contracts.contracts import (
    ProviderError,
    StkPushPayload,
    StkPushResponse,
    StkQueryPayload,
    StkQueryResponse,
    TokenResponse,
)
from payflow.errors import GatewayAuthError, GatewayPushError, GatewayQueryError
from payflow.helpers import normalize_phone_number, whole_amount
from payflow.logging_config import get_logger
from payflow.schemas.schemas import StatusFailure, StatusPending, StatusResult, StatusSuccess
from payflow.security import basic_auth_header, compute_password, generate_timestamp


logger = get_logger(__name__)

# Daraja answers a query for a push the subscriber has not acted on yet with this error code.
PROCESSING_ERROR_CODE = "500.001.1001"


class CredentialCache:
    """
    Holds one bearer token for one GatewayClient.

    A token is handed out until it is within `margin_seconds` of the expiry the
    provider declared; refreshes are single-flight so concurrent callers share
    one token request.
    """

    def __init__(self, margin_seconds: Optional[int] = None, clock: Callable[[], float] = time.monotonic):
        self.margin_seconds = margin_seconds if margin_seconds is not None else settings.token_refresh_margin_seconds
        self._clock = clock
        self._token: Optional[str] = None
        self._expires_at = 0.0
        self._lock = asyncio.Lock()

    def current(self) -> Optional[str]:
        if self._token and self._clock() < self._expires_at - self.margin_seconds:
            return self._token
        return None

    def store(self, token: str, expires_in: int):
        self._token = token
        self._expires_at = self._clock() + expires_in

    def invalidate(self):
        self._token = None
        self._expires_at = 0.0

    async def get(self, fetch: Callable[[], Awaitable[Tuple[str, int]]]) -> str:
        token = self.current()
        if token:
            return token
        async with self._lock:
            token = self.current()
            if token:
                return token
            token, expires_in = await fetch()
            self.store(token, expires_in)
            return token


class GatewayClient:
    def __init__(
        self,
        base_url: Optional[str] = None,
        credential_cache: Optional[CredentialCache] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        rate_limit_per_minute: Optional[int] = None,
        max_retries: Optional[int] = None,
        retry_backoff_seconds: Optional[float] = None,
        status_query_timeout: Optional[float] = None,
    ):
        self.client = httpx.AsyncClient(base_url=base_url or gateway_base_url(), timeout=10.0, transport=transport)
        self.credentials = credential_cache or CredentialCache()
        self._tokens: List[float] = []
        self.rate_limit_per_minute = rate_limit_per_minute if rate_limit_per_minute is not None else settings.rate_limit_per_minute
        self.max_retries = max_retries if max_retries is not None else settings.max_retries
        self.retry_backoff_seconds = retry_backoff_seconds if retry_backoff_seconds is not None else settings.retry_backoff_seconds
        self.status_query_timeout = status_query_timeout if status_query_timeout is not None else settings.status_query_timeout_seconds

    async def aclose(self):
        await self.client.aclose()

    async def _respect_rate_limit(self) -> bool:
        now = time.time()
        self._tokens = [t for t in self._tokens if now - t < 60]
        if len(self._tokens) >= self.rate_limit_per_minute:
            return False
        self._tokens.append(time.time())
        return True

    async def _request_with_retry(self, method: str, url: str, json: dict, headers: dict, timeout: float) -> httpx.Response:
        """Only for idempotent calls: token fetches and status queries."""
        retries = 0
        backoff = self.retry_backoff_seconds
        while retries <= self.max_retries:
            allowed = await self._respect_rate_limit()
            if not allowed:
                return httpx.Response(status_code=429, headers={"Retry-After": str(backoff)}, request=httpx.Request(method, url))
            response = await self.client.request(method, url, json=json, headers=headers, timeout=timeout)
            if response.status_code == 429:
                retry_after = response.headers.get("Retry-After")
                wait = float(retry_after) if retry_after else backoff
                await asyncio.sleep(wait)
                retries += 1
                backoff *= 2
                continue
            if response.status_code >= 500 and not _is_processing(response):
                if retries == self.max_retries:
                    return response
                await asyncio.sleep(backoff)
                retries += 1
                backoff *= 2
                continue
            return response
        return response

    async def _fetch_token(self) -> Tuple[str, int]:
        headers = {"Authorization": basic_auth_header(settings.mpesa_consumer_key, settings.mpesa_consumer_secret)}
        try:
            resp = await self._request_with_retry("GET", TOKEN_PATH, json=None, headers=headers, timeout=10.0)
        except httpx.RequestError as exc:
            raise GatewayAuthError(f"token request error: {exc}", retryable=True) from exc
        if resp.status_code != 200:
            raise GatewayAuthError(f"token request rejected: {resp.status_code} {_error_message(resp)}", retryable=resp.status_code >= 429)
        try:
            token = TokenResponse.model_validate(resp.json())
        except (ValueError, SchemaError) as exc:
            raise GatewayAuthError(f"malformed token response: {exc}") from exc
        logger.info("Obtained gateway access token expires_in=%s", token.expires_in)
        return token.access_token, token.expires_in

    async def get_access_credential(self) -> str:
        return await self.credentials.get(self._fetch_token)

    async def _authorized_headers(self) -> dict:
        token = await self.get_access_credential()
        return {"Authorization": f"Bearer {token}", "Content-Type": "application/json"}

    async def request_push(self, phone_number: str, amount, account_reference: str) -> StkPushResponse:
        """
        Send one STK push. Never retried here: a second push means a second prompt on the phone.
        """
        phone_number = normalize_phone_number(phone_number)
        amount = whole_amount(amount)
        timestamp = generate_timestamp()
        payload = StkPushPayload.build(phone_number, amount, account_reference, compute_password(timestamp), timestamp)

        resp = await self._post_push(payload)
        if resp.status_code == 401:
            # The provider refused the token before looking at the push; resend once with a fresh one.
            logger.warning("Gateway rejected cached token on push, refreshing")
            self.credentials.invalidate()
            resp = await self._post_push(payload)

        if resp.status_code != 200:
            message = _error_message(resp)
            logger.warning("STK push rejected status=%s message=%s phone=%s", resp.status_code, message, phone_number)
            raise GatewayPushError(message, retryable=resp.status_code == 429)
        try:
            result = StkPushResponse.model_validate(resp.json())
        except (ValueError, SchemaError) as exc:
            raise GatewayPushError(f"malformed push response: {exc}") from exc
        if result.ResponseCode != "0":
            raise GatewayPushError(result.ResponseDescription or f"push declined with code {result.ResponseCode}")
        logger.info(
            "STK push accepted correlationId=%s merchantRequestId=%s amount=%s",
            result.CheckoutRequestID,
            result.MerchantRequestID,
            amount,
        )
        return result

    async def _post_push(self, payload: StkPushPayload) -> httpx.Response:
        headers = await self._authorized_headers()
        if not await self._respect_rate_limit():
            raise GatewayPushError("local gateway rate limit reached", retryable=True)
        try:
            return await self.client.post(STK_PUSH_PATH, json=payload.model_dump(), headers=headers)
        except (httpx.ConnectError, httpx.ConnectTimeout) as exc:
            raise GatewayPushError(f"push request error: {exc}", retryable=True) from exc
        except httpx.RequestError as exc:
            # The push may have reached the provider; resending could prompt twice.
            raise GatewayPushError(f"push request error: {exc}", retryable=False) from exc

    async def query_status(self, correlation_id: str) -> StatusResult:
        resp = await self._post_query(correlation_id)
        if resp.status_code == 401:
            self.credentials.invalidate()
            resp = await self._post_query(correlation_id)

        if resp.status_code == 200:
            try:
                body = StkQueryResponse.model_validate(resp.json())
            except (ValueError, SchemaError) as exc:
                raise GatewayQueryError(f"malformed status response: {exc}") from exc
            if body.ResultCode == "0":
                return StatusSuccess(
                    correlation_id=body.CheckoutRequestID,
                    merchant_request_id=body.MerchantRequestID,
                    description=body.ResultDesc,
                )
            return StatusFailure(
                correlation_id=body.CheckoutRequestID,
                merchant_request_id=body.MerchantRequestID,
                result_code=body.ResultCode,
                description=body.ResultDesc,
            )

        error = _provider_error(resp)
        if error and error.errorCode == PROCESSING_ERROR_CODE:
            return StatusPending(correlation_id=correlation_id, description=error.errorMessage)
        raise GatewayQueryError(
            f"status query failed: {resp.status_code} {_error_message(resp)}",
            retryable=resp.status_code == 429 or resp.status_code >= 500,
        )

    async def _post_query(self, correlation_id: str) -> httpx.Response:
        headers = await self._authorized_headers()
        timestamp = generate_timestamp()
        payload = StkQueryPayload.build(correlation_id, compute_password(timestamp), timestamp)
        try:
            return await self._request_with_retry(
                "POST", STK_QUERY_PATH, json=payload.model_dump(), headers=headers, timeout=self.status_query_timeout
            )
        except httpx.RequestError as exc:
            raise GatewayQueryError(f"status query error: {exc}", retryable=True) from exc


def _is_processing(response: httpx.Response) -> bool:
    error = _provider_error(response)
    return bool(error and error.errorCode == PROCESSING_ERROR_CODE)


def _provider_error(response: httpx.Response) -> Optional[ProviderError]:
    try:
        return ProviderError.model_validate(response.json())
    except (ValueError, SchemaError):
        return None


def _error_message(response: httpx.Response) -> str:
    error = _provider_error(response)
    if error and error.errorMessage:
        return error.errorMessage
    return response.text or f"HTTP {response.status_code}"


gateway_client = GatewayClient()
