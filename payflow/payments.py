import asyncio
from typing import Optional

from sqlalchemy.orm import Session

from payflow.accounts import AccountStore
from payflow.clients.gateway_client import GatewayClient
from payflow.config import ConfirmationSource, RequestStatus, settings
from payflow.errors import GatewayError, InvalidTransitionError, PaymentError, ValidationError
from payflow.helpers import normalize_phone_number, whole_amount
from payflow.ledger import TransactionLedger
from payflow.logging_config import get_logger
from payflow.models import models
from payflow.reconciliation import ReconciliationStep
from payflow.schemas.schemas import PushResponse, StatusResult, StatusSuccess, StkCallback, StkCallbackEnvelope


logger = get_logger(__name__)


async def initiate_push(
    db: Session,
    gateway: GatewayClient,
    phone_number: str,
    amount,
    account_reference: str,
) -> PushResponse:
    """
    Validate, send one STK push and record it as Pending. Nothing reaches the
    provider unless the phone number and amount are valid.
    """
    phone = normalize_phone_number(phone_number)
    whole = whole_amount(amount)
    reference = (account_reference or "").strip()
    if not reference:
        raise ValidationError("An account reference is required.")

    result = await gateway.request_push(phone, whole, reference)
    request = models.PaymentRequest(
        phone_number=phone,
        amount=whole,
        account_reference=reference,
        merchant_request_id=result.MerchantRequestID,
        correlation_id=result.CheckoutRequestID,
    )
    TransactionLedger(db).record_pending_request(request)
    return PushResponse(
        status=request.status,
        correlationId=result.CheckoutRequestID,
        merchantRequestId=result.MerchantRequestID,
        customerMessage=result.CustomerMessage,
    )


async def retry_push(
    db: Session,
    gateway: GatewayClient,
    phone_number: str,
    amount,
    account_reference: str,
    max_attempts: Optional[int] = None,
    backoff_seconds: Optional[float] = None,
) -> PushResponse:
    """
    Caller-side retry around initiate_push. Only errors raised before the push
    could have reached the provider are retried.
    """
    max_attempts = max_attempts if max_attempts is not None else settings.push_max_attempts
    backoff = backoff_seconds if backoff_seconds is not None else settings.retry_backoff_seconds
    attempt = 1
    while True:
        try:
            return await initiate_push(db, gateway, phone_number, amount, account_reference)
        except GatewayError as exc:
            if not exc.retryable or attempt >= max_attempts:
                raise
            logger.warning("Push attempt %s/%s failed, retrying in %ss: %s", attempt, max_attempts, backoff, exc)
            await asyncio.sleep(backoff)
            attempt += 1
            backoff *= 2


def handle_provider_callback(db: Session, envelope: StkCallbackEnvelope) -> Optional[models.PaymentRequest]:
    """
    Apply an authenticated STK callback. A callback that does not match a ledger
    request is ignored; a success converges on the same reconciliation path as
    manual code entry.
    """
    callback = envelope.Body.stkCallback
    ledger = TransactionLedger(db)
    request = ledger.get_request(callback.CheckoutRequestID)
    if request is None or (request.merchant_request_id and request.merchant_request_id != callback.MerchantRequestID):
        logger.warning(
            "Ignoring callback for unknown request correlationId=%s merchantRequestId=%s",
            callback.CheckoutRequestID,
            callback.MerchantRequestID,
        )
        return None

    logger.info(
        "Received provider callback correlationId=%s resultCode=%s desc=%s",
        callback.CheckoutRequestID,
        callback.ResultCode,
        callback.ResultDesc,
    )
    try:
        if callback.ResultCode == 0:
            return _complete_from_callback(db, ledger, request, callback)
        return ledger.mark_request_outcome(
            callback.CheckoutRequestID,
            RequestStatus.FAILED,
            result_code=str(callback.ResultCode),
            result_desc=callback.ResultDesc,
        )
    except InvalidTransitionError:
        # Logged by the ledger; the provider still gets its acknowledgement.
        return ledger.get_request(callback.CheckoutRequestID)


def _complete_from_callback(db: Session, ledger: TransactionLedger, request: models.PaymentRequest, callback: StkCallback):
    metadata = callback.metadata()
    receipt = metadata.get("MpesaReceiptNumber")
    request = ledger.mark_request_outcome(
        callback.CheckoutRequestID,
        RequestStatus.COMPLETED,
        transaction_code=str(receipt).upper() if receipt else None,
        result_code=str(callback.ResultCode),
        result_desc=callback.ResultDesc,
    )
    if receipt:
        _reconcile_request(db, request, ConfirmationSource.CALLBACK)
    else:
        logger.warning("Successful callback without receipt number correlationId=%s", callback.CheckoutRequestID)
    return request


async def refresh_status(db: Session, gateway: GatewayClient, correlation_id: str) -> StatusResult:
    """Polling fallback for when no callback arrives."""
    ledger = TransactionLedger(db)
    request = ledger.get_request(correlation_id)
    if request is None:
        raise ValidationError("Unknown payment request.")
    outcome = await gateway.query_status(correlation_id)
    if outcome.kind == "pending":
        return outcome
    status = RequestStatus.COMPLETED if isinstance(outcome, StatusSuccess) else RequestStatus.FAILED
    try:
        request = ledger.mark_request_outcome(
            correlation_id,
            status,
            transaction_code=getattr(outcome, "transaction_code", None),
            result_code=outcome.result_code,
            result_desc=outcome.description,
        )
    except InvalidTransitionError:
        return outcome
    if status == RequestStatus.COMPLETED and request.transaction_code:
        _reconcile_request(db, request, ConfirmationSource.POLL)
    return outcome


def _reconcile_request(db: Session, request: models.PaymentRequest, source: ConfirmationSource):
    account = AccountStore(db).find_by_reference(request.account_reference)
    if account is None:
        logger.warning(
            "Completed payment code=%s has no matching account for reference=%s; awaiting manual confirmation",
            request.transaction_code,
            request.account_reference,
        )
        return
    try:
        ReconciliationStep(db, ledger=TransactionLedger(db)).confirm_payment(
            request.transaction_code,
            request.phone_number,
            account.id,
            correlation_id=request.correlation_id,
            source=source,
        )
    except PaymentError as exc:
        logger.error(
            "Reconciliation of provider-confirmed code=%s for account=%s failed: %s",
            request.transaction_code,
            account.id,
            exc,
        )
