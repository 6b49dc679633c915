import asyncio

from fastapi import Depends, FastAPI, Header, HTTPException, Query, Request, Response
from fastapi.openapi.docs import get_swagger_ui_html
from fastapi.responses import JSONResponse
from pydantic import ValidationError as SchemaError
from sqlalchemy.orm import Session

from payflow.clients.gateway_client import GatewayClient, gateway_client
from payflow.config import OutboxStatus, RequestStatus
from payflow.database import SessionLocal, engine, get_db
from payflow.db import get_idempotent_response, store_idempotent_response
from payflow.errors import LedgerError, PaymentError, TransactionCodeReuseError, UnknownRequestError, ValidationError
from payflow.helpers import hash_request, serialize_outbox, serialize_payment_request
from payflow.ledger import TransactionLedger
from payflow.logging_config import get_logger
from payflow.models import models
from payflow.payments import handle_provider_callback, refresh_status, retry_push
from payflow.reconciliation import ReconciliationStep, generate_reconciliation_csv
from payflow.schemas.schemas import (
    CallbackAck,
    ConfirmRequest,
    ConfirmResponse,
    ErrorResponse,
    PushRequest,
    PushResponse,
    RefreshResponse,
    StkCallbackEnvelope,
)
from payflow.security import require_bearer_token, verify_callback
from payflow.workers import background_worker, process_flag_outbox, run_expiry_sweep


logger = get_logger(__name__)

models.Base.metadata.create_all(bind=engine)
app = FastAPI(title="Payment Confirmation Service")


def get_gateway() -> GatewayClient:
    return gateway_client


@app.on_event("startup")
async def startup_event():
    logger.info("Starting payment sweep and account flag worker")
    loop = asyncio.get_event_loop()
    loop.create_task(background_worker(SessionLocal))


@app.on_event("shutdown")
async def shutdown_event():
    await gateway_client.aclose()


@app.exception_handler(PaymentError)
async def payment_error_handler(request: Request, exc: PaymentError):
    if isinstance(exc, (ValidationError, TransactionCodeReuseError, UnknownRequestError)):
        logger.warning("%s on %s: %s", exc.__class__.__name__, request.url.path, exc.message)
    elif isinstance(exc, LedgerError):
        logger.error("Ledger invariant violated on %s: %s", request.url.path, exc.message)
    else:
        logger.error("%s on %s: %s", exc.__class__.__name__, request.url.path, exc.message)
    body = ErrorResponse(error=exc.__class__.__name__, message=exc.user_message)
    return JSONResponse(status_code=exc.status_code, content=body.model_dump())


@app.post("/payments/push", response_model=PushResponse, responses={422: {"model": ErrorResponse}, 502: {"model": ErrorResponse}})
async def push_route(
    request: PushRequest,
    _auth=Depends(require_bearer_token),
    db: Session = Depends(get_db),
    gateway: GatewayClient = Depends(get_gateway),
    idempotency_key: str | None = Header(None),
):
    body = request.model_dump()
    body_hash = hash_request(body)
    if idempotency_key:
        existing = get_idempotent_response(db, idempotency_key, body_hash)
        if existing:
            return existing
    result = await retry_push(db, gateway, request.phoneNumber, request.amount, request.accountReference)
    response = result.model_dump()
    if idempotency_key:
        store_idempotent_response(db, idempotency_key, body_hash, response)
    return response


@app.post("/payments/confirm", response_model=ConfirmResponse, responses={409: {"model": ErrorResponse}, 422: {"model": ErrorResponse}})
async def confirm_route(
    request: ConfirmRequest,
    _auth=Depends(require_bearer_token),
    db: Session = Depends(get_db),
):
    logger.info(
        "Confirmation requested code=%s account=%s correlationId=%s",
        request.transactionCode,
        request.accountId,
        request.correlationId,
    )
    return ReconciliationStep(db).confirm_payment(
        request.transactionCode,
        request.phoneNumber,
        request.accountId,
        expected_amount=request.expectedAmount,
        correlation_id=request.correlationId,
    )


@app.post("/payments/callback/{token}", response_model=CallbackAck)
async def provider_callback(token: str, request: Request, db: Session = Depends(get_db)):
    verify_callback(request, token)
    try:
        envelope = StkCallbackEnvelope.model_validate(await request.json())
    except (ValueError, SchemaError) as exc:
        logger.warning("Rejected malformed provider callback: %s", exc)
        return JSONResponse(status_code=400, content={"ResultCode": 1, "ResultDesc": "Malformed callback"})
    handle_provider_callback(db, envelope)
    return CallbackAck()


@app.post("/payments/{correlation_id}/refresh", response_model=RefreshResponse)
async def refresh_route(
    correlation_id: str,
    _auth=Depends(require_bearer_token),
    db: Session = Depends(get_db),
    gateway: GatewayClient = Depends(get_gateway),
):
    outcome = await refresh_status(db, gateway, correlation_id)
    record = TransactionLedger(db).get_request(correlation_id)
    return {"correlationId": correlation_id, "status": record.status, "outcome": outcome}


@app.get("/payments/requests")
async def list_requests(
    status: RequestStatus | None = None,
    limit: int = Query(100, ge=1, le=500),
    _auth=Depends(require_bearer_token),
    db: Session = Depends(get_db),
):
    records = TransactionLedger(db).list_requests(status.value if status else None, limit)
    return [serialize_payment_request(r) for r in records]


@app.get("/reconciliation_data")
async def download_reconciliation_csv(_auth=Depends(require_bearer_token), db: Session = Depends(get_db)):
    csv_text, mismatch_count = generate_reconciliation_csv(db)
    return Response(
        content=csv_text,
        media_type="text/csv",
        headers={
            "Content-Disposition": 'attachment; filename="reconciliation.csv"',
            "X-Mismatch-Count": str(mismatch_count),
        },
    )


@app.post("/admin/sweep")
async def sweep(_auth=Depends(require_bearer_token), db: Session = Depends(get_db)):
    """
    Run the expiry sweep and one account-flag outbox pass now.
    """
    expired = run_expiry_sweep(db)
    applied = process_flag_outbox(db)
    return {"expired": expired, "flagsApplied": applied}


@app.post("/admin/replay/{record_id}")
async def force_replay(record_id: int, _auth=Depends(require_bearer_token), db: Session = Depends(get_db)):
    """
    Force a single account-flag outbox record back to pending and clear the last_error.
    """
    record = db.get(models.AccountFlagOutbox, record_id)
    if not record:
        raise HTTPException(status_code=404, detail="outbox record not found")
    record.status = OutboxStatus.PENDING.value
    record.last_error = None
    record.next_attempt_at = None
    db.add(record)
    db.commit()
    db.refresh(record)
    logger.info("Forced replay for flag outbox record_id=%s", record_id)
    return serialize_outbox(record)


@app.get("/swagger", include_in_schema=False)
async def swagger_ui():
    return get_swagger_ui_html(openapi_url=str(app.openapi_url), title="Payment Confirmation Service - Swagger UI")


@app.get("/health")
async def health():
    return {"status": "ok"}
