import asyncio
import base64
import logging
import os
import random
import string
import uuid
from datetime import datetime

import httpx
from fastapi import Depends, FastAPI, Header, HTTPException
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from sqlalchemy import Column, DateTime, Integer, String, create_engine
from sqlalchemy.orm import Session, declarative_base, sessionmaker
from sqlalchemy.sql import func

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)
logger = logging.getLogger("mock-daraja")

DB_URL = os.getenv("MOCK_DARAJA_DB_URL", "sqlite:////data/daraja.db")
engine = create_engine(DB_URL, connect_args={"check_same_thread": False})
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
Base = declarative_base()

app = FastAPI(title="Mock Daraja")

CONSUMER_KEY = os.getenv("MPESA_CONSUMER_KEY", "key")
CONSUMER_SECRET = os.getenv("MPESA_CONSUMER_SECRET", "secret")
TOKEN = "mock-access-token"
# Phones ending in 0 cancel the prompt, like a subscriber pressing cancel.
CANCEL_SUFFIX = "0"
CALLBACK_DELAY_SECONDS = float(os.getenv("CALLBACK_DELAY_SECONDS", "3"))


class StkPush(BaseModel):
    BusinessShortCode: str
    Password: str
    Timestamp: str
    TransactionType: str
    Amount: int
    PartyA: str
    PartyB: str
    PhoneNumber: str
    CallBackURL: str
    AccountReference: str
    TransactionDesc: str


class StkQuery(BaseModel):
    BusinessShortCode: str
    Password: str
    Timestamp: str
    CheckoutRequestID: str


class Push(Base):
    __tablename__ = "pushes"
    id = Column(Integer, primary_key=True)
    checkout_request_id = Column(String, unique=True, index=True, nullable=False)
    merchant_request_id = Column(String, nullable=False)
    phone = Column(String, nullable=False)
    amount = Column(Integer, nullable=False)
    reference = Column(String, nullable=False)
    result_code = Column(String, nullable=True)
    receipt = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())


Base.metadata.create_all(bind=engine)


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def _require_token(authorization: str | None):
    if authorization != f"Bearer {TOKEN}":
        raise HTTPException(status_code=401, detail="Invalid Access Token")


def _receipt() -> str:
    return "".join(random.choices(string.ascii_uppercase + string.digits, k=10))


def _callback_body(push: Push) -> dict:
    callback = {
        "MerchantRequestID": push.merchant_request_id,
        "CheckoutRequestID": push.checkout_request_id,
        "ResultCode": int(push.result_code),
        "ResultDesc": "The service request is processed successfully." if push.result_code == "0" else "Request cancelled by user",
    }
    if push.result_code == "0":
        callback["CallbackMetadata"] = {
            "Item": [
                {"Name": "Amount", "Value": push.amount},
                {"Name": "MpesaReceiptNumber", "Value": push.receipt},
                {"Name": "TransactionDate", "Value": int(datetime.now().strftime("%Y%m%d%H%M%S"))},
                {"Name": "PhoneNumber", "Value": int(push.phone)},
            ]
        }
    return {"Body": {"stkCallback": callback}}


async def _complete_push(checkout_request_id: str, callback_url: str):
    await asyncio.sleep(CALLBACK_DELAY_SECONDS)
    db = SessionLocal()
    try:
        push = db.query(Push).filter(Push.checkout_request_id == checkout_request_id).first()
        cancelled = push.phone.endswith(CANCEL_SUFFIX)
        push.result_code = "1032" if cancelled else "0"
        push.receipt = None if cancelled else _receipt()
        db.commit()
        body = _callback_body(push)
    finally:
        db.close()
    logger.info("Sending callback checkoutRequestId=%s resultCode=%s", checkout_request_id, body["Body"]["stkCallback"]["ResultCode"])
    try:
        async with httpx.AsyncClient(timeout=5.0) as client:
            await client.post(callback_url, json=body)
    except httpx.HTTPError:
        logger.warning("Failed to deliver callback for checkoutRequestId=%s", checkout_request_id)


@app.get("/oauth/v1/generate")
async def generate_token(grant_type: str, authorization: str | None = Header(None)):
    expected = base64.b64encode(f"{CONSUMER_KEY}:{CONSUMER_SECRET}".encode()).decode()
    if grant_type != "client_credentials" or authorization != f"Basic {expected}":
        return JSONResponse(status_code=400, content={"errorCode": "400.008.01", "errorMessage": "Invalid Authentication passed"})
    return {"access_token": TOKEN, "expires_in": "3599"}


@app.post("/mpesa/stkpush/v1/processrequest")
async def stk_push(body: StkPush, authorization: str | None = Header(None), db: Session = Depends(get_db)):
    _require_token(authorization)
    logger.info("Received STK push phone=%s amount=%s reference=%s", body.PhoneNumber, body.Amount, body.AccountReference)
    push = Push(
        checkout_request_id=f"ws_CO_{uuid.uuid4().hex[:20]}",
        merchant_request_id=f"{random.randint(10000, 99999)}-{random.randint(1000000, 9999999)}-1",
        phone=body.PhoneNumber,
        amount=body.Amount,
        reference=body.AccountReference,
    )
    db.add(push)
    db.commit()
    asyncio.create_task(_complete_push(push.checkout_request_id, body.CallBackURL))
    return {
        "MerchantRequestID": push.merchant_request_id,
        "CheckoutRequestID": push.checkout_request_id,
        "ResponseCode": "0",
        "ResponseDescription": "Success. Request accepted for processing",
        "CustomerMessage": "Success. Request accepted for processing",
    }


@app.post("/mpesa/stkpushquery/v1/query")
async def stk_query(body: StkQuery, authorization: str | None = Header(None), db: Session = Depends(get_db)):
    _require_token(authorization)
    push = db.query(Push).filter(Push.checkout_request_id == body.CheckoutRequestID).first()
    if push is None:
        return JSONResponse(status_code=400, content={"errorCode": "400.002.02", "errorMessage": "Bad Request - Invalid CheckoutRequestID"})
    if push.result_code is None:
        return JSONResponse(status_code=500, content={"errorCode": "500.001.1001", "errorMessage": "The transaction is being processed"})
    return {
        "ResponseCode": "0",
        "ResponseDescription": "The service request has been accepted successsfully",
        "MerchantRequestID": push.merchant_request_id,
        "CheckoutRequestID": push.checkout_request_id,
        "ResultCode": push.result_code,
        "ResultDesc": "The service request is processed successfully." if push.result_code == "0" else "Request cancelled by user",
    }


@app.post("/admin/clear-db")
async def clear_db(db: Session = Depends(get_db)):
    """
    Dangerous: clears all simulated pushes.
    """
    db.query(Push).delete()
    db.commit()
    logger.warning("Cleared mock Daraja pushes via admin endpoint")
    return {"status": "cleared"}
