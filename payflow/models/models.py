import uuid

from sqlalchemy import JSON, Boolean, Column, DateTime, Integer, String

from payflow.config import OutboxStatus, RequestStatus
from payflow.database import Base
from payflow.helpers import utcnow


def _new_id() -> str:
    return str(uuid.uuid4())


class PaymentRequest(Base):
    __tablename__ = "payment_requests"
    id = Column(String, primary_key=True, default=_new_id)
    phone_number = Column(String, index=True, nullable=False)
    amount = Column(Integer, nullable=False)
    account_reference = Column(String, index=True, nullable=False)
    merchant_request_id = Column(String, nullable=True)
    correlation_id = Column(String, unique=True, index=True, nullable=True)  # CheckoutRequestID
    status = Column(String, nullable=False, default=RequestStatus.PENDING.value)
    transaction_code = Column(String, index=True, nullable=True)
    result_code = Column(String, nullable=True)
    result_desc = Column(String, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)


class ConfirmedPayment(Base):
    __tablename__ = "confirmed_payments"
    id = Column(Integer, primary_key=True)
    transaction_code = Column(String, unique=True, index=True, nullable=False)
    phone_number = Column(String, nullable=False)
    amount = Column(Integer, nullable=False)
    linked_account_id = Column(String, index=True, nullable=False)
    source = Column(String, nullable=False)
    confirmed_at = Column(DateTime, nullable=False, default=utcnow)


class Account(Base):
    __tablename__ = "accounts"
    id = Column(String, primary_key=True, default=_new_id)
    name = Column(String, nullable=False)
    phone = Column(String, nullable=True)
    id_number = Column(String, unique=True, index=True, nullable=True)
    payment_verified = Column(Boolean, nullable=False, default=False)
    verified_at = Column(DateTime, nullable=True)
    verified_by = Column(String, nullable=True)


class IdempotencyKey(Base):
    __tablename__ = "idempotency_keys"
    id = Column(Integer, primary_key=True)
    key = Column(String, unique=True, index=True, nullable=False)
    request_hash = Column(String, nullable=False)
    response_body = Column(JSON, nullable=False)
    created_at = Column(DateTime, nullable=False, default=utcnow)


class AccountFlagOutbox(Base):
    __tablename__ = "account_flag_outbox"
    id = Column(Integer, primary_key=True)
    account_id = Column(String, index=True, nullable=False)
    transaction_code = Column(String, nullable=False)
    status = Column(String, nullable=False, default=OutboxStatus.PENDING.value)
    attempt_count = Column(Integer, nullable=False, default=0)
    next_attempt_at = Column(DateTime, nullable=True)
    last_error = Column(String, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)
