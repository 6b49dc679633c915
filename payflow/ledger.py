from datetime import timedelta
from typing import List, Optional, Tuple

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from payflow.config import TERMINAL_STATUSES, ConfirmationSource, RequestStatus
from payflow.errors import (
    DuplicateRequestError,
    InvalidTransitionError,
    TransactionCodeReuseError,
    UnknownRequestError,
)
from payflow.helpers import utcnow
from payflow.logging_config import get_logger
from payflow.models import models


logger = get_logger(__name__)


class TransactionLedger:
    """
    Source of truth for payment requests and confirmed payments.

    Uniqueness is enforced by the database: `payment_requests.correlation_id`
    and `confirmed_payments.transaction_code` carry unique constraints, and the
    methods here translate constraint violations instead of trusting a prior read.
    """

    def __init__(self, db: Session):
        self.db = db

    def record_pending_request(self, request: models.PaymentRequest) -> models.PaymentRequest:
        request.status = RequestStatus.PENDING.value
        self.db.add(request)
        try:
            self.db.commit()
        except IntegrityError as exc:
            self.db.rollback()
            logger.error("Duplicate payment request correlationId=%s", request.correlation_id)
            raise DuplicateRequestError(request.correlation_id) from exc
        self.db.refresh(request)
        logger.info(
            "Recorded pending payment request correlationId=%s phone=%s amount=%s reference=%s",
            request.correlation_id,
            request.phone_number,
            request.amount,
            request.account_reference,
        )
        return request

    def get_request(self, correlation_id: str) -> Optional[models.PaymentRequest]:
        return (
            self.db.query(models.PaymentRequest)
            .filter(models.PaymentRequest.correlation_id == correlation_id)
            .first()
        )

    def list_requests(self, status: Optional[str] = None, limit: int = 100) -> List[models.PaymentRequest]:
        query = self.db.query(models.PaymentRequest)
        if status:
            query = query.filter(models.PaymentRequest.status == status)
        return query.order_by(models.PaymentRequest.created_at.desc()).limit(limit).all()

    def mark_request_outcome(
        self,
        correlation_id: str,
        outcome: RequestStatus,
        transaction_code: Optional[str] = None,
        result_code: Optional[str] = None,
        result_desc: Optional[str] = None,
    ) -> models.PaymentRequest:
        """
        Move a Pending request to a terminal status. Repeating the same outcome is a no-op;
        asking for a different terminal status raises InvalidTransitionError.
        """
        outcome = RequestStatus(outcome)
        if outcome not in TERMINAL_STATUSES:
            raise ValueError(f"{outcome.value} is not a terminal status")
        values = {"status": outcome.value, "updated_at": utcnow()}
        if transaction_code:
            values["transaction_code"] = transaction_code
        if result_code is not None:
            values["result_code"] = result_code
        if result_desc is not None:
            values["result_desc"] = result_desc

        result = self.db.execute(
            update(models.PaymentRequest)
            .where(models.PaymentRequest.correlation_id == correlation_id)
            .where(models.PaymentRequest.status == RequestStatus.PENDING.value)
            .values(**values)
        )
        self.db.commit()

        record = self.get_request(correlation_id)
        if record is None:
            raise UnknownRequestError(correlation_id)
        self.db.refresh(record)
        if result.rowcount:
            logger.info("Payment request correlationId=%s moved Pending -> %s", correlation_id, outcome.value)
            return record
        if record.status == outcome.value:
            if transaction_code and not record.transaction_code:
                record.transaction_code = transaction_code
                self.db.commit()
            logger.info("Payment request correlationId=%s already %s, nothing to do", correlation_id, outcome.value)
            return record
        logger.error(
            "Refusing transition for correlationId=%s current=%s requested=%s",
            correlation_id,
            record.status,
            outcome.value,
        )
        raise InvalidTransitionError(correlation_id, record.status, outcome.value)

    def lookup_by_code(self, transaction_code: str) -> Optional[models.ConfirmedPayment]:
        return (
            self.db.query(models.ConfirmedPayment)
            .filter(models.ConfirmedPayment.transaction_code == transaction_code)
            .first()
        )

    def lookup_request_by_code(self, transaction_code: str) -> Optional[models.PaymentRequest]:
        return (
            self.db.query(models.PaymentRequest)
            .filter(models.PaymentRequest.transaction_code == transaction_code)
            .first()
        )

    def record_confirmed_payment(
        self,
        transaction_code: str,
        phone_number: str,
        amount: int,
        account_id: str,
        source: ConfirmationSource = ConfirmationSource.MANUAL,
    ) -> Tuple[models.ConfirmedPayment, bool]:
        """
        Insert a confirmed payment. Returns (payment, created); `created` is False when the
        code was already confirmed for the same account.
        """
        payment = models.ConfirmedPayment(
            transaction_code=transaction_code,
            phone_number=phone_number,
            amount=amount,
            linked_account_id=account_id,
            source=ConfirmationSource(source).value,
        )
        self.db.add(payment)
        try:
            self.db.commit()
        except IntegrityError:
            self.db.rollback()
            existing = self.lookup_by_code(transaction_code)
            if existing is None:
                raise
            if existing.linked_account_id != account_id:
                logger.warning(
                    "Transaction code reuse blocked code=%s owner=%s attempted=%s",
                    transaction_code,
                    existing.linked_account_id,
                    account_id,
                )
                raise TransactionCodeReuseError(transaction_code)
            logger.info("Transaction code=%s already confirmed for account=%s", transaction_code, account_id)
            return existing, False
        self.db.refresh(payment)
        logger.info(
            "Confirmed payment code=%s account=%s amount=%s source=%s",
            transaction_code,
            account_id,
            amount,
            payment.source,
        )
        return payment, True

    def expire_stale_requests(self, older_than: timedelta) -> int:
        """
        Expire every Pending request created before now - older_than. One conditional
        UPDATE, so a request is expired at most once however many sweeps overlap.
        """
        now = utcnow()
        result = self.db.execute(
            update(models.PaymentRequest)
            .where(models.PaymentRequest.status == RequestStatus.PENDING.value)
            .where(models.PaymentRequest.created_at < now - older_than)
            .values(status=RequestStatus.EXPIRED.value, updated_at=now)
        )
        self.db.commit()
        if result.rowcount:
            logger.info("Expired %s stale payment requests", result.rowcount)
        return result.rowcount
