import csv
from datetime import timedelta
from io import StringIO
from typing import List, Optional, Tuple

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from payflow.accounts import AccountStore
from payflow.config import ConfirmationSource, RequestStatus, settings
from payflow.errors import AccountUpdateError, InvalidTransitionError, TransactionCodeReuseError, ValidationError
from payflow.helpers import normalize_phone_number, normalize_transaction_code, utcnow, whole_amount
from payflow.ledger import TransactionLedger
from payflow.logging_config import get_logger
from payflow.models import models
from payflow.schemas.schemas import ConfirmResponse
from payflow.workers import enqueue_flag_update


logger = get_logger(__name__)


class ReconciliationStep:
    """
    Turns a transaction code into an account-level payment verification.

    Manual entry, provider callbacks and status polls all end up in
    `confirm_payment`, so they share one at-most-once guarantee: the unique
    constraint behind `TransactionLedger.record_confirmed_payment`.
    """

    def __init__(self, db: Session, ledger: Optional[TransactionLedger] = None, accounts: Optional[AccountStore] = None):
        self.db = db
        self.ledger = ledger or TransactionLedger(db)
        self.accounts = accounts or AccountStore(db)

    def confirm_payment(
        self,
        transaction_code: str,
        phone_number: str,
        account_id: str,
        expected_amount=None,
        correlation_id: Optional[str] = None,
        source: ConfirmationSource = ConfirmationSource.MANUAL,
    ) -> ConfirmResponse:
        code = normalize_transaction_code(transaction_code)
        phone = normalize_phone_number(phone_number)
        account_id = (account_id or "").strip()
        if not account_id:
            raise ValidationError("An account is required to confirm a payment.")
        expected = whole_amount(expected_amount) if expected_amount is not None else None
        account = self.accounts.get_account(account_id)
        if account is None:
            raise ValidationError("Account not found.")

        existing = self.ledger.lookup_by_code(code)
        if existing is not None:
            if existing.linked_account_id != account_id:
                logger.warning("Transaction code=%s presented for account=%s but owned by another account", code, account_id)
                raise TransactionCodeReuseError(code)
            if correlation_id:
                request = self.ledger.get_request(correlation_id)
                if request is not None and request.phone_number == existing.phone_number and self._awaits_code(request, code):
                    self._complete_request(correlation_id, code)
            if not account.payment_verified:
                self._apply_flag(account_id, code)
            return ConfirmResponse(verified=True, transactionCode=code, accountId=account_id, created=False)

        amount, completes = self._verified_amount(code, phone, expected, correlation_id)
        _, created = self.ledger.record_confirmed_payment(code, phone, amount, account_id, source)
        if completes:
            self._complete_request(correlation_id, code)
        self._apply_flag(account_id, code)
        return ConfirmResponse(verified=True, transactionCode=code, accountId=account_id, created=created)

    @staticmethod
    def _awaits_code(request: models.PaymentRequest, code: str) -> bool:
        if request.transaction_code and request.transaction_code != code:
            return False
        return request.status == RequestStatus.PENDING.value or (
            request.status == RequestStatus.COMPLETED.value and not request.transaction_code
        )

    def _verified_amount(
        self, code: str, phone: str, expected: Optional[int], correlation_id: Optional[str]
    ) -> Tuple[int, bool]:
        """
        The ledger is the verification authority: a code the provider already reported must
        match what it reported; an unseen code is accepted on the manual paybill path.

        Read-only. The second item says whether the correlated request should be completed
        once the confirmed payment is written.
        """
        request = self.ledger.lookup_request_by_code(code)
        if request is None and correlation_id:
            request = self.ledger.get_request(correlation_id)
            if request is None:
                raise ValidationError("Unknown payment request.")
            if request.transaction_code and request.transaction_code != code:
                raise ValidationError("This transaction code does not match the payment request.")
            if request.phone_number != phone:
                raise ValidationError("This transaction code was paid from a different phone number.")
            if self._awaits_code(request, code):
                if expected is not None and request.amount < expected:
                    raise ValidationError(f"The amount paid ({request.amount}) is less than the amount due ({expected}).")
                return request.amount, True

        if request is None:
            return (expected if expected is not None else settings.registration_fee), False

        if request.phone_number != phone:
            raise ValidationError("This transaction code was paid from a different phone number.")
        if request.status != RequestStatus.COMPLETED.value:
            raise ValidationError("This payment did not complete. Please pay again.")
        if expected is not None and request.amount < expected:
            raise ValidationError(f"The amount paid ({request.amount}) is less than the amount due ({expected}).")
        return request.amount, False

    def _complete_request(self, correlation_id: str, code: str):
        try:
            self.ledger.mark_request_outcome(correlation_id, RequestStatus.COMPLETED, transaction_code=code)
        except InvalidTransitionError as exc:
            # The payment is confirmed either way; the request row keeps its terminal state.
            logger.error("Confirmed code=%s but request correlationId=%s is %s", code, correlation_id, exc.current)

    def _apply_flag(self, account_id: str, code: str):
        # The confirmed payment is already committed; a failed flag update is queued, not reported.
        try:
            self.accounts.set_payment_verified(account_id, utcnow(), verified_by=f"mpesa:{code}")
        except AccountUpdateError as exc:
            logger.error("Payment code=%s recorded but account=%s flag update failed: %s", code, account_id, exc)
            try:
                enqueue_flag_update(self.db, account_id, code, str(exc))
            except SQLAlchemyError:
                self.db.rollback()
                logger.exception("Could not queue flag update for account=%s code=%s", account_id, code)


def find_unverified_payments(db: Session) -> List[Tuple[models.ConfirmedPayment, Optional[models.Account]]]:
    rows = (
        db.query(models.ConfirmedPayment, models.Account)
        .outerjoin(models.Account, models.Account.id == models.ConfirmedPayment.linked_account_id)
        .all()
    )
    return [(payment, account) for payment, account in rows if account is None or not account.payment_verified]


def reapply_missing_flags(db: Session) -> int:
    """Re-project confirmed payments onto account flags. Returns the number of accounts fixed."""
    accounts = AccountStore(db)
    fixed = 0
    for payment, account in find_unverified_payments(db):
        if account is None:
            logger.error("Confirmed payment code=%s points at missing account=%s", payment.transaction_code, payment.linked_account_id)
            continue
        try:
            accounts.set_payment_verified(account.id, utcnow(), verified_by=f"mpesa:{payment.transaction_code}")
        except AccountUpdateError as exc:
            logger.error("Flag re-apply failed account=%s code=%s: %s", account.id, payment.transaction_code, exc)
            continue
        fixed += 1
    return fixed


def generate_reconciliation_csv(db: Session, stale_after: Optional[timedelta] = None) -> Tuple[str, int]:
    """
    List ledger/account disagreements and return CSV text plus mismatch count.
    """
    stale_after = stale_after or timedelta(seconds=settings.pending_expiry_seconds)
    mismatches: List[tuple] = []

    for payment, account in find_unverified_payments(db):
        kind = "missing_account" if account is None else "unverified_account"
        mismatches.append((kind, payment.transaction_code, payment.linked_account_id, payment.amount, ""))

    confirmed_codes = {code for (code,) in db.query(models.ConfirmedPayment.transaction_code).all()}
    completed = (
        db.query(models.PaymentRequest)
        .filter(models.PaymentRequest.status == RequestStatus.COMPLETED.value)
        .filter(models.PaymentRequest.transaction_code.isnot(None))
        .all()
    )
    for request in completed:
        if request.transaction_code not in confirmed_codes:
            mismatches.append((
                "unconfirmed_completion",
                request.transaction_code,
                request.account_reference,
                request.amount,
                request.correlation_id,
            ))

    cutoff = utcnow() - stale_after
    stale = (
        db.query(models.PaymentRequest)
        .filter(models.PaymentRequest.status == RequestStatus.PENDING.value)
        .filter(models.PaymentRequest.created_at < cutoff)
        .all()
    )
    for request in stale:
        mismatches.append(("stale_pending", "", request.account_reference, request.amount, request.correlation_id))

    logger.info("Reconciliation complete with %s mismatches", len(mismatches))
    output = StringIO()
    writer = csv.writer(output)
    writer.writerow(["kind", "transactionCode", "account", "amount", "correlationId"])
    for row in mismatches:
        writer.writerow(row)

    return output.getvalue(), len(mismatches)
