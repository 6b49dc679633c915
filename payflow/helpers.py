import hashlib
import json
import math
import re
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Union

from payflow.errors import ValidationError


PHONE_PATTERN = re.compile(r"^254(7|1)\d{8}$")
TRANSACTION_CODE_PATTERN = re.compile(r"^[A-Z0-9]{8,12}$")


def utcnow() -> datetime:
    """Naive UTC timestamp, the form every table in this service stores."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def hash_request(body: dict) -> str:
    return hashlib.sha256(json.dumps(body, sort_keys=True).encode()).hexdigest()


def normalize_phone_number(phone_number: Union[str, int, None]) -> str:
    """
    Bring a Kenyan MSISDN into 2547XXXXXXXX / 2541XXXXXXXX form.

    Accepts the shapes people actually type: +254..., 07..., 7..., with spaces or dashes.
    """
    if phone_number is None:
        raise ValidationError("Phone number is required.")
    digits = re.sub(r"[\s\-+()]", "", str(phone_number))
    if digits.startswith("0") and len(digits) == 10:
        digits = "254" + digits[1:]
    elif len(digits) == 9 and digits[0] in "71":
        digits = "254" + digits
    if not PHONE_PATTERN.match(digits):
        raise ValidationError("Enter a valid M-Pesa phone number, e.g. 254712345678.")
    return digits


def normalize_transaction_code(transaction_code: str | None) -> str:
    code = (transaction_code or "").strip().upper()
    if not code:
        raise ValidationError("Enter the M-Pesa transaction code.")
    if not TRANSACTION_CODE_PATTERN.match(code):
        raise ValidationError("The M-Pesa transaction code should be 8 to 12 letters and digits.")
    return code


def whole_amount(amount: Union[int, float, str, Decimal, None]) -> int:
    """Validate a positive amount and round it up to whole shillings."""
    if amount is None or isinstance(amount, bool):
        raise ValidationError("Amount is required.")
    try:
        value = Decimal(str(amount))
    except InvalidOperation:
        raise ValidationError("Amount must be a number.") from None
    if not value.is_finite() or value <= 0:
        raise ValidationError("Amount must be greater than zero.")
    return int(math.ceil(value))


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def serialize_payment_request(record) -> dict:
    return {
        "id": record.id,
        "phoneNumber": record.phone_number,
        "amount": record.amount,
        "accountReference": record.account_reference,
        "merchantRequestId": record.merchant_request_id,
        "correlationId": record.correlation_id,
        "status": record.status,
        "transactionCode": record.transaction_code,
        "resultCode": record.result_code,
        "resultDesc": record.result_desc,
        "createdAt": _iso(record.created_at),
        "updatedAt": _iso(record.updated_at),
    }


def serialize_outbox(record) -> dict:
    return {
        "id": record.id,
        "accountId": record.account_id,
        "transactionCode": record.transaction_code,
        "status": record.status,
        "attemptCount": record.attempt_count,
        "nextAttemptAt": _iso(record.next_attempt_at),
        "lastError": record.last_error,
        "createdAt": _iso(record.created_at),
    }
