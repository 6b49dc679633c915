import asyncio
from datetime import timedelta

from sqlalchemy.orm import Session

from payflow.accounts import AccountStore
from payflow.config import OutboxStatus, settings
from payflow.errors import AccountUpdateError
from payflow.helpers import utcnow
from payflow.ledger import TransactionLedger
from payflow.logging_config import get_logger
from payflow.models import models

logger = get_logger(__name__)

MAX_BACKOFF_SECONDS = 3600


def enqueue_flag_update(db: Session, account_id: str, transaction_code: str, error: str | None = None):
    record = models.AccountFlagOutbox(
        account_id=account_id,
        transaction_code=transaction_code,
        status=OutboxStatus.PENDING.value,
        last_error=error,
    )
    db.add(record)
    db.commit()
    db.refresh(record)
    logger.info("Queued account flag update record_id=%s account=%s code=%s", record.id, account_id, transaction_code)
    return record


def process_flag_outbox(db: Session) -> int:
    """Re-apply queued account flags. Returns how many were applied this pass."""
    accounts = AccountStore(db)
    applied = 0
    now = utcnow()
    pending = (
        db.query(models.AccountFlagOutbox)
        .filter(models.AccountFlagOutbox.status != OutboxStatus.APPLIED.value)
        .all()
    )
    for record in pending:
        if record.next_attempt_at and record.next_attempt_at > now:
            continue
        logger.info(
            "Processing flag outbox record_id=%s account=%s attempt_count=%s",
            record.id,
            record.account_id,
            record.attempt_count,
        )
        record_id = record.id
        try:
            accounts.set_payment_verified(record.account_id, utcnow(), verified_by=f"mpesa:{record.transaction_code}")
        except AccountUpdateError as exc:
            record = db.get(models.AccountFlagOutbox, record_id)
            record.attempt_count += 1
            record.status = OutboxStatus.FAILED.value
            record.last_error = str(exc)
            record.next_attempt_at = utcnow() + timedelta(seconds=min(2 ** record.attempt_count, MAX_BACKOFF_SECONDS))
            logger.warning(
                "Flag outbox apply failed: record_id=%s error=%s next_attempt_at=%s attempt_count=%s",
                record.id,
                exc,
                record.next_attempt_at,
                record.attempt_count,
            )
        else:
            record = db.get(models.AccountFlagOutbox, record_id)
            record.attempt_count += 1
            record.status = OutboxStatus.APPLIED.value
            record.last_error = None
            applied += 1
        db.add(record)
        db.commit()
    return applied


def run_expiry_sweep(db: Session) -> int:
    return TransactionLedger(db).expire_stale_requests(timedelta(seconds=settings.pending_expiry_seconds))


async def background_worker(db_factory):
    while True:
        db = db_factory()
        try:
            run_expiry_sweep(db)
            process_flag_outbox(db)
        except Exception:  # noqa: BLE001
            logger.exception("Background payment worker pass failed")
        finally:
            db.close()
        await asyncio.sleep(settings.sweep_interval_seconds)
