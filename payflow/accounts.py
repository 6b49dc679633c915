from datetime import datetime
from typing import Optional

from sqlalchemy import or_
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from payflow.errors import AccountUpdateError
from payflow.logging_config import get_logger
from payflow.models import models


logger = get_logger(__name__)


class AccountStore:
    """User profiles as seen by the payment flow: read, and flip the payment flag."""

    def __init__(self, db: Session):
        self.db = db

    def get_account(self, account_id: str) -> Optional[models.Account]:
        return self.db.get(models.Account, account_id)

    def find_by_reference(self, account_reference: str) -> Optional[models.Account]:
        """Pushes carry either the account id or the member's national id as reference."""
        return (
            self.db.query(models.Account)
            .filter(or_(models.Account.id == account_reference, models.Account.id_number == account_reference))
            .first()
        )

    def set_payment_verified(self, account_id: str, timestamp: datetime, verified_by: str) -> models.Account:
        account = self.get_account(account_id)
        if account is None:
            raise AccountUpdateError(f"account {account_id} not found")
        try:
            account.payment_verified = True
            account.verified_at = timestamp
            account.verified_by = verified_by
            self.db.commit()
        except SQLAlchemyError as exc:
            self.db.rollback()
            raise AccountUpdateError(f"could not update account {account_id}: {exc}") from exc
        self.db.refresh(account)
        logger.info("Marked account=%s payment verified by=%s", account_id, verified_by)
        return account
