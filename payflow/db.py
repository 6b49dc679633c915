from fastapi import HTTPException
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from payflow.logging_config import get_logger
from payflow.models import models


logger = get_logger(__name__)


def get_idempotent_response(db: Session, key: str, body_hash: str):
    """
    Replay the stored response for a push already sent under this Idempotency-Key,
    so a client retry never prompts the subscriber twice.
    """
    existing = db.query(models.IdempotencyKey).filter_by(key=key).first()
    if existing:
        if existing.request_hash != body_hash:
            raise HTTPException(status_code=409, detail="idempotency conflict")
        logger.info("Replaying stored push response for idempotency key=%s", key)
        return existing.response_body
    return None


def store_idempotent_response(db: Session, key: str, body_hash: str, response_body: dict):
    record = models.IdempotencyKey(key=key, request_hash=body_hash, response_body=response_body)
    db.add(record)
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        logger.warning("Idempotency key=%s stored concurrently; keeping the first response", key)
    return response_body
