"""
Idempotency Store

Persists a mapping from a deterministic request fingerprint to the outcome of
the operation, so a create re-submitted after a timeout of unknown outcome is
neither executed twice nor retried while the first attempt is still running.

Usage:
    store = IdempotencyStore(engine)
    key = fingerprint("create", "res.partner", payload, organization_id)

    existing = store.check_key(key)
    if existing and existing.status == IdempotencyStatus.SUCCESS:
        return existing.result_data
    if not store.create_key(key, "create", "res.partner", operation_id, organization_id):
        raise OperationInProgressError(key)
    ...
    store.update_key(key, IdempotencyStatus.SUCCESS, result=partner_id)
"""

import hashlib
import json
from datetime import timedelta
from typing import Any, Optional

import structlog
from sqlalchemy import delete, or_, update
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlmodel import Session, select

from erpgate.core.config import settings
from erpgate.core.typing import col, utc_now
from erpgate.models.idempotency import IdempotencyKey, IdempotencyStatus

logger = structlog.get_logger(__name__)


def fingerprint(
    operation_type: str,
    target_model: Optional[str],
    payload: Any,
    organization_id: str,
) -> str:
    """
    Stable key for one logical operation.

    The payload is serialized with sorted keys so dict ordering never changes
    the result.
    """
    data = json.dumps(
        {
            "operation_type": operation_type,
            "model": target_model,
            "params": payload,
            "organization_id": organization_id,
        },
        sort_keys=True,
        separators=(",", ":"),
        default=str,
    )
    digest = hashlib.sha256(data.encode("utf-8")).hexdigest()
    return f"{operation_type}-{target_model or 'none'}-{digest[:16]}"


class IdempotencyStore:
    def __init__(self, engine: Engine, ttl: Optional[timedelta] = None):
        self.engine = engine
        self.ttl = ttl or timedelta(hours=settings.IDEMPOTENCY_TTL_HOURS)

    def check_key(self, key: str) -> Optional[IdempotencyKey]:
        """Return the unexpired record for ``key``, or None."""
        try:
            with Session(self.engine) as session:
                stmt = select(IdempotencyKey).where(
                    col(IdempotencyKey.idempotency_key) == key,
                    col(IdempotencyKey.expires_at) > utc_now(),
                )
                record = session.exec(stmt).first()
        except SQLAlchemyError as e:
            logger.error("Failed to check idempotency key", idempotency_key=key, error=str(e))
            return None

        if record:
            logger.info(
                "Found existing idempotency key",
                idempotency_key=key,
                status=record.status.value,
                operation_type=record.operation_type,
            )
        return record

    def create_key(
        self,
        key: str,
        operation_type: str,
        target_model: Optional[str],
        operation_id: str,
        organization_id: str,
        user_id: Optional[str] = None,
    ) -> bool:
        """
        Claim ``key`` for an in-flight operation.

        Returns False when another caller holds it in PROCESSING (the caller
        must fail fast). A FAILED or expired row is reclaimed in place. If the
        store itself is unavailable the error is logged and the claim is
        treated as granted, so bookkeeping never blocks the remote call.
        """
        now = utc_now()
        expires_at = now + self.ttl
        try:
            with Session(self.engine) as session:
                # Conditional update makes reclaiming a FAILED row race-safe
                reclaim = (
                    update(IdempotencyKey)
                    .where(
                        col(IdempotencyKey.idempotency_key) == key,
                        or_(
                            col(IdempotencyKey.status) == IdempotencyStatus.FAILED,
                            col(IdempotencyKey.expires_at) <= now,
                        ),
                    )
                    .values(
                        status=IdempotencyStatus.PROCESSING,
                        operation_id=operation_id,
                        result_data=None,
                        error_message=None,
                        first_attempt_at=now,
                        completed_at=None,
                        expires_at=expires_at,
                        user_id=user_id,
                    )
                )
                result = session.execute(reclaim)
                session.commit()
                if result.rowcount:
                    logger.info("Reclaimed idempotency key for retry", idempotency_key=key)
                    return True

                session.add(
                    IdempotencyKey(
                        idempotency_key=key,
                        operation_type=operation_type,
                        target_model=target_model,
                        status=IdempotencyStatus.PROCESSING,
                        operation_id=operation_id,
                        organization_id=organization_id,
                        user_id=user_id,
                        first_attempt_at=now,
                        expires_at=expires_at,
                    )
                )
                try:
                    session.commit()
                except IntegrityError:
                    session.rollback()
                    logger.warning("Idempotency key already claimed", idempotency_key=key)
                    return False
        except SQLAlchemyError as e:
            logger.error("Failed to create idempotency key", idempotency_key=key, error=str(e))
            return True

        logger.debug("Created idempotency key", idempotency_key=key, operation_type=operation_type)
        return True

    def update_key(
        self,
        key: str,
        status: IdempotencyStatus,
        result: Any = None,
        error: Optional[str] = None,
    ) -> bool:
        """Finalize a PROCESSING key exactly once. Returns False if nothing changed."""
        if status == IdempotencyStatus.PROCESSING:
            raise ValueError("update_key only accepts terminal statuses")

        now = utc_now()
        try:
            with Session(self.engine) as session:
                stmt = (
                    update(IdempotencyKey)
                    .where(
                        col(IdempotencyKey.idempotency_key) == key,
                        col(IdempotencyKey.status) == IdempotencyStatus.PROCESSING,
                    )
                    .values(
                        status=status,
                        result_data=result if status == IdempotencyStatus.SUCCESS else None,
                        error_message=error,
                        completed_at=now,
                    )
                )
                updated = session.execute(stmt).rowcount
                session.commit()
        except SQLAlchemyError as e:
            logger.error("Failed to update idempotency key", idempotency_key=key, status=status.value, error=str(e))
            return False

        if not updated:
            logger.warning("Idempotency key was not processing, left unchanged", idempotency_key=key)
            return False

        logger.debug("Updated idempotency key", idempotency_key=key, status=status.value)
        return True

    def cleanup_expired(self) -> int:
        """Delete keys past their TTL. Returns the number of rows removed."""
        try:
            with Session(self.engine) as session:
                stmt = delete(IdempotencyKey).where(col(IdempotencyKey.expires_at) < utc_now())
                deleted = session.execute(stmt).rowcount
                session.commit()
        except SQLAlchemyError as e:
            logger.error("Failed to cleanup expired idempotency keys", error=str(e))
            return 0

        logger.info("Cleaned up expired idempotency keys", deleted_count=deleted)
        return deleted


__all__ = ["IdempotencyStore", "fingerprint"]
