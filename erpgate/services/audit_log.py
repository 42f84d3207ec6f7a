"""
Operation Audit Log

Writes one row per attempt of every remote call, independent of outcome.
Audit writes are best effort: failures are logged and never raised, so they
can not mask the outcome of the remote call they describe.
"""

import json
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, List, Optional

import structlog
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session, select

from erpgate.core.typing import col, utc_now
from erpgate.models.audit import AuditStatus, OperationAuditLog

logger = structlog.get_logger(__name__)


def _jsonable(value: Any) -> Any:
    """Coerce arbitrary payloads into something a JSON column accepts."""
    if value is None:
        return None
    return json.loads(json.dumps(value, default=str))


@dataclass
class AttemptRecord:
    """Descriptor of one attempt, written before the remote call is made."""

    operation_id: str
    operation_type: str
    attempt_number: int
    max_retries: int
    target_model: Optional[str] = None
    target_method: Optional[str] = None
    record_ids: Optional[List[int]] = None
    domain: Optional[List[Any]] = None
    request_payload: Optional[Any] = None
    circuit_state: Optional[str] = None
    user_id: Optional[str] = None
    organization_id: Optional[str] = None
    start_time: datetime = field(default_factory=utc_now)


class AuditLogService:
    def __init__(self, engine: Engine):
        self.engine = engine

    def log_attempt_start(self, attempt: AttemptRecord) -> Optional[int]:
        """Insert a PROCESSING row. Returns its id, or None if the write failed."""
        entry = OperationAuditLog(
            operation_id=attempt.operation_id,
            parent_operation_id=attempt.operation_id if attempt.attempt_number > 1 else None,
            operation_type=attempt.operation_type,
            attempt_number=attempt.attempt_number,
            max_retries=attempt.max_retries,
            is_retry=attempt.attempt_number > 1,
            target_model=attempt.target_model,
            target_method=attempt.target_method,
            record_ids=_jsonable(attempt.record_ids),
            domain=_jsonable(attempt.domain),
            request_payload=_jsonable(attempt.request_payload),
            status=AuditStatus.PROCESSING,
            start_time=attempt.start_time,
            circuit_state=attempt.circuit_state,
            user_id=attempt.user_id,
            organization_id=attempt.organization_id,
        )
        try:
            with Session(self.engine) as session:
                session.add(entry)
                session.commit()
                session.refresh(entry)
                entry_id = entry.id
        except (SQLAlchemyError, TypeError, ValueError) as e:
            logger.error(
                "Failed to log operation start",
                operation_id=attempt.operation_id,
                attempt_number=attempt.attempt_number,
                error=str(e),
            )
            return None

        logger.debug(
            "Logged operation start",
            operation_id=attempt.operation_id,
            operation_type=attempt.operation_type,
            attempt_number=attempt.attempt_number,
        )
        return entry_id

    def finish_attempt(
        self,
        entry_id: Optional[int],
        status: AuditStatus,
        response_data: Any = None,
        error: Optional[BaseException] = None,
        failure_kind: Optional[str] = None,
        duration_ms: Optional[int] = None,
    ) -> None:
        if entry_id is None:
            return
        try:
            with Session(self.engine) as session:
                entry = session.get(OperationAuditLog, entry_id)
                if entry is None:
                    logger.warning("Audit entry vanished before completion", entry_id=entry_id)
                    return
                entry.status = status
                entry.response_data = _jsonable(response_data)
                entry.error_message = str(error) if error is not None else None
                entry.error_type = type(error).__name__ if error is not None else None
                entry.failure_kind = failure_kind
                entry.end_time = utc_now()
                entry.duration_ms = duration_ms
                session.add(entry)
                session.commit()
        except (SQLAlchemyError, TypeError, ValueError) as e:
            logger.error("Failed to update operation", entry_id=entry_id, status=status.value, error=str(e))
            return

        logger.debug("Updated operation", entry_id=entry_id, status=status.value)

    def list_attempts(self, operation_id: str) -> List[OperationAuditLog]:
        """All attempts of one logical operation, in attempt order."""
        try:
            with Session(self.engine) as session:
                stmt = (
                    select(OperationAuditLog)
                    .where(col(OperationAuditLog.operation_id) == operation_id)
                    .order_by(col(OperationAuditLog.attempt_number).asc())
                )
                return list(session.exec(stmt).all())
        except SQLAlchemyError as e:
            logger.error("Failed to list operation attempts", operation_id=operation_id, error=str(e))
            return []

    def get_operation(self, operation_id: str) -> Optional[OperationAuditLog]:
        """Latest attempt of an operation."""
        attempts = self.list_attempts(operation_id)
        return attempts[-1] if attempts else None


__all__ = ["AuditLogService", "AttemptRecord"]
