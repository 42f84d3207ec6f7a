"""
Operation audit log: one row per attempt of a remote call.

Attempts of the same logical operation share ``operation_id``; retries carry
``parent_operation_id`` and a monotonically increasing ``attempt_number``.
"""

from datetime import datetime
from enum import Enum
from typing import Any, Optional

from sqlmodel import Field, SQLModel, Column
from sqlalchemy import JSON, DateTime, Index

from erpgate.core.typing import utc_now


class AuditStatus(str, Enum):
    PROCESSING = "processing"
    SUCCESS = "success"
    RETRYING = "retrying"
    FAILED = "failed"


class OperationAuditLog(SQLModel, table=True):
    __tablename__ = "operation_audit_log"

    id: Optional[int] = Field(default=None, primary_key=True)
    operation_id: str = Field(max_length=128)
    parent_operation_id: Optional[str] = Field(default=None, max_length=128)
    operation_type: str = Field(max_length=64)
    attempt_number: int = Field(default=1)
    max_retries: int = Field(default=0)
    is_retry: bool = Field(default=False)

    # Request descriptors
    target_model: Optional[str] = Field(default=None, max_length=128)
    target_method: Optional[str] = Field(default=None, max_length=128)
    record_ids: Optional[Any] = Field(default=None, sa_column=Column(JSON))
    domain: Optional[Any] = Field(default=None, sa_column=Column(JSON))
    request_payload: Optional[Any] = Field(default=None, sa_column=Column(JSON))
    response_data: Optional[Any] = Field(default=None, sa_column=Column(JSON))

    status: AuditStatus = Field(default=AuditStatus.PROCESSING, index=True)
    error_message: Optional[str] = None
    error_type: Optional[str] = Field(default=None, max_length=128)
    failure_kind: Optional[str] = Field(default=None, max_length=32)

    start_time: Optional[datetime] = Field(
        default_factory=utc_now,
        sa_column=Column(DateTime(timezone=True), nullable=False),
    )
    end_time: Optional[datetime] = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True), nullable=True),
    )
    duration_ms: Optional[int] = None

    circuit_state: Optional[str] = Field(default=None, max_length=16)
    user_id: Optional[str] = None
    organization_id: Optional[str] = Field(default=None, index=True)

    __table_args__ = (
        # Timeline lookup: all attempts of one operation in order
        Index("ix_operation_audit_log_timeline", "operation_id", "attempt_number"),
    )


__all__ = ["OperationAuditLog", "AuditStatus"]
