"""
Idempotency key records for de-duplicating create-type remote operations.

A row in PROCESSING means "this exact operation is in flight"; a second caller
that sees it must fail fast instead of repeating the side effect. SUCCESS rows
carry the cached result; FAILED rows never block a fresh attempt.
"""

from datetime import datetime
from enum import Enum
from typing import Any, Optional

from sqlmodel import Field, SQLModel, Column
from sqlalchemy import JSON, DateTime

from erpgate.core.typing import utc_now


class IdempotencyStatus(str, Enum):
    PROCESSING = "processing"
    SUCCESS = "success"
    FAILED = "failed"


class IdempotencyKey(SQLModel, table=True):
    __tablename__ = "idempotency_key"

    id: Optional[int] = Field(default=None, primary_key=True)
    idempotency_key: str = Field(unique=True, index=True, max_length=128)
    operation_type: str = Field(max_length=64)
    target_model: Optional[str] = Field(default=None, max_length=128)
    status: IdempotencyStatus = Field(default=IdempotencyStatus.PROCESSING, index=True)
    result_data: Optional[Any] = Field(default=None, sa_column=Column(JSON))
    error_message: Optional[str] = None
    operation_id: str = Field(max_length=128)
    user_id: Optional[str] = None
    organization_id: str = Field(index=True)
    first_attempt_at: Optional[datetime] = Field(
        default_factory=utc_now,
        sa_column=Column(DateTime(timezone=True), nullable=False),
    )
    completed_at: Optional[datetime] = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True), nullable=True),
    )
    expires_at: Optional[datetime] = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True), nullable=False, index=True),
    )


__all__ = ["IdempotencyKey", "IdempotencyStatus"]
