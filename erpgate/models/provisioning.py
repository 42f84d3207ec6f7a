"""
Provisioning Record Model

One row per tenant describing its dedicated ERP instance.

The row is inserted with status PROVISIONING before anything is created on the
remote server, so a crash mid-flow leaves discoverable state instead of an
orphaned instance. Only the provisioning orchestrator writes the status.

Usage:
    from erpgate.models.provisioning import ProvisioningRecord, ProvisioningStatus

    if record.provisioning_status == ProvisioningStatus.FAILED:
        show_error(record.provisioning_error)
"""

from datetime import datetime
from enum import Enum
from typing import Optional

from sqlmodel import Field, SQLModel, Column
from sqlalchemy import DateTime

from erpgate.core.typing import utc_now


class ProvisioningStatus(str, Enum):
    PROVISIONING = "provisioning"
    ACTIVE = "active"
    FAILED = "failed"


class ProvisioningRecord(SQLModel, table=True):
    """
    Attributes:
        organization_id: Tenant owning the instance (unique)
        instance_name: Deterministic remote database name
        admin_login: Administrator login on the instance
        admin_password_encrypted: Fernet ciphertext of the admin password
        service_url: Base URL of the ERP server hosting the instance
        provisioning_status: provisioning, active or failed
        provisioning_error: Display-ready message, set whenever status is failed
    """

    __tablename__ = "provisioning_record"

    id: Optional[int] = Field(default=None, primary_key=True)
    organization_id: str = Field(unique=True, index=True)
    instance_name: str = Field(index=True)
    admin_login: str
    admin_password_encrypted: str
    service_url: str
    provisioning_status: ProvisioningStatus = Field(default=ProvisioningStatus.PROVISIONING, index=True)
    provisioning_started_at: Optional[datetime] = Field(
        default_factory=utc_now,
        sa_column=Column(DateTime(timezone=True), nullable=False),
    )
    provisioning_completed_at: Optional[datetime] = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True), nullable=True),
    )
    provisioning_error: Optional[str] = None


__all__ = ["ProvisioningRecord", "ProvisioningStatus"]
