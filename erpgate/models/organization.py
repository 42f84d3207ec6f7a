"""
Tenant organization metadata.

Owned by the surrounding application; the provisioning workflow only reads
it to derive the instance name, admin login and company display name.
"""

import uuid
from datetime import datetime
from typing import Optional

from sqlmodel import Field, SQLModel, Column
from sqlalchemy import DateTime

from erpgate.core.typing import utc_now


class Organization(SQLModel, table=True):
    id: str = Field(default_factory=lambda: str(uuid.uuid4()), primary_key=True)
    name: str
    slug: str = Field(unique=True, index=True)
    default_locale: str = Field(default="en")
    created_at: Optional[datetime] = Field(
        default_factory=utc_now,
        sa_column=Column(DateTime(timezone=True), nullable=False),
    )


__all__ = ["Organization"]
