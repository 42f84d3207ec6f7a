from .organization import Organization
from .provisioning import ProvisioningRecord, ProvisioningStatus
from .idempotency import IdempotencyKey, IdempotencyStatus
from .audit import OperationAuditLog, AuditStatus

__all__ = [
    "Organization",
    "ProvisioningRecord",
    "ProvisioningStatus",
    "IdempotencyKey",
    "IdempotencyStatus",
    "OperationAuditLog",
    "AuditStatus",
]
