"""
Exception taxonomy for remote ERP calls and tenant provisioning.

Callers need to tell apart a remote that is actually failing
(RemoteCallError), a remote we are refusing to call (CircuitOpenError) and a
request that is a duplicate of one still in flight (OperationInProgressError).
"""

from enum import Enum
from typing import Optional


class FailureKind(str, Enum):
    """Closed set of failure tags produced at the transport boundary."""

    TIMEOUT = "timeout"
    CONNECTION_REFUSED = "connection_refused"
    HOST_NOT_FOUND = "host_not_found"
    CONNECTION_RESET = "connection_reset"
    NETWORK = "network"
    SESSION_EXPIRED = "session_expired"
    BUSY = "busy"  # server is running another module operation
    OTHER = "other"


class ErpGateError(Exception):
    """Base class for every error raised by this package."""


class RemoteCallError(ErpGateError):
    """A call to the remote ERP server failed."""

    def __init__(self, message: str, kind: FailureKind = FailureKind.OTHER, status_code: Optional[int] = None):
        super().__init__(message)
        self.kind = kind
        self.status_code = status_code


class CircuitOpenError(ErpGateError):
    """Raised without touching the network while the breaker is open."""

    def __init__(self, name: str, retry_after: float):
        super().__init__(f"Circuit breaker '{name}' is open - remote service unavailable")
        self.name = name
        self.retry_after = retry_after


class OperationInProgressError(ErpGateError):
    """An identical idempotent operation is still processing."""

    def __init__(self, idempotency_key: str):
        super().__init__(f"Operation already in progress (idempotency key: {idempotency_key[:16]}...)")
        self.idempotency_key = idempotency_key


class OrganizationNotFound(ErpGateError):
    def __init__(self, organization_id: str):
        super().__init__(f"Organization {organization_id} not found")
        self.organization_id = organization_id


class InstanceAlreadyExists(ErpGateError):
    def __init__(self, organization_id: str, instance_name: Optional[str] = None):
        detail = f" ({instance_name})" if instance_name else ""
        super().__init__(f"ERP instance already exists for organization {organization_id}{detail}")
        self.organization_id = organization_id
        self.instance_name = instance_name


class InstanceNotFound(ErpGateError):
    def __init__(self, organization_id: str):
        super().__init__(f"No ERP instance found for organization {organization_id}")
        self.organization_id = organization_id


class ModuleNotFound(ErpGateError):
    pass


class ModuleOperationBusy(ErpGateError):
    """The server kept reporting another module operation after all retries."""
