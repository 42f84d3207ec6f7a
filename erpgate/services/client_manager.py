"""
Client Manager

Caches one authenticated ResilientClient per organization so the breaker and
metrics of a tenant survive across requests. Concurrent requests for an
organization whose client is not cached yet share a single creation.
"""

import asyncio
from dataclasses import dataclass
from typing import Dict, Optional

import structlog
from sqlalchemy.engine import Engine
from sqlmodel import Session, select

from erpgate.core.clock import Clock, system_clock
from erpgate.core.config import settings
from erpgate.core.exceptions import InstanceNotFound
from erpgate.core.security import decrypt_secret
from erpgate.core.typing import col
from erpgate.models.provisioning import ProvisioningRecord, ProvisioningStatus
from erpgate.services.audit_log import AuditLogService
from erpgate.services.idempotency import IdempotencyStore
from erpgate.services.odoo_client import OdooClient
from erpgate.services.resilient_client import ResilientClient

logger = structlog.get_logger(__name__)


@dataclass
class _CachedClient:
    client: ResilientClient
    expires_at: float


class ClientManager:
    def __init__(
        self,
        engine: Engine,
        server: OdooClient,
        clock: Clock = system_clock,
        ttl_seconds: Optional[float] = None,
        audit_log: Optional[AuditLogService] = None,
        idempotency: Optional[IdempotencyStore] = None,
    ):
        self.engine = engine
        self.server = server
        self.clock = clock
        self.ttl_seconds = ttl_seconds if ttl_seconds is not None else settings.CLIENT_CACHE_TTL_MINUTES * 60
        self.audit_log = audit_log or AuditLogService(engine)
        self.idempotency = idempotency or IdempotencyStore(engine)
        self._clients: Dict[str, _CachedClient] = {}
        self._creating: Dict[str, asyncio.Task] = {}

    async def get_client(self, organization_id: str) -> ResilientClient:
        cached = self._clients.get(organization_id)
        if cached and cached.expires_at > self.clock.now():
            logger.debug("Using cached ERP client", organization_id=organization_id)
            return cached.client

        in_flight = self._creating.get(organization_id)
        if in_flight:
            logger.debug("Waiting for in-flight client creation", organization_id=organization_id)
            return await asyncio.shield(in_flight)

        logger.info("Creating ERP client", organization_id=organization_id)
        task = asyncio.ensure_future(self._create_client(organization_id))
        self._creating[organization_id] = task
        try:
            client = await asyncio.shield(task)
        finally:
            self._creating.pop(organization_id, None)

        self._clients[organization_id] = _CachedClient(client, self.clock.now() + self.ttl_seconds)
        return client

    async def _create_client(self, organization_id: str) -> ResilientClient:
        with Session(self.engine) as session:
            record = session.exec(
                select(ProvisioningRecord).where(
                    col(ProvisioningRecord.organization_id) == organization_id,
                    col(ProvisioningRecord.provisioning_status) == ProvisioningStatus.ACTIVE,
                )
            ).first()
            if record is None:
                raise InstanceNotFound(organization_id)
            instance_name = record.instance_name
            admin_login = record.admin_login
            encrypted_password = record.admin_password_encrypted

        tenant = self.server.bind(instance_name, admin_login, decrypt_secret(encrypted_password))
        client = ResilientClient(
            tenant,
            self.audit_log,
            self.idempotency,
            clock=self.clock,
            organization_id=organization_id,
            name=instance_name,
        )
        await client.authenticate()
        logger.info("Authenticated ERP client", organization_id=organization_id, instance_name=instance_name)
        return client

    def invalidate(self, organization_id: str) -> None:
        if self._clients.pop(organization_id, None):
            logger.info("Invalidated ERP client cache", organization_id=organization_id)

    def cleanup_expired(self) -> int:
        now = self.clock.now()
        expired = [org_id for org_id, cached in self._clients.items() if cached.expires_at <= now]
        for org_id in expired:
            del self._clients[org_id]
        if expired:
            logger.debug("Cleaned up expired ERP clients", cleaned_count=len(expired))
        return len(expired)

    def cache_stats(self) -> Dict[str, int]:
        now = self.clock.now()
        active = sum(1 for cached in self._clients.values() if cached.expires_at > now)
        return {
            "total": len(self._clients),
            "active": active,
            "expired": len(self._clients) - active,
        }

    def cached_clients(self) -> Dict[str, ResilientClient]:
        """Live clients by organization id, for the health endpoint."""
        now = self.clock.now()
        return {org_id: cached.client for org_id, cached in self._clients.items() if cached.expires_at > now}


__all__ = ["ClientManager"]
