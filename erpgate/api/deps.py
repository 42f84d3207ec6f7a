"""
Service singletons for the API layer.

Everything that keeps state across requests (the server connection pool,
cached tenant clients and their breakers) is created once per process here.
Tests swap them through ``app.dependency_overrides``.
"""

from typing import Optional

from erpgate.core.config import settings
from erpgate.db import engine
from erpgate.services.audit_log import AuditLogService
from erpgate.services.client_manager import ClientManager
from erpgate.services.idempotency import IdempotencyStore
from erpgate.services.modules import ModuleInstaller
from erpgate.services.odoo_client import OdooClient
from erpgate.services.provisioning import ProvisioningOrchestrator

_server: Optional[OdooClient] = None
_audit_log: Optional[AuditLogService] = None
_idempotency: Optional[IdempotencyStore] = None
_client_manager: Optional[ClientManager] = None
_orchestrator: Optional[ProvisioningOrchestrator] = None
_installer: Optional[ModuleInstaller] = None


def get_odoo_server() -> OdooClient:
    global _server
    if _server is None:
        _server = OdooClient(settings.ODOO_URL, timeout=settings.ODOO_REQUEST_TIMEOUT)
    return _server


def get_audit_log() -> AuditLogService:
    global _audit_log
    if _audit_log is None:
        _audit_log = AuditLogService(engine)
    return _audit_log


def get_idempotency_store() -> IdempotencyStore:
    global _idempotency
    if _idempotency is None:
        _idempotency = IdempotencyStore(engine)
    return _idempotency


def get_client_manager() -> ClientManager:
    global _client_manager
    if _client_manager is None:
        _client_manager = ClientManager(
            engine,
            get_odoo_server(),
            audit_log=get_audit_log(),
            idempotency=get_idempotency_store(),
        )
    return _client_manager


def get_orchestrator() -> ProvisioningOrchestrator:
    global _orchestrator
    if _orchestrator is None:
        _orchestrator = ProvisioningOrchestrator(
            engine,
            get_odoo_server(),
            audit_log=get_audit_log(),
            idempotency=get_idempotency_store(),
            on_instance_removed=get_client_manager().invalidate,
        )
    return _orchestrator


def get_module_installer() -> ModuleInstaller:
    global _installer
    if _installer is None:
        _installer = ModuleInstaller(get_client_manager())
    return _installer


async def close_services() -> None:
    """Release the shared HTTP pool on shutdown."""
    global _server
    if _server is not None:
        await _server.aclose()
        _server = None
