"""
Tenant Provisioning

Creates one dedicated ERP instance per organization, waits for it to come up,
applies the company name and records the outcome. Any failure after the
remote instance exists drops it again before the error is re-raised.

State per tenant: none -> provisioning -> active | failed. A failed tenant
can be provisioned again; its row is reused.

Usage:
    orchestrator = ProvisioningOrchestrator(engine, OdooClient(settings.ODOO_URL))
    result = await orchestrator.provision(organization_id)
    ...
    await orchestrator.delete_instance(organization_id)
"""

import random
import re
from dataclasses import dataclass
from typing import Callable, List, Optional

import structlog
from sqlalchemy import delete, update
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlmodel import Session, select

from erpgate.core.clock import Clock, system_clock
from erpgate.core.config import settings
from erpgate.core.errors import capture_exception
from erpgate.core.exceptions import InstanceAlreadyExists, InstanceNotFound, OrganizationNotFound
from erpgate.core.retry import RetryExecutor, RetryPolicy
from erpgate.core.security import decrypt_secret, encrypt_secret, generate_admin_password
from erpgate.core.typing import col, utc_now
from erpgate.models.organization import Organization
from erpgate.models.provisioning import ProvisioningRecord, ProvisioningStatus
from erpgate.services.audit_log import AuditLogService
from erpgate.services.idempotency import IdempotencyStore
from erpgate.services.odoo_client import CreateInstanceParams, OdooClient
from erpgate.services.resilient_client import ResilientClient

logger = structlog.get_logger(__name__)

_UNSAFE_CHARS = re.compile(r"[^a-z0-9]")


def instance_name_for(slug: str, organization_id: str) -> str:
    """Deterministic instance name, e.g. ``odoo_acme_1a2b3c4d``."""
    sanitized = _UNSAFE_CHARS.sub("_", slug.lower())
    short_id = organization_id.replace("-", "")[:8]
    return f"odoo_{sanitized}_{short_id}"


def admin_login_for(slug: str) -> str:
    return f"admin_{slug}"


def language_for(locale: Optional[str]) -> str:
    return "ar_001" if locale == "ar" else "en_US"


@dataclass(frozen=True)
class ProvisionResult:
    organization_id: str
    instance_name: str
    admin_login: str
    service_url: str
    status: ProvisioningStatus


@dataclass(frozen=True)
class InstanceCredentials:
    instance_name: str
    admin_login: str
    admin_password: str
    service_url: str


class ProvisioningOrchestrator:
    def __init__(
        self,
        engine: Engine,
        server: OdooClient,
        clock: Clock = system_clock,
        rand: Callable[[], float] = random.random,
        audit_log: Optional[AuditLogService] = None,
        idempotency: Optional[IdempotencyStore] = None,
        master_password: Optional[str] = None,
        service_url: Optional[str] = None,
        on_instance_removed: Optional[Callable[[str], None]] = None,
    ):
        self.engine = engine
        self.server = server
        self.clock = clock
        self.rand = rand
        self.audit_log = audit_log or AuditLogService(engine)
        self.idempotency = idempotency or IdempotencyStore(engine)
        self.master_password = master_password if master_password is not None else settings.ODOO_MASTER_PASSWORD
        self.service_url = (service_url or settings.ODOO_URL).rstrip("/")
        self.on_instance_removed = on_instance_removed
        # Server-level calls (listing, existence checks, drops) share one breaker
        self.server_rpc = ResilientClient(
            server,
            self.audit_log,
            self.idempotency,
            clock=clock,
            rand=rand,
            name="erp-server",
        )

    # Lookups

    def _get_organization(self, organization_id: str) -> Organization:
        with Session(self.engine) as session:
            org = session.get(Organization, organization_id)
        if org is None:
            logger.error("Organization not found", organization_id=organization_id)
            raise OrganizationNotFound(organization_id)
        return org

    def _get_record(self, organization_id: str) -> Optional[ProvisioningRecord]:
        with Session(self.engine) as session:
            return session.exec(
                select(ProvisioningRecord).where(col(ProvisioningRecord.organization_id) == organization_id)
            ).first()

    def get_status(self, organization_id: str) -> Optional[ProvisioningRecord]:
        """Current provisioning record, for callers polling the status."""
        return self._get_record(organization_id)

    def get_credentials(self, organization_id: str) -> Optional[InstanceCredentials]:
        record = self._get_record(organization_id)
        if record is None:
            return None
        return InstanceCredentials(
            instance_name=record.instance_name,
            admin_login=record.admin_login,
            admin_password=decrypt_secret(record.admin_password_encrypted),
            service_url=record.service_url,
        )

    async def get_instance_info(self, organization_id: str) -> dict:
        org = self._get_organization(organization_id)
        instance_name = instance_name_for(org.slug, org.id)
        return {
            "instance_name": instance_name,
            "exists": await self.server_rpc.instance_exists(instance_name, organization_id=org.id),
        }

    async def list_instances(self) -> List[str]:
        return await self.server_rpc.list_instances()

    async def get_login_url(self, organization_id: str) -> str:
        info = await self.get_instance_info(organization_id)
        if not info["exists"]:
            raise InstanceNotFound(organization_id)
        return f"{self.service_url}/web/login?db={info['instance_name']}"

    # Provisioning

    def _claim_record(
        self,
        organization_id: str,
        instance_name: str,
        admin_login: str,
        admin_password: str,
        existing: Optional[ProvisioningRecord],
    ) -> None:
        """Insert (or reuse a failed) record in PROVISIONING before touching the server."""
        encrypted = encrypt_secret(admin_password)
        with Session(self.engine) as session:
            if existing is not None:
                stmt = (
                    update(ProvisioningRecord)
                    .where(
                        col(ProvisioningRecord.organization_id) == organization_id,
                        col(ProvisioningRecord.provisioning_status) == ProvisioningStatus.FAILED,
                    )
                    .values(
                        instance_name=instance_name,
                        admin_login=admin_login,
                        admin_password_encrypted=encrypted,
                        service_url=self.service_url,
                        provisioning_status=ProvisioningStatus.PROVISIONING,
                        provisioning_started_at=utc_now(),
                        provisioning_completed_at=None,
                        provisioning_error=None,
                    )
                )
                claimed = session.execute(stmt).rowcount
                session.commit()
                if not claimed:
                    raise InstanceAlreadyExists(organization_id, instance_name)
                return

            session.add(
                ProvisioningRecord(
                    organization_id=organization_id,
                    instance_name=instance_name,
                    admin_login=admin_login,
                    admin_password_encrypted=encrypted,
                    service_url=self.service_url,
                    provisioning_status=ProvisioningStatus.PROVISIONING,
                    provisioning_started_at=utc_now(),
                )
            )
            try:
                session.commit()
            except IntegrityError as e:
                session.rollback()
                raise InstanceAlreadyExists(organization_id, instance_name) from e

    def _set_status(
        self,
        organization_id: str,
        status: ProvisioningStatus,
        error: Optional[str] = None,
    ) -> None:
        with Session(self.engine) as session:
            record = session.exec(
                select(ProvisioningRecord).where(col(ProvisioningRecord.organization_id) == organization_id)
            ).one()
            record.provisioning_status = status
            record.provisioning_error = error
            if status == ProvisioningStatus.ACTIVE:
                record.provisioning_completed_at = utc_now()
            session.add(record)
            session.commit()

    async def provision(
        self,
        organization_id: str,
        lang: Optional[str] = None,
        demo: bool = False,
        country_code: Optional[str] = None,
        phone: str = "",
    ) -> ProvisionResult:
        logger.info("Starting instance provisioning", organization_id=organization_id)

        org = self._get_organization(organization_id)
        instance_name = instance_name_for(org.slug, org.id)
        admin_login = admin_login_for(org.slug)

        existing = self._get_record(organization_id)
        if existing is not None and existing.provisioning_status != ProvisioningStatus.FAILED:
            logger.warning(
                "Instance already provisioned or in progress",
                organization_id=organization_id,
                instance_name=existing.instance_name,
                status=existing.provisioning_status.value,
            )
            raise InstanceAlreadyExists(organization_id, existing.instance_name)

        if await self.server_rpc.instance_exists(instance_name, organization_id=organization_id):
            logger.error("Instance name already in use", organization_id=organization_id, instance_name=instance_name)
            raise InstanceAlreadyExists(organization_id, instance_name)

        admin_password = generate_admin_password()
        self._claim_record(organization_id, instance_name, admin_login, admin_password, existing)

        instance_created = False
        try:
            await self.server.create_instance(
                CreateInstanceParams(
                    master_password=self.master_password,
                    name=instance_name,
                    admin_login=admin_login,
                    admin_password=admin_password,
                    lang=lang or language_for(org.default_locale),
                    country_code=country_code or settings.PROVISION_COUNTRY_CODE,
                    phone=phone,
                    demo=demo,
                )
            )
            instance_created = True
            logger.info(
                "Instance created, waiting for initialization",
                organization_id=organization_id,
                instance_name=instance_name,
                settle_seconds=settings.PROVISION_SETTLE_DELAY,
            )
            await self.clock.sleep(settings.PROVISION_SETTLE_DELAY)

            tenant = self.server.bind(instance_name, admin_login, admin_password)
            identity = await self._authenticate_new_instance(tenant)
            logger.info("Authenticated against new instance", instance_name=instance_name, uid=identity.uid)

            await self._customize(tenant, org)

            self._set_status(organization_id, ProvisioningStatus.ACTIVE)
        except Exception as e:
            await self._compensate(organization_id, instance_name, instance_created, e)
            raise

        logger.info("Instance provisioned", organization_id=organization_id, instance_name=instance_name)
        return ProvisionResult(
            organization_id=organization_id,
            instance_name=instance_name,
            admin_login=admin_login,
            service_url=self.service_url,
            status=ProvisioningStatus.ACTIVE,
        )

    async def _authenticate_new_instance(self, tenant: OdooClient):
        # A freshly created instance keeps initializing for a while; any error is worth retrying
        policy = RetryPolicy(
            max_retries=settings.PROVISION_AUTH_RETRIES - 1,
            initial_delay=settings.PROVISION_AUTH_DELAY,
            max_delay=settings.PROVISION_MAX_DELAY,
            retry_any_error=True,
        )
        executor = RetryExecutor(policy, clock=self.clock, rand=self.rand)
        return await executor.run(tenant.authenticate, description="authenticate new instance")

    async def _customize(self, tenant: OdooClient, org: Organization) -> None:
        policy = RetryPolicy(
            max_retries=settings.PROVISION_CUSTOMIZE_RETRIES - 1,
            initial_delay=settings.PROVISION_CUSTOMIZE_DELAY,
            max_delay=settings.PROVISION_MAX_DELAY,
            retry_any_error=True,
        )
        rpc = ResilientClient(
            tenant,
            self.audit_log,
            self.idempotency,
            policy=policy,
            clock=self.clock,
            rand=self.rand,
            organization_id=org.id,
            name=tenant.database,
        )
        # Main company and its partner both carry the display name
        await rpc.write("res.company", [1], {"name": org.name})
        await rpc.write("res.partner", [1], {"name": org.name})
        logger.info("Company information updated", instance_name=tenant.database, company_name=org.name)

    async def _compensate(
        self,
        organization_id: str,
        instance_name: str,
        instance_created: bool,
        error: Exception,
    ) -> None:
        """Mark the record failed and drop the instance. Never raises."""
        message = str(error) or type(error).__name__
        logger.error(
            "Provisioning failed, rolling back",
            organization_id=organization_id,
            instance_name=instance_name,
            instance_created=instance_created,
            error=message,
        )

        try:
            self._set_status(organization_id, ProvisioningStatus.FAILED, error=message)
        except SQLAlchemyError as db_error:
            capture_exception(
                db_error,
                context={
                    "organization_id": organization_id,
                    "instance_name": instance_name,
                    "original_error": message,
                },
                level="fatal",
            )

        if not instance_created:
            return

        try:
            await self.server_rpc.delete_instance(self.master_password, instance_name, organization_id=organization_id)
            logger.info("Rollback successful, instance dropped", instance_name=instance_name)
        except Exception as cleanup_error:
            capture_exception(
                cleanup_error,
                context={
                    "organization_id": organization_id,
                    "instance_name": instance_name,
                    "original_error": message,
                    "manual_cleanup_required": True,
                },
                level="fatal",
                fingerprint=["provisioning_rollback_failed"],
            )

    # Teardown

    async def delete_instance(self, organization_id: str) -> bool:
        """
        Drop the remote instance, then the local record.

        Safe to re-run after a crash between the two steps: an instance that
        is already gone remotely is not dropped again. Returns False when
        there was no record to delete.
        """
        record = self._get_record(organization_id)
        if record is None:
            logger.warning("No provisioning record found, nothing to delete", organization_id=organization_id)
            return False

        instance_name = record.instance_name
        remote_deleted = False
        try:
            if await self.server_rpc.instance_exists(instance_name, organization_id=organization_id):
                await self.server_rpc.delete_instance(self.master_password, instance_name, organization_id=organization_id)
            else:
                logger.info("Instance already removed remotely", instance_name=instance_name)
            remote_deleted = True

            with Session(self.engine) as session:
                session.execute(
                    delete(ProvisioningRecord).where(col(ProvisioningRecord.organization_id) == organization_id)
                )
                session.commit()
        except Exception as e:
            logger.error(
                "Failed to delete instance",
                organization_id=organization_id,
                instance_name=instance_name,
                remote_deleted=remote_deleted,
                error=str(e),
            )
            if remote_deleted:
                capture_exception(
                    e,
                    context={
                        "organization_id": organization_id,
                        "instance_name": instance_name,
                        "manual_cleanup_required": True,
                    },
                    level="fatal",
                )
            raise

        if self.on_instance_removed:
            self.on_instance_removed(organization_id)
        logger.info("Instance deleted", organization_id=organization_id, instance_name=instance_name)
        return True


__all__ = [
    "ProvisioningOrchestrator",
    "ProvisionResult",
    "InstanceCredentials",
    "instance_name_for",
    "admin_login_for",
]
