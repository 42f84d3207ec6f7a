"""
Tests for tenant provisioning.

Tests cover:
1. Naming helpers
2. Happy path (record, remote instance, settle delay, customization)
3. Guards (unknown org, duplicate, name collision)
4. Rollback on failure and rollback failure reporting
5. Re-provisioning a failed tenant
6. Deletion ordering and re-runs
7. Credentials and login URL
"""

from unittest.mock import MagicMock, patch

import pytest
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import select

from erpgate.core.exceptions import (
    InstanceAlreadyExists,
    InstanceNotFound,
    OrganizationNotFound,
    RemoteCallError,
)
from erpgate.core.security import decrypt_secret
from erpgate.core.typing import col
from erpgate.models.audit import AuditStatus, OperationAuditLog
from erpgate.models.organization import Organization
from erpgate.models.provisioning import ProvisioningRecord, ProvisioningStatus
from erpgate.services.modules import ESSENTIAL_MODULES, EXTENDED_MODULES, ModuleInstaller
from erpgate.services.odoo_client import CreateInstanceParams
from erpgate.services.provisioning import (
    ProvisioningOrchestrator,
    admin_login_for,
    instance_name_for,
    language_for,
)

ACME_ORG_ID = "1a2b3c4d-5e6f-4a1b-8c9d-0e1f2a3b4c5d"
ACME_INSTANCE = "odoo_acme_1a2b3c4d"


@pytest.fixture
def orchestrator(test_engine, fake_server, fake_clock, audit_log, idempotency_store):
    return ProvisioningOrchestrator(
        test_engine,
        fake_server,
        clock=fake_clock,
        rand=lambda: 0.0,
        audit_log=audit_log,
        idempotency=idempotency_store,
    )


def _record(session) -> ProvisioningRecord:
    session.expire_all()
    return session.exec(
        select(ProvisioningRecord).where(col(ProvisioningRecord.organization_id) == ACME_ORG_ID)
    ).first()


def _audit_rows(session):
    session.expire_all()
    return session.exec(
        select(OperationAuditLog)
        .where(col(OperationAuditLog.organization_id) == ACME_ORG_ID)
        .order_by(col(OperationAuditLog.id).asc())
    ).all()


class TestNaming:
    def test_instance_name(self):
        assert instance_name_for("acme", ACME_ORG_ID) == ACME_INSTANCE

    def test_instance_name_sanitizes_slug(self):
        assert instance_name_for("Acme-Trading.co", ACME_ORG_ID) == "odoo_acme_trading_co_1a2b3c4d"

    def test_admin_login(self):
        assert admin_login_for("acme") == "admin_acme"

    def test_language(self):
        assert language_for("ar") == "ar_001"
        assert language_for("en") == "en_US"
        assert language_for(None) == "en_US"


class TestProvision:
    @pytest.mark.asyncio
    async def test_happy_path(self, orchestrator, acme, fake_server, fake_clock, test_session):
        result = await orchestrator.provision(ACME_ORG_ID)

        assert result.instance_name == ACME_INSTANCE
        assert result.admin_login == "admin_acme"
        assert result.service_url == "http://erp.test:8069"
        assert result.status == ProvisioningStatus.ACTIVE

        record = _record(test_session)
        assert record.provisioning_status == ProvisioningStatus.ACTIVE
        assert record.provisioning_error is None
        assert record.provisioning_completed_at is not None
        assert record.admin_password_encrypted != decrypt_secret(record.admin_password_encrypted)

        instance = fake_server.instances[ACME_INSTANCE]
        assert instance.params.admin_login == "admin_acme"
        assert instance.params.admin_password == decrypt_secret(record.admin_password_encrypted)
        assert instance.params.lang == "en_US"
        assert instance.params.country_code == "SA"
        assert instance.records["res.company"][1]["name"] == "Acme Trading LLC"
        assert instance.records["res.partner"][1]["name"] == "Acme Trading LLC"

        assert fake_clock.sleeps == [10.0]
        assert fake_server.call_names()[:3] == ["instance_exists", "create_instance", "authenticate"]

    @pytest.mark.asyncio
    async def test_customization_is_audited(self, orchestrator, acme, test_session):
        await orchestrator.provision(ACME_ORG_ID)

        rows = _audit_rows(test_session)
        assert sorted(r.operation_type for r in rows) == ["instance_exists", "write", "write"]
        assert sorted(r.target_model for r in rows if r.operation_type == "write") == ["res.company", "res.partner"]

    @pytest.mark.asyncio
    async def test_arabic_locale_and_options(self, orchestrator, test_session, fake_server):
        org = Organization(id=ACME_ORG_ID, name="Acme", slug="acme", default_locale="ar")
        test_session.add(org)
        test_session.commit()

        await orchestrator.provision(ACME_ORG_ID, demo=True, country_code="AE", phone="+971500000000")

        params = fake_server.instances[ACME_INSTANCE].params
        assert params.lang == "ar_001"
        assert params.demo is True
        assert params.country_code == "AE"
        assert params.phone == "+971500000000"

    @pytest.mark.asyncio
    async def test_waits_for_instance_to_accept_logins(self, orchestrator, acme, fake_server, fake_clock):
        fake_server.auth_failures_remaining = 2

        await orchestrator.provision(ACME_ORG_ID)

        assert fake_clock.sleeps == [10.0, 3.0, 6.0]
        assert fake_server.call_names().count("authenticate") == 3

    @pytest.mark.asyncio
    async def test_unknown_organization(self, orchestrator, fake_server):
        with pytest.raises(OrganizationNotFound):
            await orchestrator.provision("missing-org")
        assert fake_server.calls == []

    @pytest.mark.asyncio
    async def test_duplicate_rejected_before_remote_calls(self, orchestrator, acme, fake_server):
        await orchestrator.provision(ACME_ORG_ID)
        calls_before = len(fake_server.calls)

        with pytest.raises(InstanceAlreadyExists):
            await orchestrator.provision(ACME_ORG_ID)
        assert len(fake_server.calls) == calls_before

    @pytest.mark.asyncio
    async def test_existing_remote_instance_is_left_alone(self, orchestrator, acme, fake_server, test_session):
        await fake_server.create_instance(
            CreateInstanceParams(master_password="master-secret", name=ACME_INSTANCE, admin_login="x", admin_password="y")
        )
        fake_server.calls.clear()

        with pytest.raises(InstanceAlreadyExists):
            await orchestrator.provision(ACME_ORG_ID)

        assert _record(test_session) is None
        assert ACME_INSTANCE in fake_server.instances
        assert "create_instance" not in fake_server.call_names()


class TestRollback:
    @pytest.mark.asyncio
    async def test_customize_failure_drops_instance(self, orchestrator, acme, fake_server, test_session):
        fake_server.fail_next("write", RemoteCallError("ValidationError: company name"), times=5)

        with pytest.raises(RemoteCallError, match="company name"):
            await orchestrator.provision(ACME_ORG_ID)

        assert ACME_INSTANCE not in fake_server.instances
        assert fake_server.call_names()[-1] == "delete_instance"

        record = _record(test_session)
        assert record.provisioning_status == ProvisioningStatus.FAILED
        assert "company name" in record.provisioning_error

    @pytest.mark.asyncio
    async def test_rollback_drop_is_audited(self, orchestrator, acme, fake_server, test_session):
        fake_server.fail_next("write", RemoteCallError("ValidationError: company name"), times=5)

        with pytest.raises(RemoteCallError):
            await orchestrator.provision(ACME_ORG_ID)

        rows = _audit_rows(test_session)
        assert rows[0].operation_type == "instance_exists"
        assert rows[-1].operation_type == "delete_instance"
        assert rows[-1].status == AuditStatus.SUCCESS
        assert rows[-1].request_payload == {"name": ACME_INSTANCE}

    @pytest.mark.asyncio
    async def test_create_failure_has_nothing_to_drop(self, orchestrator, acme, fake_server, test_session):
        fake_server.fail_next("create_instance", RemoteCallError("Access Denied"))

        with pytest.raises(RemoteCallError):
            await orchestrator.provision(ACME_ORG_ID)

        assert "delete_instance" not in fake_server.call_names()
        assert _record(test_session).provisioning_status == ProvisioningStatus.FAILED

    @pytest.mark.asyncio
    async def test_authentication_never_succeeding(self, orchestrator, acme, fake_server, fake_clock, test_session):
        fake_server.auth_failures_remaining = 100

        with pytest.raises(RemoteCallError, match="initializing"):
            await orchestrator.provision(ACME_ORG_ID)

        assert fake_server.call_names().count("authenticate") == 10
        assert ACME_INSTANCE not in fake_server.instances
        assert _record(test_session).provisioning_status == ProvisioningStatus.FAILED

    @pytest.mark.asyncio
    async def test_rollback_failure_is_reported(self, orchestrator, acme, fake_server, test_session):
        fake_server.fail_next("write", RemoteCallError("ValidationError: company name"), times=5)
        fake_server.fail_next("delete_instance", RemoteCallError("Access Denied"))

        with patch("erpgate.services.provisioning.capture_exception") as capture:
            with pytest.raises(RemoteCallError, match="company name"):
                await orchestrator.provision(ACME_ORG_ID)

        capture.assert_called_once()
        kwargs = capture.call_args.kwargs
        assert kwargs["level"] == "fatal"
        assert kwargs["context"]["manual_cleanup_required"] is True
        assert kwargs["context"]["instance_name"] == ACME_INSTANCE
        assert "company name" in kwargs["context"]["original_error"]
        assert ACME_INSTANCE in fake_server.instances
        assert _record(test_session).provisioning_status == ProvisioningStatus.FAILED

    @pytest.mark.asyncio
    async def test_failed_tenant_can_be_provisioned_again(self, orchestrator, acme, fake_server, test_session):
        fake_server.fail_next("create_instance", RemoteCallError("Database creation error"))
        with pytest.raises(RemoteCallError):
            await orchestrator.provision(ACME_ORG_ID)
        failed_id = _record(test_session).id

        result = await orchestrator.provision(ACME_ORG_ID)

        record = _record(test_session)
        assert result.status == ProvisioningStatus.ACTIVE
        assert record.id == failed_id
        assert record.provisioning_status == ProvisioningStatus.ACTIVE
        assert record.provisioning_error is None


class TestDelete:
    @pytest.mark.asyncio
    async def test_remote_then_local(self, test_engine, fake_server, fake_clock, acme, test_session):
        removed = MagicMock()
        orchestrator = ProvisioningOrchestrator(
            test_engine, fake_server, clock=fake_clock, rand=lambda: 0.0, on_instance_removed=removed
        )
        await orchestrator.provision(ACME_ORG_ID)
        fake_server.calls.clear()

        assert await orchestrator.delete_instance(ACME_ORG_ID) is True

        assert fake_server.call_names() == ["instance_exists", "delete_instance"]
        assert ACME_INSTANCE not in fake_server.instances
        assert _record(test_session) is None
        removed.assert_called_once_with(ACME_ORG_ID)

    @pytest.mark.asyncio
    async def test_rerun_after_remote_drop(self, orchestrator, acme, fake_server, test_session):
        await orchestrator.provision(ACME_ORG_ID)
        # Crash after the remote drop but before the local delete
        del fake_server.instances[ACME_INSTANCE]
        fake_server.calls.clear()

        assert await orchestrator.delete_instance(ACME_ORG_ID) is True

        assert "delete_instance" not in fake_server.call_names()
        assert _record(test_session) is None

    @pytest.mark.asyncio
    async def test_nothing_to_delete(self, orchestrator, acme, fake_server):
        assert await orchestrator.delete_instance(ACME_ORG_ID) is False
        assert fake_server.calls == []

    @pytest.mark.asyncio
    async def test_remote_failure_keeps_record(self, orchestrator, acme, fake_server, test_session):
        await orchestrator.provision(ACME_ORG_ID)
        fake_server.fail_next("delete_instance", RemoteCallError("Access Denied"))

        with pytest.raises(RemoteCallError):
            await orchestrator.delete_instance(ACME_ORG_ID)

        assert _record(test_session) is not None
        assert ACME_INSTANCE in fake_server.instances


class TestLookups:
    @pytest.mark.asyncio
    async def test_credentials_open_the_instance(self, orchestrator, acme, fake_server):
        await orchestrator.provision(ACME_ORG_ID)

        creds = orchestrator.get_credentials(ACME_ORG_ID)
        tenant = fake_server.bind(creds.instance_name, creds.admin_login, creds.admin_password)

        identity = await tenant.authenticate()
        assert identity.database == ACME_INSTANCE

    def test_credentials_without_record(self, orchestrator, acme):
        assert orchestrator.get_credentials(ACME_ORG_ID) is None

    @pytest.mark.asyncio
    async def test_login_url(self, orchestrator, acme):
        await orchestrator.provision(ACME_ORG_ID)

        url = await orchestrator.get_login_url(ACME_ORG_ID)
        assert url == f"http://erp.test:8069/web/login?db={ACME_INSTANCE}"

    @pytest.mark.asyncio
    async def test_login_url_without_instance(self, orchestrator, acme):
        with pytest.raises(InstanceNotFound):
            await orchestrator.get_login_url(ACME_ORG_ID)

    @pytest.mark.asyncio
    async def test_instance_info_and_listing(self, orchestrator, acme):
        assert await orchestrator.get_instance_info(ACME_ORG_ID) == {"instance_name": ACME_INSTANCE, "exists": False}

        await orchestrator.provision(ACME_ORG_ID)

        assert (await orchestrator.get_instance_info(ACME_ORG_ID))["exists"] is True
        assert await orchestrator.list_instances() == [ACME_INSTANCE]

    @pytest.mark.asyncio
    async def test_status(self, orchestrator, acme):
        assert orchestrator.get_status(ACME_ORG_ID) is None
        await orchestrator.provision(ACME_ORG_ID)
        assert orchestrator.get_status(ACME_ORG_ID).provisioning_status == ProvisioningStatus.ACTIVE


class TestTenantLifecycle:
    @pytest.mark.asyncio
    async def test_provision_install_list_and_delete_after_crash(
        self, test_engine, fake_server, fake_clock, audit_log, idempotency_store, client_manager, acme, test_session
    ):
        orchestrator = ProvisioningOrchestrator(
            test_engine,
            fake_server,
            clock=fake_clock,
            rand=lambda: 0.0,
            audit_log=audit_log,
            idempotency=idempotency_store,
            on_instance_removed=client_manager.invalidate,
        )
        installer = ModuleInstaller(client_manager, clock=fake_clock)

        result = await orchestrator.provision(ACME_ORG_ID)
        assert result.status == ProvisioningStatus.ACTIVE
        assert _record(test_session).provisioning_status == ProvisioningStatus.ACTIVE

        await installer.install_for_organization(ACME_ORG_ID)
        instance = fake_server.instances[ACME_INSTANCE]
        assert all(instance.module_state(name) == "installed" for name in ESSENTIAL_MODULES + EXTENDED_MODULES)

        assert await orchestrator.list_instances() == [ACME_INSTANCE]

        # Remote drop succeeds, then the local delete fails
        with patch("erpgate.services.provisioning.delete", side_effect=SQLAlchemyError("database is locked")):
            with patch("erpgate.services.provisioning.capture_exception") as capture:
                with pytest.raises(SQLAlchemyError):
                    await orchestrator.delete_instance(ACME_ORG_ID)

        assert ACME_INSTANCE not in fake_server.instances
        assert _record(test_session) is not None
        assert capture.call_args.kwargs["context"]["manual_cleanup_required"] is True

        fake_server.calls.clear()
        assert await orchestrator.delete_instance(ACME_ORG_ID) is True

        assert fake_server.call_names() == ["instance_exists"]
        assert _record(test_session) is None
        assert await orchestrator.list_instances() == []
        assert client_manager.cache_stats()["total"] == 0
