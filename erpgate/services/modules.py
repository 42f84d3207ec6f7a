"""
Module Installer

Installs ERP modules on a tenant instance in two phases once provisioning has
returned: a small essential batch first, then the much larger extended batch.
Each batch is one ``button_immediate_install`` call; a failing batch fails as
a whole and modules it already installed are left in place.

Usage:
    installer = ModuleInstaller(client_manager)
    task = schedule_module_install(installer, organization_id)
"""

import asyncio
from typing import Any, Dict, List, Optional, Sequence, Set

import structlog

from erpgate.core.clock import Clock, system_clock
from erpgate.core.errors import ErrorHandler
from erpgate.core.exceptions import FailureKind, ModuleNotFound, ModuleOperationBusy
from erpgate.core.retry import RetryExecutor, RetryHooks, RetryPolicy, classify_failure
from erpgate.services.client_manager import ClientManager
from erpgate.services.resilient_client import ResilientClient

logger = structlog.get_logger(__name__)

MODULE_MODEL = "ir.module.module"
MODULE_CONTEXT = {"lang": "en_US"}

ESSENTIAL_MODULES: List[str] = [
    # Core business
    "account",
    "crm",
    "sale",
    "sale_crm",
    "hr",
    "hr_holidays",
    "hr_attendance",
    "hr_expense",
    "hr_recruitment",
    "hr_timesheet",
    "hr_presence",
    "hr_recruitment_skills",
    "hr_work_entry",
    "hr_hourly_cost",
    "project",
    "project_timesheet_holidays",
    "base_automation",
    "mail_group",
    "rating",
    "base_address_extended",
    "base_vat",
    "portal",
    # Platform access
    "auth_api_key",
]

EXTENDED_MODULES: List[str] = [
    # REST framework
    "component",
    "component_event",
    "extendable",
    "pydantic",
    "base_rest",
    "base_rest_pydantic",
    "base_rest_auth_api_key",
    "rest_log",
    "endpoint_route_handler",
    "fastapi",
    "fastapi_auth_api_key",
    # Server tools
    "auditlog",
    "auto_backup",
    "base_name_search_improved",
    "base_technical_user",
    "database_cleanup",
    "module_auto_update",
    "scheduler_error_mailer",
    "queue_job",
    "queue_job_cron",
    # Documents and reporting
    "dms",
    "dms_auto_classification",
    "dms_field",
    "report_xlsx",
    "report_csv",
    "report_qr",
    "report_xml",
    "report_py3o",
    "report_qweb_parameter",
    "report_qweb_encrypt",
    "report_qweb_pdf_watermark",
    "bi_sql_editor",
    "sql_export",
    "sql_export_excel",
    "mis_builder",
    # Mail
    "mail_tracking",
    "mail_tracking_mass_mailing",
    "mail_debrand",
    "mail_optional_autofollow",
    "mail_activity_board",
    # Partners and contracts
    "partner_firstname",
    "partner_second_lastname",
    "partner_statement",
    "partner_multi_relation",
    "partner_identification",
    "partner_company_group",
    "partner_external_map",
    "contract",
    "contract_sale",
    "contract_payment_mode",
    "contract_variable_quantity",
    # Accounting
    "account_asset_management",
    "account_asset_number",
    "account_financial_report",
    "account_fiscal_year",
    "account_fiscal_year_auto_create",
    "account_global_discount",
    "account_invoice_refund_link",
    "account_invoice_section_sale_order",
    "account_invoice_supplier_ref_unique",
    "account_invoice_triple_discount",
    "account_move_line_purchase_info",
    "account_move_line_sale_info",
    "account_move_template",
    "account_netting",
    "account_spread_cost_revenue",
    "account_tax_balance",
    "analytic_base_department",
    # Sales
    "sale_automatic_workflow",
    "sale_exception",
    "sale_global_discount",
    "sale_order_invoicing_grouping_criteria",
    "sale_order_type",
    "sale_product_set",
    "sale_quotation_number",
    "sale_stock_picking_invoicing",
    "sale_tier_validation",
    # Projects
    "project_department",
    "project_hr",
    "project_key",
    "project_task_code",
    "project_task_parent_completion_blocking",
    "project_task_stage_allow_timesheet",
    "project_role",
    "project_template",
    "project_timeline",
    # HR
    "hr_contract_reference",
    "hr_course",
    "hr_department_code",
    "hr_employee_age",
    "hr_employee_calendar_planning",
    "hr_employee_firstname",
    "hr_employee_id",
    "hr_employee_medical_examination",
    "hr_employee_relative",
    "hr_employee_service",
    "hr_expense_analytic_tag",
    "hr_timesheet_analytic_tag",
    "hr_timesheet_sheet",
    "helpdesk_mgmt",
    "helpdesk_mgmt_rating",
    "helpdesk_mgmt_sla",
    "helpdesk_mgmt_timesheet",
    # Web client
    "web_responsive",
    "web_m2x_options",
    "web_notify",
    "web_timeline",
    "web_environment_ribbon",
    "web_dialog_size",
    # Security and branding
    "password_security",
    "base_user_show_email",
    "disable_odoo_online",
    "portal_odoo_debranding",
]

# Pending states left behind by an interrupted module operation
STUCK_STATE_RESOLUTION = {
    "to install": "uninstalled",
    "to remove": "uninstalled",
    "to upgrade": "installed",
}

BUSY_MAX_RETRIES = 3
BUSY_INITIAL_DELAY = 2.0  # seconds, doubled on each retry


class _ClearStuckOnBusy(RetryHooks):
    def __init__(self, installer: "ModuleInstaller", client: ResilientClient):
        self.installer = installer
        self.client = client

    async def on_failure(self, attempt: int, error: BaseException, will_retry: bool, duration_ms: int) -> None:
        if will_retry:
            logger.warning(
                "Another module operation in progress, retrying after delay",
                attempt=attempt + 1,
                max_retries=BUSY_MAX_RETRIES,
                error=str(error),
            )
            await self.installer.clear_stuck_operations(self.client)


class ModuleInstaller:
    def __init__(self, client_manager: ClientManager, clock: Clock = system_clock):
        self.client_manager = client_manager
        self.clock = clock
        self._busy_policy = RetryPolicy(
            max_retries=BUSY_MAX_RETRIES,
            initial_delay=BUSY_INITIAL_DELAY,
            max_delay=BUSY_INITIAL_DELAY * 2**BUSY_MAX_RETRIES,
            retryable_kinds=frozenset({FailureKind.BUSY}),
        )

    async def clear_stuck_operations(self, client: ResilientClient) -> int:
        """Reset modules stuck in a pending state. Best effort; returns how many were reset."""
        try:
            stuck = await client.search_read(
                MODULE_MODEL,
                ["|", "|", ["state", "=", "to install"], ["state", "=", "to upgrade"], ["state", "=", "to remove"]],
                ["id", "name", "state"],
                context=MODULE_CONTEXT,
            )
        except Exception as e:
            logger.warning("Failed to check for stuck modules, continuing anyway", error=str(e))
            return 0

        if not stuck:
            return 0

        logger.warning(
            "Found stuck module operations, clearing them",
            stuck_modules=[{"name": m["name"], "state": m["state"]} for m in stuck],
        )
        cleared = 0
        for module in stuck:
            new_state = STUCK_STATE_RESOLUTION[module["state"]]
            try:
                await client.write(MODULE_MODEL, [module["id"]], {"state": new_state}, MODULE_CONTEXT)
                cleared += 1
                logger.info(
                    "Cleared stuck module state",
                    module_name=module["name"],
                    old_state=module["state"],
                    new_state=new_state,
                )
            except Exception as e:
                logger.warning("Failed to clear stuck module, continuing anyway", module_name=module["name"], error=str(e))
        return cleared

    async def _modules_by_name(self, client: ResilientClient, names: Sequence[str]) -> List[Dict[str, Any]]:
        records = await client.search_read(
            MODULE_MODEL,
            [["name", "in", list(names)]],
            ["id", "name", "display_name", "state"],
            context=MODULE_CONTEXT,
        )
        if not records:
            raise ModuleNotFound(f"No modules found with names: {', '.join(names)}")
        return records

    async def list_installed_modules(self, organization_id: str) -> List[Dict[str, Any]]:
        client = await self.client_manager.get_client(organization_id)
        return await client.search_read(
            MODULE_MODEL,
            [["state", "=", "installed"]],
            ["name", "display_name", "summary", "state"],
            context=MODULE_CONTEXT,
        )

    async def install_modules(self, organization_id: str, modules: Sequence[str]) -> List[str]:
        """Install one batch. Returns the names actually sent for installation."""
        client = await self.client_manager.get_client(organization_id)
        if not modules:
            logger.info("Empty module batch, nothing to install", organization_id=organization_id)
            return []
        logger.info("Starting module installation", organization_id=organization_id, module_count=len(modules))

        await self.clear_stuck_operations(client)
        records = await self._modules_by_name(client, modules)

        already_installed = [m["name"] for m in records if m["state"] == "installed"]
        pending = [m for m in records if m["state"] != "installed"]
        if already_installed:
            logger.info("Modules already installed, skipping", modules=already_installed)
        if not pending:
            logger.info("All modules already installed", organization_id=organization_id)
            return []

        module_ids = [m["id"] for m in pending]
        module_names = [m["name"] for m in pending]
        executor = RetryExecutor(self._busy_policy, clock=self.clock)
        try:
            await executor.run(
                lambda: client.action(MODULE_MODEL, "button_immediate_install", module_ids, MODULE_CONTEXT),
                hooks=_ClearStuckOnBusy(self, client),
                description="button_immediate_install",
            )
        except Exception as e:
            if classify_failure(e) == FailureKind.BUSY:
                logger.error("Max retries reached, module operation still in progress", organization_id=organization_id)
                raise ModuleOperationBusy(
                    "ERP server is busy with another module operation. Please try again in a few moments."
                ) from e
            logger.error("Module installation failed", organization_id=organization_id, modules=module_names, error=str(e))
            await self.clear_stuck_operations(client)
            raise

        logger.info("Modules installed", organization_id=organization_id, installed=module_names)
        return module_names

    async def uninstall_modules(self, organization_id: str, modules: Sequence[str]) -> List[str]:
        client = await self.client_manager.get_client(organization_id)
        logger.info("Starting module uninstallation", organization_id=organization_id, modules=list(modules))

        await self.clear_stuck_operations(client)
        records = await self._modules_by_name(client, modules)

        not_installed = [m["name"] for m in records if m["state"] != "installed"]
        installed = [m for m in records if m["state"] == "installed"]
        if not_installed:
            logger.info("Modules not installed, skipping", modules=not_installed)
        if not installed:
            return []

        module_names = [m["name"] for m in installed]
        try:
            await client.action(MODULE_MODEL, "button_immediate_uninstall", [m["id"] for m in installed], MODULE_CONTEXT)
        except Exception as e:
            logger.error("Module uninstallation failed", organization_id=organization_id, modules=module_names, error=str(e))
            await self.clear_stuck_operations(client)
            raise

        logger.info("Modules uninstalled", organization_id=organization_id, uninstalled=module_names)
        return module_names

    async def install_for_organization(
        self,
        organization_id: str,
        essential: Optional[Sequence[str]] = None,
        extended: Optional[Sequence[str]] = None,
    ) -> None:
        """Essential batch, then extended batch. An extended failure leaves the essential batch installed."""
        logger.info("Installing essential modules", organization_id=organization_id)
        await self.install_modules(organization_id, ESSENTIAL_MODULES if essential is None else essential)

        logger.info("Installing extended modules", organization_id=organization_id)
        await self.install_modules(organization_id, EXTENDED_MODULES if extended is None else extended)

        logger.info("All modules installed", organization_id=organization_id)


async def _run_install(installer: ModuleInstaller, organization_id: str) -> None:
    with ErrorHandler("install_modules", context={"organization_id": organization_id}):
        await installer.install_for_organization(organization_id)


# The event loop keeps only weak references to tasks
_background_tasks: Set[asyncio.Task] = set()


def schedule_module_install(installer: ModuleInstaller, organization_id: str) -> asyncio.Task:
    """Run the two-phase install in the background. Failures are captured, not raised."""
    task = asyncio.create_task(_run_install(installer, organization_id), name=f"install-modules-{organization_id}")
    _background_tasks.add(task)
    task.add_done_callback(_background_tasks.discard)
    return task


__all__ = [
    "ModuleInstaller",
    "schedule_module_install",
    "ESSENTIAL_MODULES",
    "EXTENDED_MODULES",
]
