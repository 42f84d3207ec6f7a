from typing import NoReturn

import structlog
from fastapi import APIRouter, Depends, HTTPException, Response, status

from erpgate.api import deps
from erpgate.core.context import set_organization_id
from erpgate.core.exceptions import (
    CircuitOpenError,
    ErpGateError,
    InstanceAlreadyExists,
    InstanceNotFound,
    ModuleOperationBusy,
    OperationInProgressError,
    OrganizationNotFound,
    RemoteCallError,
)
from erpgate.schemas import InstanceListOut, ProvisionRequest, ProvisionResponse, TenantStatusOut
from erpgate.services.modules import ModuleInstaller, schedule_module_install
from erpgate.services.provisioning import ProvisioningOrchestrator

logger = structlog.get_logger(__name__)

router = APIRouter()


def _raise_http(error: ErpGateError) -> NoReturn:
    """Translate domain errors into HTTP responses."""
    if isinstance(error, (OrganizationNotFound, InstanceNotFound)):
        raise HTTPException(status_code=404, detail=str(error)) from error
    if isinstance(error, (InstanceAlreadyExists, OperationInProgressError)):
        raise HTTPException(status_code=409, detail=str(error)) from error
    if isinstance(error, CircuitOpenError):
        raise HTTPException(
            status_code=503,
            detail=str(error),
            headers={"Retry-After": str(max(1, int(error.retry_after)))},
        ) from error
    if isinstance(error, ModuleOperationBusy):
        raise HTTPException(status_code=503, detail=str(error)) from error
    if isinstance(error, RemoteCallError):
        raise HTTPException(status_code=502, detail=str(error)) from error
    raise HTTPException(status_code=500, detail=str(error)) from error


@router.get("/instances", response_model=InstanceListOut)
async def list_instances(orchestrator: ProvisioningOrchestrator = Depends(deps.get_orchestrator)):
    """Instance names currently present on the ERP server."""
    try:
        instances = await orchestrator.list_instances()
    except ErpGateError as e:
        _raise_http(e)
    return InstanceListOut(instances=instances, count=len(instances))


@router.post("/{organization_id}/provision", response_model=ProvisionResponse, status_code=status.HTTP_202_ACCEPTED)
async def provision_tenant(
    organization_id: str,
    body: ProvisionRequest = ProvisionRequest(),
    orchestrator: ProvisioningOrchestrator = Depends(deps.get_orchestrator),
    installer: ModuleInstaller = Depends(deps.get_module_installer),
):
    """
    Create the organization's ERP instance.

    Returns once the instance is active; module installation continues in the
    background, hence 202.
    """
    set_organization_id(organization_id)
    try:
        result = await orchestrator.provision(
            organization_id,
            lang=body.lang,
            demo=body.demo,
            country_code=body.country_code,
            phone=body.phone,
        )
    except ErpGateError as e:
        _raise_http(e)

    if body.install_modules:
        schedule_module_install(installer, organization_id)

    return ProvisionResponse(
        organization_id=result.organization_id,
        instance_name=result.instance_name,
        admin_login=result.admin_login,
        service_url=result.service_url,
        provisioning_status=result.status,
        modules_scheduled=body.install_modules,
    )


@router.get("/{organization_id}/status", response_model=TenantStatusOut)
def get_tenant_status(
    organization_id: str,
    orchestrator: ProvisioningOrchestrator = Depends(deps.get_orchestrator),
):
    record = orchestrator.get_status(organization_id)
    if record is None:
        raise HTTPException(status_code=404, detail="No ERP instance found for this organization")
    return TenantStatusOut(
        organization_id=record.organization_id,
        instance_name=record.instance_name,
        service_url=record.service_url,
        provisioning_status=record.provisioning_status,
        provisioning_started_at=record.provisioning_started_at,
        provisioning_completed_at=record.provisioning_completed_at,
        provisioning_error=record.provisioning_error,
    )


@router.delete("/{organization_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_tenant(
    organization_id: str,
    orchestrator: ProvisioningOrchestrator = Depends(deps.get_orchestrator),
):
    set_organization_id(organization_id)
    try:
        deleted = await orchestrator.delete_instance(organization_id)
    except ErpGateError as e:
        _raise_http(e)
    if not deleted:
        raise HTTPException(status_code=404, detail="No ERP instance found for this organization")
    return Response(status_code=status.HTTP_204_NO_CONTENT)
