from typing import Any, Dict, List, Optional
from pydantic import BaseModel
from datetime import datetime

from erpgate.models.provisioning import ProvisioningStatus


class ProvisionRequest(BaseModel):
    lang: Optional[str] = None  # defaults from the organization's locale
    demo: bool = False
    country_code: Optional[str] = None
    phone: str = ""
    install_modules: bool = True


class ProvisionResponse(BaseModel):
    organization_id: str
    instance_name: str
    admin_login: str
    service_url: str
    provisioning_status: ProvisioningStatus
    modules_scheduled: bool = False


class TenantStatusOut(BaseModel):
    organization_id: str
    instance_name: str
    service_url: str
    provisioning_status: ProvisioningStatus
    provisioning_started_at: Optional[datetime] = None
    provisioning_completed_at: Optional[datetime] = None
    provisioning_error: Optional[str] = None


class InstanceListOut(BaseModel):
    instances: List[str]
    count: int


class RpcHealthOut(BaseModel):
    server: Dict[str, Any]
    tenants: Dict[str, Dict[str, Any]]
    cache: Dict[str, int]
