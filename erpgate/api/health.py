from fastapi import APIRouter, Depends

from erpgate.api import deps
from erpgate.schemas import RpcHealthOut
from erpgate.services.client_manager import ClientManager
from erpgate.services.provisioning import ProvisioningOrchestrator

router = APIRouter()


@router.get("")
def health():
    """Basic health check endpoint."""
    return {"status": "healthy"}


@router.get("/rpc", response_model=RpcHealthOut)
def rpc_health(
    orchestrator: ProvisioningOrchestrator = Depends(deps.get_orchestrator),
    client_manager: ClientManager = Depends(deps.get_client_manager),
):
    """Metrics and breaker status of the server client and every cached tenant client."""
    server = orchestrator.server_rpc
    return RpcHealthOut(
        server={"metrics": server.get_metrics(), "circuit": server.get_circuit_status()},
        tenants={
            org_id: {"metrics": client.get_metrics(), "circuit": client.get_circuit_status()}
            for org_id, client in client_manager.cached_clients().items()
        },
        cache=client_manager.cache_stats(),
    )
