# backend/api/routes.py
from fastapi import APIRouter, HTTPException, Request

from . import models
from core import state_manager
from core.models import ServerNode, TenantInstance

router = APIRouter()


def _format_node_response(node: ServerNode) -> models.Node:
    """Helper to format a node row into the Pydantic model. Never exposes the SSH password."""
    return models.Node(**node.model_dump(mode="json", exclude={"ssh_password"}))


def _format_instance_response(instance: TenantInstance) -> models.TenantInstanceInfo:
    return models.TenantInstanceInfo(
        tenant_id=instance.tenant_id,
        port=instance.port,
        pid=instance.pid,
        root_path=instance.root_path,
        state=instance.state.value,
        alive=instance.is_alive(),
        last_access=instance.last_access,
        started_at=instance.started_at,
    )


@router.get("/nodes", response_model=list[models.Node])
async def list_nodes():
    """Get every node with its last recorded heartbeat, local node first."""
    nodes = state_manager.list_server_nodes()
    nodes.sort(key=lambda n: (not n.is_local, n.name))
    return [_format_node_response(node) for node in nodes]


@router.get("/nodes/{node_id}", response_model=models.Node)
async def get_node(node_id: int):
    for node in state_manager.list_server_nodes():
        if node.id == node_id:
            return _format_node_response(node)
    raise HTTPException(status_code=404, detail="Node not found")


@router.post("/nodes/check", response_model=models.HeartbeatSummary)
async def check_nodes(request: Request):
    """Run a heartbeat cycle now instead of waiting for the next tick."""
    statuses = await request.app.state.heartbeat_monitor.check_nodes()
    return models.HeartbeatSummary(checked=len(statuses), statuses=statuses)


@router.get("/tenants/instances", response_model=list[models.TenantInstanceInfo])
async def list_instances(request: Request):
    """Live file manager workers, one per tenant."""
    manager = request.app.state.tenant_manager
    return [_format_instance_response(i) for i in manager.list_instances()]


@router.delete("/tenants/{tenant_id}/instance", status_code=204)
async def stop_instance(request: Request, tenant_id: int):
    """Stop a tenant's worker. The next request for that tenant starts a new one."""
    if not await request.app.state.tenant_manager.stop_instance(tenant_id):
        raise HTTPException(status_code=404, detail="No running instance for tenant")
    return
