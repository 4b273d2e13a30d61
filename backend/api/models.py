# backend/api/models.py
from pydantic import BaseModel


class Node(BaseModel):
    id: int
    name: str
    ip: str
    is_local: bool
    ssh_user: str | None
    ssh_port: int | None
    status: str
    last_seen: str | None
    cpu_usage: float
    ram_usage: float
    disk_usage: float
    uptime: float


class HeartbeatSummary(BaseModel):
    checked: int
    statuses: dict[int, str | None]


class TenantInstanceInfo(BaseModel):
    tenant_id: int
    port: int
    pid: int | None
    root_path: str
    state: str
    alive: bool
    last_access: float
    started_at: float
