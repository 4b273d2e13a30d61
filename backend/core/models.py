# backend/core/models.py
import asyncio
import time
from collections import deque
from dataclasses import dataclass, field
from enum import Enum

from pydantic import BaseModel, model_validator

from . import config


class InstanceState(str, Enum):
    STARTING = "starting"
    RUNNING = "running"


class NodeStatus(str, Enum):
    ACTIVE = "active"
    OFFLINE = "offline"


@dataclass
class TenantInstance:
    """One live file manager worker. Owned by TenantProcessManager."""

    tenant_id: int
    port: int
    root_path: str
    process: asyncio.subprocess.Process
    state: InstanceState = InstanceState.STARTING
    last_access: float = field(default_factory=time.time)
    started_at: float = field(default_factory=time.time)
    killed: bool = False
    output: deque = field(default_factory=lambda: deque(maxlen=200))

    @property
    def pid(self) -> int | None:
        return self.process.pid

    def is_alive(self) -> bool:
        return not self.killed and self.process.returncode is None

    def touch(self):
        self.last_access = time.time()

    def output_tail(self) -> str:
        return "".join(self.output)


class ServerNode(BaseModel):
    """A row of the persisted node table."""

    id: int
    name: str
    ip: str
    is_local: bool = False
    ssh_user: str | None = None
    ssh_password: str | None = None  # encrypted, see core.crypto
    ssh_port: int | None = config.DEFAULT_SSH_PORT
    status: NodeStatus = NodeStatus.ACTIVE
    last_seen: str | None = None
    cpu_usage: float = 0.0
    ram_usage: float = 0.0
    disk_usage: float = 0.0
    uptime: float = 0.0

    @model_validator(mode="after")
    def _local_nodes_have_no_credentials(self):
        if self.is_local:
            self.ssh_user = None
            self.ssh_password = None
        return self

    @property
    def has_ssh_credentials(self) -> bool:
        return bool(self.ssh_user and self.ssh_password)

    @property
    def probe_port(self) -> int:
        return self.ssh_port or config.DEFAULT_SSH_PORT


@dataclass
class HeartbeatResult:
    """Outcome of one probe. Metrics are None when the probe could not read them."""

    reachable: bool
    cpu_usage: float | None = None
    ram_usage: float | None = None
    disk_usage: float | None = None
    uptime: float | None = None

    @property
    def has_metrics(self) -> bool:
        return self.cpu_usage is not None
