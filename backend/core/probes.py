# backend/core/probes.py
"""
Node probes for the fleet heartbeat.

    LocalProbe      - reads this host's metrics through psutil
    RemoteSSHProbe  - runs one composite shell command over SSH (paramiko)
    TCPPingProbe    - connects to the SSH port; liveness only, no metrics
    FallbackProbe   - tries one probe and falls back to another on SSH errors

probe_for_node() picks the right combination for a ServerNode.
"""
import asyncio
import logging
import math
import os
import re
import time

import paramiko
import psutil

from . import config
from .crypto import decrypt
from .errors import ProbeTimeout, SSHCommandError, SSHConnectionError
from .models import HeartbeatResult, ServerNode

logger = logging.getLogger(__name__)

# Emits "cpu_idle|mem_total mem_used|disk_pct|uptime_seconds" in one round trip.
HEARTBEAT_COMMAND = """
cpu_idle=$(vmstat 1 2 | tail -1 | awk '{print $15}')
mem_stats=$(free -m | grep Mem | awk '{print $2,$3}')
disk_usage=$(df -h / | tail -1 | awk '{print $5}' | tr -d '%')
uptime_val=$(cat /proc/uptime | awk '{print $1}')
echo "$cpu_idle|$mem_stats|$disk_usage|$uptime_val"
"""

_FIELD_SPLIT = re.compile(r"[\s|]+")


def _number(value: str | None, default: float = 0.0) -> float | None:
    """float(value); default when the field is missing, None when it is not a finite number."""
    if value is None or value == "":
        return default
    try:
        number = float(value)
    except ValueError:
        return None
    return number if math.isfinite(number) else None


def parse_heartbeat_line(line: str) -> HeartbeatResult:
    """
    Parses the output of HEARTBEAT_COMMAND.

    Missing fields take neutral defaults (idle 100, total 1) and anything
    that is not a number becomes 0, so a partly garbled line still gives
    a best-effort result instead of an error.
    """
    fields = [f for f in _FIELD_SPLIT.split(line.strip()) if f]
    fields += [None] * (5 - len(fields))
    cpu_idle, mem_total, mem_used, disk, uptime = fields[:5]

    idle = _number(cpu_idle, 100.0)
    total = _number(mem_total, 1.0)
    used = _number(mem_used)

    return HeartbeatResult(
        reachable=True,
        cpu_usage=100.0 - idle if idle is not None else 0.0,
        ram_usage=(used / total) * 100.0 if total and used is not None else 0.0,
        disk_usage=_number(disk) or 0.0,
        uptime=_number(uptime) or 0.0,
    )


class NodeProbe:
    """One health/metrics check against one machine."""

    name = "probe"

    async def probe(self, node: ServerNode) -> HeartbeatResult:
        raise NotImplementedError


class LocalProbe(NodeProbe):
    name = "local"

    def __init__(self, cpu_sample_interval: float = 1.0):
        self.cpu_sample_interval = cpu_sample_interval

    async def probe(self, node: ServerNode) -> HeartbeatResult:
        return await asyncio.to_thread(self._collect)

    def _collect(self) -> HeartbeatResult:
        cpu = psutil.cpu_percent(interval=self.cpu_sample_interval)
        mem = psutil.virtual_memory()
        disk = psutil.disk_usage(_primary_volume())
        return HeartbeatResult(
            reachable=True,
            cpu_usage=float(cpu),
            ram_usage=((mem.total - mem.available) / mem.total) * 100.0 if mem.total else 0.0,
            disk_usage=float(disk.percent),
            uptime=time.time() - psutil.boot_time(),
        )


def _primary_volume() -> str:
    if os.name == "nt":
        return os.environ.get("SystemDrive", "C:") + "\\"
    return "/"


class RemoteSSHProbe(NodeProbe):
    name = "ssh"

    def __init__(self, connect_timeout: float = config.SSH_CONNECT_TIMEOUT,
                 command_timeout: float = config.SSH_COMMAND_TIMEOUT,
                 command: str = HEARTBEAT_COMMAND):
        self.connect_timeout = connect_timeout
        self.command_timeout = command_timeout
        self.command = command

    async def probe(self, node: ServerNode) -> HeartbeatResult:
        stdout = await asyncio.to_thread(self._run, node)
        return parse_heartbeat_line(stdout)

    def _run(self, node: ServerNode) -> str:
        try:
            password = decrypt(node.ssh_password)
        except ValueError as e:
            raise SSHConnectionError(f"Cannot decrypt SSH password for {node.name}: {e}") from e

        client = paramiko.SSHClient()
        client.set_missing_host_key_policy(paramiko.AutoAddPolicy())
        try:
            try:
                client.connect(
                    hostname=node.ip,
                    port=node.probe_port,
                    username=node.ssh_user,
                    password=password,
                    timeout=self.connect_timeout,
                    banner_timeout=self.connect_timeout,
                    auth_timeout=self.connect_timeout,
                    look_for_keys=False,
                    allow_agent=False,
                )
            except (paramiko.SSHException, OSError) as e:
                raise SSHConnectionError(f"SSH connection to {node.name} ({node.ip}) failed: {e}") from e

            try:
                _stdin, stdout, stderr = client.exec_command(self.command, timeout=self.command_timeout)
                output = stdout.read().decode("utf-8", errors="replace")
                errors = stderr.read().decode("utf-8", errors="replace").strip()
            except (paramiko.SSHException, OSError) as e:
                raise SSHCommandError(f"Heartbeat command on {node.name} failed: {e}") from e
        finally:
            client.close()

        if errors:
            logger.warning(f"Remote script stderr for {node.name}: {errors}")
        return output


async def ping_port(host: str, port: int, timeout: float = config.TCP_PROBE_TIMEOUT) -> bool:
    """True when a TCP connection to host:port opens within timeout. Raises ProbeTimeout on timeout."""
    try:
        _reader, writer = await asyncio.wait_for(asyncio.open_connection(host, port), timeout=timeout)
    except asyncio.TimeoutError as e:
        raise ProbeTimeout(f"{host}:{port} did not answer within {timeout}s") from e
    writer.close()
    try:
        await writer.wait_closed()
    except OSError:
        pass
    return True


class TCPPingProbe(NodeProbe):
    name = "tcp"

    def __init__(self, timeout: float = config.TCP_PROBE_TIMEOUT):
        self.timeout = timeout

    async def probe(self, node: ServerNode) -> HeartbeatResult:
        try:
            reachable = await ping_port(node.ip, node.probe_port, self.timeout)
        except (ProbeTimeout, OSError) as e:
            logger.info(f"TCP probe of {node.name} ({node.ip}:{node.probe_port}) failed: {e}")
            reachable = False
        return HeartbeatResult(reachable=reachable)


class FallbackProbe(NodeProbe):
    """Runs primary; on an SSH failure, runs fallback instead."""

    def __init__(self, primary: NodeProbe, fallback: NodeProbe):
        self.primary = primary
        self.fallback = fallback
        self.name = f"{primary.name}+{fallback.name}"

    async def probe(self, node: ServerNode) -> HeartbeatResult:
        try:
            return await self.primary.probe(node)
        except (SSHConnectionError, SSHCommandError) as e:
            logger.error(f"SSH check failed for {node.name}: {e}")
            return await self.fallback.probe(node)


def probe_for_node(node: ServerNode) -> NodeProbe:
    if node.is_local:
        return LocalProbe()
    if node.has_ssh_credentials:
        return FallbackProbe(RemoteSSHProbe(), TCPPingProbe())
    return TCPPingProbe()
