# backend/core/state_manager.py
import json
import logging
import os
from datetime import datetime, timezone

from . import config
from .models import HeartbeatResult, NodeStatus, ServerNode

logger = logging.getLogger(__name__)

STATE = {
    "nodes": {}
}


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def save_state():
    """Saves the current STATE to the DB_FILE."""
    os.makedirs(os.path.dirname(config.DB_FILE) or ".", exist_ok=True)
    tmp_path = f"{config.DB_FILE}.tmp"
    with open(tmp_path, 'w') as f:
        json.dump(STATE, f, indent=2)
    # Dashboards read this file while we write it.
    os.replace(tmp_path, config.DB_FILE)


def load_state():
    """Loads the node table from the DB_FILE on startup."""
    global STATE
    if os.path.exists(config.DB_FILE):
        try:
            with open(config.DB_FILE, 'r') as f:
                STATE = json.load(f)
        except json.JSONDecodeError:
            logger.error(f"Node table {config.DB_FILE} is corrupt, starting empty")
            STATE = {"nodes": {}}
    STATE.setdefault("nodes", {})
    logger.info(f"Loaded {len(STATE['nodes'])} nodes from {config.DB_FILE}")


def get_all_nodes() -> dict:
    return STATE["nodes"]


def get_node(node_id: int) -> dict | None:
    return STATE["nodes"].get(str(node_id))


def list_server_nodes() -> list[ServerNode]:
    """Validated view of every row. Rows that fail validation are skipped."""
    nodes = []
    for node_id, row in get_all_nodes().items():
        try:
            nodes.append(ServerNode(**{"id": node_id, **row}))
        except ValueError as e:
            logger.error(f"Skipping malformed node row {node_id}: {e}")
    return nodes


def create_node_entry(node_id: int, name: str, ip: str, is_local: bool = False,
                      ssh_user: str | None = None, ssh_password: str | None = None,
                      ssh_port: int | None = config.DEFAULT_SSH_PORT) -> dict:
    """Adds a node row. Used by the registration flow; ssh_password must already be encrypted."""
    node = ServerNode(
        id=node_id, name=name, ip=ip, is_local=is_local,
        ssh_user=ssh_user, ssh_password=ssh_password, ssh_port=ssh_port,
    )
    row = node.model_dump(mode="json", exclude={"id"})
    STATE["nodes"][str(node_id)] = row
    save_state()
    return row


def update_node_metrics(node_id: int, result: HeartbeatResult):
    """Marks a node active and records the metrics of a successful probe."""
    node = get_node(node_id)
    if node:
        node["status"] = NodeStatus.ACTIVE.value
        node["last_seen"] = _now()
        node["cpu_usage"] = result.cpu_usage
        node["ram_usage"] = result.ram_usage
        node["disk_usage"] = result.disk_usage
        node["uptime"] = result.uptime
        save_state()


def update_node_seen(node_id: int):
    """Marks a node active without touching its last known metrics."""
    node = get_node(node_id)
    if node:
        node["status"] = NodeStatus.ACTIVE.value
        node["last_seen"] = _now()
        save_state()


def update_node_offline(node_id: int):
    """Marks a node offline; metrics and last_seen are kept as they were."""
    node = get_node(node_id)
    if node:
        node["status"] = NodeStatus.OFFLINE.value
        save_state()
