"""Pytest configuration for the panel control plane."""
import os
import sys

import pytest

from core import config, state_manager
from core.worker_launcher import ExecutableResolver

FAKE_WORKER = os.path.join(os.path.dirname(__file__), "fake_worker.py")


@pytest.fixture
def node_table(tmp_path, monkeypatch):
    """An empty node table persisted under tmp_path."""
    monkeypatch.setattr(config, "DB_FILE", str(tmp_path / "servers.json"))
    monkeypatch.setattr(state_manager, "STATE", {"nodes": {}})
    return state_manager


@pytest.fixture
def fake_resolver():
    """Launches tests/fake_worker.py with the current interpreter instead of cloudcmd."""
    return ExecutableResolver(primary=sys.executable, runner="", prefix_args=[FAKE_WORKER])
