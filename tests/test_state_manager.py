"""Tests for the persisted node table."""

import json

from core import config
from core.models import HeartbeatResult


class TestNodeTable:

    def test_create_and_reload(self, node_table):
        node_table.create_node_entry(1, "web-1", "10.0.0.5", ssh_user="root", ssh_password="aa:bb", ssh_port=2222)

        with open(config.DB_FILE) as f:
            on_disk = json.load(f)
        assert on_disk["nodes"]["1"]["ip"] == "10.0.0.5"

        node_table.STATE = {"nodes": {}}
        node_table.load_state()
        [node] = node_table.list_server_nodes()
        assert node.id == 1
        assert node.ssh_port == 2222
        assert node.status.value == "active"

    def test_local_node_drops_credentials(self, node_table):
        row = node_table.create_node_entry(1, "local", "127.0.0.1", is_local=True,
                                           ssh_user="root", ssh_password="aa:bb")
        assert row["ssh_user"] is None
        assert row["ssh_password"] is None

    def test_metrics_update(self, node_table):
        node_table.create_node_entry(2, "db-1", "10.0.0.6")
        node_table.update_node_metrics(2, HeartbeatResult(True, 95.0, 50.0, 42.0, 123456.78))

        row = node_table.get_node(2)
        assert row["status"] == "active"
        assert row["last_seen"] is not None
        assert (row["cpu_usage"], row["ram_usage"], row["disk_usage"], row["uptime"]) == (95.0, 50.0, 42.0, 123456.78)

    def test_offline_keeps_metrics(self, node_table):
        node_table.create_node_entry(3, "edge", "10.0.0.7")
        node_table.update_node_metrics(3, HeartbeatResult(True, 10.0, 20.0, 30.0, 40.0))
        seen = node_table.get_node(3)["last_seen"]

        node_table.update_node_offline(3)

        row = node_table.get_node(3)
        assert row["status"] == "offline"
        assert row["last_seen"] == seen
        assert row["cpu_usage"] == 10.0

    def test_unknown_node_is_ignored(self, node_table):
        node_table.update_node_offline(99)
        node_table.update_node_seen(99)
        assert node_table.get_all_nodes() == {}

    def test_malformed_rows_are_skipped(self, node_table):
        node_table.create_node_entry(1, "ok", "10.0.0.1")
        node_table.STATE["nodes"]["2"] = {"name": "broken"}

        assert [n.id for n in node_table.list_server_nodes()] == [1]

    def test_corrupt_file_starts_empty(self, node_table):
        with open(config.DB_FILE, "w") as f:
            f.write("{not json")

        node_table.load_state()

        assert node_table.get_all_nodes() == {}
