"""Tests for FleetHeartbeatMonitor against a temporary node table."""

import asyncio
from unittest.mock import MagicMock, patch

import pytest

from core.crypto import encrypt
from core.heartbeat import FleetHeartbeatMonitor
from core.models import HeartbeatResult
from core.probes import LocalProbe, NodeProbe, probe_for_node


class StaticProbe(NodeProbe):
    def __init__(self, result=None, error=None, delay=0.0):
        self.result = result
        self.error = error
        self.delay = delay

    async def probe(self, node):
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error:
            raise self.error
        return self.result


def seed_metrics(table, node_id):
    table.update_node_metrics(node_id, HeartbeatResult(True, 11.0, 22.0, 33.0, 44.0))
    return dict(table.get_node(node_id))


class TestCheckNodes:

    @pytest.mark.asyncio
    async def test_local_node_reports_all_metrics(self, node_table):
        node_table.create_node_entry(1, "local", "127.0.0.1", is_local=True)
        monitor = FleetHeartbeatMonitor(probe_factory=lambda n: LocalProbe(cpu_sample_interval=0))

        summary = await monitor.check_nodes()

        row = node_table.get_node(1)
        assert summary == {1: "active"}
        assert row["status"] == "active"
        assert row["last_seen"] is not None
        for metric in ("cpu_usage", "ram_usage", "disk_usage", "uptime"):
            assert isinstance(row[metric], float)
        assert row["uptime"] > 0

    @pytest.mark.asyncio
    async def test_remote_ssh_node(self, node_table):
        node_table.create_node_entry(2, "web-1", "10.0.0.5", ssh_user="root", ssh_password=encrypt("pw"))
        client = MagicMock()
        stdout = MagicMock()
        stdout.read.return_value = b"5|2048 1024|42|123456.78\n"
        stderr = MagicMock()
        stderr.read.return_value = b""
        client.exec_command.return_value = (MagicMock(), stdout, stderr)

        with patch("core.probes.paramiko.SSHClient", return_value=client):
            await FleetHeartbeatMonitor().check_nodes()

        row = node_table.get_node(2)
        assert row["status"] == "active"
        assert (row["cpu_usage"], row["ram_usage"], row["disk_usage"], row["uptime"]) == (95, 50, 42, 123456.78)

    @pytest.mark.asyncio
    async def test_ssh_failure_falls_back_to_tcp(self, node_table):
        node_table.create_node_entry(2, "web-1", "10.0.0.5", ssh_user="root", ssh_password=encrypt("pw"))
        before = seed_metrics(node_table, 2)
        client = MagicMock()
        client.connect.side_effect = OSError("no route to host")

        with patch("core.probes.paramiko.SSHClient", return_value=client), \
                patch("core.probes.ping_port", return_value=True) as ping:
            await FleetHeartbeatMonitor().check_nodes()

        ping.assert_awaited_once()
        row = node_table.get_node(2)
        assert row["status"] == "active"
        assert row["cpu_usage"] == before["cpu_usage"]

    @pytest.mark.asyncio
    async def test_unreachable_node_without_credentials_goes_offline(self, node_table):
        node_table.create_node_entry(3, "edge", "10.0.0.9")
        before = seed_metrics(node_table, 3)
        monitor = FleetHeartbeatMonitor(probe_factory=lambda n: StaticProbe(HeartbeatResult(reachable=False)))

        await monitor.check_nodes()

        row = node_table.get_node(3)
        assert row["status"] == "offline"
        assert row["last_seen"] == before["last_seen"]
        assert (row["cpu_usage"], row["ram_usage"], row["disk_usage"], row["uptime"]) == (11.0, 22.0, 33.0, 44.0)

    @pytest.mark.asyncio
    async def test_tcp_probe_picked_for_uncredentialed_node(self, node_table):
        node_table.create_node_entry(3, "edge", "10.0.0.9")

        with patch("core.probes.ping_port", side_effect=OSError("unreachable")):
            await FleetHeartbeatMonitor(probe_factory=probe_for_node).check_nodes()

        assert node_table.get_node(3)["status"] == "offline"

    @pytest.mark.asyncio
    async def test_malformed_ssh_output_does_not_stop_cycle(self, node_table):
        node_table.create_node_entry(4, "weird", "10.0.0.4", ssh_user="root", ssh_password=encrypt("pw"))
        node_table.create_node_entry(5, "fine", "10.0.0.5")
        client = MagicMock()
        stdout = MagicMock()
        stdout.read.return_value = b"garbage|x y|z|w\n"
        stderr = MagicMock()
        stderr.read.return_value = b""
        client.exec_command.return_value = (MagicMock(), stdout, stderr)

        with patch("core.probes.paramiko.SSHClient", return_value=client), \
                patch("core.probes.ping_port", return_value=True):
            summary = await FleetHeartbeatMonitor().check_nodes()

        assert summary == {4: "active", 5: "active"}
        row = node_table.get_node(4)
        assert (row["cpu_usage"], row["ram_usage"], row["disk_usage"], row["uptime"]) == (0, 0, 0, 0)
        assert node_table.get_node(5)["last_seen"] is not None

    @pytest.mark.asyncio
    async def test_failing_node_does_not_block_others(self, node_table):
        node_table.create_node_entry(1, "broken", "10.0.0.1")
        node_table.create_node_entry(2, "healthy", "10.0.0.2")
        probes = {
            1: StaticProbe(error=RuntimeError("probe blew up")),
            2: StaticProbe(HeartbeatResult(True, 1.0, 2.0, 3.0, 4.0)),
        }
        monitor = FleetHeartbeatMonitor(probe_factory=lambda n: probes[n.id])

        summary = await monitor.check_nodes()

        assert summary == {1: "offline", 2: "active"}
        assert node_table.get_node(2)["cpu_usage"] == 1.0

    @pytest.mark.asyncio
    async def test_hanging_node_is_cut_off(self, node_table):
        node_table.create_node_entry(1, "slow", "10.0.0.1")
        node_table.create_node_entry(2, "quick", "10.0.0.2")
        probes = {
            1: StaticProbe(HeartbeatResult(True, 9.0, 9.0, 9.0, 9.0), delay=5),
            2: StaticProbe(HeartbeatResult(reachable=True)),
        }
        monitor = FleetHeartbeatMonitor(node_timeout=0.2, probe_factory=lambda n: probes[n.id])

        summary = await asyncio.wait_for(monitor.check_nodes(), timeout=2)

        assert summary == {1: "offline", 2: "active"}

    @pytest.mark.asyncio
    async def test_local_failure_leaves_row_unchanged(self, node_table):
        node_table.create_node_entry(1, "local", "127.0.0.1", is_local=True)
        before = seed_metrics(node_table, 1)
        monitor = FleetHeartbeatMonitor(probe_factory=lambda n: StaticProbe(error=OSError("psutil failed")))

        summary = await monitor.check_nodes()

        assert summary == {1: None}
        assert node_table.get_node(1) == before

    @pytest.mark.asyncio
    async def test_empty_table(self, node_table):
        assert await FleetHeartbeatMonitor().check_nodes() == {}


class TestMonitorLifecycle:

    @pytest.mark.asyncio
    async def test_warmup_run_then_stop(self, node_table):
        node_table.create_node_entry(1, "edge", "10.0.0.1")
        monitor = FleetHeartbeatMonitor(
            interval=3600,
            warmup_delay=0,
            probe_factory=lambda n: StaticProbe(HeartbeatResult(reachable=False)),
        )

        await monitor.start()
        await asyncio.sleep(0.1)
        await monitor.stop()

        assert node_table.get_node(1)["status"] == "offline"

    @pytest.mark.asyncio
    async def test_cycle_repeats_on_interval(self, node_table):
        node_table.create_node_entry(1, "edge", "10.0.0.1")
        calls = []

        class CountingProbe(NodeProbe):
            async def probe(self, node):
                calls.append(node.id)
                return HeartbeatResult(reachable=True)

        monitor = FleetHeartbeatMonitor(interval=0.05, warmup_delay=0, probe_factory=lambda n: CountingProbe())
        await monitor.start()
        await asyncio.sleep(0.3)
        await monitor.stop()

        assert len(calls) >= 3
