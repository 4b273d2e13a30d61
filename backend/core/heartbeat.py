# backend/core/heartbeat.py
import asyncio
import logging
from typing import Callable

from . import config, state_manager
from .models import HeartbeatResult, NodeStatus, ServerNode
from .probes import NodeProbe, probe_for_node

logger = logging.getLogger(__name__)


class FleetHeartbeatMonitor:
    """
    Polls every node in the node table on a fixed interval and records
    status and resource usage.

    Nodes within one cycle are checked concurrently, each under its own
    time budget, so one hanging host cannot hold up the rest. A failure is
    contained to its node: remote nodes degrade to offline, the local node
    is left as it was.
    """

    def __init__(
        self,
        interval: float = config.HEARTBEAT_INTERVAL,
        warmup_delay: float = config.HEARTBEAT_WARMUP_DELAY,
        node_timeout: float = config.NODE_CHECK_TIMEOUT,
        concurrency: int = config.HEARTBEAT_CONCURRENCY,
        probe_factory: Callable[[ServerNode], NodeProbe] = probe_for_node,
    ):
        self.interval = interval
        self.warmup_delay = warmup_delay
        self.node_timeout = node_timeout
        self.concurrency = max(1, concurrency)
        self.probe_factory = probe_factory
        self._task: asyncio.Task | None = None

    async def start(self):
        if self._task is None:
            logger.info("Starting fleet heartbeat service")
            self._task = asyncio.create_task(self._run())

    async def stop(self):
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

    async def _run(self):
        await asyncio.sleep(self.warmup_delay)
        while True:
            try:
                await self.check_nodes()
            except Exception:
                logger.exception("Heartbeat cycle failed")
            await asyncio.sleep(self.interval)

    async def check_nodes(self) -> dict[int, str | None]:
        """Runs one cycle over every node. Returns node id -> recorded status."""
        nodes = state_manager.list_server_nodes()
        semaphore = asyncio.Semaphore(self.concurrency)

        async def bounded(node: ServerNode):
            async with semaphore:
                return await self.check_node(node)

        statuses = await asyncio.gather(*(bounded(node) for node in nodes))
        summary = {node.id: status for node, status in zip(nodes, statuses)}
        logger.info(f"Heartbeat cycle complete: {summary}")
        return summary

    async def check_node(self, node: ServerNode) -> str | None:
        """Probes one node and writes the outcome. Never raises."""
        try:
            probe = self.probe_factory(node)
            result = await asyncio.wait_for(probe.probe(node), timeout=self.node_timeout)
        except asyncio.TimeoutError:
            logger.error(f"Heartbeat for {node.name} exceeded {self.node_timeout}s")
            return self._record_failure(node)
        except Exception as e:
            logger.error(f"Failed to check node {node.name}: {e}")
            return self._record_failure(node)
        return self._record(node, result)

    def _record(self, node: ServerNode, result: HeartbeatResult) -> str:
        if result.reachable and result.has_metrics:
            state_manager.update_node_metrics(node.id, result)
            return NodeStatus.ACTIVE.value
        if result.reachable:
            state_manager.update_node_seen(node.id)
            return NodeStatus.ACTIVE.value
        state_manager.update_node_offline(node.id)
        return NodeStatus.OFFLINE.value

    def _record_failure(self, node: ServerNode) -> str | None:
        if node.is_local:
            # The local node has no network path to lose; keep its last row.
            return None
        state_manager.update_node_offline(node.id)
        return NodeStatus.OFFLINE.value
