# backend/core/tenant_manager.py
import asyncio
import logging
import os
import signal
import time
from contextlib import suppress

from . import config
from .errors import SpawnError, SpawnFailure, SpawnTimeout
from .models import InstanceState, TenantInstance
from .worker_launcher import ExecutableResolver, ProcessSpec, ReadinessDetector

logger = logging.getLogger(__name__)

MAX_PORT = 65535


class TenantProcessManager:
    """
    Keeps one file manager worker per tenant.

    Workers are spawned on first use, reused while alive, and evicted by a
    periodic sweep once idle. All state lives on the event loop that owns
    the manager; every read-modify-write of the registry happens without
    an intervening await, and concurrent first requests for the same
    tenant share a single in-flight start.
    """

    def __init__(
        self,
        base_port: int = config.WORKER_BASE_PORT,
        resolver: ExecutableResolver | None = None,
        readiness_timeout: float = config.READINESS_TIMEOUT,
        idle_timeout: float = config.IDLE_TIMEOUT,
        sweep_interval: float = config.SWEEP_INTERVAL,
        stop_grace_period: float = config.STOP_GRACE_PERIOD,
        prefix: str = config.FILE_MANAGER_PREFIX,
    ):
        self.base_port = base_port
        self.resolver = resolver or ExecutableResolver()
        self.readiness_timeout = readiness_timeout
        self.idle_timeout = idle_timeout
        self.sweep_interval = sweep_interval
        self.stop_grace_period = stop_grace_period
        self.prefix = prefix

        self.instances: dict[int, TenantInstance] = {}
        self._starting: dict[int, asyncio.Task] = {}
        self._stopping: dict[int, asyncio.Task] = {}
        self._background: set[asyncio.Task] = set()
        self._sweeper: asyncio.Task | None = None

    # --- Public API ---

    async def get_instance(self, tenant_id: int, root_path: str) -> int:
        """Returns the port of a live worker for tenant_id, starting one if needed."""
        instance = self.instances.get(tenant_id)
        if instance is not None:
            if instance.is_alive():
                instance.touch()
                return instance.port
            logger.info(f"Discarding dead file manager for tenant {tenant_id} (pid {instance.pid})")
            del self.instances[tenant_id]

        task = self._starting.get(tenant_id)
        if task is None:
            task = asyncio.create_task(self._start_instance(tenant_id, root_path))
            self._starting[tenant_id] = task
            task.add_done_callback(lambda t: self._start_finished(tenant_id, t))
        # A caller that goes away does not cancel the start for the others.
        return await asyncio.shield(task)

    def port_for(self, tenant_id: int) -> int:
        port = self.base_port + tenant_id
        if tenant_id < 0 or not 0 < port <= MAX_PORT:
            raise SpawnError(tenant_id, f"Port {port} for tenant {tenant_id} is outside the valid range")
        return port

    def list_instances(self) -> list[TenantInstance]:
        return list(self.instances.values())

    async def stop_instance(self, tenant_id: int) -> bool:
        instance = self.instances.pop(tenant_id, None)
        if instance is None:
            return False
        logger.info(f"Stopping file manager for tenant {tenant_id}")
        await self._retire(instance)
        return True

    async def cleanup(self, now: float | None = None) -> list[int]:
        """Kills every worker idle for longer than idle_timeout. Returns the evicted tenant ids."""
        now = time.time() if now is None else now
        evicted = []
        for tenant_id, instance in list(self.instances.items()):
            # Re-checked per instance: an earlier await may have let a request touch it.
            if now - instance.last_access <= self.idle_timeout:
                continue
            if self.instances.get(tenant_id) is not instance:
                continue
            del self.instances[tenant_id]
            logger.info(f"Killing idle file manager for tenant {tenant_id}")
            await self._retire(instance)
            evicted.append(tenant_id)
        return evicted

    async def start(self):
        if self._sweeper is None:
            self._sweeper = asyncio.create_task(self._sweep_loop())

    async def stop(self):
        if self._sweeper is not None:
            self._sweeper.cancel()
            try:
                await self._sweeper
            except asyncio.CancelledError:
                pass
            self._sweeper = None
        starting = list(self._starting.values())
        for task in starting:
            task.cancel()
        await asyncio.gather(*starting, return_exceptions=True)
        for tenant_id in list(self.instances):
            await self.stop_instance(tenant_id)
        await asyncio.gather(*self._stopping.values(), return_exceptions=True)

    # --- Spawning ---

    async def _start_instance(self, tenant_id: int, root_path: str) -> int:
        port = self.port_for(tenant_id)
        stopping = self._stopping.get(tenant_id)
        if stopping is not None:
            # The previous worker still holds the port until it has exited.
            await asyncio.wait({stopping})
        self._ensure_root(root_path)

        logger.info(f"Starting file manager for tenant {tenant_id} on port {port} at {root_path}")
        process = await self._launch(tenant_id, port, root_path)
        instance = TenantInstance(tenant_id=tenant_id, port=port, root_path=root_path, process=process)

        detector = ReadinessDetector()
        ready = asyncio.Event()
        self._track(asyncio.create_task(self._pump(process.stdout, instance, detector, ready)))
        self._track(asyncio.create_task(self._pump(process.stderr, instance)))
        exit_task = self._track(asyncio.create_task(process.wait()))
        ready_task = asyncio.create_task(ready.wait())

        try:
            done, _ = await asyncio.wait(
                {ready_task, exit_task},
                timeout=self.readiness_timeout,
                return_when=asyncio.FIRST_COMPLETED,
            )
        except asyncio.CancelledError:
            ready_task.cancel()
            await self._terminate(instance, force=True)
            raise

        if ready_task in done:
            instance.state = InstanceState.RUNNING
            instance.touch()
            self.instances[tenant_id] = instance
            exit_task.add_done_callback(lambda _t: self._on_exit(instance))
            logger.info(f"File manager for tenant {tenant_id} is ready on port {port} (pid {process.pid})")
            return port

        ready_task.cancel()
        if exit_task in done:
            # Let the pumps collect whatever the worker printed before dying.
            await asyncio.sleep(0)
            logger.error(f"File manager for tenant {tenant_id} exited early with code {process.returncode}")
            await self._terminate(instance, force=True)
            raise SpawnFailure(tenant_id, process.returncode, instance.output_tail())

        logger.error(f"File manager for tenant {tenant_id} timed out after {self.readiness_timeout}s")
        await self._terminate(instance, force=True)
        raise SpawnTimeout(tenant_id, f"File manager for tenant {tenant_id} timed out after {self.readiness_timeout}s")

    async def _launch(self, tenant_id: int, port: int, root_path: str) -> asyncio.subprocess.Process:
        failures = []
        for spec in self.resolver.build_specs(port, root_path, self.prefix):
            try:
                return await self._spawn(spec)
            except OSError as e:
                logger.warning(f"Could not launch {spec.program}, trying next: {e}")
                failures.append(f"{spec.program}: {e}")
        reason = "; ".join(failures) or "no executable found"
        raise SpawnError(tenant_id, f"Could not launch file manager for tenant {tenant_id}: {reason}")

    async def _spawn(self, spec: ProcessSpec) -> asyncio.subprocess.Process:
        return await asyncio.create_subprocess_exec(
            *spec.argv,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            env=spec.env,
            cwd=spec.cwd,
            # Own process group, so teardown also reaches whatever a launcher
            # like npx starts underneath it.
            start_new_session=True,
        )

    def _ensure_root(self, root_path: str):
        if os.path.isdir(root_path):
            return
        try:
            os.makedirs(root_path, exist_ok=True)
        except OSError as e:
            # The worker may still be able to create it itself.
            logger.error(f"Failed to create root {root_path}: {e}")

    async def _pump(self, stream, instance: TenantInstance,
                    detector: ReadinessDetector | None = None, ready: asyncio.Event | None = None):
        """Drains one pipe into the instance buffer so the worker never blocks on a full pipe."""
        while True:
            chunk = await stream.read(4096)
            if not chunk:
                return
            text = chunk.decode("utf-8", errors="replace")
            instance.output.append(text)
            if detector is not None and not ready.is_set() and detector.feed(text):
                ready.set()

    # --- Teardown ---

    async def _retire(self, instance: TenantInstance):
        """Terminates a worker already removed from the registry; a restart for the tenant waits on it."""
        tenant_id = instance.tenant_id
        task = asyncio.create_task(self._terminate(instance))
        self._stopping[tenant_id] = task
        task.add_done_callback(lambda t: self._stop_finished(tenant_id, t))
        await asyncio.shield(task)

    async def _terminate(self, instance: TenantInstance, force: bool = False):
        instance.killed = True
        process = instance.process
        if process.returncode is None:
            _signal_group(process, force)
            try:
                await asyncio.wait_for(process.wait(), timeout=self.stop_grace_period)
            except asyncio.TimeoutError:
                if force:
                    logger.warning(f"File manager for tenant {instance.tenant_id} still running after SIGKILL")
                else:
                    logger.warning(f"File manager for tenant {instance.tenant_id} ignored SIGTERM, killing")
                    _signal_group(process, force=True)
                    # wait() also covers the pipes, which a stray descendant may keep open.
                    with suppress(asyncio.TimeoutError):
                        await asyncio.wait_for(process.wait(), timeout=self.stop_grace_period)
        # Children that outlive the group leader, e.g. cloudcmd under npx.
        _signal_group(process, force=True)

    def _on_exit(self, instance: TenantInstance):
        if self.instances.get(instance.tenant_id) is instance:
            del self.instances[instance.tenant_id]
        _signal_group(instance.process, force=True)
        logger.info(f"File manager for tenant {instance.tenant_id} exited with code {instance.process.returncode}")

    def _stop_finished(self, tenant_id: int, task: asyncio.Task):
        if self._stopping.get(tenant_id) is task:
            del self._stopping[tenant_id]
        if not task.cancelled() and task.exception() is not None:
            logger.error(f"Stopping file manager for tenant {tenant_id} failed: {task.exception()}")

    def _start_finished(self, tenant_id: int, task: asyncio.Task):
        if self._starting.get(tenant_id) is task:
            del self._starting[tenant_id]
        if not task.cancelled():
            # Mark the exception retrieved; callers that are still waiting get it through shield().
            task.exception()

    async def _sweep_loop(self):
        while True:
            await asyncio.sleep(self.sweep_interval)
            try:
                evicted = await self.cleanup()
                if evicted:
                    logger.info(f"Idle sweep evicted tenants {evicted}")
            except Exception:
                logger.exception("Idle sweep failed")

    def _track(self, task: asyncio.Task) -> asyncio.Task:
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task


def _signal_group(process: asyncio.subprocess.Process, force: bool):
    """SIGTERM (or SIGKILL) to the worker's whole process group."""
    with suppress(ProcessLookupError, PermissionError):
        if os.name == "posix":
            os.killpg(process.pid, signal.SIGKILL if force else signal.SIGTERM)
        elif process.returncode is None:
            if force:
                process.kill()
            else:
                process.terminate()
