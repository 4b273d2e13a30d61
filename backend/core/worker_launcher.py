# backend/core/worker_launcher.py
"""
Builds the command line for a tenant's file manager worker and decides
when the worker is ready.

Nothing in here spawns a process, so every piece can be exercised
without Node.js installed.
"""
import os
import shutil
from dataclasses import dataclass, field

from . import config

# The worker prints one of these once it accepts connections.
READINESS_MARKERS = ("url: http://", "Cloud Commander")


@dataclass
class ProcessSpec:
    program: str
    args: list[str]
    env: dict[str, str] = field(default_factory=dict)
    cwd: str | None = None

    @property
    def argv(self) -> list[str]:
        return [self.program, *self.args]


def build_worker_args(port: int, root_path: str, prefix: str = config.FILE_MANAGER_PREFIX) -> list[str]:
    """
    Argument set for the worker. Authentication is left to the proxy in
    front of it, so the worker runs with --no-auth and must only listen
    behind it.
    """
    return [
        "--port", str(port),
        "--root", root_path,
        "--prefix", prefix,
        "--no-auth",
        "--no-console",
        "--no-terminal",
        "--one-file-panel",
    ]


class ExecutableResolver:
    """
    Resolves how to launch the worker: the installed binary when present,
    otherwise through a package runner (npx cloudcmd ...).
    """

    def __init__(self, primary: str = config.WORKER_BIN, runner: str = config.WORKER_RUNNER,
                 package: str = config.WORKER_PACKAGE, prefix_args: list[str] | None = None):
        self.primary = primary
        self.runner = runner
        self.package = package
        self.prefix_args = list(prefix_args or [])

    def candidates(self) -> list[tuple[str, list[str]]]:
        """(program, leading args) pairs in the order they should be tried."""
        found = []
        if os.path.exists(self.primary):
            found.append((self.primary, list(self.prefix_args)))
        if self.runner:
            # shutil.which also finds npx.cmd on Windows
            runner = shutil.which(self.runner) or self.runner
            found.append((runner, [self.package]))
        return found

    def build_specs(self, port: int, root_path: str,
                    prefix: str = config.FILE_MANAGER_PREFIX) -> list[ProcessSpec]:
        env = {**os.environ, "PORT": str(port)}
        worker_args = build_worker_args(port, root_path, prefix)
        return [
            ProcessSpec(program=program, args=[*leading, *worker_args], env=env, cwd=config.PROJECT_ROOT)
            for program, leading in self.candidates()
        ]


class ReadinessDetector:
    """Watches worker stdout for a readiness marker, across chunk boundaries."""

    def __init__(self, markers: tuple[str, ...] = READINESS_MARKERS):
        self.markers = markers
        self._carry = max((len(m) for m in markers), default=1) - 1
        self._tail = ""
        self.ready = False

    def feed(self, chunk: str) -> bool:
        if self.ready:
            return True
        window = self._tail + chunk
        if any(marker in window for marker in self.markers):
            self.ready = True
        else:
            self._tail = window[-self._carry:] if self._carry else ""
        return self.ready
