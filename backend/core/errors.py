# backend/core/errors.py


class ControlPlaneError(Exception):
    """Base class for every error raised by the control plane."""


class TenantSpawnError(ControlPlaneError):
    """A tenant's file manager worker could not be brought up."""

    def __init__(self, tenant_id: int, message: str):
        super().__init__(message)
        self.tenant_id = tenant_id


class SpawnTimeout(TenantSpawnError):
    """The worker never printed a readiness marker in time."""


class SpawnFailure(TenantSpawnError):
    """The worker exited before it became ready."""

    def __init__(self, tenant_id: int, exit_code: int | None, output: str = ""):
        super().__init__(tenant_id, f"Worker for tenant {tenant_id} exited with code {exit_code} before it was ready")
        self.exit_code = exit_code
        self.output = output


class SpawnError(TenantSpawnError):
    """The worker executable could not be launched at all."""


class ProxyUnavailable(ControlPlaneError):
    """No backend could be resolved or reached for a proxied request."""


class HeartbeatError(ControlPlaneError):
    pass


class SSHConnectionError(HeartbeatError):
    pass


class SSHCommandError(HeartbeatError):
    pass


class ProbeTimeout(HeartbeatError):
    pass
