import os


def _env(name: str, default: str) -> str:
    return os.environ.get(f"PANEL_{name}", default)


PROJECT_ROOT = _env("PROJECT_ROOT", os.getcwd())

STATE_DIR = _env("STATE_DIR", os.path.join(PROJECT_ROOT, "data"))
DB_FILE = _env("DB_FILE", os.path.join(STATE_DIR, "servers.json"))

LOG_LEVEL = _env("LOG_LEVEL", "INFO")
CORS_ORIGINS = [o for o in _env("CORS_ORIGINS", "http://localhost:3000,http://127.0.0.1:3000").split(",") if o]

# --- File Manager Workers ---
WORKER_BASE_PORT = int(_env("WORKER_BASE_PORT", "7000"))
WORKER_BIN = _env("WORKER_BIN", os.path.join(PROJECT_ROOT, "node_modules", ".bin", "cloudcmd"))
WORKER_RUNNER = _env("WORKER_RUNNER", "npx")
WORKER_PACKAGE = _env("WORKER_PACKAGE", "cloudcmd")
FILE_MANAGER_PREFIX = _env("FILE_MANAGER_PREFIX", "/api/file-manager")
TENANT_HOME_DIR = _env("TENANT_HOME_DIR", os.path.join(PROJECT_ROOT, "users"))
# Tenant identity comes from request.state, set by the auth layer. The
# X-Tenant-Id / X-Tenant-Root headers are honoured only from these peers.
TRUSTED_PROXIES = [h for h in _env("TRUSTED_PROXIES", "").split(",") if h]

READINESS_TIMEOUT = float(_env("READINESS_TIMEOUT", "15"))
IDLE_TIMEOUT = float(_env("IDLE_TIMEOUT", str(60 * 60)))
SWEEP_INTERVAL = float(_env("SWEEP_INTERVAL", str(30 * 60)))
STOP_GRACE_PERIOD = float(_env("STOP_GRACE_PERIOD", "5"))
PROXY_TIMEOUT = float(_env("PROXY_TIMEOUT", "60"))

# --- Fleet Heartbeat ---
HEARTBEAT_INTERVAL = float(_env("HEARTBEAT_INTERVAL", str(5 * 60)))
HEARTBEAT_WARMUP_DELAY = float(_env("HEARTBEAT_WARMUP_DELAY", "5"))
HEARTBEAT_CONCURRENCY = int(_env("HEARTBEAT_CONCURRENCY", "8"))
NODE_CHECK_TIMEOUT = float(_env("NODE_CHECK_TIMEOUT", "60"))

DEFAULT_SSH_PORT = 22
SSH_CONNECT_TIMEOUT = float(_env("SSH_CONNECT_TIMEOUT", "10"))
SSH_COMMAND_TIMEOUT = float(_env("SSH_COMMAND_TIMEOUT", "30"))
TCP_PROBE_TIMEOUT = float(_env("TCP_PROBE_TIMEOUT", "5"))

# Raw secret; the AES key is its SHA-256 digest. The default matches rows
# written by the node registration flow before a key was configured.
ENCRYPTION_KEY = _env("ENCRYPTION_KEY", "v-p-s-f-t-p-m-a-n-a-g-e-r-s-e-c-r-e-t")
