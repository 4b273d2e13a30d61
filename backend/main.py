# backend/main.py
import logging
import os
from contextlib import asynccontextmanager

import httpx
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from api import file_manager
from api import routes as api_routes
from core import config, state_manager
from core.heartbeat import FleetHeartbeatMonitor
from core.tenant_manager import TenantProcessManager

logging.basicConfig(
    level=config.LOG_LEVEL,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)
logger = logging.getLogger("panel")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Handle startup and shutdown events.
    """
    # On startup
    logger.info("Starting up...")
    os.makedirs(config.STATE_DIR, exist_ok=True)
    state_manager.load_state()

    app.state.http_client = httpx.AsyncClient(timeout=config.PROXY_TIMEOUT, follow_redirects=False)
    app.state.tenant_manager = TenantProcessManager()
    app.state.heartbeat_monitor = FleetHeartbeatMonitor()
    await app.state.tenant_manager.start()
    await app.state.heartbeat_monitor.start()
    yield
    # On shutdown
    logger.info("Shutting down...")
    await app.state.heartbeat_monitor.stop()
    await app.state.tenant_manager.stop()
    await app.state.http_client.aclose()
    state_manager.save_state()


# Create the FastAPI app instance
app = FastAPI(
    title="Panel Control Plane",
    lifespan=lifespan
)

# --- Add CORS Middleware ---
# Dashboards served from another origin read the node table through /nodes.
app.add_middleware(
    CORSMiddleware,
    allow_origins=config.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# --- Include API Routes ---
app.include_router(api_routes.router)
app.include_router(file_manager.router)

# --- Main entry point for Uvicorn ---
if __name__ == "__main__":
    import uvicorn
    logger.info("Starting Uvicorn server...")
    uvicorn.run(
        "main:app",
        host="0.0.0.0",
        port=int(os.environ.get("PANEL_PORT", "8000")),
    )
