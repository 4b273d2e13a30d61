# backend/api/file_manager.py
"""
Reverse proxy in front of the per-tenant file manager workers.

Every request under FILE_MANAGER_PREFIX is resolved to the tenant's
worker port through the TenantProcessManager on app.state, then forwarded
(HTTP with httpx, WebSocket with websockets) to 127.0.0.1:<port> with the
prefix stripped. Authentication happens before this router; it only reads
the tenant identity the auth layer left behind.
"""
import asyncio
import logging
import os
from contextlib import suppress
from dataclasses import dataclass

import httpx
from fastapi import APIRouter, Request, WebSocket
from fastapi.responses import PlainTextResponse, Response, StreamingResponse
from starlette.background import BackgroundTask
from starlette.requests import HTTPConnection
from starlette.websockets import WebSocketState
import websockets
from websockets.exceptions import ConnectionClosed, WebSocketException

from core import config
from core.errors import ProxyUnavailable, TenantSpawnError

logger = logging.getLogger(__name__)

router = APIRouter(prefix=config.FILE_MANAGER_PREFIX, tags=["file-manager"])

UNAVAILABLE_MESSAGE = "File Manager Service Unavailable. Please try again."

PROXY_METHODS = ["GET", "POST", "PUT", "PATCH", "DELETE", "HEAD", "OPTIONS"]

HOP_BY_HOP_HEADERS = {
    "connection",
    "keep-alive",
    "proxy-authenticate",
    "proxy-authorization",
    "te",
    "trailer",
    "trailers",
    "transfer-encoding",
    "upgrade",
}

# WebSocket close code 1013: "try again later"
WS_TRY_AGAIN_LATER = 1013
WS_POLICY_VIOLATION = 1008


@dataclass
class TenantContext:
    tenant_id: int
    root_path: str


def _from_trusted_proxy(conn: HTTPConnection) -> bool:
    return conn.client is not None and conn.client.host in config.TRUSTED_PROXIES


def tenant_context(conn: HTTPConnection) -> TenantContext | None:
    """
    Tenant identity set by the auth layer on request.state.

    The X-Tenant-Id / X-Tenant-Root headers are only read when the request
    comes from one of config.TRUSTED_PROXIES. The worker runs with
    --no-auth, so they are ignored from anyone else.
    """
    tenant_id = getattr(conn.state, "tenant_id", None)
    root_path = getattr(conn.state, "tenant_root", None)
    if tenant_id is None and _from_trusted_proxy(conn):
        tenant_id = conn.headers.get("x-tenant-id")
        root_path = conn.headers.get("x-tenant-root")
    if tenant_id is None:
        return None
    try:
        tenant_id = int(tenant_id)
    except (TypeError, ValueError):
        return None

    if not root_path:
        root_path = os.path.join(config.TENANT_HOME_DIR, str(tenant_id))
    return TenantContext(tenant_id=tenant_id, root_path=root_path)


async def resolve_backend(conn: HTTPConnection, context: TenantContext) -> int:
    """Port of the tenant's live worker. Any failure surfaces as ProxyUnavailable."""
    manager = conn.app.state.tenant_manager
    try:
        return await manager.get_instance(context.tenant_id, context.root_path)
    except TenantSpawnError as e:
        logger.error(f"Router error for tenant {context.tenant_id}: {e}")
        raise ProxyUnavailable(str(e)) from e
    except Exception as e:
        logger.exception(f"Unexpected router error for tenant {context.tenant_id}")
        raise ProxyUnavailable(str(e)) from e


def _unavailable() -> Response:
    return PlainTextResponse(UNAVAILABLE_MESSAGE, status_code=503)


def _upstream_url(scheme: str, port: int, path: str, query: str) -> str:
    url = f"{scheme}://127.0.0.1:{port}/{path}"
    if query:
        url = f"{url}?{query}"
    return url


def _forward_headers(conn: HTTPConnection, port: int) -> list[tuple[bytes, bytes]]:
    headers = [
        (name, value) for name, value in conn.headers.raw
        if name.decode("latin-1").lower() not in HOP_BY_HOP_HEADERS and name.lower() != b"host"
    ]
    headers.append((b"host", f"127.0.0.1:{port}".encode("latin-1")))
    return headers


@router.api_route("/{path:path}", methods=PROXY_METHODS)
async def proxy_http(request: Request, path: str):
    context = tenant_context(request)
    if context is None:
        return PlainTextResponse("Authentication Required", status_code=401)

    try:
        port = await resolve_backend(request, context)
    except ProxyUnavailable:
        return _unavailable()

    client: httpx.AsyncClient = request.app.state.http_client
    has_body = "content-length" in request.headers or "transfer-encoding" in request.headers
    upstream_request = client.build_request(
        request.method,
        _upstream_url("http", port, path, request.url.query),
        headers=_forward_headers(request, port),
        content=request.stream() if has_body else None,
    )
    try:
        upstream = await client.send(upstream_request, stream=True)
    except httpx.HTTPError as e:
        logger.error(f"Proxy error for tenant {context.tenant_id} on port {port}: {e}")
        return _unavailable()

    response = StreamingResponse(
        upstream.aiter_raw(),
        status_code=upstream.status_code,
        background=BackgroundTask(upstream.aclose),
    )
    response.raw_headers = [
        (name, value) for name, value in upstream.headers.raw
        if name.decode("latin-1").lower() not in HOP_BY_HOP_HEADERS
    ]
    return response


@router.websocket("/{path:path}")
async def proxy_websocket(websocket: WebSocket, path: str):
    context = tenant_context(websocket)
    if context is None:
        await websocket.close(code=WS_POLICY_VIOLATION)
        return

    try:
        port = await resolve_backend(websocket, context)
    except ProxyUnavailable:
        await websocket.close(code=WS_TRY_AGAIN_LATER, reason=UNAVAILABLE_MESSAGE)
        return

    url = _upstream_url("ws", port, path, websocket.url.query)
    subprotocols = websocket.scope.get("subprotocols") or None
    try:
        upstream = await websockets.connect(url, subprotocols=subprotocols, open_timeout=config.PROXY_TIMEOUT)
    except (OSError, asyncio.TimeoutError, WebSocketException) as e:
        logger.error(f"WebSocket proxy error for tenant {context.tenant_id} on port {port}: {e}")
        await websocket.close(code=WS_TRY_AGAIN_LATER, reason=UNAVAILABLE_MESSAGE)
        return

    await websocket.accept(subprotocol=upstream.subprotocol)
    try:
        await _bridge(websocket, upstream)
    finally:
        await upstream.close()
        if websocket.client_state != WebSocketState.DISCONNECTED:
            with suppress(RuntimeError):
                await websocket.close()


async def _bridge(websocket: WebSocket, upstream):
    """Pumps frames both ways until either side goes away."""

    async def client_to_upstream():
        while True:
            message = await websocket.receive()
            if message["type"] == "websocket.disconnect":
                return
            if message.get("bytes") is not None:
                await upstream.send(message["bytes"])
            elif message.get("text") is not None:
                await upstream.send(message["text"])

    async def upstream_to_client():
        async for message in upstream:
            if isinstance(message, bytes):
                await websocket.send_bytes(message)
            else:
                await websocket.send_text(message)

    tasks = [asyncio.create_task(client_to_upstream()), asyncio.create_task(upstream_to_client())]
    done, pending = await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
    for task in pending:
        task.cancel()
    await asyncio.gather(*pending, return_exceptions=True)
    for task in done:
        error = task.exception()
        if error is not None and not isinstance(error, ConnectionClosed):
            logger.warning(f"WebSocket bridge stopped: {error}")
