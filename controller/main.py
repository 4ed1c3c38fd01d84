#!/usr/bin/env python3
"""
Moltworker Controller

Responsibilities:
- Start and health-check the clawdbot gateway inside its sandbox
- Gate access (Cloudflare Access identities, shared secrets)
- Proxy HTTP and WebSocket traffic to the gateway
- Mount R2 storage and back gateway state up to it
- CDP shim for remote browser automation

Usage:
    python3 -m uvicorn main:create_app --factory --host 0.0.0.0 --port 8080
"""

import asyncio
from typing import Optional

import httpx
import websockets
from fastapi import Depends, FastAPI, HTTPException, Query, Request, WebSocket
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from starlette.websockets import WebSocketDisconnect

import audit
from access_auth import AccessVerifier, AuthGate, Rejected, UserIdentity
from cdp_shim import CdpSession, RemoteBrowser, version_info
from gateway_env import PASSTHROUGH_KEYS, PROVIDER_KEYS, build_gateway_env
from gateway_process import GatewaySupervisor, SpawnError, StartupTimeout, probe_port
from r2_storage import StorageError, StorageManager, SyncInProgress
from sandbox import create_sandbox
from settings import Settings, load_settings
from ws_proxy import GatewayProxy, loading_response, public_origin

VERSION = "1.0.0"

# First path segments that are never proxied to the gateway.
RESERVED_PREFIXES = {"api", "_admin", "debug", "internal", "cdp"}

PROXY_METHODS = ["GET", "POST", "PUT", "DELETE", "PATCH", "HEAD", "OPTIONS"]

# Keys reported (present / absent, never values) by /debug/env.
DEBUG_ENV_KEYS = (
    "MOLTBOT_GATEWAY_TOKEN",
    "CF_ACCESS_TEAM_DOMAIN",
    "CF_ACCESS_AUD",
    "AI_GATEWAY_BASE_URL",
    "R2_ACCESS_KEY_ID",
    "R2_SECRET_ACCESS_KEY",
    "CF_ACCOUNT_ID",
    "BROWSER_WS_ENDPOINT",
    "INTERNAL_API_TOKEN",
    "DEV_MODE",
    *PROVIDER_KEYS,
    *PASSTHROUGH_KEYS,
)


class DeviceApproveRequest(BaseModel):
    requestId: str


def deny(decision: Rejected):
    """Generic 401/403. The rejection reason only goes to the audit log."""
    if decision.reason == "no_token":
        raise HTTPException(status_code=401, detail="Unauthorized")
    raise HTTPException(status_code=403, detail="Forbidden")


def accepts_html(request: Request) -> bool:
    return "text/html" in request.headers.get("accept", "")


def create_app(
    settings: Optional[Settings] = None,
    sandbox=None,
    http_client: Optional[httpx.AsyncClient] = None,
    verifier: Optional[AccessVerifier] = None,
    probe=probe_port,
    ws_connect=websockets.connect,
    browser_connect=websockets.connect,
) -> FastAPI:
    settings = settings or load_settings()

    # Refuse to serve half-configured: raises MissingConfiguration.
    build_gateway_env(settings.environ)

    sandbox = sandbox or create_sandbox(settings)
    storage = StorageManager(sandbox, settings)
    gate = AuthGate(settings, verifier=verifier)
    proxy = GatewayProxy(settings, client=http_client, connect=ws_connect)

    async def prepare_storage():
        """Mount R2 and restore the last backup before the gateway starts."""
        if not settings.storage_configured:
            print("[storage] R2 not configured; gateway state will not persist", flush=True)
            return
        try:
            await storage.mount()
            result = await storage.restore_in()
            if result.restored:
                print(f"[storage] restored backup from {result.timestamp}", flush=True)
        except StorageError as e:
            # Durability is degraded, the gateway still starts.
            print(f"[storage] WARNING: {e} {e.details}".rstrip(), flush=True)

    supervisor = GatewaySupervisor(sandbox, settings, before_start=prepare_storage, probe=probe)

    if not settings.storage_configured:
        storage.warning = "R2 storage is not configured; gateway data will not persist across restarts"
    if not settings.access_configured and not settings.dev_mode:
        print("[auth] WARNING: Cloudflare Access not configured; admin routes will reject all requests", flush=True)

    app = FastAPI(title="Moltworker Controller", version=VERSION)
    app.state.settings = settings
    app.state.supervisor = supervisor
    app.state.storage = storage
    app.state.gate = gate
    app.state.proxy = proxy

    @app.on_event("startup")
    async def startup():
        audit.audit_log("controller_started", {
            "version": VERSION,
            "sandbox_mode": settings.sandbox_mode,
            "dev_mode": settings.dev_mode,
            "storage_configured": settings.storage_configured,
        })

    @app.on_event("shutdown")
    async def shutdown():
        await proxy.aclose()

    # ============================================================
    # Authentication dependencies
    # ============================================================

    async def require_admin(request: Request) -> UserIdentity:
        decision = await gate.identity(request, route="admin")
        if isinstance(decision, UserIdentity):
            return decision
        deny(decision)

    async def require_debug(request: Request) -> UserIdentity:
        if not settings.debug_routes:
            raise HTTPException(status_code=404, detail="Not Found")
        decision = await gate.identity(request, route="debug")
        if isinstance(decision, UserIdentity):
            return decision
        deny(decision)

    def require_internal(request: Request):
        decision = gate.internal(request)
        if isinstance(decision, Rejected):
            deny(decision)
        return decision

    def require_cdp(request: Request):
        decision = gate.cdp(request)
        if isinstance(decision, Rejected):
            deny(decision)
        return decision

    async def gateway_ready():
        """ensure_running() mapped onto HTTP errors for API routes."""
        try:
            return await supervisor.ensure_running()
        except StartupTimeout:
            raise HTTPException(
                status_code=503,
                detail="Gateway is starting, retry shortly",
                headers={"Retry-After": "5"},
            )
        except SpawnError:
            raise HTTPException(
                status_code=503,
                detail="Gateway failed to start",
                headers={"Retry-After": "10"},
            )

    # ============================================================
    # Health & Status (public)
    # ============================================================

    @app.get("/sandbox-health")
    async def health():
        """Health check endpoint."""
        return {"status": "ok"}

    @app.get("/api/status")
    async def status():
        """Gateway status without starting anything."""
        state = await supervisor.status()
        return {
            "ok": state["status"] == "running",
            "status": state["status"],
            "processId": state["processId"],
            "devMode": settings.dev_mode,
            "storageWarning": storage.warning,
        }

    # ============================================================
    # Admin API (Cloudflare Access)
    # ============================================================

    @app.get("/api/admin/devices")
    async def devices_list(identity: UserIdentity = Depends(require_admin)):
        """List pending and paired devices."""
        await gateway_ready()
        return await supervisor.list_devices()

    async def _approve(request_id: str, identity: UserIdentity) -> dict:
        await gateway_ready()
        success, output = await supervisor.approve_device(request_id)
        audit.audit_log("device_approve_requested", {"requestId": request_id, "by": identity.email, "success": success})
        if not success:
            return {"success": False, "requestId": request_id, "error": output.strip()[:500] or "Approval failed"}
        return {"success": True, "requestId": request_id, "message": "Device approved"}

    @app.post("/api/admin/devices/approve")
    async def device_approve_body(body: DeviceApproveRequest, identity: UserIdentity = Depends(require_admin)):
        """Approve a pending device pairing request."""
        return await _approve(body.requestId, identity)

    @app.post("/api/admin/devices/approve-all")
    async def devices_approve_all(identity: UserIdentity = Depends(require_admin)):
        """Approve every pending device pairing request."""
        await gateway_ready()
        devices = await supervisor.list_devices()
        results = []
        for device in devices.get("pending", []):
            request_id = device.get("requestId")
            if not request_id:
                continue
            success, _output = await supervisor.approve_device(request_id)
            results.append({"requestId": request_id, "success": success})
        approved = sum(1 for r in results if r["success"])
        audit.audit_log("device_approve_all", {"by": identity.email, "approved": approved, "total": len(results)})
        return {
            "success": approved == len(results),
            "approved": approved,
            "total": len(results),
            "results": results,
        }

    @app.post("/api/admin/devices/{request_id}/approve")
    async def device_approve(request_id: str, identity: UserIdentity = Depends(require_admin)):
        """Approve a pending device pairing request."""
        return await _approve(request_id, identity)

    @app.get("/api/admin/storage")
    async def storage_status(identity: UserIdentity = Depends(require_admin)):
        """R2 mount and last-sync state."""
        return await storage.status()

    async def _run_sync(source: str):
        try:
            result = await storage.sync_out()
        except SyncInProgress:
            return JSONResponse({"status": "sync in progress"}, status_code=409)
        except StorageError as e:
            print(f"[storage] {source} sync failed: {e} {e.details}".rstrip(), flush=True)
            return JSONResponse(
                {"success": False, "error": str(e), "details": e.details},
                status_code=500,
            )
        return {"success": True, "lastSync": result.timestamp}

    @app.post("/api/admin/storage/sync")
    async def storage_sync(identity: UserIdentity = Depends(require_admin)):
        """Back up gateway state to R2 now."""
        audit.audit_log("storage_sync_requested", {"source": "admin", "by": identity.email})
        return await _run_sync("manual")

    @app.post("/api/admin/gateway/restart")
    async def gateway_restart(identity: UserIdentity = Depends(require_admin)):
        """Kill the gateway and start a fresh one in the background."""
        audit.audit_log("gateway_restart_requested", {"source": "admin", "by": identity.email})
        killed = await supervisor.restart()
        return {
            "success": True,
            "killed": killed,
            "message": "Gateway process killed, new instance starting...",
        }

    @app.get("/api/admin/audit")
    async def audit_entries(
        limit: int = Query(50, ge=1, le=1000),
        event: Optional[str] = Query(None),
        identity: UserIdentity = Depends(require_admin),
    ):
        """Recent audit log entries, newest first."""
        return {"entries": audit.read_audit_log(limit=limit, event=event)}

    # ============================================================
    # Internal (scheduled trigger)
    # ============================================================

    @app.post("/internal/storage/sync")
    async def internal_storage_sync(_auth=Depends(require_internal)):
        """Scheduled backup. Failures are logged and retried on the next tick."""
        return await _run_sync("scheduled")

    # ============================================================
    # Debug (DEBUG_ROUTES=true)
    # ============================================================

    @app.get("/debug/processes")
    async def debug_processes(
        logs: bool = Query(False),
        identity: UserIdentity = Depends(require_debug),
    ):
        processes = []
        for proc in await sandbox.list_processes():
            entry = {"pid": proc.pid, "command": proc.command, "status": proc.status}
            if logs:
                entry["stdout"], entry["stderr"] = await sandbox.read_logs(proc.pid, lines=50)
            processes.append(entry)
        return {"count": len(processes), "processes": processes}

    @app.get("/debug/logs")
    async def debug_logs(
        pid: Optional[int] = Query(None),
        lines: int = Query(200, ge=1, le=2000),
        identity: UserIdentity = Depends(require_debug),
    ):
        if pid is None:
            existing = await supervisor.find_existing()
            if existing is None:
                return {"status": "no_process", "stdout": "", "stderr": ""}
            pid = existing.pid
        stdout, stderr = await sandbox.read_logs(pid, lines=lines)
        return {"pid": pid, "stdout": stdout, "stderr": stderr}

    @app.get("/debug/env")
    async def debug_env(identity: UserIdentity = Depends(require_debug)):
        return {key: bool(settings.environ.get(key)) for key in DEBUG_ENV_KEYS}

    @app.get("/debug/version")
    async def debug_version(identity: UserIdentity = Depends(require_debug)):
        result = await sandbox.exec([settings.gateway_cli, "--version"], timeout=15)
        return {"controller": VERSION, "gateway": result.output.strip()}

    # ============================================================
    # CDP shim
    # ============================================================

    @app.get("/cdp/json/version")
    async def cdp_version(request: Request, _auth=Depends(require_cdp)):
        return version_info(settings.worker_url or public_origin(request), settings.cdp_secret)

    @app.get("/cdp/json/list")
    @app.get("/cdp/json")
    async def cdp_list(request: Request, _auth=Depends(require_cdp)):
        info = version_info(settings.worker_url or public_origin(request), settings.cdp_secret)
        return [{
            "id": "moltworker-cdp",
            "type": "page",
            "title": "Remote browser",
            "url": "about:blank",
            "webSocketDebuggerUrl": info["webSocketDebuggerUrl"],
        }]

    @app.websocket("/cdp")
    async def cdp_socket(websocket: WebSocket):
        # Authenticated once, at upgrade time.
        if isinstance(gate.cdp(websocket), Rejected):
            await websocket.close(code=1008)
            return
        await websocket.accept()
        if not settings.browser_ws_endpoint:
            await websocket.close(code=1011, reason="Browser not configured")
            return

        session = CdpSession(send=websocket.send_json)
        try:
            session.remote = await RemoteBrowser.connect(
                settings.browser_ws_endpoint,
                on_event=session.on_remote_event,
                connect=browser_connect,
            )
        except (OSError, asyncio.TimeoutError, websockets.InvalidHandshake) as e:
            print(f"[cdp] remote browser unavailable: {e}", flush=True)
            await websocket.close(code=1011, reason="Browser unavailable")
            return

        try:
            while True:
                raw = await websocket.receive_text()
                await session.handle_raw(raw)
        except WebSocketDisconnect:
            pass
        finally:
            await session.close()

    # ============================================================
    # Catch-all proxy to the gateway
    # ============================================================

    @app.websocket("/{path:path}")
    async def proxy_websocket(websocket: WebSocket, path: str):
        if path.split("/", 1)[0] in RESERVED_PREFIXES:
            await websocket.close(code=1008)
            return
        if isinstance(await gate.proxy(websocket), Rejected):
            await websocket.close(code=1008)
            return
        try:
            await supervisor.ensure_running()
        except (SpawnError, StartupTimeout):
            await websocket.accept()
            await websocket.close(code=1013, reason="Gateway is starting, retry shortly")
            return
        await proxy.forward_websocket(websocket, path)

    @app.api_route("/{path:path}", methods=PROXY_METHODS)
    async def proxy_http(path: str, request: Request):
        if path.split("/", 1)[0] in RESERVED_PREFIXES:
            raise HTTPException(status_code=404, detail="Not Found")
        decision = await gate.proxy(request)
        if isinstance(decision, Rejected):
            deny(decision)

        if accepts_html(request) and not await supervisor.is_ready():
            # Browsers get the auto-refreshing page instead of a hanging request.
            supervisor.start_in_background()
            return loading_response()

        try:
            await supervisor.ensure_running()
        except StartupTimeout:
            return loading_response()
        except SpawnError:
            return JSONResponse(
                {"error": "Gateway failed to start"},
                status_code=503,
                headers={"Retry-After": "10"},
            )
        return await proxy.forward_http(request, path)

    return app


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(create_app(), host="0.0.0.0", port=8080)
