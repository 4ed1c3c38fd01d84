"""
CDP shim.

Clients speak the Chrome DevTools Protocol (JSON-RPC over WebSocket) to
/cdp. Each client connection gets its own connection to the remote browser
(BROWSER_WS_ENDPOINT). The shim keeps the client's view of targets and
sessions separate from the remote browser's: the client only ever sees
local ids, which map onto remote target and session ids.

Only the methods in the dispatch table are served. Anything else gets a
JSON-RPC "method not found" error and the connection stays open.
"""

import asyncio
import itertools
import json
import uuid
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional

import websockets

METHOD_NOT_FOUND = -32601
PARSE_ERROR = -32700
INVALID_REQUEST = -32600
SERVER_ERROR = -32000

PROTOCOL_VERSION = "1.3"

# Methods forwarded as-is to the remote session of the addressed page.
PAGE_METHODS = {
    "Page": (
        "enable", "disable", "navigate", "reload", "captureScreenshot", "printToPDF",
        "getFrameTree", "getLayoutMetrics", "bringToFront", "setLifecycleEventsEnabled",
        "addScriptToEvaluateOnNewDocument", "stopLoading",
    ),
    "Runtime": (
        "enable", "disable", "evaluate", "callFunctionOn", "getProperties",
        "releaseObject", "releaseObjectGroup", "awaitPromise",
    ),
    "DOM": (
        "enable", "disable", "getDocument", "querySelector", "querySelectorAll",
        "getOuterHTML", "describeNode", "getBoxModel", "resolveNode", "focus",
        "scrollIntoViewIfNeeded", "setFileInputFiles",
    ),
    "Input": (
        "dispatchMouseEvent", "dispatchKeyEvent", "insertText", "dispatchTouchEvent",
    ),
    "Network": (
        "enable", "disable", "setExtraHTTPHeaders", "getCookies", "setCookies",
        "deleteCookies", "clearBrowserCookies", "setUserAgentOverride",
        "setCacheDisabled", "getResponseBody",
    ),
    "Fetch": (
        "enable", "disable", "continueRequest", "fulfillRequest", "failRequest",
        "getResponseBody",
    ),
    "Emulation": (
        "setDeviceMetricsOverride", "clearDeviceMetricsOverride", "setUserAgentOverride",
        "setTimezoneOverride", "setGeolocationOverride", "setEmulatedMedia",
    ),
}

ACK_ONLY = {("Target", "setDiscoverTargets"), ("Target", "setAutoAttach")}


class CdpError(Exception):
    def __init__(self, code: int, message: str):
        self.code = code
        self.message = message
        super().__init__(f"{code}: {message}")


def _local_id() -> str:
    return uuid.uuid4().hex.upper()


class RemoteBrowser:
    """One CDP connection to the remote browser, with response correlation."""

    def __init__(self, connection, on_event: Optional[Callable[[dict], Awaitable[None]]] = None):
        self.connection = connection
        self.on_event = on_event
        self._ids = itertools.count(1)
        self._pending: dict[int, asyncio.Future] = {}
        self._reader = asyncio.create_task(self._read_loop())

    @classmethod
    async def connect(cls, endpoint: str, on_event=None, connect=websockets.connect) -> "RemoteBrowser":
        connection = await connect(endpoint, max_size=None, open_timeout=15)
        return cls(connection, on_event=on_event)

    async def _read_loop(self):
        try:
            async for raw in self.connection:
                try:
                    message = json.loads(raw)
                except ValueError:
                    print(f"[cdp] Dropping unparseable frame from remote browser: {raw[:80]!r}", flush=True)
                    continue
                if not isinstance(message, dict):
                    continue
                if "id" in message:
                    future = self._pending.pop(message["id"], None)
                    if future is not None and not future.done():
                        future.set_result(message)
                elif self.on_event is not None:
                    await self.on_event(message)
        except websockets.ConnectionClosed:
            pass
        finally:
            for future in self._pending.values():
                if not future.done():
                    future.set_exception(CdpError(SERVER_ERROR, "Remote browser disconnected"))
            self._pending.clear()

    async def call(self, method: str, params: Optional[dict] = None, session_id: Optional[str] = None) -> dict:
        call_id = next(self._ids)
        message: dict[str, Any] = {"id": call_id, "method": method, "params": params or {}}
        if session_id:
            message["sessionId"] = session_id
        future = asyncio.get_running_loop().create_future()
        self._pending[call_id] = future
        try:
            await self.connection.send(json.dumps(message))
        except websockets.ConnectionClosed as e:
            self._pending.pop(call_id, None)
            raise CdpError(SERVER_ERROR, "Remote browser disconnected") from e
        response = await future
        if "error" in response:
            error = response["error"]
            raise CdpError(error.get("code", SERVER_ERROR), error.get("message", "Remote error"))
        return response.get("result", {})

    async def close(self):
        self._reader.cancel()
        await asyncio.gather(self._reader, return_exceptions=True)
        await self.connection.close()


@dataclass
class TargetHandle:
    local_id: str
    remote_target_id: str
    remote_session_id: str
    local_session_id: str
    url: str = "about:blank"


class CdpSession:
    """Per-client-connection shim state and dispatch."""

    def __init__(self, send: Callable[[dict], Awaitable[None]], remote: Optional[RemoteBrowser] = None):
        self.send = send
        self.remote = remote
        self.pending: dict[Any, asyncio.Task] = {}
        self.targets: dict[str, TargetHandle] = {}
        self._by_local_session: dict[str, TargetHandle] = {}
        self._by_remote_session: dict[str, TargetHandle] = {}
        self._lock = asyncio.Lock()
        self.handlers: dict[tuple[str, str], Callable[[dict, Optional[str]], Awaitable[dict]]] = {
            ("Browser", "getVersion"): self._browser_get_version,
            ("Browser", "close"): self._browser_close,
            ("Target", "createTarget"): self._target_create,
            ("Target", "closeTarget"): self._target_close,
            ("Target", "getTargets"): self._target_list,
            ("Target", "getTargetInfo"): self._target_get_info,
            ("Target", "attachToTarget"): self._target_attach,
            ("Target", "activateTarget"): self._target_activate,
        }
        for key in ACK_ONLY:
            self.handlers[key] = self._ack
        for domain, methods in PAGE_METHODS.items():
            for method in methods:
                self.handlers[(domain, method)] = self._make_page_forwarder(f"{domain}.{method}")

    # ------------------------------------------------------------
    # Message handling
    # ------------------------------------------------------------

    async def handle_raw(self, raw: str):
        """Parse one client message and start handling it."""
        try:
            message = json.loads(raw)
        except ValueError:
            await self.send({"id": None, "error": {"code": PARSE_ERROR, "message": "Parse error"}})
            return
        if (
            not isinstance(message, dict)
            or not isinstance(message.get("id"), (int, str))
            or not isinstance(message.get("method"), str)
        ):
            await self.send({
                "id": message.get("id") if isinstance(message, dict) else None,
                "error": {"code": INVALID_REQUEST, "message": "Invalid request"},
            })
            return
        params = message.get("params")
        if params is not None and not isinstance(params, dict):
            await self.send({"id": message["id"], "error": {"code": INVALID_REQUEST, "message": "Invalid params"}})
            return
        task = asyncio.create_task(self.handle(message))
        self.pending[message["id"]] = task
        task.add_done_callback(lambda _t, mid=message["id"]: self.pending.pop(mid, None))

    async def handle(self, message: dict):
        msg_id = message["id"]
        method = message["method"]
        session_id = message.get("sessionId")
        domain, _, name = method.partition(".")
        handler = self.handlers.get((domain, name))

        response: dict[str, Any] = {"id": msg_id}
        if session_id:
            response["sessionId"] = session_id
        if handler is None:
            response["error"] = {"code": METHOD_NOT_FOUND, "message": f"Method not found: {method}"}
        else:
            try:
                response["result"] = await handler(message.get("params") or {}, session_id)
            except CdpError as e:
                response["error"] = {"code": e.code, "message": e.message}
            except (KeyError, TypeError, ValueError, AttributeError) as e:
                print(f"[cdp] {method} failed: {e!r}", flush=True)
                response["error"] = {"code": SERVER_ERROR, "message": f"Internal error handling {method}"}
        await self.send(response)

    async def on_remote_event(self, event: dict):
        """Re-emit remote events for sessions this client owns."""
        remote_session = event.get("sessionId")
        if remote_session is None:
            return
        handle = self._by_remote_session.get(remote_session)
        if handle is None:
            return
        await self.send({**event, "sessionId": handle.local_session_id})

    async def close(self):
        """Cancel in-flight calls and close every target this connection opened."""
        for task in list(self.pending.values()):
            task.cancel()
        await asyncio.gather(*self.pending.values(), return_exceptions=True)
        self.pending.clear()
        if self.remote is None:
            return
        for handle in list(self.targets.values()):
            try:
                await self.remote.call("Target.closeTarget", {"targetId": handle.remote_target_id})
            except CdpError:
                pass
        self.targets.clear()
        await self.remote.close()

    # ------------------------------------------------------------
    # Target bookkeeping
    # ------------------------------------------------------------

    def _require_remote(self) -> RemoteBrowser:
        if self.remote is None:
            raise CdpError(SERVER_ERROR, "Browser not available")
        return self.remote

    async def _open_target(self, url: str) -> TargetHandle:
        remote = self._require_remote()
        created = await remote.call("Target.createTarget", {"url": url})
        attached = await remote.call(
            "Target.attachToTarget", {"targetId": created["targetId"], "flatten": True}
        )
        handle = TargetHandle(
            local_id=_local_id(),
            remote_target_id=created["targetId"],
            remote_session_id=attached["sessionId"],
            local_session_id=_local_id(),
            url=url,
        )
        self.targets[handle.local_id] = handle
        self._by_local_session[handle.local_session_id] = handle
        self._by_remote_session[handle.remote_session_id] = handle
        return handle

    def _forget(self, handle: TargetHandle):
        self.targets.pop(handle.local_id, None)
        self._by_local_session.pop(handle.local_session_id, None)
        self._by_remote_session.pop(handle.remote_session_id, None)

    def _target(self, target_id: Optional[str]) -> TargetHandle:
        handle = self.targets.get(target_id or "")
        if handle is None:
            raise CdpError(SERVER_ERROR, f"No target with given id found: {target_id}")
        return handle

    async def _resolve_page(self, params: dict, session_id: Optional[str]) -> TargetHandle:
        if session_id:
            handle = self._by_local_session.get(session_id)
            if handle is None:
                raise CdpError(SERVER_ERROR, f"Session with given id not found: {session_id}")
            return handle
        if params.get("targetId"):
            return self._target(params["targetId"])
        async with self._lock:
            if self.targets:
                return list(self.targets.values())[-1]
            return await self._open_target("about:blank")

    def _describe(self, handle: TargetHandle) -> dict:
        return {
            "targetId": handle.local_id,
            "type": "page",
            "title": handle.url,
            "url": handle.url,
            "attached": True,
        }

    # ------------------------------------------------------------
    # Handlers
    # ------------------------------------------------------------

    async def _ack(self, params: dict, session_id: Optional[str]) -> dict:
        return {}

    async def _browser_get_version(self, params: dict, session_id: Optional[str]) -> dict:
        if self.remote is None:
            return {"protocolVersion": PROTOCOL_VERSION, "product": "moltworker-cdp", "userAgent": ""}
        return await self.remote.call("Browser.getVersion")

    async def _browser_close(self, params: dict, session_id: Optional[str]) -> dict:
        remote = self._require_remote()
        for handle in list(self.targets.values()):
            await remote.call("Target.closeTarget", {"targetId": handle.remote_target_id})
            self._forget(handle)
        return {}

    async def _target_create(self, params: dict, session_id: Optional[str]) -> dict:
        handle = await self._open_target(params.get("url") or "about:blank")
        return {"targetId": handle.local_id}

    async def _target_close(self, params: dict, session_id: Optional[str]) -> dict:
        handle = self._target(params.get("targetId"))
        result = await self._require_remote().call("Target.closeTarget", {"targetId": handle.remote_target_id})
        self._forget(handle)
        return {"success": result.get("success", True)}

    async def _target_list(self, params: dict, session_id: Optional[str]) -> dict:
        return {"targetInfos": [self._describe(h) for h in self.targets.values()]}

    async def _target_get_info(self, params: dict, session_id: Optional[str]) -> dict:
        handle = await self._resolve_page(params, session_id)
        return {"targetInfo": self._describe(handle)}

    async def _target_attach(self, params: dict, session_id: Optional[str]) -> dict:
        handle = self._target(params.get("targetId"))
        return {"sessionId": handle.local_session_id}

    async def _target_activate(self, params: dict, session_id: Optional[str]) -> dict:
        handle = self._target(params.get("targetId"))
        await self._require_remote().call("Target.activateTarget", {"targetId": handle.remote_target_id})
        return {}

    def _make_page_forwarder(self, method: str):
        async def forward(params: dict, session_id: Optional[str]) -> dict:
            handle = await self._resolve_page(params, session_id)
            remote_params = {k: v for k, v in params.items() if k != "targetId"}
            result = await self._require_remote().call(method, remote_params, session_id=handle.remote_session_id)
            if method == "Page.navigate" and "url" in params:
                handle.url = params["url"]
            return result

        return forward


def version_info(base_url: str, secret: str) -> dict:
    """Payload for /cdp/json/version."""
    ws_base = base_url.replace("https://", "wss://").replace("http://", "ws://").rstrip("/")
    return {
        "Browser": "moltworker-cdp/1.0",
        "Protocol-Version": PROTOCOL_VERSION,
        "webSocketDebuggerUrl": f"{ws_base}/cdp?secret={secret}",
    }
