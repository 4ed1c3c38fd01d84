"""
Reverse proxy to the gateway: streaming HTTP and spliced WebSockets.

HTTP responses are streamed back raw (no decoding, no buffering). WebSocket
traffic is relayed frame by frame in both directions; backend text frames
and close reasons carrying one of two known gateway errors are rewritten
into redirects the control UI can act on. Everything else passes through
unchanged.
"""

import asyncio
import json
from typing import Optional

import httpx
import websockets
from fastapi import Request, WebSocket
from fastapi.responses import HTMLResponse, JSONResponse, StreamingResponse
from starlette.background import BackgroundTask
from starlette.requests import HTTPConnection
from starlette.websockets import WebSocketDisconnect

from scrub import redact_url

TOKEN_MISSING = "gateway token missing"
PAIRING_REQUIRED = "pairing required"

# Close reasons are limited to 123 bytes by the WebSocket protocol.
MAX_CLOSE_REASON = 123

HOP_BY_HOP = {
    "connection",
    "keep-alive",
    "proxy-authenticate",
    "proxy-authorization",
    "te",
    "trailers",
    "transfer-encoding",
    "upgrade",
    "host",
}

WS_FORWARD_HEADERS = ("cookie", "authorization", "user-agent")

LOADING_PAGE = """<!doctype html>
<html>
<head>
  <meta charset="utf-8">
  <meta http-equiv="refresh" content="{retry_after}">
  <title>Starting gateway</title>
  <style>
    body {{ font-family: system-ui, sans-serif; background: #0f1115; color: #e6e6e6;
           display: flex; align-items: center; justify-content: center; height: 100vh; margin: 0; }}
    .box {{ text-align: center; }}
    .spinner {{ width: 32px; height: 32px; margin: 0 auto 16px; border: 3px solid #333;
               border-top-color: #e6e6e6; border-radius: 50%; animation: spin 1s linear infinite; }}
    @keyframes spin {{ to {{ transform: rotate(360deg); }} }}
  </style>
</head>
<body>
  <div class="box">
    <div class="spinner"></div>
    <p>The gateway is starting up. This page will refresh automatically.</p>
  </div>
</body>
</html>
"""


class ProxyUpstreamClosed(Exception):
    """The gateway side of a proxied WebSocket closed."""

    def __init__(self, code: int, reason: str = ""):
        self.code = code
        self.reason = reason
        super().__init__(f"upstream closed ({code}) {reason}".strip())


def loading_response(retry_after: int = 5) -> HTMLResponse:
    return HTMLResponse(
        LOADING_PAGE.format(retry_after=retry_after),
        status_code=503,
        headers={"Retry-After": str(retry_after), "Cache-Control": "no-store"},
    )


def public_origin(conn: HTTPConnection) -> str:
    """Origin the client used to reach us (honours X-Forwarded-Proto)."""
    scheme = conn.headers.get("x-forwarded-proto") or conn.url.scheme
    scheme = {"ws": "http", "wss": "https"}.get(scheme, scheme)
    host = conn.headers.get("host") or conn.url.netloc
    return f"{scheme}://{host}"


def redirect_for(text: str, origin: str) -> Optional[tuple[str, str, str]]:
    """(reason, location, message) when text carries a known gateway error."""
    lowered = text.lower()
    if TOKEN_MISSING in lowered:
        location = f"{origin}/?token=<your-gateway-token>"
        return (
            "token_missing",
            location,
            f"Gateway token missing. Reconnect with your token: {location}",
        )
    if PAIRING_REQUIRED in lowered:
        location = f"{origin}/_admin/"
        return (
            "pairing_required",
            location,
            f"Pairing required. Approve this device at {location}",
        )
    return None


def rewrite_backend_frame(data: str, origin: str) -> str:
    """Rewrite one backend text frame; frames without a known error are returned as-is."""
    hit = redirect_for(data, origin)
    if hit is None:
        return data
    reason, location, message = hit
    try:
        payload = json.loads(data)
    except ValueError:
        payload = None
    if isinstance(payload, dict) and isinstance(payload.get("error"), dict):
        payload["error"]["message"] = message
        payload["error"]["redirect"] = location
        return json.dumps(payload)
    return json.dumps({"type": "redirect", "reason": reason, "location": location, "message": message})


def truncate_reason(reason: str) -> str:
    encoded = reason.encode("utf-8")
    if len(encoded) <= MAX_CLOSE_REASON:
        return reason
    return encoded[:MAX_CLOSE_REASON - 3].decode("utf-8", errors="ignore") + "..."


def rewrite_close_reason(reason: str, origin: str) -> str:
    hit = redirect_for(reason or "", origin)
    if hit is None:
        return truncate_reason(reason or "")
    return truncate_reason(hit[2])


def client_close_code(code: Optional[int]) -> int:
    """Map an upstream close code to one a server may send."""
    if code is None or code == 1005:
        return 1000
    if code in (1004, 1006, 1015) or not (1000 <= code <= 1014 or 3000 <= code <= 4999):
        return 1011
    return code


class GatewayProxy:
    """Forwards traffic to the gateway's fixed local port."""

    def __init__(self, settings, client: Optional[httpx.AsyncClient] = None, connect=websockets.connect):
        self.settings = settings
        # Slow gateway responses are never cut off here.
        self.client = client or httpx.AsyncClient(timeout=None)
        self.connect = connect

    @property
    def base_url(self) -> str:
        return f"http://{self.settings.gateway_host}:{self.settings.gateway_port}"

    @property
    def ws_base_url(self) -> str:
        return f"ws://{self.settings.gateway_host}:{self.settings.gateway_port}"

    async def aclose(self):
        await self.client.aclose()

    async def forward_http(self, request: Request, path: str):
        url = f"{self.base_url}/{path}"
        if request.url.query:
            url += f"?{request.url.query}"

        headers = [(k, v) for k, v in request.headers.items() if k.lower() not in HOP_BY_HOP]
        has_body = "content-length" in request.headers or "transfer-encoding" in request.headers
        upstream_request = self.client.build_request(
            request.method,
            url,
            headers=headers,
            content=request.stream() if has_body else None,
        )
        try:
            resp = await self.client.send(upstream_request, stream=True)
        except httpx.TransportError as e:
            print(f"[proxy] {request.method} {redact_url(url)} failed: {e}", flush=True)
            return JSONResponse({"error": "Cannot connect to gateway"}, status_code=502)

        response = StreamingResponse(
            resp.aiter_raw(),
            status_code=resp.status_code,
            background=BackgroundTask(resp.aclose),
        )
        # Raw passthrough keeps duplicate headers (set-cookie) and encodings intact.
        response.raw_headers = [
            (k.lower().encode("latin-1"), v.encode("latin-1"))
            for k, v in resp.headers.multi_items()
            if k.lower() not in HOP_BY_HOP
        ]
        return response

    async def forward_websocket(self, websocket: WebSocket, path: str):
        origin = public_origin(websocket)
        await websocket.accept()

        url = f"{self.ws_base_url}/{path}"
        if websocket.url.query:
            url += f"?{websocket.url.query}"
        headers = {k: websocket.headers[k] for k in WS_FORWARD_HEADERS if k in websocket.headers}

        try:
            upstream = await self.connect(url, additional_headers=headers, max_size=None, open_timeout=10)
        except (OSError, asyncio.TimeoutError, websockets.InvalidHandshake) as e:
            print(f"[proxy] websocket connect to {redact_url(url)} failed: {e}", flush=True)
            await websocket.close(code=1011, reason="Gateway unavailable")
            return

        try:
            await splice(websocket, upstream, origin)
        finally:
            await upstream.close()


async def _client_to_backend(websocket, upstream):
    while True:
        message = await websocket.receive()
        if message["type"] == "websocket.disconnect":
            return
        if message.get("text") is not None:
            data = message["text"]
        elif message.get("bytes") is not None:
            data = message["bytes"]
        else:
            continue
        try:
            await upstream.send(data)
        except websockets.ConnectionClosed as e:
            raise ProxyUpstreamClosed(e.rcvd.code if e.rcvd else 1006, e.rcvd.reason if e.rcvd else "") from e


async def _backend_to_client(websocket, upstream, origin: str):
    try:
        async for frame in upstream:
            if isinstance(frame, str):
                await websocket.send_text(rewrite_backend_frame(frame, origin))
            else:
                await websocket.send_bytes(frame)
    except websockets.ConnectionClosed:
        pass
    raise ProxyUpstreamClosed(upstream.close_code or 1005, upstream.close_reason or "")


async def splice(websocket, upstream, origin: str):
    """
    Relay frames both ways until either side closes, then close the other.
    """
    client_task = asyncio.create_task(_client_to_backend(websocket, upstream))
    backend_task = asyncio.create_task(_backend_to_client(websocket, upstream, origin))
    done, pending = await asyncio.wait({client_task, backend_task}, return_when=asyncio.FIRST_COMPLETED)
    for task in pending:
        task.cancel()
    await asyncio.gather(*pending, return_exceptions=True)

    error = next(iter(done)).exception()
    if isinstance(error, ProxyUpstreamClosed):
        # No reconnect here: the client decides whether to retry.
        try:
            await websocket.close(
                code=client_close_code(error.code),
                reason=rewrite_close_reason(error.reason, origin),
            )
        except (RuntimeError, WebSocketDisconnect):
            pass
        return

    await upstream.close()
    if error is not None and not isinstance(error, (WebSocketDisconnect, OSError, RuntimeError)):
        raise error
