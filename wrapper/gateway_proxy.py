"""
Reverse proxy to the gateway service.

Forwards HTTP requests and WebSocket connections to GATEWAY_URL, injecting
`Authorization: Bearer <gateway token>`. The token is resolved per request
so a rotated token takes effect without restarting the proxy.

Until the deployment is configured, HTTP requests outside /setup are
redirected to /setup and WebSocket connections are closed before accept.
"""

import asyncio
from typing import Optional
from urllib.parse import urlsplit

import httpx
from fastapi import Request, WebSocket
from fastapi.responses import JSONResponse, RedirectResponse, Response, StreamingResponse
from starlette.background import BackgroundTask
from starlette.websockets import WebSocketDisconnect
from websockets.asyncio.client import connect as ws_connect
from websockets.exceptions import ConnectionClosed, InvalidHandshake, InvalidURI

from gateway_state import GatewayState

SETUP_PATH = "/setup"

HOP_BY_HOP_HEADERS = {
    "connection",
    "keep-alive",
    "proxy-authenticate",
    "proxy-authorization",
    "te",
    "trailers",
    "transfer-encoding",
    "upgrade",
    "host",
    "content-length",
}

# Headers the websockets client sets itself during the handshake
WS_HANDSHAKE_HEADERS = {
    "sec-websocket-key",
    "sec-websocket-version",
    "sec-websocket-extensions",
    "sec-websocket-protocol",
    "sec-websocket-accept",
}


def is_setup_path(path: str) -> bool:
    return path == SETUP_PATH or path.startswith(SETUP_PATH + "/")


class GatewayProxy:
    def __init__(self, target_url: str, state: GatewayState, client: Optional[httpx.AsyncClient] = None):
        self.target_url = target_url.rstrip("/")
        self.state = state
        self.client = client or httpx.AsyncClient(timeout=httpx.Timeout(300.0, connect=10.0))

    async def aclose(self):
        await self.client.aclose()

    def current_token(self) -> Optional[str]:
        if self.state.is_configured():
            return self.state.resolve_token()
        return self.state.current_token

    def _forward_headers(self, headers, client_host: Optional[str], scheme: str, host: str) -> dict:
        out = {k: v for k, v in headers.items() if k.lower() not in HOP_BY_HOP_HEADERS}
        if client_host:
            prior = out.pop("x-forwarded-for", None)
            out["x-forwarded-for"] = f"{prior}, {client_host}" if prior else client_host
        out.setdefault("x-forwarded-proto", scheme)
        if host:
            out.setdefault("x-forwarded-host", host)
        token = self.current_token()
        if token:
            out.pop("authorization", None)
            out["Authorization"] = f"Bearer {token}"
        return out

    # ------------------------------------------------------------
    # HTTP
    # ------------------------------------------------------------

    async def handle_http(self, request: Request) -> Response:
        if not self.state.is_configured() and not is_setup_path(request.url.path):
            return RedirectResponse(url=SETUP_PATH, status_code=302)
        return await self.forward_http(request)

    async def forward_http(self, request: Request) -> Response:
        url = f"{self.target_url}{request.url.path}"
        if request.url.query:
            url += f"?{request.url.query}"

        headers = self._forward_headers(
            request.headers,
            request.client.host if request.client else None,
            request.url.scheme,
            request.headers.get("host", ""),
        )
        upstream = self.client.build_request(
            request.method, url, headers=headers, content=await request.body()
        )

        try:
            resp = await self.client.send(upstream, stream=True)
        except httpx.TimeoutException as e:
            print(f"[proxy] timeout forwarding {request.method} {request.url.path}: {e}", flush=True)
            return JSONResponse({"error": f"Gateway timeout: {e}"}, status_code=504)
        except httpx.HTTPError as e:
            print(f"[proxy] error forwarding {request.method} {request.url.path}: {e}", flush=True)
            return JSONResponse({"error": f"Bad gateway: {e}"}, status_code=502)

        response = StreamingResponse(
            resp.aiter_raw(),
            status_code=resp.status_code,
            background=BackgroundTask(resp.aclose),
        )
        # Raw header list keeps repeated headers (set-cookie). Body is relayed
        # raw, so content-encoding stays as sent upstream.
        response.raw_headers.extend(
            (k.lower(), v) for k, v in resp.headers.raw
            if k.decode("latin-1").lower() not in HOP_BY_HOP_HEADERS
        )
        return response

    # ------------------------------------------------------------
    # WebSocket
    # ------------------------------------------------------------

    def websocket_url(self, path: str, query: str) -> str:
        parts = urlsplit(self.target_url)
        scheme = "wss" if parts.scheme == "https" else "ws"
        url = f"{scheme}://{parts.netloc}{parts.path}{path}"
        if query:
            url += f"?{query}"
        return url

    async def handle_websocket(self, websocket: WebSocket):
        if not self.state.is_configured():
            # Refuse before accept: no handshake is completed.
            await websocket.close()
            return

        url = self.websocket_url(websocket.url.path, websocket.url.query)
        headers = self._forward_headers(
            websocket.headers,
            websocket.client.host if websocket.client else None,
            "https" if websocket.url.scheme == "wss" else "http",
            websocket.headers.get("host", ""),
        )
        headers = {k: v for k, v in headers.items() if k.lower() not in WS_HANDSHAKE_HEADERS}
        subprotocols = [
            p.strip() for p in websocket.headers.get("sec-websocket-protocol", "").split(",") if p.strip()
        ]

        try:
            upstream = await ws_connect(
                url,
                additional_headers=headers,
                subprotocols=subprotocols or None,
                max_size=None,
            )
        except (OSError, InvalidHandshake, InvalidURI, asyncio.TimeoutError) as e:
            print(f"[proxy] websocket connect to {url} failed: {e}", flush=True)
            await websocket.close(code=1011)
            return

        async with upstream:
            await websocket.accept(subprotocol=upstream.subprotocol)
            await self._relay(websocket, upstream)

    async def _relay(self, websocket: WebSocket, upstream):
        async def client_to_upstream():
            try:
                while True:
                    message = await websocket.receive()
                    if message["type"] == "websocket.disconnect":
                        break
                    if message.get("text") is not None:
                        await upstream.send(message["text"])
                    elif message.get("bytes") is not None:
                        await upstream.send(message["bytes"])
            except (WebSocketDisconnect, ConnectionClosed):
                pass
            finally:
                await upstream.close()

        async def upstream_to_client():
            try:
                async for message in upstream:
                    if isinstance(message, bytes):
                        await websocket.send_bytes(message)
                    else:
                        await websocket.send_text(message)
            except ConnectionClosed:
                pass
            finally:
                try:
                    await websocket.close()
                except RuntimeError:
                    pass  # already closed

        tasks = [
            asyncio.create_task(client_to_upstream()),
            asyncio.create_task(upstream_to_client()),
        ]
        done, pending = await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
        for task in pending:
            task.cancel()
        # Let the cancelled side run its close() in finally
        await asyncio.gather(*pending, return_exceptions=True)
        for task in done:
            if task.exception() is not None:
                print(f"[proxy] websocket relay error: {task.exception()}", flush=True)
