"""
Request proxy into the sandbox.

Plain HTTP requests are forwarded with httpx and streamed back; WebSocket
upgrades are relayed frame by frame over a second WebSocket opened to the
gateway. Readiness is the caller's concern: nothing here retries.
"""

import asyncio
import contextlib
from collections.abc import Callable
from typing import Any

import httpx
import websockets
from fastapi import Request, WebSocket
from fastapi.websockets import WebSocketDisconnect
from starlette.background import BackgroundTask
from starlette.responses import StreamingResponse
from websockets import ClientConnection

from .log_config import get_logger

log = get_logger("proxy")

# Connection-level headers (RFC 9110 section 7.6.1) are never forwarded
HOP_BY_HOP_HEADERS = frozenset(
    {
        "connection",
        "keep-alive",
        "proxy-authenticate",
        "proxy-authorization",
        "te",
        "trailer",
        "transfer-encoding",
        "upgrade",
    }
)

# Negotiated again by the upstream handshake
WEBSOCKET_HANDSHAKE_HEADERS = frozenset(
    {
        "host",
        "connection",
        "upgrade",
        "content-length",
        "sec-websocket-key",
        "sec-websocket-version",
        "sec-websocket-extensions",
        "sec-websocket-protocol",
        "sec-websocket-accept",
    }
)

# Reserved codes that must not appear in a close frame
_UNSENDABLE_CLOSE_CODES = frozenset({1005, 1006, 1015})


def _close_code(code: int | None) -> int:
    if code is None or code in _UNSENDABLE_CLOSE_CODES:
        return 1000
    return code


def _forwardable(headers: list[tuple[bytes, bytes]], drop: frozenset[str]):
    return [(k, v) for k, v in headers if k.decode("latin-1").lower() not in drop]


class RequestProxy:
    """Forwards client traffic to a port inside the sandbox."""

    HTTP_CONNECT_TIMEOUT = 10.0
    WS_OPEN_TIMEOUT = 10.0

    def __init__(
        self,
        client: httpx.AsyncClient | None = None,
        ws_connect: Callable[..., Any] = websockets.connect,
    ):
        # No read timeout: gateway responses may stream for a long time
        self._client = client or httpx.AsyncClient(
            timeout=httpx.Timeout(None, connect=self.HTTP_CONNECT_TIMEOUT),
            follow_redirects=False,
        )
        self._ws_connect = ws_connect

    async def aclose(self) -> None:
        await self._client.aclose()

    async def forward_http(self, request: Request, base_url: str) -> StreamingResponse:
        """
        Forward ``request`` to ``base_url`` and stream the response back.

        Raises:
            httpx.TransportError: If the gateway cannot be reached
        """
        url = httpx.URL(
            base_url.rstrip("/") + request.url.path,
            query=request.url.query.encode("latin-1"),
        )
        headers = _forwardable(request.headers.raw, HOP_BY_HOP_HEADERS | {"host"})
        has_body = "content-length" in request.headers or "transfer-encoding" in request.headers

        upstream_request = self._client.build_request(
            request.method,
            url,
            headers=headers,
            content=request.stream() if has_body else None,
        )
        log.debug("proxy.http", method=request.method, path=request.url.path)
        upstream = await self._client.send(upstream_request, stream=True)

        response = StreamingResponse(
            upstream.aiter_raw(),
            status_code=upstream.status_code,
            background=BackgroundTask(upstream.aclose),
        )
        response.raw_headers = _forwardable(upstream.headers.raw, HOP_BY_HOP_HEADERS)
        return response

    async def forward_websocket(self, websocket: WebSocket, base_ws_url: str) -> None:
        """Open the upstream WebSocket, accept the client, and relay until closed."""
        url = base_ws_url.rstrip("/") + websocket.url.path
        if websocket.url.query:
            url = f"{url}?{websocket.url.query}"

        subprotocols = [
            p.strip()
            for p in websocket.headers.get("sec-websocket-protocol", "").split(",")
            if p.strip()
        ]
        headers = [
            (k, v)
            for k, v in websocket.headers.items()
            if k.lower() not in WEBSOCKET_HANDSHAKE_HEADERS
        ]

        try:
            upstream = await self._ws_connect(
                url,
                additional_headers=headers,
                subprotocols=subprotocols or None,
                user_agent_header=None,
                open_timeout=self.WS_OPEN_TIMEOUT,
                max_size=None,
            )
        except Exception as e:
            log.error("proxy.ws_connect_error", path=websocket.url.path, exc=e)
            await websocket.close(code=1011)
            return

        try:
            await websocket.accept(subprotocol=upstream.subprotocol)
            log.info("proxy.ws_open", path=websocket.url.path)
            await relay_websocket(websocket, upstream)
        finally:
            await upstream.close()


async def relay_websocket(client: WebSocket, upstream: ClientConnection) -> None:
    """
    Relay frames between an accepted client and an open upstream connection.

    Text and binary frames pass through unmodified and in order. When either
    side closes, the other is closed with the same code.
    """
    counts = {"client_to_upstream": 0, "upstream_to_client": 0}

    async def client_to_upstream() -> None:
        while True:
            message = await client.receive()
            if message["type"] == "websocket.disconnect":
                await upstream.close(code=_close_code(message.get("code")))
                return
            if message.get("text") is not None:
                await upstream.send(message["text"])
            elif message.get("bytes") is not None:
                await upstream.send(message["bytes"])
            else:
                continue
            counts["client_to_upstream"] += 1

    async def upstream_to_client() -> None:
        with contextlib.suppress(websockets.ConnectionClosed):
            async for message in upstream:
                if isinstance(message, str):
                    await client.send_text(message)
                else:
                    await client.send_bytes(message)
                counts["upstream_to_client"] += 1
        with contextlib.suppress(RuntimeError, WebSocketDisconnect):
            await client.close(code=_close_code(upstream.close_code))

    tasks = [
        asyncio.create_task(client_to_upstream()),
        asyncio.create_task(upstream_to_client()),
    ]
    try:
        done, pending = await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
    finally:
        for task in tasks:
            if not task.done():
                task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

    for task in done:
        if not task.cancelled() and task.exception() is not None:
            log.warn("proxy.ws_relay_error", exc=task.exception())

    log.info("proxy.ws_closed", close_code=upstream.close_code, **counts)
