"""
api/middleware.py

SecurityGateMiddleware — pure ASGI middleware that puts the pipeline in
front of any FastAPI / Starlette app.

Per HTTP request:
  1. Buffer the body (stops reading past max_body_bytes + 1)
  2. Build the HTTP descriptor and run EventProcessor.handle()
  3. Block / Deny → structured JSON error {error, code, timestamp}
     Allow / Escalate → forward to the app with the buffered body
     replayed, security headers added to the response and the Verdict
     exposed as request.state.verdict

Usage:
    app.add_middleware(SecurityGateMiddleware, processor=processor)
"""

from __future__ import annotations

import ipaddress
import logging
from typing import Any, Awaitable, Callable

from fastapi.responses import JSONResponse

from ..models import EventKind
from ..processor import EventProcessor

logger = logging.getLogger(__name__)

Scope = dict[str, Any]
Message = dict[str, Any]
Receive = Callable[[], Awaitable[Message]]
Send = Callable[[Message], Awaitable[None]]

_DEFAULT_EXEMPT = ("/health",)


def _peer_ip(scope: Scope, fallback: str | None) -> str:
    client = scope.get("client")
    host = client[0] if client else ""
    try:
        ipaddress.ip_address(host)
        return host
    except ValueError:
        # unix sockets and in-process test transports have no IP peer
        return fallback if fallback is not None else host


class SecurityGateMiddleware:
    def __init__(
        self,
        app: Callable[[Scope, Receive, Send], Awaitable[None]],
        processor: EventProcessor,
        exempt_paths: tuple[str, ...] = _DEFAULT_EXEMPT,
        peer_fallback: str | None = None,
    ) -> None:
        self.app = app
        self.processor = processor
        self.exempt_paths = tuple(exempt_paths)
        self.peer_fallback = peer_fallback
        self.max_body_bytes = processor.normalizer.max_body_bytes

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http" or scope.get("path", "") in self.exempt_paths:
            await self.app(scope, receive, send)
            return

        body = await self._read_body(receive)
        headers = {
            k.decode("latin-1").lower(): v.decode("latin-1")
            for k, v in scope.get("headers", [])
        }
        descriptor = {
            "ip": _peer_ip(scope, self.peer_fallback),
            "method": scope.get("method", "GET"),
            "uri": scope.get("path", "/"),
            "query": scope.get("query_string", b"").decode("latin-1"),
            "headers": headers,
            "body": body,
            "user_agent": headers.get("user-agent", ""),
        }

        verdict, plan = await self.processor.handle(descriptor, EventKind.HTTP)

        if not plan.allowed:
            response = JSONResponse(plan.body, status_code=plan.status_code, headers=plan.headers)
            await response(scope, receive, send)
            return

        # downstream handlers can read request.state.verdict
        scope.setdefault("state", {})["verdict"] = verdict

        replayed = False

        async def replay() -> Message:
            nonlocal replayed
            if not replayed:
                replayed = True
                return {"type": "http.request", "body": body, "more_body": False}
            return await receive()

        extra = [
            (name.lower().encode("latin-1"), value.encode("latin-1"))
            for name, value in plan.headers.items()
        ]

        async def send_with_headers(message: Message) -> None:
            if message["type"] == "http.response.start":
                existing = {k.lower() for k, _ in message.get("headers", [])}
                merged = list(message.get("headers", []))
                merged.extend((k, v) for k, v in extra if k not in existing)
                message = {**message, "headers": merged}
            await send(message)

        await self.app(scope, replay, send_with_headers)

    async def _read_body(self, receive: Receive) -> bytes:
        chunks: list[bytes] = []
        size = 0
        more = True
        while more:
            message = await receive()
            if message["type"] != "http.request":
                break
            chunk = message.get("body", b"")
            chunks.append(chunk)
            size += len(chunk)
            more = message.get("more_body", False)
            if size > self.max_body_bytes:
                # enough to trigger the oversized verdict
                break
        return b"".join(chunks)
