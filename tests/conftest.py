"""Shared fixtures: an in-process fake MCP server behind httpx.MockTransport."""

from __future__ import annotations

import asyncio
import json
import typing as t
from collections.abc import AsyncIterator, Awaitable, Callable
from functools import partial

import httpx
import pytest

from mcp_partner.httpx_client import custom_httpx_client

INITIALIZE_RESULT = {
    "protocolVersion": "2025-03-26",
    "capabilities": {"tools": {}, "resources": {}, "prompts": {}},
    "serverInfo": {"name": "fake-server", "version": "0.1.0"},
}

TOOLS_RESULT = {
    "tools": [
        {
            "name": "echo",
            "description": "Echo the input",
            "inputSchema": {"type": "object", "properties": {"text": {"type": "string"}}},
        },
    ],
}

Responder = Callable[[dict[str, t.Any]], "dict[str, t.Any] | None"]


def sse_event(data: t.Any, event: str | None = None) -> str:
    """Render one SSE block."""
    payload = data if isinstance(data, str) else json.dumps(data)
    prefix = f"event: {event}\n" if event else ""
    return f"{prefix}data: {payload}\n\n"


class FakeMcpServer:
    """Answers MCP requests over the SSE or Streamable HTTP wire protocol."""

    def __init__(
        self,
        mode: str = "sse",
        endpoint: str = "/messages?session_id=abc",
        session_id: str | None = None,
        get_status: int = 405,
    ) -> None:
        self.mode = mode
        self.endpoint = endpoint
        self.session_id = session_id
        self.get_status = get_status
        self.requests: list[httpx.Request] = []
        self.posted: list[dict[str, t.Any]] = []
        self.events: asyncio.Queue[str | None] = asyncio.Queue()
        self.responders: dict[str, Responder] = {
            "initialize": lambda _: INITIALIZE_RESULT,
            "tools/list": lambda _: TOOLS_RESULT,
            "tools/call": lambda msg: {
                "content": [{"type": "text", "text": msg["params"]["arguments"].get("text", "")}],
                "isError": False,
            },
            "ping": lambda _: {},
        }

    def reply_for(self, message: dict[str, t.Any]) -> dict[str, t.Any] | None:
        responder = self.responders.get(message["method"])
        if responder is None:
            if message["method"] == "slow":
                return None
            return {
                "jsonrpc": "2.0",
                "id": message["id"],
                "error": {"code": -32601, "message": f"Method not found: {message['method']}"},
            }
        result = responder(message)
        if result is None:
            return None
        return {"jsonrpc": "2.0", "id": message["id"], "result": result}

    async def _sse_stream(self) -> AsyncIterator[bytes]:
        if self.mode == "sse":
            yield sse_event(self.endpoint, event="endpoint").encode()
        while True:
            chunk = await self.events.get()
            if chunk is None:
                return
            yield chunk.encode()

    async def push(self, message: t.Any) -> None:
        await self.events.put(sse_event(message))

    async def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        headers = {"mcp-session-id": self.session_id} if self.session_id else {}

        if request.method == "GET":
            if self.mode != "sse" and self.get_status != 200:
                return httpx.Response(self.get_status, request=request)
            return httpx.Response(
                200,
                request=request,
                headers={"content-type": "text/event-stream", **headers},
                content=self._sse_stream(),
            )

        message = json.loads(request.content)
        self.posted.append(message)
        is_request = "method" in message and "id" in message

        if self.mode == "sse":
            if is_request:
                reply = self.reply_for(message)
                if reply is not None:
                    await self.push(reply)
            return httpx.Response(202, request=request, headers=headers)

        if not is_request:
            return httpx.Response(202, request=request, headers=headers)
        reply = self.reply_for(message)
        if reply is None:
            return httpx.Response(202, request=request, headers=headers)
        return httpx.Response(200, request=request, json=reply, headers=headers)

    def client_factory(self) -> Callable[..., httpx.AsyncClient]:
        return partial(custom_httpx_client, transport=httpx.MockTransport(self.handler))


@pytest.fixture
def sse_server() -> FakeMcpServer:
    return FakeMcpServer(mode="sse")


@pytest.fixture
def streamable_server() -> FakeMcpServer:
    return FakeMcpServer(mode="streamable", session_id="abc123")


@pytest.fixture
def wait_until() -> Callable[[Callable[[], bool]], Awaitable[None]]:
    """Poll a condition on the event loop until it holds."""

    async def _wait_until(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
        async def _poll() -> None:
            while not predicate():
                await asyncio.sleep(0.005)

        await asyncio.wait_for(_poll(), timeout)

    return _wait_until


@pytest.fixture
def make_server() -> Callable[..., FakeMcpServer]:
    return FakeMcpServer
