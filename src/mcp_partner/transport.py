"""The transport capability shared by the SSE and Streamable HTTP variants."""

import asyncio
import json
import logging
from abc import ABC, abstractmethod
from collections.abc import Callable, Coroutine
from enum import Enum
from typing import Any

import httpx

from .exceptions import McpClientError, ProtocolError
from .httpx_client import HttpxClientFactory, custom_httpx_client
from .session import DIRECT, ProxyConfig, Session
from .sse_parser import aiter_sse_events, parse_message_data

logger = logging.getLogger(__name__)

MCP_SESSION_ID = "mcp-session-id"
MCP_PROTOCOL_VERSION = "mcp-protocol-version"
CONTENT_TYPE = "content-type"
ACCEPT = "accept"

JSON = "application/json"
SSE = "text/event-stream"

MessageMeta = dict[str, Any]
MessageCallback = Callable[[Any, MessageMeta], None]
ErrorCallback = Callable[[McpClientError], None]
CloseCallback = Callable[[], None]


class TransportKind(str, Enum):
    """Wire protocol used to reach the server."""

    SSE = "sse"
    STREAMABLE_HTTP = "streamable-http"

    def __str__(self) -> str:
        return self.value

    @classmethod
    def parse(cls, value: "str | TransportKind") -> "TransportKind":
        if isinstance(value, TransportKind):
            return value
        normalized = value.strip().lower().replace("_", "-")
        if normalized == "sse":
            return cls.SSE
        if normalized in {"streamable-http", "streamablehttp", "http"}:
            return cls.STREAMABLE_HTTP
        raise ValueError(f"Unknown transport type: {value!r}")


class Transport(ABC):
    """A logical bidirectional JSON-RPC channel over HTTP.

    Inbound messages, errors and the final close are reported through the
    callbacks installed with :meth:`set_handlers`. All state lives on one
    event loop, so callbacks are invoked synchronously from the reading task.
    """

    kind: TransportKind

    def __init__(
        self,
        url: str,
        *,
        proxy: ProxyConfig | None = None,
        headers: dict[str, str] | None = None,
        timeout: float = 30.0,
        sse_read_timeout: float = 60 * 5,
        verify_ssl: bool | str | None = None,
        httpx_client_factory: HttpxClientFactory = custom_httpx_client,
    ) -> None:
        self.url = url
        self.proxy = proxy or DIRECT
        self.headers = dict(headers or {})
        self.timeout = timeout
        self.sse_read_timeout = sse_read_timeout
        self.verify_ssl = verify_ssl
        self.session = Session()
        self._httpx_client_factory = httpx_client_factory
        self._client: httpx.AsyncClient | None = None
        self._tasks: set[asyncio.Task[Any]] = set()
        self._closed = False
        self._on_message: MessageCallback | None = None
        self._on_error: ErrorCallback | None = None
        self._on_close: CloseCallback | None = None

    def set_handlers(
        self,
        on_message: MessageCallback | None = None,
        on_error: ErrorCallback | None = None,
        on_close: CloseCallback | None = None,
    ) -> None:
        self._on_message = on_message
        self._on_error = on_error
        self._on_close = on_close

    @property
    def closed(self) -> bool:
        return self._closed

    @abstractmethod
    async def start(self) -> None:
        """Open the channel; returns once messages can be sent."""

    @abstractmethod
    async def send(self, message: dict[str, Any]) -> None:
        """Deliver one JSON-RPC message to the server."""

    async def close(self) -> None:
        """Cancel all network activity and forget the session.

        Safe to call more than once and from any state.
        """
        if self._closed:
            return
        self._closed = True

        current = asyncio.current_task()
        tasks = [task for task in self._tasks if task is not current]
        for task in tasks:
            task.cancel()
        self._tasks.clear()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

        if self._client is not None:
            client, self._client = self._client, None
            await client.aclose()

        self.session.clear()
        logger.debug("%s transport closed", self.kind)

        if self._on_close is not None:
            self._on_close()

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = self._httpx_client_factory(
                headers=self.headers,
                timeout=httpx.Timeout(self.timeout),
                verify_ssl=self.verify_ssl,
            )
        return self._client

    def _stream_timeout(self) -> httpx.Timeout:
        return httpx.Timeout(self.timeout, read=self.sse_read_timeout)

    def _spawn(self, coro: Coroutine[Any, Any, Any], name: str) -> asyncio.Task[Any]:
        task = asyncio.create_task(coro, name=name)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    def _emit_message(self, message: Any, meta: MessageMeta) -> None:
        if self._on_message is not None:
            self._on_message(message, meta)

    def _emit_error(self, exc: McpClientError) -> None:
        logger.error("%s transport error: %s", self.kind, exc)
        if self._on_error is not None:
            self._on_error(exc)

    def _dispatch_payload(self, payload: Any, meta: MessageMeta) -> int:
        """Emit a decoded JSON value, unpacking batches."""
        if isinstance(payload, list):
            for item in payload:
                self._emit_message(item, meta)
            return len(payload)
        self._emit_message(payload, meta)
        return 1

    def _dispatch_event_data(self, data: str, meta: MessageMeta) -> bool:
        """Decode and emit the payload of one ``message`` event.

        A malformed payload is logged and skipped; the stream carries on.
        """
        if not data.strip():
            return False
        try:
            payload = parse_message_data(data)
        except json.JSONDecodeError as exc:
            logger.warning("Failed to parse SSE message JSON: %s; data=%.200s", exc, data)
            return False
        self._dispatch_payload(payload, meta)
        return True

    def _capture_session_id(self, response: httpx.Response) -> None:
        self.session.update_session_id(response.headers.get(MCP_SESSION_ID))

    async def _handle_post_response(
        self,
        response: httpx.Response,
        request_id: Any = None,
        strict: bool = False,
    ) -> None:
        """Route the body of a POST response into message dispatch.

        Takes ownership of ``response`` and closes it. ``strict`` turns an
        unreadable body into a :class:`ProtocolError` for the caller instead of
        a logged warning.
        """
        content_type = response.headers.get(CONTENT_TYPE, "").lower()
        meta: MessageMeta = {
            "status_code": response.status_code,
            "response_headers": dict(response.headers),
        }

        if content_type.startswith(SSE):
            # The server keeps streaming after send() returns.
            self._spawn(
                self._read_post_stream(response, {**meta, "source": "post-sse"}, request_id),
                name=f"{self.kind}-post-stream",
            )
            return

        try:
            await response.aread()
        finally:
            await response.aclose()

        text = response.text
        if not text.strip():
            return

        if content_type.startswith(JSON):
            try:
                payload = json.loads(text)
            except json.JSONDecodeError as exc:
                msg = f"Failed to parse JSON response from POST: {exc}. Body snippet: {text[:200]}"
                if strict:
                    raise ProtocolError(msg) from exc
                logger.warning(msg)
                return
            self._dispatch_payload(payload, {**meta, "source": "post-json"})
            return

        dispatched = 0
        for line in text.splitlines():
            if not line.strip():
                continue
            try:
                payload = json.loads(line)
            except json.JSONDecodeError:
                logger.debug("Skipping non-JSON line in POST response: %.200s", line)
                continue
            dispatched += self._dispatch_payload(payload, {**meta, "source": "post-text"})

        if not dispatched:
            msg = f"Unexpected content type {content_type or 'none'!r} in POST response: {text[:200]}"
            if strict:
                raise ProtocolError(msg)
            logger.warning(msg)

    async def _read_post_stream(self, response: httpx.Response, meta: MessageMeta, request_id: Any) -> None:
        try:
            async for event in aiter_sse_events(response.aiter_text()):
                if event.event != "message":
                    logger.debug("Skipping non-message event on POST stream: %s", event.event)
                    continue
                if not self._dispatch_event_data(event.data, meta) or request_id is None:
                    continue
                if _answers(event.data, request_id):
                    logger.debug("Reply to request %s received; closing POST stream", request_id)
                    break
        except httpx.HTTPError as exc:
            logger.warning("POST response stream for request %s failed: %s", request_id, exc)
        finally:
            await response.aclose()


def _answers(data: str, request_id: Any) -> bool:
    """Whether an event payload is the response to ``request_id``."""
    try:
        payload = json.loads(data)
    except json.JSONDecodeError:
        return False
    items = payload if isinstance(payload, list) else [payload]
    return any(
        isinstance(item, dict) and _same_id(item.get("id"), request_id) and ("result" in item or "error" in item)
        for item in items
    )


def _same_id(received: Any, request_id: Any) -> bool:
    if received == request_id:
        return True
    # Some servers echo numeric ids back as strings.
    return isinstance(received, str) and received.isdigit() and isinstance(request_id, int) and int(received) == request_id
