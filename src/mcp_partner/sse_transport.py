"""Legacy SSE transport: a long-lived GET stream plus a POST endpoint."""

import asyncio
import logging
from enum import Enum
from typing import Any
from urllib.parse import urljoin, urlparse

import httpx

from .exceptions import ConnectError, ProtocolError, TransportError
from .messages import MessageKind, classify
from .session import effective_url, resolve_endpoint_url
from .sse_parser import SSEEvent, aiter_sse_events
from .transport import ACCEPT, CONTENT_TYPE, JSON, MCP_SESSION_ID, SSE, Transport, TransportKind

logger = logging.getLogger(__name__)


class SSEState(str, Enum):
    IDLE = "idle"
    CONNECTING = "connecting"
    AWAITING_ENDPOINT = "awaiting-endpoint"
    READY = "ready"
    CLOSED = "closed"

    def __str__(self) -> str:
        return self.value


def remove_request_params(url: str) -> str:
    return urljoin(url, urlparse(url).path)


class SSETransport(Transport):
    """Client transport for the legacy SSE protocol.

    ``start()`` opens ``GET <url>`` and completes once the server has named its
    POST endpoint through an ``endpoint`` event. Replies normally arrive on the
    GET stream; a reply carried in the POST response body is dispatched too.
    """

    kind = TransportKind.SSE

    def __init__(self, url: str, **kwargs: Any) -> None:
        super().__init__(url, **kwargs)
        self.state = SSEState.IDLE
        self._endpoint_ready: asyncio.Future[str] | None = None

    async def start(self) -> None:
        if self._closed:
            raise ConnectError("Transport is closed")
        if self.state is not SSEState.IDLE:
            raise ConnectError(f"SSE transport already started (state: {self.state})")

        self._endpoint_ready = asyncio.get_running_loop().create_future()
        self.state = SSEState.CONNECTING
        connect_url = effective_url(self.url, self.proxy)
        logger.info("Connecting to SSE endpoint: %s", remove_request_params(connect_url))
        self._spawn(self._read_stream(connect_url), name="sse-reader")

        try:
            post_url = await self._endpoint_ready
        except ConnectError:
            await self.close()
            raise
        logger.info("SSE connected; posting messages to %s", post_url)

    async def close(self) -> None:
        if self._endpoint_ready is not None and not self._endpoint_ready.done():
            self._endpoint_ready.set_exception(ConnectError("Connection aborted"))
        self.state = SSEState.CLOSED
        await super().close()

    async def _read_stream(self, connect_url: str) -> None:
        client = self._get_client()
        try:
            async with client.stream(
                "GET",
                connect_url,
                headers={ACCEPT: SSE},
                timeout=self._stream_timeout(),
            ) as response:
                if not response.is_success:
                    raise ConnectError(f"Connection failed: {response.status_code} {response.reason_phrase}")
                # Some servers assign the session id on the GET itself.
                self._capture_session_id(response)
                self.state = SSEState.AWAITING_ENDPOINT
                logger.debug("SSE connection established")

                async for event in aiter_sse_events(response.aiter_text()):
                    self._handle_event(event)
        except ConnectError as exc:
            self._fail(exc)
        except httpx.HTTPError as exc:
            self._fail(exc)
        else:
            if self.state is SSEState.READY:
                self._emit_error(TransportError("SSE stream closed by server"))
            else:
                self._fail(ConnectError("SSE stream ended before the endpoint event was received"))

    def _fail(self, exc: Exception) -> None:
        if self._endpoint_ready is not None and not self._endpoint_ready.done():
            if not isinstance(exc, ConnectError):
                exc = ConnectError(f"Connection failed: {exc}")
            logger.error("SSE connect failed: %s", exc)
            self._endpoint_ready.set_exception(exc)
            return
        self._emit_error(TransportError(f"Stream error: {exc}"))

    def _handle_event(self, event: SSEEvent) -> None:
        if event.event == "endpoint":
            try:
                post_url = resolve_endpoint_url(event.data, self.url, self.proxy)
            except ValueError as exc:
                self._fail(ConnectError(f"Invalid endpoint URL: {event.data!r} ({exc})"))
                return
            self.session.post_url = post_url
            self.state = SSEState.READY
            logger.info("Received endpoint URL: %s", post_url)
            if self._endpoint_ready is not None and not self._endpoint_ready.done():
                self._endpoint_ready.set_result(post_url)
        elif event.event == "message":
            self._dispatch_event_data(event.data, {"source": "sse"})
        else:
            logger.warning("Unknown SSE event: %s", event.event)

    async def send(self, message: dict[str, Any]) -> None:
        post_url = self.session.post_url
        if self._closed or not post_url:
            raise TransportError("Not connected or POST endpoint not received yet.")

        headers = {CONTENT_TYPE: JSON}
        if self.session.session_id:
            headers[MCP_SESSION_ID] = self.session.session_id

        client = self._get_client()
        request = client.build_request("POST", post_url, json=message, headers=headers)
        logger.debug("Sending client message: %s", message)
        try:
            response = await client.send(request, stream=True)
        except httpx.HTTPError as exc:
            raise TransportError(f"POST to {post_url} failed: {exc}") from exc

        self._capture_session_id(response)
        if not response.is_success:
            try:
                await response.aread()
            finally:
                await response.aclose()
            raise ProtocolError(f"HTTP Error {response.status_code}: {response.text[:500]}")

        logger.debug("Client message sent successfully: %s", response.status_code)
        request_id = message.get("id") if classify(message) is MessageKind.REQUEST else None
        try:
            # The authoritative reply comes over the GET stream.
            await self._handle_post_response(response, request_id=request_id)
        except httpx.HTTPError as exc:
            logger.warning("Failed to read POST response body: %s", exc)
