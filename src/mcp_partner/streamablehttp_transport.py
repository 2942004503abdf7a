"""
StreamableHTTP Client Transport Module

Every message is POSTed to the server URL; the reply comes back in the POST
response either as JSON or as an SSE stream. A best-effort GET stream carries
server-initiated messages when the server offers one.
"""

import logging
from typing import Any

import httpx

from .exceptions import ConnectError, ProtocolError, TransportError
from .messages import MessageKind, classify
from .session import effective_url
from .sse_parser import aiter_sse_events
from .transport import (
    ACCEPT,
    CONTENT_TYPE,
    JSON,
    MCP_PROTOCOL_VERSION,
    MCP_SESSION_ID,
    SSE,
    Transport,
    TransportKind,
)

logger = logging.getLogger(__name__)

INITIALIZED_NOTIFICATION = "notifications/initialized"


class StreamableHTTPTransport(Transport):
    """StreamableHTTP client transport implementation."""

    kind = TransportKind.STREAMABLE_HTTP

    def __init__(self, url: str, *, open_get_stream: bool = True, **kwargs: Any) -> None:
        super().__init__(url, **kwargs)
        self.open_get_stream = open_get_stream
        self._get_stream_started = False

    async def start(self) -> None:
        """There is no handshake: the POST target is known up front."""
        if self._closed:
            raise ConnectError("Transport is closed")
        self.session.post_url = effective_url(self.url, self.proxy)
        self._get_client()
        logger.info("Streamable HTTP transport ready; posting messages to %s", self.session.post_url)

    def _prepare_request_headers(self, base_headers: dict[str, str]) -> dict[str, str]:
        """Update headers with session ID and protocol version if available."""
        headers = base_headers.copy()
        if self.session.session_id:
            headers[MCP_SESSION_ID] = self.session.session_id
        if self.session.protocol_version:
            headers[MCP_PROTOCOL_VERSION] = self.session.protocol_version
        return headers

    async def send(self, message: dict[str, Any]) -> None:
        post_url = self.session.post_url
        if self._closed or not post_url:
            raise TransportError("Not connected")

        kind = classify(message)
        if kind is MessageKind.NOTIFICATION and not self.session.session_id:
            logger.warning("Sending notification %s without session id; server may reject it", message.get("method"))

        headers = self._prepare_request_headers({ACCEPT: f"{JSON}, {SSE}", CONTENT_TYPE: JSON})
        client = self._get_client()
        request = client.build_request("POST", post_url, json=message, headers=headers)
        logger.debug("Sending client message: %s", message)
        try:
            response = await client.send(request, stream=True)
        except httpx.HTTPError as exc:
            raise TransportError(f"POST to {post_url} failed: {exc}") from exc

        self._capture_session_id(response)

        if response.status_code == 202:
            logger.debug("Received 202 Accepted")
            await response.aclose()
        elif not response.is_success:
            try:
                await response.aread()
            finally:
                await response.aclose()
            raise ProtocolError(f"POST Error {response.status_code}: {response.text[:500]}")
        else:
            request_id = message.get("id") if kind is MessageKind.REQUEST else None
            try:
                await self._handle_post_response(response, request_id=request_id, strict=kind is MessageKind.REQUEST)
            except httpx.HTTPError as exc:
                raise TransportError(f"Failed to read POST response from {post_url}: {exc}") from exc

        if (
            self.open_get_stream
            and not self._get_stream_started
            and kind is MessageKind.NOTIFICATION
            and message.get("method") == INITIALIZED_NOTIFICATION
        ):
            self._get_stream_started = True
            self._spawn(self._listen_for_server_messages(), name="streamable-http-get")

    async def _listen_for_server_messages(self) -> None:
        """Read server-initiated messages from a GET stream, if one is offered.

        Any failure leaves the transport in POST-only mode.
        """
        post_url = self.session.post_url
        if post_url is None:
            return
        headers = self._prepare_request_headers({ACCEPT: SSE})
        established = False
        try:
            async with self._get_client().stream(
                "GET",
                post_url,
                headers=headers,
                timeout=self._stream_timeout(),
            ) as response:
                if not response.is_success:
                    logger.info("GET SSE stream failed (%s). Proceeding with POST-only mode.", response.status_code)
                    return

                self._capture_session_id(response)
                content_type = response.headers.get(CONTENT_TYPE, "").lower()
                if not content_type.startswith(SSE):
                    logger.info(
                        "GET endpoint returned %r, not %r. Proceeding with POST-only mode.",
                        content_type,
                        SSE,
                    )
                    return

                established = True
                logger.debug("GET SSE connection established")
                async for event in aiter_sse_events(response.aiter_text()):
                    if event.event == "message":
                        self._dispatch_event_data(event.data, {"source": "sse-stream"})
                    else:
                        logger.debug("Skipping non-message event on GET stream: %s", event.event)
        except httpx.HTTPError as exc:
            if established:
                self._emit_error(TransportError(f"Server push stream failed: {exc}"))
            else:
                logger.warning("GET stream error (non-fatal): %s", exc)
