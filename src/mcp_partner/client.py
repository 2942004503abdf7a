"""The client facade: one connection, one transport, one correlator."""

import asyncio
import logging
from collections.abc import Callable
from enum import Enum
from typing import Any

from mcp import types
from pydantic import BaseModel

from .correlator import DEFAULT_REQUEST_TIMEOUT_S, RequestCorrelator
from .exceptions import ConnectError, ConnectionClosedError, McpClientError, TransportError
from .httpx_client import HttpxClientFactory, custom_httpx_client
from .messages import (
    METHOD_NOT_FOUND,
    Direction,
    MessageKind,
    classify,
    make_error,
    make_notification,
    make_result,
)
from .session import DIRECT, ProxyConfig
from .sse_transport import SSETransport
from .streamablehttp_transport import INITIALIZED_NOTIFICATION, StreamableHTTPTransport
from .transport import MessageMeta, Transport, TransportKind

logger = logging.getLogger(__name__)

CLIENT_NAME = "mcp-partner-client"
CLIENT_VERSION = "1.0.0"

MessageHandler = Callable[[Any, MessageMeta], None]
ErrorHandler = Callable[[str], None]
Unsubscribe = Callable[[], None]

TRANSPORTS: dict[TransportKind, type[Transport]] = {
    TransportKind.SSE: SSETransport,
    TransportKind.STREAMABLE_HTTP: StreamableHTTPTransport,
}

RESULT_TYPES: dict[str, type[BaseModel]] = {
    "initialize": types.InitializeResult,
    "tools/list": types.ListToolsResult,
    "tools/call": types.CallToolResult,
    "resources/list": types.ListResourcesResult,
    "resources/read": types.ReadResourceResult,
    "prompts/list": types.ListPromptsResult,
    "prompts/get": types.GetPromptResult,
}


class ConnectionStatus(str, Enum):
    DISCONNECTED = "DISCONNECTED"
    CONNECTING = "CONNECTING"
    CONNECTED = "CONNECTED"
    ERROR = "ERROR"

    def __str__(self) -> str:
        return self.value


class McpClient:
    """Interactive MCP client over SSE or Streamable HTTP.

    Usage::

        client = McpClient()
        client.on_message(lambda msg, meta: print(meta["direction"], msg))
        await client.connect("http://localhost:8080/sse")
        tools = await client.list_tools()
        await client.disconnect()

    Every outgoing message and every message received from the server is
    passed to the ``on_message`` handlers with ``meta["direction"]`` set to
    ``"out"`` or ``"in"`` and ``meta["kind"]`` set to the message kind.
    """

    def __init__(
        self,
        request_timeout: float | None = DEFAULT_REQUEST_TIMEOUT_S,
        *,
        client_info: dict[str, str] | None = None,
        http_timeout: float = 30.0,
        sse_read_timeout: float = 60 * 5,
        verify_ssl: bool | str | None = None,
        httpx_client_factory: HttpxClientFactory = custom_httpx_client,
    ) -> None:
        self.request_timeout = request_timeout
        self.client_info = client_info or {"name": CLIENT_NAME, "version": CLIENT_VERSION}
        self.http_timeout = http_timeout
        self.sse_read_timeout = sse_read_timeout
        self.verify_ssl = verify_ssl
        self._httpx_client_factory = httpx_client_factory

        self.status = ConnectionStatus.DISCONNECTED
        self.transport_kind: TransportKind | None = None
        self.base_url: str | None = None
        self.proxy: ProxyConfig = DIRECT
        self.headers: dict[str, str] = {}
        self.server_info: types.InitializeResult | None = None

        self._transport: Transport | None = None
        self._correlator: RequestCorrelator | None = None
        self._message_handlers: list[MessageHandler] = []
        self._error_handlers: list[ErrorHandler] = []
        self._send_tasks: set[asyncio.Task[None]] = set()

    async def __aenter__(self) -> "McpClient":
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.disconnect()

    @property
    def transport(self) -> Transport | None:
        return self._transport

    @property
    def session_id(self) -> str | None:
        return self._transport.session.session_id if self._transport is not None else None

    @property
    def post_url(self) -> str | None:
        return self._transport.session.post_url if self._transport is not None else None

    def on_message(self, handler: MessageHandler) -> Unsubscribe:
        self._message_handlers.append(handler)

        def unsubscribe() -> None:
            if handler in self._message_handlers:
                self._message_handlers.remove(handler)

        return unsubscribe

    def on_error(self, handler: ErrorHandler) -> Unsubscribe:
        self._error_handlers.append(handler)

        def unsubscribe() -> None:
            if handler in self._error_handlers:
                self._error_handlers.remove(handler)

        return unsubscribe

    async def connect(
        self,
        url: str,
        transport: TransportKind | str = TransportKind.SSE,
        proxy: ProxyConfig | None = None,
        headers: dict[str, str] | None = None,
    ) -> types.InitializeResult:
        """Open a connection and perform the MCP initialize handshake.

        Any existing connection is torn down first. Request ids restart at 0.

        Raises:
            ConnectError: The transport could not be started or initialize failed.
            ConnectionClosedError: :meth:`disconnect` was called while connecting.
        """
        if self._transport is not None:
            await self._teardown("Reconnecting")

        kind = TransportKind.parse(transport)
        self.transport_kind = kind
        self.base_url = url
        self.proxy = proxy or DIRECT
        self.headers = dict(headers or {})
        self.server_info = None
        self.status = ConnectionStatus.CONNECTING
        logger.info("Connecting to %s via %s%s", url, kind, f" (proxy {self.proxy.prefix})" if self.proxy.enabled else "")

        self._correlator = RequestCorrelator(self.request_timeout)
        current = TRANSPORTS[kind](
            url,
            proxy=self.proxy,
            headers=self.headers,
            timeout=self.http_timeout,
            sse_read_timeout=self.sse_read_timeout,
            verify_ssl=self.verify_ssl,
            httpx_client_factory=self._httpx_client_factory,
        )
        current.set_handlers(
            on_message=self._handle_inbound,
            on_error=self._handle_transport_error,
            on_close=self._handle_transport_close,
        )
        self._transport = current

        try:
            await current.start()
            result = await self._initialize(current)
        except Exception as exc:
            if self._transport is not current:
                raise ConnectionClosedError("Connection aborted") from exc
            error = exc if isinstance(exc, ConnectError) else ConnectError(f"Connection failed: {exc}")
            await self._teardown("Connection failed")
            self.status = ConnectionStatus.ERROR
            self._emit_error(str(error))
            if error is exc:
                raise
            raise error from exc

        if self._transport is not current:
            raise ConnectionClosedError("Connection aborted")
        self.status = ConnectionStatus.CONNECTED
        logger.info("Connected to %s", url)
        return result

    async def _initialize(self, current: Transport) -> types.InitializeResult:
        result = await self.send_request(
            "initialize",
            {
                "protocolVersion": types.LATEST_PROTOCOL_VERSION,
                "capabilities": {},
                "clientInfo": self.client_info,
            },
        )
        self.server_info = result
        current.session.protocol_version = str(result.protocolVersion)
        logger.info(
            "Initialized: server %s %s, protocol %s",
            result.serverInfo.name,
            result.serverInfo.version,
            result.protocolVersion,
        )
        await self.send_notification(INITIALIZED_NOTIFICATION)
        return result

    async def disconnect(self) -> None:
        """Close the connection and drop every handler registration.

        Outstanding requests fail with :class:`ConnectionClosedError` before
        this coroutine first yields. Safe to call in any state.
        """
        await self._teardown("Disconnected")
        self._message_handlers.clear()
        self._error_handlers.clear()
        self.status = ConnectionStatus.DISCONNECTED

    async def _teardown(self, reason: str) -> None:
        current, self._transport = self._transport, None
        correlator, self._correlator = self._correlator, None
        if correlator is not None:
            correlator.cancel_all(reason)
        for task in list(self._send_tasks):
            task.cancel()
        self._send_tasks.clear()
        self.status = ConnectionStatus.DISCONNECTED
        if current is not None:
            logger.info("%s: closing %s transport", reason, current.kind)
            await current.close()

    def _require_connection(self) -> tuple[Transport, RequestCorrelator]:
        if self._transport is None or self._correlator is None:
            raise TransportError("Client not connected")
        return self._transport, self._correlator

    async def send_request(
        self,
        method: str,
        params: dict[str, Any] | None = None,
        result_type: type[BaseModel] | None = None,
        raw: bool = False,
    ) -> Any:
        """Send a request and wait for its result.

        Results of well-known methods are validated into their ``mcp.types``
        model unless ``raw`` is set; ``result_type`` overrides the model.

        Raises:
            JSONRPCErrorResponse: The server answered with an error.
            RequestTimeoutError: No answer arrived in time.
            ProtocolError: The answer was malformed or the POST was refused.
            TransportError: The request could not be sent.
            ConnectionClosedError: The client disconnected first.
        """
        current, correlator = self._require_connection()
        model = None if raw else result_type or RESULT_TYPES.get(method)
        request, future = correlator.issue(method, params, model.model_validate if model else None)
        request_id = request["id"]
        self._emit_message(request, {"direction": str(Direction.OUT), "kind": str(MessageKind.REQUEST)})

        # The POST runs beside the wait so that disconnect can fail the request
        # while the POST is still in flight.
        self._track(asyncio.create_task(self._deliver(current, correlator, request_id, request)))
        try:
            return await future
        except asyncio.CancelledError:
            correlator.discard(request_id)
            raise

    async def _deliver(
        self,
        current: Transport,
        correlator: RequestCorrelator,
        request_id: int,
        request: dict[str, Any],
    ) -> None:
        try:
            await current.send(request)
        except Exception as exc:  # noqa: BLE001
            error = exc if isinstance(exc, McpClientError) else TransportError(f"Failed to send {request['method']}: {exc}")
            # No-op when the reply already arrived or the client disconnected.
            if not correlator.reject(request_id, error):
                logger.warning("Sending request %s failed after it completed: %s", request_id, error)

    def _track(self, task: "asyncio.Task[None]") -> None:
        self._send_tasks.add(task)
        task.add_done_callback(self._send_tasks.discard)

    async def send_notification(self, method: str, params: dict[str, Any] | None = None) -> None:
        current, _ = self._require_connection()
        notification = make_notification(method, params)
        self._emit_message(notification, {"direction": str(Direction.OUT), "kind": str(MessageKind.NOTIFICATION)})
        try:
            await current.send(notification)
        except McpClientError:
            raise
        except Exception as exc:  # noqa: BLE001
            raise TransportError(f"Failed to send {method}: {exc}") from exc

    async def list_tools(self, cursor: str | None = None) -> types.ListToolsResult:
        return await self.send_request("tools/list", {"cursor": cursor} if cursor else None)

    async def call_tool(self, name: str, arguments: dict[str, Any] | None = None) -> types.CallToolResult:
        return await self.send_request("tools/call", {"name": name, "arguments": arguments or {}})

    async def list_resources(self, cursor: str | None = None) -> types.ListResourcesResult:
        return await self.send_request("resources/list", {"cursor": cursor} if cursor else None)

    async def read_resource(self, uri: str) -> types.ReadResourceResult:
        return await self.send_request("resources/read", {"uri": uri})

    async def list_prompts(self, cursor: str | None = None) -> types.ListPromptsResult:
        return await self.send_request("prompts/list", {"cursor": cursor} if cursor else None)

    async def get_prompt(self, name: str, arguments: dict[str, str] | None = None) -> types.GetPromptResult:
        params: dict[str, Any] = {"name": name}
        if arguments:
            params["arguments"] = arguments
        return await self.send_request("prompts/get", params)

    async def ping(self) -> Any:
        return await self.send_request("ping")

    def _handle_inbound(self, message: Any, meta: MessageMeta) -> None:
        kind = classify(message)
        self._emit_message(message, {**meta, "direction": str(Direction.IN), "kind": str(kind)})

        if kind is MessageKind.RESPONSE:
            if self._correlator is not None:
                self._correlator.resolve(message["id"], message)
        elif kind is MessageKind.REQUEST:
            self._answer_server_request(message)
        elif kind is MessageKind.NOTIFICATION:
            logger.debug("Received server notification: %s", message["method"])
        else:
            logger.warning("Ignoring unrecognised message: %.200s", message)

    def _answer_server_request(self, message: dict[str, Any]) -> None:
        current = self._transport
        if current is None:
            return
        if message["method"] == "ping":
            reply = make_result(message["id"], {})
        else:
            logger.info("Rejecting unsupported server request: %s", message["method"])
            reply = make_error(message["id"], METHOD_NOT_FOUND, f"Method not found: {message['method']}")
        task = asyncio.create_task(self._send_reply(current, reply))
        self._track(task)

    async def _send_reply(self, current: Transport, reply: dict[str, Any]) -> None:
        self._emit_message(reply, {"direction": str(Direction.OUT), "kind": str(MessageKind.RESPONSE)})
        try:
            await current.send(reply)
        except McpClientError as exc:
            logger.warning("Failed to answer server request %s: %s", reply["id"], exc)

    def _handle_transport_error(self, exc: McpClientError) -> None:
        if isinstance(exc, TransportError) and self.status is ConnectionStatus.CONNECTED:
            # POSTs may still work; the caller decides whether to reconnect.
            self.status = ConnectionStatus.ERROR
        self._emit_error(str(exc))

    def _handle_transport_close(self) -> None:
        logger.debug("Transport closed")

    def _emit_message(self, message: Any, meta: MessageMeta) -> None:
        for handler in list(self._message_handlers):
            try:
                handler(message, meta)
            except Exception:  # noqa: BLE001
                logger.exception("Message handler failed")

    def _emit_error(self, text: str) -> None:
        for handler in list(self._error_handlers):
            try:
                handler(text)
            except Exception:  # noqa: BLE001
                logger.exception("Error handler failed")
