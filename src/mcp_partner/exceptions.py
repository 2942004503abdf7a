"""Errors raised by the MCP transport and session client.

Every error that reaches a caller derives from :class:`McpClientError` and
carries a message that can be shown to an operator as-is.
"""

from typing import Any


class McpClientError(Exception):
    """Base class for all client errors."""


class ConnectError(McpClientError):
    """The handshake failed and the connection never became usable."""


class ProtocolError(McpClientError):
    """A single request failed: bad payload, bad status, or a JSON-RPC error."""


class JSONRPCErrorResponse(ProtocolError):
    """The server answered a request with a JSON-RPC ``error`` object."""

    def __init__(self, error: Any, request_id: int | str | None = None) -> None:
        self.error = error
        self.request_id = request_id
        if isinstance(error, dict):
            self.code = error.get("code")
            self.message = error.get("message", "")
            self.data = error.get("data")
        else:
            self.code = None
            self.message = str(error)
            self.data = None
        super().__init__(f"JSON-RPC error {self.code}: {self.message}" if self.code is not None else self.message)


class RequestTimeoutError(ProtocolError):
    """No response arrived before the request deadline."""


class TransportError(McpClientError):
    """The network path failed after the connection was established."""


class ConnectionClosedError(McpClientError):
    """The caller disconnected while the request was still outstanding."""
