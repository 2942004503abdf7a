from .client import ConnectionStatus, McpClient
from .exceptions import (
    ConnectError,
    ConnectionClosedError,
    JSONRPCErrorResponse,
    McpClientError,
    ProtocolError,
    RequestTimeoutError,
    TransportError,
)
from .session import ProxyConfig, effective_url
from .transport import TransportKind

__all__ = [
    "ConnectError",
    "ConnectionClosedError",
    "ConnectionStatus",
    "JSONRPCErrorResponse",
    "McpClient",
    "McpClientError",
    "ProtocolError",
    "ProxyConfig",
    "RequestTimeoutError",
    "TransportError",
    "TransportKind",
    "effective_url",
]
