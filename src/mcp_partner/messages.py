"""JSON-RPC 2.0 message construction and classification."""

from enum import Enum
from typing import Any

JSONRPC_VERSION = "2.0"

METHOD_NOT_FOUND = -32601


class MessageKind(str, Enum):
    """Kind of a JSON-RPC message as seen by the message log."""

    REQUEST = "request"
    RESPONSE = "response"
    NOTIFICATION = "notification"
    UNKNOWN = "unknown"

    def __str__(self) -> str:
        return self.value


class Direction(str, Enum):
    OUT = "out"
    IN = "in"

    def __str__(self) -> str:
        return self.value


def make_request(method: str, params: dict[str, Any] | None, request_id: int) -> dict[str, Any]:
    request: dict[str, Any] = {"jsonrpc": JSONRPC_VERSION, "method": method}
    if params is not None:
        request["params"] = params
    request["id"] = request_id
    return request


def make_notification(method: str, params: dict[str, Any] | None = None) -> dict[str, Any]:
    notification: dict[str, Any] = {"jsonrpc": JSONRPC_VERSION, "method": method}
    if params is not None:
        notification["params"] = params
    return notification


def make_result(request_id: int | str, result: dict[str, Any]) -> dict[str, Any]:
    return {"jsonrpc": JSONRPC_VERSION, "result": result, "id": request_id}


def make_error(request_id: int | str, code: int, message: str) -> dict[str, Any]:
    return {"jsonrpc": JSONRPC_VERSION, "error": {"code": code, "message": message}, "id": request_id}


def has_id(message: dict[str, Any]) -> bool:
    return message.get("id") is not None


def classify(message: Any) -> MessageKind:
    """Classify a decoded JSON-RPC object."""
    if not isinstance(message, dict):
        return MessageKind.UNKNOWN
    if "method" in message:
        return MessageKind.REQUEST if has_id(message) else MessageKind.NOTIFICATION
    if ("result" in message or "error" in message) and "id" in message:
        return MessageKind.RESPONSE
    return MessageKind.UNKNOWN


def summarize(message: Any) -> str:
    """One-line description of a message for the traffic log."""
    kind = classify(message)
    if kind is MessageKind.REQUEST:
        return f"Request ({message['id']}): {message['method']}"
    if kind is MessageKind.NOTIFICATION:
        return f"Notification: {message['method']}"
    if kind is MessageKind.RESPONSE:
        outcome = "Failed" if "error" in message else "Success"
        return f"Response ({message.get('id')}): {outcome}"
    return "Unknown Message"
