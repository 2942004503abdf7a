"""Tests for JSON-RPC message helpers."""

import pytest

from mcp_partner.messages import MessageKind, classify, make_error, make_notification, make_request, summarize


@pytest.mark.parametrize(
    ("message", "kind"),
    [
        ({"jsonrpc": "2.0", "method": "ping", "id": 1}, MessageKind.REQUEST),
        ({"jsonrpc": "2.0", "method": "notifications/initialized"}, MessageKind.NOTIFICATION),
        ({"jsonrpc": "2.0", "method": "notifications/progress", "id": None}, MessageKind.NOTIFICATION),
        ({"jsonrpc": "2.0", "result": {}, "id": 1}, MessageKind.RESPONSE),
        ({"jsonrpc": "2.0", "error": {"code": 1, "message": "x"}, "id": 1}, MessageKind.RESPONSE),
        ({"jsonrpc": "2.0"}, MessageKind.UNKNOWN),
        ([1, 2], MessageKind.UNKNOWN),
    ],
)
def test_classify(message, kind) -> None:
    assert classify(message) is kind


def test_builders() -> None:
    assert make_request("tools/list", None, 3) == {"jsonrpc": "2.0", "method": "tools/list", "id": 3}
    assert make_notification("notifications/initialized") == {
        "jsonrpc": "2.0",
        "method": "notifications/initialized",
    }
    assert make_error(1, -32601, "Method not found") == {
        "jsonrpc": "2.0",
        "error": {"code": -32601, "message": "Method not found"},
        "id": 1,
    }


def test_summarize() -> None:
    assert summarize(make_request("tools/list", None, 0)) == "Request (0): tools/list"
    assert summarize(make_notification("notifications/initialized")) == "Notification: notifications/initialized"
    assert summarize({"jsonrpc": "2.0", "result": {}, "id": 4}) == "Response (4): Success"
    assert summarize(make_error(4, -1, "boom")) == "Response (4): Failed"
    assert summarize("garbage") == "Unknown Message"
