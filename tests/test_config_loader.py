import json
import os
import tempfile
from unittest.mock import patch

import pytest

from mcp_partner.config_loader import (
    REQUEST_TIMEOUT_ENV,
    expand_env_vars,
    load_server_configs_from_file,
    parse_request_timeout_s,
)
from mcp_partner.session import DIRECT, ProxyConfig
from mcp_partner.transport import TransportKind


@pytest.fixture
def create_temp_config_file():
    """Creates a temporary JSON config file and returns its path."""
    temp_files = []

    def _create_temp_config_file(config_content):
        with tempfile.NamedTemporaryFile(
            mode="w", delete=False, suffix=".json",
        ) as tmp_config:
            if isinstance(config_content, str):
                tmp_config.write(config_content)
            else:
                json.dump(config_content, tmp_config)
            temp_files.append(tmp_config.name)
            return tmp_config.name

    yield _create_temp_config_file

    for f_path in temp_files:
        if os.path.exists(f_path):
            os.remove(f_path)


def test_load_valid_config(create_temp_config_file):
    config_content = {
        "mcpServers": {
            "server1": {
                "url": "http://localhost:8080/sse",
                "enabled": True,
            },
            "server2": {
                "url": "http://localhost:9090/mcp",
                "type": "streamable-http",
                "headers": {"Authorization": "Bearer abc", "X-Retries": 3},
            },
        },
    }
    tmp_config_path = create_temp_config_file(config_content)

    loaded = load_server_configs_from_file(tmp_config_path)

    assert loaded["server1"].url == "http://localhost:8080/sse"
    assert loaded["server1"].transport is TransportKind.SSE
    assert loaded["server1"].headers == {}
    assert loaded["server1"].proxy == DIRECT

    assert loaded["server2"].transport is TransportKind.STREAMABLE_HTTP
    assert loaded["server2"].headers == {"Authorization": "Bearer abc", "X-Retries": "3"}


@pytest.mark.parametrize("type_name", ["sse", "streamable-http", "streamablehttp", "http", "Streamable_HTTP"])
def test_transport_type_aliases(create_temp_config_file, type_name):
    tmp_config_path = create_temp_config_file(
        {"mcpServers": {"s": {"url": "http://localhost/x", "type": type_name}}},
    )
    loaded = load_server_configs_from_file(tmp_config_path)
    expected = TransportKind.SSE if type_name == "sse" else TransportKind.STREAMABLE_HTTP
    assert loaded["s"].transport is expected


def test_proxy_extensions(create_temp_config_file):
    config_content = {
        "mcpServers": {
            "own_prefix": {"url": "http://a/sse"},
            "default_prefix": {"url": "http://b/sse"},
            "proxy_off": {"url": "http://c/sse"},
            "no_extension": {"url": "http://d/sse"},
        },
        "mcpExtensions": {
            "own_prefix": {"useProxy": True, "proxyPrefix": "https://relay.one/?url="},
            "default_prefix": {"useProxy": True},
            "proxy_off": {"useProxy": False, "proxyPrefix": "https://relay.one/?url="},
        },
        "appConfig": {"defaultProxyUrl": "https://relay.default/?url="},
    }
    tmp_config_path = create_temp_config_file(config_content)

    loaded = load_server_configs_from_file(tmp_config_path)

    assert loaded["own_prefix"].proxy == ProxyConfig(enabled=True, prefix="https://relay.one/?url=")
    assert loaded["default_prefix"].proxy == ProxyConfig(enabled=True, prefix="https://relay.default/?url=")
    assert loaded["proxy_off"].proxy == DIRECT
    assert loaded["no_extension"].proxy == DIRECT


@patch("mcp_partner.config_loader.logger")
def test_proxy_without_any_prefix_connects_directly(mock_logger, create_temp_config_file):
    config_content = {
        "mcpServers": {"s": {"url": "http://a/sse"}},
        "mcpExtensions": {"s": {"useProxy": True}},
    }
    tmp_config_path = create_temp_config_file(config_content)

    loaded = load_server_configs_from_file(tmp_config_path)
    assert loaded["s"].proxy == DIRECT
    mock_logger.warning.assert_called_with(
        "Server '%s' enables the proxy but no proxy prefix is configured. Connecting directly.", "s",
    )


def test_load_config_with_not_enabled_server(create_temp_config_file):
    config_content = {
        "mcpServers": {
            "explicitly_enabled_server": {"url": "http://a/sse", "enabled": True},
            "implicitly_enabled_server": {"url": "http://b/sse"},  # No 'enabled' flag, defaults to True
            "not_enabled_server": {"url": "http://c/sse", "enabled": False},
        },
    }
    tmp_config_path = create_temp_config_file(config_content)
    loaded = load_server_configs_from_file(tmp_config_path)

    assert "explicitly_enabled_server" in loaded
    assert "implicitly_enabled_server" in loaded
    assert "not_enabled_server" not in loaded


def test_env_vars_are_expanded(create_temp_config_file):
    config_content = {
        "mcpServers": {
            "s": {
                "url": "http://${MCP_TEST_HOST:localhost}:${MCP_TEST_PORT:8080}/sse",
                "headers": {"Authorization": "Bearer ${MCP_TEST_TOKEN}"},
            },
        },
    }
    tmp_config_path = create_temp_config_file(config_content)

    with patch.dict(os.environ, {"MCP_TEST_TOKEN": "secret", "MCP_TEST_PORT": "9000"}, clear=False):
        os.environ.pop("MCP_TEST_HOST", None)
        loaded = load_server_configs_from_file(tmp_config_path)

    assert loaded["s"].url == "http://localhost:9000/sse"
    assert loaded["s"].headers == {"Authorization": "Bearer secret"}


def test_expand_env_vars_nested_and_missing():
    with patch.dict(os.environ, {"MCP_TEST_A": "a"}, clear=False):
        os.environ.pop("MCP_TEST_MISSING", None)
        value = expand_env_vars({"list": ["${MCP_TEST_A}", 1, None], "s": "x${MCP_TEST_MISSING}y"})
    assert value == {"list": ["a", 1, None], "s": "xy"}


def test_file_not_found():
    with pytest.raises(FileNotFoundError):
        load_server_configs_from_file("non_existent_file.json")


def test_json_decode_error(create_temp_config_file):
    tmp_config_path = create_temp_config_file("this is not json {")
    with pytest.raises(json.JSONDecodeError):
        load_server_configs_from_file(tmp_config_path)


def test_invalid_config_format_missing_mcpServers(create_temp_config_file):
    tmp_config_path = create_temp_config_file({"some_other_key": "value"})

    with pytest.raises(ValueError, match="Missing 'mcpServers' key"):
        load_server_configs_from_file(tmp_config_path)


def test_config_file_is_json_array(create_temp_config_file):
    tmp_config_path = create_temp_config_file([{"url": "http://a/sse"}])
    with pytest.raises(ValueError, match="Missing 'mcpServers' key"):
        load_server_configs_from_file(tmp_config_path)


@patch("mcp_partner.config_loader.logger")
def test_invalid_server_entry_not_dict(mock_logger, create_temp_config_file):
    tmp_config_path = create_temp_config_file({"mcpServers": {"server1": "not_a_dict"}})

    loaded = load_server_configs_from_file(tmp_config_path)
    assert len(loaded) == 0
    mock_logger.warning.assert_called_with(
        "Skipping invalid server config for '%s'. Entry is not a dictionary.", "server1",
    )


@patch("mcp_partner.config_loader.logger")
def test_server_entry_missing_url(mock_logger, create_temp_config_file):
    tmp_config_path = create_temp_config_file({"mcpServers": {"server_no_url": {"type": "sse"}}})
    loaded = load_server_configs_from_file(tmp_config_path)
    assert "server_no_url" not in loaded
    mock_logger.warning.assert_called_with(
        "Server '%s' from config is missing 'url'. Skipping.", "server_no_url",
    )


def test_server_entry_invalid_type_or_headers(create_temp_config_file):
    config_content = {
        "mcpServers": {
            "bad_type": {"url": "http://a/sse", "type": "stdio"},
            "bad_headers": {"url": "http://b/sse", "headers": ["Authorization"]},
            "good": {"url": "http://c/sse"},
        },
    }
    tmp_config_path = create_temp_config_file(config_content)
    loaded = load_server_configs_from_file(tmp_config_path)
    assert list(loaded) == ["good"]


def test_empty_mcpServers_dict(create_temp_config_file):
    tmp_config_path = create_temp_config_file({"mcpServers": {}})
    assert load_server_configs_from_file(tmp_config_path) == {}


@pytest.mark.parametrize(
    ("raw", "expected"),
    [(None, 30.0), ("12.5", 12.5), ("0", None), ("-1", None), ("soon", 30.0)],
)
def test_parse_request_timeout_s(raw, expected):
    env = {} if raw is None else {REQUEST_TIMEOUT_ENV: raw}
    with patch.dict(os.environ, env, clear=False):
        if raw is None:
            os.environ.pop(REQUEST_TIMEOUT_ENV, None)
        assert parse_request_timeout_s() == expected
