"""Configuration loading for the MCP client.

Server definitions use the same JSON layout as the browser client's settings
export::

    {
      "mcpServers": {"name": {"url": "...", "type": "sse", "headers": {}}},
      "mcpExtensions": {"name": {"useProxy": true, "proxyPrefix": "..."}},
      "appConfig": {"defaultProxyUrl": "..."}
    }
"""

import json
import logging
import os
import re
from dataclasses import dataclass, field
from typing import Any

from .correlator import DEFAULT_REQUEST_TIMEOUT_S
from .session import DIRECT, ProxyConfig
from .transport import TransportKind

logger = logging.getLogger(__name__)

REQUEST_TIMEOUT_ENV = "MCP_PARTNER_REQUEST_TIMEOUT_S"

_ENV_VAR_PATTERN = re.compile(r"\$\{([^}:]+)(?::([^}]*))?\}")


@dataclass
class ServerConfig:
    """Connection settings for one named server."""

    name: str
    url: str
    transport: TransportKind = TransportKind.SSE
    headers: dict[str, str] = field(default_factory=dict)
    proxy: ProxyConfig = DIRECT


def parse_request_timeout_s() -> float | None:
    """Read the request deadline from the environment.

    Returns:
        Seconds, or None when the deadline is disabled.
    """
    raw = os.getenv(REQUEST_TIMEOUT_ENV)
    if raw is None:
        return DEFAULT_REQUEST_TIMEOUT_S
    try:
        value = float(raw)
    except ValueError:
        logger.warning("Invalid %s=%s; using default %ss", REQUEST_TIMEOUT_ENV, raw, DEFAULT_REQUEST_TIMEOUT_S)
        return DEFAULT_REQUEST_TIMEOUT_S
    if value <= 0:
        return None
    return value


def expand_env_vars(value: Any) -> Any:
    """Recursively expand ``${VAR}`` and ``${VAR:default}`` references."""
    if isinstance(value, str):

        def replace_env_var(match: re.Match[str]) -> str:
            var_name = match.group(1)
            default_value = match.group(2)
            env_value = os.getenv(var_name)
            if env_value is None:
                if default_value is None:
                    logger.warning("Environment variable '%s' not found and no default provided", var_name)
                    return ""
                return default_value
            return env_value

        return _ENV_VAR_PATTERN.sub(replace_env_var, value)
    if isinstance(value, dict):
        return {k: expand_env_vars(v) for k, v in value.items()}
    if isinstance(value, list):
        return [expand_env_vars(item) for item in value]
    return value


def _proxy_for(name: str, extensions: dict[str, Any], default_prefix: str) -> ProxyConfig:
    extension = extensions.get(name)
    if not isinstance(extension, dict) or not extension.get("useProxy", False):
        return DIRECT
    prefix = extension.get("proxyPrefix") or default_prefix
    if not prefix:
        logger.warning("Server '%s' enables the proxy but no proxy prefix is configured. Connecting directly.", name)
        return DIRECT
    return ProxyConfig(enabled=True, prefix=prefix)


def load_server_configs_from_file(config_file_path: str) -> dict[str, ServerConfig]:
    """Loads named server configurations from a JSON file.

    Args:
        config_file_path: Path to the JSON configuration file.

    Returns:
        A dictionary of server configurations keyed by name.

    Raises:
        FileNotFoundError: If the config file is not found.
        json.JSONDecodeError: If the config file contains invalid JSON.
        ValueError: If the config file format is invalid.
    """
    logger.info("Loading server configurations from: %s", config_file_path)

    try:
        with open(config_file_path) as f:
            config_data = json.load(f)
    except FileNotFoundError:
        logger.error("Configuration file not found: %s", config_file_path)
        raise
    except json.JSONDecodeError:
        logger.error("Error decoding JSON from configuration file: %s", config_file_path)
        raise
    except OSError as e:
        logger.error("Unexpected error opening or reading configuration file %s: %s", config_file_path, e)
        raise ValueError(f"Could not read configuration file: {e}") from e

    if not isinstance(config_data, dict) or not isinstance(config_data.get("mcpServers"), dict):
        msg = f"Invalid config file format in {config_file_path}. Missing 'mcpServers' key."
        logger.error(msg)
        raise ValueError(msg)

    config_data = expand_env_vars(config_data)
    extensions = config_data.get("mcpExtensions") or {}
    app_config = config_data.get("appConfig") or {}
    default_prefix = app_config.get("defaultProxyUrl", "") if isinstance(app_config, dict) else ""

    servers: dict[str, ServerConfig] = {}
    for name, server_config in config_data["mcpServers"].items():
        if not isinstance(server_config, dict):
            logger.warning("Skipping invalid server config for '%s'. Entry is not a dictionary.", name)
            continue
        if not server_config.get("enabled", True):
            logger.info("Server '%s' from config is not enabled. Skipping.", name)
            continue

        url = server_config.get("url")
        if not url:
            logger.warning("Server '%s' from config is missing 'url'. Skipping.", name)
            continue

        try:
            transport = TransportKind.parse(server_config.get("type", "sse"))
        except ValueError as e:
            logger.warning("Server '%s' from config has an invalid 'type': %s. Skipping.", name, e)
            continue

        headers = server_config.get("headers", {})
        if not isinstance(headers, dict):
            logger.warning("Server '%s' from config has invalid 'headers' (must be an object). Skipping.", name)
            continue

        servers[name] = ServerConfig(
            name=name,
            url=url,
            transport=transport,
            headers={str(k): str(v) for k, v in headers.items()},
            proxy=_proxy_for(name, extensions, default_prefix),
        )
        logger.info("Configured server '%s' from config: %s (%s)", name, url, transport)

    return servers
