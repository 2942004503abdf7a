"""Connection-scoped session state and CORS-proxy URL rewriting."""

import logging
from dataclasses import dataclass
from urllib.parse import urljoin

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ProxyConfig:
    """An optional CORS relay reached at ``prefix + target_url``."""

    enabled: bool = False
    prefix: str = ""


DIRECT = ProxyConfig()


def effective_url(raw_url: str, proxy: ProxyConfig | None = None) -> str:
    """Return the URL actually dialled for ``raw_url``.

    ``raw_url`` must always be the un-proxied target; passing an already
    rewritten URL would apply the prefix twice.
    """
    if proxy is not None and proxy.enabled:
        return proxy.prefix + raw_url
    return raw_url


def resolve_endpoint_url(endpoint: str, base_url: str, proxy: ProxyConfig | None = None) -> str:
    """Resolve an ``endpoint`` event value and apply the proxy.

    The value is resolved against the original base URL, never against the
    proxied one, and only then rewritten.
    """
    endpoint = endpoint.strip()
    if not endpoint:
        raise ValueError("Empty endpoint URL")
    return effective_url(urljoin(base_url, endpoint), proxy)


@dataclass
class Session:
    """Mutable per-connection state owned by a single transport."""

    post_url: str | None = None
    session_id: str | None = None
    protocol_version: str | None = None

    def update_session_id(self, session_id: str | None) -> None:
        """Remember a session id announced by the server."""
        if not session_id:
            return
        if self.session_id is None:
            logger.info("Received session ID: %s", session_id)
        elif self.session_id != session_id:
            logger.info("MCP session id changed: %s -> %s", self.session_id, session_id)
        self.session_id = session_id

    def clear(self) -> None:
        self.post_url = None
        self.session_id = None
        self.protocol_version = None
