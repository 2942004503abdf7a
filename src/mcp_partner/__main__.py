"""The entry point for the mcp-partner application.

Two ways to run the application:
1. Run the application as a module `uv run -m mcp_partner`
2. Run the application as a package `uv run mcp-partner`

"""

import argparse
import asyncio
import json
import logging
import os
import sys
import typing as t

from .client import McpClient
from .config_loader import ServerConfig, load_server_configs_from_file, parse_request_timeout_s
from .exceptions import McpClientError
from .httpx_client import normalize_verify_ssl
from .messages import summarize
from .session import ProxyConfig
from .transport import TransportKind

logger = logging.getLogger(__name__)


def _parse_json_object(raw: str | None, option: str) -> dict[str, t.Any] | None:
    if raw is None:
        return None
    try:
        value = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise argparse.ArgumentTypeError(f"{option} must be valid JSON: {exc}") from exc
    if not isinstance(value, dict):
        raise argparse.ArgumentTypeError(f"{option} must be a JSON object")
    return value


def _setup_argument_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Connect to an MCP server over SSE or Streamable HTTP and run requests against it.",
        epilog=(
            "Examples:\n"
            "  mcp-partner http://localhost:8080/sse\n"
            "  mcp-partner --transport streamable-http http://localhost:8080/mcp --call-tool echo "
            "--arguments '{\"text\": \"hi\"}'\n"
            "  mcp-partner --headers Authorization 'Bearer YOUR_TOKEN' http://localhost:8080/sse\n"
            "  mcp-partner --proxy-prefix 'https://relay.example/api/cors?url=' https://remote/sse\n"
            "  mcp-partner --config servers.json my-server --read-resource file:///readme.md\n"
        ),
        formatter_class=argparse.RawTextHelpFormatter,
    )
    parser.add_argument(
        "url_or_name",
        help="URL of the MCP server, or a server name defined in --config.",
    )

    connection_group = parser.add_argument_group("connection options")
    connection_group.add_argument(
        "--transport",
        choices=[str(kind) for kind in TransportKind],
        default=None,
        help="Wire protocol to use. Default is sse, or the type given in --config.",
    )
    connection_group.add_argument(
        "-H",
        "--headers",
        nargs=2,
        action="append",
        metavar=("KEY", "VALUE"),
        help="Headers to pass to the MCP server. Can be used multiple times.",
        default=[],
    )
    connection_group.add_argument(
        "--proxy-prefix",
        default=None,
        metavar="PREFIX",
        help="Route every request through a CORS relay reached at PREFIX + target URL.",
    )
    connection_group.add_argument(
        "--config",
        default=None,
        metavar="FILE_PATH",
        help="Path to a JSON configuration file with named servers (mcpServers).",
    )
    connection_group.add_argument(
        "--verify-ssl",
        nargs="?",
        const=True,
        default=None,
        metavar="VALUE",
        help="Control SSL verification: true, false, or a path to a certificate bundle.",
    )
    connection_group.add_argument(
        "--no-verify-ssl",
        dest="verify_ssl",
        action="store_false",
        default=None,
        help="Disable SSL verification (alias for --verify-ssl false).",
    )
    connection_group.add_argument(
        "--timeout",
        type=float,
        default=None,
        metavar="SECONDS",
        help="Request timeout. Default is $MCP_PARTNER_REQUEST_TIMEOUT_S or 30; 0 disables it.",
    )

    action_group = parser.add_argument_group("actions").add_mutually_exclusive_group()
    action_group.add_argument(
        "--list",
        action="store_true",
        help="List tools, resources and prompts (the default).",
    )
    action_group.add_argument("--call-tool", metavar="NAME", help="Call a tool.")
    action_group.add_argument("--read-resource", metavar="URI", help="Read a resource.")
    action_group.add_argument("--get-prompt", metavar="NAME", help="Render a prompt.")
    action_group.add_argument("--request", metavar="METHOD", help="Send an arbitrary JSON-RPC request.")

    parser.add_argument(
        "--arguments",
        default=None,
        metavar="JSON",
        help="JSON object of arguments for --call-tool or --get-prompt.",
    )
    parser.add_argument(
        "--params",
        default=None,
        metavar="JSON",
        help="JSON object of params for --request.",
    )
    parser.add_argument(
        "--log-messages",
        action=argparse.BooleanOptionalAction,
        default=False,
        help="Print every message exchanged with the server to stderr.",
    )
    parser.add_argument(
        "--debug",
        action=argparse.BooleanOptionalAction,
        help="Enable debug mode with detailed logging output.",
        default=False,
    )
    return parser


def _resolve_server(args: argparse.Namespace) -> ServerConfig:
    """Build the connection settings from the URL or named server and CLI overrides."""
    target = args.url_or_name
    if target.startswith(("http://", "https://")):
        server = ServerConfig(name=target, url=target)
    else:
        if not args.config:
            raise ValueError(f"'{target}' is not an http(s) URL and no --config file was given.")
        servers = load_server_configs_from_file(args.config)
        if target not in servers:
            raise ValueError(f"Server '{target}' not found in {args.config}. Available: {', '.join(servers) or 'none'}")
        server = servers[target]

    if args.transport:
        server.transport = TransportKind.parse(args.transport)
    server.headers.update(dict(args.headers))
    if api_access_token := os.getenv("API_ACCESS_TOKEN", None):
        server.headers["Authorization"] = f"Bearer {api_access_token}"
    if args.proxy_prefix:
        server.proxy = ProxyConfig(enabled=True, prefix=args.proxy_prefix)
    return server


def _to_jsonable(value: t.Any) -> t.Any:
    if hasattr(value, "model_dump"):
        return value.model_dump(mode="json", by_alias=True, exclude_none=True)
    return value


async def run_client(args: argparse.Namespace, server: ServerConfig) -> dict[str, t.Any]:
    """Connect, run the requested action and return its results."""
    timeout = args.timeout if args.timeout is not None else parse_request_timeout_s()
    client = McpClient(
        request_timeout=timeout if timeout and timeout > 0 else None,
        verify_ssl=normalize_verify_ssl(args.verify_ssl),
    )
    if args.log_messages:
        client.on_message(
            lambda message, meta: print(f"[{meta.get('direction')}] {summarize(message)}", file=sys.stderr),
        )
    client.on_error(lambda text: logger.error("%s", text))

    async with client:
        init = await client.connect(server.url, server.transport, proxy=server.proxy, headers=server.headers)
        output: dict[str, t.Any] = {"server": _to_jsonable(init.serverInfo)}

        if args.call_tool:
            arguments = _parse_json_object(args.arguments, "--arguments")
            output["result"] = _to_jsonable(await client.call_tool(args.call_tool, arguments))
        elif args.read_resource:
            output["result"] = _to_jsonable(await client.read_resource(args.read_resource))
        elif args.get_prompt:
            arguments = _parse_json_object(args.arguments, "--arguments")
            output["result"] = _to_jsonable(await client.get_prompt(args.get_prompt, arguments))
        elif args.request:
            params = _parse_json_object(args.params, "--params")
            output["result"] = _to_jsonable(await client.send_request(args.request, params))
        else:
            capabilities = init.capabilities
            if capabilities.tools is not None:
                output["tools"] = _to_jsonable(await client.list_tools())["tools"]
            if capabilities.resources is not None:
                output["resources"] = _to_jsonable(await client.list_resources())["resources"]
            if capabilities.prompts is not None:
                output["prompts"] = _to_jsonable(await client.list_prompts())["prompts"]
        return output


def main() -> None:
    """Start the client using asyncio."""
    parser = _setup_argument_parser()
    args_parsed = parser.parse_args()

    logging.basicConfig(
        level=logging.DEBUG if args_parsed.debug else logging.INFO,
        format="[%(levelname)1.1s %(asctime)s.%(msecs).03d %(name)s] %(message)s",
    )

    try:
        server = _resolve_server(args_parsed)
    except (FileNotFoundError, json.JSONDecodeError, ValueError) as e:
        logger.error("%s", e)
        sys.exit(1)

    try:
        output = asyncio.run(run_client(args_parsed, server))
    except argparse.ArgumentTypeError as e:
        parser.error(str(e))
    except McpClientError as e:
        logger.error("%s", e)
        sys.exit(1)
    except KeyboardInterrupt:
        sys.exit(130)

    print(json.dumps(output, indent=2, ensure_ascii=False))


if __name__ == "__main__":
    main()
