"""CLI entry point for Lucy."""

import asyncio
import argparse
import sys

from .config import Config, parse_duration
from .errors import ServerError
from .observe import RequestLog
from .server import run_proxy


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Lucy HTTP debug proxy")
    parser.add_argument(
        "--config", default=None, help="Path to YAML config file"
    )
    parser.add_argument(
        "--host", default=None, help="Host to bind to (default: 0.0.0.0)"
    )
    parser.add_argument(
        "--port", type=int, default=None, help="Port to listen on (default: 8080)"
    )
    parser.add_argument(
        "--timeout", type=parse_duration, default=None,
        help="Outbound request timeout, e.g. 30s or 500ms (default: 30s)",
    )
    parser.add_argument(
        "--server-timeout", type=parse_duration, default=None,
        help="Client read/write timeout (default: 30s)",
    )
    parser.add_argument(
        "--max-body-size", type=int, default=None,
        help="Maximum request/response body size in bytes (default: 10MB)",
    )

    # Output
    parser.add_argument(
        "--log-format",
        default=None,
        choices=list(RequestLog.FORMATS),
        help="Request log format (default: pretty)",
    )
    parser.add_argument(
        "--body-preview", type=int, default=None,
        help="Characters of each body to show (default: 500)",
    )

    # Tunnel
    parser.add_argument(
        "--wait-both-directions",
        action="store_true",
        help="Keep CONNECT tunnels open until both sides have closed",
    )
    return parser


def load_config(args: argparse.Namespace) -> Config:
    """Build config: YAML file or env vars, then CLI args (highest priority)."""
    if args.config:
        config = Config.from_yaml(args.config)
    else:
        config = Config.from_env()

    # Override with CLI args (only if explicitly provided)
    if args.host is not None:
        config.proxy.host = args.host
    if args.port is not None:
        config.proxy.port = args.port
    if args.timeout is not None:
        config.proxy.request_timeout = args.timeout
    if args.server_timeout is not None:
        config.proxy.server_timeout = args.server_timeout
    if args.max_body_size is not None:
        config.proxy.max_body_size = args.max_body_size

    if args.log_format is not None:
        config.log.format = args.log_format
    if args.body_preview is not None:
        config.log.body_preview = args.body_preview

    if args.wait_both_directions:
        config.tunnel.wait_both_directions = True

    return config


def main(argv=None):
    parser = build_parser()
    args = parser.parse_args(argv)
    try:
        config = load_config(args)
        log = RequestLog(config.log.format)
    except (OSError, ValueError) as e:
        parser.error(str(e))

    print("=" * 50)
    print("Lucy HTTP debug proxy")
    print("=" * 50)
    print(f"Host: {config.proxy.host}")
    print(f"Port: {config.proxy.port}")
    print(f"Request Timeout: {config.proxy.request_timeout:g}s")
    print(f"Server Timeout: {config.proxy.server_timeout:g}s")
    print(f"Max Body Size: {config.proxy.max_body_size} bytes")
    print(f"Log Format: {config.log.format}")
    if config.tunnel.wait_both_directions:
        print("Tunnels: wait for both directions")
    print("=" * 50)

    try:
        asyncio.run(run_proxy(config, log))
    except ServerError as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)
    except KeyboardInterrupt:
        print("\n[PROXY] Interrupted")


if __name__ == "__main__":
    main()
