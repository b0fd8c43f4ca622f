"""Entry point: forward-proxy / python -m fwdproxy"""

from __future__ import annotations

import argparse
import sys
from importlib.metadata import PackageNotFoundError, version
from typing import Any

import structlog
from pydantic import ValidationError

from .config import ProxyConfig
from .errors import BindError
from .logging_config import setup_logging

log = structlog.get_logger()


def _version() -> str:
    try:
        return version("forward-proxy")
    except PackageNotFoundError:
        return "unknown"


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="forward-proxy",
        description=(
            "Local proxy that needs no authentication and forwards to an "
            "upstream proxy that does. Every option falls back to the "
            "environment variable of the same name in upper case."
        ),
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {_version()}")
    parser.add_argument("--local-host", default=None, help="Local host to bind to (default: 0.0.0.0)")
    parser.add_argument("--local-port", type=int, default=None, help="Local port to bind to (default: 8118)")
    parser.add_argument("--proxy-host", default=None, help="Upstream proxy host (default: squid)")
    parser.add_argument("--proxy-port", type=int, default=None, help="Upstream proxy port (default: 3128)")
    parser.add_argument("--proxy-user", default=None, help="Upstream proxy username")
    parser.add_argument("--proxy-password", default=None, help="Upstream proxy password")
    parser.add_argument("--log-level", default=None, help="Log level (default: INFO)")
    parser.add_argument("--log-format", choices=("console", "json"), default=None, help="Log output format")
    parser.add_argument("--log-dir", default=None, help="Also write logs to this directory")
    return parser


def load_config(args: argparse.Namespace) -> ProxyConfig:
    """Build the config: CLI arguments override environment variables and defaults."""
    overrides: dict[str, Any] = {
        key: value for key, value in vars(args).items() if value is not None
    }
    return ProxyConfig(**overrides)


def main(argv: list[str] | None = None) -> None:
    parser = build_parser()
    args = parser.parse_args(argv)

    try:
        config = load_config(args)
    except ValidationError as exc:
        parser.error(str(exc))

    setup_logging(config.log_level, config.log_format, config.log_dir)
    log.info(
        "args_loaded",
        proxy_host=config.proxy_host,
        proxy_port=config.proxy_port,
    )

    from .server import run_server
    try:
        run_server(config)
    except BindError as exc:
        log.error("startup_failed", error=str(exc))
        sys.exit(1)


if __name__ == "__main__":
    main()
