"""CLI argument parsing and main entry point.

Subcommands:

* ``smcp-gateway server``        run the gateway under Uvicorn.
* ``smcp-gateway check-config``  load and validate a configuration file.
* ``smcp-gateway gen-secret``    print a fresh JWT secret or encryption key.
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import signal
import sys
from typing import Optional

import uvicorn

from smcp_gateway.config.loader import find_config_file, load_gateway_config
from smcp_gateway.constants import DEFAULT_HOST, DEFAULT_PORT, SERVER_NAME, SERVER_VERSION
from smcp_gateway.display.logging_config import setup_logging
from smcp_gateway.errors import ConfigurationError
from smcp_gateway.security.crypto import generate_encryption_key, generate_secure_id

module_logger = logging.getLogger(__name__)

uvicorn_svr_inst: Optional[uvicorn.Server] = None


# ── ``smcp-gateway server`` ─────────────────────────────────────────────


async def _run_server(
    host: Optional[str],
    port: Optional[int],
    log_lvl_cli: str,
    config_path: Optional[str] = None,
    quiet: bool = False,
) -> None:
    """Async main for the server subcommand."""
    global uvicorn_svr_inst

    log_fpath, cfg_log_lvl = setup_logging(log_lvl_cli, quiet=quiet)
    module_logger.info(
        "---- %s v%s starting (file log: %s, level: %s) ----",
        SERVER_NAME,
        SERVER_VERSION,
        log_fpath,
        cfg_log_lvl,
    )

    config = load_gateway_config(config_path)
    host = host or config.server.host
    port = port or config.server.port

    from smcp_gateway.server.app import create_app

    app = create_app(config)
    uvicorn_cfg = uvicorn.Config(
        app=app,
        host=host,
        port=port,
        log_config=None,
        log_level=cfg_log_lvl.lower() if cfg_log_lvl == "DEBUG" else "warning",
    )
    uvicorn_svr_inst = uvicorn.Server(uvicorn_cfg)

    module_logger.info("Preparing to start Uvicorn server: http://%s:%s", host, port)
    try:
        await uvicorn_svr_inst.serve()
    except (KeyboardInterrupt, SystemExit) as e_exit:
        module_logger.info("Server stopped due to '%s'.", type(e_exit).__name__)
    finally:
        module_logger.info("Uvicorn server has shut down.")


def _cmd_server(args: argparse.Namespace) -> None:
    """Entry-point for ``smcp-gateway server``."""

    def _shutdown_handler(sig: int, frame: object) -> None:
        module_logger.info("Signal %s received, shutting down gracefully.", sig)
        if uvicorn_svr_inst is not None:
            uvicorn_svr_inst.should_exit = True

    signal.signal(signal.SIGINT, _shutdown_handler)
    signal.signal(signal.SIGTERM, _shutdown_handler)

    try:
        asyncio.run(
            _run_server(
                host=args.host,
                port=args.port,
                log_lvl_cli=args.log_level,
                config_path=args.config,
                quiet=args.quiet,
            )
        )
    except ConfigurationError as e_cfg:
        module_logger.error("Configuration error: %s", e_cfg.detail)
        print(f"Configuration error: {e_cfg.detail}", file=sys.stderr)
        sys.exit(2)
    except KeyboardInterrupt:
        module_logger.info("%s interrupted by KeyboardInterrupt.", SERVER_NAME)
    except Exception as e_fatal:
        module_logger.exception("%s encountered an uncaught fatal error: %s", SERVER_NAME, e_fatal)
        sys.exit(1)
    finally:
        module_logger.info("%s application finished.", SERVER_NAME)


# ── ``smcp-gateway check-config`` ───────────────────────────────────────


def _cmd_check_config(args: argparse.Namespace) -> None:
    """Entry-point for ``smcp-gateway check-config``."""
    try:
        path = find_config_file(args.config)
        config = load_gateway_config(path)
    except ConfigurationError as e_cfg:
        print(f"Invalid configuration: {e_cfg.detail}", file=sys.stderr)
        sys.exit(2)

    print(f"Configuration OK ({path or 'built-in defaults'})")
    print(f"  listen:       {config.server.host}:{config.server.port}")
    print(f"  seed tenants: {len(config.tenants.seed)}")
    bearer = "jwks" if config.auth.jwks_uri else ("secret" if config.auth.jwt_secret else "disabled")
    print(f"  bearer auth:  {bearer}")
    print(f"  audit:        {'enabled' if config.audit.enabled else 'disabled'}")


# ── ``smcp-gateway gen-secret`` ─────────────────────────────────────────


def _cmd_gen_secret(args: argparse.Namespace) -> None:
    """Entry-point for ``smcp-gateway gen-secret``."""
    if args.kind == "encryption-key":
        print(generate_encryption_key().hex())
    else:
        print(generate_secure_id(args.length))


def _build_parser() -> argparse.ArgumentParser:
    """Build the argparse parser with its subcommands."""
    parser = argparse.ArgumentParser(
        description=f"{SERVER_NAME} v{SERVER_VERSION}",
    )

    subparsers = parser.add_subparsers(dest="command")

    # ── server ──────────────────────────────────────────────────
    sp_server = subparsers.add_parser(
        "server",
        help="Run the gateway HTTP server",
    )
    sp_server.add_argument(
        "--host",
        type=str,
        default=None,
        help=f"Host address (default: from config, else {DEFAULT_HOST})",
    )
    sp_server.add_argument(
        "--port",
        type=int,
        default=None,
        help=f"Port (default: from config, else {DEFAULT_PORT})",
    )
    sp_server.add_argument(
        "--log-level",
        type=str,
        default="info",
        choices=["debug", "info", "warning", "error", "critical"],
        help="Set file logging level (default: info)",
    )
    sp_server.add_argument(
        "--config",
        type=str,
        default=None,
        metavar="PATH",
        help=(
            "Path to configuration file (YAML). "
            "Default: $SMCP_CONFIG, then config.yaml/config.yml in the working directory"
        ),
    )
    sp_server.add_argument(
        "-q",
        "--quiet",
        action="store_true",
        default=False,
        help="Log to the file only",
    )
    sp_server.set_defaults(func=_cmd_server)

    # ── check-config ────────────────────────────────────────────
    sp_check = subparsers.add_parser(
        "check-config",
        help="Validate a configuration file and print a summary",
    )
    sp_check.add_argument("--config", type=str, default=None, metavar="PATH")
    sp_check.set_defaults(func=_cmd_check_config)

    # ── gen-secret ──────────────────────────────────────────────
    sp_secret = subparsers.add_parser(
        "gen-secret",
        help="Print a random secret",
    )
    sp_secret.add_argument(
        "--kind",
        type=str,
        default="jwt",
        choices=["jwt", "encryption-key"],
        help="jwt: hex HMAC secret; encryption-key: hex AES-256 key (default: jwt)",
    )
    sp_secret.add_argument(
        "--length",
        type=int,
        default=64,
        help="Random bytes for jwt secrets (default: 64)",
    )
    sp_secret.set_defaults(func=_cmd_gen_secret)

    return parser


def main() -> None:
    """Program entry point: parse arguments and dispatch to subcommand."""
    parser = _build_parser()
    args = parser.parse_args()

    if args.command is None:
        parser.print_help()
        sys.exit(1)
    else:
        args.func(args)


if __name__ == "__main__":
    main()
