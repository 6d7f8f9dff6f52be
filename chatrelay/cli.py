from __future__ import annotations

import argparse
import os
import sys
from dataclasses import replace

from .client import ChatClient
from .config import RelayRuntimeConfig, load_config_file
from .logging_config import configure_logging
from .paths import default_config_path
from .server import RelayServer, ServerError
from .util import expand_path


def _build_arg_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="chatrelay", description="Line-based chat relay")

    p.add_argument(
        "--config",
        default=None,
        help=f"Path to a TOML config file (default: {default_config_path()} if present)",
    )
    p.add_argument(
        "--log-level",
        default=None,
        help="Logging level override (DEBUG, INFO, WARNING, ERROR). Default comes from config.",
    )
    p.add_argument(
        "--log-file",
        default=None,
        help="Log file path override (empty disables file logging). Default comes from config.",
    )

    sub = p.add_subparsers(dest="mode", required=True, metavar="{server,client}")

    ps = sub.add_parser("server", help="Run the relay")
    ps.add_argument("port", nargs="?", type=int, default=None, help="TCP port to listen on")
    ps.add_argument("--host", default=None, help="Address to bind (default: 0.0.0.0)")
    ps.add_argument(
        "--max-sessions",
        type=int,
        default=None,
        help="Maximum concurrent sessions (0 disables the limit)",
    )
    ps.add_argument(
        "--name-timeout",
        type=float,
        default=None,
        help="Seconds to wait for the first /name line (0 waits forever)",
    )
    ps.add_argument(
        "--no-tcp-nodelay",
        action="store_true",
        help="Leave Nagle's algorithm enabled on accepted connections",
    )
    ps.add_argument(
        "--log-chat-lines",
        action="store_true",
        help="Log the text of every relayed chat line",
    )

    pc = sub.add_parser("client", help="Connect to a relay from the console")
    pc.add_argument("host", help="Relay host")
    pc.add_argument("port", type=int, help="Relay port")
    pc.add_argument("name", help="Display name to declare")

    return p


def build_config(args: argparse.Namespace) -> RelayRuntimeConfig:
    cfg = RelayRuntimeConfig()

    explicit = args.config is not None
    config_path = expand_path(str(args.config)) if explicit else str(default_config_path())
    if os.path.exists(config_path):
        cfg = load_config_file(cfg, config_path)
    elif explicit:
        raise FileNotFoundError(f"config file not found: {config_path}")

    if args.mode == "server":
        if args.port is not None:
            cfg = replace(cfg, port=int(args.port))
        if args.host is not None:
            cfg = replace(cfg, host=str(args.host))
        if args.max_sessions is not None:
            cfg = replace(cfg, max_sessions=int(args.max_sessions))
        if args.name_timeout is not None:
            cfg = replace(cfg, name_timeout_s=float(args.name_timeout))
        if args.no_tcp_nodelay:
            cfg = replace(cfg, tcp_nodelay=False)
        if args.log_chat_lines:
            cfg = replace(cfg, log_chat_lines=True)

    if args.log_level is not None:
        cfg = replace(cfg, log_level=str(args.log_level))
    if args.log_file is not None:
        cfg = replace(cfg, log_file=str(args.log_file) if str(args.log_file) else None)

    return cfg


def main(argv: list[str] | None = None) -> None:
    args = _build_arg_parser().parse_args(sys.argv[1:] if argv is None else argv)

    try:
        cfg = build_config(args)
    except (OSError, ValueError) as e:
        print(f"chatrelay: {e}", file=sys.stderr)
        raise SystemExit(2)

    configure_logging(cfg, override_level=args.log_level, override_file=args.log_file)

    if args.mode == "client":
        client = ChatClient(args.host, args.port, args.name)
        raise SystemExit(client.start())

    svc = RelayServer(cfg)
    try:
        svc.start()
        svc.run_forever()
    except ServerError as e:
        print(f"chatrelay: {e}", file=sys.stderr)
        raise SystemExit(1)


if __name__ == "__main__":
    main()
