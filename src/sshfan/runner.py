#!/usr/bin/env python3
"""Main entry point for sshfan."""

from __future__ import annotations

import argparse
import asyncio
import getpass
import logging
import sys
from pathlib import Path

from .config import (
    DEFAULT_CONNECT_TIMEOUT,
    DEFAULT_GATEWAY_SEPARATOR,
    DEFAULT_READ_TIMEOUT,
    FileDefaults,
    RunConfig,
    load_config,
    parse_duration,
)
from .dashboard import Dashboard
from .executor import EXIT_FAILURE, Executor, FailureReport, exit_code
from .inventory import InventoryError, load_inventory
from .session import AsyncSSHProvider, AuthOptions

# ANSI colors for different targets
COLORS = [
    "\033[36m",  # Cyan
    "\033[33m",  # Yellow
    "\033[35m",  # Magenta
    "\033[32m",  # Green
    "\033[34m",  # Blue
    "\033[91m",  # Light Red
    "\033[96m",  # Light Cyan
    "\033[93m",  # Light Yellow
]
RESET = "\033[0m"


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="sshfan",
        description="Run a command on many SSH hosts in parallel",
    )
    parser.add_argument(
        "-a",
        "--addr",
        action="append",
        default=[],
        help="machine ip address or hostname (or host/group from the inventory); repeatable",
    )
    parser.add_argument("-u", "--user", help="ssh user (default: current user)")
    parser.add_argument(
        "-P",
        "--port",
        type=int,
        help="ssh port number (not used: the port of each target comes from its address)",
    )
    parser.add_argument("-G", "--gateway", help="ssh gateway address")
    parser.add_argument(
        "--gateway-separator",
        help=f"separator between user and host in the gateway address (default: {DEFAULT_GATEWAY_SEPARATOR!r})",
    )
    parser.add_argument("-k", "--key", help="private key path")
    parser.add_argument("-c", "--cmd", default="", help="command to run")
    parser.add_argument(
        "-p", "--pass", dest="ask_password", action="store_true", help="ask for ssh password"
    )
    parser.add_argument(
        "-A",
        "--disable-agent",
        action="store_true",
        help="don't use ssh agent for authentication",
    )
    parser.add_argument(
        "--passphrase",
        dest="ask_passphrase",
        action="store_true",
        help="ask for private key passphrase",
    )
    parser.add_argument("--timeout", help="ssh connect timeout (default: 1s)")
    parser.add_argument("--rtimeout", help="ssh stream read timeout (default: 10m)")
    parser.add_argument("-i", "--inventory", type=Path, help="Ansible inventory file")
    parser.add_argument("--config", type=Path, help="YAML file with default settings")
    parser.add_argument("--color", action="store_true", help="Colorize target prefixes")
    parser.add_argument(
        "--dashboard",
        action="store_true",
        help="Run with the TUI dashboard",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging")
    return parser


def _pick(*values):
    """First value that is not None."""
    for value in values:
        if value is not None:
            return value
    return None


def build_run_config(args: argparse.Namespace, defaults: FileDefaults | None = None) -> RunConfig:
    """Merge command-line flags over file defaults over built-in defaults."""
    defaults = defaults or FileDefaults()
    connect_timeout = (
        parse_duration(args.timeout) if args.timeout is not None else defaults.connect_timeout
    )
    read_timeout = (
        parse_duration(args.rtimeout) if args.rtimeout is not None else defaults.read_timeout
    )
    if read_timeout == 0:
        raise ValueError("read timeout must be greater than zero")
    key = args.key if args.key is not None else defaults.key_path

    return RunConfig(
        command=args.cmd,
        user=_pick(args.user, defaults.user) or getpass.getuser(),
        port=_pick(args.port, defaults.port, 22),
        key_path=str(Path(key).expanduser()) if key else None,
        gateway=_pick(args.gateway, defaults.gateway, ""),
        gateway_user_separator=_pick(
            args.gateway_separator, defaults.gateway_user_separator, DEFAULT_GATEWAY_SEPARATOR
        ),
        connect_timeout=_pick(connect_timeout, DEFAULT_CONNECT_TIMEOUT),
        read_timeout=_pick(read_timeout, DEFAULT_READ_TIMEOUT),
        ask_password=args.ask_password,
        ask_passphrase=args.ask_passphrase,
        disable_agent=args.disable_agent,
    )


def resolve_targets(addrs: list[str], inventory_path: Path | None) -> list[str]:
    """Resolve target names through the inventory when one is given."""
    if inventory_path is None:
        return list(addrs)
    inventory = load_inventory(inventory_path)
    return inventory.resolve(addrs)


def build_auth(config: RunConfig) -> AuthOptions:
    """Prompt for the secrets the flags asked for."""
    password = getpass.getpass("SSH password: ") if config.ask_password else None
    passphrase = getpass.getpass("Key passphrase: ") if config.ask_passphrase else None
    return AuthOptions(
        password=password,
        passphrase=passphrase,
        use_agent=not config.disable_agent,
    )


def main(argv: list[str] | None = None) -> int:
    """Main entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    # Load configuration
    defaults = None
    if args.config:
        try:
            defaults = load_config(args.config)
        except FileNotFoundError as e:
            print(f"Error: {e}", file=sys.stderr)
            return EXIT_FAILURE
        except ValueError as e:
            print(f"Configuration error: {e}", file=sys.stderr)
            return EXIT_FAILURE

    try:
        config = build_run_config(args, defaults)
    except ValueError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        return EXIT_FAILURE

    if not config.command:
        print("cmd not set")
        return EXIT_FAILURE

    addrs = args.addr or (defaults.targets if defaults else [])
    inventory_path = args.inventory or (defaults.inventory if defaults else None)
    try:
        targets = resolve_targets(addrs, inventory_path)
    except (FileNotFoundError, InventoryError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return EXIT_FAILURE

    provider = AsyncSSHProvider(build_auth(config))

    if args.dashboard:
        return _run_dashboard(config, provider, targets)

    return _run_headless(config, provider, targets, color=args.color)


def _run_headless(config: RunConfig, provider, targets: list[str], color: bool = False) -> int:
    """Run executor without TUI dashboard."""
    target_colors = {}
    if color:
        for i, address in enumerate(dict.fromkeys(targets)):
            target_colors[address] = COLORS[i % len(COLORS)]

    def tag(address: str) -> str:
        if address in target_colors:
            return f"{target_colors[address]}[{address}]{RESET}"
        return f"[{address}]"

    def on_stdout(address: str, line: str) -> None:
        print(f"{tag(address)} {line}", flush=True)

    def on_stderr(address: str, line: str) -> None:
        print(f"{tag(address)} {line}", file=sys.stderr, flush=True)

    def on_failure(report: FailureReport) -> None:
        print(f"{tag(report.target)} {report.message}", file=sys.stderr, flush=True)

    executor = Executor(
        config,
        provider,
        on_stdout=on_stdout,
        on_stderr=on_stderr,
        on_failure=on_failure,
    )

    outcome = asyncio.run(executor.run_all(targets))
    return exit_code(outcome)


def _run_dashboard(config: RunConfig, provider, targets: list[str]) -> int:
    """Run the dispatch inside the TUI dashboard."""
    app = Dashboard(config, provider, targets)
    app.run()

    if app.outcome is None:
        # Quit before every target finished.
        return EXIT_FAILURE
    return exit_code(app.outcome)


if __name__ == "__main__":
    sys.exit(main())
