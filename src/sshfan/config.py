"""Configuration and connection descriptors for sshfan."""

from __future__ import annotations

import getpass
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

DEFAULT_PORT = "22"
DEFAULT_CONNECT_TIMEOUT = 1.0
DEFAULT_READ_TIMEOUT = 600.0

# Literal marker splitting "user<sep>host" in a gateway address, so
# "alice@shost" means user "alice" on host "host". Set
# gateway_user_separator="@" to split on a plain "@".
DEFAULT_GATEWAY_SEPARATOR = "@s"

_DURATION_UNITS = {
    "ns": 1e-9,
    "us": 1e-6,
    "µs": 1e-6,
    "ms": 1e-3,
    "s": 1.0,
    "m": 60.0,
    "h": 3600.0,
}
_DURATION_PART = re.compile(r"(\d+(?:\.\d*)?|\.\d+)(ns|us|µs|ms|s|m|h)")


@dataclass(frozen=True)
class TargetAddress:
    """Host and port of one dispatched target."""

    host: str
    port: str = DEFAULT_PORT

    def __str__(self) -> str:
        return f"{self.host}:{self.port}"


@dataclass(frozen=True)
class GatewaySpec:
    """Jump host every session of a run is routed through."""

    user: str
    host: str
    port: str = DEFAULT_PORT


@dataclass(frozen=True)
class SessionConfig:
    """Everything the session provider needs to reach one target."""

    user: str
    target: TargetAddress
    key_path: str | None
    connect_timeout: float
    gateway: GatewaySpec | None = None


@dataclass(frozen=True)
class RunConfig:
    """Immutable configuration for a single dispatch."""

    command: str
    user: str = field(default_factory=getpass.getuser)
    # Accepted for compatibility; a target's port always comes from its address.
    port: int = 22
    key_path: str | None = None
    gateway: str = ""
    gateway_user_separator: str = DEFAULT_GATEWAY_SEPARATOR
    connect_timeout: float = DEFAULT_CONNECT_TIMEOUT
    read_timeout: float = DEFAULT_READ_TIMEOUT
    ask_password: bool = False
    ask_passphrase: bool = False
    disable_agent: bool = False


def _split_host_port(raw: str) -> tuple[str, str]:
    parts = raw.split(":")
    port = parts[1] if len(parts) > 1 else DEFAULT_PORT
    return parts[0], port


def parse_target(raw: str) -> TargetAddress:
    """Parse ``host[:port]``. Nothing is validated here."""
    host, port = _split_host_port(raw)
    return TargetAddress(host=host, port=port)


def parse_gateway(
    raw: str,
    default_user: str,
    separator: str = DEFAULT_GATEWAY_SEPARATOR,
) -> GatewaySpec | None:
    """Parse a raw gateway address into a GatewaySpec.

    Returns None for an empty string. The host segment is split on
    ``separator``; when the separator is absent the whole segment is the host
    and ``default_user`` is used.
    """
    if not raw:
        return None
    host_part, port = _split_host_port(raw)
    parts = host_part.split(separator) if separator else [host_part]
    if len(parts) == 1:
        return GatewaySpec(user=default_user, host=parts[0], port=port)
    return GatewaySpec(user=parts[0], host=parts[1], port=port)


def build_session_config(
    address: str,
    config: RunConfig,
    gateway: GatewaySpec | None = None,
) -> SessionConfig:
    """Build the connection descriptor for one raw target address."""
    return SessionConfig(
        user=config.user,
        target=parse_target(address),
        key_path=config.key_path,
        connect_timeout=config.connect_timeout,
        gateway=gateway,
    )


def parse_duration(value: str | int | float) -> float:
    """Parse a duration into seconds.

    Accepts plain numbers (seconds) and Go-style strings such as ``1s``,
    ``250ms``, ``10m`` or ``1h30m``.
    """
    if isinstance(value, bool):
        raise ValueError(f"Invalid duration: {value!r}")
    if isinstance(value, (int, float)):
        seconds = float(value)
    else:
        text = value.strip()
        try:
            seconds = float(text)
        except ValueError:
            seconds = _parse_duration_string(text)
    if seconds < 0:
        raise ValueError(f"Duration must not be negative: {value!r}")
    return seconds


def _parse_duration_string(text: str) -> float:
    if not text:
        raise ValueError("Invalid duration: ''")
    pos = 0
    total = 0.0
    while pos < len(text):
        match = _DURATION_PART.match(text, pos)
        if not match:
            raise ValueError(f"Invalid duration: {text!r}")
        total += float(match.group(1)) * _DURATION_UNITS[match.group(2)]
        pos = match.end()
    return total


@dataclass
class FileDefaults:
    """Values read from an optional YAML defaults file."""

    user: str | None = None
    port: int | None = None
    key_path: str | None = None
    gateway: str | None = None
    gateway_user_separator: str | None = None
    connect_timeout: float | None = None
    read_timeout: float | None = None
    inventory: Path | None = None
    targets: list[str] = field(default_factory=list)
    source_path: Path | None = None  # Path of the loaded YAML file


def load_config(config_path: str | Path) -> FileDefaults:
    """Load and validate a YAML defaults file."""
    config_path = Path(config_path).expanduser().resolve()

    if not config_path.exists():
        raise FileNotFoundError(f"Config file not found: {config_path}")

    with open(config_path) as f:
        raw = yaml.safe_load(f) or {}

    if not isinstance(raw, dict):
        raise ValueError(f"Config file must contain a mapping: {config_path}")

    defaults = _parse_defaults(raw)
    defaults.source_path = config_path
    return defaults


def _parse_defaults(raw: dict[str, Any]) -> FileDefaults:
    """Parse the top-level mapping of a defaults file."""
    key = raw.get("key")
    inventory = raw.get("inventory")

    targets = raw.get("targets", [])
    if isinstance(targets, str):
        targets = [targets]
    if not isinstance(targets, list):
        raise ValueError("'targets' must be a list of addresses")

    port = raw.get("port")
    if port is not None and not isinstance(port, int):
        raise ValueError(f"'port' must be an integer, got {port!r}")

    return FileDefaults(
        user=raw.get("user"),
        port=port,
        key_path=str(Path(key).expanduser()) if key else None,
        gateway=raw.get("gateway"),
        gateway_user_separator=raw.get("gateway_user_separator"),
        connect_timeout=_optional_duration(raw, "timeout"),
        read_timeout=_optional_duration(raw, "rtimeout"),
        inventory=Path(inventory).expanduser() if inventory else None,
        targets=[str(t) for t in targets],
    )


def _optional_duration(raw: dict[str, Any], key: str) -> float | None:
    if raw.get(key) is None:
        return None
    try:
        return parse_duration(raw[key])
    except ValueError as e:
        raise ValueError(f"'{key}': {e}") from e
