"""Ansible inventory support for sshfan.

Only what is needed to turn host and group names into ``host:port``
addresses is understood: hosts, groups, child groups and the
``ansible_host`` / ``ansible_port`` variables. Both the INI and the YAML
inventory formats are accepted.
"""

from __future__ import annotations

import logging
import re
import shlex
import string
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Iterable

import yaml

logger = logging.getLogger(__name__)

_RANGE = re.compile(r"\[([^\[\]:]+):([^\[\]:]+)(?::(\d+))?\]")
_HOST_VARS = ("ansible_host", "ansible_ssh_host")
_PORT_VARS = ("ansible_port", "ansible_ssh_port")


class InventoryError(ValueError):
    """The inventory file could not be understood."""


@dataclass
class Host:
    """A single inventory host."""

    name: str
    vars: dict[str, Any] = field(default_factory=dict)


@dataclass
class Group:
    """An inventory group with its direct hosts and child groups."""

    name: str
    hosts: list[str] = field(default_factory=list)
    children: list[str] = field(default_factory=list)
    vars: dict[str, Any] = field(default_factory=dict)

    def add_host(self, name: str) -> None:
        if name not in self.hosts:
            self.hosts.append(name)

    def add_child(self, name: str) -> None:
        if name not in self.children:
            self.children.append(name)


@dataclass
class Inventory:
    """Parsed inventory: hosts and groups in declaration order."""

    hosts: dict[str, Host] = field(default_factory=dict)
    groups: dict[str, Group] = field(default_factory=dict)

    def host(self, name: str) -> Host:
        if name not in self.hosts:
            self.hosts[name] = Host(name)
        return self.hosts[name]

    def group(self, name: str) -> Group:
        if name not in self.groups:
            self.groups[name] = Group(name)
        return self.groups[name]

    def finalize(self) -> None:
        """Fill in the implicit ``all`` and ``ungrouped`` groups."""
        grouped: set[str] = set()
        for group in self.groups.values():
            if group.name not in ("all", "ungrouped"):
                grouped.update(group.hosts)
        ungrouped = self.group("ungrouped")
        for name in self.hosts:
            if name not in grouped:
                ungrouped.add_host(name)
        all_group = self.group("all")
        for name in self.hosts:
            all_group.add_host(name)

    def group_hosts(self, name: str) -> list[str]:
        """All hosts of a group and its descendants, without duplicates."""
        result: list[str] = []
        seen_groups: set[str] = set()

        def visit(group_name: str) -> None:
            if group_name in seen_groups or group_name not in self.groups:
                return
            seen_groups.add(group_name)
            group = self.groups[group_name]
            for host in group.hosts:
                if host not in result:
                    result.append(host)
            for child in group.children:
                visit(child)

        visit(name)
        return result

    def group_depths(self) -> dict[str, int]:
        """Distance of every group from ``all``; top-level groups are at 1."""
        parents: dict[str, list[str]] = {name: [] for name in self.groups}
        for group in self.groups.values():
            for child in group.children:
                if child in parents:
                    parents[child].append(group.name)

        depths: dict[str, int] = {}

        def depth(name: str, path: frozenset[str]) -> int:
            if name == "all":
                return 0
            if name not in depths:
                # A cycle through children links is cut where it closes.
                above = [p for p in parents[name] if p != "all" and p not in path]
                depths[name] = 1 + max((depth(p, path | {name}) for p in above), default=0)
            return depths[name]

        for name in self.groups:
            depth(name, frozenset())
        return depths

    def host_vars(self, name: str) -> dict[str, Any]:
        """Effective variables of a host.

        Applied in Ansible's order: ``all``, then every group containing the
        host from the shallowest to the deepest (declaration order among
        equals), then the host's own variables.
        """
        depths = self.group_depths()
        containing = [
            group
            for group in self.groups.values()
            if group.name != "all" and name in self.group_hosts(group.name)
        ]
        containing.sort(key=lambda group: depths[group.name])

        merged: dict[str, Any] = dict(self.groups["all"].vars) if "all" in self.groups else {}
        for group in containing:
            merged.update(group.vars)
        merged.update(self.hosts[name].vars)
        return merged

    def address(self, name: str) -> str:
        """``host:port`` for an inventory host."""
        host_vars = self.host_vars(name)
        host = next((str(host_vars[k]) for k in _HOST_VARS if host_vars.get(k)), name)
        port = next((str(host_vars[k]) for k in _PORT_VARS if host_vars.get(k)), "22")
        return f"{host}:{port}"

    def resolve(self, names: Iterable[str]) -> list[str]:
        """Turn host and group names into addresses.

        A name is looked up as a host first, then as a group. Names matching
        neither are skipped.
        """
        addresses: list[str] = []
        for name in names:
            if name in self.hosts:
                addresses.append(self.address(name))
            elif name in self.groups:
                addresses.extend(self.address(host) for host in self.group_hosts(name))
            else:
                logger.warning("%s not found in inventory, skipping", name)
        return addresses


def load_inventory(path: str | Path) -> Inventory:
    """Load an inventory file, YAML or INI depending on its content."""
    path = Path(path).expanduser()

    if not path.exists():
        raise FileNotFoundError(f"Inventory file not found: {path}")

    try:
        text = path.read_text(encoding="utf-8")
    except UnicodeDecodeError as e:
        raise InventoryError(f"Cannot decode inventory {path}: {e}") from e
    if path.suffix in (".yml", ".yaml"):
        return parse_yaml_inventory(text)
    return parse_ini_inventory(text)


def expand_host_pattern(pattern: str) -> list[str]:
    """Expand ranges such as ``web[01:03]`` or ``db-[a:c]``."""
    match = _RANGE.search(pattern)
    if not match:
        return [pattern]

    start, end, step = match.group(1), match.group(2), int(match.group(3) or 1)
    if step < 1:
        raise InventoryError(f"Invalid host range step: {pattern}")
    head, tail = pattern[: match.start()], pattern[match.end() :]
    if start.isdigit() and end.isdigit():
        width = len(start) if start.startswith("0") else 0
        values = [str(i).zfill(width) for i in range(int(start), int(end) + 1, step)]
    elif len(start) == 1 and len(end) == 1 and start in string.ascii_letters and end in string.ascii_letters:
        values = [chr(i) for i in range(ord(start), ord(end) + 1, step)]
    else:
        raise InventoryError(f"Invalid host range: {pattern}")

    expanded = []
    for value in values:
        expanded.extend(expand_host_pattern(f"{head}{value}{tail}"))
    return expanded


def _parse_vars(tokens: list[str], where: str) -> dict[str, Any]:
    result: dict[str, Any] = {}
    for token in tokens:
        if "=" not in token:
            raise InventoryError(f"Expected key=value in {where}: {token!r}")
        key, value = token.split("=", 1)
        result[key] = value
    return result


def parse_ini_inventory(text: str) -> Inventory:
    """Parse an inventory in Ansible's INI format."""
    inventory = Inventory()
    section = "ungrouped"
    kind = "hosts"

    for lineno, raw_line in enumerate(text.splitlines(), start=1):
        line = raw_line.strip()
        if not line or line.startswith(("#", ";")):
            continue

        if line.startswith("["):
            if not line.endswith("]"):
                raise InventoryError(f"line {lineno}: malformed section header {line!r}")
            header = line[1:-1].strip()
            section, _, kind = header.partition(":")
            kind = kind or "hosts"
            if kind not in ("hosts", "children", "vars"):
                raise InventoryError(f"line {lineno}: unknown section type {kind!r}")
            inventory.group(section)
            continue

        try:
            tokens = shlex.split(line, comments=True)
        except ValueError as e:
            raise InventoryError(f"line {lineno}: {e}") from e
        if not tokens:
            continue

        where = f"line {lineno}"
        if kind == "vars":
            inventory.group(section).vars.update(_parse_vars(tokens, where))
        elif kind == "children":
            inventory.group(tokens[0])
            inventory.group(section).add_child(tokens[0])
        else:
            host_vars = _parse_vars(tokens[1:], where)
            for name in expand_host_pattern(tokens[0]):
                name, port = _split_port(name)
                host = inventory.host(name)
                if port:
                    host.vars.setdefault("ansible_port", port)
                host.vars.update(host_vars)
                if section != "ungrouped":
                    inventory.group(section).add_host(name)

    inventory.finalize()
    return inventory


def _split_port(name: str) -> tuple[str, str | None]:
    # "host:port" shorthand; IPv6 literals are left alone.
    if name.count(":") == 1:
        host, port = name.split(":")
        if port.isdigit():
            return host, port
    return name, None


def parse_yaml_inventory(text: str) -> Inventory:
    """Parse an inventory in Ansible's YAML format."""
    try:
        raw = yaml.safe_load(text) or {}
    except yaml.YAMLError as e:
        raise InventoryError(f"Invalid YAML inventory: {e}") from e

    if not isinstance(raw, dict):
        raise InventoryError("YAML inventory must be a mapping of groups")

    inventory = Inventory()
    for name, body in raw.items():
        _parse_yaml_group(inventory, str(name), body)
    inventory.finalize()
    return inventory


def _parse_yaml_group(inventory: Inventory, name: str, body: Any) -> None:
    group = inventory.group(name)
    if body is None:
        return
    if not isinstance(body, dict):
        raise InventoryError(f"Group {name!r} must be a mapping")

    for pattern, host_vars in _mapping(body, "hosts", name).items():
        if host_vars is not None and not isinstance(host_vars, dict):
            raise InventoryError(f"Variables of host {pattern!r} must be a mapping")
        for host_name in expand_host_pattern(str(pattern)):
            inventory.host(host_name).vars.update(host_vars or {})
            if name != "ungrouped":
                group.add_host(host_name)

    group.vars.update(_mapping(body, "vars", name))

    for child, child_body in _mapping(body, "children", name).items():
        group.add_child(str(child))
        _parse_yaml_group(inventory, str(child), child_body)


def _mapping(body: dict[str, Any], key: str, group: str) -> dict[Any, Any]:
    value = body.get(key) or {}
    if not isinstance(value, dict):
        raise InventoryError(f"'{key}' of group {group!r} must be a mapping")
    return value
