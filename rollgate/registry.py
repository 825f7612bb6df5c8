"""Inventory loading and the read-only target registry."""

from __future__ import annotations

import logging
from collections.abc import Iterator, Mapping, Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from .constants import DEFAULT_HEALTH_PATH
from .exceptions import ConfigError
from .models import Target

logger = logging.getLogger("rollgate")

TARGET_KEYS = frozenset(
    {"name", "address", "port", "health_path", "health_endpoint", "service", "user", "expect"}
)
TOP_LEVEL_KEYS = frozenset({"targets", "options", "actions"})


def _parse_port(value: Any, where: str) -> int:
    if isinstance(value, bool):
        raise ConfigError(f"{where}: invalid port {value!r}")
    try:
        port = int(value)
    except (TypeError, ValueError):
        raise ConfigError(f"{where}: invalid port {value!r}") from None
    if not 0 < port < 65536:
        raise ConfigError(f"{where}: port out of range: {port}")
    return port


def _parse_target(role: str, index: int, entry: Any) -> Target:
    where = f"targets.{role}[{index}]"
    if isinstance(entry, str):
        entry = {"address": entry}
    if not isinstance(entry, Mapping):
        raise ConfigError(f"{where}: expected an address or a mapping, got {type(entry).__name__}")

    unknown = sorted(set(entry) - TARGET_KEYS)
    if unknown:
        raise ConfigError(f"{where}: unknown key(s): {', '.join(map(str, unknown))}")

    address = str(entry.get("address") or "").strip()
    if not address:
        raise ConfigError(f"{where}: missing address")

    port = _parse_port(entry["port"], where) if entry.get("port") is not None else None
    name = str(entry.get("name") or (f"{address}:{port}" if port else address))

    health_endpoint = entry.get("health_endpoint")
    if not health_endpoint:
        health_path = str(entry.get("health_path") or DEFAULT_HEALTH_PATH)
        health_endpoint = Target(name, address, role, port).url(health_path)

    return Target(
        name=name,
        address=address,
        role=role,
        port=port,
        health_endpoint=str(health_endpoint),
        service=str(entry["service"]) if entry.get("service") else None,
        ssh_user=str(entry["user"]) if entry.get("user") else None,
        expect=str(entry["expect"]) if entry.get("expect") else None,
    )


def parse_targets(data: Mapping[str, Any]) -> list[Target]:
    """Turn a role -> entries mapping into an ordered list of targets.

    Order is role order, then entry order within the role.

    Raises:
        ConfigError: If the mapping is empty or any entry is malformed
    """
    if not isinstance(data, Mapping) or not data:
        raise ConfigError("Target list is empty")

    targets: list[Target] = []
    for role, entries in data.items():
        if entries is None:
            continue
        if isinstance(entries, (str, Mapping)):
            entries = [entries]
        if not isinstance(entries, Sequence):
            raise ConfigError(f"targets.{role}: expected a list of targets")
        for index, entry in enumerate(entries):
            targets.append(_parse_target(str(role), index, entry))

    if not targets:
        raise ConfigError("Target list is empty")
    return targets


@dataclass(frozen=True)
class Inventory:
    """Parsed inventory file: targets plus per-run options and action commands."""

    registry: TargetRegistry
    options: dict[str, Any] = field(default_factory=dict)
    actions: dict[str, str] = field(default_factory=dict)


def read_inventory_data(source: Path | str | Mapping[str, Any]) -> Mapping[str, Any]:
    """Read raw inventory data from a path, YAML/JSON text or a mapping."""
    if isinstance(source, Mapping):
        return source
    if isinstance(source, Path):
        if not (source.exists() and source.is_file()):
            raise ConfigError(f"Inventory file not found: {source}")
        text = source.read_text(encoding="utf-8")
        origin = str(source)
    else:
        text = source
        origin = "<inventory>"

    try:
        data = yaml.safe_load(text)
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid inventory in {origin}: {e}") from e
    if data is None:
        raise ConfigError(f"Inventory is empty: {origin}")
    if not isinstance(data, Mapping):
        raise ConfigError(f"Inventory must be a mapping of role to targets: {origin}")
    return data


def load_inventory(source: Path | str | Mapping[str, Any]) -> Inventory:
    """Load targets, options and action commands from an inventory source.

    A document with a top-level ``targets`` key may also carry ``options``
    and ``actions``; any other mapping is treated as role -> targets.
    """
    data = read_inventory_data(source)
    if "targets" in data:
        unknown = sorted(set(data) - TOP_LEVEL_KEYS)
        if unknown:
            raise ConfigError(f"Unknown inventory section(s): {', '.join(map(str, unknown))}")
        options = data.get("options") or {}
        actions = data.get("actions") or {}
        if not isinstance(options, Mapping):
            raise ConfigError("options must be a mapping")
        if not isinstance(actions, Mapping):
            raise ConfigError("actions must be a mapping of action name to command")
        target_data = data.get("targets") or {}
    else:
        options, actions, target_data = {}, {}, data

    registry = TargetRegistry(parse_targets(target_data))
    logger.debug("Loaded %d target(s) in roles: %s", len(registry), ", ".join(registry.roles()))
    return Inventory(
        registry=registry,
        options=dict(options),
        actions={str(k): str(v) for k, v in actions.items()},
    )


class TargetRegistry:
    """Ordered, read-only collection of targets."""

    def __init__(self, targets: Sequence[Target]):
        if not targets:
            raise ConfigError("Target list is empty")
        seen: set[str] = set()
        for t in targets:
            if t.name in seen:
                raise ConfigError(f"Duplicate target name: {t.name}")
            seen.add(t.name)
        self._targets = tuple(targets)

    @classmethod
    def load(cls, source: Path | str | Mapping[str, Any]) -> TargetRegistry:
        return load_inventory(source).registry

    @property
    def targets(self) -> tuple[Target, ...]:
        return self._targets

    def targets_by_role(self, role: str) -> tuple[Target, ...]:
        """Targets with the given role, in insertion order."""
        return tuple(t for t in self._targets if t.role == role)

    def targets_excluding_role(self, role: str) -> tuple[Target, ...]:
        return tuple(t for t in self._targets if t.role != role)

    def roles(self) -> list[str]:
        """Distinct roles in first-seen order."""
        return list(dict.fromkeys(t.role for t in self._targets))

    def get(self, name: str) -> Target | None:
        return next((t for t in self._targets if t.name == name), None)

    def __iter__(self) -> Iterator[Target]:
        return iter(self._targets)

    def __len__(self) -> int:
        return len(self._targets)
