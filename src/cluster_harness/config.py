# SPDX-FileCopyrightText: 2025 Blackcat Informatics® Inc.
# SPDX-License-Identifier: MIT

"""Harness settings and per-instance role configuration.

Settings are read from ``CLUSTER_HARNESS_*`` environment variables, falling
back to the env file named by ``ENV_FILE``. Role configuration is a flat
property map assembled by :func:`build_configuration` from role defaults,
the cluster identity, identity-derived ports and directories, and a final
caller-supplied override hook.
"""

from __future__ import annotations

import os
import tempfile
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Callable, Dict, Mapping, Optional, Tuple

from .errors import ConfigurationError
from .roles import Role

ENV_PREFIX = "CLUSTER_HARNESS_"

CLUSTER_NAME = "cluster.name"
COORDINATION_ADDRESS = "coordination.address"
INSTANCE_ID = "instance.id"
INSTANCE_HOST = "instance.host"
SHUTDOWN_DELAY_MS = "shutdown.delay.time.ms"

ROUTER_QUERY_PORT = "router.query.port"
ROUTER_TIMEOUT_MS = "router.timeout.ms"
ROUTER_TLS_CERTFILE = "router.tls.certfile"
ROUTER_TLS_KEYFILE = "router.tls.keyfile"

STORAGE_ADMIN_PORT = "storage.admin.port"
STORAGE_DATA_PORT = "storage.data.port"
STORAGE_RPC_PORT = "storage.rpc.port"
STORAGE_DATA_DIR = "storage.instance.data.dir"
STORAGE_SEGMENT_TAR_DIR = "storage.instance.segment.tar.dir"
STORAGE_SEGMENT_FORMAT_VERSION = "storage.segment.format.version"
STORAGE_SHUTDOWN_QUERY_CHECK = "storage.shutdown.enable.query.check"
STORAGE_THREAD_CPU_TIME = "storage.enable.thread.cpu.time.measurement"

TASK_RUNNER_PORT = "task.runner.port"
TASK_RUNNER_WORK_DIR = "task.runner.work.dir"

PORT_KEYS: Dict[Role, Tuple[str, ...]] = {
    Role.ROUTER: (ROUTER_QUERY_PORT,),
    Role.STORAGE: (STORAGE_ADMIN_PORT, STORAGE_DATA_PORT, STORAGE_RPC_PORT),
    Role.TASK_RUNNER: (TASK_RUNNER_PORT,),
}

OverrideHook = Callable[["Configuration"], None]
PortResolver = Callable[[int], int]


def load_env_file(path: Path) -> Dict[str, str]:
    """Parse KEY=value lines, skipping blanks and ``#`` comments."""
    if not path.exists():
        raise ConfigurationError(f"env file not found: {path}")
    values: Dict[str, str] = {}
    for line in path.read_text().splitlines():
        if not line.strip() or line.lstrip().startswith("#"):
            continue
        key, sep, value = line.partition("=")
        if not sep:
            continue
        values[key.strip()] = value.strip().strip('"')
    return values


def _default_base_dir() -> Path:
    return Path(tempfile.gettempdir()) / "cluster-harness"


@dataclass(frozen=True)
class HarnessSettings:
    host: str = "localhost"
    base_dir: Path = field(default_factory=_default_base_dir)
    router_port: int = 18099
    storage_admin_port: int = 8097
    storage_data_port: int = 8098
    storage_rpc_port: int = 8090
    task_runner_port: int = 9514
    socket_timeout: float = 600.0
    port_search_window: int = 200

    @property
    def storage_base_dir(self) -> Path:
        return self.base_dir / "storage"

    @property
    def task_runner_base_dir(self) -> Path:
        return self.base_dir / "task-runner"

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "HarnessSettings":
        environ = os.environ if environ is None else environ
        merged: Dict[str, str] = {}
        env_file = environ.get("ENV_FILE")
        if env_file:
            merged.update(load_env_file(Path(env_file)))
        merged.update(environ)

        values: Dict[str, Any] = {}
        for item in fields(cls):
            key = ENV_PREFIX + item.name.upper()
            raw = merged.get(key)
            if raw is None or raw == "":
                continue
            values[item.name] = _convert(key, item.name, raw)
        return cls(**values)


def _convert(key: str, name: str, raw: str) -> Any:
    if name == "host":
        return raw
    if name == "base_dir":
        return Path(raw).expanduser()
    try:
        if name == "socket_timeout":
            return float(raw)
        return int(raw)
    except ValueError as exc:
        raise ConfigurationError(f"{key} must be numeric, got {raw!r}") from exc


class Configuration:
    """Flat map of dotted property names to values."""

    def __init__(self, properties: Optional[Mapping[str, Any]] = None) -> None:
        self._properties: Dict[str, Any] = dict(properties or {})

    def set_property(self, key: str, value: Any) -> None:
        self._properties[key] = value

    def get_property(self, key: str, default: Any = None) -> Any:
        return self._properties.get(key, default)

    def get_int(self, key: str, default: Optional[int] = None) -> int:
        value = self._properties.get(key, default)
        if value is None:
            raise ConfigurationError(f"missing integer property {key}")
        try:
            return int(value)
        except (TypeError, ValueError) as exc:
            raise ConfigurationError(f"property {key} is not an integer: {value!r}") from exc

    def get_bool(self, key: str, default: bool = False) -> bool:
        value = self._properties.get(key, default)
        if isinstance(value, str):
            return value.strip().lower() in {"1", "true", "yes", "on"}
        return bool(value)

    def remove_property(self, key: str) -> None:
        self._properties.pop(key, None)

    def copy(self) -> "Configuration":
        return Configuration(self._properties)

    def as_dict(self) -> Dict[str, Any]:
        return dict(self._properties)

    def __contains__(self, key: object) -> bool:
        return key in self._properties

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Configuration):
            return NotImplemented
        return self._properties == other._properties

    def __repr__(self) -> str:
        return f"Configuration({self._properties!r})"


def default_configuration(role: Role, settings: HarnessSettings) -> Configuration:
    config = Configuration({SHUTDOWN_DELAY_MS: 0})
    if role is Role.ROUTER:
        config.set_property(ROUTER_TIMEOUT_MS, 60 * 1000)
        config.set_property(ROUTER_QUERY_PORT, settings.router_port)
    elif role is Role.STORAGE:
        config.set_property(INSTANCE_HOST, settings.host)
        config.set_property(STORAGE_SEGMENT_FORMAT_VERSION, "v3")
        config.set_property(STORAGE_SHUTDOWN_QUERY_CHECK, False)
        config.set_property(STORAGE_ADMIN_PORT, settings.storage_admin_port)
        config.set_property(STORAGE_DATA_PORT, settings.storage_data_port)
        config.set_property(STORAGE_RPC_PORT, settings.storage_rpc_port)
        config.set_property(STORAGE_DATA_DIR, str(settings.storage_base_dir / "data"))
        config.set_property(
            STORAGE_SEGMENT_TAR_DIR, str(settings.storage_base_dir / "segmentTar")
        )
    else:
        config.set_property(TASK_RUNNER_PORT, settings.task_runner_port)
        config.set_property(TASK_RUNNER_WORK_DIR, str(settings.task_runner_base_dir))
    return config


def _apply_identity(config: Configuration, role: Role, identity: int, settings: HarnessSettings) -> None:
    config.set_property(INSTANCE_ID, f"{role.instance_prefix}_{identity}")
    if role is Role.ROUTER:
        config.set_property(ROUTER_QUERY_PORT, settings.router_port + identity)
    elif role is Role.STORAGE:
        base = settings.storage_base_dir
        config.set_property(STORAGE_DATA_DIR, str(base / f"data-{identity}"))
        config.set_property(STORAGE_SEGMENT_TAR_DIR, str(base / f"segmentTar-{identity}"))
        # admin ports count down so they never overlap the data/rpc ranges
        config.set_property(STORAGE_ADMIN_PORT, settings.storage_admin_port - identity)
        config.set_property(STORAGE_DATA_PORT, settings.storage_data_port + identity)
        config.set_property(STORAGE_RPC_PORT, settings.storage_rpc_port + identity)
        config.set_property(STORAGE_THREAD_CPU_TIME, True)
    else:
        config.set_property(TASK_RUNNER_PORT, settings.task_runner_port + identity)


def _base_configuration(
    role: Role,
    cluster_name: str,
    coordination_address: str,
    settings: HarnessSettings,
    defaults: Optional[Configuration],
) -> Configuration:
    config = defaults.copy() if defaults is not None else default_configuration(role, settings)
    config.set_property(CLUSTER_NAME, cluster_name)
    config.set_property(COORDINATION_ADDRESS, coordination_address)
    config.set_property(INSTANCE_HOST, config.get_property(INSTANCE_HOST, settings.host))
    return config


def build_configuration(
    role: Role,
    identity: int,
    cluster_name: str,
    coordination_address: str,
    *,
    settings: Optional[HarnessSettings] = None,
    defaults: Optional[Configuration] = None,
    override_hook: Optional[OverrideHook] = None,
    port_resolver: Optional[PortResolver] = None,
) -> Configuration:
    """Assemble the configuration for instance ``identity`` of ``role``.

    Layers, in order: role defaults (or ``defaults``), cluster name and
    coordination address, identity-derived ports and directories, each port
    passed through ``port_resolver`` when one is given, then
    ``override_hook``. Without a resolver this function performs no I/O.
    """
    if identity < 0:
        raise ConfigurationError(f"instance identity must be >= 0, got {identity}")
    settings = settings or HarnessSettings()
    config = _base_configuration(role, cluster_name, coordination_address, settings, defaults)
    _apply_identity(config, role, identity, settings)
    if port_resolver is not None:
        for key in PORT_KEYS[role]:
            config.set_property(key, port_resolver(config.get_int(key)))
    if override_hook is not None:
        override_hook(config)
    return config


def build_fixed_configuration(
    role: Role,
    cluster_name: str,
    coordination_address: str,
    *,
    settings: Optional[HarnessSettings] = None,
    defaults: Optional[Configuration] = None,
    override_hook: Optional[OverrideHook] = None,
) -> Configuration:
    """Configuration for the secure single-instance path.

    TLS listeners are bound to ports fixed by certificate and client
    configuration, so no identity offsets and no port resolution apply.
    """
    settings = settings or HarnessSettings()
    config = _base_configuration(role, cluster_name, coordination_address, settings, defaults)
    config.set_property(INSTANCE_ID, f"{role.instance_prefix}_0")
    if override_hook is not None:
        override_hook(config)
    return config


def role_ports(role: Role, config: Configuration) -> Dict[str, int]:
    return {key: config.get_int(key) for key in PORT_KEYS[role] if key in config}


def role_data_dir(role: Role, config: Configuration) -> Optional[Path]:
    if role is Role.STORAGE:
        return Path(config.get_property(STORAGE_DATA_DIR))
    if role is Role.TASK_RUNNER:
        return Path(config.get_property(TASK_RUNNER_WORK_DIR))
    return None
