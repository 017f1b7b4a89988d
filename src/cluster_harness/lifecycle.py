# SPDX-FileCopyrightText: 2025 Blackcat Informatics® Inc.
# SPDX-License-Identifier: MIT

"""Start, stop and restart router, storage and task-runner instances.

Each instance moves through ``UNINITIALIZED -> CONFIGURING -> RUNNING ->
STOPPED``. A stopped instance is never revived; a restart builds fresh
instance records with the same identities, so directories and preferred
ports derive from the identity exactly as they did on the first bring-up.
"""

from __future__ import annotations

import logging
import random
import shutil
import threading
from pathlib import Path
from typing import Dict, List, Mapping, Optional, Set, Tuple

from .config import (
    Configuration,
    HarnessSettings,
    OverrideHook,
    ROUTER_QUERY_PORT,
    ROUTER_TLS_CERTFILE,
    ROUTER_TLS_KEYFILE,
    build_configuration,
    build_fixed_configuration,
    role_data_dir,
    role_ports,
)
from .errors import ConfigurationError, PreconditionError, SingletonViolationError
from .nodes import RouterNode, StorageNode, TaskRunnerNode
from .ports import PortAllocator, default_allocator
from .registry import InstanceRegistry
from .roles import ClusterInstance, InstanceState, Role, RoleFactory

logger = logging.getLogger(__name__)


class ProcessSingleton:
    """A capability only one owner may hold per process.

    Task runners keep their role-level context in process-global state, so
    a second concurrent task runner is refused instead of sharing it.
    """

    def __init__(self, name: str) -> None:
        self.name = name
        self._owner: Optional[object] = None
        self._lock = threading.Lock()

    def acquire(self, owner: object) -> None:
        with self._lock:
            if self._owner is not None:
                raise SingletonViolationError(
                    f"a {self.name} is already running in this process"
                )
            self._owner = owner

    def release(self, owner: object) -> None:
        with self._lock:
            if self._owner is owner:
                self._owner = None

    @property
    def held(self) -> bool:
        with self._lock:
            return self._owner is not None


TASK_RUNNER_SLOT = ProcessSingleton("task runner")

DEFAULT_FACTORIES: Dict[Role, RoleFactory] = {
    Role.ROUTER: RouterNode,
    Role.STORAGE: StorageNode,
    Role.TASK_RUNNER: TaskRunnerNode,
}

# roles whose base directory is wiped on a fresh bring-up and on stop
_ROLES_WITH_STATE = (Role.STORAGE, Role.TASK_RUNNER)


class ClusterLifecycleManager:
    def __init__(
        self,
        cluster_name: str,
        coordination_address: str,
        *,
        settings: Optional[HarnessSettings] = None,
        factories: Optional[Mapping[Role, RoleFactory]] = None,
        allocator: Optional[PortAllocator] = None,
        defaults: Optional[Mapping[Role, Configuration]] = None,
        override_hooks: Optional[Mapping[Role, OverrideHook]] = None,
        task_runner_slot: ProcessSingleton = TASK_RUNNER_SLOT,
    ) -> None:
        self.cluster_name = cluster_name
        self.coordination_address = coordination_address
        self.settings = settings or HarnessSettings()
        self.factories: Dict[Role, RoleFactory] = {**DEFAULT_FACTORIES, **(factories or {})}
        self.allocator = allocator or default_allocator(self.settings.port_search_window)
        self.defaults: Dict[Role, Configuration] = dict(defaults or {})
        self.override_hooks: Dict[Role, OverrideHook] = dict(override_hooks or {})
        self.registry = InstanceRegistry()
        self._task_runner_slot = task_runner_slot
        self._fixed_port_roles: Set[Role] = set()
        self._router_scheme = "http"

    # -- bring-up -------------------------------------------------------------

    def start_role(self, role: Role, count: int = 1) -> List[ClusterInstance]:
        if count < 1:
            raise PreconditionError(f"{role.value} instance count must be >= 1, got {count}")
        self._require_stopped(role)
        if role is Role.TASK_RUNNER:
            if count != 1:
                raise SingletonViolationError("only one task runner may run per process")
            self._task_runner_slot.acquire(self)
        if role in _ROLES_WITH_STATE:
            self._wipe_base_dir(role)
        try:
            for identity in range(count):
                self.registry.add(self._start_instance(role, identity))
        except BaseException:
            self._abort_bring_up(role)
            raise
        if role is Role.ROUTER:
            self._router_scheme = "http"
        logger.info("started %d %s instance(s)", count, role.value)
        return self.registry.instances(role)

    def start_routers(self, count: int = 1) -> List[ClusterInstance]:
        return self.start_role(Role.ROUTER, count)

    def start_storage(self, count: int = 1) -> List[ClusterInstance]:
        return self.start_role(Role.STORAGE, count)

    def start_task_runner(self) -> ClusterInstance:
        return self.start_role(Role.TASK_RUNNER, 1)[0]

    def start_router_secure(self) -> ClusterInstance:
        """Start one TLS router on the fixed default router port."""
        self._require_stopped(Role.ROUTER)
        instance = self._start_fixed_instance(Role.ROUTER)
        self._router_scheme = "https"
        return instance

    def start_storage_secure(self) -> ClusterInstance:
        """Start one storage instance with its undecorated default ports and dirs."""
        self._require_stopped(Role.STORAGE)
        self._wipe_base_dir(Role.STORAGE)
        return self._start_fixed_instance(Role.STORAGE)

    # -- tear-down ------------------------------------------------------------

    def stop_role(self, role: Role) -> None:
        self.registry.require_started(role)
        instances = self.registry.remove_all(role)
        try:
            self._stop_instances(instances)
        finally:
            self._fixed_port_roles.discard(role)
            if role in _ROLES_WITH_STATE:
                self._wipe_base_dir(role)
            if role is Role.TASK_RUNNER:
                self._task_runner_slot.release(self)
        logger.info("stopped %d %s instance(s)", len(instances), role.value)

    def restart_role(self, role: Role) -> List[ClusterInstance]:
        """Stop every instance of ``role`` and start the same count again.

        On-disk state is kept. The task-runner slot stays held throughout.
        If an instance fails to start, the ones already started are stopped
        and the role is left down.
        """
        count = len(self.registry.require_started(role))
        self._stop_instances(self.registry.remove_all(role))
        try:
            if role in self._fixed_port_roles:
                self._fixed_port_roles.discard(role)
                self._start_fixed_instance(role)
            else:
                for identity in range(count):
                    self.registry.add(self._start_instance(role, identity))
        except BaseException:
            self._abort_bring_up(role)
            raise
        logger.info("restarted %d %s instance(s)", count, role.value)
        return self.registry.instances(role)

    def stop_all(self) -> None:
        for role in (Role.TASK_RUNNER, Role.ROUTER, Role.STORAGE):
            if self.registry.is_started(role):
                self.stop_role(role)

    # -- router convenience ---------------------------------------------------

    @property
    def router_base_url(self) -> str:
        first = self.registry.require_started(Role.ROUTER)[0]
        port = first.ports[ROUTER_QUERY_PORT]
        return f"{self._router_scheme}://{self.settings.host}:{port}"

    @property
    def router_ports(self) -> Tuple[int, ...]:
        return tuple(
            instance.ports[ROUTER_QUERY_PORT]
            for instance in self.registry.require_started(Role.ROUTER)
        )

    def router_port(self, index: int) -> int:
        return self.router_ports[index]

    def random_router_port(self) -> int:
        return random.choice(self.router_ports)

    def instances(self, role: Role) -> List[ClusterInstance]:
        return self.registry.instances(role)

    # -- internals ------------------------------------------------------------

    def _require_stopped(self, role: Role) -> None:
        if self.registry.is_started(role):
            raise PreconditionError(f"{role.value} role is already started")

    def _start_instance(self, role: Role, identity: int) -> ClusterInstance:
        instance = ClusterInstance(role=role, identity=identity)
        instance.state = InstanceState.CONFIGURING
        config = build_configuration(
            role,
            identity,
            self.cluster_name,
            self.coordination_address,
            settings=self.settings,
            defaults=self.defaults.get(role),
            override_hook=self.override_hooks.get(role),
            port_resolver=self.allocator.find_open_port,
        )
        return self._launch(instance, config)

    def _start_fixed_instance(self, role: Role) -> ClusterInstance:
        if role is Role.TASK_RUNNER:
            raise PreconditionError("task runners have no fixed-port bring-up")
        config = build_fixed_configuration(
            role,
            self.cluster_name,
            self.coordination_address,
            settings=self.settings,
            defaults=self.defaults.get(role),
            override_hook=self.override_hooks.get(role),
        )
        if role is Role.ROUTER:
            tls_keys = (ROUTER_TLS_CERTFILE, ROUTER_TLS_KEYFILE)
            missing = [key for key in tls_keys if not config.get_property(key)]
            if missing:
                raise ConfigurationError(
                    "secure router needs " + " and ".join(missing) + " configured"
                )
        instance = ClusterInstance(role=role, identity=0, state=InstanceState.CONFIGURING)
        self.allocator.reserve(role_ports(role, config).values())
        self._launch(instance, config)
        self.registry.add(instance)
        self._fixed_port_roles.add(role)
        return instance

    def _launch(self, instance: ClusterInstance, config: Configuration) -> ClusterInstance:
        instance.configuration = config
        instance.ports = role_ports(instance.role, config)
        instance.data_dir = role_data_dir(instance.role, config)
        process = self.factories[instance.role](config)
        process.start()
        instance.process = process
        instance.state = InstanceState.RUNNING
        logger.info("%s running on ports %s", instance.instance_id, instance.ports)
        return instance

    def _stop_instances(self, instances: List[ClusterInstance]) -> None:
        failure: Optional[BaseException] = None
        for instance in instances:
            try:
                instance.stop()
            except Exception as exc:  # noqa: BLE001 - stop the rest, then re-raise
                logger.error("failed to stop %s: %s", instance.instance_id, exc)
                failure = failure or exc
        if failure is not None:
            raise failure

    def _abort_bring_up(self, role: Role) -> None:
        started = self.registry.remove_all(role)
        try:
            self._stop_instances(started)
        finally:
            if role is Role.TASK_RUNNER:
                self._task_runner_slot.release(self)

    def _base_dir(self, role: Role) -> Path:
        if role is Role.STORAGE:
            return self.settings.storage_base_dir
        return self.settings.task_runner_base_dir

    def _wipe_base_dir(self, role: Role) -> None:
        base_dir = self._base_dir(role)
        if base_dir.exists():
            logger.debug("removing %s", base_dir)
            shutil.rmtree(base_dir, ignore_errors=True)
