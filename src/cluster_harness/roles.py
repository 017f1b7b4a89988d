# SPDX-FileCopyrightText: 2025 Blackcat Informatics® Inc.
# SPDX-License-Identifier: MIT

"""Role kinds, instance records and the process contract every role honours."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING, Callable, Dict, Optional, Protocol

if TYPE_CHECKING:
    from .config import Configuration


class Role(str, Enum):
    ROUTER = "router"
    STORAGE = "storage"
    TASK_RUNNER = "task-runner"

    @property
    def instance_prefix(self) -> str:
        return {
            Role.ROUTER: "Router",
            Role.STORAGE: "Storage",
            Role.TASK_RUNNER: "TaskRunner",
        }[self]


class InstanceState(str, Enum):
    UNINITIALIZED = "uninitialized"
    CONFIGURING = "configuring"
    RUNNING = "running"
    STOPPED = "stopped"


class RoleProcess(Protocol):
    """What the lifecycle manager needs from a started role process."""

    def start(self) -> None: ...

    def stop(self) -> None: ...


RoleFactory = Callable[["Configuration"], RoleProcess]


@dataclass
class ClusterInstance:
    role: Role
    identity: int
    ports: Dict[str, int] = field(default_factory=dict)
    data_dir: Optional[Path] = None
    state: InstanceState = InstanceState.UNINITIALIZED
    process: Optional[RoleProcess] = None
    configuration: Optional["Configuration"] = None

    @property
    def instance_id(self) -> str:
        return f"{self.role.instance_prefix}_{self.identity}"

    def stop(self) -> None:
        if self.state is InstanceState.STOPPED:
            return
        if self.process is not None:
            self.process.stop()
        self.state = InstanceState.STOPPED
