# SPDX-FileCopyrightText: 2025 Blackcat Informatics® Inc.
# SPDX-License-Identifier: MIT

"""Owned bookkeeping of running instances, one ordered set per role."""

from __future__ import annotations

import threading
from typing import Dict, List

from .errors import PreconditionError
from .roles import ClusterInstance, Role


class InstanceRegistry:
    def __init__(self) -> None:
        self._instances: Dict[Role, List[ClusterInstance]] = {role: [] for role in Role}
        self._lock = threading.RLock()

    def add(self, instance: ClusterInstance) -> None:
        with self._lock:
            current = self._instances[instance.role]
            if instance.identity != len(current):
                raise PreconditionError(
                    f"{instance.role.value} identity {instance.identity} breaks the "
                    f"contiguous range 0..{len(current) - 1}"
                )
            current.append(instance)

    def remove_all(self, role: Role) -> List[ClusterInstance]:
        with self._lock:
            removed = self._instances[role]
            self._instances[role] = []
            return removed

    def instances(self, role: Role) -> List[ClusterInstance]:
        with self._lock:
            return list(self._instances[role])

    def count(self, role: Role) -> int:
        with self._lock:
            return len(self._instances[role])

    def is_started(self, role: Role) -> bool:
        return self.count(role) > 0

    def require_started(self, role: Role) -> List[ClusterInstance]:
        instances = self.instances(role)
        if not instances:
            raise PreconditionError(f"{role.value} role is not started")
        return instances
