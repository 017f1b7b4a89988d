# SPDX-FileCopyrightText: 2025 Blackcat Informatics® Inc.
# SPDX-License-Identifier: MIT

"""Test-cluster orchestration and bulk segment ingestion harness.

Stands up router, storage and task-runner roles inside the test process,
pushes segment bundles into them and queries the result.
"""

from .cluster import ClusterHarness
from .config import Configuration, HarnessSettings, build_configuration
from .errors import (
    ConfigurationError,
    HarnessError,
    PortExhaustionError,
    PreconditionError,
    QueryError,
    RecordDecodeError,
    SingletonViolationError,
    UploadFailedError,
)
from .lifecycle import ClusterLifecycleManager
from .ports import PortAllocator, find_open_port
from .roles import ClusterInstance, InstanceState, Role
from .upload import SegmentUploadDispatcher, UploadOutcome

__all__: list[str] = [
    "ClusterHarness",
    "ClusterInstance",
    "ClusterLifecycleManager",
    "Configuration",
    "ConfigurationError",
    "HarnessError",
    "HarnessSettings",
    "InstanceState",
    "PortAllocator",
    "PortExhaustionError",
    "PreconditionError",
    "QueryError",
    "RecordDecodeError",
    "Role",
    "SegmentUploadDispatcher",
    "SingletonViolationError",
    "UploadFailedError",
    "UploadOutcome",
    "build_configuration",
    "find_open_port",
]
