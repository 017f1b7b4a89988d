# SPDX-FileCopyrightText: 2025 Blackcat Informatics® Inc.
# SPDX-License-Identifier: MIT

"""One object a test drives: bring the cluster up, feed it, query it, tear it down."""

from __future__ import annotations

import logging
import ssl
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

from .config import Configuration, HarnessSettings, OverrideHook
from .errors import PreconditionError
from .lifecycle import ClusterLifecycleManager
from .nodes import ControllerNode
from .ports import PortAllocator, default_allocator
from .query import QueryClient
from .roles import ClusterInstance, Role, RoleFactory
from .upload import SegmentUploadDispatcher, Sources, StrategySelector, UploadOutcome

logger = logging.getLogger(__name__)

DEFAULT_CLUSTER_NAME = "ClusterHarnessTest"
DEFAULT_CONTROLLER_PORT = 18998


class ClusterHarness:
    def __init__(
        self,
        cluster_name: str = DEFAULT_CLUSTER_NAME,
        *,
        settings: Optional[HarnessSettings] = None,
        allocator: Optional[PortAllocator] = None,
        factories: Optional[Mapping[Role, RoleFactory]] = None,
        defaults: Optional[Mapping[Role, Configuration]] = None,
        override_hooks: Optional[Mapping[Role, OverrideHook]] = None,
        selector: Optional[StrategySelector] = None,
        ssl_context: Optional[ssl.SSLContext] = None,
    ) -> None:
        self.cluster_name = cluster_name
        self.settings = settings or HarnessSettings.from_env()
        self.allocator = allocator or default_allocator(self.settings.port_search_window)
        self._factories = factories
        self._defaults = defaults
        self._override_hooks = override_hooks
        self._selector = selector
        self._ssl_context = ssl_context
        self.controller: Optional[ControllerNode] = None
        self._lifecycle: Optional[ClusterLifecycleManager] = None

    # -- controller -----------------------------------------------------------

    def start_controller(self) -> ControllerNode:
        if self.controller is not None:
            raise PreconditionError("controller is already started")
        port = self.allocator.find_open_port(DEFAULT_CONTROLLER_PORT)
        controller = ControllerNode(self.cluster_name, port, host=self.settings.host)
        controller.start()
        self.controller = controller
        self._lifecycle = ClusterLifecycleManager(
            self.cluster_name,
            controller.address,
            settings=self.settings,
            factories=self._factories,
            allocator=self.allocator,
            defaults=self._defaults,
            override_hooks=self._override_hooks,
        )
        logger.info("controller for %s running at %s", self.cluster_name, controller.base_url)
        return controller

    def stop_controller(self) -> None:
        if self.controller is None:
            raise PreconditionError("controller is not started")
        self.controller.stop()
        self.controller = None

    @property
    def lifecycle(self) -> ClusterLifecycleManager:
        if self._lifecycle is None:
            raise PreconditionError("controller is not started")
        return self._lifecycle

    @property
    def controller_url(self) -> str:
        if self.controller is None:
            raise PreconditionError("controller is not started")
        return self.controller.base_url

    # -- roles ----------------------------------------------------------------

    def start_routers(self, count: int = 1) -> List[ClusterInstance]:
        return self.lifecycle.start_routers(count)

    def start_router_secure(self) -> ClusterInstance:
        return self.lifecycle.start_router_secure()

    def start_storage(self, count: int = 1) -> List[ClusterInstance]:
        return self.lifecycle.start_storage(count)

    def start_storage_secure(self) -> ClusterInstance:
        return self.lifecycle.start_storage_secure()

    def start_task_runner(self) -> ClusterInstance:
        return self.lifecycle.start_task_runner()

    def stop_role(self, role: Role) -> None:
        self.lifecycle.stop_role(role)

    def restart_role(self, role: Role) -> List[ClusterInstance]:
        return self.lifecycle.restart_role(role)

    def stop(self) -> None:
        """Stop every started role, then the controller."""
        if self._lifecycle is not None:
            self._lifecycle.stop_all()
        if self.controller is not None:
            self.stop_controller()

    def __enter__(self) -> "ClusterHarness":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.stop()

    # -- data -----------------------------------------------------------------

    @property
    def router_base_url(self) -> str:
        return self.lifecycle.router_base_url

    def upload_segments(
        self,
        table: str,
        sources: Sources,
        table_type: Optional[str] = None,
        parallel_push_protection: bool = False,
    ) -> List[UploadOutcome]:
        dispatcher = SegmentUploadDispatcher(
            self.controller_url,
            timeout=self.settings.socket_timeout,
            selector=self._selector,
        )
        return dispatcher.upload(table, sources, table_type, parallel_push_protection)

    def query_client(self, router_base_url: Optional[str] = None) -> QueryClient:
        return QueryClient(
            router_base_url or self.router_base_url,
            timeout=self.settings.socket_timeout,
            context=self._ssl_context,
        )

    def post_query(self, query: str, headers: Optional[Dict[str, str]] = None) -> Dict[str, Any]:
        return self.query_client().post_query(query, headers)

    def get_debug_info(self, path: str) -> Any:
        return self.query_client().get_debug_info(path)

    def storage_data_dirs(self) -> List[Path]:
        return [
            instance.data_dir
            for instance in self.lifecycle.instances(Role.STORAGE)
            if instance.data_dir is not None
        ]
