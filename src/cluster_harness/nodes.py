# SPDX-FileCopyrightText: 2025 Blackcat Informatics® Inc.
# SPDX-License-Identifier: MIT

"""In-process reference implementations of the cluster roles.

Every node is a ``ThreadingHTTPServer`` served from a daemon thread. The
controller owns a :class:`ClusterCatalog` published under its address; the
address doubles as the coordination address handed to every other role,
which is how routers and storage instances find each other in-process.
"""

from __future__ import annotations

import json
import logging
import os
import re
import ssl
import tempfile
import threading
import time
import urllib.parse
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from packaging.specifiers import SpecifierSet
from packaging.version import InvalidVersion, Version

from .config import (
    CLUSTER_NAME,
    COORDINATION_ADDRESS,
    Configuration,
    INSTANCE_HOST,
    INSTANCE_ID,
    ROUTER_QUERY_PORT,
    ROUTER_TLS_CERTFILE,
    ROUTER_TLS_KEYFILE,
    SHUTDOWN_DELAY_MS,
    STORAGE_ADMIN_PORT,
    STORAGE_DATA_DIR,
    STORAGE_SEGMENT_TAR_DIR,
    TASK_RUNNER_PORT,
    TASK_RUNNER_WORK_DIR,
)
from .errors import HarnessError
from .segments import BUNDLE_SUFFIX, FORMAT_VERSION, SegmentData, read_segment_bundle

logger = logging.getLogger(__name__)

BIND_ADDRESS = "127.0.0.1"
SUPPORTED_FORMAT_VERSIONS = SpecifierSet(">=1.0,<2")

# request headers and parameters of the segment upload endpoint
SEGMENT_NAME_HEADER = "SEGMENT_NAME"
DOWNLOAD_URI_HEADER = "DOWNLOAD_URI"
UPLOAD_TYPE_HEADER = "UPLOAD_TYPE"
UPLOAD_TYPE_METADATA = "METADATA"
UPLOAD_TYPE_SEGMENT = "SEGMENT"
TABLE_NAME_PARAM = "tableName"
TABLE_TYPE_PARAM = "tableType"
PARALLEL_PUSH_PROTECTION_PARAM = "enableParallelPushProtection"
ALLOW_REFRESH_PARAM = "allowRefresh"
UPLOAD_PATHS = ("/v2/segments", "/segments")

QUERY_PATH = "/query/sql"
TABLE_DOES_NOT_EXIST_ERROR = 190
QUERY_VALIDATION_ERROR = 150

_TABLE_TYPE_SUFFIXES = ("_OFFLINE", "_REALTIME")
_COUNT_QUERY = re.compile(
    r"^\s*select\s+count\(\s*\*\s*\)\s+from\s+([A-Za-z_][\w.]*)\s*;?\s*$", re.IGNORECASE
)
_SELECT_QUERY = re.compile(
    r"^\s*select\s+\*\s+from\s+([A-Za-z_][\w.]*)(?:\s+limit\s+(\d+))?\s*;?\s*$",
    re.IGNORECASE,
)


def raw_table_name(table: str) -> str:
    for suffix in _TABLE_TYPE_SUFFIXES:
        if table.endswith(suffix):
            return table[: -len(suffix)]
    return table


class ClusterCatalog:
    """Shared cluster state: live instances and segment placement."""

    def __init__(self, cluster_name: str, address: str) -> None:
        self.cluster_name = cluster_name
        self.address = address
        self._storage: Dict[str, "StorageNode"] = {}
        self._task_runners: set[str] = set()
        self._placement: Dict[str, Dict[str, str]] = {}
        self._pushing: set[Tuple[str, str]] = set()
        self._lock = threading.RLock()

    def register_storage(self, node: "StorageNode") -> None:
        with self._lock:
            self._storage[node.instance_id] = node
            for table, names in node.segment_names().items():
                placement = self._placement.setdefault(table, {})
                for name in names:
                    placement[name] = node.instance_id

    def unregister_storage(self, instance_id: str) -> None:
        with self._lock:
            self._storage.pop(instance_id, None)

    def register_task_runner(self, instance_id: str) -> None:
        with self._lock:
            self._task_runners.add(instance_id)

    def unregister_task_runner(self, instance_id: str) -> None:
        with self._lock:
            self._task_runners.discard(instance_id)

    def live_storage(self) -> List["StorageNode"]:
        with self._lock:
            return list(self._storage.values())

    def task_runners(self) -> List[str]:
        with self._lock:
            return sorted(self._task_runners)

    def tables(self) -> List[str]:
        with self._lock:
            return sorted(self._placement)

    def has_segment(self, table: str, segment: str) -> bool:
        with self._lock:
            return segment in self._placement.get(table, {})

    def begin_push(self, table: str, segment: str) -> bool:
        with self._lock:
            if (table, segment) in self._pushing:
                return False
            self._pushing.add((table, segment))
            return True

    def end_push(self, table: str, segment: str) -> None:
        with self._lock:
            self._pushing.discard((table, segment))

    def assign(self, table: str, segment: str) -> Optional["StorageNode"]:
        """Pick the storage instance for a segment, keeping existing placement."""
        with self._lock:
            if not self._storage:
                return None
            current = self._placement.get(table, {}).get(segment)
            if current in self._storage:
                node = self._storage[current]
            else:
                # placement is counted here, not on the node, so concurrent
                # uploads see each other's choices before any bytes land
                placed: Dict[str, int] = {instance_id: 0 for instance_id in self._storage}
                for segments in self._placement.values():
                    for instance_id in segments.values():
                        if instance_id in placed:
                            placed[instance_id] += 1
                target = min(placed, key=lambda instance_id: (placed[instance_id], instance_id))
                node = self._storage[target]
            self._placement.setdefault(table, {})[segment] = node.instance_id
            return node

    def routing_table(self, table: str) -> Dict[str, List[str]]:
        with self._lock:
            routing: Dict[str, List[str]] = {}
            for segment, instance_id in sorted(self._placement.get(table, {}).items()):
                if instance_id in self._storage:
                    routing.setdefault(instance_id, []).append(segment)
            return routing


_catalogs: Dict[str, ClusterCatalog] = {}
_catalogs_lock = threading.Lock()


def publish_catalog(catalog: ClusterCatalog) -> None:
    with _catalogs_lock:
        _catalogs[catalog.address] = catalog


def withdraw_catalog(address: str) -> None:
    with _catalogs_lock:
        _catalogs.pop(address, None)


def lookup_catalog(address: str) -> ClusterCatalog:
    with _catalogs_lock:
        catalog = _catalogs.get(address)
    if catalog is None:
        raise HarnessError(f"no coordination service is running at {address}")
    return catalog


def _make_handler(node: "HttpNode"):
    class NodeHandler(BaseHTTPRequestHandler):
        protocol_version = "HTTP/1.1"

        def do_GET(self):  # noqa: N802
            self._dispatch("GET")

        def do_POST(self):  # noqa: N802
            self._dispatch("POST")

        def _dispatch(self, method):
            split = urllib.parse.urlsplit(self.path)
            params = {
                key: values[-1]
                for key, values in urllib.parse.parse_qs(split.query).items()
            }
            length = int(self.headers.get("Content-Length", "0"))
            body = self.rfile.read(length) if length else b""
            try:
                status, payload = node.handle(method, split.path, params, self.headers, body)
            except Exception as exc:  # noqa: BLE001 - reported to the client as a 500
                logger.exception("%s failed to handle %s %s", node.name, method, self.path)
                status, payload = 500, {"error": str(exc)}
            encoded = json.dumps(payload).encode()
            self.send_response(status)
            self.send_header("Content-Type", "application/json")
            self.send_header("Content-Length", str(len(encoded)))
            self.end_headers()
            self.wfile.write(encoded)

        def log_message(self, format, *args):  # noqa: A002
            logger.debug("%s: " + format, node.name, *args)

    return NodeHandler


Response = Tuple[int, Any]


class HttpNode:
    """Common HTTP plumbing: bind, serve from a daemon thread, shut down."""

    name = "node"

    def __init__(self, port: int, shutdown_delay_ms: int = 0) -> None:
        self.port = port
        self.shutdown_delay_ms = shutdown_delay_ms
        self._server: Optional[ThreadingHTTPServer] = None
        self._thread: Optional[threading.Thread] = None

    def handle(self, method: str, path: str, params: Dict[str, str], headers, body: bytes) -> Response:
        if method == "GET" and path == "/health":
            return 200, {"status": "OK"}
        return 404, {"error": f"no route for {method} {path}"}

    def wrap_socket(self, server: ThreadingHTTPServer) -> None:
        """Hook for listeners that need TLS."""

    def start(self) -> None:
        server = ThreadingHTTPServer((BIND_ADDRESS, self.port), _make_handler(self))
        server.daemon_threads = True
        self.wrap_socket(server)
        self._server = server
        self._thread = threading.Thread(
            target=server.serve_forever, name=f"{self.name}-http", daemon=True
        )
        self._thread.start()
        logger.debug("%s listening on %s:%s", self.name, BIND_ADDRESS, self.port)

    def stop(self) -> None:
        if self._server is None:
            return
        if self.shutdown_delay_ms > 0:
            time.sleep(self.shutdown_delay_ms / 1000.0)
        self._server.shutdown()
        self._server.server_close()
        if self._thread is not None:
            self._thread.join(timeout=5)
        self._server = None
        self._thread = None


class ControllerNode(HttpNode):
    """Coordination service plus the segment upload endpoint."""

    name = "controller"

    def __init__(self, cluster_name: str, port: int, host: str = "localhost") -> None:
        super().__init__(port)
        self.host = host
        self.catalog = ClusterCatalog(cluster_name, f"{host}:{port}")

    @property
    def address(self) -> str:
        return self.catalog.address

    @property
    def base_url(self) -> str:
        return f"http://{self.host}:{self.port}"

    def start(self) -> None:
        super().start()
        publish_catalog(self.catalog)

    def stop(self) -> None:
        withdraw_catalog(self.address)
        super().stop()

    def handle(self, method, path, params, headers, body):
        if method == "POST" and path in UPLOAD_PATHS:
            return self._upload(params, headers, body)
        if method == "GET" and path == "/tables":
            return 200, {"tables": self.catalog.tables()}
        return super().handle(method, path, params, headers, body)

    def _upload(self, params, headers, body) -> Response:
        table = params.get(TABLE_NAME_PARAM)
        if not table:
            return 400, {"error": f"missing {TABLE_NAME_PARAM} parameter"}
        table = raw_table_name(table)

        upload_type = (headers.get(UPLOAD_TYPE_HEADER) or UPLOAD_TYPE_SEGMENT).upper()
        if upload_type == UPLOAD_TYPE_METADATA:
            status, payload = self._fetch_reference(headers.get(DOWNLOAD_URI_HEADER))
            if status != 200:
                return status, payload
        else:
            payload = body
        try:
            segment = read_segment_bundle(payload)
            version = Version(str(segment.metadata.get(FORMAT_VERSION, "1.0")))
        except (ValueError, InvalidVersion) as exc:
            return 400, {"error": str(exc)}
        if version not in SUPPORTED_FORMAT_VERSIONS:
            return 400, {"error": f"unsupported bundle format version {version}"}

        name = headers.get(SEGMENT_NAME_HEADER) or segment.name
        protected = params.get(PARALLEL_PUSH_PROTECTION_PARAM, "false").lower() == "true"
        allow_refresh = params.get(ALLOW_REFRESH_PARAM, "true").lower() == "true"
        if protected and not self.catalog.begin_push(table, name):
            return 409, {"error": f"segment {name} of table {table} is being pushed concurrently"}
        try:
            if not allow_refresh and self.catalog.has_segment(table, name):
                return 409, {"error": f"segment {name} already exists in table {table}"}
            target = self.catalog.assign(table, name)
            if target is None:
                return 503, {"error": "no storage instance is available"}
            target.load_segment(table, name, payload)
        finally:
            if protected:
                self.catalog.end_push(table, name)
        logger.debug("segment %s of table %s placed on %s", name, table, target.instance_id)
        return 200, {"status": f"Successfully uploaded segment: {name} of table: {table}"}

    def _fetch_reference(self, uri: Optional[str]) -> Response:
        if not uri:
            return 400, {"error": f"metadata upload requires {DOWNLOAD_URI_HEADER}"}
        split = urllib.parse.urlsplit(uri)
        if split.scheme != "file":
            return 400, {"error": f"unsupported download URI scheme {split.scheme!r}"}
        path = Path(urllib.parse.unquote(split.path))
        if not path.is_file():
            return 404, {"error": f"segment file {path} does not exist"}
        return 200, path.read_bytes()


class _RoleNode(HttpNode):
    def __init__(self, config: Configuration, port_key: str) -> None:
        super().__init__(config.get_int(port_key), config.get_int(SHUTDOWN_DELAY_MS, 0))
        self.config = config
        self.instance_id = str(config.get_property(INSTANCE_ID))
        self.cluster_name = str(config.get_property(CLUSTER_NAME))
        self.coordination_address = str(config.get_property(COORDINATION_ADDRESS))
        self.name = self.instance_id

    def catalog(self) -> ClusterCatalog:
        return lookup_catalog(self.coordination_address)


class RouterNode(_RoleNode):
    """Query router: scatters SQL over live storage instances and gathers results."""

    def __init__(self, config: Configuration) -> None:
        super().__init__(config, ROUTER_QUERY_PORT)

    def wrap_socket(self, server):
        certfile = self.config.get_property(ROUTER_TLS_CERTFILE)
        if not certfile:
            return
        context = ssl.SSLContext(ssl.PROTOCOL_TLS_SERVER)
        context.load_cert_chain(certfile, self.config.get_property(ROUTER_TLS_KEYFILE))
        server.socket = context.wrap_socket(server.socket, server_side=True)

    def start(self) -> None:
        self.catalog()
        super().start()

    def handle(self, method, path, params, headers, body):
        if method == "POST" and path == QUERY_PATH:
            try:
                request = json.loads(body or b"{}")
            except json.JSONDecodeError:
                return 400, {"error": "request body is not valid JSON"}
            sql = request.get("sql") if isinstance(request, dict) else None
            if not sql:
                return 400, {"error": "request body lacks 'sql'"}
            return 200, self.execute(sql)
        if method == "GET" and path == "/debug/tables":
            return 200, {"tables": self.catalog().tables()}
        if method == "GET" and path.startswith("/debug/routingTable/"):
            table = raw_table_name(path.rsplit("/", 1)[-1])
            return 200, {table: self.catalog().routing_table(table)}
        return super().handle(method, path, params, headers, body)

    def execute(self, sql: str) -> Dict[str, Any]:
        started = time.monotonic()
        count_match = _COUNT_QUERY.match(sql)
        select_match = _SELECT_QUERY.match(sql)
        match = count_match or select_match
        if match is None:
            return _error_response(QUERY_VALIDATION_ERROR, f"unsupported query: {sql}")

        table = raw_table_name(match.group(1))
        catalog = self.catalog()
        if table not in catalog.tables():
            return _error_response(TABLE_DOES_NOT_EXIST_ERROR, f"TableDoesNotExistError: {table}")

        servers = [node for node in catalog.live_storage() if node.holds(table)]
        total_docs = sum(node.row_count(table) for node in servers)
        if count_match:
            columns, types, rows = ["count(*)"], ["LONG"], [[total_docs]]
        else:
            limit = int(select_match.group(2)) if select_match.group(2) else 10
            records: List[Dict[str, Any]] = []
            for node in servers:
                records.extend(node.rows(table))
            columns, types, rows = _tabulate(records[:limit])
        return {
            "resultTable": {
                "dataSchema": {"columnNames": columns, "columnDataTypes": types},
                "rows": rows,
            },
            "exceptions": [],
            "numServersQueried": len(servers),
            "numServersResponded": len(servers),
            "totalDocs": total_docs,
            "timeUsedMs": int((time.monotonic() - started) * 1000),
        }


def _error_response(code: int, message: str) -> Dict[str, Any]:
    return {
        "exceptions": [{"errorCode": code, "message": message}],
        "numServersQueried": 0,
        "numServersResponded": 0,
        "totalDocs": 0,
    }


def _column_type(value: Any) -> str:
    if isinstance(value, bool):
        return "BOOLEAN"
    if isinstance(value, int):
        return "LONG"
    if isinstance(value, float):
        return "DOUBLE"
    return "STRING"


def _tabulate(records: List[Dict[str, Any]]) -> Tuple[List[str], List[str], List[List[Any]]]:
    columns: List[str] = []
    for record in records:
        columns.extend(key for key in record if key not in columns)
    types = []
    for column in columns:
        sample = next((r[column] for r in records if r.get(column) is not None), None)
        types.append(_column_type(sample))
    rows = [[record.get(column) for column in columns] for record in records]
    return columns, types, rows


class StorageNode(_RoleNode):
    """Holds segments on disk under its data dir and serves them to routers."""

    def __init__(self, config: Configuration) -> None:
        super().__init__(config, STORAGE_ADMIN_PORT)
        self.host = config.get_property(INSTANCE_HOST, "localhost")
        self.data_dir = Path(config.get_property(STORAGE_DATA_DIR))
        self.segment_tar_dir = Path(config.get_property(STORAGE_SEGMENT_TAR_DIR))
        self._segments: Dict[str, Dict[str, SegmentData]] = {}
        self._lock = threading.Lock()

    def start(self) -> None:
        catalog = self.catalog()
        self.data_dir.mkdir(parents=True, exist_ok=True)
        self.segment_tar_dir.mkdir(parents=True, exist_ok=True)
        self._reload()
        super().start()
        catalog.register_storage(self)

    def stop(self) -> None:
        try:
            self.catalog().unregister_storage(self.instance_id)
        except HarnessError:
            logger.warning("%s: coordination service already gone", self.instance_id)
        super().stop()

    def _reload(self) -> None:
        loaded = 0
        for table_dir in sorted(p for p in self.data_dir.iterdir() if p.is_dir()):
            for bundle in sorted(table_dir.glob(f"*{BUNDLE_SUFFIX}")):
                segment = read_segment_bundle(bundle)
                with self._lock:
                    self._segments.setdefault(table_dir.name, {})[segment.name] = segment
                loaded += 1
        if loaded:
            logger.info("%s reloaded %d segment(s) from %s", self.instance_id, loaded, self.data_dir)

    def load_segment(self, table: str, name: str, payload: bytes) -> None:
        segment = read_segment_bundle(payload)
        table_dir = self.data_dir / table
        table_dir.mkdir(parents=True, exist_ok=True)
        staging_dir = self.segment_tar_dir / table
        staging_dir.mkdir(parents=True, exist_ok=True)
        fd, staged = tempfile.mkstemp(prefix=f"{name}.", suffix=BUNDLE_SUFFIX, dir=staging_dir)
        with os.fdopen(fd, "wb") as fh:
            fh.write(payload)
        Path(staged).replace(table_dir / f"{name}{BUNDLE_SUFFIX}")
        with self._lock:
            self._segments.setdefault(table, {})[name] = segment

    def holds(self, table: str) -> bool:
        with self._lock:
            return bool(self._segments.get(table))

    def segment_names(self) -> Dict[str, List[str]]:
        with self._lock:
            return {table: sorted(segments) for table, segments in self._segments.items()}

    def row_count(self, table: str) -> int:
        with self._lock:
            return sum(s.total_docs for s in self._segments.get(table, {}).values())

    def rows(self, table: str) -> List[Dict[str, Any]]:
        with self._lock:
            segments = [self._segments[table][name] for name in sorted(self._segments.get(table, {}))]
        return [row for segment in segments for row in segment.rows]

    def handle(self, method, path, params, headers, body):
        parts = path.strip("/").split("/")
        if method == "GET" and len(parts) == 3 and parts[0] == "tables" and parts[2] == "segments":
            return 200, {"segments": self.segment_names().get(raw_table_name(parts[1]), [])}
        return super().handle(method, path, params, headers, body)


class TaskRunnerNode(_RoleNode):
    """Background task runner; registers itself and keeps a working dir."""

    def __init__(self, config: Configuration) -> None:
        super().__init__(config, TASK_RUNNER_PORT)
        self.work_dir = Path(config.get_property(TASK_RUNNER_WORK_DIR))

    def start(self) -> None:
        catalog = self.catalog()
        self.work_dir.mkdir(parents=True, exist_ok=True)
        super().start()
        catalog.register_task_runner(self.instance_id)

    def stop(self) -> None:
        try:
            self.catalog().unregister_task_runner(self.instance_id)
        except HarnessError:
            logger.warning("%s: coordination service already gone", self.instance_id)
        super().stop()


