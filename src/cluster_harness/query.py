# SPDX-FileCopyrightText: 2025 Blackcat Informatics® Inc.
# SPDX-License-Identifier: MIT

"""Query and debug helpers against a router's HTTP API."""

from __future__ import annotations

import json
import ssl
import urllib.error
import urllib.request
from typing import Any, Dict, Mapping, Optional

from .errors import QueryError

DEFAULT_QUERY_OPTIONS = "groupByMode=sql;responseFormat=sql"
DEFAULT_TIMEOUT = 600.0


def _request_json(
    request: urllib.request.Request,
    timeout: float,
    context: Optional[ssl.SSLContext] = None,
) -> Any:
    try:
        with urllib.request.urlopen(request, timeout=timeout, context=context) as response:
            body = response.read().decode()
    except urllib.error.HTTPError as exc:
        detail = exc.read().decode(errors="replace")
        raise QueryError(f"{request.full_url} returned {exc.code}: {detail}") from exc
    except urllib.error.URLError as exc:
        raise QueryError(f"{request.full_url} unreachable: {exc.reason}") from exc
    try:
        return json.loads(body)
    except json.JSONDecodeError as exc:
        raise QueryError(f"{request.full_url} returned invalid JSON") from exc


def post_query(
    query: str,
    router_base_url: str,
    headers: Optional[Mapping[str, str]] = None,
    *,
    query_options: str = DEFAULT_QUERY_OPTIONS,
    timeout: float = DEFAULT_TIMEOUT,
    context: Optional[ssl.SSLContext] = None,
) -> Dict[str, Any]:
    """POST ``query`` to the router's ``/query/sql`` endpoint and parse the reply."""
    payload = {"sql": query, "queryOptions": query_options}
    request = urllib.request.Request(
        router_base_url.rstrip("/") + "/query/sql",
        data=json.dumps(payload).encode(),
        headers={"Content-Type": "application/json", **dict(headers or {})},
        method="POST",
    )
    return _request_json(request, timeout, context)


def get_json(url: str, *, timeout: float = DEFAULT_TIMEOUT, context: Optional[ssl.SSLContext] = None) -> Any:
    return _request_json(urllib.request.Request(url, method="GET"), timeout, context)


class QueryClient:
    """Bound to one router base URL, as tests usually are."""

    def __init__(
        self,
        router_base_url: str,
        *,
        timeout: float = DEFAULT_TIMEOUT,
        context: Optional[ssl.SSLContext] = None,
    ) -> None:
        self.router_base_url = router_base_url.rstrip("/")
        self.timeout = timeout
        self.context = context

    def post_query(self, query: str, headers: Optional[Mapping[str, str]] = None) -> Dict[str, Any]:
        return post_query(
            query,
            self.router_base_url,
            headers,
            timeout=self.timeout,
            context=self.context,
        )

    def get_debug_info(self, path: str) -> Any:
        return get_json(
            f"{self.router_base_url}/{path.lstrip('/')}",
            timeout=self.timeout,
            context=self.context,
        )

    def count(self, table: str) -> int:
        """Run ``SELECT COUNT(*)`` and return the single value."""
        response = self.post_query(f"SELECT COUNT(*) FROM {table}")
        if response.get("exceptions"):
            raise QueryError(f"count over {table} failed: {response['exceptions']}")
        return int(response["resultTable"]["rows"][0][0])
