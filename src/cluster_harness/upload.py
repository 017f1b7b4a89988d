# SPDX-FileCopyrightText: 2025 Blackcat Informatics® Inc.
# SPDX-License-Identifier: MIT

"""Push segment bundles to the cluster's upload endpoint.

Two strategies exist for a bundle: send its bytes inline, or leave it on
local disk and send only a ``file://`` reference for the controller to
fetch. Without an explicit table type each bundle gets an independent
random choice between them; with one, every bundle goes inline.

Several bundles are uploaded concurrently, one worker per bundle. All
uploads run to completion before the batch is judged, and the first
failure (in enumeration order) is raised.
"""

from __future__ import annotations

import concurrent.futures
import json
import logging
import random
import urllib.error
import urllib.parse
import urllib.request
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple, Union

from .errors import PreconditionError, UploadFailedError
from .nodes import (
    ALLOW_REFRESH_PARAM,
    DOWNLOAD_URI_HEADER,
    PARALLEL_PUSH_PROTECTION_PARAM,
    SEGMENT_NAME_HEADER,
    TABLE_NAME_PARAM,
    TABLE_TYPE_PARAM,
    UPLOAD_TYPE_HEADER,
    UPLOAD_TYPE_METADATA,
)
from .segments import SegmentBundle, list_bundles

logger = logging.getLogger(__name__)

SUCCESS_STATUS = 200
DEFAULT_SOCKET_TIMEOUT = 600.0
UPLOAD_PATH = "/v2/segments"

Sources = Union[str, Path, Iterable[Union[str, Path]]]


@dataclass(frozen=True)
class UploadOutcome:
    bundle: str
    status: int
    detail: str = ""
    strategy: str = ""

    @property
    def succeeded(self) -> bool:
        return self.status == SUCCESS_STATUS


class SegmentUploadClient:
    """Thin HTTP client for the controller's segment upload endpoint."""

    def __init__(self, base_url: str, timeout: float = DEFAULT_SOCKET_TIMEOUT) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout

    def upload_url(self, params: Mapping[str, str]) -> str:
        return f"{self.base_url}{UPLOAD_PATH}?{urllib.parse.urlencode(params)}"

    def post(self, params: Mapping[str, str], body: bytes, headers: Mapping[str, str]) -> Tuple[int, str]:
        request = urllib.request.Request(
            self.upload_url(params), data=body, headers=dict(headers), method="POST"
        )
        try:
            with urllib.request.urlopen(request, timeout=self.timeout) as response:
                return response.status, response.read().decode()
        except urllib.error.HTTPError as exc:
            return exc.code, exc.read().decode(errors="replace")


class DirectPayloadUpload:
    """Send the bundle bytes as the request body."""

    name = "direct"

    def __init__(
        self,
        table_type: Optional[str] = None,
        parallel_push_protection: bool = False,
    ) -> None:
        self.table_type = table_type
        self.parallel_push_protection = parallel_push_protection

    def submit(self, client: SegmentUploadClient, bundle: SegmentBundle, table: str) -> UploadOutcome:
        params = {TABLE_NAME_PARAM: table}
        if self.table_type is not None:
            params[TABLE_TYPE_PARAM] = self.table_type
            params[PARALLEL_PUSH_PROTECTION_PARAM] = str(self.parallel_push_protection).lower()
            params[ALLOW_REFRESH_PARAM] = "true"
        headers = {
            "Content-Type": "application/octet-stream",
            SEGMENT_NAME_HEADER: bundle.name,
        }
        status, body = client.post(params, bundle.read_bytes(), headers)
        return _outcome(bundle, status, body, self.name)


class MetadataReferenceUpload:
    """Send a ``file://`` reference to the bundle instead of its bytes."""

    name = "metadata"

    def submit(self, client: SegmentUploadClient, bundle: SegmentBundle, table: str) -> UploadOutcome:
        download_uri = download_uri_for(bundle.path)
        headers = {
            "Content-Type": "application/json",
            DOWNLOAD_URI_HEADER: download_uri,
            UPLOAD_TYPE_HEADER: UPLOAD_TYPE_METADATA,
            SEGMENT_NAME_HEADER: bundle.name,
        }
        metadata = json.dumps({"segmentName": bundle.name, "downloadUri": download_uri}).encode()
        status, body = client.post({TABLE_NAME_PARAM: table}, metadata, headers)
        return _outcome(bundle, status, body, self.name)


UploadStrategy = Union[DirectPayloadUpload, MetadataReferenceUpload]
StrategySelector = Callable[[SegmentBundle], UploadStrategy]


def download_uri_for(path: Path) -> str:
    return path.resolve().as_uri()


def _outcome(bundle: SegmentBundle, status: int, body: str, strategy: str) -> UploadOutcome:
    detail = "" if status == SUCCESS_STATUS else body
    logger.debug("%s upload of %s returned %s", strategy, bundle.name, status)
    return UploadOutcome(bundle=bundle.name, status=status, detail=detail, strategy=strategy)


def random_strategy_selector(rng: Optional[random.Random] = None) -> StrategySelector:
    """Choose direct or metadata upload with equal odds, independently per bundle."""
    rng = rng or random.Random()
    direct = DirectPayloadUpload()
    metadata = MetadataReferenceUpload()

    def select(_bundle: SegmentBundle) -> UploadStrategy:
        return direct if rng.random() < 0.5 else metadata

    return select


def fixed_strategy(strategy: UploadStrategy) -> StrategySelector:
    return lambda _bundle: strategy


class SegmentUploadDispatcher:
    def __init__(
        self,
        controller_url: str,
        *,
        timeout: float = DEFAULT_SOCKET_TIMEOUT,
        selector: Optional[StrategySelector] = None,
        client: Optional[SegmentUploadClient] = None,
    ) -> None:
        self.client = client or SegmentUploadClient(controller_url, timeout)
        self.selector = selector or random_strategy_selector()

    def upload(
        self,
        table: str,
        sources: Sources,
        table_type: Optional[str] = None,
        parallel_push_protection: bool = False,
    ) -> List[UploadOutcome]:
        """Upload every bundle found in ``sources`` to ``table``.

        Passing ``table_type`` bypasses the selector: every bundle is sent
        inline along with the table type and parallel-push-protection flag.
        Raises :class:`UploadFailedError` for the first bundle whose status
        is not 200, after every upload in the batch has finished.
        """
        bundles = self.enumerate(sources)
        if table_type is None:
            select = self.selector
        else:
            select = fixed_strategy(DirectPayloadUpload(table_type, parallel_push_protection))

        if len(bundles) == 1:
            outcomes = [self._dispatch(select, bundles[0], table)]
        else:
            outcomes = self._dispatch_all(select, bundles, table)
        self._verify(outcomes)
        logger.info("uploaded %d segment(s) to %s", len(outcomes), table)
        return outcomes

    @staticmethod
    def enumerate(sources: Sources) -> List[SegmentBundle]:
        if isinstance(sources, (str, Path)):
            directories: Sequence[Path] = [Path(sources)]
        else:
            directories = [Path(source) for source in sources]
        for directory in directories:
            if not directory.is_dir():
                raise PreconditionError(f"segment directory {directory} does not exist")
        bundles = list_bundles(directories)
        if not bundles:
            raise PreconditionError(
                "no segment bundles found in " + ", ".join(str(d) for d in directories)
            )
        return bundles

    def _dispatch(self, select: StrategySelector, bundle: SegmentBundle, table: str) -> UploadOutcome:
        return select(bundle).submit(self.client, bundle, table)

    def _dispatch_all(
        self, select: StrategySelector, bundles: List[SegmentBundle], table: str
    ) -> List[UploadOutcome]:
        with concurrent.futures.ThreadPoolExecutor(max_workers=len(bundles)) as executor:
            futures = [executor.submit(self._dispatch, select, bundle, table) for bundle in bundles]
            concurrent.futures.wait(futures)
        # every unit has finished; transport errors surface in enumeration order
        return [future.result() for future in futures]

    @staticmethod
    def _verify(outcomes: List[UploadOutcome]) -> None:
        for outcome in outcomes:
            if not outcome.succeeded:
                logger.error(
                    "%s upload of %s failed with status %s",
                    outcome.strategy,
                    outcome.bundle,
                    outcome.status,
                )
                raise UploadFailedError(outcome.bundle, outcome.status, outcome.detail)


def summarize(outcomes: Iterable[UploadOutcome]) -> Dict[str, int]:
    """Count outcomes per strategy."""
    counts: Dict[str, int] = {}
    for outcome in outcomes:
        counts[outcome.strategy] = counts.get(outcome.strategy, 0) + 1
    return counts
