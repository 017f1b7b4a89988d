# SPDX-FileCopyrightText: 2025 Blackcat Informatics® Inc.
# SPDX-License-Identifier: MIT

"""Segment bundles understood by the in-process reference cluster.

A bundle is a gzip tarball holding ``metadata.json`` and ``rows.jsonl``.
"""

from __future__ import annotations

import io
import json
import tarfile
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Iterable, List, Sequence, Union

BUNDLE_SUFFIX = ".tar.gz"
METADATA_MEMBER = "metadata.json"
ROWS_MEMBER = "rows.jsonl"
DEFAULT_FORMAT_VERSION = "1.0"

SEGMENT_NAME = "segment.name"
TABLE_NAME = "table.name"
TOTAL_DOCS = "segment.total.docs"
FORMAT_VERSION = "format.version"


@dataclass(frozen=True)
class SegmentBundle:
    """A bundle file on disk, the unit handed to the upload dispatcher."""

    path: Path

    @property
    def name(self) -> str:
        name = self.path.name
        if name.endswith(BUNDLE_SUFFIX):
            return name[: -len(BUNDLE_SUFFIX)]
        return name

    def read_bytes(self) -> bytes:
        return self.path.read_bytes()


@dataclass
class SegmentData:
    metadata: Dict[str, Any]
    rows: List[Dict[str, Any]]

    @property
    def name(self) -> str:
        return str(self.metadata[SEGMENT_NAME])

    @property
    def total_docs(self) -> int:
        return int(self.metadata.get(TOTAL_DOCS, len(self.rows)))


def _add_member(archive: tarfile.TarFile, name: str, payload: bytes) -> None:
    info = tarfile.TarInfo(name)
    info.size = len(payload)
    archive.addfile(info, io.BytesIO(payload))


def write_segment_bundle(
    directory: Path,
    table: str,
    segment_name: str,
    rows: Iterable[Dict[str, Any]],
    *,
    format_version: str = DEFAULT_FORMAT_VERSION,
) -> SegmentBundle:
    rows = list(rows)
    metadata = {
        SEGMENT_NAME: segment_name,
        TABLE_NAME: table,
        TOTAL_DOCS: len(rows),
        FORMAT_VERSION: format_version,
    }
    directory.mkdir(parents=True, exist_ok=True)
    path = directory / f"{segment_name}{BUNDLE_SUFFIX}"
    with tarfile.open(path, "w:gz") as archive:
        _add_member(archive, METADATA_MEMBER, json.dumps(metadata).encode())
        body = "".join(json.dumps(row) + "\n" for row in rows)
        _add_member(archive, ROWS_MEMBER, body.encode())
    return SegmentBundle(path)


def read_segment_bundle(source: Union[Path, bytes]) -> SegmentData:
    """Parse a bundle from a path or raw bytes; raises ``ValueError`` if malformed."""
    fileobj = io.BytesIO(source) if isinstance(source, bytes) else None
    try:
        with tarfile.open(
            name=None if fileobj else str(source), fileobj=fileobj, mode="r:gz"
        ) as archive:
            metadata = json.loads(_extract(archive, METADATA_MEMBER))
            rows_text = _extract(archive, ROWS_MEMBER).decode()
    except (tarfile.TarError, OSError, json.JSONDecodeError, KeyError) as exc:
        raise ValueError(f"malformed segment bundle: {exc}") from exc
    if SEGMENT_NAME not in metadata:
        raise ValueError(f"segment bundle metadata lacks {SEGMENT_NAME}")
    rows = [json.loads(line) for line in rows_text.splitlines() if line.strip()]
    return SegmentData(metadata=metadata, rows=rows)


def _extract(archive: tarfile.TarFile, member: str) -> bytes:
    handle = archive.extractfile(member)
    if handle is None:
        raise KeyError(member)
    return handle.read()


def list_bundles(directories: Sequence[Path]) -> List[SegmentBundle]:
    """Every regular file in the given directories, sorted by name per directory."""
    bundles: List[SegmentBundle] = []
    for directory in directories:
        bundles.extend(
            SegmentBundle(path)
            for path in sorted(Path(directory).iterdir())
            if path.is_file()
        )
    return bundles
