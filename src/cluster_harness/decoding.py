# SPDX-FileCopyrightText: 2025 Blackcat Informatics® Inc.
# SPDX-License-Identifier: MIT

"""Decode schemaless Avro stream messages into ingestion rows.

Synthetic streaming tests publish records encoded with the schema of a
sample Avro data file. The decoder loads that schema once in :meth:`init`
and then turns each message into a :class:`GenericRow`.
"""

from __future__ import annotations

import io
import logging
from pathlib import Path
from typing import Any, ClassVar, Dict, Iterable, Mapping, Optional

import fastavro

from .errors import ConfigurationError, PreconditionError, RecordDecodeError

logger = logging.getLogger(__name__)


class GenericRow:
    """Field name to value mapping, reused across decode calls."""

    def __init__(self) -> None:
        self._values: Dict[str, Any] = {}

    def put_value(self, name: str, value: Any) -> None:
        self._values[name] = value

    def get_value(self, name: str) -> Any:
        return self._values.get(name)

    def clear(self) -> None:
        self._values.clear()

    def as_dict(self) -> Dict[str, Any]:
        return dict(self._values)

    def __contains__(self, name: object) -> bool:
        return name in self._values

    def __len__(self) -> int:
        return len(self._values)

    def __repr__(self) -> str:
        return f"GenericRow({self._values!r})"


class AvroFileSchemaMessageDecoder:
    # Tests point this at their sample data file before the stream consumer
    # instantiates the decoder by name.
    avro_file: ClassVar[Optional[Path]] = None

    def __init__(self, avro_file: Optional[Path] = None) -> None:
        self._avro_file = avro_file
        self._schema: Optional[Any] = None
        self._fields_to_read: frozenset[str] = frozenset()

    def init(
        self,
        props: Optional[Mapping[str, str]] = None,
        fields_to_read: Optional[Iterable[str]] = None,
        topic_name: Optional[str] = None,
    ) -> None:
        path = self._avro_file or type(self).avro_file
        if path is None:
            raise ConfigurationError("no Avro sample file configured for the decoder")
        with open(path, "rb") as fh:
            writer_schema = fastavro.reader(fh).writer_schema
        self._schema = fastavro.parse_schema(writer_schema)
        self._fields_to_read = frozenset(fields_to_read or ())
        logger.debug("decoder for %s loaded schema from %s", topic_name, path)

    def decode(
        self,
        payload: bytes,
        destination: GenericRow,
        offset: int = 0,
        length: Optional[int] = None,
    ) -> GenericRow:
        """Decode ``payload[offset:offset + length]`` into ``destination``."""
        if self._schema is None:
            raise PreconditionError("decoder used before init()")
        end = len(payload) if length is None else offset + length
        if offset < 0 or end > len(payload) or end < offset:
            raise RecordDecodeError(
                f"slice [{offset}, {end}) is outside a {len(payload)}-byte payload"
            )
        try:
            record = fastavro.schemaless_reader(
                io.BytesIO(bytes(memoryview(payload)[offset:end])), self._schema
            )
        except Exception as exc:
            logger.exception("Caught exception while decoding Avro message")
            raise RecordDecodeError(f"cannot decode Avro message: {exc}") from exc
        return self._extract(record, destination)

    def _extract(self, record: Mapping[str, Any], destination: GenericRow) -> GenericRow:
        destination.clear()
        names = self._fields_to_read or record.keys()
        for name in names:
            destination.put_value(name, record.get(name))
        return destination
