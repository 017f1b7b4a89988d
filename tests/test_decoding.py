# SPDX-FileCopyrightText: 2025 Blackcat Informatics® Inc.
# SPDX-License-Identifier: MIT

import io

import fastavro
import pytest

from cluster_harness.decoding import AvroFileSchemaMessageDecoder, GenericRow
from cluster_harness.errors import ConfigurationError, PreconditionError, RecordDecodeError

SCHEMA = {
    "type": "record",
    "name": "Event",
    "fields": [
        {"name": "id", "type": "long"},
        {"name": "name", "type": "string"},
        {"name": "value", "type": "double"},
    ],
}


@pytest.fixture
def avro_file(tmp_path):
    parsed = fastavro.parse_schema(SCHEMA)
    path = tmp_path / "sample.avro"
    with path.open("wb") as fh:
        fastavro.writer(fh, parsed, [{"id": 1, "name": "seed", "value": 0.5}])
    return path


@pytest.fixture
def decoder(avro_file):
    instance = AvroFileSchemaMessageDecoder(avro_file)
    instance.init({}, None, "events")
    return instance


def encode(record):
    buffer = io.BytesIO()
    fastavro.schemaless_writer(buffer, fastavro.parse_schema(SCHEMA), record)
    return buffer.getvalue()


def test_decode_full_record(decoder):
    row = decoder.decode(encode({"id": 42, "name": "click", "value": 1.25}), GenericRow())
    assert row.as_dict() == {"id": 42, "name": "click", "value": 1.25}


def test_decode_only_requested_fields(avro_file):
    decoder = AvroFileSchemaMessageDecoder(avro_file)
    decoder.init({}, {"name"}, "events")
    row = decoder.decode(encode({"id": 7, "name": "view", "value": 2.0}), GenericRow())
    assert row.as_dict() == {"name": "view"}


def test_decode_slice_of_larger_buffer(decoder):
    message = encode({"id": 3, "name": "slice", "value": 9.0})
    framed = b"\xff\xff" + message + b"\x00\x00\x00"
    row = decoder.decode(framed, GenericRow(), offset=2, length=len(message))
    assert row.get_value("name") == "slice"
    assert row.get_value("id") == 3


def test_destination_row_is_reused(avro_file):
    decoder = AvroFileSchemaMessageDecoder(avro_file)
    decoder.init({}, None, "events")
    destination = GenericRow()
    destination.put_value("stale", True)

    first = decoder.decode(encode({"id": 1, "name": "a", "value": 0.0}), destination)
    second = decoder.decode(encode({"id": 2, "name": "b", "value": 1.0}), destination)

    assert first is destination
    assert second is destination
    assert "stale" not in destination
    assert destination.get_value("id") == 2


def test_malformed_payload_is_fatal(decoder):
    with pytest.raises(RecordDecodeError):
        decoder.decode(b"\x80\x80", GenericRow())


def test_slice_outside_payload(decoder):
    with pytest.raises(RecordDecodeError):
        decoder.decode(b"\x02", GenericRow(), offset=0, length=5)


def test_decode_before_init():
    with pytest.raises(PreconditionError):
        AvroFileSchemaMessageDecoder().decode(b"", GenericRow())


def test_init_without_sample_file(monkeypatch):
    monkeypatch.setattr(AvroFileSchemaMessageDecoder, "avro_file", None)
    with pytest.raises(ConfigurationError):
        AvroFileSchemaMessageDecoder().init({}, None, "events")


def test_class_level_sample_file(monkeypatch, avro_file):
    monkeypatch.setattr(AvroFileSchemaMessageDecoder, "avro_file", avro_file)
    decoder = AvroFileSchemaMessageDecoder()
    decoder.init({}, ["id"], "events")
    row = decoder.decode(encode({"id": 11, "name": "x", "value": 3.0}), GenericRow())
    assert row.as_dict() == {"id": 11}
