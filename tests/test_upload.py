# SPDX-FileCopyrightText: 2025 Blackcat Informatics® Inc.
# SPDX-License-Identifier: MIT

import json
import random
import threading
import urllib.error
import urllib.parse
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer

import pytest

from cluster_harness.errors import PreconditionError, UploadFailedError
from cluster_harness.segments import SegmentBundle
from cluster_harness.upload import (
    DirectPayloadUpload,
    MetadataReferenceUpload,
    SegmentUploadDispatcher,
    download_uri_for,
    fixed_strategy,
    random_strategy_selector,
    summarize,
)


def _make_upload_handler(stub):
    class UploadHandler(BaseHTTPRequestHandler):
        protocol_version = "HTTP/1.1"

        def do_POST(self):  # noqa: N802
            split = urllib.parse.urlsplit(self.path)
            params = dict(urllib.parse.parse_qsl(split.query))
            length = int(self.headers.get("Content-Length", "0"))
            body = self.rfile.read(length)
            headers = {key.lower(): value for key, value in self.headers.items()}
            name = headers.get("segment_name", "")
            status = stub.statuses.get(name, 200)
            if stub.barrier is not None:
                try:
                    stub.barrier.wait(timeout=10)
                except threading.BrokenBarrierError:
                    status = 504
            with stub.lock:
                stub.requests.append(
                    {"path": split.path, "params": params, "headers": headers, "body": body}
                )
            payload = json.dumps({"status": status}).encode()
            self.send_response(status)
            self.send_header("Content-Type", "application/json")
            self.send_header("Content-Length", str(len(payload)))
            self.end_headers()
            self.wfile.write(payload)

        def log_message(self, _format, *_args):  # noqa: D401
            return

    return UploadHandler


class UploadStub:
    def __init__(self, port, statuses=None, barrier_parties=None):
        self.statuses = statuses or {}
        self.barrier = threading.Barrier(barrier_parties) if barrier_parties else None
        self.requests = []
        self.lock = threading.Lock()
        self.url = f"http://127.0.0.1:{port}"
        self._server = ThreadingHTTPServer(("127.0.0.1", port), _make_upload_handler(self))
        self._server.daemon_threads = True
        self._thread = threading.Thread(target=self._server.serve_forever, daemon=True)

    def __enter__(self):
        self._thread.start()
        return self

    def __exit__(self, exc_type, exc, tb):
        self._server.shutdown()
        self._server.server_close()
        self._thread.join(timeout=5)


def write_bundles(directory, count, prefix="seg"):
    directory.mkdir(parents=True, exist_ok=True)
    for idx in range(count):
        (directory / f"{prefix}_{idx}.tar.gz").write_bytes(f"payload-{prefix}-{idx}".encode())
    return directory


def never_select(_bundle):
    raise AssertionError("selector must not be consulted")


def test_single_bundle_direct_upload(tmp_path, free_port):
    bundles = write_bundles(tmp_path / "segments", 1)
    with UploadStub(free_port) as stub:
        dispatcher = SegmentUploadDispatcher(
            stub.url, timeout=5, selector=fixed_strategy(DirectPayloadUpload())
        )
        outcomes = dispatcher.upload("events", bundles)

    assert [outcome.status for outcome in outcomes] == [200]
    (request,) = stub.requests
    assert request["path"] == "/v2/segments"
    assert request["params"] == {"tableName": "events"}
    assert request["headers"]["segment_name"] == "seg_0"
    assert request["body"] == b"payload-seg-0"


def test_metadata_upload_sends_file_reference(tmp_path, free_port):
    bundles = write_bundles(tmp_path / "my segments", 1)
    bundle_path = bundles / "seg_0.tar.gz"
    with UploadStub(free_port) as stub:
        dispatcher = SegmentUploadDispatcher(
            stub.url, timeout=5, selector=fixed_strategy(MetadataReferenceUpload())
        )
        outcomes = dispatcher.upload("events", bundles)

    assert outcomes[0].strategy == "metadata"
    (request,) = stub.requests
    headers = request["headers"]
    assert headers["upload_type"] == "METADATA"
    assert headers["download_uri"] == download_uri_for(bundle_path)
    assert headers["download_uri"].startswith("file://")
    assert urllib.parse.unquote(urllib.parse.urlsplit(headers["download_uri"]).path) == str(
        bundle_path.resolve()
    )
    assert request["params"] == {"tableName": "events"}
    assert b"payload-seg-0" not in request["body"]


def test_many_bundles_upload_concurrently(tmp_path, free_port):
    bundles = write_bundles(tmp_path / "segments", 5)
    # every handler blocks until all five requests are in flight
    with UploadStub(free_port, barrier_parties=5) as stub:
        dispatcher = SegmentUploadDispatcher(stub.url, timeout=15)
        outcomes = dispatcher.upload("events", bundles)

    assert len(outcomes) == 5
    assert all(outcome.succeeded for outcome in outcomes)
    assert sorted(outcome.bundle for outcome in outcomes) == [f"seg_{idx}" for idx in range(5)]
    assert sum(summarize(outcomes).values()) == 5


def test_one_failure_fails_the_batch_after_all_complete(tmp_path, free_port):
    bundles = write_bundles(tmp_path / "segments", 4)
    with UploadStub(free_port, statuses={"seg_2": 500}) as stub:
        dispatcher = SegmentUploadDispatcher(stub.url, timeout=5)
        with pytest.raises(UploadFailedError) as excinfo:
            dispatcher.upload("events", bundles)

    assert excinfo.value.status == 500
    assert excinfo.value.bundle == "seg_2"
    assert len(stub.requests) == 4


def test_first_failure_in_enumeration_order_is_reported(tmp_path, free_port):
    bundles = write_bundles(tmp_path / "segments", 3)
    with UploadStub(free_port, statuses={"seg_1": 409, "seg_2": 500}) as stub:
        dispatcher = SegmentUploadDispatcher(stub.url, timeout=5)
        with pytest.raises(UploadFailedError) as excinfo:
            dispatcher.upload("events", bundles)
    assert (excinfo.value.bundle, excinfo.value.status) == ("seg_1", 409)


@pytest.mark.parametrize("status", [200, 500])
def test_single_and_batch_paths_agree(tmp_path, free_port, status):
    bundles = write_bundles(tmp_path / "segments", 1)
    select = fixed_strategy(DirectPayloadUpload())
    with UploadStub(free_port, statuses={"seg_0": status}) as stub:
        dispatcher = SegmentUploadDispatcher(stub.url, timeout=5, selector=select)
        (bundle,) = dispatcher.enumerate(bundles)
        batch = dispatcher._dispatch_all(select, [bundle], "events")
        single = dispatcher._dispatch(select, bundle, "events")

    assert [outcome.succeeded for outcome in batch] == [single.succeeded]
    assert batch[0].status == single.status == status


def test_multiple_directories_are_combined(tmp_path, free_port):
    first = write_bundles(tmp_path / "a", 2, prefix="a")
    second = write_bundles(tmp_path / "b", 1, prefix="b")
    with UploadStub(free_port) as stub:
        dispatcher = SegmentUploadDispatcher(stub.url, timeout=5)
        outcomes = dispatcher.upload("events", [first, second])
    assert sorted(outcome.bundle for outcome in outcomes) == ["a_0", "a_1", "b_0"]


def test_explicit_table_type_bypasses_selector(tmp_path, free_port):
    bundles = write_bundles(tmp_path / "segments", 3)
    with UploadStub(free_port) as stub:
        dispatcher = SegmentUploadDispatcher(stub.url, timeout=5, selector=never_select)
        outcomes = dispatcher.upload("events", bundles, "OFFLINE", True)

    assert {outcome.strategy for outcome in outcomes} == {"direct"}
    for request in stub.requests:
        assert request["params"] == {
            "tableName": "events",
            "tableType": "OFFLINE",
            "enableParallelPushProtection": "true",
            "allowRefresh": "true",
        }
        assert "upload_type" not in request["headers"]


def test_empty_directory_is_a_precondition_failure(tmp_path):
    empty = tmp_path / "empty"
    empty.mkdir()
    dispatcher = SegmentUploadDispatcher("http://127.0.0.1:9", selector=never_select)
    with pytest.raises(PreconditionError, match="no segment bundles"):
        dispatcher.upload("events", empty)
    with pytest.raises(PreconditionError, match="does not exist"):
        dispatcher.upload("events", tmp_path / "missing")


def test_transport_errors_surface_after_the_batch(tmp_path, free_port):
    bundles = write_bundles(tmp_path / "segments", 3)
    dispatcher = SegmentUploadDispatcher(f"http://127.0.0.1:{free_port}", timeout=2)
    with pytest.raises(urllib.error.URLError):
        dispatcher.upload("events", bundles)


def test_random_selector_is_independent_per_bundle(tmp_path):
    select = random_strategy_selector(random.Random(1234))
    bundle = SegmentBundle(tmp_path / "seg.tar.gz")
    picks = [select(bundle).name for _ in range(200)]
    assert set(picks) == {"direct", "metadata"}
    assert 60 < picks.count("direct") < 140


def test_seeded_selectors_are_reproducible(tmp_path):
    bundle = SegmentBundle(tmp_path / "seg.tar.gz")
    first = random_strategy_selector(random.Random(99))
    second = random_strategy_selector(random.Random(99))
    assert [first(bundle).name for _ in range(20)] == [second(bundle).name for _ in range(20)]
