# SPDX-FileCopyrightText: 2025 Blackcat Informatics® Inc.
# SPDX-License-Identifier: MIT

import json
import subprocess
import sys
from pathlib import Path

import pytest

from cluster_harness.cli import main
from cluster_harness.cluster import ClusterHarness
from cluster_harness.segments import write_segment_bundle

ROOT = Path(__file__).resolve().parents[1]


def test_module_help():
    result = subprocess.run(
        [sys.executable, "-m", "cluster_harness", "--help"],
        cwd=ROOT,
        capture_output=True,
        text=True,
    )
    assert result.returncode == 0
    # argparse prints the program name in the usage line
    assert "cluster-harness" in result.stdout


def test_upload_missing_directory_reports_failure(tmp_path, capsys, monkeypatch):
    monkeypatch.delenv("ENV_FILE", raising=False)
    code = main(
        [
            "upload",
            "--controller",
            "http://127.0.0.1:9",
            "--table",
            "events",
            str(tmp_path / "missing"),
        ]
    )
    assert code == 1
    assert "[upload]" in capsys.readouterr().err


@pytest.mark.integration
def test_upload_and_query_against_running_cluster(settings, allocator, tmp_path, capsys, monkeypatch):
    monkeypatch.delenv("ENV_FILE", raising=False)
    segments = tmp_path / "segments"
    write_segment_bundle(segments, "events", "events_0", [{"id": n} for n in range(4)])

    with ClusterHarness("CliCluster", settings=settings, allocator=allocator) as harness:
        harness.start_controller()
        harness.start_storage(1)
        harness.start_routers(1)

        assert main(["upload", "--controller", harness.controller_url, "--table", "events", str(segments)]) == 0
        assert "uploaded 1 segment(s) to events" in capsys.readouterr().out

        assert main(["query", "--router", harness.router_base_url, "SELECT COUNT(*) FROM events"]) == 0
        response = json.loads(capsys.readouterr().out)

    assert response["resultTable"]["rows"] == [[4]]
