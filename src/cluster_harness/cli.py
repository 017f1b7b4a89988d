# SPDX-FileCopyrightText: 2025 Blackcat Informatics® Inc.
# SPDX-License-Identifier: MIT

"""Command-line entry point: stand up an in-process cluster, upload, query."""

from __future__ import annotations

import argparse
import json
import logging
import sys
import time
from pathlib import Path

from .cluster import ClusterHarness
from .config import HarnessSettings
from .errors import HarnessError
from .query import QueryClient
from .upload import SegmentUploadDispatcher, summarize


def parse_args(argv: list[str]) -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog="cluster-harness", description=__doc__)
    parser.add_argument("--log-level", default="INFO", help="Logging level (default: INFO)")
    sub = parser.add_subparsers(dest="command", required=True)

    up = sub.add_parser("up", help="Run an in-process cluster until interrupted")
    up.add_argument("--cluster-name", default="ClusterHarness")
    up.add_argument("--routers", type=int, default=1)
    up.add_argument("--storage", type=int, default=1)
    up.add_argument("--task-runner", action="store_true", help="Also start the task runner")

    upload = sub.add_parser("upload", help="Upload segment bundles from directories")
    upload.add_argument("--controller", required=True, help="Controller base URL")
    upload.add_argument("--table", required=True)
    upload.add_argument("--table-type", help="Send inline with this table type (e.g. OFFLINE)")
    upload.add_argument("--parallel-push-protection", action="store_true")
    upload.add_argument("directories", nargs="+", type=Path)

    query = sub.add_parser("query", help="Post a SQL query to a router")
    query.add_argument("--router", required=True, help="Router base URL")
    query.add_argument("sql")
    return parser.parse_args(argv)


def run_up(args: argparse.Namespace, settings: HarnessSettings) -> int:
    harness = ClusterHarness(args.cluster_name, settings=settings)
    try:
        harness.start_controller()
        harness.start_storage(args.storage)
        harness.start_routers(args.routers)
        if args.task_runner:
            harness.start_task_runner()
        print(f"controller: {harness.controller_url}")
        print(f"router:     {harness.router_base_url}")
        while True:
            time.sleep(1)
    except KeyboardInterrupt:
        pass
    finally:
        harness.stop()
    return 0


def run_upload(args: argparse.Namespace, settings: HarnessSettings) -> int:
    dispatcher = SegmentUploadDispatcher(args.controller, timeout=settings.socket_timeout)
    outcomes = dispatcher.upload(
        args.table, args.directories, args.table_type, args.parallel_push_protection
    )
    counts = ", ".join(f"{name}={count}" for name, count in sorted(summarize(outcomes).items()))
    print(f"uploaded {len(outcomes)} segment(s) to {args.table} ({counts})")
    return 0


def run_query(args: argparse.Namespace, settings: HarnessSettings) -> int:
    response = QueryClient(args.router, timeout=settings.socket_timeout).post_query(args.sql)
    print(json.dumps(response, indent=2, sort_keys=True))
    return 1 if response.get("exceptions") else 0


COMMANDS = {"up": run_up, "upload": run_upload, "query": run_query}


def main(argv: list[str]) -> int:
    args = parse_args(argv)
    logging.basicConfig(
        level=args.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    try:
        settings = HarnessSettings.from_env()
        return COMMANDS[args.command](args, settings)
    except HarnessError as exc:
        print(f"[{args.command}] {exc}", file=sys.stderr)
        return 1


def run() -> None:
    sys.exit(main(sys.argv[1:]))


if __name__ == "__main__":  # pragma: no cover - exercised via callers
    run()
