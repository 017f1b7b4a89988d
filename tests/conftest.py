# SPDX-FileCopyrightText: 2025 Blackcat Informatics® Inc.
# SPDX-License-Identifier: MIT

import socket

import pytest

from cluster_harness.config import HarnessSettings
from cluster_harness.ports import PortAllocator


def find_free_port() -> int:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind(("127.0.0.1", 0))
        return sock.getsockname()[1]


@pytest.fixture
def settings(tmp_path):
    return HarnessSettings(base_dir=tmp_path / "cluster")


@pytest.fixture
def allocator():
    return PortAllocator()


@pytest.fixture
def free_port():
    return find_free_port()
