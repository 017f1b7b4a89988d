# SPDX-FileCopyrightText: 2025 Blackcat Informatics® Inc.
# SPDX-License-Identifier: MIT

"""Process-wide port allocation for repeated cluster bring-ups.

Every port handed out is remembered for the lifetime of the process, so a
role that is stopped and started again, or two roles started back to back,
never receive the same port even when the first listener is already gone.
"""

from __future__ import annotations

import logging
import socket
import threading
from typing import Callable, Iterable, Optional

from .errors import PortExhaustionError

logger = logging.getLogger(__name__)

DEFAULT_SEARCH_WINDOW = 200
MAX_PORT = 65535


def port_is_unbound(port: int) -> bool:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        try:
            sock.bind(("", port))
        except OSError:
            return False
    return True


class PortAllocator:
    """Hands out unbound ports at or above a preferred value.

    The claim-and-check step runs under a lock, so concurrent callers never
    receive the same port.
    """

    def __init__(
        self,
        window: int = DEFAULT_SEARCH_WINDOW,
        probe: Callable[[int], bool] = port_is_unbound,
    ) -> None:
        if window < 1:
            raise ValueError("search window must be positive")
        self.window = window
        self._probe = probe
        self._claimed: set[int] = set()
        self._lock = threading.Lock()

    def find_open_port(self, preferred: int) -> int:
        if not 0 < preferred <= MAX_PORT:
            raise ValueError(f"invalid preferred port {preferred}")
        upper = min(preferred + self.window, MAX_PORT + 1)
        with self._lock:
            for candidate in range(preferred, upper):
                if candidate in self._claimed:
                    continue
                if not self._probe(candidate):
                    continue
                self._claimed.add(candidate)
                if candidate != preferred:
                    logger.debug("port %s busy, allocated %s", preferred, candidate)
                return candidate
        raise PortExhaustionError(preferred, self.window)

    def claimed(self) -> frozenset[int]:
        with self._lock:
            return frozenset(self._claimed)

    def reserve(self, ports: Iterable[int]) -> None:
        """Mark ports as taken without probing them (fixed-port listeners)."""
        with self._lock:
            self._claimed.update(ports)

    def with_window(self, window: int) -> "PortAllocator":
        """Return an allocator that searches ``window`` ports but shares this one's claims."""
        if window == self.window:
            return self
        view = PortAllocator(window, self._probe)
        view._claimed = self._claimed
        view._lock = self._lock
        return view


_default_allocator = PortAllocator()


def default_allocator(window: Optional[int] = None) -> PortAllocator:
    if window is None:
        return _default_allocator
    return _default_allocator.with_window(window)


def find_open_port(preferred: int) -> int:
    return _default_allocator.find_open_port(preferred)
