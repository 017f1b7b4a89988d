# SPDX-FileCopyrightText: 2025 Blackcat Informatics® Inc.
# SPDX-License-Identifier: MIT

"""Exception hierarchy shared by the harness modules."""

from __future__ import annotations


class HarnessError(RuntimeError):
    """Base class for every failure raised by the harness."""


class PreconditionError(HarnessError):
    """Raised when the harness is driven in an order it does not support."""


class ConfigurationError(HarnessError):
    """Raised when settings or role configuration cannot be assembled."""


class PortExhaustionError(HarnessError):
    """Raised when no open port exists inside the search window."""

    def __init__(self, preferred: int, window: int) -> None:
        super().__init__(
            f"no open port found in [{preferred}, {preferred + window})"
        )
        self.preferred = preferred
        self.window = window


class SingletonViolationError(HarnessError):
    """Raised when a second instance of a process-global role is requested."""


class UploadFailedError(HarnessError):
    """Raised when a segment bundle upload does not return the success status."""

    def __init__(self, bundle: str, status: int | None, detail: str = "") -> None:
        message = f"upload of {bundle} failed with status {status}"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)
        self.bundle = bundle
        self.status = status
        self.detail = detail


class QueryError(HarnessError):
    """Raised when the router cannot be queried or returns invalid JSON."""


class RecordDecodeError(HarnessError):
    """Raised when a streamed record cannot be decoded."""
