"""Error types for ccmax.

The analysis core has exactly one validation failure, ``InvalidTimeFormat``.
Everything else in the core signals "no data" with ``None`` or zero-valued
results. Storage and sync raise their own types so the CLI can report them.
"""

from __future__ import annotations


class CcmaxError(Exception):
    """Base class for all ccmax errors."""


class InvalidTimeFormat(CcmaxError, ValueError):
    """Raised when a clock-time string or minute offset is malformed.

    Attributes:
        value: The offending input.
        reason: Short description of what was wrong with it.
    """

    def __init__(self, value: object, reason: str):
        self.value = value
        self.reason = reason
        super().__init__(f"Invalid time {value!r}: {reason}")


class StorageError(CcmaxError):
    """Raised when the usage database is unavailable or misused."""


class SyncError(CcmaxError):
    """Raised when the sync document cannot be read or written."""
