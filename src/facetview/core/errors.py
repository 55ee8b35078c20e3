# errors.py
# SPDX-License-Identifier: MIT
"""Error taxonomy for view runs.

Every error raised by the engine derives from :class:`FacetViewError`. The
run controller annotates the error it surfaces with the phase that failed
and the record counts collected so far before re-raising it, so callers get
one exception that explains where the run stopped.
"""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any

__all__ = [
    "FacetViewError",
    "ConfigurationError",
    "LoadError",
    "ConversionError",
    "WriteError",
    "LockError",
    "PublishError",
    "RunError",
]


class FacetViewError(RuntimeError):
    """Base class for view pipeline failures.

    Attributes:
        phase (str | None): Run phase that failed (``"loading"``,
            ``"writing"``, ...). Set by the controller.
        counts (dict[str, int]): Loaded/joined/dropped/written counters at
            the time of failure. Set by the controller.
    """

    def __init__(self, message: str, *, phase: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.phase = phase
        self.counts: dict[str, int] = {}

    def annotate(self, phase: str, counts: Mapping[str, Any]) -> None:
        """Attach run-level failure context, keeping an explicit phase."""
        if self.phase is None:
            self.phase = phase
        self.counts = {str(k): int(v) for k, v in counts.items()}

    def __str__(self) -> str:
        parts = [self.message]
        if self.phase:
            parts.append(f"phase={self.phase}")
        if self.counts:
            parts.append(" ".join(f"{k}={v}" for k, v in sorted(self.counts.items())))
        if len(parts) == 1:
            return self.message
        return f"{parts[0]} ({', '.join(parts[1:])})"


class ConfigurationError(FacetViewError):
    """Mandatory dataset or metadata missing/ambiguous, or invalid settings."""


class LoadError(FacetViewError):
    """I/O failure while loading a facet dataset.

    Attributes:
        facet (str | None): Facet whose load failed.
        duplicate_key (str | None): Key the store yielded twice, when that
            is why the load failed.
    """

    def __init__(
        self,
        message: str,
        *,
        facet: str | None = None,
        duplicate_key: str | None = None,
        phase: str | None = None,
    ) -> None:
        super().__init__(message, phase=phase)
        self.facet = facet
        self.duplicate_key = duplicate_key


class ConversionError(FacetViewError):
    """Malformed per-key combination of facets.

    Attributes:
        key (str | None): Record key that could not be converted.
    """

    def __init__(self, message: str, *, key: str | None = None, phase: str | None = None) -> None:
        super().__init__(message, phase=phase)
        self.key = key


class WriteError(FacetViewError):
    """A batch dispatch failed; batches sent earlier are not rolled back.

    Attributes:
        batch_seq (int | None): Sequence number of the failed batch.
    """

    def __init__(self, message: str, *, batch_seq: int | None = None, phase: str | None = None) -> None:
        super().__init__(message, phase=phase)
        self.batch_seq = batch_seq


class LockError(FacetViewError):
    """The publish lock could not be acquired or was released incorrectly."""


class PublishError(FacetViewError):
    """The atomic swap failed; the visible destination is unchanged."""


class RunError(FacetViewError):
    """Unexpected failure outside the error taxonomy, wrapped at run level."""
