# interfaces.py
# SPDX-License-Identifier: MIT
"""Collaborator protocols consumed by the view engine.

The engine owns joining, batching, and publish coordination; reading facet
datasets, writing batches, locking, swapping, and metrics emission are all
delegated to objects that satisfy the protocols below.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Protocol, runtime_checkable

from .records import Batch, FacetRecord, RecordKey

__all__ = [
    "DatasetStore",
    "BatchSink",
    "LockHandle",
    "LockService",
    "Publisher",
    "MetricsSink",
]


@runtime_checkable
class DatasetStore(Protocol):
    """Read access to interpreted facet datasets."""

    def read(self, facet: str, dataset_id: str, attempt: int) -> Iterable[tuple[RecordKey, FacetRecord]]:
        """Yield ``(key, record)`` pairs for one facet of one dataset attempt.

        Returns an empty iterable when the facet is legitimately absent and
        raises (typically ``OSError``) when the data cannot be accessed.
        """
        ...


@runtime_checkable
class BatchSink(Protocol):
    """Destination that receives merged records one batch at a time.

    Implementations must be safe to call from several worker threads at
    once and idempotent per record key, since a retried run may deliver a
    batch more than once.
    """

    def open(self, staging: Path | None = None) -> None:
        """Prepare the sink; ``staging`` is where publishable output goes."""
        ...

    def write_batch(self, batch: Batch) -> bool | None:
        """Write one batch. ``False`` or an exception marks a failed dispatch."""
        ...

    def close(self) -> None:
        """Flush and release resources."""
        ...


@dataclass(slots=True)
class LockHandle:
    """Token returned by :meth:`LockService.acquire`.

    Attributes:
        name (str): Normalized path prefix the lock guards.
        token (str): Unique id for this acquisition.
        owner (int): Thread id that acquired the lock.
        acquired_at (float): ``time.monotonic()`` at acquisition.
        released (bool): Set once the handle has been released.
    """

    name: str
    token: str
    owner: int
    acquired_at: float
    released: bool = False
    extra: dict[str, Any] = field(default_factory=dict)


class LockService(Protocol):
    """Exclusive, path-scoped locks used to serialize publishes."""

    def acquire(self, path_prefix: str, timeout: float | None = None) -> LockHandle:
        """Block until the lock for ``path_prefix`` is held.

        Raises:
            LockError: If ``timeout`` seconds elapse first.
        """
        ...

    def release(self, handle: LockHandle) -> None:
        """Release a handle obtained from :meth:`acquire`."""
        ...


class Publisher(Protocol):
    """Atomically replaces visible output with staged output."""

    def swap(self, staged: Path, destination: Path) -> None:
        """Make ``staged`` visible at ``destination`` in one atomic step.

        On failure the previous content at ``destination`` must be intact.
        """
        ...


class MetricsSink(Protocol):
    """Receives the run counters once, when the run completes."""

    def flush(self, counters: Mapping[str, int]) -> None:
        ...
