# sinks.py
# SPDX-License-Identifier: MIT
"""Batch sinks writing merged view records."""
from __future__ import annotations

import gzip
import json
import os
import threading
import uuid
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path
from typing import Any, TextIO

from ..core.log import get_logger
from ..core.records import Batch

log = get_logger(__name__)

__all__ = ["JSONLSinkOptions", "JSONLBatchSink", "RecordingSink", "part_name"]


def part_name(batch: Batch, suffix: str) -> str:
    """File name of the part holding ``batch``; stable for the same keys."""
    return f"part-{batch.batch_id}{suffix}"


class _StagedPartSink:
    """Shared staging logic: one part file per batch, moved into place.

    Subclasses set ``suffix`` and implement the :meth:`_write_part` hook.

    Each batch is written to a hidden temp file in the staging directory
    and renamed to its final part name, so a partly written part is never
    visible and a redelivered batch replaces its own earlier part.
    """

    suffix = ""

    def __init__(self) -> None:
        self._staging: Path | None = None
        self._closed = False

    @property
    def staging_path(self) -> Path | None:
        return self._staging

    def open(self, staging: Path | None = None) -> None:
        """Create the staging directory that receives part files."""
        if staging is None:
            raise ValueError(f"{type(self).__name__} requires a staging directory")
        self._staging = Path(staging)
        self._staging.mkdir(parents=True, exist_ok=True)
        self._closed = False
        log.debug("%s staging to %s", type(self).__name__, self._staging)

    def write_batch(self, batch: Batch) -> bool:
        """Write ``batch`` as one part file."""
        if self._staging is None or self._closed:
            raise RuntimeError(f"{type(self).__name__} is not open")
        final = self._staging / part_name(batch, self.suffix)
        tmp = self._staging / f".{final.name}.{uuid.uuid4().hex[:8]}.tmp"
        try:
            self._write_part(tmp, batch)
            os.replace(tmp, final)
        except BaseException:
            tmp.unlink(missing_ok=True)
            raise
        return True

    def _write_part(self, path: Path, batch: Batch) -> None:
        """Write every record of ``batch`` to ``path``; subclasses must override."""
        raise NotImplementedError(f"{type(self).__name__}._write_part must be overridden")

    def close(self) -> None:
        self._closed = True

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        """Ensure resources are closed when used as a context manager."""
        self.close()


@dataclass(slots=True)
class JSONLSinkOptions:
    """Options for :class:`JSONLBatchSink`."""

    compress: bool = False


class JSONLBatchSink(_StagedPartSink):
    """Writes each batch to ``part-{batch_id}.jsonl`` (or ``.jsonl.gz``)."""

    def __init__(self, options: JSONLSinkOptions | None = None) -> None:
        super().__init__()
        self.options = options or JSONLSinkOptions()
        self.suffix = ".jsonl.gz" if self.options.compress else ".jsonl"

    def _open_handle(self, path: Path) -> TextIO:
        if self.options.compress:
            return gzip.open(path, "wt", encoding="utf-8")
        return open(path, "w", encoding="utf-8", newline="")

    def _write_part(self, path: Path, batch: Batch) -> None:
        with self._open_handle(path) as fp:
            for payload in batch.payloads():
                fp.write(json.dumps(payload, ensure_ascii=False, separators=(",", ":")) + "\n")


class RecordingSink:
    """Keeps written payloads in memory, keyed by record key.

    Useful for tests and for embedding the engine where the caller
    consumes results directly. Writing the same key twice keeps the last
    payload, matching the idempotency expected of real sinks.

    Args:
        fail_on (set[int] | None): Batch sequence numbers whose write raises.
        reject (set[int] | None): Batch sequence numbers whose write
            returns ``False``.
    """

    def __init__(self, *, fail_on: set[int] | None = None, reject: set[int] | None = None) -> None:
        self._lock = threading.Lock()
        self.fail_on = set(fail_on or ())
        self.reject = set(reject or ())
        self.records: dict[str, Mapping[str, Any]] = {}
        self.batches: list[Batch] = []
        self.staging: Path | None = None
        self.opened = 0
        self.closed = 0

    def open(self, staging: Path | None = None) -> None:
        self.staging = staging
        self.opened += 1

    def write_batch(self, batch: Batch) -> bool:
        if batch.seq in self.fail_on:
            raise OSError(f"write of batch {batch.seq} failed")
        if batch.seq in self.reject:
            return False
        with self._lock:
            self.batches.append(batch)
            for record in batch:
                self.records[str(record.key)] = record.as_dict()
        return True

    def close(self) -> None:
        self.closed += 1

    @property
    def batch_sizes(self) -> list[int]:
        with self._lock:
            return [len(b) for b in sorted(self.batches, key=lambda b: b.seq)]
