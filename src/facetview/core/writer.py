# writer.py
# SPDX-License-Identifier: MIT
"""Batch merged records and dispatch them to a sink.

Records are grouped by a writer-local :class:`BatchBuffer`; each full buffer
becomes one immutable :class:`Batch`. In concurrent mode batches are
dispatched on the run's worker pool with a bounded number in flight, so
memory stays proportional to ``batch_max_size * (window + 1)`` however
many records the join produces.
"""

from __future__ import annotations

from collections.abc import Iterable, Iterator
from dataclasses import dataclass

from .concurrency import WorkerPool
from .errors import WriteError
from .interfaces import BatchSink
from .log import get_logger
from .metrics import RunMetrics
from .records import Batch, MergedRecord

log = get_logger(__name__)

__all__ = ["BatchBuffer", "BatchWriter", "WriteResult"]


class BatchBuffer:
    """Accumulates records and cuts them into numbered batches.

    Only the owning writer touches the buffer, so it needs no locking.
    """

    def __init__(self, max_size: int) -> None:
        if max_size <= 0:
            raise ValueError("max_size must be positive")
        self.max_size = int(max_size)
        self._items: list[MergedRecord] = []
        self._next_seq = 0

    def __len__(self) -> int:
        return len(self._items)

    def add(self, record: MergedRecord) -> Batch | None:
        """Add a record; return a full batch when the buffer fills up."""
        self._items.append(record)
        if len(self._items) >= self.max_size:
            return self._cut()
        return None

    def flush(self) -> Batch | None:
        """Return the remaining partial batch, or None if nothing is buffered."""
        if not self._items:
            return None
        return self._cut()

    def _cut(self) -> Batch:
        batch = Batch(seq=self._next_seq, records=tuple(self._items))
        self._next_seq += 1
        self._items = []
        return batch


@dataclass(frozen=True)
class WriteResult:
    """Totals acknowledged by the sink once every dispatch has finished."""

    batches: int = 0
    records: int = 0


class BatchWriter:
    """Dispatches batches of merged records to a :class:`BatchSink`.

    Args:
        sink (BatchSink): Opened sink receiving every batch.
        batch_max_size (int): Upper bound on records per batch.
        sync_mode (bool): Dispatch on the calling thread instead of the pool.
        pool (WorkerPool | None): Run-scoped pool; required unless
            ``sync_mode`` is set.
        window (int | None): Maximum batches in flight in concurrent mode;
            defaults to the pool's window.
        metrics (RunMetrics | None): Receives ``written`` and ``batches``.
    """

    def __init__(
        self,
        sink: BatchSink,
        batch_max_size: int,
        *,
        sync_mode: bool = False,
        pool: WorkerPool | None = None,
        window: int | None = None,
        metrics: RunMetrics | None = None,
    ) -> None:
        if not sync_mode and pool is None:
            raise ValueError("BatchWriter needs a worker pool unless sync_mode is set")
        self.sink = sink
        self.batch_max_size = int(batch_max_size)
        self.sync_mode = sync_mode
        self.pool = pool
        self.window = window
        self.metrics = metrics or RunMetrics()
        self._batches = 0
        self._records = 0

    def iter_batches(self, records: Iterable[MergedRecord]) -> Iterator[Batch]:
        """Group ``records`` into batches; never yields an empty batch."""
        buffer = BatchBuffer(self.batch_max_size)
        for record in records:
            batch = buffer.add(record)
            if batch is not None:
                yield batch
        tail = buffer.flush()
        if tail is not None:
            yield tail

    def write(self, records: Iterable[MergedRecord]) -> WriteResult:
        """Write every record and wait for every dispatch to finish.

        Returns:
            WriteResult: Batches and records acknowledged by the sink.

        Raises:
            WriteError: On the first failed dispatch. Later batches are not
                submitted; batches already written stay written.
        """
        self._batches = 0
        self._records = 0
        batches = self.iter_batches(records)
        if self.sync_mode:
            for batch in batches:
                try:
                    written = self._dispatch(batch)
                except WriteError as exc:
                    self._on_failed(batch, exc)
                    raise
                self._on_written(written)
        else:
            assert self.pool is not None
            self.pool.map_unordered(
                batches,
                self._dispatch,
                self._on_written,
                fail_fast=True,
                on_error=self._on_failed,
                window=self.window,
            )
        log.info("Wrote %d records in %d batches", self._records, self._batches)
        return WriteResult(batches=self._batches, records=self._records)

    def _dispatch(self, batch: Batch) -> Batch:
        try:
            ok = self.sink.write_batch(batch)
        except WriteError:
            raise
        except Exception as exc:
            raise WriteError(f"Batch {batch.seq} ({len(batch)} records) failed: {exc}", batch_seq=batch.seq) from exc
        if ok is False:
            raise WriteError(f"Sink rejected batch {batch.seq} ({len(batch)} records)", batch_seq=batch.seq)
        log.debug("Batch %d written (%d records, id=%s)", batch.seq, len(batch), batch.batch_id)
        return batch

    def _on_written(self, batch: Batch) -> None:
        self._batches += 1
        self._records += len(batch)
        self.metrics.inc("batches")
        self.metrics.inc("written", len(batch))

    def _on_failed(self, batch: Batch, exc: BaseException) -> None:
        log.error("Batch %d failed; stopping further dispatches: %s", batch.seq, exc)
