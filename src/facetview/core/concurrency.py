# concurrency.py
# SPDX-License-Identifier: MIT
"""Worker pool, task groups, and bounded submission for view runs.

A run owns exactly one :class:`WorkerPool`. Facet loads use it through a
:class:`TaskGroup` (spawn N tasks, join all) and batch dispatches use it
through :meth:`WorkerPool.map_unordered`, which keeps at most ``window``
tasks in flight. The two uses never overlap in time, and the pool is shut
down when the run ends, whichever way it ends.
"""
from __future__ import annotations

import contextvars
import os
import threading
from collections.abc import Callable, Iterable
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass
from typing import Any, Generic, TypeVar

from .config import PipelineConfig
from .log import get_logger

log = get_logger(__name__)

T = TypeVar("T")
R = TypeVar("R")


@dataclass(frozen=True)
class ExecutorConfig:
    """Immutable executor settings used to construct worker pools.

    Attributes:
        max_workers (int): Maximum number of worker threads.
        window (int): Maximum number of in-flight tasks allowed
            before backpressure is applied.
    """
    max_workers: int
    window: int


def resolve_executor_config(pc: PipelineConfig) -> ExecutorConfig:
    """Build pool settings from the pipeline section of the config.

    ``concurrency = 0`` means one worker per available CPU; the
    submission window defaults to twice the worker count.
    """
    max_workers = pc.concurrency or (os.cpu_count() or 1)
    max_workers = max(1, int(max_workers))
    window = pc.submit_window or (max_workers * 2)
    return ExecutorConfig(max_workers=max_workers, window=max(int(window), 1))


class PoolClosedError(RuntimeError):
    """Raised when work is submitted to a pool that has been shut down."""


class WorkerPool:
    """Run-scoped thread pool shared by facet loads and batch dispatches.

    Submitted callables run inside a copy of the submitter's context, so
    log lines emitted by workers carry the run context bound by the
    controller.

    Attributes:
        cfg (ExecutorConfig): Pool sizing.
    """

    def __init__(self, cfg: ExecutorConfig, *, name: str = "facetview") -> None:
        if cfg.max_workers < 1:
            raise ValueError("WorkerPool requires max_workers >= 1")
        self.cfg = cfg
        self._executor = ThreadPoolExecutor(max_workers=cfg.max_workers, thread_name_prefix=name)
        self._lock = threading.Lock()
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def submit(self, fn: Callable[..., R], *args: Any, **kwargs: Any) -> Future[R]:
        """Schedule ``fn(*args, **kwargs)`` and return its future."""
        with self._lock:
            if self._closed:
                raise PoolClosedError("WorkerPool has been shut down")
            ctx = contextvars.copy_context()
            return self._executor.submit(ctx.run, fn, *args, **kwargs)

    def task_group(self) -> TaskGroup:
        """Return a new :class:`TaskGroup` bound to this pool."""
        return TaskGroup(self)

    def map_unordered(
        self,
        items: Iterable[T],
        fn: Callable[[T], R],
        on_result: Callable[[R], None],
        *,
        fail_fast: bool = False,
        on_error: Callable[[T, BaseException], None] | None = None,
        window: int | None = None,
    ) -> None:
        """Submit items to workers and consume results as they complete.

        Items are pulled from ``items`` lazily and submitted up to the
        submission window; completed results are passed to ``on_result``
        in completion order on the calling thread. With ``fail_fast`` the
        first worker error stops submission, cancels tasks that have not
        started, waits for running ones, and is re-raised.

        Args:
            items (Iterable[T]): Items to process; consumed lazily.
            fn (Callable[[T], R]): Worker function invoked for each item.
            on_result (Callable[[R], None]): Callback invoked for each
                successful result.
            fail_fast (bool): Whether to re-raise the first worker error.
            on_error (Callable[[T, BaseException], None] | None): Optional
                callback invoked with the failing item and its exception.
            window (int | None): In-flight limit; defaults to ``cfg.window``.

        Raises:
            Exception: The first worker error when ``fail_fast`` is True.
        """
        limit = max(window or self.cfg.window, 1)
        pending: dict[Future[R], T] = {}

        def _drain(block: bool) -> None:
            if not pending:
                return
            done, _ = wait(
                list(pending),
                timeout=None if block else 0.0,
                return_when=FIRST_COMPLETED,
            )
            first_error: Exception | None = None
            # Every completed future is reported, even when one of them failed.
            for fut in done:
                item = pending.pop(fut)
                try:
                    result = fut.result()
                except Exception as exc:  # noqa: BLE001
                    if on_error:
                        on_error(item, exc)
                    if first_error is None:
                        first_error = exc
                    continue
                on_result(result)
            if fail_fast and first_error is not None:
                raise first_error

        try:
            for item in items:
                fut = self.submit(fn, item)
                pending[fut] = item
                if len(pending) >= limit:
                    _drain(block=True)
                else:
                    _drain(block=False)
            while pending:
                _drain(block=True)
        except BaseException:
            self._abandon(pending, on_result)
            raise

    def _abandon(self, pending: dict[Future[Any], Any], on_result: Callable[[Any], None]) -> None:
        """Cancel queued futures and wait for the ones already running.

        Results of tasks that were already running and finish successfully
        still reach ``on_result``; their errors are dropped in favour of the
        one being raised.
        """
        for fut in pending:
            fut.cancel()
        running = [fut for fut in pending if not fut.cancelled()]
        if running:
            wait(running)
        pending.clear()
        for fut in running:
            if fut.exception() is None:
                try:
                    on_result(fut.result())
                except Exception as exc:  # noqa: BLE001
                    log.warning("Result callback failed while abandoning work: %s", exc)

    def shutdown(self, *, cancel: bool = False) -> None:
        """Stop accepting work and release worker threads.

        Args:
            cancel (bool): Cancel queued tasks instead of running them.
        """
        with self._lock:
            if self._closed:
                return
            self._closed = True
        log.debug("Shutting down worker pool (cancel=%s)", cancel)
        self._executor.shutdown(wait=True, cancel_futures=cancel)

    def __enter__(self) -> WorkerPool:
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.shutdown(cancel=exc_type is not None)


@dataclass
class TaskOutcome(Generic[R]):
    """Result or error of one task in a :class:`TaskGroup`."""

    name: str
    result: R | None = None
    error: BaseException | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


class TaskGroup:
    """Spawn named tasks on a pool and join on all of them.

    ``join`` is a barrier: it returns only after every spawned task has
    finished, successfully or not, and reports each outcome by name.
    """

    def __init__(self, pool: WorkerPool) -> None:
        self._pool = pool
        self._futures: dict[str, Future[Any]] = {}

    def spawn(self, name: str, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> None:
        """Submit ``fn`` under a unique task name."""
        if name in self._futures:
            raise ValueError(f"Task {name!r} already spawned in this group")
        self._futures[name] = self._pool.submit(fn, *args, **kwargs)

    def cancel(self) -> None:
        """Cancel tasks that have not started yet."""
        for fut in self._futures.values():
            fut.cancel()

    def join(self) -> dict[str, TaskOutcome[Any]]:
        """Wait for every task and return outcomes keyed by task name."""
        try:
            wait(list(self._futures.values()))
        except BaseException:
            self.cancel()
            raise
        outcomes: dict[str, TaskOutcome[Any]] = {}
        for name, fut in self._futures.items():
            if fut.cancelled():
                outcomes[name] = TaskOutcome(name=name, error=RuntimeError(f"task {name!r} was cancelled"))
                continue
            exc = fut.exception()
            if exc is not None:
                outcomes[name] = TaskOutcome(name=name, error=exc)
            else:
                outcomes[name] = TaskOutcome(name=name, result=fut.result())
        return outcomes

    def __len__(self) -> int:
        return len(self._futures)


__all__ = [
    "ExecutorConfig",
    "PoolClosedError",
    "TaskGroup",
    "TaskOutcome",
    "WorkerPool",
    "resolve_executor_config",
]
