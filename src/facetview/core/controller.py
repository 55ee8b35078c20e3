# controller.py
# SPDX-License-Identifier: MIT
"""Sequence one view run: load, join, write, publish.

The controller owns the run-scoped worker pool and the run state. Every
exit path, success, a taxonomy error, an unexpected exception or an
interrupt, shuts the pool down, releases any publish lock and flushes the
run counters exactly once before the outcome is reported.
"""

from __future__ import annotations

import time
import uuid
from collections.abc import Callable, Sequence
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any

from .concurrency import ExecutorConfig, WorkerPool, resolve_executor_config
from .config import PipelineConfig
from .convert import JoinEngine, RecordConverter, check_dropped_rate
from .errors import FacetViewError, RunError, WriteError
from .interfaces import BatchSink, DatasetStore, MetricsSink
from .loader import DatasetLoader, LoadedFacets
from .log import get_logger, run_context
from .metrics import RunMetrics
from .publish import PublishCoordinator
from .records import FacetType
from .state import RunState, check_transition
from .writer import BatchWriter, WriteResult

log = get_logger(__name__)

__all__ = ["RunController", "RunReport", "new_run_id"]


def new_run_id() -> str:
    return uuid.uuid4().hex[:12]


@dataclass
class RunReport:
    """Outcome of a completed run.

    Attributes:
        run_id (str): Identifier of the run.
        dataset_id (str): Dataset that was processed.
        attempt (int): Attempt that was processed.
        state (str): Final state, ``"done"`` on success.
        destination (str): Visible location that was published.
        counts (dict[str, int]): Loaded/joined/dropped/written totals.
        batches (int): Batches acknowledged by the sink.
        degraded (list[str]): Optional facets that failed to load.
        duration_s (float): Wall time of the run.
    """

    run_id: str
    dataset_id: str
    attempt: int
    state: str
    destination: str
    counts: dict[str, int] = field(default_factory=dict)
    batches: int = 0
    degraded: list[str] = field(default_factory=list)
    duration_s: float = 0.0

    def as_dict(self) -> dict[str, Any]:
        return asdict(self)


ConverterFactory = Callable[[LoadedFacets], RecordConverter]


class RunController:
    """Drives one run through :class:`RunState`.

    Args:
        store (DatasetStore): Source of facet datasets.
        sink (BatchSink): Receives merged batches; opened on ``staging``.
        coordinator (PublishCoordinator): Performs the locked swap.
        facets (Sequence[FacetType]): Facets to load, including the
            primary and metadata facets.
        dataset_id (str): Dataset to process.
        attempt (int): Attempt to process.
        staging (Path): Run-private location the sink writes to.
        destination (Path): Visible location replaced on publish.
        pipeline (PipelineConfig | None): Batching and concurrency.
        metrics (RunMetrics | None): Counters for the run.
        metrics_sink (MetricsSink | None): Receives the counters once.
        converter_factory (ConverterFactory | None): Builds the per-key
            converter from the loaded facets; defaults to
            :class:`~facetview.core.convert.ViewRecordConverter`.
        run_id (str | None): Identifier stamped on log lines.
    """

    def __init__(
        self,
        *,
        store: DatasetStore,
        sink: BatchSink,
        coordinator: PublishCoordinator,
        facets: Sequence[FacetType],
        dataset_id: str,
        attempt: int,
        staging: Path,
        destination: Path,
        pipeline: PipelineConfig | None = None,
        metrics: RunMetrics | None = None,
        metrics_sink: MetricsSink | None = None,
        converter_factory: ConverterFactory | None = None,
        run_id: str | None = None,
    ) -> None:
        self.store = store
        self.sink = sink
        self.coordinator = coordinator
        self.facets = tuple(facets)
        self.dataset_id = dataset_id
        self.attempt = int(attempt)
        self.staging = Path(staging)
        self.destination = Path(destination)
        self.pipeline = pipeline or PipelineConfig()
        self.metrics = metrics or RunMetrics()
        self.metrics_sink = metrics_sink
        self.converter_factory = converter_factory
        self.run_id = run_id or new_run_id()
        self._state = RunState.INIT
        self._failed_phase: str | None = None
        self.history: list[RunState] = [RunState.INIT]

    @property
    def state(self) -> RunState:
        return self._state

    def _transition(self, target: RunState) -> None:
        check_transition(self._state, target)
        log.debug("Run state %s -> %s", self._state, target)
        self._state = target
        self.history.append(target)

    def executor_config(self) -> ExecutorConfig:
        return resolve_executor_config(self.pipeline)

    def run(self) -> RunReport:
        """Execute the run and report its outcome.

        Returns:
            RunReport: Summary of a successful run.

        Raises:
            FacetViewError: The error that stopped the run, annotated with
                the failed phase and the counts collected so far.
            RunError: Wraps any exception outside the error taxonomy.
        """
        if self._state is not RunState.INIT:
            raise RuntimeError("RunController.run() may only be called once")
        started = time.monotonic()
        with run_context(datasetKey=self.dataset_id, attempt=self.attempt, run=self.run_id):
            pool = WorkerPool(self.executor_config(), name=f"facetview-{self.run_id}")
            aborted = True
            try:
                write_result, loaded = self._run_phases(pool)
                aborted = False
            except FacetViewError as exc:
                self._fail()
                exc.annotate(self._failed_phase, self.metrics.summary())
                log.error("Run failed: %s", exc)
                raise
            except Exception as exc:
                self._fail()
                err = RunError(f"Unexpected {type(exc).__name__}: {exc}", phase=self._failed_phase)
                err.annotate(self._failed_phase, self.metrics.summary())
                log.exception("Run failed: %s", err)
                raise err from exc
            except BaseException as exc:
                self._fail()
                log.warning("Run interrupted during %s", self._failed_phase)
                raise
            finally:
                pool.shutdown(cancel=aborted)
                self._flush_metrics()

        report = RunReport(
            run_id=self.run_id,
            dataset_id=self.dataset_id,
            attempt=self.attempt,
            state=str(self._state),
            destination=str(self.destination),
            counts=self.metrics.summary(),
            batches=write_result.batches,
            degraded=list(loaded.degraded),
            duration_s=round(time.monotonic() - started, 3),
        )
        log.info("Run complete: %s", report.counts)
        return report

    def _run_phases(self, pool: WorkerPool) -> tuple[WriteResult, LoadedFacets]:
        pc = self.pipeline

        self._transition(RunState.LOADING)
        with run_context(step="load"):
            loader = DatasetLoader(self.store, metrics=self.metrics)
            loaded = loader.load_all(self.facets, self.dataset_id, self.attempt, pool)

        self._transition(RunState.JOINING)
        converter = self.converter_factory(loaded) if self.converter_factory else None
        engine = JoinEngine(loaded, converter, metrics=self.metrics)

        self._transition(RunState.WRITING)
        with run_context(step="write"):
            writer = BatchWriter(
                self.sink,
                pc.batch_max_size,
                sync_mode=pc.sync_mode,
                pool=None if pc.sync_mode else pool,
                window=pc.submit_window,
                metrics=self.metrics,
            )
            result = self._write(writer, engine)
            check_dropped_rate(self.metrics, pc.max_dropped_rate)

        with run_context(step="publish"):
            staged = getattr(self.sink, "staging_path", None) or self.staging
            self.coordinator.publish(Path(staged), self.destination, on_state=self._transition)
        self._transition(RunState.DONE)
        return result, loaded

    def _write(self, writer: BatchWriter, engine: JoinEngine) -> WriteResult:
        self.sink.open(self.staging)
        try:
            result = writer.write(engine.iter_records())
        except BaseException:
            self._close_sink(quiet=True)
            raise
        self._close_sink()
        return result

    def _close_sink(self, *, quiet: bool = False) -> None:
        try:
            self.sink.close()
        except Exception as exc:
            if not quiet:
                raise WriteError(f"Closing sink failed: {exc}") from exc
            log.warning("Closing sink after failure raised: %s", exc)

    def _fail(self) -> None:
        self._failed_phase = str(self._state)
        if not self._state.terminal:
            self._transition(RunState.FAILED)

    def _flush_metrics(self) -> None:
        if self.metrics_sink is None:
            return
        try:
            self.metrics_sink.flush(self.metrics.as_dict())
        except Exception as exc:  # noqa: BLE001
            log.warning("Flushing run counters failed: %s", exc)
