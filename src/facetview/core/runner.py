# runner.py
# SPDX-License-Identifier: MIT
"""Orchestration helpers that bridge configuration, factories, and the controller."""
from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Any

from .concurrency import WorkerPool, resolve_executor_config
from .config import ViewConfig
from .controller import RunController, new_run_id
from .convert import JoinEngine
from .factories import build_metrics_sink, build_publish_coordinator, build_sink, build_store
from .interfaces import BatchSink, DatasetStore
from .loader import DatasetLoader
from .log import get_logger, run_context
from .metrics import RunMetrics
from .paths import interpreted_path, metrics_path, staging_path, temp_dir, view_destination
from .resources import RunResources

log = get_logger(__name__)

__all__ = ["RunPaths", "resolve_paths", "run_view", "preview_view"]


@dataclass(frozen=True)
class RunPaths:
    """Filesystem locations used by one run."""

    inputs: dict[str, Path]
    staging: Path
    destination: Path
    metrics: Path | None

    def as_dict(self) -> dict[str, Any]:
        return {
            "inputs": {name: str(p) for name, p in self.inputs.items()},
            "staging": str(self.staging),
            "destination": str(self.destination),
            "metrics": str(self.metrics) if self.metrics else None,
        }


def resolve_paths(config: ViewConfig, run_id: str) -> RunPaths:
    ds = config.dataset
    inputs = {
        ft.name: interpreted_path(ds.input_path, ds.dataset_id, ds.attempt, ft.name)
        for ft in config.facets.facet_types()
    }
    metrics_file = None
    if config.metrics.enabled and config.metrics.file_name:
        metrics_file = metrics_path(ds.input_path, ds.dataset_id, ds.attempt, config.metrics.file_name)
    return RunPaths(
        inputs=inputs,
        staging=staging_path(temp_dir(ds), ds.view_name, ds.dataset_id, ds.attempt, run_id),
        destination=view_destination(ds.target_path, ds.view_name, ds.dataset_id),
        metrics=metrics_file,
    )


def run_view(
    config: ViewConfig,
    *,
    store: DatasetStore | None = None,
    sink: BatchSink | None = None,
    run_id: str | None = None,
) -> dict[str, Any]:
    """Run one view build described by ``config``.

    Args:
        config (ViewConfig): Validated or unvalidated run configuration.
        store (DatasetStore | None): Overrides the store built from
            ``config.store``.
        sink (BatchSink | None): Overrides the sink built from
            ``config.sink``.
        run_id (str | None): Explicit run id; generated when omitted.

    Returns:
        dict[str, Any]: The run report as primitive values.
    """
    config.validate()
    ds = config.dataset
    run_id = run_id or new_run_id()
    paths = resolve_paths(config, run_id)

    with RunResources() as resources:
        if store is None:
            store = build_store(config.store, input_root=ds.input_path, resources=resources)
        if sink is None:
            sink = build_sink(config.sink)
        controller = RunController(
            store=store,
            sink=sink,
            coordinator=build_publish_coordinator(config.publish, target_root=ds.target_path),
            facets=config.facets.facet_types(),
            dataset_id=ds.dataset_id,
            attempt=ds.attempt,
            staging=paths.staging,
            destination=paths.destination,
            pipeline=config.pipeline,
            metrics_sink=build_metrics_sink(
                config.metrics, input_root=ds.input_path, dataset_id=ds.dataset_id, attempt=ds.attempt
            ),
            run_id=run_id,
        )
        report = controller.run()
    return report.as_dict()


def preview_view(config: ViewConfig, *, store: DatasetStore | None = None) -> dict[str, Any]:
    """Load and join without writing or publishing; report the counts."""
    config.validate()
    ds = config.dataset
    metrics = RunMetrics()
    with RunResources() as resources, run_context(datasetKey=ds.dataset_id, attempt=ds.attempt, step="preview"):
        if store is None:
            store = build_store(config.store, input_root=ds.input_path, resources=resources)
        with WorkerPool(resolve_executor_config(config.pipeline), name="facetview-preview") as pool:
            loaded = DatasetLoader(store, metrics=metrics).load_all(
                config.facets.facet_types(), ds.dataset_id, ds.attempt, pool
            )
        for _ in JoinEngine(loaded, metrics=metrics).iter_records():
            pass
    counts = metrics.summary()
    log.info("Preview complete: %s", counts)
    return {
        "dataset_id": ds.dataset_id,
        "attempt": ds.attempt,
        "dry_run": True,
        "counts": counts,
        "facets": dict(loaded.counts),
        "degraded": list(loaded.degraded),
    }
