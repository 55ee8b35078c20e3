# factories.py
# SPDX-License-Identifier: MIT
"""Build run collaborators from declarative config.

Stores and sinks are looked up by ``kind`` in registries so new backends
can be plugged in without touching the runner::

    @store_registry.store("memory")
    def _make(ctx, options):
        return InMemoryDatasetStore(...)
"""

from __future__ import annotations

from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from .config import (
    MetricsConfig,
    PublishConfig,
    SinkSpec,
    StoreSpec,
    build_config_from_options,
)
from .errors import ConfigurationError
from .interfaces import BatchSink, DatasetStore, LockService, MetricsSink
from .log import get_logger
from .metrics import LoggingMetricsSink, YamlMetricsSink
from .paths import metrics_path
from .publish import DirectorySwapPublisher, FileLockService, LocalLockService, PublishCoordinator
from .resources import RunResources

log = get_logger(__name__)

__all__ = [
    "StoreFactoryContext",
    "StoreRegistry",
    "SinkRegistry",
    "store_registry",
    "sink_registry",
    "build_store",
    "build_sink",
    "build_lock_service",
    "build_publish_coordinator",
    "build_metrics_sink",
]


@dataclass(frozen=True)
class StoreFactoryContext:
    """What a store factory needs besides its own options."""

    input_root: str
    resources: RunResources


StoreBuilder = Callable[[StoreFactoryContext, Any], DatasetStore]
SinkBuilder = Callable[[Any], BatchSink]


@dataclass
class _Entry:
    fn: Callable[..., Any]
    options_model: type[Any] | None = None


def _build_options(entry: _Entry, options: Mapping[str, Any] | None, context: str) -> Any:
    if entry.options_model is None:
        return dict(options or {})
    return build_config_from_options(entry.options_model, options, context=context)


@dataclass
class StoreRegistry:
    """Registry of dataset store builders keyed by ``StoreSpec.kind``."""

    _builders: dict[str, _Entry] = field(default_factory=dict)

    def register(
        self,
        kind: str,
        fn: StoreBuilder,
        *,
        options_model: type[Any] | None = None,
        replace: bool = False,
    ) -> None:
        """Register ``fn(ctx, options)`` as the builder for ``kind``."""
        if not replace and kind in self._builders:
            raise ValueError(f"Store kind {kind!r} is already registered")
        self._builders[kind] = _Entry(fn, options_model)

    def store(self, kind: str, *, options_model: type[Any] | None = None, replace: bool = False):
        """Decorator form of :meth:`register`."""
        def decorator(fn: StoreBuilder) -> StoreBuilder:
            self.register(kind, fn, options_model=options_model, replace=replace)
            return fn

        return decorator

    def kinds(self) -> list[str]:
        return sorted(self._builders)

    def build(self, ctx: StoreFactoryContext, spec: StoreSpec) -> DatasetStore:
        entry = self._builders.get(spec.kind)
        if entry is None:
            raise ConfigurationError(f"Unknown store kind {spec.kind!r}; known: {', '.join(self.kinds())}")
        options = _build_options(entry, spec.options, f"store {spec.kind!r}")
        return entry.fn(ctx, options)


@dataclass
class SinkRegistry:
    """Registry of batch sink builders keyed by ``SinkSpec.kind``."""

    _builders: dict[str, _Entry] = field(default_factory=dict)

    def register(
        self,
        kind: str,
        fn: SinkBuilder,
        *,
        options_model: type[Any] | None = None,
        replace: bool = False,
    ) -> None:
        """Register ``fn(options)`` as the builder for ``kind``."""
        if not replace and kind in self._builders:
            raise ValueError(f"Sink kind {kind!r} is already registered")
        self._builders[kind] = _Entry(fn, options_model)

    def sink(self, kind: str, *, options_model: type[Any] | None = None, replace: bool = False):
        """Decorator form of :meth:`register`."""
        def decorator(fn: SinkBuilder) -> SinkBuilder:
            self.register(kind, fn, options_model=options_model, replace=replace)
            return fn

        return decorator

    def kinds(self) -> list[str]:
        return sorted(self._builders)

    def build(self, spec: SinkSpec) -> BatchSink:
        entry = self._builders.get(spec.kind)
        if entry is None:
            raise ConfigurationError(f"Unknown sink kind {spec.kind!r}; known: {', '.join(self.kinds())}")
        options = _build_options(entry, spec.options, f"sink {spec.kind!r}")
        return entry.fn(options)


def _register_defaults(stores: StoreRegistry, sinks: SinkRegistry) -> None:
    from ..sinks.parquet import ParquetBatchSink, ParquetSinkOptions
    from ..sinks.sinks import JSONLBatchSink, JSONLSinkOptions
    from ..sources.jsonl_store import JsonlDatasetStore, JsonlStoreOptions
    from ..sources.parquet_store import ParquetDatasetStore, ParquetStoreOptions

    stores.register(
        "jsonl",
        lambda ctx, opts: JsonlDatasetStore(ctx.input_root, options=opts),
        options_model=JsonlStoreOptions,
    )
    stores.register(
        "parquet",
        lambda ctx, opts: ParquetDatasetStore(ctx.input_root, resources=ctx.resources, options=opts),
        options_model=ParquetStoreOptions,
    )
    sinks.register("jsonl", JSONLBatchSink, options_model=JSONLSinkOptions)
    sinks.register("parquet", ParquetBatchSink, options_model=ParquetSinkOptions)


store_registry = StoreRegistry()
sink_registry = SinkRegistry()
_register_defaults(store_registry, sink_registry)


def build_store(
    spec: StoreSpec,
    *,
    input_root: str | Path,
    resources: RunResources,
    registry: StoreRegistry | None = None,
) -> DatasetStore:
    ctx = StoreFactoryContext(input_root=str(input_root), resources=resources)
    return (registry or store_registry).build(ctx, spec)


def build_sink(spec: SinkSpec, *, registry: SinkRegistry | None = None) -> BatchSink:
    return (registry or sink_registry).build(spec)


def build_lock_service(cfg: PublishConfig, *, target_root: str | Path) -> LockService:
    """Lock service for ``cfg.lock_kind``.

    File locks default to ``{target_root}/.locks`` so every run publishing
    under the same target shares them.
    """
    if cfg.lock_kind == "local":
        return _local_lock_service()
    if cfg.lock_kind == "file":
        lock_dir = Path(cfg.lock_dir) if cfg.lock_dir else Path(target_root) / ".locks"
        return FileLockService(lock_dir, poll_interval=cfg.poll_interval)
    raise ConfigurationError(f"Unknown lock kind {cfg.lock_kind!r}")


# Runs in one process must share a service to exclude each other.
_LOCAL_LOCKS = LocalLockService()


def _local_lock_service() -> LocalLockService:
    return _LOCAL_LOCKS


def build_publish_coordinator(cfg: PublishConfig, *, target_root: str | Path) -> PublishCoordinator:
    return PublishCoordinator(
        build_lock_service(cfg, target_root=target_root),
        DirectorySwapPublisher(keep_versions=cfg.keep_versions),
        lock_timeout=cfg.lock_timeout_seconds,
    )


def build_metrics_sink(
    cfg: MetricsConfig,
    *,
    input_root: str | Path,
    dataset_id: str,
    attempt: int,
) -> MetricsSink:
    """YAML counters file beside the inputs, or log-only when disabled."""
    if not cfg.enabled or not cfg.file_name:
        return LoggingMetricsSink()
    return YamlMetricsSink(metrics_path(input_root, dataset_id, attempt, cfg.file_name))
