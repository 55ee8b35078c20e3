# loader.py
# SPDX-License-Identifier: MIT
"""Load facet datasets into immutable keyed mappings.

Each facet type is read in its own task on the run's worker pool; the run
waits for every load before joining starts. Optional facets degrade to an
empty mapping when they cannot be read, while failures on the primary or
metadata dataset stop the run before anything is written.
"""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from types import MappingProxyType

from .concurrency import WorkerPool
from .errors import ConfigurationError, LoadError
from .interfaces import DatasetStore
from .log import get_logger
from .metrics import LOADED_PREFIX, RunMetrics
from .records import FacetRecord, FacetRole, FacetType, MetadataRecord, RecordKey

log = get_logger(__name__)

__all__ = ["DatasetLoader", "LoadedFacets", "EMPTY_FACET"]

EMPTY_FACET: Mapping[RecordKey, FacetRecord] = MappingProxyType({})


@dataclass(frozen=True)
class LoadedFacets:
    """Immutable snapshot of everything the join needs for one run.

    Attributes:
        dataset_id (str): Dataset the facets belong to.
        attempt (int): Attempt the facets belong to.
        primary_name (str): Name of the primary facet.
        primary (Mapping[RecordKey, FacetRecord]): Join driver.
        metadata (MetadataRecord): Singleton metadata for the run.
        facets (Mapping[str, Mapping[RecordKey, FacetRecord]]): Optional
            facets by name; absent or failed facets map to empty mappings.
        counts (Mapping[str, int]): Records loaded per facet name.
        degraded (tuple[str, ...]): Optional facets that failed to load.
    """

    dataset_id: str
    attempt: int
    primary_name: str
    primary: Mapping[RecordKey, FacetRecord]
    metadata: MetadataRecord
    facets: Mapping[str, Mapping[RecordKey, FacetRecord]] = field(default_factory=dict)
    counts: Mapping[str, int] = field(default_factory=dict)
    degraded: tuple[str, ...] = ()

    @property
    def facet_names(self) -> tuple[str, ...]:
        return tuple(self.facets)


class DatasetLoader:
    """Reads facet datasets from a :class:`DatasetStore`.

    Attributes:
        store (DatasetStore): Source of interpreted facet records.
        metrics (RunMetrics): Counters updated with ``loaded.<facet>`` and
            ``load_errors``.
    """

    def __init__(self, store: DatasetStore, *, metrics: RunMetrics | None = None) -> None:
        self.store = store
        self.metrics = metrics or RunMetrics()

    def load(self, facet: FacetType | str, dataset_id: str, attempt: int) -> Mapping[RecordKey, FacetRecord]:
        """Load one facet dataset into a read-only mapping.

        Args:
            facet (FacetType | str): Facet to load.
            dataset_id (str): Dataset identifier.
            attempt (int): Attempt number.

        Returns:
            Mapping[RecordKey, FacetRecord]: Records keyed by record key;
            empty when the facet is legitimately absent.

        Raises:
            LoadError: If the store fails or yields the same key twice.
        """
        name = facet.name if isinstance(facet, FacetType) else str(facet)
        out: dict[RecordKey, FacetRecord] = {}
        try:
            for key, record in self.store.read(name, dataset_id, attempt):
                if key in out:
                    raise LoadError(
                        f"Facet {name!r} contains duplicate key {key!r}", facet=name, duplicate_key=str(key)
                    )
                out[key] = record
        except LoadError:
            raise
        except Exception as exc:
            raise LoadError(f"Failed to read facet {name!r} of {dataset_id}/{attempt}: {exc}", facet=name) from exc
        self.metrics.inc(f"{LOADED_PREFIX}{name}", len(out))
        log.debug("Loaded %d %s records", len(out), name)
        return MappingProxyType(out)

    def load_all(
        self,
        facets: Sequence[FacetType],
        dataset_id: str,
        attempt: int,
        pool: WorkerPool,
    ) -> LoadedFacets:
        """Load every facet concurrently and wait for all of them.

        Args:
            facets (Sequence[FacetType]): Facets to load; exactly one must
                have the primary role and exactly one the metadata role.
            dataset_id (str): Dataset identifier.
            attempt (int): Attempt number.
            pool (WorkerPool): Run-scoped pool the loads run on.

        Returns:
            LoadedFacets: Snapshot used by the join phase.

        Raises:
            ConfigurationError: If the facet list lacks a primary or
                metadata facet, either mandatory dataset is empty, or the
                metadata dataset does not hold exactly one record.
            LoadError: If a mandatory dataset cannot be read.
        """
        primary = _single_role(facets, FacetRole.PRIMARY)
        metadata = _single_role(facets, FacetRole.METADATA)

        group = pool.task_group()
        for facet in facets:
            group.spawn(facet.name, self.load, facet, dataset_id, attempt)
        outcomes = group.join()

        optional: dict[str, Mapping[RecordKey, FacetRecord]] = {}
        counts: dict[str, int] = {}
        degraded: list[str] = []
        fatal: LoadError | None = None
        for facet in facets:
            outcome = outcomes[facet.name]
            if outcome.ok:
                counts[facet.name] = len(outcome.result)
                if not facet.mandatory:
                    optional[facet.name] = outcome.result
                continue
            error = outcome.error
            if facet.mandatory:
                log.error("Mandatory dataset %s failed to load: %s", facet.name, error)
                if facet.role == FacetRole.METADATA and getattr(error, "duplicate_key", None):
                    # Two metadata rows are an ambiguous singleton, not an I/O failure.
                    raise ConfigurationError(
                        f"Metadata dataset {facet.name!r} must hold exactly one record; "
                        f"key {error.duplicate_key!r} appears more than once"
                    ) from error
                if fatal is None:
                    fatal = error if isinstance(error, LoadError) else LoadError(str(error), facet=facet.name)
                continue
            log.warning("Optional facet %s failed to load; continuing without it: %s", facet.name, error)
            self.metrics.inc("load_errors")
            degraded.append(facet.name)
            counts[facet.name] = 0
            optional[facet.name] = EMPTY_FACET
        if fatal is not None:
            raise fatal

        primary_records = outcomes[primary.name].result
        if not primary_records:
            raise ConfigurationError(f"Primary dataset {primary.name!r} is missing or empty for {dataset_id}/{attempt}")
        metadata_records = outcomes[metadata.name].result
        if len(metadata_records) != 1:
            raise ConfigurationError(
                f"Metadata dataset {metadata.name!r} must hold exactly one record; found {len(metadata_records)}"
            )
        meta_record = next(iter(metadata_records.values()))

        log.info(
            "Loaded %d facet datasets: %s",
            len(facets),
            ", ".join(f"{name}={count}" for name, count in counts.items()),
        )
        return LoadedFacets(
            dataset_id=dataset_id,
            attempt=int(attempt),
            primary_name=primary.name,
            primary=primary_records,
            metadata=MetadataRecord.from_facet_record(meta_record, dataset_id),
            facets=MappingProxyType(optional),
            counts=MappingProxyType(counts),
            degraded=tuple(degraded),
        )


def _single_role(facets: Sequence[FacetType], role: str) -> FacetType:
    matches = [f for f in facets if f.role == role]
    if len(matches) != 1:
        raise ConfigurationError(f"Exactly one {role} facet is required; got {len(matches)}")
    return matches[0]
