# convert.py
# SPDX-License-Identifier: MIT
"""Join loaded facets into merged view records.

The join is driven by the primary facet: every primary key yields at most
one :class:`MergedRecord`. Other facets are looked up by key and default to
an empty mapping when absent. Conversion itself is a pure function of the
primary record, the matching facet records and the run metadata, so keys
can be converted independently and in any order.
"""

from __future__ import annotations

from collections.abc import Iterator, Mapping
from typing import Any, Protocol

from .errors import ConversionError
from .loader import LoadedFacets
from .log import get_logger
from .metrics import RunMetrics
from .records import FacetRecord, MergedRecord, MetadataRecord, RecordKey

log = get_logger(__name__)

__all__ = [
    "RecordConverter",
    "ViewRecordConverter",
    "JoinEngine",
    "check_dropped_rate",
]

ISSUES_FIELD = "issues"


class RecordConverter(Protocol):
    """Callable that turns one key's facets into a merged record."""

    def __call__(
        self,
        key: RecordKey,
        primary: FacetRecord,
        facets: Mapping[str, FacetRecord | None],
        metadata: MetadataRecord,
    ) -> MergedRecord:
        ...


class ViewRecordConverter:
    """Default converter producing flat, JSON-ready view records.

    Output layout::

        {
          "key": ..., "dataset_id": ..., "attempt": ...,
          "metadata": {...},
          "<primary facet>": {...},
          "<facet>": {...} or {},
          "issues": [...sorted union of every facet's issues...]
        }

    Args:
        primary_name (str): Field name used for the primary facet.
        facet_names (tuple[str, ...]): Optional facets always present in
            the output, empty when the key has no record for them.
        attempt (int): Attempt stamped onto every record.
    """

    def __init__(self, primary_name: str, facet_names: tuple[str, ...] = (), *, attempt: int = 0) -> None:
        self.primary_name = primary_name
        self.facet_names = tuple(facet_names)
        self.attempt = int(attempt)

    def __call__(
        self,
        key: RecordKey,
        primary: FacetRecord,
        facets: Mapping[str, FacetRecord | None],
        metadata: MetadataRecord,
    ) -> MergedRecord:
        if primary.key != key:
            raise ConversionError(f"Primary record key {primary.key!r} does not match {key!r}", key=key)

        issues: set[str] = set()
        _collect_issues(key, self.primary_name, primary, issues)

        data: dict[str, Any] = {
            "key": str(key),
            "dataset_id": metadata.dataset_id,
            "attempt": self.attempt,
            "metadata": dict(metadata.attributes),
            self.primary_name: dict(primary.attributes),
        }
        for name in self.facet_names:
            record = facets.get(name)
            if record is None:
                data[name] = {}
                continue
            if record.key != key:
                raise ConversionError(f"Facet {name!r} record key {record.key!r} does not match {key!r}", key=key)
            _collect_issues(key, name, record, issues)
            data[name] = dict(record.attributes)
        data[ISSUES_FIELD] = sorted(issues)
        return MergedRecord(key=key, data=data)


def _collect_issues(key: RecordKey, facet: str, record: FacetRecord, into: set[str]) -> None:
    raw = record.attributes.get(ISSUES_FIELD)
    if raw is None:
        return
    if not isinstance(raw, (list, tuple)):
        raise ConversionError(f"Facet {facet!r} of {key!r} has non-list issues: {type(raw).__name__}", key=key)
    into.update(str(item) for item in raw)


class JoinEngine:
    """Lazily joins a :class:`LoadedFacets` snapshot, one record per primary key.

    Attributes:
        loaded (LoadedFacets): Immutable facet mappings for the run.
        converter (RecordConverter): Pure per-key conversion function.
        metrics (RunMetrics): Receives ``joined`` and ``dropped`` counts.
    """

    def __init__(
        self,
        loaded: LoadedFacets,
        converter: RecordConverter | None = None,
        *,
        metrics: RunMetrics | None = None,
    ) -> None:
        self.loaded = loaded
        self.converter = converter or ViewRecordConverter(
            loaded.primary_name, loaded.facet_names, attempt=loaded.attempt
        )
        self.metrics = metrics or RunMetrics()

    def iter_records(self) -> Iterator[MergedRecord]:
        """Yield merged records in primary-key iteration order.

        Keys whose conversion fails are logged, counted as ``dropped`` and
        skipped. Each call starts a fresh pass over the primary mapping.
        """
        loaded = self.loaded
        for key, primary in loaded.primary.items():
            matches = {name: mapping.get(key) for name, mapping in loaded.facets.items()}
            try:
                merged = self.converter(key, primary, matches, loaded.metadata)
            except Exception as exc:  # noqa: BLE001
                self.metrics.inc("dropped")
                log.warning("Dropping record %s: %s", key, exc)
                continue
            self.metrics.inc("joined")
            yield merged


def check_dropped_rate(metrics: RunMetrics, max_dropped_rate: float | None) -> None:
    """Fail when the share of dropped keys exceeds ``max_dropped_rate``.

    Raises:
        ConversionError: If the threshold is set and exceeded.
    """
    if max_dropped_rate is None:
        return
    attempted = metrics.joined + metrics.dropped
    if attempted <= 0:
        return
    rate = metrics.dropped / attempted
    if rate > max_dropped_rate:
        raise ConversionError(
            f"Dropped record rate {rate:.3f} exceeded limit {max_dropped_rate:.3f} "
            f"({metrics.dropped} of {attempted} keys)"
        )
