# memory.py
# SPDX-License-Identifier: MIT

"""In-memory dataset store for embedding and tests."""

from __future__ import annotations

import threading
from collections.abc import Iterator, Mapping, Sequence
from typing import Any

from ..core.records import FacetRecord, RecordKey, facet_record_from_row

__all__ = ["InMemoryDatasetStore"]


class InMemoryDatasetStore:
    """Serves facet rows held in memory.

    Args:
        facets (Mapping[str, Sequence[Mapping[str, Any]]]): Rows per facet
            name; facets not listed read as empty.
        failures (Mapping[str, BaseException] | None): Facets whose read
            raises the given exception.
        key_field (str): Row field holding the record id.
    """

    def __init__(
        self,
        facets: Mapping[str, Sequence[Mapping[str, Any]]],
        *,
        failures: Mapping[str, BaseException] | None = None,
        key_field: str = "id",
    ) -> None:
        self.facets = {name: list(rows) for name, rows in facets.items()}
        self.failures = dict(failures or {})
        self.key_field = key_field
        self._lock = threading.Lock()
        self.reads: list[str] = []

    def read(self, facet: str, dataset_id: str, attempt: int) -> Iterator[tuple[RecordKey, FacetRecord]]:
        with self._lock:
            self.reads.append(facet)
        if facet in self.failures:
            raise self.failures[facet]
        for row in self.facets.get(facet, ()):
            record = facet_record_from_row(row, facet, dataset_id, attempt, key_field=self.key_field)
            yield record.key, record
