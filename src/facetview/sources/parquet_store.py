# parquet_store.py
# SPDX-License-Identifier: MIT

"""Dataset store reading interpreted facets from Parquet with pyarrow."""

from __future__ import annotations

import os
import posixpath
from collections.abc import Iterator, Sequence
from dataclasses import dataclass
from pathlib import Path

import pyarrow.dataset as ds
import pyarrow.fs as pafs

from ..core.log import get_logger
from ..core.paths import INTERPRETED_DIR
from ..core.records import FacetRecord, RecordKey, facet_record_from_row
from ..core.resources import RunResources

log = get_logger(__name__)

__all__ = ["ParquetStoreOptions", "ParquetDatasetStore"]


@dataclass(slots=True)
class ParquetStoreOptions:
    """Options for :class:`ParquetDatasetStore`.

    Attributes:
        key_field (str): Column holding the record id.
        columns (list[str] | None): Columns to read; the key column is
            always included. ``None`` reads every column.
        batch_size (int): Rows per record batch pulled from pyarrow.
    """

    key_field: str = "id"
    columns: list[str] | None = None
    batch_size: int = 65_536


class ParquetDatasetStore:
    """Reads ``interpreted/{facet}/`` Parquet directories batch by batch.

    ``input_root`` may be a local path or any URI pyarrow understands
    (``s3://``, ``gs://``, ``hdfs://``...). The filesystem is built once per
    root through :class:`RunResources` and shared by every facet load.
    """

    def __init__(
        self,
        input_root: str | Path,
        *,
        resources: RunResources,
        options: ParquetStoreOptions | None = None,
    ) -> None:
        self.input_root = str(input_root)
        self.resources = resources
        self.options = options or ParquetStoreOptions()

    def filesystem(self) -> tuple[pafs.FileSystem, str]:
        """Return the shared filesystem and the root path inside it."""
        root = self.input_root

        def _make() -> tuple[pafs.FileSystem, str]:
            if "://" in root:
                fs, path = pafs.FileSystem.from_uri(root)
                return fs, path
            return pafs.LocalFileSystem(), os.path.abspath(root)

        return self.resources.get_or_create(("parquet-fs", root), _make)

    def facet_dir(self, facet: str, dataset_id: str, attempt: int) -> tuple[pafs.FileSystem, str]:
        fs, base = self.filesystem()
        return fs, posixpath.join(base, dataset_id, str(int(attempt)), INTERPRETED_DIR, facet.lower())

    def _columns(self) -> Sequence[str] | None:
        cols = self.options.columns
        if cols is None:
            return None
        if self.options.key_field not in cols:
            return [self.options.key_field, *cols]
        return list(cols)

    def read(self, facet: str, dataset_id: str, attempt: int) -> Iterator[tuple[RecordKey, FacetRecord]]:
        fs, path = self.facet_dir(facet, dataset_id, attempt)
        info = fs.get_file_info(path)
        if info.type == pafs.FileType.NotFound:
            log.debug("No %s data for %s/%s at %s", facet, dataset_id, attempt, path)
            return
        dataset = ds.dataset(path, format="parquet", filesystem=fs)
        rows = 0
        for batch in dataset.to_batches(columns=self._columns(), batch_size=self.options.batch_size):
            for row in batch.to_pylist():
                record = facet_record_from_row(row, facet, dataset_id, attempt, key_field=self.options.key_field)
                rows += 1
                yield record.key, record
        log.debug("Read %d %s rows from %s", rows, facet, path)
