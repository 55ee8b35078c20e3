# parquet.py
# SPDX-License-Identifier: MIT
"""Parquet sink writing one part file per batch."""

from __future__ import annotations

import json
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import pyarrow as pa
import pyarrow.parquet as pq

from ..core.log import get_logger
from ..core.records import Batch
from .sinks import _StagedPartSink

log = get_logger(__name__)

__all__ = ["ParquetSinkOptions", "ParquetBatchSink"]


@dataclass(slots=True)
class ParquetSinkOptions:
    """Options for :class:`ParquetBatchSink`."""

    compression: str = "snappy"
    row_group_size: int | None = None


class ParquetBatchSink(_StagedPartSink):
    """Write merged records to ``part-{batch_id}.parquet`` files.

    Scalar fields become typed columns. Mapping-valued fields (metadata and
    the facets) are stored as JSON strings so every part shares one schema
    even when facets differ in shape from record to record; lists of
    strings such as ``issues`` stay native ``list<string>`` columns.
    """

    suffix = ".parquet"

    def __init__(self, options: ParquetSinkOptions | None = None) -> None:
        super().__init__()
        self.options = options or ParquetSinkOptions()

    def _write_part(self, path: Path, batch: Batch) -> None:
        table = self._build_table(list(batch.payloads()))
        pq.write_table(
            table,
            path,
            compression=self.options.compression,
            row_group_size=self.options.row_group_size,
        )

    def _build_table(self, rows: Sequence[Mapping[str, Any]]) -> pa.Table:
        """Convert merged payloads into an Arrow table."""
        out_rows: list[dict[str, Any]] = []
        for row in rows:
            out: dict[str, Any] = {}
            for name, value in row.items():
                if isinstance(value, Mapping):
                    out[name] = json.dumps(value, ensure_ascii=False, sort_keys=True, default=str)
                elif isinstance(value, (list, tuple)):
                    out[name] = [str(v) for v in value]
                else:
                    out[name] = value
            out_rows.append(out)
        table = pa.Table.from_pylist(out_rows)
        # All-empty lists infer as list<null>; keep parts schema-compatible.
        for idx, fld in enumerate(table.schema):
            if pa.types.is_list(fld.type) and pa.types.is_null(fld.type.value_type):
                table = table.set_column(idx, fld.name, table.column(idx).cast(pa.list_(pa.string())))
        return table
