# jsonl_store.py
# SPDX-License-Identifier: MIT

"""Dataset store reading interpreted facets from JSONL files."""

from __future__ import annotations

import gzip
import json
from collections.abc import Iterator
from dataclasses import dataclass
from pathlib import Path
from typing import TextIO

from ..core.log import get_logger
from ..core.paths import interpreted_path
from ..core.records import FacetRecord, RecordKey, facet_record_from_row

log = get_logger(__name__)

__all__ = ["JsonlStoreOptions", "JsonlDatasetStore"]


@dataclass(slots=True)
class JsonlStoreOptions:
    """Options for :class:`JsonlDatasetStore`.

    Attributes:
        key_field (str): Field holding the record id on every line.
        pattern (str): Glob selecting files inside a facet directory;
            ``.jsonl.gz`` files are decompressed transparently.
    """

    key_field: str = "id"
    pattern: str = "*.jsonl*"


def _open_jsonl(path: Path) -> TextIO:
    if "".join(path.suffixes[-2:]).lower() == ".jsonl.gz":
        return gzip.open(path, "rt", encoding="utf-8")
    return open(path, encoding="utf-8")


class JsonlDatasetStore:
    """Reads ``{input}/{dataset}/{attempt}/interpreted/{facet}/*.jsonl``.

    Each non-blank line is a JSON object carrying the record id under
    ``key_field`` plus the facet's attributes. A missing facet directory
    reads as an empty dataset; unreadable files and malformed lines raise.
    """

    def __init__(self, input_root: str | Path, *, options: JsonlStoreOptions | None = None) -> None:
        self.input_root = Path(input_root)
        self.options = options or JsonlStoreOptions()

    def facet_files(self, facet: str, dataset_id: str, attempt: int) -> list[Path]:
        root = interpreted_path(self.input_root, dataset_id, attempt, facet)
        if not root.is_dir():
            return []
        return sorted(p for p in root.glob(self.options.pattern) if p.is_file() and not p.name.startswith("."))

    def read(self, facet: str, dataset_id: str, attempt: int) -> Iterator[tuple[RecordKey, FacetRecord]]:
        files = self.facet_files(facet, dataset_id, attempt)
        if not files:
            log.debug("No %s files for %s/%s under %s", facet, dataset_id, attempt, self.input_root)
            return
        for path in files:
            with _open_jsonl(path) as fp:
                for lineno, line in enumerate(fp, start=1):
                    line = line.strip()
                    if not line:
                        continue
                    try:
                        row = json.loads(line)
                        record = facet_record_from_row(
                            row, facet, dataset_id, attempt, key_field=self.options.key_field
                        )
                    except ValueError as exc:
                        raise ValueError(f"{path}:#{lineno}: {exc}") from exc
                    yield record.key, record
            log.debug("Read %s", path)
