# records.py
# SPDX-License-Identifier: MIT
"""Record types flowing through a view run: facet inputs, merged outputs, batches."""

from __future__ import annotations

import hashlib
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, NewType

__all__ = [
    "RecordKey",
    "FacetRole",
    "FacetType",
    "FacetRecord",
    "MetadataRecord",
    "MergedRecord",
    "Batch",
    "make_record_key",
    "freeze_attributes",
    "facet_record_from_row",
]

RecordKey = NewType("RecordKey", str)


def make_record_key(dataset_id: str, attempt: int, record_id: str) -> RecordKey:
    """Build the composite ``dataset:attempt:record`` key for a record."""
    return RecordKey(f"{dataset_id}:{int(attempt)}:{record_id}")


def freeze_attributes(attributes: Mapping[str, Any] | None) -> Mapping[str, Any]:
    """Return a read-only shallow copy of ``attributes`` (empty when None)."""
    if attributes is None:
        return MappingProxyType({})
    if not isinstance(attributes, Mapping):
        raise TypeError(f"facet attributes must be a mapping, got {type(attributes).__name__}")
    return MappingProxyType(dict(attributes))


class FacetRole:
    """Roles a facet dataset can play in the join."""

    PRIMARY = "primary"
    METADATA = "metadata"
    FACET = "facet"
    ALL = {PRIMARY, METADATA, FACET}


@dataclass(frozen=True, slots=True)
class FacetType:
    """A named facet dataset and its role in the join.

    Attributes:
        name (str): Facet name; also the directory name under
            ``interpreted/`` and the field name in merged records.
        role (str): One of :class:`FacetRole`.
    """

    name: str
    role: str = FacetRole.FACET

    def __post_init__(self) -> None:
        if not self.name:
            raise ValueError("FacetType.name must be non-empty")
        if self.role not in FacetRole.ALL:
            raise ValueError(f"Unknown facet role {self.role!r}")

    @property
    def mandatory(self) -> bool:
        """Primary and metadata datasets must be present for a run to proceed."""
        return self.role in (FacetRole.PRIMARY, FacetRole.METADATA)


@dataclass(frozen=True, slots=True)
class FacetRecord:
    """One facet's attributes for one record key."""

    key: RecordKey
    facet: str
    attributes: Mapping[str, Any] = field(default_factory=lambda: MappingProxyType({}))

    def __post_init__(self) -> None:
        if not isinstance(self.attributes, MappingProxyType):
            object.__setattr__(self, "attributes", freeze_attributes(self.attributes))

    def get(self, name: str, default: Any = None) -> Any:
        return self.attributes.get(name, default)


@dataclass(frozen=True, slots=True)
class MetadataRecord:
    """The single, unkeyed metadata record that applies to a whole run."""

    dataset_id: str
    attributes: Mapping[str, Any] = field(default_factory=lambda: MappingProxyType({}))

    def __post_init__(self) -> None:
        if not isinstance(self.attributes, MappingProxyType):
            object.__setattr__(self, "attributes", freeze_attributes(self.attributes))

    @classmethod
    def from_facet_record(cls, record: FacetRecord, dataset_id: str) -> MetadataRecord:
        return cls(dataset_id=dataset_id, attributes=record.attributes)


@dataclass(frozen=True, slots=True)
class MergedRecord:
    """Denormalized output record for one key.

    ``data`` is the JSON-ready payload handed to sinks; ``key`` is kept
    alongside so sinks can address records idempotently.
    """

    key: RecordKey
    data: Mapping[str, Any]

    def as_dict(self) -> dict[str, Any]:
        return dict(self.data)


@dataclass(frozen=True, slots=True)
class Batch:
    """An ordered, non-empty group of merged records dispatched together.

    Attributes:
        seq (int): Zero-based position of the batch within the run.
        records (tuple[MergedRecord, ...]): Records in buffer order.
    """

    seq: int
    records: tuple[MergedRecord, ...]

    def __post_init__(self) -> None:
        if not self.records:
            raise ValueError("Batch must contain at least one record")
        if not isinstance(self.records, tuple):
            object.__setattr__(self, "records", tuple(self.records))

    def __len__(self) -> int:
        return len(self.records)

    def __iter__(self):
        return iter(self.records)

    @property
    def keys(self) -> tuple[RecordKey, ...]:
        return tuple(rec.key for rec in self.records)

    @property
    def batch_id(self) -> str:
        """Stable id derived from the batch's keys.

        Re-dispatching the same keys yields the same id, which lets sinks
        overwrite rather than duplicate a redelivered batch.
        """
        h = hashlib.sha1()
        for key in sorted(self.keys):
            h.update(key.encode("utf-8"))
            h.update(b"\0")
        return h.hexdigest()[:16]

    def payloads(self) -> Iterable[dict[str, Any]]:
        return (rec.as_dict() for rec in self.records)


def facet_record_from_row(
    row: Mapping[str, Any],
    facet: str,
    dataset_id: str,
    attempt: int,
    *,
    key_field: str = "id",
) -> FacetRecord:
    """Build a :class:`FacetRecord` from a stored row.

    The ``key_field`` value becomes the record id part of the key; every
    other column becomes an attribute.

    Raises:
        ValueError: If the row is not a mapping or lacks ``key_field``.
    """
    if not isinstance(row, Mapping):
        raise ValueError(f"{facet} row must be an object, got {type(row).__name__}")
    record_id = row.get(key_field)
    if record_id is None or record_id == "":
        raise ValueError(f"{facet} row is missing key field {key_field!r}")
    attributes = {k: v for k, v in row.items() if k != key_field}
    key = make_record_key(dataset_id, attempt, str(record_id))
    return FacetRecord(key=key, facet=facet, attributes=attributes)
