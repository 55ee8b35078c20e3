import pytest

from facetview.core.records import (
    Batch,
    FacetRecord,
    FacetRole,
    FacetType,
    MergedRecord,
    RecordKey,
    facet_record_from_row,
    make_record_key,
)


def _merged(name: str) -> MergedRecord:
    key = RecordKey(name)
    return MergedRecord(key=key, data={"key": name})


def test_make_record_key_is_composite():
    assert make_record_key("ds1", 3, "abc") == "ds1:3:abc"


def test_facet_record_attributes_are_read_only():
    source = {"a": 1}
    rec = FacetRecord(key=RecordKey("k"), facet="basic", attributes=source)
    source["a"] = 2
    assert rec.get("a") == 1
    with pytest.raises(TypeError):
        rec.attributes["a"] = 3  # type: ignore[index]


def test_facet_record_rejects_non_mapping_attributes():
    with pytest.raises(TypeError):
        FacetRecord(key=RecordKey("k"), facet="basic", attributes=[1, 2])  # type: ignore[arg-type]


def test_facet_type_roles():
    assert FacetType("basic", FacetRole.PRIMARY).mandatory
    assert FacetType("metadata", FacetRole.METADATA).mandatory
    assert not FacetType("location").mandatory
    with pytest.raises(ValueError):
        FacetType("x", "sideways")
    with pytest.raises(ValueError):
        FacetType("")


def test_batch_refuses_empty_records():
    with pytest.raises(ValueError):
        Batch(seq=0, records=())


def test_batch_id_depends_on_keys_not_order():
    a, b, c = _merged("a"), _merged("b"), _merged("c")
    assert Batch(0, (a, b)).batch_id == Batch(5, (b, a)).batch_id
    assert Batch(0, (a, b)).batch_id != Batch(0, (a, c)).batch_id


def test_batch_iteration_and_payloads():
    batch = Batch(1, [_merged("a"), _merged("b")])
    assert isinstance(batch.records, tuple)
    assert len(batch) == 2
    assert batch.keys == ("a", "b")
    assert [p["key"] for p in batch.payloads()] == ["a", "b"]


def test_facet_record_from_row_splits_key_and_attributes():
    rec = facet_record_from_row({"id": 7, "country": "DK"}, "location", "ds", 2)
    assert rec.key == "ds:2:7"
    assert rec.facet == "location"
    assert dict(rec.attributes) == {"country": "DK"}


def test_facet_record_from_row_requires_key():
    with pytest.raises(ValueError):
        facet_record_from_row({"country": "DK"}, "location", "ds", 1)
    with pytest.raises(ValueError):
        facet_record_from_row(["not", "a", "row"], "location", "ds", 1)  # type: ignore[arg-type]
