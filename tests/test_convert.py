from types import MappingProxyType

import pytest

from facetview.core.convert import JoinEngine, ViewRecordConverter, check_dropped_rate
from facetview.core.errors import ConversionError
from facetview.core.loader import LoadedFacets
from facetview.core.metrics import RunMetrics
from facetview.core.records import FacetRecord, MetadataRecord, RecordKey, make_record_key


def _facet(name, rows):
    out = {}
    for record_id, attrs in rows.items():
        key = make_record_key("ds", 1, record_id)
        out[key] = FacetRecord(key=key, facet=name, attributes=attrs)
    return MappingProxyType(out)


def _loaded(primary, **facets):
    return LoadedFacets(
        dataset_id="ds",
        attempt=1,
        primary_name="basic",
        primary=_facet("basic", primary),
        metadata=MetadataRecord(dataset_id="ds", attributes={"publisher": "museum"}),
        facets=MappingProxyType({name: _facet(name, rows) for name, rows in facets.items()}),
    )


def test_converter_layout_and_issue_union():
    key = RecordKey("ds:1:A")
    conv = ViewRecordConverter("basic", ("location", "temporal"), attempt=1)
    merged = conv(
        key,
        FacetRecord(key, "basic", {"name": "a", "issues": ["Z_ISSUE", "A_ISSUE"]}),
        {"location": FacetRecord(key, "location", {"country": "DK", "issues": ["A_ISSUE", "M_ISSUE"]}), "temporal": None},
        MetadataRecord("ds", {"publisher": "museum"}),
    )
    data = merged.as_dict()
    assert merged.key == key
    assert data["key"] == "ds:1:A"
    assert data["dataset_id"] == "ds"
    assert data["attempt"] == 1
    assert data["metadata"] == {"publisher": "museum"}
    assert data["basic"]["name"] == "a"
    assert data["location"]["country"] == "DK"
    assert data["temporal"] == {}
    assert data["issues"] == ["A_ISSUE", "M_ISSUE", "Z_ISSUE"]


def test_converter_rejects_malformed_input():
    key = RecordKey("ds:1:A")
    meta = MetadataRecord("ds", {})
    conv = ViewRecordConverter("basic", ("location",))
    with pytest.raises(ConversionError):
        conv(key, FacetRecord(RecordKey("ds:1:B"), "basic", {"n": 1}), {}, meta)
    with pytest.raises(ConversionError):
        conv(key, FacetRecord(key, "basic", {"n": 1}), {"location": FacetRecord(RecordKey("x"), "location", {})}, meta)
    with pytest.raises(ConversionError) as info:
        conv(key, FacetRecord(key, "basic", {"n": 1, "issues": "oops"}), {}, meta)
    assert info.value.key == key


def test_join_emits_one_record_per_primary_key():
    loaded = _loaded(
        {"A": {"n": 1}, "B": {"n": 2}, "C": {"n": 3}},
        location={"A": {"country": "DK"}, "C": {"country": "SE"}},
    )
    metrics = RunMetrics()
    records = list(JoinEngine(loaded, metrics=metrics).iter_records())

    by_key = {r.key: r.as_dict() for r in records}
    assert set(by_key) == {"ds:1:A", "ds:1:B", "ds:1:C"}
    assert by_key["ds:1:A"]["location"] == {"country": "DK"}
    assert by_key["ds:1:B"]["location"] == {}
    assert by_key["ds:1:C"]["location"] == {"country": "SE"}
    assert metrics.joined == 3
    assert metrics.dropped == 0


def test_join_drops_bad_keys_and_counts_them():
    loaded = _loaded(
        {"A": {"n": 1}, "B": {"n": 2}, "C": {"issues": 7}},
        location={"B": {"issues": "not-a-list"}},
    )
    metrics = RunMetrics()
    keys = [r.key for r in JoinEngine(loaded, metrics=metrics).iter_records()]
    assert keys == ["ds:1:A"]
    assert metrics.joined == 1
    assert metrics.dropped == 2


def test_join_is_lazy_and_restartable():
    loaded = _loaded({"A": {"n": 1}, "B": {"n": 2}})
    calls = []

    def converter(key, primary, facets, metadata):
        calls.append(key)
        return ViewRecordConverter("basic")(key, primary, facets, metadata)

    engine = JoinEngine(loaded, converter)
    it = engine.iter_records()
    assert calls == []
    next(it)
    assert len(calls) == 1
    assert [r.key for r in engine.iter_records()] == ["ds:1:A", "ds:1:B"]


def test_converter_exception_drops_key():
    loaded = _loaded({"A": {"n": 1}, "B": {"n": 2}})

    def converter(key, primary, facets, metadata):
        if key.endswith("B"):
            raise KeyError("missing field")
        return ViewRecordConverter("basic")(key, primary, facets, metadata)

    metrics = RunMetrics()
    assert [r.key for r in JoinEngine(loaded, converter, metrics=metrics).iter_records()] == ["ds:1:A"]
    assert metrics.dropped == 1


def test_check_dropped_rate():
    metrics = RunMetrics()
    metrics.inc("joined", 3)
    metrics.inc("dropped", 1)
    check_dropped_rate(metrics, None)
    check_dropped_rate(metrics, 0.25)
    with pytest.raises(ConversionError, match="exceeded"):
        check_dropped_rate(metrics, 0.2)
    check_dropped_rate(RunMetrics(), 0.0)


def test_primary_with_only_an_id_is_still_joined():
    key = RecordKey("ds:1:A")
    conv = ViewRecordConverter("basic", ("location",), attempt=1)
    data = conv(key, FacetRecord(key, "basic", {}), {}, MetadataRecord("ds", {})).as_dict()
    assert data["basic"] == {}
    assert data["location"] == {}
    assert data["issues"] == []
