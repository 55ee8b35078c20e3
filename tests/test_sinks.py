import gzip
import json
from pathlib import Path

import pyarrow as pa
import pyarrow.parquet as pq
import pytest

from facetview.core.records import Batch, MergedRecord, RecordKey
from facetview.sinks.parquet import ParquetBatchSink
from facetview.sinks.sinks import JSONLBatchSink, JSONLSinkOptions, RecordingSink, _StagedPartSink, part_name


def _batch(seq, *names, issues=()):
    records = tuple(
        MergedRecord(
            key=RecordKey(n),
            data={"key": n, "attempt": 1, "basic": {"name": n}, "location": {}, "issues": list(issues)},
        )
        for n in names
    )
    return Batch(seq=seq, records=records)


def _read_jsonl(path: Path):
    return [json.loads(line) for line in path.read_text(encoding="utf-8").splitlines() if line]


def test_jsonl_sink_writes_one_part_per_batch(tmp_path: Path):
    sink = JSONLBatchSink()
    sink.open(tmp_path / "stage")
    assert sink.write_batch(_batch(0, "a", "b")) is True
    sink.write_batch(_batch(1, "c"))
    sink.close()

    parts = sorted((tmp_path / "stage").glob("part-*.jsonl"))
    assert len(parts) == 2
    keys = sorted(row["key"] for p in parts for row in _read_jsonl(p))
    assert keys == ["a", "b", "c"]
    assert sink.staging_path == tmp_path / "stage"
    assert not list((tmp_path / "stage").glob(".*.tmp"))


def test_jsonl_sink_redelivery_overwrites_its_part(tmp_path: Path):
    with JSONLBatchSink() as sink:
        sink.open(tmp_path)
        sink.write_batch(_batch(0, "a", "b"))
        sink.write_batch(_batch(7, "b", "a"))
    parts = list(tmp_path.glob("part-*.jsonl"))
    assert len(parts) == 1
    assert parts[0].name == part_name(_batch(0, "a", "b"), ".jsonl")


def test_jsonl_sink_gzip(tmp_path: Path):
    sink = JSONLBatchSink(JSONLSinkOptions(compress=True))
    sink.open(tmp_path)
    sink.write_batch(_batch(0, "a"))
    sink.close()
    (part,) = tmp_path.glob("part-*.jsonl.gz")
    with gzip.open(part, "rt", encoding="utf-8") as fp:
        assert json.loads(fp.readline())["key"] == "a"


def test_jsonl_sink_requires_open(tmp_path: Path):
    sink = JSONLBatchSink()
    with pytest.raises(RuntimeError):
        sink.write_batch(_batch(0, "a"))
    with pytest.raises(ValueError):
        sink.open(None)


def test_parquet_sink_writes_readable_parts(tmp_path: Path):
    sink = ParquetBatchSink()
    sink.open(tmp_path)
    sink.write_batch(_batch(0, "a", "b", issues=["X"]))
    sink.write_batch(_batch(1, "c"))
    sink.close()

    parts = sorted(tmp_path.glob("part-*.parquet"))
    assert len(parts) == 2
    rows = [row for p in parts for row in pq.read_table(p).to_pylist()]
    assert sorted(r["key"] for r in rows) == ["a", "b", "c"]
    by_key = {r["key"]: r for r in rows}
    assert json.loads(by_key["a"]["basic"]) == {"name": "a"}
    assert json.loads(by_key["a"]["location"]) == {}
    assert by_key["a"]["issues"] == ["X"]
    assert by_key["c"]["issues"] == []
    assert pq.read_schema(parts[1]).field("issues").type.value_type == pa.string()


def test_recording_sink_keeps_last_payload_per_key():
    sink = RecordingSink()
    sink.open(None)
    sink.write_batch(_batch(0, "a"))
    sink.write_batch(_batch(1, "a", "b"))
    sink.close()
    assert sorted(sink.records) == ["a", "b"]
    assert sink.batch_sizes == [1, 2]
    assert (sink.opened, sink.closed) == (1, 1)


def test_staged_sink_without_part_writer_leaves_nothing(tmp_path: Path):
    class BareSink(_StagedPartSink):
        suffix = ".bin"

    sink = BareSink()
    sink.open(tmp_path)
    with pytest.raises(NotImplementedError, match="BareSink._write_part"):
        sink.write_batch(_batch(0, "a"))
    assert list(tmp_path.iterdir()) == []
