import json
import sys
import threading
from pathlib import Path

import pytest

from facetview.core import controller as controller_mod
from facetview.core.concurrency import WorkerPool
from facetview.core.config import FacetsConfig, PipelineConfig
from facetview.core.controller import RunController
from facetview.core.errors import ConfigurationError, ConversionError, LockError, RunError, WriteError
from facetview.core.publish import DirectorySwapPublisher, LocalLockService, PublishCoordinator
from facetview.core.state import ALLOWED_TRANSITIONS, RunState, check_transition
from facetview.sinks.sinks import JSONLBatchSink, RecordingSink
from facetview.sources.memory import InMemoryDatasetStore

FACETS = FacetsConfig(primary="basic", metadata="metadata", optional=["location"]).facet_types()


def _rows(**overrides):
    rows = {
        "metadata": [{"id": "M", "publisher": "museum"}],
        "basic": [{"id": "A", "n": 1}, {"id": "B", "n": 2}, {"id": "C", "n": 3}],
        "location": [{"id": "A", "country": "DK"}, {"id": "C", "country": "SE"}],
    }
    rows.update(overrides)
    return rows


class _CountingLocks(LocalLockService):
    def __init__(self):
        super().__init__()
        self.acquired = 0
        self.released = 0

    def acquire(self, path_prefix, timeout=None):
        handle = super().acquire(path_prefix, timeout)
        self.acquired += 1
        return handle

    def release(self, handle):
        super().release(handle)
        self.released += 1


class _RecordingPublisher:
    def __init__(self):
        self.swaps = []

    def swap(self, staged, destination):
        self.swaps.append((staged, destination))


class _MetricsSink:
    def __init__(self):
        self.flushes = []

    def flush(self, counters):
        self.flushes.append(dict(counters))


class _TrackingPool(WorkerPool):
    instances = []

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.shutdown_calls = []
        _TrackingPool.instances.append(self)

    def shutdown(self, *, cancel=False):
        self.shutdown_calls.append(cancel)
        super().shutdown(cancel=cancel)


@pytest.fixture
def tracking_pool(monkeypatch):
    _TrackingPool.instances = []
    monkeypatch.setattr(controller_mod, "WorkerPool", _TrackingPool)
    return _TrackingPool


def _controller(tmp_path, *, store, sink, publisher=None, locks=None, pipeline=None, **kwargs):
    return RunController(
        store=store,
        sink=sink,
        coordinator=PublishCoordinator(locks or _CountingLocks(), publisher or _RecordingPublisher(), lock_timeout=1),
        facets=FACETS,
        dataset_id="ds",
        attempt=1,
        staging=tmp_path / "tmp" / "occurrence" / "ds" / "1-run",
        destination=tmp_path / "out" / "occurrence" / "ds",
        pipeline=pipeline or PipelineConfig(batch_max_size=2, concurrency=2),
        **kwargs,
    )


def test_state_table_allows_only_forward_or_failed():
    assert ALLOWED_TRANSITIONS[RunState.WRITING] == {RunState.LOCK_ACQUIRE, RunState.FAILED}
    assert not ALLOWED_TRANSITIONS[RunState.DONE]
    with pytest.raises(RuntimeError):
        check_transition(RunState.LOADING, RunState.WRITING)
    with pytest.raises(RuntimeError):
        check_transition(RunState.FAILED, RunState.LOADING)


@pytest.mark.skipif(sys.platform == "win32", reason="needs POSIX symlinks")
def test_join_write_publish_end_to_end(tmp_path: Path, tracking_pool):
    locks = _CountingLocks()
    metrics_sink = _MetricsSink()
    ctrl = _controller(
        tmp_path,
        store=InMemoryDatasetStore(_rows()),
        sink=JSONLBatchSink(),
        publisher=DirectorySwapPublisher(),
        locks=locks,
        metrics_sink=metrics_sink,
    )
    report = ctrl.run()

    dest = tmp_path / "out" / "occurrence" / "ds"
    parts = sorted(dest.glob("part-*.jsonl"))
    rows = [json.loads(line) for p in parts for line in p.read_text(encoding="utf-8").splitlines()]
    assert sorted(len(p.read_text(encoding="utf-8").splitlines()) for p in parts) == [1, 2]
    by_key = {r["key"]: r for r in rows}
    assert set(by_key) == {"ds:1:A", "ds:1:B", "ds:1:C"}
    assert by_key["ds:1:B"]["location"] == {}
    assert by_key["ds:1:A"]["location"] == {"country": "DK"}
    assert by_key["ds:1:C"]["metadata"] == {"publisher": "museum"}

    assert report.state == "done"
    assert report.batches == 2
    assert report.counts == {"loaded": 6, "joined": 3, "dropped": 0, "written": 3}
    assert ctrl.history == [
        RunState.INIT,
        RunState.LOADING,
        RunState.JOINING,
        RunState.WRITING,
        RunState.LOCK_ACQUIRE,
        RunState.PUBLISHING,
        RunState.LOCK_RELEASE,
        RunState.DONE,
    ]
    assert (locks.acquired, locks.released) == (1, 1)
    assert len(metrics_sink.flushes) == 1
    assert metrics_sink.flushes[0]["written"] == 3
    (pool,) = tracking_pool.instances
    assert pool.shutdown_calls == [False]
    assert pool.closed


def test_missing_metadata_fails_before_any_write(tmp_path: Path, tracking_pool):
    locks = _CountingLocks()
    publisher = _RecordingPublisher()
    sink = RecordingSink()
    metrics_sink = _MetricsSink()
    ctrl = _controller(
        tmp_path,
        store=InMemoryDatasetStore(_rows(metadata=[])),
        sink=sink,
        publisher=publisher,
        locks=locks,
        metrics_sink=metrics_sink,
    )
    with pytest.raises(ConfigurationError) as info:
        ctrl.run()

    assert info.value.phase == "loading"
    assert "phase=loading" in str(info.value)
    assert info.value.counts["written"] == 0
    assert ctrl.state is RunState.FAILED
    assert sink.opened == 0 and sink.batches == []
    assert publisher.swaps == []
    assert locks.acquired == 0
    assert not (tmp_path / "out").exists()
    assert len(metrics_sink.flushes) == 1
    assert tracking_pool.instances[0].shutdown_calls == [True]


def test_second_batch_failure_never_publishes(tmp_path: Path, tracking_pool):
    publisher = _RecordingPublisher()
    locks = _CountingLocks()
    sink = RecordingSink(fail_on={1})
    ctrl = _controller(
        tmp_path,
        store=InMemoryDatasetStore(_rows()),
        sink=sink,
        publisher=publisher,
        locks=locks,
        pipeline=PipelineConfig(batch_max_size=2, concurrency=2, sync_mode=True),
    )
    with pytest.raises(WriteError) as info:
        ctrl.run()

    assert info.value.phase == "writing"
    assert info.value.batch_seq == 1
    assert publisher.swaps == []
    assert locks.acquired == 0
    assert sorted(sink.records) == ["ds:1:A", "ds:1:B"]
    assert sink.closed == 1
    assert tracking_pool.instances[0].closed


def test_concurrent_write_failure_is_reported(tmp_path: Path):
    publisher = _RecordingPublisher()
    ctrl = _controller(
        tmp_path,
        store=InMemoryDatasetStore(_rows()),
        sink=RecordingSink(reject={0}),
        publisher=publisher,
        pipeline=PipelineConfig(batch_max_size=1, concurrency=1, submit_window=1),
    )
    with pytest.raises(WriteError):
        ctrl.run()
    assert publisher.swaps == []


def test_publish_uses_staging_and_destination(tmp_path: Path):
    publisher = _RecordingPublisher()
    sink = RecordingSink()
    ctrl = _controller(tmp_path, store=InMemoryDatasetStore(_rows()), sink=sink, publisher=publisher)
    ctrl.run()
    assert publisher.swaps == [(ctrl.staging, ctrl.destination)]
    assert sink.staging == ctrl.staging


def test_degraded_optional_facet_still_publishes(tmp_path: Path):
    publisher = _RecordingPublisher()
    ctrl = _controller(
        tmp_path,
        store=InMemoryDatasetStore(_rows(), failures={"location": OSError("disk gone")}),
        sink=RecordingSink(),
        publisher=publisher,
    )
    report = ctrl.run()
    assert report.degraded == ["location"]
    assert ctrl.metrics.get("load_errors") == 1
    assert len(publisher.swaps) == 1


def test_dropped_rate_limit_blocks_publish(tmp_path: Path):
    publisher = _RecordingPublisher()
    rows = _rows(location=[{"id": "A", "issues": "bad"}, {"id": "B", "issues": "bad"}])
    ctrl = _controller(
        tmp_path,
        store=InMemoryDatasetStore(rows),
        sink=RecordingSink(),
        publisher=publisher,
        pipeline=PipelineConfig(batch_max_size=2, concurrency=1, max_dropped_rate=0.5),
    )
    with pytest.raises(ConversionError) as info:
        ctrl.run()
    assert info.value.counts["dropped"] == 2
    assert publisher.swaps == []


def test_lock_timeout_fails_in_lock_phase(tmp_path: Path):
    locks = _CountingLocks()
    ctrl = _controller(tmp_path, store=InMemoryDatasetStore(_rows()), sink=RecordingSink(), locks=locks)
    ctrl.coordinator.lock_timeout = 0.05
    held = {}
    ready = threading.Event()
    done = threading.Event()

    def hold():
        held["h"] = locks.acquire(str(ctrl.destination))
        ready.set()
        done.wait()
        locks.release(held["h"])

    t = threading.Thread(target=hold)
    t.start()
    ready.wait()
    try:
        with pytest.raises(LockError) as info:
            ctrl.run()
    finally:
        done.set()
        t.join()
    assert info.value.phase == "lock_acquire"
    assert info.value.counts["written"] == 3


def test_unexpected_error_is_wrapped(tmp_path: Path):
    def broken_converter(loaded):
        raise KeyError("no converter")

    ctrl = _controller(
        tmp_path,
        store=InMemoryDatasetStore(_rows()),
        sink=RecordingSink(),
        converter_factory=broken_converter,
    )
    with pytest.raises(RunError) as info:
        ctrl.run()
    assert info.value.phase == "joining"
    assert isinstance(info.value.__cause__, KeyError)


def test_interrupt_cleans_up_and_propagates(tmp_path: Path, tracking_pool):
    class InterruptingSink(RecordingSink):
        def write_batch(self, batch):
            raise KeyboardInterrupt

    metrics_sink = _MetricsSink()
    sink = InterruptingSink()
    ctrl = _controller(
        tmp_path,
        store=InMemoryDatasetStore(_rows()),
        sink=sink,
        metrics_sink=metrics_sink,
        pipeline=PipelineConfig(batch_max_size=2, concurrency=1, sync_mode=True),
    )
    with pytest.raises(KeyboardInterrupt):
        ctrl.run()
    assert ctrl.state is RunState.FAILED
    assert sink.closed == 1
    assert len(metrics_sink.flushes) == 1
    assert tracking_pool.instances[0].shutdown_calls == [True]


def test_run_only_once(tmp_path: Path):
    ctrl = _controller(tmp_path, store=InMemoryDatasetStore(_rows()), sink=RecordingSink())
    ctrl.run()
    with pytest.raises(RuntimeError):
        ctrl.run()
