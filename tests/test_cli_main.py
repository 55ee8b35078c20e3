import json
import sys
from pathlib import Path

import pytest
import yaml

from facetview.cli.main import main
from facetview.core.config import FacetsConfig, ViewConfig
from facetview.core.paths import interpreted_path


def _write_facet(input_root: Path, facet: str, rows):
    facet_dir = interpreted_path(input_root, "ds1", 1, facet)
    facet_dir.mkdir(parents=True, exist_ok=True)
    (facet_dir / "part-0.jsonl").write_text("".join(json.dumps(r) + "\n" for r in rows), encoding="utf-8")


def _make_config_file(tmp_path: Path, *, with_metadata: bool = True) -> Path:
    input_root = tmp_path / "input"
    if with_metadata:
        _write_facet(input_root, "metadata", [{"id": "M", "title": "Birds"}])
    _write_facet(input_root, "basic", [{"id": "A", "n": 1}, {"id": "B", "n": 2}, {"id": "C", "n": 3}])
    _write_facet(input_root, "location", [{"id": "A", "country": "DK"}])

    cfg = ViewConfig()
    cfg.dataset.dataset_id = "ds1"
    cfg.dataset.input_path = str(input_root)
    cfg.dataset.target_path = str(tmp_path / "out")
    cfg.facets = FacetsConfig(optional=["location"])
    cfg.pipeline.batch_max_size = 2
    cfg.pipeline.concurrency = 2
    cfg.logging.propagate = True
    config_path = tmp_path / "config.json"
    cfg.to_json(config_path)
    return config_path


@pytest.mark.skipif(sys.platform == "win32", reason="needs POSIX symlinks")
def test_cli_run_from_config(tmp_path: Path, capsys):
    config_path = _make_config_file(tmp_path)

    rc = main(["run", "-c", str(config_path)])
    assert rc == 0
    report = json.loads(capsys.readouterr().out)
    assert report["state"] == "done"
    assert report["counts"]["written"] == 3
    assert report["batches"] == 2

    dest = tmp_path / "out" / "occurrence" / "ds1"
    assert Path(report["destination"]) == dest
    keys = sorted(
        json.loads(line)["key"]
        for part in dest.glob("part-*.jsonl")
        for line in part.read_text(encoding="utf-8").splitlines()
    )
    assert keys == ["ds1:1:A", "ds1:1:B", "ds1:1:C"]

    metrics_file = tmp_path / "input" / "ds1" / "1" / "interpreted-to-view.yml"
    counters = yaml.safe_load(metrics_file.read_text(encoding="utf-8"))
    assert counters["written"] == 3
    assert counters["loaded.basic"] == 3


def test_cli_dry_run_writes_nothing(tmp_path: Path, capsys):
    config_path = _make_config_file(tmp_path)

    rc = main(["run", "-c", str(config_path), "--dry-run", "--sync-mode"])
    assert rc == 0
    result = json.loads(capsys.readouterr().out)
    assert result["dry_run"] is True
    assert result["counts"]["joined"] == 3
    assert result["facets"]["location"] == 1
    assert not (tmp_path / "out").exists()


def test_cli_paths_applies_overrides(tmp_path: Path, capsys):
    config_path = _make_config_file(tmp_path)

    rc = main(["paths", "-c", str(config_path), "--dataset-id", "other", "--attempt", "4"])
    assert rc == 0
    paths = json.loads(capsys.readouterr().out)
    assert Path(paths["destination"]) == tmp_path / "out" / "occurrence" / "other"
    assert Path(paths["inputs"]["basic"]) == interpreted_path(tmp_path / "input", "other", 4, "basic")
    assert paths["staging"].endswith("4-<run-id>")


def test_cli_reports_failed_phase(tmp_path: Path, capsys):
    config_path = _make_config_file(tmp_path, with_metadata=False)

    rc = main(["run", "-c", str(config_path)])
    assert rc == 1
    err = capsys.readouterr().err
    assert "Error: " in err
    assert "phase=loading" in err
    assert not (tmp_path / "out" / "occurrence" / "ds1").exists()


def test_cli_rejects_unknown_config_extension(tmp_path: Path, capsys):
    bad = tmp_path / "config.ini"
    bad.write_text("[dataset]\n", encoding="utf-8")
    assert main(["run", "-c", str(bad)]) == 1
    assert "Unsupported config extension" in capsys.readouterr().err
