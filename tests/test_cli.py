from __future__ import annotations

import json
import subprocess
import sys
from pathlib import Path

import numpy as np

import run_protocol
from run_protocol import prepare_run_dir, sha256_file, slugify, update_latest_pointer, write_json

REPO_ROOT = Path(__file__).resolve().parent.parent
SCRIPT = REPO_ROOT / "scripts" / "run_mpp_optimization.py"


def _run(args, tmp_path: Path):
    cmd = [sys.executable, str(SCRIPT), "--runs-dir", str(tmp_path), *args]
    return subprocess.run(cmd, capture_output=True, text=True)


def _single_run_dir(tmp_path: Path) -> Path:
    run_dirs = sorted(
        [path for path in tmp_path.iterdir() if path.is_dir() and path.name != "latest"]
    )
    assert len(run_dirs) == 1
    return run_dirs[0]


def test_cli_runs_and_emits_artifacts(tmp_path: Path):
    proc = _run(
        [
            "--iterations", "150",
            "--synthetic-shape", "40,40",
            "--synthetic-blobs", "2",
            "--seed", "3",
            "--name", "blob run",
        ],
        tmp_path,
    )
    assert proc.returncode == 0, proc.stderr
    assert "Run ID:" in proc.stdout

    run_dir = _single_run_dir(tmp_path)
    assert run_dir.name.endswith("_blob-run")
    marks_path = run_dir / "artifacts" / "marks.json"
    trace_path = run_dir / "artifacts" / "trace.json"
    metrics_path = run_dir / "metrics.json"
    manifest_path = run_dir / "manifest.json"
    assert (run_dir / "summary.md").exists()
    assert (run_dir / "input" / "synthetic.npy").exists()

    marks = json.loads(marks_path.read_text(encoding="utf-8"))
    assert marks["schema_version"] == "mpp.marks.1"
    assert marks["count"] == len(marks["marks"])

    trace = json.loads(trace_path.read_text(encoding="utf-8"))
    assert len(trace["records"]) == 150

    metrics = json.loads(metrics_path.read_text(encoding="utf-8"))
    assert metrics["strategy"] == "mpp_annealing"
    assert len(metrics["chains"]) == 1
    assert metrics["chains"][0]["iterations"] == 150

    manifest = json.loads(manifest_path.read_text(encoding="utf-8"))
    assert manifest["config"]["schema_version"] == "mpp.run_config.1"
    assert manifest["config"]["iterations"] == 150
    assert manifest["input_hash_sha256"] == sha256_file(run_dir / "input" / "synthetic.npy")

    latest = tmp_path / "latest"
    assert latest.exists()


def test_cli_config_file_and_chains(tmp_path: Path):
    image_path = tmp_path / "image.npy"
    image = np.zeros((32, 32))
    image[10:18, 10:18] = 1.0
    np.save(image_path, image)

    config_path = tmp_path / "run.json"
    config_path.write_text(
        json.dumps({"iterations": 400, "chains": 2, "min_radius": 2.0, "max_radius": 6.0}),
        encoding="utf-8",
    )
    runs_dir = tmp_path / "runs"
    proc = _run(
        ["--image", str(image_path), "--config", str(config_path), "--iterations", "80"],
        runs_dir,
    )
    assert proc.returncode == 0, proc.stderr

    run_dir = _single_run_dir(runs_dir)
    metrics = json.loads((run_dir / "metrics.json").read_text(encoding="utf-8"))
    assert [c["iterations"] for c in metrics["chains"]] == [80, 80]
    assert metrics["image_shape"] == [32, 32]
    assert (run_dir / "input" / "image.npy").exists()


def test_cli_rejects_bad_config(tmp_path: Path):
    config_path = tmp_path / "run.json"
    config_path.write_text(json.dumps({"iterations": 10, "bogus": 1}), encoding="utf-8")
    proc = _run(["--config", str(config_path)], tmp_path / "runs")
    assert proc.returncode != 0
    assert "Unknown RunConfig keys" in proc.stderr


def test_run_protocol_helpers(tmp_path: Path):
    assert slugify("  Blob Run #2 ") == "blob-run-2"
    assert slugify("***") == "run"
    assert slugify("a" * 60 + " b", max_length=10) == "a" * 10
    assert slugify("ab---" + "c" * 10, max_length=3) == "ab"

    paths = prepare_run_dir(str(tmp_path), "demo")
    assert paths.input_dir.is_dir() and paths.artifacts_dir.is_dir()
    write_json(paths.metrics_path, {"value": np.float64(1.5), "shape": np.array([2, 3])})
    assert json.loads(paths.metrics_path.read_text(encoding="utf-8")) == {"value": 1.5, "shape": [2, 3]}

    update_latest_pointer(str(tmp_path), paths.run_dir)
    update_latest_pointer(str(tmp_path), paths.run_dir)
    assert (tmp_path / "latest" / "metrics.json").exists()
    assert (tmp_path / "latest").is_symlink()
    assert not (tmp_path / ".latest.tmp").exists()


def test_clashing_run_ids_get_suffixes(tmp_path: Path, monkeypatch):
    monkeypatch.setattr(run_protocol, "create_run_id", lambda name: "20260101_000000_000000_demo")
    first = prepare_run_dir(str(tmp_path), "demo")
    second = prepare_run_dir(str(tmp_path), "demo")
    assert first.run_id == "20260101_000000_000000_demo"
    assert second.run_id == "20260101_000000_000000_demo-2"
    assert second.marks_path == second.run_dir / "artifacts" / "marks.json"
    assert second.artifacts_dir.is_dir()


def test_latest_pointer_replaces_fallback_directory(tmp_path: Path):
    paths = prepare_run_dir(str(tmp_path), "demo")
    stale = tmp_path / "latest"
    stale.mkdir()
    (stale / "latest_run.txt").write_text("old", encoding="utf-8")
    update_latest_pointer(str(tmp_path), paths.run_dir)
    assert stale.resolve() == paths.run_dir.resolve()
