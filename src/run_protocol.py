"""Run-folder protocol: one timestamped directory per optimization run."""

from __future__ import annotations

import hashlib
import json
import os
import re
import shutil
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict

import numpy as np


@dataclass
class RunPaths:
    run_id: str
    run_dir: Path
    input_dir: Path
    artifacts_dir: Path
    manifest_path: Path
    metrics_path: Path
    summary_path: Path
    marks_path: Path
    trace_path: Path

    @classmethod
    def under(cls, run_dir: Path) -> "RunPaths":
        artifacts = run_dir / "artifacts"
        return cls(
            run_id=run_dir.name,
            run_dir=run_dir,
            input_dir=run_dir / "input",
            artifacts_dir=artifacts,
            manifest_path=run_dir / "manifest.json",
            metrics_path=run_dir / "metrics.json",
            summary_path=run_dir / "summary.md",
            marks_path=artifacts / "marks.json",
            trace_path=artifacts / "trace.json",
        )

    def to_dict(self) -> Dict[str, str]:
        return {
            "run_dir": str(self.run_dir),
            "manifest": str(self.manifest_path),
            "metrics": str(self.metrics_path),
            "summary": str(self.summary_path),
            "marks": str(self.marks_path),
            "trace": str(self.trace_path),
        }


def slugify(value: str, max_length: int = 48) -> str:
    slug = "-".join(re.findall(r"[a-z0-9]+", value.lower()))
    return slug[:max_length].strip("-") or "run"


def create_run_id(name: str) -> str:
    stamp = datetime.now(timezone.utc).strftime("%Y%m%d_%H%M%S_%f")
    return f"{stamp}_{slugify(name)}"


def prepare_run_dir(runs_root: str, name: str) -> RunPaths:
    """Create a fresh run directory; a clashing id gets a numeric suffix."""
    runs_path = Path(runs_root)
    runs_path.mkdir(parents=True, exist_ok=True)

    base = create_run_id(name)
    run_dir = runs_path / base
    suffix = 1
    while True:
        try:
            run_dir.mkdir()
            break
        except FileExistsError:
            suffix += 1
            run_dir = runs_path / f"{base}-{suffix}"

    paths = RunPaths.under(run_dir)
    paths.input_dir.mkdir()
    paths.artifacts_dir.mkdir()
    return paths


def copy_input_file(path: str, input_dir: Path) -> Path:
    src = Path(path)
    dst = input_dir / src.name
    if src.resolve() != dst.resolve():
        shutil.copy2(src, dst)
    return dst


def sha256_file(path: Path) -> str:
    digest = hashlib.sha256()
    with Path(path).open("rb") as handle:
        for chunk in iter(lambda: handle.read(1024 * 1024), b""):
            digest.update(chunk)
    return digest.hexdigest()


def _json_default(value: Any) -> Any:
    if isinstance(value, np.generic):
        return value.item()
    if isinstance(value, np.ndarray):
        return value.tolist()
    if isinstance(value, Path):
        return str(value)
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")


def write_json(path: Path, payload: Dict[str, Any]) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("w", encoding="utf-8") as f:
        json.dump(payload, f, indent=2, default=_json_default)


def write_text(path: Path, content: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("w", encoding="utf-8") as f:
        f.write(content)


def _remove(path: Path) -> None:
    if path.is_symlink() or path.is_file():
        path.unlink()
    elif path.is_dir():
        shutil.rmtree(path)


def update_latest_pointer(runs_root: str, run_dir: Path) -> None:
    """Point `<runs_root>/latest` at `run_dir`.

    A relative symlink is staged and swapped in with `os.replace`. Where
    symlinks are unsupported, `latest/latest_run.txt` names the run instead.
    """
    runs_path = Path(runs_root)
    latest = runs_path / "latest"
    staging = runs_path / ".latest.tmp"
    _remove(staging)
    try:
        staging.symlink_to(os.path.relpath(run_dir, runs_path), target_is_directory=True)
    except OSError:
        _remove(latest)
        write_text(latest / "latest_run.txt", run_dir.name)
        return
    if latest.is_dir() and not latest.is_symlink():
        shutil.rmtree(latest)
    os.replace(staging, latest)
