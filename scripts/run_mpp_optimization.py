#!/usr/bin/env python3
"""Detect blob-like objects in an image with marked point process annealing."""

from __future__ import annotations

import argparse
import logging
import sys
import time
from pathlib import Path
from typing import List, Optional, Tuple

sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

import numpy as np
from scipy.ndimage import gaussian_filter

from mpp import (
    CompositeFeedback,
    LoggingFeedback,
    RecordingFeedback,
    RunConfig,
    best_result,
    chain_seeds,
    load_run_config,
    run_chains,
)
from mpp.assembly import build_configuration, build_context, scheme_factory
from mpp.serialization import write_marks_json
from run_protocol import (
    copy_input_file,
    prepare_run_dir,
    sha256_file,
    update_latest_pointer,
    write_json,
    write_text,
)

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Marked point process optimization: fit marks to an image"
    )
    parser.add_argument("--image", default=None, help="Input image (.npy, indexed [x, y(, z)])")
    parser.add_argument(
        "--synthetic-blobs",
        type=int,
        default=6,
        help="Number of blobs in the synthetic image used when --image is absent",
    )
    parser.add_argument(
        "--synthetic-shape",
        default="96,96",
        help="Comma-separated synthetic image shape (2 or 3 values)",
    )
    parser.add_argument("--config", default=None, help="Run config JSON (CLI flags override it)")
    parser.add_argument("--mark-type", choices=["ellipse", "ellipsoid"], default=None)
    parser.add_argument("--iterations", type=int, default=None, help="Non-null iterations per chain")
    parser.add_argument("--seed", type=int, default=None, help="Master random seed")
    parser.add_argument("--chains", type=int, default=None, help="Independent annealing chains")
    parser.add_argument(
        "--initial-marks", type=int, default=None, help="Prior births placed before annealing starts"
    )
    parser.add_argument("--name", default="mpp", help="Run name")
    parser.add_argument("--runs-dir", default="runs", help="Runs output root")
    parser.add_argument(
        "--log-interval", type=int, default=500, help="Iterations between progress logs"
    )
    parser.add_argument(
        "-v", "--verbose", action="store_true", help="Enable debug logs"
    )
    return parser


def _parse_shape(text: str) -> Tuple[int, ...]:
    shape = tuple(int(v) for v in text.split(",") if v.strip())
    if len(shape) not in (2, 3) or any(v < 4 for v in shape):
        raise ValueError(f"Synthetic shape must be 2 or 3 sizes >= 4, got '{text}'")
    return shape


def synthetic_blob_image(
    shape: Tuple[int, ...],
    blobs: int,
    radius_range: Tuple[float, float],
    seed: Optional[int],
) -> np.ndarray:
    """Smoothed bright discs/balls on a noisy dark background."""
    rng = np.random.default_rng(seed)
    grid = np.indices(shape).astype(float)
    image = np.zeros(shape, dtype=float)
    lo, hi = radius_range
    for _ in range(blobs):
        radius = rng.uniform(lo, hi)
        center = [rng.uniform(radius, size - 1 - radius) for size in shape]
        dist2 = sum((grid[axis] - center[axis]) ** 2 for axis in range(len(shape)))
        image[dist2 <= radius ** 2] = 1.0
    image = gaussian_filter(image, sigma=1.0)
    image += rng.normal(0.0, 0.05, size=shape)
    return image


def _build_summary(
    *,
    run_id: str,
    elapsed_s: float,
    config: RunConfig,
    results: List,
    best,
) -> str:
    lines = [
        f"# Run {run_id}",
        "",
        f"- Duration: {elapsed_s:.2f}s",
        f"- Mark type: {config.mark_type}",
        f"- Chains: {len(results)}",
        f"- Best energy: {best.best_energy:.4f} ({len(best.best_marks)} marks, seed {best.seed})",
        f"- Stop reason: {best.stop_reason}",
        "",
        "## Chains",
        "| seed | iterations | accepted | acceptance | final energy | best energy | marks |",
        "|---|---|---|---|---|---|---|",
    ]
    for r in results:
        lines.append(
            f"| {r.seed} | {r.iterations} | {r.accepted} | {r.acceptance_rate:.3f} "
            f"| {r.energy:.4f} | {r.best_energy:.4f} | {len(r.best_marks)} |"
        )
    lines.append("")
    return "\n".join(lines)


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(levelname)s %(name)s: %(message)s",
    )

    started = time.perf_counter()
    config = load_run_config(args.config) if args.config else RunConfig()
    config = config.with_overrides(
        mark_type=args.mark_type,
        iterations=args.iterations,
        seed=args.seed,
        chains=args.chains,
        initial_marks=args.initial_marks,
    )
    run_paths = prepare_run_dir(args.runs_dir, args.name)

    if args.image:
        image_path = copy_input_file(args.image, run_paths.input_dir)
        image = np.load(image_path)
    else:
        shape = _parse_shape(args.synthetic_shape)
        if config.mark_type == "ellipsoid" and len(shape) == 2:
            shape = shape + (max(8, min(shape) // 2),)
        image = synthetic_blob_image(
            shape, args.synthetic_blobs, (config.min_radius, config.max_radius), config.seed,
        )
        image_path = run_paths.input_dir / "synthetic.npy"
        np.save(image_path, image)
    logger.info("Image %s shape=%s", image_path.name, image.shape)

    context = build_context(image)
    recorders: List[RecordingFeedback] = []

    def feedback_factory() -> CompositeFeedback:
        recorder = RecordingFeedback(max_records=10_000)
        recorders.append(recorder)
        return CompositeFeedback([LoggingFeedback(interval=max(1, args.log_interval)), recorder])

    seeds = chain_seeds(config.seed, config.chains)
    results = run_chains(
        scheme_factory(config, context, feedback_factory=feedback_factory),
        [],
        seeds,
        max_workers=config.max_workers,
        configuration_factory=lambda marks: build_configuration(config, marks),
    )
    best = best_result(results)
    elapsed = time.perf_counter() - started

    trace = next((r.records for r in recorders if r.result is best), [])
    write_marks_json(
        run_paths.marks_path,
        best.best_marks,
        metadata={"run_id": run_paths.run_id, "energy": best.best_energy, "seed": best.seed},
    )
    write_json(run_paths.trace_path, {"run_id": run_paths.run_id, "seed": best.seed, "records": trace})

    metrics_payload = {
        "run_id": run_paths.run_id,
        "strategy": "mpp_annealing",
        "elapsed_s": round(elapsed, 3),
        "image_shape": list(image.shape),
        "best_chain_seed": best.seed,
        "best_energy": best.best_energy,
        "best_mark_count": len(best.best_marks),
        "chains": [r.to_dict() for r in results],
    }
    write_json(run_paths.metrics_path, metrics_payload)
    write_text(
        run_paths.summary_path,
        _build_summary(
            run_id=run_paths.run_id, elapsed_s=elapsed, config=config, results=results, best=best,
        ),
    )

    manifest = {
        "run_id": run_paths.run_id,
        "strategy": "mpp_annealing",
        "name": args.name,
        "created_utc": time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime()),
        "input_image": str(image_path),
        "input_hash_sha256": sha256_file(image_path),
        "config": config.to_dict(),
        "seeds": seeds,
        "artifacts": run_paths.to_dict(),
    }
    write_json(run_paths.manifest_path, manifest)
    update_latest_pointer(args.runs_dir, run_paths.run_dir)

    print(f"Run ID: {run_paths.run_id}")
    print(f"Run dir: {run_paths.run_dir}")
    print(f"Best energy: {best.best_energy:.4f}")
    print(f"Marks: {len(best.best_marks)}")
    print(f"Stop reason: {best.stop_reason}")
    print(f"Marks JSON: {run_paths.marks_path}")
    print(f"Metrics: {run_paths.metrics_path}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
