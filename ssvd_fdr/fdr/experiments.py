"""eFDR experiment runner.

Experiments implemented:
1) Alpha sweep on a planted-signal or user-supplied matrix.
2) Fixed-pattern comparison: two sweeps resampled with the same pattern set,
   so that differences between them come from the runs, not the data.
3) Repeatability: how often the smallest alpha has a lower eFDR than the
   largest over repeated random sweeps.

Outputs are CSVs under the chosen output directory:
- ``fdr_sweep.csv``
- ``fdr_fixed_pattern_comparison.csv``
- ``fdr_repeatability.csv``
"""

from __future__ import annotations

import argparse
import asyncio
import csv
import time
from pathlib import Path
from typing import Dict, List, Optional, Sequence

import numpy as np
import pandas as pd

from ssvd_fdr.common.config import PermutationScheme, SweepConfig
from ssvd_fdr.common.errors import InvalidInput
from ssvd_fdr.common.logging_utils import get_logger, set_verbosity
from ssvd_fdr.common.resampling import generate_fixed_patterns, load_patterns, save_patterns
from ssvd_fdr.common.scheduling import AnalysisContext, ProgressEvent
from ssvd_fdr.common.timing import time_function
from ssvd_fdr.fdr.core import SweepResult, sweep_fdr
from ssvd_fdr.ssvd.core import power_iteration_svd
from ssvd_fdr.worker.progress_store import JsonlProgressStore, build_snapshot

logger = get_logger(__name__)

# Defaults of the planted-signal test problem.
DEFAULT_ROWS = 100
DEFAULT_COLS = 20
DEFAULT_SIGNAL_ROWS = 5
DEFAULT_OFFSET = 0.8
DEFAULT_NOISE = 0.1


def _write_csv(path: Path, rows: List[Dict]) -> None:
    """Write rows to CSV with a header derived from the first row."""

    path.parent.mkdir(parents=True, exist_ok=True)
    if not rows:
        return
    fieldnames = list(rows[0].keys())
    with path.open("w", newline="", encoding="utf-8") as f:
        writer = csv.DictWriter(f, fieldnames=fieldnames)
        writer.writeheader()
        writer.writerows(rows)
    logger.info("Wrote %d rows to %s", len(rows), path)


# ============================================================================
# Inputs
# ============================================================================

def planted_signal_matrix(
    rows: int = DEFAULT_ROWS,
    cols: int = DEFAULT_COLS,
    signal_rows: int = DEFAULT_SIGNAL_ROWS,
    offset: float = DEFAULT_OFFSET,
    noise: float = DEFAULT_NOISE,
    seed: Optional[int] = None,
) -> np.ndarray:
    """Uniform noise in ``[-noise, noise]`` with ``offset`` added to the first ``signal_rows`` rows."""

    if not 0 <= signal_rows <= rows:
        raise InvalidInput("signal_rows must be between 0 and rows")
    rng = np.random.default_rng(seed)
    x = rng.uniform(-noise, noise, size=(rows, cols))
    x[:signal_rows] += offset
    return x


def load_matrix(path: Path, header: bool = False) -> np.ndarray:
    """Read a numeric matrix from CSV, one observation per row."""

    frame = pd.read_csv(path, header=0 if header else None)
    numeric = frame.apply(pd.to_numeric, errors="coerce")
    if numeric.isna().any().any():
        raise InvalidInput(f"{path} contains non-numeric or missing entries")
    return numeric.to_numpy(dtype=np.float64)


def resolve_patterns(path: Optional[Path], count: int, row_count: int, seed: Optional[int]) -> Optional[List[np.ndarray]]:
    """Load a fixed pattern set from ``path``, creating it there first if needed."""

    if path is None:
        return None
    if path.exists():
        patterns = load_patterns(path)
        logger.info("Loaded %d fixed permutation patterns from %s", len(patterns), path)
        return patterns
    patterns = generate_fixed_patterns(count, row_count, seed=seed)
    save_patterns(path, patterns)
    logger.info("Saved %d new fixed permutation patterns to %s", len(patterns), path)
    return patterns


def _context(progress_log: Optional[Path]) -> AnalysisContext:
    store = JsonlProgressStore(progress_log) if progress_log is not None else None
    started_at = time.time()

    def on_progress(event: ProgressEvent) -> None:
        logger.debug("%d/%d %s", event.current, event.total, event.message)
        if store is not None:
            store.save(build_snapshot(event, now=time.time(), started_at=started_at))

    return AnalysisContext(progress=on_progress)


def _sweep(
    matrix: np.ndarray,
    config: SweepConfig,
    patterns: Optional[Sequence[Sequence[int]]] = None,
    seed: Optional[int] = None,
    progress_log: Optional[Path] = None,
) -> SweepResult:
    return asyncio.run(
        sweep_fdr(
            matrix,
            alpha0=config.alpha0,
            alpha_max=config.alpha_max,
            n_alpha=config.n_alpha,
            n_perm=config.n_perm,
            nsupp=config.nsupp,
            initial_svd=power_iteration_svd(matrix, seed=seed),
            patterns=patterns,
            scheme=config.scheme,
            context=_context(progress_log),
            seed=seed,
            batch_size=config.batch_size,
        )
    )


# ============================================================================
# Experiment 1: Alpha sweep
# ============================================================================

def run_sweep_experiment(
    output_dir: Path,
    matrix: np.ndarray,
    config: SweepConfig,
    patterns: Optional[Sequence[Sequence[int]]] = None,
    progress_log: Optional[Path] = None,
) -> SweepResult:
    logger.info("Running eFDR sweep on %dx%d matrix", matrix.shape[0], matrix.shape[1])

    result, timing = time_function(lambda: _sweep(matrix, config, patterns, config.seed, progress_log))
    frame = result.to_frame()
    frame["runtime_sec"] = timing.seconds
    output_dir.mkdir(parents=True, exist_ok=True)
    frame.to_csv(output_dir / "fdr_sweep.csv", index=False)
    logger.info("Sweep finished in %.2fs (cancelled=%s)", timing.seconds, result.cancelled)
    return result


# ============================================================================
# Experiment 2: Two sweeps on one fixed pattern set
# ============================================================================

def run_fixed_pattern_comparison(
    output_dir: Path,
    matrix: np.ndarray,
    config: SweepConfig,
    patterns: Optional[Sequence[Sequence[int]]] = None,
) -> List[Dict]:
    logger.info("Running fixed-pattern comparison (Nperm=%d)", config.n_perm)

    if patterns is None:
        patterns = generate_fixed_patterns(config.n_perm, matrix.shape[0], seed=config.seed)

    base_seed = 0 if config.seed is None else config.seed
    first, first_timing = time_function(lambda: _sweep(matrix, config, patterns, seed=base_seed))
    second, second_timing = time_function(lambda: _sweep(matrix, config, patterns, seed=base_seed + 1))

    rows: List[Dict] = []
    for a, b in zip(first.results, second.results):
        rows.append(
            {
                "alpha": a.alpha,
                "detections_first": a.detection_count,
                "detections_second": b.detection_count,
                "avg_perm_first": a.avg_perm_detections,
                "avg_perm_second": b.avg_perm_detections,
                "efdr_first": a.efdr,
                "efdr_second": b.efdr,
                "efdr_abs_diff": abs(a.efdr - b.efdr),
                "runtime_first_sec": first_timing.seconds,
                "runtime_second_sec": second_timing.seconds,
            }
        )
    _write_csv(output_dir / "fdr_fixed_pattern_comparison.csv", rows)
    return rows


# ============================================================================
# Experiment 3: eFDR ordering over repeated random sweeps
# ============================================================================

def run_repeatability(
    output_dir: Path,
    config: SweepConfig,
    num_runs: int = 10,
    rows: int = DEFAULT_ROWS,
    cols: int = DEFAULT_COLS,
    signal_rows: int = DEFAULT_SIGNAL_ROWS,
) -> float:
    """Return the fraction of runs in which eFDR at the smallest alpha is below eFDR at the largest."""

    logger.info("Running eFDR repeatability (%d runs)", num_runs)

    rng = np.random.default_rng(config.seed)
    records: List[Dict] = []
    for run in range(num_runs):
        run_seed = int(rng.integers(0, 1_000_000))
        matrix = planted_signal_matrix(rows, cols, signal_rows, seed=run_seed)
        result = _sweep(matrix, config, seed=run_seed)
        records.append(
            {
                "run": run,
                "seed": run_seed,
                "efdr_smallest_alpha": result.fdr_values[0],
                "efdr_largest_alpha": result.fdr_values[-1],
                "ordered": result.fdr_values[0] < result.fdr_values[-1],
                "detections": " ".join(str(d) for d in result.detection_counts),
            }
        )
    _write_csv(output_dir / "fdr_repeatability.csv", records)
    fraction = sum(r["ordered"] for r in records) / float(num_runs) if num_runs else 0.0
    logger.info("eFDR(smallest alpha) < eFDR(largest alpha) in %.0f%% of runs", 100 * fraction)
    return fraction


# ============================================================================
# Main Entry Point
# ============================================================================

def main(argv: Optional[Sequence[str]] = None) -> None:
    parser = argparse.ArgumentParser(description="Sparse rank-1 SVD with permutation eFDR")
    parser.add_argument(
        "experiment",
        choices=["sweep", "compare", "repeat"],
        help="Which experiment to run",
    )
    parser.add_argument("--matrix", type=Path, default=None, help="CSV matrix; a planted-signal matrix if omitted")
    parser.add_argument("--header", action="store_true", help="The CSV matrix has a header row")
    parser.add_argument("--rows", type=int, default=DEFAULT_ROWS)
    parser.add_argument("--cols", type=int, default=DEFAULT_COLS)
    parser.add_argument("--signal-rows", type=int, default=DEFAULT_SIGNAL_ROWS)
    parser.add_argument("--alpha0", type=float, default=0.001)
    parser.add_argument("--alpha-max", type=float, default=0.1)
    parser.add_argument("--n-alpha", type=int, default=10)
    parser.add_argument("--n-perm", type=int, default=5)
    parser.add_argument("--nsupp", type=int, default=None, help="Signal-row estimate; defaults to --signal-rows")
    parser.add_argument("--batch-size", type=int, default=4)
    parser.add_argument(
        "--scheme",
        choices=[s.value for s in PermutationScheme],
        default=PermutationScheme.COLUMNS.value,
    )
    parser.add_argument("--patterns", type=Path, default=None, help="Fixed pattern JSON, created if missing")
    parser.add_argument("--runs", type=int, default=10, help="Number of runs for 'repeat'")
    parser.add_argument("--seed", type=int, default=42)
    parser.add_argument("--progress-log", type=Path, default=None, help="JSONL file receiving progress snapshots")
    parser.add_argument(
        "--output-dir",
        type=Path,
        default=Path("ssvd_fdr/fdr/results"),
        help="Directory for result CSVs",
    )
    parser.add_argument("-v", "--verbose", action="count", default=0)
    args = parser.parse_args(argv)
    set_verbosity(args.verbose)

    if args.matrix is not None:
        matrix = load_matrix(args.matrix, header=args.header)
    else:
        matrix = planted_signal_matrix(args.rows, args.cols, args.signal_rows, seed=args.seed)

    config = SweepConfig(
        alpha0=args.alpha0,
        alpha_max=args.alpha_max,
        n_alpha=args.n_alpha,
        n_perm=args.n_perm,
        nsupp=args.nsupp if args.nsupp is not None else args.signal_rows,
        batch_size=args.batch_size,
        seed=args.seed,
        scheme=PermutationScheme(args.scheme),
    )
    patterns = resolve_patterns(args.patterns, config.n_perm, matrix.shape[0], args.seed)

    if args.experiment == "sweep":
        run_sweep_experiment(args.output_dir, matrix, config, patterns, args.progress_log)
    elif args.experiment == "compare":
        run_fixed_pattern_comparison(args.output_dir, matrix, config, patterns)
    else:
        run_repeatability(args.output_dir, config, args.runs, args.rows, args.cols, args.signal_rows)


if __name__ == "__main__":  # pragma: no cover - manual execution
    main()
