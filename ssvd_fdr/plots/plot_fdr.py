"""Plotting utilities for eFDR experiments.

Generates figures from:
- fdr_sweep.csv
- fdr_fixed_pattern_comparison.csv
- fdr_repeatability.csv
"""

from __future__ import annotations

import argparse
from pathlib import Path

import matplotlib.pyplot as plt
import pandas as pd

# Matplotlib defaults for readability
plt.rcParams.update({
    "font.size": 11,
    "axes.titlesize": 13,
    "axes.labelsize": 12,
    "xtick.labelsize": 10,
    "ytick.labelsize": 10,
    "legend.fontsize": 9,
    "figure.titlesize": 14,
    "lines.linewidth": 2,
    "lines.markersize": 7,
})

SERIES_COLORS = {
    "detections": "#2166ac",
    "null": "#92c5de",
    "efdr": "#d73027",
    "first": "#7b3294",
    "second": "#1a9850",
}


def load_frame(path: Path) -> pd.DataFrame:
    if not path.exists():
        raise FileNotFoundError(f"CSV file not found: {path}")
    return pd.read_csv(path)


def _save(fig, output_path: Path) -> None:
    output_path.parent.mkdir(parents=True, exist_ok=True)
    fig.savefig(output_path, dpi=150, bbox_inches="tight")
    plt.close(fig)
    print(f"Saved: {output_path}")


# ============================================================================
# Figure 1: Detections and eFDR along the alpha grid
# ============================================================================

def plot_sweep(csv_path: Path, output_path: Path) -> None:
    frame = load_frame(csv_path).sort_values("alpha")

    fig, ax = plt.subplots(figsize=(10, 6))
    ax.plot(frame["alpha"], frame["detection_count"], marker="o",
            color=SERIES_COLORS["detections"], label="detections (original)")
    ax.plot(frame["alpha"], frame["avg_perm_detections"], marker="s", linestyle="--",
            color=SERIES_COLORS["null"], label="mean detections (permuted)")
    ax.set_xlabel("Sparsity level α")
    ax.set_ylabel("Detections")
    ax.grid(True, alpha=0.3)

    twin = ax.twinx()
    twin.plot(frame["alpha"], frame["efdr"], marker="^", color=SERIES_COLORS["efdr"], label="eFDR (%)")
    twin.set_ylabel("eFDR (%)")
    twin.set_ylim(0, 105)

    failed = frame[frame["failed"].astype(bool)] if "failed" in frame else frame.iloc[0:0]
    if not failed.empty:
        twin.scatter(failed["alpha"], failed["efdr"], marker="x", s=80, color="black", label="failed level")

    handles, labels = ax.get_legend_handles_labels()
    twin_handles, twin_labels = twin.get_legend_handles_labels()
    ax.legend(handles + twin_handles, labels + twin_labels, loc="upper right")
    ax.set_title("SSVD-R1 detections and permutation eFDR vs α")
    _save(fig, output_path)


# ============================================================================
# Figure 2: Two sweeps on the same fixed permutation patterns
# ============================================================================

def plot_comparison(csv_path: Path, output_path: Path) -> None:
    frame = load_frame(csv_path).sort_values("alpha")

    fig, ax = plt.subplots(figsize=(10, 6))
    ax.plot(frame["alpha"], frame["efdr_first"], marker="o", color=SERIES_COLORS["first"], label="run 1")
    ax.plot(frame["alpha"], frame["efdr_second"], marker="s", linestyle="--",
            color=SERIES_COLORS["second"], label="run 2")
    ax.set_xlabel("Sparsity level α")
    ax.set_ylabel("eFDR (%)")
    ax.set_title(f"eFDR on identical permutations (max |Δ| = {frame['efdr_abs_diff'].max():.2f} pts)")
    ax.grid(True, alpha=0.3)
    ax.legend(loc="upper right")
    _save(fig, output_path)


# ============================================================================
# Figure 3: eFDR at the ends of the grid over repeated runs
# ============================================================================

def plot_repeatability(csv_path: Path, output_path: Path) -> None:
    frame = load_frame(csv_path)

    fig, ax = plt.subplots(figsize=(8, 8))
    ordered = frame["ordered"].astype(bool)
    ax.scatter(frame.loc[ordered, "efdr_smallest_alpha"], frame.loc[ordered, "efdr_largest_alpha"],
               color=SERIES_COLORS["second"], label="smallest α lower")
    ax.scatter(frame.loc[~ordered, "efdr_smallest_alpha"], frame.loc[~ordered, "efdr_largest_alpha"],
               color=SERIES_COLORS["efdr"], marker="x", label="not ordered")
    ax.plot([0, 100], [0, 100], color="#4d4d4d", linewidth=1)
    ax.set_xlabel("eFDR at smallest α (%)")
    ax.set_ylabel("eFDR at largest α (%)")
    ax.set_title(f"Ordered in {100 * ordered.mean():.0f}% of {len(frame)} runs")
    ax.grid(True, alpha=0.3)
    ax.legend(loc="lower right")
    _save(fig, output_path)


# ============================================================================
# Entrypoint
# ============================================================================

def generate_all_plots(results_dir: Path, output_dir: Path) -> None:
    output_dir.mkdir(parents=True, exist_ok=True)

    figures = [
        ("fdr_sweep.csv", plot_sweep, "fdr_fig1_sweep.png"),
        ("fdr_fixed_pattern_comparison.csv", plot_comparison, "fdr_fig2_fixed_patterns.png"),
        ("fdr_repeatability.csv", plot_repeatability, "fdr_fig3_repeatability.png"),
    ]
    for csv_name, plot_fn, png_name in figures:
        csv_path = results_dir / csv_name
        if csv_path.exists():
            plot_fn(csv_path, output_dir / png_name)
        else:
            print(f"Skipping: {csv_path} not found")


def main() -> None:
    parser = argparse.ArgumentParser(description="Generate eFDR plots from experiment CSVs")
    parser.add_argument(
        "--results-dir",
        type=Path,
        default=Path("ssvd_fdr/fdr/results"),
        help="Directory containing eFDR CSVs",
    )
    parser.add_argument(
        "--output-dir",
        type=Path,
        default=Path("ssvd_fdr/fdr/results/figures"),
        help="Directory to save plots",
    )
    args = parser.parse_args()
    generate_all_plots(args.results_dir, args.output_dir)


if __name__ == "__main__":  # pragma: no cover - plotting entrypoint
    main()
