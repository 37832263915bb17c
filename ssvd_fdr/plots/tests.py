"""Smoke tests for the eFDR figures."""

from __future__ import annotations

import pandas as pd

from ssvd_fdr.plots.plot_fdr import generate_all_plots


def test_generate_all_plots_from_csvs(tmp_path) -> None:
    pd.DataFrame(
        {
            "alpha": [0.1, 0.2, 0.3],
            "detection_count": [9, 5, 4],
            "avg_perm_detections": [6.0, 2.5, 0.5],
            "efdr": [63.3, 47.5, 11.9],
            "gradient": [0, 4, 1],
            "failed_trials": [0, 0, 0],
            "failed": [False, False, True],
        }
    ).to_csv(tmp_path / "fdr_sweep.csv", index=False)
    pd.DataFrame(
        {
            "alpha": [0.1, 0.2],
            "efdr_first": [60.0, 40.0],
            "efdr_second": [61.0, 40.0],
            "efdr_abs_diff": [1.0, 0.0],
        }
    ).to_csv(tmp_path / "fdr_fixed_pattern_comparison.csv", index=False)

    figures = tmp_path / "figures"
    generate_all_plots(tmp_path, figures)

    assert (figures / "fdr_fig1_sweep.png").exists()
    assert (figures / "fdr_fig2_fixed_patterns.png").exists()
    # No repeatability CSV, so that figure is skipped.
    assert not (figures / "fdr_fig3_repeatability.png").exists()
