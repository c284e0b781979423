"""
Gradient figures.

Provides functions for:
- Plotting the cohort gradient of one (group, ROI) along every analysed axis
  (mean with a +/- SEM band, optionally each subject's profile)
- Comparing groups for one ROI on shared axes

Usage:
    python -m mrgrad.plotting <results.json> <results.npz> [-o figures/]
"""

import argparse
import logging
from pathlib import Path

import matplotlib
matplotlib.use("Agg")  # non-interactive backend for server/CI use
import matplotlib.pyplot as plt
import numpy as np

from mrgrad.cohort import RegionResult

logger = logging.getLogger(__name__)

# Group colours (colour-blind friendly)
GROUP_COLORS = ["#1F78B4", "#E31A1C", "#33A02C", "#FF7F00", "#6A3D9A", "#B15928"]

AXIS_TITLES = {1: "Axis 1", 2: "Axis 2", 3: "Axis 3"}


def _axis_label(rg: RegionResult, axis: int) -> str:
    return f"{AXIS_TITLES.get(axis, f'Axis {axis}')} (segment position)"


def _ylabel(rg: RegionResult) -> str:
    return f"{rg.parameter} [{rg.units}]" if rg.units else rg.parameter


def _plot_band(ax, x, mean, sem, color, label):
    ax.plot(x, mean, "-o", color=color, label=label, linewidth=2, markersize=4)
    ax.fill_between(x, mean - sem, mean + sem, color=color, alpha=0.25, linewidth=0)


# ---------------------------------------------------------------------------
# 1. plot_region_gradients
# ---------------------------------------------------------------------------

def plot_region_gradients(
    rg: RegionResult,
    output_path: str | Path | None = None,
    show_subjects: bool = True,
    color: str = GROUP_COLORS[0],
):
    """
    Plot the cohort gradient of one RegionResult, one panel per axis.

    Parameters
    ----------
    rg : RegionResult
    output_path : str or Path, optional
        If provided, the figure is saved to this path.
    show_subjects : bool
        Draw each subject's profile as a thin line behind the mean.
    color : str
        Colour of the cohort mean and SEM band.

    Returns
    -------
    fig : matplotlib.figure.Figure
    """
    n_axes = len(rg.axes)
    fig, axes = plt.subplots(1, n_axes, figsize=(4.5 * n_axes, 4), squeeze=False)
    axes = axes[0]

    for k, ax_number in enumerate(rg.axes):
        ax = axes[k]
        x = rg.X[k]
        if show_subjects:
            ax.plot(x, rg.Y[k], color="#999999", linewidth=0.6, alpha=0.6)
        _plot_band(ax, x, rg.Y_mean[k], rg.Y_SEM[k], color,
                   f"{rg.group_name} (n={int(np.max(rg.Y_count[k], initial=0))})")
        ax.set_xlabel(_axis_label(rg, ax_number))
        ax.set_xlim(0, 1.05)
        ax.set_title(AXIS_TITLES.get(ax_number, f"Axis {ax_number}"), fontweight="bold")
        if k == 0:
            ax.set_ylabel(_ylabel(rg))
        ax.legend(fontsize=8, frameon=False)

    title = f"{rg.roi_label}: {rg.parameter} gradients ({rg.stat}, {rg.sampling_method})"
    if rg.degraded_directionality:
        title += "\n(axis directions may disagree between subjects)"
    fig.suptitle(title, fontsize=12)
    plt.tight_layout()

    if output_path is not None:
        output_path = Path(output_path)
        output_path.parent.mkdir(parents=True, exist_ok=True)
        fig.savefig(str(output_path), dpi=200, bbox_inches="tight")
        logger.info("Saved gradient figure: %s", output_path)

    return fig


# ---------------------------------------------------------------------------
# 2. plot_group_comparison
# ---------------------------------------------------------------------------

def plot_group_comparison(results: list[RegionResult], output_path=None):
    """
    Overlay the cohort gradients of several groups for the same ROI.

    All results must share ROI and axes.
    """
    if not results:
        raise ValueError("No results to plot.")
    ref = results[0]
    for rg in results[1:]:
        if rg.roi != ref.roi or rg.axes != ref.axes:
            raise ValueError(
                "Group comparison needs results of the same ROI and axes; got "
                f"{ref.roi_label}{ref.axes} and {rg.roi_label}{rg.axes}"
            )

    n_axes = len(ref.axes)
    fig, axes = plt.subplots(1, n_axes, figsize=(4.5 * n_axes, 4), squeeze=False)
    axes = axes[0]

    for g, rg in enumerate(results):
        color = GROUP_COLORS[g % len(GROUP_COLORS)]
        for k, ax_number in enumerate(rg.axes):
            _plot_band(axes[k], rg.X[k], rg.Y_mean[k], rg.Y_SEM[k], color,
                       f"{rg.group_name} (n={rg.n_subjects - len(rg.missing_subjects)})")

    for k, ax_number in enumerate(ref.axes):
        axes[k].set_xlabel(_axis_label(ref, ax_number))
        axes[k].set_title(AXIS_TITLES.get(ax_number, f"Axis {ax_number}"), fontweight="bold")
        axes[k].legend(fontsize=8, frameon=False)
    axes[0].set_ylabel(_ylabel(ref))
    fig.suptitle(f"{ref.roi_label}: group comparison", fontsize=12)
    plt.tight_layout()

    if output_path is not None:
        output_path = Path(output_path)
        output_path.parent.mkdir(parents=True, exist_ok=True)
        fig.savefig(str(output_path), dpi=200, bbox_inches="tight")
        logger.info("Saved group comparison: %s", output_path)

    return fig


# ---------------------------------------------------------------------------
# Main
# ---------------------------------------------------------------------------

def load_saved_results(json_path: str | Path, npz_path: str | Path) -> list[RegionResult]:
    """Rebuild RegionResults (without individual data) from saved outputs."""
    from mrgrad.utils import load_metadata

    meta = load_metadata(json_path)
    arrays = np.load(str(npz_path))
    results = []
    for region in meta["regions"]:
        prefix = f"{region['group_name']}/{region['roi_label']}"
        fields = {name: [] for name in ("Y", "Y_mean", "Y_std", "Y_SEM", "Y_count", "X")}
        for ax in region["axes"]:
            for name in fields:
                fields[name].append(arrays[f"{prefix}/axis{ax}/{name}"])
        results.append(RegionResult(
            group_name=region["group_name"],
            roi=region["roi"],
            roi_label=region["roi_label"],
            axes=tuple(region["axes"]),
            n_segments=tuple(region["n_segments"]),
            parameter=region["parameter"],
            units=region["units"],
            sampling_method=region["sampling_method"],
            stat=region["stat"],
            directionality=tuple(region["directionality"]),
            directionality_source=region["directionality_source"],
            degraded_directionality=region["degraded_directionality"],
            flipped_axes=tuple(region["flipped_axes"]),
            missing_subjects=tuple(region["missing_subjects"]),
            descriptors=region["descriptors"],
            **fields,
        ))
    return results


def main():
    """Command-line entry point: plot saved mrgrad results."""
    parser = argparse.ArgumentParser(
        description="Plot ROI gradients from saved mrgrad outputs"
    )
    parser.add_argument("results_json", type=str, help="Path to <name>.json")
    parser.add_argument("results_npz", type=str, help="Path to <name>.npz")
    parser.add_argument(
        "--output-dir", "-o", type=str, default=None,
        help="Directory for figures (default: next to the results)",
    )
    args = parser.parse_args()

    logging.basicConfig(level=logging.INFO, format="%(levelname)s: %(message)s")

    output_dir = Path(args.output_dir) if args.output_dir else Path(args.results_json).parent / "figures"
    results = load_saved_results(args.results_json, args.results_npz)

    by_roi = {}
    for rg in results:
        fig = plot_region_gradients(
            rg, output_path=output_dir / f"{rg.group_name}_{rg.roi_label}.png",
        )
        plt.close(fig)
        by_roi.setdefault((rg.roi, rg.axes), []).append(rg)

    for group_results in by_roi.values():
        if len(group_results) > 1:
            fig = plot_group_comparison(
                group_results,
                output_path=output_dir / f"{group_results[0].roi_label}_groups.png",
            )
            plt.close(fig)
    logger.info("Done. Figures saved to: %s", output_dir)


if __name__ == "__main__":
    main()
