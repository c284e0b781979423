"""
Writing mrgrad results to disk.

Outputs in ``output_dir``:
  - ``<name>.csv``  -- long-format summary, one row per group / ROI / axis /
                       segment (cohort mean, std, SEM, valid subject count)
  - ``<name>.npz``  -- per-region arrays: subject matrices ``Y`` and the
                       summary sequences, keyed ``<group>/<roi>/axis<k>/<field>``
  - ``<name>.json`` -- region metadata, group descriptors and (unless the
                       output mode is minimal) per-subject axis information
  - ``segmentations/`` (extended mode) -- one NIfTI label volume per subject
                       and axis holding segment indices, in the subject's
                       original image orientation
"""

import logging
from pathlib import Path

import numpy as np
import pandas as pd

from mrgrad.cohort import RegionResult
from mrgrad.errors import PersistenceFailure
from mrgrad.segmentation import segment_volume
from mrgrad.utils import (
    Orientation,
    restore_original_strides,
    save_metadata,
    save_nifti,
)

logger = logging.getLogger(__name__)

SUMMARY_COLUMNS = [
    "group", "roi", "roi_label", "parameter", "units", "axis", "n_segments",
    "segment", "x", "mean", "std", "sem", "n_valid", "n_subjects",
    "sampling_method", "stat", "flipped",
]


def _iter_results(results):
    """Flatten a (groups x ROIs) nested list or a single RegionResult."""
    if isinstance(results, RegionResult):
        yield results
        return
    for item in results:
        if isinstance(item, RegionResult):
            yield item
        else:
            yield from _iter_results(item)


def _stem(output_name: str) -> str:
    name = Path(output_name).name
    for suffix in (".mat", ".csv", ".npz", ".json"):
        if name.endswith(suffix):
            return name[: -len(suffix)]
    return name


# ---------------------------------------------------------------------------
# Summary table
# ---------------------------------------------------------------------------

def results_to_table(results) -> pd.DataFrame:
    """Long-format summary table of cohort gradients."""
    rows = []
    for rg in _iter_results(results):
        for k, ax in enumerate(rg.axes):
            for s in range(rg.n_segments[k]):
                rows.append({
                    "group": rg.group_name,
                    "roi": rg.roi,
                    "roi_label": rg.roi_label,
                    "parameter": rg.parameter,
                    "units": rg.units,
                    "axis": ax,
                    "n_segments": rg.n_segments[k],
                    "segment": s + 1,
                    "x": float(rg.X[k][s]),
                    "mean": float(rg.Y_mean[k][s]),
                    "std": float(rg.Y_std[k][s]),
                    "sem": float(rg.Y_SEM[k][s]),
                    "n_valid": int(rg.Y_count[k][s]),
                    "n_subjects": rg.n_subjects,
                    "sampling_method": rg.sampling_method,
                    "stat": rg.stat,
                    "flipped": ax in rg.flipped_axes,
                })
    return pd.DataFrame(rows, columns=SUMMARY_COLUMNS)


# ---------------------------------------------------------------------------
# Metadata
# ---------------------------------------------------------------------------

def _to_builtin(value):
    """Convert numpy containers to JSON-friendly builtins."""
    if isinstance(value, np.ndarray):
        return value.tolist()
    if isinstance(value, (np.integer,)):
        return int(value)
    if isinstance(value, (np.floating,)):
        return float(value)
    if isinstance(value, dict):
        return {str(k): _to_builtin(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_to_builtin(v) for v in value]
    return value


def _subject_metadata(subject) -> dict | None:
    if subject is None:
        return None
    out = {}
    for ax, profile in subject.items():
        meta = {k: v for k, v in profile.meta.items() if k != "original_affine"}
        out[f"axis{ax}"] = _to_builtin({
            "axis_vector": profile.axis_vector,
            "image_axis": profile.image_axis,
            "ambiguous": profile.ambiguous,
            "coord_min": profile.coord_min,
            "coord_max": profile.coord_max,
            "segment_centers": profile.segment_centers,
            "counts": profile.counts,
            "baseline": profile.baseline,
            **meta,
        })
    return out


def region_metadata(rg: RegionResult) -> dict:
    """JSON-serializable description of one RegionResult."""
    return _to_builtin({
        "group_name": rg.group_name,
        "roi": rg.roi,
        "roi_label": rg.roi_label,
        "axes": rg.axes,
        "axis_labels": rg.axis_labels,
        "n_segments": rg.n_segments,
        "parameter": rg.parameter,
        "units": rg.units,
        "sampling_method": rg.sampling_method,
        "stat": rg.stat,
        "directionality": rg.directionality,
        "directionality_source": rg.directionality_source,
        "degraded_directionality": rg.degraded_directionality,
        "flipped_axes": rg.flipped_axes,
        "missing_subjects": rg.missing_subjects,
        "n_subjects": rg.n_subjects,
        "descriptors": rg.descriptors,
        "individual_data": [_subject_metadata(s) for s in rg.individual_data],
    })


# ---------------------------------------------------------------------------
# Saving
# ---------------------------------------------------------------------------

def save_results(
    results,
    output_dir: str | Path,
    output_name: str = "mrgrad_results",
    table: pd.DataFrame | None = None,
) -> dict[str, Path]:
    """
    Save summary CSV, region arrays (.npz) and metadata (.json).

    Returns the written paths keyed 'csv', 'npz', 'json'.

    Raises
    ------
    PersistenceFailure
        If any output could not be written, or two regions share a group
        name and ROI label.
    """
    output_dir = Path(output_dir)
    stem = _stem(output_name)
    paths = {
        "csv": output_dir / f"{stem}.csv",
        "npz": output_dir / f"{stem}.npz",
        "json": output_dir / f"{stem}.json",
    }
    regions = list(_iter_results(results))
    keys = [(rg.group_name, rg.roi_label) for rg in regions]
    duplicates = sorted({k for k in keys if keys.count(k) > 1})
    if duplicates:
        raise PersistenceFailure(
            "Results share a group name and ROI label and would overwrite "
            f"each other: {duplicates}"
        )
    if table is None:
        table = results_to_table(regions)

    logger.info("Saving summary outputs to %s", output_dir)
    try:
        output_dir.mkdir(parents=True, exist_ok=True)

        table.to_csv(paths["csv"], index=False, float_format="%.6f")

        arrays = {}
        for rg in regions:
            prefix = f"{rg.group_name}/{rg.roi_label}"
            for k, ax in enumerate(rg.axes):
                key = f"{prefix}/axis{ax}"
                arrays[f"{key}/Y"] = rg.Y[k]
                arrays[f"{key}/Y_mean"] = rg.Y_mean[k]
                arrays[f"{key}/Y_std"] = rg.Y_std[k]
                arrays[f"{key}/Y_SEM"] = rg.Y_SEM[k]
                arrays[f"{key}/Y_count"] = rg.Y_count[k]
                arrays[f"{key}/X"] = rg.X[k]
        np.savez_compressed(paths["npz"], **arrays)

        save_metadata(
            {"regions": [region_metadata(rg) for rg in regions]},
            paths["json"],
        )
    except OSError as exc:
        raise PersistenceFailure(
            f"An error occurred while saving the output files to {output_dir}; "
            f"the results were not saved: {exc}"
        ) from exc

    not_written = [str(p) for p in paths.values() if not p.exists()]
    if not_written:
        raise PersistenceFailure(f"Output files were not written: {not_written}")

    logger.info("Saved summary CSV: %s", paths["csv"])
    logger.info("Saved region arrays: %s", paths["npz"])
    return paths


def save_segmentations(rg: RegionResult, output_dir: str | Path) -> list[Path]:
    """
    Write per-subject segment label volumes (extended output mode).

    Each file holds the segment index (1..N, 0 outside the ROI) of one axis,
    mapped back to the subject's original image orientation.
    """
    seg_dir = Path(output_dir) / "segmentations" / rg.group_name / rg.roi_label
    names = rg.descriptors.get("subject_names")
    written = []

    kept = [p for subject in rg.individual_data if subject for p in subject.values()]
    if any(p.assignment is None for p in kept):
        logger.warning(
            "No voxel assignments kept for %s %s; run with output_mode='extended'.",
            rg.group_name, rg.roi_label,
        )
        return written

    for i, subject in enumerate(rg.individual_data):
        if subject is None:
            continue
        subject_name = str(names[i]) if names is not None and i < len(names) else f"sub-{i + 1:03d}"
        for ax, profile in subject.items():
            meta = profile.meta
            orientation = Orientation(
                strides=tuple(meta["original_strides"]),
                original_shape=tuple(meta["original_image_size"]),
                original_affine=meta["original_affine"],
            )
            volume = segment_volume(
                meta["analysis_image_size"], profile.voxel_coords, profile.assignment,
            )
            volume = restore_original_strides(volume, orientation)
            path = seg_dir / f"{subject_name}_axis{ax}_{profile.n_segments}seg.nii.gz"
            try:
                save_nifti(volume, orientation.original_affine, path)
            except OSError as exc:
                raise PersistenceFailure(f"Could not write segmentation {path}: {exc}") from exc
            written.append(path)

    logger.info("Saved %d segmentation volumes under %s", len(written), seg_dir)
    return written
