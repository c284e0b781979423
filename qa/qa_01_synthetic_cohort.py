"""
QA Check 01 --- Synthetic cohort sanity tests.
===============================================

This script writes a small synthetic cohort to disk and runs it through the
full file-based mrgrad pipeline.  Every subject's parameter map is a linear
ramp, so the expected gradient of each test case is known *a priori*.

Test cases
----------
1. **Sphere ramp** -- Three spheres (radius 10 voxels) at different positions
   with a 0 -> 1 ramp along X; axes from an elongated alternative ROI.  Each
   profile, and the cohort mean, should be close to [0.1, 0.3, 0.5, 0.7, 0.9]
   with near-zero standard deviation.
2. **Mixed orientations** -- Same cohort with two subjects stored with a
   reversed X axis; profiles must equal those of test 1.
3. **Degenerate subject** -- One subject's ROI has only two voxels; a strict
   run must abort.  With ``ignore_missing`` its column must be all-NaN and
   the other subjects unaffected.
4. **Putamen convention** -- A left-putamen-like ellipsoid (label 12) with a
   posterior -> anterior ramp; axis 1 must be reported anterior to posterior
   (decreasing profile) after the display convention flip.
5. **Equivolume** -- Voxel counts of equivolume segments differ by at most 1.

Outputs
-------
* ``docs/qa_reports/qa01_<case>_gradients.png``  (one per test case)
* ``docs/qa_reports/qa01_summary.csv``           (cohort summary table)
* ``docs/qa_reports/qa01_summary.txt``           (one-line pass/fail)

Usage
-----
::

    python -m qa.qa_01_synthetic_cohort
"""

from __future__ import annotations

import logging
import tempfile
from pathlib import Path

import matplotlib
matplotlib.use("Agg")
import matplotlib.pyplot as plt
import nibabel as nib
import numpy as np
import pandas as pd

from mrgrad.errors import DegenerateRegion
from mrgrad.pipeline import GroupData, MrGradConfig, run_mrgrad
from mrgrad.plotting import plot_region_gradients
from mrgrad.utils import make_sphere_mask

logger = logging.getLogger(__name__)
logging.basicConfig(
    level=logging.INFO,
    format="%(levelname)s  %(name)s  %(message)s",
)

DOCS_QA = Path(__file__).resolve().parent.parent / "docs" / "qa_reports"

SHAPE = (32, 32, 32)
RADIUS = 10.0
CENTERS = [(15.5, 15.5, 15.5), (16.5, 14.5, 15.5), (14.5, 16.5, 16.5)]
EXPECTED_RAMP = np.array([0.1, 0.3, 0.5, 0.7, 0.9])
TOLERANCE = 0.05


# ───────────────────────────────────────────────────────────────────────
# Synthetic subjects
# ───────────────────────────────────────────────────────────────────────

def _ellipsoid(center, radii, shape=SHAPE) -> np.ndarray:
    grid = np.indices(shape).astype(float)
    return sum(((grid[i] - center[i]) / radii[i]) ** 2 for i in range(3)) <= 1.0


def _ramp(center, axis: int, shape=SHAPE) -> np.ndarray:
    coord = np.indices(shape)[axis].astype(float)
    return ((coord - (center[axis] - RADIUS)) / (2 * RADIUS)).astype(np.float32)


def _write(data, affine, path: Path) -> str:
    nib.save(nib.Nifti1Image(data, affine), str(path))
    return str(path)


def _write_subject(directory: Path, name: str, image, seg, alt=None, las=False) -> dict:
    affine = np.eye(4)
    volumes = [image, seg] + ([alt] if alt is not None else [])
    if las:
        volumes = [np.flip(v, axis=0).copy() for v in volumes]
        affine = np.diag([-1.0, 1.0, 1.0, 1.0])
        affine[0, 3] = SHAPE[0] - 1
    files = {
        "map": _write(volumes[0], affine, directory / f"{name}_map.nii.gz"),
        "seg": _write(volumes[1], affine, directory / f"{name}_seg.nii.gz"),
    }
    if alt is not None:
        files["alt"] = _write(volumes[2], affine, directory / f"{name}_alt.nii.gz")
    return files


def _sphere_group(directory: Path, name: str, las=()) -> GroupData:
    directory.mkdir(parents=True, exist_ok=True)
    files = []
    for i, center in enumerate(CENTERS):
        files.append(_write_subject(
            directory, f"sub-{i + 1:02d}",
            image=_ramp(center, 0),
            seg=make_sphere_mask(center, RADIUS, SHAPE).astype(np.int16),
            alt=_ellipsoid(center, (12, 7, 4)).astype(np.int16) * 2,
            las=i in las,
        ))
    return GroupData(
        map_list=[f["map"] for f in files],
        seg_list=[f["seg"] for f in files],
        alternative_seg_list=[f["alt"] for f in files],
        group_name=name,
    )


# ───────────────────────────────────────────────────────────────────────
# Test cases
# ───────────────────────────────────────────────────────────────────────

def _check(test_id: int, name: str, ok: bool, detail: str) -> dict:
    return {"test_id": test_id, "test_name": name,
            "status": "PASS" if ok else "FAIL", "detail": detail}


def _sphere_config(output_dir: Path, **overrides) -> MrGradConfig:
    params = dict(
        rois=[1], roi_names=["sphere"], n_segments=5, max_change=[[1, 2, 3]],
        alternative_rois=[2], output_dir=str(output_dir),
    )
    params.update(overrides)
    return MrGradConfig(**params)


def run_sphere_ramp(work: Path):
    results, table = run_mrgrad(
        [_sphere_group(work / "spheres", "spheres")],
        _sphere_config(work / "out1"), save=False,
    )
    rg = results[0][0]
    error = np.abs(rg.Y[0] - EXPECTED_RAMP[:, None]).max()
    std = np.nanmax(rg.Y_std[0])
    ok = error <= TOLERANCE and std < 1e-6
    detail = f"max |profile - ramp| = {error:.3f}, max std = {std:.2e}"
    return _check(1, "Sphere ramp", ok, detail), rg, table


def run_mixed_orientations(work: Path, reference):
    results, _ = run_mrgrad(
        [_sphere_group(work / "mixed", "mixed", las=(0, 2))],
        _sphere_config(work / "out2"), save=False,
    )
    rg = results[0][0]
    diff = max(np.nanmax(np.abs(a - b)) for a, b in zip(rg.Y, reference.Y))
    return _check(2, "Mixed orientations", diff < 1e-6, f"max difference = {diff:.2e}"), rg


def run_degenerate_subject(work: Path):
    directory = work / "degenerate"
    directory.mkdir(parents=True, exist_ok=True)
    tiny = np.zeros(SHAPE, dtype=np.int16)
    tiny[10, 10, 10] = tiny[11, 10, 10] = 1
    files = []
    for i, center in enumerate(CENTERS):
        seg = tiny if i == 1 else _ellipsoid(center, (12, 7, 4)).astype(np.int16)
        files.append(_write_subject(directory, f"sub-{i + 1:02d}", _ramp(center, 0), seg))
    group = GroupData([f["map"] for f in files], [f["seg"] for f in files], "degenerate")
    params = dict(rois=[1], n_segments=5, max_change=[[1, 2, 3]])
    try:
        run_mrgrad([group], MrGradConfig(**params), save=False)
        strict_aborted = False
    except DegenerateRegion:
        strict_aborted = True

    results, _ = run_mrgrad([group], MrGradConfig(ignore_missing=True, **params), save=False)
    rg = results[0][0]
    nan_column = all(np.isnan(y[:, 1]).all() for y in rg.Y)
    counts_ok = all((c == 2).all() for c in rg.Y_count)
    ok = strict_aborted and nan_column and counts_ok and rg.missing_subjects == (1,)
    return _check(3, "Degenerate subject", ok,
                  f"strict aborted={strict_aborted}, missing={rg.missing_subjects}, "
                  f"valid counts={rg.Y_count[0].tolist()}"), rg


def run_putamen_convention(work: Path):
    directory = work / "putamen"
    directory.mkdir(parents=True, exist_ok=True)
    files = []
    for i, center in enumerate(CENTERS):
        seg = _ellipsoid(center, (4, 11, 5)).astype(np.int16) * 12
        files.append(_write_subject(directory, f"sub-{i + 1:02d}", _ramp(center, 1), seg))
    group = GroupData([f["map"] for f in files], [f["seg"] for f in files], "putamen")
    results, _ = run_mrgrad([group], MrGradConfig(rois=[12], n_segments=5, axes=[1]), save=False)
    rg = results[0][0]
    decreasing = bool(np.all(np.diff(rg.Y_mean[0]) < 0))
    ok = decreasing and rg.flipped_axes == (1,)
    return _check(4, "Putamen convention", ok,
                  f"flipped={rg.flipped_axes}, mean={np.round(rg.Y_mean[0], 3).tolist()}"), rg


def run_equivolume(work: Path):
    results, _ = run_mrgrad(
        [_sphere_group(work / "equivolume", "equivolume")],
        _sphere_config(work / "out5", segmenting_method="equivolume", n_segments=7),
        save=False,
    )
    rg = results[0][0]
    spread = max(
        int(p.counts.max() - p.counts.min())
        for subject in rg.individual_data for p in subject.values()
    )
    return _check(5, "Equivolume", spread <= 1, f"max count spread = {spread}"), rg


# ───────────────────────────────────────────────────────────────────────
# Main
# ───────────────────────────────────────────────────────────────────────

def main() -> None:
    """Run all QA-01 synthetic cohort tests."""
    DOCS_QA.mkdir(parents=True, exist_ok=True)

    print("=" * 65)
    print("  QA Check 01 -- Synthetic Cohort Tests")
    print("=" * 65)

    all_results = []
    regions = {}
    with tempfile.TemporaryDirectory(prefix="mrgrad_qa01_") as tmp:
        work = Path(tmp)
        check, regions["sphere"], table = run_sphere_ramp(work)
        all_results.append(check)
        check, regions["mixed"] = run_mixed_orientations(work, regions["sphere"])
        all_results.append(check)
        check, regions["degenerate"] = run_degenerate_subject(work)
        all_results.append(check)
        check, regions["putamen"] = run_putamen_convention(work)
        all_results.append(check)
        check, regions["equivolume"] = run_equivolume(work)
        all_results.append(check)

    for case, rg in regions.items():
        fig = plot_region_gradients(rg, output_path=DOCS_QA / f"qa01_{case}_gradients.png")
        plt.close(fig)

    csv_path = DOCS_QA / "qa01_summary.csv"
    pd.DataFrame(table).to_csv(csv_path, index=False)
    logger.info("Saved cohort summary CSV: %s", csv_path)

    # Results table
    print("\n" + "=" * 65)
    width = 50
    sep = "+" + "-" * width + "+" + "-" * 8 + "+"
    lines = [sep, f"| {'Test':<{width - 1}} | {'Result':>6} |", sep]
    for r in all_results:
        name = f"Test {r['test_id']}: {r['test_name']}"[:width - 1]
        lines.append(f"| {name:<{width - 1}} | {r['status']:>6} |")
    lines.append(sep)
    print("\n".join(lines))

    for r in all_results:
        print(f"  Test {r['test_id']}: {r['detail']}")

    overall = "PASS" if all(r["status"] == "PASS" for r in all_results) else "FAIL"
    print(f"\nOverall QA-01 result: {overall}")

    summary_path = DOCS_QA / "qa01_summary.txt"
    summary_path.write_text(f"QA-01 synthetic cohort: {overall}\n")
    logger.info("Summary written to %s", summary_path)


if __name__ == "__main__":
    main()
