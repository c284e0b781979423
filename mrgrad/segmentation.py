"""
Segmentation of ROI voxels along an axis.

Voxels are projected onto a (harmonized) axis and split into N ordered
segments, segment 1 at the negative end of the axis:

  - equidistance: N intervals of equal width over the observed projection
    range.  Intervals are half-open except the last, which also holds the
    maximum.  A segment is empty only if no voxel falls in its interval.
  - equivolume:   voxels sorted by projection are cut into N contiguous blocks
    of equal size; the remainder of n / N adds one voxel to each of the
    trailing blocks.

Segment indices are 1-based; 0 marks "not assigned" in label volumes.
"""

import logging

import numpy as np

from mrgrad.axes import AxisFrame, VoxelCloud

logger = logging.getLogger(__name__)

VALID_METHODS = ("equidistance", "equivolume")

_METHOD_ALIASES = {
    "equidistance": "equidistance",
    "equidistant": "equidistance",
    "equivolume": "equivolume",
    "equivolumetric": "equivolume",
}


def normalize_method(method: str) -> str:
    """Return the canonical segmenting method name."""
    try:
        return _METHOD_ALIASES[str(method).lower()]
    except KeyError:
        raise ValueError(
            f"Unknown segmenting method '{method}'. Choose from: {VALID_METHODS}"
        ) from None


def equidistant_bins(projection: np.ndarray, n_segments: int) -> np.ndarray:
    """Assign projections to ``n_segments`` equal-width intervals (1-based)."""
    projection = np.asarray(projection, dtype=np.float64)
    if projection.size == 0:
        return np.zeros(0, dtype=np.int64)

    lo, hi = projection.min(), projection.max()
    if hi <= lo:
        return np.ones(projection.size, dtype=np.int64)

    edges = np.linspace(lo, hi, n_segments + 1)
    # side='right' makes [edge_i, edge_i+1) map to i + 1; the maximum lands
    # at n_segments + 1 and is folded into the last (closed) interval.
    labels = np.searchsorted(edges, projection, side="right")
    return np.clip(labels, 1, n_segments).astype(np.int64)


def equivolume_bins(projection: np.ndarray, n_segments: int) -> np.ndarray:
    """Assign projections to ``n_segments`` equal-count blocks (1-based)."""
    projection = np.asarray(projection, dtype=np.float64)
    n = projection.size
    if n == 0:
        return np.zeros(0, dtype=np.int64)

    base, remainder = divmod(n, n_segments)
    sizes = [base] * (n_segments - remainder) + [base + 1] * remainder
    sorted_labels = np.repeat(np.arange(1, n_segments + 1), sizes)

    order = np.argsort(projection, kind="stable")
    labels = np.empty(n, dtype=np.int64)
    labels[order] = sorted_labels
    return labels


def segment_axis(
    cloud: VoxelCloud,
    frame: AxisFrame,
    axis: int,
    n_segments: int,
    method: str = "equidistance",
) -> np.ndarray:
    """
    Segment assignment (values 1..N) of every voxel of ``cloud`` along ``axis``.

    An empty cloud yields an empty assignment.
    """
    if n_segments < 1:
        raise ValueError(f"n_segments must be >= 1, got {n_segments}")
    method = normalize_method(method)

    if cloud.n_voxels == 0:
        return np.zeros(0, dtype=np.int64)

    projection = frame.project(cloud.coords, axis)
    if method == "equidistance":
        return equidistant_bins(projection, n_segments)
    return equivolume_bins(projection, n_segments)


def segment_counts(assignment: np.ndarray, n_segments: int) -> np.ndarray:
    """Number of voxels in each segment, shape (n_segments,)."""
    assignment = np.asarray(assignment, dtype=np.int64)
    return np.bincount(assignment, minlength=n_segments + 1)[1:n_segments + 1]


def segment_centers(coords: np.ndarray, assignment: np.ndarray, n_segments: int) -> np.ndarray:
    """
    Mean image coordinate of each segment, shape (n_segments, 3).

    Empty segments are NaN.
    """
    coords = np.asarray(coords, dtype=np.float64).reshape(-1, 3)
    centers = np.full((n_segments, 3), np.nan)
    for seg in range(1, n_segments + 1):
        members = assignment == seg
        if members.any():
            centers[seg - 1] = coords[members].mean(axis=0)
    return centers


def segment_volume(shape: tuple, coords: np.ndarray, assignment: np.ndarray) -> np.ndarray:
    """Label volume holding each voxel's segment index (0 = outside ROI)."""
    volume = np.zeros(shape[:3], dtype=np.int16)
    coords = np.asarray(coords, dtype=np.int64).reshape(-1, 3)
    if coords.size:
        volume[coords[:, 0], coords[:, 1], coords[:, 2]] = assignment
    return volume
