"""
Per-subject gradient profiles.

A profile is the sequence of per-segment statistics (median or mean of the
parameter values) along one axis of one ROI for one subject, ordered from the
negative to the positive end of the harmonized axis.  Segments without valid
(finite) voxels are NaN, never zero.
"""

import logging
from dataclasses import dataclass, field, replace

import numpy as np

from mrgrad.axes import AxisFrame, VoxelCloud
from mrgrad.segmentation import (
    normalize_method,
    segment_axis,
    segment_centers,
    segment_counts,
)

logger = logging.getLogger(__name__)

VALID_STATS = ("median", "mean")


def check_stat(stat: str) -> str:
    stat = str(stat).lower()
    if stat not in VALID_STATS:
        raise ValueError(f"Unknown statistic '{stat}'. Choose from: {VALID_STATS}")
    return stat


# ---------------------------------------------------------------------------
# Value transforms and statistics
# ---------------------------------------------------------------------------

def invert_values(values: np.ndarray) -> np.ndarray:
    """
    Reciprocal of nonzero values (e.g. T1 -> R1).  Zeros stay zero and
    non-finite values are left untouched.
    """
    values = np.asarray(values, dtype=np.float64)
    inverted = values.copy()
    nonzero = np.isfinite(values) & (values != 0)
    inverted[nonzero] = 1.0 / values[nonzero]
    return inverted


def _reduce(values: np.ndarray, stat: str) -> float:
    if values.size == 0:
        return np.nan
    if stat == "median":
        return float(np.median(values))
    return float(np.mean(values))


def region_statistic(values: np.ndarray, stat: str = "median") -> float:
    """Statistic over all finite values of a region (NaN if there are none)."""
    values = np.asarray(values, dtype=np.float64)
    return _reduce(values[np.isfinite(values)], check_stat(stat))


def segment_statistics(
    assignment: np.ndarray,
    values: np.ndarray,
    n_segments: int,
    stat: str = "median",
    baseline: bool = False,
) -> tuple[np.ndarray, np.ndarray]:
    """
    Per-segment statistic of ``values`` grouped by ``assignment``.

    Parameters
    ----------
    assignment : np.ndarray of shape (n,)
        Segment index (1..n_segments) of each voxel.
    values : np.ndarray of shape (n,)
        Parameter value of each voxel; non-finite values are ignored.
    n_segments : int
    stat : str
        'median' or 'mean'.
    baseline : bool
        Subtract the region-wide statistic of the same kind from every entry.

    Returns
    -------
    profile : np.ndarray of shape (n_segments,)
        NaN where a segment has no valid voxel.
    counts : np.ndarray of shape (n_segments,)
        Number of valid voxels per segment.
    """
    stat = check_stat(stat)
    assignment = np.asarray(assignment, dtype=np.int64)
    values = np.asarray(values, dtype=np.float64)
    if assignment.shape != values.shape:
        raise ValueError(
            f"Assignment shape {assignment.shape} does not match values shape {values.shape}"
        )

    valid = np.isfinite(values)
    profile = np.full(n_segments, np.nan)
    for seg in range(1, n_segments + 1):
        profile[seg - 1] = _reduce(values[valid & (assignment == seg)], stat)
    counts = segment_counts(assignment[valid], n_segments)

    if baseline:
        profile = profile - _reduce(values[valid], stat)

    return profile, counts


# ---------------------------------------------------------------------------
# Subject profile
# ---------------------------------------------------------------------------

@dataclass(frozen=True, eq=False)
class SubjectProfile:
    """
    Gradient of one subject along one axis of one ROI.

    Coordinates are voxel indices in canonical positive-stride order.
    ``coord_min`` / ``coord_max`` are the voxels at the negative and positive
    ends of the axis.  ``voxel_coords`` / ``assignment`` are only kept for
    extended output.
    """

    axis: int
    values: np.ndarray
    counts: np.ndarray
    axis_vector: np.ndarray
    coord_min: np.ndarray
    coord_max: np.ndarray
    segment_centers: np.ndarray
    stat: str
    method: str
    baseline: float | None = None
    image_axis: int | None = None
    ambiguous: bool = False
    voxel_coords: np.ndarray | None = field(default=None, repr=False)
    assignment: np.ndarray | None = field(default=None, repr=False)
    meta: dict = field(default_factory=dict)

    @property
    def n_segments(self) -> int:
        return int(self.values.shape[0])

    def flipped(self) -> "SubjectProfile":
        """Same profile read from the opposite end of the axis."""
        assignment = self.assignment
        if assignment is not None:
            assignment = np.where(assignment > 0, self.n_segments + 1 - assignment, 0)
        return replace(
            self,
            values=self.values[::-1].copy(),
            counts=self.counts[::-1].copy(),
            axis_vector=-self.axis_vector,
            coord_min=self.coord_max,
            coord_max=self.coord_min,
            segment_centers=self.segment_centers[::-1].copy(),
            assignment=assignment,
        )


def compute_profile(
    cloud: VoxelCloud,
    frame: AxisFrame,
    axis: int,
    n_segments: int,
    method: str = "equidistance",
    stat: str = "median",
    baseline: bool = False,
    keep_voxels: bool = False,
) -> SubjectProfile:
    """
    Segment ``cloud`` along ``axis`` of ``frame`` and summarize each segment.

    An empty cloud gives an all-NaN profile.
    """
    stat = check_stat(stat)
    method = normalize_method(method)
    assignment = segment_axis(cloud, frame, axis, n_segments, method)
    values, counts = segment_statistics(
        assignment, cloud.values, n_segments, stat=stat, baseline=baseline,
    )

    if cloud.n_voxels:
        projection = frame.project(cloud.coords, axis)
        coord_min = cloud.coords[int(np.argmin(projection))].astype(np.float64)
        coord_max = cloud.coords[int(np.argmax(projection))].astype(np.float64)
    else:
        coord_min = coord_max = np.full(3, np.nan)

    return SubjectProfile(
        axis=axis,
        values=values,
        counts=counts,
        axis_vector=frame.axis(axis).copy(),
        coord_min=coord_min,
        coord_max=coord_max,
        segment_centers=segment_centers(cloud.coords, assignment, n_segments),
        stat=stat,
        method=method,
        baseline=region_statistic(cloud.values, stat) if baseline else None,
        voxel_coords=cloud.coords if keep_voxels else None,
        assignment=assignment if keep_voxels else None,
    )
