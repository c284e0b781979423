"""
Cohort aggregation of subject gradient profiles.

For one (group, ROI) the per-subject profiles of each axis are stacked into a
segments x subjects matrix.  Subjects whose data was missing or degenerate
keep an all-NaN column, so column ``i`` always belongs to subject ``i`` of the
group.  Mean, standard deviation and standard error per segment are computed
from explicit valid-subject counts; a segment without any valid subject is
NaN in every summary.

After aggregation a small set of fixed display conventions (``CONVENTION_FLIPS``)
may reverse an axis end-to-end, e.g. so that putamen profiles read
anterior-to-posterior across the whole cohort.
"""

import logging
from dataclasses import dataclass, field, replace
from typing import Sequence

import numpy as np

from mrgrad.orientation import DirectionalityPrior
from mrgrad.profiles import SubjectProfile

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# NaN-tolerant statistics
# ---------------------------------------------------------------------------

def combine_profiles(profiles: Sequence[np.ndarray | None], n_segments: int) -> np.ndarray:
    """
    Stack subject profiles into a (n_segments, n_subjects) matrix.

    ``None`` entries (missing subjects) become all-NaN columns.
    """
    matrix = np.full((n_segments, len(profiles)), np.nan)
    for i, profile in enumerate(profiles):
        if profile is None:
            continue
        profile = np.asarray(profile, dtype=np.float64).ravel()
        if profile.shape[0] != n_segments:
            raise ValueError(
                f"Profile of subject {i} has {profile.shape[0]} segments, "
                f"expected {n_segments}"
            )
        matrix[:, i] = profile
    return matrix


def summarize_matrix(matrix: np.ndarray) -> tuple[np.ndarray, np.ndarray, np.ndarray, np.ndarray]:
    """
    Per-row mean, standard deviation, standard error and valid count.

    NaN entries are skipped.  The standard deviation uses n - 1 degrees of
    freedom and is 0 for a single valid subject; the standard error divides
    by the square root of the valid count.  Rows without valid entries are
    NaN in all three statistics.
    """
    matrix = np.asarray(matrix, dtype=np.float64)
    valid = np.isfinite(matrix)
    count = valid.sum(axis=1)
    has_data = count > 0

    total = np.where(valid, matrix, 0.0).sum(axis=1)
    mean = np.full(matrix.shape[0], np.nan)
    mean[has_data] = total[has_data] / count[has_data]

    deviations = np.where(valid, matrix - np.where(has_data, mean, 0.0)[:, None], 0.0)
    sum_sq = (deviations ** 2).sum(axis=1)

    std = np.full(matrix.shape[0], np.nan)
    several = count > 1
    std[several] = np.sqrt(sum_sq[several] / (count[several] - 1))
    std[count == 1] = 0.0

    sem = np.full(matrix.shape[0], np.nan)
    sem[has_data] = std[has_data] / np.sqrt(count[has_data])

    return mean, std, sem, count


# ---------------------------------------------------------------------------
# Region result
# ---------------------------------------------------------------------------

@dataclass
class RegionResult:
    """
    Cohort gradients of one ROI in one group.

    Per-axis lists are ordered like ``axes``.  ``Y[k]`` has one column per
    subject of the group.  ``individual_data[i]`` maps axis number to the
    subject's ``SubjectProfile`` (None for missing subjects, and the whole
    list is empty in minimal output mode).
    """

    group_name: str
    roi: int
    roi_label: str
    axes: tuple[int, ...]
    n_segments: tuple[int, ...]
    Y: list[np.ndarray]
    Y_mean: list[np.ndarray]
    Y_std: list[np.ndarray]
    Y_SEM: list[np.ndarray]
    Y_count: list[np.ndarray]
    X: list[np.ndarray]
    parameter: str = ""
    units: str = ""
    sampling_method: str = "equidistance"
    stat: str = "median"
    directionality: tuple[int, int, int] = (2, 3, 2)
    directionality_source: str = "default"
    degraded_directionality: bool = False
    flipped_axes: tuple[int, ...] = ()
    missing_subjects: tuple[int, ...] = ()
    individual_data: list = field(default_factory=list, repr=False)
    descriptors: dict = field(default_factory=dict, repr=False)

    @property
    def axis_labels(self) -> list[str]:
        return [f"axis{ax}" for ax in self.axes]

    @property
    def n_subjects(self) -> int:
        return int(self.Y[0].shape[1]) if self.Y else 0

    def axis_index(self, axis: int) -> int:
        return self.axes.index(axis)


def combine_region(
    subject_profiles: Sequence[dict[int, SubjectProfile] | None],
    axes: Sequence[int],
    n_segments: Sequence[int],
    group_name: str,
    roi: int,
    roi_label: str,
    prior: DirectionalityPrior,
    keep_individual: bool = True,
    **metadata,
) -> RegionResult:
    """
    Merge every subject's profiles for one (group, ROI) into a RegionResult.

    ``subject_profiles[i]`` is the mapping axis -> profile of subject ``i``,
    or None if that subject is missing.  ``metadata`` fills the descriptive
    fields (parameter, units, sampling_method, stat, descriptors).
    """
    axes = tuple(int(a) for a in axes)
    n_segments = tuple(int(n) for n in n_segments)

    Y, Y_mean, Y_std, Y_SEM, Y_count, X = [], [], [], [], [], []
    for ax, n_seg in zip(axes, n_segments):
        column_data = [
            None if subj is None or ax not in subj else subj[ax].values
            for subj in subject_profiles
        ]
        matrix = combine_profiles(column_data, n_seg)
        mean, std, sem, count = summarize_matrix(matrix)
        Y.append(matrix)
        Y_mean.append(mean)
        Y_std.append(std)
        Y_SEM.append(sem)
        Y_count.append(count)
        X.append(np.arange(1, n_seg + 1) / n_seg)

    missing = tuple(i for i, subj in enumerate(subject_profiles) if subj is None)
    ambiguous = any(
        p.ambiguous
        for subj in subject_profiles if subj is not None
        for p in subj.values()
    )

    return RegionResult(
        group_name=group_name,
        roi=int(roi),
        roi_label=roi_label,
        axes=axes,
        n_segments=n_segments,
        Y=Y,
        Y_mean=Y_mean,
        Y_std=Y_std,
        Y_SEM=Y_SEM,
        Y_count=Y_count,
        X=X,
        directionality=prior.image_axes,
        directionality_source=prior.source,
        degraded_directionality=prior.degraded or ambiguous,
        missing_subjects=missing,
        individual_data=list(subject_profiles) if keep_individual else [],
        **metadata,
    )


# ---------------------------------------------------------------------------
# Display convention flips
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ConventionFlip:
    """
    Reverse ``axis`` when its target image axis is ``image_axis`` (and, if
    ``rois`` is set, only for those ROI codes).
    """

    axis: int
    image_axis: int
    label: str
    rois: frozenset | None = None

    def applies(self, result: RegionResult) -> bool:
        if self.axis not in result.axes:
            return False
        if result.directionality[self.axis - 1] != self.image_axis:
            return False
        return self.rois is None or result.roi in self.rois


CONVENTION_FLIPS = (
    # harmonized axis 1 runs P>>A along image Y; report A>>P
    ConventionFlip(axis=1, image_axis=2, label="PA to AP"),
    # left caudate / putamen axis 3 runs L>>M along image X; report M>>L
    ConventionFlip(axis=3, image_axis=1, label="LM to ML", rois=frozenset({11, 12})),
)


def flip_axis(result: RegionResult, axis: int) -> RegionResult:
    """
    Reverse the segment order of one axis across the whole result.

    Matrix rows, summary sequences, valid counts and every individual profile
    of that axis are reversed together; a new RegionResult is returned.
    """
    k = result.axis_index(axis)

    def _reversed(seq, rows=False):
        out = list(seq)
        out[k] = out[k][::-1].copy() if not rows else out[k][::-1, :].copy()
        return out

    individual = []
    for subj in result.individual_data:
        if subj is None or axis not in subj:
            individual.append(subj)
            continue
        subj = dict(subj)
        subj[axis] = subj[axis].flipped()
        individual.append(subj)

    return replace(
        result,
        Y=_reversed(result.Y, rows=True),
        Y_mean=_reversed(result.Y_mean),
        Y_std=_reversed(result.Y_std),
        Y_SEM=_reversed(result.Y_SEM),
        Y_count=_reversed(result.Y_count),
        flipped_axes=result.flipped_axes + (axis,),
        individual_data=individual,
    )


def apply_convention_flips(
    result: RegionResult,
    flips: Sequence[ConventionFlip] = CONVENTION_FLIPS,
) -> RegionResult:
    """Apply every matching display-convention flip to ``result``."""
    for rule in flips:
        if rule.applies(result):
            logger.info(
                "%s %s: flipping axis %d (%s)",
                result.group_name, result.roi_label, rule.axis, rule.label,
            )
            result = flip_axis(result, rule.axis)
    return result
