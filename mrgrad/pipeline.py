"""
mrgrad pipeline: ROI gradients for groups of subjects.

For every (group, ROI) pair and every subject:

  1. load the parameter map and segmentation, reorient both to positive
     strides (L>R, P>A, I>S) and extract the ROI mask
  2. fit the ROI's principal axes (optionally on an alternative ROI)
  3. harmonize axis signs with the ROI's directionality prior
  4. segment the ROI along each requested axis and summarize the parameter
     in every segment

The per-subject work (``run_subject``) is a pure function of its task and can
run in a process pool.  Once every subject of a (group, ROI) has finished,
the profiles are combined into a ``RegionResult`` and the display convention
flips are applied.

With ``ignore_missing`` set, missing files and degenerate ROIs are logged and
leave an all-NaN column.  Otherwise any missing file aborts the run before
computation starts, and the first degenerate ROI aborts it before the region
is aggregated.  Shape mismatches between a map and its segmentation always
abort the run.  Group names must be unique; they key the saved outputs.

Usage:
    python -m mrgrad.cli data.json --rois 11 50 12 51 --param R1 --units "1/s"
"""

import logging
from concurrent.futures import ProcessPoolExecutor, as_completed
from dataclasses import dataclass, field, replace
from pathlib import Path

import numpy as np
from tqdm import tqdm

from mrgrad.axes import VoxelCloud, solve_axes
from mrgrad.cohort import RegionResult, apply_convention_flips, combine_region
from mrgrad.errors import (
    DegenerateRegion,
    DimensionMismatch,
    MissingInput,
)
from mrgrad.labels import roi_names as resolve_roi_names
from mrgrad.orientation import DirectionalityPrior, harmonize, resolve_directionality
from mrgrad.profiles import (
    SubjectProfile,
    check_stat,
    compute_profile,
    invert_values,
)
from mrgrad.segmentation import normalize_method
from mrgrad.utils import (
    CANONICAL_STRIDES,
    check_shape_match,
    get_config,
    load_nifti,
    roi_mask,
    to_positive_strides,
)

logger = logging.getLogger(__name__)

VALID_OUTPUT_MODES = ("minimal", "default", "extended")


# ---------------------------------------------------------------------------
# Inputs and configuration
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class GroupData:
    """
    One research group: paired parameter maps and segmentations.

    Any further fields of the group description (subject names, age, sex,
    ...) are kept in ``descriptors`` and copied to every RegionResult.
    """

    map_list: tuple[str, ...]
    seg_list: tuple[str, ...]
    group_name: str = "group"
    alternative_seg_list: tuple[str, ...] | None = None
    descriptors: dict = field(default_factory=dict, compare=False)

    def __post_init__(self):
        object.__setattr__(self, "map_list", tuple(str(p) for p in self.map_list))
        object.__setattr__(self, "seg_list", tuple(str(p) for p in self.seg_list))
        if len(self.map_list) != len(self.seg_list):
            raise ValueError(
                f"Group '{self.group_name}': {len(self.map_list)} maps but "
                f"{len(self.seg_list)} segmentations."
            )
        if self.alternative_seg_list is not None:
            alt = tuple(str(p) for p in self.alternative_seg_list)
            if len(alt) != len(self.map_list):
                raise ValueError(
                    f"Group '{self.group_name}': {len(alt)} alternative "
                    f"segmentations for {len(self.map_list)} subjects."
                )
            object.__setattr__(self, "alternative_seg_list", alt)

    @property
    def n_subjects(self) -> int:
        return len(self.map_list)

    @classmethod
    def from_dict(cls, data: dict, default_name: str = "group") -> "GroupData":
        data = dict(data)
        try:
            map_list = data.pop("map_list")
            seg_list = data.pop("seg_list")
        except KeyError as exc:
            raise ValueError(f"Group description is missing the field {exc}") from None
        return cls(
            map_list=map_list,
            seg_list=seg_list,
            group_name=str(data.pop("group_name", default_name)),
            alternative_seg_list=data.pop("alternative_seg_list", None),
            descriptors=data,
        )


@dataclass(frozen=True)
class MrGradConfig:
    """
    Immutable analysis configuration shared by every subject task.

    ``n_segments`` is either one count for all axes or one per entry of
    ``axes``.  ``max_change`` holds one directionality row per ROI (image
    axes 1=X, 2=Y, 3=Z) or None to use the region priors.
    """

    rois: tuple[int, ...]
    roi_names: tuple[str, ...] | None = None
    n_segments: int | tuple[int, ...] = 7
    segmenting_method: str = "equidistance"
    stat: str = "median"
    axes: tuple[int, ...] = (1, 2, 3)
    max_change: tuple | None = None
    erode: bool = False
    invert: bool = False
    normalize: bool = False
    param: str = "qMRI parameter"
    units: str = ""
    alternative_rois: tuple[int, ...] | None = None
    ignore_missing: bool = False
    output_mode: str = "default"
    output_dir: str = "mrgrad_output"
    output_name: str = "mrgrad_results"
    n_jobs: int = 1
    figures: bool = False

    def __post_init__(self):
        set_ = object.__setattr__
        rois = tuple(int(r) for r in np.atleast_1d(self.rois))
        if not rois:
            raise ValueError("At least one ROI label is required.")
        set_(self, "rois", rois)
        set_(self, "roi_names", tuple(resolve_roi_names(rois, self.roi_names)))

        axes = tuple(int(a) for a in np.atleast_1d(self.axes))
        if not axes or any(a not in (1, 2, 3) for a in axes) or len(set(axes)) != len(axes):
            raise ValueError(f"axes must be distinct values from (1, 2, 3), got {self.axes!r}")
        set_(self, "axes", axes)

        n_segments = tuple(int(n) for n in np.atleast_1d(self.n_segments))
        if len(n_segments) == 1:
            n_segments = n_segments * len(axes)
        if len(n_segments) != len(axes) or any(n < 1 for n in n_segments):
            raise ValueError(
                f"n_segments must be a positive count or one count per axis "
                f"{axes}, got {self.n_segments!r}"
            )
        set_(self, "n_segments", n_segments)

        set_(self, "segmenting_method", normalize_method(self.segmenting_method))
        set_(self, "stat", check_stat(self.stat))

        if self.max_change is not None:
            table = np.atleast_2d(np.asarray(self.max_change, dtype=int))
            rows = tuple(tuple(int(v) for v in row) for row in table)
            if len(rows) != len(rois):
                raise ValueError(
                    f"max_change needs one row per ROI ({len(rois)}), got {len(rows)}"
                )
            set_(self, "max_change", rows)

        if self.alternative_rois is not None:
            alt = tuple(int(r) for r in np.atleast_1d(self.alternative_rois))
            if len(alt) != len(rois):
                raise ValueError(
                    f"alternative_rois needs one label per ROI ({len(rois)}), got {len(alt)}"
                )
            set_(self, "alternative_rois", alt)

        if self.output_mode not in VALID_OUTPUT_MODES:
            raise ValueError(
                f"Unknown output mode '{self.output_mode}'. Choose from: {VALID_OUTPUT_MODES}"
            )
        set_(self, "n_jobs", max(1, int(self.n_jobs)))

    @classmethod
    def from_dict(cls, overrides: dict) -> "MrGradConfig":
        """Build a config from ``DEFAULT_CONFIG`` updated with ``overrides``."""
        cfg = get_config(overrides)
        if "rois" not in cfg:
            raise ValueError("Configuration must list the ROI labels under 'rois'.")
        return cls(**cfg)

    def n_segments_for(self, axis: int) -> int:
        return self.n_segments[self.axes.index(axis)]

    @property
    def keep_individual(self) -> bool:
        return self.output_mode != "minimal"

    @property
    def keep_voxels(self) -> bool:
        return self.output_mode == "extended"


# ---------------------------------------------------------------------------
# Per-subject computation
# ---------------------------------------------------------------------------

def compute_subject_gradients(
    image: np.ndarray,
    mask: np.ndarray,
    config: MrGradConfig,
    prior: DirectionalityPrior,
    alternative_mask: np.ndarray | None = None,
) -> dict[int, SubjectProfile]:
    """
    Gradient profiles of one ROI of one subject along ``config.axes``.

    ``image`` and masks must already be in positive-stride order.

    Raises
    ------
    DimensionMismatch
        If the image and mask shapes differ.
    DegenerateRegion
        If no axis frame can be fitted.
    """
    if not check_shape_match(image.shape, mask.shape):
        raise DimensionMismatch(
            f"Input image {image.shape[:3]} and mask/segmentation "
            f"{mask.shape[:3]} dimensions must agree."
        )
    if alternative_mask is not None and not check_shape_match(image.shape, alternative_mask.shape):
        raise DimensionMismatch(
            f"Input image {image.shape[:3]} and alternative segmentation "
            f"{alternative_mask.shape[:3]} dimensions must agree."
        )

    cloud = VoxelCloud.from_mask(mask, image)
    if config.invert:
        cloud = VoxelCloud(cloud.coords, invert_values(cloud.values))

    alternative = None
    if alternative_mask is not None:
        alternative = VoxelCloud.from_mask(alternative_mask)

    harmonized = harmonize(solve_axes(cloud, alternative), prior)

    profiles = {}
    for axis in config.axes:
        profile = compute_profile(
            cloud,
            harmonized.frame,
            axis,
            config.n_segments_for(axis),
            method=config.segmenting_method,
            stat=config.stat,
            baseline=config.normalize,
            keep_voxels=config.keep_voxels,
        )
        profiles[axis] = replace(
            profile,
            image_axis=prior.image_axis(axis),
            ambiguous=axis in harmonized.ambiguous_axes,
        )
    return profiles


@dataclass(frozen=True)
class SubjectTask:
    """Everything one worker needs to process one subject for one ROI."""

    index: int
    group_name: str
    roi: int
    roi_label: str
    map_path: str
    seg_path: str
    config: MrGradConfig
    prior: DirectionalityPrior
    alternative_roi: int | None = None
    alternative_seg_path: str | None = None


@dataclass(frozen=True)
class SubjectOutcome:
    index: int
    profiles: dict[int, SubjectProfile] | None
    error: str | None = None
    error_type: str | None = None
    reoriented: bool = False


def _load_canonical(path: str) -> tuple[np.ndarray, np.ndarray, object]:
    data, affine, _ = load_nifti(path)
    return to_positive_strides(data, affine)


def run_subject(task: SubjectTask) -> SubjectOutcome:
    """
    Load one subject's files and compute its ROI gradients.

    Missing files and degenerate ROIs are returned as failed outcomes;
    ``DimensionMismatch`` propagates.
    """
    cfg = task.config
    try:
        image, _, orientation = _load_canonical(task.map_path)
        seg, _, _ = _load_canonical(task.seg_path)
        mask = roi_mask(seg, task.roi, cfg.erode)
        if not check_shape_match(image.shape, mask.shape):
            raise DimensionMismatch(
                f"Subject {task.index + 1} ({task.group_name}): map {task.map_path} "
                f"{image.shape[:3]} and segmentation {task.seg_path} "
                f"{mask.shape[:3]} dimensions must agree."
            )

        alternative_mask = None
        if task.alternative_roi is not None:
            alt_seg, _, _ = _load_canonical(task.alternative_seg_path)
            alternative_mask = roi_mask(alt_seg, task.alternative_roi, False)

        profiles = compute_subject_gradients(
            image, mask, cfg, task.prior, alternative_mask,
        )
    except (MissingInput, DegenerateRegion) as exc:
        return SubjectOutcome(
            index=task.index,
            profiles=None,
            error=str(exc),
            error_type=type(exc).__name__,
        )

    meta = {
        "subject_index": task.index,
        "map_path": task.map_path,
        "seg_path": task.seg_path,
        "analysis_image_size": tuple(int(s) for s in image.shape[:3]),
        "original_image_size": orientation.original_shape,
        "analysis_strides": CANONICAL_STRIDES,
        "original_strides": orientation.strides,
        "original_affine": orientation.original_affine,
        "n_voxels": int(mask.sum()),
    }
    profiles = {ax: replace(p, meta=meta) for ax, p in profiles.items()}
    return SubjectOutcome(
        index=task.index,
        profiles=profiles,
        reoriented=not orientation.is_canonical,
    )


# ---------------------------------------------------------------------------
# Batch driver
# ---------------------------------------------------------------------------

def check_inputs(groups: list[GroupData], config: MrGradConfig) -> list[tuple[str, int, str]]:
    """
    List (group, subject index, path) of every input file that does not exist.

    Raises MissingInput for the first missing file unless
    ``config.ignore_missing`` is set.
    """
    missing = []
    for group in groups:
        path_lists = [group.map_list, group.seg_list]
        if config.alternative_rois is not None and group.alternative_seg_list is not None:
            path_lists.append(group.alternative_seg_list)
        for paths in path_lists:
            for i, path in enumerate(paths):
                if not Path(path).exists():
                    missing.append((group.group_name, i, path))

    if missing and not config.ignore_missing:
        group_name, i, path = missing[0]
        raise MissingInput(
            f"{len(missing)} input file(s) missing, first: subject {i + 1} of "
            f"group '{group_name}': {path}. Set ignore_missing to run anyway."
        )
    for group_name, i, path in missing:
        logger.warning("Missing input for subject %d (%s): %s", i + 1, group_name, path)
    return missing


def _run_tasks(tasks: list[SubjectTask], n_jobs: int, desc: str) -> list[SubjectOutcome]:
    """Run subject tasks, serially or in a process pool, in subject order."""
    outcomes: list[SubjectOutcome | None] = [None] * len(tasks)

    if n_jobs <= 1 or len(tasks) <= 1:
        for task in tqdm(tasks, desc=desc, unit="subject", leave=False):
            outcomes[task.index] = run_subject(task)
        return outcomes

    with ProcessPoolExecutor(max_workers=n_jobs) as executor:
        futures = {executor.submit(run_subject, task): task for task in tasks}
        for future in tqdm(as_completed(futures), total=len(futures),
                           desc=desc, unit="subject", leave=False):
            task = futures[future]
            outcomes[task.index] = future.result()
    return outcomes


def compute_region(group: GroupData, roi_index: int, config: MrGradConfig) -> RegionResult:
    """Gradients of one ROI for every subject of one group."""
    roi = config.rois[roi_index]
    roi_label = config.roi_names[roi_index]
    alternative_roi = None
    if config.alternative_rois is not None:
        alternative_roi = config.alternative_rois[roi_index]
        if group.alternative_seg_list is None:
            raise ValueError(
                f"Group '{group.group_name}' has no alternative_seg_list but "
                "alternative ROIs were requested."
            )

    max_change_row = config.max_change[roi_index] if config.max_change is not None else None
    prior = resolve_directionality(roi, max_change_row, config.axes, alternative_roi)

    tasks = [
        SubjectTask(
            index=i,
            group_name=group.group_name,
            roi=roi,
            roi_label=roi_label,
            map_path=group.map_list[i],
            seg_path=group.seg_list[i],
            config=config,
            prior=prior,
            alternative_roi=alternative_roi,
            alternative_seg_path=(
                group.alternative_seg_list[i] if alternative_roi is not None else None
            ),
        )
        for i in range(group.n_subjects)
    ]

    logger.info(
        "Computing ROI axes and gradients for %d subjects (%s, %s)",
        len(tasks), roi_label, group.group_name,
    )
    outcomes = _run_tasks(tasks, config.n_jobs, f"{roi_label} {group.group_name}")

    for outcome in outcomes:
        if outcome.error is None:
            continue
        if not config.ignore_missing:
            if outcome.error_type == MissingInput.__name__:
                raise MissingInput(outcome.error)
            raise DegenerateRegion(
                f"Subject {outcome.index + 1} ({group.group_name}, ROI {roi} {roi_label}): "
                f"{outcome.error} Set ignore_missing to run anyway."
            )
        logger.warning(
            "Subject %d (%s, ROI %d %s) excluded [%s]: %s",
            outcome.index + 1, group.group_name, roi, roi_label,
            outcome.error_type, outcome.error,
        )
    if any(o.reoriented for o in outcomes):
        logger.warning("Images of some/all subjects are flipped to match positive strides.")

    result = combine_region(
        [o.profiles for o in outcomes],
        axes=config.axes,
        n_segments=config.n_segments,
        group_name=group.group_name,
        roi=roi,
        roi_label=roi_label,
        prior=prior,
        keep_individual=config.keep_individual,
        parameter=config.param,
        units=config.units,
        sampling_method=config.segmenting_method,
        stat=config.stat,
        descriptors=dict(group.descriptors, group_name=group.group_name),
    )
    return apply_convention_flips(result)


def run_mrgrad(
    groups: list[GroupData | dict],
    config: MrGradConfig,
    save: bool = True,
):
    """
    Compute ROI gradients for every group and ROI.

    Parameters
    ----------
    groups : list of GroupData or dict
        Research groups (dicts are converted with ``GroupData.from_dict``).
    config : MrGradConfig
    save : bool
        Write summary outputs (and figures / segmentation masks, depending
        on the configuration) to ``config.output_dir``.

    Returns
    -------
    results : list of list of RegionResult
        ``results[g][r]`` for group ``g`` and ROI ``r``.
    table : pandas.DataFrame
        Long-format summary (see ``mrgrad.export.results_to_table``).
    """
    from mrgrad.export import results_to_table, save_results, save_segmentations

    groups = [
        g if isinstance(g, GroupData) else GroupData.from_dict(g, f"group{i + 1}")
        for i, g in enumerate(groups)
    ]
    names = [g.group_name for g in groups]
    duplicates = sorted({name for name in names if names.count(name) > 1})
    if duplicates:
        raise ValueError(
            f"Group names must be unique, got duplicates: {duplicates}. "
            "Set group_name for every group."
        )

    logger.info("=" * 60)
    logger.info("mrGrad: MRI region gradients")
    logger.info("=" * 60)
    logger.info("Groups:      %s", [g.group_name for g in groups])
    logger.info("ROIs:        %s", list(zip(config.rois, config.roi_names)))
    logger.info("Axes:        %s  segments: %s  (%s, %s)",
                config.axes, config.n_segments, config.segmenting_method, config.stat)
    if config.n_jobs == 1:
        logger.info("Running serially; set n_jobs > 1 to process subjects in parallel.")

    check_inputs(groups, config)

    n_total = len(groups) * len(config.rois)
    results = []
    j = 0
    for group in groups:
        row = []
        for r in range(len(config.rois)):
            j += 1
            logger.info("(%d/%d) %s %s %s", j, n_total,
                        config.roi_names[r], config.param, group.group_name)
            row.append(compute_region(group, r, config))
        results.append(row)

    table = results_to_table(results)

    if save:
        save_results(results, config.output_dir, config.output_name, table=table)
        if config.output_mode == "extended":
            for row in results:
                for result in row:
                    save_segmentations(result, config.output_dir)
        if config.figures:
            import matplotlib.pyplot as plt

            from mrgrad.plotting import plot_region_gradients
            fig_dir = Path(config.output_dir) / "figures"
            for row in results:
                for result in row:
                    fig = plot_region_gradients(
                        result,
                        output_path=fig_dir / f"{result.group_name}_{result.roi_label}.png",
                    )
                    plt.close(fig)

    logger.info("=" * 60)
    logger.info("All done.")
    return results, table
