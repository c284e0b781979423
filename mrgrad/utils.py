"""
Shared helper functions for mrgrad.

Provides utilities for:
- Configuration defaults
- NIfTI loading with validation
- Orientation normalization to positive strides (L>R, P>A, I>S)
- ROI mask extraction
- Synthetic sphere masks (tests and QA)
- JSON metadata sidecars
"""

import json
import logging
from dataclasses import dataclass, field
from pathlib import Path

import nibabel as nib
import numpy as np
from nibabel.filebasedimages import ImageFileError
from nibabel.orientations import (
    apply_orientation,
    axcodes2ornt,
    inv_ornt_aff,
    io_orientation,
    ornt_transform,
)
from scipy import ndimage

from mrgrad.errors import MissingInput

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Default analysis parameters
# ---------------------------------------------------------------------------

DEFAULT_CONFIG = {
    "n_segments": 7,
    "segmenting_method": "equidistance",
    "stat": "median",
    "axes": (1, 2, 3),
    "max_change": None,
    "erode": False,
    "invert": False,
    "normalize": False,
    "param": "qMRI parameter",
    "units": "",
    "ignore_missing": False,
    "output_mode": "default",
    "output_dir": "mrgrad_output",
    "output_name": "mrgrad_results",
    "n_jobs": 1,
    "figures": False,
}

# Canonical analysis orientation: array axes map to L>R, P>A, I>S
CANONICAL_ORNT = axcodes2ornt(("R", "A", "S"))
CANONICAL_STRIDES = (1, 2, 3)


def get_config(overrides: dict | None = None) -> dict:
    """Return analysis configuration, optionally overriding defaults."""
    config = DEFAULT_CONFIG.copy()
    if overrides:
        unknown = set(overrides) - set(DEFAULT_CONFIG) - {
            "rois", "roi_names", "alternative_rois",
        }
        if unknown:
            logger.warning("Ignoring unknown configuration keys: %s", sorted(unknown))
        config.update({k: v for k, v in overrides.items() if k not in unknown})
    return config


# ---------------------------------------------------------------------------
# NIfTI utilities
# ---------------------------------------------------------------------------

def load_nifti(path: str | Path, dtype: type | None = None) -> tuple[np.ndarray, np.ndarray, nib.Nifti1Header]:
    """
    Load a NIfTI file and return (data, affine, header).

    Trailing singleton dimensions (single-channel 4D files) are dropped.

    Parameters
    ----------
    path : str or Path
        Path to the NIfTI file.
    dtype : type, optional
        Cast the data array to this dtype.

    Returns
    -------
    data : np.ndarray
    affine : np.ndarray of shape (4, 4)
    header : nib.Nifti1Header

    Raises
    ------
    MissingInput
        If the file does not exist or nibabel cannot read it.
    """
    path = Path(path)
    if not path.exists():
        raise MissingInput(f"NIfTI file not found: {path}")
    try:
        img = nib.load(str(path))
        data = img.get_fdata()
    except (OSError, EOFError, ImageFileError) as exc:
        raise MissingInput(f"Could not read NIfTI file {path}: {exc}") from exc

    while data.ndim > 3 and data.shape[-1] == 1:
        data = data[..., 0]
    if dtype is not None:
        data = data.astype(dtype)
    return data, img.affine, img.header


def save_nifti(data: np.ndarray, affine: np.ndarray, path: str | Path,
               header: nib.Nifti1Header | None = None) -> None:
    """Save a numpy array as a NIfTI file."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    img = nib.Nifti1Image(data, affine, header)
    nib.save(img, str(path))
    logger.info("Saved NIfTI: %s  shape=%s", path, data.shape)


def check_shape_match(shape_a: tuple, shape_b: tuple) -> bool:
    """Return True if two image shapes match (ignoring 4th dimension)."""
    return tuple(shape_a[:3]) == tuple(shape_b[:3])


# ---------------------------------------------------------------------------
# Orientation normalization
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Orientation:
    """
    Orientation of an image relative to the canonical analysis frame.

    ``strides`` lists, for each array axis, the 1-based canonical axis it
    runs along, signed by direction: ``(1, 2, 3)`` is already canonical,
    ``(-1, 2, 3)`` runs R>L along the first array axis.
    """

    strides: tuple[int, int, int]
    original_shape: tuple[int, int, int]
    original_affine: np.ndarray = field(compare=False, repr=False)

    @property
    def is_canonical(self) -> bool:
        return self.strides == CANONICAL_STRIDES

    @property
    def ornt(self) -> np.ndarray:
        return np.array(
            [[abs(s) - 1, 1 if s > 0 else -1] for s in self.strides],
            dtype=float,
        )


def get_orientation(affine: np.ndarray, shape: tuple) -> Orientation:
    """Describe the stride order of an image from its affine."""
    ornt = io_orientation(affine)
    strides = tuple(int((ax + 1) * flip) for ax, flip in ornt.astype(int))
    return Orientation(
        strides=strides,
        original_shape=tuple(int(s) for s in shape[:3]),
        original_affine=np.asarray(affine, dtype=float),
    )


def to_positive_strides(data: np.ndarray, affine: np.ndarray) -> tuple[np.ndarray, np.ndarray, Orientation]:
    """
    Permute and flip a volume into canonical positive-stride order.

    Returns
    -------
    data : np.ndarray
        The reoriented volume (array axes L>R, P>A, I>S).
    affine : np.ndarray
        Affine of the reoriented volume.
    orientation : Orientation
        Descriptor needed to restore the original layout.
    """
    orientation = get_orientation(affine, data.shape)
    if orientation.is_canonical:
        return data, affine, orientation

    transform = ornt_transform(orientation.ornt, CANONICAL_ORNT)
    reoriented = apply_orientation(data, transform)
    new_affine = affine @ inv_ornt_aff(transform, data.shape[:3])
    return reoriented, new_affine, orientation


def restore_original_strides(data: np.ndarray, orientation: Orientation) -> np.ndarray:
    """Inverse of ``to_positive_strides`` for a canonical-order volume."""
    if orientation.is_canonical:
        return data
    transform = ornt_transform(CANONICAL_ORNT, orientation.ornt)
    return apply_orientation(data, transform)


# ---------------------------------------------------------------------------
# ROI masks
# ---------------------------------------------------------------------------

def roi_mask(segmentation: np.ndarray, label: int, erode: bool = False) -> np.ndarray:
    """
    Binary mask of voxels carrying ``label`` in a segmentation volume.

    With ``erode`` the outer surface of the ROI is removed (one voxel,
    face connectivity) to reduce partial voluming.
    """
    mask = np.rint(segmentation) == label
    if erode and mask.any():
        mask = ndimage.binary_erosion(mask)
        if not mask.any():
            logger.warning("Erosion removed every voxel of label %d.", label)
    return mask


def load_roi_mask(path: str | Path, label: int, erode: bool = False) -> tuple[np.ndarray, np.ndarray]:
    """Load a segmentation file and return (mask, affine) for one label."""
    seg, affine, _ = load_nifti(path)
    return roi_mask(seg, label, erode), affine


# ---------------------------------------------------------------------------
# Synthetic data
# ---------------------------------------------------------------------------

def make_sphere_mask(center: tuple | np.ndarray, radius: float,
                     shape: tuple[int, int, int]) -> np.ndarray:
    """
    Create a boolean spherical mask in voxel space.

    Parameters
    ----------
    center : array-like of shape (3,)
        Center of the sphere in voxel coordinates.
    radius : float
        Radius of the sphere in voxels.
    shape : tuple of (X, Y, Z)
        Volume shape.
    """
    center = np.asarray(center, dtype=float)
    grid = np.stack(np.indices(shape), axis=-1).astype(float)
    dist = np.sqrt(((grid - center) ** 2).sum(axis=-1))
    return dist <= radius


# ---------------------------------------------------------------------------
# Metadata utilities
# ---------------------------------------------------------------------------

def load_metadata(path: str | Path) -> dict:
    """Load a JSON file (config, data description or metadata sidecar)."""
    with open(path) as f:
        return json.load(f)


def save_metadata(data: dict, path: str | Path) -> None:
    """Save JSON metadata sidecar."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "w") as f:
        json.dump(data, f, indent=2, default=str)
    logger.info("Saved metadata: %s", path)
