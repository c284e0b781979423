"""
Principal-axis frames of ROI voxel clouds.

An ROI is reduced to the integer coordinates of its voxels (in canonical
positive-stride order) and the parameter value at each voxel.  The axis frame
is the eigen-decomposition of the coordinate covariance: axis 1 follows the
direction of greatest spatial extent, axis 3 the least.

Optionally the frame is fitted on an *alternative* voxel cloud (a different
ROI) and then applied to the target ROI.  The resulting axes carry no
anatomical meaning for the target region and should be used with care.
"""

import logging
from dataclasses import dataclass

import numpy as np

from mrgrad.errors import DegenerateRegion

logger = logging.getLogger(__name__)

# Minimum number of voxels needed to fit a full-rank 3x3 covariance
MIN_VOXELS = 4

# Relative eigenvalue floor below which the covariance is treated as rank-deficient
_RANK_TOLERANCE = 1e-10


# ---------------------------------------------------------------------------
# Data containers
# ---------------------------------------------------------------------------

@dataclass(frozen=True, eq=False)
class VoxelCloud:
    """Voxel coordinates (n, 3) of a region and the parameter value at each."""

    coords: np.ndarray
    values: np.ndarray

    def __post_init__(self):
        coords = np.asarray(self.coords, dtype=np.int64).reshape(-1, 3)
        values = np.asarray(self.values, dtype=np.float64).ravel()
        if coords.shape[0] != values.shape[0]:
            raise ValueError(
                f"Got {coords.shape[0]} coordinates but {values.shape[0]} values."
            )
        coords.setflags(write=False)
        values.setflags(write=False)
        object.__setattr__(self, "coords", coords)
        object.__setattr__(self, "values", values)

    @property
    def n_voxels(self) -> int:
        return int(self.coords.shape[0])

    @property
    def centroid(self) -> np.ndarray:
        return self.coords.mean(axis=0)

    @classmethod
    def from_mask(cls, mask: np.ndarray, image: np.ndarray | None = None) -> "VoxelCloud":
        """
        Build a cloud from a 3D mask, sampling ``image`` at the mask voxels.

        Without an image, every voxel gets the value 1.0 (geometry only).
        """
        mask = np.asarray(mask) > 0
        coords = np.argwhere(mask)
        if image is None:
            values = np.ones(coords.shape[0])
        else:
            values = np.asarray(image, dtype=np.float64)[mask]
        return cls(coords, values)


@dataclass(frozen=True, eq=False)
class AxisFrame:
    """
    Orthonormal axis frame of a voxel cloud.

    Attributes
    ----------
    axes : np.ndarray of shape (3, 3)
        Row ``k`` is the unit vector of axis ``k + 1``.
    eigenvalues : np.ndarray of shape (3,)
        Variance along each axis, non-increasing.
    centroid : np.ndarray of shape (3,)
        Origin of the frame in image coordinates.
    signs : np.ndarray of shape (3,)
        +1 / -1 flips applied to the raw eigenvectors by orientation
        harmonization (all +1 for a raw frame).
    """

    axes: np.ndarray
    eigenvalues: np.ndarray
    centroid: np.ndarray
    signs: np.ndarray

    def axis(self, number: int) -> np.ndarray:
        """Unit vector of axis ``number`` (1-based)."""
        return self.axes[number - 1]

    @property
    def explained_variance_ratio(self) -> np.ndarray:
        total = self.eigenvalues.sum()
        return self.eigenvalues / total if total > 0 else np.zeros(3)

    def project(self, coords: np.ndarray, number: int) -> np.ndarray:
        """Signed distance of ``coords`` from the centroid along axis ``number``."""
        centred = np.asarray(coords, dtype=np.float64) - self.centroid
        return centred @ self.axis(number)

    def with_signs(self, signs: np.ndarray) -> "AxisFrame":
        """Return a copy whose axes are multiplied by ``signs`` (relative to raw)."""
        signs = np.asarray(signs, dtype=np.float64)
        raw = self.axes * self.signs[:, None]
        return AxisFrame(
            axes=raw * signs[:, None],
            eigenvalues=self.eigenvalues,
            centroid=self.centroid,
            signs=signs,
        )

    def recentred(self, centroid: np.ndarray) -> "AxisFrame":
        """Same axes, different origin."""
        return AxisFrame(
            axes=self.axes,
            eigenvalues=self.eigenvalues,
            centroid=np.asarray(centroid, dtype=np.float64),
            signs=self.signs,
        )


# ---------------------------------------------------------------------------
# Axis solver
# ---------------------------------------------------------------------------

def fit_axes(cloud: VoxelCloud) -> AxisFrame:
    """
    Fit principal axes to the coordinates of a voxel cloud.

    Raises
    ------
    DegenerateRegion
        If the cloud has fewer than ``MIN_VOXELS`` voxels or its voxels do not
        span three dimensions (covariance rank < 3).
    """
    if cloud.n_voxels < MIN_VOXELS:
        raise DegenerateRegion(
            f"Region has {cloud.n_voxels} voxel(s); at least {MIN_VOXELS} are "
            "needed to fit an axis frame."
        )

    coords = cloud.coords.astype(np.float64)
    centroid = coords.mean(axis=0)
    centred = coords - centroid
    cov = centred.T @ centred / (cloud.n_voxels - 1)

    eigenvalues, eigenvectors = np.linalg.eigh(cov)
    order = np.argsort(eigenvalues)[::-1]
    eigenvalues = eigenvalues[order]
    eigenvectors = eigenvectors[:, order]

    if eigenvalues[-1] <= _RANK_TOLERANCE * max(eigenvalues[0], 1.0):
        raise DegenerateRegion(
            "Region voxels do not span three dimensions "
            f"(eigenvalues: {np.round(eigenvalues, 6).tolist()})."
        )

    return AxisFrame(
        axes=eigenvectors.T.copy(),
        eigenvalues=eigenvalues,
        centroid=centroid,
        signs=np.ones(3),
    )


def solve_axes(cloud: VoxelCloud, alternative: VoxelCloud | None = None) -> AxisFrame:
    """
    Axis frame for segmenting ``cloud``.

    With an ``alternative`` cloud, axes are fitted on the alternative region
    and re-centred on the target region's centroid.
    """
    if alternative is None:
        return fit_axes(cloud)

    frame = fit_axes(alternative)
    logger.debug(
        "Applying axes of an alternative region (%d voxels) to a region of %d voxels",
        alternative.n_voxels, cloud.n_voxels,
    )
    if cloud.n_voxels == 0:
        return frame
    return frame.recentred(cloud.centroid)
