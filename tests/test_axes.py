"""
Tests for principal-axis fitting of ROI voxel clouds.
"""

import numpy as np
import pytest

from mrgrad.axes import AxisFrame, VoxelCloud, fit_axes, solve_axes
from mrgrad.errors import DegenerateRegion


def ellipsoid_mask(center, radii, shape):
    grid = np.indices(shape).astype(float)
    dist = sum(((grid[i] - center[i]) / radii[i]) ** 2 for i in range(3))
    return dist <= 1.0


# ---------------------------------------------------------------------------
# VoxelCloud
# ---------------------------------------------------------------------------

class TestVoxelCloud:
    def test_from_mask_samples_image(self):
        mask = np.zeros((4, 4, 4), dtype=bool)
        mask[1, 2, 3] = True
        mask[0, 0, 0] = True
        image = np.arange(64, dtype=float).reshape(4, 4, 4)

        cloud = VoxelCloud.from_mask(mask, image)

        assert cloud.n_voxels == 2
        np.testing.assert_array_equal(cloud.coords, [[0, 0, 0], [1, 2, 3]])
        np.testing.assert_allclose(cloud.values, [image[0, 0, 0], image[1, 2, 3]])

    def test_from_mask_without_image_is_geometry_only(self):
        mask = np.ones((2, 2, 2), dtype=bool)
        cloud = VoxelCloud.from_mask(mask)
        np.testing.assert_allclose(cloud.values, np.ones(8))

    def test_arrays_are_read_only(self):
        cloud = VoxelCloud(np.zeros((3, 3)), np.zeros(3))
        with pytest.raises(ValueError):
            cloud.values[0] = 1.0

    def test_length_mismatch_raises(self):
        with pytest.raises(ValueError, match="coordinates"):
            VoxelCloud(np.zeros((3, 3)), np.zeros(4))


# ---------------------------------------------------------------------------
# fit_axes
# ---------------------------------------------------------------------------

class TestFitAxes:
    def test_axes_orthonormal_and_ranked(self):
        """Any non-colinear cloud gives an orthonormal frame with sorted eigenvalues."""
        rng = np.random.default_rng(0)
        coords = rng.integers(0, 20, size=(200, 3))
        frame = fit_axes(VoxelCloud(coords, np.zeros(200)))

        np.testing.assert_allclose(frame.axes @ frame.axes.T, np.eye(3), atol=1e-10)
        assert np.all(np.diff(frame.eigenvalues) <= 1e-12)
        assert frame.explained_variance_ratio.sum() == pytest.approx(1.0)

    def test_minimal_tetrahedron(self):
        coords = np.array([[0, 0, 0], [1, 0, 0], [0, 1, 0], [0, 0, 1]])
        frame = fit_axes(VoxelCloud(coords, np.zeros(4)))
        np.testing.assert_allclose(frame.axes @ frame.axes.T, np.eye(3), atol=1e-10)

    def test_elongated_region_long_axis_first(self):
        mask = ellipsoid_mask((15.5, 15.5, 15.5), (12, 7, 4), (32, 32, 32))
        frame = fit_axes(VoxelCloud.from_mask(mask))

        np.testing.assert_allclose(np.abs(frame.axis(1)), [1, 0, 0], atol=1e-8)
        np.testing.assert_allclose(np.abs(frame.axis(2)), [0, 1, 0], atol=1e-8)
        np.testing.assert_allclose(np.abs(frame.axis(3)), [0, 0, 1], atol=1e-8)
        np.testing.assert_allclose(frame.centroid, [15.5, 15.5, 15.5], atol=1e-10)

    def test_two_voxels_degenerate(self):
        cloud = VoxelCloud([[1, 1, 1], [2, 1, 1]], [1.0, 2.0])
        with pytest.raises(DegenerateRegion):
            fit_axes(cloud)

    def test_empty_region_degenerate(self):
        with pytest.raises(DegenerateRegion):
            fit_axes(VoxelCloud(np.zeros((0, 3)), np.zeros(0)))

    def test_planar_region_degenerate(self):
        coords = np.array([[i, j, 5] for i in range(4) for j in range(4)])
        with pytest.raises(DegenerateRegion, match="three dimensions"):
            fit_axes(VoxelCloud(coords, np.zeros(len(coords))))

    def test_colinear_region_degenerate(self):
        coords = np.array([[i, 3, 3] for i in range(10)])
        with pytest.raises(DegenerateRegion):
            fit_axes(VoxelCloud(coords, np.zeros(10)))


# ---------------------------------------------------------------------------
# Frame helpers
# ---------------------------------------------------------------------------

class TestAxisFrame:
    def _frame(self):
        return AxisFrame(
            axes=np.eye(3),
            eigenvalues=np.array([3.0, 2.0, 1.0]),
            centroid=np.array([1.0, 1.0, 1.0]),
            signs=np.ones(3),
        )

    def test_project(self):
        frame = self._frame()
        proj = frame.project(np.array([[3, 1, 1], [0, 5, 1]]), 1)
        np.testing.assert_allclose(proj, [2.0, -1.0])

    def test_with_signs_relative_to_raw(self):
        frame = self._frame().with_signs([-1, 1, -1])
        np.testing.assert_allclose(frame.axis(1), [-1, 0, 0])
        again = frame.with_signs([1, 1, 1])
        np.testing.assert_allclose(again.axes, np.eye(3))

    def test_recentred_keeps_axes(self):
        frame = self._frame().recentred([5, 5, 5])
        np.testing.assert_allclose(frame.axes, np.eye(3))
        np.testing.assert_allclose(frame.centroid, [5, 5, 5])


class TestSolveAxes:
    def test_without_alternative_fits_region(self):
        mask = ellipsoid_mask((10, 10, 10), (8, 5, 3), (21, 21, 21))
        cloud = VoxelCloud.from_mask(mask)
        np.testing.assert_allclose(solve_axes(cloud).axes, fit_axes(cloud).axes)

    def test_alternative_axes_recentred_on_target(self):
        shape = (32, 32, 32)
        target = VoxelCloud.from_mask(ellipsoid_mask((20, 20, 20), (4, 4.5, 5), shape))
        alternative = VoxelCloud.from_mask(ellipsoid_mask((10, 12, 12), (3, 9, 5), shape))

        frame = solve_axes(target, alternative)

        np.testing.assert_allclose(np.abs(frame.axis(1)), [0, 1, 0], atol=1e-8)
        np.testing.assert_allclose(frame.centroid, target.centroid)

    def test_degenerate_alternative_raises(self):
        target = VoxelCloud.from_mask(np.ones((4, 4, 4)))
        alternative = VoxelCloud([[0, 0, 0]], [1.0])
        with pytest.raises(DegenerateRegion):
            solve_axes(target, alternative)
