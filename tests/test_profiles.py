"""
Tests for per-segment statistics and subject profiles.
"""

import numpy as np
import pytest

from mrgrad.axes import AxisFrame, VoxelCloud
from mrgrad.profiles import (
    check_stat,
    compute_profile,
    invert_values,
    region_statistic,
    segment_statistics,
)


def x_frame(centroid=(0.0, 0.0, 0.0)):
    return AxisFrame(
        axes=np.eye(3),
        eigenvalues=np.array([3.0, 2.0, 1.0]),
        centroid=np.asarray(centroid, dtype=float),
        signs=np.ones(3),
    )


class TestSegmentStatistics:
    def test_median_per_segment(self):
        assignment = np.array([1, 1, 1, 2, 2, 3])
        values = np.array([1.0, 2.0, 9.0, 4.0, 6.0, 7.0])
        profile, counts = segment_statistics(assignment, values, 3, "median")
        np.testing.assert_allclose(profile, [2.0, 5.0, 7.0])
        np.testing.assert_array_equal(counts, [3, 2, 1])

    def test_mean_per_segment(self):
        assignment = np.array([1, 1, 2])
        values = np.array([1.0, 2.0, 4.0])
        profile, _ = segment_statistics(assignment, values, 2, "mean")
        np.testing.assert_allclose(profile, [1.5, 4.0])

    def test_empty_segment_is_nan(self):
        profile, counts = segment_statistics(np.array([1, 3]), np.array([1.0, 2.0]), 3)
        assert np.isnan(profile[1])
        assert counts[1] == 0

    def test_non_finite_values_ignored(self):
        assignment = np.array([1, 1, 2, 2])
        values = np.array([1.0, np.nan, np.inf, np.nan])
        profile, counts = segment_statistics(assignment, values, 2)
        assert profile[0] == pytest.approx(1.0)
        assert np.isnan(profile[1])
        np.testing.assert_array_equal(counts, [1, 0])

    def test_baseline_weighted_mean_zero(self):
        """With the mean statistic the count-weighted profile mean is zero."""
        rng = np.random.default_rng(7)
        assignment = rng.integers(1, 6, size=500)
        values = rng.gamma(2.0, 1.5, size=500)

        profile, counts = segment_statistics(assignment, values, 5, "mean", baseline=True)

        weighted = np.sum(profile * counts) / counts.sum()
        assert weighted == pytest.approx(0.0, abs=1e-12)

    def test_baseline_preserves_shape(self):
        assignment = np.array([1, 2, 3])
        values = np.array([10.0, 20.0, 30.0])
        raw, _ = segment_statistics(assignment, values, 3, "median")
        shifted, _ = segment_statistics(assignment, values, 3, "median", baseline=True)
        np.testing.assert_allclose(raw - shifted, 20.0)

    def test_shape_mismatch(self):
        with pytest.raises(ValueError, match="shape"):
            segment_statistics(np.array([1, 2]), np.array([1.0]), 2)

    def test_unknown_stat(self):
        with pytest.raises(ValueError, match="Unknown statistic"):
            check_stat("mode")


class TestValueTransforms:
    def test_invert_values(self):
        inverted = invert_values(np.array([2.0, 0.0, -4.0, np.nan]))
        np.testing.assert_allclose(inverted[:3], [0.5, 0.0, -0.25])
        assert np.isnan(inverted[3])

    def test_region_statistic_skips_nan(self):
        assert region_statistic(np.array([1.0, np.nan, 3.0]), "mean") == pytest.approx(2.0)
        assert np.isnan(region_statistic(np.array([np.nan])))


class TestComputeProfile:
    def test_ramp_profile_increases(self):
        coords = np.array([[x, y, 0] for x in range(10) for y in range(3)])
        cloud = VoxelCloud(coords, coords[:, 0] / 9.0)
        profile = compute_profile(cloud, x_frame(coords.mean(axis=0)), 1, 5)

        assert profile.n_segments == 5
        assert np.all(np.diff(profile.values) > 0)
        np.testing.assert_array_equal(profile.counts, [6, 6, 6, 6, 6])
        np.testing.assert_allclose(profile.coord_min[0], 0)
        np.testing.assert_allclose(profile.coord_max[0], 9)
        assert profile.voxel_coords is None

    def test_keep_voxels(self):
        coords = np.array([[x, 0, 0] for x in range(6)])
        cloud = VoxelCloud(coords, np.ones(6))
        profile = compute_profile(cloud, x_frame(), 1, 3, keep_voxels=True)
        np.testing.assert_array_equal(profile.assignment, [1, 1, 2, 2, 3, 3])
        np.testing.assert_array_equal(profile.voxel_coords, coords)

    def test_empty_cloud_all_nan(self):
        empty = VoxelCloud(np.zeros((0, 3)), np.zeros(0))
        profile = compute_profile(empty, x_frame(), 1, 4)
        assert np.all(np.isnan(profile.values))
        assert np.all(np.isnan(profile.coord_min))

    def test_flipped(self):
        coords = np.array([[x, 0, 0] for x in range(6)])
        cloud = VoxelCloud(coords, coords[:, 0].astype(float))
        profile = compute_profile(cloud, x_frame(), 1, 3, stat="mean", keep_voxels=True)

        flipped = profile.flipped()

        np.testing.assert_allclose(flipped.values, profile.values[::-1])
        np.testing.assert_array_equal(flipped.assignment, [3, 3, 2, 2, 1, 1])
        np.testing.assert_allclose(flipped.axis_vector, -profile.axis_vector)
        np.testing.assert_allclose(flipped.coord_min, profile.coord_max)
        np.testing.assert_allclose(flipped.flipped().values, profile.values)
