"""
Tests for equidistant and equivolume segmentation along ROI axes.
"""

import numpy as np
import pytest

from mrgrad.axes import VoxelCloud, fit_axes
from mrgrad.segmentation import (
    equidistant_bins,
    equivolume_bins,
    normalize_method,
    segment_axis,
    segment_centers,
    segment_counts,
    segment_volume,
)


@pytest.fixture
def box_cloud():
    """Uniformly filled 20 x 6 x 4 box of voxels."""
    mask = np.zeros((24, 10, 8), dtype=bool)
    mask[2:22, 2:8, 2:6] = True
    return VoxelCloud.from_mask(mask)


class TestMethodNames:
    def test_aliases(self):
        assert normalize_method("equidistant") == "equidistance"
        assert normalize_method("EquiVolume") == "equivolume"

    def test_unknown_method(self):
        with pytest.raises(ValueError, match="Unknown segmenting method"):
            normalize_method("quantile")


class TestEquidistantBins:
    def test_equal_width_intervals(self):
        labels = equidistant_bins(np.arange(10, dtype=float), 5)
        np.testing.assert_array_equal(labels, [1, 1, 2, 2, 3, 3, 4, 4, 5, 5])

    def test_maximum_in_last_segment(self):
        labels = equidistant_bins(np.array([0.0, 1.0, 2.0]), 2)
        np.testing.assert_array_equal(labels, [1, 2, 2])

    def test_empty_interval_left_empty(self):
        labels = equidistant_bins(np.array([0.0, 0.1, 0.2, 10.0]), 4)
        counts = segment_counts(labels, 4)
        np.testing.assert_array_equal(counts, [3, 0, 0, 1])

    def test_constant_projection_single_segment(self):
        labels = equidistant_bins(np.full(6, 2.5), 3)
        np.testing.assert_array_equal(labels, np.ones(6))

    def test_empty_input(self):
        assert equidistant_bins(np.array([]), 3).size == 0


class TestEquivolumeBins:
    def test_sizes_differ_by_at_most_one(self):
        labels = equivolume_bins(np.arange(23, dtype=float), 5)
        counts = segment_counts(labels, 5)
        assert counts.sum() == 23
        assert counts.max() - counts.min() <= 1

    def test_remainder_goes_to_trailing_segments(self):
        labels = equivolume_bins(np.arange(7, dtype=float), 3)
        np.testing.assert_array_equal(segment_counts(labels, 3), [2, 2, 3])

    def test_blocks_follow_projection_order(self):
        projection = np.array([5.0, 1.0, 4.0, 2.0, 3.0, 0.0])
        labels = equivolume_bins(projection, 3)
        np.testing.assert_array_equal(labels, [3, 1, 3, 2, 2, 1])

    def test_more_segments_than_voxels(self):
        labels = equivolume_bins(np.array([0.0, 1.0]), 4)
        np.testing.assert_array_equal(segment_counts(labels, 4), [0, 0, 1, 1])


class TestSegmentAxis:
    def test_equidistant_occupancy_bounded(self, box_cloud):
        frame = fit_axes(box_cloud)
        labels = segment_axis(box_cloud, frame, 1, 5, "equidistance")
        counts = segment_counts(labels, 5)

        assert counts.sum() == box_cloud.n_voxels
        assert counts.min() > 0
        assert counts.max() / counts.min() <= 2.0

    def test_equivolume_counts_equal_up_to_one(self, box_cloud):
        frame = fit_axes(box_cloud)
        labels = segment_axis(box_cloud, frame, 1, 7, "equivolume")
        counts = segment_counts(labels, 7)

        assert counts.sum() == box_cloud.n_voxels
        assert counts.max() - counts.min() <= 1

    def test_segments_ordered_along_axis(self, box_cloud):
        frame = fit_axes(box_cloud)
        labels = segment_axis(box_cloud, frame, 1, 4)
        proj = frame.project(box_cloud.coords, 1)
        for seg in range(1, 4):
            assert proj[labels == seg].max() <= proj[labels == seg + 1].min()

    def test_invalid_segment_count(self, box_cloud):
        frame = fit_axes(box_cloud)
        with pytest.raises(ValueError, match="n_segments"):
            segment_axis(box_cloud, frame, 1, 0)

    def test_empty_cloud(self, box_cloud):
        frame = fit_axes(box_cloud)
        empty = VoxelCloud(np.zeros((0, 3)), np.zeros(0))
        assert segment_axis(empty, frame, 1, 5).size == 0


class TestSegmentOutputs:
    def test_centers_nan_for_empty_segment(self):
        coords = np.array([[0, 0, 0], [2, 0, 0], [10, 0, 0]])
        centers = segment_centers(coords, np.array([1, 1, 3]), 3)
        np.testing.assert_allclose(centers[0], [1, 0, 0])
        assert np.all(np.isnan(centers[1]))
        np.testing.assert_allclose(centers[2], [10, 0, 0])

    def test_segment_volume(self):
        coords = np.array([[0, 1, 2], [3, 3, 3]])
        volume = segment_volume((4, 4, 4), coords, np.array([2, 5]))
        assert volume.shape == (4, 4, 4)
        assert volume[0, 1, 2] == 2
        assert volume[3, 3, 3] == 5
        assert (volume > 0).sum() == 2
