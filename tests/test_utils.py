"""
Tests for configuration, NIfTI loading, orientation normalization and ROI masks.
"""

import logging

import nibabel as nib
import numpy as np
import pytest

from mrgrad.errors import MissingInput
from mrgrad.utils import (
    DEFAULT_CONFIG,
    get_config,
    get_orientation,
    load_metadata,
    load_nifti,
    load_roi_mask,
    make_sphere_mask,
    restore_original_strides,
    roi_mask,
    save_metadata,
    save_nifti,
    to_positive_strides,
)


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------

class TestGetConfig:
    def test_defaults(self):
        cfg = get_config()
        assert cfg == DEFAULT_CONFIG
        assert cfg is not DEFAULT_CONFIG
        assert cfg["n_segments"] == 7
        assert cfg["segmenting_method"] == "equidistance"
        assert cfg["stat"] == "median"

    def test_overrides(self):
        cfg = get_config({"n_segments": 5, "rois": [11]})
        assert cfg["n_segments"] == 5
        assert cfg["rois"] == [11]
        assert DEFAULT_CONFIG["n_segments"] == 7

    def test_unknown_keys_dropped(self, caplog):
        with caplog.at_level(logging.WARNING):
            cfg = get_config({"n_segmets": 5})
        assert "n_segmets" not in cfg
        assert "n_segmets" in caplog.text


# ---------------------------------------------------------------------------
# NIfTI I/O
# ---------------------------------------------------------------------------

class TestLoadNifti:
    def test_round_trip(self, tmp_path):
        data = np.random.default_rng(0).random((4, 5, 6)).astype(np.float32)
        affine = np.diag([2.0, 2.0, 2.0, 1.0])
        path = tmp_path / "img.nii.gz"
        save_nifti(data, affine, path)

        loaded, loaded_affine, header = load_nifti(path)

        np.testing.assert_allclose(loaded, data, rtol=1e-6)
        np.testing.assert_allclose(loaded_affine, affine)
        assert header is not None

    def test_single_channel_4d_squeezed(self, tmp_path):
        path = tmp_path / "img4d.nii.gz"
        nib.save(nib.Nifti1Image(np.ones((3, 3, 3, 1), dtype=np.float32), np.eye(4)), str(path))
        data, _, _ = load_nifti(path)
        assert data.shape == (3, 3, 3)

    def test_missing_file(self, tmp_path):
        with pytest.raises(MissingInput, match="not found"):
            load_nifti(tmp_path / "nope.nii.gz")

    def test_missing_input_is_file_not_found(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            load_nifti(tmp_path / "nope.nii.gz")

    def test_unreadable_file(self, tmp_path):
        path = tmp_path / "broken.nii"
        path.write_bytes(b"not a nifti file")
        with pytest.raises(MissingInput, match="Could not read"):
            load_nifti(path)


# ---------------------------------------------------------------------------
# Orientation
# ---------------------------------------------------------------------------

def las_affine(shape):
    affine = np.diag([-1.0, 1.0, 1.0, 1.0])
    affine[0, 3] = shape[0] - 1
    return affine


class TestOrientation:
    def test_canonical_untouched(self):
        data = np.arange(24, dtype=float).reshape(2, 3, 4)
        out, affine, orientation = to_positive_strides(data, np.eye(4))
        assert orientation.strides == (1, 2, 3)
        assert orientation.is_canonical
        assert out is data

    def test_flipped_x(self):
        shape = (4, 3, 2)
        canonical = np.arange(24, dtype=float).reshape(shape)
        stored = np.flip(canonical, axis=0)

        out, affine, orientation = to_positive_strides(stored, las_affine(shape))

        assert orientation.strides == (-1, 2, 3)
        np.testing.assert_array_equal(out, canonical)
        np.testing.assert_allclose(affine, np.eye(4), atol=1e-12)

    def test_permuted_axes(self):
        # array axis 0 runs along Y, array axis 1 along X
        affine = np.array([
            [0.0, 1.0, 0.0, 0.0],
            [1.0, 0.0, 0.0, 0.0],
            [0.0, 0.0, 1.0, 0.0],
            [0.0, 0.0, 0.0, 1.0],
        ])
        data = np.arange(24, dtype=float).reshape(3, 4, 2)

        out, new_affine, orientation = to_positive_strides(data, affine)

        assert orientation.strides == (2, 1, 3)
        assert out.shape == (4, 3, 2)
        np.testing.assert_array_equal(out, data.transpose(1, 0, 2))
        # the same voxel keeps its world position
        i, j, k = 2, 1, 1
        world_before = affine @ np.array([i, j, k, 1.0])
        world_after = new_affine @ np.array([j, i, k, 1.0])
        np.testing.assert_allclose(world_after, world_before)

    def test_restore_round_trip(self):
        shape = (5, 4, 3)
        affine = np.diag([-1.0, -1.0, 1.0, 1.0])
        data = np.random.default_rng(2).random(shape)

        out, _, orientation = to_positive_strides(data, affine)
        assert orientation.strides == (-1, -2, 3)
        np.testing.assert_array_equal(restore_original_strides(out, orientation), data)

    def test_get_orientation_records_shape(self):
        orientation = get_orientation(las_affine((7, 8, 9)), (7, 8, 9))
        assert orientation.original_shape == (7, 8, 9)
        assert not orientation.is_canonical


# ---------------------------------------------------------------------------
# ROI masks
# ---------------------------------------------------------------------------

class TestRoiMask:
    def test_selects_label(self):
        seg = np.zeros((5, 5, 5))
        seg[1:3, 1:3, 1:3] = 11
        seg[4, 4, 4] = 12
        mask = roi_mask(seg, 11)
        assert mask.dtype == bool
        assert mask.sum() == 8

    def test_float_labels_rounded(self):
        seg = np.full((2, 2, 2), 10.9999)
        assert roi_mask(seg, 11).all()

    def test_erode_removes_surface(self):
        seg = np.zeros((9, 9, 9))
        seg[2:7, 2:7, 2:7] = 1
        assert roi_mask(seg, 1, erode=True).sum() == 27

    def test_erode_everything_warns(self, caplog):
        seg = np.zeros((5, 5, 5))
        seg[2, 2, 2] = 1
        with caplog.at_level(logging.WARNING):
            mask = roi_mask(seg, 1, erode=True)
        assert not mask.any()
        assert "Erosion removed" in caplog.text

    def test_load_roi_mask(self, tmp_path):
        seg = np.zeros((4, 4, 4), dtype=np.int16)
        seg[0, 0, 0] = 3
        path = tmp_path / "seg.nii.gz"
        save_nifti(seg, np.eye(4), path)
        mask, affine = load_roi_mask(path, 3)
        assert mask.sum() == 1
        np.testing.assert_allclose(affine, np.eye(4))


class TestSyntheticAndMetadata:
    def test_sphere_mask(self):
        mask = make_sphere_mask((5, 5, 5), 2.0, (11, 11, 11))
        assert mask.dtype == bool
        assert mask[5, 5, 5]
        assert not mask[5, 5, 8]
        # symmetric about the centre
        np.testing.assert_array_equal(mask, mask[::-1, ::-1, ::-1])

    def test_metadata_round_trip(self, tmp_path):
        path = tmp_path / "sub" / "meta.json"
        save_metadata({"a": 1, "b": [1, 2]}, path)
        assert load_metadata(path) == {"a": 1, "b": [1, 2]}
