"""Tests for image containers and loading."""

import numpy as np
import pytest
import torch

from rgbdforest.data.image import (
    LabeledRGBDImage,
    RGBDImage,
    TensorCache,
    fill_depth,
    format_color,
    load_labeled_image,
    load_labeled_images,
    parse_color,
    save_labeled_image,
)


class TestColors:
    """Tests for color string parsing."""

    def test_parse(self):
        assert parse_color("0, 128,255") == (0, 128, 255)
        assert format_color((1, 2, 3)) == "1,2,3"

    @pytest.mark.parametrize("value", ["1,2", "1,2,3,4", "0,0,256", "a,b,c", "-1,0,0"])
    def test_invalid(self, value):
        with pytest.raises(ValueError):
            parse_color(value)


class TestImages:
    """Tests for RGBDImage and LabeledRGBDImage."""

    def test_shape_mismatch(self):
        with pytest.raises(ValueError):
            RGBDImage(np.zeros((4, 4, 3)), np.zeros((4, 5)))
        image = RGBDImage(np.zeros((4, 4, 3)), np.ones((4, 4)))
        with pytest.raises(ValueError):
            LabeledRGBDImage(image, np.zeros((3, 4), dtype=np.int32))

    def test_to_tensor_marks_missing_depth(self):
        depth = np.array([[1.0, 0.0], [np.nan, 2.0]], dtype=np.float32)
        image = RGBDImage(np.zeros((2, 2, 3), dtype=np.float32), depth)
        tensor = image.to_tensor()
        assert tensor.shape == (4, 2, 2)
        assert tensor.dtype == torch.float32
        assert torch.isnan(tensor[3]).tolist() == [[False, True], [True, False]]

    def test_to_tensor_without_depth(self):
        image = RGBDImage(np.zeros((2, 2, 3), dtype=np.float32), np.zeros((2, 2)))
        assert (image.to_tensor(use_depth=False)[3] == 1.0).all()

    def test_label_counts(self):
        image = RGBDImage(np.zeros((2, 2, 3)), np.ones((2, 2)))
        labeled = LabeledRGBDImage(image, np.array([[0, 1], [1, 5]], dtype=np.int32))
        assert labeled.label_counts(2).tolist() == [1, 2]


class TestDepthFilling:
    """Tests for fill_depth."""

    def test_nearest_valid_value(self):
        depth = np.array([[1.0, 0.0, 0.0, 3.0]], dtype=np.float32)
        filled = fill_depth(depth)
        assert filled[0, 0] == 1.0 and filled[0, 3] == 3.0
        assert filled[0, 1] == 1.0 and filled[0, 2] == 3.0

    def test_all_missing_unchanged(self):
        depth = np.zeros((2, 2), dtype=np.float32)
        np.testing.assert_array_equal(fill_depth(depth), depth)


class TestLoading:
    """Tests for saving and loading image archives."""

    def test_save_and_load(self, tmp_path, scenes):
        path = save_labeled_image(tmp_path / "a" / "scene.npz", scenes[0])
        loaded = load_labeled_image(path)
        assert loaded.name == "scene"
        np.testing.assert_array_equal(loaded.labels, scenes[0].labels)
        np.testing.assert_allclose(loaded.image.color, scenes[0].image.color)

    def test_cielab_conversion(self, tmp_path, scenes):
        path = save_labeled_image(tmp_path / "scene.npz", scenes[0])
        loaded = load_labeled_image(path, use_cielab=True)
        lightness = loaded.image.color[..., 0]
        assert lightness.min() >= -0.001 and lightness.max() <= 100.001

    def test_directory_and_limit(self, tmp_path, scenes):
        for i, scene in enumerate(scenes[:3]):
            save_labeled_image(tmp_path / f"scene_{i}.npz", scene)
        assert [img.name for img in load_labeled_images([tmp_path])] == [
            "scene_0",
            "scene_1",
            "scene_2",
        ]
        assert len(load_labeled_images([tmp_path], max_images=2)) == 2


class TestTensorCache:
    """Tests for TensorCache."""

    def test_disabled(self, scenes):
        cache = TensorCache(0)
        cache.get(scenes[0].image, True, torch.device("cpu"))
        assert len(cache) == 0

    def test_reuses_tensors(self, scenes):
        cache = TensorCache(1)
        first = cache.get(scenes[0].image, True, torch.device("cpu"))
        assert cache.get(scenes[0].image, True, torch.device("cpu")) is first
        assert len(cache) == 1

    def test_evicts_oldest(self):
        cache = TensorCache(1)
        big = [RGBDImage(np.zeros((300, 300, 3), dtype=np.float32), np.ones((300, 300))) for _ in range(3)]
        for image in big:
            cache.get(image, True, torch.device("cpu"))
        assert len(cache) == 1
