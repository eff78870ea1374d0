"""Tests for confusion matrix metrics."""

import numpy as np
import pytest

from rgbdforest.evaluation.metrics import ConfusionMatrix, plot_confusion_matrix


class TestConfusionMatrix:
    """Tests for ConfusionMatrix."""

    def test_class_accuracy_with_void(self):
        """Hand-built 2-class matrix with class 0 as void."""
        cm = ConfusionMatrix.from_array([[8, 2], [1, 9]], ignored_labels=[0])
        assert cm.average_class_accuracy(include_void=True) == pytest.approx(0.85)
        assert cm.average_class_accuracy(include_void=False) == pytest.approx(0.9)

    def test_pixel_accuracy(self):
        """Pixel accuracy with and without the void ground-truth row."""
        cm = ConfusionMatrix.from_array([[8, 2], [1, 9]], ignored_labels=[0])
        assert cm.pixel_accuracy(include_void=True) == pytest.approx(17 / 20)
        assert cm.pixel_accuracy(include_void=False) == pytest.approx(9 / 10)

    def test_accuracies_in_unit_interval(self):
        """All accuracy figures stay within [0, 1]."""
        rng = np.random.default_rng(0)
        cm = ConfusionMatrix.from_array(rng.integers(0, 50, size=(4, 4)), ignored_labels=[0, 3])
        for include_void in (True, False):
            assert 0.0 <= cm.average_class_accuracy(include_void) <= 1.0
            assert 0.0 <= cm.pixel_accuracy(include_void) <= 1.0

    def test_absent_classes_do_not_count(self):
        """Classes without ground-truth pixels are left out of the class average."""
        cm = ConfusionMatrix.from_array([[4, 0, 0], [0, 0, 0], [1, 0, 3]])
        assert np.isnan(cm.class_accuracies()[1])
        assert cm.average_class_accuracy() == pytest.approx((1.0 + 0.75) / 2)

    def test_empty_matrix(self):
        """An empty matrix reports zero accuracy."""
        cm = ConfusionMatrix(3)
        assert cm.pixel_accuracy() == 0.0
        assert cm.average_class_accuracy() == 0.0

    def test_accumulate(self):
        """Label images are accumulated pixel by pixel."""
        cm = ConfusionMatrix(2)
        gt = np.array([[0, 0], [1, 1]])
        pred = np.array([[0, 1], [1, 1]])
        cm.accumulate(gt, pred)
        cm.accumulate(gt, pred)
        np.testing.assert_array_equal(cm.matrix, [[2, 2], [0, 4]])

    def test_accumulate_skips_out_of_range_ground_truth(self):
        """Ground-truth labels outside the class range are not counted."""
        cm = ConfusionMatrix(2)
        cm.accumulate(np.array([0, 1, 5, -1]), np.array([0, 1, 1, 0]))
        assert cm.total == 2

    def test_accumulate_shape_mismatch(self):
        """Mismatched shapes are rejected."""
        with pytest.raises(ValueError):
            ConfusionMatrix(2).accumulate(np.zeros((2, 2), int), np.zeros((2, 3), int))

    def test_normalized(self):
        """Rows of the normalised matrix sum to one or stay zero."""
        cm = ConfusionMatrix.from_array([[3, 1], [0, 0]])
        np.testing.assert_allclose(cm.normalized(), [[0.75, 0.25], [0.0, 0.0]])

    def test_iadd(self):
        """Matrices of the same size can be summed."""
        a = ConfusionMatrix.from_array([[1, 0], [0, 1]])
        a += ConfusionMatrix.from_array([[0, 1], [1, 0]])
        np.testing.assert_array_equal(a.matrix, np.ones((2, 2)))
        with pytest.raises(ValueError):
            a += ConfusionMatrix(3)

    def test_non_square_rejected(self):
        """from_array requires a square matrix."""
        with pytest.raises(ValueError):
            ConfusionMatrix.from_array([[1, 2, 3], [4, 5, 6]])


class TestPlotConfusionMatrix:
    """Tests for the confusion matrix plot."""

    def test_saves_png(self, tmp_path):
        """The plot is written to the given path."""
        cm = ConfusionMatrix.from_array([[8, 2], [1, 9]])
        path = tmp_path / "cm.png"
        plot_confusion_matrix(cm, class_names=["void", "object"], save_path=path)
        assert path.exists()
