"""
Tests for shape and intensity measurements.

Tests wsi_nuclei/detection/measurements.py.
"""

import math

import numpy as np
import pytest
from shapely.geometry import Point, box

import sys
from pathlib import Path
sys.path.insert(0, str(Path(__file__).parent.parent))

from wsi_nuclei.detection.measurements import (
    cytoplasm_labels,
    intensity_measurements,
    length_unit,
    measurement_names,
    shape_measurements,
)


class TestShapeMeasurements:
    """Tests for shape_measurements."""

    def test_square_calibrated(self):
        m = shape_measurements(box(0, 0, 10, 10), "Nucleus", pixel_size_um=0.5)

        assert m["Nucleus: Area µm^2"] == pytest.approx(25.0)
        assert m["Nucleus: Length µm"] == pytest.approx(20.0)
        assert m["Nucleus: Circularity"] == pytest.approx(math.pi / 4)
        assert m["Nucleus: Solidity"] == pytest.approx(1.0)
        assert m["Nucleus: Max diameter µm"] == pytest.approx(math.sqrt(200) * 0.5)
        assert m["Nucleus: Min diameter µm"] == pytest.approx(5.0)

    def test_uncalibrated_uses_pixels(self):
        m = shape_measurements(box(0, 0, 4, 2), "Cell")
        assert m["Cell: Area px^2"] == pytest.approx(8.0)
        assert m["Cell: Min diameter px"] == pytest.approx(2.0)
        assert not any("µm" in name for name in m)

    def test_circle_circularity_near_one(self):
        circle = Point(0, 0).buffer(20, quad_segs=64)
        m = shape_measurements(circle, "Nucleus")
        assert 0.99 < m["Nucleus: Circularity"] <= 1.0

    def test_concave_solidity(self):
        l_shape = box(0, 0, 10, 10).difference(box(5, 5, 10, 10))
        m = shape_measurements(l_shape, "Nucleus")
        assert m["Nucleus: Solidity"] < 1.0

    def test_length_unit(self):
        assert length_unit(0.25) == "µm"
        assert length_unit(None) == "px"


class TestIntensityMeasurements:
    """Tests for intensity_measurements."""

    @pytest.fixture
    def labels_and_image(self):
        labels = np.zeros((4, 4), dtype=np.int32)
        labels[:2, :2] = 1
        labels[2:, 2:] = 2
        image = np.zeros((4, 4, 2), dtype=np.float32)
        image[:, :, 0] = np.arange(16).reshape(4, 4)
        image[:, :, 1] = 7
        return labels, image

    def test_statistics(self, labels_and_image):
        labels, image = labels_and_image
        result = intensity_measurements(labels, image, ["A", "B"], "Nucleus", [1, 2])

        # Label 1 covers values 0, 1, 4, 5
        assert result[1]["A: Nucleus: Mean"] == pytest.approx(2.5)
        assert result[1]["A: Nucleus: Median"] == pytest.approx(2.5)
        assert result[1]["A: Nucleus: Min"] == pytest.approx(0.0)
        assert result[1]["A: Nucleus: Max"] == pytest.approx(5.0)
        assert result[1]["A: Nucleus: Std.Dev."] == pytest.approx(np.std([0, 1, 4, 5]))
        assert result[2]["B: Nucleus: Mean"] == pytest.approx(7.0)

    def test_absent_label_is_nan(self, labels_and_image):
        labels, image = labels_and_image
        result = intensity_measurements(labels, image, ["A", "B"], "Cell", [1, 9])
        assert math.isnan(result[9]["A: Cell: Mean"])
        assert not math.isnan(result[1]["A: Cell: Mean"])

    def test_no_labels(self, labels_and_image):
        labels, image = labels_and_image
        assert intensity_measurements(labels, image, ["A", "B"], "Nucleus", []) == {}

    def test_cytoplasm_labels(self):
        cells = np.array([[1, 1, 1], [1, 1, 1], [0, 2, 2]])
        nuclei = np.array([[0, 1, 0], [0, 0, 0], [0, 2, 0]])
        cytoplasm = cytoplasm_labels(cells, nuclei)
        np.testing.assert_array_equal(cytoplasm, [[1, 0, 1], [1, 1, 1], [0, 0, 2]])
        assert cells[0, 1] == 1


class TestMeasurementNames:

    def test_first_seen_order(self):
        names = measurement_names([{"b": 1, "a": 2}, {"c": 3, "a": 4}, {}])
        assert names == ["b", "a", "c"]
