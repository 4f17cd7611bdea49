"""
Pytest fixtures for wsi_nuclei tests.

Provides synthetic images with disc-shaped nuclei, hierarchies with
detections, a fake StarDist model and temporary directories.
"""

import sys
import shutil
import tempfile
from pathlib import Path
from unittest.mock import MagicMock

import cv2
import numpy as np
import pytest
from shapely.geometry import box

sys.path.insert(0, str(Path(__file__).parent.parent))

from wsi_nuclei.io.image_data import ImageChannel, ImageData, ImageType
from wsi_nuclei.objects.hierarchy import ObjectHierarchy
from wsi_nuclei.objects.path_objects import AnnotationObject, DetectedObject
from wsi_nuclei.preprocessing.stains import default_stains
from wsi_nuclei.utils.config import AREA_MEASUREMENT, HEMATOXYLIN_MEAN_MEASUREMENT


# Disc nuclei: (center_x, center_y, radius)
DISCS = [(50, 50, 10), (120, 60, 8), (150, 150, 12)]
IMAGE_SIZE = 200


def _disc_labels(size=IMAGE_SIZE, discs=DISCS):
    labels = np.zeros((size, size), dtype=np.int32)
    yy, xx = np.ogrid[:size, :size]
    for i, (cx, cy, r) in enumerate(discs, start=1):
        labels[(xx - cx) ** 2 + (yy - cy) ** 2 <= r ** 2] = i
    return labels


@pytest.fixture
def disc_labels():
    """
    200x200 label image with three disc-shaped nuclei.

    Returns:
        np.ndarray: int32 labels 1..3, 0 is background
    """
    return _disc_labels()


@pytest.fixture
def fluorescence_image(disc_labels):
    """
    Two-channel uint16 fluorescence image with the discs bright in channel 1.

    Channel 'DAPI' is 1000 inside nuclei and 100 outside; channel 'CD3'
    is 50 x label inside nuclei. Pixel size 0.5 µm.
    """
    pixels = np.zeros((IMAGE_SIZE, IMAGE_SIZE, 2), dtype=np.uint16)
    pixels[:, :, 0] = np.where(disc_labels > 0, 1000, 100)
    pixels[:, :, 1] = disc_labels * 50
    return ImageData(
        pixels=pixels,
        name="panel.ome.tif",
        channels=[ImageChannel("DAPI"), ImageChannel("CD3")],
        pixel_size_um=0.5,
        image_type=ImageType.FLUORESCENCE,
    )


@pytest.fixture
def brightfield_image(disc_labels):
    """8-bit RGB H-DAB image with blue-ish hematoxylin discs on white."""
    pixels = np.full((IMAGE_SIZE, IMAGE_SIZE, 3), 240, dtype=np.uint8)
    pixels[disc_labels > 0] = [60, 70, 150]
    return ImageData(
        pixels=pixels,
        name="slide.tif",
        pixel_size_um=0.5,
        image_type=ImageType.BRIGHTFIELD_H_DAB,
        stains=default_stains("H-DAB"),
    )


@pytest.fixture
def fake_stardist_model(disc_labels):
    """
    MagicMock standing in for a StarDist2D model.

    predict_instances() returns the disc labels resized (nearest neighbour)
    to the input shape, and probabilities 0.9, 0.8, 0.7.
    """
    model = MagicMock()

    def predict_instances(img, prob_thresh=0.5, n_tiles=None, **kwargs):
        h, w = img.shape[:2]
        labels = disc_labels
        if labels.shape != (h, w):
            labels = cv2.resize(labels.astype(np.float32), (w, h), interpolation=cv2.INTER_NEAREST)
            labels = labels.astype(np.int32)
        return labels, {'prob': np.array([0.9, 0.8, 0.7]), 'points': np.zeros((3, 2))}

    model.predict_instances = MagicMock(side_effect=predict_instances)
    return model


@pytest.fixture
def make_detection():
    """
    Factory for detections with given measurements.

    Usage:
        det = make_detection(area=15)
        det = make_detection(area=25, hematoxylin=0.1)
        det = make_detection(**{'Custom: Mean': 3.0})
    """
    counter = {'n': 0}

    def _make(area=None, hematoxylin=None, **measurements):
        counter['n'] += 1
        x = counter['n'] * 10
        values = dict(measurements)
        if area is not None:
            values[AREA_MEASUREMENT] = area
        if hematoxylin is not None:
            values[HEMATOXYLIN_MEAN_MEASUREMENT] = hematoxylin
        return DetectedObject(roi=box(x, 0, x + 5, 5), measurements=values)

    return _make


@pytest.fixture
def parent_annotation():
    return AnnotationObject(roi=box(0, 0, 1000, 1000), name="ROI")


@pytest.fixture
def hierarchy_with_detections(parent_annotation, make_detection):
    """
    Hierarchy with one selected annotation and two child detections.

    Detection A has area 15, detection B area 25.

    Returns:
        (ObjectHierarchy, detection A, detection B)
    """
    hierarchy = ObjectHierarchy()
    hierarchy.add_object(parent_annotation)
    det_a = make_detection(area=15)
    det_b = make_detection(area=25)
    hierarchy.add_objects([det_a, det_b], parent=parent_annotation)
    hierarchy.set_selected([parent_annotation])
    return hierarchy, det_a, det_b


@pytest.fixture
def temp_output_dir():
    """
    Temporary directory for test outputs, removed after the test.

    Returns:
        Path: Temporary directory path
    """
    temp_dir = tempfile.mkdtemp(prefix="wsi_nuclei_test_")
    yield Path(temp_dir)
    shutil.rmtree(temp_dir, ignore_errors=True)
