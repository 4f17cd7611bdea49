"""
Shape and intensity measurements for detected nuclei and cells.

Measurement names follow the '<compartment>: <feature> <unit>' and
'<channel>: <compartment>: <statistic>' conventions, e.g.
'Nucleus: Area µm^2' and 'Hematoxylin: Nucleus: Mean'. Lengths are in µm
for calibrated images and in pixels otherwise.
"""

import math
from typing import Dict, List, Optional, Sequence

import numpy as np
from scipy import ndimage
from shapely.geometry import Polygon

from wsi_nuclei.utils.logging import get_logger

logger = get_logger(__name__)

PROBABILITY_MEASUREMENT = "Detection probability"

COMPARTMENT_NUCLEUS = "Nucleus"
COMPARTMENT_CELL = "Cell"
COMPARTMENT_CYTOPLASM = "Cytoplasm"

# statistic name -> labeled ndimage reducer
_INTENSITY_STATISTICS = {
    "Mean": ndimage.mean,
    "Median": ndimage.median,
    "Min": ndimage.minimum,
    "Max": ndimage.maximum,
    "Std.Dev.": ndimage.standard_deviation,
}


def length_unit(pixel_size_um: Optional[float]) -> str:
    return "µm" if pixel_size_um else "px"


def _feret_diameters(poly: Polygon) -> tuple:
    """(max, min) caliper diameters in polygon units."""
    hull = np.asarray(poly.convex_hull.exterior.coords)[:-1]
    if len(hull) < 2:
        return 0.0, 0.0
    diffs = hull[:, None, :] - hull[None, :, :]
    max_diameter = float(np.sqrt((diffs ** 2).sum(axis=-1)).max())
    rect = np.asarray(poly.minimum_rotated_rectangle.exterior.coords)
    sides = np.hypot(*np.diff(rect[:3], axis=0).T)
    return max_diameter, float(sides.min())


def shape_measurements(
    poly: Polygon,
    compartment: str,
    pixel_size_um: Optional[float] = None,
) -> Dict[str, float]:
    """
    Area, perimeter, circularity, solidity and caliper diameters of a polygon.

    Args:
        poly: Boundary in full-resolution pixel coordinates
        compartment: 'Nucleus' or 'Cell'
        pixel_size_um: Full-resolution pixel size, None for pixel units

    Returns:
        Dict of measurement name -> value
    """
    unit = length_unit(pixel_size_um)
    scale = pixel_size_um or 1.0

    area = poly.area * scale ** 2
    perimeter = poly.exterior.length * scale
    hull_area = poly.convex_hull.area * scale ** 2
    max_diameter, min_diameter = _feret_diameters(poly)

    circularity = 4 * math.pi * area / perimeter ** 2 if perimeter > 0 else 0.0

    return {
        f"{compartment}: Area {unit}^2": area,
        f"{compartment}: Length {unit}": perimeter,
        f"{compartment}: Circularity": min(circularity, 1.0),
        f"{compartment}: Solidity": area / hull_area if hull_area > 0 else 0.0,
        f"{compartment}: Max diameter {unit}": max_diameter * scale,
        f"{compartment}: Min diameter {unit}": min_diameter * scale,
    }


def intensity_measurements(
    labels: np.ndarray,
    image: np.ndarray,
    channel_names: Sequence[str],
    compartment: str,
    label_ids: Sequence[int],
) -> Dict[int, Dict[str, float]]:
    """
    Per-label intensity statistics for each channel.

    Args:
        labels: (H, W) label image, 0 is background
        image: (H, W, C) measurement image aligned with *labels*
        channel_names: One name per channel of *image*
        compartment: Compartment name used in the measurement names
        label_ids: Labels to measure. Labels with no pixels get NaN.

    Returns:
        Dict label -> {measurement name -> value}
    """
    results: Dict[int, Dict[str, float]] = {int(i): {} for i in label_ids}
    if not label_ids:
        return results

    index = np.asarray(label_ids)
    present = set(np.unique(labels).tolist())

    for c, channel in enumerate(channel_names):
        values = image[:, :, c]
        for stat, reducer in _INTENSITY_STATISTICS.items():
            stats = np.atleast_1d(reducer(values, labels=labels, index=index))
            name = f"{channel}: {compartment}: {stat}"
            for label, value in zip(label_ids, stats):
                results[int(label)][name] = float(value) if label in present else math.nan

    return results


def cytoplasm_labels(cell_labels: np.ndarray, nucleus_labels: np.ndarray) -> np.ndarray:
    """Cell labels with the nucleus pixels removed."""
    cytoplasm = cell_labels.copy()
    cytoplasm[nucleus_labels > 0] = 0
    return cytoplasm


def measurement_names(measurements: List[Dict[str, float]]) -> List[str]:
    """Union of measurement names in first-seen order."""
    names: Dict[str, None] = {}
    for m in measurements:
        for name in m:
            names.setdefault(name, None)
    return list(names)
