"""
Annotation and detection objects.

Coordinates are full-resolution image pixels, x to the right and y down.
Geometry is held as shapely polygons.
"""

import math
import uuid
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

import numpy as np
from shapely.geometry import Polygon, box
from shapely.validation import make_valid

from wsi_nuclei.utils.logging import get_logger

logger = get_logger(__name__)


def validate_polygon(poly: Polygon) -> Optional[Polygon]:
    """
    Validate and fix a Shapely polygon.

    Handles:
    - Self-intersecting polygons
    - MultiPolygon results (takes largest)
    - GeometryCollection results (takes largest polygon)

    Returns:
        Valid Polygon or None if unfixable
    """
    if poly.is_valid:
        return poly

    poly = make_valid(poly)

    if poly.geom_type == 'Polygon':
        return poly
    elif poly.geom_type in ('MultiPolygon', 'GeometryCollection'):
        polys = [g for g in poly.geoms if g.geom_type == 'Polygon']
        if polys:
            return max(polys, key=lambda p: p.area)
    return None


def polygon_from_points(points: Sequence[Sequence[float]]) -> Optional[Polygon]:
    """
    Build a valid polygon from an (N, 2) sequence of [x, y] points.

    Returns None for fewer than 3 points or degenerate geometry.
    """
    points = np.asarray(points, dtype=float).reshape(-1, 2)
    if len(points) < 3:
        return None
    poly = validate_polygon(Polygon(points))
    if poly is None or poly.is_empty or poly.area <= 0:
        return None
    return poly


def full_image_polygon(width: int, height: int) -> Polygon:
    """Rectangle covering the whole image."""
    return box(0, 0, width, height)


@dataclass(eq=False)
class PathObject:
    """
    Base class for objects in an image hierarchy.

    Attributes:
        roi: Region of the object
        name: Optional display name
        classification: Optional class label
        id: Unique identifier (UUID string)
        parent: Parent object in the hierarchy, None for top level
        children: Child objects
    """
    roi: Polygon
    name: Optional[str] = None
    classification: Optional[str] = None
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    parent: Optional['PathObject'] = field(default=None, repr=False)
    children: List['PathObject'] = field(default_factory=list, repr=False)

    object_type = "object"

    @property
    def centroid(self) -> Tuple[float, float]:
        """Centroid [x, y] of the ROI."""
        c = self.roi.centroid
        return float(c.x), float(c.y)

    def is_detection(self) -> bool:
        return False

    def is_annotation(self) -> bool:
        return False


@dataclass(eq=False)
class AnnotationObject(PathObject):
    """A region of interest drawn or imported by the user."""
    is_locked: bool = False

    object_type = "annotation"

    def is_annotation(self) -> bool:
        return True


@dataclass(eq=False)
class DetectedObject(PathObject):
    """
    One segmented nucleus, optionally with an expanded cell boundary.

    Measurements are read-only once the object is created.

    Attributes:
        roi: Nucleus boundary
        cell_roi: Cell boundary after nucleus expansion, or None
        measurements: Measurement name -> value
    """
    cell_roi: Optional[Polygon] = None
    measurements: Mapping[str, float] = field(default_factory=dict)

    object_type = "detection"

    def __post_init__(self):
        self.measurements = MappingProxyType(
            {str(k): float(v) for k, v in dict(self.measurements).items()}
        )

    def is_detection(self) -> bool:
        return True

    @property
    def is_cell(self) -> bool:
        return self.cell_roi is not None

    @property
    def nucleus_roi(self) -> Polygon:
        return self.roi

    def measurement(self, name: str, default: float = math.nan) -> float:
        """Value of a measurement, or *default* (NaN) when absent."""
        return self.measurements.get(name, default)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for serialization (geometry as [x, y] lists)."""
        cx, cy = self.centroid
        return {
            'id': self.id,
            'centroid': [cx, cy],
            'classification': self.classification,
            'parent': self.parent.id if self.parent is not None else None,
            'measurements': dict(self.measurements),
        }


def measurement(obj: PathObject, name: str) -> float:
    """
    Look up a measurement by name.

    Returns NaN when the object has no such measurement or is not a
    detection.
    """
    if isinstance(obj, DetectedObject):
        return obj.measurement(name)
    return math.nan
