"""
Object model for annotations, detections and the per-image hierarchy.
"""

from .path_objects import (
    PathObject,
    AnnotationObject,
    DetectedObject,
    measurement,
    polygon_from_points,
    validate_polygon,
    full_image_polygon,
)

from .hierarchy import ObjectHierarchy

__all__ = [
    'PathObject',
    'AnnotationObject',
    'DetectedObject',
    'measurement',
    'polygon_from_points',
    'validate_polygon',
    'full_image_polygon',
    'ObjectHierarchy',
]
