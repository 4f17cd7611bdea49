"""
Nucleus detection and post-detection filtering.

Includes:
- filter: removal of detections by measurement thresholds
- stardist: StarDist nucleus detection inside parent regions
- measurements: shape and intensity measurements
"""

from .filter import (
    MissingMeasurementError,
    MissingMeasurementPolicy,
    MeasurementThreshold,
    DetectionFilterConfig,
    should_remove,
    select_objects_to_remove,
    apply_filter,
    filter_detections,
)

from .stardist import (
    NoParentObjectsError,
    StarDistSettings,
    StarDistNucleusDetector,
)

from .measurements import (
    PROBABILITY_MEASUREMENT,
    shape_measurements,
    intensity_measurements,
)

__all__ = [
    # Filtering
    'MissingMeasurementError',
    'MissingMeasurementPolicy',
    'MeasurementThreshold',
    'DetectionFilterConfig',
    'should_remove',
    'select_objects_to_remove',
    'apply_filter',
    'filter_detections',
    # Detection
    'NoParentObjectsError',
    'StarDistSettings',
    'StarDistNucleusDetector',
    # Measurements
    'PROBABILITY_MEASUREMENT',
    'shape_measurements',
    'intensity_measurements',
]
