"""
Post-detection filtering by measurement thresholds.

Removes detections whose value for any configured measurement is less than
or equal to that rule's minimum. All rules are evaluated together in one
predicate per object, so the result does not depend on rule order.

Usage:
    from wsi_nuclei.detection.filter import (
        DetectionFilterConfig, MeasurementThreshold, filter_detections,
    )

    config = DetectionFilterConfig(thresholds=[
        MeasurementThreshold('Nucleus: Area µm^2', 20),
        MeasurementThreshold('Hematoxylin: Nucleus: Mean', 0.2),
    ])
    n_removed = filter_detections(image_data.hierarchy, config)
"""

import math
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Iterable, List, Sequence

from wsi_nuclei.objects.hierarchy import ObjectHierarchy
from wsi_nuclei.objects.path_objects import DetectedObject
from wsi_nuclei.utils.logging import get_logger

logger = get_logger(__name__)


class MissingMeasurementError(KeyError):
    """Raised when a filtered object lacks a measurement under the 'raise' policy."""


class MissingMeasurementPolicy(str, Enum):
    """What to do with an object that has no (or a NaN) value for a rule."""
    KEEP = "keep"        # rule not applied to that object
    REMOVE = "remove"    # treated as failing the rule
    RAISE = "raise"      # MissingMeasurementError


@dataclass(frozen=True)
class MeasurementThreshold:
    """
    Exclusion rule: remove objects whose measurement is <= min_value.

    Attributes:
        measurement: Measurement name, e.g. 'Nucleus: Area µm^2'
        min_value: Minimum value an object must exceed to be kept
    """
    measurement: str
    min_value: float

    def __str__(self) -> str:
        return f"{self.measurement} <= {self.min_value:g}"


@dataclass(frozen=True)
class DetectionFilterConfig:
    """
    Thresholds and missing-measurement policy for one filtering run.

    Attributes:
        thresholds: Rules combined with logical OR
        missing: Policy for absent or NaN measurements
    """
    thresholds: Sequence[MeasurementThreshold] = field(default_factory=tuple)
    missing: MissingMeasurementPolicy = MissingMeasurementPolicy.KEEP

    def __post_init__(self):
        object.__setattr__(self, 'thresholds', tuple(self.thresholds))
        object.__setattr__(self, 'missing', MissingMeasurementPolicy(self.missing))

    @classmethod
    def from_config(cls, config: Dict[str, Any]) -> 'DetectionFilterConfig':
        """Build from the 'filters' and 'missing_measurement' config keys."""
        thresholds = [
            MeasurementThreshold(rule['measurement'], float(rule['min']))
            for rule in config.get('filters', [])
        ]
        return cls(
            thresholds=thresholds,
            missing=config.get('missing_measurement', MissingMeasurementPolicy.KEEP.value),
        )

    def to_config(self) -> Dict[str, Any]:
        return {
            'filters': [
                {'measurement': t.measurement, 'min': t.min_value} for t in self.thresholds
            ],
            'missing_measurement': self.missing.value,
        }


def _rule_matches(obj: DetectedObject, rule: MeasurementThreshold, missing: MissingMeasurementPolicy) -> bool:
    value = obj.measurement(rule.measurement)
    if math.isnan(value):
        if missing is MissingMeasurementPolicy.RAISE:
            raise MissingMeasurementError(
                f"Object {obj.id} has no value for measurement '{rule.measurement}'"
            )
        return missing is MissingMeasurementPolicy.REMOVE
    return value <= rule.min_value


def should_remove(obj: DetectedObject, config: DetectionFilterConfig) -> bool:
    """True if *obj* matches at least one exclusion rule."""
    return any(_rule_matches(obj, rule, config.missing) for rule in config.thresholds)


def select_objects_to_remove(
    objects: Iterable[DetectedObject],
    config: DetectionFilterConfig
) -> List[DetectedObject]:
    """Objects failing any rule, in input order. No side effects."""
    if not config.thresholds:
        return []
    return [obj for obj in objects if should_remove(obj, config)]


def apply_filter(
    objects: Iterable[DetectedObject],
    config: DetectionFilterConfig
) -> List[DetectedObject]:
    """Objects passing every rule, in input order. No side effects."""
    return [obj for obj in objects if not config.thresholds or not should_remove(obj, config)]


def _count_missing(objects: Sequence[DetectedObject], config: DetectionFilterConfig) -> Dict[str, int]:
    counts = {}
    for rule in config.thresholds:
        n = sum(1 for o in objects if math.isnan(o.measurement(rule.measurement)))
        if n:
            counts[rule.measurement] = n
    return counts


def filter_detections(hierarchy: ObjectHierarchy, config: DetectionFilterConfig) -> int:
    """
    Delete every detection in *hierarchy* that fails any rule.

    Deletion is permanent. Running the filter again with the same config
    removes nothing further. An empty hierarchy, or one where no object
    matches, is a no-op.

    Args:
        hierarchy: Object store to modify
        config: Thresholds and missing-measurement policy

    Returns:
        Number of detections removed

    Raises:
        MissingMeasurementError: Under the 'raise' policy, before anything
            is removed
    """
    detections = hierarchy.get_detection_objects()
    if not detections or not config.thresholds:
        logger.debug("Nothing to filter")
        return 0

    if config.missing is not MissingMeasurementPolicy.RAISE:
        for name, n in _count_missing(detections, config).items():
            logger.warning(
                f"{n}/{len(detections)} detections have no '{name}' measurement "
                f"(policy: {config.missing.value})"
            )

    to_delete = select_objects_to_remove(detections, config)
    removed = hierarchy.remove_objects(to_delete, keep_children=True)

    rules = ', '.join(str(t) for t in config.thresholds)
    logger.info(f"Removed {removed}/{len(detections)} detections ({rules})")
    return removed
