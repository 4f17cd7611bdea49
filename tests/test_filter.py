"""
Tests for post-detection filtering by measurement thresholds.

Tests wsi_nuclei/detection/filter.py.
"""

import math
import time

import pytest
from shapely.geometry import box

import sys
from pathlib import Path
sys.path.insert(0, str(Path(__file__).parent.parent))

from wsi_nuclei.detection.filter import (
    DetectionFilterConfig,
    MeasurementThreshold,
    MissingMeasurementError,
    MissingMeasurementPolicy,
    apply_filter,
    filter_detections,
    select_objects_to_remove,
    should_remove,
)
from wsi_nuclei.objects.hierarchy import ObjectHierarchy
from wsi_nuclei.objects.path_objects import AnnotationObject, DetectedObject
from wsi_nuclei.utils.config import AREA_MEASUREMENT, HEMATOXYLIN_MEAN_MEASUREMENT


AREA_20 = MeasurementThreshold(AREA_MEASUREMENT, 20)
HEMATOXYLIN_02 = MeasurementThreshold(HEMATOXYLIN_MEAN_MEASUREMENT, 0.2)


def _hierarchy(detections):
    hierarchy = ObjectHierarchy()
    hierarchy.add_objects(detections)
    return hierarchy


class TestShouldRemove:
    """Tests for the single-object predicate."""

    def test_below_threshold_removed(self, make_detection):
        config = DetectionFilterConfig([AREA_20])
        assert should_remove(make_detection(area=15), config)

    def test_above_threshold_kept(self, make_detection):
        config = DetectionFilterConfig([AREA_20])
        assert not should_remove(make_detection(area=25), config)

    def test_value_equal_to_threshold_removed(self, make_detection):
        config = DetectionFilterConfig([AREA_20])
        assert should_remove(make_detection(area=20), config)

    def test_any_rule_removes(self, make_detection):
        config = DetectionFilterConfig([AREA_20, HEMATOXYLIN_02])
        assert should_remove(make_detection(area=25, hematoxylin=0.1), config)
        assert should_remove(make_detection(area=10, hematoxylin=0.5), config)
        assert not should_remove(make_detection(area=25, hematoxylin=0.5), config)

    def test_rule_order_does_not_matter(self, make_detection):
        objects = [
            make_detection(area=a, hematoxylin=h)
            for a, h in [(15, 0.5), (25, 0.1), (25, 0.5), (20, 0.2), (21, 0.21)]
        ]
        forward = DetectionFilterConfig([AREA_20, HEMATOXYLIN_02])
        backward = DetectionFilterConfig([HEMATOXYLIN_02, AREA_20])
        assert [should_remove(o, forward) for o in objects] == [should_remove(o, backward) for o in objects]

    def test_negative_threshold(self, make_detection):
        config = DetectionFilterConfig([MeasurementThreshold("Delta", -1.0)])
        assert should_remove(make_detection(Delta=-1.0), config)
        assert not should_remove(make_detection(Delta=-0.5), config)


class TestMissingMeasurementPolicy:
    """Objects without a value for a rule's measurement."""

    def test_keep_is_default(self, make_detection):
        config = DetectionFilterConfig([AREA_20])
        assert config.missing is MissingMeasurementPolicy.KEEP
        assert not should_remove(make_detection(), config)

    def test_keep_still_applies_other_rules(self, make_detection):
        config = DetectionFilterConfig([AREA_20, HEMATOXYLIN_02])
        assert should_remove(make_detection(hematoxylin=0.1), config)
        assert not should_remove(make_detection(hematoxylin=0.5), config)

    def test_remove_policy(self, make_detection):
        config = DetectionFilterConfig([AREA_20], missing="remove")
        assert should_remove(make_detection(), config)

    def test_raise_policy(self, make_detection):
        config = DetectionFilterConfig([AREA_20], missing=MissingMeasurementPolicy.RAISE)
        with pytest.raises(MissingMeasurementError):
            should_remove(make_detection(), config)

    def test_nan_counts_as_missing(self, make_detection):
        det = make_detection(area=math.nan)
        assert not should_remove(det, DetectionFilterConfig([AREA_20], missing="keep"))
        assert should_remove(det, DetectionFilterConfig([AREA_20], missing="remove"))

    def test_missing_error_is_key_error(self):
        assert issubclass(MissingMeasurementError, KeyError)

    def test_invalid_policy_rejected(self):
        with pytest.raises(ValueError):
            DetectionFilterConfig([AREA_20], missing="ignore")


class TestDetectionFilterConfig:
    """Tests for building the filter config from a config dict."""

    def test_from_config(self):
        config = DetectionFilterConfig.from_config({
            'filters': [
                {'measurement': AREA_MEASUREMENT, 'min': 20},
                {'measurement': HEMATOXYLIN_MEAN_MEASUREMENT, 'min': 0.2},
            ],
            'missing_measurement': 'remove',
        })
        assert config.thresholds == (AREA_20, HEMATOXYLIN_02)
        assert config.missing is MissingMeasurementPolicy.REMOVE

    def test_from_empty_config(self):
        config = DetectionFilterConfig.from_config({})
        assert config.thresholds == ()
        assert config.missing is MissingMeasurementPolicy.KEEP

    def test_to_config_round_trip(self):
        config = DetectionFilterConfig([AREA_20], missing="raise")
        assert DetectionFilterConfig.from_config(config.to_config()) == config

    def test_threshold_str(self):
        assert str(AREA_20) == f"{AREA_MEASUREMENT} <= 20"


class TestPureFilterFunctions:
    """select_objects_to_remove and apply_filter have no side effects."""

    def test_scenario_area(self, make_detection):
        det_a, det_b = make_detection(area=15), make_detection(area=25)
        config = DetectionFilterConfig([AREA_20])
        assert apply_filter([det_a, det_b], config) == [det_b]
        assert select_objects_to_remove([det_a, det_b], config) == [det_a]

    def test_scenario_intensity(self, make_detection):
        det_a = make_detection(area=25, hematoxylin=0.1)
        config = DetectionFilterConfig([AREA_20, HEMATOXYLIN_02])
        assert apply_filter([det_a], config) == []

    def test_empty_input(self):
        config = DetectionFilterConfig([AREA_20])
        assert apply_filter([], config) == []
        assert select_objects_to_remove([], config) == []

    def test_no_thresholds_keeps_everything(self, make_detection):
        objects = [make_detection(area=1), make_detection()]
        assert apply_filter(objects, DetectionFilterConfig()) == objects

    def test_preserves_input_order(self, make_detection):
        objects = [make_detection(area=a) for a in (30, 5, 40, 21, 19)]
        kept = apply_filter(objects, DetectionFilterConfig([AREA_20]))
        assert kept == [objects[0], objects[2], objects[3]]


class TestFilterDetections:
    """Tests for filtering detections in a hierarchy."""

    def test_scenario_area(self, hierarchy_with_detections):
        hierarchy, det_a, det_b = hierarchy_with_detections

        removed = filter_detections(hierarchy, DetectionFilterConfig([AREA_20]))

        assert removed == 1
        assert hierarchy.get_detection_objects() == [det_b]
        assert det_a not in hierarchy

    def test_scenario_intensity(self, make_detection):
        det_a = make_detection(area=25, hematoxylin=0.1)
        hierarchy = _hierarchy([det_a])

        removed = filter_detections(hierarchy, DetectionFilterConfig([AREA_20, HEMATOXYLIN_02]))

        assert removed == 1
        assert hierarchy.get_detection_objects() == []

    def test_idempotent(self, make_detection):
        objects = [make_detection(area=a, hematoxylin=h)
                   for a, h in [(15, 0.5), (25, 0.1), (25, 0.5), (30, 0.3), (20, 0.9)]]
        hierarchy = _hierarchy(objects)
        config = DetectionFilterConfig([AREA_20, HEMATOXYLIN_02])

        first = filter_detections(hierarchy, config)
        after_first = hierarchy.get_detection_objects()
        second = filter_detections(hierarchy, config)

        assert first == 3
        assert second == 0
        assert hierarchy.get_detection_objects() == after_first

    @pytest.mark.parametrize("areas", [[], [1], [20, 20], [5, 50, 19.9, 20.1], [100] * 10])
    def test_output_never_larger_than_input(self, make_detection, areas):
        hierarchy = _hierarchy([make_detection(area=a) for a in areas])
        n_before = len(hierarchy.get_detection_objects())

        removed = filter_detections(hierarchy, DetectionFilterConfig([AREA_20]))

        n_after = len(hierarchy.get_detection_objects())
        assert n_after <= n_before
        assert n_before - n_after == removed

    def test_equality_removes(self, make_detection):
        det = make_detection(area=20)
        hierarchy = _hierarchy([det])
        filter_detections(hierarchy, DetectionFilterConfig([AREA_20]))
        assert hierarchy.get_detection_objects() == []

    def test_empty_hierarchy(self):
        hierarchy = ObjectHierarchy()
        assert filter_detections(hierarchy, DetectionFilterConfig([AREA_20])) == 0
        assert hierarchy.get_detection_objects() == []

    def test_no_thresholds_is_noop(self, hierarchy_with_detections):
        hierarchy, det_a, det_b = hierarchy_with_detections
        assert filter_detections(hierarchy, DetectionFilterConfig()) == 0
        assert hierarchy.get_detection_objects() == [det_a, det_b]

    def test_annotations_untouched(self, hierarchy_with_detections, parent_annotation):
        hierarchy, det_a, det_b = hierarchy_with_detections
        filter_detections(hierarchy, DetectionFilterConfig([MeasurementThreshold(AREA_MEASUREMENT, 100)]))
        assert hierarchy.get_annotation_objects() == [parent_annotation]
        assert parent_annotation.children == []

    def test_parent_links_updated(self, hierarchy_with_detections, parent_annotation):
        hierarchy, det_a, det_b = hierarchy_with_detections
        filter_detections(hierarchy, DetectionFilterConfig([AREA_20]))
        assert parent_annotation.children == [det_b]
        assert det_a.parent is None

    def test_raise_policy_leaves_hierarchy_unchanged(self, make_detection):
        objects = [make_detection(area=5), make_detection()]
        hierarchy = _hierarchy(objects)

        with pytest.raises(MissingMeasurementError):
            filter_detections(hierarchy, DetectionFilterConfig([AREA_20], missing="raise"))

        assert hierarchy.get_detection_objects() == objects

    def test_missing_measurement_warning_logged(self, make_detection, caplog):
        hierarchy = _hierarchy([make_detection(area=25), make_detection()])
        with caplog.at_level("WARNING"):
            removed = filter_detections(hierarchy, DetectionFilterConfig([AREA_20]))
        assert removed == 0
        assert "1/2 detections" in caplog.text

    def test_removal_summary_logged(self, hierarchy_with_detections, caplog):
        hierarchy, _, _ = hierarchy_with_detections
        with caplog.at_level("INFO"):
            filter_detections(hierarchy, DetectionFilterConfig([AREA_20]))
        assert "Removed 1/2 detections" in caplog.text

    def test_large_slide_filters_in_linear_time(self):
        n = 50_000
        roi = AnnotationObject(roi=box(0, 0, 10_000, 10_000))
        nucleus = box(0, 0, 5, 5)
        detections = [
            DetectedObject(roi=nucleus, measurements={AREA_MEASUREMENT: 0.0 if i % 2 else 50.0})
            for i in range(n)
        ]
        hierarchy = ObjectHierarchy()
        hierarchy.add_object(roi)
        hierarchy.add_objects(detections, parent=roi)

        start = time.perf_counter()
        removed = filter_detections(hierarchy, DetectionFilterConfig([AREA_20]))
        elapsed = time.perf_counter() - start

        assert removed == n // 2
        assert roi.children == detections[::2]
        assert len(hierarchy.get_detection_objects()) == n // 2
        assert elapsed < 10.0
