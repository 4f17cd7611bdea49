"""
Nucleus detection workflow: detect in the selected regions, then filter.

Steps:
1. Require at least one selected parent region
2. Optionally delete all existing detections
3. Detect nuclei with StarDist inside every selected region
4. Remove detections failing the configured measurement thresholds

Usage:
    from wsi_nuclei.pipeline import run_nucleus_detection
    from wsi_nuclei.utils.config import load_config

    image_data.hierarchy.create_full_image_annotation(image_data.width, image_data.height)
    summary = run_nucleus_detection(image_data, load_config(preset='hdab_hematoxylin'))
    print(summary.kept)
"""

from dataclasses import asdict, dataclass
from typing import Any, Dict, Optional

from wsi_nuclei.detection.filter import DetectionFilterConfig, filter_detections
from wsi_nuclei.detection.stardist import (
    NoParentObjectsError,
    StarDistNucleusDetector,
    StarDistSettings,
)
from wsi_nuclei.io.image_data import ImageData
from wsi_nuclei.utils.config import validate_config
from wsi_nuclei.utils.logging import ProcessingTimer, get_logger

logger = get_logger(__name__)

NO_PARENT_MESSAGE = "Please select a parent object!"


@dataclass
class DetectionSummary:
    """Counts from one detection run."""
    image: str
    parents: int
    detected: int
    removed: int
    kept: int
    cleared: int = 0
    duration_s: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def run_nucleus_detection(
    image_data: ImageData,
    config: Dict[str, Any],
    detector: Optional[StarDistNucleusDetector] = None,
) -> DetectionSummary:
    """
    Detect nuclei in the selected regions of an image and filter them.

    Args:
        image_data: Image whose hierarchy holds the selected parent regions
        config: Detection configuration (see utils.config.DEFAULT_CONFIG)
        detector: Detector to use, built from *config* when None

    Returns:
        DetectionSummary

    Raises:
        NoParentObjectsError: If nothing is selected. The hierarchy is left
            unchanged.
        ConfigValidationError: If *config* is invalid
        ValueError: If the model does not take the configured number of
            input channels. Nothing is cleared.
    """
    parents = image_data.hierarchy.get_selected_objects()
    if not parents:
        logger.error(NO_PARENT_MESSAGE)
        raise NoParentObjectsError(NO_PARENT_MESSAGE)

    validation = validate_config(config, raise_on_error=True)
    for warning in validation["warnings"]:
        logger.warning(warning)

    if detector is None:
        detector = StarDistNucleusDetector(StarDistSettings.from_config(config))
    detector.check_model_channels()

    with ProcessingTimer(logger, f"Nucleus detection on {image_data.name}") as timer:
        cleared = 0
        if config.get("clear_existing_detections", False):
            cleared = image_data.hierarchy.clear_detections()
            logger.info(f"Cleared {cleared} existing detections")

        nuclei = detector.detect_objects(image_data, parents)
        removed = filter_detections(image_data.hierarchy, DetectionFilterConfig.from_config(config))

    summary = DetectionSummary(
        image=image_data.name,
        parents=len(parents),
        detected=len(nuclei),
        removed=removed,
        kept=len(image_data.hierarchy.get_detection_objects()),
        cleared=cleared,
        duration_s=timer.duration,
    )
    logger.info(
        f"{summary.image}: {summary.detected} detected, {summary.removed} removed, "
        f"{summary.kept} kept"
    )
    return summary
