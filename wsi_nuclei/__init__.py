"""
Nucleus detection tools for whole-slide and multiplexed images.

Provides:
- StarDist nucleus detection inside annotated regions
- Post-detection filtering by measurement thresholds
- Channel merging of aligned images with affine registration

Usage:
    from wsi_nuclei.io import read_image_data
    from wsi_nuclei.pipeline import run_nucleus_detection
    from wsi_nuclei.detection import DetectionFilterConfig, filter_detections
    from wsi_nuclei.registration import merge_images
    from wsi_nuclei.utils import get_logger, setup_logging, load_config
"""

# Version
__version__ = "0.1.0"

# Submodules are imported explicitly to keep startup light:
#   from wsi_nuclei.detection.filter import filter_detections
#   from wsi_nuclei.utils.logging import get_logger

__all__ = [
    "objects",
    "detection",
    "preprocessing",
    "models",
    "io",
    "pipeline",
    "registration",
    "utils",
    "cli",
]
