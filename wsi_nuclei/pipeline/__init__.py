"""
Workflow orchestration.

Submodules:
    nucleus_detection: detect nuclei in the selected regions, then filter
"""

from .nucleus_detection import (
    NO_PARENT_MESSAGE,
    DetectionSummary,
    run_nucleus_detection,
)

__all__ = [
    'NO_PARENT_MESSAGE',
    'DetectionSummary',
    'run_nucleus_detection',
]
