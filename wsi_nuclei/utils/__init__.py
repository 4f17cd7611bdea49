"""
Utility modules for the nucleus detection tools.

Provides:
- Configuration management and presets
- Logging utilities
- JSON helpers
- JSON schema validation (requires pydantic)
"""

from .config import (
    DEFAULT_CONFIG,
    DEFAULT_PATHS,
    DETECTION_PRESETS,
    ConfigValidationError,
    load_config,
    save_config,
    validate_config,
    get_preset,
    list_presets,
    get_default_path,
    get_output_dir,
    resolve_model_path,
)

from .logging import (
    get_logger,
    setup_logging,
    log_parameters,
    log_processing_end,
    ProcessingTimer,
)

from .json_utils import (
    NumpyEncoder,
    sanitize_for_json,
    atomic_json_dump,
)

# Schemas require pydantic - import separately if needed
# from wsi_nuclei.utils.schemas import validate_geojson_file, MergeSpec

__all__ = [
    # Config
    'DEFAULT_CONFIG',
    'DEFAULT_PATHS',
    'DETECTION_PRESETS',
    'ConfigValidationError',
    'load_config',
    'save_config',
    'validate_config',
    'get_preset',
    'list_presets',
    'get_default_path',
    'get_output_dir',
    'resolve_model_path',
    # Logging
    'get_logger',
    'setup_logging',
    'log_parameters',
    'log_processing_end',
    'ProcessingTimer',
    # JSON
    'NumpyEncoder',
    'sanitize_for_json',
    'atomic_json_dump',
]
