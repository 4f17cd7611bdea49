"""
Configuration module for StarDist nucleus detection and post-filtering.

Provides centralized defaults, named presets and config file loading/saving.
Presets reproduce the parameter sets of the brightfield and multiplexed
detection workflows:
- hdab_hematoxylin: single-channel model on deconvolved hematoxylin
- brightfield_rgb: 3-channel model on the RGB image
- multimodal: single-channel model on any (1-based) image channel

Usage:
    from wsi_nuclei.utils.config import load_config, save_config

    # Defaults + preset
    config = load_config(preset='hdab_hematoxylin')

    # Preset, then JSON file, then explicit overrides
    config = load_config('/path/to/run.json', preset='multimodal', threshold=0.6)

Environment Variables:
    WSI_NUCLEI_OUTPUT_DIR: Default output directory
    WSI_NUCLEI_MODEL_DIR: Directory searched for model names given without a path
"""

import copy
import json
import os
from pathlib import Path
from typing import Dict, Any, Optional, List, Union, TypedDict, Tuple

from wsi_nuclei.utils.json_utils import atomic_json_dump
from wsi_nuclei.utils.logging import get_logger

logger = get_logger(__name__)


# =============================================================================
# CONFIGURATION TYPE DEFINITIONS
# =============================================================================

class FilterRuleConfig(TypedDict):
    """
    One post-detection filter rule.

    Attributes:
        measurement: Measurement name, e.g. 'Nucleus: Area µm^2'.
        min: Objects with a value less than or equal to this are removed.
    """
    measurement: str
    min: float


class DetectionConfig(TypedDict, total=False):
    """
    Nucleus detection configuration.

    Attributes:
        model_path: StarDist model directory, or a pretrained/alias name.
        model_trained_on_single_channel: True for fluorescence-trained models
            (one input channel), False for 3-channel brightfield models.
        channel: 1-based channel used for single-channel models. For
            brightfield images with stains, channel 1 is hematoxylin.
        median_radius: Median filter radius in pixels. 0 disables.
        divide: Divide the detection channel by this value before segmenting.
        offset: Add this value (negative subtracts) before segmenting.
        threshold: StarDist probability threshold, 0-1.
        pixel_size_um: Resolution for detection in µm/px. 0 uses the image
            resolution.
        tile_size: Tile size in pixels for prediction. Multiple of 16.
        cell_expansion_um: Distance to expand nuclei into cells. 0 disables.
        normalize_percentiles: [low, high] percentile normalization.
            low <= 0 and high >= 100 disables normalization.
        include_probability: Add a 'Detection probability' measurement.
        measure_shape: Add shape measurements.
        measure_intensity: Add per-channel intensity measurements.
        clear_existing_detections: Delete all detections before detecting.
        filters: Post-detection filter rules (see FilterRuleConfig).
        missing_measurement: Policy for objects lacking a filter measurement:
            'keep', 'remove' or 'raise'.
    """
    model_path: str
    model_trained_on_single_channel: bool
    channel: int
    median_radius: int
    divide: float
    offset: float
    threshold: float
    pixel_size_um: float
    tile_size: int
    cell_expansion_um: float
    normalize_percentiles: List[float]
    include_probability: bool
    measure_shape: bool
    measure_intensity: bool
    clear_existing_detections: bool
    filters: List[FilterRuleConfig]
    missing_measurement: str


# Validation constraints for numeric keys
_VALIDATION_RULES: Dict[str, Dict[str, Any]] = {
    "channel": {"min": 1, "max": 256, "type": int},
    "median_radius": {"min": 0, "max": 50, "type": int},
    "divide": {"min": -1e9, "max": 1e9, "type": float},
    "offset": {"min": -1e9, "max": 1e9, "type": float},
    "threshold": {"min": 0.0, "max": 1.0, "type": float},
    "pixel_size_um": {"min": 0.0, "max": 100.0, "type": float},
    "tile_size": {"min": 16, "max": 8192, "type": int},
    "cell_expansion_um": {"min": 0.0, "max": 1000.0, "type": float},
}

MISSING_MEASUREMENT_POLICIES = ("keep", "remove", "raise")


DEFAULT_PATHS = {
    "output_dir": os.getenv("WSI_NUCLEI_OUTPUT_DIR", str(Path.cwd() / "wsi_nuclei_output")),
    "model_dir": os.getenv("WSI_NUCLEI_MODEL_DIR", str(Path.home() / "stardist_models")),
}


def get_default_path(key: str) -> str:
    """
    Get a default path from environment or fallback.

    Args:
        key: Path key name ('output_dir' or 'model_dir')

    Returns:
        Path string, empty string if key not found
    """
    return DEFAULT_PATHS.get(key, "")


def get_output_dir() -> Path:
    """Default output directory for detection results."""
    return Path(get_default_path("output_dir"))


# Measurement names produced by the detector
AREA_MEASUREMENT = "Nucleus: Area µm^2"
HEMATOXYLIN_MEAN_MEASUREMENT = "Hematoxylin: Nucleus: Mean"


DEFAULT_CONFIG: Dict[str, Any] = {
    "model_path": "dsb2018_heavy_augment",
    "model_trained_on_single_channel": True,
    "channel": 1,
    "median_radius": 0,
    "divide": 1.0,
    "offset": 0.0,
    "threshold": 0.5,
    "pixel_size_um": 0.0,
    "tile_size": 1024,
    "cell_expansion_um": 0.0,
    "normalize_percentiles": [1.0, 99.0],
    "include_probability": True,
    "measure_shape": True,
    "measure_intensity": True,
    "clear_existing_detections": False,
    "filters": [],
    "missing_measurement": "keep",
}

DETECTION_PRESETS: Dict[str, Dict[str, Any]] = {
    "hdab_hematoxylin": {
        "model_path": "dsb2018_heavy_augment",
        "model_trained_on_single_channel": True,
        "channel": 1,
        "median_radius": 2,
        "divide": 1.0,
        "offset": -0.2,
        "threshold": 0.5,
        "pixel_size_um": 0.5,
        "tile_size": 1024,
        "cell_expansion_um": 5.0,
        "normalize_percentiles": [0.0, 100.0],
        "filters": [
            {"measurement": AREA_MEASUREMENT, "min": 20.0},
            {"measurement": HEMATOXYLIN_MEAN_MEASUREMENT, "min": 0.2},
        ],
    },
    "brightfield_rgb": {
        "model_path": "he_heavy_augment",
        "model_trained_on_single_channel": False,
        "threshold": 0.5,
        "pixel_size_um": 0.5,
        "tile_size": 1024,
        "cell_expansion_um": 0.0,
        "normalize_percentiles": [1.0, 99.0],
        "filters": [
            {"measurement": AREA_MEASUREMENT, "min": 20.0},
            {"measurement": HEMATOXYLIN_MEAN_MEASUREMENT, "min": 0.2},
        ],
    },
    "multimodal": {
        "model_path": "dsb2018_heavy_augment",
        "model_trained_on_single_channel": True,
        "channel": 1,
        "median_radius": 0,
        "divide": 1.0,
        "offset": 0.0,
        "threshold": 0.5,
        "pixel_size_um": 0.0,
        "tile_size": 1024,
        "cell_expansion_um": 10.0,
        "normalize_percentiles": [1.0, 99.0],
        "clear_existing_detections": True,
        "filters": [
            {"measurement": AREA_MEASUREMENT, "min": 0.0},
            {"measurement": "Ir(193)_193Ir-DNA193: Nucleus: Mean", "min": 0.0},
        ],
    },
}


def list_presets() -> List[str]:
    """Names of the available detection presets."""
    return list(DETECTION_PRESETS.keys())


def get_preset(name: str) -> Dict[str, Any]:
    """
    Get a copy of a named detection preset.

    Raises:
        KeyError: If the preset does not exist
    """
    if name not in DETECTION_PRESETS:
        available = ', '.join(DETECTION_PRESETS.keys())
        raise KeyError(f"Unknown preset '{name}'. Available presets: {available}")
    return copy.deepcopy(DETECTION_PRESETS[name])


def _deep_merge(base: Dict[str, Any], override: Dict[str, Any]) -> None:
    """
    Recursively merge override dict into base dict (in-place).

    For nested dicts, merges keys rather than replacing the entire dict.
    Lists (including 'filters') are replaced, not concatenated.
    """
    for key, value in override.items():
        if (
            key in base
            and isinstance(base[key], dict)
            and isinstance(value, dict)
        ):
            _deep_merge(base[key], value)
        else:
            base[key] = copy.deepcopy(value)


def load_config(
    config_path: Optional[Union[str, Path]] = None,
    preset: Optional[str] = None,
    **overrides: Any
) -> Dict[str, Any]:
    """
    Build a detection configuration.

    Layers, lowest priority first: DEFAULT_CONFIG, preset, JSON file,
    keyword overrides (None values are ignored).

    Args:
        config_path: Optional path to a JSON config file. A file may name
            its own preset under the 'preset' key.
        preset: Optional preset name (see DETECTION_PRESETS)
        **overrides: Individual keys to override

    Returns:
        Dict with merged configuration

    Raises:
        FileNotFoundError: If config_path is given but does not exist
        ConfigValidationError: If the file is not valid JSON
    """
    config = copy.deepcopy(DEFAULT_CONFIG)

    file_config: Dict[str, Any] = {}
    if config_path is not None:
        config_path = Path(config_path)
        if not config_path.exists():
            raise FileNotFoundError(f"Config file not found: {config_path}")
        try:
            with open(config_path, 'r', encoding='utf-8') as f:
                file_config = json.load(f)
        except json.JSONDecodeError as e:
            raise ConfigValidationError(f"Could not parse config {config_path}: {e}") from e

    preset = preset or file_config.pop("preset", None)
    file_config.pop("preset", None)
    if preset:
        _deep_merge(config, get_preset(preset))
        config["preset"] = preset

    _deep_merge(config, file_config)
    _deep_merge(config, {k: v for k, v in overrides.items() if v is not None})

    return config


def save_config(
    config_path: Union[str, Path],
    config: Dict[str, Any],
) -> Path:
    """
    Save configuration as JSON next to the run outputs.

    Args:
        config_path: Target file path
        config: Configuration dict to save

    Returns:
        Path to saved config file
    """
    return atomic_json_dump(config, config_path, indent=2)


def resolve_model_path(model_path: Union[str, Path]) -> str:
    """
    Resolve a model reference to an existing directory when possible.

    Absolute or relative paths that exist are returned unchanged. Bare names
    are looked up under WSI_NUCLEI_MODEL_DIR; if nothing matches the name is
    returned as-is so it can be resolved as a pretrained model.
    """
    path = Path(model_path).expanduser()
    if path.exists():
        return str(path)
    candidate = Path(DEFAULT_PATHS["model_dir"]) / str(model_path)
    if candidate.exists():
        logger.debug(f"Resolved model '{model_path}' to {candidate}")
        return str(candidate)
    return str(model_path)


def normalization_enabled(percentiles: Optional[List[float]]) -> bool:
    """Whether a [low, high] percentile pair requests any normalization."""
    if not percentiles:
        return False
    low, high = percentiles
    return low > 0 or high < 100


# =============================================================================
# CONFIGURATION VALIDATION
# =============================================================================

class ConfigValidationError(Exception):
    """Raised when configuration validation fails."""
    pass


def _validate_range(
    value: Any,
    key: str,
    min_val: Union[int, float],
    max_val: Union[int, float],
    expected_type: type
) -> List[str]:
    """
    Validate a single value is within expected range and type.

    Returns:
        List of error messages (empty if valid)
    """
    errors = []

    # bool is an int subclass but never a valid numeric setting
    if isinstance(value, bool):
        errors.append(f"{key}: expected {expected_type.__name__}, got bool")
        return errors

    if expected_type == float:
        if not isinstance(value, (int, float)):
            errors.append(f"{key}: expected numeric type, got {type(value).__name__}")
            return errors
    elif not isinstance(value, expected_type):
        errors.append(f"{key}: expected {expected_type.__name__}, got {type(value).__name__}")
        return errors

    if value < min_val or value > max_val:
        errors.append(f"{key}: value {value} out of range [{min_val}, {max_val}]")

    return errors


def _validate_percentiles(percentiles: Any, key: str = "normalize_percentiles") -> List[str]:
    """Validate a [low, high] percentile pair."""
    if percentiles is None:
        return []
    if not isinstance(percentiles, (list, tuple)) or len(percentiles) != 2:
        return [f"{key}: expected [low, high] list, got {percentiles}"]

    errors = []
    low, high = percentiles
    errors.extend(_validate_range(low, f"{key}[0]", 0, 100, float))
    errors.extend(_validate_range(high, f"{key}[1]", 0, 100, float))
    if not errors and low >= high:
        errors.append(f"{key}: low ({low}) must be less than high ({high})")
    return errors


def _validate_filters(filters: Any, key: str = "filters") -> List[str]:
    """Validate the list of filter rules."""
    if not isinstance(filters, list):
        return [f"{key}: expected list, got {type(filters).__name__}"]

    errors = []
    for i, rule in enumerate(filters):
        if not isinstance(rule, dict):
            errors.append(f"{key}[{i}]: expected object with 'measurement' and 'min'")
            continue
        name = rule.get("measurement")
        if not isinstance(name, str) or not name:
            errors.append(f"{key}[{i}].measurement: expected non-empty string")
        if "min" not in rule:
            errors.append(f"{key}[{i}].min: missing")
        else:
            errors.extend(_validate_range(rule["min"], f"{key}[{i}].min", -1e12, 1e12, float))
    return errors


def validate_config(
    config: Optional[Dict[str, Any]] = None,
    raise_on_error: bool = False
) -> Dict[str, Union[bool, List[str]]]:
    """
    Validate a detection configuration against expected types and ranges.

    Args:
        config: Config dict. If None, validates DEFAULT_CONFIG.
        raise_on_error: If True, raises ConfigValidationError on failure.

    Returns:
        Dict with 'valid' (bool), 'errors' and 'warnings' (lists of str)

    Raises:
        ConfigValidationError: If raise_on_error=True and validation fails

    Example:
        >>> result = validate_config({"tile_size": 1000})
        >>> result['errors']
        ['tile_size: value 1000 must be a multiple of 16']
    """
    if config is None:
        config = DEFAULT_CONFIG

    errors: List[str] = []
    warnings: List[str] = []

    for key, rule in _VALIDATION_RULES.items():
        if key in config:
            errors.extend(_validate_range(
                config[key], key, rule["min"], rule["max"], rule["type"]
            ))

    tile_size = config.get("tile_size")
    if isinstance(tile_size, int) and not isinstance(tile_size, bool) and tile_size % 16 != 0:
        errors.append(f"tile_size: value {tile_size} must be a multiple of 16")

    if config.get("divide") == 0:
        errors.append("divide: value must not be 0")

    if not config.get("model_path"):
        errors.append("model_path: must be set")

    errors.extend(_validate_percentiles(config.get("normalize_percentiles")))
    errors.extend(_validate_filters(config.get("filters", [])))

    policy = config.get("missing_measurement", "keep")
    if policy not in MISSING_MEASUREMENT_POLICIES:
        errors.append(
            f"missing_measurement: '{policy}' not in {list(MISSING_MEASUREMENT_POLICIES)}"
        )

    if not config.get("model_trained_on_single_channel", True) and config.get("median_radius", 0):
        warnings.append("median_radius is ignored for 3-channel models")

    result = {
        "valid": len(errors) == 0,
        "errors": errors,
        "warnings": warnings,
    }

    if raise_on_error and errors:
        raise ConfigValidationError(f"Configuration validation failed: {errors[0]}")

    return result


def get_config_summary(config: Dict[str, Any]) -> Dict[str, Any]:
    """Flatten a config into the key/value pairs logged at the start of a run."""
    summary = {k: v for k, v in config.items() if k != "filters"}
    for i, rule in enumerate(config.get("filters", [])):
        summary[f"filter_{i + 1}"] = f"{rule['measurement']} <= {rule['min']}"
    return summary


def normalize_percentile_pair(percentiles: Optional[List[float]]) -> Optional[Tuple[float, float]]:
    """Return (low, high) when normalization is enabled, otherwise None."""
    if not normalization_enabled(percentiles):
        return None
    low, high = percentiles
    return float(low), float(high)
