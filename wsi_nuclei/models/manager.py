"""
StarDist model loading and caching.

Provides a process-wide ModelManager that lazily loads StarDist2D networks
and keeps them for reuse, so that detecting in many regions (or many images)
loads each network once.

Model references may be:
- a directory containing a trained StarDist model (config.json + weights)
- a registered StarDist pretrained name, e.g. '2D_versatile_fluo'
- one of the model names used by brightfield/fluorescence workflows
  ('he_heavy_augment', 'dsb2018_heavy_augment', 'dsb2018_paper'), mapped to
  the equivalent StarDist pretrained model

Usage:
    from wsi_nuclei.models import get_model_manager

    manager = get_model_manager()
    model = manager.get_stardist('dsb2018_heavy_augment')
    labels, details = model.predict_instances(img, prob_thresh=0.5)
    manager.cleanup()
"""

import gc
import threading
from pathlib import Path
from typing import Any, Dict, Optional, Union

from wsi_nuclei.utils.config import resolve_model_path
from wsi_nuclei.utils.logging import get_logger

logger = get_logger(__name__)

# =============================================================================
# MODEL NAME CONFIGURATION
# =============================================================================

MODEL_ALIASES: Dict[str, str] = {
    'he_heavy_augment': '2D_versatile_he',
    'dsb2018_heavy_augment': '2D_versatile_fluo',
    'dsb2018_paper': '2D_paper_dsb2018',
}

# Number of input channels expected by each pretrained model
PRETRAINED_CHANNELS: Dict[str, int] = {
    '2D_versatile_he': 3,
    '2D_versatile_fluo': 1,
    '2D_paper_dsb2018': 1,
    '2D_demo': 1,
}


def resolve_model_name(model_ref: Union[str, Path]) -> str:
    """
    Map a model reference to a directory path or StarDist pretrained name.

    Existing directories (directly or under WSI_NUCLEI_MODEL_DIR) win over
    aliases. A trailing '.pb' export suffix is dropped before alias lookup.
    """
    resolved = resolve_model_path(model_ref)
    if Path(resolved).is_dir():
        return resolved

    name = Path(str(model_ref)).name
    if name.endswith('.pb'):
        name = name[:-3]
    return MODEL_ALIASES.get(name, name)


# =============================================================================
# MODEL MANAGER - SINGLETON PATTERN
# =============================================================================

_manager: Optional['ModelManager'] = None
_manager_lock = threading.Lock()


def get_model_manager() -> 'ModelManager':
    """Get or create the process-wide ModelManager (thread-safe)."""
    global _manager
    with _manager_lock:
        if _manager is None:
            _manager = ModelManager()
        return _manager


def clear_manager_cache():
    """Release all cached models and drop the shared ModelManager."""
    global _manager
    with _manager_lock:
        if _manager is not None:
            _manager.cleanup()
        _manager = None
    logger.info("Cleared model manager cache")


class ModelManager:
    """
    Lazy loading and caching of StarDist models.

    Models are loaded on first request and kept until cleanup(). Loading is
    serialized by a lock, so concurrent callers share one network.

    Example:
        with ModelManager() as manager:
            model = manager.get_stardist('/models/dsb2018_heavy_augment')
    """

    def __init__(self):
        self._models: Dict[str, Any] = {}
        self._lock = threading.Lock()

    def get_stardist(self, model_ref: Union[str, Path]) -> Any:
        """
        Get a StarDist2D model, loading it on first use.

        Args:
            model_ref: Model directory, pretrained name or alias

        Returns:
            stardist.models.StarDist2D instance

        Raises:
            ImportError: If stardist is not installed
            ValueError: If a name is neither a directory nor a known
                pretrained model (raised by stardist)
        """
        key = resolve_model_name(model_ref)
        with self._lock:
            if key not in self._models:
                self._models[key] = self._load_stardist(key)
            return self._models[key]

    def is_loaded(self, model_ref: Union[str, Path]) -> bool:
        return resolve_model_name(model_ref) in self._models

    def _load_stardist(self, key: str) -> Any:
        """Load a StarDist2D model from a directory or the pretrained registry."""
        try:
            from stardist.models import StarDist2D
        except ImportError as e:
            raise ImportError(
                "StarDist is required for nucleus detection. "
                "Install it with: pip install 'wsi-nuclei[stardist]'"
            ) from e

        path = Path(key)
        if path.is_dir():
            logger.info(f"Loading StarDist model from {path}...")
            model = StarDist2D(None, name=path.name, basedir=str(path.parent))
        else:
            logger.info(f"Loading pretrained StarDist model '{key}'...")
            model = StarDist2D.from_pretrained(key)
            if model is None:
                raise ValueError(f"Unknown StarDist model '{key}'")
        logger.info(f"StarDist model '{key}' loaded successfully")
        return model

    def cleanup(self):
        """Release all loaded models."""
        logger.info("Cleaning up ModelManager resources...")
        with self._lock:
            self._models.clear()
        gc.collect()
        logger.info("ModelManager cleanup complete")

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.cleanup()
        return False

    def __repr__(self) -> str:
        loaded_str = ", ".join(self._models) if self._models else "none"
        return f"ModelManager(loaded=[{loaded_str}])"


def model_input_channels(model: Any, model_ref: Optional[Union[str, Path]] = None) -> Optional[int]:
    """
    Number of input channels a model expects, or None if unknown.

    Reads ``model.config.n_channel_in`` when available, otherwise falls back
    to the known pretrained models.
    """
    config = getattr(model, 'config', None)
    n_channels = getattr(config, 'n_channel_in', None)
    if isinstance(n_channels, int):
        return n_channels
    if model_ref is not None:
        return PRETRAINED_CHANNELS.get(resolve_model_name(model_ref))
    return None


__all__ = [
    'ModelManager',
    'get_model_manager',
    'clear_manager_cache',
    'resolve_model_name',
    'model_input_channels',
    'MODEL_ALIASES',
    'PRETRAINED_CHANNELS',
]
