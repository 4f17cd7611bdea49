"""
StarDist model management.

Provides:
- ModelManager: lazy loading and caching of StarDist2D networks
- Model name resolution: directories, pretrained names and aliases

Usage:
    from wsi_nuclei.models import get_model_manager

    manager = get_model_manager()
    model = manager.get_stardist('he_heavy_augment')

    # Or use as context manager
    with get_model_manager() as manager:
        model = manager.get_stardist('/models/my_model')
    # Automatic cleanup on exit
"""

from .manager import (
    ModelManager,
    get_model_manager,
    clear_manager_cache,
    resolve_model_name,
    model_input_channels,
    MODEL_ALIASES,
)

__all__ = [
    'ModelManager',
    'get_model_manager',
    'clear_manager_cache',
    'resolve_model_name',
    'model_input_channels',
    'MODEL_ALIASES',
]
