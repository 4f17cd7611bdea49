"""
Preprocessing for nucleus detection.

Includes:
- stains: color deconvolution of brightfield images
- image_ops: named operations chained into a preprocessing pipeline
"""

from .stains import (
    StainVector,
    ColorDeconvolutionStains,
    default_stains,
    parse_stains,
    color_deconvolve,
)

from .image_ops import (
    ImageOp,
    DeconvolveOp,
    ExtractChannelsOp,
    MedianFilterOp,
    DivideOp,
    AddOp,
    SubtractOp,
    PercentileNormalizeOp,
    ImageOpPipeline,
    build_preprocessing,
)

__all__ = [
    # Stains
    'StainVector',
    'ColorDeconvolutionStains',
    'default_stains',
    'parse_stains',
    'color_deconvolve',
    # Image operations
    'ImageOp',
    'DeconvolveOp',
    'ExtractChannelsOp',
    'MedianFilterOp',
    'DivideOp',
    'AddOp',
    'SubtractOp',
    'PercentileNormalizeOp',
    'ImageOpPipeline',
    'build_preprocessing',
]
