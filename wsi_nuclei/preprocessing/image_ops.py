"""
Named image operations chained into a preprocessing pipeline.

Each operation has a dotted name ('channels.extract', 'filters.median', ...)
and transforms a float32 (H, W, C) array. A pipeline is an ordered list of
operations applied before the image is passed to the segmentation model.

Usage:
    from wsi_nuclei.preprocessing.image_ops import (
        ImageOpPipeline, DeconvolveOp, ExtractChannelsOp, MedianFilterOp,
    )

    pipeline = ImageOpPipeline([
        DeconvolveOp(stains),
        ExtractChannelsOp(0),
        MedianFilterOp(2),
    ])
    hematoxylin = pipeline.apply(rgb)   # (H, W, 1) float32
    print(pipeline.describe())
"""

from abc import ABC, abstractmethod
from typing import Any, Iterable, Iterator, List, Optional, Sequence, Tuple

import numpy as np
from scipy import ndimage
from skimage.morphology import disk

from wsi_nuclei.preprocessing.stains import ColorDeconvolutionStains, color_deconvolve
from wsi_nuclei.utils.logging import get_logger

logger = get_logger(__name__)


def as_float_stack(image: np.ndarray) -> np.ndarray:
    """Return image as float32 with an explicit channel axis (H, W, C)."""
    image = np.asarray(image)
    if image.ndim == 2:
        image = image[:, :, np.newaxis]
    if image.ndim != 3:
        raise ValueError(f"Expected a 2D or (H, W, C) image, got shape {image.shape}")
    return image.astype(np.float32, copy=False)


class ImageOp(ABC):
    """Base class for a named image operation."""

    name: str = "op"

    @abstractmethod
    def apply(self, image: np.ndarray) -> np.ndarray:
        """Transform a float32 (H, W, C) image."""

    def params(self) -> Tuple[Any, ...]:
        return ()

    def describe(self) -> str:
        args = ", ".join(f"{p:g}" if isinstance(p, float) else str(p) for p in self.params())
        return f"{self.name}({args})"

    def __repr__(self) -> str:
        return self.describe()


class DeconvolveOp(ImageOp):
    """Replace RGB channels with stain optical densities."""

    name = "channels.deconvolve"

    def __init__(self, stains: ColorDeconvolutionStains):
        self.stains = stains

    def params(self):
        return (self.stains.name,)

    def apply(self, image: np.ndarray) -> np.ndarray:
        return color_deconvolve(image, self.stains)


class ExtractChannelsOp(ImageOp):
    """Keep only the given 0-based channels, in the given order."""

    name = "channels.extract"

    def __init__(self, *channels: int):
        if not channels:
            raise ValueError("At least one channel is required")
        if any(c < 0 for c in channels):
            raise ValueError(f"Channel indices must be >= 0, got {channels}")
        self.channels = tuple(int(c) for c in channels)

    def params(self):
        return self.channels

    def apply(self, image: np.ndarray) -> np.ndarray:
        n_channels = image.shape[2]
        for c in self.channels:
            if c >= n_channels:
                raise IndexError(f"Channel {c} requested but image has {n_channels} channels")
        return image[:, :, list(self.channels)]


class MedianFilterOp(ImageOp):
    """Median filter with a disk-shaped kernel, applied per channel."""

    name = "filters.median"

    def __init__(self, radius: int):
        if radius < 1:
            raise ValueError(f"Median radius must be >= 1, got {radius}")
        self.radius = int(radius)

    def params(self):
        return (self.radius,)

    def apply(self, image: np.ndarray) -> np.ndarray:
        footprint = disk(self.radius)
        out = np.empty_like(image)
        for c in range(image.shape[2]):
            out[:, :, c] = ndimage.median_filter(image[:, :, c], footprint=footprint, mode='reflect')
        return out


class DivideOp(ImageOp):
    name = "core.divide"

    def __init__(self, value: float):
        if value == 0:
            raise ValueError("Cannot divide by 0")
        self.value = float(value)

    def params(self):
        return (self.value,)

    def apply(self, image: np.ndarray) -> np.ndarray:
        return image / np.float32(self.value)


class AddOp(ImageOp):
    name = "core.add"

    def __init__(self, value: float):
        self.value = float(value)

    def params(self):
        return (self.value,)

    def apply(self, image: np.ndarray) -> np.ndarray:
        return image + np.float32(self.value)


class SubtractOp(ImageOp):
    name = "core.subtract"

    def __init__(self, value: float):
        self.value = float(value)

    def params(self):
        return (self.value,)

    def apply(self, image: np.ndarray) -> np.ndarray:
        return image - np.float32(self.value)


class PercentileNormalizeOp(ImageOp):
    """
    Map the low/high percentiles of each channel to 0 and 1.

    Values outside the percentile range are not clipped. A channel whose
    percentiles coincide becomes all zeros.
    """

    name = "normalize.percentiles"

    def __init__(self, low: float, high: float):
        if not 0 <= low < high <= 100:
            raise ValueError(f"Percentiles must satisfy 0 <= low < high <= 100, got ({low}, {high})")
        self.low = float(low)
        self.high = float(high)

    def params(self):
        return (self.low, self.high)

    def apply(self, image: np.ndarray) -> np.ndarray:
        out = np.zeros_like(image)
        for c in range(image.shape[2]):
            channel = image[:, :, c]
            p_low, p_high = np.percentile(channel, [self.low, self.high])
            if p_high <= p_low:
                continue
            out[:, :, c] = (channel - p_low) / (p_high - p_low)
        return out


class ImageOpPipeline:
    """An ordered list of image operations."""

    def __init__(self, ops: Optional[Iterable[ImageOp]] = None):
        self.ops: List[ImageOp] = list(ops or [])

    def __len__(self) -> int:
        return len(self.ops)

    def __iter__(self) -> Iterator[ImageOp]:
        return iter(self.ops)

    def append(self, op: ImageOp) -> 'ImageOpPipeline':
        self.ops.append(op)
        return self

    @property
    def names(self) -> List[str]:
        return [op.name for op in self.ops]

    def describe(self) -> str:
        return " -> ".join(op.describe() for op in self.ops) if self.ops else "(none)"

    def apply(self, image: np.ndarray) -> np.ndarray:
        """Run every operation in order on a float32 (H, W, C) copy of *image*."""
        result = as_float_stack(image)
        for op in self.ops:
            result = op.apply(result)
            logger.debug(f"{op.describe()} -> shape {result.shape}")
        return result


def build_preprocessing(
    stains: Optional[ColorDeconvolutionStains] = None,
    single_channel: bool = True,
    channel: int = 1,
    median_radius: int = 0,
    divide: float = 1.0,
    offset: float = 0.0,
    normalize_percentiles: Optional[Sequence[float]] = None,
) -> ImageOpPipeline:
    """
    Build the preprocessing chain used before nucleus detection.

    For single-channel models the chain is: deconvolve (brightfield images
    with stains only), extract the detection channel, median filter
    (radius > 0), divide (value != 1), add or subtract the offset
    (offset != 0). 3-channel models receive the image unchanged. Percentile
    normalization, when requested, is always last.

    Args:
        stains: Stains of a brightfield image, None for fluorescence
        single_channel: Whether the model expects one input channel
        channel: 1-based detection channel (after deconvolution, 1 is
            the first stain)
        median_radius: Median filter radius in pixels
        divide: Divisor applied to the detection channel
        offset: Value added to the detection channel
        normalize_percentiles: Optional (low, high) percentile pair

    Returns:
        ImageOpPipeline
    """
    pipeline = ImageOpPipeline()

    if single_channel:
        if channel < 1:
            raise ValueError(f"Channel is 1-based, got {channel}")
        if stains is not None:
            pipeline.append(DeconvolveOp(stains))
        pipeline.append(ExtractChannelsOp(channel - 1))
        if median_radius > 0:
            pipeline.append(MedianFilterOp(median_radius))
        if divide != 1:
            pipeline.append(DivideOp(divide))
        if offset > 0:
            pipeline.append(AddOp(offset))
        elif offset < 0:
            pipeline.append(SubtractOp(-offset))

    if normalize_percentiles is not None:
        pipeline.append(PercentileNormalizeOp(*normalize_percentiles))

    return pipeline
