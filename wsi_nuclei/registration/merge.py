"""
Merge project images along the channel axis, aligning them with affine transforms.

The first image listed is the reference: it defines the output size and
pixel size and is normally given the identity transform. Every other image
is resampled into the reference frame. Brightfield images can optionally be
color-deconvolved so their stains become separate channels.

Usage:
    from collections import OrderedDict
    from wsi_nuclei.registration import merge_images, affine_from_values

    transforms = OrderedDict([
        ('panel1.ome.tif', None),
        ('panel2.ome.tif', affine_from_values([-0.98, 0.28, 13986.7, -0.26, -0.97, 25974.3], invert=True)),
    ])
    merged = merge_images(Project('/data/run1'), transforms)
    write_image(merged, '/data/run1/merged.ome.tif')
"""

from pathlib import Path
from typing import List, Mapping, Optional, Union

import numpy as np

from wsi_nuclei.io.export import write_image
from wsi_nuclei.io.image_data import ImageChannel, ImageData, ImageType
from wsi_nuclei.io.project import Project
from wsi_nuclei.preprocessing.stains import color_deconvolve
from wsi_nuclei.registration.transforms import affine_from_values, is_identity, warp_to_reference
from wsi_nuclei.utils.logging import ProcessingTimer, get_logger
from wsi_nuclei.utils.schemas import MergeSpec

logger = get_logger(__name__)

# Packed RGB display colors assigned to merged channels in order
DEFAULT_CHANNEL_COLORS = [
    0x0000FF, 0x00FF00, 0xFF0000, 0x00FFFF, 0xFF00FF, 0xFFFF00,
    0xFF8000, 0x8000FF, 0x00FF80, 0xFFFFFF,
]


def _channel_color(index: int) -> int:
    return DEFAULT_CHANNEL_COLORS[index % len(DEFAULT_CHANNEL_COLORS)]


def merge_images(
    project: Project,
    transforms: Mapping[str, Optional[np.ndarray]],
    deconvolve_stains: bool = False,
    name: str = "merged",
) -> ImageData:
    """
    Concatenate the channels of several project images in a common frame.

    Args:
        project: Project holding the images
        transforms: Ordered image name -> 3x3 source-to-reference transform
            (None for the identity). The first entry is the reference.
        deconvolve_stains: Replace the RGB channels of brightfield images
            with their three stain channels
        name: Name of the merged image

    Returns:
        ImageData of the merged image, without objects

    Raises:
        KeyError: If an image name is not in the project
        ValueError: If *transforms* is empty
    """
    if not transforms:
        raise ValueError("At least one image is needed to merge")

    # Fail on unknown names before reading any pixels
    for image_name in transforms:
        project.entry(image_name)

    reference: Optional[ImageData] = None
    planes: List[np.ndarray] = []
    channels: List[ImageChannel] = []

    for image_name, matrix in transforms.items():
        image_data = project.read_image_data(image_name)
        if reference is None:
            reference = image_data
        pixels = image_data.pixels

        if deconvolve_stains and image_data.is_brightfield and image_data.stains is not None:
            pixels = color_deconvolve(pixels, image_data.stains)
            names = [f"{image_name}-{stain}" for stain in image_data.stains.stain_names]
            logger.info(f"{image_name}: deconvolved {image_data.stains.name}")
        else:
            names = [f"{image_name}-{channel}" for channel in image_data.channel_names]

        same_frame = pixels.shape[:2] == reference.pixels.shape[:2]
        if not is_identity(matrix) or not same_frame:
            pixels = warp_to_reference(
                pixels,
                matrix if matrix is not None else np.eye(3),
                (reference.height, reference.width),
            )
            logger.info(f"{image_name}: resampled into the frame of {reference.name}")

        for channel_name in names:
            channels.append(ImageChannel(channel_name, _channel_color(len(channels))))
        planes.append(pixels)

    dtype = np.result_type(*[p.dtype for p in planes])
    merged = np.concatenate([p.astype(dtype, copy=False) for p in planes], axis=2)

    single_rgb = len(planes) == 1 and reference.is_rgb and merged.dtype == np.uint8
    logger.info(f"Merged {len(planes)} images into {merged.shape[2]} channels")
    return ImageData(
        pixels=merged,
        name=name,
        channels=channels,
        pixel_size_um=reference.pixel_size_um,
        image_type=reference.image_type if single_rgb else ImageType.FLUORESCENCE,
        stains=reference.stains if single_rgb else None,
    )


def merge_from_spec(
    spec: MergeSpec,
    output: Optional[Union[str, Path]] = None,
    downsample: Optional[float] = None,
) -> ImageData:
    """
    Run a merge described by a MergeSpec and write the result when an output is set.

    Relative output paths are resolved against the project directory.
    """
    project = Project(spec.project_dir)
    transforms = {
        entry.name: affine_from_values(entry.transform, invert=entry.invert)
        if entry.transform is not None else None
        for entry in spec.images
    }

    output = output if output is not None else spec.output
    name = Path(output).name if output else "merged"

    with ProcessingTimer(logger, f"Merging {len(transforms)} images"):
        merged = merge_images(project, transforms, deconvolve_stains=spec.deconvolve_stains, name=name)

        if output:
            output = Path(output)
            if not output.is_absolute():
                output = project.directory / output
            write_image(merged, output, downsample=downsample or spec.downsample)
        else:
            logger.info("No output path set, returning the merged image only")

    return merged
