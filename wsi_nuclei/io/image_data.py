"""
Image data container and readers.

ImageData bundles the pixels of one image with its channel names, pixel
calibration, image type, stain vectors and the object hierarchy that
detection writes into.

Supported formats:
- TIFF / OME-TIFF via tifffile (OME PhysicalSizeX and channel names are read)
- CZI via aicspylibczi
- PNG / JPEG / BMP via OpenCV

Usage:
    from wsi_nuclei.io.image_data import read_image_data

    image_data = read_image_data('slide.ome.tif')
    print(image_data.width, image_data.height, image_data.pixel_size_um)
    region = image_data.read_region(0, 0, 1024, 1024, downsample=2.0)
"""

import xml.etree.ElementTree as ET
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import List, Optional, Tuple, Union

import cv2
import numpy as np

from wsi_nuclei.objects.hierarchy import ObjectHierarchy
from wsi_nuclei.preprocessing.stains import ColorDeconvolutionStains, default_stains
from wsi_nuclei.utils.logging import get_logger

logger = get_logger(__name__)

TIFF_SUFFIXES = ('.tif', '.tiff', '.btf')
CZI_SUFFIXES = ('.czi',)
OPENCV_SUFFIXES = ('.png', '.jpg', '.jpeg', '.bmp')

RGB_CHANNEL_NAMES = ('Red', 'Green', 'Blue')


class ImageReadError(IOError):
    """Raised when an image cannot be read or has an unsupported layout."""


class ImageType(str, Enum):
    BRIGHTFIELD_H_DAB = "brightfield_h_dab"
    BRIGHTFIELD_H_E = "brightfield_h_e"
    BRIGHTFIELD_OTHER = "brightfield_other"
    FLUORESCENCE = "fluorescence"
    OTHER = "other"

    @property
    def is_brightfield(self) -> bool:
        return self.value.startswith("brightfield")


_DEFAULT_STAINS_FOR_TYPE = {
    ImageType.BRIGHTFIELD_H_DAB: "H-DAB",
    ImageType.BRIGHTFIELD_H_E: "H&E",
    ImageType.BRIGHTFIELD_OTHER: "H-DAB",
}


@dataclass
class ImageChannel:
    """A named image channel with an optional packed RGB display color."""
    name: str
    color: Optional[int] = None


@dataclass
class ImageData:
    """
    Pixels, metadata and objects of one image.

    Attributes:
        pixels: (H, W, C) array at full resolution
        name: Image name, usually the file name
        channels: One ImageChannel per pixel channel
        pixel_size_um: Pixel width in µm, None when uncalibrated
        image_type: Brightfield/fluorescence type
        stains: Stain vectors for brightfield images, else None
        hierarchy: Annotations and detections of this image
        path: Source file, None for images built in memory
    """
    pixels: np.ndarray
    name: str = "image"
    channels: List[ImageChannel] = field(default_factory=list)
    pixel_size_um: Optional[float] = None
    image_type: ImageType = ImageType.OTHER
    stains: Optional[ColorDeconvolutionStains] = None
    hierarchy: ObjectHierarchy = field(default_factory=ObjectHierarchy)
    path: Optional[Path] = None

    def __post_init__(self):
        if self.pixels.ndim == 2:
            self.pixels = self.pixels[:, :, np.newaxis]
        if self.pixels.ndim != 3:
            raise ValueError(f"Expected (H, W, C) pixels, got shape {self.pixels.shape}")
        if not self.channels:
            self.channels = default_channels(self.pixels.shape[2], self.is_rgb)
        if len(self.channels) != self.pixels.shape[2]:
            raise ValueError(
                f"{len(self.channels)} channel names for {self.pixels.shape[2]} channels"
            )
        if self.pixel_size_um is not None and self.pixel_size_um <= 0:
            self.pixel_size_um = None

    @property
    def width(self) -> int:
        return int(self.pixels.shape[1])

    @property
    def height(self) -> int:
        return int(self.pixels.shape[0])

    @property
    def n_channels(self) -> int:
        return int(self.pixels.shape[2])

    @property
    def is_rgb(self) -> bool:
        return self.pixels.shape[2] == 3 and self.pixels.dtype == np.uint8

    @property
    def is_brightfield(self) -> bool:
        return self.image_type.is_brightfield

    @property
    def is_calibrated(self) -> bool:
        return self.pixel_size_um is not None

    @property
    def channel_names(self) -> List[str]:
        return [c.name for c in self.channels]

    def read_region(
        self,
        x: int,
        y: int,
        width: int,
        height: int,
        downsample: float = 1.0,
    ) -> np.ndarray:
        """
        Read a rectangle of full-resolution pixels, optionally downsampled.

        The rectangle is clipped to the image bounds.

        Returns:
            (h, w, C) array in the image dtype
        """
        x0, y0 = max(0, int(x)), max(0, int(y))
        x1 = min(self.width, int(np.ceil(x + width)))
        y1 = min(self.height, int(np.ceil(y + height)))
        if x1 <= x0 or y1 <= y0:
            raise ValueError(f"Region ({x}, {y}, {width}, {height}) is outside the image")

        region = self.pixels[y0:y1, x0:x1]
        if downsample > 1:
            region = resize(region, downsample)
        return region


def resize(region: np.ndarray, downsample: float) -> np.ndarray:
    """Downsample an (H, W, C) array by *downsample* with area interpolation."""
    h, w = region.shape[:2]
    out_w = max(1, int(round(w / downsample)))
    out_h = max(1, int(round(h / downsample)))
    resized = cv2.resize(region, (out_w, out_h), interpolation=cv2.INTER_AREA)
    if resized.ndim == 2:
        resized = resized[:, :, np.newaxis]
    return resized


def default_channels(n_channels: int, rgb: bool) -> List[ImageChannel]:
    if rgb and n_channels == 3:
        return [ImageChannel(name) for name in RGB_CHANNEL_NAMES]
    return [ImageChannel(f"Channel {i + 1}") for i in range(n_channels)]


def guess_image_type(pixels: np.ndarray) -> ImageType:
    """8-bit RGB images are treated as H-DAB brightfield, everything else as fluorescence."""
    if pixels.ndim == 3 and pixels.shape[2] == 3 and pixels.dtype == np.uint8:
        return ImageType.BRIGHTFIELD_H_DAB
    return ImageType.FLUORESCENCE


# =============================================================================
# AXIS HANDLING
# =============================================================================

def _to_yxc(array: np.ndarray, axes: str) -> np.ndarray:
    """
    Reorder an array with named axes to (Y, X, C).

    'C' (channels) and 'S' (samples) are combined into the channel axis; any
    other axis (T, Z, ...) is reduced to its first plane.
    """
    axes = axes.upper()
    if len(axes) != array.ndim:
        raise ImageReadError(f"Axes '{axes}' do not match array shape {array.shape}")

    index = []
    kept = []
    for ax in axes:
        if ax in 'YXCS':
            index.append(slice(None))
            kept.append(ax)
        else:
            index.append(0)
    array = array[tuple(index)]

    if 'Y' not in kept or 'X' not in kept:
        raise ImageReadError(f"Image axes '{axes}' have no Y/X plane")

    order = [kept.index('Y'), kept.index('X')] + [i for i, ax in enumerate(kept) if ax in 'CS']
    array = np.transpose(array, order)
    h, w = array.shape[:2]
    return array.reshape(h, w, -1)


# =============================================================================
# FORMAT READERS
# =============================================================================

def _parse_ome(ome_xml: str) -> Tuple[Optional[float], List[str]]:
    """Pixel size (µm) and channel names from OME-XML."""
    try:
        root = ET.fromstring(ome_xml)
    except ET.ParseError as e:
        logger.warning(f"Could not parse OME metadata: {e}")
        return None, []

    pixel_size = None
    names = []
    for elem in root.iter():
        if elem.tag.endswith('}Pixels') or elem.tag == 'Pixels':
            value = elem.get('PhysicalSizeX')
            unit = elem.get('PhysicalSizeXUnit', 'µm')
            if value is not None:
                pixel_size = float(value)
                if unit == 'nm':
                    pixel_size /= 1000.0
                elif unit == 'mm':
                    pixel_size *= 1000.0
            for channel in elem:
                if channel.tag.endswith('Channel'):
                    names.append(channel.get('Name') or channel.get('ID', ''))
            break
    return pixel_size, names


def _read_tiff(path: Path) -> Tuple[np.ndarray, Optional[float], List[str]]:
    import tifffile

    with tifffile.TiffFile(str(path)) as tif:
        series = tif.series[0]
        array = series.asarray()
        axes = series.axes
        pixel_size, names = (None, [])
        if tif.is_ome and tif.ome_metadata:
            pixel_size, names = _parse_ome(tif.ome_metadata)
    return _to_yxc(array, axes), pixel_size, names


def _squeeze_czi(array: np.ndarray) -> np.ndarray:
    """Drop leading singleton dims from an aicspylibczi mosaic read."""
    while array.ndim > 2 and array.shape[0] == 1:
        array = array[0]
    return array


def _read_czi(path: Path, scene: int = 0) -> Tuple[np.ndarray, Optional[float], List[str]]:
    from aicspylibczi import CziFile

    reader = CziFile(str(path))
    dims = reader.get_dims_shape()[0]
    n_channels = dims['C'][1] - dims['C'][0] if 'C' in dims else 1

    if reader.is_mosaic():
        bbox = reader.get_mosaic_scene_bounding_box(index=scene)
        planes = []
        for c in range(n_channels):
            plane = reader.read_mosaic(region=(bbox.x, bbox.y, bbox.w, bbox.h), scale_factor=1, C=c)
            planes.append(_squeeze_czi(plane))
        if len(planes) == 1 and planes[0].ndim == 3:
            pixels = planes[0]
        else:
            pixels = np.stack(planes, axis=-1)
    else:
        array, shape = reader.read_image(S=scene)
        # CZI 'S' is the scene and 'A' the RGB samples
        czi_axes = ''.join(name for name, _ in shape)
        pixels = _to_yxc(array, czi_axes.replace('S', 'Q').replace('A', 'S'))

    root = reader.meta
    if isinstance(root, str):
        root = ET.fromstring(root)

    pixel_size = None
    for distance in root.iter('Distance'):
        if distance.get('Id') == 'X':
            value = distance.find('Value')
            if value is not None and value.text:
                pixel_size = float(value.text) * 1e6
                break

    names = [ch.get('Name', '') for ch in root.iter('Channel') if ch.get('Id', '').startswith('Channel:')]
    names = list(dict.fromkeys(names))[:n_channels]
    return pixels, pixel_size, names


def _read_opencv(path: Path) -> Tuple[np.ndarray, Optional[float], List[str]]:
    pixels = cv2.imread(str(path), cv2.IMREAD_UNCHANGED)
    if pixels is None:
        raise ImageReadError(f"OpenCV could not read {path}")
    if pixels.ndim == 3 and pixels.shape[2] >= 3:
        pixels = cv2.cvtColor(pixels[:, :, :3], cv2.COLOR_BGR2RGB)
    return pixels, None, []


def read_image_data(
    path: Union[str, Path],
    pixel_size_um: Optional[float] = None,
    image_type: Optional[Union[str, ImageType]] = None,
    stains: Optional[ColorDeconvolutionStains] = None,
    scene: int = 0,
) -> ImageData:
    """
    Read an image file into ImageData.

    Args:
        path: Image file
        pixel_size_um: Override the pixel size stored in the file
        image_type: Override the guessed image type
        stains: Stain vectors, default stains of the type when brightfield
        scene: Scene index for CZI files

    Returns:
        ImageData with an empty hierarchy

    Raises:
        ImageReadError: For missing, unreadable or unsupported files
    """
    path = Path(path)
    if not path.exists():
        raise ImageReadError(f"Image not found: {path}")

    suffix = path.suffix.lower()
    try:
        if suffix in TIFF_SUFFIXES:
            pixels, file_pixel_size, names = _read_tiff(path)
        elif suffix in CZI_SUFFIXES:
            pixels, file_pixel_size, names = _read_czi(path, scene=scene)
        elif suffix in OPENCV_SUFFIXES:
            pixels, file_pixel_size, names = _read_opencv(path)
        else:
            raise ImageReadError(f"Unsupported image format '{suffix}': {path}")
    except ImageReadError:
        raise
    except (OSError, ValueError) as e:
        raise ImageReadError(f"Could not read {path}: {e}") from e

    if pixels.ndim == 2:
        pixels = pixels[:, :, np.newaxis]

    if image_type is None:
        image_type = guess_image_type(pixels)
    image_type = ImageType(image_type)

    if stains is None and image_type in _DEFAULT_STAINS_FOR_TYPE:
        stains = default_stains(_DEFAULT_STAINS_FOR_TYPE[image_type])

    n_channels = pixels.shape[2]
    if len(names) == n_channels and all(names):
        channels = [ImageChannel(n) for n in names]
    else:
        channels = default_channels(n_channels, pixels.dtype == np.uint8)

    image_data = ImageData(
        pixels=pixels,
        name=path.name,
        channels=channels,
        pixel_size_um=pixel_size_um if pixel_size_um is not None else file_pixel_size,
        image_type=image_type,
        stains=stains if image_type.is_brightfield else None,
        path=path,
    )

    calibration = f"{image_data.pixel_size_um:.4f} µm/px" if image_data.is_calibrated else "uncalibrated"
    logger.info(
        f"Read {path.name}: {image_data.width:,} x {image_data.height:,} px, "
        f"{n_channels} channels ({image_type.value}, {calibration})"
    )
    return image_data

