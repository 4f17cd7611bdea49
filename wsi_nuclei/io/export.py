"""
Export of measurement tables and images.

- Measurement tables: one row per detection, written as CSV or TSV via pandas
- Images: pyramidal OME-TIFF via tifffile, with 2x sub-resolutions down to
  512 px
"""

from pathlib import Path
from typing import List, Optional, Sequence, Union

import cv2
import numpy as np
import pandas as pd

from wsi_nuclei.detection.measurements import measurement_names
from wsi_nuclei.io.image_data import ImageData, resize
from wsi_nuclei.objects.path_objects import DetectedObject
from wsi_nuclei.utils.logging import get_logger

logger = get_logger(__name__)

MIN_PYRAMID_SIZE = 512
TILE_SIZE = (256, 256)


# =============================================================================
# MEASUREMENT TABLES
# =============================================================================

def measurement_table(
    detections: Sequence[DetectedObject],
    image_name: Optional[str] = None,
) -> pd.DataFrame:
    """
    One row per detection: identity columns followed by all measurements.

    Measurement columns are ordered by first appearance. Measurements
    missing for an object are NaN.
    """
    identity = ["Image", "Object ID", "Object type", "Classification", "Parent",
                "Centroid X px", "Centroid Y px"]
    rows = []
    for det in detections:
        cx, cy = det.centroid
        row = {
            "Image": image_name,
            "Object ID": det.id,
            "Object type": "cell" if det.is_cell else det.object_type,
            "Classification": det.classification,
            "Parent": det.parent.id if det.parent is not None else None,
            "Centroid X px": cx,
            "Centroid Y px": cy,
        }
        row.update(det.measurements)
        rows.append(row)
    columns = identity + measurement_names([det.measurements for det in detections])
    return pd.DataFrame(rows, columns=columns)


def write_measurements(
    path: Union[str, Path],
    detections: Sequence[DetectedObject],
    image_name: Optional[str] = None,
) -> Path:
    """Write the measurement table. '.tsv' and '.txt' use tabs, anything else commas."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    sep = "\t" if path.suffix.lower() in (".tsv", ".txt") else ","

    df = measurement_table(detections, image_name)
    df.to_csv(path, sep=sep, index=False, encoding="utf-8")
    logger.info(f"Wrote {len(df)} rows x {len(df.columns)} columns to {path}")
    return path


# =============================================================================
# IMAGE WRITING
# =============================================================================

def pyramid_levels(width: int, height: int, min_size: int = MIN_PYRAMID_SIZE) -> int:
    """Number of 2x sub-resolutions whose smaller side stays >= min_size."""
    n = 0
    size = min(width, height)
    while size // 2 >= min_size:
        size //= 2
        n += 1
    return n


def _half(pixels: np.ndarray) -> np.ndarray:
    h, w = pixels.shape[:2]
    out = cv2.resize(pixels, (max(1, w // 2), max(1, h // 2)), interpolation=cv2.INTER_AREA)
    if out.ndim == 2:
        out = out[:, :, np.newaxis]
    return out


def write_image(
    image_data: ImageData,
    path: Union[str, Path],
    downsample: float = 1.0,
    compression: Optional[str] = "zlib",
) -> Path:
    """
    Write an image as a pyramidal OME-TIFF.

    8-bit RGB images are written interleaved (photometric RGB), everything
    else as separate channel planes with the channel names in the OME
    metadata.

    Args:
        image_data: Image to write
        path: Output file (.ome.tif)
        downsample: Downsample factor of the full-resolution level
        compression: tifffile compression for all levels

    Returns:
        Path of the written file
    """
    import tifffile

    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)

    pixels = image_data.pixels
    if downsample > 1:
        pixels = resize(pixels, downsample)

    pixel_size = image_data.pixel_size_um * downsample if image_data.is_calibrated else None
    rgb = image_data.is_rgb

    metadata = {
        "axes": "YXS" if rgb else "CYX",
        "Channel": {"Name": image_data.channel_names},
    }
    if pixel_size:
        metadata.update({
            "PhysicalSizeX": pixel_size,
            "PhysicalSizeXUnit": "µm",
            "PhysicalSizeY": pixel_size,
            "PhysicalSizeYUnit": "µm",
        })

    def layout(level: np.ndarray) -> np.ndarray:
        return level if rgb else np.ascontiguousarray(np.moveaxis(level, 2, 0))

    options = dict(
        tile=TILE_SIZE,
        photometric="rgb" if rgb else "minisblack",
        compression=compression,
    )

    height, width = pixels.shape[:2]
    n_levels = pyramid_levels(width, height)
    logger.info(
        f"Writing {path.name}: {width:,} x {height:,} px, {image_data.n_channels} channels, "
        f"{n_levels} sub-resolutions"
    )

    with tifffile.TiffWriter(str(path), bigtiff=True, ome=True) as tif:
        tif.write(layout(pixels), subifds=n_levels, metadata=metadata, **options)
        level = pixels
        for _ in range(n_levels):
            level = _half(level)
            tif.write(layout(level), subfiletype=1, metadata=None, **options)

    return path


def export_paths(output_dir: Union[str, Path], stem: str) -> List[Path]:
    """Detection, measurement and config file paths for an image stem."""
    output_dir = Path(output_dir)
    return [
        output_dir / f"{stem}_detections.geojson",
        output_dir / f"{stem}_measurements.csv",
        output_dir / f"{stem}_config.json",
    ]
