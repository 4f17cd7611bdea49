"""
StarDist nucleus detection inside parent regions.

For every parent annotation the detector crops the bounding box, rescales to
the requested pixel size, runs the preprocessing chain and StarDist, converts
the label image to polygons and adds one DetectedObject per nucleus (with an
optional expanded cell boundary) under the parent. Previous detections of
that parent are replaced.

Usage:
    from wsi_nuclei.detection.stardist import StarDistSettings, StarDistNucleusDetector

    settings = StarDistSettings.from_config(load_config(preset='hdab_hematoxylin'))
    detector = StarDistNucleusDetector(settings)
    nuclei = detector.detect_objects(image_data, image_data.hierarchy.get_selected_objects())
"""

import math
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence, Tuple

import cv2
import numpy as np
from scipy import ndimage
from shapely.geometry import Point, Polygon
from skimage.segmentation import expand_labels
from tqdm import tqdm

from wsi_nuclei.detection.measurements import (
    COMPARTMENT_CELL,
    COMPARTMENT_CYTOPLASM,
    COMPARTMENT_NUCLEUS,
    PROBABILITY_MEASUREMENT,
    cytoplasm_labels,
    intensity_measurements,
    shape_measurements,
)
from wsi_nuclei.io.image_data import ImageData
from wsi_nuclei.models.manager import ModelManager, get_model_manager, model_input_channels
from wsi_nuclei.objects.path_objects import DetectedObject, PathObject, polygon_from_points
from wsi_nuclei.preprocessing.image_ops import ImageOpPipeline, build_preprocessing
from wsi_nuclei.preprocessing.stains import color_deconvolve
from wsi_nuclei.utils.config import DEFAULT_CONFIG, normalize_percentile_pair
from wsi_nuclei.utils.logging import get_logger

logger = get_logger(__name__)


class NoParentObjectsError(RuntimeError):
    """Raised when detection is requested without any parent region."""


@dataclass
class StarDistSettings:
    """
    Parameters of one StarDist detection run.

    Attributes:
        model_path: Model directory, pretrained name or alias
        single_channel: Model takes one input channel
        channel: 1-based detection channel for single-channel models
        median_radius: Median filter radius (px), 0 disables
        divide: Divisor for the detection channel
        offset: Added to the detection channel (negative subtracts)
        threshold: Probability threshold
        pixel_size_um: Detection resolution, 0 for native resolution
        tile_size: Prediction tile size in pixels
        cell_expansion_um: Nucleus expansion distance, 0 disables cells
        normalize_percentiles: (low, high), or None to skip normalization
        include_probability: Add 'Detection probability'
        measure_shape: Add shape measurements
        measure_intensity: Add intensity measurements
    """
    model_path: str
    single_channel: bool = True
    channel: int = 1
    median_radius: int = 0
    divide: float = 1.0
    offset: float = 0.0
    threshold: float = 0.5
    pixel_size_um: float = 0.0
    tile_size: int = 1024
    cell_expansion_um: float = 0.0
    normalize_percentiles: Optional[Tuple[float, float]] = (1.0, 99.0)
    include_probability: bool = True
    measure_shape: bool = True
    measure_intensity: bool = True

    @classmethod
    def from_config(cls, config: Dict[str, Any]) -> 'StarDistSettings':
        """Build settings from a detection config dict (missing keys use defaults)."""
        merged = {**DEFAULT_CONFIG, **config}
        return cls(
            model_path=str(merged['model_path']),
            single_channel=bool(merged['model_trained_on_single_channel']),
            channel=int(merged['channel']),
            median_radius=int(merged['median_radius']),
            divide=float(merged['divide']),
            offset=float(merged['offset']),
            threshold=float(merged['threshold']),
            pixel_size_um=float(merged['pixel_size_um']),
            tile_size=int(merged['tile_size']),
            cell_expansion_um=float(merged['cell_expansion_um']),
            normalize_percentiles=normalize_percentile_pair(merged['normalize_percentiles']),
            include_probability=bool(merged['include_probability']),
            measure_shape=bool(merged['measure_shape']),
            measure_intensity=bool(merged['measure_intensity']),
        )


def _largest_polygon(geom) -> Optional[Polygon]:
    if geom is None or geom.is_empty:
        return None
    if geom.geom_type == 'Polygon':
        return geom
    polys = [g for g in getattr(geom, 'geoms', []) if g.geom_type == 'Polygon']
    return max(polys, key=lambda p: p.area) if polys else None


def _rasterize(
    poly: Polygon,
    origin: Tuple[float, float],
    scale: Tuple[float, float],
    shape: Tuple[int, int],
) -> np.ndarray:
    """Boolean mask of a full-resolution polygon in a rescaled region frame."""
    ox, oy = origin
    sx, sy = scale

    def to_region(coords):
        pts = np.asarray(coords, dtype=float)[:, :2]
        pts = np.column_stack([(pts[:, 0] - ox) / sx, (pts[:, 1] - oy) / sy])
        return np.round(pts).astype(np.int32)

    mask = np.zeros(shape, dtype=np.uint8)
    cv2.fillPoly(mask, [to_region(poly.exterior.coords)], 1)
    for interior in poly.interiors:
        cv2.fillPoly(mask, [to_region(interior.coords)], 0)
    return mask.astype(bool)


def _label_polygon(
    labels: np.ndarray,
    label: int,
    bbox: Tuple[slice, slice],
    origin: Tuple[float, float],
    scale: Tuple[float, float],
) -> Optional[Polygon]:
    """Largest external contour of *label*, mapped to full-resolution coordinates."""
    rows, cols = bbox
    binary = (labels[rows, cols] == label).astype(np.uint8)
    binary = np.pad(binary, 1)
    contours, _ = cv2.findContours(binary, cv2.RETR_EXTERNAL, cv2.CHAIN_APPROX_SIMPLE)
    if not contours:
        return None
    largest = max(contours, key=cv2.contourArea).reshape(-1, 2).astype(float)
    # Undo padding, then shift and scale into the full-resolution frame
    x = origin[0] + (largest[:, 0] - 1 + cols.start) * scale[0]
    y = origin[1] + (largest[:, 1] - 1 + rows.start) * scale[1]
    return polygon_from_points(np.column_stack([x, y]))


class StarDistNucleusDetector:
    """
    Detect nuclei with a StarDist2D model.

    The model is taken from *model* when given, otherwise loaded on first
    use through the model manager.

    Example:
        detector = StarDistNucleusDetector(StarDistSettings('dsb2018_heavy_augment'))
        nuclei = detector.detect_objects(image_data, [roi])
    """

    def __init__(
        self,
        settings: StarDistSettings,
        model: Any = None,
        model_manager: Optional[ModelManager] = None,
        show_progress: bool = True,
    ):
        self.settings = settings
        self._model = model
        self._model_manager = model_manager
        self.show_progress = show_progress

    @property
    def model(self) -> Any:
        if self._model is None:
            manager = self._model_manager or get_model_manager()
            self._model = manager.get_stardist(self.settings.model_path)
        return self._model

    def preprocessing(self, image_data: ImageData) -> ImageOpPipeline:
        """Preprocessing chain for *image_data*, ending with normalization."""
        s = self.settings
        stains = image_data.stains if image_data.is_brightfield else None
        return build_preprocessing(
            stains=stains,
            single_channel=s.single_channel,
            channel=s.channel,
            median_radius=s.median_radius,
            divide=s.divide,
            offset=s.offset,
            normalize_percentiles=s.normalize_percentiles,
        )

    def downsample_for(self, image_data: ImageData) -> float:
        """Downsample factor from native to detection resolution (>= 1)."""
        requested = self.settings.pixel_size_um
        if requested <= 0 or not image_data.is_calibrated:
            return 1.0
        downsample = requested / image_data.pixel_size_um
        if downsample < 1:
            logger.debug(
                f"Requested {requested} µm/px is finer than the image "
                f"({image_data.pixel_size_um} µm/px), using native resolution"
            )
            return 1.0
        return downsample

    def measurement_image(self, image_data: ImageData, region: np.ndarray) -> Tuple[np.ndarray, List[str]]:
        """Image and channel names used for intensity measurements."""
        if image_data.is_brightfield and image_data.stains is not None and region.shape[2] >= 3:
            return color_deconvolve(region, image_data.stains), list(image_data.stains.stain_names)
        return region.astype(np.float32), image_data.channel_names

    def check_model_channels(self) -> None:
        """
        Raise ValueError if the model's input channels contradict the settings.

        A 3-channel network (e.g. he_heavy_augment) cannot run on the single
        extracted channel, and a 1-channel network cannot take RGB input.
        Models whose channel count is unknown are not checked.
        """
        s = self.settings
        n_channels = model_input_channels(self.model, s.model_path)
        if n_channels is None:
            return
        expected = 1 if s.single_channel else 3
        if n_channels != expected:
            raise ValueError(
                f"Model '{s.model_path}' expects {n_channels} input channel(s), but "
                f"model_trained_on_single_channel is {s.single_channel}"
            )

    def _n_tiles(self, shape: Tuple[int, ...]) -> Tuple[int, ...]:
        tile = self.settings.tile_size
        tiles = tuple(max(1, math.ceil(n / tile)) for n in shape[:2])
        return tiles + (1,) * (len(shape) - 2)

    def detect_objects(self, image_data: ImageData, parents: Sequence[PathObject]) -> List[DetectedObject]:
        """
        Detect nuclei inside each parent and store them in the hierarchy.

        Args:
            image_data: Image to segment; its hierarchy is modified
            parents: Parent regions, usually the selected annotations

        Returns:
            All new detections, in parent order

        Raises:
            NoParentObjectsError: If *parents* is empty
            ValueError: If the model's input channels do not match the settings
        """
        if not parents:
            raise NoParentObjectsError("No parent objects to detect nuclei in")
        self.check_model_channels()

        downsample = self.downsample_for(image_data)
        pipeline = self.preprocessing(image_data)
        logger.info(
            f"StarDist '{self.settings.model_path}' on {image_data.name}: "
            f"{len(parents)} region(s), downsample {downsample:.2f}, ops: {pipeline.describe()}"
        )

        all_nuclei: List[DetectedObject] = []
        for parent in tqdm(parents, desc="Detecting nuclei", disable=not self.show_progress):
            nuclei = self._detect_in_parent(image_data, parent, pipeline, downsample)
            image_data.hierarchy.replace_detections(parent, nuclei)
            all_nuclei.extend(nuclei)

        logger.info(f"Detected {len(all_nuclei)} nuclei in {len(parents)} region(s)")
        return all_nuclei

    def _detect_in_parent(
        self,
        image_data: ImageData,
        parent: PathObject,
        pipeline: ImageOpPipeline,
        downsample: float,
    ) -> List[DetectedObject]:
        s = self.settings
        minx, miny, maxx, maxy = parent.roi.bounds
        x0, y0 = max(0, int(math.floor(minx))), max(0, int(math.floor(miny)))
        x1 = min(image_data.width, int(math.ceil(maxx)))
        y1 = min(image_data.height, int(math.ceil(maxy)))
        if x1 <= x0 or y1 <= y0:
            logger.warning(f"Parent {parent.id} lies outside the image, skipping")
            return []

        region = image_data.read_region(x0, y0, x1 - x0, y1 - y0, downsample)
        origin = (float(x0), float(y0))
        scale = ((x1 - x0) / region.shape[1], (y1 - y0) / region.shape[0])

        model_input = pipeline.apply(region)
        if s.single_channel:
            model_input = model_input[:, :, 0]
        elif model_input.shape[2] != 3:
            raise ValueError(
                f"3-channel model needs an RGB image, {image_data.name} has {model_input.shape[2]} channels"
            )

        labels, details = self.model.predict_instances(
            model_input,
            prob_thresh=s.threshold,
            n_tiles=self._n_tiles(model_input.shape),
        )
        labels = np.asarray(labels).astype(np.int32, copy=False)
        probabilities = np.asarray((details or {}).get('prob', []), dtype=float)

        roi_mask = _rasterize(parent.roi, origin, scale, labels.shape)

        cell_labels = None
        if s.cell_expansion_um > 0:
            full_res_px = image_data.pixel_size_um or 1.0
            distance = s.cell_expansion_um / (full_res_px * max(scale))
            cell_labels = expand_labels(labels, distance=distance)
            cell_labels[~roi_mask] = 0

        pixel_size = image_data.pixel_size_um
        nucleus_boxes = ndimage.find_objects(labels)
        cell_boxes = ndimage.find_objects(cell_labels) if cell_labels is not None else []

        kept: Dict[int, Tuple[Polygon, Optional[Polygon]]] = {}
        for index, bbox in enumerate(nucleus_boxes):
            if bbox is None:
                continue
            label = index + 1
            nucleus = _label_polygon(labels, label, bbox, origin, scale)
            if nucleus is None or not parent.roi.contains(Point(nucleus.centroid)):
                continue

            cell = None
            if cell_labels is not None and index < len(cell_boxes) and cell_boxes[index] is not None:
                cell = _label_polygon(cell_labels, label, cell_boxes[index], origin, scale)
                if cell is not None:
                    cell = _largest_polygon(cell.union(nucleus).intersection(parent.roi))
            kept[label] = (nucleus, cell)

        label_ids = list(kept)
        intensities: Dict[str, Dict[int, Dict[str, float]]] = {}
        if s.measure_intensity and label_ids:
            measure_img, channel_names = self.measurement_image(image_data, region)
            intensities[COMPARTMENT_NUCLEUS] = intensity_measurements(
                labels, measure_img, channel_names, COMPARTMENT_NUCLEUS, label_ids)
            if cell_labels is not None:
                intensities[COMPARTMENT_CELL] = intensity_measurements(
                    cell_labels, measure_img, channel_names, COMPARTMENT_CELL, label_ids)
                intensities[COMPARTMENT_CYTOPLASM] = intensity_measurements(
                    cytoplasm_labels(cell_labels, labels), measure_img, channel_names,
                    COMPARTMENT_CYTOPLASM, label_ids)

        nuclei = []
        for label, (nucleus, cell) in kept.items():
            measurements: Dict[str, float] = {}
            if s.include_probability and label - 1 < len(probabilities):
                measurements[PROBABILITY_MEASUREMENT] = float(probabilities[label - 1])
            if s.measure_shape:
                measurements.update(shape_measurements(nucleus, COMPARTMENT_NUCLEUS, pixel_size))
                if cell is not None:
                    measurements.update(shape_measurements(cell, COMPARTMENT_CELL, pixel_size))
                    measurements["Nucleus/Cell area ratio"] = (
                        nucleus.area / cell.area if cell.area > 0 else math.nan
                    )
            for per_label in intensities.values():
                measurements.update(per_label[label])

            nuclei.append(DetectedObject(roi=nucleus, cell_roi=cell, measurements=measurements))

        logger.debug(f"Parent {parent.id}: {len(nuclei)}/{len(nucleus_boxes)} nuclei inside the region")
        return nuclei
