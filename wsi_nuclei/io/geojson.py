"""
GeoJSON import/export of annotations and detections.

Uses the feature layout of common slide-analysis exports: each Feature has a
polygon geometry and properties with 'objectType' ('annotation', 'detection'
or 'cell'), optional 'classification' {'name': ...}, 'measurements' and, for
our exports, the 'parent' object id. Cells carry the nucleus boundary in
'nucleusGeometry' and the cell boundary in 'geometry'.

Usage:
    from wsi_nuclei.io.geojson import load_annotations, write_hierarchy

    rois = load_annotations(image_data.hierarchy, 'rois.geojson', name='Tumor')
    write_hierarchy('out/slide_detections.geojson', image_data.hierarchy)
"""

from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from shapely.geometry import Polygon, mapping

from wsi_nuclei.objects.hierarchy import ObjectHierarchy
from wsi_nuclei.objects.path_objects import (
    AnnotationObject,
    DetectedObject,
    PathObject,
    validate_polygon,
)
from wsi_nuclei.utils.json_utils import atomic_json_dump
from wsi_nuclei.utils.logging import get_logger
from wsi_nuclei.utils.schemas import Feature, Geometry, parse_geojson, validate_geojson_file

logger = get_logger(__name__)

DETECTION_TYPES = ("detection", "cell", "tile")


# =============================================================================
# GEOMETRY CONVERSION
# =============================================================================

def geometry_to_polygon(geometry: Geometry) -> Optional[Polygon]:
    """
    Convert a GeoJSON geometry to a valid polygon.

    MultiPolygons are reduced to their largest part.
    """
    if geometry.type == "Polygon":
        rings = geometry.coordinates
        candidates = [Polygon(rings[0], rings[1:])]
    else:
        candidates = [Polygon(part[0], part[1:]) for part in geometry.coordinates if part]

    polys = [p for p in (validate_polygon(c) for c in candidates) if p is not None and not p.is_empty]
    if not polys:
        return None
    return max(polys, key=lambda p: p.area)


def polygon_to_geometry(poly: Polygon) -> Dict[str, Any]:
    geometry = mapping(poly)
    return {"type": geometry["type"], "coordinates": geometry["coordinates"]}


# =============================================================================
# READING
# =============================================================================

def _classification_name(feature: Feature) -> Optional[str]:
    classification = feature.properties.classification
    if classification:
        return classification.get("name")
    return None


def _feature_to_object(feature: Feature) -> Optional[PathObject]:
    roi = geometry_to_polygon(feature.geometry)
    if roi is None:
        logger.warning(f"Skipping feature {feature.id or '?'} with empty geometry")
        return None

    props = feature.properties
    common = {"name": props.name, "classification": _classification_name(feature)}
    if feature.id:
        common["id"] = feature.id

    if feature.object_type in DETECTION_TYPES:
        nucleus = geometry_to_polygon(feature.nucleusGeometry) if feature.nucleusGeometry else None
        if nucleus is not None:
            return DetectedObject(roi=nucleus, cell_roi=roi, measurements=props.measurement_dict(), **common)
        return DetectedObject(roi=roi, measurements=props.measurement_dict(), **common)

    return AnnotationObject(roi=roi, is_locked=bool(props.isLocked), **common)


def read_objects(source: Union[str, Path, Dict[str, Any], List[Any]]) -> List[PathObject]:
    """
    Read annotations and detections from a GeoJSON file or parsed content.

    Parent links given by the 'parent' property are restored where the
    parent is part of the same file.
    """
    if isinstance(source, (str, Path)):
        collection = validate_geojson_file(source)
    else:
        collection = parse_geojson(source)

    objects = []
    by_id: Dict[str, PathObject] = {}
    parent_ids: Dict[int, str] = {}
    for feature in collection.features:
        obj = _feature_to_object(feature)
        if obj is None:
            continue
        objects.append(obj)
        by_id[obj.id] = obj
        if feature.properties.parent:
            parent_ids[id(obj)] = feature.properties.parent

    for obj in objects:
        parent = by_id.get(parent_ids.get(id(obj), ""))
        if parent is not None and parent is not obj:
            obj.parent = parent
            parent.children.append(obj)

    return objects


def read_hierarchy(source: Union[str, Path, Dict[str, Any], List[Any]]) -> ObjectHierarchy:
    """Build a hierarchy from a GeoJSON export. Annotations are selected."""
    hierarchy = ObjectHierarchy()
    for obj in read_objects(source):
        hierarchy.add_object(obj)
    hierarchy.select_annotations()
    return hierarchy


def load_annotations(
    hierarchy: ObjectHierarchy,
    source: Union[str, Path, Dict[str, Any], List[Any]],
    name: Optional[str] = None,
    select: bool = True,
) -> List[AnnotationObject]:
    """
    Add the annotations of a GeoJSON export to *hierarchy*.

    Detections in the file are ignored.

    Args:
        hierarchy: Target hierarchy
        source: GeoJSON file or parsed content
        name: Only select annotations with this name or classification.
            All loaded annotations are added regardless.
        select: Replace the selection with the matching annotations

    Returns:
        Matching annotations
    """
    annotations = [o for o in read_objects(source) if isinstance(o, AnnotationObject)]
    for annotation in annotations:
        annotation.parent = None
        annotation.children = []
        hierarchy.add_object(annotation)

    if name is not None:
        matching = [a for a in annotations if name in (a.name, a.classification)]
    else:
        matching = annotations

    if select:
        hierarchy.set_selected(matching)
    logger.info(f"Loaded {len(annotations)} annotations ({len(matching)} matching)")
    return matching


# =============================================================================
# WRITING
# =============================================================================

def object_to_feature(obj: PathObject) -> Dict[str, Any]:
    """GeoJSON Feature dict for an annotation or detection."""
    properties: Dict[str, Any] = {"objectType": obj.object_type}
    if obj.name:
        properties["name"] = obj.name
    if obj.classification:
        properties["classification"] = {"name": obj.classification}
    if obj.parent is not None:
        properties["parent"] = obj.parent.id

    feature: Dict[str, Any] = {"type": "Feature", "id": obj.id}
    if isinstance(obj, DetectedObject):
        properties["measurements"] = dict(obj.measurements)
        if obj.is_cell:
            properties["objectType"] = "cell"
            feature["geometry"] = polygon_to_geometry(obj.cell_roi)
            feature["nucleusGeometry"] = polygon_to_geometry(obj.roi)
        else:
            feature["geometry"] = polygon_to_geometry(obj.roi)
    else:
        properties["isLocked"] = bool(getattr(obj, "is_locked", False))
        feature["geometry"] = polygon_to_geometry(obj.roi)

    feature["properties"] = properties
    return feature


def hierarchy_to_geojson(hierarchy: ObjectHierarchy, include_annotations: bool = True) -> Dict[str, Any]:
    objects: List[PathObject] = []
    if include_annotations:
        objects.extend(hierarchy.get_annotation_objects())
    objects.extend(hierarchy.get_detection_objects())
    return {"type": "FeatureCollection", "features": [object_to_feature(o) for o in objects]}


def write_hierarchy(
    path: Union[str, Path],
    hierarchy: ObjectHierarchy,
    include_annotations: bool = True,
) -> Path:
    """
    Write annotations (optional) and detections as a FeatureCollection.

    Missing (NaN) measurement values are written as null.
    """
    data = hierarchy_to_geojson(hierarchy, include_annotations=include_annotations)
    path = atomic_json_dump(data, path)
    logger.info(f"Wrote {len(data['features'])} features to {path}")
    return path
