"""
Schema validation for the JSON files read and written by the tools.

Uses Pydantic for validation with clear error messages.

Covers:
- GeoJSON exported by slide-analysis software (annotations and detections)
- Merge specifications for the channel-merging command

Usage:
    from wsi_nuclei.utils.schemas import validate_geojson_file, validate_merge_spec_file

    collection = validate_geojson_file("/path/to/annotations.geojson")
    spec = validate_merge_spec_file("/path/to/merge.json")
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator


# =============================================================================
# GeoJSON Schemas
# =============================================================================

class Geometry(BaseModel):
    """A polygonal GeoJSON geometry in pixel coordinates."""
    type: Literal["Polygon", "MultiPolygon"]
    coordinates: List[Any]

    @field_validator('coordinates')
    @classmethod
    def validate_not_empty(cls, v: List[Any]) -> List[Any]:
        if not v:
            raise ValueError("geometry has no coordinates")
        return v


class FeatureProperties(BaseModel):
    """Properties block of an exported object."""
    model_config = ConfigDict(extra="allow")

    objectType: Optional[str] = None
    name: Optional[str] = None
    classification: Optional[Dict[str, Any]] = None
    measurements: Optional[Union[Dict[str, Optional[float]], List[Dict[str, Any]]]] = None
    parent: Optional[str] = None
    isLocked: Optional[bool] = None

    def measurement_dict(self) -> Dict[str, float]:
        """Measurements as a name -> value dict, dropping null values.

        Older exports store measurements as a list of {name, value} pairs.
        """
        if not self.measurements:
            return {}
        if isinstance(self.measurements, list):
            items = ((m.get("name"), m.get("value")) for m in self.measurements)
        else:
            items = self.measurements.items()
        return {k: float(v) for k, v in items if k is not None and v is not None}


class Feature(BaseModel):
    """A single exported object."""
    model_config = ConfigDict(extra="allow")

    type: Literal["Feature"] = "Feature"
    id: Optional[str] = None
    geometry: Geometry
    nucleusGeometry: Optional[Geometry] = None
    properties: FeatureProperties = Field(default_factory=FeatureProperties)

    @property
    def object_type(self) -> str:
        return (self.properties.objectType or "annotation").lower()


class FeatureCollection(BaseModel):
    """A GeoJSON FeatureCollection."""
    type: Literal["FeatureCollection"] = "FeatureCollection"
    features: List[Feature] = Field(default_factory=list)


def parse_geojson(data: Any) -> FeatureCollection:
    """
    Validate GeoJSON content.

    Accepts a FeatureCollection, a bare list of features, or a single
    feature, since all three are produced by common export options.
    """
    if isinstance(data, list):
        data = {"type": "FeatureCollection", "features": data}
    elif isinstance(data, dict) and data.get("type") == "Feature":
        data = {"type": "FeatureCollection", "features": [data]}
    return FeatureCollection.model_validate(data)


# =============================================================================
# Merge Specification Schema
# =============================================================================

class MergeImageSpec(BaseModel):
    """One image to append, with an optional affine transform."""
    name: str
    transform: Optional[List[float]] = None
    invert: bool = False

    @field_validator('transform')
    @classmethod
    def validate_transform(cls, v: Optional[List[float]]) -> Optional[List[float]]:
        if v is not None and len(v) != 6:
            raise ValueError(
                f"transform must have 6 values [m00, m01, m02, m10, m11, m12], got {len(v)}"
            )
        return v


class MergeSpec(BaseModel):
    """Schema for merge specification files."""
    project_dir: str
    images: List[MergeImageSpec] = Field(..., min_length=1)
    output: Optional[str] = None
    downsample: float = Field(1.0, ge=1.0)
    deconvolve_stains: bool = False

    @field_validator('images')
    @classmethod
    def validate_unique_names(cls, v: List[MergeImageSpec]) -> List[MergeImageSpec]:
        names = [entry.name for entry in v]
        duplicates = sorted({n for n in names if names.count(n) > 1})
        if duplicates:
            raise ValueError(f"image names must be unique, duplicated: {duplicates}")
        return v


# =============================================================================
# Validation Functions
# =============================================================================

def _load_json(file_path: Union[str, Path]) -> Any:
    file_path = Path(file_path)
    if not file_path.exists():
        raise FileNotFoundError(f"File not found: {file_path}")
    try:
        with open(file_path, 'r', encoding='utf-8') as f:
            return json.load(f)
    except json.JSONDecodeError as e:
        raise ValueError(f"Invalid JSON in {file_path}: {e}") from e


def validate_geojson_file(file_path: Union[str, Path]) -> FeatureCollection:
    """Load and validate a GeoJSON file of exported objects."""
    data = _load_json(file_path)
    try:
        return parse_geojson(data)
    except ValueError as e:
        raise ValueError(f"Validation failed for {file_path}: {e}") from e


def validate_merge_spec_file(file_path: Union[str, Path]) -> MergeSpec:
    """Load and validate a merge specification file."""
    data = _load_json(file_path)
    try:
        return MergeSpec.model_validate(data)
    except ValueError as e:
        raise ValueError(f"Validation failed for {file_path}: {e}") from e
