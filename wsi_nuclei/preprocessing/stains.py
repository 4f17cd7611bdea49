"""
Color deconvolution stains for brightfield images.

Separates an RGB brightfield image into per-stain optical density channels
using the Ruifrok & Johnston method: convert to optical density, then
multiply by the inverse of the stain matrix.

Usage:
    from wsi_nuclei.preprocessing.stains import default_stains, color_deconvolve

    stains = default_stains('H-DAB')
    hed = color_deconvolve(rgb, stains)   # (H, W, 3): Hematoxylin, DAB, Residual
"""

import json
from dataclasses import dataclass
from typing import Dict, Optional, Sequence, Tuple

import numpy as np

from wsi_nuclei.utils.logging import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class StainVector:
    """A named stain with a unit-length RGB optical density vector."""
    name: str
    rgb: Tuple[float, float, float]

    @classmethod
    def create(cls, name: str, rgb: Sequence[float]) -> 'StainVector':
        vec = np.asarray(rgb, dtype=float)
        norm = np.linalg.norm(vec)
        if vec.shape != (3,) or norm == 0:
            raise ValueError(f"Stain '{name}' needs 3 non-zero values, got {list(rgb)}")
        vec = vec / norm
        return cls(name, (float(vec[0]), float(vec[1]), float(vec[2])))


def _complement(rgb1: Sequence[float], rgb2: Sequence[float]) -> np.ndarray:
    """Per-component sqrt(1 - a^2 - b^2), 0 where the two stains already saturate it."""
    remainder = 1.0 - np.square(rgb1) - np.square(rgb2)
    return np.sqrt(np.clip(remainder, 0.0, None))


@dataclass(frozen=True)
class ColorDeconvolutionStains:
    """
    Three stain vectors plus the background (white) RGB value.

    Attributes:
        name: Display name, e.g. 'H-DAB default'
        stain1, stain2, stain3: Stain vectors. stain3 is usually the residual.
        background: RGB intensity of unstained background
    """
    name: str
    stain1: StainVector
    stain2: StainVector
    stain3: StainVector
    background: Tuple[float, float, float] = (255.0, 255.0, 255.0)

    @classmethod
    def create(
        cls,
        name: str,
        stain1: StainVector,
        stain2: StainVector,
        stain3: Optional[StainVector] = None,
        background: Sequence[float] = (255, 255, 255),
    ) -> 'ColorDeconvolutionStains':
        """Create stains, deriving the third vector as a residual when missing."""
        if stain3 is None:
            stain3 = StainVector.create("Residual", _complement(stain1.rgb, stain2.rgb))
        bg = tuple(float(v) for v in background)
        if len(bg) != 3:
            raise ValueError(f"Background needs 3 values, got {len(bg)}")
        return cls(name, stain1, stain2, stain3, bg)

    @property
    def stains(self) -> Tuple[StainVector, StainVector, StainVector]:
        return self.stain1, self.stain2, self.stain3

    def get_stain(self, index: int) -> StainVector:
        """1-based stain lookup."""
        if index not in (1, 2, 3):
            raise IndexError(f"Stain index must be 1, 2 or 3, got {index}")
        return self.stains[index - 1]

    @property
    def stain_names(self) -> Tuple[str, str, str]:
        return tuple(s.name for s in self.stains)

    def matrix(self) -> np.ndarray:
        """3x3 stain matrix, one stain per row."""
        return np.array([s.rgb for s in self.stains], dtype=float)

    def to_json(self) -> str:
        """Serialize in the 'Name / Stain N / Values N / Background' format."""
        data = {"Name": self.name}
        for i, stain in enumerate(self.stains, start=1):
            data[f"Stain {i}"] = stain.name
            data[f"Values {i}"] = " ".join(f"{v:.5f}" for v in stain.rgb)
        data["Background"] = " ".join(f"{v:g}" for v in self.background)
        return json.dumps(data)


_DEFAULT_VECTORS: Dict[str, Tuple[str, Tuple[str, Sequence[float]], Tuple[str, Sequence[float]]]] = {
    "H-DAB": ("H-DAB default", ("Hematoxylin", (0.65111, 0.70119, 0.29049)),
              ("DAB", (0.26917, 0.56824, 0.77759))),
    "H&E": ("H&E default", ("Hematoxylin", (0.65111, 0.70119, 0.29049)),
            ("Eosin", (0.2159, 0.8012, 0.5581))),
}


def default_stains(kind: str = "H-DAB") -> ColorDeconvolutionStains:
    """
    Default stain vectors for 'H-DAB' or 'H&E'.

    Raises:
        KeyError: For an unknown stain combination
    """
    if kind not in _DEFAULT_VECTORS:
        raise KeyError(f"Unknown stains '{kind}'. Available: {', '.join(_DEFAULT_VECTORS)}")
    name, (n1, v1), (n2, v2) = _DEFAULT_VECTORS[kind]
    return ColorDeconvolutionStains.create(
        name, StainVector.create(n1, v1), StainVector.create(n2, v2)
    )


def _parse_values(text: str) -> Tuple[float, ...]:
    return tuple(float(v) for v in str(text).split())


def parse_stains(text: str) -> ColorDeconvolutionStains:
    """
    Parse a stain definition string.

    Example:
        {"Name" : "H&E default", "Stain 1" : "Hematoxylin",
         "Values 1" : "0.65111 0.70119 0.29049", "Stain 2" : "Eosin",
         "Values 2" : "0.2159 0.8012 0.5581", "Background" : " 255 255 255"}
    """
    data = json.loads(text) if isinstance(text, str) else dict(text)

    vectors = []
    for i in (1, 2, 3):
        if f"Values {i}" not in data:
            continue
        name = data.get(f"Stain {i}", f"Stain {i}")
        vectors.append(StainVector.create(name, _parse_values(data[f"Values {i}"])))

    if len(vectors) < 2:
        raise ValueError("Stain definition needs at least 'Values 1' and 'Values 2'")

    background = _parse_values(data.get("Background", "255 255 255"))
    return ColorDeconvolutionStains.create(
        data.get("Name", "Custom"),
        vectors[0],
        vectors[1],
        vectors[2] if len(vectors) > 2 else None,
        background,
    )


def optical_density(rgb: np.ndarray, background: Sequence[float]) -> np.ndarray:
    """Per-channel optical density -log10(I / I0), with I clamped to >= 1."""
    rgb = np.maximum(rgb[..., :3].astype(np.float32), 1.0)
    bg = np.asarray(background, dtype=np.float32)
    return -np.log10(rgb / bg)


def color_deconvolve(rgb: np.ndarray, stains: ColorDeconvolutionStains) -> np.ndarray:
    """
    Separate an RGB image into stain optical densities.

    Args:
        rgb: (H, W, 3) image, any numeric dtype on the 0-255 scale
        stains: Stain vectors to separate

    Returns:
        (H, W, 3) float32 array, channels ordered stain1, stain2, stain3
    """
    if rgb.ndim != 3 or rgb.shape[2] < 3:
        raise ValueError(f"Color deconvolution needs an RGB image, got shape {rgb.shape}")

    od = optical_density(rgb, stains.background)
    inverse = np.linalg.inv(stains.matrix())
    h, w = od.shape[:2]
    separated = od.reshape(-1, 3) @ inverse.astype(np.float32)
    return separated.reshape(h, w, 3).astype(np.float32)
