"""
Affine transforms for aligning images to a reference image.

Transforms are 3x3 homogeneous matrices in pixel coordinates that map a
source image location to its location in the reference image. Six-value
lists follow the row-major [m00, m01, m02, m10, m11, m12] layout used by
interactive alignment tools.
"""

from typing import Optional, Sequence, Tuple

import cv2
import numpy as np


def affine_from_values(values: Optional[Sequence[float]] = None, invert: bool = False) -> np.ndarray:
    """
    Build a 3x3 affine matrix.

    Args:
        values: [m00, m01, m02, m10, m11, m12], None for the identity
        invert: Return the inverse transform. Use when the alignment was
            measured in the opposite direction.

    Raises:
        ValueError: For a wrong number of values or a singular transform
    """
    matrix = np.eye(3)
    if values is not None:
        values = [float(v) for v in values]
        if len(values) != 6:
            raise ValueError(f"Affine transform needs 6 values, got {len(values)}")
        matrix[:2, :] = np.asarray(values).reshape(2, 3)

    if invert:
        if abs(np.linalg.det(matrix[:2, :2])) < 1e-12:
            raise ValueError("Affine transform is not invertible")
        matrix = np.linalg.inv(matrix)
    return matrix


def is_identity(matrix: Optional[np.ndarray], tol: float = 1e-9) -> bool:
    return matrix is None or np.allclose(matrix, np.eye(3), atol=tol)


def warp_to_reference(
    pixels: np.ndarray,
    matrix: np.ndarray,
    output_shape: Tuple[int, int],
    interpolation: int = cv2.INTER_LINEAR,
) -> np.ndarray:
    """
    Resample an (H, W, C) image into the reference frame.

    The output pixel at x' takes the source value at inverse(matrix) @ x'.
    Areas outside the source are 0.

    Args:
        pixels: Source image
        matrix: 3x3 source -> reference transform
        output_shape: (height, width) of the reference image
        interpolation: OpenCV interpolation flag

    Returns:
        (height, width, C) array in the source dtype
    """
    height, width = output_shape
    m = np.asarray(matrix, dtype=np.float64)[:2, :]
    if pixels.dtype in (np.uint8, np.uint16, np.int16, np.float32, np.float64):
        work = pixels
    else:
        work = pixels.astype(np.float32)

    out = np.zeros((height, width, pixels.shape[2]), dtype=work.dtype)
    for c in range(pixels.shape[2]):
        out[:, :, c] = cv2.warpAffine(
            np.ascontiguousarray(work[:, :, c]),
            m,
            (width, height),
            flags=interpolation,
            borderMode=cv2.BORDER_CONSTANT,
            borderValue=0,
        )
    return out.astype(pixels.dtype, copy=False)
