"""
Channel merging of aligned images.

Includes:
- transforms: affine matrices and resampling into a reference frame
- merge: channel concatenation of project images
"""

from .transforms import (
    affine_from_values,
    is_identity,
    warp_to_reference,
)

from .merge import (
    merge_images,
    merge_from_spec,
)

__all__ = [
    'affine_from_values',
    'is_identity',
    'warp_to_reference',
    'merge_images',
    'merge_from_spec',
]
