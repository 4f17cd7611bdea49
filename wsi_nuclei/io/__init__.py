"""
Image input/output, object import/export and projects.
"""

from .image_data import (
    ImageReadError,
    ImageType,
    ImageChannel,
    ImageData,
    read_image_data,
)

from .geojson import (
    read_objects,
    read_hierarchy,
    load_annotations,
    write_hierarchy,
)

from .export import (
    measurement_table,
    write_measurements,
    write_image,
)

from .project import Project, ProjectEntry

__all__ = [
    'ImageReadError',
    'ImageType',
    'ImageChannel',
    'ImageData',
    'read_image_data',
    'read_objects',
    'read_hierarchy',
    'load_annotations',
    'write_hierarchy',
    'measurement_table',
    'write_measurements',
    'write_image',
    'Project',
    'ProjectEntry',
]
