"""
A project: a directory of images with optional per-image settings.

Images are discovered by file extension. An optional 'project.json' in the
directory can set the image type, stains and pixel size of each image:

    {
      "images": [
        {"name": "slide1.tif", "image_type": "brightfield_h_e",
         "pixel_size_um": 0.25,
         "stains": {"Name": "H&E", "Values 1": "0.65 0.70 0.29", "Values 2": "0.21 0.80 0.56"}}
      ]
    }
"""

import json
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from wsi_nuclei.io.image_data import (
    CZI_SUFFIXES,
    OPENCV_SUFFIXES,
    TIFF_SUFFIXES,
    ImageData,
    read_image_data,
)
from wsi_nuclei.preprocessing.stains import ColorDeconvolutionStains, parse_stains
from wsi_nuclei.utils.logging import get_logger

logger = get_logger(__name__)

PROJECT_FILE = "project.json"
IMAGE_SUFFIXES = TIFF_SUFFIXES + CZI_SUFFIXES + OPENCV_SUFFIXES


@dataclass
class ProjectEntry:
    """One image of a project and its read settings."""
    name: str
    path: Path
    image_type: Optional[str] = None
    pixel_size_um: Optional[float] = None
    stains: Optional[ColorDeconvolutionStains] = None

    def read_image_data(self) -> ImageData:
        return read_image_data(
            self.path,
            pixel_size_um=self.pixel_size_um,
            image_type=self.image_type,
            stains=self.stains,
        )


class Project:
    """
    Images in a directory, addressed by file name.

    Example:
        project = Project('/data/run1')
        image_data = project.read_image_data('slide1.tif')
    """

    def __init__(self, directory: Union[str, Path]):
        self.directory = Path(directory)
        if not self.directory.is_dir():
            raise FileNotFoundError(f"Project directory not found: {self.directory}")
        self._entries: Dict[str, ProjectEntry] = {}
        self._load()

    def _load(self) -> None:
        settings: Dict[str, Dict[str, Any]] = {}
        project_file = self.directory / PROJECT_FILE
        if project_file.exists():
            with open(project_file, 'r', encoding='utf-8') as f:
                data = json.load(f)
            settings = {item['name']: item for item in data.get('images', [])}

        for path in sorted(self.directory.iterdir()):
            if not path.is_file() or path.suffix.lower() not in IMAGE_SUFFIXES:
                continue
            item = settings.get(path.name, {})
            stains = item.get('stains')
            if stains is not None:
                stains = parse_stains(stains if isinstance(stains, str) else json.dumps(stains))
            self._entries[path.name] = ProjectEntry(
                name=path.name,
                path=path,
                image_type=item.get('image_type'),
                pixel_size_um=item.get('pixel_size_um'),
                stains=stains,
            )

        missing = sorted(set(settings) - set(self._entries))
        if missing:
            logger.warning(f"{PROJECT_FILE} lists images not found in {self.directory}: {missing}")
        logger.debug(f"Project {self.directory}: {len(self._entries)} images")

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, name: str) -> bool:
        return name in self._entries

    @property
    def image_names(self) -> List[str]:
        return list(self._entries)

    def entry(self, name: str) -> ProjectEntry:
        """
        Project entry by image name.

        Raises:
            KeyError: If no image has that name
        """
        if name not in self._entries:
            raise KeyError(
                f"No image '{name}' in project. Available: {', '.join(self._entries) or '(none)'}"
            )
        return self._entries[name]

    def read_image_data(self, name: str) -> ImageData:
        return self.entry(name).read_image_data()
