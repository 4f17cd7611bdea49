"""
Tests for affine transforms, projects and channel merging.

Tests wsi_nuclei/registration/transforms.py, wsi_nuclei/registration/merge.py
and wsi_nuclei/io/project.py on small TIFF files written with tifffile.
"""

import json

import numpy as np
import pytest
import tifffile
from pydantic import ValidationError

import sys
from pathlib import Path
sys.path.insert(0, str(Path(__file__).parent.parent))

from wsi_nuclei.io.image_data import ImageType, read_image_data
from wsi_nuclei.io.project import Project
from wsi_nuclei.registration.merge import merge_from_spec, merge_images
from wsi_nuclei.registration.transforms import (
    affine_from_values,
    is_identity,
    warp_to_reference,
)
from wsi_nuclei.utils.schemas import MergeSpec, validate_merge_spec_file

SHIFT_X = [1, 0, 5, 0, 1, 0]


@pytest.fixture
def project_dir(temp_output_dir):
    """
    Project directory with three images.

    a.tif: 50x60 uint16, constant 100
    b.tif: 50x60 uint16, 10x10 block of 500 at x=20..29, y=10..19
    rgb.tif: 50x60 uint8 RGB, white with a purple block
    """
    a = np.full((50, 60), 100, dtype=np.uint16)
    b = np.zeros((50, 60), dtype=np.uint16)
    b[10:20, 20:30] = 500
    rgb = np.full((50, 60, 3), 240, dtype=np.uint8)
    rgb[10:20, 20:30] = [90, 60, 160]

    tifffile.imwrite(str(temp_output_dir / "a.tif"), a)
    tifffile.imwrite(str(temp_output_dir / "b.tif"), b)
    tifffile.imwrite(str(temp_output_dir / "rgb.tif"), rgb, photometric="rgb")
    return temp_output_dir


class TestTransforms:
    """Tests for affine helpers."""

    def test_identity(self):
        assert is_identity(affine_from_values())
        assert is_identity(None)
        assert not is_identity(affine_from_values(SHIFT_X))

    def test_values_layout(self):
        matrix = affine_from_values([1, 2, 3, 4, 5, 6])
        np.testing.assert_array_equal(matrix, [[1, 2, 3], [4, 5, 6], [0, 0, 1]])

    def test_invert(self):
        inverse = affine_from_values(SHIFT_X, invert=True)
        np.testing.assert_allclose(inverse, [[1, 0, -5], [0, 1, 0], [0, 0, 1]])

    def test_wrong_number_of_values(self):
        with pytest.raises(ValueError):
            affine_from_values([1, 0, 0, 1])

    def test_singular_invert(self):
        with pytest.raises(ValueError):
            affine_from_values([0, 0, 1, 0, 0, 1], invert=True)

    def test_warp_translation(self):
        pixels = np.zeros((20, 20, 1), dtype=np.uint16)
        pixels[5, 5, 0] = 1000
        out = warp_to_reference(pixels, affine_from_values(SHIFT_X), (20, 30))
        assert out.shape == (20, 30, 1)
        assert out.dtype == np.uint16
        assert out[5, 10, 0] == 1000
        assert out[5, 5, 0] == 0


class TestProject:
    """Tests for Project."""

    def test_images_discovered(self, project_dir):
        (project_dir / "notes.txt").write_text("ignored")
        project = Project(project_dir)
        assert project.image_names == ["a.tif", "b.tif", "rgb.tif"]
        assert "a.tif" in project
        assert len(project) == 3

    def test_unknown_image(self, project_dir):
        with pytest.raises(KeyError, match="Available"):
            Project(project_dir).entry("missing.tif")

    def test_missing_directory(self, temp_output_dir):
        with pytest.raises(FileNotFoundError):
            Project(temp_output_dir / "nope")

    def test_project_settings(self, project_dir):
        (project_dir / "project.json").write_text(json.dumps({
            "images": [{
                "name": "rgb.tif",
                "image_type": "brightfield_h_e",
                "pixel_size_um": 0.25,
                "stains": {"Name": "H&E", "Values 1": "0.65 0.70 0.29", "Values 2": "0.21 0.80 0.56"},
            }],
        }))
        image = Project(project_dir).read_image_data("rgb.tif")
        assert image.image_type == ImageType.BRIGHTFIELD_H_E
        assert image.pixel_size_um == 0.25
        assert image.stains.name == "H&E"


class TestMergeImages:
    """Tests for merge_images."""

    def test_concatenates_channels(self, project_dir):
        merged = merge_images(Project(project_dir), {"a.tif": None, "b.tif": None})

        assert merged.pixels.shape == (50, 60, 2)
        assert merged.channel_names == ["a.tif-Channel 1", "b.tif-Channel 1"]
        assert merged.image_type == ImageType.FLUORESCENCE
        assert merged.pixels[15, 25, 1] == 500
        assert merged.channels[0].color != merged.channels[1].color

    def test_transform_applied(self, project_dir):
        merged = merge_images(
            Project(project_dir),
            {"a.tif": None, "b.tif": affine_from_values(SHIFT_X)},
        )
        shifted = merged.pixels[:, :, 1]
        assert shifted[15, 30] == 500
        assert shifted[15, 22] == 0

    def test_inverted_transform(self, project_dir):
        merged = merge_images(
            Project(project_dir),
            {"a.tif": None, "b.tif": affine_from_values(SHIFT_X, invert=True)},
        )
        shifted = merged.pixels[:, :, 1]
        assert shifted[15, 20] == 500
        assert shifted[15, 27] == 0

    def test_unknown_name_fails_before_reading(self, project_dir):
        project = Project(project_dir)
        with pytest.raises(KeyError):
            merge_images(project, {"a.tif": None, "missing.tif": None})

    def test_empty(self, project_dir):
        with pytest.raises(ValueError):
            merge_images(Project(project_dir), {})

    def test_deconvolve_stains(self, project_dir):
        merged = merge_images(
            Project(project_dir), {"rgb.tif": None, "a.tif": None}, deconvolve_stains=True,
        )
        assert merged.channel_names == [
            "rgb.tif-Hematoxylin", "rgb.tif-DAB", "rgb.tif-Residual", "a.tif-Channel 1",
        ]
        assert merged.pixels.dtype == np.float32

    def test_rgb_channels_without_deconvolution(self, project_dir):
        merged = merge_images(Project(project_dir), {"rgb.tif": None, "a.tif": None})
        assert merged.channel_names[:3] == ["rgb.tif-Red", "rgb.tif-Green", "rgb.tif-Blue"]
        assert merged.image_type == ImageType.FLUORESCENCE

    def test_single_rgb_stays_brightfield(self, project_dir):
        merged = merge_images(Project(project_dir), {"rgb.tif": None})
        assert merged.image_type == ImageType.BRIGHTFIELD_H_DAB
        assert merged.is_rgb

    def test_smaller_image_padded_into_reference(self, project_dir):
        tifffile.imwrite(str(project_dir / "small.tif"), np.full((20, 30), 7, dtype=np.uint16))
        merged = merge_images(Project(project_dir), {"a.tif": None, "small.tif": None})
        assert merged.pixels.shape == (50, 60, 2)
        assert merged.pixels[5, 5, 1] == 7
        assert merged.pixels[40, 50, 1] == 0


class TestMergeFromSpec:
    """Tests for MergeSpec parsing and merge_from_spec."""

    def test_writes_output(self, project_dir):
        spec = MergeSpec(
            project_dir=str(project_dir),
            images=[{"name": "a.tif"}, {"name": "b.tif", "transform": SHIFT_X}],
            output="merged.ome.tif",
        )

        merged = merge_from_spec(spec)

        output = project_dir / "merged.ome.tif"
        assert output.exists()
        assert merged.name == "merged.ome.tif"
        restored = read_image_data(output)
        assert restored.channel_names == ["a.tif-Channel 1", "b.tif-Channel 1"]
        assert restored.pixels[15, 30, 1] == 500

    def test_no_output(self, project_dir):
        spec = MergeSpec(project_dir=str(project_dir), images=[{"name": "a.tif"}])
        merged = merge_from_spec(spec)
        assert merged.n_channels == 1
        assert not (project_dir / "merged").exists()

    def test_duplicate_names_rejected(self, project_dir):
        with pytest.raises(ValidationError):
            MergeSpec(project_dir=str(project_dir), images=[{"name": "a.tif"}, {"name": "a.tif"}])

    def test_bad_transform_rejected(self, project_dir):
        with pytest.raises(ValidationError):
            MergeSpec(project_dir=str(project_dir), images=[{"name": "a.tif", "transform": [1, 0]}])

    def test_downsample_at_least_one(self, project_dir):
        with pytest.raises(ValidationError):
            MergeSpec(project_dir=str(project_dir), images=[{"name": "a.tif"}], downsample=0.5)

    def test_spec_file(self, project_dir):
        path = project_dir / "merge.json"
        path.write_text(json.dumps({"project_dir": str(project_dir), "images": [{"name": "a.tif"}]}))
        spec = validate_merge_spec_file(path)
        assert spec.images[0].transform is None

    def test_spec_file_invalid(self, project_dir):
        path = project_dir / "merge.json"
        path.write_text(json.dumps({"project_dir": str(project_dir), "images": []}))
        with pytest.raises(ValueError):
            validate_merge_spec_file(path)
