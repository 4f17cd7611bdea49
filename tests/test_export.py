"""
Tests for measurement tables and OME-TIFF export.

Tests wsi_nuclei/io/export.py and reading exports back with
wsi_nuclei/io/image_data.py.
"""

import numpy as np
import pandas as pd
import pytest
import tifffile
from shapely.geometry import box

import sys
from pathlib import Path
sys.path.insert(0, str(Path(__file__).parent.parent))

from wsi_nuclei.io.export import (
    export_paths,
    measurement_table,
    pyramid_levels,
    write_image,
    write_measurements,
)
from wsi_nuclei.io.image_data import ImageData, ImageReadError, ImageType, read_image_data
from wsi_nuclei.objects.path_objects import DetectedObject


class TestMeasurementTable:
    """Tests for measurement_table and write_measurements."""

    def test_columns(self, hierarchy_with_detections, parent_annotation):
        hierarchy, det_a, _ = hierarchy_with_detections
        df = measurement_table(hierarchy.get_detection_objects(), image_name="slide.tif")

        assert list(df.columns[:7]) == [
            "Image", "Object ID", "Object type", "Classification", "Parent",
            "Centroid X px", "Centroid Y px",
        ]
        assert len(df) == 2
        assert df.loc[0, "Object ID"] == det_a.id
        assert df.loc[0, "Parent"] == parent_annotation.id
        assert df.loc[0, "Nucleus: Area µm^2"] == 15

    def test_missing_values_are_nan(self):
        objects = [
            DetectedObject(roi=box(0, 0, 2, 2), measurements={"A": 1.0}),
            DetectedObject(roi=box(0, 0, 2, 2), cell_roi=box(0, 0, 3, 3), measurements={"B": 2.0}),
        ]
        df = measurement_table(objects)
        assert list(df.columns[7:]) == ["A", "B"]
        assert np.isnan(df.loc[0, "B"])
        assert df.loc[1, "Object type"] == "cell"

    def test_empty(self):
        df = measurement_table([])
        assert len(df) == 0
        assert "Object ID" in df.columns

    def test_write_csv_and_tsv(self, temp_output_dir, hierarchy_with_detections):
        hierarchy, _, _ = hierarchy_with_detections
        detections = hierarchy.get_detection_objects()

        csv_path = write_measurements(temp_output_dir / "m.csv", detections)
        tsv_path = write_measurements(temp_output_dir / "m.tsv", detections)

        assert len(pd.read_csv(csv_path)) == 2
        assert "\t" in tsv_path.read_text(encoding="utf-8").splitlines()[0]

    def test_export_paths(self, temp_output_dir):
        paths = export_paths(temp_output_dir, "slide")
        assert [p.name for p in paths] == [
            "slide_detections.geojson", "slide_measurements.csv", "slide_config.json",
        ]


class TestPyramidLevels:

    @pytest.mark.parametrize("size, expected", [
        ((200, 200), 0),
        ((1023, 5000), 0),
        ((1024, 1024), 1),
        ((2048, 3000), 2),
    ])
    def test_levels(self, size, expected):
        assert pyramid_levels(*size) == expected


class TestWriteImage:
    """Writing OME-TIFF and reading it back."""

    def test_fluorescence_round_trip(self, temp_output_dir, fluorescence_image):
        path = write_image(fluorescence_image, temp_output_dir / "panel.ome.tif")
        restored = read_image_data(path)

        assert restored.pixels.shape == (200, 200, 2)
        np.testing.assert_array_equal(restored.pixels, fluorescence_image.pixels)
        assert restored.channel_names == ["DAPI", "CD3"]
        assert restored.pixel_size_um == pytest.approx(0.5)
        assert restored.image_type == ImageType.FLUORESCENCE

    def test_rgb_round_trip(self, temp_output_dir, brightfield_image):
        path = write_image(brightfield_image, temp_output_dir / "slide.ome.tif")
        restored = read_image_data(path)

        assert restored.pixels.shape == (200, 200, 3)
        assert restored.is_rgb
        assert restored.image_type == ImageType.BRIGHTFIELD_H_DAB
        assert restored.stains is not None

    def test_downsampled(self, temp_output_dir, fluorescence_image):
        path = write_image(fluorescence_image, temp_output_dir / "small.ome.tif", downsample=2)
        restored = read_image_data(path)
        assert restored.width == 100
        assert restored.pixel_size_um == pytest.approx(1.0)

    def test_pyramid_written(self, temp_output_dir):
        image = ImageData(pixels=np.zeros((1024, 1100), dtype=np.uint16), name="big")
        path = write_image(image, temp_output_dir / "big.ome.tif")
        with tifffile.TiffFile(str(path)) as tif:
            levels = tif.series[0].levels
            assert len(levels) == 2
            assert levels[1].shape[-2:] == (512, 550)


class TestReadImageData:

    def test_missing_file(self, temp_output_dir):
        with pytest.raises(ImageReadError):
            read_image_data(temp_output_dir / "missing.tif")

    def test_unsupported_suffix(self, temp_output_dir):
        path = temp_output_dir / "image.xyz"
        path.write_bytes(b"not an image")
        with pytest.raises(ImageReadError):
            read_image_data(path)

    def test_overrides(self, temp_output_dir):
        path = temp_output_dir / "plain.tif"
        tifffile.imwrite(str(path), np.zeros((10, 12), dtype=np.uint16))
        image = read_image_data(path, pixel_size_um=0.25, image_type="brightfield_h_e")
        assert image.width == 12
        assert image.pixel_size_um == 0.25
        assert image.image_type == ImageType.BRIGHTFIELD_H_E
