#!/usr/bin/env python3
"""
Command line interface for nucleus detection and channel merging.

Usage:
    wsi-nuclei detect slide.ome.tif --preset hdab_hematoxylin --full-image
    wsi-nuclei detect slide.tif --annotations rois.geojson --roi-name Tumor --threshold 0.6
    wsi-nuclei filter out/slide_detections.geojson --min "Nucleus: Area µm^2=20"
    wsi-nuclei merge merge.json --output merged.ome.tif
    wsi-nuclei presets

Subcommands:
    detect      Detect nuclei in the selected regions of an image
    filter      Re-apply measurement thresholds to exported detections
    merge       Merge aligned images along the channel axis
    presets     List detection presets
"""

from __future__ import annotations

import argparse
import sys
from pathlib import Path
from typing import List, Optional, Tuple

from wsi_nuclei.utils.config import (
    ConfigValidationError,
    DETECTION_PRESETS,
    MISSING_MEASUREMENT_POLICIES,
    get_config_summary,
    get_output_dir,
    load_config,
    save_config,
    validate_config,
)
from wsi_nuclei.utils.logging import get_logger, log_parameters, setup_logging


def _image_stem(path: Path) -> str:
    name = path.name
    for suffix in (".ome.tiff", ".ome.tif"):
        if name.lower().endswith(suffix):
            return name[: -len(suffix)]
    return path.stem


def _parse_min_rule(text: str) -> Tuple[str, float]:
    """Parse 'measurement=value' (the last '=' separates the value)."""
    if "=" not in text:
        raise argparse.ArgumentTypeError(f"Expected 'measurement=value', got '{text}'")
    name, value = text.rsplit("=", 1)
    try:
        return name.strip(), float(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"Invalid threshold '{value}' in '{text}'")


# =============================================================================
# PARSER
# =============================================================================

def create_parser() -> argparse.ArgumentParser:
    """Create the main argument parser with subcommands."""

    parser = argparse.ArgumentParser(
        prog="wsi-nuclei",
        description="StarDist nucleus detection, measurement filtering and channel merging",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Hematoxylin nuclei in a whole H-DAB slide
  wsi-nuclei detect slide.ome.tif --preset hdab_hematoxylin --full-image

  # Fluorescence nuclei inside annotated regions
  wsi-nuclei detect panel.ome.tif --preset multimodal --annotations rois.geojson

  # Drop small nuclei from an existing export
  wsi-nuclei filter out/slide_detections.geojson --min "Nucleus: Area µm^2=20"

  # Merge two aligned panels
  wsi-nuclei merge merge.json --output merged.ome.tif
""",
    )

    parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Enable verbose (DEBUG) logging",
    )
    parser.add_argument(
        "-q", "--quiet",
        action="store_true",
        help="Suppress most output",
    )
    parser.add_argument(
        "--log-file",
        type=Path,
        help="Write logs to file",
    )

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    # === DETECT command ===
    detect_parser = subparsers.add_parser("detect", help="Detect nuclei with StarDist")
    detect_parser.add_argument("image", type=Path, help="Image file (TIFF, OME-TIFF, CZI, PNG)")
    detect_parser.add_argument("--config", type=Path, help="JSON config file")
    detect_parser.add_argument("--preset", choices=sorted(DETECTION_PRESETS), help="Detection preset")
    detect_parser.add_argument("--annotations", type=Path, help="GeoJSON file with parent regions")
    detect_parser.add_argument("--roi-name", help="Only use annotations with this name or class")
    detect_parser.add_argument("--full-image", action="store_true",
                               help="Detect in a region covering the whole image")
    detect_parser.add_argument("--model", dest="model_path", help="StarDist model directory or name")
    detect_parser.add_argument("--threshold", type=float, help="Probability threshold")
    detect_parser.add_argument("--pixel-size-um", type=float,
                               help="Detection resolution in µm/px (0 = native)")
    detect_parser.add_argument("--image-pixel-size-um", type=float,
                               help="Override the image calibration in µm/px")
    detect_parser.add_argument("--image-type",
                               choices=["brightfield_h_dab", "brightfield_h_e", "brightfield_other",
                                        "fluorescence", "other"],
                               help="Override the guessed image type")
    detect_parser.add_argument("--output-dir", "-o", type=Path, help="Output directory")

    # === FILTER command ===
    filter_parser = subparsers.add_parser("filter", help="Filter exported detections by measurements")
    filter_parser.add_argument("detections", type=Path, help="GeoJSON detections file")
    filter_parser.add_argument("--min", dest="rules", action="append", type=_parse_min_rule, default=[],
                               metavar="MEASUREMENT=VALUE",
                               help="Remove objects with MEASUREMENT <= VALUE (repeatable)")
    filter_parser.add_argument("--config", type=Path, help="JSON config file whose filters are applied too")
    filter_parser.add_argument("--missing", choices=MISSING_MEASUREMENT_POLICIES,
                               help="Policy for objects without a measurement")
    filter_parser.add_argument("--output", "-o", type=Path,
                               help="Output GeoJSON (default: <input>_filtered.geojson)")

    # === MERGE command ===
    merge_parser = subparsers.add_parser("merge", help="Merge aligned images along the channel axis")
    merge_parser.add_argument("spec", type=Path, help="Merge specification JSON")
    merge_parser.add_argument("--output", "-o", type=Path, help="Output OME-TIFF (overrides the spec)")
    merge_parser.add_argument("--downsample", type=float, help="Output downsample (overrides the spec)")

    # === PRESETS command ===
    subparsers.add_parser("presets", help="List detection presets")

    return parser


# =============================================================================
# COMMANDS
# =============================================================================

def cmd_detect(args: argparse.Namespace) -> int:
    """Execute the detect command."""
    from wsi_nuclei.detection.stardist import NoParentObjectsError
    from wsi_nuclei.io.export import export_paths, write_measurements
    from wsi_nuclei.io.geojson import load_annotations, write_hierarchy
    from wsi_nuclei.io.image_data import ImageReadError, read_image_data
    from wsi_nuclei.pipeline.nucleus_detection import run_nucleus_detection

    logger = get_logger(__name__)

    try:
        config = load_config(
            args.config,
            preset=args.preset,
            model_path=args.model_path,
            threshold=args.threshold,
            pixel_size_um=args.pixel_size_um,
        )
        validate_config(config, raise_on_error=True)
    except (FileNotFoundError, KeyError, ConfigValidationError) as e:
        logger.error(f"Invalid configuration: {e}")
        return 1

    try:
        image_data = read_image_data(
            args.image,
            pixel_size_um=args.image_pixel_size_um,
            image_type=args.image_type,
        )
    except ImageReadError as e:
        logger.error(str(e))
        return 1

    hierarchy = image_data.hierarchy
    if args.annotations:
        load_annotations(hierarchy, args.annotations, name=args.roi_name)
    elif args.full_image:
        hierarchy.create_full_image_annotation(image_data.width, image_data.height, name="Image")

    log_parameters(logger, get_config_summary(config), title="Detection parameters")

    try:
        summary = run_nucleus_detection(image_data, config)
    except NoParentObjectsError:
        # Already reported to the user
        return 1
    except ValueError as e:
        logger.error(f"Detection failed: {e}")
        return 1

    output_dir = args.output_dir or get_output_dir()
    geojson_path, table_path, config_path = export_paths(output_dir, _image_stem(args.image))
    write_hierarchy(geojson_path, hierarchy)
    write_measurements(table_path, hierarchy.get_detection_objects(), image_name=image_data.name)
    save_config(config_path, {**config, "summary": summary.to_dict()})

    logger.info(f"Results written to {output_dir}")
    return 0


def cmd_filter(args: argparse.Namespace) -> int:
    """Execute the filter command."""
    from wsi_nuclei.detection.filter import (
        DetectionFilterConfig,
        MeasurementThreshold,
        MissingMeasurementError,
        filter_detections,
    )
    from wsi_nuclei.io.geojson import read_hierarchy, write_hierarchy

    logger = get_logger(__name__)

    try:
        config = load_config(args.config) if args.config else {"filters": []}
    except (FileNotFoundError, ConfigValidationError) as e:
        logger.error(f"Invalid configuration: {e}")
        return 1

    base = DetectionFilterConfig.from_config(config)
    thresholds = list(base.thresholds) + [MeasurementThreshold(n, v) for n, v in args.rules]
    if not thresholds:
        logger.error("No filter rules given (use --min or --config)")
        return 1
    filter_config = DetectionFilterConfig(thresholds, missing=args.missing or base.missing)

    try:
        hierarchy = read_hierarchy(args.detections)
    except (FileNotFoundError, ValueError) as e:
        logger.error(f"Could not read {args.detections}: {e}")
        return 1

    try:
        filter_detections(hierarchy, filter_config)
    except MissingMeasurementError as e:
        logger.error(str(e))
        return 1

    output = args.output or args.detections.with_name(f"{_image_stem(args.detections)}_filtered.geojson")
    write_hierarchy(output, hierarchy)
    return 0


def cmd_merge(args: argparse.Namespace) -> int:
    """Execute the merge command."""
    from wsi_nuclei.registration.merge import merge_from_spec
    from wsi_nuclei.utils.schemas import validate_merge_spec_file

    logger = get_logger(__name__)

    try:
        spec = validate_merge_spec_file(args.spec)
    except (FileNotFoundError, ValueError) as e:
        logger.error(str(e))
        return 1

    if args.output is None and spec.output is None:
        logger.error("No output path: set 'output' in the merge file or pass --output")
        return 1

    try:
        merge_from_spec(spec, output=args.output, downsample=args.downsample)
    except (OSError, KeyError, ValueError) as e:
        logger.error(str(e))
        return 1
    return 0


def cmd_presets(args: argparse.Namespace) -> int:
    """Execute the presets command."""
    for name, preset in DETECTION_PRESETS.items():
        print(f"{name}:")
        for key, value in preset.items():
            if key == "filters":
                for rule in value:
                    print(f"  filter: {rule['measurement']} <= {rule['min']}")
            else:
                print(f"  {key}: {value}")
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point for CLI."""
    parser = create_parser()
    args = parser.parse_args(argv)

    # Setup logging
    level = "DEBUG" if args.verbose else ("WARNING" if args.quiet else "INFO")
    setup_logging(level=level, log_file=args.log_file)

    # Dispatch to command handler
    if args.command == "detect":
        return cmd_detect(args)
    elif args.command == "filter":
        return cmd_filter(args)
    elif args.command == "merge":
        return cmd_merge(args)
    elif args.command == "presets":
        return cmd_presets(args)
    else:
        parser.print_help()
        return 0


if __name__ == "__main__":
    sys.exit(main())
