"""Shared CLI argument handling and TOML config loading.

Every ``atlasguard`` command reads the same configuration: a TOML file
listing the images to process, overridden by command-line arguments.
"""

from __future__ import annotations

import argparse
import logging
from pathlib import Path

try:  # Python 3.11+
    import tomllib
except ModuleNotFoundError:  # pragma: no cover - fallback for older environments
    import tomli as tomllib  # type: ignore[import]

from atlasguard.exclusion.auto import AUTO_THRESHOLD_RESOLUTION_LEVEL, ExclusionMode
from atlasguard.interfaces.models import AtlasGuardConfig
from atlasguard.interfaces.utils import _as_list, _parse_log_level, parse_images

LOGGER = logging.getLogger(__name__)


def add_cli_args(parser: argparse.ArgumentParser) -> None:
    """Add the arguments shared by every command.

    Parameters
    ----------
    parser
        The argument parser to add arguments to.
    """
    parser.add_argument(
        "--config",
        type=Path,
        help="Path to a TOML configuration file listing the images to process.",
    )
    parser.add_argument(
        "--output-dir",
        type=Path,
        help="Destination directory for reports and exports.",
    )
    parser.add_argument(
        "--objects",
        type=Path,
        nargs="+",
        help="GeoJSON object sets to process instead of the configured [[images]].",
    )
    parser.add_argument(
        "--atlas-name",
        help="Name of the atlas to use when several are imported. Default: the first one found.",
    )
    parser.add_argument(
        "--detection-channels",
        nargs="+",
        dest="detection_channels",
        help="Channels whose '<channel> cells' containers hold detections.",
    )
    parser.add_argument(
        "--force",
        action="store_true",
        help="Overwrite existing exports.",
    )
    parser.add_argument(
        "--log-level",
        default=None,
        help="Logging verbosity (e.g., INFO, DEBUG).",
    )


def add_auto_exclusion_args(parser: argparse.ArgumentParser) -> None:
    """Add the arguments of the auto-exclusion command."""
    parser.add_argument(
        "--channels",
        nargs="+",
        help="Channels to evaluate, in order of preference. Selects among the channel names of each image.",
    )
    parser.add_argument(
        "--mode",
        choices=[mode.value for mode in ExclusionMode],
        default=None,
        help=(
            "'single': score regions with the first channel only (e.g. a nuclear stain). "
            "'max': a region is kept when any channel shows signal."
        ),
    )
    parser.add_argument(
        "--threshold-multiplier",
        type=float,
        dest="threshold_multiplier",
        help=(
            "Regions with mean / Otsu threshold below this value are excluded. "
            "Lower values are stricter and exclude fewer regions. Default: 1.0."
        ),
    )
    parser.add_argument(
        "--resolution-level",
        type=int,
        dest="resolution_level",
        help=f"Pyramid level sampled (downsample 2**level). Default: {AUTO_THRESHOLD_RESOLUTION_LEVEL}.",
    )


def _parse_thresholds(value: object) -> dict[str, float]:
    if not value:
        return {}
    if not isinstance(value, dict):
        raise ValueError(f"'thresholds' must be a table mapping channels to values, got {value!r}")
    return {str(channel): float(threshold) for channel, threshold in value.items()}


def load_config(args: argparse.Namespace) -> AtlasGuardConfig:
    """Parse a TOML configuration file and override with CLI arguments.

    The configuration expects the following keys:
    - ``output_dir``: Destination directory for reports and exports.
    - ``images``: List of image tables (``name``, ``objects``, ``image``,
      ``channels``, ``pixel_width``, ``pixel_height``, ``unit``, ``metadata``).
    - ``atlas_name``: Optional atlas to select when several are imported.
    - ``channels``: Channels to evaluate, in order of preference. Also names
      the channels of images without their own ``channels`` list, unless
      ``image_channels`` is given.
    - ``image_channels``: Default channel names of the images, in file order.
    - ``mode``: ``single`` or ``max``.
    - ``threshold_multiplier``: Exclusion cut-off on normalised intensities.
    - ``resolution_level``: Pyramid level sampled.
    - ``thresholds``: Optional table of per-channel thresholds replacing Otsu's.
    - ``detection_channels``: Channels whose detections are counted on export.
    - ``project_name`` / ``project_file``: Stamped on the exclusion reports.
    - ``force``: Whether to overwrite existing exports.
    - ``log_level``: Logging verbosity (e.g., ``INFO``, ``DEBUG``).

    Relative paths in the file are resolved against the file's directory.
    """
    data: dict[str, object] = {}
    base_dir = Path.cwd()
    config_path = getattr(args, "config", None)
    if config_path:
        with config_path.open("rb") as f:
            data = tomllib.load(f)
        base_dir = config_path.expanduser().resolve().parent

    if getattr(args, "output_dir", None):
        output_dir = args.output_dir.expanduser().resolve()
    else:
        output_dir = (base_dir / Path(str(data.get("output_dir", "atlasguard"))).expanduser()).resolve()
    channels = getattr(args, "channels", None) or _as_list(data.get("channels"))
    # Channel names of the images; --channels only selects among them.
    image_channels = _as_list(data.get("image_channels")) or _as_list(data.get("channels"))
    project_name = data.get("project_name")
    project_file_str = data.get("project_file")
    project_file = (base_dir / Path(str(project_file_str))).resolve() if project_file_str else None

    objects = getattr(args, "objects", None)
    if objects:
        image_configs: list[dict] = [{"objects": str(path)} for path in objects]
        image_base = Path.cwd()
    else:
        image_configs = data.get("images", [])  # type: ignore[assignment]
        image_base = base_dir
    images = parse_images(
        image_configs,
        base_dir=image_base,
        project_name=str(project_name) if project_name else None,
        project_file=project_file,
        default_channels=image_channels,
    )

    mode = ExclusionMode.parse(getattr(args, "mode", None) or data.get("mode", ExclusionMode.SINGLE_REFERENCE))
    threshold_multiplier = getattr(args, "threshold_multiplier", None)
    if threshold_multiplier is None:
        threshold_multiplier = float(data.get("threshold_multiplier", 1.0))
    resolution_level = getattr(args, "resolution_level", None)
    if resolution_level is None:
        resolution_level = int(data.get("resolution_level", AUTO_THRESHOLD_RESOLUTION_LEVEL))
    detection_channels = getattr(args, "detection_channels", None) or _as_list(data.get("detection_channels")) or []
    force = getattr(args, "force", False) or bool(data.get("force", False))
    log_level = _parse_log_level(getattr(args, "log_level", None) or data.get("log_level"))
    atlas_name = getattr(args, "atlas_name", None) or data.get("atlas_name")

    return AtlasGuardConfig(
        output_dir=output_dir,
        images=images,
        atlas_name=str(atlas_name) if atlas_name else None,
        channels=channels,
        mode=mode,
        threshold_multiplier=float(threshold_multiplier),
        resolution_level=int(resolution_level),
        thresholds=_parse_thresholds(data.get("thresholds")),
        detection_channels=list(detection_channels),
        project_name=str(project_name) if project_name else None,
        project_file=project_file,
        force=force,
        log_level=log_level,
    )
