"""Shared utility functions for interfaces.

This module provides configuration parsing and output helpers shared by the
runner and the command line.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Iterable, Sequence
from pathlib import Path

import pandas as pd

from atlasguard.exclusion.reports import ExclusionReport
from atlasguard.export.results import PixelCalibration
from atlasguard.interfaces.models import ImageContext, ImageInput

logger = logging.getLogger(__name__)

_FORBIDDEN_FILENAME_CHARS = re.compile(r'[<>:"/\\|?*]')

REPORT_COLUMNS = [
    "project_file",
    "project_name",
    "image_name",
    "marker_id",
    "region_name",
    "percentile_rank",
]


def _parse_log_level(value: str | int | None) -> int:
    """Return a logging level from common string/int inputs.

    Parameters
    ----------
    value
        The value to parse.

    Returns
    -------
    int
        The logging level.

    Examples
    --------
    >>> _parse_log_level("INFO")
    20
    >>> _parse_log_level("DEBUG")
    10
    >>> _parse_log_level(logging.WARNING)
    30
    >>> _parse_log_level(None)
    20
    """
    if value is None:
        return logging.INFO
    if isinstance(value, int):
        return value
    return getattr(logging, str(value).upper(), logging.INFO)


def _as_list(value: Iterable[str] | str | None) -> list[str] | None:
    """Normalize configuration values into a list of strings.

    Parameters
    ----------
    value
        The value to normalize.

    Returns
    -------
    list[str] | None
        The normalized list of strings, or None if the input is None.
    """
    if value is None:
        return None
    if isinstance(value, str):
        return [value]
    return list(value)


def sanitize_file_name(raw: str | None) -> str:
    """Strip characters that are not allowed in file names.

    Examples
    --------
    >>> sanitize_file_name("slice: 1/2")
    'slice 12'
    >>> sanitize_file_name("???")
    'image'
    """
    if raw is None or not raw.strip():
        return "image"
    sanitized = _FORBIDDEN_FILENAME_CHARS.sub("", raw)
    return sanitized if sanitized.strip() else "image"


def parse_images(
    image_configs: list[dict],
    base_dir: Path | None = None,
    project_name: str | None = None,
    project_file: Path | None = None,
    default_channels: Sequence[str] | None = None,
) -> list[ImageInput]:
    """Parse image definitions from configuration.

    Parameters
    ----------
    image_configs
        List of image configuration dictionaries. Each dict should have
        'objects' and optionally 'name', 'image', 'channels', 'pixel_width',
        'pixel_height', 'unit' and a 'metadata' table.
    base_dir
        Directory relative paths are resolved against. Defaults to the
        current working directory.
    project_name
        Project the images belong to, stamped on the reports.
    project_file
        Project file the images belong to.
    default_channels
        Channel names used when an image does not list its own.

    Returns
    -------
    list[ImageInput]
        List of parsed image inputs.
    """
    base_dir = base_dir or Path.cwd()
    images = []
    for cfg in image_configs:
        objects = cfg.get("objects")
        if not objects:
            logger.warning("Skipping image with missing objects file: %s", cfg)
            continue
        objects_path = (base_dir / Path(objects).expanduser()).resolve()
        image = cfg.get("image")
        image_path = (base_dir / Path(image).expanduser()).resolve() if image else None
        name = cfg.get("name") or objects_path.name.split(".")[0]
        channels = _as_list(cfg.get("channels")) or list(default_channels or [])
        calibration = PixelCalibration(
            pixel_width=float(cfg.get("pixel_width", 1.0)),
            pixel_height=float(cfg.get("pixel_height", cfg.get("pixel_width", 1.0))),
            unit=str(cfg.get("unit", "px")),
        )
        metadata = {str(key): str(value) for key, value in (cfg.get("metadata") or {}).items()}
        images.append(
            ImageInput(
                context=ImageContext(image_name=name, project_name=project_name, project_file=project_file),
                objects_path=objects_path,
                image_path=image_path,
                channels=tuple(channels),
                calibration=calibration,
                metadata=metadata,
            )
        )
    return images


def reports_table(reports: Sequence[ExclusionReport]) -> pd.DataFrame:
    """Return exclusion reports as a table."""
    rows = [
        {
            "project_file": str(report.project_file) if report.project_file else "",
            "project_name": report.project_name or "",
            "image_name": report.image_name,
            "marker_id": report.marker_id,
            "region_name": report.region_name or "",
            "percentile_rank": report.percentile_rank,
        }
        for report in reports
    ]
    return pd.DataFrame(rows, columns=REPORT_COLUMNS)


def write_exclusion_reports(reports: Sequence[ExclusionReport], path: Path) -> Path:
    """Write exclusion reports to a TSV file, replacing any previous one."""
    path.parent.mkdir(parents=True, exist_ok=True)
    reports_table(reports).to_csv(path, sep="\t", index=False)
    logger.debug("Wrote %d exclusion reports to %s", len(reports), path)
    return path
