"""Per-region result tables and exclusion lists.

Exports refuse to run on an ontology that still contains regions classified
as ``Exclude`` (run :func:`atlasguard.hierarchy.fix_exclusions` first), and
always overwrite previous outputs.
"""

from __future__ import annotations

import logging
from collections import Counter
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from pathlib import Path

import pandas as pd

from atlasguard.hierarchy.objects import ObjectSet, PathObject, is_excluded
from atlasguard.hierarchy.ontology import AtlasOntology, AtlasStructureError

logger = logging.getLogger(__name__)

#: Metric length units accepted for the pixel calibration, with their export spelling.
METRIC_UNITS: dict[str, str] = {
    "nm": "nm",
    "µm": "um",
    "μm": "um",
    "um": "um",
    "micron": "um",
    "microns": "um",
    "mm": "mm",
    "cm": "cm",
    "m": "m",
}


class ExclusionMistakeError(AtlasStructureError):
    """Raised when regions inside the ontology are classified as ``Exclude``."""

    def __init__(self, regions: Sequence[PathObject] = ()):
        names = ", ".join(str(region.name) for region in regions)
        super().__init__(
            "Some regions in the atlas ontology were wrongly classified as 'Exclude'"
            + (f": [{names}]" if names else "")
            + ". Fix this by calling fix_exclusions() on the atlas first."
        )


class CalibrationError(ValueError):
    """Raised when pixel sizes are not expressed in a metric length unit."""


class OutputFileError(OSError):
    """Raised when a previous output cannot be replaced."""


class NoCellContainersFoundError(LookupError):
    """Raised when no detection container exists for a channel."""

    def __init__(self, channel: str):
        super().__init__(f"No detection containers found for channel '{channel}'")
        self.channel = channel


@dataclass(frozen=True)
class PixelCalibration:
    """Physical size of one image pixel."""

    pixel_width: float = 1.0
    pixel_height: float = 1.0
    unit: str = "px"

    @property
    def area_unit(self) -> str:
        """Unit label used in the area column, e.g. ``"um"``."""
        try:
            return METRIC_UNITS[self.unit.strip()]
        except KeyError:
            raise CalibrationError(
                f"Expected image pixel units to be a metric length (e.g. 'µm'), instead got '{self.unit}'. "
                "Set the pixel size of the image before exporting."
            ) from None

    @property
    def pixel_area(self) -> float:
        return float(self.pixel_width) * float(self.pixel_height)


@dataclass
class ChannelDetections:
    """Detections computed on one channel.

    Parameters
    ----------
    name
        Channel (or detection set) name.
    classes
        Detection classifications to count, one ``Num <class>`` column each.
    containers
        Annotations inside the ontology that host the detections.
    """

    name: str
    classes: list[str] = field(default_factory=list)
    containers: list[PathObject] = field(default_factory=list)

    @staticmethod
    def container_name(channel: str) -> str:
        return f"{channel} cells"

    @classmethod
    def from_objects(
        cls,
        objects: ObjectSet,
        channel: str,
        classes: Sequence[str] | None = None,
    ) -> ChannelDetections:
        """Collect the containers computed on ``channel``.

        Detections take the classification of the channel by default, so
        ``classes`` falls back to ``[channel]``.

        Raises
        ------
        NoCellContainersFoundError
            If no container of ``channel`` exists in ``objects``.
        """
        name = cls.container_name(channel)
        containers = [obj for obj in objects.annotations() if obj.name == name]
        if not containers:
            raise NoCellContainersFoundError(channel)
        return cls(name=channel, classes=list(classes) if classes else [channel], containers=containers)


def count_detections(region: PathObject) -> Counter:
    """Count the detections below ``region`` by classification.

    The ``None`` key holds the total number of detections.
    """
    counts: Counter = Counter()
    for obj in region.descendants():
        if not obj.is_detection:
            continue
        counts[None] += 1
        if obj.classification is not None:
            counts[str(obj.classification)] += 1
    return counts


def _detection_classes(detections: Sequence[ChannelDetections]) -> list[str]:
    classes: list[str] = []
    for detection in detections:
        for name in detection.classes:
            if name not in classes:
                classes.append(name)
    return classes


def region_table(
    atlas: AtlasOntology,
    detections: Sequence[ChannelDetections] = (),
    calibration: PixelCalibration | None = None,
    image_name: str = "",
    metadata: Mapping[str, str] | None = None,
) -> pd.DataFrame:
    """Build one row per atlas region with its area and detection counts.

    Parameters
    ----------
    atlas
        Repaired ontology to export.
    detections
        Detection sets whose containers are left out of the regions and whose
        classes get a ``Num <class>`` column.
    calibration
        Pixel calibration; must use a metric length unit.
    image_name
        Value of the ``Image Name`` column.
    metadata
        Per-image metadata, exported as ``Metadata_<key>`` columns.

    Returns
    -------
    pd.DataFrame
        Columns ``Image Name``, ``Metadata_<key>``..., ``Name``,
        ``Classification``, ``Area <unit>^2``, ``Num Detections`` and one
        ``Num <class>`` per detection class.

    Raises
    ------
    ExclusionMistakeError
        If a region is still classified as ``Exclude``.
    CalibrationError
        If the pixel calibration is not metric.
    """
    calibration = calibration or PixelCalibration()
    containers = [container for detection in detections for container in detection.containers]
    regions = atlas.flatten(exclude=containers)
    mistakes = [region for region in regions if is_excluded(region.classification)]
    if mistakes:
        raise ExclusionMistakeError(mistakes)

    area_column = f"Area {calibration.area_unit}^2"
    classes = _detection_classes(detections)
    metadata_columns = {f"Metadata_{key}": value for key, value in (metadata or {}).items()}
    columns = [
        "Image Name",
        *metadata_columns,
        "Name",
        "Classification",
        area_column,
        "Num Detections",
        *(f"Num {name}" for name in classes),
    ]

    rows: list[dict[str, object]] = []
    for region in regions:
        counts = count_detections(region)
        row: dict[str, object] = {
            "Image Name": image_name,
            **metadata_columns,
            "Name": region.name or "",
            "Classification": str(region.classification) if region.classification is not None else "",
            area_column: float(region.geometry.area) * calibration.pixel_area,
            "Num Detections": counts[None],
        }
        for name in classes:
            row[f"Num {name}"] = counts[name]
        rows.append(row)
    return pd.DataFrame(rows, columns=columns)


def excluded_list(atlas: AtlasOntology) -> list[str]:
    """Return the sorted classifications of the excluded regions.

    The excluded regions are also staged as the object set's selection.
    """
    regions = [region for region in atlas.excluded_brain_regions() if region.classification is not None]
    regions.sort(key=lambda region: str(region.classification))
    logger.info("Excluded regions: [%s]", ", ".join(str(region) for region in regions))
    atlas.objects.reset_selection()
    atlas.objects.select(regions)
    return [str(region.classification) for region in regions]


def _prepare_output(path: Path) -> Path:
    """Delete a previous output at ``path`` and create its parent directory."""
    path = Path(path)
    if path.exists():
        try:
            path.unlink()
        except OSError as exc:
            logger.error("Could not delete previous file %s, the file could be locked.", path.name)
            raise OutputFileError(f"Could not delete previous file {path}") from exc
    path.parent.mkdir(parents=True, exist_ok=True)
    return path


def write_region_table(table: pd.DataFrame, path: Path) -> Path:
    """Write a region table; comma-separated for ``.csv`` files, tab-separated otherwise."""
    path = _prepare_output(path)
    sep = "," if path.suffix.lower() == ".csv" else "\t"
    table.to_csv(path, sep=sep, index=False)
    logger.info("Results '%s' saved under '%s', contains %d rows", path.name, path.parent, len(table))
    return path


def write_excluded_list(lines: Sequence[str], path: Path) -> Path:
    """Write one excluded region classification per line."""
    path = _prepare_output(path)
    path.write_text("".join(f"{line}\n" for line in lines), encoding="utf-8")
    logger.info("Exclusions '%s' saved under '%s', contains %d rows", path.name, path.parent, len(lines))
    return path


def save_results(
    atlas: AtlasOntology,
    path: Path,
    detections: Sequence[ChannelDetections] = (),
    calibration: PixelCalibration | None = None,
    image_name: str = "",
    metadata: Mapping[str, str] | None = None,
) -> Path:
    """Compute the region table of ``atlas`` and write it to ``path``.

    Any previous output is deleted first, so a failed export leaves no file.
    """
    path = _prepare_output(path)
    table = region_table(atlas, detections, calibration=calibration, image_name=image_name, metadata=metadata)
    return write_region_table(table, path)


def save_excluded_regions(atlas: AtlasOntology, path: Path) -> Path:
    """Compute the exclusion list of ``atlas`` and write it to ``path``, replacing any previous one."""
    path = _prepare_output(path)
    return write_excluded_list(excluded_list(atlas), path)
