"""Exclusion reports and restoration of excluded regions."""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, replace
from pathlib import Path

from atlasguard.hierarchy.objects import ObjectSet, is_excluded

logger = logging.getLogger(__name__)

NORMALIZED_INTENSITY = "Auto-Exclude: Normalized Intensity"
PERCENTILE_RANK = "Auto-Exclude: Percentile Rank"


@dataclass(frozen=True)
class ExclusionReport:
    """One excluded atlas region of one image."""

    image_name: str
    marker_id: str
    region_name: str | None
    percentile_rank: float = math.nan
    project_file: Path | None = None
    project_name: str | None = None

    @property
    def image_label(self) -> str:
        """Return a label suitable for tables listing several projects."""
        if self.project_name and self.project_name.strip():
            return f"{self.project_name}: {self.image_name}"
        return self.image_name

    def with_context(
        self,
        image_name: str | None = None,
        project_name: str | None = None,
        project_file: Path | None = None,
    ) -> ExclusionReport:
        """Return a copy stamped with the project and image it belongs to."""
        return replace(
            self,
            image_name=image_name or self.image_name,
            project_name=project_name if project_name is not None else self.project_name,
            project_file=project_file if project_file is not None else self.project_file,
        )


def list_exclusions(objects: ObjectSet, image_name: str) -> list[ExclusionReport]:
    """Report every annotation currently classified as ``Exclude``.

    Markers created by the auto-exclusion carry their percentile rank; manual
    ones report ``NaN``.
    """
    return [
        ExclusionReport(
            image_name=image_name,
            marker_id=obj.id,
            region_name=obj.name,
            percentile_rank=obj.measurements.get(PERCENTILE_RANK, math.nan),
        )
        for obj in objects.annotations()
        if is_excluded(obj.classification)
    ]


def restore_exclusion(objects: ObjectSet, marker_id: str) -> bool:
    """Undo an exclusion by removing its marker.

    Parameters
    ----------
    objects
        Object set holding the marker.
    marker_id
        Id of the ``Exclude`` marker, as found in an :class:`ExclusionReport`.

    Returns
    -------
    bool
        True if the marker was removed. False if it does not exist anymore or
        is no longer classified as ``Exclude``.
    """
    marker = objects.get(marker_id)
    if marker is None:
        logger.warning("Exclusion %s not found, nothing to restore", marker_id)
        return False
    if not is_excluded(marker.classification):
        logger.warning("Annotation '%s' is no longer an exclusion, refusing to remove it", marker)
        return False
    objects.remove(marker, keep_children=True)
    logger.info("Restored region '%s' by removing exclusion %s", marker.name, marker_id)
    return True
