"""Automatic exclusion of low-signal regions, exclusion reports and restoration."""

from atlasguard.exclusion.auto import (
    AUTO_THRESHOLD_RESOLUTION_LEVEL,
    ExclusionMode,
    auto_exclude_empty_regions,
    percentile_rank,
    region_score,
)
from atlasguard.exclusion.otsu import ThresholdError, compute_thresholds, otsu_threshold
from atlasguard.exclusion.reports import (
    NORMALIZED_INTENSITY,
    PERCENTILE_RANK,
    ExclusionReport,
    list_exclusions,
    restore_exclusion,
)

__all__ = [
    "AUTO_THRESHOLD_RESOLUTION_LEVEL",
    "NORMALIZED_INTENSITY",
    "PERCENTILE_RANK",
    "ExclusionMode",
    "ExclusionReport",
    "ThresholdError",
    "auto_exclude_empty_regions",
    "compute_thresholds",
    "list_exclusions",
    "otsu_threshold",
    "percentile_rank",
    "region_score",
    "restore_exclusion",
]
