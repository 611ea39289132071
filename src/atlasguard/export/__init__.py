"""Export of per-region results and exclusion lists."""

from atlasguard.export.results import (
    CalibrationError,
    ChannelDetections,
    ExclusionMistakeError,
    NoCellContainersFoundError,
    OutputFileError,
    PixelCalibration,
    count_detections,
    excluded_list,
    region_table,
    save_excluded_regions,
    save_results,
    write_excluded_list,
    write_region_table,
)

__all__ = [
    "CalibrationError",
    "ChannelDetections",
    "ExclusionMistakeError",
    "NoCellContainersFoundError",
    "OutputFileError",
    "PixelCalibration",
    "count_detections",
    "excluded_list",
    "region_table",
    "save_excluded_regions",
    "save_results",
    "write_excluded_list",
    "write_region_table",
]
