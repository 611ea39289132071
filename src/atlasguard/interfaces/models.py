"""Structured representations of workflow inputs and configuration."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path

from atlasguard.exclusion.auto import AUTO_THRESHOLD_RESOLUTION_LEVEL, ExclusionMode
from atlasguard.export.results import PixelCalibration


@dataclass(frozen=True)
class ImageContext:
    """Project and image an object set belongs to."""

    image_name: str
    project_name: str | None = None
    project_file: Path | None = None

    @property
    def label(self) -> str:
        """Return a compact label suitable for log messages."""
        return f"{self.project_name}: {self.image_name}" if self.project_name else self.image_name


@dataclass(frozen=True)
class ImageInput:
    """Files describing one image to process."""

    context: ImageContext
    objects_path: Path
    image_path: Path | None = None
    channels: tuple[str, ...] = ()
    calibration: PixelCalibration = field(default_factory=PixelCalibration)
    metadata: dict[str, str] = field(default_factory=dict)


@dataclass
class AtlasGuardConfig:
    """Configuration parsed from TOML input and command-line overrides."""

    output_dir: Path
    images: list[ImageInput] = field(default_factory=list)
    atlas_name: str | None = None
    channels: list[str] | None = None
    mode: ExclusionMode = ExclusionMode.SINGLE_REFERENCE
    threshold_multiplier: float = 1.0
    resolution_level: int = AUTO_THRESHOLD_RESOLUTION_LEVEL
    thresholds: dict[str, float] = field(default_factory=dict)
    detection_channels: list[str] = field(default_factory=list)
    project_name: str | None = None
    project_file: Path | None = None
    force: bool = False
    log_level: int = logging.INFO
