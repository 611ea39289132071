"""Run exclusion workflows over a batch of images.

Images are processed strictly one after the other: each image's object set is
loaded, its atlas repaired, processed and saved back before the next image is
opened, and the channel sampler of an image is released as soon as the image
is done.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Sequence
from pathlib import Path
from typing import TypeVar

from atlasguard.exclusion.auto import auto_exclude_empty_regions
from atlasguard.exclusion.reports import ExclusionReport, list_exclusions, restore_exclusion
from atlasguard.export.results import (
    ChannelDetections,
    NoCellContainersFoundError,
    save_excluded_regions,
    save_results,
)
from atlasguard.hierarchy.objects import ObjectSet, PathObject
from atlasguard.hierarchy.ontology import AtlasOntology, is_imported
from atlasguard.hierarchy.repair import RepairSummary
from atlasguard.interfaces.loader import load_object_set, save_object_set
from atlasguard.interfaces.models import AtlasGuardConfig, ImageInput
from atlasguard.interfaces.utils import sanitize_file_name, write_exclusion_reports
from atlasguard.sampling.array import ArrayChannelSampler

LOGGER = logging.getLogger(__name__)

T = TypeVar("T")

REPORTS_FILE_NAME = "exclusion_reports.tsv"
RESULTS_DIR = "results"
EXCLUSIONS_DIR = "regions_to_exclude"


class MissingImageError(ValueError):
    """Raised when an image has no channel file or channel names to sample."""


def results_path(image: ImageInput, destination: Path) -> Path:
    """Return ``<destination>/results/<image>_regions.tsv``."""
    return destination / RESULTS_DIR / f"{sanitize_file_name(image.context.image_name)}_regions.tsv"


def exclusions_path(image: ImageInput, destination: Path) -> Path:
    """Return ``<destination>/regions_to_exclude/<image>_regions_to_exclude.txt``."""
    name = sanitize_file_name(image.context.image_name)
    return destination / EXCLUSIONS_DIR / f"{name}_regions_to_exclude.txt"


def _detections(objects: ObjectSet, channels: Sequence[str]) -> list[ChannelDetections]:
    """Collect the detection containers of every channel that has one."""
    detections = []
    for channel in channels:
        try:
            detections.append(ChannelDetections.from_objects(objects, channel))
        except NoCellContainersFoundError as exc:
            LOGGER.warning("%s, exporting without its counts", exc)
    return detections


def _containers(detections: Sequence[ChannelDetections]) -> list[PathObject]:
    return [container for detection in detections for container in detection.containers]


def _open_atlas(objects: ObjectSet, image: ImageInput, config: AtlasGuardConfig) -> AtlasOntology | None:
    if not is_imported(objects, config.atlas_name):
        LOGGER.warning("No imported atlas found for %s, skipping", image.context.label)
        return None
    return AtlasOntology(objects, config.atlas_name)


def open_sampler(image: ImageInput) -> ArrayChannelSampler:
    """Open the channel sampler of ``image``.

    Raises
    ------
    MissingImageError
        If the image has no channel file or no channel names.
    """
    if image.image_path is None:
        raise MissingImageError(f"No channel image configured for {image.context.label}")
    if not image.channels:
        raise MissingImageError(f"No channel names configured for {image.context.label}")
    return ArrayChannelSampler.from_nifti(image.image_path, image.channels)


def process_image_repair(image: ImageInput, config: AtlasGuardConfig) -> RepairSummary | None:
    """Repair the exclusions of one image and save its object set when it changed."""
    objects = load_object_set(image.objects_path)
    atlas = _open_atlas(objects, image, config)
    if atlas is None:
        return None
    containers = _containers(_detections(objects, config.detection_channels))
    summary = atlas.fix_exclusions(containers=containers)
    if summary.changed:
        save_object_set(objects, image.objects_path)
    return summary


def process_image_auto_exclusion(image: ImageInput, config: AtlasGuardConfig) -> list[ExclusionReport]:
    """Repair, auto-exclude and save the object set of one image.

    Parameters
    ----------
    image
        Image to process.
    config
        Workflow configuration. ``config.channels`` (when set) restricts the
        channels evaluated, in order of preference.

    Returns
    -------
    list[ExclusionReport]
        One report per newly excluded region.
    """
    objects = load_object_set(image.objects_path)
    atlas = _open_atlas(objects, image, config)
    if atlas is None:
        return []
    containers = _containers(_detections(objects, config.detection_channels))
    atlas.fix_exclusions(containers=containers)

    channels = list(config.channels or image.channels)
    with open_sampler(image) as sampler:
        reports = auto_exclude_empty_regions(
            atlas,
            sampler,
            channels,
            mode=config.mode,
            threshold_multiplier=config.threshold_multiplier,
            resolution_level=config.resolution_level,
            thresholds=config.thresholds,
            containers=containers,
            image_name=image.context.image_name,
        )
    save_object_set(objects, image.objects_path)
    return [
        report.with_context(
            image_name=image.context.image_name,
            project_name=image.context.project_name,
            project_file=image.context.project_file,
        )
        for report in reports
    ]


def process_image_export(image: ImageInput, config: AtlasGuardConfig) -> list[Path]:
    """Export the region table and exclusion list of one image.

    Existing outputs are reused unless ``config.force`` is set. The atlas is
    repaired first, and the repaired object set saved.
    """
    table_path = results_path(image, config.output_dir)
    list_path = exclusions_path(image, config.output_dir)
    if not config.force and table_path.exists() and list_path.exists():
        LOGGER.info("Reusing existing exports at %s and %s", table_path, list_path)
        return [table_path, list_path]

    objects = load_object_set(image.objects_path)
    atlas = _open_atlas(objects, image, config)
    if atlas is None:
        return []
    detections = _detections(objects, config.detection_channels)
    summary = atlas.fix_exclusions(containers=_containers(detections))
    if summary.changed:
        save_object_set(objects, image.objects_path)

    outputs = [
        save_results(
            atlas,
            table_path,
            detections,
            calibration=image.calibration,
            image_name=image.context.image_name,
            metadata=image.metadata,
        ),
        save_excluded_regions(atlas, list_path),
    ]
    return outputs


def process_image_listing(image: ImageInput, config: AtlasGuardConfig) -> list[ExclusionReport]:
    """Report every exclusion marker currently stored for one image."""
    objects = load_object_set(image.objects_path)
    return [
        report.with_context(project_name=image.context.project_name, project_file=image.context.project_file)
        for report in list_exclusions(objects, image.context.image_name)
    ]


def restore(objects_path: Path, marker_id: str) -> bool:
    """Remove exclusion marker ``marker_id`` from an object set file."""
    objects = load_object_set(objects_path)
    restored = restore_exclusion(objects, marker_id)
    if restored:
        save_object_set(objects, objects_path)
    return restored


def run_workflow(
    config: AtlasGuardConfig,
    process_fn: Callable[[ImageInput, AtlasGuardConfig], T | None],
    workflow_name: str = "atlasguard",
) -> list[T]:
    """Apply ``process_fn`` to every configured image, one at a time.

    Failures of one image are logged and do not stop the batch.

    Parameters
    ----------
    config
        Parsed configuration.
    process_fn
        Callable processing a single image. Signature: ``(image, config) -> result``.
    workflow_name
        Human-readable name used in log messages.

    Returns
    -------
    list
        The results of the images that succeeded; images returning None are left out.
    """
    results: list[T] = []
    total = len(config.images)
    for i, image in enumerate(config.images, start=1):
        try:
            result = process_fn(image, config)
        except Exception:  # Broad catch intentional: one broken image must not stop the batch
            LOGGER.exception("[%d/%d] Failed %s for %s", i, total, workflow_name, image.context.label)
            continue
        if result is None:
            continue
        results.append(result)
        LOGGER.info("[%d/%d] Finished %s for %s", i, total, workflow_name, image.context.label)
    return results


def run_repair(config: AtlasGuardConfig) -> list[RepairSummary]:
    """Repair the exclusions of every configured image."""
    summaries = run_workflow(config, process_image_repair, "repair")
    LOGGER.info("Repaired %d images", sum(1 for summary in summaries if summary.changed))
    return summaries


def run_auto_exclusion(config: AtlasGuardConfig) -> list[ExclusionReport]:
    """Auto-exclude every configured image and write the reports table."""
    reports = [report for batch in run_workflow(config, process_image_auto_exclusion, "auto-exclusion") for report in batch]
    write_exclusion_reports(reports, config.output_dir / REPORTS_FILE_NAME)
    LOGGER.info("Auto-excluded %d regions across %d images", len(reports), len(config.images))
    return reports


def run_export(config: AtlasGuardConfig) -> list[Path]:
    """Export the results of every configured image."""
    outputs = [path for batch in run_workflow(config, process_image_export, "export") for path in batch]
    LOGGER.info("Finished writing %d export files", len(outputs))
    return outputs


def run_listing(config: AtlasGuardConfig) -> list[ExclusionReport]:
    """List the exclusions of every configured image and write the reports table."""
    reports = [report for batch in run_workflow(config, process_image_listing, "listing") for report in batch]
    write_exclusion_reports(reports, config.output_dir / REPORTS_FILE_NAME)
    return reports
