"""Automatic exclusion of atlas regions with no channel signal.

Each channel gets a data-driven signal/background threshold (Otsu's method on
its coarse-resolution histogram). The mean intensity of every atlas region is
normalised by that threshold; regions whose score stays below
``threshold_multiplier`` are shadowed by a new ``Exclude`` marker. The canonical
region is left untouched so that the exclusion can be restored later.
"""

from __future__ import annotations

import logging
from collections.abc import Collection, Mapping, Sequence
from enum import Enum

from scipy.stats import percentileofscore

from atlasguard.exclusion.otsu import compute_thresholds
from atlasguard.exclusion.reports import NORMALIZED_INTENSITY, PERCENTILE_RANK, ExclusionReport
from atlasguard.hierarchy.objects import EXCLUDE_CLASSIFICATION, PathObject
from atlasguard.hierarchy.ontology import AtlasOntology
from atlasguard.sampling.base import ChannelSampler

logger = logging.getLogger(__name__)

AUTO_THRESHOLD_RESOLUTION_LEVEL = 4


class ExclusionMode(str, Enum):
    """How the channels of a region are combined into one score."""

    SINGLE_REFERENCE = "single"  # first channel only, e.g. a nuclear stain
    MAX_ACROSS_CHANNELS = "max"  # a region is alive if any channel shows signal

    @classmethod
    def parse(cls, value: str | ExclusionMode) -> ExclusionMode:
        if isinstance(value, cls):
            return value
        normalized = str(value).strip().lower().replace("-", "_")
        aliases = {
            "single": cls.SINGLE_REFERENCE,
            "single_reference": cls.SINGLE_REFERENCE,
            "singlereference": cls.SINGLE_REFERENCE,
            "max": cls.MAX_ACROSS_CHANNELS,
            "max_across_channels": cls.MAX_ACROSS_CHANNELS,
            "maxacrosschannels": cls.MAX_ACROSS_CHANNELS,
        }
        try:
            return aliases[normalized]
        except KeyError:
            raise ValueError(f"Unknown exclusion mode '{value}'. Choose from {sorted(aliases)}") from None


def percentile_rank(distribution: Sequence[float], score: float) -> float:
    """Rank of ``score`` in a distribution of scores, in ``[0, 100]``.

    Only strictly lower scores count, so the minimum always ranks 0 and ties
    share the rank of their first occurrence.

    Examples
    --------
    >>> percentile_rank([0.2, 0.5, 0.5, 1.2], 0.5)
    25.0
    """
    if not distribution:
        raise ValueError("Cannot rank a score in an empty distribution.")
    return float(percentileofscore(distribution, score, kind="strict"))


def region_score(
    sampler: ChannelSampler,
    region: PathObject,
    channels: Sequence[str],
    thresholds: Mapping[str, float],
    mode: ExclusionMode,
    resolution_level: int,
) -> float | None:
    """Return the normalised intensity of ``region``, or None if no channel could be sampled."""
    best: float | None = None
    for channel in channels:
        if channel not in thresholds:
            continue
        try:
            mean = sampler.mean_intensity(region.geometry, channel, resolution_level)
        except Exception as exc:  # Broad catch intentional: skip the channel, keep the region
            logger.warning("Failed to compute mean for region '%s' channel '%s': %s", region.name, channel, exc)
            continue
        score = mean / thresholds[channel]
        if mode is ExclusionMode.SINGLE_REFERENCE:
            return score
        if best is None or score > best:
            best = score
    return best


def _create_marker(atlas: AtlasOntology, region: PathObject, score: float, rank: float) -> PathObject:
    marker = region.duplicate()
    marker.classification = EXCLUDE_CLASSIFICATION
    marker.measurements[NORMALIZED_INTENSITY] = score
    marker.measurements[PERCENTILE_RANK] = rank
    atlas.objects.add(marker)
    return marker


def auto_exclude_empty_regions(
    atlas: AtlasOntology,
    sampler: ChannelSampler,
    channels: Sequence[str],
    mode: ExclusionMode | str = ExclusionMode.SINGLE_REFERENCE,
    threshold_multiplier: float = 1.0,
    *,
    resolution_level: int = AUTO_THRESHOLD_RESOLUTION_LEVEL,
    thresholds: Mapping[str, float | None] | None = None,
    containers: Collection[PathObject | str] | None = None,
    image_name: str | None = None,
) -> list[ExclusionReport]:
    """Exclude atlas regions that appear empty in the given channels.

    Parameters
    ----------
    atlas
        Ontology to scan. Markers are added to its object set.
    sampler
        Access to the image channels.
    channels
        Channels to evaluate, in order of preference.
    mode
        ``"single"`` scores a region with the first channel only, ``"max"``
        with its best channel.
    threshold_multiplier
        A region is excluded when ``mean / threshold < threshold_multiplier``.
        Lower values are stricter and exclude fewer regions.
    resolution_level
        Pyramid level used for both histograms and region means.
    thresholds
        Optional per-channel thresholds replacing Otsu's. Channels mapped to
        None still get an Otsu threshold.
    containers
        Detection containers to leave out of the candidates.
    image_name
        Name stamped on the reports.

    Returns
    -------
    list[ExclusionReport]
        One report per newly excluded region, in ontology order.
    """
    if threshold_multiplier <= 0:
        raise ValueError(f"threshold_multiplier must be positive, got {threshold_multiplier}")
    mode = ExclusionMode.parse(mode)
    if not channels:
        return []

    channel_thresholds = compute_thresholds(sampler, channels, resolution_level, overrides=thresholds)
    if not channel_thresholds:
        logger.warning("No usable channel threshold for '%s', skipping auto-exclusion", image_name or atlas.root)
        return []

    # Descendants of an excluded region stay candidates.
    already_excluded = {region.id for region in atlas.excluded_brain_regions()}
    scores: dict[str, float] = {}
    candidates = [region for region in atlas.regions(exclude=containers) if region.id not in already_excluded]
    for region in candidates:
        score = region_score(sampler, region, channels, channel_thresholds, mode, resolution_level)
        if score is not None:
            scores[region.id] = score
    logger.info("Scored %d of %d candidate regions", len(scores), len(candidates))
    if not scores:
        return []

    distribution = sorted(scores.values())
    image_name = image_name or str(atlas.root)
    reports = []
    for region in candidates:
        score = scores.get(region.id)
        if score is None or score >= threshold_multiplier:
            continue
        rank = percentile_rank(distribution, score)
        marker = _create_marker(atlas, region, score, rank)
        logger.debug("Auto-excluded '%s' (score %.3f, percentile %.1f)", region, score, rank)
        reports.append(
            ExclusionReport(
                image_name=image_name,
                marker_id=marker.id,
                region_name=region.name,
                percentile_rank=rank,
            )
        )
    logger.info("Auto-excluded %d regions of '%s'", len(reports), image_name)
    return reports
