"""Histogram-based signal/background thresholds."""

from __future__ import annotations

import logging
from collections.abc import Mapping, Sequence

import numpy as np
from skimage.filters import threshold_otsu

from atlasguard.sampling.base import ChannelSampler, Histogram

logger = logging.getLogger(__name__)


class ThresholdError(ValueError):
    """Raised when no usable threshold can be derived for a channel."""


def otsu_threshold(histogram: Histogram) -> float:
    """Compute Otsu's threshold from a fixed-width intensity histogram.

    Parameters
    ----------
    histogram
        Counts and bin edges of a channel.

    Returns
    -------
    float
        Intensity (a bin centre) separating background from signal.

    Raises
    ------
    ThresholdError
        If the histogram is empty or the threshold is not strictly positive,
        which would make normalised intensities meaningless.
    """
    counts = np.asarray(histogram.counts)
    if counts.size == 0 or counts.sum() == 0:
        raise ThresholdError("Cannot compute a threshold from an empty histogram.")
    threshold = float(threshold_otsu(hist=(counts, histogram.bin_centers)))
    if not np.isfinite(threshold) or threshold <= 0:
        raise ThresholdError(f"Otsu threshold must be positive, got {threshold}.")
    return threshold


def compute_thresholds(
    sampler: ChannelSampler,
    channels: Sequence[str],
    resolution_level: int,
    overrides: Mapping[str, float | None] | None = None,
) -> dict[str, float]:
    """Return one threshold per usable channel.

    Channels listed in ``overrides`` with a value use it as is; the others get
    an Otsu threshold computed on their histogram at ``resolution_level``.
    Channels whose threshold cannot be computed are logged and left out.
    """
    overrides = overrides or {}
    thresholds: dict[str, float] = {}
    for channel in channels:
        try:
            override = overrides.get(channel)
            if override is not None:
                if override <= 0:
                    raise ThresholdError(f"Threshold must be positive, got {override}.")
                thresholds[channel] = float(override)
                logger.info("Using configured threshold for channel '%s': %s", channel, override)
                continue
            thresholds[channel] = otsu_threshold(sampler.histogram(channel, resolution_level))
            logger.info("Computed Otsu threshold for channel '%s': %s", channel, thresholds[channel])
        except Exception as exc:  # Broad catch intentional: one bad channel must not abort the image
            logger.error("Failed to compute Otsu threshold for channel '%s': %s", channel, exc)
    return thresholds
