"""Channel sampling backed by in-memory numpy planes."""

from __future__ import annotations

import logging
import math
from collections.abc import Mapping, Sequence
from pathlib import Path

import nibabel as nib
import numpy as np
from shapely.affinity import scale
from shapely.geometry import MultiPolygon, Polygon
from shapely.geometry.base import BaseGeometry
from skimage.draw import polygon2mask
from skimage.measure import block_reduce

from atlasguard.sampling.base import Histogram, SamplingError
from atlasguard.utils import _channel_planes, _load_nifti

logger = logging.getLogger(__name__)


def _histogram_bins(plane: np.ndarray) -> tuple[int, tuple[float, float]]:
    """Return the number of bins and range used for a plane's histogram."""
    if plane.dtype == np.uint8:
        return 256, (0.0, 256.0)
    if plane.dtype == np.uint16:
        return 65536, (0.0, 65536.0)
    low = float(np.nanmin(plane))
    high = float(np.nanmax(plane))
    if high <= low:
        high = low + 1.0
    return 256, (low, high)


def _polygons(geometry: BaseGeometry) -> list[Polygon]:
    if isinstance(geometry, Polygon):
        return [geometry]
    if isinstance(geometry, MultiPolygon):
        return list(geometry.geoms)
    raise SamplingError(f"Cannot sample inside a {geometry.geom_type}")


def _ring_mask(shape: tuple[int, int], coords) -> np.ndarray:
    # pixel (r, c) covers [c, c + 1) x [r, r + 1); polygon2mask works on centres
    vertices = np.asarray(coords, dtype=float)[:, ::-1] - 0.5
    return polygon2mask(shape, vertices)


class ArrayChannelSampler:
    """Sample named channel planes at power-of-two resolution levels.

    Resolution level ``L`` downsamples the full-resolution plane by ``2**L``
    with block means, capped at the coarsest level that keeps at least one
    pixel on both axes. Levels are computed lazily and cached until
    :meth:`close`.
    """

    def __init__(self, channels: Mapping[str, np.ndarray]) -> None:
        if not channels:
            raise ValueError("At least one channel must be provided.")
        self._planes: dict[str, np.ndarray] = {}
        for name, plane in channels.items():
            plane = np.asarray(plane)
            if plane.ndim != 2:
                raise ValueError(f"Channel '{name}' must be a 2D plane, got shape {plane.shape}")
            self._planes[str(name)] = plane
        self._levels: dict[tuple[str, int], np.ndarray] = {}

    @classmethod
    def from_nifti(
        cls,
        img: nib.Nifti1Image | str | Path,
        channel_names: Sequence[str],
    ) -> ArrayChannelSampler:
        """Load a (channels-last) slice image and name its channels."""
        planes = _channel_planes(_load_nifti(img))
        if len(planes) != len(channel_names):
            raise ValueError(f"Image has {len(planes)} channels but {len(channel_names)} channel names were given")
        return cls(dict(zip(channel_names, planes)))

    @property
    def channels(self) -> tuple[str, ...]:
        return tuple(self._planes)

    def _plane(self, channel: str) -> np.ndarray:
        try:
            return self._planes[channel]
        except KeyError:
            raise SamplingError(f"Unknown channel '{channel}'. Available: {list(self._planes)}") from None

    def effective_level(self, channel: str, resolution_level: int) -> int:
        """Return ``resolution_level`` capped to the levels available for ``channel``."""
        if resolution_level < 0:
            raise ValueError("Resolution level must be non-negative.")
        coarsest = int(math.floor(math.log2(min(self._plane(channel).shape))))
        return min(resolution_level, coarsest)

    def downsample(self, channel: str, resolution_level: int) -> float:
        return float(2 ** self.effective_level(channel, resolution_level))

    def level(self, channel: str, resolution_level: int) -> np.ndarray:
        """Return the plane of ``channel`` at ``resolution_level``."""
        effective = self.effective_level(channel, resolution_level)
        key = (channel, effective)
        if key not in self._levels:
            plane = self._plane(channel)
            if effective == 0:
                data = plane
            else:
                factor = 2**effective
                # Partial edge blocks average only the pixels they hold.
                data = block_reduce(plane.astype(np.float64), (factor, factor), func=np.nanmean, cval=np.nan)
                if np.issubdtype(plane.dtype, np.integer):
                    data = np.rint(data).astype(plane.dtype)
            logger.debug("Built level %d of channel '%s' with shape %s", effective, channel, data.shape)
            self._levels[key] = data
        return self._levels[key]

    def histogram(self, channel: str, resolution_level: int) -> Histogram:
        plane = self.level(channel, resolution_level)
        bins, value_range = _histogram_bins(plane)
        values = plane[np.isfinite(plane)] if np.issubdtype(plane.dtype, np.floating) else plane
        counts, edges = np.histogram(values, bins=bins, range=value_range)
        return Histogram(counts=counts, bin_edges=edges)

    def region_mask(self, geometry: BaseGeometry, channel: str, resolution_level: int) -> np.ndarray:
        """Rasterise ``geometry`` (full-resolution pixel coordinates) at a level."""
        plane = self.level(channel, resolution_level)
        factor = 1.0 / self.downsample(channel, resolution_level)
        scaled = scale(geometry, xfact=factor, yfact=factor, origin=(0, 0))
        mask = np.zeros(plane.shape, dtype=bool)
        for polygon in _polygons(scaled):
            mask |= _ring_mask(plane.shape, polygon.exterior.coords)
            for interior in polygon.interiors:
                mask &= ~_ring_mask(plane.shape, interior.coords)
        return mask

    def mean_intensity(self, geometry: BaseGeometry, channel: str, resolution_level: int) -> float:
        plane = self.level(channel, resolution_level)
        mask = self.region_mask(geometry, channel, resolution_level)
        if not mask.any():
            raise SamplingError(f"Region covers no pixel of channel '{channel}' at resolution level {resolution_level}")
        return float(np.nanmean(plane[mask].astype(np.float64)))

    def close(self) -> None:
        """Release cached resolution levels and channel planes."""
        self._levels.clear()
        self._planes.clear()

    def __enter__(self) -> ArrayChannelSampler:
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()
