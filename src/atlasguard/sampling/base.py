from __future__ import annotations

from typing import NamedTuple, Protocol, runtime_checkable

import numpy as np
from shapely.geometry.base import BaseGeometry


class SamplingError(ValueError):
    """Raised when a channel cannot be sampled inside a region."""


class Histogram(NamedTuple):
    """Fixed-width intensity histogram of one channel."""

    counts: np.ndarray
    bin_edges: np.ndarray

    @property
    def bin_centers(self) -> np.ndarray:
        return (self.bin_edges[:-1] + self.bin_edges[1:]) / 2


@runtime_checkable
class ChannelSampler(Protocol):
    """Read access to the channels of one image."""

    def histogram(self, channel: str, resolution_level: int) -> Histogram: ...

    def mean_intensity(self, geometry: BaseGeometry, channel: str, resolution_level: int) -> float: ...

    def close(self) -> None: ...
