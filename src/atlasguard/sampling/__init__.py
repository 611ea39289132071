"""Access to image channels at coarse resolution levels."""

from atlasguard.sampling.array import ArrayChannelSampler
from atlasguard.sampling.base import ChannelSampler, Histogram, SamplingError

__all__ = ["ArrayChannelSampler", "ChannelSampler", "Histogram", "SamplingError"]
