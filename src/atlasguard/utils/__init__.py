"""Utility functions for image loading.

Internal utilities for working with NIfTI slice images.
"""

from atlasguard.utils.image import _channel_planes, _load_nifti

__all__ = ["_channel_planes", "_load_nifti"]
