"""Configuration models, object-set persistence and batch workflows."""

from atlasguard.interfaces.loader import load_object_set, save_object_set
from atlasguard.interfaces.models import AtlasGuardConfig, ImageContext, ImageInput
from atlasguard.interfaces.shared import load_config
from atlasguard.interfaces.utils import _parse_log_level, parse_images

__all__ = [
    "AtlasGuardConfig",
    "ImageContext",
    "ImageInput",
    "_parse_log_level",
    "load_config",
    "load_object_set",
    "parse_images",
    "save_object_set",
]
