"""Consistent exclusion of brain atlas regions in annotated tissue images.

This package locates an imported atlas ontology in the annotations of an
image, repairs regions wrongly classified as excluded, excludes regions with no
channel signal automatically, and exports per-region results that honour the
exclusions. It provides both a Python API and an ``atlasguard`` CLI.
"""

from atlasguard.exclusion import ExclusionMode, ExclusionReport, auto_exclude_empty_regions, restore_exclusion
from atlasguard.export import save_excluded_regions, save_results
from atlasguard.hierarchy import AtlasOntology, ObjectSet, PathObject, fix_exclusions
from atlasguard.sampling import ArrayChannelSampler

__all__ = [
    "ArrayChannelSampler",
    "AtlasOntology",
    "ExclusionMode",
    "ExclusionReport",
    "ObjectSet",
    "PathObject",
    "auto_exclude_empty_regions",
    "fix_exclusions",
    "restore_exclusion",
    "save_excluded_regions",
    "save_results",
]
