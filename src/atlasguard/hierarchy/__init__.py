"""Atlas ontology model, exclusion resolution and repair."""

from atlasguard.hierarchy.objects import (
    EXCLUDE,
    EXCLUDE_CLASSIFICATION,
    LEFT,
    RIGHT,
    ROOT_NAME,
    Classification,
    ObjectKind,
    ObjectSet,
    PathObject,
    is_excluded,
)
from atlasguard.hierarchy.ontology import (
    AmbiguousHemisphereError,
    AtlasNotFoundError,
    AtlasOntology,
    AtlasStructureError,
    DisruptedHierarchyError,
    is_imported,
    search_atlases,
)
from atlasguard.hierarchy.repair import RepairSummary, deduce_classification, fix_exclusions

__all__ = [
    "EXCLUDE",
    "EXCLUDE_CLASSIFICATION",
    "LEFT",
    "RIGHT",
    "ROOT_NAME",
    "AmbiguousHemisphereError",
    "AtlasNotFoundError",
    "AtlasOntology",
    "AtlasStructureError",
    "Classification",
    "DisruptedHierarchyError",
    "ObjectKind",
    "ObjectSet",
    "PathObject",
    "RepairSummary",
    "deduce_classification",
    "fix_exclusions",
    "is_excluded",
    "is_imported",
    "search_atlases",
]
