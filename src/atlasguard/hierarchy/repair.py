"""Repair of botched or partial exclusions in an atlas ontology.

Regions are never excluded by reclassifying them in place: the canonical
region keeps its label and a separate ``Exclude`` marker, duplicated outside
the ontology, shadows it. :func:`fix_exclusions` restores that invariant after
a region was excluded (or lost its classification) inside the tree.
"""

from __future__ import annotations

import logging
from collections.abc import Collection
from dataclasses import dataclass
from typing import TYPE_CHECKING

from atlasguard.hierarchy.objects import (
    EXCLUDE_CLASSIFICATION,
    Classification,
    PathObject,
    is_excluded,
)
from atlasguard.hierarchy.ontology import DisruptedHierarchyError

if TYPE_CHECKING:
    from atlasguard.hierarchy.ontology import AtlasOntology

logger = logging.getLogger(__name__)


@dataclass
class RepairSummary:
    """What a call to :func:`fix_exclusions` changed."""

    root_restored: bool = False
    markers_created: int = 0
    markers_reclassified: int = 0
    regions_restored: int = 0

    @property
    def changed(self) -> bool:
        return bool(self.root_restored or self.markers_created or self.markers_reclassified or self.regions_restored)


def _needs_repair(region: PathObject) -> bool:
    return region.classification is None or is_excluded(region.classification)


def deduce_classification(atlas: AtlasOntology, region: PathObject) -> Classification:
    """Deduce the classification of ``region`` from its name and hemisphere.

    Raises
    ------
    DisruptedHierarchyError
        If the region has no name.
    AmbiguousHemisphereError
        If the atlas is split and the region's hemisphere is unknown.
    """
    if not region.name:
        raise DisruptedHierarchyError(atlas.root, f"Can't deduce the name for brain region '{region}'.")
    return Classification(name=region.name, hemisphere=atlas.hemisphere_of(region))


def _find_shadows(atlas: AtlasOntology, region: PathObject, classification: Classification) -> list[PathObject]:
    """Out-of-tree annotations that duplicate ``region``."""
    shadows = [obj for obj in atlas.objects.shadows_of(region) if obj.is_annotation and not atlas.is_member(obj)]
    for obj in atlas.objects.top_level:
        if obj is atlas.root or not obj.is_annotation or obj in shadows:
            continue
        if obj.name == region.name:
            if obj.classification == classification:
                shadows.append(obj)
            elif is_excluded(obj.classification) and obj.geometry.covers(region.geometry):
                shadows.append(obj)
    return shadows


def _exclude_root(atlas: AtlasOntology, summary: RepairSummary) -> None:
    for branch in atlas.root.children:
        if not branch.is_annotation:
            continue
        marker = branch.duplicate()
        marker.classification = EXCLUDE_CLASSIFICATION
        atlas.objects.add(marker)
        summary.markers_created += 1
        logger.info("Excluding atlas branch '%s' instead of the atlas root", branch)
    atlas.root.classification = None
    summary.root_restored = True


def _fix_region(atlas: AtlasOntology, region: PathObject, summary: RepairSummary) -> None:
    classification = deduce_classification(atlas, region)
    shadows = _find_shadows(atlas, region, classification)
    for shadow in shadows:
        if not is_excluded(shadow.classification):
            logger.debug("Reusing duplicate '%s' as exclusion marker", shadow)
            shadow.classification = EXCLUDE_CLASSIFICATION
            summary.markers_reclassified += 1
    if not shadows:
        marker = region.duplicate()
        marker.classification = EXCLUDE_CLASSIFICATION
        atlas.objects.add(marker)
        summary.markers_created += 1
    logger.info("Restored classification '%s' of mistakenly excluded region '%s'", classification, region.name)
    region.classification = classification
    summary.regions_restored += 1


def fix_exclusions(
    atlas: AtlasOntology,
    containers: Collection[PathObject | str] | None = None,
) -> RepairSummary:
    """Fix common exclusion mistakes in the atlas ontology.

    The following mistakes are repaired:

    - the atlas root itself was classified as ``Exclude``; each top-level
      branch gets its own marker and the root classification is cleared.
    - a region was classified as ``Exclude`` inside the ontology.
    - a region lost its classification.

    In the last two cases the region classification is deduced from its name
    (and hemisphere), and an out-of-tree ``Exclude`` marker is created unless a
    duplicate of the region already exists. Running the repair again on a
    consistent ontology changes nothing.

    Parameters
    ----------
    atlas
        Ontology to repair in place.
    containers
        Detection containers living inside the ontology. They carry no region
        semantics and are left untouched.

    Returns
    -------
    RepairSummary
        Counts of the changes applied.
    """
    summary = RepairSummary()
    if is_excluded(atlas.root.classification):
        _exclude_root(atlas, summary)
    for region in atlas.regions(exclude=containers):
        if _needs_repair(region):
            _fix_region(atlas, region, summary)
    if summary.changed:
        logger.info(
            "Repaired exclusions of '%s': %d markers created, %d regions restored",
            atlas.root,
            summary.markers_created,
            summary.regions_restored,
        )
    return summary
