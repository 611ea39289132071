"""Atlas ontology overlaid on a tissue slice.

:class:`AtlasOntology` locates the imported atlas in an :class:`ObjectSet`,
linearises its region tree and resolves which regions are logically excluded
by free-standing ``Exclude`` markers.
"""

from __future__ import annotations

import logging
from collections.abc import Collection, Iterator

from shapely.prepared import prep

from atlasguard.hierarchy.objects import (
    EXCLUDE,
    HEMISPHERES,
    ROOT_NAME,
    ObjectSet,
    PathObject,
    is_excluded,
)

logger = logging.getLogger(__name__)


class AtlasStructureError(RuntimeError):
    """Base class for errors that abort processing of the current image."""


class AtlasNotFoundError(AtlasStructureError):
    """Raised when no imported atlas matches the request."""

    def __init__(self, atlas_name: str | None = None):
        target = f"'{atlas_name}' " if atlas_name else ""
        super().__init__(
            f"No previously imported atlas {target}found. "
            "Align the slice to an atlas and import the region annotations first."
        )


class DisruptedHierarchyError(AtlasStructureError):
    """Raised when the atlas hierarchy lost its regions or their names."""

    def __init__(self, atlas: PathObject, detail: str | None = None):
        message = (
            f"The atlas hierarchy '{atlas}' was disrupted. "
            "Import the atlas annotations again and delete any previous region annotation."
        )
        if detail:
            message = f"{message} {detail}"
        super().__init__(message)


class AmbiguousHemisphereError(AtlasStructureError):
    """Raised when the hemisphere of a region cannot be told unambiguously."""


def search_atlases(objects: ObjectSet, atlas_name: str | None = None) -> list[PathObject]:
    """Return the candidate atlas roots, in document order.

    Parameters
    ----------
    objects
        Object set of one image.
    atlas_name
        Atlas identifier carried by the root's classification. ``None`` matches
        any imported atlas.
    """
    return [
        obj
        for obj in objects.annotations()
        if obj.name == ROOT_NAME
        and (atlas_name is None or (obj.classification is not None and obj.classification.name == atlas_name))
    ]


def is_imported(objects: ObjectSet, atlas_name: str | None = None) -> bool:
    """Return whether an atlas (``atlas_name`` or any) was imported in ``objects``."""
    return bool(search_atlases(objects, atlas_name))


def _iter_regions(node: PathObject) -> Iterator[PathObject]:
    yield node
    for child in node.children:
        if child.is_annotation:
            yield from _iter_regions(child)


def _object_ids(objects: Collection[PathObject | str] | None) -> set[str]:
    if not objects:
        return set()
    return {obj if isinstance(obj, str) else obj.id for obj in objects}


class AtlasOntology:
    """Manager of one imported atlas ontology.

    The hemisphere tag of each top-level branch is indexed once at
    construction; call :meth:`refresh` after editing classifications outside
    this package.
    """

    def __init__(self, objects: ObjectSet, atlas_name: str | None = None) -> None:
        """
        Locate the atlas root and index its hemispheres.

        Parameters
        ----------
        objects : ObjectSet
            Object set of one image.
        atlas_name : str | None, optional
            Atlas identifier. If None, the first imported atlas is used.

        Raises
        ------
        AtlasNotFoundError
            If no matching atlas root exists.
        DisruptedHierarchyError
            If the selected root has no children.
        AmbiguousHemisphereError
            If one branch of the atlas carries both hemisphere tags.
        """
        self.objects = objects
        self.atlas_name = atlas_name
        candidates = search_atlases(objects, atlas_name)
        if not candidates:
            raise AtlasNotFoundError(atlas_name)
        self.root = candidates[0]
        self._check_root()
        if len(candidates) > 1:
            logger.warning("Several imported atlases have been found. Selecting: %s", self.root)
        self._branch_hemispheres: dict[str, str | None] = {}
        self.refresh()

    def _check_root(self) -> None:
        if not self.root.children:
            raise DisruptedHierarchyError(self.root)

    def refresh(self) -> None:
        """Rebuild the per-branch hemisphere index."""
        self._check_root()
        index: dict[str, str | None] = {}
        for branch in self.root.children:
            if not branch.is_annotation:
                continue
            tags = {
                region.classification.hemisphere
                for region in _iter_regions(branch)
                if region.classification is not None and region.classification.hemisphere in HEMISPHERES
            }
            if len(tags) > 1:
                raise AmbiguousHemisphereError(
                    f"Branch '{branch}' of atlas '{self.root}' carries both {' and '.join(sorted(tags))} regions."
                )
            index[branch.id] = tags.pop() if tags else None
        self._branch_hemispheres = index

    @property
    def is_split(self) -> bool:
        """Whether the atlas regions are split between left and right hemispheres."""
        return any(tag is not None for tag in self._branch_hemispheres.values())

    def branch_of(self, region: PathObject) -> PathObject:
        """Return the direct child of the atlas root that contains ``region``."""
        node = region
        while node.parent is not None and node.parent is not self.root:
            node = node.parent
        if node.parent is not self.root:
            raise DisruptedHierarchyError(self.root, f"'{region}' is not part of the atlas ontology.")
        return node

    def hemisphere_of(self, region: PathObject) -> str | None:
        """Return the hemisphere tag of ``region``, or None for unsplit atlases.

        Raises
        ------
        AmbiguousHemisphereError
            If the atlas is split but the region's branch has no hemisphere tag.
        """
        if not self.is_split:
            return None
        branch = self.branch_of(region)
        hemisphere = self._branch_hemispheres.get(branch.id)
        if hemisphere is None:
            raise AmbiguousHemisphereError(f"Can't deduce the hemisphere for '{region}'.")
        return hemisphere

    def flatten(self, exclude: Collection[PathObject | str] | None = None) -> list[PathObject]:
        """Linearise the ontology depth-first, root first.

        Parameters
        ----------
        exclude
            Objects (or their ids) to leave out of the result, typically
            detection containers. Their children are still visited.

        Returns
        -------
        list[PathObject]
            The root followed by every annotation below it, in preorder.
        """
        self._check_root()
        excluded_ids = _object_ids(exclude)
        return [region for region in _iter_regions(self.root) if region.id not in excluded_ids]

    def regions(self, exclude: Collection[PathObject | str] | None = None) -> list[PathObject]:
        """Flattened ontology without the root."""
        return [region for region in self.flatten(exclude) if region is not self.root]

    def is_member(self, obj: PathObject) -> bool:
        """Return whether ``obj`` is reachable from the atlas root."""
        return obj is self.root or any(ancestor is self.root for ancestor in obj.ancestors())

    def free_standing_exclusions(self) -> list[PathObject]:
        """Exclusion markers that are not part of the ontology."""
        return [
            obj
            for obj in self.objects.annotations()
            if is_excluded(obj.classification) and not self.is_member(obj)
        ]

    def excluded_brain_regions(self) -> list[PathObject]:
        """Return the highest ontology regions covered by an exclusion marker.

        A region is excluded when its geometry is fully covered by a
        free-standing ``Exclude`` marker, be it a duplicate of the region or a
        larger hand-drawn annotation. Descendants of an excluded region are not
        reported. Annotations covered by a marker that are not atlas regions are
        logged and ignored.

        Returns
        -------
        list[PathObject]
            Excluded regions, in ontology order.
        """
        markers = self.free_standing_exclusions()
        logger.info("Exclusion annotations: [%s]", ", ".join(str(marker) for marker in markers))
        if not markers:
            return []
        marker_ids = {marker.id for marker in markers}
        prepared = [prep(marker.geometry) for marker in markers]
        covered = [
            obj
            for obj in self.objects.annotations()
            if obj is not self.root
            and obj.id not in marker_ids
            and any(geometry.covers(obj.geometry) for geometry in prepared)
        ]
        members = {region.id for region in self.flatten()}
        matched = {obj.id for obj in covered if obj.id in members}
        anomalies = [obj for obj in covered if obj.id not in members]
        if anomalies:
            logger.error(
                "Annotations excluded outside atlas ontology will be ignored. "
                "Make sure these annotations weren't meant to be classified as '%s': [%s]",
                EXCLUDE,
                ", ".join(str(obj) for obj in anomalies),
            )
        return [
            region
            for region in self.flatten()
            if region.id in matched and not any(ancestor.id in matched for ancestor in region.ancestors())
        ]

    def fix_exclusions(self, containers: Collection[PathObject | str] | None = None):
        """Repair botched exclusions, see :func:`atlasguard.hierarchy.repair.fix_exclusions`."""
        from atlasguard.hierarchy.repair import fix_exclusions

        return fix_exclusions(self, containers=containers)
