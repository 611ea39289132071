"""Annotated objects overlaid on a tissue slice.

The host application owns a forest of annotations (atlas regions, detection
containers, exclusion markers) and detections. This module provides the small
object model the rest of the package works on: :class:`Classification`,
:class:`PathObject` and the :class:`ObjectSet` that owns them.
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import Iterable, Iterator
from dataclasses import dataclass, field
from enum import Enum

from shapely.geometry.base import BaseGeometry

logger = logging.getLogger(__name__)

ROOT_NAME = "Root"
EXCLUDE = "Exclude"
LEFT = "Left"
RIGHT = "Right"
HEMISPHERES: tuple[str, ...] = (LEFT, RIGHT)


@dataclass(frozen=True)
class Classification:
    """A region label, optionally qualified by hemisphere."""

    name: str
    hemisphere: str | None = None

    def __post_init__(self) -> None:
        if self.hemisphere is not None and self.hemisphere not in HEMISPHERES:
            raise ValueError(f"Unknown hemisphere {self.hemisphere!r}, expected one of {HEMISPHERES}")

    def __str__(self) -> str:
        if self.hemisphere:
            return f"{self.hemisphere}: {self.name}"
        return self.name

    @classmethod
    def from_string(cls, value: str) -> Classification:
        """Parse ``"Left: CA1"`` or ``"CA1"`` into a classification.

        Examples
        --------
        >>> Classification.from_string("Left: CA1")
        Classification(name='CA1', hemisphere='Left')
        >>> str(Classification.from_string("Exclude"))
        'Exclude'
        """
        prefix, sep, rest = value.partition(":")
        if sep and prefix.strip() in HEMISPHERES and rest.strip():
            return cls(name=rest.strip(), hemisphere=prefix.strip())
        return cls(name=value.strip())

    @property
    def is_excluded(self) -> bool:
        return self.hemisphere is None and self.name == EXCLUDE


EXCLUDE_CLASSIFICATION = Classification(EXCLUDE)


def is_excluded(classification: Classification | None) -> bool:
    """Return whether a (possibly missing) classification is the exclusion sentinel."""
    return classification is not None and classification.is_excluded


class ObjectKind(str, Enum):
    """Kinds of objects found in an object set."""

    ANNOTATION = "annotation"
    DETECTION = "detection"


def _new_id() -> str:
    return str(uuid.uuid4())


@dataclass(eq=False)
class PathObject:
    """A node of the object set: a region, a marker, a container or a detection."""

    name: str | None
    classification: Classification | None
    geometry: BaseGeometry
    kind: ObjectKind = ObjectKind.ANNOTATION
    id: str = field(default_factory=_new_id)
    locked: bool = False
    measurements: dict[str, float] = field(default_factory=dict)
    shadows: str | None = None
    parent: PathObject | None = field(default=None, repr=False)
    children: list[PathObject] = field(default_factory=list, repr=False)

    @property
    def is_annotation(self) -> bool:
        return self.kind is ObjectKind.ANNOTATION

    @property
    def is_detection(self) -> bool:
        return self.kind is ObjectKind.DETECTION

    def ancestors(self) -> Iterator[PathObject]:
        """Yield parents from the closest one upwards."""
        node = self.parent
        while node is not None:
            yield node
            node = node.parent

    def descendants(self) -> Iterator[PathObject]:
        """Yield every descendant in preorder, excluding the object itself."""
        stack = list(reversed(self.children))
        while stack:
            node = stack.pop()
            yield node
            stack.extend(reversed(node.children))

    def duplicate(self) -> PathObject:
        """Return an out-of-tree copy with a new id that shadows this object."""
        return PathObject(
            name=self.name,
            classification=self.classification,
            geometry=self.geometry,
            kind=self.kind,
            measurements=dict(self.measurements),
            shadows=self.id,
        )

    def __str__(self) -> str:
        label = self.name or "Unnamed"
        if self.classification is not None:
            return f"{label} ({self.classification})"
        return label


class ObjectSet:
    """All annotations and detections belonging to one image.

    Top-level objects have no parent. The set is mutated in place and is not
    safe for concurrent use.
    """

    def __init__(self, objects: Iterable[PathObject] = ()) -> None:
        self._top_level: list[PathObject] = []
        self._by_id: dict[str, PathObject] = {}
        self._selection: dict[str, PathObject] = {}
        self._shadows: dict[str, dict[str, PathObject]] = {}
        for obj in objects:
            self.add(obj)

    def __len__(self) -> int:
        return len(self._by_id)

    def __contains__(self, obj: object) -> bool:
        return isinstance(obj, PathObject) and self._by_id.get(obj.id) is obj

    @property
    def top_level(self) -> tuple[PathObject, ...]:
        """Objects without a parent, in insertion order."""
        return tuple(self._top_level)

    def add(self, obj: PathObject, parent: PathObject | None = None) -> PathObject:
        """Insert ``obj`` (and any children it already carries) under ``parent``."""
        if obj.id in self._by_id:
            raise ValueError(f"An object with id {obj.id} is already part of the object set")
        if parent is not None and parent not in self:
            raise ValueError(f"Parent {parent} is not part of the object set")
        obj.parent = parent
        if parent is None:
            self._top_level.append(obj)
        else:
            parent.children.append(obj)
        self._register(obj)
        return obj

    def _register(self, obj: PathObject) -> None:
        self._by_id[obj.id] = obj
        if obj.shadows is not None:
            self._shadows.setdefault(obj.shadows, {})[obj.id] = obj
        for child in obj.children:
            child.parent = obj
            self._register(child)

    def remove(self, obj: PathObject, keep_children: bool = True) -> None:
        """Remove ``obj``; kept children are re-attached to its parent."""
        if obj not in self:
            raise KeyError(obj.id)
        siblings = self._top_level if obj.parent is None else obj.parent.children
        position = siblings.index(obj)
        siblings.pop(position)
        if keep_children:
            for offset, child in enumerate(obj.children):
                child.parent = obj.parent
                siblings.insert(position + offset, child)
            obj.children = []
        else:
            for descendant in obj.descendants():
                self._forget(descendant)
        self._forget(obj)
        obj.parent = None

    def _forget(self, obj: PathObject) -> None:
        self._by_id.pop(obj.id, None)
        self._selection.pop(obj.id, None)
        if obj.shadows is not None:
            shadowing = self._shadows.get(obj.shadows, {})
            shadowing.pop(obj.id, None)
            if not shadowing:
                self._shadows.pop(obj.shadows, None)

    def get(self, object_id: str) -> PathObject | None:
        return self._by_id.get(object_id)

    def shadows_of(self, obj: PathObject | str) -> list[PathObject]:
        """Objects duplicated from ``obj`` (or from the object with that id), in insertion order."""
        object_id = obj if isinstance(obj, str) else obj.id
        return list(self._shadows.get(object_id, {}).values())

    def objects(self) -> Iterator[PathObject]:
        """Yield every object in document order (preorder over the forest)."""
        for top in self._top_level:
            yield top
            yield from top.descendants()

    def annotations(self) -> list[PathObject]:
        return [obj for obj in self.objects() if obj.is_annotation]

    def detections(self) -> list[PathObject]:
        return [obj for obj in self.objects() if obj.is_detection]

    def select(self, objects: Iterable[PathObject]) -> None:
        """Add objects to the current selection."""
        for obj in objects:
            if obj in self:
                self._selection[obj.id] = obj

    def reset_selection(self) -> None:
        self._selection.clear()

    @property
    def selected(self) -> list[PathObject]:
        return list(self._selection.values())
