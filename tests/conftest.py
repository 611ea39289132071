"""Shared fixtures: small atlas ontologies laid over a 128 x 64 pixel slice."""

from __future__ import annotations

import pytest
from shapely.geometry import box

from atlasguard.hierarchy import Classification, ObjectKind, ObjectSet, PathObject


def region(name: str, geometry, hemisphere: str | None = None, classification: str | None = "same") -> PathObject:
    """Build a region whose classification is its name unless told otherwise."""
    if classification == "same":
        cls = Classification(name, hemisphere)
    elif classification is None:
        cls = None
    else:
        cls = Classification.from_string(classification)
    return PathObject(name=name, classification=cls, geometry=geometry)


@pytest.fixture
def atlas_objects() -> ObjectSet:
    """Root -> Isocortex (SSp, MOp), Cerebellum.

    Isocortex covers the left half of the slice, Cerebellum the right half.
    """
    objects = ObjectSet()
    root = objects.add(PathObject("Root", Classification("ABA_Mouse"), box(0, 0, 128, 64)))
    isocortex = objects.add(region("Isocortex", box(0, 0, 64, 64)), parent=root)
    objects.add(region("SSp", box(0, 0, 32, 64)), parent=isocortex)
    objects.add(region("MOp", box(32, 0, 64, 64)), parent=isocortex)
    objects.add(region("Cerebellum", box(64, 0, 128, 64)), parent=root)
    return objects


@pytest.fixture
def split_atlas_objects() -> ObjectSet:
    """Root -> Left: grey (Left: CA1), Right: grey (Right: CA1)."""
    objects = ObjectSet()
    root = objects.add(PathObject("Root", Classification("ABA_Mouse"), box(0, 0, 128, 64)))
    left = objects.add(region("grey", box(0, 0, 64, 64), hemisphere="Left"), parent=root)
    objects.add(region("CA1", box(0, 0, 32, 32), hemisphere="Left"), parent=left)
    right = objects.add(region("grey", box(64, 0, 128, 64), hemisphere="Right"), parent=root)
    objects.add(region("CA1", box(64, 0, 96, 32), hemisphere="Right"), parent=right)
    return objects


def by_name(objects: ObjectSet, name: str, member_of: PathObject | None = None) -> PathObject:
    """Return the first annotation named ``name`` (below ``member_of`` when given)."""
    pool = list(member_of.descendants()) if member_of is not None else objects.annotations()
    for obj in pool:
        if obj.is_annotation and obj.name == name:
            return obj
    raise KeyError(name)


def add_detections(objects: ObjectSet, parent: PathObject, channel: str, count: int, classification: str | None = None):
    """Add a '<channel> cells' container below ``parent`` holding ``count`` detections."""
    minx, miny, maxx, maxy = parent.geometry.bounds
    container = objects.add(PathObject(f"{channel} cells", None, parent.geometry), parent=parent)
    for index in range(count):
        x = minx + 1 + index
        objects.add(
            PathObject(
                name=None,
                classification=Classification(classification or channel),
                geometry=box(x, miny + 1, x + 0.5, miny + 1.5),
                kind=ObjectKind.DETECTION,
            ),
            parent=container,
        )
    return container


@pytest.fixture
def make_region():
    return region


@pytest.fixture
def find():
    return by_name


@pytest.fixture
def detections_factory():
    return add_detections
