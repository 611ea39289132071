"""Read and write object sets as GeoJSON.

The layout follows the GeoJSON exported by slide-analysis hosts: one Feature
per object with ``objectType``, ``name``, ``classification.name``,
``isLocked`` and ``measurements`` properties. Two extra properties keep the
hierarchy: ``parentId`` (absent for top-level objects) and ``shadows`` (the
region an exclusion marker was duplicated from).
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any

from shapely.geometry import mapping, shape

from atlasguard.hierarchy.objects import Classification, ObjectKind, ObjectSet, PathObject

logger = logging.getLogger(__name__)


def _object_kind(value: str | None) -> ObjectKind:
    if value is None:
        return ObjectKind.ANNOTATION
    try:
        return ObjectKind(value.lower())
    except ValueError:
        logger.warning("Unknown objectType '%s', reading it as an annotation", value)
        return ObjectKind.ANNOTATION


def _classification(value: Any) -> Classification | None:
    if not value:
        return None
    if isinstance(value, dict):
        value = value.get("name")
        if not value:
            return None
    return Classification.from_string(str(value))


def feature_to_object(feature: dict[str, Any]) -> PathObject:
    """Build a detached object from one GeoJSON feature."""
    properties = feature.get("properties") or {}
    kwargs: dict[str, Any] = {}
    if feature.get("id"):
        kwargs["id"] = str(feature["id"])
    return PathObject(
        name=properties.get("name"),
        classification=_classification(properties.get("classification")),
        geometry=shape(feature["geometry"]),
        kind=_object_kind(properties.get("objectType")),
        locked=bool(properties.get("isLocked", False)),
        measurements={str(key): float(value) for key, value in (properties.get("measurements") or {}).items()},
        shadows=properties.get("shadows"),
        **kwargs,
    )


def object_to_feature(obj: PathObject) -> dict[str, Any]:
    """Return the GeoJSON feature of one object."""
    properties: dict[str, Any] = {"objectType": obj.kind.value, "isLocked": obj.locked}
    if obj.name is not None:
        properties["name"] = obj.name
    if obj.classification is not None:
        properties["classification"] = {"name": str(obj.classification)}
    if obj.measurements:
        properties["measurements"] = dict(obj.measurements)
    if obj.parent is not None:
        properties["parentId"] = obj.parent.id
    if obj.shadows is not None:
        properties["shadows"] = obj.shadows
    return {
        "type": "Feature",
        "id": obj.id,
        "geometry": mapping(obj.geometry),
        "properties": properties,
    }


def object_set_from_geojson(data: dict[str, Any] | list[dict[str, Any]]) -> ObjectSet:
    """Build an object set from a FeatureCollection (or a bare list of features).

    Siblings keep their file order, and a child may be listed before its
    parent. Features referring to a missing parent are kept as top-level
    objects.
    """
    features = data.get("features", []) if isinstance(data, dict) else data
    objects = [(feature_to_object(feature), (feature.get("properties") or {}).get("parentId")) for feature in features]
    by_id = {obj.id: obj for obj, _ in objects}
    top_level: list[PathObject] = []
    children: dict[str, list[PathObject]] = {}
    for obj, parent_id in objects:
        if parent_id is None:
            top_level.append(obj)
        elif parent_id not in by_id:
            logger.warning("Parent %s of '%s' not found, adding it as a top-level object", parent_id, obj)
            top_level.append(obj)
        else:
            children.setdefault(parent_id, []).append(obj)

    object_set = ObjectSet()
    stack = [(obj, None) for obj in reversed(top_level)]
    while stack:
        obj, parent = stack.pop()
        object_set.add(obj, parent=parent)
        stack.extend((child, obj) for child in reversed(children.get(obj.id, [])))
    if len(object_set) < len(objects):
        raise ValueError(f"Cyclic parent references among {len(objects) - len(object_set)} objects")
    return object_set


def object_set_to_geojson(objects: ObjectSet) -> dict[str, Any]:
    """Return a FeatureCollection listing every object in document order."""
    return {
        "type": "FeatureCollection",
        "features": [object_to_feature(obj) for obj in objects.objects()],
    }


def load_object_set(path: Path) -> ObjectSet:
    """Load the object set of one image from a GeoJSON file."""
    with Path(path).open(encoding="utf-8") as f:
        data = json.load(f)
    object_set = object_set_from_geojson(data)
    logger.debug("Loaded %d objects from %s", len(object_set), path)
    return object_set


def save_object_set(objects: ObjectSet, path: Path) -> Path:
    """Write ``objects`` to a GeoJSON file, replacing any previous content."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(object_set_to_geojson(objects), indent=2) + "\n", encoding="utf-8")
    logger.debug("Saved %d objects to %s", len(objects), path)
    return path
