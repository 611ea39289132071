"""Example: exclude atlas regions with no DAPI signal on a synthetic slice."""

from __future__ import annotations

import logging

import numpy as np
from shapely.geometry import box

from atlasguard import ArrayChannelSampler, AtlasOntology, ObjectSet, PathObject, auto_exclude_empty_regions
from atlasguard.hierarchy import Classification

logger = logging.getLogger(__name__)


def build_slice() -> tuple[ObjectSet, np.ndarray]:
    """Return a two-region atlas and a DAPI plane where only the cortex is stained."""
    objects = ObjectSet()
    root = objects.add(PathObject("Root", Classification("ABA_Mouse"), box(0, 0, 128, 64)))
    objects.add(PathObject("Isocortex", Classification("Isocortex"), box(0, 0, 64, 64)), parent=root)
    objects.add(PathObject("Cerebellum", Classification("Cerebellum"), box(64, 0, 128, 64)), parent=root)

    rng = np.random.default_rng(0)
    dapi = rng.integers(0, 10, size=(64, 128), dtype=np.uint8)
    dapi[:, :64] += 120
    return objects, dapi


def main() -> None:
    logging.basicConfig(level=logging.INFO, format="%(asctime)s [%(levelname)s] %(message)s")
    objects, dapi = build_slice()
    atlas = AtlasOntology(objects)
    atlas.fix_exclusions()
    with ArrayChannelSampler({"DAPI": dapi}) as sampler:
        reports = auto_exclude_empty_regions(atlas, sampler, ["DAPI"], resolution_level=2, image_name="synthetic")
    for report in reports:
        logger.info("Excluded %s (percentile %.1f), marker %s", report.region_name, report.percentile_rank, report.marker_id)
    logger.info("Excluded regions: %s", [str(region) for region in atlas.excluded_brain_regions()])


if __name__ == "__main__":
    main()
