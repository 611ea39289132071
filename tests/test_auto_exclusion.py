"""Tests for automatic exclusion of empty regions."""

from __future__ import annotations

import math

import numpy as np
import pytest

from atlasguard.exclusion import (
    NORMALIZED_INTENSITY,
    PERCENTILE_RANK,
    ExclusionMode,
    ThresholdError,
    auto_exclude_empty_regions,
    compute_thresholds,
    list_exclusions,
    otsu_threshold,
    percentile_rank,
    restore_exclusion,
)
from atlasguard.export import excluded_list
from atlasguard.hierarchy import EXCLUDE_CLASSIFICATION, AtlasOntology, ObjectSet, is_excluded
from atlasguard.sampling import ArrayChannelSampler, ChannelSampler, Histogram, SamplingError


class FakeSampler:
    """Sampler returning fixed means per region bounds and channel."""

    def __init__(self, means: dict[str, dict[tuple, float]], histograms: dict[str, Histogram] | None = None):
        self.means = means
        self.histograms = histograms or {}
        self.calls: list[tuple[tuple, str]] = []
        self.closed = False

    def histogram(self, channel: str, resolution_level: int) -> Histogram:
        if channel not in self.histograms:
            raise SamplingError(f"No histogram for {channel}")
        return self.histograms[channel]

    def mean_intensity(self, geometry, channel: str, resolution_level: int) -> float:
        self.calls.append((geometry.bounds, channel))
        try:
            return self.means[channel][geometry.bounds]
        except KeyError:
            raise SamplingError(f"No mean for {geometry.bounds} in {channel}") from None

    def close(self) -> None:
        self.closed = True


def _means(objects: ObjectSet, find, channel: str, values: dict[str, float]) -> dict[str, dict[tuple, float]]:
    return {channel: {find(objects, name).geometry.bounds: value for name, value in values.items()}}


def test_fake_sampler_is_a_channel_sampler() -> None:
    assert isinstance(FakeSampler({}), ChannelSampler)


class TestPercentileRank:
    """Tests for the percentile rank of a score."""

    def test_ties_rank_low(self) -> None:
        """Test ties take the rank of their first occurrence."""
        assert percentile_rank([0.2, 0.5, 0.5, 1.2], 0.5) == 25.0

    def test_bounds(self) -> None:
        """Test ranks lie in [0, 100] and the minimum ranks 0."""
        distribution = sorted([0.1, 0.4, 0.4, 0.9, 3.0])
        ranks = [percentile_rank(distribution, score) for score in distribution]
        assert ranks[0] == 0.0
        assert all(0.0 <= rank <= 100.0 for rank in ranks)
        assert percentile_rank(distribution, 10.0) == 100.0

    def test_empty_distribution_raises(self) -> None:
        """Test ranking needs at least one score."""
        with pytest.raises(ValueError):
            percentile_rank([], 1.0)


class TestExclusionMode:
    """Tests for parsing exclusion modes."""

    @pytest.mark.parametrize(
        ("value", "expected"),
        [
            ("single", ExclusionMode.SINGLE_REFERENCE),
            ("SingleReference", ExclusionMode.SINGLE_REFERENCE),
            ("single-reference", ExclusionMode.SINGLE_REFERENCE),
            ("max", ExclusionMode.MAX_ACROSS_CHANNELS),
            ("max_across_channels", ExclusionMode.MAX_ACROSS_CHANNELS),
            (ExclusionMode.MAX_ACROSS_CHANNELS, ExclusionMode.MAX_ACROSS_CHANNELS),
        ],
    )
    def test_parse(self, value, expected) -> None:
        """Test accepted spellings."""
        assert ExclusionMode.parse(value) is expected

    def test_parse_unknown(self) -> None:
        """Test unknown modes are rejected."""
        with pytest.raises(ValueError, match="Unknown exclusion mode"):
            ExclusionMode.parse("mean")


class TestThresholds:
    """Tests for Otsu thresholds."""

    def test_bimodal_histogram(self) -> None:
        """Test the threshold separates both modes."""
        counts = np.zeros(256, dtype=int)
        counts[5:10] = 100
        counts[120:130] = 50
        threshold = otsu_threshold(Histogram(counts, np.arange(257, dtype=float)))
        assert 9 <= threshold < 120

    def test_empty_histogram_raises(self) -> None:
        """Test an empty channel has no threshold."""
        with pytest.raises(ThresholdError):
            otsu_threshold(Histogram(np.zeros(256, dtype=int), np.arange(257, dtype=float)))

    def test_non_positive_threshold_raises(self) -> None:
        """Test thresholds at or below zero are rejected."""
        counts = np.zeros(4, dtype=int)
        counts[0] = 10
        counts[3] = 10
        with pytest.raises(ThresholdError, match="positive"):
            otsu_threshold(Histogram(counts, np.array([-10.0, -8.0, -6.0, -4.0, -2.0])))

    def test_failed_channels_are_dropped(self, caplog) -> None:
        """Test a channel without threshold is logged and left out."""
        counts = np.zeros(256, dtype=int)
        counts[5] = 10
        counts[200] = 10
        sampler = FakeSampler({}, {"DAPI": Histogram(counts, np.arange(257, dtype=float))})

        thresholds = compute_thresholds(sampler, ["DAPI", "GFP"], resolution_level=4)

        assert list(thresholds) == ["DAPI"]
        assert "GFP" in caplog.text

    def test_overrides_bypass_otsu(self) -> None:
        """Test configured thresholds are used as they are."""
        thresholds = compute_thresholds(FakeSampler({}), ["DAPI"], resolution_level=4, overrides={"DAPI": 50.0})
        assert thresholds == {"DAPI": 50.0}

    def test_non_positive_override_is_dropped(self) -> None:
        """Test a configured threshold must be positive."""
        assert compute_thresholds(FakeSampler({}), ["DAPI"], resolution_level=4, overrides={"DAPI": 0}) == {}


class TestAutoExclusion:
    """Tests for excluding regions with no signal."""

    def test_single_reference_scenario(self, atlas_objects: ObjectSet, find) -> None:
        """Test a mean of 10 against a threshold of 50 is excluded and 60 is kept."""
        atlas = AtlasOntology(atlas_objects)
        means = _means(atlas_objects, find, "DAPI", {"Isocortex": 60, "SSp": 60, "MOp": 60, "Cerebellum": 10})
        sampler = FakeSampler(means)

        reports = auto_exclude_empty_regions(
            atlas, sampler, ["DAPI"], mode="single", threshold_multiplier=1.0, thresholds={"DAPI": 50.0}
        )

        assert [report.region_name for report in reports] == ["Cerebellum"]
        marker = atlas_objects.get(reports[0].marker_id)
        assert is_excluded(marker.classification)
        assert marker.shadows == find(atlas_objects, "Cerebellum").id
        assert marker.measurements[NORMALIZED_INTENSITY] == pytest.approx(0.2)
        assert marker.measurements[PERCENTILE_RANK] == 0.0
        assert reports[0].percentile_rank == 0.0
        assert [region.name for region in atlas.excluded_brain_regions()] == ["Cerebellum"]

    def test_canonical_region_is_untouched(self, atlas_objects: ObjectSet, find) -> None:
        """Test the in-tree region keeps its class so the exclusion can be undone."""
        atlas = AtlasOntology(atlas_objects)
        cerebellum = find(atlas_objects, "Cerebellum")
        means = _means(atlas_objects, find, "DAPI", {"Cerebellum": 10})

        auto_exclude_empty_regions(atlas, FakeSampler(means), ["DAPI"], thresholds={"DAPI": 50.0})

        assert str(cerebellum.classification) == "Cerebellum"
        assert cerebellum.parent is atlas.root

    def test_max_across_channels_scenario(self, atlas_objects: ObjectSet, find) -> None:
        """Test a region alive in any channel is kept."""
        atlas = AtlasOntology(atlas_objects)
        bounds = find(atlas_objects, "Cerebellum").geometry.bounds
        sampler = FakeSampler({"C1": {bounds: 40.0}, "C2": {bounds: 30.0}})

        reports = auto_exclude_empty_regions(
            atlas,
            sampler,
            ["C1", "C2"],
            mode=ExclusionMode.MAX_ACROSS_CHANNELS,
            thresholds={"C1": 100.0, "C2": 20.0},
        )

        assert reports == []

    def test_single_reference_ignores_later_channels(self, atlas_objects: ObjectSet, find) -> None:
        """Test single mode scores with the first channel only."""
        atlas = AtlasOntology(atlas_objects)
        bounds = find(atlas_objects, "Cerebellum").geometry.bounds
        sampler = FakeSampler({"C1": {bounds: 40.0}, "C2": {bounds: 30.0}})

        reports = auto_exclude_empty_regions(
            atlas, sampler, ["C1", "C2"], mode="single", thresholds={"C1": 100.0, "C2": 20.0}
        )

        assert [report.region_name for report in reports] == ["Cerebellum"]
        assert (bounds, "C2") not in sampler.calls

    def test_single_reference_falls_back_when_sampling_fails(self, atlas_objects: ObjectSet, find) -> None:
        """Test the next channel is used when the first cannot be sampled."""
        atlas = AtlasOntology(atlas_objects)
        bounds = find(atlas_objects, "Cerebellum").geometry.bounds
        sampler = FakeSampler({"C1": {}, "C2": {bounds: 5.0}})

        reports = auto_exclude_empty_regions(
            atlas, sampler, ["C1", "C2"], mode="single", thresholds={"C1": 100.0, "C2": 20.0}
        )

        assert [report.region_name for report in reports] == ["Cerebellum"]
        marker = atlas_objects.get(reports[0].marker_id)
        assert marker.measurements[NORMALIZED_INTENSITY] == pytest.approx(0.25)

    def test_unsampled_regions_are_dropped(self, atlas_objects: ObjectSet, find) -> None:
        """Test regions without any sample are neither scored nor excluded."""
        atlas = AtlasOntology(atlas_objects)
        means = _means(atlas_objects, find, "DAPI", {"SSp": 1.0, "MOp": 100.0})

        reports = auto_exclude_empty_regions(atlas, FakeSampler(means), ["DAPI"], thresholds={"DAPI": 10.0})

        assert [report.region_name for report in reports] == ["SSp"]
        assert reports[0].percentile_rank == 0.0

    def test_monotonic_in_threshold_multiplier(self, atlas_objects: ObjectSet, find) -> None:
        """Test lowering the multiplier never excludes more regions."""
        values = {"Isocortex": 45, "SSp": 20, "MOp": 80, "Cerebellum": 5}
        counts = []
        for multiplier in (2.0, 1.5, 1.0, 0.5, 0.2, 0.05):
            objects = ObjectSet()
            clone = {}
            for obj in atlas_objects.objects():
                copy = type(obj)(obj.name, obj.classification, obj.geometry, id=obj.id)
                clone[obj.id] = copy
                objects.add(copy, parent=clone[obj.parent.id] if obj.parent else None)
            atlas = AtlasOntology(objects)
            means = _means(objects, find, "DAPI", values)
            reports = auto_exclude_empty_regions(
                atlas, FakeSampler(means), ["DAPI"], threshold_multiplier=multiplier, thresholds={"DAPI": 50.0}
            )
            counts.append(len(reports))

        assert counts == sorted(counts, reverse=True)
        assert counts[0] == 4
        assert counts[-1] == 0

    def test_percentile_ranks_in_bounds(self, atlas_objects: ObjectSet, find) -> None:
        """Test every reported rank is in [0, 100]."""
        atlas = AtlasOntology(atlas_objects)
        means = _means(atlas_objects, find, "DAPI", {"Isocortex": 45, "SSp": 20, "MOp": 30, "Cerebellum": 5})

        reports = auto_exclude_empty_regions(atlas, FakeSampler(means), ["DAPI"], thresholds={"DAPI": 50.0})

        assert len(reports) == 4
        assert all(0.0 <= report.percentile_rank <= 100.0 for report in reports)
        assert min(report.percentile_rank for report in reports) == 0.0
        assert [report.region_name for report in reports] == ["Isocortex", "SSp", "MOp", "Cerebellum"]

    def test_excluded_regions_are_skipped(self, atlas_objects: ObjectSet, find) -> None:
        """Test excluded regions are not candidates while their descendants still are."""
        atlas = AtlasOntology(atlas_objects)
        marker = find(atlas_objects, "Isocortex").duplicate()
        marker.classification = EXCLUDE_CLASSIFICATION
        atlas_objects.add(marker)
        means = _means(atlas_objects, find, "DAPI", {"Isocortex": 1, "SSp": 10, "MOp": 100, "Cerebellum": 100})
        sampler = FakeSampler(means)

        reports = auto_exclude_empty_regions(atlas, sampler, ["DAPI"], thresholds={"DAPI": 50.0})

        assert [report.region_name for report in reports] == ["SSp"]
        assert reports[0].percentile_rank == 0.0
        assert (find(atlas_objects, "Isocortex").geometry.bounds, "DAPI") not in sampler.calls

    def test_second_run_skips_excluded_regions(self, atlas_objects: ObjectSet, find) -> None:
        """Test a region is not excluded twice."""
        atlas = AtlasOntology(atlas_objects)
        means = _means(atlas_objects, find, "DAPI", {"Isocortex": 100, "SSp": 100, "MOp": 100, "Cerebellum": 1})
        first = auto_exclude_empty_regions(atlas, FakeSampler(means), ["DAPI"], thresholds={"DAPI": 50.0})
        assert [report.region_name for report in first] == ["Cerebellum"]

        sampler = FakeSampler(means)
        second = auto_exclude_empty_regions(atlas, sampler, ["DAPI"], thresholds={"DAPI": 50.0})

        assert second == []
        assert (find(atlas_objects, "Cerebellum").geometry.bounds, "DAPI") not in sampler.calls

    def test_containers_are_not_candidates(self, atlas_objects: ObjectSet, find, detections_factory) -> None:
        """Test detection containers are never excluded."""
        atlas = AtlasOntology(atlas_objects)
        container = detections_factory(atlas_objects, find(atlas_objects, "Cerebellum"), "DAPI", 2)
        means = _means(atlas_objects, find, "DAPI", {"Isocortex": 100})

        auto_exclude_empty_regions(
            atlas, FakeSampler(means), ["DAPI"], thresholds={"DAPI": 50.0}, containers=[container]
        )

        assert container.classification is None

    def test_invalid_multiplier_raises(self, atlas_objects: ObjectSet) -> None:
        """Test the multiplier must be positive."""
        atlas = AtlasOntology(atlas_objects)
        with pytest.raises(ValueError, match="threshold_multiplier"):
            auto_exclude_empty_regions(atlas, FakeSampler({}), ["DAPI"], threshold_multiplier=0)

    def test_no_channels(self, atlas_objects: ObjectSet) -> None:
        """Test nothing happens without channels."""
        atlas = AtlasOntology(atlas_objects)
        assert auto_exclude_empty_regions(atlas, FakeSampler({}), []) == []
        assert len(atlas.free_standing_exclusions()) == 0

    def test_no_usable_threshold(self, atlas_objects: ObjectSet) -> None:
        """Test nothing happens when no channel has a threshold."""
        atlas = AtlasOntology(atlas_objects)
        assert auto_exclude_empty_regions(atlas, FakeSampler({}), ["DAPI"]) == []

    def test_otsu_on_channel_data(self, atlas_objects: ObjectSet) -> None:
        """Test thresholds computed from real channel data exclude the unstained half."""
        rng = np.random.default_rng(0)
        dapi = rng.integers(0, 10, size=(64, 128), dtype=np.uint8)
        dapi[:, :64] += 120
        atlas = AtlasOntology(atlas_objects)

        with ArrayChannelSampler({"DAPI": dapi}) as sampler:
            reports = auto_exclude_empty_regions(atlas, sampler, ["DAPI"], resolution_level=0, image_name="slice")

        assert [report.region_name for report in reports] == ["Cerebellum"]
        assert reports[0].image_name == "slice"


class TestRestoration:
    """Tests for listing and undoing exclusions."""

    def test_restore_removes_marker(self, atlas_objects: ObjectSet, find) -> None:
        """Test restoring an exclusion removes its marker and nothing else."""
        atlas = AtlasOntology(atlas_objects)
        means = _means(atlas_objects, find, "DAPI", {"Cerebellum": 1})
        (report,) = auto_exclude_empty_regions(atlas, FakeSampler(means), ["DAPI"], thresholds={"DAPI": 50.0})
        count = len(atlas_objects)

        assert restore_exclusion(atlas_objects, report.marker_id)

        assert len(atlas_objects) == count - 1
        assert atlas_objects.get(report.marker_id) is None
        assert atlas.excluded_brain_regions() == []

    def test_restore_unknown_marker(self, atlas_objects: ObjectSet) -> None:
        """Test restoring a missing marker is a no-op."""
        assert not restore_exclusion(atlas_objects, "missing")

    def test_restore_refuses_reclassified_marker(self, atlas_objects: ObjectSet, find) -> None:
        """Test a marker that is no longer an exclusion is kept."""
        atlas = AtlasOntology(atlas_objects)
        means = _means(atlas_objects, find, "DAPI", {"Cerebellum": 1})
        (report,) = auto_exclude_empty_regions(atlas, FakeSampler(means), ["DAPI"], thresholds={"DAPI": 50.0})
        marker = atlas_objects.get(report.marker_id)
        marker.classification = find(atlas_objects, "Cerebellum").classification

        assert not restore_exclusion(atlas_objects, report.marker_id)
        assert atlas_objects.get(report.marker_id) is marker

    def test_list_exclusions(self, atlas_objects: ObjectSet, find) -> None:
        """Test manual markers report NaN and automatic ones their rank."""
        atlas = AtlasOntology(atlas_objects)
        find(atlas_objects, "SSp").classification = None
        atlas.fix_exclusions()
        means = _means(atlas_objects, find, "DAPI", {"Cerebellum": 1, "MOp": 100})
        auto_exclude_empty_regions(atlas, FakeSampler(means), ["DAPI"], thresholds={"DAPI": 50.0})

        reports = {report.region_name: report for report in list_exclusions(atlas_objects, "slice")}

        assert set(reports) == {"SSp", "Cerebellum"}
        assert math.isnan(reports["SSp"].percentile_rank)
        assert reports["Cerebellum"].percentile_rank == 0.0
        assert all(report.image_name == "slice" for report in reports.values())

    def test_round_trip(self, atlas_objects: ObjectSet, find) -> None:
        """Test restoring every listed exclusion leaves nothing excluded."""
        atlas = AtlasOntology(atlas_objects)
        means = _means(atlas_objects, find, "DAPI", {"Isocortex": 80, "SSp": 2, "MOp": 90, "Cerebellum": 1})
        auto_exclude_empty_regions(atlas, FakeSampler(means), ["DAPI"], thresholds={"DAPI": 50.0})
        assert excluded_list(atlas) == ["Cerebellum", "SSp"]

        for report in list_exclusions(atlas_objects, "slice"):
            assert restore_exclusion(atlas_objects, report.marker_id)

        assert atlas.excluded_brain_regions() == []
