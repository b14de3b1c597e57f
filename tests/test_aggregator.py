"""Tests for sticker_vision.aggregator — nearest-rank percentile per tile."""

import numpy as np
import pytest

from sticker_vision.aggregator import (
    ConfidenceAggregator,
    aggregate,
    nearest_rank_index,
    output_vectors,
    tile_vector,
)
from sticker_vision.errors import EmptyPixelSet

TENTHS = [0.1, 0.2, 0.3, 0.4, 0.5, 0.6, 0.7, 0.8, 0.9, 1.0]


class TestNearestRank:
    def test_index(self):
        assert nearest_rank_index(10, 80) == 7
        assert nearest_rank_index(10, 70) == 6
        assert nearest_rank_index(1, 80) == 0
        assert nearest_rank_index(5, 100) == 4
        assert nearest_rank_index(3, 1) == 0

    def test_invalid_percentile(self):
        with pytest.raises(ValueError):
            nearest_rank_index(5, 0)
        with pytest.raises(ValueError):
            nearest_rank_index(5, 101)

    def test_empty(self):
        with pytest.raises(EmptyPixelSet):
            nearest_rank_index(0, 80)


class TestAggregate:
    def test_eightieth_percentile_of_tenths(self):
        assert aggregate(TENTHS) == 0.8

    def test_order_does_not_matter(self):
        assert aggregate(list(reversed(TENTHS))) == 0.8

    def test_single_value(self):
        assert aggregate([0.42]) == 0.42

    def test_empty_raises(self):
        with pytest.raises(EmptyPixelSet):
            aggregate([])

    def test_monotone_in_each_value(self):
        rng = np.random.default_rng(1)
        for _ in range(200):
            values = rng.uniform(0, 1, size=rng.integers(1, 30)).tolist()
            base = aggregate(values)
            i = int(rng.integers(0, len(values)))
            raised = list(values)
            raised[i] = min(1.0, raised[i] + float(rng.uniform(0, 0.5)))
            assert aggregate(raised) >= base

    def test_monotone_in_percentile(self):
        assert aggregate(TENTHS, 50) <= aggregate(TENTHS, 80) <= aggregate(TENTHS, 100)


class TestConfidenceAggregator:
    def test_results_per_label(self):
        results = ConfidenceAggregator().aggregate_tile("U1", {"red": TENTHS, "blue": [0.0, 0.1]})
        by_label = {r.color_label: r for r in results}
        assert by_label["red"].aggregated_confidence == 0.8
        assert by_label["red"].per_pixel_confidences == TENTHS
        assert by_label["blue"].aggregated_confidence == 0.1
        assert all(r.tile_id == "U1" for r in results)

    def test_empty_label_has_no_evidence(self):
        results = ConfidenceAggregator().aggregate_tile("U1", {"red": [], "blue": [0.5]})
        by_label = {r.color_label: r.aggregated_confidence for r in results}
        assert by_label == {"red": None, "blue": 0.5}

    def test_invalid_percentile(self):
        with pytest.raises(ValueError):
            ConfidenceAggregator(0)


class TestOutputVectors:
    def test_raw_pairs(self):
        results = ConfidenceAggregator().aggregate_tile("U1", {"red": [1.0], "blue": [0.25]})
        assert tile_vector(results) == [("red", 1.0), ("blue", 0.25)]

    def test_normalized_pairs(self):
        results = ConfidenceAggregator().aggregate_tile("U1", {"red": [0.75], "blue": [0.25], "green": []})
        assert tile_vector(results, normalize=True) == [("red", 0.75), ("blue", 0.25), ("green", None)]

    def test_all_zero_left_alone(self):
        results = ConfidenceAggregator().aggregate_tile("U1", {"red": [0.0]})
        assert tile_vector(results, normalize=True) == [("red", 0.0)]

    def test_output_vectors(self):
        agg = ConfidenceAggregator()
        out = output_vectors({"U1": agg.aggregate_tile("U1", {"red": [1.0]}),
                              "U2": agg.aggregate_tile("U2", {"blue": [0.5]})})
        assert out == {"U1": [("red", 1.0)], "U2": [("blue", 0.5)]}
