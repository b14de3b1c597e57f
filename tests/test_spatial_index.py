"""Tests for sticker_vision.spatial_index — exact KNN over a region tree."""

import numpy as np
import pytest

from sticker_vision.app_types import ColorSample
from sticker_vision.spatial_index import SpatialIndex


def _brute_force(points, query, k):
    d2 = ((points - query) ** 2).sum(axis=1)
    order = sorted(range(len(points)), key=lambda i: (d2[i], i))
    return order[:k]


class TestQuery:
    def test_equidistant_ties_follow_insertion_order(self):
        index = SpatialIndex.from_points([(0, 0), (1, 0), (0, 1), (1, 1), (5, 5)], capacity=1)
        result = index.query((0.5, 0.5), 3)
        assert [n.sample.color_vector for n in result] == [(0.0, 0.0), (1.0, 0.0), (0.0, 1.0)]
        assert [n.insertion_index for n in result] == [0, 1, 2]
        assert result[0].distance == pytest.approx(np.sqrt(0.5))

    def test_three_nearest_of_two_clusters(self):
        index = SpatialIndex.from_points([(0, 0), (1, 0), (0, 1), (5, 5), (6, 6)])
        result = index.query((0.5, 0.5), 3)
        assert [n.sample.color_vector for n in result] == [(0.0, 0.0), (1.0, 0.0), (0.0, 1.0)]
        distances = [n.distance for n in result]
        assert distances == sorted(distances)
        assert distances == pytest.approx([np.sqrt(0.5)] * 3)

    def test_sorted_by_distance(self):
        index = SpatialIndex.from_points([(10, 10), (1, 1), (3, 3), (2, 2)])
        result = index.query((0, 0), 4)
        assert [n.insertion_index for n in result] == [1, 3, 2, 0]
        distances = [n.distance for n in result]
        assert distances == sorted(distances)

    def test_k_larger_than_index(self):
        index = SpatialIndex.from_points([(0, 0, 0), (1, 1, 1)])
        assert len(index.query((0, 0, 0), 10)) == 2

    def test_empty_index(self):
        index = SpatialIndex([])
        assert len(index) == 0
        assert index.query((1.0, 2.0, 3.0), 3) == []
        assert index.kth_distance((1.0, 2.0, 3.0), 3) is None

    def test_invalid_k(self):
        index = SpatialIndex.from_points([(0, 0)])
        with pytest.raises(ValueError):
            index.query((0, 0), 0)

    def test_dimension_mismatch(self):
        index = SpatialIndex.from_points([(0, 0, 0)])
        with pytest.raises(ValueError):
            index.query((0, 0), 1)

    def test_kth_distance(self):
        index = SpatialIndex.from_points([(0, 0), (3, 4), (6, 8)])
        assert index.kth_distance((0, 0), 2) == pytest.approx(5.0)

    def test_samples_keep_labels(self):
        samples = [ColorSample((1.0, 2.0, 3.0), "U1", "red"), ColorSample((9.0, 9.0, 9.0), "U1", "blue")]
        index = SpatialIndex(samples)
        assert index.query((8.0, 8.0, 8.0), 1)[0].sample.color_label == "blue"
        assert index.dim == 3


class TestAgainstBruteForce:
    @pytest.mark.parametrize("dim", [2, 3, 4])
    def test_random_points(self, dim):
        rng = np.random.default_rng(7)
        points = rng.uniform(0, 255, size=(400, dim))
        index = SpatialIndex.from_points(points, capacity=4)
        for query in rng.uniform(-20, 275, size=(25, dim)):
            for k in (1, 5, 17):
                got = [n.insertion_index for n in index.query(query, k)]
                assert got == _brute_force(points, query, k)

    def test_many_ties_on_a_grid(self):
        rng = np.random.default_rng(3)
        points = rng.integers(0, 5, size=(300, 3)).astype(float)
        index = SpatialIndex.from_points(points, capacity=2)
        for query in rng.integers(0, 5, size=(20, 3)).astype(float):
            got = [n.insertion_index for n in index.query(query, 12)]
            assert got == _brute_force(points, query, 12)

    def test_repeatable(self):
        rng = np.random.default_rng(11)
        points = rng.uniform(0, 1, size=(200, 3))
        a = SpatialIndex.from_points(points, capacity=3)
        b = SpatialIndex.from_points(points, capacity=3)
        q = (0.5, 0.5, 0.5)
        assert a.query(q, 9) == b.query(q, 9)


class TestStructure:
    def test_identical_points_stay_one_leaf(self):
        index = SpatialIndex.from_points([(4, 4, 4)] * 50, capacity=1)
        assert index.depth() == 0
        assert [n.insertion_index for n in index.query((4, 4, 4), 3)] == [0, 1, 2]

    def test_capacity_controls_depth(self):
        rng = np.random.default_rng(5)
        points = rng.uniform(0, 1, size=(256, 2))
        shallow = SpatialIndex.from_points(points, capacity=256)
        deep = SpatialIndex.from_points(points, capacity=2)
        assert shallow.depth() == 0
        assert deep.depth() > 2

    def test_max_depth_bounds_tree(self):
        points = [(0.0, 0.0), (1e-12, 0.0), (1.0, 1.0)]
        index = SpatialIndex.from_points(points, capacity=1, max_depth=3)
        assert index.depth() <= 3
        assert len(index.query((0.0, 0.0), 3)) == 3

    def test_invalid_capacity(self):
        with pytest.raises(ValueError):
            SpatialIndex.from_points([(0, 0)], capacity=0)
