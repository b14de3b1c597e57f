"""Tests for sticker_vision.significance — ANOVA scoring of candidate tiles."""

import math

import numpy as np

from conftest import PALETTE, make_session
from sticker_vision.app_types import Outcome
from sticker_vision.sample_store import SampleStore
from sticker_vision.significance import SignificanceEngine, one_way_anova


def _store_with(rng, n_sessions):
    store = SampleStore()
    for i in range(n_sessions):
        store.add_session(*make_session(rng, f"s{i + 1}"))
    return store


class TestOneWayAnova:
    def test_separated_groups(self):
        f, p = one_way_anova([np.array([1.0, 1.1, 0.9]), np.array([10.0, 10.2, 9.8])])
        assert f > 100
        assert p < 1e-4

    def test_single_group_is_degenerate(self):
        f, p = one_way_anova([np.array([1.0, 2.0, 3.0])])
        assert math.isnan(f) and math.isnan(p)

    def test_empty_groups_are_dropped(self):
        f, p = one_way_anova([np.array([1.0, 2.0]), np.array([])])
        assert math.isnan(p)


class TestEvaluate:
    def test_single_session_is_insufficient(self, rng):
        store = _store_with(rng, 1)
        engine = SignificanceEngine(PALETTE)
        result = engine.evaluate(store.query_by_pixel(0))
        assert result.outcome is Outcome.INSUFFICIENT_DATA
        assert result.best_tile is None
        assert result.n_sessions == 1

    def test_two_sessions_pick_true_tile(self, rng):
        store = _store_with(rng, 2)
        engine = SignificanceEngine(PALETTE)
        for pixel, tile in ((0, "U1"), (1, "U1"), (2, "U2"), (3, "U2")):
            result = engine.evaluate(store.query_by_pixel(pixel))
            assert result.outcome is Outcome.OK
            assert result.best_tile == tile
            assert result.confidence > 0.95

    def test_contradicted_candidate_gets_p_one(self, rng):
        store = _store_with(rng, 2)
        result = SignificanceEngine(PALETTE).evaluate(store.query_by_pixel(0))
        assert result.score_for("U2").p_value == 1.0
        assert result.score_for("U2").confidence == 0.0
        assert result.scores[0].tile_id == "U1"

    def test_confidence_grows_with_data(self, rng):
        engine = SignificanceEngine(PALETTE)
        store = SampleStore()
        p_values = []
        for i in range(4):
            store.add_session(*make_session(rng, f"s{i + 1}"))
            if i:
                p_values.append(engine.evaluate(store.query_by_pixel(0)).score_for("U1").p_value)
        assert p_values[-1] <= p_values[0]

    def test_unmatched_pixel_is_ambiguous(self, rng):
        # pixel 3 stays black in every image: no candidate fits, both score p = 1
        store = SampleStore()
        for sid in ("s1", "s2"):
            session, images, mapping = make_session(rng, sid, truth={0: "U1", 1: "U1", 2: "U2"})
            mapping[3] = ["U1", "U2"]
            store.add_session(session, images, mapping)

        result = SignificanceEngine(PALETTE).evaluate(store.query_by_pixel(3))
        assert result.outcome is Outcome.AMBIGUOUS
        assert result.confidence == 0.0

    def test_single_label_palette_is_insufficient(self, rng):
        store = _store_with(rng, 2)
        engine = SignificanceEngine({"red": PALETTE["red"]})
        assert engine.evaluate(store.query_by_pixel(0)).outcome is Outcome.INSUFFICIENT_DATA

    def test_min_sessions_configurable(self, rng):
        store = _store_with(rng, 1)
        engine = SignificanceEngine(PALETTE, min_sessions=1)
        # one session, two images: still enough to separate the groups
        result = engine.evaluate(store.query_by_pixel(2))
        assert result.outcome is Outcome.OK
        assert result.best_tile == "U2"

    def test_palette_dimension_mismatch_skipped(self, rng):
        store = _store_with(rng, 2)
        engine = SignificanceEngine({"red": (1.0, 2.0), "blue": (3.0, 4.0)})
        assert engine.evaluate(store.query_by_pixel(0)).outcome is Outcome.INSUFFICIENT_DATA
