"""End-to-end tests for sticker_vision.pipeline on a simulated two-tile object."""

import json

import numpy as np
import pytest

from conftest import PALETTE, TRUTH, live_image, make_session
from sticker_vision.app_types import AssignmentState
from sticker_vision.config import PipelineConfig
from sticker_vision.errors import MalformedSession
from sticker_vision.pipeline import CalibrationPipeline


def _calibrated(config, rng):
    pipeline = CalibrationPipeline(config)
    for sid in ("s1", "s2", "s3"):
        pipeline.ingest(*make_session(rng, sid))
    return pipeline


def _accept_all(pipeline):
    while True:
        ticket = pipeline.refiner.next_review()
        if ticket is None:
            return
        ticket.accept()


class TestCalibration:
    def test_three_sessions_converge(self, config, rng):
        pipeline = _calibrated(config, rng)
        assert pipeline.status() == {"Converged": 4, "outcome:Ok": 4}

    def test_default_palette_converges(self, rng):
        pipeline = _calibrated(PipelineConfig(max_workers=1), rng)
        snap = pipeline.refiner.snapshot()
        assert {p: a.tile_id for p, a in snap.items()} == TRUTH
        assert all(a.state is AssignmentState.CONVERGED for a in snap.values())

    def test_palette_learns_from_finalized_pixels(self, rng):
        pipeline = _calibrated(PipelineConfig(max_workers=1), rng)
        _accept_all(pipeline)
        pipeline.ingest(*make_session(rng, "s4"))
        red = pipeline.engine.palette["red"]
        assert red.tolist() != list(PALETTE["red"])
        assert abs(red - PALETTE["red"]).max() < 10

    def test_malformed_session_changes_nothing(self, config, rng):
        pipeline = CalibrationPipeline(config)
        session, images, mapping = make_session(rng, "s1")
        mapping[500] = ["U1"]
        with pytest.raises(MalformedSession):
            pipeline.ingest(session, images, mapping)
        assert len(pipeline.store) == 0
        assert pipeline.refiner.snapshot() == {}


class TestPrediction:
    def test_nothing_finalized_nothing_predicted(self, config, rng):
        pipeline = _calibrated(config, rng)
        assert pipeline.predict(live_image(rng)) == {}

    def test_finalized_tiles_predict_their_color(self, config, rng):
        pipeline = _calibrated(config, rng)
        _accept_all(pipeline)
        results = pipeline.predict(live_image(rng, {"U1": "green", "U2": "yellow"}))
        assert set(results) == {"U1", "U2"}
        u1 = {r.color_label: r.aggregated_confidence for r in results["U1"]}
        u2 = {r.color_label: r.aggregated_confidence for r in results["U2"]}
        assert u1["green"] == 1.0
        assert u1["red"] < 0.01
        assert u2["yellow"] == 1.0
        assert u2["blue"] < 0.01

    def test_tile_model_rebuilt_after_new_finalization(self, config, rng):
        pipeline = _calibrated(config, rng)
        pipeline.refiner.confirm(0, True)
        pipeline.predict(live_image(rng))
        assert pipeline.registry.model("U1").pixel_ids == (0,)
        assert pipeline.registry.model("U2") is None

        pipeline.refiner.confirm(1, True)
        pipeline.predict(live_image(rng))
        assert pipeline.registry.model("U1").pixel_ids == (0, 1)

    def test_predict_vectors(self, rng):
        config = PipelineConfig(palette=dict(PALETTE), normalize_output=True, max_workers=1)
        pipeline = _calibrated(config, rng)
        _accept_all(pipeline)
        vectors = pipeline.predict_vectors(live_image(rng))
        for pairs in vectors.values():
            total = sum(v for _, v in pairs if v is not None)
            assert total == pytest.approx(1.0)
        best = {tile: max(pairs, key=lambda p: p[1])[0] for tile, pairs in vectors.items()}
        assert best == {"U1": "red", "U2": "blue"}


class TestPersistence:
    def test_save_and_resume(self, config, rng, tmp_path):
        pipeline = _calibrated(config, rng)
        pipeline.refiner.confirm(0, True)
        pipeline.refiner.confirm(2, True)
        samples, assignments = tmp_path / "samples.json", tmp_path / "assignments.json"
        pipeline.save(samples, assignments)

        resumed = CalibrationPipeline.resume(samples, assignments, config=config)
        assert resumed.refiner.finalized() == {0: "U1", 2: "U2"}
        assert len(resumed.store) == len(pipeline.store)
        # pixels never decided come back in the state the replay reaches
        assert resumed.refiner.query_assignment(1).state is AssignmentState.CONVERGED

    def test_resume_without_assignments(self, config, rng, tmp_path):
        pipeline = _calibrated(config, rng)
        pipeline.save(tmp_path / "samples.json", tmp_path / "assignments.json")
        resumed = CalibrationPipeline.resume(tmp_path / "samples.json", tmp_path / "missing.json", config=config)
        assert resumed.refiner.finalized() == {}
        assert resumed.status() == pipeline.status()

    def test_review_decisions_survive_resume(self, config, rng, tmp_path):
        pipeline = _calibrated(config, rng)
        pipeline.refiner.confirm(1, False)
        pipeline.refiner.cancel_review(2)
        pipeline.refiner.confirm(0, True)
        samples, assignments = tmp_path / "samples.json", tmp_path / "assignments.json"
        pipeline.save(samples, assignments)

        resumed = CalibrationPipeline.resume(samples, assignments, config=config)
        rejected = resumed.refiner.query_assignment(1)
        assert rejected.state is AssignmentState.ACTIVE
        assert rejected.alpha_used == pytest.approx(0.05)
        assert rejected.streak == 0
        assert dict(resumed.refiner.snapshot()) == dict(pipeline.refiner.snapshot())
        assert [t.pixel_id for t in resumed.refiner.open_tickets()] == [3]

        # both runs keep evolving identically
        session = make_session(rng, "s4")
        pipeline.ingest(*session)
        resumed.ingest(*session)
        assert dict(resumed.refiner.snapshot()) == dict(pipeline.refiner.snapshot())

    def test_resume_rebuilds_learned_palette_per_round(self, rng, tmp_path):
        config = PipelineConfig(max_workers=1)
        pipeline = _calibrated(config, rng)
        _accept_all(pipeline)
        truth = {**TRUTH, 4: "U1"}
        for sid in ("s4", "s5"):
            pipeline.ingest(*make_session(rng, sid, truth=truth, shape=(1, 5)))
        samples, assignments = tmp_path / "samples.json", tmp_path / "assignments.json"
        pipeline.save(samples, assignments)

        resumed = CalibrationPipeline.resume(samples, assignments, config=config)
        assert resumed.refiner.query_assignment(4) == pipeline.refiner.query_assignment(4)
        assert dict(resumed.refiner.snapshot()) == dict(pipeline.refiner.snapshot())
        assert set(resumed.engine.palette) == set(pipeline.engine.palette)
        for label, color in pipeline.engine.palette.items():
            np.testing.assert_array_equal(resumed.engine.palette[label], color)

    def test_resume_from_finalized_map_only(self, config, rng, tmp_path):
        pipeline = _calibrated(config, rng)
        samples, assignments = tmp_path / "samples.json", tmp_path / "assignments.json"
        pipeline.save(samples, assignments)
        assignments.write_text(json.dumps({"finalized": {"0": "U1", "3": "U2"}}), encoding="utf-8")

        resumed = CalibrationPipeline.resume(samples, assignments, config=config)
        assert resumed.refiner.finalized() == {0: "U1", 3: "U2"}
