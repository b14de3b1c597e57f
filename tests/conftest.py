"""Shared fixtures: a simulated two-tile object seen through a fixed camera."""

import numpy as np
import pytest

from sticker_vision.app_types import CalibrationSession
from sticker_vision.config import CANONICAL_BGR, PipelineConfig

PALETTE = {k: tuple(float(c) for c in v) for k, v in CANONICAL_BGR.items()}

# two images per session; the tiles show different colors in each
REFERENCES = [{"U1": "red", "U2": "blue"}, {"U1": "green", "U2": "yellow"}]

# pixel id -> tile it really belongs to (2x2 image, row-major ids)
TRUTH = {0: "U1", 1: "U1", 2: "U2", 3: "U2"}


def make_session(rng, session_id, references=REFERENCES, truth=TRUTH, shape=(2, 2), noise=3.0):
    """Build (session, images, mapping) where each pixel shows its true tile's
    reference color plus gaussian noise, and every pixel is a candidate of
    every tile."""
    h, w = shape
    images = []
    for ref in references:
        flat = np.zeros((h * w, 3), dtype=float)
        for pixel, tile in truth.items():
            flat[pixel] = CANONICAL_BGR[ref[tile]]
        flat += rng.normal(0.0, noise, flat.shape)
        images.append(np.clip(np.rint(flat), 0, 255).astype(np.uint8).reshape(h, w, 3))
    tiles = sorted({t for ref in references for t in ref})
    mapping = {pixel: list(tiles) for pixel in truth}
    return CalibrationSession(session_id, tuple(references)), images, mapping


def live_image(rng, colors=None, noise=3.0):
    """A single 2x2 frame with U1 showing red and U2 showing blue by default."""
    ref = colors or {"U1": "red", "U2": "blue"}
    _, images, _ = make_session(rng, "live", [ref], TRUTH, noise=noise)
    return images[0]


@pytest.fixture
def rng():
    return np.random.default_rng(0)


@pytest.fixture
def config():
    return PipelineConfig(palette=dict(PALETTE), max_workers=2)
