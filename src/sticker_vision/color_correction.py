"""Pluggable color-correction strategies.

A strategy is any callable `color_vector -> color_vector`. The prediction
core only ever calls it; it never decides which one to use. Two ways of
fitting a per-channel gain are provided:

* `white_balance_from_pixels(image, pixel_ids)`: divide by the mean color of
  pixels known to be neutral (a white reference patch parallel to the face).
* `gray_world(image)`: scale channels so their image-wide means match.

Copyright (c) 2025 Facundo Gauna & Ulises Carnevale. Licensed under MIT License.
"""

from __future__ import annotations

from typing import Optional, Sequence

import numpy as np

from sticker_vision.sample_store import ColorCorrection, flatten_image


class ChannelGain:
    """Multiply each channel by a fixed gain."""

    def __init__(self, gains: Sequence[float]):
        self.gains = np.asarray(gains, dtype=float)

    def __call__(self, color) -> np.ndarray:
        return np.asarray(color, dtype=float) * self.gains

    def __repr__(self):
        return f"ChannelGain({self.gains.tolist()})"


def white_balance_from_pixels(image: np.ndarray,
                              pixel_ids: Sequence[int],
                              colorspace: Optional[str] = None) -> ChannelGain:
    flat = flatten_image(image, colorspace)
    ids = np.asarray(list(pixel_ids), dtype=np.int64)
    if ids.size == 0:
        return ChannelGain(np.ones(flat.shape[1]))
    neutral = flat[ids].mean(axis=0)
    # a dead channel in the reference patch must not blow up the gain
    neutral[neutral == 0] = 1.0
    return ChannelGain(1.0 / neutral)


def gray_world(image: np.ndarray, colorspace: Optional[str] = None) -> ChannelGain:
    flat = flatten_image(image, colorspace)
    avg = flat.mean(axis=0)
    if np.any(avg == 0):
        return ChannelGain(np.ones(flat.shape[1]))
    return ChannelGain(avg.mean() / avg)


def compose(*strategies: Optional[ColorCorrection]) -> Optional[ColorCorrection]:
    """Chain strategies left to right, skipping None."""
    active = [s for s in strategies if s is not None]
    if not active:
        return None
    if len(active) == 1:
        return active[0]

    def _chained(color):
        for s in active:
            color = s(color)
        return color
    return _chained
