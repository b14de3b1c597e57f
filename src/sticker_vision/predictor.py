"""
predictor.py — kNN density confidence per tile and color
========================================================

Prediction side of the pipeline. Once pixels are Finalized to tiles, every
calibration Observation of a finalized pixel becomes a ColorSample of its
tile, labelled with the reference color the tile had in that image. The
registry indexes those samples per (tile, label); the predictor asks, for a
live pixel color, how dense each label's samples are around it.

## Primary classes / functions

* ColorModelRegistry

  * `rebuild(finalized)`: build one `SpatialIndex` per label for every tile
    in the finalized map (tiles in parallel). Each tile build holds that
    tile's lock and ends with a single swap of an immutable `TileColorModel`,
    so concurrent readers keep the previous stable model. Only Finalized
    pixels are ever indexed.
* DensityPredictor

  * `densities(tile_id, color)`: kNN density per label,
    `n / N / (V_d * r_n ** d)` with `n = max(1, min(k, N // max_fraction))`,
    `r_n` the distance to the n-th neighbour and `V_d` the unit-ball volume.
  * `pixel_confidences(tile_id, color)`: densities divided by the largest
    one, so the best label scores 1.0. Labels without samples score 0.0.
  * `predict_tile(tile_id, pixel_colors)`: per-label ordered confidence
    lists over the tile's pixels, after optional reservoir subsampling.
  * `predict_image(image)`: the same for every modelled tile, reading pixel
    colors straight from an image.

The optional color correction (white balance, etc.) is applied to the live
color before lookup; it is injected, never chosen here.

-------------------------------------------------------------------------------

Copyright (c) 2025 Facundo Gauna & Ulises Carnevale. Licensed under MIT License.
"""

from __future__ import annotations

import concurrent.futures
import logging
import math
import threading
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Mapping, NamedTuple, Optional, Sequence

import numpy as np

from sticker_vision.app_types import ColorSample
from sticker_vision.config import (
    KNN_K,
    KNN_MAX_FRACTION,
    LEAF_CAPACITY,
    MAX_TREE_DEPTH,
    MAX_WORKERS,
    SUBSAMPLE_SEED,
    SUBSAMPLE_SIZE,
    SUBSAMPLE_THRESHOLD,
)
from sticker_vision.sample_store import ColorCorrection, SampleStore, extract_colors
from sticker_vision.spatial_index import SpatialIndex

logger = logging.getLogger(__name__)
logger.addHandler(logging.NullHandler())


# ---------- Helpers ----------

def unit_ball_volume(dim: int) -> float:
    return math.pi ** (dim / 2.0) / math.gamma(dim / 2.0 + 1.0)


def reservoir_sample(items: Sequence[int], size: int, seed: int = SUBSAMPLE_SEED) -> List[int]:
    """Fixed-seed reservoir sample (Algorithm R), returned in ascending order."""
    items = list(items)
    if size >= len(items):
        return sorted(items)
    rng = np.random.default_rng(seed)
    reservoir = items[:size]
    for i in range(size, len(items)):
        j = int(rng.integers(0, i + 1))
        if j < size:
            reservoir[j] = items[i]
    return sorted(reservoir)


def knn_density(index: SpatialIndex, point, k: int = KNN_K,
                max_fraction: int = KNN_MAX_FRACTION) -> Optional[float]:
    size = len(index)
    if size == 0:
        return None
    n = max(1, min(k, size // max_fraction))
    r = index.kth_distance(point, n)
    if r is None:
        return None
    if r == 0.0:
        return math.inf
    return n / size / (unit_ball_volume(index.dim) * r ** index.dim)


def normalize_densities(densities: Mapping[str, Optional[float]]) -> Dict[str, float]:
    """Scale to [0, 1] by the largest density. Missing -> 0.0; inf beats everything."""
    finite = [d for d in densities.values() if d is not None]
    if not finite:
        return {label: 0.0 for label in densities}
    top = max(finite)
    out: Dict[str, float] = {}
    for label, d in densities.items():
        if d is None:
            out[label] = 0.0
        elif math.isinf(top):
            out[label] = 1.0 if math.isinf(d) else 0.0
        elif top <= 0.0:
            out[label] = 0.0
        else:
            out[label] = float(d / top)
    return out


# ---------- Model registry ----------

@dataclass(frozen=True)
class TileColorModel:
    tile_id: str
    pixel_ids: tuple
    indexes: Mapping[str, SpatialIndex] = field(default_factory=dict)

    @property
    def labels(self) -> List[str]:
        return list(self.indexes)

    def sample_count(self) -> int:
        return sum(len(ix) for ix in self.indexes.values())


class ColorModelRegistry:
    """Per-tile color models built from Finalized pixels only."""

    def __init__(self,
                 store: SampleStore,
                 capacity: int = LEAF_CAPACITY,
                 max_depth: int = MAX_TREE_DEPTH,
                 max_workers: int = MAX_WORKERS):
        self.store = store
        self.capacity = capacity
        self.max_depth = max_depth
        self.max_workers = max_workers
        self._models: Dict[str, TileColorModel] = {}
        self._tile_locks: Dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    def _tile_lock(self, tile_id: str) -> threading.Lock:
        with self._locks_guard:
            return self._tile_locks.setdefault(tile_id, threading.Lock())

    def _all_labels(self) -> List[str]:
        return sorted({o.expected_label for o in self.store.observations() if o.expected_label is not None})

    def build_tile(self, tile_id: str, pixel_ids: Iterable[int], labels: Optional[Sequence[str]] = None) -> TileColorModel:
        pixel_ids = tuple(sorted(set(int(p) for p in pixel_ids)))
        labels = list(labels) if labels is not None else self._all_labels()
        samples: Dict[str, List[ColorSample]] = {label: [] for label in labels}
        for pixel_id in pixel_ids:
            for obs in self.store.query_by_pixel(pixel_id):
                if obs.tile_candidate_id != tile_id or obs.expected_label is None:
                    continue
                samples.setdefault(obs.expected_label, []).append(
                    ColorSample(obs.color_vector, tile_id, obs.expected_label))

        with self._tile_lock(tile_id):
            model = TileColorModel(
                tile_id=tile_id,
                pixel_ids=pixel_ids,
                indexes={label: SpatialIndex(s, capacity=self.capacity, max_depth=self.max_depth)
                         for label, s in samples.items()},
            )
            self._models[tile_id] = model
        logger.debug("[ColorModelRegistry.build_tile] tile=%s pixels=%d samples=%d",
                     tile_id, len(pixel_ids), model.sample_count())
        return model

    def rebuild(self, finalized: Mapping[int, str], tiles: Optional[Iterable[str]] = None) -> Dict[str, TileColorModel]:
        """Rebuild models for `tiles` (default: every tile in `finalized`)."""
        by_tile: Dict[str, List[int]] = {}
        for pixel_id, tile_id in finalized.items():
            by_tile.setdefault(tile_id, []).append(pixel_id)
        wanted = sorted(by_tile) if tiles is None else [t for t in tiles if t in by_tile]
        labels = self._all_labels()

        if self.max_workers <= 1 or len(wanted) <= 1:
            built = [self.build_tile(t, by_tile[t], labels) for t in wanted]
        else:
            with concurrent.futures.ThreadPoolExecutor(max_workers=self.max_workers) as pool:
                built = list(pool.map(lambda t: self.build_tile(t, by_tile[t], labels), wanted))

        logger.info("[ColorModelRegistry.rebuild] %d tile models built", len(built))
        return {m.tile_id: m for m in built}

    def model(self, tile_id: str) -> Optional[TileColorModel]:
        return self._models.get(tile_id)

    def tiles(self) -> List[str]:
        return sorted(self._models)


# ---------- Predictor ----------

class TilePrediction(NamedTuple):
    tile_id: str
    pixel_ids: List[int]
    confidences: Dict[str, List[float]]


class DensityPredictor:
    def __init__(self,
                 registry: ColorModelRegistry,
                 k: int = KNN_K,
                 max_fraction: int = KNN_MAX_FRACTION,
                 correction: Optional[ColorCorrection] = None,
                 subsample_threshold: Optional[int] = SUBSAMPLE_THRESHOLD,
                 subsample_size: int = SUBSAMPLE_SIZE,
                 seed: int = SUBSAMPLE_SEED):
        self.registry = registry
        self.k = k
        self.max_fraction = max_fraction
        self.correction = correction
        self.subsample_threshold = subsample_threshold
        self.subsample_size = subsample_size
        self.seed = seed

    def _model(self, tile_id: str) -> TileColorModel:
        model = self.registry.model(tile_id)
        if model is None:
            raise KeyError(f"No color model for tile {tile_id!r}")
        return model

    def densities(self, tile_id: str, color, correction: Optional[ColorCorrection] = None) -> Dict[str, Optional[float]]:
        model = self._model(tile_id)
        correction = correction if correction is not None else self.correction
        point = np.asarray(correction(color) if correction is not None else color, dtype=float)
        return {label: knn_density(index, point, self.k, self.max_fraction)
                for label, index in model.indexes.items()}

    def pixel_confidences(self, tile_id: str, color, correction: Optional[ColorCorrection] = None) -> Dict[str, float]:
        return normalize_densities(self.densities(tile_id, color, correction))

    def select_pixels(self, pixel_ids: Sequence[int]) -> List[int]:
        pixel_ids = sorted(pixel_ids)
        if self.subsample_threshold is not None and len(pixel_ids) > self.subsample_threshold:
            chosen = reservoir_sample(pixel_ids, self.subsample_size, self.seed)
            logger.debug("[DensityPredictor.select_pixels] subsampled %d -> %d pixels", len(pixel_ids), len(chosen))
            return chosen
        return pixel_ids

    def predict_tile(self, tile_id: str, pixel_colors: Mapping[int, Sequence[float]],
                     correction: Optional[ColorCorrection] = None) -> TilePrediction:
        model = self._model(tile_id)
        considered = self.select_pixels(list(pixel_colors))
        confidences: Dict[str, List[float]] = {label: [] for label in model.labels}
        for pixel_id in considered:
            conf = self.pixel_confidences(tile_id, pixel_colors[pixel_id], correction)
            for label in model.labels:
                confidences[label].append(conf[label])
        return TilePrediction(tile_id, considered, confidences)

    def predict_image(self, image: np.ndarray,
                      colorspace: Optional[str] = None,
                      correction: Optional[ColorCorrection] = None,
                      tiles: Optional[Iterable[str]] = None) -> Dict[str, TilePrediction]:
        out: Dict[str, TilePrediction] = {}
        for tile_id in (tiles if tiles is not None else self.registry.tiles()):
            model = self._model(tile_id)
            pixel_ids = list(model.pixel_ids)
            colors = extract_colors(image, pixel_ids, colorspace)
            pixel_colors = {p: c for p, c in zip(pixel_ids, colors)}
            out[tile_id] = self.predict_tile(tile_id, pixel_colors, correction)
        return out
