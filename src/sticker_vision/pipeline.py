"""
pipeline.py — calibration + prediction facade
=============================================

Wires the components together for a run:

    SampleStore -> SignificanceEngine -> AssignmentRefiner
        -> finalized pixel map -> ColorModelRegistry (SpatialIndex per tile/label)
        -> DensityPredictor -> ConfidenceAggregator -> {tile: [(color, confidence)]}

The calibration dataset is explicit run state owned by the pipeline: created
empty (or loaded) at start, mutated only through `ingest()`, and saved with
`save()`. `resume()` rebuilds a run from disk by replaying the stored
sessions through a fresh refiner and re-applying the finalized map.

Tile models are rebuilt lazily: a Finalized transition marks the tile dirty
and the next `predict()` rebuilds only dirty tiles, so the index never
reflects a non-finalized assignment.

------------------------------------------------------------------

Copyright (c) 2025 Facundo Gauna & Ulises Carnevale. MIT License.
"""

from __future__ import annotations

import json
import logging
import threading
from pathlib import Path
from typing import Dict, Iterable, List, Mapping, Optional, Tuple

import numpy as np

from sticker_vision.aggregator import ConfidenceAggregator, output_vectors
from sticker_vision.app_types import CalibrationSession, PixelAssignment, PredictionResult
from sticker_vision.config import CANONICAL_BGR, PipelineConfig
from sticker_vision.predictor import ColorCorrection, ColorModelRegistry, DensityPredictor
from sticker_vision.refiner import AssignmentRefiner
from sticker_vision.sample_store import SampleStore, flatten_image
from sticker_vision.significance import SignificanceEngine

logger = logging.getLogger(__name__)
logger.addHandler(logging.NullHandler())


class CalibrationPipeline:
    def __init__(self, config: Optional[PipelineConfig] = None, store: Optional[SampleStore] = None):
        self.config = (config or PipelineConfig()).validate()
        self.store = store if store is not None else SampleStore(colorspace=self.config.colorspace)

        self.engine = SignificanceEngine(self.config.palette or {},
                                         tie_tolerance=self.config.tie_tolerance,
                                         min_sessions=self.config.min_sessions)
        self.refiner = AssignmentRefiner(self.store, self.engine,
                                         initial_alpha=self.config.initial_alpha,
                                         decay_factor=self.config.alpha_decay,
                                         alpha_floor=self.config.alpha_floor,
                                         consecutive_required=self.config.consecutive_required,
                                         max_workers=self.config.max_workers)
        self.registry = ColorModelRegistry(self.store,
                                           capacity=self.config.leaf_capacity,
                                           max_depth=self.config.max_tree_depth,
                                           max_workers=self.config.max_workers)
        self.predictor = DensityPredictor(self.registry,
                                          k=self.config.knn_k,
                                          max_fraction=self.config.knn_max_fraction,
                                          subsample_threshold=self.config.subsample_threshold,
                                          subsample_size=self.config.subsample_size,
                                          seed=self.config.subsample_seed)
        self.aggregator = ConfidenceAggregator(self.config.percentile)

        self._dirty_tiles: set = set()
        self._dirty_lock = threading.Lock()
        self.refiner.on_finalized(self._mark_dirty)
        self._refresh_palette()

    # ----- palette -----

    def _palette(self, upto: Optional[str] = None) -> Dict[str, tuple]:
        """Configured palette, else canonical colors refined by finalized pixels.

        `upto` limits the learned colors to the sessions stored up to and
        including that session id.
        """
        if self.config.palette:
            return dict(self.config.palette)
        labels = list(CANONICAL_BGR)
        swatch = np.asarray([[CANONICAL_BGR[k] for k in labels]], dtype=np.uint8)
        colors = flatten_image(swatch, self.config.colorspace)
        palette = {k: tuple(float(c) for c in colors[i]) for i, k in enumerate(labels)}
        finalized = self.refiner.finalized()
        if finalized:
            palette.update(self.store.label_medians(finalized, sessions=self._sessions_upto(upto)))
        return palette

    def _sessions_upto(self, session_id: Optional[str]) -> Optional[List[str]]:
        if session_id is None:
            return None
        ids = [s.session_id for s in self.store.sessions()]
        return ids[:ids.index(session_id) + 1] if session_id in ids else ids

    def _refresh_palette(self, upto: Optional[str] = None):
        if not self.config.palette:
            self.engine.palette = {k: np.asarray(v, dtype=float) for k, v in self._palette(upto).items()}

    # ----- calibration -----

    def ingest(self,
               session: CalibrationSession,
               images: Iterable[np.ndarray],
               mapping: Mapping[int, Iterable[str]]) -> Dict[int, PixelAssignment]:
        """Record a calibration session and run one refinement round on it."""
        self.store.add_session(session, images, mapping)
        self._refresh_palette()
        return self.refiner.observe_session(session.session_id)

    def status(self) -> Dict[str, int]:
        counts: Dict[str, int] = {}
        for a in self.refiner.snapshot().values():
            counts[a.state.value] = counts.get(a.state.value, 0) + 1
            if a.outcome is not None:
                key = f"outcome:{a.outcome.value}"
                counts[key] = counts.get(key, 0) + 1
        return counts

    def _mark_dirty(self, assignment: PixelAssignment):
        with self._dirty_lock:
            self._dirty_tiles.add(assignment.tile_id)

    # ----- prediction -----

    def build_models(self, tiles: Optional[Iterable[str]] = None):
        finalized = self.refiner.finalized()
        with self._dirty_lock:
            wanted = set(self._dirty_tiles) if tiles is None else set(tiles)
            self._dirty_tiles -= wanted
        if tiles is None and not self.registry.tiles():
            wanted = set(finalized.values())
        if not wanted:
            return {}
        return self.registry.rebuild(finalized, tiles=sorted(wanted))

    def predict(self,
                image: np.ndarray,
                correction: Optional[ColorCorrection] = None) -> Dict[str, List[PredictionResult]]:
        """Per tile, one PredictionResult per candidate color for a live image."""
        self.build_models()
        predictions = self.predictor.predict_image(image, colorspace=self.config.colorspace, correction=correction)
        return {tile: self.aggregator.aggregate_tile(tile, pred.confidences)
                for tile, pred in predictions.items()}

    def predict_vectors(self,
                        image: np.ndarray,
                        correction: Optional[ColorCorrection] = None) -> Dict[str, List[Tuple[str, Optional[float]]]]:
        return output_vectors(self.predict(image, correction), normalize=self.config.normalize_output)

    # ----- persistence -----

    def save(self, samples_path: Path, assignments_path: Path) -> None:
        self.store.save(samples_path)
        assignments_path = Path(assignments_path)
        assignments_path.parent.mkdir(parents=True, exist_ok=True)
        finalized = {str(p): t for p, t in sorted(self.refiner.finalized().items())}
        journal = self.refiner.journal()
        assignments_path.write_text(json.dumps({'finalized': finalized, 'journal': journal}, indent=2),
                                    encoding='utf-8')
        logger.info("[CalibrationPipeline.save] %d finalized pixels, %d decisions saved to %s",
                    len(finalized), len(journal), assignments_path)

    @classmethod
    def resume(cls,
               samples_path: Path,
               assignments_path: Optional[Path] = None,
               config: Optional[PipelineConfig] = None) -> "CalibrationPipeline":
        config = config or PipelineConfig()
        store = SampleStore.load(samples_path, colorspace=config.colorspace)
        sessions = [s.session_id for s in store.sessions()]
        data: Dict[str, object] = {}
        if assignments_path is not None and Path(assignments_path).exists():
            data = json.loads(Path(assignments_path).read_text(encoding='utf-8'))

        pipeline = cls(config, store=store)
        pipeline.refiner.replay(sessions, data.get('journal', []), before_round=pipeline._refresh_palette)
        # files written before decisions were journaled carry only the finalized map
        pipeline.refiner.restore_finalized({int(p): t for p, t in data.get('finalized', {}).items()})
        pipeline._refresh_palette()
        logger.info("[CalibrationPipeline.resume] replayed %d sessions", len(sessions))
        return pipeline
