"""
aggregator.py — collapse per-pixel confidences into one value per tile/color
============================================================================

Nearest-rank percentile: sort ascending, take index ceil(P/100 * n) - 1
clamped to [0, n - 1]. A high percentile (default 80) ignores the shadowed
or occluded minority of a tile's pixels without letting a single spuriously
confident pixel decide the tile.

`aggregate()` raises EmptyPixelSet on an empty list. The tile-level facade
`ConfidenceAggregator.aggregate_tile()` turns that into a None confidence
("no evidence") and keeps going with the other colors.

Copyright (c) 2025 Facundo Gauna & Ulises Carnevale. Licensed under MIT License.
"""

from __future__ import annotations

import logging
import math
from typing import Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

from sticker_vision.app_types import PredictionResult
from sticker_vision.config import CONFIDENCE_PERCENTILE
from sticker_vision.errors import EmptyPixelSet

logger = logging.getLogger(__name__)
logger.addHandler(logging.NullHandler())


def nearest_rank_index(n: int, percentile: float) -> int:
    if n <= 0:
        raise EmptyPixelSet()
    if not 0.0 < percentile <= 100.0:
        raise ValueError(f"percentile must be in (0, 100], got {percentile}")
    # P * n first keeps integer inputs exact (0.7 * 10 != 7.0 in floating point)
    rank = math.ceil(round(percentile * n / 100.0, 9))
    return min(max(rank - 1, 0), n - 1)


def aggregate(confidences: Iterable[float], percentile: float = CONFIDENCE_PERCENTILE) -> float:
    values = sorted(float(c) for c in confidences)
    return values[nearest_rank_index(len(values), percentile)]


class ConfidenceAggregator:
    def __init__(self, percentile: float = CONFIDENCE_PERCENTILE):
        nearest_rank_index(1, percentile)  # validates
        self.percentile = percentile

    def aggregate_tile(self, tile_id: str, per_label: Mapping[str, Sequence[float]]) -> List[PredictionResult]:
        results = []
        for label, confidences in per_label.items():
            confidences = list(confidences)
            try:
                value: Optional[float] = aggregate(confidences, self.percentile)
            except EmptyPixelSet:
                logger.warning("[ConfidenceAggregator] tile=%s color=%s: no pixels, reporting no evidence",
                               tile_id, label)
                value = None
            results.append(PredictionResult(tile_id=tile_id, color_label=label,
                                            per_pixel_confidences=confidences,
                                            aggregated_confidence=value))
        return results


def tile_vector(results: Iterable[PredictionResult], normalize: bool = False) -> List[Tuple[str, Optional[float]]]:
    """(color_label, confidence) pairs handed to the matcher."""
    pairs = [(r.color_label, r.aggregated_confidence) for r in results]
    if not normalize:
        return pairs
    total = sum(v for _, v in pairs if v is not None)
    if total <= 0.0:
        return pairs
    return [(label, v / total if v is not None else None) for label, v in pairs]


def output_vectors(results_by_tile: Mapping[str, Iterable[PredictionResult]],
                   normalize: bool = False) -> Dict[str, List[Tuple[str, Optional[float]]]]:
    return {tile: tile_vector(res, normalize) for tile, res in results_by_tile.items()}
