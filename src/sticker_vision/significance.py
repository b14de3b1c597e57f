"""
significance.py — per-pixel tile assignment scoring (one-way ANOVA)
===================================================================

For one pixel, decide how well the accumulated calibration data supports
each candidate tile.

## Algorithm

Every Observation carries the color the pixel showed in one image and the
reference label its candidate tile had in that image. For each candidate
tile:

* matched group: Euclidean residuals between the observed colors and the
  palette color of the label the candidate expected,
* one alternative group per *other* palette label: residuals of the same
  observed colors to that label.

If the pixel really belongs to the candidate tile, the matched residuals are
small and the alternatives large, so group membership explains most of the
variance. `scipy.stats.f_oneway` across these groups gives F and p. A
candidate whose matched mean is not strictly the smallest group mean is
contradicted by the data and gets p = 1.

The best candidate is the one with the lowest p; its confidence is
`1 - p` clamped to [0, 1]. When the runner-up's p-value is within
`tie_tolerance` of the best the pixel is Ambiguous.

## Outcomes

* `InsufficientData`: fewer than `min_sessions` distinct sessions, or no
  candidate could be scored (e.g. the palette knows a single label).
* `Ambiguous`: best and runner-up statistically indistinguishable.
* `Ok`: a best candidate with its confidence.

-------------------------------------------------------------------------------

Copyright (c) 2025 Facundo Gauna & Ulises Carnevale. Licensed under MIT License.
"""

from __future__ import annotations

import logging
import math
import warnings
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Dict, List, Mapping, Optional, Sequence, Tuple

import numpy as np
from scipy import stats

from sticker_vision.app_types import Observation, Outcome
from sticker_vision.config import MIN_SESSIONS, TIE_TOLERANCE

logger = logging.getLogger(__name__)
logger.addHandler(logging.NullHandler())


@dataclass(frozen=True)
class CandidateScore:
    tile_id: str
    f_statistic: float
    p_value: float
    n_observations: int

    @property
    def confidence(self) -> float:
        return min(1.0, max(0.0, 1.0 - self.p_value))


@dataclass(frozen=True)
class SignificanceResult:
    outcome: Outcome
    best_tile: Optional[str] = None
    confidence: float = 0.0
    scores: Tuple[CandidateScore, ...] = field(default_factory=tuple)
    n_sessions: int = 0

    def score_for(self, tile_id: str) -> Optional[CandidateScore]:
        for s in self.scores:
            if s.tile_id == tile_id:
                return s
        return None


def one_way_anova(groups: Sequence[np.ndarray]) -> Tuple[float, float]:
    """F statistic and p-value across groups; degenerate inputs give (nan, nan)."""
    groups = [np.asarray(g, dtype=float) for g in groups if len(g) > 0]
    n_total = sum(len(g) for g in groups)
    if len(groups) < 2 or n_total <= len(groups):
        return math.nan, math.nan
    with warnings.catch_warnings():
        # constant input / zero within-group variance produce warnings + nan/inf
        warnings.simplefilter("ignore")
        res = stats.f_oneway(*groups)
    return float(res.statistic), float(res.pvalue)


class SignificanceEngine:
    """Scores candidate tile assignments for single pixels."""

    def __init__(self,
                 palette: Mapping[str, Sequence[float]],
                 tie_tolerance: float = TIE_TOLERANCE,
                 min_sessions: int = MIN_SESSIONS):
        self.palette: Dict[str, np.ndarray] = {k: np.asarray(v, dtype=float) for k, v in palette.items()}
        self.tie_tolerance = float(tie_tolerance)
        self.min_sessions = int(min_sessions)

    def _score_candidate(self, tile_id: str, observations: List[Observation]) -> Optional[CandidateScore]:
        colors = []
        expected = []
        for obs in observations:
            ref = self.palette.get(obs.expected_label) if obs.expected_label is not None else None
            if ref is None or ref.shape[0] != len(obs.color_vector):
                logger.debug("[SignificanceEngine] pixel=%s tile=%s: no palette color for label %r",
                             obs.pixel_id, tile_id, obs.expected_label)
                continue
            colors.append(obs.color_vector)
            expected.append(obs.expected_label)
        if not colors:
            return None

        colors_np = np.asarray(colors, dtype=float)
        expected_np = np.asarray(expected)

        matched = np.empty(len(colors_np))
        alternatives: Dict[str, List[float]] = OrderedDict()
        for label, ref in self.palette.items():
            if ref.shape[0] != colors_np.shape[1]:
                continue
            dist = np.linalg.norm(colors_np - ref, axis=1)
            is_expected = expected_np == label
            matched[is_expected] = dist[is_expected]
            others = dist[~is_expected]
            if others.size:
                alternatives.setdefault(label, []).extend(others.tolist())

        if not alternatives:
            return None

        groups = [matched] + [np.asarray(v) for v in alternatives.values()]
        means = [float(np.mean(g)) for g in groups]
        matched_mean, best_alt_mean = means[0], min(means[1:])

        f_stat, p_value = one_way_anova(groups)
        if matched_mean >= best_alt_mean:
            # the expected colors fit worse than some other label: contradicted
            p_value = 1.0
        elif math.isnan(p_value):
            # zero spread inside every group: a perfect fit is a certain fit
            p_value = 0.0 if np.allclose(matched, matched[0]) else 1.0
            f_stat = math.inf if p_value == 0.0 else 0.0
        return CandidateScore(tile_id=tile_id,
                              f_statistic=f_stat,
                              p_value=min(1.0, max(0.0, p_value)),
                              n_observations=len(colors_np))

    def evaluate(self, observations: Sequence[Observation]) -> SignificanceResult:
        """Score every candidate tile present in one pixel's observations."""
        n_sessions = len({o.session_id for o in observations})
        if n_sessions < self.min_sessions:
            return SignificanceResult(Outcome.INSUFFICIENT_DATA, n_sessions=n_sessions)

        by_tile: Dict[str, List[Observation]] = OrderedDict()
        for obs in observations:
            by_tile.setdefault(obs.tile_candidate_id, []).append(obs)

        scores = []
        for tile_id, tile_obs in by_tile.items():
            score = self._score_candidate(tile_id, tile_obs)
            if score is not None:
                scores.append(score)
        if not scores:
            return SignificanceResult(Outcome.INSUFFICIENT_DATA, n_sessions=n_sessions)

        order = {t: i for i, t in enumerate(by_tile)}
        f_key = lambda s: -s.f_statistic if not math.isnan(s.f_statistic) else math.inf  # noqa: E731
        ranked = sorted(scores, key=lambda s: (s.p_value, f_key(s), order[s.tile_id]))
        best = ranked[0]

        if len(ranked) > 1 and abs(ranked[1].p_value - best.p_value) <= self.tie_tolerance:
            return SignificanceResult(Outcome.AMBIGUOUS, best_tile=best.tile_id,
                                      confidence=best.confidence, scores=tuple(ranked),
                                      n_sessions=n_sessions)

        return SignificanceResult(Outcome.OK, best_tile=best.tile_id,
                                  confidence=best.confidence, scores=tuple(ranked),
                                  n_sessions=n_sessions)
