"""config.py — pipeline configuration
------------------------------------

This file centralizes default runtime constants for the sticker calibration
and prediction pipeline. Keep in mind these are *defaults* for development;
prefer overriding them at runtime through `load_config()` (a small JSON
settings loader) for real capture setups.

Notes / warnings
- The significance values (alpha, decay, floor) trade calibration speed
  against the risk of locking a pixel to the wrong tile. See tuning notes
  near each group.
- Colors are compared in whatever colorspace the images were extracted in.
  The default palette is BGR (OpenCV order); the pipeline converts it to the
  extraction colorspace and refines it with colors of finalized pixels.

-------------------------------------------------------------------------------

Copyright (c) 2025 Facundo Gauna & Ulises Carnevale. Licensed under MIT License.
"""

from __future__ import annotations

import json
from dataclasses import asdict, dataclass, fields
from pathlib import Path
from typing import Dict, Optional, Tuple

# ---------------- Calibration (significance) ----------------

# Starting significance threshold. A candidate tile needs confidence
# (1 - p_value) above 1 - alpha to be accepted.
INITIAL_ALPHA: float = 0.05
# Applied once per calibration session while a pixel is Active.
ALPHA_DECAY: float = 0.9
# Below this the pixel is reported as Unresolved and alpha stops shrinking.
ALPHA_FLOOR: float = 1e-4
# Consecutive sessions above threshold needed to reach Converged.
CONSECUTIVE_REQUIRED: int = 2
# Two candidates whose p-values differ by at most this are Ambiguous.
TIE_TOLERANCE: float = 1e-3
# Distinct sessions a pixel needs before ANOVA is attempted.
MIN_SESSIONS: int = 2

# ---------------- Spatial index / density ----------------

LEAF_CAPACITY: int = 16
MAX_TREE_DEPTH: int = 24
KNN_K: int = 10
# k is also capped at size // KNN_MAX_FRACTION so tiny sample pools are not
# dominated by their farthest members.
KNN_MAX_FRACTION: int = 8

# ---------------- Aggregation ----------------

CONFIDENCE_PERCENTILE: float = 80.0
# Pools above the threshold are reduced to SUBSAMPLE_SIZE pixels.
SUBSAMPLE_THRESHOLD: int = 2000
SUBSAMPLE_SIZE: int = 500
SUBSAMPLE_SEED: int = 0

# ---------------- Concurrency ----------------

MAX_WORKERS: int = 4
REVIEW_TIMEOUT: Optional[float] = None

# ---------------- Reference palette ----------------

# Canonical sticker colors (BGR, 0..255) used as the expected values of the
# calibration ANOVA when no palette is configured.
CANONICAL_BGR: Dict[str, Tuple[int, int, int]] = {
    'red': (30, 30, 200),
    'orange': (10, 120, 200),
    'yellow': (0, 200, 200),
    'green': (0, 150, 40),
    'blue': (180, 50, 0),
    'white': (200, 200, 200),
}

# ---------------- Review server ----------------

REVIEW_HOST = "127.0.0.1"
REVIEW_PORT = 5001

# ---------------- Filesystem paths ----------------
# Relative paths are resolved against the current working directory by the
# CLI; library code never reads these implicitly.
SAMPLES_PATH = Path("calibration") / "samples.json"
ASSIGNMENTS_PATH = Path("calibration") / "assignments.json"


@dataclass
class PipelineConfig:
    initial_alpha: float = INITIAL_ALPHA
    alpha_decay: float = ALPHA_DECAY
    alpha_floor: float = ALPHA_FLOOR
    consecutive_required: int = CONSECUTIVE_REQUIRED
    tie_tolerance: float = TIE_TOLERANCE
    min_sessions: int = MIN_SESSIONS

    leaf_capacity: int = LEAF_CAPACITY
    max_tree_depth: int = MAX_TREE_DEPTH
    knn_k: int = KNN_K
    knn_max_fraction: int = KNN_MAX_FRACTION

    percentile: float = CONFIDENCE_PERCENTILE
    normalize_output: bool = False
    subsample_threshold: Optional[int] = SUBSAMPLE_THRESHOLD
    subsample_size: int = SUBSAMPLE_SIZE
    subsample_seed: int = SUBSAMPLE_SEED

    max_workers: int = MAX_WORKERS
    review_timeout: Optional[float] = REVIEW_TIMEOUT

    # None -> CANONICAL_BGR (converted to `colorspace`) refined by the medians of finalized pixels
    palette: Optional[Dict[str, Tuple[float, ...]]] = None
    # OpenCV conversion suffix applied to BGR images, e.g. "LAB" or "HSV"
    colorspace: Optional[str] = None

    review_host: str = REVIEW_HOST
    review_port: int = REVIEW_PORT

    def validate(self) -> "PipelineConfig":
        """Raise ValueError on out-of-range values; returns self for chaining."""
        if not 0.0 < self.initial_alpha < 1.0:
            raise ValueError(f"initial_alpha must be in (0, 1), got {self.initial_alpha}")
        if not 0.0 < self.alpha_decay <= 1.0:
            raise ValueError(f"alpha_decay must be in (0, 1], got {self.alpha_decay}")
        if not 0.0 < self.alpha_floor <= self.initial_alpha:
            raise ValueError("alpha_floor must be in (0, initial_alpha]")
        if self.consecutive_required < 1:
            raise ValueError("consecutive_required must be >= 1")
        if self.tie_tolerance < 0:
            raise ValueError("tie_tolerance must be >= 0")
        if self.min_sessions < 1:
            raise ValueError("min_sessions must be >= 1")
        if self.leaf_capacity < 1 or self.knn_k < 1 or self.knn_max_fraction < 1:
            raise ValueError("leaf_capacity, knn_k and knn_max_fraction must be >= 1")
        if not 0.0 < self.percentile <= 100.0:
            raise ValueError(f"percentile must be in (0, 100], got {self.percentile}")
        if self.subsample_threshold is not None and self.subsample_size < 1:
            raise ValueError("subsample_size must be >= 1")
        if self.max_workers < 1:
            raise ValueError("max_workers must be >= 1")
        return self

    @classmethod
    def from_dict(cls, data: Dict[str, object]) -> "PipelineConfig":
        known = {f.name for f in fields(cls)}
        unknown = sorted(set(data) - known)
        if unknown:
            raise ValueError(f"Unknown config keys: {', '.join(unknown)}")
        values = dict(data)
        if values.get('palette') is not None:
            values['palette'] = {str(k): tuple(float(c) for c in v) for k, v in values['palette'].items()}
        return cls(**values).validate()

    def to_dict(self) -> Dict[str, object]:
        return asdict(self)


def load_config(path: Optional[Path] = None) -> PipelineConfig:
    """Load a JSON config file over the defaults. Missing path -> defaults."""
    if path is None:
        return PipelineConfig().validate()
    path = Path(path)
    data = json.loads(path.read_text(encoding='utf-8'))
    if not isinstance(data, dict):
        raise ValueError(f"Config file {path} must contain a JSON object")
    return PipelineConfig.from_dict(data)
