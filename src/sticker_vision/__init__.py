"""Sticker color calibration and prediction.

Copyright (c) 2025 Facundo Gauna & Ulises Carnevale. MIT License.
"""

from sticker_vision.aggregator import ConfidenceAggregator, aggregate
from sticker_vision.app_types import (
    AssignmentState,
    CalibrationSession,
    Decision,
    Observation,
    Outcome,
    PixelAssignment,
    PredictionResult,
)
from sticker_vision.config import PipelineConfig, load_config
from sticker_vision.pipeline import CalibrationPipeline

__version__ = "0.1.0"

__all__ = [
    "AssignmentState",
    "CalibrationPipeline",
    "CalibrationSession",
    "ConfidenceAggregator",
    "Decision",
    "Observation",
    "Outcome",
    "PipelineConfig",
    "PixelAssignment",
    "PredictionResult",
    "aggregate",
    "load_config",
]
