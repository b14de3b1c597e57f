from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional, Tuple

ColorVector = Tuple[float, ...]


class AssignmentState(str, Enum):
    PENDING = "Pending"
    ACTIVE = "Active"
    CONVERGED = "Converged"
    FINALIZED = "Finalized"


class Outcome(str, Enum):
    OK = "Ok"
    INSUFFICIENT_DATA = "InsufficientData"
    AMBIGUOUS = "Ambiguous"
    UNRESOLVED = "Unresolved"


class Decision(str, Enum):
    ACCEPT = "accept"
    REJECT = "reject"
    CANCEL = "cancel"


@dataclass(frozen=True)
class Observation:
    pixel_id: int
    tile_candidate_id: str
    color_vector: ColorVector
    session_id: str
    timestamp: float
    image_index: int = 0
    # reference color of tile_candidate_id in this image
    expected_label: Optional[str] = None

    def to_record(self) -> Dict[str, object]:
        return {
            'pixel_id': self.pixel_id,
            'tile_candidate_id': self.tile_candidate_id,
            'color_vector': list(self.color_vector),
            'session_id': self.session_id,
            'timestamp': self.timestamp,
            'image_index': self.image_index,
            'expected_label': self.expected_label,
        }

    @classmethod
    def from_record(cls, rec: Dict[str, object]) -> "Observation":
        return cls(
            pixel_id=int(rec['pixel_id']),
            tile_candidate_id=str(rec['tile_candidate_id']),
            color_vector=tuple(float(v) for v in rec['color_vector']),
            session_id=str(rec['session_id']),
            timestamp=float(rec['timestamp']),
            image_index=int(rec.get('image_index', 0)),
            expected_label=rec.get('expected_label'),
        )


@dataclass(frozen=True)
class CalibrationSession:
    session_id: str
    # one tile_id -> color_label mapping per image of the batch
    known_reference_sequence: Tuple[Dict[str, str], ...] = ()

    def __post_init__(self):
        # accept any sequence (lists from JSON) but store a tuple
        object.__setattr__(self, 'known_reference_sequence',
                           tuple(dict(m) for m in self.known_reference_sequence))

    def to_record(self) -> Dict[str, object]:
        return {'session_id': self.session_id,
                'known_reference_sequence': [dict(m) for m in self.known_reference_sequence]}

    @classmethod
    def from_record(cls, rec: Dict[str, object]) -> "CalibrationSession":
        return cls(str(rec['session_id']), tuple(rec.get('known_reference_sequence', ())))


@dataclass(frozen=True)
class PixelAssignment:
    pixel_id: int
    tile_id: Optional[str] = None
    confidence: float = 0.0
    alpha_used: float = 0.0
    state: AssignmentState = AssignmentState.PENDING
    candidates: Tuple[str, ...] = ()
    outcome: Optional[Outcome] = None
    streak: int = 0
    rounds: int = 0
    unresolved: bool = False

    def to_dict(self) -> Dict[str, object]:
        return {
            'pixel_id': self.pixel_id,
            'tile_id': self.tile_id,
            'confidence': self.confidence,
            'alpha_used': self.alpha_used,
            'state': self.state.value,
            'candidates': list(self.candidates),
            'outcome': self.outcome.value if self.outcome else None,
            'streak': self.streak,
            'rounds': self.rounds,
            'unresolved': self.unresolved,
        }


@dataclass(frozen=True)
class ColorSample:
    color_vector: ColorVector
    tile_id: str
    color_label: str


@dataclass
class PredictionResult:
    tile_id: str
    color_label: str
    per_pixel_confidences: List[float] = field(default_factory=list)
    # None means "no evidence" (empty pixel set)
    aggregated_confidence: Optional[float] = None
