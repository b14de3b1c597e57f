"""
sample_store.py — append-only log of calibration observations
=============================================================

Every calibration session (a batch of images with a known tile -> color
reference per image) is turned into Observations: one per pixel, per image,
per declared candidate tile. The store never deletes; corrections are new
sessions.

## Primary classes / functions

* SampleStore

  * `add_session(session, image_batch, mapping)`: validate the whole batch,
    extract one color vector per mapped pixel per image and append the
    Observations. Raises `MalformedSession` before touching the log when
    anything is inconsistent.
  * `query_by_pixel(pixel_id)` / `query_by_tile(tile_id)`: insertion-ordered
    reads (sessions are appended in order, so this is session order).
  * `label_medians(assignments)`: per reference label, the median observed
    color over the observations that expected that label, optionally only
    those of a pixel under its assigned tile. Usable as a learned palette.
  * `save(path)` / `load(path)`: lossless JSON persistence so calibration
    can resume after a restart.

* extract_colors(image, pixel_ids, colorspace=None)

  * Pixel ids index the row-major flattened image, so the core never cares
    about rows and columns. `colorspace` is an OpenCV conversion suffix
    applied to BGR input (e.g. "LAB" -> `cv2.COLOR_BGR2LAB`).

## Data formats

```json
{
  "sessions": [{"session_id": "s1", "known_reference_sequence": [{"U1": "red"}]}],
  "observations": [{"pixel_id": 12, "tile_candidate_id": "U1",
                    "color_vector": [30.0, 31.0, 199.0], "session_id": "s1",
                    "timestamp": 1700000000.0, "image_index": 0,
                    "expected_label": "red"}]
}
```

-------------------------------------------------------------------------------

Copyright (c) 2025 Facundo Gauna & Ulises Carnevale. Licensed under MIT License.
"""

from __future__ import annotations

import json
import logging
import threading
import time
from collections import defaultdict
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Mapping, Optional, Sequence

import cv2
import numpy as np

from sticker_vision.app_types import CalibrationSession, Observation
from sticker_vision.errors import MalformedSession

logger = logging.getLogger(__name__)
logger.addHandler(logging.NullHandler())

ColorCorrection = Callable[[np.ndarray], np.ndarray]


# ---------- Image helpers ----------

def _convert_colorspace(image: np.ndarray, colorspace: Optional[str]) -> np.ndarray:
    if not colorspace:
        return image
    code_name = f"COLOR_BGR2{colorspace.upper()}"
    code = getattr(cv2, code_name, None)
    if code is None:
        raise ValueError(f"Unsupported colorspace: {colorspace}")
    if image.ndim != 3 or image.shape[2] != 3:
        raise ValueError("Colorspace conversion needs a 3-channel BGR image")
    # cv2 only converts uint8/uint16/float32
    if image.dtype not in (np.uint8, np.uint16, np.float32):
        image = image.astype(np.float32)
    return cv2.cvtColor(image, code)


def flatten_image(image: np.ndarray, colorspace: Optional[str] = None) -> np.ndarray:
    """Return the image as an (n_pixels, channels) float array."""
    img = _convert_colorspace(np.asarray(image), colorspace)
    if img.ndim == 1:
        return img.astype(float).reshape(-1, 1)
    if img.ndim == 2:
        return img.astype(float).reshape(-1, 1)
    return img.reshape(-1, img.shape[-1]).astype(float)


def extract_colors(image: np.ndarray,
                   pixel_ids: Sequence[int],
                   colorspace: Optional[str] = None,
                   correction: Optional[ColorCorrection] = None) -> np.ndarray:
    """Color vector of each pixel id, as an (len(pixel_ids), channels) array."""
    flat = flatten_image(image, colorspace)
    ids = np.asarray(list(pixel_ids), dtype=np.int64)
    colors = flat[ids] if ids.size else np.empty((0, flat.shape[1]), dtype=float)
    if correction is not None and colors.size:
        colors = np.vstack([np.asarray(correction(c), dtype=float) for c in colors])
    return colors


# ---------- Store ----------

class SampleStore:
    """Append-only repository of calibration Observations."""

    def __init__(self,
                 colorspace: Optional[str] = None,
                 correction: Optional[ColorCorrection] = None,
                 clock: Callable[[], float] = time.time):
        self.colorspace = colorspace
        self.correction = correction
        self._clock = clock
        self._lock = threading.Lock()
        self._observations: List[Observation] = []
        self._sessions: List[CalibrationSession] = []
        self._by_pixel: Dict[int, List[int]] = defaultdict(list)
        self._by_tile: Dict[str, List[int]] = defaultdict(list)
        self._by_session: Dict[str, List[int]] = defaultdict(list)

    # ----- validation -----

    def _validate(self,
                  session: CalibrationSession,
                  images: List[np.ndarray],
                  mapping: Dict[int, tuple]) -> int:
        if not images:
            raise MalformedSession(f"Session {session.session_id!r}: empty image batch")
        if any(s.session_id == session.session_id for s in self._sessions):
            raise MalformedSession(f"Session {session.session_id!r} already recorded")
        shapes = {img.shape for img in images}
        if len(shapes) != 1:
            raise MalformedSession(f"Session {session.session_id!r}: images have different shapes {sorted(shapes)}")
        n_pixels = int(np.prod(images[0].shape[:2])) if images[0].ndim >= 2 else int(images[0].shape[0])
        if not mapping:
            raise MalformedSession(f"Session {session.session_id!r}: empty pixel mapping")

        refs = session.known_reference_sequence
        if len(refs) != len(images):
            raise MalformedSession(
                f"Session {session.session_id!r}: {len(refs)} reference mappings for {len(images)} images")

        for pixel_id, candidates in mapping.items():
            if pixel_id < 0 or pixel_id >= n_pixels:
                raise MalformedSession(f"Session {session.session_id!r}: unknown pixel {pixel_id}")
            if not candidates:
                raise MalformedSession(f"Session {session.session_id!r}: pixel {pixel_id} has no candidate tiles")
            for tile in candidates:
                for i, ref in enumerate(refs):
                    if tile not in ref:
                        raise MalformedSession(
                            f"Session {session.session_id!r}: tile {tile!r} missing from reference of image {i}")
        return n_pixels

    # ----- writes -----

    def add_session(self,
                    session: CalibrationSession,
                    image_batch: Iterable[np.ndarray],
                    mapping: Mapping[int, Iterable[str]]) -> List[Observation]:
        """Append the Observations of one calibration session and return them."""
        images = [np.asarray(img) for img in image_batch]
        try:
            norm_mapping = {int(p): tuple(dict.fromkeys(str(t) for t in c)) for p, c in mapping.items()}
        except (TypeError, ValueError) as e:
            raise MalformedSession(f"Session {session.session_id!r}: bad pixel mapping ({e})") from e

        pixel_ids = sorted(norm_mapping)
        new_obs: List[Observation] = []

        with self._lock:
            self._validate(session, images, norm_mapping)
            refs = session.known_reference_sequence
            ts = float(self._clock())
            for image_index, img in enumerate(images):
                colors = extract_colors(img, pixel_ids, self.colorspace, self.correction)
                for pixel_id, color in zip(pixel_ids, colors):
                    vec = tuple(float(v) for v in color)
                    for tile in norm_mapping[pixel_id]:
                        new_obs.append(Observation(
                            pixel_id=pixel_id,
                            tile_candidate_id=tile,
                            color_vector=vec,
                            session_id=session.session_id,
                            timestamp=ts,
                            image_index=image_index,
                            expected_label=refs[image_index][tile],
                        ))
            self._sessions.append(session)
            self._append(new_obs)

        logger.info("[SampleStore.add_session] session=%s images=%d pixels=%d observations=%d",
                    session.session_id, len(images), len(pixel_ids), len(new_obs))
        return new_obs

    def _append(self, observations: Iterable[Observation]):
        for obs in observations:
            idx = len(self._observations)
            self._observations.append(obs)
            self._by_pixel[obs.pixel_id].append(idx)
            self._by_tile[obs.tile_candidate_id].append(idx)
            self._by_session[obs.session_id].append(idx)

    # ----- reads -----

    def query_by_pixel(self, pixel_id: int) -> List[Observation]:
        return [self._observations[i] for i in list(self._by_pixel.get(pixel_id, ()))]

    def query_by_tile(self, tile_id: str) -> List[Observation]:
        return [self._observations[i] for i in list(self._by_tile.get(tile_id, ()))]

    def pixels_in_session(self, session_id: str) -> List[int]:
        seen = dict.fromkeys(self._observations[i].pixel_id for i in list(self._by_session.get(session_id, ())))
        return list(seen)

    def sessions(self) -> List[CalibrationSession]:
        return list(self._sessions)

    def pixel_ids(self) -> List[int]:
        return sorted(self._by_pixel)

    def tile_ids(self) -> List[str]:
        return sorted(self._by_tile)

    def observations(self) -> List[Observation]:
        return list(self._observations)

    def __len__(self) -> int:
        return len(self._observations)

    def label_medians(self,
                      assignments: Optional[Mapping[int, str]] = None,
                      sessions: Optional[Iterable[str]] = None) -> Dict[str, tuple]:
        """Median observed color per expected label (a learned reference palette).

        With `assignments` (pixel -> tile) only observations of a pixel under
        its assigned tile count; otherwise every candidate's observation does.
        `sessions` restricts the observations to those session ids.
        """
        wanted = set(sessions) if sessions is not None else None
        grouped: Dict[str, List[tuple]] = defaultdict(list)
        for obs in list(self._observations):
            if wanted is not None and obs.session_id not in wanted:
                continue
            if assignments is not None and assignments.get(obs.pixel_id) != obs.tile_candidate_id:
                continue
            if obs.expected_label is not None:
                grouped[obs.expected_label].append(obs.color_vector)
        return {label: tuple(float(v) for v in np.median(np.asarray(vecs, dtype=float), axis=0))
                for label, vecs in sorted(grouped.items())}

    # ----- persistence -----

    def to_records(self) -> Dict[str, list]:
        with self._lock:
            return {
                'sessions': [s.to_record() for s in self._sessions],
                'observations': [o.to_record() for o in self._observations],
            }

    @classmethod
    def from_records(cls, data: Mapping[str, list], **kwargs) -> "SampleStore":
        store = cls(**kwargs)
        store._sessions = [CalibrationSession.from_record(r) for r in data.get('sessions', [])]
        store._append(Observation.from_record(r) for r in data.get('observations', []))
        return store

    def save(self, path: Path) -> None:
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(json.dumps(self.to_records(), indent=2), encoding='utf-8')
        logger.info("[SampleStore.save] %d observations saved to %s", len(self), path)

    @classmethod
    def load(cls, path: Path, **kwargs) -> "SampleStore":
        path = Path(path)
        data = json.loads(path.read_text(encoding='utf-8'))
        store = cls.from_records(data, **kwargs)
        logger.info("[SampleStore.load] %d observations, %d sessions loaded from %s",
                    len(store), len(store._sessions), path)
        return store
