"""
spatial_index.py — hierarchical partition over color space with exact KNN
=========================================================================

A 2^d-ary region tree: a quadtree for 2-D projected colors, an octree for
full 3-channel colors, and the same code for any other dimensionality. Each
node covers an axis-aligned box and splits at the box midpoint into up to
2^d children (only non-empty children are kept) until a leaf holds at most
`capacity` samples. Boxes that collapse to a point (many identical colors)
or reach `max_depth` stay leaves regardless of size.

Query
- `query(point, k)` is a best-first branch-and-bound search: nodes are
  visited in order of their box distance to the point, and a node is pruned
  once that distance is strictly greater than the current k-th best. Equal
  distances are not pruned so the insertion-order tie break stays exact.
- Results are `Neighbor(distance, insertion_index, sample)` sorted by
  (distance, insertion_index). Squared distances are compared, so results
  are bitwise reproducible for identical index state.

The index is immutable once built; rebuilding means constructing a new one
(see `predictor.ColorModelRegistry` for the snapshot swap).

------------------------------------------------------------------

Copyright (c) 2025 Facundo Gauna & Ulises Carnevale. MIT License.
"""

from __future__ import annotations

import heapq
import itertools
from typing import List, NamedTuple, Optional, Sequence

import numpy as np

from sticker_vision.app_types import ColorSample
from sticker_vision.config import LEAF_CAPACITY, MAX_TREE_DEPTH


class Neighbor(NamedTuple):
    distance: float
    insertion_index: int
    sample: ColorSample


class _Node:
    __slots__ = ("lo", "hi", "indices", "children")

    def __init__(self, lo: np.ndarray, hi: np.ndarray):
        self.lo = lo
        self.hi = hi
        self.indices: Optional[np.ndarray] = None
        self.children: List["_Node"] = []

    @property
    def is_leaf(self) -> bool:
        return self.indices is not None

    def min_dist2(self, point: np.ndarray) -> float:
        # distance from point to the box, 0 when inside
        delta = np.maximum(self.lo - point, 0.0) + np.maximum(point - self.hi, 0.0)
        return float(np.dot(delta, delta))


class SpatialIndex:
    def __init__(self,
                 samples: Sequence[ColorSample],
                 capacity: int = LEAF_CAPACITY,
                 max_depth: int = MAX_TREE_DEPTH):
        if capacity < 1:
            raise ValueError("capacity must be >= 1")
        self.capacity = int(capacity)
        self.max_depth = int(max_depth)
        self._samples: List[ColorSample] = list(samples)

        if self._samples:
            self._points = np.asarray([s.color_vector for s in self._samples], dtype=float)
            if self._points.ndim != 2:
                raise ValueError("all samples must share the same dimensionality")
        else:
            self._points = np.empty((0, 0), dtype=float)
        self._root: Optional[_Node] = None
        if len(self._samples):
            all_idx = np.arange(len(self._samples))
            self._root = self._build(all_idx, self._points.min(axis=0), self._points.max(axis=0), 0)

    @classmethod
    def from_points(cls, points, labels: Optional[Sequence[str]] = None,
                    tile_id: str = "", **kwargs) -> "SpatialIndex":
        pts = np.asarray(points, dtype=float)
        if labels is None:
            labels = [""] * len(pts)
        samples = [ColorSample(tuple(float(v) for v in p), tile_id, lab) for p, lab in zip(pts, labels)]
        return cls(samples, **kwargs)

    # ----- build -----

    def _build(self, indices: np.ndarray, lo: np.ndarray, hi: np.ndarray, depth: int) -> _Node:
        node = _Node(lo, hi)
        if len(indices) <= self.capacity or depth >= self.max_depth or np.all(hi <= lo):
            node.indices = indices
            return node

        center = (lo + hi) / 2.0
        pts = self._points[indices]
        upper = pts >= center
        # child code: bit d set when the point is in the upper half of axis d
        weights = (1 << np.arange(pts.shape[1], dtype=np.int64))
        codes = upper.astype(np.int64) @ weights

        for code in np.unique(codes):
            child_idx = indices[codes == code]
            bits = ((int(code) >> np.arange(pts.shape[1])) & 1).astype(bool)
            child_lo = np.where(bits, center, lo)
            child_hi = np.where(bits, hi, center)
            node.children.append(self._build(child_idx, child_lo, child_hi, depth + 1))
        return node

    # ----- properties -----

    def __len__(self) -> int:
        return len(self._samples)

    @property
    def dim(self) -> int:
        return int(self._points.shape[1]) if len(self._samples) else 0

    @property
    def samples(self) -> List[ColorSample]:
        return list(self._samples)

    def depth(self) -> int:
        def _d(node: _Node) -> int:
            return 0 if node.is_leaf else 1 + max(_d(c) for c in node.children)
        return _d(self._root) if self._root is not None else 0

    # ----- query -----

    def query(self, point, k: int) -> List[Neighbor]:
        """The k nearest samples to `point`, sorted by (distance, insertion order)."""
        if k <= 0:
            raise ValueError("k must be >= 1")
        if self._root is None:
            return []
        p = np.asarray(point, dtype=float).reshape(-1)
        if p.shape[0] != self.dim:
            raise ValueError(f"query point has dimension {p.shape[0]}, index has {self.dim}")
        k = min(k, len(self._samples))

        # max-heap of the best k as (-dist2, -index)
        best: List[tuple] = []
        counter = itertools.count()
        frontier = [(self._root.min_dist2(p), next(counter), self._root)]

        while frontier:
            d2, _, node = heapq.heappop(frontier)
            if len(best) == k and d2 > -best[0][0]:
                break
            if node.is_leaf:
                idx = node.indices
                diff = self._points[idx] - p
                dists = np.einsum('ij,ij->i', diff, diff)
                for dist2, i in zip(dists.tolist(), idx.tolist()):
                    item = (-dist2, -i)
                    if len(best) < k:
                        heapq.heappush(best, item)
                    elif item > best[0]:
                        # closer, or equally close and inserted earlier
                        heapq.heapreplace(best, item)
            else:
                for child in node.children:
                    cd2 = child.min_dist2(p)
                    if len(best) < k or cd2 <= -best[0][0]:
                        heapq.heappush(frontier, (cd2, next(counter), child))

        ordered = sorted((-d2, -i) for d2, i in best)
        return [Neighbor(float(np.sqrt(d2)), i, self._samples[i]) for d2, i in ordered]

    def kth_distance(self, point, k: int) -> Optional[float]:
        res = self.query(point, k)
        return res[-1].distance if res else None
