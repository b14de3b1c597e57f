"""
refiner.py — iterative pixel -> tile assignment with human review
=================================================================

Drives the per-pixel calibration state machine:

    Pending -> Active -> Converged -> Finalized
                 ^          |
                 +----------+   (reject / cancel)

Threading model / shared state
- `observe_session()` evaluates every pixel touched by a session through the
  SignificanceEngine in a ThreadPoolExecutor. Pixels are independent; a
  failure in one is logged and recorded as InsufficientData for that pixel.
- All mutations happen under `self._lock`. After each mutation batch a new
  read-only mapping of frozen `PixelAssignment` snapshots is published with a
  single attribute assignment, so `snapshot()` / `query_assignment()` never
  block and never observe a half-applied round.
- Converged pixels are handed to the review UI through a `queue.Queue` of
  `ReviewTicket`s (producer = refiner, consumer = UI). A ticket is decided
  with accept/reject/cancel; `await_decision()` blocks on the ticket's
  Event and cancels on timeout, so the blocking step never loses data.

Alpha policy
- First session: Pending -> Active, evaluated, alpha left at its initial value.
- Every later session while Active: alpha = max(alpha * decay, floor). When
  alpha * decay drops under the floor the pixel is flagged Unresolved and
  stays Active until more data or a manual override.
- A best candidate different from the current tile replaces it only when its
  confidence exceeds 1 - alpha.
- Rejection resets alpha to its initial value.

Every review decision and override is journaled with the number of sessions
observed at that point, so `replay()` can rebuild the same state from the
stored sessions.

------------------------------------------------------------------

Copyright (c) 2025 Facundo Gauna & Ulises Carnevale. MIT License.
"""

from __future__ import annotations

import concurrent.futures
import dataclasses
import logging
import queue
import threading
from types import MappingProxyType
from typing import Callable, Dict, Iterable, List, Mapping, Optional

from sticker_vision.app_types import AssignmentState, Decision, Outcome, PixelAssignment
from sticker_vision.config import (
    ALPHA_DECAY,
    ALPHA_FLOOR,
    CONSECUTIVE_REQUIRED,
    INITIAL_ALPHA,
    MAX_WORKERS,
)
from sticker_vision.errors import InvalidTransition, UnknownPixel
from sticker_vision.sample_store import SampleStore
from sticker_vision.significance import SignificanceEngine, SignificanceResult

logger = logging.getLogger(__name__)
logger.addHandler(logging.NullHandler())

# journal entry for a manual override (review decisions use Decision values)
OVERRIDE = "override"


# ---------- Review tickets ----------

class ReviewTicket:
    """One pending human decision for a Converged pixel."""

    def __init__(self, pixel_id: int, tile_id: str, confidence: float,
                 resolver: Callable[["ReviewTicket", Decision], None]):
        self.pixel_id = pixel_id
        self.tile_id = tile_id
        self.confidence = confidence
        self.decision: Optional[Decision] = None
        self._resolver = resolver
        self._done = threading.Event()

    @property
    def is_open(self) -> bool:
        return not self._done.is_set()

    def accept(self):
        self._resolver(self, Decision.ACCEPT)

    def reject(self):
        self._resolver(self, Decision.REJECT)

    def cancel(self):
        self._resolver(self, Decision.CANCEL)

    def wait(self, timeout: Optional[float] = None) -> Optional[Decision]:
        self._done.wait(timeout)
        return self.decision

    def _close(self, decision: Decision):
        self.decision = decision
        self._done.set()

    def to_dict(self) -> Dict[str, object]:
        return {'pixel_id': self.pixel_id, 'tile_id': self.tile_id,
                'confidence': self.confidence,
                'decision': self.decision.value if self.decision else None}

    def __repr__(self):
        return f"ReviewTicket(pixel_id={self.pixel_id}, tile_id={self.tile_id!r}, decision={self.decision})"


# ---------- Refiner ----------

class AssignmentRefiner:
    def __init__(self,
                 store: SampleStore,
                 engine: SignificanceEngine,
                 initial_alpha: float = INITIAL_ALPHA,
                 decay_factor: float = ALPHA_DECAY,
                 alpha_floor: float = ALPHA_FLOOR,
                 consecutive_required: int = CONSECUTIVE_REQUIRED,
                 max_workers: int = MAX_WORKERS):
        self.store = store
        self.engine = engine
        self.initial_alpha = float(initial_alpha)
        self.decay_factor = float(decay_factor)
        self.alpha_floor = float(alpha_floor)
        self.consecutive_required = int(consecutive_required)
        self.max_workers = int(max_workers)

        self._lock = threading.RLock()
        self._assignments: Dict[int, PixelAssignment] = {}
        self._published: Mapping[int, PixelAssignment] = MappingProxyType({})
        self._last_results: Dict[int, SignificanceResult] = {}
        self._tickets: Dict[int, ReviewTicket] = {}
        self._review_queue: "queue.Queue[ReviewTicket]" = queue.Queue()
        self._seen_sessions: List[str] = []
        self._finalized_listeners: List[Callable[[PixelAssignment], None]] = []
        self._journal: List[Dict[str, object]] = []

    # ----- reads (non-blocking) -----

    def snapshot(self) -> Mapping[int, PixelAssignment]:
        """Current assignment of every known pixel. Never blocks, never mutates."""
        return self._published

    def query_assignment(self, pixel_id: int) -> PixelAssignment:
        try:
            return self._published[pixel_id]
        except KeyError:
            raise UnknownPixel(pixel_id) from None

    def last_result(self, pixel_id: int) -> Optional[SignificanceResult]:
        return self._last_results.get(pixel_id)

    def reviewable(self) -> Dict[int, PixelAssignment]:
        """Active and Converged pixels, for display."""
        return {p: a for p, a in self._published.items()
                if a.state in (AssignmentState.ACTIVE, AssignmentState.CONVERGED)}

    def finalized(self) -> Dict[int, str]:
        return {p: a.tile_id for p, a in self._published.items()
                if a.state is AssignmentState.FINALIZED}

    def open_tickets(self) -> List[ReviewTicket]:
        return [t for t in list(self._tickets.values()) if t.is_open]

    def journal(self) -> List[Dict[str, object]]:
        """Every review decision and override, tagged with the number of sessions
        observed when it was made. `replay()` re-applies it."""
        with self._lock:
            return [dict(e) for e in self._journal]

    def _record(self, pixel_id: int, decision: str, tile_id: Optional[str]):
        self._journal.append({'round': len(self._seen_sessions), 'pixel_id': pixel_id,
                              'decision': decision, 'tile_id': tile_id})

    def _publish(self):
        self._published = MappingProxyType(dict(self._assignments))

    def on_finalized(self, callback: Callable[[PixelAssignment], None]) -> None:
        """Register a callback run after a pixel becomes Finalized."""
        self._finalized_listeners.append(callback)

    def _notify_finalized(self, assignment: PixelAssignment):
        for cb in list(self._finalized_listeners):
            try:
                cb(assignment)
            except Exception as e:
                logger.exception("[AssignmentRefiner] finalized listener failed for pixel %s: %s",
                                 assignment.pixel_id, e)

    # ----- calibration rounds -----

    def observe_session(self, session_id: str) -> Dict[int, PixelAssignment]:
        """Advance every pixel that received observations in `session_id`."""
        pixel_ids = self.store.pixels_in_session(session_id)
        with self._lock:
            if session_id in self._seen_sessions:
                logger.warning("[AssignmentRefiner.observe_session] session %s already observed", session_id)
                return {}
            self._seen_sessions.append(session_id)
            work = [p for p in pixel_ids
                    if p not in self._assignments
                    or self._assignments[p].state in (AssignmentState.PENDING, AssignmentState.ACTIVE)]
            for p in pixel_ids:
                if p not in self._assignments:
                    self._assignments[p] = PixelAssignment(pixel_id=p, alpha_used=self.initial_alpha)

        results = self._evaluate_many(work)

        changed: Dict[int, PixelAssignment] = {}
        with self._lock:
            for pixel_id in work:
                before = self._assignments[pixel_id]
                if before.state not in (AssignmentState.PENDING, AssignmentState.ACTIVE):
                    continue  # overridden while the round was computing
                after = self._advance(before, results[pixel_id])
                self._assignments[pixel_id] = after
                self._last_results[pixel_id] = results[pixel_id]
                changed[pixel_id] = after
                if after.state is AssignmentState.CONVERGED:
                    self._open_ticket(after)
            self._publish()

        converged = sum(1 for a in changed.values() if a.state is AssignmentState.CONVERGED)
        logger.info("[AssignmentRefiner.observe_session] session=%s pixels=%d converged=%d",
                    session_id, len(changed), converged)
        return changed

    def _visible(self, pixel_id: int):
        # only sessions this refiner has observed, so a replay sees what the live run saw
        seen = set(self._seen_sessions)
        return [o for o in self.store.query_by_pixel(pixel_id) if o.session_id in seen]

    def _evaluate_one(self, pixel_id: int) -> SignificanceResult:
        try:
            return self.engine.evaluate(self._visible(pixel_id))
        except Exception as e:
            logger.exception("[AssignmentRefiner._evaluate_one] pixel %s failed: %s", pixel_id, e)
            return SignificanceResult(Outcome.INSUFFICIENT_DATA)

    def _evaluate_many(self, pixel_ids: List[int]) -> Dict[int, SignificanceResult]:
        if not pixel_ids:
            return {}
        if self.max_workers <= 1 or len(pixel_ids) == 1:
            return {p: self._evaluate_one(p) for p in pixel_ids}
        with concurrent.futures.ThreadPoolExecutor(max_workers=self.max_workers) as pool:
            return dict(zip(pixel_ids, pool.map(self._evaluate_one, pixel_ids)))

    def _advance(self, current: PixelAssignment, result: SignificanceResult) -> PixelAssignment:
        candidates = tuple(dict.fromkeys(o.tile_candidate_id for o in self._visible(current.pixel_id)))

        if current.state is AssignmentState.PENDING:
            alpha = current.alpha_used or self.initial_alpha
            unresolved = False
            state = AssignmentState.ACTIVE
        else:
            decayed = current.alpha_used * self.decay_factor
            alpha = max(decayed, self.alpha_floor)
            unresolved = current.unresolved or decayed < self.alpha_floor
            state = AssignmentState.ACTIVE

        tile_id, confidence, streak = current.tile_id, current.confidence, current.streak
        threshold = 1.0 - alpha

        if result.outcome is Outcome.OK:
            if tile_id is None or result.best_tile == tile_id:
                tile_id = result.best_tile
                confidence = result.confidence
                streak = streak + 1 if confidence > threshold else 0
            elif result.confidence > threshold:
                logger.debug("[AssignmentRefiner] pixel %s switches %s -> %s (conf=%.6f)",
                             current.pixel_id, tile_id, result.best_tile, result.confidence)
                tile_id = result.best_tile
                confidence = result.confidence
                streak = 1
            else:
                # not enough evidence to abandon the current tile
                kept = result.score_for(tile_id)
                confidence = kept.confidence if kept is not None else 0.0
                streak = 0
        else:
            streak = 0
            kept = result.score_for(tile_id) if tile_id is not None else None
            if kept is not None:
                confidence = kept.confidence

        outcome = result.outcome
        if streak >= self.consecutive_required:
            state = AssignmentState.CONVERGED
        elif unresolved and outcome is Outcome.OK:
            outcome = Outcome.UNRESOLVED

        return dataclasses.replace(current,
                                   tile_id=tile_id,
                                   confidence=float(confidence),
                                   alpha_used=alpha,
                                   state=state,
                                   candidates=candidates,
                                   outcome=outcome,
                                   streak=streak,
                                   rounds=current.rounds + 1,
                                   unresolved=unresolved and state is not AssignmentState.CONVERGED)

    # ----- review (producer side) -----

    def _open_ticket(self, assignment: PixelAssignment):
        old = self._tickets.get(assignment.pixel_id)
        if old is not None and old.is_open:
            return
        ticket = ReviewTicket(assignment.pixel_id, assignment.tile_id, assignment.confidence, self._resolve)
        self._tickets[assignment.pixel_id] = ticket
        self._review_queue.put(ticket)
        logger.debug("[AssignmentRefiner] review requested for pixel %s -> %s", assignment.pixel_id, assignment.tile_id)

    def next_review(self, timeout: Optional[float] = None) -> Optional[ReviewTicket]:
        """Consumer side: next open ticket, or None when none arrives in time."""
        while True:
            try:
                ticket = self._review_queue.get(timeout=timeout) if timeout is not None else self._review_queue.get_nowait()
            except queue.Empty:
                return None
            if ticket.is_open:
                return ticket

    def _resolve(self, ticket: ReviewTicket, decision: Decision):
        with self._lock:
            if self._tickets.get(ticket.pixel_id) is not ticket:
                raise InvalidTransition(f"review ticket for pixel {ticket.pixel_id} is closed")
            if decision is Decision.ACCEPT:
                self.confirm(ticket.pixel_id, True)
            elif decision is Decision.REJECT:
                self.confirm(ticket.pixel_id, False)
            else:
                self.cancel_review(ticket.pixel_id)

    def _require(self, pixel_id: int) -> PixelAssignment:
        try:
            return self._assignments[pixel_id]
        except KeyError:
            raise UnknownPixel(pixel_id) from None

    def _close_ticket(self, pixel_id: int, decision: Decision):
        ticket = self._tickets.pop(pixel_id, None)
        if ticket is not None:
            ticket._close(decision)

    def confirm(self, pixel_id: int, accepted: bool) -> PixelAssignment:
        """Apply the reviewer's decision for a Converged pixel."""
        with self._lock:
            current = self._require(pixel_id)
            if current.state is not AssignmentState.CONVERGED:
                raise InvalidTransition(f"pixel {pixel_id} is {current.state.value}, not Converged")
            if accepted:
                after = dataclasses.replace(current, state=AssignmentState.FINALIZED)
                decision = Decision.ACCEPT
            else:
                after = dataclasses.replace(current, state=AssignmentState.ACTIVE,
                                            alpha_used=self.initial_alpha,
                                            streak=0, unresolved=False)
                decision = Decision.REJECT
            self._assignments[pixel_id] = after
            self._close_ticket(pixel_id, decision)
            self._record(pixel_id, decision.value, after.tile_id)
            self._publish()
        logger.info("[AssignmentRefiner.confirm] pixel %s %s (tile=%s)",
                    pixel_id, "finalized" if accepted else "rejected", after.tile_id)
        if accepted:
            self._notify_finalized(after)
        return after

    def cancel_review(self, pixel_id: int) -> PixelAssignment:
        """Abort a pending review: back to Active, alpha and data untouched."""
        with self._lock:
            current = self._require(pixel_id)
            if current.state is not AssignmentState.CONVERGED:
                raise InvalidTransition(f"pixel {pixel_id} is {current.state.value}, not Converged")
            after = dataclasses.replace(current, state=AssignmentState.ACTIVE, streak=0)
            self._assignments[pixel_id] = after
            self._close_ticket(pixel_id, Decision.CANCEL)
            self._record(pixel_id, Decision.CANCEL.value, after.tile_id)
            self._publish()
        logger.info("[AssignmentRefiner.cancel_review] pixel %s back to Active", pixel_id)
        return after

    def await_decision(self, pixel_id: int, timeout: Optional[float] = None) -> Optional[Decision]:
        """Block until the reviewer decides. A timeout cancels the review."""
        ticket = self._tickets.get(pixel_id)
        if ticket is None:
            raise InvalidTransition(f"pixel {pixel_id} has no pending review")
        decision = ticket.wait(timeout)
        if decision is None:
            try:
                self.cancel_review(pixel_id)
            except InvalidTransition:
                pass  # decided concurrently between wait() and cancel
            return ticket.decision
        return decision

    def override(self, pixel_id: int, tile_id: str) -> PixelAssignment:
        """Manual override: finalize a non-finalized pixel to `tile_id`."""
        with self._lock:
            current = self._require(pixel_id)
            if current.state is AssignmentState.FINALIZED:
                raise InvalidTransition(f"pixel {pixel_id} is already Finalized")
            if current.candidates and tile_id not in current.candidates:
                raise InvalidTransition(f"tile {tile_id!r} is not a candidate of pixel {pixel_id}")
            after = dataclasses.replace(current, tile_id=tile_id, state=AssignmentState.FINALIZED, unresolved=False)
            self._assignments[pixel_id] = after
            self._close_ticket(pixel_id, Decision.ACCEPT)
            self._record(pixel_id, OVERRIDE, tile_id)
            self._publish()
        logger.info("[AssignmentRefiner.override] pixel %s finalized to %s", pixel_id, tile_id)
        self._notify_finalized(after)
        return after

    def restore_finalized(self, mapping: Mapping[int, str]) -> None:
        """Re-apply a saved finalized map after replaying sessions."""
        for pixel_id, tile_id in mapping.items():
            pixel_id = int(pixel_id)
            with self._lock:
                if pixel_id not in self._assignments:
                    self._assignments[pixel_id] = PixelAssignment(pixel_id=pixel_id, alpha_used=self.initial_alpha)
                    self._publish()
            current = self._published[pixel_id]
            if current.state is AssignmentState.FINALIZED:
                if current.tile_id != tile_id:
                    logger.warning("[AssignmentRefiner.restore_finalized] pixel %s finalized to %s, ignoring %s",
                                   pixel_id, current.tile_id, tile_id)
                continue
            self.override(pixel_id, tile_id)

    def replay(self,
               session_ids: Iterable[str],
               journal: Iterable[Mapping[str, object]] = (),
               before_round: Optional[Callable[[str], None]] = None) -> None:
        """Re-run the rounds of a saved run.

        Journal entries are applied right after the round they followed, and
        `before_round(session_id)` runs before each round (the pipeline uses
        it to rebuild the palette the live round saw).
        """
        pending: Dict[int, List[Mapping[str, object]]] = {}
        for entry in journal:
            pending.setdefault(int(entry['round']), []).append(entry)

        self._apply_journal(pending.pop(0, []))
        for sid in session_ids:
            if before_round is not None:
                before_round(sid)
            self.observe_session(sid)
            self._apply_journal(pending.pop(len(self._seen_sessions), []))

        for rnd in sorted(pending):
            logger.warning("[AssignmentRefiner.replay] %d journal entries for round %d past the last session",
                           len(pending[rnd]), rnd)
            self._apply_journal(pending[rnd])

    def _apply_journal(self, entries: Iterable[Mapping[str, object]]):
        for entry in entries:
            pixel_id = int(entry['pixel_id'])
            decision = str(entry['decision'])
            try:
                if decision == OVERRIDE:
                    self.override(pixel_id, str(entry['tile_id']))
                elif decision == Decision.CANCEL.value:
                    self.cancel_review(pixel_id)
                else:
                    self.confirm(pixel_id, Decision(decision) is Decision.ACCEPT)
            except (InvalidTransition, UnknownPixel) as e:
                logger.warning("[AssignmentRefiner.replay] cannot re-apply %s for pixel %s: %s",
                               decision, pixel_id, e)
