"""
Rank persistence for one event.

After any score mutation the whole event is re-ranked from freshly read rows
and every score row receives its new rank, placement, medal and tie status in
one batch. The batch is read back before commit; a row that does not hold the
intended values is rewritten once and then treated as fatal.
"""
from __future__ import annotations

import logging
import threading
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, Iterator, List, Optional

from sqlalchemy.exc import SQLAlchemyError

from tkd_tracker.config import settings
from tkd_tracker.errors import (
    ConflictError,
    NotFoundError,
    PartialBatchError,
    PersistenceMismatchError,
    TrackerError,
)
from tkd_tracker.rules import JUDGE_FIELDS, RankedEntry, ScoreLine, TiePick, compute_rankings
from tkd_tracker.store import DataStore, Row

logger = logging.getLogger(__name__)

RANK_FIELDS = ("rank", "placement", "medal", "tie_breaker_status")


class EventLocks:
    """Re-entrant lock per event id, shared by everything that re-ranks an event."""

    def __init__(self, timeout: float = settings.lock_timeout_seconds) -> None:
        self.timeout = timeout
        self._guard = threading.Lock()
        self._locks: dict[int, threading.RLock] = {}

    def _lock_for(self, event_id: int) -> threading.RLock:
        with self._guard:
            lock = self._locks.get(event_id)
            if lock is None:
                lock = threading.RLock()
                self._locks[event_id] = lock
            return lock

    @contextmanager
    def hold(self, event_id: int) -> Iterator[None]:
        lock = self._lock_for(event_id)
        if not lock.acquire(timeout=self.timeout):
            raise ConflictError(
                f"Ranking for event {event_id} is busy, try again",
                {"event_id": event_id, "timeout": self.timeout},
            )
        try:
            yield
        finally:
            lock.release()

    def discard(self, event_id: int) -> None:
        """Forget a deleted event's lock so the registry does not grow without bound."""
        with self._guard:
            self._locks.pop(event_id, None)

    def __contains__(self, event_id: int) -> bool:
        return event_id in self._locks


# Shared by every service and persister that is not handed its own registry.
event_locks = EventLocks()


@dataclass
class PersistResult:
    event_id: int
    entries: List[RankedEntry]
    written: int
    attempts: int
    unranked_score_ids: List[int] = field(default_factory=list)


def score_lines(scores: List[Row]) -> List[ScoreLine]:
    return [
        ScoreLine(
            competitor_id=row["tournament_competitor_id"],
            judge_scores=tuple(row[name] for name in JUDGE_FIELDS),
        )
        for row in scores
    ]


def intended_rank_fields(scores: List[Row], entries: List[RankedEntry]) -> Dict[int, Dict[str, Any]]:
    """Map score id -> the rank fields it should hold; unranked rows get nulls."""
    by_competitor = {e.competitor_id: e for e in entries}
    intended: Dict[int, Dict[str, Any]] = {}
    for row in scores:
        entry = by_competitor.get(row["tournament_competitor_id"])
        if entry is None:
            intended[row["id"]] = {name: None for name in RANK_FIELDS}
        else:
            intended[row["id"]] = {
                "rank": entry.rank,
                "placement": entry.placement,
                "medal": entry.medal,
                "tie_breaker_status": entry.tie_breaker_status,
            }
    return intended


def first_mismatch(
    table: str, intended: Dict[int, Dict[str, Any]], stored: List[Row]
) -> Optional[PersistenceMismatchError]:
    stored_by_id = {row["id"]: row for row in stored}
    for score_id in sorted(intended):
        row = stored_by_id.get(score_id)
        for name, expected in intended[score_id].items():
            actual = row[name] if row is not None else None
            if row is None or actual != expected:
                return PersistenceMismatchError(table, score_id, name, expected, actual)
    return None


def encode_group(competitor_ids: Iterable[int]) -> str:
    return ",".join(str(cid) for cid in sorted(set(competitor_ids)))


def decode_group(value: Optional[str]) -> frozenset:
    return frozenset(int(part) for part in (value or "").split(",") if part)


def resolution_for(picks: List[Row]) -> Dict[int, TiePick]:
    return {
        row["tournament_competitor_id"]: TiePick(row["position"], decode_group(row["group_members"]))
        for row in picks
    }


def rank_event(store: DataStore, event_id: int) -> tuple[List[Row], List[RankedEntry]]:
    """Fresh ranking for an event from the rows currently in the store."""
    if store.select_one("events", {"id": event_id}) is None:
        raise NotFoundError("Event", event_id)
    scores = store.select("event_scores", {"event_id": event_id})
    picks = store.select("tie_breaks", {"event_id": event_id})
    return scores, compute_rankings(score_lines(scores), resolution_for(picks))


class RankPersister:
    def __init__(
        self,
        store: DataStore,
        locks: Optional[EventLocks] = None,
        verify_retries: int = settings.verify_retries,
    ) -> None:
        self.store = store
        self.locks = locks if locks is not None else event_locks
        self.verify_retries = verify_retries

    def persist(self, event_id: int) -> PersistResult:
        with self.locks.hold(event_id):
            try:
                result = self._persist_locked(event_id)
            except (TrackerError, SQLAlchemyError):
                self.store.rollback()
                raise
            self.store.commit()
        logger.info(
            "Persisted ranks for event %s: %s rows, %s ranked, %s attempt(s)",
            event_id,
            result.written,
            len(result.entries),
            result.attempts,
        )
        return result

    def _persist_locked(self, event_id: int) -> PersistResult:
        scores, entries = rank_event(self.store, event_id)
        intended = intended_rank_fields(scores, entries)

        attempts = 0
        while True:
            attempts += 1
            self._write_batch(event_id, intended)
            stored = self.store.select("event_scores", {"id": list(intended)})
            mismatch = first_mismatch("event_scores", intended, stored)
            if mismatch is None:
                break
            logger.warning(
                "Rank write for event %s did not read back (attempt %s): %s",
                event_id,
                attempts,
                mismatch.message,
            )
            if attempts > self.verify_retries:
                logger.error("Giving up on event %s after %s attempts", event_id, attempts)
                raise mismatch

        unranked = [score_id for score_id, fields in intended.items() if fields["rank"] is None]
        return PersistResult(
            event_id=event_id,
            entries=entries,
            written=len(intended),
            attempts=attempts,
            unranked_score_ids=sorted(unranked),
        )

    def _write_batch(self, event_id: int, intended: Dict[int, Dict[str, Any]]) -> None:
        failed: List[int] = []
        for score_id, patch in intended.items():
            try:
                rows = self.store.update("event_scores", patch, {"id": score_id})
            except SQLAlchemyError:
                logger.exception("Rank write failed for score %s in event %s", score_id, event_id)
                failed.append(score_id)
                continue
            if not rows:
                failed.append(score_id)
        if failed:
            logger.error("Partial rank batch for event %s: failed ids %s", event_id, failed)
            raise PartialBatchError(event_id, sorted(failed), len(intended))
