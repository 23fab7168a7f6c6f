"""
Consistency checks for operators.

Each check reads the store, reports what it finds and changes nothing.
Merging duplicates or rewriting ranks is left to a reviewed operator action
(see ``cli.py recompute``).
"""
from __future__ import annotations

import logging
from collections import defaultdict, deque
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Deque, Dict, List, Optional

from sqlalchemy import inspect

from tkd_tracker.cache import normalize_event_type
from tkd_tracker.config import settings
from tkd_tracker.database import Base
from tkd_tracker.errors import NotFoundError, PersistenceMismatchError
from tkd_tracker.models import ORIGIN_OTHER, utcnow
from tkd_tracker.ranking import intended_rank_fields, rank_event
from tkd_tracker.store import Change, ChangeFeed, DataStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DuplicateEventReport:
    tournament_id: int
    event_type: str
    event_ids: List[int]
    created_at: List[datetime]
    score_counts: Dict[int, int]
    race_suspected: bool


@dataclass(frozen=True)
class DuplicateScoreReport:
    event_id: int
    origin_type: str
    profile_id: Optional[int]
    score_ids: List[int]


@dataclass(frozen=True)
class FieldCheck:
    table: str
    row_id: int
    field: str
    expected: Any
    actual: Any

    @property
    def ok(self) -> bool:
        return self.expected == self.actual


@dataclass(frozen=True)
class RankUpdate:
    op: str
    score_id: int
    rank: Optional[int]
    placement: Optional[str]
    medal: Optional[str]
    tie_breaker_status: Optional[str]
    seen_at: datetime


class ConsistencyAuditor:
    def __init__(self, store: DataStore) -> None:
        self.store = store

    def find_duplicate_events(
        self,
        tournament_id: int,
        event_type: Optional[str] = None,
        window_seconds: float = settings.duplicate_window_seconds,
    ) -> List[DuplicateEventReport]:
        """
        Events sharing a normalised type inside one tournament.

        ``race_suspected`` is set when two of them were created within
        ``window_seconds`` of each other, the signature of two clients racing
        the read-then-create path.
        """
        events = self.store.select("events", {"tournament_id": tournament_id}, order_by=("created_at", "id"))
        grouped: Dict[str, List[dict]] = defaultdict(list)
        for event in events:
            grouped[normalize_event_type(event["event_type"])].append(event)

        wanted = normalize_event_type(event_type) if event_type else None
        reports: List[DuplicateEventReport] = []
        for kind, group in sorted(grouped.items()):
            if len(group) < 2 or (wanted and kind != wanted):
                continue
            created = [e["created_at"] for e in group]
            gaps = [(b - a).total_seconds() for a, b in zip(created, created[1:])]
            ids = [e["id"] for e in group]
            counts: Dict[int, int] = {event_id: 0 for event_id in ids}
            for row in self.store.select("event_scores", {"event_id": ids}):
                counts[row["event_id"]] += 1
            report = DuplicateEventReport(
                tournament_id=tournament_id,
                event_type=kind,
                event_ids=ids,
                created_at=created,
                score_counts=counts,
                race_suspected=any(abs(gap) < window_seconds for gap in gaps),
            )
            logger.warning("Duplicate events detected: %s", report)
            reports.append(report)
        return reports

    def find_duplicate_scores(self, event_id: int) -> List[DuplicateScoreReport]:
        """Score rows in one event that belong to the same person."""
        scores = self.store.select("event_scores", {"event_id": event_id})
        if not scores:
            return []
        entries = {
            e["id"]: e
            for e in self.store.select(
                "tournament_competitors", {"id": sorted({s["tournament_competitor_id"] for s in scores})}
            )
        }

        grouped: Dict[tuple, List[int]] = defaultdict(list)
        for score in scores:
            entry = entries.get(score["tournament_competitor_id"])
            if entry is None or entry["origin_type"] == ORIGIN_OTHER:
                key = (ORIGIN_OTHER, score["tournament_competitor_id"])
            else:
                key = (entry["origin_type"], entry["profile_id"])
            grouped[key].append(score["id"])

        return [
            DuplicateScoreReport(
                event_id=event_id,
                origin_type=origin_type,
                profile_id=None if origin_type == ORIGIN_OTHER else ref,
                score_ids=sorted(ids),
            )
            for (origin_type, ref), ids in sorted(grouped.items(), key=lambda item: min(item[1]))
            if len(ids) > 1
        ]

    def verify_field(
        self, table: str, row_id: int, field_name: str, expected: Any, strict: bool = False
    ) -> FieldCheck:
        row = self.store.select_one(table, {"id": row_id})
        if row is None:
            raise NotFoundError(table, row_id)
        check = FieldCheck(table, row_id, field_name, expected, row[field_name])
        if not check.ok:
            logger.warning("Read-back mismatch: %s", check)
            if strict:
                raise PersistenceMismatchError(table, row_id, field_name, expected, check.actual)
        return check

    def verify_event_ranks(self, event_id: int) -> List[FieldCheck]:
        """Stored rank fields that disagree with a fresh ranking of the same rows."""
        scores, entries = rank_event(self.store, event_id)
        intended = intended_rank_fields(scores, entries)

        stored = {row["id"]: row for row in scores}
        mismatches: List[FieldCheck] = []
        for score_id in sorted(intended):
            for name, expected in intended[score_id].items():
                check = FieldCheck("event_scores", score_id, name, expected, stored[score_id][name])
                if not check.ok:
                    mismatches.append(check)
        return mismatches

    def check_schema(self) -> Dict[str, List[str]]:
        """Expected columns missing from the live database, per table."""
        inspector = inspect(self.store.db.get_bind())
        existing_tables = set(inspector.get_table_names())
        missing: Dict[str, List[str]] = {}
        for name, table in sorted(Base.metadata.tables.items()):
            if name not in existing_tables:
                missing[name] = [c.name for c in table.columns]
                continue
            present = {c["name"] for c in inspector.get_columns(name)}
            absent = [c.name for c in table.columns if c.name not in present]
            if absent:
                missing[name] = absent
        return missing


class RankUpdateMonitor:
    """Keeps the most recent rank writes for one event, fed by the change feed."""

    def __init__(self, feed: ChangeFeed, event_id: int, limit: int = 50) -> None:
        self.feed = feed
        self.event_id = event_id
        self._updates: Deque[RankUpdate] = deque(maxlen=limit)
        self._unsubscribe = None

    def start(self) -> "RankUpdateMonitor":
        if self._unsubscribe is None:
            self._unsubscribe = self.feed.subscribe(
                "event_scores", self._on_change, match={"event_id": self.event_id}
            )
        return self

    def stop(self) -> None:
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None

    def _on_change(self, change: Change) -> None:
        row = change.row
        self._updates.append(
            RankUpdate(
                op=change.op,
                score_id=row["id"],
                rank=row.get("rank"),
                placement=row.get("placement"),
                medal=row.get("medal"),
                tie_breaker_status=row.get("tie_breaker_status"),
                seen_at=utcnow(),
            )
        )

    @property
    def updates(self) -> List[RankUpdate]:
        return list(self._updates)
