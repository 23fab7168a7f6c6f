from __future__ import annotations

import logging
from collections import Counter, defaultdict
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Dict, List, Optional, Tuple

from tkd_tracker.errors import ValidationError
from tkd_tracker.models import PROFILE_ORIGINS
from tkd_tracker.rules import JUDGE_FIELDS, MEDAL_PLACES, normalize_tournament_class, points_for_rank
from tkd_tracker.store import DataStore, Row

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SeasonalPointsRecord:
    score_id: int
    event_id: int
    event_name: str
    event_type: str
    tournament_id: int
    tournament_name: str
    tournament_class: str
    tournament_date: Optional[date]
    rank: int
    points: int
    judge_scores: Tuple[Optional[float], Optional[float], Optional[float]]
    total_score: Optional[float]
    competitor_count: int


@dataclass
class SeasonalSummary:
    total_points: int
    points_by_class: Dict[str, int]
    medals: Dict[str, int]
    history: List[SeasonalPointsRecord] = field(default_factory=list)


def _sort_key(record: SeasonalPointsRecord) -> tuple:
    # Newest tournament first; undated tournaments last; event id keeps it stable.
    if record.tournament_date is None:
        return (1, 0, record.event_id, record.score_id)
    return (0, -record.tournament_date.toordinal(), record.event_id, record.score_id)


def _dedupe_key(row: Row) -> tuple:
    # Best rank wins, then the most recently updated row.
    updated: Optional[datetime] = row.get("updated_at")
    recency = -updated.timestamp() if updated is not None else 0.0
    return (row["rank"], recency, -row["id"])


class SeasonalPointsAggregator:
    """
    Builds a competitor's seasonal points history from persisted ranks.

    Nothing is stored: every call re-reads scores, events and tournaments.
    """

    def __init__(self, store: DataStore) -> None:
        self.store = store

    def history(self, origin_kind: str, profile_id: int) -> List[SeasonalPointsRecord]:
        """Points-earning results only, newest tournament first."""
        return [
            r
            for r in self.all_results(origin_kind, profile_id)
            if r.rank <= MEDAL_PLACES and r.points > 0
        ]

    def all_results(self, origin_kind: str, profile_id: int) -> List[SeasonalPointsRecord]:
        if origin_kind not in PROFILE_ORIGINS:
            raise ValidationError(
                f"Seasonal points need a champion or competitor profile, got {origin_kind!r}",
                {"origin": origin_kind, "profile_id": profile_id},
            )
        if profile_id is None:
            raise ValidationError("Missing profile id", {"origin": origin_kind})

        entries = self.store.select(
            "tournament_competitors", {"origin_type": origin_kind, "profile_id": profile_id}
        )
        if not entries:
            return []

        scores = [
            row
            for row in self.store.select(
                "event_scores", {"tournament_competitor_id": [e["id"] for e in entries]}
            )
            if row["rank"] is not None
        ]
        if not scores:
            return []

        best_per_event: Dict[int, Row] = {}
        for row in sorted(scores, key=_dedupe_key):
            best_per_event.setdefault(row["event_id"], row)

        event_ids = sorted(best_per_event)
        events = {e["id"]: e for e in self.store.select("events", {"id": event_ids})}
        tournaments = {
            t["id"]: t
            for t in self.store.select(
                "tournaments", {"id": sorted({e["tournament_id"] for e in events.values()})}
            )
        }
        counts = Counter(
            row["event_id"] for row in self.store.select("event_scores", {"event_id": event_ids})
        )

        records: List[SeasonalPointsRecord] = []
        for event_id in event_ids:
            score = best_per_event[event_id]
            event = events.get(event_id)
            tournament = tournaments.get(event["tournament_id"]) if event else None
            if event is None or tournament is None:
                logger.warning("Skipping score %s: event or tournament row missing", score["id"])
                continue
            tournament_class = normalize_tournament_class(tournament["tournament_class"])
            if tournament_class is None:
                logger.warning(
                    "Skipping score %s: tournament %s has no usable class (%r)",
                    score["id"],
                    tournament["id"],
                    tournament["tournament_class"],
                )
                continue

            competitor_count = counts[event_id]
            records.append(
                SeasonalPointsRecord(
                    score_id=score["id"],
                    event_id=event_id,
                    event_name=event["name"],
                    event_type=event["event_type"],
                    tournament_id=tournament["id"],
                    tournament_name=tournament["name"],
                    tournament_class=tournament_class,
                    tournament_date=tournament["date"],
                    rank=score["rank"],
                    points=points_for_rank(tournament_class, score["rank"], competitor_count),
                    judge_scores=tuple(score[name] for name in JUDGE_FIELDS),
                    total_score=score["total_score"],
                    competitor_count=competitor_count,
                )
            )

        records.sort(key=_sort_key)
        return records

    def summary(self, origin_kind: str, profile_id: int) -> SeasonalSummary:
        history = self.history(origin_kind, profile_id)
        by_class: Dict[str, int] = defaultdict(int)
        medals = {"gold": 0, "silver": 0, "bronze": 0}
        for record in history:
            by_class[record.tournament_class] += record.points
            medals[("gold", "silver", "bronze")[record.rank - 1]] += 1
        return SeasonalSummary(
            total_points=sum(r.points for r in history),
            points_by_class=dict(by_class),
            medals=medals,
            history=history,
        )
