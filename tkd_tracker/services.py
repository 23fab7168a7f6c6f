from __future__ import annotations

import logging
from datetime import date
from typing import Any, Dict, List, Optional, Sequence

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from tkd_tracker.audit import ConsistencyAuditor
from tkd_tracker.cache import EventIdCache, normalize_event_type
from tkd_tracker.config import settings
from tkd_tracker.errors import ConflictError, NotFoundError, PersistenceMismatchError, ValidationError
from tkd_tracker.models import (
    ORIGIN_CHAMPION,
    ORIGIN_OTHER,
    PROFILE_ORIGINS,
    Champion,
    Competitor,
    CompetitorOrigin,
    Event,
    Tournament,
    TournamentCompetitor,
    Video,
    utcnow,
)
from tkd_tracker.ranking import (
    EventLocks,
    PersistResult,
    RankPersister,
    encode_group,
    event_locks,
    rank_event,
)
from tkd_tracker.rules import (
    JUDGE_FIELDS,
    RankedEntry,
    normalize_tournament_class,
    round_score,
    tie_groups,
    total_score,
)
from tkd_tracker.store import ChangeFeed, DataStore, Row

logger = logging.getLogger(__name__)

DEFAULT_EVENT_NAMES = {
    "traditional_forms": "Traditional Forms",
    "creative_forms": "Creative Forms",
    "extreme_forms": "Extreme Forms",
}


def get_or_404(db: Session, model: Any, obj_id: Optional[int], label: str):
    if obj_id is None:
        raise ValidationError(f"Missing {label.lower()} id", {"entity": label})
    obj = db.get(model, obj_id)
    if not obj:
        raise NotFoundError(label, obj_id)
    return obj


def get_tournament_or_404(db: Session, tournament_id: Optional[int]) -> Tournament:
    return get_or_404(db, Tournament, tournament_id, "Tournament")


def get_event_or_404(db: Session, event_id: Optional[int]) -> Event:
    return get_or_404(db, Event, event_id, "Event")


def get_tournament_competitor_or_404(db: Session, competitor_id: Optional[int]) -> TournamentCompetitor:
    return get_or_404(db, TournamentCompetitor, competitor_id, "Tournament competitor")


def profile_model(kind: str):
    return Champion if kind == ORIGIN_CHAMPION else Competitor


class TrackerService:
    """
    Scoring operations over one database session per call.

    ``locks`` serialises every mutation that changes an event's ranking and
    must be shared by all callers in the process. ``cache`` belongs to this
    service instance and is written through on event creation and deletion.
    """

    def __init__(
        self,
        locks: Optional[EventLocks] = None,
        cache: Optional[EventIdCache] = None,
        feed: Optional[ChangeFeed] = None,
        score_min: float = settings.score_min,
        score_max: float = settings.score_max,
    ) -> None:
        self.locks = locks if locks is not None else event_locks
        self.cache = cache if cache is not None else EventIdCache()
        self.feed = feed
        self.score_min = score_min
        self.score_max = score_max

    def store(self, db: Session) -> DataStore:
        return DataStore(db, self.feed)

    def persister(self, db: Session) -> RankPersister:
        return RankPersister(self.store(db), self.locks)

    # Tournaments and events

    def create_tournament(
        self,
        db: Session,
        name: str,
        tournament_class: str,
        tournament_date: Optional[date] = None,
        location: Optional[str] = None,
    ) -> Tournament:
        if not name or not name.strip():
            raise ValidationError("Tournament name is required")
        normalized = normalize_tournament_class(tournament_class)
        if normalized is None:
            raise ValidationError(
                f"Unknown tournament class {tournament_class!r}",
                {"tournament_class": tournament_class},
            )
        tournament = Tournament(
            name=name.strip(),
            tournament_class=normalized,
            date=tournament_date,
            location=location,
        )
        db.add(tournament)
        db.commit()
        db.refresh(tournament)
        return tournament

    def ensure_event(
        self, db: Session, tournament_id: int, event_type: str, name: Optional[str] = None
    ) -> tuple[Row, bool]:
        """Return the tournament's event of this type, creating it at most once."""
        if not event_type or not event_type.strip():
            raise ValidationError("Event type is required", {"tournament_id": tournament_id})
        get_tournament_or_404(db, tournament_id)
        kind = normalize_event_type(event_type)
        store = self.store(db)

        cached_id = self.cache.get(tournament_id, kind)
        if cached_id is not None:
            row = store.select_one("events", {"id": cached_id})
            if row is not None:
                return row, False
            self.cache.invalidate(tournament_id, kind)

        row, created = store.insert_or_fetch(
            "events",
            {
                "tournament_id": tournament_id,
                "event_type": kind,
                "name": name or DEFAULT_EVENT_NAMES.get(kind, kind.replace("_", " ").title()),
                "created_at": utcnow(),
            },
            conflict_columns=("tournament_id", "event_type"),
        )
        store.commit()
        self.cache.put(tournament_id, kind, row["id"])
        if created:
            logger.info("Created event %s (%s) for tournament %s", row["id"], kind, tournament_id)
        return row, created

    def ensure_default_events(self, db: Session, tournament_id: int) -> List[Row]:
        return [self.ensure_event(db, tournament_id, kind)[0] for kind in DEFAULT_EVENT_NAMES]

    def delete_event(self, db: Session, event_id: int) -> None:
        event = get_event_or_404(db, event_id)
        tournament_id, kind = event.tournament_id, event.event_type
        with self.locks.hold(event_id):
            store = self.store(db)
            score_ids = [row["id"] for row in store.select("event_scores", {"event_id": event_id})]
            if score_ids:
                store.delete("videos", {"event_score_id": score_ids})
            store.delete("tie_breaks", {"event_id": event_id})
            store.delete("event_scores", {"event_id": event_id})
            store.delete("events", {"id": event_id})
            store.commit()
        self.locks.discard(event_id)
        self.cache.invalidate(tournament_id, kind)

    # Competitors

    def register_competitor(
        self,
        db: Session,
        tournament_id: int,
        name: str,
        origin: Optional[CompetitorOrigin] = None,
    ) -> TournamentCompetitor:
        get_tournament_or_404(db, tournament_id)
        origin = origin or CompetitorOrigin.other()
        if origin.kind in PROFILE_ORIGINS:
            get_or_404(db, profile_model(origin.kind), origin.profile_id, origin.kind.title())
        if not name or not name.strip():
            raise ValidationError("Competitor name is required", {"tournament_id": tournament_id})
        entry = TournamentCompetitor(
            tournament_id=tournament_id,
            name=name.strip(),
            origin_type=origin.kind,
            profile_id=origin.profile_id,
        )
        db.add(entry)
        db.commit()
        db.refresh(entry)
        return entry

    def promote_competitor(
        self,
        db: Session,
        tournament_competitor_id: int,
        target: str,
        name: Optional[str] = None,
        school: Optional[str] = None,
        location: Optional[str] = None,
    ) -> TournamentCompetitor:
        """
        Turn an Other entry into a Champion or Competitor.

        Creates the global profile and retags the same tournament competitor,
        so its scores need no migration.
        """
        if target not in PROFILE_ORIGINS:
            raise ValidationError(f"Cannot promote to {target!r}", {"target": target})
        entry = get_tournament_competitor_or_404(db, tournament_competitor_id)
        if entry.origin_type != ORIGIN_OTHER:
            raise ValidationError(
                "Only competitors without a profile can be promoted",
                {"id": entry.id, "origin_type": entry.origin_type},
            )
        profile = profile_model(target)(name=(name or entry.name).strip(), school=school, location=location)
        db.add(profile)
        db.flush()

        entry.origin_type = target
        entry.profile_id = profile.id
        db.commit()
        db.refresh(entry)
        logger.info("Promoted tournament competitor %s to %s %s", entry.id, target, profile.id)
        return entry

    # Scores

    def _validate_judge_scores(self, judge_scores: Sequence[Optional[float]]) -> List[Optional[float]]:
        if len(judge_scores) != len(JUDGE_FIELDS):
            raise ValidationError(
                f"Expected {len(JUDGE_FIELDS)} judge scores, got {len(judge_scores)}",
            )
        cleaned: List[Optional[float]] = []
        for field_name, value in zip(JUDGE_FIELDS, judge_scores):
            if value is None:
                cleaned.append(None)
                continue
            if not self.score_min <= value <= self.score_max:
                raise ValidationError(
                    f"{field_name} must be between {self.score_min} and {self.score_max}",
                    {"field": field_name, "value": value},
                )
            cleaned.append(round_score(value))
        return cleaned

    def submit_score(
        self,
        db: Session,
        event_id: Optional[int],
        tournament_competitor_id: Optional[int],
        judge_scores: Sequence[Optional[float]],
    ) -> tuple[Row, PersistResult]:
        """
        Create or update a competitor's judge scores and re-rank the event.

        A missing judge score is stored as null and keeps the competitor out
        of the ranking until it is entered.
        """
        cleaned = self._validate_judge_scores(judge_scores)
        event = get_event_or_404(db, event_id)
        entry = get_tournament_competitor_or_404(db, tournament_competitor_id)
        if entry.tournament_id != event.tournament_id:
            raise ValidationError(
                "Competitor is not registered in this event's tournament",
                {"event_id": event_id, "tournament_competitor_id": tournament_competitor_id},
            )

        values: Dict[str, Any] = dict(zip(JUDGE_FIELDS, cleaned))
        values["total_score"] = total_score(cleaned)
        values["updated_at"] = utcnow()

        with self.locks.hold(event.id):
            store = self.store(db)
            key = {"event_id": event.id, "tournament_competitor_id": entry.id}
            try:
                existing = store.select_one("event_scores", key)
                if existing is None:
                    store.insert("event_scores", [{**key, **values}])
                else:
                    store.update("event_scores", values, {"id": existing["id"]})
                    if existing["total_score"] != values["total_score"]:
                        # A re-scored competitor leaves whatever tie they were resolved in.
                        store.delete("tie_breaks", key)
            except IntegrityError as exc:
                store.rollback()
                raise ConflictError(
                    "Score was created concurrently, retry the submission", dict(key)
                ) from exc
            result = self.persister(db).persist(event.id)
            row = store.select_one("event_scores", key)
        return row, result

    def withdraw_competitor(self, db: Session, event_id: int, tournament_competitor_id: int) -> PersistResult:
        """Remove a competitor's score from an event and re-rank the rest."""
        get_event_or_404(db, event_id)
        with self.locks.hold(event_id):
            store = self.store(db)
            key = {"event_id": event_id, "tournament_competitor_id": tournament_competitor_id}
            score = store.select_one("event_scores", key)
            if score is None:
                raise NotFoundError("Score", key)
            store.delete("videos", {"event_score_id": score["id"]})
            store.delete("tie_breaks", key)
            store.delete("event_scores", {"id": score["id"]})
            return self.persister(db).persist(event_id)

    def recompute_event(self, db: Session, event_id: int) -> PersistResult:
        return self.persister(db).persist(event_id)

    # Tie-breaks

    def open_tie_groups(self, db: Session, event_id: int) -> List[List[RankedEntry]]:
        _, entries = rank_event(self.store(db), event_id)
        return tie_groups(entries)

    def resolve_tie(self, db: Session, event_id: int, ordered_competitor_ids: Sequence[int]) -> PersistResult:
        """
        Record the organiser's pick order for one tie group and re-rank.

        Every picked competitor must share the same total in the current
        ranking. Earlier picks for members of that group are replaced, and the
        group's membership is stored with the picks so they lapse once it changes.
        """
        picks = list(ordered_competitor_ids)
        if not picks:
            raise ValidationError("Select at least one competitor", {"event_id": event_id})
        if len(set(picks)) != len(picks):
            raise ValidationError("Competitors may only be picked once", {"event_id": event_id})

        with self.locks.hold(event_id):
            store = self.store(db)
            _, entries = rank_event(store, event_id)
            by_id = {e.competitor_id: e for e in entries}
            unknown = [cid for cid in picks if cid not in by_id]
            if unknown:
                raise ValidationError(
                    "Picked competitors have no complete score in this event",
                    {"event_id": event_id, "competitor_ids": unknown},
                )
            totals = {by_id[cid].total for cid in picks}
            group = [e.competitor_id for e in entries if e.total in totals]
            if len(totals) != 1 or len(group) < 2:
                raise ValidationError(
                    "Picked competitors are not tied with each other",
                    {"event_id": event_id, "competitor_ids": picks},
                )

            store.delete("tie_breaks", {"event_id": event_id, "tournament_competitor_id": group})
            store.insert(
                "tie_breaks",
                [
                    {
                        "event_id": event_id,
                        "tournament_competitor_id": cid,
                        "position": position,
                        "group_members": encode_group(group),
                        "created_at": utcnow(),
                    }
                    for position, cid in enumerate(picks, start=1)
                ],
            )
            return self.persister(db).persist(event_id)

    def clear_tie_resolutions(self, db: Session, event_id: int) -> PersistResult:
        get_event_or_404(db, event_id)
        with self.locks.hold(event_id):
            self.store(db).delete("tie_breaks", {"event_id": event_id})
            return self.persister(db).persist(event_id)

    # Read side

    def leaderboard(self, db: Session, event_id: int) -> List[Dict[str, Any]]:
        """
        Persisted ranking for an event.

        Refuses to return rows whose stored ranks disagree with a fresh
        computation rather than show a stale or half-written leaderboard.
        """
        store = self.store(db)
        mismatches = ConsistencyAuditor(store).verify_event_ranks(event_id)
        if mismatches:
            first = mismatches[0]
            raise PersistenceMismatchError(first.table, first.row_id, first.field, first.expected, first.actual)

        scores = store.select("event_scores", {"event_id": event_id})
        if not scores:
            return []
        names = {
            e["id"]: e["name"]
            for e in store.select(
                "tournament_competitors", {"id": sorted({s["tournament_competitor_id"] for s in scores})}
            )
        }
        rows = [
            {
                "score_id": s["id"],
                "tournament_competitor_id": s["tournament_competitor_id"],
                "name": names.get(s["tournament_competitor_id"], ""),
                "judge_scores": [s[name] for name in JUDGE_FIELDS],
                "total_score": s["total_score"],
                "rank": s["rank"],
                "placement": s["placement"],
                "medal": s["medal"],
                "tie_breaker_status": s["tie_breaker_status"],
            }
            for s in scores
        ]
        rows.sort(key=lambda r: (r["rank"] if r["rank"] is not None else 9999, r["name"], r["score_id"]))
        return rows

    def attach_video(self, db: Session, score_id: int, storage_path: str) -> Video:
        if not storage_path or not storage_path.strip():
            raise ValidationError("Video storage path is required", {"score_id": score_id})
        store = self.store(db)
        score = store.select_one("event_scores", {"id": score_id})
        if score is None:
            raise NotFoundError("Score", score_id)
        existing = db.scalar(select(Video).where(Video.event_score_id == score_id))
        if existing:
            raise ConflictError("Score already has a video", {"score_id": score_id, "video_id": existing.id})
        video = Video(
            event_score_id=score_id,
            storage_path=storage_path.strip(),
            score_snapshot=score["total_score"],
            placement_snapshot=score["placement"],
        )
        db.add(video)
        db.commit()
        db.refresh(video)
        return video
