from datetime import date, datetime

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker

from tkd_tracker.database import Base
from tkd_tracker.errors import ValidationError
from tkd_tracker.models import Champion, Event, EventScore, Tournament, TournamentCompetitor
from tkd_tracker.ranking import RankPersister
from tkd_tracker.rules import total_score
from tkd_tracker.seasonal import SeasonalPointsAggregator
from tkd_tracker.store import DataStore


def _session() -> Session:
    engine = create_engine("sqlite:///:memory:", connect_args={"check_same_thread": False})
    Base.metadata.create_all(bind=engine)
    SessionLocal = sessionmaker(bind=engine, autoflush=True, autocommit=False)
    return SessionLocal()


class Season:
    """Builds tournaments and ranked events around one champion."""

    def __init__(self, db):
        self.db = db
        self.champion = Champion(name="Alex Kim")
        db.add(self.champion)
        db.flush()

    def tournament(self, name, tournament_class, when=None):
        t = Tournament(name=name, tournament_class=tournament_class, date=when)
        self.db.add(t)
        self.db.flush()
        return t

    def event(self, tournament, event_type="traditional_forms"):
        event = Event(tournament_id=tournament.id, event_type=event_type, name=event_type.replace("_", " ").title())
        self.db.add(event)
        self.db.flush()
        return event

    def entry(self, tournament, linked=True):
        entry = TournamentCompetitor(
            tournament_id=tournament.id,
            name="Alex Kim" if linked else "Field",
            origin_type="champion" if linked else "other",
            profile_id=self.champion.id if linked else None,
        )
        self.db.add(entry)
        self.db.flush()
        return entry

    def score(self, event, entry, judges, updated_at=None):
        row = EventScore(
            event_id=event.id,
            tournament_competitor_id=entry.id,
            judge_a_score=judges[0],
            judge_b_score=judges[1],
            judge_c_score=judges[2],
            total_score=total_score(judges),
        )
        if updated_at is not None:
            row.updated_at = updated_at
        self.db.add(row)
        self.db.flush()
        return row

    def field(self, tournament, event, *judge_rows):
        for judges in judge_rows:
            self.score(event, self.entry(tournament, linked=False), judges)

    def rank(self, *events):
        self.db.commit()
        store = DataStore(self.db)
        for event in events:
            RankPersister(store).persist(event.id)


def test_history_newest_first_with_points():
    db = _session()
    season = Season(db)
    spring = season.tournament("Spring Open", "A", date(2025, 4, 12))
    summer = season.tournament("Summer Nationals", "AAA - National", date(2025, 7, 19))

    forms = season.event(spring)
    season.score(forms, season.entry(spring), (9, 9, 9))
    season.field(spring, forms, (8, 8, 8), (7, 7, 7))

    nationals = season.event(summer, "creative_forms")
    season.score(nationals, season.entry(summer), (8, 8, 8))
    season.field(summer, nationals, (9, 9, 9))
    season.rank(forms, nationals)

    history = SeasonalPointsAggregator(DataStore(db)).history("champion", season.champion.id)
    assert [(r.tournament_name, r.tournament_class, r.rank, r.points) for r in history] == [
        ("Summer Nationals", "AAA", 2, 15),
        ("Spring Open", "A", 1, 8),
    ]
    assert history[1].judge_scores == (9.0, 9.0, 9.0)
    assert history[1].total_score == 27.0
    assert history[1].competitor_count == 3
    assert history[0].event_type == "creative_forms"


def test_same_day_results_order_by_event_id():
    db = _session()
    season = Season(db)
    day = date(2025, 5, 3)
    t = season.tournament("May Cup", "B", day)
    entry = season.entry(t)
    events = [season.event(t, kind) for kind in ("traditional_forms", "creative_forms", "extreme_forms")]
    for event in events:
        season.score(event, entry, (9, 9, 9))
    undated = season.tournament("Club Night", "B")
    late = season.event(undated)
    season.score(late, season.entry(undated), (9, 9, 9))
    season.rank(*events, late)

    history = SeasonalPointsAggregator(DataStore(db)).history("champion", season.champion.id)
    assert [r.event_id for r in history] == [e.id for e in events] + [late.id]


def test_results_outside_medals_or_without_points_are_dropped():
    db = _session()
    season = Season(db)
    t = season.tournament("Spring Open", "A", date(2025, 4, 12))
    fourth = season.event(t, "traditional_forms")
    season.score(fourth, season.entry(t), (6, 6, 6))
    season.field(t, fourth, (9, 9, 9), (8, 8, 8), (7, 7, 7))

    small = season.tournament("Local C", "C", date(2025, 4, 19))
    pair = season.event(small)
    season.score(pair, season.entry(small), (9, 9, 9))
    season.field(small, pair, (8, 8, 8))
    season.rank(fourth, pair)

    aggregator = SeasonalPointsAggregator(DataStore(db))
    assert aggregator.history("champion", season.champion.id) == []
    everything = aggregator.all_results("champion", season.champion.id)
    assert [(r.rank, r.points) for r in everything] == [(1, 0), (4, 0)]


def test_duplicate_rows_in_one_event_count_once():
    db = _session()
    season = Season(db)
    t = season.tournament("Spring Open", "A", date(2025, 4, 12))
    event = season.event(t)
    season.score(event, season.entry(t), (8, 8, 8))
    season.score(event, season.entry(t), (9, 9, 9))
    season.field(t, event, (7, 7, 7), (6, 6, 6))
    season.rank(event)

    history = SeasonalPointsAggregator(DataStore(db)).history("champion", season.champion.id)
    assert [(r.rank, r.points, r.total_score) for r in history] == [(1, 8, 27.0)]
    assert history[0].competitor_count == 4


def test_tied_duplicates_keep_the_latest_update():
    db = _session()
    season = Season(db)
    t = season.tournament("Spring Open", "B", date(2025, 4, 12))
    event = season.event(t)
    older = season.score(event, season.entry(t), (8, 8, 8), updated_at=datetime(2025, 4, 12, 10, 0))
    newer = season.score(event, season.entry(t), (8, 8, 8), updated_at=datetime(2025, 4, 12, 11, 0))
    season.rank(event)

    history = SeasonalPointsAggregator(DataStore(db)).history("champion", season.champion.id)
    assert len(history) == 1
    assert history[0].score_id == newer.id != older.id


def test_tournament_without_usable_class_is_skipped():
    db = _session()
    season = Season(db)
    good = season.tournament("Spring Open", "A", date(2025, 4, 12))
    missing = season.tournament("Mystery Meet", None, date(2025, 5, 1))
    odd = season.tournament("Open Invitational", "Open", date(2025, 6, 1))
    events = []
    for t in (good, missing, odd):
        event = season.event(t)
        season.score(event, season.entry(t), (9, 9, 9))
        events.append(event)
    season.rank(*events)

    results = SeasonalPointsAggregator(DataStore(db)).all_results("champion", season.champion.id)
    assert [r.tournament_name for r in results] == ["Spring Open"]


def test_unscored_or_unknown_profile_gives_empty_history():
    db = _session()
    season = Season(db)
    t = season.tournament("Spring Open", "A", date(2025, 4, 12))
    event = season.event(t)
    season.score(event, season.entry(t), (9, 9, None))
    season.rank(event)

    aggregator = SeasonalPointsAggregator(DataStore(db))
    assert aggregator.history("champion", season.champion.id) == []
    assert aggregator.history("competitor", 999) == []


def test_profile_origin_required():
    db = _session()
    aggregator = SeasonalPointsAggregator(DataStore(db))
    with pytest.raises(ValidationError):
        aggregator.history("other", 1)
    with pytest.raises(ValidationError):
        aggregator.history("champion", None)


def test_summary_totals_and_medals():
    db = _session()
    season = Season(db)
    spring = season.tournament("Spring Open", "A", date(2025, 4, 12))
    summer = season.tournament("Summer Nationals", "AAA", date(2025, 7, 19))

    gold = season.event(spring)
    season.score(gold, season.entry(spring), (9, 9, 9))
    silver = season.event(summer)
    season.score(silver, season.entry(summer), (8, 8, 8))
    season.field(summer, silver, (9, 9, 9))
    bronze = season.event(summer, "creative_forms")
    season.score(bronze, season.entry(summer), (7, 7, 7))
    season.field(summer, bronze, (9, 9, 9), (8, 8, 8))
    season.rank(gold, silver, bronze)

    summary = SeasonalPointsAggregator(DataStore(db)).summary("champion", season.champion.id)
    assert summary.total_points == 8 + 15 + 10
    assert summary.points_by_class == {"AAA": 25, "A": 8}
    assert summary.medals == {"gold": 1, "silver": 1, "bronze": 1}
    assert len(summary.history) == 3
