from datetime import date, datetime, timedelta

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker

from tkd_tracker.audit import ConsistencyAuditor, RankUpdateMonitor
from tkd_tracker.cli import main
from tkd_tracker.database import Base
from tkd_tracker.errors import NotFoundError, PersistenceMismatchError
from tkd_tracker.models import Champion, CompetitorOrigin, Event, Tournament
from tkd_tracker.ranking import RankPersister
from tkd_tracker.services import TrackerService
from tkd_tracker.store import ChangeFeed, DataStore


def _session() -> Session:
    engine = create_engine("sqlite:///:memory:", connect_args={"check_same_thread": False})
    Base.metadata.create_all(bind=engine)
    SessionLocal = sessionmaker(bind=engine, autoflush=True, autocommit=False)
    return SessionLocal()


def _ranked_event(db, svc):
    t = svc.create_tournament(db, "Spring Open", "A", date(2025, 4, 12))
    event, _ = svc.ensure_event(db, t.id, "traditional_forms")
    for name, judges in (("Alex", (9, 9, 9)), ("Blake", (8, 8, 8))):
        entry = svc.register_competitor(db, t.id, name)
        svc.submit_score(db, event["id"], entry.id, judges)
    return event["id"]


def _tamper_first_rank(db, event_id, rank=7):
    store = DataStore(db)
    score = store.select("event_scores", {"event_id": event_id})[0]
    store.update("event_scores", {"rank": rank}, {"id": score["id"]})
    store.commit()
    return score["id"]


def test_duplicate_events_found_across_spelling():
    db = _session()
    t = Tournament(name="Spring Open", tournament_class="A")
    db.add(t)
    db.flush()
    base = datetime(2025, 4, 12, 9, 0, 0)
    db.add_all(
        [
            Event(tournament_id=t.id, event_type="traditional_forms", name="Traditional Forms", created_at=base),
            Event(
                tournament_id=t.id,
                event_type=" Traditional_Forms",
                name="Traditional Forms",
                created_at=base + timedelta(seconds=1),
            ),
            Event(tournament_id=t.id, event_type="creative_forms", name="Creative Forms", created_at=base),
            Event(
                tournament_id=t.id,
                event_type="Creative_Forms",
                name="Creative Forms",
                created_at=base + timedelta(hours=2),
            ),
            Event(tournament_id=t.id, event_type="extreme_forms", name="Extreme Forms", created_at=base),
        ]
    )
    db.commit()

    auditor = ConsistencyAuditor(DataStore(db))
    reports = auditor.find_duplicate_events(t.id, window_seconds=5)
    assert [(r.event_type, r.race_suspected) for r in reports] == [
        ("creative_forms", False),
        ("traditional_forms", True),
    ]
    assert all(len(r.event_ids) == 2 for r in reports)
    assert reports[1].score_counts == {eid: 0 for eid in reports[1].event_ids}

    only = auditor.find_duplicate_events(t.id, event_type="TRADITIONAL_FORMS")
    assert [r.event_type for r in only] == ["traditional_forms"]
    assert auditor.find_duplicate_events(t.id, event_type="extreme_forms") == []


def test_duplicate_scores_for_one_champion():
    db = _session()
    svc = TrackerService()
    t = svc.create_tournament(db, "Spring Open", "A")
    event, _ = svc.ensure_event(db, t.id, "traditional_forms")
    champ = Champion(name="Alex")
    db.add(champ)
    db.commit()
    origin = CompetitorOrigin("champion", champ.id)
    first = svc.register_competitor(db, t.id, "Alex", origin)
    second = svc.register_competitor(db, t.id, "Alex K.", origin)
    walk_in = svc.register_competitor(db, t.id, "Alex")
    row_a, _ = svc.submit_score(db, event["id"], first.id, (9, 9, 9))
    row_b, _ = svc.submit_score(db, event["id"], second.id, (8, 8, 8))
    svc.submit_score(db, event["id"], walk_in.id, (7, 7, 7))

    reports = ConsistencyAuditor(DataStore(db)).find_duplicate_scores(event["id"])
    assert len(reports) == 1
    assert reports[0].origin_type == "champion"
    assert reports[0].profile_id == champ.id
    assert reports[0].score_ids == sorted([row_a["id"], row_b["id"]])


def test_verify_field_reports_and_optionally_raises():
    db = _session()
    svc = TrackerService()
    event_id = _ranked_event(db, svc)
    auditor = ConsistencyAuditor(DataStore(db))
    score = DataStore(db).select("event_scores", {"event_id": event_id})[0]

    assert auditor.verify_field("event_scores", score["id"], "rank", 1).ok
    check = auditor.verify_field("event_scores", score["id"], "rank", 2)
    assert not check.ok and check.actual == 1
    with pytest.raises(PersistenceMismatchError):
        auditor.verify_field("event_scores", score["id"], "rank", 2, strict=True)
    with pytest.raises(NotFoundError):
        auditor.verify_field("event_scores", 999, "rank", 1)


def test_verify_event_ranks_spots_tampered_rows():
    db = _session()
    svc = TrackerService()
    event_id = _ranked_event(db, svc)
    auditor = ConsistencyAuditor(DataStore(db))
    assert auditor.verify_event_ranks(event_id) == []

    score_id = _tamper_first_rank(db, event_id)
    mismatches = auditor.verify_event_ranks(event_id)
    assert [(m.row_id, m.field, m.expected, m.actual) for m in mismatches] == [(score_id, "rank", 1, 7)]

    with pytest.raises(PersistenceMismatchError):
        svc.leaderboard(db, event_id)
    svc.recompute_event(db, event_id)
    assert auditor.verify_event_ranks(event_id) == []


def test_schema_check_on_fresh_database():
    db = _session()
    assert ConsistencyAuditor(DataStore(db)).check_schema() == {}


def test_schema_check_reports_missing_table():
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.tables["tournaments"].create(bind=engine)
    db = sessionmaker(bind=engine)()

    missing = ConsistencyAuditor(DataStore(db)).check_schema()
    assert "tournaments" not in missing
    assert "event_scores" in missing
    assert "tie_breaker_status" in missing["event_scores"]


def test_monitor_sees_rank_writes_for_its_event():
    db = _session()
    svc = TrackerService()
    event_id = _ranked_event(db, svc)
    feed = ChangeFeed()
    monitor = RankUpdateMonitor(feed, event_id, limit=3).start()

    RankPersister(DataStore(db, feed)).persist(event_id)
    assert [(u.op, u.rank) for u in monitor.updates] == [("update", 1), ("update", 2)]

    RankPersister(DataStore(db, feed)).persist(event_id)
    assert len(monitor.updates) == 3

    monitor.stop()
    RankPersister(DataStore(db, feed)).persist(event_id)
    assert len(monitor.updates) == 3


def test_monitor_ignores_other_events():
    db = _session()
    svc = TrackerService()
    event_id = _ranked_event(db, svc)
    feed = ChangeFeed()
    monitor = RankUpdateMonitor(feed, event_id + 1).start()

    RankPersister(DataStore(db, feed)).persist(event_id)
    assert monitor.updates == []


def test_cli_checks_exit_codes(capsys):
    db = _session()
    svc = TrackerService()
    event_id = _ranked_event(db, svc)

    assert main(["verify-ranks", "--event", str(event_id)], session=db) == 0
    assert main(["schema"], session=db) == 0
    assert main(["duplicates", "--tournament", "1"], session=db) == 0

    _tamper_first_rank(db, event_id)
    assert main(["verify-ranks", "--event", str(event_id)], session=db) == 1
    assert "expected 1" in capsys.readouterr().out

    assert main(["recompute", "--event", str(event_id)], session=db) == 0
    assert main(["verify-ranks", "--event", str(event_id)], session=db) == 0
    assert main(["verify-ranks", "--event", "999"], session=db) == 2
