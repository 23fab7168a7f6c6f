import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from tkd_tracker.database import Base, get_db
from tkd_tracker.main import app, get_tracker
from tkd_tracker.services import TrackerService


@pytest.fixture()
def client():
    engine = create_engine(
        "sqlite://", connect_args={"check_same_thread": False}, poolclass=StaticPool
    )
    Base.metadata.create_all(bind=engine)
    TestingSession = sessionmaker(bind=engine, autoflush=True, autocommit=False)
    service = TrackerService()

    def override_get_db():
        db = TestingSession()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_tracker] = lambda: service
    yield TestClient(app)
    app.dependency_overrides.clear()


def _setup_event(client, tournament_class="A", names=("Alex", "Blake", "Casey")):
    t = client.post(
        "/tournaments", json={"name": "Spring Open", "tournament_class": tournament_class, "date": "2025-04-12"}
    ).json()
    events = client.post(f"/tournaments/{t['id']}/events/defaults").json()
    event_id = next(e["id"] for e in events if e["event_type"] == "traditional_forms")
    competitors = []
    for name in names:
        profile = client.post("/profiles/champion", json={"name": name}).json()
        entry = client.post(
            f"/tournaments/{t['id']}/competitors",
            json={"name": name, "origin_type": "champion", "profile_id": profile["id"]},
        ).json()
        competitors.append((profile["id"], entry["id"]))
    return t["id"], event_id, competitors


def _score(client, event_id, competitor_id, a, b, c):
    return client.post(
        f"/events/{event_id}/scores",
        json={
            "tournament_competitor_id": competitor_id,
            "judge_a_score": a,
            "judge_b_score": b,
            "judge_c_score": c,
        },
    )


def test_health(client):
    assert client.get("/health").json() == {"status": "ok"}


def test_scoring_ranking_and_seasonal_points(client):
    _, event_id, competitors = _setup_event(client)
    for (_, entry_id), judges in zip(competitors, [(9, 9, 9), (8, 8, 9), (8.5, 8.5, 8)]):
        res = _score(client, event_id, entry_id, *judges)
        assert res.status_code == 200

    board = client.get(f"/events/{event_id}/leaderboard").json()["leaderboard"]
    assert [(r["name"], r["rank"], r["placement"]) for r in board] == [
        ("Alex", 1, "1"),
        ("Blake", 2, "2"),
        ("Casey", 2, "2"),
    ]

    groups = client.get(f"/events/{event_id}/tie-groups").json()
    assert groups == [{"rank": 2, "total": 25.0, "competitor_ids": [competitors[1][1], competitors[2][1]]}]

    res = client.post(f"/events/{event_id}/tie-breaks", json={"ordered_competitor_ids": [competitors[2][1]]})
    assert res.status_code == 200
    ranks = {r["tournament_competitor_id"]: r["rank"] for r in res.json()["rankings"]}
    assert ranks == {competitors[0][1]: 1, competitors[2][1]: 2, competitors[1][1]: 3}

    summary = client.get(f"/profiles/champion/{competitors[1][0]}/seasonal-points").json()
    assert summary["total_points"] == 2
    assert summary["medals"] == {"gold": 0, "silver": 0, "bronze": 1}
    assert summary["history"][0]["tournament_class"] == "A"

    audit = client.get(f"/events/{event_id}/audit").json()
    assert audit["consistent"] is True


def test_partial_scores_stay_unranked(client):
    _, event_id, competitors = _setup_event(client, names=("Alex",))
    res = _score(client, event_id, competitors[0][1], 9, 9, None)
    assert res.status_code == 200
    body = res.json()
    assert body["rankings"] == []
    assert len(body["unranked_score_ids"]) == 1


def test_errors_map_to_status_codes(client):
    tournament_id, event_id, competitors = _setup_event(client, names=("Alex",))

    res = _score(client, event_id, competitors[0][1], 9, 12, 9)
    assert res.status_code == 400
    assert res.json()["code"] == "VALIDATION_ERROR"

    res = _score(client, 999, competitors[0][1], 9, 9, 9)
    assert res.status_code == 404
    assert res.json()["details"] == {"entity": "Event", "id": 999}

    res = client.post("/tournaments", json={"name": "Local", "tournament_class": "Open"})
    assert res.status_code == 400

    res = client.get("/profiles/other/1/seasonal-points")
    assert res.status_code == 400

    res = client.post(
        f"/tournaments/{tournament_id}/competitors",
        json={"name": "Ghost", "origin_type": "other", "profile_id": 3},
    )
    assert res.status_code == 400


def test_ensure_event_is_idempotent(client):
    t = client.post("/tournaments", json={"name": "Spring Open", "tournament_class": "B"}).json()
    first = client.post(f"/tournaments/{t['id']}/events", json={"event_type": "creative_forms"}).json()
    second = client.post(f"/tournaments/{t['id']}/events", json={"event_type": "Creative_Forms"}).json()
    assert first["created"] is True
    assert second["created"] is False
    assert first["id"] == second["id"]
    assert len(client.get(f"/tournaments/{t['id']}/events").json()) == 1

    dupes = client.get(f"/tournaments/{t['id']}/audit/duplicate-events").json()
    assert dupes["duplicates"] == []


def test_promotion_and_video(client):
    t = client.post(
        "/tournaments", json={"name": "Spring Open", "tournament_class": "A", "date": "2025-04-12"}
    ).json()
    event = client.post(f"/tournaments/{t['id']}/events", json={"event_type": "extreme_forms"}).json()
    entry = client.post(f"/tournaments/{t['id']}/competitors", json={"name": "Jordan"}).json()
    assert entry["origin_type"] == "other"

    scored = _score(client, event["id"], entry["id"], 9, 9, 9).json()
    promoted = client.post(
        f"/tournament-competitors/{entry['id']}/promote", json={"target": "competitor"}
    ).json()
    assert promoted["id"] == entry["id"]
    assert promoted["origin_type"] == "competitor"

    results = client.get(f"/profiles/competitor/{promoted['profile_id']}/results").json()
    assert [(r["rank"], r["points"]) for r in results] == [(1, 8)]

    score_id = results[0]["score_id"]
    assert scored["rankings"][0]["rank"] == 1
    video = client.post(f"/scores/{score_id}/video", json={"storage_path": "videos/jordan.mp4"})
    assert video.status_code == 200
    assert video.json()["placement_snapshot"] == "1"
    again = client.post(f"/scores/{score_id}/video", json={"storage_path": "videos/jordan-2.mp4"})
    assert again.status_code == 409


def test_withdraw_and_delete_event(client):
    _, event_id, competitors = _setup_event(client, names=("Alex", "Blake"))
    _score(client, event_id, competitors[0][1], 9, 9, 9)
    _score(client, event_id, competitors[1][1], 8, 8, 8)

    res = client.delete(f"/events/{event_id}/scores/{competitors[0][1]}")
    assert res.status_code == 200
    assert [r["rank"] for r in res.json()["rankings"]] == [1]

    assert client.delete(f"/events/{event_id}").json() == {"deleted": event_id}
    assert client.get(f"/events/{event_id}/leaderboard").status_code == 404
