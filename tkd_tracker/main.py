from __future__ import annotations

import logging
from dataclasses import asdict
from typing import Any

from fastapi import Depends, FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import select
from sqlalchemy.orm import Session

from tkd_tracker.audit import ConsistencyAuditor
from tkd_tracker.config import settings
from tkd_tracker.database import Base, engine, get_db
from tkd_tracker.errors import TrackerError, ValidationError
from tkd_tracker.models import (
    PROFILE_ORIGINS,
    Champion,
    Competitor,
    CompetitorOrigin,
    Event,
    Tournament,
    TournamentCompetitor,
)
from tkd_tracker.ranking import PersistResult
from tkd_tracker.schemas import (
    CompetitorPromote,
    EventEnsure,
    PersistResultOut,
    ProfileCreate,
    RankedEntryOut,
    ScoreSubmit,
    SeasonalPointsRecordOut,
    SeasonalSummaryOut,
    TieResolve,
    TournamentCompetitorCreate,
    TournamentCreate,
    VideoAttach,
)
from tkd_tracker.seasonal import SeasonalPointsAggregator
from tkd_tracker.services import (
    TrackerService,
    get_event_or_404,
    get_tournament_or_404,
    profile_model,
)

logging.basicConfig(
    level=getattr(logging, settings.log_level.upper(), logging.INFO),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


app = FastAPI(
    title="Taekwondo Tournament Tracker",
    version="1.0.0",
    description="Judge scoring, event rankings and seasonal points for taekwondo forms tournaments.",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

tracker = TrackerService()


def get_tracker() -> TrackerService:
    return tracker


@app.on_event("startup")
def on_startup() -> None:
    Base.metadata.create_all(bind=engine)


@app.exception_handler(TrackerError)
async def tracker_error_handler(request: Request, exc: TrackerError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s %s", request.method, request.url.path, exc.code, exc.details)
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


def _persist_out(result: PersistResult) -> PersistResultOut:
    return PersistResultOut(
        event_id=result.event_id,
        written=result.written,
        attempts=result.attempts,
        rankings=[
            RankedEntryOut(
                tournament_competitor_id=e.competitor_id,
                total=e.total,
                rank=e.rank,
                placement=e.placement,
                medal=e.medal,
                tie_breaker_status=e.tie_breaker_status,
            )
            for e in result.entries
        ],
        unranked_score_ids=result.unranked_score_ids,
    )


def _tournament_out(t: Tournament) -> dict[str, Any]:
    return {
        "id": t.id,
        "name": t.name,
        "tournament_class": t.tournament_class,
        "date": t.date,
        "location": t.location,
    }


def _competitor_out(c: TournamentCompetitor) -> dict[str, Any]:
    return {
        "id": c.id,
        "tournament_id": c.tournament_id,
        "name": c.name,
        "origin_type": c.origin_type,
        "profile_id": c.profile_id,
    }


def _require_profile_origin(origin_type: str) -> None:
    if origin_type not in PROFILE_ORIGINS:
        raise ValidationError("Profile type must be champion or competitor", {"origin_type": origin_type})


@app.get("/health")
def health() -> dict[str, str]:
    return {"status": "ok"}


@app.post("/tournaments")
def create_tournament(
    payload: TournamentCreate,
    db: Session = Depends(get_db),
    svc: TrackerService = Depends(get_tracker),
):
    t = svc.create_tournament(
        db,
        name=payload.name,
        tournament_class=payload.tournament_class,
        tournament_date=payload.date,
        location=payload.location,
    )
    return _tournament_out(t)


@app.get("/tournaments")
def list_tournaments(db: Session = Depends(get_db)):
    rows = db.scalars(select(Tournament).order_by(Tournament.date.desc(), Tournament.id.asc())).all()
    return [_tournament_out(t) for t in rows]


@app.get("/tournaments/{tournament_id}")
def get_tournament(tournament_id: int, db: Session = Depends(get_db)):
    return _tournament_out(get_tournament_or_404(db, tournament_id))


@app.post("/tournaments/{tournament_id}/events")
def ensure_event(
    tournament_id: int,
    payload: EventEnsure,
    db: Session = Depends(get_db),
    svc: TrackerService = Depends(get_tracker),
):
    row, created = svc.ensure_event(db, tournament_id, payload.event_type, payload.name)
    return {
        "id": row["id"],
        "tournament_id": row["tournament_id"],
        "event_type": row["event_type"],
        "name": row["name"],
        "created": created,
    }


@app.post("/tournaments/{tournament_id}/events/defaults")
def ensure_default_events(
    tournament_id: int,
    db: Session = Depends(get_db),
    svc: TrackerService = Depends(get_tracker),
):
    rows = svc.ensure_default_events(db, tournament_id)
    return [{"id": r["id"], "event_type": r["event_type"], "name": r["name"]} for r in rows]


@app.get("/tournaments/{tournament_id}/events")
def list_events(tournament_id: int, db: Session = Depends(get_db)):
    get_tournament_or_404(db, tournament_id)
    rows = db.scalars(
        select(Event).where(Event.tournament_id == tournament_id).order_by(Event.id.asc())
    ).all()
    return [{"id": e.id, "event_type": e.event_type, "name": e.name} for e in rows]


@app.delete("/events/{event_id}")
def delete_event(
    event_id: int,
    db: Session = Depends(get_db),
    svc: TrackerService = Depends(get_tracker),
):
    svc.delete_event(db, event_id)
    return {"deleted": event_id}


@app.post("/profiles/{origin_type}")
def create_profile(origin_type: str, payload: ProfileCreate, db: Session = Depends(get_db)):
    _require_profile_origin(origin_type)
    profile = profile_model(origin_type)(
        name=payload.name.strip(), school=payload.school, location=payload.location
    )
    db.add(profile)
    db.commit()
    db.refresh(profile)
    return {"id": profile.id, "origin_type": origin_type, "name": profile.name}


@app.get("/profiles/champion")
def list_champions(db: Session = Depends(get_db)):
    rows = db.scalars(select(Champion).order_by(Champion.name.asc(), Champion.id.asc())).all()
    return [{"id": c.id, "name": c.name, "school": c.school} for c in rows]


@app.get("/profiles/competitor")
def list_competitors(db: Session = Depends(get_db)):
    rows = db.scalars(select(Competitor).order_by(Competitor.name.asc(), Competitor.id.asc())).all()
    return [{"id": c.id, "name": c.name, "school": c.school} for c in rows]


@app.get("/profiles/{origin_type}/{profile_id}/seasonal-points", response_model=SeasonalSummaryOut)
def seasonal_points(
    origin_type: str,
    profile_id: int,
    db: Session = Depends(get_db),
    svc: TrackerService = Depends(get_tracker),
):
    summary = SeasonalPointsAggregator(svc.store(db)).summary(origin_type, profile_id)
    return SeasonalSummaryOut(
        total_points=summary.total_points,
        points_by_class=summary.points_by_class,
        medals=summary.medals,
        history=[SeasonalPointsRecordOut(**asdict(r)) for r in summary.history],
    )


@app.get("/profiles/{origin_type}/{profile_id}/results", response_model=list[SeasonalPointsRecordOut])
def all_results(
    origin_type: str,
    profile_id: int,
    db: Session = Depends(get_db),
    svc: TrackerService = Depends(get_tracker),
):
    records = SeasonalPointsAggregator(svc.store(db)).all_results(origin_type, profile_id)
    return [SeasonalPointsRecordOut(**asdict(r)) for r in records]


@app.post("/tournaments/{tournament_id}/competitors")
def register_competitor(
    tournament_id: int,
    payload: TournamentCompetitorCreate,
    db: Session = Depends(get_db),
    svc: TrackerService = Depends(get_tracker),
):
    try:
        origin = CompetitorOrigin(payload.origin_type, payload.profile_id)
    except ValueError as exc:
        raise ValidationError(str(exc), {"origin_type": payload.origin_type}) from exc
    entry = svc.register_competitor(db, tournament_id, payload.name, origin)
    return _competitor_out(entry)


@app.get("/tournaments/{tournament_id}/competitors")
def list_tournament_competitors(tournament_id: int, db: Session = Depends(get_db)):
    get_tournament_or_404(db, tournament_id)
    rows = db.scalars(
        select(TournamentCompetitor)
        .where(TournamentCompetitor.tournament_id == tournament_id)
        .order_by(TournamentCompetitor.name.asc(), TournamentCompetitor.id.asc())
    ).all()
    return [_competitor_out(c) for c in rows]


@app.post("/tournament-competitors/{competitor_id}/promote")
def promote_competitor(
    competitor_id: int,
    payload: CompetitorPromote,
    db: Session = Depends(get_db),
    svc: TrackerService = Depends(get_tracker),
):
    entry = svc.promote_competitor(
        db,
        competitor_id,
        payload.target,
        name=payload.name,
        school=payload.school,
        location=payload.location,
    )
    return _competitor_out(entry)


@app.post("/events/{event_id}/scores", response_model=PersistResultOut)
def submit_score(
    event_id: int,
    payload: ScoreSubmit,
    db: Session = Depends(get_db),
    svc: TrackerService = Depends(get_tracker),
):
    _, result = svc.submit_score(
        db,
        event_id,
        payload.tournament_competitor_id,
        (payload.judge_a_score, payload.judge_b_score, payload.judge_c_score),
    )
    return _persist_out(result)


@app.delete("/events/{event_id}/scores/{competitor_id}", response_model=PersistResultOut)
def withdraw_competitor(
    event_id: int,
    competitor_id: int,
    db: Session = Depends(get_db),
    svc: TrackerService = Depends(get_tracker),
):
    return _persist_out(svc.withdraw_competitor(db, event_id, competitor_id))


@app.post("/events/{event_id}/recompute", response_model=PersistResultOut)
def recompute_event(
    event_id: int,
    db: Session = Depends(get_db),
    svc: TrackerService = Depends(get_tracker),
):
    return _persist_out(svc.recompute_event(db, event_id))


@app.get("/events/{event_id}/leaderboard")
def event_leaderboard(
    event_id: int,
    db: Session = Depends(get_db),
    svc: TrackerService = Depends(get_tracker),
):
    event = get_event_or_404(db, event_id)
    return {
        "event_id": event.id,
        "event_name": event.name,
        "leaderboard": svc.leaderboard(db, event_id),
    }


@app.get("/events/{event_id}/tie-groups")
def event_tie_groups(
    event_id: int,
    db: Session = Depends(get_db),
    svc: TrackerService = Depends(get_tracker),
):
    groups = svc.open_tie_groups(db, event_id)
    return [
        {"rank": group[0].rank, "total": group[0].total, "competitor_ids": [e.competitor_id for e in group]}
        for group in groups
    ]


@app.post("/events/{event_id}/tie-breaks", response_model=PersistResultOut)
def resolve_tie(
    event_id: int,
    payload: TieResolve,
    db: Session = Depends(get_db),
    svc: TrackerService = Depends(get_tracker),
):
    return _persist_out(svc.resolve_tie(db, event_id, payload.ordered_competitor_ids))


@app.delete("/events/{event_id}/tie-breaks", response_model=PersistResultOut)
def clear_tie_breaks(
    event_id: int,
    db: Session = Depends(get_db),
    svc: TrackerService = Depends(get_tracker),
):
    return _persist_out(svc.clear_tie_resolutions(db, event_id))


@app.post("/scores/{score_id}/video")
def attach_video(
    score_id: int,
    payload: VideoAttach,
    db: Session = Depends(get_db),
    svc: TrackerService = Depends(get_tracker),
):
    video = svc.attach_video(db, score_id, payload.storage_path)
    return {
        "id": video.id,
        "event_score_id": video.event_score_id,
        "storage_path": video.storage_path,
        "score_snapshot": video.score_snapshot,
        "placement_snapshot": video.placement_snapshot,
    }


@app.get("/events/{event_id}/audit")
def audit_event(
    event_id: int,
    db: Session = Depends(get_db),
    svc: TrackerService = Depends(get_tracker),
):
    auditor = ConsistencyAuditor(svc.store(db))
    mismatches = auditor.verify_event_ranks(event_id)
    duplicates = auditor.find_duplicate_scores(event_id)
    return {
        "event_id": event_id,
        "consistent": not mismatches and not duplicates,
        "rank_mismatches": [asdict(m) for m in mismatches],
        "duplicate_scores": [asdict(d) for d in duplicates],
    }


@app.get("/tournaments/{tournament_id}/audit/duplicate-events")
def audit_duplicate_events(
    tournament_id: int,
    db: Session = Depends(get_db),
    svc: TrackerService = Depends(get_tracker),
):
    get_tournament_or_404(db, tournament_id)
    reports = ConsistencyAuditor(svc.store(db)).find_duplicate_events(tournament_id)
    return {"tournament_id": tournament_id, "duplicates": [asdict(r) for r in reports]}
