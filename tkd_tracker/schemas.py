from __future__ import annotations

import datetime as dt
from typing import Literal, Optional

from pydantic import BaseModel, Field


class TournamentCreate(BaseModel):
    name: str = Field(min_length=1, max_length=128)
    tournament_class: str = Field(min_length=1, max_length=32)
    date: Optional[dt.date] = None
    location: Optional[str] = Field(default=None, max_length=128)


class EventEnsure(BaseModel):
    event_type: str = Field(min_length=1, max_length=64)
    name: Optional[str] = Field(default=None, max_length=128)


class ProfileCreate(BaseModel):
    name: str = Field(min_length=1, max_length=128)
    school: Optional[str] = Field(default=None, max_length=128)
    location: Optional[str] = Field(default=None, max_length=128)


class TournamentCompetitorCreate(BaseModel):
    name: str = Field(min_length=1, max_length=128)
    origin_type: Literal["champion", "competitor", "other"] = "other"
    profile_id: Optional[int] = None


class CompetitorPromote(BaseModel):
    target: Literal["champion", "competitor"]
    name: Optional[str] = Field(default=None, max_length=128)
    school: Optional[str] = Field(default=None, max_length=128)
    location: Optional[str] = Field(default=None, max_length=128)


class ScoreSubmit(BaseModel):
    tournament_competitor_id: int
    judge_a_score: Optional[float] = None
    judge_b_score: Optional[float] = None
    judge_c_score: Optional[float] = None


class TieResolve(BaseModel):
    ordered_competitor_ids: list[int] = Field(min_length=1)


class VideoAttach(BaseModel):
    storage_path: str = Field(min_length=1, max_length=512)


class RankedEntryOut(BaseModel):
    tournament_competitor_id: int
    total: float
    rank: int
    placement: Optional[str] = None
    medal: Optional[str] = None
    tie_breaker_status: Optional[str] = None


class PersistResultOut(BaseModel):
    event_id: int
    written: int
    attempts: int
    rankings: list[RankedEntryOut]
    unranked_score_ids: list[int]


class SeasonalPointsRecordOut(BaseModel):
    score_id: int
    event_id: int
    event_name: str
    event_type: str
    tournament_id: int
    tournament_name: str
    tournament_class: str
    tournament_date: Optional[dt.date] = None
    rank: int
    points: int
    judge_scores: list[Optional[float]]
    total_score: Optional[float] = None
    competitor_count: int


class SeasonalSummaryOut(BaseModel):
    total_points: int
    points_by_class: dict[str, int]
    medals: dict[str, int]
    history: list[SeasonalPointsRecordOut]
