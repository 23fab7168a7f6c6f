from __future__ import annotations

from dataclasses import dataclass
from datetime import date as calendar_date, datetime, timezone
from typing import Optional

from sqlalchemy import (
    Date,
    DateTime,
    Float,
    ForeignKey,
    Integer,
    String,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from tkd_tracker.database import Base


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Tournament(Base):
    __tablename__ = "tournaments"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(128), nullable=False)
    date: Mapped[calendar_date | None] = mapped_column(Date, nullable=True)
    location: Mapped[str | None] = mapped_column(String(128), nullable=True)
    tournament_class: Mapped[str | None] = mapped_column(String(32), nullable=True)  # AAA/AA/A/B/C
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)

    events: Mapped[list["Event"]] = relationship(
        "Event", back_populates="tournament", cascade="all, delete-orphan"
    )
    competitors: Mapped[list["TournamentCompetitor"]] = relationship(
        "TournamentCompetitor", back_populates="tournament", cascade="all, delete-orphan"
    )


class Event(Base):
    __tablename__ = "events"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    tournament_id: Mapped[int] = mapped_column(ForeignKey("tournaments.id"), nullable=False, index=True)
    event_type: Mapped[str] = mapped_column(String(64), nullable=False)
    name: Mapped[str] = mapped_column(String(128), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)

    tournament: Mapped[Tournament] = relationship("Tournament", back_populates="events")
    scores: Mapped[list["EventScore"]] = relationship(
        "EventScore", back_populates="event", cascade="all, delete-orphan"
    )

    __table_args__ = (UniqueConstraint("tournament_id", "event_type", name="uq_event_type_per_tournament"),)


class Champion(Base):
    __tablename__ = "champions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(128), nullable=False)
    school: Mapped[str | None] = mapped_column(String(128), nullable=True)
    location: Mapped[str | None] = mapped_column(String(128), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)


class Competitor(Base):
    __tablename__ = "competitors"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(128), nullable=False)
    school: Mapped[str | None] = mapped_column(String(128), nullable=True)
    location: Mapped[str | None] = mapped_column(String(128), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)


ORIGIN_CHAMPION = "champion"
ORIGIN_COMPETITOR = "competitor"
ORIGIN_OTHER = "other"
PROFILE_ORIGINS = (ORIGIN_CHAMPION, ORIGIN_COMPETITOR)


@dataclass(frozen=True)
class CompetitorOrigin:
    """Champion(profile_id) | Competitor(profile_id) | Other."""

    kind: str
    profile_id: Optional[int] = None

    def __post_init__(self) -> None:
        if self.kind not in (*PROFILE_ORIGINS, ORIGIN_OTHER):
            raise ValueError(f"Unknown competitor origin {self.kind!r}")
        if (self.kind == ORIGIN_OTHER) != (self.profile_id is None):
            raise ValueError("Champion/Competitor origins need a profile id, Other must not have one")

    @classmethod
    def other(cls) -> "CompetitorOrigin":
        return cls(ORIGIN_OTHER)


class TournamentCompetitor(Base):
    __tablename__ = "tournament_competitors"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    tournament_id: Mapped[int] = mapped_column(ForeignKey("tournaments.id"), nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(128), nullable=False)
    origin_type: Mapped[str] = mapped_column(
        String(16), default=ORIGIN_OTHER, nullable=False
    )  # champion, competitor, other
    profile_id: Mapped[int | None] = mapped_column(Integer, nullable=True, index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)

    tournament: Mapped[Tournament] = relationship("Tournament", back_populates="competitors")
    scores: Mapped[list["EventScore"]] = relationship(
        "EventScore", back_populates="competitor", cascade="all, delete-orphan"
    )

    @property
    def origin(self) -> CompetitorOrigin:
        return CompetitorOrigin(self.origin_type, self.profile_id)


class EventScore(Base):
    __tablename__ = "event_scores"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    event_id: Mapped[int] = mapped_column(ForeignKey("events.id"), nullable=False, index=True)
    tournament_competitor_id: Mapped[int] = mapped_column(
        ForeignKey("tournament_competitors.id"), nullable=False, index=True
    )
    judge_a_score: Mapped[float | None] = mapped_column(Float, nullable=True)
    judge_b_score: Mapped[float | None] = mapped_column(Float, nullable=True)
    judge_c_score: Mapped[float | None] = mapped_column(Float, nullable=True)
    total_score: Mapped[float | None] = mapped_column(Float, nullable=True)
    rank: Mapped[int | None] = mapped_column(Integer, nullable=True)
    placement: Mapped[str | None] = mapped_column(String(8), nullable=True)
    medal: Mapped[str | None] = mapped_column(String(16), nullable=True)
    tie_breaker_status: Mapped[str | None] = mapped_column(String(32), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
    # Bumped on judge score edits only, not on rank rewrites.
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)

    event: Mapped[Event] = relationship("Event", back_populates="scores")
    competitor: Mapped[TournamentCompetitor] = relationship("TournamentCompetitor", back_populates="scores")

    __table_args__ = (
        UniqueConstraint("event_id", "tournament_competitor_id", name="uq_event_score_competitor"),
    )


class TieBreak(Base):
    __tablename__ = "tie_breaks"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    event_id: Mapped[int] = mapped_column(ForeignKey("events.id"), nullable=False, index=True)
    tournament_competitor_id: Mapped[int] = mapped_column(
        ForeignKey("tournament_competitors.id"), nullable=False
    )
    position: Mapped[int] = mapped_column(Integer, nullable=False)  # 1 = picked first
    # Sorted, comma-separated tournament competitor ids of the tie group at pick time.
    group_members: Mapped[str] = mapped_column(String(512), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)

    __table_args__ = (
        UniqueConstraint("event_id", "tournament_competitor_id", name="uq_tie_break_competitor"),
    )


class Video(Base):
    __tablename__ = "videos"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    event_score_id: Mapped[int] = mapped_column(
        ForeignKey("event_scores.id", ondelete="CASCADE"), nullable=False, unique=True
    )
    storage_path: Mapped[str] = mapped_column(String(512), nullable=False)
    # Snapshot taken at upload time, not kept in sync with the score.
    score_snapshot: Mapped[float | None] = mapped_column(Float, nullable=True)
    placement_snapshot: Mapped[str | None] = mapped_column(String(8), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
