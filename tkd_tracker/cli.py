"""
Operator tooling for ranking consistency.

Usage:
    python -m tkd_tracker.cli <command> [options]

Commands:
    duplicates      Report duplicate events of a tournament
    verify-ranks    Compare stored ranks of an event with a fresh ranking
    schema          Report expected columns missing from the database
    recompute       Re-rank an event and rewrite every competitor's rank

Environment:
    DATABASE_URL    SQLAlchemy connection string
    LOG_LEVEL       DEBUG|INFO|WARNING|ERROR

Checks exit with 1 when they find a problem.
"""
from __future__ import annotations

import argparse
import logging
import sys
from typing import Optional, Sequence

from sqlalchemy.orm import Session

from tkd_tracker.audit import ConsistencyAuditor
from tkd_tracker.config import settings
from tkd_tracker.database import SessionLocal
from tkd_tracker.errors import TrackerError
from tkd_tracker.ranking import RankPersister
from tkd_tracker.store import DataStore

logger = logging.getLogger(__name__)


def setup_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="tkd-tracker", description="Ranking consistency tools")
    parser.add_argument("--log-level", default=settings.log_level)
    sub = parser.add_subparsers(dest="command", required=True)

    dup = sub.add_parser("duplicates", help="Report duplicate events of a tournament")
    dup.add_argument("--tournament", type=int, required=True)
    dup.add_argument("--event-type", default=None)
    dup.add_argument("--window", type=float, default=settings.duplicate_window_seconds)

    verify = sub.add_parser("verify-ranks", help="Compare stored ranks with a fresh ranking")
    verify.add_argument("--event", type=int, required=True)

    sub.add_parser("schema", help="Report missing columns")

    recompute = sub.add_parser("recompute", help="Re-rank an event")
    recompute.add_argument("--event", type=int, required=True)
    return parser


def _duplicates(store: DataStore, args: argparse.Namespace) -> int:
    reports = ConsistencyAuditor(store).find_duplicate_events(args.tournament, args.event_type, args.window)
    if not reports:
        print(f"No duplicate events in tournament {args.tournament}")
        return 0
    for report in reports:
        flag = " (race suspected)" if report.race_suspected else ""
        print(f"{report.event_type}: events {report.event_ids}{flag}")
        for event_id, created in zip(report.event_ids, report.created_at):
            print(f"  {event_id} created {created} with {report.score_counts[event_id]} scores")
    return 1


def _verify_ranks(store: DataStore, args: argparse.Namespace) -> int:
    auditor = ConsistencyAuditor(store)
    mismatches = auditor.verify_event_ranks(args.event)
    duplicates = auditor.find_duplicate_scores(args.event)
    for check in mismatches:
        print(f"score {check.row_id}: {check.field} stored {check.actual!r}, expected {check.expected!r}")
    for dup in duplicates:
        print(f"{dup.origin_type} {dup.profile_id}: duplicate score rows {dup.score_ids}")
    if not mismatches and not duplicates:
        print(f"Event {args.event} is consistent")
        return 0
    return 1


def _schema(store: DataStore, args: argparse.Namespace) -> int:
    missing = ConsistencyAuditor(store).check_schema()
    for table, columns in missing.items():
        print(f"{table}: missing {', '.join(columns)}")
    if not missing:
        print("Schema matches")
        return 0
    return 1


def _recompute(store: DataStore, args: argparse.Namespace) -> int:
    result = RankPersister(store).persist(args.event)
    print(f"Event {result.event_id}: {result.written} rows written, {len(result.entries)} ranked")
    return 0


COMMANDS = {
    "duplicates": _duplicates,
    "verify-ranks": _verify_ranks,
    "schema": _schema,
    "recompute": _recompute,
}


def main(argv: Optional[Sequence[str]] = None, session: Optional[Session] = None) -> int:
    args = build_parser().parse_args(argv)
    setup_logging(args.log_level)
    db = session or SessionLocal()
    try:
        return COMMANDS[args.command](DataStore(db), args)
    except TrackerError as exc:
        logger.error("%s: %s %s", exc.code, exc.message, exc.details)
        return 2
    finally:
        if session is None:
            db.close()


if __name__ == "__main__":
    sys.exit(main())
