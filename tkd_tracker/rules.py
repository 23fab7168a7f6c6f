from __future__ import annotations

import re
from dataclasses import dataclass
from itertools import groupby
from typing import Dict, FrozenSet, List, Mapping, Optional, Sequence, Tuple


JUDGE_FIELDS = ("judge_a_score", "judge_b_score", "judge_c_score")
SCORE_DECIMALS = 2
MEDAL_PLACES = 3

TIED = "tied"

GOLD = "\U0001F947"
SILVER = "\U0001F948"
BRONZE = "\U0001F949"

POINTS_TABLE: Dict[str, Tuple[int, int, int]] = {
    "AAA": (20, 15, 10),
    "AA": (15, 10, 8),
    "A": (8, 5, 2),
    "B": (5, 3, 1),
}

_CLASS_PATTERN = re.compile(r"^\s*(AAA|AA|A|B|C)(?:\s*[-–]|\s|$)", re.IGNORECASE)


@dataclass(frozen=True)
class ScoreLine:
    competitor_id: int
    judge_scores: Tuple[Optional[float], Optional[float], Optional[float]]

    @property
    def is_complete(self) -> bool:
        return all(s is not None for s in self.judge_scores)

    @property
    def total(self) -> Optional[float]:
        return total_score(self.judge_scores)


@dataclass(frozen=True)
class TiePick:
    """One organiser pick, valid only while the tie group still has exactly ``group`` as members."""

    position: int
    group: FrozenSet[int]


@dataclass(frozen=True)
class RankedEntry:
    competitor_id: int
    total: float
    rank: int
    tie_breaker_status: Optional[str]

    @property
    def placement(self) -> Optional[str]:
        return placement_for_rank(self.rank)

    @property
    def medal(self) -> Optional[str]:
        return medal_for_placement(self.placement)


def normalize_tournament_class(value: Optional[str]) -> Optional[str]:
    """
    Extract the class prefix from a tournament class label.
    "AAA - Nationals" -> "AAA", "b" -> "B", "Open" -> None.
    """
    if not value:
        return None
    match = _CLASS_PATTERN.match(value)
    return match.group(1).upper() if match else None


def points_for_rank(tournament_class: Optional[str], final_rank: Optional[int], competitor_count: int) -> int:
    normalized = normalize_tournament_class(tournament_class)
    if normalized is None or final_rank is None:
        return 0
    if final_rank not in (1, 2, 3):
        return 0
    if normalized == "C":
        # Class C scales down with weak fields.
        if competitor_count >= 4:
            return (2, 1, 0)[final_rank - 1]
        if competitor_count == 3:
            return (1, 0, 0)[final_rank - 1]
        return 0
    return POINTS_TABLE[normalized][final_rank - 1]


def round_score(value: float) -> float:
    return round(float(value), SCORE_DECIMALS)


def total_score(judge_scores: Sequence[Optional[float]]) -> Optional[float]:
    if len(judge_scores) != len(JUDGE_FIELDS) or any(s is None for s in judge_scores):
        return None
    return round_score(sum(judge_scores))


def placement_for_rank(rank: Optional[int]) -> Optional[str]:
    if rank is None or not 1 <= rank <= MEDAL_PLACES:
        return None
    return str(rank)


def medal_for_placement(placement: Optional[str]) -> Optional[str]:
    return {"1": GOLD, "2": SILVER, "3": BRONZE}.get(placement or "")


def compute_rankings(
    lines: Sequence[ScoreLine],
    resolution: Optional[Mapping[int, TiePick]] = None,
) -> List[RankedEntry]:
    """
    Standard competition ranking over complete score lines.

    Highest total ranks first; equal totals share the lower-numbered rank and
    the next distinct total resumes at its position (1, 1, 3). Lines with a
    missing judge score are left out entirely.

    ``resolution`` maps competitor id -> ``TiePick`` from a manual tie-break.
    Picked members of a tie group take distinct ranks in pick order; the
    unpicked rest share the following rank. A pick only counts while the
    group's membership equals the one it was made for, so anyone joining or
    leaving the tie reopens it.
    """
    complete = [line for line in lines if line.is_complete]
    complete.sort(key=lambda line: (-line.total, line.competitor_id))

    entries: List[RankedEntry] = []
    position = 1
    for total, grouped in groupby(complete, key=lambda line: line.total):
        group = list(grouped)
        entries.extend(_rank_group(group, total, position, resolution or {}))
        position += len(group)

    entries.sort(key=lambda e: (e.rank, e.competitor_id))
    return entries


def _rank_group(
    group: List[ScoreLine],
    total: float,
    base_rank: int,
    resolution: Mapping[int, TiePick],
) -> List[RankedEntry]:
    if len(group) == 1:
        return [RankedEntry(group[0].competitor_id, total, base_rank, None)]

    member_ids = frozenset(line.competitor_id for line in group)
    picked = sorted(
        (cid for cid in member_ids if cid in resolution and resolution[cid].group == member_ids),
        key=lambda cid: (resolution[cid].position, cid),
    )
    if not picked:
        return [RankedEntry(line.competitor_id, total, base_rank, TIED) for line in group]

    entries = [
        RankedEntry(cid, total, base_rank + offset, None) for offset, cid in enumerate(picked)
    ]
    remaining = sorted(member_ids.difference(picked))
    remaining_rank = base_rank + len(picked)
    remaining_status = TIED if len(remaining) > 1 else None
    entries.extend(RankedEntry(cid, total, remaining_rank, remaining_status) for cid in remaining)
    return entries


def tie_groups(entries: Sequence[RankedEntry], top: int = MEDAL_PLACES) -> List[List[RankedEntry]]:
    """Unresolved tie groups whose shared rank falls within the first ``top`` places."""
    groups: List[List[RankedEntry]] = []
    tied = [e for e in entries if e.tie_breaker_status == TIED and e.rank <= top]
    tied.sort(key=lambda e: (e.rank, e.competitor_id))
    for _, grouped in groupby(tied, key=lambda e: e.rank):
        members = list(grouped)
        if len(members) > 1:
            groups.append(members)
    return groups
