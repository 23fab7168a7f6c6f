from __future__ import annotations

from typing import Dict, Optional, Tuple


def normalize_event_type(event_type: str) -> str:
    return event_type.strip().lower()


class EventIdCache:
    """
    Caller-owned (tournament_id, event_type) -> event_id lookup.

    Services write through it on event creation and drop entries on deletion;
    nothing is shared between instances.
    """

    def __init__(self) -> None:
        self._ids: Dict[Tuple[int, str], int] = {}

    @staticmethod
    def _key(tournament_id: int, event_type: str) -> Tuple[int, str]:
        return tournament_id, normalize_event_type(event_type)

    def get(self, tournament_id: int, event_type: str) -> Optional[int]:
        return self._ids.get(self._key(tournament_id, event_type))

    def put(self, tournament_id: int, event_type: str, event_id: int) -> None:
        self._ids[self._key(tournament_id, event_type)] = event_id

    def invalidate(self, tournament_id: int, event_type: str) -> None:
        self._ids.pop(self._key(tournament_id, event_type), None)

    def invalidate_tournament(self, tournament_id: int) -> None:
        for key in [k for k in self._ids if k[0] == tournament_id]:
            del self._ids[key]

    def clear(self) -> None:
        self._ids.clear()

    def __len__(self) -> int:
        return len(self._ids)
