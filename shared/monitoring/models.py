"""Watcher, subject and binding records shared by the allocator and the log."""

from __future__ import annotations

from dataclasses import dataclass, asdict
from typing import Any, Dict, Optional, Tuple

RANKS = [
    "E",
    "D",
    "C",
    "B",
    "A",
    "S",
    "SS",
    "SSS",
    "SSS+",
    "NH",
    "Monarch",
    "Monarch+",
    "Shadow Monarch",
]

DEFAULT_RANK = "E"


def rank_index(rank: Optional[str]) -> int:
    """Position of a rank in the tier list; unknown ranks sort last."""
    try:
        return RANKS.index(rank or DEFAULT_RANK)
    except ValueError:
        return len(RANKS)


@dataclass(frozen=True)
class WatcherResource:
    id: str
    name: str = "Shadow"
    rank: str = DEFAULT_RANK

    def sort_key(self) -> Tuple[int, str]:
        return (rank_index(self.rank), self.id)

    @classmethod
    def from_dict(cls, raw: Any) -> Optional["WatcherResource"]:
        if not isinstance(raw, dict):
            return None
        watcher_id = raw.get("id")
        if not watcher_id:
            return None
        name = raw.get("name") or raw.get("role") or "Shadow"
        rank = raw.get("rank") or DEFAULT_RANK
        return cls(id=str(watcher_id), name=str(name), rank=str(rank))


@dataclass(frozen=True)
class TargetSubject:
    id: str
    name: str = "Unknown"


@dataclass(frozen=True)
class Binding:
    watcher_id: str
    subject_id: str
    bound_at: int
    watcher_name: str = "Shadow"
    watcher_rank: str = DEFAULT_RANK
    subject_name: str = "Unknown"

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, raw: Any) -> Optional["Binding"]:
        if not isinstance(raw, dict):
            return None
        watcher_id = raw.get("watcher_id")
        subject_id = raw.get("subject_id")
        if not watcher_id or not subject_id:
            return None
        try:
            bound_at = int(raw.get("bound_at") or 0)
        except (TypeError, ValueError):
            bound_at = 0
        return cls(
            watcher_id=str(watcher_id),
            subject_id=str(subject_id),
            bound_at=bound_at,
            watcher_name=str(raw.get("watcher_name") or "Shadow"),
            watcher_rank=str(raw.get("watcher_rank") or DEFAULT_RANK),
            subject_name=str(raw.get("subject_name") or "Unknown"),
        )


__all__ = [
    "RANKS",
    "DEFAULT_RANK",
    "rank_index",
    "WatcherResource",
    "TargetSubject",
    "Binding",
]
