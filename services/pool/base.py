from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Set

from shared.monitoring.models import WatcherResource


@dataclass
class PoolContribution:
    """
    What one cooperating subsystem knows about the watcher pool.

    - candidates: watchers this subsystem can supply
    - excluded:   ids that must never be offered (e.g. marked for exchange)
    - reserved:   ids held idle for monitoring; always available
    - allocated:  ids busy in a mutually exclusive external activity
    """

    candidates: List[WatcherResource] = field(default_factory=list)
    excluded: Set[str] = field(default_factory=set)
    reserved: Set[str] = field(default_factory=set)
    allocated: Set[str] = field(default_factory=set)

    @classmethod
    def from_payload(cls, payload: Any) -> "PoolContribution":
        """
        Build a contribution from a roster-shaped mapping:

        {
            "watchers":  [{"id": ..., "name": ..., "rank": ...}],
            "excluded":  ["id", ...],
            "reserved":  ["id", ...],
            "allocated": ["id", ...]
        }

        Unknown or malformed entries are skipped.
        """
        if not isinstance(payload, dict):
            return cls()

        candidates: List[WatcherResource] = []
        for raw in payload.get("watchers") or []:
            watcher = WatcherResource.from_dict(raw)
            if watcher:
                candidates.append(watcher)

        return cls(
            candidates=candidates,
            excluded=_id_set(payload.get("excluded")),
            reserved=_id_set(payload.get("reserved")),
            allocated=_id_set(payload.get("allocated")),
        )


def _id_set(values: Any) -> Set[str]:
    if not isinstance(values, (list, tuple, set)):
        return set()
    ids: Set[str] = set()
    for value in values:
        if isinstance(value, dict):
            value = value.get("id")
        if value:
            ids.add(str(value))
    return ids


@dataclass
class PoolSnapshot:
    """Merged view across every registered provider."""

    candidates: List[WatcherResource] = field(default_factory=list)
    excluded: Set[str] = field(default_factory=set)
    reserved: Set[str] = field(default_factory=set)
    allocated: Set[str] = field(default_factory=set)

    def candidate_ids(self) -> Set[str]:
        return {w.id for w in self.candidates}

    def merge(self, contribution: PoolContribution) -> None:
        known = self.candidate_ids()
        for watcher in contribution.candidates:
            if watcher.id not in known:
                self.candidates.append(watcher)
                known.add(watcher.id)
        self.excluded |= contribution.excluded
        self.reserved |= contribution.reserved
        self.allocated |= contribution.allocated

    def by_id(self) -> Dict[str, WatcherResource]:
        return {w.id: w for w in self.candidates}


class ResourcePoolProvider(ABC):
    """
    Base class for cooperating subsystems that supply watcher candidates
    or exclusion hints.

    Providers may perform I/O. Any exception (or a slow response) is
    treated by the registry as an empty contribution.
    """

    def __init__(self, *, name: str):
        self.name = name

    @abstractmethod
    async def snapshot(self) -> PoolContribution:
        """
        Return this provider's current view of the pool.
        """
        raise NotImplementedError


class StaticPoolProvider(ResourcePoolProvider):
    """
    In-process provider whose contribution is set directly by its owner.
    """

    def __init__(
        self,
        *,
        name: str,
        candidates: Iterable[WatcherResource] = (),
        excluded: Iterable[str] = (),
        reserved: Iterable[str] = (),
        allocated: Iterable[str] = (),
    ):
        super().__init__(name=name)
        self.candidates: List[WatcherResource] = list(candidates)
        self.excluded: Set[str] = set(excluded)
        self.reserved: Set[str] = set(reserved)
        self.allocated: Set[str] = set(allocated)

    async def snapshot(self) -> PoolContribution:
        return PoolContribution(
            candidates=list(self.candidates),
            excluded=set(self.excluded),
            reserved=set(self.reserved),
            allocated=set(self.allocated),
        )
