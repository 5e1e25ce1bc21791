"""
Watcher allocation.

The allocator owns the set of Bindings (watcher <-> subject, strictly 1:1)
and computes which watchers are free to deploy from the merged snapshot of
every cooperating pool provider.

Availability rules, in order:
- watchers bound here are unavailable
- watchers excluded by any provider are unavailable
- watchers in a reserve pool are available, even if also allocated elsewhere
- watchers allocated to an external activity are unavailable
- if that leaves nothing, the weakest allocated-elsewhere watcher is
  released as a last resort
"""

from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Awaitable, Callable, Dict, Iterable, List, Optional, Set

from services.pool.base import PoolSnapshot
from services.pool.registry import ProviderRegistry
from shared.logging.logger import get_logger
from shared.monitoring.errors import AllocationReason, PersistenceFailure
from shared.monitoring.models import Binding, TargetSubject, WatcherResource
from shared.storage.persistence import PersistenceStore
from shared.utils.ttl_cache import TTLCache

log = get_logger("core.allocator")

AvailabilityFn = Callable[[], Awaitable[Iterable[WatcherResource]]]


def _now_ms() -> int:
    return int(time.time() * 1000)


@dataclass(frozen=True)
class DeployResult:
    binding: Optional[Binding] = None
    reason: Optional[AllocationReason] = None

    @property
    def ok(self) -> bool:
        return self.binding is not None


class ResourceAllocator:
    STORAGE_KEY = "bindings"

    def __init__(
        self,
        *,
        registry: ProviderRegistry,
        store: PersistenceStore,
        namespace: str,
        cache_ttl_seconds: float = 5.0,
        clock: Callable[[], float] = time.monotonic,
        now_ms: Callable[[], int] = _now_ms,
    ):
        self._registry = registry
        self._store = store
        self._namespace = namespace
        self._now_ms = now_ms

        # watcher_id -> Binding ; subject_id -> watcher_id
        self._by_watcher: Dict[str, Binding] = {}
        self._by_subject: Dict[str, str] = {}

        self._available_cache: TTLCache[List[WatcherResource]] = TTLCache(
            cache_ttl_seconds, clock=clock
        )

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def load(self) -> None:
        try:
            saved = self._store.load(self._namespace, self.STORAGE_KEY)
        except PersistenceFailure as e:
            log.error(f"Failed to load bindings; starting empty: {e}")
            saved = None

        self._by_watcher.clear()
        self._by_subject.clear()

        if saved is None:
            log.info("No persisted bindings found")
            return
        if not isinstance(saved, list):
            log.warning("Persisted bindings are not a list; ignoring")
            return

        for raw in saved:
            binding = Binding.from_dict(raw)
            if binding is None:
                log.warning(f"Dropping malformed binding record: {raw!r}")
                continue
            if binding.watcher_id in self._by_watcher or binding.subject_id in self._by_subject:
                log.warning(
                    f"Dropping duplicate binding {binding.watcher_id} -> {binding.subject_id}"
                )
                continue
            self._insert(binding)

        log.info(f"Loaded {len(self._by_watcher)} binding(s)")

    def _save(self) -> None:
        payload = [b.to_dict() for b in self._by_watcher.values()]
        try:
            self._store.save(self._namespace, self.STORAGE_KEY, payload)
        except PersistenceFailure as e:
            log.error(f"Failed to persist bindings: {e}")

    def _insert(self, binding: Binding) -> None:
        self._by_watcher[binding.watcher_id] = binding
        self._by_subject[binding.subject_id] = binding.watcher_id

    def _remove(self, watcher_id: str) -> Optional[Binding]:
        binding = self._by_watcher.pop(watcher_id, None)
        if binding is not None:
            self._by_subject.pop(binding.subject_id, None)
        return binding

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def is_bound(self, watcher_id: str) -> bool:
        return watcher_id in self._by_watcher

    def is_monitored(self, subject_id: str) -> bool:
        return subject_id in self._by_subject

    def binding_for_watcher(self, watcher_id: str) -> Optional[Binding]:
        return self._by_watcher.get(watcher_id)

    def binding_for_subject(self, subject_id: str) -> Optional[Binding]:
        watcher_id = self._by_subject.get(subject_id)
        return self._by_watcher.get(watcher_id) if watcher_id else None

    def bindings(self) -> List[Binding]:
        return list(self._by_watcher.values())

    @property
    def binding_count(self) -> int:
        return len(self._by_watcher)

    def monitored_subject_ids(self) -> Set[str]:
        return set(self._by_subject)

    # ------------------------------------------------------------------
    # Availability
    # ------------------------------------------------------------------

    def _compute_available(self, snapshot: PoolSnapshot) -> List[WatcherResource]:
        available: List[WatcherResource] = []
        held_elsewhere: List[WatcherResource] = []

        for watcher in snapshot.candidates:
            if watcher.id in self._by_watcher:
                continue
            if watcher.id in snapshot.excluded:
                continue
            if watcher.id in snapshot.reserved:
                available.append(watcher)
                continue
            if watcher.id in snapshot.allocated:
                held_elsewhere.append(watcher)
                continue
            available.append(watcher)

        if not available and held_elsewhere:
            fallback = min(held_elsewhere, key=lambda w: w.sort_key())
            log.info(
                f"No idle watchers; releasing weakest allocated watcher "
                f"{fallback.id} [{fallback.rank}] as last resort"
            )
            available.append(fallback)

        log.debug(
            f"Available watchers: total={len(snapshot.candidates)} "
            f"available={len(available)} bound={len(self._by_watcher)} "
            f"excluded={len(snapshot.excluded)} allocated={len(snapshot.allocated)} "
            f"reserve={len(snapshot.reserved)}"
        )
        return available

    async def get_available_resources(self, refresh: bool = False) -> List[WatcherResource]:
        """
        Watchers that may be deployed right now.

        Served from a short-lived cache unless refresh is requested; the
        cache is dropped on every binding change.
        """
        if not refresh:
            cached = self._available_cache.get()
            if cached is not None:
                return list(cached)

        snapshot = await self._registry.collect()
        available = self._compute_available(snapshot)
        self._available_cache.set(available)
        return list(available)

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def _precheck(self, watcher_id: str, subject_id: str) -> Optional[AllocationReason]:
        if watcher_id in self._by_watcher:
            return AllocationReason.ALREADY_BOUND
        if subject_id in self._by_subject:
            return AllocationReason.SUBJECT_ALREADY_MONITORED
        return None

    async def deploy(self, watcher_id: str, subject: TargetSubject) -> DeployResult:
        """
        Bind a watcher to a subject.

        Availability is re-fetched before committing, and the in-memory
        preconditions are checked again once the fetch resumes, since other
        deploys may have committed in the meantime.
        """
        reason = self._precheck(watcher_id, subject.id)
        if reason:
            log.debug(f"Deploy {watcher_id} -> {subject.id} refused: {reason.name}")
            return DeployResult(reason=reason)

        available = await self.get_available_resources(refresh=True)

        reason = self._precheck(watcher_id, subject.id)
        if reason:
            log.debug(f"Deploy {watcher_id} -> {subject.id} lost race: {reason.name}")
            return DeployResult(reason=reason)

        watcher = next((w for w in available if w.id == watcher_id), None)
        if watcher is None:
            log.info(f"Watcher {watcher_id} no longer available; deploy aborted")
            return DeployResult(reason=AllocationReason.RESOURCE_UNAVAILABLE)

        binding = Binding(
            watcher_id=watcher.id,
            subject_id=subject.id,
            bound_at=self._now_ms(),
            watcher_name=watcher.name,
            watcher_rank=watcher.rank,
            subject_name=subject.name,
        )
        self._insert(binding)
        self._available_cache.invalidate()
        self._save()

        log.info(
            f"Deployed [{binding.watcher_rank}] {binding.watcher_name} "
            f"({binding.watcher_id}) -> {binding.subject_name} ({binding.subject_id})"
        )
        return DeployResult(binding=binding)

    def recall(self, watcher_id: str) -> bool:
        binding = self._remove(watcher_id)
        if binding is None:
            return False

        self._available_cache.invalidate()
        self._save()
        log.info(f"Recalled {watcher_id} from {binding.subject_id}")
        return True

    async def _resolvable_watchers(self) -> List[WatcherResource]:
        snapshot = await self._registry.collect()
        return list(snapshot.candidates)

    async def validate_bindings(self, availability_fn: Optional[AvailabilityFn] = None) -> int:
        """
        Drop bindings whose watcher no longer resolves.

        By default a watcher resolves when any provider still lists it.
        Returns the number of bindings pruned.
        """
        if not self._by_watcher:
            return 0

        fetch = availability_fn or self._resolvable_watchers
        try:
            watchers = list(await fetch())
        except Exception as e:
            log.error(f"Failed to validate bindings: {e}")
            return 0

        if not watchers:
            log.warning("No watchers resolved; skipping binding validation")
            return 0

        resolved = {w.id for w in watchers}
        stale = [wid for wid in self._by_watcher if wid not in resolved]
        for watcher_id in stale:
            self._remove(watcher_id)

        if stale:
            log.info(f"Pruned {len(stale)} stale binding(s): {stale}")
            self._available_cache.invalidate()
            self._save()

        return len(stale)
