import asyncio
from typing import Dict, List

from services.pool.base import PoolSnapshot, ResourcePoolProvider
from shared.logging.logger import get_logger

log = get_logger("pool.registry")


class ProviderRegistry:
    """
    Holds the cooperating subsystems that make up the watcher pool.

    Responsibilities:
    - Store providers by name
    - Query every provider with a deadline
    - Merge contributions into one snapshot

    A failing or slow provider contributes nothing; it never fails the
    whole query.
    """

    def __init__(self, *, timeout_seconds: float = 5.0):
        self._timeout = timeout_seconds
        self._providers: Dict[str, ResourcePoolProvider] = {}

    # ------------------------------------------------------------

    def register(self, provider: ResourcePoolProvider) -> None:
        """
        Register a provider instance. A provider with the same name is replaced.
        """
        if provider.name in self._providers:
            log.warning(f"Replacing pool provider: {provider.name}")
        else:
            log.debug(f"Registering pool provider: {provider.name}")
        self._providers[provider.name] = provider

    def unregister(self, name: str) -> bool:
        removed = self._providers.pop(name, None)
        if removed:
            log.debug(f"Unregistered pool provider: {name}")
        return removed is not None

    def providers(self) -> List[ResourcePoolProvider]:
        return list(self._providers.values())

    # ------------------------------------------------------------

    async def _query(self, provider: ResourcePoolProvider):
        try:
            return await asyncio.wait_for(provider.snapshot(), timeout=self._timeout)
        except asyncio.TimeoutError:
            log.warning(
                f"Pool provider '{provider.name}' timed out after "
                f"{self._timeout}s; treating as empty"
            )
        except asyncio.CancelledError:
            raise
        except Exception as e:
            log.warning(f"Pool provider '{provider.name}' unavailable; treating as empty: {e}")
        return None

    async def collect(self) -> PoolSnapshot:
        """
        Query all providers concurrently and merge their contributions.
        """
        snapshot = PoolSnapshot()
        providers = self.providers()
        if not providers:
            return snapshot

        results = await asyncio.gather(*(self._query(p) for p in providers))
        for provider, contribution in zip(providers, results):
            if contribution is None:
                continue
            snapshot.merge(contribution)

        log.debug(
            f"Pool snapshot: candidates={len(snapshot.candidates)} "
            f"excluded={len(snapshot.excluded)} reserved={len(snapshot.reserved)} "
            f"allocated={len(snapshot.allocated)} providers={len(providers)}"
        )
        return snapshot
