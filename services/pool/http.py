import httpx
from typing import Dict, Optional

from services.pool.base import PoolContribution, ResourcePoolProvider
from shared.logging.logger import get_logger
from shared.monitoring.errors import ProviderUnavailable

log = get_logger("pool.http")


class HttpPoolProvider(ResourcePoolProvider):
    """
    Pool snapshot served by another component over HTTP.

    The endpoint must return a roster-shaped JSON object (see
    PoolContribution.from_payload).
    """

    def __init__(
        self,
        *,
        name: str,
        url: str,
        token: Optional[str] = None,
        timeout: float = 10.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        super().__init__(name=name)
        self._url = url
        self._timeout = timeout
        self._client = client

        self._headers: Dict[str, str] = {"Accept": "application/json"}
        if token:
            self._headers["Authorization"] = f"Bearer {token}"

    async def _get(self, client: httpx.AsyncClient) -> httpx.Response:
        resp = await client.get(self._url, headers=self._headers)
        resp.raise_for_status()
        return resp

    async def snapshot(self) -> PoolContribution:
        try:
            if self._client is not None:
                resp = await self._get(self._client)
            else:
                async with httpx.AsyncClient(timeout=self._timeout) as client:
                    resp = await self._get(client)
            data = resp.json()
        except httpx.HTTPStatusError as e:
            raise ProviderUnavailable(
                f"{e.response.status_code} {e.response.reason_phrase}"
            ) from e
        except Exception as e:
            raise ProviderUnavailable(f"snapshot request failed: {e}") from e

        if not isinstance(data, dict):
            log.error(f"Pool endpoint for '{self.name}' returned non-dict payload")
            raise ProviderUnavailable("pool endpoint returned non-dict payload")

        return PoolContribution.from_payload(data)
