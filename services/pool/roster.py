"""Watcher roster read from a JSON file on disk."""

from __future__ import annotations

import json
from pathlib import Path

from services.pool.base import PoolContribution, ResourcePoolProvider
from shared.logging.logger import get_logger
from shared.monitoring.errors import ProviderUnavailable

log = get_logger("pool.roster")


class RosterFileProvider(ResourcePoolProvider):
    def __init__(self, *, name: str, path: Path | str):
        super().__init__(name=name)
        self._path = Path(path)

    async def snapshot(self) -> PoolContribution:
        if not self._path.exists():
            raise ProviderUnavailable(f"roster file not found: {self._path}")

        try:
            payload = json.loads(self._path.read_text(encoding="utf-8"))
        except Exception as e:
            raise ProviderUnavailable(f"roster file unreadable: {e}") from e

        if not isinstance(payload, dict):
            raise ProviderUnavailable("roster root must be an object")

        contribution = PoolContribution.from_payload(payload)
        log.debug(f"Roster '{self.name}' supplied {len(contribution.candidates)} watcher(s)")
        return contribution
