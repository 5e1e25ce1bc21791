import os
from pathlib import Path
from typing import List, Optional

from services.pool.base import (
    PoolContribution,
    PoolSnapshot,
    ResourcePoolProvider,
    StaticPoolProvider,
)
from services.pool.http import HttpPoolProvider
from services.pool.registry import ProviderRegistry
from services.pool.roster import RosterFileProvider
from shared.config.senses import ProviderConfig


def build_providers(
    configs: List[ProviderConfig],
    base_dir: Optional[Path] = None,
) -> List[ResourcePoolProvider]:
    """
    Instantiate configured providers. Secrets are read from the environment;
    relative roster paths resolve against base_dir.
    """
    providers: List[ResourcePoolProvider] = []
    for cfg in configs:
        if cfg.type == "roster" and cfg.path:
            path = Path(cfg.path)
            if base_dir is not None and not path.is_absolute():
                path = base_dir / path
            providers.append(RosterFileProvider(name=cfg.name, path=path))
        elif cfg.type == "http" and cfg.url:
            token = os.getenv(cfg.token_env) if cfg.token_env else None
            providers.append(HttpPoolProvider(name=cfg.name, url=cfg.url, token=token))
    return providers


__all__ = [
    "PoolContribution",
    "PoolSnapshot",
    "ResourcePoolProvider",
    "StaticPoolProvider",
    "HttpPoolProvider",
    "RosterFileProvider",
    "ProviderRegistry",
    "build_providers",
]
