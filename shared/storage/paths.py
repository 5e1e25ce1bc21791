"""
Shared storage path utilities.

This module defines canonical filesystem locations for persisted
monitoring state (bindings, activity partitions, counters).

Design goals:
- Single source of truth for storage paths
- OS-safe, repo-relative resolution
- No side effects on import; directories are created on request
"""

from __future__ import annotations

import os
from pathlib import Path

# ----------------------------------------------------------------------
# BASE DIRECTORIES
# ----------------------------------------------------------------------

# Repo root is assumed to be the current working directory
# when the runtime is launched (consistent with core.app)
BASE_DIR = Path.cwd()

DEFAULT_DATA_DIR = BASE_DIR / "data" / "senses"

DATA_DIR_ENV = "SENSES_DATA_DIR"


# ----------------------------------------------------------------------
# PATH HELPERS
# ----------------------------------------------------------------------

def get_data_root(configured: str | Path | None = None) -> Path:
    """
    Resolve the storage root.

    Precedence: SENSES_DATA_DIR env var, then the configured value,
    then data/senses under the working directory.
    """
    env_root = os.getenv(DATA_DIR_ENV)
    if env_root:
        root = Path(env_root)
    elif configured:
        root = Path(configured)
    else:
        root = DEFAULT_DATA_DIR

    root.mkdir(parents=True, exist_ok=True)
    return root


def safe_key(key: str) -> str:
    """
    Make a persistence key usable as a file name.
    """
    cleaned = "".join(
        ch if ch.isalnum() or ch in {"-", "_", "."} else "_"
        for ch in str(key)
    )
    return cleaned or "_"
