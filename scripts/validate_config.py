"""
Configuration validation script.

Validates senses.json against senses.schema.json and checks that every
configured roster file exists.

Design rules:
- No side effects on import
- No runtime startup
- Validation only (no mutation)
"""

from __future__ import annotations

import argparse
import json
import sys
from pathlib import Path
from typing import Any, Dict, List

from shared.config.senses import load_senses_config, validate_config


# ------------------------------------------------------------
# Paths
# ------------------------------------------------------------

ROOT = Path(__file__).resolve().parents[1]
CONFIG_PATH = ROOT / "shared" / "config" / "senses.json"


# ------------------------------------------------------------
# Helpers
# ------------------------------------------------------------

def _load_json(path: Path) -> Dict[str, Any]:
    if not path.exists():
        raise ValueError(f"{path}: file not found")

    try:
        with path.open("r", encoding="utf-8") as f:
            data = json.load(f)
    except Exception as e:
        raise ValueError(f"{path.name}: invalid JSON ({e})") from e

    if not isinstance(data, dict):
        raise ValueError(f"{path.name}: root JSON value must be an object")
    return data


def _error(msg: str):
    print(f"[CONFIG ERROR] {msg}", file=sys.stderr)


# ------------------------------------------------------------
# Validators
# ------------------------------------------------------------

def check_config(path: Path) -> List[str]:
    """
    Return every problem found in the config at `path`.
    """
    try:
        raw = _load_json(path)
    except ValueError as e:
        return [str(e)]

    problems = validate_config(raw)

    config = load_senses_config(raw=raw)
    for provider in config.providers:
        if provider.type != "roster":
            continue
        roster = Path(provider.path)
        if not roster.is_absolute():
            roster = ROOT / roster
        if not roster.exists():
            problems.append(f"providers/{provider.name}: roster file not found ({roster})")

    return problems


# ------------------------------------------------------------
# Entry point
# ------------------------------------------------------------

def main(argv: List[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Validate Shadow Senses configuration")
    parser.add_argument(
        "--config",
        type=Path,
        default=CONFIG_PATH,
        help="Path to senses.json",
    )
    args = parser.parse_args(argv)

    problems = check_config(args.config)
    if problems:
        for problem in problems:
            _error(problem)
        print("Configuration validation failed.", file=sys.stderr)
        return 1

    print("Configuration validation passed.")
    return 0


if __name__ == "__main__":
    sys.exit(main())
