"""
Monitoring runtime configuration.

Loads shared/config/senses.json (or an explicit path / raw mapping) into
typed sections. Every field is optional: invalid or missing values log a
warning and fall back to the dataclass default so the runtime can always
boot. The document is also checked against senses.schema.json; schema
violations are reported as warnings only.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

from jsonschema import Draft7Validator

from shared.logging.logger import get_logger
from shared.monitoring.events import EVENT_TYPES

log = get_logger("shared.config.senses")

_CONFIG_PATH = Path(__file__).parent / "senses.json"
_SCHEMA_PATH = Path(__file__).parent / "senses.schema.json"

TYPING_COOLDOWN_MIN_MS = 3000
TYPING_COOLDOWN_MAX_MS = 60000


@dataclass
class FeedConfig:
    partition_cap: int = 5000
    global_cap: int = 25000
    trim_floor: int = 100
    max_age_hours: int = 72
    purge_interval_seconds: int = 600
    flush_interval_seconds: int = 30
    history_event_types: List[str] = field(
        default_factory=lambda: ["message", "status", "typing", "relationship"]
    )

    @property
    def max_age_ms(self) -> int:
        return self.max_age_hours * 60 * 60 * 1000


@dataclass
class AllocatorConfig:
    availability_ttl_seconds: float = 5.0
    provider_timeout_seconds: float = 5.0
    validate_on_start: bool = True


@dataclass
class PresenceConfig:
    idle_threshold_minutes: int = 120
    startup_grace_seconds: float = 3.0
    typing_cooldown_ms: int = 15000
    cooldown_sweep_factor: int = 4
    cooldown_sweep_size: int = 500
    sweep_interval_seconds: int = 60

    @property
    def idle_threshold_ms(self) -> int:
        return self.idle_threshold_minutes * 60 * 1000

    @property
    def startup_grace_ms(self) -> int:
        return int(self.startup_grace_seconds * 1000)


@dataclass
class AlertsConfig:
    status_alerts: bool = True
    typing_alerts: bool = True
    relationship_alerts: bool = True
    presence_alerts: bool = True
    message_alerts: bool = True


@dataclass
class StorageConfig:
    backend: str = "json"
    root: str = "data/senses"
    namespace: str = "ShadowSenses"


@dataclass
class ProviderConfig:
    type: str
    name: str
    path: Optional[str] = None
    url: Optional[str] = None
    token_env: Optional[str] = None


@dataclass
class DiscordConfig:
    enabled: bool = True
    token_env: str = "DISCORD_BOT_TOKEN"
    webhook_env: str = "SENSES_WEBHOOK_URL"
    operator_id_env: str = "SENSES_OPERATOR_ID"


@dataclass
class SensesConfig:
    feed: FeedConfig = field(default_factory=FeedConfig)
    allocator: AllocatorConfig = field(default_factory=AllocatorConfig)
    presence: PresenceConfig = field(default_factory=PresenceConfig)
    alerts: AlertsConfig = field(default_factory=AlertsConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    providers: List[ProviderConfig] = field(default_factory=list)
    discord: DiscordConfig = field(default_factory=DiscordConfig)


# ----------------------------------------------------------------------
# Raw helpers
# ----------------------------------------------------------------------

def _load_json(path: Path) -> Dict[str, Any]:
    if not path.exists():
        log.warning(f"senses.json not found at {path}; using defaults")
        return {}

    try:
        with path.open("r", encoding="utf-8") as f:
            data = json.load(f)
            if isinstance(data, dict):
                return data
            log.warning("senses.json root is not an object; using defaults")
    except Exception as e:
        log.warning(f"Failed to load senses.json ({e}); using defaults")

    return {}


def validate_config(raw: Dict[str, Any], schema_path: Path = _SCHEMA_PATH) -> List[str]:
    """
    Validate a raw config document against the JSON schema.

    Returns a list of "location: message" strings; empty when valid or
    when the schema itself is unavailable.
    """
    if not schema_path.exists():
        log.debug(f"Config schema not found at {schema_path}; skipping validation")
        return []

    try:
        schema = json.loads(schema_path.read_text(encoding="utf-8"))
    except Exception as e:
        log.warning(f"Failed to load config schema ({e}); skipping validation")
        return []

    validator = Draft7Validator(schema)
    problems: List[str] = []
    for err in sorted(validator.iter_errors(raw), key=lambda e: list(e.path)):
        loc = "/".join(str(p) for p in err.path) or "<root>"
        problems.append(f"{loc}: {err.message}")
    return problems


def _section(raw: Dict[str, Any], name: str) -> Dict[str, Any]:
    value = raw.get(name)
    if value is None:
        return {}
    if not isinstance(value, dict):
        log.warning(f"'{name}' section must be an object; using defaults")
        return {}
    return value


def _int(raw: Dict[str, Any], key: str, default: int, *, minimum: int = 0) -> int:
    if key not in raw:
        return default
    value = raw.get(key)
    if isinstance(value, bool):
        log.warning(f"{key} must be an integer; defaulting to {default}")
        return default
    try:
        parsed = int(value)
    except (TypeError, ValueError):
        log.warning(f"{key} must be an integer; defaulting to {default}")
        return default
    if parsed < minimum:
        log.warning(f"{key} must be >= {minimum}; defaulting to {default}")
        return default
    return parsed


def _float(raw: Dict[str, Any], key: str, default: float, *, minimum: float = 0.0) -> float:
    if key not in raw:
        return default
    value = raw.get(key)
    if isinstance(value, bool):
        log.warning(f"{key} must be a number; defaulting to {default}")
        return default
    try:
        parsed = float(value)
    except (TypeError, ValueError):
        log.warning(f"{key} must be a number; defaulting to {default}")
        return default
    if parsed < minimum:
        log.warning(f"{key} must be >= {minimum}; defaulting to {default}")
        return default
    return parsed


def _bool(raw: Dict[str, Any], key: str, default: bool) -> bool:
    if key not in raw:
        return default
    value = raw.get(key)
    if isinstance(value, bool):
        return value
    log.warning(f"{key} must be boolean; defaulting to {default}")
    return default


def _str(raw: Dict[str, Any], key: str, default: str) -> str:
    value = raw.get(key)
    if isinstance(value, str) and value.strip():
        return value.strip()
    if key in raw:
        log.warning(f"{key} must be a non-empty string; defaulting to {default!r}")
    return default


# ----------------------------------------------------------------------
# Section loaders
# ----------------------------------------------------------------------

def _load_feed(raw: Dict[str, Any]) -> FeedConfig:
    defaults = FeedConfig()
    partition_cap = _int(raw, "partition_cap", defaults.partition_cap, minimum=1)
    global_cap = _int(raw, "global_cap", defaults.global_cap, minimum=1)
    if global_cap < partition_cap:
        log.warning("global_cap is smaller than partition_cap; raising it to partition_cap")
        global_cap = partition_cap

    types_raw = raw.get("history_event_types", defaults.history_event_types)
    history_types = defaults.history_event_types
    if isinstance(types_raw, list):
        cleaned = [str(t).lower() for t in types_raw if str(t).lower() in EVENT_TYPES]
        if len(cleaned) != len(types_raw):
            log.warning("history_event_types contains unknown event types; ignoring them")
        history_types = cleaned
    else:
        log.warning("history_event_types must be a list; using defaults")

    return FeedConfig(
        partition_cap=partition_cap,
        global_cap=global_cap,
        trim_floor=_int(raw, "trim_floor", defaults.trim_floor),
        max_age_hours=_int(raw, "max_age_hours", defaults.max_age_hours, minimum=1),
        purge_interval_seconds=_int(raw, "purge_interval_seconds", defaults.purge_interval_seconds, minimum=1),
        flush_interval_seconds=_int(raw, "flush_interval_seconds", defaults.flush_interval_seconds, minimum=1),
        history_event_types=history_types,
    )


def _load_allocator(raw: Dict[str, Any]) -> AllocatorConfig:
    defaults = AllocatorConfig()
    return AllocatorConfig(
        availability_ttl_seconds=_float(raw, "availability_ttl_seconds", defaults.availability_ttl_seconds),
        provider_timeout_seconds=_float(raw, "provider_timeout_seconds", defaults.provider_timeout_seconds, minimum=0.1),
        validate_on_start=_bool(raw, "validate_on_start", defaults.validate_on_start),
    )


def _load_presence(raw: Dict[str, Any]) -> PresenceConfig:
    defaults = PresenceConfig()
    cooldown = _int(raw, "typing_cooldown_ms", defaults.typing_cooldown_ms)
    clamped = min(TYPING_COOLDOWN_MAX_MS, max(TYPING_COOLDOWN_MIN_MS, cooldown))
    if clamped != cooldown:
        log.warning(
            f"typing_cooldown_ms {cooldown} outside "
            f"[{TYPING_COOLDOWN_MIN_MS}, {TYPING_COOLDOWN_MAX_MS}]; clamped to {clamped}"
        )

    return PresenceConfig(
        idle_threshold_minutes=_int(raw, "idle_threshold_minutes", defaults.idle_threshold_minutes, minimum=1),
        startup_grace_seconds=_float(raw, "startup_grace_seconds", defaults.startup_grace_seconds),
        typing_cooldown_ms=clamped,
        cooldown_sweep_factor=_int(raw, "cooldown_sweep_factor", defaults.cooldown_sweep_factor, minimum=1),
        cooldown_sweep_size=_int(raw, "cooldown_sweep_size", defaults.cooldown_sweep_size, minimum=1),
        sweep_interval_seconds=_int(raw, "sweep_interval_seconds", defaults.sweep_interval_seconds, minimum=1),
    )


def _load_alerts(raw: Dict[str, Any]) -> AlertsConfig:
    defaults = AlertsConfig()
    return AlertsConfig(
        status_alerts=_bool(raw, "status_alerts", defaults.status_alerts),
        typing_alerts=_bool(raw, "typing_alerts", defaults.typing_alerts),
        relationship_alerts=_bool(raw, "relationship_alerts", defaults.relationship_alerts),
        presence_alerts=_bool(raw, "presence_alerts", defaults.presence_alerts),
        message_alerts=_bool(raw, "message_alerts", defaults.message_alerts),
    )


def _load_storage(raw: Dict[str, Any]) -> StorageConfig:
    defaults = StorageConfig()
    backend = _str(raw, "backend", defaults.backend).lower()
    if backend not in {"json", "memory"}:
        log.warning(f"Unknown storage backend '{backend}'; defaulting to json")
        backend = defaults.backend
    return StorageConfig(
        backend=backend,
        root=_str(raw, "root", defaults.root),
        namespace=_str(raw, "namespace", defaults.namespace),
    )


def _load_providers(raw: Any) -> List[ProviderConfig]:
    if raw is None:
        return []
    if not isinstance(raw, list):
        log.warning("'providers' must be a list; no pool providers configured")
        return []

    providers: List[ProviderConfig] = []
    for idx, entry in enumerate(raw):
        if not isinstance(entry, dict):
            log.warning(f"Skipping provider #{idx}: not an object")
            continue
        ptype = str(entry.get("type") or "").lower()
        name = str(entry.get("name") or f"{ptype or 'provider'}-{idx}")
        if ptype == "roster" and entry.get("path"):
            providers.append(ProviderConfig(type=ptype, name=name, path=str(entry["path"])))
        elif ptype == "http" and entry.get("url"):
            token_env = entry.get("token_env")
            providers.append(
                ProviderConfig(
                    type=ptype,
                    name=name,
                    url=str(entry["url"]),
                    token_env=str(token_env) if token_env else None,
                )
            )
        else:
            log.warning(f"Skipping provider '{name}': unsupported type or missing path/url")
    return providers


def _load_discord(raw: Dict[str, Any]) -> DiscordConfig:
    defaults = DiscordConfig()
    return DiscordConfig(
        enabled=_bool(raw, "enabled", defaults.enabled),
        token_env=_str(raw, "token_env", defaults.token_env),
        webhook_env=_str(raw, "webhook_env", defaults.webhook_env),
        operator_id_env=_str(raw, "operator_id_env", defaults.operator_id_env),
    )


def load_senses_config(
    raw: Optional[Dict[str, Any]] = None,
    path: Optional[Path] = None,
) -> SensesConfig:
    if raw is None:
        raw = _load_json(Path(path) if path else _CONFIG_PATH)
    if not isinstance(raw, dict):
        raw = {}

    for problem in validate_config(raw):
        log.warning(f"senses config validation warning at {problem}")

    return SensesConfig(
        feed=_load_feed(_section(raw, "feed")),
        allocator=_load_allocator(_section(raw, "allocator")),
        presence=_load_presence(_section(raw, "presence")),
        alerts=_load_alerts(_section(raw, "alerts")),
        storage=_load_storage(_section(raw, "storage")),
        providers=_load_providers(raw.get("providers")),
        discord=_load_discord(_section(raw, "discord")),
    )
