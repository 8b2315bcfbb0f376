"""Configuration loading and validation."""

from __future__ import annotations

import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any


@dataclass(slots=True)
class AppSection:
    env: str


@dataclass(slots=True)
class PathsSection:
    data_root: str
    log_dir: str


@dataclass(slots=True)
class UserSection:
    id: str


@dataclass(slots=True)
class EngineSection:
    cooldown_seconds: int = 3600
    max_dispatch_attempts: int = 0


@dataclass(slots=True)
class GeofenceSection:
    default_radius_m: float = 150.0
    min_radius_m: float = 50.0
    max_radius_m: float = 500.0


@dataclass(slots=True)
class HeartbeatSection:
    interval_seconds: int


@dataclass(slots=True)
class PositionSection:
    distance_interval_m: float = 50.0
    time_interval_seconds: int = 60


@dataclass(slots=True)
class StoreSection:
    backend: str = "file"
    base_url: str = ""
    timeout_seconds: int = 10
    sync_every_ticks: int = 5


@dataclass(slots=True)
class LoggingSection:
    level: str


@dataclass(slots=True)
class TelegramSection:
    enabled: bool
    bot_token: str | None
    chat_id: str | None


@dataclass(slots=True)
class AppConfig:
    app: AppSection
    paths: PathsSection
    user: UserSection
    engine: EngineSection
    geofence: GeofenceSection
    heartbeat: HeartbeatSection
    position: PositionSection
    store: StoreSection
    logging: LoggingSection
    telegram: TelegramSection = field(
        default_factory=lambda: TelegramSection(enabled=False, bot_token=None, chat_id=None)
    )


@dataclass(slots=True)
class ConfigSnapshot:
    path: str
    exists: bool
    valid: bool
    issues: list[str]
    warnings: list[str]
    effective_config: AppConfig | None
    effective_raw: dict[str, Any] | None = None


REQUIRED_SECTIONS = ("app", "paths", "user", "engine", "geofence", "heartbeat", "position", "store", "logging")
OPTIONAL_SECTIONS = ("telegram",)

ENV_OVERRIDES = {
    "MURMR_DATA_PATH": "paths.data_root",
    "MURMR_USER_ID": "user.id",
    "MURMR_COOLDOWN_SECONDS": "engine.cooldown_seconds",
    "MURMR_MAX_DISPATCH_ATTEMPTS": "engine.max_dispatch_attempts",
    "MURMR_DEFAULT_RADIUS_M": "geofence.default_radius_m",
    "MURMR_MIN_RADIUS_M": "geofence.min_radius_m",
    "MURMR_MAX_RADIUS_M": "geofence.max_radius_m",
    "MURMR_HEARTBEAT_INTERVAL": "heartbeat.interval_seconds",
    "MURMR_STORE_BACKEND": "store.backend",
    "MURMR_STORE_BASE_URL": "store.base_url",
    "MURMR_LOG_LEVEL": "logging.level",
    "MURMR_TELEGRAM_ENABLED": "telegram.enabled",
    "MURMR_TELEGRAM_BOT_TOKEN": "telegram.bot_token",
    "MURMR_TELEGRAM_CHAT_ID": "telegram.chat_id",
}


def config_dir() -> Path:
    """``$MURMR_CONFIG_DIR`` or ``config/`` at the repository root."""
    override = os.getenv("MURMR_CONFIG_DIR")
    if override:
        return Path(override)
    return Path(__file__).resolve().parents[2] / "config"


def _merge(base: dict[str, Any], layer: dict[str, Any]) -> dict[str, Any]:
    merged = dict(base)
    for key, value in layer.items():
        current = merged.get(key)
        merged[key] = _merge(current, value) if isinstance(current, dict) and isinstance(value, dict) else value
    return merged


def _coerce(text: str) -> Any:
    """Turn an env/CLI string into the JSON scalar it spells, else keep the string."""
    literal = text.strip()
    if literal.lower() in {"true", "false", "null"}:
        return json.loads(literal.lower())
    for cast in (int, float):
        try:
            return cast(literal)
        except ValueError:
            continue
    return text


def _dotted_layer(pairs: dict[str, str]) -> dict[str, Any]:
    layer: dict[str, Any] = {}
    for dotted, text in pairs.items():
        *parents, leaf = [part for part in dotted.split(".") if part] or [""]
        if not leaf:
            continue
        node = layer
        for part in parents:
            node = node.setdefault(part, {})
        node[leaf] = _coerce(text)
    return layer


def _env_layer() -> dict[str, Any]:
    return _dotted_layer({path: os.environ[name] for name, path in ENV_OVERRIDES.items() if name in os.environ})


def _read_json_object(path: Path) -> dict[str, Any]:
    try:
        raw = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as exc:
        raise ValueError(f"Failed to parse config JSON ({path}): {exc}") from exc
    if not isinstance(raw, dict):
        raise ValueError(f"Config must be a JSON object: {path}")
    return raw


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _is_count(value: Any, minimum: int = 0) -> bool:
    return isinstance(value, int) and not isinstance(value, bool) and value >= minimum


def _validate(raw: dict[str, Any]) -> tuple[list[str], list[str]]:
    issues: list[str] = []
    warnings: list[str] = []
    unknown = sorted(set(raw) - set(REQUIRED_SECTIONS) - set(OPTIONAL_SECTIONS))
    if unknown:
        issues.append(f"Unknown top-level keys: {', '.join(unknown)}")
    for name in REQUIRED_SECTIONS:
        if not isinstance(raw.get(name), dict):
            issues.append(f"Missing or non-object section: {name}")
    if not isinstance(raw.get("telegram", {}), dict):
        issues.append("telegram must be an object when provided")
    if issues:
        return issues, warnings

    if not str(raw["user"].get("id", "")).strip():
        issues.append("user.id is required and cannot be empty")

    engine = raw["engine"]
    if not _is_count(engine.get("cooldown_seconds")):
        issues.append("engine.cooldown_seconds must be a non-negative integer")
    if not _is_count(engine.get("max_dispatch_attempts", 0)):
        issues.append("engine.max_dispatch_attempts must be a non-negative integer (0 = unlimited)")

    radii = [raw["geofence"].get(key) for key in ("min_radius_m", "default_radius_m", "max_radius_m")]
    if not all(_is_number(value) for value in radii):
        issues.append("geofence radii must be numbers")
    elif not 0 < radii[0] <= radii[1] <= radii[2]:
        issues.append("geofence radii must satisfy 0 < min_radius_m <= default_radius_m <= max_radius_m")

    if not _is_count(raw["heartbeat"].get("interval_seconds")):
        issues.append("heartbeat.interval_seconds must be a non-negative integer (0 disables ticking)")

    position = raw["position"]
    if not _is_number(position.get("distance_interval_m")) or position["distance_interval_m"] < 0:
        issues.append("position.distance_interval_m must be a non-negative number")
    if not _is_count(position.get("time_interval_seconds")):
        issues.append("position.time_interval_seconds must be a non-negative integer")

    store = raw["store"]
    backend = store.get("backend", "file")
    if backend not in {"file", "http"}:
        issues.append("store.backend must be file|http")
    elif backend == "http" and not str(store.get("base_url") or "").strip():
        issues.append("store.base_url is required when store.backend is http")
    if not _is_count(store.get("sync_every_ticks", 5), minimum=1):
        issues.append("store.sync_every_ticks must be a positive integer")

    telegram = raw.get("telegram", {})
    if telegram.get("enabled") and not (
        str(telegram.get("bot_token") or "").strip() and str(telegram.get("chat_id") or "").strip()
    ):
        warnings.append("telegram is enabled but bot_token/chat_id is missing; Telegram reminders will be disabled")

    return issues, warnings


def _optional_text(value: Any) -> str | None:
    return str(value or "").strip() or None


def _to_config(raw: dict[str, Any]) -> AppConfig:
    engine, geofence, position, store = raw["engine"], raw["geofence"], raw["position"], raw["store"]
    telegram = raw.get("telegram", {})
    bot_token = _optional_text(telegram.get("bot_token"))
    chat_id = _optional_text(telegram.get("chat_id"))
    return AppConfig(
        app=AppSection(env=str(raw["app"].get("env", "dev"))),
        paths=PathsSection(data_root=str(raw["paths"]["data_root"]), log_dir=str(raw["paths"]["log_dir"])),
        user=UserSection(id=str(raw["user"]["id"]).strip()),
        engine=EngineSection(
            cooldown_seconds=engine["cooldown_seconds"],
            max_dispatch_attempts=engine.get("max_dispatch_attempts", 0),
        ),
        geofence=GeofenceSection(
            default_radius_m=float(geofence["default_radius_m"]),
            min_radius_m=float(geofence["min_radius_m"]),
            max_radius_m=float(geofence["max_radius_m"]),
        ),
        heartbeat=HeartbeatSection(interval_seconds=raw["heartbeat"]["interval_seconds"]),
        position=PositionSection(
            distance_interval_m=float(position["distance_interval_m"]),
            time_interval_seconds=position["time_interval_seconds"],
        ),
        store=StoreSection(
            backend=store.get("backend", "file"),
            base_url=str(store.get("base_url") or "").strip(),
            timeout_seconds=int(store.get("timeout_seconds", 10)),
            sync_every_ticks=store.get("sync_every_ticks", 5),
        ),
        logging=LoggingSection(level=str(raw["logging"].get("level", "info"))),
        telegram=TelegramSection(
            enabled=bool(telegram.get("enabled")) and bot_token is not None and chat_id is not None,
            bot_token=bot_token,
            chat_id=chat_id,
        ),
    )


def _bootstrap_config(env: str) -> AppConfig:
    """Defaults that let the CLI start in diagnostics-only mode."""
    return AppConfig(
        app=AppSection(env=env),
        paths=PathsSection(data_root="./data", log_dir="data/logs"),
        user=UserSection(id="local"),
        engine=EngineSection(),
        geofence=GeofenceSection(),
        heartbeat=HeartbeatSection(interval_seconds=0),
        position=PositionSection(),
        store=StoreSection(),
        logging=LoggingSection(level="info"),
    )


def read_config_snapshot(env: str, cli_overrides: dict[str, str] | None = None) -> ConfigSnapshot:
    """Layer ``<env>.json``, ``local.json``, ``MURMR_*`` env vars and CLI overrides, then validate."""
    path = config_dir() / f"{env}.json"
    snapshot = ConfigSnapshot(
        path=str(path),
        exists=path.exists(),
        valid=False,
        issues=[],
        warnings=[],
        effective_config=None,
    )
    if not snapshot.exists:
        snapshot.issues.append(f"Config file does not exist: {path}")
        return snapshot

    try:
        merged = _read_json_object(path)
        local_path = config_dir() / "local.json"
        if local_path.exists():
            merged = _merge(merged, _read_json_object(local_path))
            snapshot.warnings.append(f"Applied local config overrides from {local_path}")
    except ValueError as exc:
        snapshot.issues.append(str(exc))
        return snapshot
    merged = _merge(merged, _env_layer())
    merged = _merge(merged, _dotted_layer(cli_overrides or {}))

    issues, warnings = _validate(merged)
    snapshot.warnings.extend(warnings)
    if issues:
        snapshot.issues.extend(issues)
        return snapshot
    snapshot.valid = True
    snapshot.effective_config = _to_config(merged)
    snapshot.effective_raw = merged
    return snapshot


def ensure_runtime_config(snapshot: ConfigSnapshot, env: str) -> AppConfig:
    if snapshot.effective_config is not None:
        return snapshot.effective_config
    return _bootstrap_config(env)
