"""Runtime wiring of config and collaborators."""

from __future__ import annotations

import logging
import threading
from dataclasses import asdict, dataclass, field
from datetime import timedelta
from typing import Any

from murmr_core.config import AppConfig, ConfigSnapshot
from murmr_core.engine import DispatchSink, EngineSettings, TriggerEngine
from murmr_core.heartbeat.loop import HeartbeatLoop
from murmr_core.ledger import DedupLedger
from murmr_core.models import FireDecision, RadiusPolicy, utc_now
from murmr_core.notifications import OutboxDispatchSink
from murmr_core.position import PositionThrottle
from murmr_core.reporting import EventLogReporter
from murmr_core.store.http import HttpNoteStore
from murmr_core.store.notes import ConditionStore, JsonNoteStore
from murmr_core.store.sync import ConditionSync

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class AppContext:
    config: AppConfig
    config_snapshot: ConfigSnapshot
    store: ConditionStore
    ledger: DedupLedger
    sink: DispatchSink
    reporter: EventLogReporter
    engine: TriggerEngine
    sync: ConditionSync
    heartbeat: HeartbeatLoop
    throttle: PositionThrottle
    tick_count: int = 0
    tick_lock: threading.Lock = field(default_factory=threading.Lock, repr=False)


def radius_policy(config: AppConfig) -> RadiusPolicy:
    return RadiusPolicy(
        default_m=config.geofence.default_radius_m,
        min_m=config.geofence.min_radius_m,
        max_m=config.geofence.max_radius_m,
    )


def engine_settings(config: AppConfig) -> EngineSettings:
    return EngineSettings(
        cooldown=timedelta(seconds=config.engine.cooldown_seconds),
        max_dispatch_attempts=config.engine.max_dispatch_attempts,
    )


def _make_store(config: AppConfig, policy: RadiusPolicy, reporter: EventLogReporter) -> ConditionStore:
    if config.store.backend == "http":
        return HttpNoteStore(
            config.store.base_url,
            timeout_seconds=config.store.timeout_seconds,
            policy=policy,
            reporter=reporter,
        )
    return JsonNoteStore(config.paths.data_root, policy=policy, reporter=reporter)


def build_context(
    config: AppConfig,
    snapshot: ConfigSnapshot,
    *,
    store: ConditionStore | None = None,
    sink: DispatchSink | None = None,
) -> AppContext:
    reporter = EventLogReporter(config.paths.data_root)
    store = store or _make_store(config, radius_policy(config), reporter)
    ledger = DedupLedger(config.paths.data_root)
    ledger.initialize()
    sink = sink or OutboxDispatchSink(config)
    engine = TriggerEngine(ledger, sink, fired_state=store, reporter=reporter, settings=engine_settings(config))
    sync = ConditionSync(store, engine, config.user.id, reporter=reporter)
    sync.attach()
    throttle = PositionThrottle(
        min_distance_m=config.position.distance_interval_m,
        min_interval=timedelta(seconds=config.position.time_interval_seconds),
    )
    context = AppContext(
        config=config,
        config_snapshot=snapshot,
        store=store,
        ledger=ledger,
        sink=sink,
        reporter=reporter,
        engine=engine,
        sync=sync,
        heartbeat=HeartbeatLoop(config.heartbeat.interval_seconds, lambda: None),
        throttle=throttle,
    )
    context.heartbeat = HeartbeatLoop(config.heartbeat.interval_seconds, lambda: heartbeat_tick(context))
    return context


def heartbeat_tick(context: AppContext) -> list[FireDecision]:
    """One clock tick, with a store resync every ``store.sync_every_ticks`` ticks."""
    with context.tick_lock:
        context.tick_count += 1
        resync = context.tick_count % max(1, context.config.store.sync_every_ticks) == 0
    if resync:
        context.sync.sync()
    return context.engine.on_clock_tick(utc_now())


def start(context: AppContext) -> None:
    pending = context.ledger.pending_intents()
    if pending:
        logger.warning("runtime: %s dispatch intent(s) never acknowledged", len(pending))
    context.sync.sync()
    context.heartbeat.start()


def stop(context: AppContext) -> None:
    context.heartbeat.stop()


def diagnostics(context: AppContext) -> dict[str, Any]:
    snapshot = context.config_snapshot
    return {
        "config": {
            "path": snapshot.path,
            "valid": snapshot.valid,
            "issues": snapshot.issues,
            "warnings": snapshot.warnings,
        },
        "user": context.config.user.id,
        "store": {
            "backend": context.config.store.backend,
            "last_success_at": context.sync.last_success_at.isoformat() if context.sync.last_success_at else None,
            "last_error": context.sync.last_error,
            "consecutive_failures": context.sync.consecutive_failures,
        },
        "engine": asdict(context.engine.status()),
        "heartbeat": asdict(context.heartbeat.status()),
        "ledger": {
            "entries": len(context.ledger.entries()),
            "pending_intents": [asdict(intent) for intent in context.ledger.pending_intents()],
        },
        "recent_errors": context.reporter.recent(limit=5),
    }


def health_summary_quick(context: AppContext) -> str:
    status = context.engine.status()
    heartbeat = context.heartbeat.status()
    return (
        f"config={'ok' if context.config_snapshot.valid else 'invalid'} "
        f"location={status.active_location} time={status.active_time} fired={status.fired} "
        f"modalities={','.join(status.modalities) or 'none'} "
        f"heartbeat={'running' if heartbeat.running else 'stopped'}"
    )
