"""CLI REPL interface."""

from __future__ import annotations

import json
import shlex
from dataclasses import asdict
from typing import Callable

from murmr_core.errors import MalformedCondition, StoreSyncFailure
from murmr_core.matching.geofence import format_distance
from murmr_core.models import FireDecision, PositionFix, parse_timestamp, utc_now
from murmr_core.mood import MOODS, mood_label, notes_for_mood
from murmr_core.position import read_fixes, replay_fixes
from murmr_core.runtime import AppContext, diagnostics, health_summary_quick, start, stop
from murmr_core.store.locks import sweep_stale_locks
from murmr_core.store.notes import JsonNoteStore

RESTRICTED_ALLOWED_PREFIXES = {"/help", "/exit", "/status", "/diagnostics"}

Handler = Callable[[AppContext, list[str]], int]


def _is_allowed_restricted(line: str) -> bool:
    normalized = line.strip().lower()
    return any(normalized.startswith(prefix) for prefix in RESTRICTED_ALLOWED_PREFIXES)


def _print_json(payload: object) -> None:
    print(json.dumps(payload, indent=2, ensure_ascii=False, default=str))


def _print_fired(fired: list[FireDecision]) -> None:
    if not fired:
        print("No reminders fired.")
        return
    for decision in fired:
        detail = decision.payload.get("body", "")
        distance = decision.payload.get("distanceMeters")
        if distance is not None:
            detail = f"{detail}, {format_distance(float(distance))} away"
        elif "overdueSeconds" in decision.payload:
            detail = f"{detail}, {decision.payload['overdueSeconds']}s late"
        print(f"Fired {decision.condition_id} ({detail})")


def _print_help() -> None:
    print(
        "\n".join(
            [
                "/help                                   show this help",
                "/exit                                   leave the REPL",
                "/status                                 one-line engine health",
                "/diagnostics                            full diagnostics as JSON",
                "/sync                                   resync conditions from the note store",
                "/fix <lat> <lon> [accuracy]             evaluate a position fix now",
                "/tick [iso-timestamp]                   evaluate a clock tick",
                "/replay <fixes.jsonl>                   replay recorded fixes through the throttle",
                "/ledger [prune]                         list or prune dedup entries",
                "/mood [moodId]                          list moods or notes for a mood",
                "/modality revoke|restore <location|time>",
                "/heartbeat status|start|stop|tick",
                "/note list",
                "/note add-location <lat> <lon> <audioRef> [radius]",
                "/note add-time <iso-timestamp> <audioRef>",
                "/note add-mood <moodId> <audioRef>",
                "/note delete <noteId>",
            ]
        )
    )


def _handle_help(context: AppContext, tokens: list[str]) -> int:
    _print_help()
    return 0


def _handle_status(context: AppContext, tokens: list[str]) -> int:
    print(health_summary_quick(context))
    return 0


def _handle_diagnostics(context: AppContext, tokens: list[str]) -> int:
    _print_json(diagnostics(context))
    return 0


def _handle_sync(context: AppContext, tokens: list[str]) -> int:
    if context.sync.sync():
        print(f"Synced {len(context.engine.active_conditions())} active condition(s).")
        return 0
    print(f"Sync failed: {context.sync.last_error}. Keeping previous conditions.")
    return 1


def _handle_fix(context: AppContext, tokens: list[str]) -> int:
    if len(tokens) < 3:
        print("Usage: /fix <lat> <lon> [accuracy]")
        return 2
    try:
        fix = PositionFix(
            latitude=float(tokens[1]),
            longitude=float(tokens[2]),
            accuracy_meters=float(tokens[3]) if len(tokens) > 3 else 0.0,
            observed_at=utc_now(),
        )
    except ValueError as exc:
        print(f"Invalid fix: {exc}")
        return 2
    _print_fired(context.engine.on_position_fix(fix))
    return 0


def _handle_tick(context: AppContext, tokens: list[str]) -> int:
    try:
        now = parse_timestamp(tokens[1]) if len(tokens) > 1 else utc_now()
    except ValueError as exc:
        print(f"Invalid timestamp: {exc}")
        return 2
    _print_fired(context.engine.on_clock_tick(now))
    return 0


def _handle_replay(context: AppContext, tokens: list[str]) -> int:
    if len(tokens) < 2:
        print("Usage: /replay <fixes.jsonl>")
        return 2
    try:
        fired = replay_fixes(context.engine, read_fixes(tokens[1]), context.throttle)
    except OSError as exc:
        print(f"Cannot read fixes: {exc}")
        return 1
    _print_fired(fired)
    return 0


def _handle_ledger(context: AppContext, tokens: list[str]) -> int:
    if len(tokens) > 1 and tokens[1].lower() == "prune":
        try:
            notes = context.store.list_notes(context.config.user.id)
        except StoreSyncFailure as exc:
            print(f"Cannot prune without the note store: {exc.message}")
            return 1
        removed = context.ledger.prune(note.condition.condition_id for note in notes)
        print(f"Pruned {removed} ledger entr{'y' if removed == 1 else 'ies'}.")
        return 0
    entries = context.ledger.entries()
    if not entries:
        print("Ledger is empty.")
        return 0
    for entry in entries:
        print(f"{entry.condition_id}  last_fired_at={entry.last_fired_at.isoformat()}")
    return 0


def _handle_mood(context: AppContext, tokens: list[str]) -> int:
    if len(tokens) < 2:
        for mood in MOODS:
            print(f"{mood.id:<10} {mood.emoji} {mood.label}")
        return 0
    try:
        label = mood_label(tokens[1])
        notes = notes_for_mood(context.store.list_notes(context.config.user.id), tokens[1])
    except ValueError as exc:
        print(str(exc))
        return 2
    except StoreSyncFailure as exc:
        print(f"Note store unavailable: {exc.message}")
        return 1
    if not notes:
        print(f"No notes for {label}.")
        return 0
    print(f"Notes for {label}:")
    for note in notes:
        print(f"- {note.id}  {note.title or '(untitled)'}  {note.audio_ref}")
    return 0


def _handle_modality(context: AppContext, tokens: list[str]) -> int:
    if len(tokens) < 3 or tokens[1].lower() not in {"revoke", "restore"} or tokens[2] not in {"location", "time"}:
        print("Usage: /modality revoke|restore <location|time>")
        return 2
    if tokens[1].lower() == "revoke":
        context.engine.revoke_modality(tokens[2], "revoked from CLI")
    else:
        context.engine.restore_modality(tokens[2])
    print(f"Modalities: {', '.join(context.engine.status().modalities) or 'none'}")
    return 0


def _handle_heartbeat(context: AppContext, tokens: list[str]) -> int:
    action = tokens[1].lower() if len(tokens) > 1 else "status"
    if action == "start":
        context.heartbeat.start()
    elif action == "stop":
        context.heartbeat.stop()
    elif action == "tick":
        context.heartbeat.tick_once()
    elif action != "status":
        print("Usage: /heartbeat status|start|stop|tick")
        return 2
    _print_json(asdict(context.heartbeat.status()))
    return 0


def _handle_note(context: AppContext, tokens: list[str]) -> int:
    action = tokens[1].lower() if len(tokens) > 1 else "list"
    user_id = context.config.user.id
    if action == "list":
        try:
            notes = context.store.list_notes(user_id)
        except StoreSyncFailure as exc:
            print(f"Note store unavailable: {exc.message}")
            return 1
        if not notes:
            print("No notes.")
        for note in notes:
            state = "fired" if note.fired else "armed"
            print(f"{note.id}  {note.condition.kind:<8} {state:<6} {note.title or '(untitled)'}")
        return 0

    store = context.store
    if not isinstance(store, JsonNoteStore):
        print("Editing notes is only available with the file note store.")
        return 1
    try:
        if action == "add-location" and len(tokens) >= 5:
            tag_value: dict[str, object] = {"latitude": float(tokens[2]), "longitude": float(tokens[3])}
            if len(tokens) > 5:
                tag_value["radius"] = float(tokens[5])
            note = store.add_note(user_id, "location", tag_value, tokens[4])
        elif action == "add-time" and len(tokens) >= 4:
            note = store.add_note(user_id, "time", {"timestamp": tokens[2]}, tokens[3])
        elif action == "add-mood" and len(tokens) >= 4:
            mood_label(tokens[2])
            note = store.add_note(user_id, "mood", {"moodId": tokens[2].lower()}, tokens[3])
        elif action == "delete" and len(tokens) >= 3:
            if store.delete_note(tokens[2]):
                print(f"Deleted {tokens[2]}.")
                return 0
            print(f"No note {tokens[2]}.")
            return 1
        else:
            print("Usage: /note list|add-location|add-time|add-mood|delete ... (see /help)")
            return 2
    except MalformedCondition as exc:
        print(f"Invalid condition: {exc.message}")
        return 2
    except ValueError as exc:
        print(f"Invalid note: {exc}")
        return 2
    print(f"Added {note.condition.kind} note {note.id}.")
    return 0


HANDLERS: dict[str, Handler] = {
    "/help": _handle_help,
    "/status": _handle_status,
    "/diagnostics": _handle_diagnostics,
    "/sync": _handle_sync,
    "/fix": _handle_fix,
    "/tick": _handle_tick,
    "/replay": _handle_replay,
    "/ledger": _handle_ledger,
    "/mood": _handle_mood,
    "/modality": _handle_modality,
    "/heartbeat": _handle_heartbeat,
    "/note": _handle_note,
}


def execute_single_command(context: AppContext, command_line: str) -> int:
    try:
        tokens = shlex.split(command_line)
    except ValueError as exc:
        print(f"Parse error: {exc}")
        return 2
    if not tokens:
        print("Empty command.")
        return 2
    if not context.config_snapshot.valid and not _is_allowed_restricted(command_line):
        print("Config invalid. Command blocked. Allowed: /status, /diagnostics, /help")
        return 2
    handler = HANDLERS.get(tokens[0].lower())
    if handler is None:
        print("Unknown command. Use /help.")
        return 2
    context.sync.sync()
    return handler(context, tokens)


def run_cli(context: AppContext) -> None:
    """Run CLI REPL."""
    start(context)
    print("Murmr trigger engine ready. Type /help for commands.")
    if not context.config_snapshot.valid:
        print("Config invalid. Entering diagnostics-only mode.")
        for issue in context.config_snapshot.issues:
            print(f"- {issue}")

    try:
        while True:
            raw = input("> ").strip()
            if not raw:
                continue
            if not raw.startswith("/"):
                print("Commands start with '/'. Use /help.")
                continue
            if not context.config_snapshot.valid and not _is_allowed_restricted(raw):
                print("Config invalid. Command blocked. Allowed: /status, /diagnostics, /help, /exit")
                continue
            try:
                tokens = shlex.split(raw)
            except ValueError as exc:
                print(f"Parse error: {exc}")
                continue
            if not tokens:
                continue
            if tokens[0].lower() == "/exit":
                break
            handler = HANDLERS.get(tokens[0].lower())
            if handler is None:
                print("Unknown command. Use /help.")
                continue
            handler(context, tokens)
    except (KeyboardInterrupt, EOFError):
        print("\nExiting...")
    finally:
        stop(context)
        sweep = sweep_stale_locks(context.config.paths.data_root)
        if sweep.removed:
            print(f"Cleaned stale locks: {sweep.removed}")
