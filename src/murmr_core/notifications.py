"""Outbound reminder delivery."""

from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from murmr_core.config import AppConfig
from murmr_core.matching.geofence import format_distance
from murmr_core.telegram_client import send_telegram_message, send_telegram_recording

logger = logging.getLogger(__name__)


class OutboxDispatchSink:
    """Always log reminders to data_root/outbox.log; optionally fan out to Telegram.

    Delivery is idempotent per ``idempotencyKey``: a key already recorded as
    delivered is acknowledged again without a second notification.
    """

    def __init__(self, config: AppConfig) -> None:
        self._config = config
        self.outbox_path = Path(config.paths.data_root) / "outbox.log"
        self._delivered: set[str] | None = None

    def _delivered_keys(self) -> set[str]:
        if self._delivered is None:
            keys: set[str] = set()
            if self.outbox_path.exists():
                for line in self.outbox_path.read_text(encoding="utf-8").splitlines():
                    try:
                        record = json.loads(line)
                    except json.JSONDecodeError:
                        continue
                    if isinstance(record, dict) and record.get("status") == "delivered":
                        keys.add(str(record.get("idempotency_key")))
            self._delivered = keys
        return self._delivered

    def _append(self, record: dict[str, Any]) -> None:
        self.outbox_path.parent.mkdir(parents=True, exist_ok=True)
        with self.outbox_path.open("a", encoding="utf-8") as fh:
            fh.write(json.dumps(record, ensure_ascii=False) + "\n")

    def dispatch(self, condition_id: str, note_id: str, payload: dict[str, Any]) -> bool:
        key = str(payload.get("idempotencyKey") or condition_id)
        delivered = self._delivered_keys()
        if key in delivered:
            logger.info("notifications: %s already delivered; acknowledging", key)
            return True

        ok = self._deliver(payload)
        self._append(
            {
                "timestamp": datetime.now(timezone.utc).isoformat(),
                "status": "delivered" if ok else "failed",
                "condition_id": condition_id,
                "note_id": note_id,
                "idempotency_key": key,
                "type": payload.get("type"),
                "title": payload.get("title"),
                "body": payload.get("body"),
                "audio_ref": payload.get("audioRef"),
            }
        )
        if ok:
            delivered.add(key)
        return ok

    def _deliver(self, payload: dict[str, Any]) -> bool:
        telegram = self._config.telegram
        if not telegram.enabled:
            return True
        if not telegram.bot_token or not telegram.chat_id:
            logger.warning("telegram: enabled but missing bot token or chat id; skipping send")
            return False

        stamp = datetime.now(timezone.utc).strftime("%Y-%m-%d %H:%M:%S")
        text = f"[{payload.get('title', 'Murmr Reminder')}][{stamp}]\n{payload.get('body', '')}"
        distance = payload.get("distanceMeters")
        if distance is not None:
            text += f"\n({format_distance(float(distance))} away)"
        if not send_telegram_message(telegram.bot_token, telegram.chat_id, text):
            return False

        audio_ref = str(payload.get("audioRef") or "")
        if audio_ref and Path(audio_ref).is_file():
            if not send_telegram_recording(telegram.bot_token, telegram.chat_id, audio_ref, caption=payload.get("body")):
                # The text reminder already went out; a retry would duplicate it.
                logger.warning("notifications: recording upload failed for %s", audio_ref)
        return True
