"""Telegram Bot API helpers for reminder fan-out."""

from __future__ import annotations

import json
import logging
import mimetypes
import urllib.error
import urllib.request
import uuid
from pathlib import Path

logger = logging.getLogger(__name__)

_API_ROOT = "https://api.telegram.org"
_MAX_TELEGRAM_TEXT_CHARS = 4000
# sendVoice only accepts OGG/Opus; everything else goes out as audio.
_VOICE_SUFFIXES = {".ogg", ".oga", ".opus"}


def _truncate(text: str, max_chars: int = _MAX_TELEGRAM_TEXT_CHARS) -> str:
    if len(text) <= max_chars:
        return text
    return text[: max_chars - 1].rstrip() + "…"


def _post(bot_token: str, method: str, data: bytes, content_type: str, *, timeout: int) -> bool:
    request = urllib.request.Request(
        url=f"{_API_ROOT}/bot{bot_token}/{method}",
        method="POST",
        headers={"Content-Type": content_type},
        data=data,
    )
    try:
        with urllib.request.urlopen(request, timeout=timeout) as response:  # noqa: S310
            body = response.read().decode("utf-8", errors="replace")
            if not 200 <= response.status < 300:
                logger.error("telegram: %s failed status=%s body=%s", method, response.status, body)
                return False
            return True
    except urllib.error.HTTPError as exc:
        body = exc.read().decode("utf-8", errors="replace")
        logger.error("telegram: %s failed status=%s body=%s", method, exc.code, body)
    except Exception as exc:  # noqa: BLE001
        logger.error("telegram: %s failed error=%s", method, exc)
    return False


def send_telegram_message(bot_token: str, chat_id: str, text: str, *, disable_notification: bool = False) -> bool:
    payload = {
        "chat_id": chat_id,
        "text": _truncate(text),
        "disable_notification": disable_notification,
    }
    logger.info("telegram: sending reminder to chat_id=%s", chat_id)
    return _post(bot_token, "sendMessage", json.dumps(payload).encode("utf-8"), "application/json", timeout=10)


def _multipart_payload(fields: dict[str, str], file_field: str, file_path: Path) -> tuple[bytes, str]:
    boundary = f"----murmr-{uuid.uuid4().hex}"
    parts: list[bytes] = []
    for key, value in fields.items():
        parts.append(
            f'--{boundary}\r\nContent-Disposition: form-data; name="{key}"\r\n\r\n{value}\r\n'.encode("utf-8")
        )
    mime = mimetypes.guess_type(file_path.name)[0] or "application/octet-stream"
    parts.append(
        (
            f"--{boundary}\r\n"
            f'Content-Disposition: form-data; name="{file_field}"; filename="{file_path.name}"\r\n'
            f"Content-Type: {mime}\r\n\r\n"
        ).encode("utf-8")
    )
    parts.append(file_path.read_bytes())
    parts.append(f"\r\n--{boundary}--\r\n".encode("utf-8"))
    return b"".join(parts), boundary


def send_telegram_recording(bot_token: str, chat_id: str, file_path: str, *, caption: str | None = None) -> bool:
    """Upload a voice note; OGG/Opus as a voice message, other formats as audio."""
    path = Path(file_path)
    if not path.is_file():
        logger.error("telegram: recording does not exist path=%s", file_path)
        return False
    if path.suffix.lower() in _VOICE_SUFFIXES:
        method, field_name = "sendVoice", "voice"
    else:
        method, field_name = "sendAudio", "audio"
    fields = {"chat_id": chat_id}
    if caption:
        fields["caption"] = _truncate(caption, 1024)
    body, boundary = _multipart_payload(fields, field_name, path)
    return _post(bot_token, method, body, f"multipart/form-data; boundary={boundary}", timeout=20)
