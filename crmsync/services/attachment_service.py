"""Relay of channel attachments into durable media storage."""

import mimetypes
import re
import uuid
from pathlib import Path, PurePosixPath
from typing import Optional

import httpx

from crmsync.logging_config import get_logger
from crmsync.services.telegram_service import FileTooLargeError, TelegramService

logger = get_logger("attachment_service")

# Content shown when the attachment arrived without a caption.
MEDIA_LABELS = {
    "voice": "🎤 Голосовое сообщение",
    "image": "🖼 Изображение",
    "video": "🎬 Видео",
    "file": "📎 Файл",
}

# Content shown when the attachment could not be relayed and had no caption.
MEDIA_PLACEHOLDERS = {
    "voice": "[Голосовое сообщение: файл не удалось загрузить]",
    "image": "[Изображение: файл не удалось загрузить]",
    "video": "[Видео: файл не удалось загрузить]",
    "file": "[Файл: не удалось загрузить]",
}

_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9._-]+")


def media_content(message_type: str, caption: Optional[str], attachment_url: Optional[str], file_name: Optional[str] = None) -> str:
    """Text stored alongside an attachment row. Never empty."""
    if caption and caption.strip():
        return caption
    if attachment_url is None:
        return MEDIA_PLACEHOLDERS.get(message_type, MEDIA_PLACEHOLDERS["file"])
    if message_type == "file" and file_name:
        return f"📎 {file_name}"
    return MEDIA_LABELS.get(message_type, MEDIA_LABELS["file"])


def safe_file_name(file_name: Optional[str], file_path: Optional[str], mime_hint: Optional[str]) -> str:
    """Unique storage name keeping a sanitized original stem and a sensible extension."""
    source = PurePosixPath(file_name or file_path or "attachment")
    stem = _UNSAFE_CHARS.sub("_", source.stem).strip("._") or "attachment"
    suffix = source.suffix or (PurePosixPath(file_path).suffix if file_path else "")
    if not suffix and mime_hint:
        suffix = mimetypes.guess_extension(mime_hint) or ""
    suffix = _UNSAFE_CHARS.sub("", suffix)
    return f"{uuid.uuid4().hex[:12]}_{stem[:80]}{suffix}"


class LocalMediaStorage:
    """Filesystem storage served by the /media route."""

    def __init__(self, root_dir: str, public_base_url: str):
        self.root = Path(root_dir)
        self.public_base_url = public_base_url.rstrip("/")

    def save(self, thread_key: int, name: str, data: bytes) -> str:
        target_dir = self.root / str(thread_key)
        target_dir.mkdir(parents=True, exist_ok=True)
        (target_dir / name).write_bytes(data)
        return f"{self.public_base_url}/media/{thread_key}/{name}"

    def resolve(self, relative_path: str) -> Optional[Path]:
        """Map a /media/<path> request to a stored file, refusing anything outside the root."""
        root = self.root.resolve()
        candidate = (root / relative_path).resolve()
        try:
            candidate.relative_to(root)
        except ValueError:
            return None
        if not candidate.is_file():
            return None
        return candidate


class AttachmentRelay:
    def __init__(self, telegram: TelegramService, storage: LocalMediaStorage, max_bytes: Optional[int] = None):
        self.telegram = telegram
        self.storage = storage
        self.max_bytes = max_bytes

    async def relay(
        self,
        file_id: str,
        mime_hint: Optional[str],
        *,
        thread_key: int,
        file_name: Optional[str] = None,
    ) -> Optional[str]:
        """
        Copy a channel file into durable storage.

        Returns the permanent public URL, or None on any failure. Never raises.
        """
        context = {"file_id": file_id, "thread_key": thread_key, "mime_hint": mime_hint}

        file_path = await self.telegram.get_file(file_id)
        if not file_path:
            logger.warning("Attachment relay: no file descriptor", extra={"context": context})
            return None

        try:
            data = await self.telegram.download_file(file_path, max_bytes=self.max_bytes)
        except FileTooLargeError as e:
            logger.warning("Attachment relay: file too large", extra={"context": {**context, "max_bytes": e.max_bytes}})
            return None
        except httpx.HTTPError as e:
            logger.warning("Attachment relay: download failed", extra={"context": {**context, "error": str(e)}})
            return None

        try:
            url = self.storage.save(thread_key, safe_file_name(file_name, file_path, mime_hint), data)
        except OSError as e:
            logger.error("Attachment relay: storage write failed", extra={"context": {**context, "error": str(e)}})
            return None

        logger.info("Attachment relayed", extra={"context": {**context, "url": url, "size": len(data)}})
        return url
