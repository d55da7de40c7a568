"""
Operator-side message timeline.

Server-pushed events, fetched pages and the operator's own optimistic sends are
merged into one list without duplicate bubbles:
    - an id already present is never added twice
    - a confirmed message carrying the client_ref of a pending optimistic entry replaces it
"""

import uuid
from dataclasses import dataclass, field
from datetime import date, datetime, timezone, tzinfo
from itertools import groupby
from typing import Any, Optional
from zoneinfo import ZoneInfo

from crmsync.config import settings


def parse_timestamp(value: Any) -> datetime:
    """ISO string or datetime -> aware datetime. Naive values are UTC."""
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, str):
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    else:
        raise ValueError(f"Unsupported timestamp: {value!r}")
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


@dataclass
class TimelineEntry:
    id: Optional[int]
    content: Optional[str]
    created_at: datetime
    client_ref: Optional[str] = None
    pending: bool = False
    failed: bool = False
    data: dict = field(default_factory=dict)

    @classmethod
    def from_message(cls, message: dict) -> "TimelineEntry":
        return cls(
            id=message["id"],
            content=message.get("content"),
            created_at=parse_timestamp(message["created_at"]),
            client_ref=message.get("client_ref"),
            data=dict(message),
        )


class MessageTimeline:
    def __init__(self):
        self._entries: list[TimelineEntry] = []

    def __len__(self) -> int:
        return len(self._entries)

    def _index_of_id(self, message_id: int) -> Optional[int]:
        for index, entry in enumerate(self._entries):
            if entry.id == message_id:
                return index
        return None

    def _index_of_pending(self, client_ref: str) -> Optional[int]:
        for index, entry in enumerate(self._entries):
            if entry.id is None and entry.client_ref == client_ref:
                return index
        return None

    def merge(self, message: dict) -> bool:
        """Add a confirmed message. Returns False when it was already shown."""
        if self._index_of_id(message["id"]) is not None:
            return False

        entry = TimelineEntry.from_message(message)
        pending_index = self._index_of_pending(entry.client_ref) if entry.client_ref else None
        if pending_index is not None:
            self._entries[pending_index] = entry
        else:
            self._entries.append(entry)
        return True

    def add_optimistic(self, content: str, client_ref: Optional[str] = None, now: Optional[datetime] = None) -> TimelineEntry:
        entry = TimelineEntry(
            id=None,
            content=content,
            created_at=parse_timestamp(now or datetime.now(timezone.utc)),
            client_ref=client_ref or uuid.uuid4().hex,
            pending=True,
        )
        self._entries.append(entry)
        return entry

    def fail_optimistic(self, client_ref: str) -> bool:
        index = self._index_of_pending(client_ref)
        if index is None:
            return False
        entry = self._entries[index]
        entry.pending = False
        entry.failed = True
        return True

    def apply_update(self, message: dict) -> bool:
        """Replace a shown message (e.g. reactions changed). Unknown ids are ignored."""
        index = self._index_of_id(message["id"])
        if index is None:
            return False
        self._entries[index] = TimelineEntry.from_message(message)
        return True

    def replace_all(self, messages: list[dict]) -> None:
        """Rebuild from a full fetch, keeping optimistic entries that are still unconfirmed."""
        unconfirmed = [entry for entry in self._entries if entry.id is None]
        self._entries = unconfirmed
        for message in messages:
            self.merge(message)

    def messages(self) -> list[TimelineEntry]:
        # sorted() is stable, so equal timestamps keep arrival order
        return sorted(self._entries, key=lambda entry: entry.created_at)

    def group_by_day(self, tz: str | tzinfo | None = None) -> list[tuple[date, list[TimelineEntry]]]:
        """Day separators as the operator sees them; defaults to the configured display timezone."""
        if tz is None:
            tz = settings.display_timezone
        zone = ZoneInfo(tz) if isinstance(tz, str) else tz
        return [
            (day, list(entries))
            for day, entries in groupby(self.messages(), key=lambda entry: entry.created_at.astimezone(zone).date())
        ]
