"""Client-side message list that reconciles optimistic entries with broadcasts.

Broadcasts can arrive late, twice, or before the HTTP response that created
them. The timeline deduplicates on message id, replaces an optimistic customer
entry in place when its durable copy shows up, and renders by timestamp.
"""

import itertools
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Mapping, Optional, Union

from pydantic import TypeAdapter

from ..domain.models import Sender

MessageId = Union[int, str]

TEMP_PREFIX = "temp_"

_datetime = TypeAdapter(datetime)


@dataclass
class TimelineEntry:
    id: MessageId
    sender: str
    body: str
    created_at: datetime
    metadata: Dict[str, Any] = field(default_factory=dict)
    optimistic: bool = False


def _parse_time(value: Any) -> datetime:
    if value is None:
        return datetime.now(timezone.utc)
    parsed = _datetime.validate_python(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _entry(payload: Mapping[str, Any]) -> TimelineEntry:
    return TimelineEntry(
        id=payload["id"],
        sender=str(payload["sender"]),
        body=payload["message"],
        created_at=_parse_time(payload.get("created_at")),
        metadata=dict(payload.get("metadata") or {}),
    )


class MessageTimeline:
    """What one customer's chat window shows."""

    def __init__(self) -> None:
        self._entries: List[TimelineEntry] = []
        self._temp_ids = itertools.count(1)
        self._pending: Dict[str, str] = {}

    def __len__(self) -> int:
        return len(self._entries)

    def _index_of(self, message_id: MessageId) -> Optional[int]:
        for i, entry in enumerate(self._entries):
            if entry.id == message_id:
                return i
        return None

    def _first_optimistic(self, sender: str, body: str) -> Optional[int]:
        for i, entry in enumerate(self._entries):
            if entry.optimistic and entry.sender == sender and entry.body == body:
                return i
        return None

    def add_optimistic(self, body: str, now: Optional[datetime] = None) -> str:
        """Show a customer message before the server confirms it."""
        temp_id = f"{TEMP_PREFIX}{next(self._temp_ids)}"
        self._pending[temp_id] = body.strip()
        self._entries.append(
            TimelineEntry(
                id=temp_id,
                sender=Sender.CUSTOMER.value,
                body=body.strip(),
                created_at=now or datetime.now(timezone.utc),
                optimistic=True,
            )
        )
        return temp_id

    def apply_broadcast(self, payload: Mapping[str, Any]) -> bool:
        """Apply a ``new-message`` payload. Returns False for duplicates."""
        if self._index_of(payload["id"]) is not None:
            return False

        entry = _entry(payload)
        if entry.sender == Sender.CUSTOMER.value:
            index = self._first_optimistic(entry.sender, entry.body)
            if index is not None:
                self._entries[index] = entry
                return True

        self._entries.append(entry)
        return True

    def confirm(self, temp_id: str, message_id: MessageId) -> None:
        """Attach the durable id from the HTTP response to an optimistic entry."""
        body = self._pending.pop(temp_id, None)
        index = self._index_of(temp_id)
        if self._index_of(message_id) is not None:
            # The broadcast already landed; the optimistic copy is redundant.
            if index is not None:
                del self._entries[index]
            return
        if index is None and body is not None:
            # A broadcast for an identical message took this entry's slot.
            index = self._first_optimistic(Sender.CUSTOMER.value, body)
        if index is None:
            return
        entry = self._entries[index]
        entry.id = message_id
        entry.optimistic = False

    def discard(self, temp_id: str) -> None:
        """Remove an optimistic entry whose send failed."""
        self._pending.pop(temp_id, None)
        index = self._index_of(temp_id)
        if index is not None and self._entries[index].optimistic:
            del self._entries[index]

    def load_history(self, payloads: Iterable[Mapping[str, Any]]) -> None:
        """Merge a fetched history, keeping unconfirmed optimistic entries."""
        for payload in payloads:
            self.apply_broadcast(payload)

    def visible(self) -> List[TimelineEntry]:
        """Entries in render order: creation time, then arrival order."""
        return sorted(self._entries, key=lambda e: e.created_at)
