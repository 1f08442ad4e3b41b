"""Human-readable events attached to records.

Events are the operator's user-facing channel: a spec that fails
validation, a remote call that keeps failing, an autoscaler decision.
Each event is emitted as a structured log record and kept in a bounded
in-memory buffer per record so the CLI and tests can inspect it.
"""

from __future__ import annotations

import logging
from collections import deque
from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from .models import ManagedRecord, RecordKey

logger = logging.getLogger(__name__)

# Events retained per record
MAX_EVENTS_PER_RECORD = 50


class EventType(str, Enum):
    """Event severity."""

    NORMAL = "Normal"
    WARNING = "Warning"


@dataclass
class Event:
    """One event about one record."""

    kind: str
    namespace: str
    name: str
    type: EventType
    reason: str
    message: str
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["type"] = self.type.value
        data["timestamp"] = self.timestamp.isoformat()
        return data


class EventRecorder:
    """Records events per record."""

    def __init__(self, max_per_record: int = MAX_EVENTS_PER_RECORD) -> None:
        self._max_per_record = max_per_record
        self._events: dict[tuple[str, RecordKey], deque[Event]] = {}

    def normal(self, record: ManagedRecord, reason: str, message: str) -> Event:
        return self._record(record, EventType.NORMAL, reason, message)

    def warning(self, record: ManagedRecord, reason: str, message: str) -> Event:
        return self._record(record, EventType.WARNING, reason, message)

    def events_for(self, kind: str, key: RecordKey) -> list[Event]:
        return list(self._events.get((kind, key), ()))

    def forget(self, kind: str, key: RecordKey) -> None:
        """Drop buffered events of an erased record."""
        self._events.pop((kind, key), None)

    def _record(
        self, record: ManagedRecord, event_type: EventType, reason: str, message: str
    ) -> Event:
        event = Event(
            kind=record.kind,
            namespace=record.metadata.namespace,
            name=record.metadata.name,
            type=event_type,
            reason=reason,
            message=message,
        )
        buffer = self._events.setdefault(
            (record.kind, record.key), deque(maxlen=self._max_per_record)
        )
        buffer.append(event)

        level = logging.WARNING if event_type == EventType.WARNING else logging.INFO
        logger.log(
            level,
            message,
            extra={
                "event_type": event_type.value,
                "reason": reason,
                "kind": record.kind,
                "record": str(record.key),
            },
        )
        return event
