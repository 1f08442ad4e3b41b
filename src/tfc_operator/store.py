"""Intent store holding managed-resource records.

The store is the only shared mutable state per record. Writes are guarded
by optimistic concurrency: every write carries the resource_version the
caller read, and fails with ConflictError if the record moved on since.
There is no lock; the caller simply re-reads on its next pass.

NOTIFICATIONS:
Subscribers receive a StoreEvent when a record is created, its spec or
pause flag changes, deletion is requested, a run is requested, or it is
erased. Status and guard writes made by the operator itself do not
notify, so reconciliation never triggers itself.

DELETION:
request_deletion() stamps deletion_timestamp. A record without a guard is
erased at once; otherwise it stays until remove_guard() clears the guard.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass
from datetime import UTC, datetime
from enum import Enum
from typing import Protocol

from .models import ManagedRecord, RecordKey, RecordSpec, RunRequest

logger = logging.getLogger(__name__)


class StoreError(Exception):
    """Base class for intent store failures."""

    pass


class ConflictError(StoreError):
    """Raised when a write is based on a stale resource_version."""

    pass


class RecordNotFoundError(StoreError):
    """Raised when writing to a record that no longer exists."""

    pass


class EventType(str, Enum):
    """Kinds of change notifications."""

    ADDED = "added"
    MODIFIED = "modified"
    DELETED = "deleted"


@dataclass(frozen=True)
class StoreEvent:
    """A change notification for one record."""

    kind: str
    key: RecordKey
    type: EventType


class IntentStore(Protocol):
    """Operations reconciliation consumes from the record store."""

    async def get(self, kind: str, key: RecordKey) -> ManagedRecord | None: ...
    async def list(self, kind: str) -> list[ManagedRecord]: ...
    async def create(self, record: ManagedRecord) -> ManagedRecord: ...
    async def update_spec(self, kind: str, key: RecordKey, spec: RecordSpec) -> ManagedRecord: ...
    async def update_status(self, record: ManagedRecord) -> ManagedRecord: ...
    async def add_guard(self, record: ManagedRecord) -> ManagedRecord: ...
    async def remove_guard(self, record: ManagedRecord) -> ManagedRecord | None: ...
    async def request_deletion(self, kind: str, key: RecordKey) -> None: ...
    async def set_paused(self, kind: str, key: RecordKey, paused: bool) -> None: ...
    async def submit_run_request(self, kind: str, key: RecordKey, request: RunRequest) -> None: ...
    async def clear_run_request(self, record: ManagedRecord) -> ManagedRecord: ...
    def subscribe(self) -> asyncio.Queue[StoreEvent]: ...
    def unsubscribe(self, queue: asyncio.Queue[StoreEvent]) -> None: ...


class InMemoryIntentStore:
    """Intent store kept in process memory.

    Records are deep-copied on the way in and out so callers can never
    mutate stored state without going through a guarded write.
    """

    def __init__(self) -> None:
        self._records: dict[tuple[str, RecordKey], ManagedRecord] = {}
        self._subscribers: list[asyncio.Queue[StoreEvent]] = []

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    async def get(self, kind: str, key: RecordKey) -> ManagedRecord | None:
        record = self._records.get((kind, key))
        return record.model_copy(deep=True) if record is not None else None

    async def list(self, kind: str) -> list[ManagedRecord]:
        return [
            record.model_copy(deep=True)
            for (record_kind, _), record in sorted(self._records.items())
            if record_kind == kind
        ]

    def kinds(self) -> set[str]:
        return {kind for kind, _ in self._records}

    def __len__(self) -> int:
        return len(self._records)

    # -------------------------------------------------------------------------
    # Writes
    # -------------------------------------------------------------------------

    async def create(self, record: ManagedRecord) -> ManagedRecord:
        """Store a new record.

        Raises:
            ConflictError: If a record with the same kind and key exists.
        """
        slot = (record.kind, record.key)
        if slot in self._records:
            raise ConflictError(f"{record.kind} {record.key} already exists")

        stored = record.model_copy(deep=True)
        stored.metadata.uid = stored.metadata.uid or str(uuid.uuid4())
        stored.metadata.generation = 1
        stored.metadata.resource_version = 1
        stored.metadata.deletion_timestamp = None
        self._records[slot] = stored

        logger.info("Record created", extra={"kind": record.kind, "record": str(record.key)})
        self._notify(record.kind, record.key, EventType.ADDED)
        return stored.model_copy(deep=True)

    async def update_spec(self, kind: str, key: RecordKey, spec: RecordSpec) -> ManagedRecord:
        """Replace the desired state, bumping generation if it changed."""
        stored = self._require(kind, key)
        if stored.metadata.marked_for_deletion:
            raise ConflictError(f"{kind} {key} is being deleted")
        if stored.spec == spec:
            return stored.model_copy(deep=True)

        stored.spec = spec.model_copy(deep=True)
        stored.metadata.generation += 1
        stored.metadata.resource_version += 1
        self._notify(kind, key, EventType.MODIFIED)
        return stored.model_copy(deep=True)

    async def update_status(self, record: ManagedRecord) -> ManagedRecord:
        """Write the observed state, guarded by resource_version."""
        stored = self._check_version(record)
        stored.status = record.status.model_copy(deep=True)
        stored.metadata.resource_version += 1
        return stored.model_copy(deep=True)

    async def add_guard(self, record: ManagedRecord) -> ManagedRecord:
        stored = self._check_version(record)
        if stored.metadata.marked_for_deletion:
            raise ConflictError(f"{record.kind} {record.key} is being deleted")
        stored.metadata.guard_present = True
        stored.metadata.resource_version += 1
        return stored.model_copy(deep=True)

    async def remove_guard(self, record: ManagedRecord) -> ManagedRecord | None:
        """Clear the guard. Returns None if this erased the record."""
        stored = self._check_version(record)
        stored.metadata.guard_present = False
        stored.metadata.resource_version += 1
        if stored.metadata.marked_for_deletion:
            self._erase(record.kind, record.key)
            return None
        return stored.model_copy(deep=True)

    async def request_deletion(self, kind: str, key: RecordKey) -> None:
        stored = self._records.get((kind, key))
        if stored is None:
            return
        if not stored.metadata.marked_for_deletion:
            stored.metadata.deletion_timestamp = datetime.now(UTC)
            stored.metadata.resource_version += 1
        if not stored.metadata.guard_present:
            self._erase(kind, key)
            return
        logger.info("Record deletion requested", extra={"kind": kind, "record": str(key)})
        self._notify(kind, key, EventType.MODIFIED)

    async def set_paused(self, kind: str, key: RecordKey, paused: bool) -> None:
        stored = self._require(kind, key)
        if stored.metadata.paused == paused:
            return
        stored.metadata.paused = paused
        stored.metadata.resource_version += 1
        self._notify(kind, key, EventType.MODIFIED)

    async def submit_run_request(self, kind: str, key: RecordKey, request: RunRequest) -> None:
        stored = self._require(kind, key)
        stored.run_request = request.model_copy()
        stored.metadata.resource_version += 1
        self._notify(kind, key, EventType.MODIFIED)

    async def clear_run_request(self, record: ManagedRecord) -> ManagedRecord:
        stored = self._check_version(record)
        stored.run_request = None
        stored.metadata.resource_version += 1
        return stored.model_copy(deep=True)

    # -------------------------------------------------------------------------
    # Notifications
    # -------------------------------------------------------------------------

    def subscribe(self) -> asyncio.Queue[StoreEvent]:
        queue: asyncio.Queue[StoreEvent] = asyncio.Queue()
        self._subscribers.append(queue)
        return queue

    def unsubscribe(self, queue: asyncio.Queue[StoreEvent]) -> None:
        if queue in self._subscribers:
            self._subscribers.remove(queue)

    def _notify(self, kind: str, key: RecordKey, event_type: EventType) -> None:
        event = StoreEvent(kind=kind, key=key, type=event_type)
        for queue in self._subscribers:
            queue.put_nowait(event)

    # -------------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------------

    def _require(self, kind: str, key: RecordKey) -> ManagedRecord:
        stored = self._records.get((kind, key))
        if stored is None:
            raise RecordNotFoundError(f"{kind} {key} not found")
        return stored

    def _check_version(self, record: ManagedRecord) -> ManagedRecord:
        stored = self._require(record.kind, record.key)
        if stored.metadata.resource_version != record.metadata.resource_version:
            raise ConflictError(
                f"{record.kind} {record.key} changed: have version "
                f"{record.metadata.resource_version}, stored {stored.metadata.resource_version}"
            )
        return stored

    def _erase(self, kind: str, key: RecordKey) -> None:
        del self._records[(kind, key)]
        logger.info("Record erased", extra={"kind": kind, "record": str(key)})
        self._notify(kind, key, EventType.DELETED)
