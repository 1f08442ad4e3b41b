"""Deletion guard lifecycle.

A guard is added before any external object is provisioned so that a
crash between "created remotely" and "guard added" cannot orphan it. The
guard is removed only once the deletion policy has fully handled the
external object; removing it is what allows the store to erase the record.
"""

from __future__ import annotations

from .models import ManagedRecord
from .store import IntentStore


def needs_guard(record: ManagedRecord) -> bool:
    """True iff the record is not being deleted and lacks the guard."""
    return not record.metadata.marked_for_deletion and not record.metadata.guard_present


def is_deletion_candidate(record: ManagedRecord) -> bool:
    """True iff deletion was requested and the guard is still present."""
    return record.metadata.marked_for_deletion and record.metadata.guard_present


def is_creation_candidate(record: ManagedRecord) -> bool:
    """True iff the external object was never provisioned."""
    return record.status.external_id == ""


async def add_guard(store: IntentStore, record: ManagedRecord) -> ManagedRecord:
    return await store.add_guard(record)


async def remove_guard(store: IntentStore, record: ManagedRecord) -> ManagedRecord | None:
    """Clear the guard. Returns None when the store erased the record."""
    return await store.remove_guard(record)
