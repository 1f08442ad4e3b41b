"""Shared convergence loop for every record kind.

One pass over one record:
1. Fetch the record; stop if it is gone
2. Stop if the record is paused
3. Validate the spec; on failure report once and do not requeue
4. Add the deletion guard if missing and requeue immediately
5. Open a short-lived remote client with the record's token
6. Deletion candidates go to the deletion policy executor
7. Creation candidates get their external object created, id persisted at once
8. Read the external object back; re-create it if it vanished
9. Push spec changes if the generation moved on
10. Run the kind's sub-reconciliation steps
11. Persist status with observed_generation = generation, unless the kind
    reported unfinished work for this generation (then retry interval)
12. Requeue after the sync period, or after the retry interval on errors

A pass never blocks on long-running remote work. It records progress in
status and returns; the next pass picks up from there. Every pass must
therefore tolerate state left behind by a previous, possibly crashed, pass.

ERROR MAPPING:
- SpecValidationError: warning event, no requeue
- ConflictError: silent, retry interval
- RemoteError / CredentialError / FleetError: warning event, retry interval
- anything else: logged with traceback, warning event, retry interval
"""

from __future__ import annotations

import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any, ClassVar, TypeVar

from .config import OperatorConfig
from .credentials import ClientFactory, CredentialError
from .deletion import DeletionOutcome, DeletionPolicyExecutor, DeletionTarget
from .events import EventRecorder
from .finalizer import add_guard, is_creation_candidate, is_deletion_candidate, needs_guard
from .fleet import AgentFleet, FleetError
from .metrics import RECONCILE_DURATION, RECONCILE_TOTAL
from .models import ManagedRecord, RecordKey, SpecValidationError, validate_spec
from .remote import RemoteClient, RemoteError, ResourceNotFound
from .secret_store import SecretNotFoundError, SecretStore
from .store import ConflictError, IntentStore, RecordNotFoundError

logger = logging.getLogger(__name__)

R = TypeVar("R", bound=ManagedRecord)


class Outcome(str, Enum):
    """How a reconciliation pass ended."""

    CONVERGED = "converged"
    PROGRESSING = "progressing"
    GUARD_ADDED = "guard_added"
    DELETED = "deleted"
    DELETION_WAITING = "deletion_waiting"
    PAUSED = "paused"
    GONE = "gone"
    INVALID = "invalid"
    CONFLICT = "conflict"
    FAILED = "failed"


@dataclass
class ReconcileResult:
    """Result of a single reconciliation pass."""

    kind: str
    key: RecordKey
    outcome: Outcome = Outcome.CONVERGED
    requeue_after: float | None = None
    start_time: datetime = field(default_factory=lambda: datetime.now(UTC))
    end_time: datetime | None = None
    error: Exception | None = None

    @property
    def duration_seconds(self) -> float:
        """Calculate duration in seconds."""
        if self.end_time is None:
            return 0.0
        return (self.end_time - self.start_time).total_seconds()

    @property
    def success(self) -> bool:
        """Check if reconciliation succeeded."""
        return self.error is None


@dataclass
class OperatorDeps:
    """Collaborators shared by every reconciler."""

    config: OperatorConfig
    store: IntentStore
    clients: ClientFactory
    events: EventRecorder
    secrets: SecretStore
    fleet: AgentFleet


@dataclass
class ReconcileContext:
    """State of one pass over one record."""

    record: ManagedRecord
    remote: RemoteClient
    store: IntentStore
    observed: Any = None
    # Set by converge() while long-running remote work for this generation is unfinished
    in_progress: bool = False

    async def persist_status(self) -> None:
        """Write status now and keep the fresh resource_version for later writes."""
        updated = await self.store.update_status(self.record)
        self.record.metadata.resource_version = updated.metadata.resource_version

    def record_as(self, record_type: type[R]) -> R:
        """Return the record narrowed to the kind a reconciler handles."""
        if not isinstance(self.record, record_type):
            raise TypeError(f"Expected {record_type.kind} record, got {self.record.kind}")
        return self.record


class Reconciler(ABC):
    """Base class implementing the convergence loop; kinds fill in the hooks."""

    kind: ClassVar[str] = ""

    def __init__(self, deps: OperatorDeps) -> None:
        self._deps = deps
        self._config = deps.config
        self._store = deps.store
        self._events = deps.events
        self._executor = DeletionPolicyExecutor(deps.events)

    @property
    def sync_period(self) -> float:
        return float(self._config.sync_period(self.kind))

    @property
    def retry_interval(self) -> float:
        return float(self._config.requeue_interval_seconds)

    # -------------------------------------------------------------------------
    # Hooks
    # -------------------------------------------------------------------------

    @abstractmethod
    async def create_external(self, ctx: ReconcileContext) -> str:
        """Create (or resolve) the external object and return its id."""

    @abstractmethod
    async def read_external(self, ctx: ReconcileContext) -> Any:
        """Read the external object; raise ResourceNotFound if it vanished."""

    async def update_external(self, ctx: ReconcileContext) -> None:
        """Push spec changes to the external object."""
        return None

    async def converge(self, ctx: ReconcileContext) -> None:
        """Kind-specific sub-reconciliation."""
        return None

    @abstractmethod
    def deletion_target(self, ctx: ReconcileContext) -> DeletionTarget:
        """Remote operations the deletion policy may use."""

    async def on_erased(self, record: ManagedRecord) -> None:
        """Clean up local objects owned by an erased record."""
        return None

    # -------------------------------------------------------------------------
    # Loop
    # -------------------------------------------------------------------------

    async def reconcile(self, key: RecordKey) -> ReconcileResult:
        """Run one pass over one record. Never raises."""
        result = ReconcileResult(kind=self.kind, key=key)
        record: ManagedRecord | None = None
        started = time.monotonic()
        try:
            record = await self._store.get(self.kind, key)
            if record is None:
                result.outcome = Outcome.GONE
                return result
            await self._reconcile_record(record, result)

        except SpecValidationError as e:
            result.outcome = Outcome.INVALID
            result.error = e
            if record is not None:
                self._events.warning(record, "SpecInvalid", str(e))

        except (ConflictError, RecordNotFoundError) as e:
            # Someone else wrote the record first; the next pass re-reads it
            result.outcome = Outcome.CONFLICT
            result.error = e
            result.requeue_after = self.retry_interval
            logger.debug("Store conflict", extra={"kind": self.kind, "record": str(key)})

        except (RemoteError, CredentialError, FleetError, SecretNotFoundError) as e:
            result.outcome = Outcome.FAILED
            result.error = e
            result.requeue_after = self.retry_interval
            if record is not None:
                self._events.warning(record, "ReconcileError", str(e))

        except Exception as e:
            logger.exception(
                "Unexpected error during reconciliation",
                extra={"kind": self.kind, "record": str(key)},
            )
            result.outcome = Outcome.FAILED
            result.error = e
            result.requeue_after = self.retry_interval
            if record is not None:
                self._events.warning(record, "ReconcileError", f"Unexpected error: {e}")

        finally:
            result.end_time = datetime.now(UTC)
            RECONCILE_DURATION.labels(kind=self.kind).observe(time.monotonic() - started)
            RECONCILE_TOTAL.labels(kind=self.kind, result=result.outcome.value).inc()
            self._log_result(result)

        return result

    async def _reconcile_record(self, record: ManagedRecord, result: ReconcileResult) -> None:
        if record.metadata.paused:
            logger.info(
                "Record is paused, skipping",
                extra={"kind": self.kind, "record": str(record.key)},
            )
            result.outcome = Outcome.PAUSED
            return

        validate_spec(record, self._config.default_deletion_policy)

        if needs_guard(record):
            await add_guard(self._store, record)
            result.outcome = Outcome.GUARD_ADDED
            result.requeue_after = 0.0
            return

        if record.metadata.marked_for_deletion and not record.metadata.guard_present:
            # Unguarded records are erased by the store on their own
            result.outcome = Outcome.GONE
            return

        async with self._deps.clients.open(record) as remote:
            ctx = ReconcileContext(record=record, remote=remote, store=self._store)

            if is_deletion_candidate(record):
                await self._finalize(ctx, result)
                return

            await self._ensure_external(ctx)
            await self.converge(ctx)

            if ctx.in_progress:
                await ctx.persist_status()
                result.outcome = Outcome.PROGRESSING
                result.requeue_after = self.retry_interval
                return

            ctx.record.status.observed_generation = ctx.record.metadata.generation
            await ctx.persist_status()

        result.outcome = Outcome.CONVERGED
        result.requeue_after = self.sync_period

    async def _ensure_external(self, ctx: ReconcileContext) -> None:
        record = ctx.record
        log_extra = {"kind": self.kind, "record": str(record.key)}

        if is_creation_candidate(record):
            external_id = await self.create_external(ctx)
            record.status.external_id = external_id
            await ctx.persist_status()
            logger.info("External object created", extra={**log_extra, "external_id": external_id})
            self._events.normal(record, "Created", f"Created {self.kind} {external_id}")

        try:
            ctx.observed = await self.read_external(ctx)
        except ResourceNotFound:
            logger.warning(
                "External object vanished, re-creating",
                extra={**log_extra, "external_id": record.status.external_id},
            )
            self._events.warning(
                record, "Recreating", f"{self.kind} {record.status.external_id} not found"
            )
            record.status.external_id = await self.create_external(ctx)
            await ctx.persist_status()
            ctx.observed = await self.read_external(ctx)

        if record.status.observed_generation != record.metadata.generation:
            await self.update_external(ctx)

    async def _finalize(self, ctx: ReconcileContext, result: ReconcileResult) -> None:
        policy = ctx.record.deletion_policy(self._config.default_deletion_policy)
        outcome = await self._executor.execute(ctx, policy, self.deletion_target(ctx))

        if outcome == DeletionOutcome.WAITING:
            result.outcome = Outcome.DELETION_WAITING
            result.requeue_after = self.retry_interval
            return

        remaining = await self._store.remove_guard(ctx.record)
        if remaining is None:
            await self.on_erased(ctx.record)
            self._events.forget(self.kind, ctx.record.key)
        result.outcome = Outcome.DELETED

    def _log_result(self, result: ReconcileResult) -> None:
        extra = {
            "kind": result.kind,
            "record": str(result.key),
            "outcome": result.outcome.value,
            "duration_seconds": result.duration_seconds,
            "requeue_after": result.requeue_after,
        }
        if result.error is None:
            logger.info("Reconciliation completed", extra=extra)
        elif result.outcome == Outcome.CONFLICT:
            logger.debug("Reconciliation deferred", extra=extra)
        else:
            logger.error(
                "Reconciliation failed",
                extra={
                    **extra,
                    "error": str(result.error),
                    "error_type": type(result.error).__name__,
                },
            )
