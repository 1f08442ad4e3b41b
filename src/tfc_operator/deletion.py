"""Deletion policy execution.

When a guarded record is marked for deletion, its policy decides what
happens to the external object before the guard may be removed:

- retain:  nothing; the guard goes at once
- soft:    safe delete; a not-safe-to-delete answer means "wait", not "fail"
- destroy: per kind, one of
    RUN         start a destroy run, wait for it, then delete the workspace
    AGENT_POOL  delete the pool; on failure scale the fleet to zero, drop
                the tokens and keep the guard so the next pass retries
    DELETE      plain delete with soft semantics
- force:   delete unconditionally; only not-found counts as done

Each call makes at most the remote calls needed for one step and returns
COMPLETE or WAITING. Progress such as a started destroy run is persisted
immediately so a crashed pass resumes instead of starting over.

Not-found anywhere on the way counts as "already gone".
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING

from .events import EventRecorder
from .models import DeletionPolicy, RetryPolicy, RunDescriptor, RunTrackingStatus
from .remote import (
    NotSafeToDelete,
    RemoteError,
    RemoteRun,
    ResourceNotFound,
    RunOptions,
    is_run_complete,
    is_run_unsuccessful,
)
from .retry import RetryTracker

if TYPE_CHECKING:
    from .reconciler import ReconcileContext

logger = logging.getLogger(__name__)


class DeletionOutcome(str, Enum):
    """Result of one deletion step."""

    COMPLETE = "complete"  # external object handled, guard may be removed
    WAITING = "waiting"  # keep the guard, try again on the next pass


class DestroyMode(str, Enum):
    """How a kind implements the destroy policy."""

    RUN = "run"
    AGENT_POOL = "agent_pool"
    DELETE = "delete"


@dataclass
class DeletionTarget:
    """Remote operations one kind exposes to the executor."""

    destroy_mode: DestroyMode = DestroyMode.DELETE
    delete: Callable[[], Awaitable[None]] | None = None
    force_delete: Callable[[], Awaitable[None]] | None = None
    cleanup: Callable[[], Awaitable[None]] | None = None
    workspace_id: str = ""
    delete_workspace: bool = True
    retry_policy: RetryPolicy | None = None


class DeletionPolicyExecutor:
    """Drives a record's external object through its deletion policy."""

    def __init__(self, events: EventRecorder) -> None:
        self._events = events

    async def execute(
        self, ctx: ReconcileContext, policy: DeletionPolicy, target: DeletionTarget
    ) -> DeletionOutcome:
        logger.info(
            "Executing deletion policy",
            extra={"kind": ctx.record.kind, "record": str(ctx.record.key), "policy": policy.value},
        )
        if policy == DeletionPolicy.RETAIN:
            return await self.retain(ctx)

        if not ctx.record.status.external_id:
            # Never provisioned, nothing to tear down
            return DeletionOutcome.COMPLETE

        match policy:
            case DeletionPolicy.SOFT:
                return await self.soft(ctx, target)
            case DeletionPolicy.DESTROY:
                return await self.destroy(ctx, target)
            case DeletionPolicy.FORCE:
                return await self.force(ctx, target)
        raise ValueError(f"Unknown deletion policy: {policy}")

    async def retain(self, ctx: ReconcileContext) -> DeletionOutcome:
        logger.info(
            "Retaining external object",
            extra={"record": str(ctx.record.key), "external_id": ctx.record.status.external_id},
        )
        return DeletionOutcome.COMPLETE

    async def soft(self, ctx: ReconcileContext, target: DeletionTarget) -> DeletionOutcome:
        if target.delete is None:
            raise ValueError(f"{ctx.record.kind} does not support deletion")
        try:
            await target.delete()
        except ResourceNotFound:
            return DeletionOutcome.COMPLETE
        except NotSafeToDelete as e:
            self._events.normal(
                ctx.record, "DeletionBlocked", f"Waiting for dependents to be removed: {e}"
            )
            return DeletionOutcome.WAITING
        self._events.normal(
            ctx.record, "Deleted", f"Deleted {ctx.record.kind} {ctx.record.status.external_id}"
        )
        return DeletionOutcome.COMPLETE

    async def destroy(self, ctx: ReconcileContext, target: DeletionTarget) -> DeletionOutcome:
        match target.destroy_mode:
            case DestroyMode.RUN:
                return await self.destroy_with_run(ctx, target)
            case DestroyMode.AGENT_POOL:
                return await self.destroy_agent_pool(ctx, target)
        return await self.soft(ctx, target)

    async def force(self, ctx: ReconcileContext, target: DeletionTarget) -> DeletionOutcome:
        if target.force_delete is None:
            raise ValueError(f"{ctx.record.kind} does not support force deletion")
        try:
            await target.force_delete()
        except ResourceNotFound:
            return DeletionOutcome.COMPLETE
        self._events.normal(
            ctx.record,
            "Deleted",
            f"Force deleted {ctx.record.kind} {ctx.record.status.external_id}",
        )
        return DeletionOutcome.COMPLETE

    # -------------------------------------------------------------------------
    # Destroy with run
    # -------------------------------------------------------------------------

    async def destroy_with_run(
        self, ctx: ReconcileContext, target: DeletionTarget
    ) -> DeletionOutcome:
        """Tear down a workspace's infrastructure before letting the record go.

        First pass starts a destroy run (or deletes right away when the
        workspace never ran). Later passes follow the recorded run until it
        succeeds, retrying failed runs as the retry policy allows.
        """
        status = ctx.record.status
        if not isinstance(status, RunTrackingStatus):
            raise TypeError(f"{ctx.record.kind} status does not track runs")
        workspace_id = target.workspace_id
        if not workspace_id:
            return DeletionOutcome.COMPLETE

        if not status.destroy_run_id:
            try:
                workspace = await ctx.remote.read_workspace(workspace_id)
            except ResourceNotFound:
                return DeletionOutcome.COMPLETE
            if workspace.current_run is None:
                logger.info(
                    "Workspace has no runs, deleting without destroy run",
                    extra={"record": str(ctx.record.key), "workspace_id": workspace_id},
                )
                return await self._finish_destroy(ctx, target)
            await self._start_destroy_run(ctx, status, workspace_id)
            return DeletionOutcome.WAITING

        try:
            run = await ctx.remote.read_run(status.destroy_run_id)
        except ResourceNotFound:
            return DeletionOutcome.COMPLETE
        status.run = RunDescriptor(
            id=run.id,
            status=run.status,
            configuration_version_id=run.configuration_version_id,
            is_destroy=True,
        )

        if is_run_complete(run.status):
            RetryTracker.reset(status)
            self._events.normal(ctx.record, "DestroyRun", f"Destroy run {run.id} finished")
            return await self._finish_destroy(ctx, target)

        if is_run_unsuccessful(run.status):
            return await self._handle_failed_destroy(ctx, status, target, run)

        logger.info(
            "Waiting for destroy run",
            extra={"record": str(ctx.record.key), "run_id": run.id, "run_status": run.status},
        )
        await ctx.persist_status()
        return DeletionOutcome.WAITING

    async def _start_destroy_run(
        self, ctx: ReconcileContext, status: RunTrackingStatus, workspace_id: str
    ) -> RemoteRun:
        run = await ctx.remote.create_run(
            workspace_id, RunOptions(is_destroy=True, auto_apply=True)
        )
        status.destroy_run_id = run.id
        status.run = RunDescriptor(id=run.id, status=run.status, is_destroy=True)
        await ctx.persist_status()
        self._events.normal(ctx.record, "DestroyRun", f"Destroy run {run.id} started")
        return run

    async def _handle_failed_destroy(
        self,
        ctx: ReconcileContext,
        status: RunTrackingStatus,
        target: DeletionTarget,
        run: RemoteRun,
    ) -> DeletionOutcome:
        # A destroy run started by someone else after ours failed supersedes it
        try:
            workspace = await ctx.remote.read_workspace(target.workspace_id)
        except ResourceNotFound:
            return DeletionOutcome.COMPLETE
        current = workspace.current_run
        if current is not None and current.is_destroy and current.id != run.id:
            logger.info(
                "Adopting newer destroy run",
                extra={"record": str(ctx.record.key), "old_run": run.id, "new_run": current.id},
            )
            status.destroy_run_id = current.id
            status.run = RunDescriptor(id=current.id, status=current.status, is_destroy=True)
            await ctx.persist_status()
            return DeletionOutcome.WAITING

        if RetryTracker(target.retry_policy).should_retry(status, run.id):
            await self._start_destroy_run(ctx, status, target.workspace_id)
            return DeletionOutcome.WAITING

        self._events.warning(
            ctx.record,
            "DestroyRunFailed",
            f"Destroy run {run.id} ended with status {run.status}, manual intervention required",
        )
        await ctx.persist_status()
        return DeletionOutcome.WAITING

    async def _finish_destroy(
        self, ctx: ReconcileContext, target: DeletionTarget
    ) -> DeletionOutcome:
        if not target.delete_workspace:
            return DeletionOutcome.COMPLETE
        if target.force_delete is None:
            raise ValueError(f"{ctx.record.kind} does not support workspace deletion")
        try:
            await target.force_delete()
        except ResourceNotFound:
            pass
        self._events.normal(ctx.record, "Deleted", f"Deleted workspace {target.workspace_id}")
        return DeletionOutcome.COMPLETE

    # -------------------------------------------------------------------------
    # Agent pool destroy
    # -------------------------------------------------------------------------

    async def destroy_agent_pool(
        self, ctx: ReconcileContext, target: DeletionTarget
    ) -> DeletionOutcome:
        """Delete the pool; if that fails, drain the fleet and keep the guard."""
        if target.delete is None:
            raise ValueError(f"{ctx.record.kind} does not support deletion")
        try:
            await target.delete()
        except ResourceNotFound:
            return DeletionOutcome.COMPLETE
        except RemoteError as e:
            self._events.warning(
                ctx.record, "DeletionFailed", f"Failed to delete agent pool, draining agents: {e}"
            )
            if target.cleanup is not None:
                await target.cleanup()
            await ctx.persist_status()
            return DeletionOutcome.WAITING
        self._events.normal(
            ctx.record, "Deleted", f"Deleted agent pool {ctx.record.status.external_id}"
        )
        return DeletionOutcome.COMPLETE
