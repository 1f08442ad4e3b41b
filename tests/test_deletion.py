"""Tests for deletion guards and deletion policy execution."""

import pytest
from tfc_mock import MockOperatorContext, manifest

from tfc_operator.deletion import (
    DeletionOutcome,
    DeletionPolicyExecutor,
    DeletionTarget,
    DestroyMode,
)
from tfc_operator.finalizer import is_creation_candidate, is_deletion_candidate, needs_guard
from tfc_operator.models import DeletionPolicy, RetryPolicy, Workspace, parse_record
from tfc_operator.reconciler import ReconcileContext
from tfc_operator.remote import NotSafeToDelete, RemoteError, ResourceNotFound


class TestGuardPredicates:
    """Tests for the deletion guard predicates."""

    def test_new_record_needs_guard(self) -> None:
        record = parse_record(manifest("Project", "demo", {"name": "demo"}))

        assert needs_guard(record)
        assert not is_deletion_candidate(record)
        assert is_creation_candidate(record)

    def test_guarded_record_marked_for_deletion(self) -> None:
        record = parse_record(
            manifest(
                "Project",
                "demo",
                {"name": "demo"},
                guardPresent=True,
                deletionTimestamp="2026-01-01T00:00:00Z",
            )
        )
        record.status.external_id = "prj-1"

        assert not needs_guard(record)
        assert is_deletion_candidate(record)
        assert not is_creation_candidate(record)


async def _workspace_context(mock: MockOperatorContext, **spec: object) -> ReconcileContext:
    """A stored, guarded workspace record bound to the fake platform."""
    record = await mock.create(manifest("Workspace", "demo", {"name": "demo", **spec}))
    record = await mock.store.add_guard(record)
    workspace = mock.cloud.add_workspace("demo")
    record.status.external_id = workspace.id
    record = await mock.store.update_status(record)
    return ReconcileContext(record=record, remote=mock.cloud, store=mock.store)


def _workspace_target(ctx: ReconcileContext, **overrides: object) -> DeletionTarget:
    workspace_id = ctx.record.status.external_id

    async def safe_delete() -> None:
        await ctx.remote.safe_delete_workspace(workspace_id)

    async def force_delete() -> None:
        await ctx.remote.delete_workspace(workspace_id)

    values: dict = {
        "destroy_mode": DestroyMode.RUN,
        "delete": safe_delete,
        "force_delete": force_delete,
        "workspace_id": workspace_id,
    }
    values.update(overrides)
    return DeletionTarget(**values)


class TestDeletionPolicyExecutor:
    """Tests for DeletionPolicyExecutor."""

    @pytest.fixture
    def mock(self) -> MockOperatorContext:
        return MockOperatorContext()

    @pytest.mark.asyncio
    async def test_retain_makes_no_remote_calls(self, mock: MockOperatorContext) -> None:
        ctx = await _workspace_context(mock)
        executor = DeletionPolicyExecutor(mock.events)

        outcome = await executor.execute(ctx, DeletionPolicy.RETAIN, _workspace_target(ctx))

        assert outcome == DeletionOutcome.COMPLETE
        assert mock.cloud.calls == []
        assert len(mock.cloud.workspaces) == 1

    @pytest.mark.asyncio
    async def test_unprovisioned_record_completes(self, mock: MockOperatorContext) -> None:
        ctx = await _workspace_context(mock)
        ctx.record.status.external_id = ""
        executor = DeletionPolicyExecutor(mock.events)

        outcome = await executor.execute(ctx, DeletionPolicy.FORCE, DeletionTarget())

        assert outcome == DeletionOutcome.COMPLETE
        assert mock.cloud.calls == []

    @pytest.mark.asyncio
    async def test_soft_waits_while_not_safe(self, mock: MockOperatorContext) -> None:
        """Test that not-safe-to-delete is a wait, not a failure."""
        ctx = await _workspace_context(mock)
        mock.cloud.not_safe_to_delete.add(ctx.record.status.external_id)
        executor = DeletionPolicyExecutor(mock.events)

        outcome = await executor.execute(ctx, DeletionPolicy.SOFT, _workspace_target(ctx))

        assert outcome == DeletionOutcome.WAITING
        assert mock.reasons("Workspace", ctx.record.key) == ["DeletionBlocked"]

        mock.cloud.not_safe_to_delete.clear()
        outcome = await executor.execute(ctx, DeletionPolicy.SOFT, _workspace_target(ctx))

        assert outcome == DeletionOutcome.COMPLETE
        assert mock.cloud.workspaces == {}

    @pytest.mark.asyncio
    async def test_soft_treats_not_found_as_done(self, mock: MockOperatorContext) -> None:
        ctx = await _workspace_context(mock)
        mock.cloud.workspaces.clear()
        executor = DeletionPolicyExecutor(mock.events)

        outcome = await executor.execute(ctx, DeletionPolicy.SOFT, _workspace_target(ctx))

        assert outcome == DeletionOutcome.COMPLETE

    @pytest.mark.asyncio
    async def test_force_propagates_other_errors(self, mock: MockOperatorContext) -> None:
        ctx = await _workspace_context(mock)
        mock.cloud.fail("delete_workspace", RemoteError("boom", 500))
        executor = DeletionPolicyExecutor(mock.events)

        with pytest.raises(RemoteError):
            await executor.execute(ctx, DeletionPolicy.FORCE, _workspace_target(ctx))

    @pytest.mark.asyncio
    async def test_destroy_without_runs_deletes_directly(self, mock: MockOperatorContext) -> None:
        ctx = await _workspace_context(mock)
        executor = DeletionPolicyExecutor(mock.events)

        outcome = await executor.execute(ctx, DeletionPolicy.DESTROY, _workspace_target(ctx))

        assert outcome == DeletionOutcome.COMPLETE
        assert mock.cloud.calls_to("create_run") == []
        assert mock.cloud.workspaces == {}

    @pytest.mark.asyncio
    async def test_destroy_run_lifecycle(self, mock: MockOperatorContext) -> None:
        """Test start, wait, and finish of a destroy run across passes."""
        ctx = await _workspace_context(mock)
        workspace_id = ctx.record.status.external_id
        mock.cloud.add_run(workspace_id, "applied")
        executor = DeletionPolicyExecutor(mock.events)

        first = await executor.execute(ctx, DeletionPolicy.DESTROY, _workspace_target(ctx))

        assert first == DeletionOutcome.WAITING
        assert isinstance(ctx.record, Workspace)
        destroy_run_id = ctx.record.status.destroy_run_id
        assert mock.cloud.runs[destroy_run_id].is_destroy
        stored = await mock.get("Workspace", ctx.record.key)
        assert stored.status.destroy_run_id == destroy_run_id

        second = await executor.execute(ctx, DeletionPolicy.DESTROY, _workspace_target(ctx))

        assert second == DeletionOutcome.WAITING
        assert len(mock.cloud.calls_to("create_run")) == 1

        mock.cloud.set_run_status(destroy_run_id, "applied")
        third = await executor.execute(ctx, DeletionPolicy.DESTROY, _workspace_target(ctx))

        assert third == DeletionOutcome.COMPLETE
        assert mock.cloud.workspaces == {}

    @pytest.mark.asyncio
    async def test_destroy_keeps_workspace_when_not_owned(self, mock: MockOperatorContext) -> None:
        ctx = await _workspace_context(mock)
        workspace_id = ctx.record.status.external_id
        mock.cloud.add_run(workspace_id, "applied")
        executor = DeletionPolicyExecutor(mock.events)
        target = _workspace_target(ctx, delete_workspace=False, force_delete=None)

        await executor.execute(ctx, DeletionPolicy.DESTROY, target)
        assert isinstance(ctx.record, Workspace)
        mock.cloud.set_run_status(ctx.record.status.destroy_run_id, "applied")
        outcome = await executor.execute(ctx, DeletionPolicy.DESTROY, target)

        assert outcome == DeletionOutcome.COMPLETE
        assert workspace_id in mock.cloud.workspaces

    @pytest.mark.asyncio
    async def test_failed_destroy_run_is_retried(self, mock: MockOperatorContext) -> None:
        ctx = await _workspace_context(mock)
        mock.cloud.add_run(ctx.record.status.external_id, "applied")
        executor = DeletionPolicyExecutor(mock.events)
        target = _workspace_target(ctx, retry_policy=RetryPolicy(backoff_limit=1))

        await executor.execute(ctx, DeletionPolicy.DESTROY, target)
        assert isinstance(ctx.record, Workspace)
        first_run = ctx.record.status.destroy_run_id
        mock.cloud.set_run_status(first_run, "errored")

        outcome = await executor.execute(ctx, DeletionPolicy.DESTROY, target)

        assert outcome == DeletionOutcome.WAITING
        second_run = ctx.record.status.destroy_run_id
        assert second_run != first_run
        assert ctx.record.status.retry is not None
        assert ctx.record.status.retry.failed_count == 1

        mock.cloud.set_run_status(second_run, "errored")
        outcome = await executor.execute(ctx, DeletionPolicy.DESTROY, target)

        assert outcome == DeletionOutcome.WAITING
        assert ctx.record.status.destroy_run_id == second_run
        assert "DestroyRunFailed" in mock.reasons("Workspace", ctx.record.key)
        assert ctx.record.status.external_id in mock.cloud.workspaces

    @pytest.mark.asyncio
    async def test_newer_destroy_run_is_adopted(self, mock: MockOperatorContext) -> None:
        """Test that a destroy run started after ours failed supersedes it."""
        ctx = await _workspace_context(mock)
        workspace_id = ctx.record.status.external_id
        mock.cloud.add_run(workspace_id, "applied")
        executor = DeletionPolicyExecutor(mock.events)

        await executor.execute(ctx, DeletionPolicy.DESTROY, _workspace_target(ctx))
        assert isinstance(ctx.record, Workspace)
        mock.cloud.set_run_status(ctx.record.status.destroy_run_id, "errored")
        manual = mock.cloud.add_run(workspace_id, "applying", is_destroy=True)

        outcome = await executor.execute(ctx, DeletionPolicy.DESTROY, _workspace_target(ctx))

        assert outcome == DeletionOutcome.WAITING
        assert ctx.record.status.destroy_run_id == manual.id
        assert len(mock.cloud.calls_to("create_run")) == 1

    @pytest.mark.asyncio
    async def test_agent_pool_destroy_drains_on_failure(self, mock: MockOperatorContext) -> None:
        """Test that a failed pool delete runs the cleanup and waits."""
        record = await mock.create(manifest("AgentPool", "pool", {"name": "pool"}))
        record = await mock.store.add_guard(record)
        pool = mock.cloud.add_agent_pool("pool")
        record.status.external_id = pool.id
        record = await mock.store.update_status(record)
        ctx = ReconcileContext(record=record, remote=mock.cloud, store=mock.store)
        mock.cloud.busy_agent_pools.add(pool.id)
        cleanups: list[str] = []

        async def delete() -> None:
            await mock.cloud.delete_agent_pool(pool.id)

        async def cleanup() -> None:
            cleanups.append(pool.id)

        target = DeletionTarget(destroy_mode=DestroyMode.AGENT_POOL, delete=delete, cleanup=cleanup)
        executor = DeletionPolicyExecutor(mock.events)

        outcome = await executor.execute(ctx, DeletionPolicy.DESTROY, target)
        assert outcome == DeletionOutcome.WAITING
        assert cleanups == [pool.id]

        mock.cloud.busy_agent_pools.clear()
        outcome = await executor.execute(ctx, DeletionPolicy.DESTROY, target)
        assert outcome == DeletionOutcome.COMPLETE
        assert mock.cloud.agent_pools == {}

    def test_not_safe_to_delete_is_remote_error(self) -> None:
        """Test the error hierarchy the executor relies on."""
        assert issubclass(NotSafeToDelete, RemoteError)
        assert issubclass(ResourceNotFound, RemoteError)
