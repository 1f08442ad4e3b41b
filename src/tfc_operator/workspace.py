"""Workspace reconciliation.

Per pass, after the workspace exists and reflects the spec:
1. Converge its settings: SSH key, variables, variable sets, run triggers,
   team access, remote state consumers, run tasks and notifications
2. Consume a pending run request (plan, apply or refresh) exactly once
3. Follow the workspace's current run, retrying unsuccessful runs as the
   retry policy allows
4. Follow the last speculative plan until it is final
5. Publish outputs of the last successful run: plain values into status,
   sensitive values into the secret "<record>-outputs"

Deletion: soft uses safe delete, force deletes outright, destroy runs a
destroy run and deletes the workspace once it succeeded.
"""

from __future__ import annotations

import json
import logging
from typing import ClassVar

from .agenttoken import resolve_agent_pool
from .deletion import DeletionTarget, DestroyMode
from .events import EventRecorder
from .models import (
    ManagedRecord,
    RetryPolicy,
    RunDescriptor,
    RunTrackingStatus,
    RunType,
    Workspace,
)
from .notifications import sync_notifications
from .reconciler import OperatorDeps, ReconcileContext, Reconciler
from .remote import (
    RemoteOutput,
    RemoteRun,
    RemoteWorkspace,
    RunOptions,
    WorkspaceOptions,
    is_run_complete,
    is_run_final,
    is_run_unsuccessful,
)
from .retry import RetryTracker
from .secret_store import SecretNotFoundError, SecretStore
from .teamaccess import sync_workspace_team_access
from .variables import sync_variable_sets, sync_variables
from .workspace_settings import (
    resolve_project_id,
    sync_remote_state_consumers,
    sync_run_tasks,
    sync_run_triggers,
    sync_ssh_key,
)

logger = logging.getLogger(__name__)


def outputs_secret_name(record_name: str) -> str:
    return f"{record_name}-outputs"


def describe_run(run: RemoteRun) -> RunDescriptor:
    return RunDescriptor(
        id=run.id,
        status=run.status,
        configuration_version_id=run.configuration_version_id,
        is_destroy=run.is_destroy,
    )


async def track_run(
    ctx: ReconcileContext,
    events: EventRecorder,
    workspace_id: str,
    run_id: str,
    retry_policy: RetryPolicy | None,
) -> None:
    """Refresh status.run from the platform and retry an unsuccessful run.

    A replacement run repeats the failed run's intent on the same
    configuration version and is persisted before the pass goes on.
    """
    record = ctx.record
    status = record.status
    if not isinstance(status, RunTrackingStatus):
        raise TypeError(f"{record.kind} status does not track runs")

    previous = status.run
    if previous is not None and previous.id == run_id and is_run_complete(previous.status):
        return

    run = await ctx.remote.read_run(run_id)
    status.run = describe_run(run)

    if is_run_complete(run.status):
        RetryTracker.reset(status)
        return
    if not is_run_unsuccessful(run.status):
        return

    tracker = RetryTracker(retry_policy)
    if tracker.should_retry(status, run.id):
        replacement = await ctx.remote.create_run(
            workspace_id,
            RunOptions(
                is_destroy=run.is_destroy,
                plan_only=run.plan_only,
                refresh_only=run.refresh_only,
                configuration_version_id=run.configuration_version_id or None,
            ),
        )
        status.run = describe_run(replacement)
        await ctx.persist_status()
        events.normal(
            record,
            "RunRetried",
            f"Run {run.id} ended with status {run.status}, started run {replacement.id}",
        )
        return

    changed = previous is None or previous.id != run.id or previous.status != run.status
    if changed and tracker.enabled and tracker.exhausted(status):
        events.warning(
            record,
            "RunFailed",
            f"Run {run.id} ended with status {run.status}, backoff limit reached",
        )


def _secret_value(value: object) -> str:
    if isinstance(value, str):
        return value
    return json.dumps(value, sort_keys=True)


async def publish_outputs(
    ctx: ReconcileContext, secrets: SecretStore, outputs: list[RemoteOutput]
) -> None:
    """Plain outputs go to status.outputs, sensitive ones to the outputs secret."""
    record = ctx.record
    status = record.status
    if not isinstance(status, RunTrackingStatus):
        raise TypeError(f"{record.kind} status does not track runs")

    status.outputs = {output.name: output.value for output in outputs if not output.sensitive}

    sensitive = {
        output.name: _secret_value(output.value) for output in outputs if output.sensitive
    }
    namespace = record.metadata.namespace
    name = outputs_secret_name(record.metadata.name)
    try:
        current = await secrets.read(namespace, name)
    except SecretNotFoundError:
        current = None
    if current != sensitive and (sensitive or current is not None):
        await secrets.write(namespace, name, sensitive)
        logger.info(
            "Sensitive outputs written",
            extra={"record": str(record.key), "secret": name, "keys": sorted(sensitive)},
        )


class WorkspaceReconciler(Reconciler):
    kind: ClassVar[str] = Workspace.kind

    def __init__(self, deps: OperatorDeps) -> None:
        super().__init__(deps)
        self._secrets = deps.secrets

    async def _options(self, ctx: ReconcileContext) -> WorkspaceOptions:
        record = ctx.record_as(Workspace)
        spec = record.spec

        agent_pool_id = None
        if spec.agent_pool is not None:
            pool = await resolve_agent_pool(ctx.remote, spec.organization, spec.agent_pool)
            agent_pool_id = pool.id
        project_id = None
        if spec.project is not None:
            project_id = await resolve_project_id(ctx.remote, spec.organization, spec.project)
        sharing = spec.remote_state_sharing

        return WorkspaceOptions(
            name=spec.name,
            description=spec.description,
            execution_mode=spec.execution_mode,
            agent_pool_id=agent_pool_id,
            terraform_version=spec.terraform_version,
            auto_apply=spec.apply_method == "auto",
            project_id=project_id,
            tags=list(spec.tags),
            allow_destroy_plan=spec.allow_destroy_plan,
            working_directory=spec.working_directory,
            global_remote_state=sharing.all_workspaces if sharing is not None else None,
        )

    async def create_external(self, ctx: ReconcileContext) -> str:
        options = await self._options(ctx)
        workspace = await ctx.remote.create_workspace(ctx.record.spec.organization, options)
        return workspace.id

    async def read_external(self, ctx: ReconcileContext) -> RemoteWorkspace:
        return await ctx.remote.read_workspace(ctx.record.status.external_id)

    async def update_external(self, ctx: ReconcileContext) -> None:
        options = await self._options(ctx)
        if not ctx.observed.matches(options):
            logger.info(
                "Updating workspace",
                extra={"record": str(ctx.record.key), "workspace_id": ctx.observed.id},
            )
            ctx.observed = await ctx.remote.update_workspace(ctx.observed.id, options)

    async def converge(self, ctx: ReconcileContext) -> None:
        record = ctx.record_as(Workspace)
        workspace: RemoteWorkspace = ctx.observed
        record.status.workspace_name = workspace.name
        record.status.terraform_version = workspace.terraform_version

        await self._converge_settings(ctx, record, workspace)

        current_run_id = workspace.current_run.id if workspace.current_run else ""
        if record.run_request is not None:
            started = await self._start_requested_run(ctx, record, workspace)
            if started is not None:
                current_run_id = started.id

        if current_run_id:
            await track_run(
                ctx, self._events, workspace.id, current_run_id, record.spec.retry_policy
            )

        plan = record.status.plan
        if plan is not None and not is_run_final(plan.status):
            record.status.plan = describe_run(await ctx.remote.read_run(plan.id))

        run = record.status.run
        if run is not None and is_run_complete(run.status) and not run.is_destroy:
            outputs = await ctx.remote.list_outputs(workspace.id)
            await publish_outputs(ctx, self._secrets, outputs)

    async def _converge_settings(
        self, ctx: ReconcileContext, record: Workspace, workspace: RemoteWorkspace
    ) -> None:
        remote = ctx.remote
        record.status.ssh_key_id = await sync_ssh_key(remote, record, workspace)

        variables = await sync_variables(remote, self._secrets, record, workspace.id)
        variable_sets = await sync_variable_sets(remote, record, workspace.id)
        if variables != record.status.variables or variable_sets != record.status.variable_sets:
            record.status.variables = variables
            record.status.variable_sets = variable_sets
            # Keep the pushed versions even if a later step fails this pass
            await ctx.persist_status()

        await sync_run_triggers(remote, record, workspace.id)
        await sync_workspace_team_access(
            remote, record.spec.organization, workspace.id, record.spec.team_access
        )
        await sync_remote_state_consumers(remote, record, workspace.id)
        await sync_run_tasks(remote, record, workspace.id)
        await sync_notifications(remote, record, workspace.id)

    async def _start_requested_run(
        self, ctx: ReconcileContext, record: Workspace, workspace: RemoteWorkspace
    ) -> RemoteRun | None:
        """Start the requested run and clear the request.

        Returns the run if it becomes the workspace's current run; plans are
        speculative and tracked separately.
        """
        request = record.run_request
        if request is None:
            return None
        options = RunOptions(
            plan_only=request.type == RunType.PLAN,
            refresh_only=request.type == RunType.REFRESH,
            terraform_version=request.terraform_version,
        )
        run = await ctx.remote.create_run(workspace.id, options)
        self._events.normal(record, "RunRequested", f"Started {request.type.value} run {run.id}")

        cleared = await ctx.store.clear_run_request(record)
        record.run_request = None
        record.metadata.resource_version = cleared.metadata.resource_version

        if request.type == RunType.PLAN:
            record.status.plan = describe_run(run)
            return None
        return run

    def deletion_target(self, ctx: ReconcileContext) -> DeletionTarget:
        record = ctx.record_as(Workspace)
        workspace_id = record.status.external_id

        async def safe_delete() -> None:
            await ctx.remote.safe_delete_workspace(workspace_id)

        async def force_delete() -> None:
            await ctx.remote.delete_workspace(workspace_id)

        return DeletionTarget(
            destroy_mode=DestroyMode.RUN,
            delete=safe_delete,
            force_delete=force_delete,
            workspace_id=workspace_id,
            retry_policy=record.spec.retry_policy,
        )

    async def on_erased(self, record: ManagedRecord) -> None:
        await self._secrets.delete(
            record.metadata.namespace, outputs_secret_name(record.metadata.name)
        )
