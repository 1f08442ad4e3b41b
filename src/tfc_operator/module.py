"""Module reconciliation.

A Module record runs one Terraform module on a workspace it references but
does not own. For every new generation (a spec change, including a new
restartedAt value):

1. Render a root module calling the declared module
2. Upload it as a configuration version; wait until the platform accepted it
3. Start a run on that configuration version

Every pass follows the run, retrying it as the retry policy allows, and
publishes the declared outputs once it succeeded. Each step is persisted
before the next one starts, so a crashed pass resumes where it stopped.
"""

from __future__ import annotations

import io
import json
import logging
import tarfile
from typing import ClassVar

from .config import MAX_CONFIGURATION_ARCHIVE_BYTES
from .deletion import DeletionTarget, DestroyMode
from .models import (
    ConfigurationVersionStatus,
    ManagedRecord,
    Module,
    ModuleSpec,
    SpecValidationError,
)
from .reconciler import OperatorDeps, ReconcileContext, Reconciler
from .remote import (
    CONFIGURATION_ERRORED,
    CONFIGURATION_UPLOADED,
    RemoteWorkspace,
    RunOptions,
    is_run_complete,
)
from .workspace import describe_run, outputs_secret_name, publish_outputs, track_run

logger = logging.getLogger(__name__)

ROOT_MODULE_FILE = "main.tf"


def render_root_module(spec: ModuleSpec) -> str:
    """Render the root module that calls the declared module."""
    lines = [f'module "{spec.name}" {{', f"  source = {json.dumps(spec.module.source)}"]
    if spec.module.version:
        lines.append(f"  version = {json.dumps(spec.module.version)}")
    for variable in spec.variables:
        lines.append(f"  {variable.name} = var.{variable.name}")
    lines.append("}")

    for variable in spec.variables:
        lines.extend(["", f'variable "{variable.name}" {{}}'])

    for output in spec.outputs:
        lines.extend(
            [
                "",
                f'output "{output.name}" {{',
                f"  value = module.{spec.name}.{output.name}",
            ]
        )
        if output.sensitive:
            lines.append("  sensitive = true")
        lines.append("}")

    return "\n".join(lines) + "\n"


def build_configuration_archive(content: str) -> bytes:
    """Pack a root module into the tar.gz the platform expects."""
    payload = content.encode("utf-8")
    buffer = io.BytesIO()
    with tarfile.open(fileobj=buffer, mode="w:gz") as archive:
        info = tarfile.TarInfo(name=ROOT_MODULE_FILE)
        info.size = len(payload)
        info.mode = 0o644
        archive.addfile(info, io.BytesIO(payload))
    data = buffer.getvalue()
    if len(data) > MAX_CONFIGURATION_ARCHIVE_BYTES:
        raise ValueError(
            f"Configuration archive exceeds {MAX_CONFIGURATION_ARCHIVE_BYTES} bytes"
        )
    return data


class ModuleReconciler(Reconciler):
    kind: ClassVar[str] = Module.kind

    def __init__(self, deps: OperatorDeps) -> None:
        super().__init__(deps)
        self._secrets = deps.secrets

    async def _resolve_workspace(self, ctx: ReconcileContext) -> RemoteWorkspace:
        record = ctx.record_as(Module)
        ref = record.spec.workspace
        if ref.id:
            return await ctx.remote.read_workspace(ref.id)
        if not ref.name:
            raise SpecValidationError(["workspace: exactly one of id or name must be set"])
        return await ctx.remote.read_workspace_by_name(record.spec.organization, ref.name)

    async def create_external(self, ctx: ReconcileContext) -> str:
        workspace = await self._resolve_workspace(ctx)
        return workspace.id

    async def read_external(self, ctx: ReconcileContext) -> RemoteWorkspace:
        return await ctx.remote.read_workspace(ctx.record.status.external_id)

    async def update_external(self, ctx: ReconcileContext) -> None:
        record = ctx.record_as(Module)
        workspace = await self._resolve_workspace(ctx)
        if workspace.id == record.status.external_id:
            return
        logger.info(
            "Workspace reference changed",
            extra={
                "record": str(record.key),
                "old_workspace": record.status.external_id,
                "new_workspace": workspace.id,
            },
        )
        record.status.external_id = workspace.id
        record.status.run = None
        record.status.retry = None
        record.status.configuration_version = None
        await ctx.persist_status()
        ctx.observed = workspace

    async def converge(self, ctx: ReconcileContext) -> None:
        record = ctx.record_as(Module)
        workspace: RemoteWorkspace = ctx.observed
        record.status.workspace_name = workspace.name

        if record.status.observed_generation != record.metadata.generation:
            await self._apply_generation(ctx, record, workspace)
            if ctx.in_progress:
                return

        run = record.status.run
        if run is None:
            return
        await track_run(ctx, self._events, workspace.id, run.id, record.spec.retry_policy)

        run = record.status.run
        if run is not None and is_run_complete(run.status) and not run.is_destroy:
            declared = {output.name for output in record.spec.outputs}
            outputs = await ctx.remote.list_outputs(workspace.id)
            await publish_outputs(
                ctx, self._secrets, [output for output in outputs if output.name in declared]
            )

    async def _apply_generation(
        self, ctx: ReconcileContext, record: Module, workspace: RemoteWorkspace
    ) -> None:
        generation = record.metadata.generation
        log_extra = {"record": str(record.key), "workspace_id": workspace.id}

        cv_status = record.status.configuration_version
        if cv_status is None or cv_status.generation != generation:
            archive = build_configuration_archive(render_root_module(record.spec))
            cv = await ctx.remote.create_configuration_version(workspace.id)
            await ctx.remote.upload_configuration(cv, archive)
            cv_status = ConfigurationVersionStatus(
                id=cv.id, status=cv.status, generation=generation
            )
            record.status.configuration_version = cv_status
            await ctx.persist_status()
            logger.info(
                "Configuration uploaded", extra={**log_extra, "configuration_version": cv.id}
            )

        run = record.status.run
        if run is not None and run.configuration_version_id == cv_status.id:
            # The run for this configuration already started on an earlier pass
            return

        cv = await ctx.remote.read_configuration_version(cv_status.id)
        cv_status.status = cv.status
        if cv.status == CONFIGURATION_ERRORED:
            self._events.warning(
                record,
                "ConfigurationFailed",
                f"Configuration version {cv.id} errored, re-uploading",
            )
            record.status.configuration_version = None
            ctx.in_progress = True
            return
        if cv.status != CONFIGURATION_UPLOADED:
            logger.info(
                "Waiting for configuration upload",
                extra={**log_extra, "configuration_version": cv.id, "cv_status": cv.status},
            )
            ctx.in_progress = True
            return

        started = await ctx.remote.create_run(
            workspace.id, RunOptions(configuration_version_id=cv.id)
        )
        record.status.run = describe_run(started)
        if not record.status.run.configuration_version_id:
            record.status.run.configuration_version_id = cv.id
        # A new generation is a new intent; earlier failures no longer count
        record.status.retry = None
        await ctx.persist_status()
        self._events.normal(
            record, "RunStarted", f"Started run {started.id} for generation {generation}"
        )

    def deletion_target(self, ctx: ReconcileContext) -> DeletionTarget:
        record = ctx.record_as(Module)
        # The workspace belongs to someone else; only its infrastructure is destroyed
        return DeletionTarget(
            destroy_mode=DestroyMode.RUN,
            workspace_id=record.status.external_id,
            delete_workspace=False,
            retry_policy=record.spec.retry_policy,
        )

    async def on_erased(self, record: ManagedRecord) -> None:
        await self._secrets.delete(
            record.metadata.namespace, outputs_secret_name(record.metadata.name)
        )
