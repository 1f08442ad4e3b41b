"""Project reconciliation.

Per pass the project carries the declared name and exactly the declared
team access grants.
"""

from __future__ import annotations

import logging
from typing import ClassVar

from .deletion import DeletionTarget, DestroyMode
from .models import Project
from .reconciler import ReconcileContext, Reconciler
from .remote import RemoteProject, ResourceNotFound, collect_pages
from .teamaccess import sync_project_team_access

logger = logging.getLogger(__name__)


class ProjectReconciler(Reconciler):
    kind: ClassVar[str] = Project.kind

    async def create_external(self, ctx: ReconcileContext) -> str:
        record = ctx.record_as(Project)
        project = await ctx.remote.create_project(record.spec.organization, record.spec.name)
        return project.id

    async def read_external(self, ctx: ReconcileContext) -> RemoteProject:
        return await ctx.remote.read_project(ctx.record.status.external_id)

    async def update_external(self, ctx: ReconcileContext) -> None:
        record = ctx.record_as(Project)
        if ctx.observed.name != record.spec.name:
            ctx.observed = await ctx.remote.update_project(
                record.status.external_id, record.spec.name
            )

    async def converge(self, ctx: ReconcileContext) -> None:
        record = ctx.record_as(Project)
        record.status.name = ctx.observed.name
        await sync_project_team_access(
            ctx.remote, record.spec.organization, ctx.observed.id, record.spec.team_access
        )

    def deletion_target(self, ctx: ReconcileContext) -> DeletionTarget:
        record = ctx.record_as(Project)
        project_id = record.status.external_id

        async def delete() -> None:
            # Refused with NotSafeToDelete while the project still holds workspaces
            await ctx.remote.delete_project(project_id)

        async def force_delete() -> None:
            workspaces = await collect_pages(
                lambda page: ctx.remote.list_workspaces(
                    record.spec.organization, project_id=project_id, page=page
                )
            )
            for workspace in workspaces:
                logger.info(
                    "Deleting workspace of project",
                    extra={"record": str(record.key), "workspace_id": workspace.id},
                )
                try:
                    await ctx.remote.delete_workspace(workspace.id)
                except ResourceNotFound:
                    pass
            await ctx.remote.delete_project(project_id)

        return DeletionTarget(
            destroy_mode=DestroyMode.DELETE, delete=delete, force_delete=force_delete
        )
