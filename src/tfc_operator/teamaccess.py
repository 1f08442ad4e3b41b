"""Team access on workspaces and projects.

The declared list is authoritative: grants for teams it does not name are
removed. Teams are referenced by id or by name; names are resolved with one
filtered team listing per pass.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from typing import Any

from .models import (
    ProjectPermissions,
    ProjectTeamAccess,
    WorkspacePermissions,
    WorkspaceTeamAccess,
)
from .remote import RemoteClient, RemoteTeamAccess, ResourceNotFound, collect_pages

logger = logging.getLogger(__name__)

AddGrant = Callable[[str, str, dict[str, Any]], Awaitable[RemoteTeamAccess]]
UpdateGrant = Callable[[str, str, dict[str, Any]], Awaitable[RemoteTeamAccess]]
RemoveGrant = Callable[[str], Awaitable[None]]


async def resolve_team_ids(
    remote: RemoteClient,
    organization: str,
    entries: list[WorkspaceTeamAccess] | list[ProjectTeamAccess],
) -> list[str]:
    """Team id of every entry, in declaration order.

    Raises:
        ResourceNotFound: If a team referenced by name does not exist.
    """
    names = [entry.team.name for entry in entries if entry.team.name]
    by_name: dict[str, str] = {}
    if names:
        teams = await collect_pages(
            lambda page: remote.list_teams(organization, names=names, page=page)
        )
        by_name = {team.name: team.id for team in teams}

    team_ids = []
    for entry in entries:
        if entry.team.id:
            team_ids.append(entry.team.id)
            continue
        name = entry.team.name or ""
        if name not in by_name:
            raise ResourceNotFound(f"Team {name!r} not found in organization {organization!r}")
        team_ids.append(by_name[name])
    return team_ids


def _needs_update(grant: RemoteTeamAccess, access: str, permissions: dict[str, Any]) -> bool:
    if grant.access != access:
        return True
    if access != "custom":
        return False
    return any(grant.permissions.get(key) != value for key, value in permissions.items())


async def sync_team_access(
    grants: list[RemoteTeamAccess],
    desired: dict[str, tuple[str, dict[str, Any]]],
    *,
    add: AddGrant,
    update: UpdateGrant,
    remove: RemoveGrant,
    log_extra: dict[str, Any],
) -> None:
    """Converge existing grants against the desired access per team id."""
    current = {grant.team_id: grant for grant in grants}

    for team_id, (access, permissions) in desired.items():
        grant = current.get(team_id)
        if grant is None:
            await add(team_id, access, permissions)
            logger.info(
                "Team access granted", extra={**log_extra, "team_id": team_id, "access": access}
            )
        elif _needs_update(grant, access, permissions):
            await update(grant.id, access, permissions)
            logger.info(
                "Team access updated", extra={**log_extra, "team_id": team_id, "access": access}
            )

    for team_id, grant in current.items():
        if team_id in desired:
            continue
        try:
            await remove(grant.id)
        except ResourceNotFound:
            pass
        logger.info("Team access removed", extra={**log_extra, "team_id": team_id})


async def sync_workspace_team_access(
    remote: RemoteClient, organization: str, workspace_id: str, entries: list[WorkspaceTeamAccess]
) -> None:
    team_ids = await resolve_team_ids(remote, organization, entries)
    desired = {
        team_id: (
            entry.access,
            (entry.custom or WorkspacePermissions()).to_attributes()
            if entry.access == "custom"
            else {},
        )
        for team_id, entry in zip(team_ids, entries, strict=True)
    }
    grants = await collect_pages(
        lambda page: remote.list_workspace_team_access(workspace_id, page=page)
    )

    async def add(team_id: str, access: str, permissions: dict[str, Any]) -> RemoteTeamAccess:
        return await remote.add_workspace_team_access(workspace_id, team_id, access, permissions)

    await sync_team_access(
        grants,
        desired,
        add=add,
        update=remote.update_workspace_team_access,
        remove=remote.remove_workspace_team_access,
        log_extra={"workspace_id": workspace_id},
    )


async def sync_project_team_access(
    remote: RemoteClient, organization: str, project_id: str, entries: list[ProjectTeamAccess]
) -> None:
    team_ids = await resolve_team_ids(remote, organization, entries)
    desired = {
        team_id: (
            entry.access,
            (entry.custom or ProjectPermissions()).to_attributes()
            if entry.access == "custom"
            else {},
        )
        for team_id, entry in zip(team_ids, entries, strict=True)
    }
    grants = await collect_pages(
        lambda page: remote.list_project_team_access(project_id, page=page)
    )

    async def add(team_id: str, access: str, permissions: dict[str, Any]) -> RemoteTeamAccess:
        return await remote.add_project_team_access(project_id, team_id, access, permissions)

    await sync_team_access(
        grants,
        desired,
        add=add,
        update=remote.update_project_team_access,
        remove=remote.remove_project_team_access,
        log_extra={"project_id": project_id},
    )
