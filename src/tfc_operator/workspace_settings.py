"""Workspace relationships converged after the workspace itself.

Each sync function reads the current relationship, changes only what
differs from the record and is safe to repeat on every pass.
"""

from __future__ import annotations

import logging

from .models import ResourceRef, Workspace
from .remote import RemoteClient, RemoteWorkspace, ResourceNotFound, collect_pages

logger = logging.getLogger(__name__)


async def resolve_project_id(remote: RemoteClient, organization: str, ref: ResourceRef) -> str:
    """Find a project by id, or by exact name.

    Raises:
        ResourceNotFound: If no project has the name.
    """
    if ref.id:
        return ref.id
    projects = await collect_pages(
        lambda page: remote.list_projects(organization, name=ref.name, page=page)
    )
    for project in projects:
        if project.name == ref.name:
            return project.id
    raise ResourceNotFound(f"Project {ref.name!r} not found in organization {organization!r}")


async def resolve_workspace_ids(
    remote: RemoteClient, organization: str, refs: list[ResourceRef]
) -> list[str]:
    ids = []
    for ref in refs:
        if ref.id:
            ids.append(ref.id)
        else:
            workspace = await remote.read_workspace_by_name(organization, ref.name or "")
            ids.append(workspace.id)
    return ids


async def sync_ssh_key(remote: RemoteClient, record: Workspace, workspace: RemoteWorkspace) -> str:
    """Assign the declared SSH key, or unassign when none is declared.

    Returns:
        The id of the assigned key, empty when none.
    """
    ref = record.spec.ssh_key
    log_extra = {"record": str(record.key), "workspace_id": workspace.id}
    if ref is None:
        if workspace.ssh_key_id:
            await remote.unassign_ssh_key(workspace.id)
            logger.info("SSH key unassigned", extra=log_extra)
        return ""

    key_id = ref.id
    if not key_id:
        keys = await collect_pages(
            lambda page: remote.list_ssh_keys(record.spec.organization, page=page)
        )
        key_id = next((key.id for key in keys if key.name == ref.name), None)
        if key_id is None:
            raise ResourceNotFound(
                f"SSH key {ref.name!r} not found in organization {record.spec.organization!r}"
            )
    if workspace.ssh_key_id != key_id:
        await remote.assign_ssh_key(workspace.id, key_id)
        logger.info("SSH key assigned", extra={**log_extra, "ssh_key_id": key_id})
    return key_id


async def sync_run_triggers(remote: RemoteClient, record: Workspace, workspace_id: str) -> None:
    """Converge inbound run triggers against the declared source workspaces."""
    sources = await resolve_workspace_ids(
        remote, record.spec.organization, record.spec.run_triggers
    )
    triggers = await collect_pages(
        lambda page: remote.list_run_triggers(workspace_id, page=page)
    )
    current = {trigger.sourceable_id: trigger for trigger in triggers}
    log_extra = {"record": str(record.key), "workspace_id": workspace_id}

    for source_id in sources:
        if source_id not in current:
            await remote.create_run_trigger(workspace_id, source_id)
            logger.info("Run trigger added", extra={**log_extra, "source_id": source_id})
    for source_id, trigger in current.items():
        if source_id in sources:
            continue
        try:
            await remote.delete_run_trigger(trigger.id)
        except ResourceNotFound:
            pass
        logger.info("Run trigger removed", extra={**log_extra, "source_id": source_id})


async def sync_remote_state_consumers(
    remote: RemoteClient, record: Workspace, workspace_id: str
) -> None:
    """Share state with the declared workspaces when sharing is not global."""
    sharing = record.spec.remote_state_sharing
    if sharing is None or not sharing.workspaces:
        return
    desired = await resolve_workspace_ids(remote, record.spec.organization, sharing.workspaces)
    consumers = await collect_pages(
        lambda page: remote.list_remote_state_consumers(workspace_id, page=page)
    )
    if {consumer.id for consumer in consumers} != set(desired):
        await remote.replace_remote_state_consumers(workspace_id, desired)
        logger.info(
            "Remote state consumers replaced",
            extra={"record": str(record.key), "workspace_id": workspace_id, "consumers": desired},
        )


async def sync_run_tasks(remote: RemoteClient, record: Workspace, workspace_id: str) -> None:
    """Converge run task attachments, keyed by run task id."""
    organization = record.spec.organization
    by_name: dict[str, str] = {}
    if any(not task.id for task in record.spec.run_tasks):
        tasks = await collect_pages(lambda page: remote.list_run_tasks(organization, page=page))
        by_name = {task.name: task.id for task in tasks}

    desired: dict[str, tuple[str, str]] = {}
    for task in record.spec.run_tasks:
        task_id = task.id or by_name.get(task.name or "")
        if task_id is None:
            raise ResourceNotFound(
                f"Run task {task.name!r} not found in organization {organization!r}"
            )
        desired[task_id] = (task.enforcement_level, task.stage)

    attachments = await collect_pages(
        lambda page: remote.list_workspace_run_tasks(workspace_id, page=page)
    )
    current = {attachment.task_id: attachment for attachment in attachments}
    log_extra = {"record": str(record.key), "workspace_id": workspace_id}

    for task_id, (enforcement_level, stage) in desired.items():
        attachment = current.get(task_id)
        if attachment is None:
            await remote.create_workspace_run_task(workspace_id, task_id, enforcement_level, stage)
            logger.info("Run task attached", extra={**log_extra, "task_id": task_id})
        elif (attachment.enforcement_level, attachment.stage) != (enforcement_level, stage):
            await remote.update_workspace_run_task(
                workspace_id, attachment.id, enforcement_level, stage
            )
            logger.info("Run task updated", extra={**log_extra, "task_id": task_id})

    for task_id, attachment in current.items():
        if task_id in desired:
            continue
        try:
            await remote.delete_workspace_run_task(workspace_id, attachment.id)
        except ResourceNotFound:
            pass
        logger.info("Run task detached", extra={**log_extra, "task_id": task_id})
