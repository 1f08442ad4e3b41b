"""Workspace variables and variable sets.

Variables are declared per category (terraform, env) and the declared list
is authoritative within each category. Sensitive values cannot be read back,
so a variable is only pushed when one of these changed since the last push:
- the declared value or attributes (tracked as a hash in status.valueID)
- the remote version (status.versionID), i.e. someone edited it out of band

Variable sets are only applied and removed; their content belongs to
whoever manages the set. Global sets apply everywhere and are skipped.
"""

from __future__ import annotations

import hashlib
import json
import logging

from .models import ResourceRef, VariableSetStatus, VariableStatus, Workspace, WorkspaceVariable
from .remote import (
    RemoteClient,
    RemoteVariable,
    RemoteVariableSet,
    ResourceNotFound,
    VariableOptions,
    collect_pages,
)
from .secret_store import SecretStore, read_key

logger = logging.getLogger(__name__)

CATEGORY_TERRAFORM = "terraform"
CATEGORY_ENV = "env"


def value_id(options: VariableOptions) -> str:
    """Fingerprint of everything pushed for a variable."""
    payload = json.dumps(
        [options.key, options.value, options.description, options.hcl, options.sensitive]
    )
    return hashlib.sha256(payload.encode()).hexdigest()


async def variable_options(
    secrets: SecretStore, namespace: str, variable: WorkspaceVariable, category: str
) -> VariableOptions:
    """Build the options for a declared variable, reading valueFrom if set.

    Raises:
        SecretNotFoundError: If the referenced secret or key is missing.
    """
    value = variable.value or ""
    if variable.value_from is not None:
        ref = variable.value_from.secret_key_ref
        value = await read_key(secrets, namespace, ref.name, ref.key)
    return VariableOptions(
        key=variable.name,
        value=value,
        category=category,
        description=variable.description,
        hcl=variable.hcl,
        sensitive=variable.sensitive,
    )


def _status_entry(variable: RemoteVariable, options: VariableOptions) -> VariableStatus:
    return VariableStatus(
        name=variable.key,
        id=variable.id,
        category=variable.category,
        version_id=variable.version_id,
        value_id=value_id(options),
    )


async def sync_variables(
    remote: RemoteClient, secrets: SecretStore, record: Workspace, workspace_id: str
) -> list[VariableStatus]:
    """Converge the workspace's variables and return the new status entries."""
    declared: dict[tuple[str, str], VariableOptions] = {}
    for category, variables in (
        (CATEGORY_TERRAFORM, record.spec.terraform_variables),
        (CATEGORY_ENV, record.spec.environment_variables),
    ):
        for variable in variables:
            options = await variable_options(
                secrets, record.metadata.namespace, variable, category
            )
            declared[(category, variable.name)] = options

    existing = {(v.category, v.key): v for v in await remote.list_variables(workspace_id)}
    known = {(s.category, s.name): s for s in record.status.variables}
    log_extra = {"record": str(record.key), "workspace_id": workspace_id}
    statuses: list[VariableStatus] = []

    for slot, options in declared.items():
        current = existing.get(slot)
        if current is not None and current.sensitive and not options.sensitive:
            # A sensitive variable cannot be made non-sensitive in place
            await remote.delete_variable(workspace_id, current.id)
            current = None
        if current is None:
            created = await remote.create_variable(workspace_id, options)
            statuses.append(_status_entry(created, options))
            logger.info("Variable created", extra={**log_extra, "variable": options.key})
            continue

        status = known.get(slot)
        if (
            status is None
            or status.id != current.id
            or status.version_id != current.version_id
            or status.value_id != value_id(options)
        ):
            current = await remote.update_variable(workspace_id, current.id, options)
            logger.info("Variable updated", extra={**log_extra, "variable": options.key})
        statuses.append(_status_entry(current, options))

    for slot, variable in existing.items():
        if slot in declared:
            continue
        try:
            await remote.delete_variable(workspace_id, variable.id)
        except ResourceNotFound:
            pass
        logger.info("Variable deleted", extra={**log_extra, "variable": variable.key})

    return statuses


def _find_variable_set(
    variable_sets: list[RemoteVariableSet], ref: ResourceRef, organization: str
) -> RemoteVariableSet:
    for variable_set in variable_sets:
        if (ref.id and variable_set.id == ref.id) or (ref.name and variable_set.name == ref.name):
            return variable_set
    raise ResourceNotFound(
        f"Variable set {ref.id or ref.name!r} not found in organization {organization!r}"
    )


async def sync_variable_sets(
    remote: RemoteClient, record: Workspace, workspace_id: str
) -> list[VariableSetStatus]:
    """Apply the declared variable sets and remove the ones no longer declared.

    Only sets this record applied before (status.variableSets) are removed.
    """
    if not record.spec.variable_sets and not record.status.variable_sets:
        return []

    organization = record.spec.organization
    variable_sets = await collect_pages(
        lambda page: remote.list_variable_sets(organization, page=page)
    )
    log_extra = {"record": str(record.key), "workspace_id": workspace_id}

    applied: list[VariableSetStatus] = []
    for ref in record.spec.variable_sets:
        variable_set = _find_variable_set(variable_sets, ref, organization)
        if not variable_set.is_global and workspace_id not in variable_set.workspace_ids:
            await remote.apply_variable_set(variable_set.id, workspace_id)
            logger.info(
                "Variable set applied", extra={**log_extra, "variable_set": variable_set.name}
            )
        applied.append(VariableSetStatus(id=variable_set.id, name=variable_set.name))

    applied_ids = {entry.id for entry in applied}
    by_id = {variable_set.id: variable_set for variable_set in variable_sets}
    for entry in record.status.variable_sets:
        variable_set = by_id.get(entry.id)
        if entry.id in applied_ids or variable_set is None or variable_set.is_global:
            continue
        if workspace_id in variable_set.workspace_ids:
            await remote.remove_variable_set(variable_set.id, workspace_id)
            logger.info(
                "Variable set removed", extra={**log_extra, "variable_set": variable_set.name}
            )

    return applied
