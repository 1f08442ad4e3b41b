"""AgentToken reconciliation.

An AgentToken record manages a set of tokens on an agent pool it does not
own. The pool is referenced by id or by exact name; its id becomes the
record's external id. Token values are kept in spec.secretName.

Management policy:
- merge: tokens the record did not create are left alone
- owner: every token of the pool that is not declared is revoked
"""

from __future__ import annotations

import logging
from typing import ClassVar

from .agentpool import sync_agent_tokens
from .deletion import DeletionTarget, DestroyMode
from .models import AgentToken, ManagedRecord, ManagementPolicy, ResourceRef
from .reconciler import OperatorDeps, ReconcileContext, Reconciler
from .remote import RemoteAgentPool, RemoteClient, ResourceNotFound, iterate_pages

logger = logging.getLogger(__name__)


async def resolve_agent_pool(
    remote: RemoteClient, organization: str, ref: ResourceRef
) -> RemoteAgentPool:
    """Find an agent pool by id, or by exact name across all pages.

    Raises:
        ResourceNotFound: If no pool matches.
    """
    if ref.id:
        return await remote.read_agent_pool(ref.id)
    async for pool in iterate_pages(
        lambda page: remote.list_agent_pools(organization, page=page)
    ):
        if pool.name == ref.name:
            return pool
    raise ResourceNotFound(f"Agent pool {ref.name!r} not found in organization {organization!r}")


class AgentTokenReconciler(Reconciler):
    kind: ClassVar[str] = AgentToken.kind

    def __init__(self, deps: OperatorDeps) -> None:
        super().__init__(deps)
        self._secrets = deps.secrets

    async def create_external(self, ctx: ReconcileContext) -> str:
        record = ctx.record_as(AgentToken)
        pool = await resolve_agent_pool(
            ctx.remote, record.spec.organization, record.spec.agent_pool
        )
        return pool.id

    async def read_external(self, ctx: ReconcileContext) -> RemoteAgentPool:
        return await ctx.remote.read_agent_pool(ctx.record.status.external_id)

    async def update_external(self, ctx: ReconcileContext) -> None:
        record = ctx.record_as(AgentToken)
        pool = await resolve_agent_pool(
            ctx.remote, record.spec.organization, record.spec.agent_pool
        )
        if pool.id == record.status.external_id:
            return
        logger.info(
            "Agent pool reference changed",
            extra={
                "record": str(record.key),
                "old_pool": record.status.external_id,
                "new_pool": pool.id,
            },
        )
        # Tokens on the previous pool are no longer tracked
        record.status.external_id = pool.id
        record.status.agent_tokens = []
        await ctx.persist_status()
        ctx.observed = pool

    async def converge(self, ctx: ReconcileContext) -> None:
        record = ctx.record_as(AgentToken)
        record.status.agent_tokens = await sync_agent_tokens(
            ctx.remote,
            self._secrets,
            pool_id=record.status.external_id,
            namespace=record.metadata.namespace,
            secret_name=record.spec.secret_name,
            declared=[token.name for token in record.spec.agent_tokens],
            managed=record.status.agent_tokens,
            delete_unmanaged=record.spec.management_policy == ManagementPolicy.OWNER,
        )

    def deletion_target(self, ctx: ReconcileContext) -> DeletionTarget:
        record = ctx.record_as(AgentToken)

        async def revoke() -> None:
            for token in list(record.status.agent_tokens):
                try:
                    await ctx.remote.delete_agent_token(token.id)
                except ResourceNotFound:
                    pass
                record.status.agent_tokens.remove(token)
                logger.info(
                    "Agent token revoked",
                    extra={"record": str(record.key), "token_id": token.id},
                )

        return DeletionTarget(destroy_mode=DestroyMode.DELETE, delete=revoke)

    async def on_erased(self, record: ManagedRecord) -> None:
        if not isinstance(record, AgentToken):
            raise TypeError(f"Expected AgentToken record, got {record.kind}")
        await self._secrets.delete(record.metadata.namespace, record.spec.secret_name)
