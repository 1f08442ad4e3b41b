"""AgentPool reconciliation.

Per pass, after the pool itself exists and carries the declared name:
1. Converge agent tokens and keep their values in the secret "<record>-agent-pool"
2. Ensure the worker deployment when agentDeployment or autoscaling is set
3. Let the autoscaler pick and apply a replica count

Destroy deletes the pool. A pool with busy agents cannot be deleted, so a
failed delete drains the workers and revokes the tokens before the next try.
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime
from typing import ClassVar

from .autoscaler import AgentPoolAutoscaler
from .deletion import DeletionTarget, DestroyMode
from .fleet import FleetError, FleetSpec, agent_deployment_name
from .models import AgentPool, AutoscalingStatus, ManagedRecord, TokenDescriptor
from .reconciler import OperatorDeps, ReconcileContext, Reconciler
from .remote import RemoteAgentPool, RemoteClient, ResourceNotFound, collect_pages
from .secret_store import SecretNotFoundError, SecretStore

logger = logging.getLogger(__name__)


async def read_secret_or_empty(secrets: SecretStore, namespace: str, name: str) -> dict[str, str]:
    try:
        return await secrets.read(namespace, name)
    except SecretNotFoundError:
        return {}


async def sync_agent_tokens(
    remote: RemoteClient,
    secrets: SecretStore,
    *,
    pool_id: str,
    namespace: str,
    secret_name: str,
    declared: list[str],
    managed: list[TokenDescriptor],
    delete_unmanaged: bool,
) -> list[TokenDescriptor]:
    """Converge the tokens of a pool against a declared list of names.

    A declared token is kept when it is still known remotely and its value
    is still in the secret; otherwise a fresh token replaces it. Tokens this
    record created but no longer declares are revoked. With delete_unmanaged
    every other token of the pool is revoked as well.

    Returns:
        The tokens now managed, in declaration order.
    """
    remote_tokens = await collect_pages(
        lambda page: remote.list_agent_tokens(pool_id, page=page)
    )
    remote_ids = {token.id for token in remote_tokens}
    original = await read_secret_or_empty(secrets, namespace, secret_name)
    data = dict(original)
    log_extra = {"pool_id": pool_id, "secret": f"{namespace}/{secret_name}"}

    by_name = {token.name: token for token in managed}
    kept: list[TokenDescriptor] = []
    for name in declared:
        current = by_name.get(name)
        if current is not None and current.id in remote_ids and name in data:
            kept.append(current)
            continue
        created = await remote.create_agent_token(pool_id, name)
        data[name] = created.token or ""
        kept.append(
            TokenDescriptor(
                id=created.id,
                name=name,
                created_at=created.created_at or datetime.now(UTC),
            )
        )
        logger.info(
            "Agent token created", extra={**log_extra, "token": name, "token_id": created.id}
        )

    kept_ids = {token.id for token in kept}
    stale = {token.id for token in managed} - kept_ids
    if delete_unmanaged:
        stale |= remote_ids - kept_ids
    for token_id in sorted(stale & remote_ids):
        try:
            await remote.delete_agent_token(token_id)
        except ResourceNotFound:
            pass
        logger.info("Agent token revoked", extra={**log_extra, "token_id": token_id})

    for token in managed:
        if token.name not in declared:
            data.pop(token.name, None)
    if data != original:
        await secrets.write(namespace, secret_name, data)

    return kept


class AgentPoolReconciler(Reconciler):
    kind: ClassVar[str] = AgentPool.kind

    def __init__(self, deps: OperatorDeps) -> None:
        super().__init__(deps)
        self._secrets = deps.secrets
        self._fleet = deps.fleet
        self._autoscaler = AgentPoolAutoscaler(
            deps.fleet,
            deps.events,
            default_cooldown_seconds=deps.config.autoscaling_cooldown_seconds,
        )

    async def create_external(self, ctx: ReconcileContext) -> str:
        record = ctx.record_as(AgentPool)
        pool = await ctx.remote.create_agent_pool(record.spec.organization, record.spec.name)
        return pool.id

    async def read_external(self, ctx: ReconcileContext) -> RemoteAgentPool:
        return await ctx.remote.read_agent_pool(ctx.record.status.external_id)

    async def update_external(self, ctx: ReconcileContext) -> None:
        record = ctx.record_as(AgentPool)
        if ctx.observed.name != record.spec.name:
            ctx.observed = await ctx.remote.update_agent_pool(
                record.status.external_id, record.spec.name
            )

    async def converge(self, ctx: ReconcileContext) -> None:
        record = ctx.record_as(AgentPool)
        spec = record.spec

        record.status.agent_tokens = await sync_agent_tokens(
            ctx.remote,
            self._secrets,
            pool_id=record.status.external_id,
            namespace=record.metadata.namespace,
            secret_name=agent_deployment_name(record.metadata.name),
            declared=[token.name for token in spec.agent_tokens],
            managed=record.status.agent_tokens,
            delete_unmanaged=True,
        )

        if spec.agent_deployment is None and spec.autoscaling is None:
            return
        if not record.status.agent_tokens:
            self._events.warning(
                record, "AgentDeployment", "No agent token declared, agent deployment skipped"
            )
            return

        fleet_spec = self._fleet_spec(record)
        await self._fleet.ensure(fleet_spec)
        if spec.autoscaling is not None:
            await self._autoscaler.reconcile(ctx.remote, record)
            return

        # Without autoscaling the declared replica count is authoritative
        current = await self._fleet.get_replicas(fleet_spec.namespace, fleet_spec.name)
        if current != fleet_spec.replicas:
            await self._fleet.scale(fleet_spec.namespace, fleet_spec.name, fleet_spec.replicas)

    def _fleet_spec(self, record: AgentPool) -> FleetSpec:
        deployment = record.spec.agent_deployment
        replicas = 0
        if deployment is not None and deployment.replicas is not None:
            replicas = deployment.replicas
        elif record.spec.autoscaling is not None:
            replicas = record.spec.autoscaling.min_replicas
        name = agent_deployment_name(record.metadata.name)
        return FleetSpec(
            namespace=record.metadata.namespace,
            name=name,
            token_secret=name,
            token_key=record.status.agent_tokens[0].name,
            image=deployment.image if deployment is not None else "hashicorp/tfc-agent:latest",
            replicas=replicas,
            tfe_address=self._config.tfe_address,
            labels=deployment.labels if deployment is not None else {},
        )

    def deletion_target(self, ctx: ReconcileContext) -> DeletionTarget:
        record = ctx.record_as(AgentPool)

        async def delete() -> None:
            await ctx.remote.delete_agent_pool(record.status.external_id)

        async def drain() -> None:
            await self._drain(ctx, record)

        return DeletionTarget(destroy_mode=DestroyMode.AGENT_POOL, delete=delete, cleanup=drain)

    async def _drain(self, ctx: ReconcileContext, record: AgentPool) -> None:
        namespace = record.metadata.namespace
        name = agent_deployment_name(record.metadata.name)
        try:
            current = await self._fleet.get_replicas(namespace, name)
        except FleetError:
            # No deployment, nothing to drain
            current = 0
        if current > 0:
            logger.info(
                "Scaling agents to zero", extra={"record": str(record.key), "from": current}
            )
            await self._fleet.scale(namespace, name, 0)
            if record.status.autoscaling is not None:
                record.status.autoscaling = AutoscalingStatus(
                    desired_replicas=0, last_scaling_event=datetime.now(UTC)
                )

        for token in list(record.status.agent_tokens):
            try:
                await ctx.remote.delete_agent_token(token.id)
            except ResourceNotFound:
                pass
            record.status.agent_tokens.remove(token)

    async def on_erased(self, record: ManagedRecord) -> None:
        name = agent_deployment_name(record.metadata.name)
        await self._fleet.delete(record.metadata.namespace, name)
        await self._secrets.delete(record.metadata.namespace, name)
