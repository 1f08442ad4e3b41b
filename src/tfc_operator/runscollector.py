"""RunsCollector reconciliation.

Publishes the non-final runs of one agent pool as Prometheus gauges on every
pass. Erasing the record removes the pool's series.
"""

from __future__ import annotations

import logging
from typing import ClassVar

from .agenttoken import resolve_agent_pool
from .deletion import DeletionTarget
from .metrics import forget_runs, publish_runs
from .models import ManagedRecord, RecordKey, RunsCollector
from .reconciler import OperatorDeps, ReconcileContext, Reconciler
from .remote import RemoteAgentPool, collect_pages

logger = logging.getLogger(__name__)


class RunsCollectorReconciler(Reconciler):
    kind: ClassVar[str] = RunsCollector.kind

    def __init__(self, deps: OperatorDeps) -> None:
        super().__init__(deps)
        # Label values last published per record
        self._published: dict[RecordKey, tuple[str, str]] = {}

    async def create_external(self, ctx: ReconcileContext) -> str:
        record = ctx.record_as(RunsCollector)
        pool = await resolve_agent_pool(
            ctx.remote, record.spec.organization, record.spec.agent_pool
        )
        return pool.id

    async def read_external(self, ctx: ReconcileContext) -> RemoteAgentPool:
        return await ctx.remote.read_agent_pool(ctx.record.status.external_id)

    async def update_external(self, ctx: ReconcileContext) -> None:
        record = ctx.record_as(RunsCollector)
        pool = await resolve_agent_pool(
            ctx.remote, record.spec.organization, record.spec.agent_pool
        )
        if pool.id != record.status.external_id:
            record.status.external_id = pool.id
            await ctx.persist_status()
        ctx.observed = pool

    async def converge(self, ctx: ReconcileContext) -> None:
        record = ctx.record
        pool: RemoteAgentPool = ctx.observed
        runs = await collect_pages(
            lambda page: ctx.remote.list_organization_runs(
                record.spec.organization, agent_pool_names=[pool.name], page=page
            )
        )

        previous = self._published.get(record.key)
        if previous is not None and previous != (pool.id, pool.name):
            forget_runs(*previous)
        publish_runs(pool.id, pool.name, [run.status for run in runs])
        self._published[record.key] = (pool.id, pool.name)
        logger.debug(
            "Published run metrics",
            extra={"record": str(record.key), "agent_pool_id": pool.id, "runs": len(runs)},
        )

    def deletion_target(self, ctx: ReconcileContext) -> DeletionTarget:
        return DeletionTarget()

    async def on_erased(self, record: ManagedRecord) -> None:
        published = self._published.pop(record.key, None)
        if published is not None:
            forget_runs(*published)
