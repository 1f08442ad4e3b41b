"""Scheduling of reconciliation passes.

Each kind has its own work queue and a bounded number of workers. A queue
coalesces requests per record: a record is never reconciled by two workers
at once, and any number of requests that arrive while it waits or runs
collapse into at most one further pass.

Passes are triggered by:
- store notifications (record added, spec changed, deletion requested)
- the requeue delay a pass returns (sync period or retry interval)
- the initial listing at startup
"""

from __future__ import annotations

import asyncio
import logging

from .agentpool import AgentPoolReconciler
from .agenttoken import AgentTokenReconciler
from .manifests import ManifestSync
from .models import RecordKey
from .module import ModuleReconciler
from .project import ProjectReconciler
from .reconciler import OperatorDeps, Reconciler
from .runscollector import RunsCollectorReconciler
from .store import EventType, StoreEvent
from .workspace import WorkspaceReconciler

logger = logging.getLogger(__name__)

RECONCILER_TYPES: tuple[type[Reconciler], ...] = (
    AgentPoolReconciler,
    AgentTokenReconciler,
    ModuleReconciler,
    ProjectReconciler,
    RunsCollectorReconciler,
    WorkspaceReconciler,
)


def build_reconcilers(deps: OperatorDeps) -> dict[str, Reconciler]:
    return {reconciler_type.kind: reconciler_type(deps) for reconciler_type in RECONCILER_TYPES}


class WorkQueue:
    """Coalescing queue of record keys with delayed re-adds."""

    def __init__(self, kind: str) -> None:
        self.kind = kind
        self._queue: asyncio.Queue[RecordKey] = asyncio.Queue()
        self._queued: set[RecordKey] = set()
        self._active: set[RecordKey] = set()
        self._dirty: set[RecordKey] = set()
        self._timers: dict[RecordKey, asyncio.TimerHandle] = {}

    def add(self, key: RecordKey) -> None:
        timer = self._timers.pop(key, None)
        if timer is not None:
            timer.cancel()
        if key in self._active:
            self._dirty.add(key)
        elif key not in self._queued:
            self._queued.add(key)
            self._queue.put_nowait(key)

    def add_after(self, key: RecordKey, delay: float) -> None:
        """Add a key after a delay; an earlier pending add wins."""
        if delay <= 0:
            self.add(key)
            return
        loop = asyncio.get_running_loop()
        due = loop.time() + delay
        existing = self._timers.get(key)
        if existing is not None:
            if existing.when() <= due:
                return
            existing.cancel()
        self._timers[key] = loop.call_at(due, self.add, key)

    async def get(self) -> RecordKey:
        key = await self._queue.get()
        self._queued.discard(key)
        self._active.add(key)
        return key

    def done(self, key: RecordKey) -> None:
        self._active.discard(key)
        if key in self._dirty:
            self._dirty.discard(key)
            self.add(key)

    def forget(self, key: RecordKey) -> None:
        timer = self._timers.pop(key, None)
        if timer is not None:
            timer.cancel()

    def pending_timers(self) -> int:
        return len(self._timers)

    def __len__(self) -> int:
        return self._queue.qsize()

    def close(self) -> None:
        for timer in self._timers.values():
            timer.cancel()
        self._timers.clear()


class Manager:
    """Runs reconcilers for every kind until shutdown."""

    def __init__(
        self,
        deps: OperatorDeps,
        reconcilers: dict[str, Reconciler] | None = None,
        manifest_sync: ManifestSync | None = None,
    ) -> None:
        self._deps = deps
        self._config = deps.config
        self._store = deps.store
        self._reconcilers = reconcilers if reconcilers is not None else build_reconcilers(deps)
        self._queues = {kind: WorkQueue(kind) for kind in self._reconcilers}
        self._manifest_sync = manifest_sync
        self._shutdown_event = asyncio.Event()

    def queue(self, kind: str) -> WorkQueue:
        return self._queues[kind]

    def enqueue(self, kind: str, key: RecordKey) -> None:
        queue = self._queues.get(kind)
        if queue is None or not self._config.watches(key.namespace):
            return
        queue.add(key)

    async def run(self) -> None:
        """Run until shutdown() is called."""
        logger.info(
            "Starting manager",
            extra={
                "kinds": sorted(self._reconcilers),
                "workers": {kind: self._config.workers_for(kind) for kind in self._reconcilers},
            },
        )
        events = self._store.subscribe()
        tasks: list[asyncio.Task[None]] = []
        try:
            if self._manifest_sync is not None:
                await self._sync_manifests_once()
            for kind in self._reconcilers:
                for record in await self._store.list(kind):
                    self.enqueue(kind, record.key)

            tasks.append(asyncio.create_task(self._dispatch(events), name="dispatch"))
            for kind in self._reconcilers:
                for index in range(self._config.workers_for(kind)):
                    tasks.append(
                        asyncio.create_task(self._worker(kind), name=f"{kind}-worker-{index}")
                    )
            if self._manifest_sync is not None:
                tasks.append(asyncio.create_task(self._sync_manifests(), name="manifest-sync"))

            await self._shutdown_event.wait()
        finally:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            for queue in self._queues.values():
                queue.close()
            self._store.unsubscribe(events)
            logger.info("Manager shutdown complete")

    def shutdown(self) -> None:
        """Signal the manager to stop."""
        logger.info("Shutdown requested")
        self._shutdown_event.set()

    async def _dispatch(self, events: asyncio.Queue[StoreEvent]) -> None:
        while True:
            event = await events.get()
            if event.type == EventType.DELETED:
                queue = self._queues.get(event.kind)
                if queue is not None:
                    queue.forget(event.key)
                continue
            self.enqueue(event.kind, event.key)

    async def _worker(self, kind: str) -> None:
        queue = self._queues[kind]
        reconciler = self._reconcilers[kind]
        while True:
            key = await queue.get()
            try:
                result = await reconciler.reconcile(key)
            finally:
                queue.done(key)
            if result.requeue_after is not None:
                queue.add_after(key, result.requeue_after)

    async def _sync_manifests_once(self) -> None:
        if self._manifest_sync is None:
            return
        report = await self._manifest_sync.sync()
        if report.created or report.updated or report.deleted or report.errors:
            logger.info(
                "Manifests synced",
                extra={
                    "created": report.created,
                    "updated": report.updated,
                    "deleted": report.deleted,
                    "errors": len(report.errors),
                },
            )

    async def _sync_manifests(self) -> None:
        while True:
            try:
                await asyncio.wait_for(
                    self._shutdown_event.wait(),
                    timeout=self._config.manifest_sync_interval_seconds,
                )
                return
            except TimeoutError:
                # Normal timeout, rescan manifests
                pass
            try:
                await self._sync_manifests_once()
            except Exception as e:
                logger.exception("Manifest sync failed", extra={"error": str(e)})
