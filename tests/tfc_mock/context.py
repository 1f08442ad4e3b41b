"""Operator wiring around the in-memory platform.

MockOperatorContext bundles everything a reconciler needs: a config with
in-memory backends, an intent store, an event recorder, a secret store
seeded with the API token secret, an in-memory agent fleet, and a client
factory that hands out one shared FakeTerraformCloud.
"""

from __future__ import annotations

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any

from tfc_operator.config import Backend, OperatorConfig
from tfc_operator.credentials import CredentialError, resolve_token
from tfc_operator.events import EventRecorder
from tfc_operator.fleet import InMemoryAgentFleet
from tfc_operator.models import ManagedRecord, RecordKey, parse_record
from tfc_operator.reconciler import OperatorDeps, Reconciler, ReconcileResult
from tfc_operator.remote import RemoteClient
from tfc_operator.secret_store import InMemorySecretStore
from tfc_operator.store import InMemoryIntentStore

from .cloud import FakeTerraformCloud

ORGANIZATION = "acme"
NAMESPACE = "default"
TOKEN_SECRET = "tfc-token"
TOKEN_KEY = "token"
TOKEN_VALUE = "api-token"


class FakeClientFactory:
    """ClientFactory handing out the same fake for every record.

    The API token is still resolved from the secret store, so a missing
    token secret fails the pass the same way it does in production.
    """

    def __init__(self, cloud: FakeTerraformCloud, secrets: InMemorySecretStore) -> None:
        self.cloud = cloud
        self._secrets = secrets
        self.opened: list[RecordKey] = []
        self.fail_auth = False

    @asynccontextmanager
    async def open(self, record: ManagedRecord) -> AsyncIterator[RemoteClient]:
        if self.fail_auth:
            raise CredentialError("Token rejected")
        await resolve_token(self._secrets, record)
        self.opened.append(record.key)
        yield self.cloud


def make_config(**overrides: Any) -> OperatorConfig:
    """Config with in-memory backends and a short retry interval."""
    values: dict[str, Any] = {
        "requeue_interval_seconds": 5,
        "secret_backend": Backend.MEMORY,
        "fleet_backend": Backend.MEMORY,
        "specs_dir": Path("/nonexistent"),
        "metrics_port": 0,
    }
    values.update(overrides)
    return OperatorConfig(**values)


def manifest(kind: str, name: str, spec: dict[str, Any], **metadata: Any) -> dict[str, Any]:
    """Build a record document with the shared organization and token."""
    return {
        "apiVersion": "app.terraform.io/v1alpha2",
        "kind": kind,
        "metadata": {"name": name, "namespace": NAMESPACE, **metadata},
        "spec": {
            "organization": ORGANIZATION,
            "token": {"secretKeyRef": {"name": TOKEN_SECRET, "key": TOKEN_KEY}},
            **spec,
        },
    }


class MockOperatorContext:
    """Operator dependencies backed by in-memory fakes.

    Usage:
        ctx = MockOperatorContext()
        record = await ctx.create(manifest("Project", "demo", {"name": "demo"}))
        reconciler = ProjectReconciler(ctx.deps)
        await ctx.converge(reconciler, record.key)

        assert len(ctx.cloud.projects) == 1
    """

    def __init__(self, cloud: FakeTerraformCloud | None = None, **config: Any) -> None:
        self.cloud = cloud or FakeTerraformCloud()
        self.config = make_config(**config)
        self.store = InMemoryIntentStore()
        self.events = EventRecorder()
        self.secrets = InMemorySecretStore(
            {(NAMESPACE, TOKEN_SECRET): {TOKEN_KEY: TOKEN_VALUE}}
        )
        self.fleet = InMemoryAgentFleet()
        self.clients = FakeClientFactory(self.cloud, self.secrets)
        self.deps = OperatorDeps(
            config=self.config,
            store=self.store,
            clients=self.clients,
            events=self.events,
            secrets=self.secrets,
            fleet=self.fleet,
        )

    async def create(self, document: dict[str, Any]) -> ManagedRecord:
        return await self.store.create(parse_record(document))

    async def get(self, kind: str, key: RecordKey) -> ManagedRecord:
        record = await self.store.get(kind, key)
        assert record is not None, f"{kind} {key} is gone"
        return record

    async def converge(
        self, reconciler: Reconciler, key: RecordKey, passes: int = 2
    ) -> ReconcileResult:
        """Run several passes and return the last result.

        The first pass over a new record only adds the deletion guard.
        """
        result = await reconciler.reconcile(key)
        for _ in range(passes - 1):
            result = await reconciler.reconcile(key)
        return result

    def reasons(self, kind: str, key: RecordKey) -> list[str]:
        return [event.reason for event in self.events.events_for(kind, key)]
