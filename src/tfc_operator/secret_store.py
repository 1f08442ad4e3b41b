"""Secret storage for API tokens, agent tokens and sensitive outputs.

Two backends implement the SecretStore protocol:
- InMemorySecretStore: process memory, optionally seeded from a YAML file
- KubernetesSecretStore: Opaque secrets in the record's namespace

Secret values never appear in logs; only namespace, name and key names do.
"""

from __future__ import annotations

import base64
import logging
from pathlib import Path
from typing import Any, Protocol

import yaml
from kubernetes import client
from kubernetes.client.rest import ApiException

from .config import MAX_MANIFEST_FILE_SIZE_BYTES
from .kube import call_api, load_kubernetes_config

logger = logging.getLogger(__name__)

# Label put on every secret the operator writes
MANAGED_BY_LABEL = {"app.kubernetes.io/managed-by": "tfc-operator"}


class SecretNotFoundError(Exception):
    """Raised when a secret or one of its keys does not exist."""

    pass


class SecretStore(Protocol):
    """Operations the operator consumes from a secret backend."""

    async def read(self, namespace: str, name: str) -> dict[str, str]: ...
    async def write(self, namespace: str, name: str, data: dict[str, str]) -> None: ...
    async def delete(self, namespace: str, name: str) -> None: ...


async def read_key(store: SecretStore, namespace: str, name: str, key: str) -> str:
    """Read one key of a secret.

    Raises:
        SecretNotFoundError: If the secret or the key is missing.
    """
    data = await store.read(namespace, name)
    if key not in data:
        raise SecretNotFoundError(f"Secret {namespace}/{name} has no key {key!r}")
    return data[key]


class InMemorySecretStore:
    """Secrets held in process memory."""

    def __init__(self, secrets: dict[tuple[str, str], dict[str, str]] | None = None) -> None:
        self._secrets: dict[tuple[str, str], dict[str, str]] = {
            slot: dict(data) for slot, data in (secrets or {}).items()
        }

    @classmethod
    def from_file(cls, path: Path) -> InMemorySecretStore:
        """Seed secrets from a YAML list of {namespace, name, data} entries."""
        if path.stat().st_size > MAX_MANIFEST_FILE_SIZE_BYTES:
            raise ValueError(f"Secrets file exceeds {MAX_MANIFEST_FILE_SIZE_BYTES} bytes: {path}")
        with open(path) as f:
            entries: list[dict[str, Any]] = yaml.safe_load(f) or []
        secrets: dict[tuple[str, str], dict[str, str]] = {}
        for entry in entries:
            slot = (entry.get("namespace", "default"), entry["name"])
            secrets[slot] = {str(k): str(v) for k, v in (entry.get("data") or {}).items()}
        logger.info("Loaded secrets file", extra={"path": str(path), "count": len(secrets)})
        return cls(secrets)

    async def read(self, namespace: str, name: str) -> dict[str, str]:
        data = self._secrets.get((namespace, name))
        if data is None:
            raise SecretNotFoundError(f"Secret {namespace}/{name} not found")
        return dict(data)

    async def write(self, namespace: str, name: str, data: dict[str, str]) -> None:
        self._secrets[(namespace, name)] = dict(data)

    async def delete(self, namespace: str, name: str) -> None:
        self._secrets.pop((namespace, name), None)

    def __contains__(self, slot: tuple[str, str]) -> bool:
        return slot in self._secrets


class KubernetesSecretStore:
    """Opaque Kubernetes secrets accessed through the CoreV1 API."""

    def __init__(self, api: client.CoreV1Api | None = None) -> None:
        if api is None:
            load_kubernetes_config()
            api = client.CoreV1Api()
        self._api = api

    async def read(self, namespace: str, name: str) -> dict[str, str]:
        try:
            secret = await call_api(
                self._api.read_namespaced_secret, name=name, namespace=namespace
            )
        except ApiException as e:
            if e.status == 404:
                raise SecretNotFoundError(f"Secret {namespace}/{name} not found") from e
            raise
        return {
            key: base64.b64decode(value).decode("utf-8")
            for key, value in (secret.data or {}).items()
        }

    async def write(self, namespace: str, name: str, data: dict[str, str]) -> None:
        body = client.V1Secret(
            metadata=client.V1ObjectMeta(name=name, namespace=namespace, labels=MANAGED_BY_LABEL),
            type="Opaque",
            data={
                key: base64.b64encode(value.encode("utf-8")).decode("ascii")
                for key, value in data.items()
            },
        )
        try:
            await call_api(
                self._api.replace_namespaced_secret, name=name, namespace=namespace, body=body
            )
        except ApiException as e:
            if e.status != 404:
                raise
            await call_api(self._api.create_namespaced_secret, namespace=namespace, body=body)
            logger.info("Secret created", extra={"namespace": namespace, "secret": name})

    async def delete(self, namespace: str, name: str) -> None:
        try:
            await call_api(self._api.delete_namespaced_secret, name=name, namespace=namespace)
        except ApiException as e:
            if e.status != 404:
                raise
