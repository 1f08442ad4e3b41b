"""Agent worker fleets.

An agent pool's workers run as a Deployment named "<record>-agent-pool"
in the record's namespace. Workers read their agent token from the secret
of the same name. The autoscaler only ever changes the replica count.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Protocol

from kubernetes import client
from kubernetes.client.rest import ApiException

from .kube import call_api, load_kubernetes_config

logger = logging.getLogger(__name__)

AGENT_TOKEN_ENV = "TFC_AGENT_TOKEN"
AGENT_NAME_ENV = "TFC_AGENT_NAME"
AGENT_ADDRESS_ENV = "TFC_ADDRESS"


class FleetError(Exception):
    """Raised when the worker fleet cannot be read or changed."""

    pass


@dataclass
class FleetSpec:
    """Desired shape of an agent deployment."""

    namespace: str
    name: str
    token_secret: str
    token_key: str
    image: str
    replicas: int
    tfe_address: str
    labels: dict[str, str] = field(default_factory=dict)


class AgentFleet(Protocol):
    """Operations reconciliation consumes from a fleet backend."""

    async def ensure(self, spec: FleetSpec) -> None: ...
    async def get_replicas(self, namespace: str, name: str) -> int: ...
    async def scale(self, namespace: str, name: str, replicas: int) -> None: ...
    async def delete(self, namespace: str, name: str) -> None: ...


class InMemoryAgentFleet:
    """Fleet state held in memory; used for local runs and tests."""

    def __init__(self) -> None:
        self.deployments: dict[tuple[str, str], FleetSpec] = {}
        self.scale_calls: list[tuple[str, str, int]] = []

    async def ensure(self, spec: FleetSpec) -> None:
        slot = (spec.namespace, spec.name)
        existing = self.deployments.get(slot)
        if existing is not None:
            # The replica count belongs to the autoscaler once the deployment exists
            spec = FleetSpec(**{**spec.__dict__, "replicas": existing.replicas})
        self.deployments[slot] = spec

    async def get_replicas(self, namespace: str, name: str) -> int:
        spec = self.deployments.get((namespace, name))
        if spec is None:
            raise FleetError(f"Deployment {namespace}/{name} not found")
        return spec.replicas

    async def scale(self, namespace: str, name: str, replicas: int) -> None:
        spec = self.deployments.get((namespace, name))
        if spec is None:
            raise FleetError(f"Deployment {namespace}/{name} not found")
        spec.replicas = replicas
        self.scale_calls.append((namespace, name, replicas))

    async def delete(self, namespace: str, name: str) -> None:
        self.deployments.pop((namespace, name), None)


class KubernetesAgentFleet:
    """Agent deployments managed through the AppsV1 API."""

    def __init__(self, api: client.AppsV1Api | None = None) -> None:
        if api is None:
            load_kubernetes_config()
            api = client.AppsV1Api()
        self._api = api

    def _build_deployment(self, spec: FleetSpec) -> client.V1Deployment:
        labels = {"app.kubernetes.io/name": "tfc-agent", "agentPool": spec.name, **spec.labels}
        container = client.V1Container(
            name="tfc-agent",
            image=spec.image,
            env=[
                client.V1EnvVar(
                    name=AGENT_TOKEN_ENV,
                    value_from=client.V1EnvVarSource(
                        secret_key_ref=client.V1SecretKeySelector(
                            name=spec.token_secret, key=spec.token_key, optional=False
                        )
                    ),
                ),
                client.V1EnvVar(
                    name=AGENT_NAME_ENV,
                    value_from=client.V1EnvVarSource(
                        field_ref=client.V1ObjectFieldSelector(field_path="metadata.name")
                    ),
                ),
                client.V1EnvVar(name=AGENT_ADDRESS_ENV, value=f"https://{spec.tfe_address}"),
            ],
        )
        return client.V1Deployment(
            metadata=client.V1ObjectMeta(name=spec.name, namespace=spec.namespace, labels=labels),
            spec=client.V1DeploymentSpec(
                replicas=spec.replicas,
                selector=client.V1LabelSelector(match_labels={"agentPool": spec.name}),
                template=client.V1PodTemplateSpec(
                    metadata=client.V1ObjectMeta(labels=labels),
                    spec=client.V1PodSpec(containers=[container]),
                ),
            ),
        )

    async def ensure(self, spec: FleetSpec) -> None:
        body = self._build_deployment(spec)
        try:
            existing = await call_api(
                self._api.read_namespaced_deployment, name=spec.name, namespace=spec.namespace
            )
        except ApiException as e:
            if e.status != 404:
                raise FleetError(f"Failed to read deployment {spec.name}: {e.reason}") from e
            try:
                await call_api(
                    self._api.create_namespaced_deployment, namespace=spec.namespace, body=body
                )
            except ApiException as create_error:
                raise FleetError(
                    f"Failed to create deployment {spec.name}: {create_error.reason}"
                ) from create_error
            logger.info(
                "Agent deployment created",
                extra={"namespace": spec.namespace, "deployment": spec.name},
            )
            return

        body.spec.replicas = existing.spec.replicas
        try:
            await call_api(
                self._api.patch_namespaced_deployment,
                name=spec.name,
                namespace=spec.namespace,
                body=body,
            )
        except ApiException as e:
            raise FleetError(f"Failed to update deployment {spec.name}: {e.reason}") from e

    async def get_replicas(self, namespace: str, name: str) -> int:
        try:
            deployment = await call_api(
                self._api.read_namespaced_deployment, name=name, namespace=namespace
            )
        except ApiException as e:
            raise FleetError(f"Failed to read deployment {name}: {e.reason}") from e
        return deployment.spec.replicas or 0

    async def scale(self, namespace: str, name: str, replicas: int) -> None:
        try:
            await call_api(
                self._api.patch_namespaced_deployment_scale,
                name=name,
                namespace=namespace,
                body={"spec": {"replicas": replicas}},
            )
        except ApiException as e:
            raise FleetError(f"Failed to scale deployment {name}: {e.reason}") from e

    async def delete(self, namespace: str, name: str) -> None:
        try:
            await call_api(self._api.delete_namespaced_deployment, name=name, namespace=namespace)
        except ApiException as e:
            if e.status != 404:
                raise FleetError(f"Failed to delete deployment {name}: {e.reason}") from e


def agent_deployment_name(record_name: str) -> str:
    """Name of the deployment and token secret of an AgentPool record."""
    return f"{record_name}-agent-pool"
