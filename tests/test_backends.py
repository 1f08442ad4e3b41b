"""Tests for credential resolution, secret stores and agent fleets."""

import base64
from types import SimpleNamespace
from unittest.mock import MagicMock

import pytest
from kubernetes.client.rest import ApiException
from tfc_mock import TOKEN_KEY, TOKEN_SECRET, make_config, manifest

from tfc_operator.credentials import CredentialError, TFCClientFactory, resolve_token
from tfc_operator.fleet import (
    AGENT_TOKEN_ENV,
    FleetError,
    FleetSpec,
    InMemoryAgentFleet,
    KubernetesAgentFleet,
)
from tfc_operator.models import ManagedRecord, parse_record
from tfc_operator.secret_store import (
    MANAGED_BY_LABEL,
    InMemorySecretStore,
    KubernetesSecretStore,
    SecretNotFoundError,
    read_key,
)
from tfc_operator.tfc_client import TFCClient


def _fleet_spec(replicas: int = 1) -> FleetSpec:
    return FleetSpec(
        namespace="default",
        name="pool-agent-pool",
        token_secret="pool-agent-pool",
        token_key="agent",
        image="hashicorp/tfc-agent:latest",
        replicas=replicas,
        tfe_address="app.terraform.io",
    )


class TestResolveToken:
    """Tests for resolve_token."""

    @pytest.fixture
    def record(self) -> ManagedRecord:
        return parse_record(manifest("Project", "demo", {"name": "demo"}))

    @pytest.mark.asyncio
    async def test_token_is_stripped(self, record: ManagedRecord) -> None:
        store = InMemorySecretStore({("default", TOKEN_SECRET): {TOKEN_KEY: " abc\n"}})

        assert await resolve_token(store, record) == "abc"

    @pytest.mark.asyncio
    async def test_missing_key(self, record: ManagedRecord) -> None:
        store = InMemorySecretStore({("default", TOKEN_SECRET): {"other": "abc"}})

        with pytest.raises(CredentialError, match="no key 'token'"):
            await resolve_token(store, record)

    @pytest.mark.asyncio
    async def test_empty_token(self, record: ManagedRecord) -> None:
        store = InMemorySecretStore({("default", TOKEN_SECRET): {TOKEN_KEY: "  "}})

        with pytest.raises(CredentialError, match="is empty"):
            await resolve_token(store, record)

    @pytest.mark.asyncio
    async def test_factory_opens_and_closes_client(self, record: ManagedRecord) -> None:
        store = InMemorySecretStore({("default", TOKEN_SECRET): {TOKEN_KEY: "abc"}})
        factory = TFCClientFactory(make_config(), store)

        async with factory.open(record) as remote:
            assert isinstance(remote, TFCClient)
            client = remote._client
            assert client.headers["Authorization"] == "Bearer abc"

        assert client.is_closed


class TestInMemorySecretStore:
    """Tests for InMemorySecretStore."""

    @pytest.mark.asyncio
    async def test_reads_are_copies(self) -> None:
        store = InMemorySecretStore()
        await store.write("default", "s", {"a": "1"})

        data = await store.read("default", "s")
        data["a"] = "2"

        assert await read_key(store, "default", "s", "a") == "1"

    @pytest.mark.asyncio
    async def test_missing_secret(self) -> None:
        store = InMemorySecretStore()

        with pytest.raises(SecretNotFoundError):
            await store.read("default", "absent")
        await store.delete("default", "absent")


class TestKubernetesSecretStore:
    """Tests for KubernetesSecretStore against a mocked CoreV1Api."""

    @pytest.mark.asyncio
    async def test_read_decodes_values(self) -> None:
        api = MagicMock()
        api.read_namespaced_secret.return_value = SimpleNamespace(
            data={"token": base64.b64encode(b"abc").decode()}
        )

        data = await KubernetesSecretStore(api).read("default", "tfc-token")

        assert data == {"token": "abc"}
        api.read_namespaced_secret.assert_called_once_with(name="tfc-token", namespace="default")

    @pytest.mark.asyncio
    async def test_read_missing(self) -> None:
        api = MagicMock()
        api.read_namespaced_secret.side_effect = ApiException(status=404, reason="Not Found")

        with pytest.raises(SecretNotFoundError):
            await KubernetesSecretStore(api).read("default", "absent")

    @pytest.mark.asyncio
    async def test_write_creates_when_missing(self) -> None:
        api = MagicMock()
        api.replace_namespaced_secret.side_effect = ApiException(status=404, reason="Not Found")

        await KubernetesSecretStore(api).write("default", "outputs", {"password": "s3cret"})

        body = api.create_namespaced_secret.call_args.kwargs["body"]
        assert body.metadata.labels == MANAGED_BY_LABEL
        assert base64.b64decode(body.data["password"]) == b"s3cret"

    @pytest.mark.asyncio
    async def test_delete_ignores_missing(self) -> None:
        api = MagicMock()
        api.delete_namespaced_secret.side_effect = ApiException(status=404, reason="Not Found")

        await KubernetesSecretStore(api).delete("default", "absent")

    @pytest.mark.asyncio
    async def test_other_errors_propagate(self) -> None:
        api = MagicMock()
        api.delete_namespaced_secret.side_effect = ApiException(status=403, reason="Forbidden")

        with pytest.raises(ApiException):
            await KubernetesSecretStore(api).delete("default", "s")


class TestInMemoryAgentFleet:
    """Tests for InMemoryAgentFleet."""

    @pytest.mark.asyncio
    async def test_ensure_keeps_replica_count(self) -> None:
        fleet = InMemoryAgentFleet()
        await fleet.ensure(_fleet_spec(replicas=2))
        await fleet.scale("default", "pool-agent-pool", 4)

        await fleet.ensure(_fleet_spec(replicas=1))

        assert await fleet.get_replicas("default", "pool-agent-pool") == 4

    @pytest.mark.asyncio
    async def test_missing_deployment(self) -> None:
        fleet = InMemoryAgentFleet()

        with pytest.raises(FleetError):
            await fleet.get_replicas("default", "absent")
        with pytest.raises(FleetError):
            await fleet.scale("default", "absent", 1)


class TestKubernetesAgentFleet:
    """Tests for KubernetesAgentFleet against a mocked AppsV1Api."""

    @pytest.mark.asyncio
    async def test_ensure_creates_deployment(self) -> None:
        api = MagicMock()
        api.read_namespaced_deployment.side_effect = ApiException(status=404, reason="Not Found")

        await KubernetesAgentFleet(api).ensure(_fleet_spec(replicas=2))

        body = api.create_namespaced_deployment.call_args.kwargs["body"]
        assert body.spec.replicas == 2
        container = body.spec.template.spec.containers[0]
        token_env = next(env for env in container.env if env.name == AGENT_TOKEN_ENV)
        assert token_env.value_from.secret_key_ref.name == "pool-agent-pool"
        assert token_env.value_from.secret_key_ref.key == "agent"

    @pytest.mark.asyncio
    async def test_ensure_preserves_live_replicas(self) -> None:
        api = MagicMock()
        api.read_namespaced_deployment.return_value = SimpleNamespace(
            spec=SimpleNamespace(replicas=5)
        )

        await KubernetesAgentFleet(api).ensure(_fleet_spec(replicas=1))

        body = api.patch_namespaced_deployment.call_args.kwargs["body"]
        assert body.spec.replicas == 5
        api.create_namespaced_deployment.assert_not_called()

    @pytest.mark.asyncio
    async def test_scale_patches_scale_subresource(self) -> None:
        api = MagicMock()

        await KubernetesAgentFleet(api).scale("default", "pool-agent-pool", 3)

        api.patch_namespaced_deployment_scale.assert_called_once_with(
            name="pool-agent-pool", namespace="default", body={"spec": {"replicas": 3}}
        )

    @pytest.mark.asyncio
    async def test_api_errors_become_fleet_errors(self) -> None:
        api = MagicMock()
        api.patch_namespaced_deployment_scale.side_effect = ApiException(
            status=500, reason="Internal Server Error"
        )

        with pytest.raises(FleetError, match="Internal Server Error"):
            await KubernetesAgentFleet(api).scale("default", "pool-agent-pool", 3)
