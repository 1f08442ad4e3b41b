"""API token resolution and remote client handles.

Each reconciliation pass opens a short-lived client with the token the
record references. The token is re-read every pass, so rotating the
secret takes effect without restarting the operator, and the client is
closed when the pass ends.

SECURITY:
- Tokens are only read from the secret store, never from record specs
- Token values are never logged
- TLS verification can only be disabled globally (TFC_TLS_SKIP_VERIFY)
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import AbstractAsyncContextManager, asynccontextmanager
from typing import Protocol

from .config import OperatorConfig
from .models import ManagedRecord
from .remote import RemoteClient
from .secret_store import SecretNotFoundError, SecretStore, read_key
from .tfc_client import TFCClient

logger = logging.getLogger(__name__)


class CredentialError(Exception):
    """Raised when the API token of a record cannot be resolved."""

    pass


class ClientFactory(Protocol):
    """Opens a remote client for one record."""

    def open(self, record: ManagedRecord) -> AbstractAsyncContextManager[RemoteClient]: ...


async def resolve_token(store: SecretStore, record: ManagedRecord) -> str:
    """Read the API token referenced by a record.

    Raises:
        CredentialError: If the secret or key is missing or the token is empty.
    """
    ref = record.spec.token.secret_key_ref
    try:
        token = await read_key(store, record.metadata.namespace, ref.name, ref.key)
    except SecretNotFoundError as e:
        raise CredentialError(str(e)) from e
    token = token.strip()
    if not token:
        raise CredentialError(
            f"Secret {record.metadata.namespace}/{ref.name} key {ref.key!r} is empty"
        )
    return token


class TFCClientFactory:
    """Opens TFCClient handles authenticated with the record's token."""

    def __init__(self, config: OperatorConfig, secrets: SecretStore) -> None:
        self._config = config
        self._secrets = secrets
        if config.tls_skip_verify:
            logger.warning("TLS certificate verification is disabled")

    @asynccontextmanager
    async def open(self, record: ManagedRecord) -> AsyncIterator[RemoteClient]:
        token = await resolve_token(self._secrets, record)
        remote = TFCClient(
            base_url=self._config.tfe_base_url,
            token=token,
            verify=not self._config.tls_skip_verify,
        )
        try:
            yield remote
        finally:
            await remote.close()
