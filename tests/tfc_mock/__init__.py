"""HCP Terraform API Mock for Integration Testing.

This module provides an in-memory implementation of the RemoteClient
protocol that enables reconciliation tests without platform connectivity.

Key Features:
- In-memory state for agent pools, tokens, workspaces, runs, projects and
  workspace settings (variables, team access, notifications, run triggers)
- Run lifecycle driven by the test (pending -> applied/errored)
- Error injection per method for failure scenarios
- Call recording for idempotence assertions

Usage:
    from tfc_mock import MockOperatorContext, manifest

    ctx = MockOperatorContext()
    record = await ctx.create(manifest("Workspace", "demo", {"name": "demo"}))
    await ctx.converge(WorkspaceReconciler(ctx.deps), record.key)

    assert len(ctx.cloud.workspaces) == 1
"""

from .cloud import FakeTerraformCloud, MockCall
from .context import (
    NAMESPACE,
    ORGANIZATION,
    TOKEN_KEY,
    TOKEN_SECRET,
    TOKEN_VALUE,
    FakeClientFactory,
    MockOperatorContext,
    make_config,
    manifest,
)

__all__ = [
    "NAMESPACE",
    "ORGANIZATION",
    "TOKEN_KEY",
    "TOKEN_SECRET",
    "TOKEN_VALUE",
    "FakeClientFactory",
    "FakeTerraformCloud",
    "MockCall",
    "MockOperatorContext",
    "make_config",
    "manifest",
]
