"""Remote resource contract for HCP Terraform / Terraform Enterprise.

The operator never talks to the SaaS directly from reconciliation code.
Everything goes through the RemoteClient protocol defined here so that:
1. The HTTP implementation (tfc_client.TFCClient) stays a thin codec
2. Tests can substitute an in-memory fake with call recording
3. Error handling is expressed as two typed signals, not status codes

ERROR SIGNALS:
- ResourceNotFound: the object does not exist (or is not visible to the token).
  Reconciliation treats this as "already absent".
- NotSafeToDelete: the object still has dependents (workspace with managed
  resources, project with workspaces). Deletion waits, it does not fail.
Every other failure is a RemoteError and is retried on the short interval.
"""

from __future__ import annotations

from collections.abc import AsyncIterator, Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Generic, Protocol, TypeVar

# Pagination constants
MAX_PAGE_SIZE = 100
INIT_PAGE_NUMBER = 1

# Message attached to every run the operator starts
RUN_MESSAGE = "Triggered by HCP Terraform Operator"


class RemoteError(Exception):
    """Raised when a remote API call fails."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class ResourceNotFound(RemoteError):
    """Raised when the remote object does not exist."""

    pass


class NotSafeToDelete(RemoteError):
    """Raised when the remote object still has dependents."""

    pass


class RunStatus(str, Enum):
    """Run statuses reported by the platform."""

    APPLIED = "applied"
    APPLYING = "applying"
    APPLY_QUEUED = "apply_queued"
    CANCELED = "canceled"
    CONFIRMED = "confirmed"
    COST_ESTIMATED = "cost_estimated"
    COST_ESTIMATING = "cost_estimating"
    DISCARDED = "discarded"
    ERRORED = "errored"
    FETCHING = "fetching"
    FETCHING_COMPLETED = "fetching_completed"
    PENDING = "pending"
    PLANNED = "planned"
    PLANNED_AND_FINISHED = "planned_and_finished"
    PLANNED_AND_SAVED = "planned_and_saved"
    PLANNING = "planning"
    PLAN_QUEUED = "plan_queued"
    POLICY_CHECKED = "policy_checked"
    POLICY_CHECKING = "policy_checking"
    POLICY_OVERRIDE = "policy_override"
    POLICY_SOFT_FAILED = "policy_soft_failed"
    POST_PLAN_AWAITING_DECISION = "post_plan_awaiting_decision"
    POST_PLAN_COMPLETED = "post_plan_completed"
    POST_PLAN_RUNNING = "post_plan_running"
    PRE_APPLY_RUNNING = "pre_apply_running"
    PRE_APPLY_COMPLETED = "pre_apply_completed"
    PRE_PLAN_COMPLETED = "pre_plan_completed"
    PRE_PLAN_RUNNING = "pre_plan_running"
    QUEUING = "queuing"
    QUEUING_APPLY = "queuing_apply"


# Terminal statuses that count as success
RUN_COMPLETE_STATUSES = frozenset({RunStatus.APPLIED.value, RunStatus.PLANNED_AND_FINISHED.value})

# Terminal statuses that count as failure
RUN_UNSUCCESSFUL_STATUSES = frozenset(
    {RunStatus.CANCELED.value, RunStatus.DISCARDED.value, RunStatus.ERRORED.value}
)

# Non-terminal statuses that block on a human decision; agents are not busy
RUN_USER_INTERACTION_STATUSES = frozenset(
    {
        RunStatus.COST_ESTIMATED.value,
        RunStatus.PLANNED.value,
        RunStatus.PLANNED_AND_SAVED.value,
        RunStatus.POLICY_OVERRIDE.value,
        RunStatus.POST_PLAN_AWAITING_DECISION.value,
        RunStatus.POST_PLAN_COMPLETED.value,
    }
)

# Current-run statuses that mean a workspace needs an agent (legacy demand signal)
RUN_PENDING_STATUSES = (
    RunStatus.PLAN_QUEUED.value,
    RunStatus.APPLY_QUEUED.value,
    RunStatus.APPLYING.value,
    RunStatus.PLANNING.value,
)

ALL_RUN_STATUSES = tuple(status.value for status in RunStatus)


def is_run_complete(status: str) -> bool:
    """Check if a run finished successfully."""
    return status in RUN_COMPLETE_STATUSES


def is_run_unsuccessful(status: str) -> bool:
    """Check if a run finished unsuccessfully."""
    return status in RUN_UNSUCCESSFUL_STATUSES


def is_run_final(status: str) -> bool:
    """Check if a run reached a terminal status."""
    return status in RUN_COMPLETE_STATUSES or status in RUN_UNSUCCESSFUL_STATUSES


# =============================================================================
# Remote value types
# =============================================================================


@dataclass
class PlatformInfo:
    """Capabilities of the remote platform."""

    is_cloud: bool
    version: str = ""


@dataclass
class RemoteAgentPool:
    """An agent pool as seen by the platform."""

    id: str
    name: str
    organization_scoped: bool = True


@dataclass
class RemoteAgentToken:
    """An agent token. The secret value is only returned on creation."""

    id: str
    description: str
    created_at: datetime | None = None
    last_used_at: datetime | None = None
    token: str | None = None


@dataclass
class RemoteRun:
    """A run on a workspace."""

    id: str
    status: str
    workspace_id: str = ""
    is_destroy: bool = False
    plan_only: bool = False
    refresh_only: bool = False
    configuration_version_id: str = ""
    created_at: datetime | None = None


@dataclass
class WorkspaceOptions:
    """Mutable workspace attributes pushed on create and update."""

    name: str
    description: str = ""
    execution_mode: str = "remote"
    agent_pool_id: str | None = None
    terraform_version: str | None = None
    auto_apply: bool = False
    project_id: str | None = None
    tags: list[str] = field(default_factory=list)
    global_remote_state: bool | None = None
    allow_destroy_plan: bool = True
    working_directory: str = ""


@dataclass
class RemoteWorkspace:
    """A workspace as seen by the platform."""

    id: str
    name: str
    description: str = ""
    execution_mode: str = "remote"
    agent_pool_id: str | None = None
    terraform_version: str = ""
    auto_apply: bool = False
    project_id: str | None = None
    tags: list[str] = field(default_factory=list)
    allow_destroy_plan: bool = True
    working_directory: str = ""
    global_remote_state: bool = False
    ssh_key_id: str | None = None
    current_run: RemoteRun | None = None

    def matches(self, options: WorkspaceOptions) -> bool:
        """Check if the workspace already reflects the given options."""
        return (
            self.name == options.name
            and self.description == options.description
            and self.execution_mode == options.execution_mode
            and (options.agent_pool_id is None or self.agent_pool_id == options.agent_pool_id)
            and (
                options.terraform_version is None
                or self.terraform_version == options.terraform_version
            )
            and self.auto_apply == options.auto_apply
            and (options.project_id is None or self.project_id == options.project_id)
            and sorted(self.tags) == sorted(options.tags)
            and self.allow_destroy_plan == options.allow_destroy_plan
            and self.working_directory == options.working_directory
            and (
                options.global_remote_state is None
                or self.global_remote_state == options.global_remote_state
            )
        )


@dataclass
class RemoteProject:
    """A project grouping workspaces."""

    id: str
    name: str


@dataclass
class RemoteTeam:
    """A team of the organization."""

    id: str
    name: str


@dataclass
class RemoteTeamAccess:
    """A team's access grant on a workspace or project."""

    id: str
    team_id: str
    access: str
    # Custom permissions as sent to and returned by the API
    permissions: dict[str, Any] = field(default_factory=dict)


@dataclass
class VariableOptions:
    """Attributes of a workspace variable pushed on create and update."""

    key: str
    value: str
    category: str
    description: str = ""
    hcl: bool = False
    sensitive: bool = False


@dataclass
class RemoteVariable:
    """A workspace variable. Sensitive values are never returned."""

    id: str
    key: str
    category: str
    value: str = ""
    description: str = ""
    hcl: bool = False
    sensitive: bool = False
    version_id: str = ""


@dataclass
class RemoteVariableSet:
    """A variable set of the organization."""

    id: str
    name: str
    is_global: bool = False
    workspace_ids: list[str] = field(default_factory=list)


@dataclass
class NotificationOptions:
    """Attributes of a notification configuration."""

    name: str
    destination_type: str
    enabled: bool = True
    url: str = ""
    token: str = ""
    triggers: list[str] = field(default_factory=list)
    email_addresses: list[str] = field(default_factory=list)
    email_user_ids: list[str] = field(default_factory=list)


@dataclass
class RemoteNotification:
    """A notification configuration. The token is write-only."""

    id: str
    name: str
    destination_type: str
    enabled: bool = True
    url: str = ""
    triggers: list[str] = field(default_factory=list)
    email_addresses: list[str] = field(default_factory=list)
    email_user_ids: list[str] = field(default_factory=list)

    def matches(self, options: NotificationOptions) -> bool:
        return (
            self.enabled == options.enabled
            and self.url == options.url
            and sorted(self.triggers) == sorted(options.triggers)
            and sorted(self.email_addresses) == sorted(options.email_addresses)
            and sorted(self.email_user_ids) == sorted(options.email_user_ids)
        )


@dataclass
class RemoteMembership:
    """An organization membership, used to find users by email."""

    id: str
    user_id: str
    email: str


@dataclass
class RemoteRunTrigger:
    """An inbound run trigger: a run in the source queues a run here."""

    id: str
    sourceable_id: str
    sourceable_name: str = ""


@dataclass
class RemoteSSHKey:
    """An SSH key of the organization."""

    id: str
    name: str


@dataclass
class RemoteRunTask:
    """A run task defined in the organization."""

    id: str
    name: str


@dataclass
class RemoteWorkspaceRunTask:
    """A run task attached to a workspace."""

    id: str
    task_id: str
    enforcement_level: str
    stage: str = "post_plan"


@dataclass
class RemoteConfigurationVersion:
    """An uploaded configuration for a workspace."""

    id: str
    status: str
    upload_url: str = ""
    speculative: bool = False


@dataclass
class RemoteOutput:
    """A state output of a workspace."""

    name: str
    value: Any
    sensitive: bool = False


@dataclass
class RunOptions:
    """Options for starting a run."""

    is_destroy: bool = False
    plan_only: bool = False
    refresh_only: bool = False
    auto_apply: bool | None = None
    terraform_version: str | None = None
    configuration_version_id: str | None = None
    message: str = RUN_MESSAGE


T = TypeVar("T")


@dataclass
class Page(Generic[T]):
    """One page of a paginated list."""

    items: list[T]
    next_page: int | None = None


# Configuration version upload statuses
CONFIGURATION_UPLOADED = "uploaded"
CONFIGURATION_PENDING = "pending"
CONFIGURATION_ERRORED = "errored"


class RemoteClient(Protocol):
    """Operations the operator consumes from the platform.

    All methods raise ResourceNotFound, NotSafeToDelete or RemoteError.
    """

    async def platform_info(self) -> PlatformInfo: ...

    # Agent pools
    async def create_agent_pool(self, organization: str, name: str) -> RemoteAgentPool: ...
    async def read_agent_pool(self, pool_id: str) -> RemoteAgentPool: ...
    async def update_agent_pool(self, pool_id: str, name: str) -> RemoteAgentPool: ...
    async def delete_agent_pool(self, pool_id: str) -> None: ...
    async def list_agent_pools(
        self, organization: str, *, page: int = INIT_PAGE_NUMBER
    ) -> Page[RemoteAgentPool]: ...

    # Agent tokens
    async def list_agent_tokens(
        self, pool_id: str, *, page: int = INIT_PAGE_NUMBER
    ) -> Page[RemoteAgentToken]: ...
    async def create_agent_token(self, pool_id: str, description: str) -> RemoteAgentToken: ...
    async def delete_agent_token(self, token_id: str) -> None: ...

    # Workspaces
    async def create_workspace(
        self, organization: str, options: WorkspaceOptions
    ) -> RemoteWorkspace: ...
    async def read_workspace(self, workspace_id: str) -> RemoteWorkspace: ...
    async def read_workspace_by_name(self, organization: str, name: str) -> RemoteWorkspace: ...
    async def update_workspace(
        self, workspace_id: str, options: WorkspaceOptions
    ) -> RemoteWorkspace: ...
    async def delete_workspace(self, workspace_id: str) -> None: ...
    async def safe_delete_workspace(self, workspace_id: str) -> None: ...
    async def list_workspaces(
        self,
        organization: str,
        *,
        current_run_status: str | None = None,
        project_id: str | None = None,
        page: int = INIT_PAGE_NUMBER,
    ) -> Page[RemoteWorkspace]: ...
    async def list_outputs(self, workspace_id: str) -> list[RemoteOutput]: ...

    # Runs
    async def create_run(self, workspace_id: str, options: RunOptions) -> RemoteRun: ...
    async def read_run(self, run_id: str) -> RemoteRun: ...
    async def list_organization_runs(
        self,
        organization: str,
        *,
        agent_pool_names: list[str] | None = None,
        status_group: str = "non_final",
        page: int = INIT_PAGE_NUMBER,
    ) -> Page[RemoteRun]: ...

    # Configuration versions
    async def create_configuration_version(
        self, workspace_id: str, *, speculative: bool = False
    ) -> RemoteConfigurationVersion: ...
    async def upload_configuration(
        self, configuration_version: RemoteConfigurationVersion, archive: bytes
    ) -> None: ...
    async def read_configuration_version(self, cv_id: str) -> RemoteConfigurationVersion: ...

    # Projects
    async def create_project(self, organization: str, name: str) -> RemoteProject: ...
    async def read_project(self, project_id: str) -> RemoteProject: ...
    async def update_project(self, project_id: str, name: str) -> RemoteProject: ...
    async def delete_project(self, project_id: str) -> None: ...
    async def list_projects(
        self, organization: str, *, name: str | None = None, page: int = INIT_PAGE_NUMBER
    ) -> Page[RemoteProject]: ...

    # Teams and team access
    async def list_teams(
        self, organization: str, *, names: list[str] | None = None, page: int = INIT_PAGE_NUMBER
    ) -> Page[RemoteTeam]: ...
    async def list_workspace_team_access(
        self, workspace_id: str, *, page: int = INIT_PAGE_NUMBER
    ) -> Page[RemoteTeamAccess]: ...
    async def add_workspace_team_access(
        self, workspace_id: str, team_id: str, access: str, permissions: dict[str, Any]
    ) -> RemoteTeamAccess: ...
    async def update_workspace_team_access(
        self, access_id: str, access: str, permissions: dict[str, Any]
    ) -> RemoteTeamAccess: ...
    async def remove_workspace_team_access(self, access_id: str) -> None: ...
    async def list_project_team_access(
        self, project_id: str, *, page: int = INIT_PAGE_NUMBER
    ) -> Page[RemoteTeamAccess]: ...
    async def add_project_team_access(
        self, project_id: str, team_id: str, access: str, permissions: dict[str, Any]
    ) -> RemoteTeamAccess: ...
    async def update_project_team_access(
        self, access_id: str, access: str, permissions: dict[str, Any]
    ) -> RemoteTeamAccess: ...
    async def remove_project_team_access(self, access_id: str) -> None: ...

    # Variables and variable sets
    async def list_variables(self, workspace_id: str) -> list[RemoteVariable]: ...
    async def create_variable(
        self, workspace_id: str, options: VariableOptions
    ) -> RemoteVariable: ...
    async def update_variable(
        self, workspace_id: str, variable_id: str, options: VariableOptions
    ) -> RemoteVariable: ...
    async def delete_variable(self, workspace_id: str, variable_id: str) -> None: ...
    async def list_variable_sets(
        self, organization: str, *, page: int = INIT_PAGE_NUMBER
    ) -> Page[RemoteVariableSet]: ...
    async def apply_variable_set(self, variable_set_id: str, workspace_id: str) -> None: ...
    async def remove_variable_set(self, variable_set_id: str, workspace_id: str) -> None: ...

    # Notifications
    async def list_notifications(
        self, workspace_id: str, *, page: int = INIT_PAGE_NUMBER
    ) -> Page[RemoteNotification]: ...
    async def create_notification(
        self, workspace_id: str, options: NotificationOptions
    ) -> RemoteNotification: ...
    async def update_notification(
        self, notification_id: str, options: NotificationOptions
    ) -> RemoteNotification: ...
    async def delete_notification(self, notification_id: str) -> None: ...
    async def list_memberships(
        self, organization: str, *, emails: list[str], page: int = INIT_PAGE_NUMBER
    ) -> Page[RemoteMembership]: ...

    # Run triggers
    async def list_run_triggers(
        self, workspace_id: str, *, page: int = INIT_PAGE_NUMBER
    ) -> Page[RemoteRunTrigger]: ...
    async def create_run_trigger(
        self, workspace_id: str, sourceable_id: str
    ) -> RemoteRunTrigger: ...
    async def delete_run_trigger(self, run_trigger_id: str) -> None: ...

    # Remote state consumers
    async def list_remote_state_consumers(
        self, workspace_id: str, *, page: int = INIT_PAGE_NUMBER
    ) -> Page[RemoteWorkspace]: ...
    async def replace_remote_state_consumers(
        self, workspace_id: str, consumer_ids: list[str]
    ) -> None: ...

    # SSH keys
    async def list_ssh_keys(
        self, organization: str, *, page: int = INIT_PAGE_NUMBER
    ) -> Page[RemoteSSHKey]: ...
    async def assign_ssh_key(self, workspace_id: str, ssh_key_id: str) -> RemoteWorkspace: ...
    async def unassign_ssh_key(self, workspace_id: str) -> RemoteWorkspace: ...

    # Run tasks
    async def list_run_tasks(
        self, organization: str, *, page: int = INIT_PAGE_NUMBER
    ) -> Page[RemoteRunTask]: ...
    async def list_workspace_run_tasks(
        self, workspace_id: str, *, page: int = INIT_PAGE_NUMBER
    ) -> Page[RemoteWorkspaceRunTask]: ...
    async def create_workspace_run_task(
        self, workspace_id: str, task_id: str, enforcement_level: str, stage: str
    ) -> RemoteWorkspaceRunTask: ...
    async def update_workspace_run_task(
        self, workspace_id: str, attachment_id: str, enforcement_level: str, stage: str
    ) -> RemoteWorkspaceRunTask: ...
    async def delete_workspace_run_task(self, workspace_id: str, attachment_id: str) -> None: ...


async def iterate_pages(
    fetch: Callable[[int], Awaitable[Page[T]]],
) -> AsyncIterator[T]:
    """Yield every item of a paginated list, following next-page cursors."""
    page_number = INIT_PAGE_NUMBER
    while True:
        page = await fetch(page_number)
        for item in page.items:
            yield item
        if not page.next_page:
            return
        page_number = page.next_page


async def collect_pages(fetch: Callable[[int], Awaitable[Page[T]]]) -> list[T]:
    """Collect every item of a paginated list."""
    return [item async for item in iterate_pages(fetch)]
