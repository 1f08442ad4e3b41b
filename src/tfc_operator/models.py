"""Pydantic models for managed-resource records.

A record is the declared intent for one external object:
1. metadata - identity, generation, optimistic-concurrency version, deletion guard
2. spec     - desired state, only the fields reconciliation consults
3. status   - last observed state, written back by the operator

Shape validation happens when a record is parsed. Semantic checks that span
several fields (supported deletion policies per kind, min <= max, exactly one
selector per target) live in validate_spec() and raise SpecValidationError,
which reconciliation reports once and does not retry.
"""

from __future__ import annotations

import re
from datetime import datetime
from enum import Enum
from typing import Annotated, Any, ClassVar, NamedTuple

from pydantic import BaseModel, Field, field_validator

# Default cooldown between two scaling decisions
DEFAULT_COOLDOWN_PERIOD_SECONDS = 300

# Wildcard names may carry '*' only at the start and/or end
VALID_WILDCARD_PATTERN = r"^\*?[^*]+\*?$"


class SpecValidationError(Exception):
    """Raised when a record's spec is semantically invalid.

    This is a user error: requeueing cannot fix it, only a spec change can.
    """

    def __init__(self, errors: list[str]) -> None:
        self.errors = errors
        super().__init__("Spec validation failed:\n  - " + "\n  - ".join(errors))


class RecordKey(NamedTuple):
    """Namespace-qualified record name."""

    namespace: str
    name: str

    def __str__(self) -> str:
        return f"{self.namespace}/{self.name}"


class DeletionPolicy(str, Enum):
    """What happens to the external object when its record is deleted."""

    RETAIN = "retain"
    SOFT = "soft"
    DESTROY = "destroy"
    FORCE = "force"


class ManagementPolicy(str, Enum):
    """How an AgentToken record treats tokens it did not declare."""

    MERGE = "merge"
    OWNER = "owner"


class RunType(str, Enum):
    """Kinds of runs a record can request."""

    PLAN = "plan"
    APPLY = "apply"
    REFRESH = "refresh"


# =============================================================================
# Metadata
# =============================================================================


class RecordMetadata(BaseModel):
    """Identity and lifecycle flags of a record.

    guard_present and deletion_timestamp together form the two-flag deletion
    protocol: a record is only erased once deletion was requested and no guard
    remains.
    """

    model_config = {"extra": "ignore", "populate_by_name": True}

    name: Annotated[str, Field(min_length=1, max_length=253)]
    namespace: str = "default"
    uid: str = ""
    generation: int = 1
    resource_version: int = Field(0, alias="resourceVersion")
    guard_present: bool = Field(False, alias="guardPresent")
    deletion_timestamp: datetime | None = Field(None, alias="deletionTimestamp")
    paused: bool = False
    labels: dict[str, str] = Field(default_factory=dict)
    annotations: dict[str, str] = Field(default_factory=dict)

    @property
    def marked_for_deletion(self) -> bool:
        return self.deletion_timestamp is not None


# =============================================================================
# Shared spec building blocks
# =============================================================================


class SecretKeyRef(BaseModel):
    """Reference to one key of a secret."""

    model_config = {"extra": "ignore"}

    name: Annotated[str, Field(min_length=1)]
    key: Annotated[str, Field(min_length=1)]


class TokenSource(BaseModel):
    """Where the API token for a record is read from."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    secret_key_ref: SecretKeyRef = Field(alias="secretKeyRef")


class RetryPolicy(BaseModel):
    """Automatic retry of unsuccessful runs.

    backoff_limit: -1 retries forever, 0 never retries, N retries N times.
    """

    model_config = {"extra": "ignore", "populate_by_name": True}

    backoff_limit: Annotated[int, Field(ge=-1, alias="backoffLimit")] = 0


class ResourceRef(BaseModel):
    """Reference to a remote object by id or by name."""

    model_config = {"extra": "ignore"}

    id: str | None = None
    name: str | None = None


class AgentTokenName(BaseModel):
    """A declared agent token."""

    model_config = {"extra": "ignore"}

    name: Annotated[str, Field(min_length=1)]


class TargetWorkspace(BaseModel):
    """Selects workspaces whose pending runs count towards autoscaling demand."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    id: str | None = None
    name: str | None = None
    wildcard_name: str | None = Field(None, alias="wildcardName")


class CooldownPeriod(BaseModel):
    """Direction-specific cooldown overrides."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    scale_up_seconds: int | None = Field(None, ge=0, alias="scaleUpSeconds")
    scale_down_seconds: int | None = Field(None, ge=0, alias="scaleDownSeconds")


class AutoscalingConfig(BaseModel):
    """Agent deployment autoscaling."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    min_replicas: Annotated[int, Field(ge=0, alias="minReplicas")]
    max_replicas: Annotated[int, Field(ge=0, alias="maxReplicas")]
    target_workspaces: list[TargetWorkspace] | None = Field(None, alias="targetWorkspaces")
    cooldown_period_seconds: int | None = Field(None, ge=0, alias="cooldownPeriodSeconds")
    cooldown_period: CooldownPeriod | None = Field(None, alias="cooldownPeriod")


class AgentDeployment(BaseModel):
    """Worker deployment running the agents of a pool."""

    model_config = {"extra": "ignore"}

    replicas: int | None = Field(None, ge=0)
    image: str = "hashicorp/tfc-agent:latest"
    labels: dict[str, str] = Field(default_factory=dict)


class RecordSpec(BaseModel):
    """Fields every kind shares."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    organization: Annotated[str, Field(min_length=1)]
    token: TokenSource
    deletion_policy: DeletionPolicy | None = Field(None, alias="deletionPolicy")


# =============================================================================
# Shared status building blocks
# =============================================================================


class RecordStatus(BaseModel):
    """Fields every kind's status shares."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    observed_generation: int = Field(0, alias="observedGeneration")
    external_id: str = Field("", alias="externalID")


class TokenDescriptor(BaseModel):
    """Observed agent token."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    id: str
    name: str
    created_at: datetime | None = Field(None, alias="createdAt")
    last_used_at: datetime | None = Field(None, alias="lastUsedAt")


class RunDescriptor(BaseModel):
    """Observed run."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    id: str
    status: str = ""
    configuration_version_id: str = Field("", alias="configurationVersion")
    is_destroy: bool = Field(False, alias="isDestroy")


class RetryStatus(BaseModel):
    """Consecutive run failures and the last failed run already retried."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    failed_count: int = Field(0, alias="failed")
    failed_run_id: str = Field("", alias="failedRunID")


class AutoscalingStatus(BaseModel):
    """Last scaling decision."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    desired_replicas: int | None = Field(None, alias="desiredReplicas")
    last_scaling_event: datetime | None = Field(None, alias="lastScalingEvent")


class RunTrackingStatus(RecordStatus):
    """Status of kinds that start runs and tear down with a destroy run."""

    run: RunDescriptor | None = None
    destroy_run_id: str = Field("", alias="destroyRunID")
    retry: RetryStatus | None = None
    outputs: dict[str, Any] = Field(default_factory=dict)


class RunRequest(BaseModel):
    """One-shot command asking for a new run, cleared once consumed."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    type: RunType = RunType.APPLY
    terraform_version: str | None = Field(None, alias="terraformVersion")


# =============================================================================
# Records
# =============================================================================


class ManagedRecord(BaseModel):
    """Base for every record kind."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    kind: ClassVar[str] = ""
    supported_policies: ClassVar[frozenset[DeletionPolicy]] = frozenset({DeletionPolicy.RETAIN})

    metadata: RecordMetadata
    spec: RecordSpec
    status: RecordStatus = Field(default_factory=RecordStatus)
    run_request: RunRequest | None = Field(None, alias="runRequest")

    @property
    def key(self) -> RecordKey:
        return RecordKey(self.metadata.namespace, self.metadata.name)

    def deletion_policy(self, default: DeletionPolicy = DeletionPolicy.RETAIN) -> DeletionPolicy:
        """Return the declared policy, or the default when it is valid for this kind."""
        if self.spec.deletion_policy is not None:
            return self.spec.deletion_policy
        if default in self.supported_policies:
            return default
        return DeletionPolicy.RETAIN


# AgentPool -------------------------------------------------------------------


class AgentPoolSpec(RecordSpec):
    name: Annotated[str, Field(min_length=1)]
    agent_tokens: list[AgentTokenName] = Field(default_factory=list, alias="agentTokens")
    agent_deployment: AgentDeployment | None = Field(None, alias="agentDeployment")
    autoscaling: AutoscalingConfig | None = Field(None, alias="agentDeploymentAutoscaling")


class AgentPoolStatus(RecordStatus):
    agent_tokens: list[TokenDescriptor] = Field(default_factory=list, alias="agentTokens")
    autoscaling: AutoscalingStatus | None = Field(None, alias="agentDeploymentAutoscalingStatus")


class AgentPool(ManagedRecord):
    kind: ClassVar[str] = "AgentPool"
    supported_policies: ClassVar[frozenset[DeletionPolicy]] = frozenset(
        {DeletionPolicy.RETAIN, DeletionPolicy.DESTROY}
    )

    spec: AgentPoolSpec
    status: AgentPoolStatus = Field(default_factory=AgentPoolStatus)


# AgentToken ------------------------------------------------------------------


class AgentTokenSpec(RecordSpec):
    agent_pool: ResourceRef = Field(alias="agentPool")
    agent_tokens: list[AgentTokenName] = Field(default_factory=list, alias="agentTokens")
    secret_name: Annotated[str, Field(min_length=1, alias="secretName")]
    management_policy: ManagementPolicy = Field(ManagementPolicy.MERGE, alias="managementPolicy")


class AgentTokenStatus(RecordStatus):
    agent_tokens: list[TokenDescriptor] = Field(default_factory=list, alias="agentTokens")


class AgentToken(ManagedRecord):
    kind: ClassVar[str] = "AgentToken"
    supported_policies: ClassVar[frozenset[DeletionPolicy]] = frozenset(
        {DeletionPolicy.RETAIN, DeletionPolicy.DESTROY}
    )

    spec: AgentTokenSpec
    status: AgentTokenStatus = Field(default_factory=AgentTokenStatus)


# Module ----------------------------------------------------------------------


class ModuleSource(BaseModel):
    model_config = {"extra": "ignore"}

    source: Annotated[str, Field(min_length=1)]
    version: str | None = None


class ModuleVariable(BaseModel):
    model_config = {"extra": "ignore"}

    name: Annotated[str, Field(min_length=1)]


class ModuleOutput(BaseModel):
    model_config = {"extra": "ignore"}

    name: Annotated[str, Field(min_length=1)]
    sensitive: bool = False


class ModuleSpec(RecordSpec):
    module: ModuleSource
    workspace: ResourceRef
    name: str = "this"
    variables: list[ModuleVariable] = Field(default_factory=list)
    outputs: list[ModuleOutput] = Field(default_factory=list)
    destroy_on_deletion: bool = Field(False, alias="destroyOnDeletion")
    restarted_at: str | None = Field(None, alias="restartedAt")
    retry_policy: RetryPolicy | None = Field(None, alias="retryPolicy")

    @field_validator("name")
    @classmethod
    def validate_name(cls, v: str) -> str:
        if not re.match(r"^[A-Za-z_][A-Za-z0-9_-]*$", v):
            raise ValueError("name must be a valid Terraform identifier")
        return v


class ConfigurationVersionStatus(BaseModel):
    """Uploaded configuration and the generation it was rendered from."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    id: str
    status: str = ""
    generation: int = 0


class ModuleStatus(RunTrackingStatus):
    configuration_version: ConfigurationVersionStatus | None = Field(
        None, alias="configurationVersion"
    )
    workspace_name: str = Field("", alias="workspaceName")


class Module(ManagedRecord):
    kind: ClassVar[str] = "Module"
    supported_policies: ClassVar[frozenset[DeletionPolicy]] = frozenset(
        {DeletionPolicy.RETAIN, DeletionPolicy.DESTROY}
    )

    spec: ModuleSpec
    status: ModuleStatus = Field(default_factory=ModuleStatus)

    def deletion_policy(self, default: DeletionPolicy = DeletionPolicy.RETAIN) -> DeletionPolicy:
        if self.spec.deletion_policy is None and self.spec.destroy_on_deletion:
            return DeletionPolicy.DESTROY
        return super().deletion_policy(default)


# Team access -----------------------------------------------------------------

WORKSPACE_ACCESS_LEVELS = frozenset({"read", "plan", "write", "admin", "custom"})
PROJECT_ACCESS_LEVELS = frozenset({"read", "write", "maintain", "admin", "custom"})


class WorkspacePermissions(BaseModel):
    """Fine-grained workspace permissions for 'custom' access."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    runs: str = "read"
    run_tasks: bool = Field(False, alias="runTasks")
    sentinel: str = "none"
    state_versions: str = Field("none", alias="stateVersions")
    variables: str = "none"
    workspace_locking: bool = Field(False, alias="workspaceLocking")

    def to_attributes(self) -> dict[str, Any]:
        return {
            "runs": self.runs,
            "run-tasks": self.run_tasks,
            "sentinel-mocks": self.sentinel,
            "state-versions": self.state_versions,
            "variables": self.variables,
            "workspace-locking": self.workspace_locking,
        }


class ProjectPermissions(BaseModel):
    """Fine-grained project permissions for 'custom' access."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    project_access: str = Field("read", alias="projectAccess")
    team_management: str = Field("none", alias="teamManagement")
    create_workspace: bool = Field(False, alias="createWorkspace")
    delete_workspace: bool = Field(False, alias="deleteWorkspace")
    move_workspace: bool = Field(False, alias="moveWorkspace")
    lock_workspace: bool = Field(False, alias="lockWorkspace")
    runs: str = "read"
    run_tasks: bool = Field(False, alias="runTasks")
    sentinel_mocks: str = Field("none", alias="sentinelMocks")
    state_versions: str = Field("none", alias="stateVersions")
    variables: str = "none"

    def to_attributes(self) -> dict[str, Any]:
        return {
            "project-access": {
                "settings": self.project_access,
                "teams": self.team_management,
            },
            "workspace-access": {
                "create": self.create_workspace,
                "delete": self.delete_workspace,
                "move": self.move_workspace,
                "locking": self.lock_workspace,
                "runs": self.runs,
                "run-tasks": self.run_tasks,
                "sentinel-mocks": self.sentinel_mocks,
                "state-versions": self.state_versions,
                "variables": self.variables,
            },
        }


class WorkspaceTeamAccess(BaseModel):
    """Access a team has on the workspace."""

    model_config = {"extra": "ignore"}

    team: ResourceRef
    access: str
    custom: WorkspacePermissions | None = None

    @field_validator("access")
    @classmethod
    def validate_access(cls, v: str) -> str:
        if v not in WORKSPACE_ACCESS_LEVELS:
            raise ValueError(f"access must be one of {sorted(WORKSPACE_ACCESS_LEVELS)}")
        return v


class ProjectTeamAccess(BaseModel):
    """Access a team has on the project."""

    model_config = {"extra": "ignore"}

    team: ResourceRef
    access: str
    custom: ProjectPermissions | None = None

    @field_validator("access")
    @classmethod
    def validate_access(cls, v: str) -> str:
        if v not in PROJECT_ACCESS_LEVELS:
            raise ValueError(f"access must be one of {sorted(PROJECT_ACCESS_LEVELS)}")
        return v


# Workspace settings ----------------------------------------------------------

NOTIFICATION_TYPES = frozenset({"email", "generic", "microsoft-teams", "slack"})
RUN_TASK_STAGES = frozenset({"pre_plan", "post_plan", "pre_apply", "post_apply"})
RUN_TASK_ENFORCEMENT_LEVELS = frozenset({"advisory", "mandatory"})


class VariableSource(BaseModel):
    """Where a variable value is read from instead of the manifest."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    secret_key_ref: SecretKeyRef = Field(alias="secretKeyRef")


class WorkspaceVariable(BaseModel):
    """A Terraform or environment variable of the workspace."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    name: Annotated[str, Field(min_length=1)]
    description: str = ""
    hcl: bool = False
    sensitive: bool = False
    value: str | None = None
    value_from: VariableSource | None = Field(None, alias="valueFrom")


class Notification(BaseModel):
    """A notification configuration of the workspace."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    name: Annotated[str, Field(min_length=1)]
    type: str
    url: str = ""
    enabled: bool = True
    token: str = ""
    triggers: list[str] = Field(default_factory=list)
    email_addresses: list[str] = Field(default_factory=list, alias="emailAddresses")
    email_users: list[str] = Field(default_factory=list, alias="emailUsers")

    @field_validator("type")
    @classmethod
    def validate_type(cls, v: str) -> str:
        if v not in NOTIFICATION_TYPES:
            raise ValueError(f"type must be one of {sorted(NOTIFICATION_TYPES)}")
        return v


class RemoteStateSharing(BaseModel):
    """Who may read the workspace's state outputs."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    all_workspaces: bool = Field(False, alias="allWorkspaces")
    workspaces: list[ResourceRef] = Field(default_factory=list)


class WorkspaceRunTask(BaseModel):
    """A run task attached to the workspace."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    id: str | None = None
    name: str | None = None
    enforcement_level: str = Field(alias="enforcementLevel")
    stage: str = "post_plan"

    @field_validator("enforcement_level")
    @classmethod
    def validate_enforcement_level(cls, v: str) -> str:
        if v not in RUN_TASK_ENFORCEMENT_LEVELS:
            levels = sorted(RUN_TASK_ENFORCEMENT_LEVELS)
            raise ValueError(f"enforcementLevel must be one of {levels}")
        return v

    @field_validator("stage")
    @classmethod
    def validate_stage(cls, v: str) -> str:
        if v not in RUN_TASK_STAGES:
            raise ValueError(f"stage must be one of {sorted(RUN_TASK_STAGES)}")
        return v


class VariableStatus(BaseModel):
    """Last pushed version of a variable."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    name: str
    id: str
    category: str
    version_id: str = Field("", alias="versionID")
    value_id: str = Field("", alias="valueID")


class VariableSetStatus(BaseModel):
    """A variable set this record applied to the workspace."""

    model_config = {"extra": "ignore"}

    id: str
    name: str = ""


# Project ---------------------------------------------------------------------


class ProjectSpec(RecordSpec):
    name: Annotated[str, Field(min_length=1, max_length=40)]
    team_access: list[ProjectTeamAccess] = Field(default_factory=list, alias="teamAccess")


class ProjectStatus(RecordStatus):
    name: str = ""


class Project(ManagedRecord):
    """Project. `destroy` behaves like `soft`: it waits until the project is empty."""

    kind: ClassVar[str] = "Project"
    supported_policies: ClassVar[frozenset[DeletionPolicy]] = frozenset(
        {DeletionPolicy.RETAIN, DeletionPolicy.SOFT, DeletionPolicy.DESTROY, DeletionPolicy.FORCE}
    )

    spec: ProjectSpec
    status: ProjectStatus = Field(default_factory=ProjectStatus)


# RunsCollector ---------------------------------------------------------------


class RunsCollectorSpec(RecordSpec):
    agent_pool: ResourceRef = Field(alias="agentPool")


class RunsCollector(ManagedRecord):
    kind: ClassVar[str] = "RunsCollector"

    spec: RunsCollectorSpec


# Workspace -------------------------------------------------------------------


class WorkspaceSpec(RecordSpec):
    name: Annotated[str, Field(min_length=1, max_length=90)]
    description: str = ""
    execution_mode: str = Field("remote", alias="executionMode")
    agent_pool: ResourceRef | None = Field(None, alias="agentPool")
    terraform_version: str | None = Field(None, alias="terraformVersion")
    apply_method: str = Field("manual", alias="applyMethod")
    allow_destroy_plan: bool = Field(True, alias="allowDestroyPlan")
    working_directory: str = Field("", alias="workingDirectory")
    project: ResourceRef | None = None
    tags: list[str] = Field(default_factory=list)
    retry_policy: RetryPolicy | None = Field(None, alias="retryPolicy")
    terraform_variables: list[WorkspaceVariable] = Field(
        default_factory=list, alias="terraformVariables"
    )
    environment_variables: list[WorkspaceVariable] = Field(
        default_factory=list, alias="environmentVariables"
    )
    variable_sets: list[ResourceRef] = Field(default_factory=list, alias="variableSets")
    ssh_key: ResourceRef | None = Field(None, alias="sshKey")
    notifications: list[Notification] = Field(default_factory=list)
    team_access: list[WorkspaceTeamAccess] = Field(default_factory=list, alias="teamAccess")
    run_triggers: list[ResourceRef] = Field(default_factory=list, alias="runTriggers")
    remote_state_sharing: RemoteStateSharing | None = Field(None, alias="remoteStateSharing")
    run_tasks: list[WorkspaceRunTask] = Field(default_factory=list, alias="runTasks")

    @field_validator("execution_mode")
    @classmethod
    def validate_execution_mode(cls, v: str) -> str:
        valid_modes = {"agent", "local", "remote"}
        if v not in valid_modes:
            raise ValueError(f"executionMode must be one of {valid_modes}")
        return v

    @field_validator("apply_method")
    @classmethod
    def validate_apply_method(cls, v: str) -> str:
        if v not in {"auto", "manual"}:
            raise ValueError("applyMethod must be 'auto' or 'manual'")
        return v


class WorkspaceStatus(RunTrackingStatus):
    plan: RunDescriptor | None = None
    terraform_version: str = Field("", alias="terraformVersion")
    workspace_name: str = Field("", alias="workspaceName")
    variables: list[VariableStatus] = Field(default_factory=list)
    variable_sets: list[VariableSetStatus] = Field(default_factory=list, alias="variableSets")
    ssh_key_id: str = Field("", alias="sshKeyID")


class Workspace(ManagedRecord):
    kind: ClassVar[str] = "Workspace"
    supported_policies: ClassVar[frozenset[DeletionPolicy]] = frozenset(DeletionPolicy)

    spec: WorkspaceSpec
    status: WorkspaceStatus = Field(default_factory=WorkspaceStatus)


RECORD_TYPES: dict[str, type[ManagedRecord]] = {
    cls.kind: cls for cls in (AgentPool, AgentToken, Module, Project, RunsCollector, Workspace)
}


# =============================================================================
# Semantic validation
# =============================================================================


def _validate_ref(ref: ResourceRef, field_name: str, errors: list[str]) -> None:
    if bool(ref.id) == bool(ref.name):
        errors.append(f"{field_name}: exactly one of id or name must be set")


def _validate_token_names(tokens: list[AgentTokenName], errors: list[str]) -> None:
    seen: set[str] = set()
    for token in tokens:
        if token.name in seen:
            errors.append(f"agentTokens: duplicate token name {token.name!r}")
        seen.add(token.name)


def _validate_autoscaling(spec: AgentPoolSpec, errors: list[str]) -> None:
    autoscaling = spec.autoscaling
    if autoscaling is None:
        return
    if autoscaling.min_replicas > autoscaling.max_replicas:
        errors.append(
            "agentDeploymentAutoscaling: minReplicas must be less than or equal to maxReplicas"
        )
    for index, target in enumerate(autoscaling.target_workspaces or []):
        selectors = [s for s in (target.id, target.name, target.wildcard_name) if s]
        if len(selectors) != 1:
            errors.append(
                f"targetWorkspaces[{index}]: exactly one of id, name or wildcardName must be set"
            )
        if target.wildcard_name and not re.match(VALID_WILDCARD_PATTERN, target.wildcard_name):
            errors.append(
                f"targetWorkspaces[{index}]: wildcardName may only use '*' at the start or end"
            )


def _validate_refs(refs: list[ResourceRef], field_name: str, errors: list[str]) -> None:
    seen: set[tuple[str | None, str | None]] = set()
    for index, ref in enumerate(refs):
        _validate_ref(ref, f"{field_name}[{index}]", errors)
        if (ref.id, ref.name) in seen:
            errors.append(f"{field_name}[{index}]: duplicate entry {ref.id or ref.name!r}")
        seen.add((ref.id, ref.name))


def _validate_variables(
    variables: list[WorkspaceVariable], field_name: str, errors: list[str]
) -> None:
    seen: set[str] = set()
    for variable in variables:
        if variable.name in seen:
            errors.append(f"{field_name}: duplicate variable name {variable.name!r}")
        seen.add(variable.name)
        if variable.value is not None and variable.value_from is not None:
            errors.append(f"{field_name}: {variable.name!r} sets both value and valueFrom")


def _validate_notifications(notifications: list[Notification], errors: list[str]) -> None:
    seen: set[str] = set()
    for notification in notifications:
        where = f"notifications: {notification.name!r}"
        if notification.name in seen:
            errors.append(f"{where} is declared more than once")
        seen.add(notification.name)
        has_emails = bool(notification.email_addresses or notification.email_users)
        if notification.type == "email":
            if notification.token or notification.url:
                errors.append(f"{where} of type 'email' cannot set token or url")
            if not has_emails:
                errors.append(f"{where} of type 'email' needs emailAddresses or emailUsers")
            continue
        if has_emails:
            errors.append(f"{where} can only set emailAddresses or emailUsers with type 'email'")
        if not notification.url:
            errors.append(f"{where} of type {notification.type!r} needs a url")
        if notification.type == "generic":
            if not notification.token:
                errors.append(f"{where} of type 'generic' needs a token")
        elif notification.token:
            errors.append(f"{where} of type {notification.type!r} cannot set a token")


def _validate_team_access(
    entries: list[WorkspaceTeamAccess] | list[ProjectTeamAccess], errors: list[str]
) -> None:
    _validate_refs([entry.team for entry in entries], "teamAccess.team", errors)
    for index, entry in enumerate(entries):
        if entry.custom is not None and entry.access != "custom":
            errors.append(f"teamAccess[{index}]: custom can only be set when access is 'custom'")


def _validate_remote_state_sharing(sharing: RemoteStateSharing, errors: list[str]) -> None:
    if sharing.all_workspaces == bool(sharing.workspaces):
        errors.append(
            "remoteStateSharing: exactly one of allWorkspaces or workspaces must be set"
        )
    _validate_refs(sharing.workspaces, "remoteStateSharing.workspaces", errors)


def _validate_workspace(spec: WorkspaceSpec, errors: list[str]) -> None:
    if spec.agent_pool is not None:
        _validate_ref(spec.agent_pool, "agentPool", errors)
        if spec.execution_mode != "agent":
            errors.append("agentPool can only be set when executionMode is 'agent'")
    elif spec.execution_mode == "agent":
        errors.append("agentPool is required when executionMode is 'agent'")
    if spec.project is not None:
        _validate_ref(spec.project, "project", errors)
    if spec.ssh_key is not None:
        _validate_ref(spec.ssh_key, "sshKey", errors)
    _validate_variables(spec.terraform_variables, "terraformVariables", errors)
    _validate_variables(spec.environment_variables, "environmentVariables", errors)
    _validate_refs(spec.variable_sets, "variableSets", errors)
    _validate_notifications(spec.notifications, errors)
    _validate_team_access(spec.team_access, errors)
    _validate_refs(spec.run_triggers, "runTriggers", errors)
    if spec.remote_state_sharing is not None:
        _validate_remote_state_sharing(spec.remote_state_sharing, errors)
    _validate_refs(
        [ResourceRef(id=task.id, name=task.name) for task in spec.run_tasks], "runTasks", errors
    )


def validate_spec(record: ManagedRecord, default_policy: DeletionPolicy) -> None:
    """Run cross-field checks on a record.

    Args:
        record: Record to check.
        default_policy: Operator-wide deletion policy applied when the record omits one.

    Raises:
        SpecValidationError: With every violation found.
    """
    errors: list[str] = []

    policy = record.deletion_policy(default_policy)
    if policy not in record.supported_policies:
        supported = sorted(p.value for p in record.supported_policies)
        errors.append(
            f"deletionPolicy {policy.value!r} is not supported by {record.kind}, "
            f"expected one of {supported}"
        )

    match record:
        case AgentPool():
            _validate_token_names(record.spec.agent_tokens, errors)
            _validate_autoscaling(record.spec, errors)
        case AgentToken():
            _validate_ref(record.spec.agent_pool, "agentPool", errors)
            _validate_token_names(record.spec.agent_tokens, errors)
            if not record.spec.agent_tokens:
                errors.append("agentTokens: at least one token must be declared")
        case Module():
            _validate_ref(record.spec.workspace, "workspace", errors)
        case Project():
            _validate_team_access(record.spec.team_access, errors)
        case RunsCollector():
            _validate_ref(record.spec.agent_pool, "agentPool", errors)
        case Workspace():
            _validate_workspace(record.spec, errors)

    if errors:
        raise SpecValidationError(errors)


def parse_record(document: dict[str, Any]) -> ManagedRecord:
    """Build a typed record from a manifest document.

    Raises:
        KeyError: If the kind is unknown.
        pydantic.ValidationError: If the document does not match the kind's schema.
    """
    record_type = RECORD_TYPES[document["kind"]]
    return record_type.model_validate(document)
