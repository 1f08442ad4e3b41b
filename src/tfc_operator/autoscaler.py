"""Agent pool autoscaling.

Scales an agent deployment to the number of agents the pool's pending
work needs, within [minReplicas, maxReplicas], at most once per cooldown.

DEMAND SIGNAL (chosen once per pass from the platform version):
- Modern: non-final runs of the organization filtered by pool name.
  Runs waiting on a human decision need no agent. Plan-only runs count
  one each (they can run beside an apply on the same workspace); every
  other run counts once per workspace.
- Legacy: workspaces whose current run is queued or running on this pool,
  narrowed by optional target selectors (id, exact name or wildcard name).

COOLDOWN:
With no previous scaling event the cooldown has expired. Otherwise the
period is cooldownPeriodSeconds (default 300), overridden per direction by
cooldownPeriod.scaleUpSeconds / scaleDownSeconds when set.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Callable
from datetime import UTC, datetime
from enum import Enum

from .events import EventRecorder
from .fleet import AgentFleet, agent_deployment_name
from .metrics import AGENT_POOL_DESIRED_REPLICAS
from .models import AgentPool, AutoscalingConfig, AutoscalingStatus, TargetWorkspace
from .remote import (
    RUN_PENDING_STATUSES,
    RUN_USER_INTERACTION_STATUSES,
    PlatformInfo,
    RemoteClient,
    RemoteRun,
    RemoteWorkspace,
    collect_pages,
    is_run_final,
)

logger = logging.getLogger(__name__)

# Terraform Enterprise release versions look like v202409-1
RELEASE_VERSION_PATTERN = re.compile(r"^v([0-9]{6})-([0-9]{1})$")
SEMANTIC_VERSION_PATTERN = re.compile(r"^v?[0-9]+\.[0-9]+\.[0-9]+")

# First release whose runs endpoint supports agent pool filtering: v202409-1
RUNS_ENDPOINT_MIN_RELEASE = 2024091

SCALING_EVENT_REASON = "AutoscaleAgentPoolDeployment"


class MalformedVersionError(ValueError):
    """Raised when the platform reports a version in an unknown format."""

    pass


class DemandAlgorithm(str, Enum):
    """How pending work is counted."""

    MODERN = "modern"
    LEGACY = "legacy"


def supports_runs_endpoint(platform: PlatformInfo) -> bool:
    """Check if the platform can list runs filtered by agent pool.

    HCP Terraform always can. Terraform Enterprise can from release
    v202409-1 on; semantic versions and an empty version also count as
    capable.

    Raises:
        MalformedVersionError: If the version matches no known format.
    """
    if platform.is_cloud or not platform.version:
        return True

    match = RELEASE_VERSION_PATTERN.match(platform.version)
    if match:
        release = int(match.group(1) + match.group(2))
        return release >= RUNS_ENDPOINT_MIN_RELEASE

    if SEMANTIC_VERSION_PATTERN.match(platform.version):
        return True

    raise MalformedVersionError(f"Malformed Terraform Enterprise version: {platform.version!r}")


def match_wildcard_name(wildcard: str, name: str) -> bool:
    """Match a name against a pattern with optional '*' at either end.

    '*-suffix' matches names ending in '-suffix', 'prefix-*' names starting
    with 'prefix-', '*-infix-*' names containing '-infix-'. Without '*' the
    match is exact.
    """
    has_prefix = wildcard.endswith("*")
    has_suffix = wildcard.startswith("*")
    needle = wildcard.strip("*")
    if has_prefix and has_suffix:
        return needle in name
    if has_prefix:
        return name.startswith(needle)
    if has_suffix:
        return name.endswith(needle)
    return needle == name


def compute_desired_replicas(demand: int, min_replicas: int, max_replicas: int) -> int:
    if demand <= min_replicas:
        return min_replicas
    if demand >= max_replicas:
        return max_replicas
    return demand


def count_run_demand(runs: list[RemoteRun]) -> int:
    """Agents needed for a list of non-final runs."""
    apply_workspaces: set[str] = set()
    plan_only_runs = 0
    for run in runs:
        if run.status in RUN_USER_INTERACTION_STATUSES or is_run_final(run.status):
            continue
        if run.plan_only:
            plan_only_runs += 1
        else:
            apply_workspaces.add(run.workspace_id)
    return len(apply_workspaces) + plan_only_runs


def count_workspace_demand(
    workspaces: list[RemoteWorkspace],
    pool_id: str,
    targets: list[TargetWorkspace] | None,
) -> int:
    """Agents needed for workspaces with pending runs on a pool.

    A workspace consumed by a name or wildcard selector is removed from the
    candidates, so overlapping selectors never count it twice.
    """
    names: set[str] = set()
    ids: set[str] = set()
    for workspace in workspaces:
        if workspace.agent_pool_id == pool_id:
            names.add(workspace.name)
            ids.add(workspace.id)

    if targets is None:
        return len(names)

    required = 0
    for target in targets:
        if target.name:
            if target.name in names:
                required += 1
                names.discard(target.name)
        elif target.id:
            if target.id in ids:
                required += 1
        elif target.wildcard_name:
            for name in sorted(names):
                if match_wildcard_name(target.wildcard_name, name):
                    required += 1
                    names.discard(name)
    return required


def cooldown_period_seconds(
    config: AutoscalingConfig, current: int, desired: int, default_seconds: int
) -> int:
    """Pick the cooldown period for a scaling decision from current to desired."""
    period = config.cooldown_period_seconds
    if period is None:
        period = default_seconds
    overrides = config.cooldown_period
    if overrides is not None:
        if desired > current and overrides.scale_up_seconds is not None:
            return overrides.scale_up_seconds
        if desired < current and overrides.scale_down_seconds is not None:
            return overrides.scale_down_seconds
    return period


def cooldown_seconds_remaining(
    status: AutoscalingStatus | None, period_seconds: int, now: datetime
) -> int:
    """Seconds left in the cooldown. Zero or negative means expired."""
    if status is None or status.last_scaling_event is None:
        return -1
    elapsed = int((now - status.last_scaling_event).total_seconds())
    return period_seconds - elapsed


class AgentPoolAutoscaler:
    """Applies one scaling decision per reconciliation pass."""

    def __init__(
        self,
        fleet: AgentFleet,
        events: EventRecorder,
        *,
        default_cooldown_seconds: int,
        clock: Callable[[], datetime] = lambda: datetime.now(UTC),
    ) -> None:
        self._fleet = fleet
        self._events = events
        self._default_cooldown_seconds = default_cooldown_seconds
        self._clock = clock

    async def select_algorithm(self, remote: RemoteClient, record: AgentPool) -> DemandAlgorithm:
        platform = await remote.platform_info()
        try:
            modern = supports_runs_endpoint(platform)
        except MalformedVersionError as e:
            self._events.warning(record, SCALING_EVENT_REASON, f"{e}, using workspace demand")
            return DemandAlgorithm.LEGACY
        return DemandAlgorithm.MODERN if modern else DemandAlgorithm.LEGACY

    async def compute_demand(
        self,
        remote: RemoteClient,
        record: AgentPool,
        autoscaling: AutoscalingConfig,
        algorithm: DemandAlgorithm,
    ) -> int:
        organization = record.spec.organization

        if algorithm == DemandAlgorithm.MODERN:
            runs = await collect_pages(
                lambda page: remote.list_organization_runs(
                    organization, agent_pool_names=[record.spec.name], page=page
                )
            )
            return count_run_demand(runs)

        workspaces = await collect_pages(
            lambda page: remote.list_workspaces(
                organization, current_run_status=",".join(RUN_PENDING_STATUSES), page=page
            )
        )
        return count_workspace_demand(
            workspaces, record.status.external_id, autoscaling.target_workspaces
        )

    async def reconcile(self, remote: RemoteClient, record: AgentPool) -> None:
        """Scale the agent deployment of a pool; updates record.status in place."""
        autoscaling = record.spec.autoscaling
        if autoscaling is None:
            return

        namespace = record.metadata.namespace
        deployment = agent_deployment_name(record.metadata.name)
        log_extra = {"namespace": namespace, "agent_pool": record.metadata.name}

        algorithm = await self.select_algorithm(remote, record)
        demand = await self.compute_demand(remote, record, autoscaling, algorithm)
        current = await self._fleet.get_replicas(namespace, deployment)
        desired = compute_desired_replicas(
            demand, autoscaling.min_replicas, autoscaling.max_replicas
        )
        logger.info(
            "Computed agent demand",
            extra={
                **log_extra,
                "algorithm": algorithm.value,
                "demand": demand,
                "current_replicas": current,
                "desired_replicas": desired,
            },
        )

        if record.status.autoscaling is None:
            record.status.autoscaling = AutoscalingStatus(desired_replicas=desired)

        if desired != current:
            period = cooldown_period_seconds(
                autoscaling, current, desired, self._default_cooldown_seconds
            )
            now = self._clock()
            remaining = cooldown_seconds_remaining(record.status.autoscaling, period, now)
            if remaining > 0:
                logger.info(
                    "Autoscaler is within the cooldown period, skipping",
                    extra={**log_extra, "cooldown_remaining_seconds": remaining},
                )
                return

            self._events.normal(
                record,
                SCALING_EVENT_REASON,
                f"Scaling agent deployment from {current} to {desired} replicas",
            )
            await self._fleet.scale(namespace, deployment, desired)
            record.status.autoscaling = AutoscalingStatus(
                desired_replicas=desired, last_scaling_event=now
            )

        AGENT_POOL_DESIRED_REPLICAS.labels(namespace=namespace, name=record.metadata.name).set(
            desired
        )
