"""Prometheus metrics definitions."""

from prometheus_client import Counter, Gauge, Histogram

from .remote import ALL_RUN_STATUSES

# =============================================================================
# Histogram Buckets
# =============================================================================
# Reconcile passes are dominated by remote API latency (10ms ~ 60s)
_BUCKETS_RECONCILE = (
    0.01, 0.02, 0.05, 0.1, 0.2,
    0.5, 1, 2, 5, 10,
    20, 60,
)  # 12 buckets

# =============================================================================
# Pending Runs (published by RunsCollector records)
# =============================================================================

RUNS_PENDING = Gauge(
    "hcp_tf_runs",
    "HCP Terraform runs by status",
    ["run_status", "agent_pool_id", "agent_pool_name"],
)

RUNS_PENDING_TOTAL = Gauge(
    "hcp_tf_runs_total",
    "Total number of non-final HCP Terraform runs",
    ["agent_pool_id", "agent_pool_name"],
)

# =============================================================================
# Operator Internals
# =============================================================================

RECONCILE_TOTAL = Counter(
    "tfc_operator_reconcile_total",
    "Reconciliation passes by kind and outcome",
    ["kind", "result"],
)

RECONCILE_DURATION = Histogram(
    "tfc_operator_reconcile_duration_seconds",
    "Duration of one reconciliation pass",
    ["kind"],
    buckets=_BUCKETS_RECONCILE,
)

AGENT_POOL_DESIRED_REPLICAS = Gauge(
    "tfc_operator_agent_pool_desired_replicas",
    "Replica count chosen by the autoscaler",
    ["namespace", "name"],
)


def publish_runs(pool_id: str, pool_name: str, statuses: list[str]) -> None:
    """Publish per-status and total run gauges for one agent pool.

    Every known status is written, so a status that drained to zero
    reads 0 instead of its last non-zero value.
    """
    counts = dict.fromkeys(ALL_RUN_STATUSES, 0)
    for status in statuses:
        counts[status] = counts.get(status, 0) + 1
    for status, count in counts.items():
        RUNS_PENDING.labels(
            run_status=status, agent_pool_id=pool_id, agent_pool_name=pool_name
        ).set(count)
    RUNS_PENDING_TOTAL.labels(agent_pool_id=pool_id, agent_pool_name=pool_name).set(len(statuses))


def forget_runs(pool_id: str, pool_name: str) -> None:
    """Remove every run series of one agent pool."""
    for status in ALL_RUN_STATUSES:
        try:
            RUNS_PENDING.remove(status, pool_id, pool_name)
        except KeyError:
            continue
    try:
        RUNS_PENDING_TOTAL.remove(pool_id, pool_name)
    except KeyError:
        pass
