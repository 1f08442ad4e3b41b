"""Configuration management with validation.

All values are read from the environment once at startup and validated
at construction time, so a misconfigured operator refuses to start
instead of failing halfway through a deletion.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import TypeVar

from .models import DEFAULT_COOLDOWN_PERIOD_SECONDS, DeletionPolicy


E = TypeVar("E", bound=Enum)


class ConfigurationError(Exception):
    """Raised when configuration validation fails."""

    pass


class Backend(str, Enum):
    """Where secrets and agent deployments live."""

    KUBERNETES = "kubernetes"
    MEMORY = "memory"


# Record kinds handled by the operator, in startup order
KINDS = ("AgentPool", "AgentToken", "Module", "Project", "RunsCollector", "Workspace")

# Configuration constants with documented bounds
DEFAULT_SYNC_PERIOD_SECONDS = 300
DEFAULT_RUNS_COLLECTOR_SYNC_PERIOD_SECONDS = 30
MIN_SYNC_PERIOD_SECONDS = 5
MAX_SYNC_PERIOD_SECONDS = 86400

DEFAULT_REQUEUE_INTERVAL_SECONDS = 15
MIN_REQUEUE_INTERVAL_SECONDS = 1
MAX_REQUEUE_INTERVAL_SECONDS = 3600

DEFAULT_WORKERS = 1
MAX_WORKERS = 64

DEFAULT_TFE_ADDRESS = "app.terraform.io"
DEFAULT_MANIFEST_SYNC_INTERVAL_SECONDS = 30
DEFAULT_METRICS_PORT = 8080

# Security constraints - enforced limits to prevent abuse
MAX_MANIFEST_FILE_SIZE_BYTES = 1024 * 1024  # 1MB max manifest file
MAX_CONFIGURATION_ARCHIVE_BYTES = 10 * 1024 * 1024  # 10MB max module upload


def _env_name(kind: str) -> str:
    """AgentPool -> AGENT_POOL."""
    out = []
    for index, char in enumerate(kind):
        if char.isupper() and index:
            out.append("_")
        out.append(char.upper())
    return "".join(out)


def _default_sync_periods() -> dict[str, int]:
    periods = {kind: DEFAULT_SYNC_PERIOD_SECONDS for kind in KINDS}
    periods["RunsCollector"] = DEFAULT_RUNS_COLLECTOR_SYNC_PERIOD_SECONDS
    return periods


@dataclass(frozen=True)
class OperatorConfig:
    """Operator configuration loaded from environment variables.

    All fields are validated at construction time. Invalid configurations
    raise ConfigurationError immediately rather than failing at runtime.
    """

    # Scheduling
    sync_periods: dict[str, int] = field(default_factory=_default_sync_periods)
    workers: dict[str, int] = field(default_factory=lambda: dict.fromkeys(KINDS, DEFAULT_WORKERS))
    requeue_interval_seconds: int = DEFAULT_REQUEUE_INTERVAL_SECONDS

    # Behavior
    default_deletion_policy: DeletionPolicy = DeletionPolicy.RETAIN
    autoscaling_cooldown_seconds: int = DEFAULT_COOLDOWN_PERIOD_SECONDS

    # Remote platform
    tfe_address: str = DEFAULT_TFE_ADDRESS
    tls_skip_verify: bool = False

    # Record source
    specs_dir: Path = field(default_factory=lambda: Path("/specs"))
    manifest_sync_interval_seconds: int = DEFAULT_MANIFEST_SYNC_INTERVAL_SECONDS
    watch_namespaces: frozenset[str] = frozenset()

    # Backends
    secret_backend: Backend = Backend.KUBERNETES
    fleet_backend: Backend = Backend.KUBERNETES
    secrets_file: Path | None = None

    # Observability
    metrics_port: int = DEFAULT_METRICS_PORT

    def __post_init__(self) -> None:
        """Validate configuration after initialization."""
        errors: list[str] = []

        for kind in KINDS:
            period = self.sync_periods.get(kind)
            if period is None:
                errors.append(f"{_env_name(kind)}_SYNC_PERIOD is required")
            elif not (MIN_SYNC_PERIOD_SECONDS <= period <= MAX_SYNC_PERIOD_SECONDS):
                errors.append(
                    f"{_env_name(kind)}_SYNC_PERIOD must be between {MIN_SYNC_PERIOD_SECONDS} "
                    f"and {MAX_SYNC_PERIOD_SECONDS} seconds"
                )
            elif period < self.requeue_interval_seconds:
                errors.append(
                    f"{_env_name(kind)}_SYNC_PERIOD must not be shorter than REQUEUE_INTERVAL"
                )

            workers = self.workers.get(kind, 0)
            if not (1 <= workers <= MAX_WORKERS):
                errors.append(f"{_env_name(kind)}_WORKERS must be between 1 and {MAX_WORKERS}")

        if not (
            MIN_REQUEUE_INTERVAL_SECONDS
            <= self.requeue_interval_seconds
            <= MAX_REQUEUE_INTERVAL_SECONDS
        ):
            errors.append(
                f"REQUEUE_INTERVAL must be between {MIN_REQUEUE_INTERVAL_SECONDS} "
                f"and {MAX_REQUEUE_INTERVAL_SECONDS} seconds"
            )

        if self.autoscaling_cooldown_seconds < 0:
            errors.append("AUTOSCALING_COOLDOWN_SECONDS must not be negative")

        if not self.tfe_address or "/" in self.tfe_address:
            errors.append(f"TFE_ADDRESS must be a host name: {self.tfe_address!r}")

        if self.manifest_sync_interval_seconds < 1:
            errors.append("MANIFEST_SYNC_INTERVAL must be at least 1 second")

        if not (0 <= self.metrics_port <= 65535):
            errors.append("METRICS_PORT must be between 0 and 65535")

        if self.secrets_file is not None and not self.secrets_file.is_file():
            errors.append(f"SECRETS_FILE does not exist: {self.secrets_file}")

        if errors:
            error_msg = "Configuration validation failed:\n  - " + "\n  - ".join(errors)
            raise ConfigurationError(error_msg)

    def sync_period(self, kind: str) -> int:
        return self.sync_periods[kind]

    def workers_for(self, kind: str) -> int:
        return self.workers[kind]

    @property
    def tfe_base_url(self) -> str:
        return f"https://{self.tfe_address}"

    def watches(self, namespace: str) -> bool:
        """Check if records in a namespace are handled by this operator."""
        return not self.watch_namespaces or namespace in self.watch_namespaces

    @classmethod
    def from_env(cls) -> OperatorConfig:
        """Load configuration from environment variables.

        Environment Variables:
            <KIND>_SYNC_PERIOD: Seconds between resyncs per kind, e.g.
                AGENT_POOL_SYNC_PERIOD (default: 300, runs collector 30)
            <KIND>_WORKERS: Concurrent reconciliations per kind (default: 1)
            REQUEUE_INTERVAL: Retry interval after errors in seconds (default: 15)
            DEFAULT_DELETION_POLICY: retain, soft, destroy or force (default: retain)
            AUTOSCALING_COOLDOWN_SECONDS: Default scaling cooldown (default: 300)
            TFE_ADDRESS: Platform host name (default: app.terraform.io)
            TFC_TLS_SKIP_VERIFY: If "true", skip TLS certificate verification
            SPECS_DIR: Directory of record manifests (default: /specs)
            MANIFEST_SYNC_INTERVAL: Seconds between manifest rescans (default: 30)
            WATCH_NAMESPACES: Comma-separated namespaces to handle (default: all)
            SECRET_BACKEND: kubernetes or memory (default: kubernetes)
            FLEET_BACKEND: kubernetes or memory (default: kubernetes)
            SECRETS_FILE: YAML file seeding the memory secret backend
            METRICS_PORT: Prometheus port, 0 disables (default: 8080)

        Raises:
            ConfigurationError: If required variables are missing or invalid.
        """

        def get_int(name: str, default: int) -> int:
            value = os.environ.get(name)
            if value is None:
                return default
            try:
                return int(value)
            except ValueError as e:
                raise ConfigurationError(f"{name} must be an integer: {value}") from e

        def get_bool(name: str, default: bool = False) -> bool:
            value = os.environ.get(name, "").lower()
            if not value:
                return default
            return value in ("true", "1", "yes")

        def get_enum(name: str, enum_type: type[E], default: E) -> E:
            value = os.environ.get(name)
            if not value:
                return default
            try:
                return enum_type(value)
            except ValueError as e:
                valid = ", ".join(str(member.value) for member in enum_type)
                raise ConfigurationError(f"{name} must be one of {valid}: {value}") from e

        defaults = _default_sync_periods()
        sync_periods = {
            kind: get_int(f"{_env_name(kind)}_SYNC_PERIOD", defaults[kind]) for kind in KINDS
        }
        workers = {kind: get_int(f"{_env_name(kind)}_WORKERS", DEFAULT_WORKERS) for kind in KINDS}

        namespaces_str = os.environ.get("WATCH_NAMESPACES", "")
        watch_namespaces = frozenset(ns.strip() for ns in namespaces_str.split(",") if ns.strip())

        secrets_file = os.environ.get("SECRETS_FILE")

        return cls(
            sync_periods=sync_periods,
            workers=workers,
            requeue_interval_seconds=get_int(
                "REQUEUE_INTERVAL", DEFAULT_REQUEUE_INTERVAL_SECONDS
            ),
            default_deletion_policy=get_enum(
                "DEFAULT_DELETION_POLICY", DeletionPolicy, DeletionPolicy.RETAIN
            ),
            autoscaling_cooldown_seconds=get_int(
                "AUTOSCALING_COOLDOWN_SECONDS", DEFAULT_COOLDOWN_PERIOD_SECONDS
            ),
            tfe_address=os.environ.get("TFE_ADDRESS", DEFAULT_TFE_ADDRESS),
            tls_skip_verify=get_bool("TFC_TLS_SKIP_VERIFY"),
            specs_dir=Path(os.environ.get("SPECS_DIR", "/specs")),
            manifest_sync_interval_seconds=get_int(
                "MANIFEST_SYNC_INTERVAL", DEFAULT_MANIFEST_SYNC_INTERVAL_SECONDS
            ),
            watch_namespaces=watch_namespaces,
            secret_backend=get_enum("SECRET_BACKEND", Backend, Backend.KUBERNETES),
            fleet_backend=get_enum("FLEET_BACKEND", Backend, Backend.KUBERNETES),
            secrets_file=Path(secrets_file) if secrets_file else None,
            metrics_port=get_int("METRICS_PORT", DEFAULT_METRICS_PORT),
        )
