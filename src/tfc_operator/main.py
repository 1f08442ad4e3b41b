"""Main entry point for the HCP Terraform Operator.

Wires the configured backends together and runs the manager until SIGTERM
or SIGINT:
- intent store: in memory, fed from the manifest directory
- secrets and agent deployments: Kubernetes API or in memory
- remote platform: HCP Terraform / Terraform Enterprise over HTTPS
"""

from __future__ import annotations

import asyncio
import json
import logging
import signal
import sys
from datetime import UTC, datetime

from prometheus_client import start_http_server

from .config import Backend, ConfigurationError, OperatorConfig
from .credentials import TFCClientFactory
from .events import EventRecorder
from .fleet import AgentFleet, InMemoryAgentFleet, KubernetesAgentFleet
from .manager import Manager
from .manifests import ManifestSync
from .reconciler import OperatorDeps
from .secret_store import InMemorySecretStore, KubernetesSecretStore, SecretStore
from .store import InMemoryIntentStore

# LogRecord attributes that are not user-supplied context
_RESERVED_LOG_ATTRS = frozenset(
    {
        "name",
        "msg",
        "args",
        "created",
        "filename",
        "funcName",
        "levelname",
        "levelno",
        "lineno",
        "module",
        "msecs",
        "pathname",
        "process",
        "processName",
        "relativeCreated",
        "stack_info",
        "exc_info",
        "exc_text",
        "thread",
        "threadName",
        "taskName",
        "message",
    }
)


class JsonFormatter(logging.Formatter):
    """Format logs as JSON for structured logging."""

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": datetime.now(UTC).isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "message": record.getMessage(),
            "logger": record.name,
        }

        # Add extra fields from the record
        for key, value in record.__dict__.items():
            if key not in _RESERVED_LOG_ATTRS:
                log_data[key] = value

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data, default=str)


def setup_logging(level: int = logging.INFO) -> None:
    """Configure structured logging with JSON output for production."""
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JsonFormatter())

    root_logger = logging.getLogger()
    root_logger.addHandler(handler)
    root_logger.setLevel(level)

    # Reduce noise from HTTP and Kubernetes clients
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("kubernetes").setLevel(logging.WARNING)
    logging.getLogger("urllib3").setLevel(logging.WARNING)


def build_secret_store(config: OperatorConfig) -> SecretStore:
    if config.secret_backend == Backend.MEMORY:
        if config.secrets_file is not None:
            return InMemorySecretStore.from_file(config.secrets_file)
        return InMemorySecretStore()
    return KubernetesSecretStore()


def build_fleet(config: OperatorConfig) -> AgentFleet:
    if config.fleet_backend == Backend.MEMORY:
        return InMemoryAgentFleet()
    return KubernetesAgentFleet()


def build_deps(config: OperatorConfig) -> OperatorDeps:
    secrets = build_secret_store(config)
    return OperatorDeps(
        config=config,
        store=InMemoryIntentStore(),
        clients=TFCClientFactory(config, secrets),
        events=EventRecorder(),
        secrets=secrets,
        fleet=build_fleet(config),
    )


async def main() -> int:
    """Run the operator.

    Returns:
        Exit code (0 for success, non-zero for failure).
    """
    setup_logging()
    logger = logging.getLogger(__name__)

    try:
        config = OperatorConfig.from_env()
    except ConfigurationError as e:
        logger.error("Configuration error", extra={"error": str(e)})
        return 1

    logger.info(
        "Starting HCP Terraform Operator",
        extra={
            "tfe_address": config.tfe_address,
            "specs_dir": str(config.specs_dir),
            "default_deletion_policy": config.default_deletion_policy.value,
            "secret_backend": config.secret_backend.value,
            "fleet_backend": config.fleet_backend.value,
            "watch_namespaces": sorted(config.watch_namespaces),
        },
    )

    try:
        deps = build_deps(config)
    except Exception as e:
        # Unexpected initialization error
        logger.error(
            "Failed to initialize operator",
            extra={"error": str(e), "error_type": type(e).__name__},
        )
        return 1

    if config.metrics_port:
        start_http_server(config.metrics_port)
        logger.info("Metrics server started", extra={"port": config.metrics_port})

    manager = Manager(deps, manifest_sync=ManifestSync(deps.store, config))

    # Set up signal handlers for graceful shutdown
    loop = asyncio.get_running_loop()

    def signal_handler(sig: signal.Signals) -> None:
        logger.info("Received signal", extra={"signal": sig.name})
        manager.shutdown()

    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, lambda s=sig: signal_handler(s))

    try:
        await manager.run()
    except Exception as e:
        logger.exception("Unhandled exception", extra={"error": str(e)})
        return 1

    logger.info("Operator stopped")
    return 0


def run() -> None:
    """Entry point for the operator process."""
    sys.exit(asyncio.run(main()))


if __name__ == "__main__":
    run()
