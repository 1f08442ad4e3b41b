"""HCP Terraform Operator CLI (tfco).

Usage:
    tfco run --specs-dir ./specs       # Run the operator locally
    tfco validate ./specs              # Check manifests without touching anything
    tfco metrics                       # Print the metrics the operator exposes
"""

from __future__ import annotations

import asyncio
import json
import os
from pathlib import Path

import click
from prometheus_client import REGISTRY, generate_latest

from .models import DeletionPolicy

# =============================================================================
# CLI Group
# =============================================================================


@click.group()
@click.version_option(version="0.1.0", prog_name="tfco")
def cli() -> None:
    """HCP Terraform Operator CLI (tfco).

    \b
    Quick Start:
        tfco validate ./specs          # Validate record manifests
        tfco run --specs-dir ./specs   # Run against HCP Terraform
    """
    pass


# =============================================================================
# Run Command
# =============================================================================


@cli.command()
@click.option(
    "--specs-dir",
    type=click.Path(exists=True, file_okay=False),
    default="./specs",
    help="Manifest directory",
)
@click.option("--tfe-address", envvar="TFE_ADDRESS", default=None, help="Platform host name")
@click.option(
    "--secrets-file",
    type=click.Path(exists=True, dir_okay=False),
    default=None,
    help="YAML file with secrets; selects the in-memory backends",
)
@click.option("--metrics-port", type=int, default=None, help="Prometheus port, 0 disables")
def run(
    specs_dir: str,
    tfe_address: str | None,
    secrets_file: str | None,
    metrics_port: int | None,
) -> None:
    """Run the operator locally.

    \b
    Examples:
        tfco run --specs-dir ./specs --secrets-file ./secrets.yaml
        tfco run --tfe-address tfe.example.com
    """
    from .main import main

    os.environ["SPECS_DIR"] = str(Path(specs_dir).resolve())
    if tfe_address:
        os.environ["TFE_ADDRESS"] = tfe_address
    if secrets_file:
        os.environ["SECRETS_FILE"] = str(Path(secrets_file).resolve())
        os.environ["SECRET_BACKEND"] = "memory"
        os.environ["FLEET_BACKEND"] = "memory"
    if metrics_port is not None:
        os.environ["METRICS_PORT"] = str(metrics_port)

    click.echo(f"Running operator with manifests from {specs_dir}...")
    raise SystemExit(asyncio.run(main()))


# =============================================================================
# Validate Command
# =============================================================================


@cli.command()
@click.argument("directory", type=click.Path(exists=True, file_okay=False))
@click.option(
    "--default-deletion-policy",
    type=click.Choice([policy.value for policy in DeletionPolicy]),
    default=DeletionPolicy.RETAIN.value,
    help="Policy applied when a manifest omits deletionPolicy",
)
@click.option("--output", "-o", type=click.Choice(["text", "json"]), default="text")
def validate(directory: str, default_deletion_policy: str, output: str) -> None:
    """Validate every record manifest in DIRECTORY."""
    from .manifests import ManifestLoadError, dump_record, validate_manifests

    try:
        records, problems = validate_manifests(
            Path(directory), DeletionPolicy(default_deletion_policy)
        )
    except ManifestLoadError as e:
        raise click.ClickException(str(e)) from e

    if output == "json":
        click.echo(
            json.dumps(
                {"records": [dump_record(r) for r in records], "problems": problems}, indent=2
            )
        )
    else:
        for record in records:
            click.echo(f"ok      {record.kind} {record.key}")
        for problem in problems:
            click.echo(click.style(f"invalid {problem}", fg="red"), err=True)

    if problems:
        raise click.ClickException(f"{len(problems)} manifest problem(s) found")
    click.echo(f"{len(records)} record(s) valid")


# =============================================================================
# Metrics Command
# =============================================================================


@cli.command()
def metrics() -> None:
    """Print the metrics the operator exposes in Prometheus text format."""
    from . import metrics as _metrics  # noqa: F401  registers the collectors

    click.echo(generate_latest(REGISTRY).decode("utf-8"))


if __name__ == "__main__":
    cli()
