"""Tyk operator CLI.

Usage:
    tyk-operator run                      # Run the controller
    tyk-operator check-config             # Validate configuration and exit
    tyk-operator encode-id NS NAME        # Print the deterministic external ID
    tyk-operator validate-oas api.yaml    # Check an OAS document offline
"""

from __future__ import annotations

import asyncio
import json
import sys
from pathlib import Path
from typing import Any

import click
import yaml

from .config import MAX_WORKER_COUNT, Config, ConfigurationError
from .errors import PayloadValidationError
from .identity import embedded_id, encode_key
from .models import ObjectKey
from .resource_kinds import TYK_OAS_API_DEFINITION
from .status import extract_observed_fields
from .sync import validate_payload

CONFIG_FILE_OPTION = click.option(
    "--config",
    "config_file",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    default=None,
    help="YAML file whose keys override environment variables",
)


@click.group()
@click.version_option(version="0.1.0", prog_name="tyk-operator")
def cli() -> None:
    """Tyk operator.

    Reconciles TykOasApiDefinition and SecurityPolicy resources onto a Tyk
    gateway (ce) or dashboard (pro).

    \b
    Quick Start:
        export TYK_URL=http://tyk-gateway:8080 TYK_AUTH=<secret>
        tyk-operator check-config
        tyk-operator run --workers 4
    """
    pass


@cli.command()
@CONFIG_FILE_OPTION
@click.option(
    "--workers",
    type=click.IntRange(1, MAX_WORKER_COUNT),
    default=None,
    help="Number of concurrent reconcile workers (overrides WORKER_COUNT)",
)
def run(config_file: Path | None, workers: int | None) -> None:
    """Run the controller until SIGTERM/SIGINT."""
    from .main import main

    sys.exit(asyncio.run(main(config_file=config_file, workers=workers)))


@cli.command("check-config")
@CONFIG_FILE_OPTION
def check_config(config_file: Path | None) -> None:
    """Validate configuration and print the effective settings."""
    try:
        config = Config.from_env(config_file)
    except ConfigurationError as e:
        raise click.ClickException(str(e)) from e

    click.echo("Configuration OK")
    click.echo(f"  URL:        {config.url}")
    click.echo(f"  Mode:       {config.mode.value}")
    if config.org:
        click.echo(f"  Org:        {config.org}")
    click.echo(f"  Namespaces: {', '.join(config.namespaces) or 'all'}")
    click.echo(f"  Workers:    {config.worker_count}")
    click.echo(f"  Requeue:    {config.requeue_after_seconds}s")
    click.echo(f"  Timeout:    {config.request_timeout_seconds}s")
    click.echo(f"  Reload:     {'enabled' if config.reload_enabled else 'disabled'}")
    click.echo(f"  Webhooks:   {'enabled' if config.enable_webhooks else 'disabled'}")


@cli.command("encode-id")
@click.argument("namespace")
@click.argument("name")
def encode_id(namespace: str, name: str) -> None:
    """Print the external ID derived from NAMESPACE/NAME."""
    click.echo(encode_key(ObjectKey(namespace=namespace, name=name)))


@cli.command("validate-oas")
@click.argument("file", type=click.Path(exists=True, dir_okay=False, path_type=Path))
def validate_oas(file: Path) -> None:
    """Check a Tyk OAS document and show the fields that would be reported."""
    try:
        document: Any = yaml.safe_load(file.read_text(encoding="utf-8"))
    except yaml.YAMLError as e:
        raise click.ClickException(f"Invalid YAML/JSON in {file}: {e}") from e

    kind = TYK_OAS_API_DEFINITION
    try:
        validate_payload(document, kind.required_section)
    except PayloadValidationError as e:
        raise click.ClickException(str(e)) from e

    observed = extract_observed_fields(document, kind.observed_fields)
    report = {
        "valid": True,
        "embeddedID": embedded_id(document, kind.id_paths) or None,
        "observedFields": observed.model_dump(by_alias=True, exclude_none=True),
    }
    click.echo(json.dumps(report, indent=2))


def main() -> None:
    """Entry point for the CLI."""
    cli()


if __name__ == "__main__":
    main()
