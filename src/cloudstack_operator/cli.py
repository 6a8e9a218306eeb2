"""CloudStack topology operator CLI (cso).

Usage:
    cso run                          # Run the operator until SIGTERM
    cso reconcile my-cluster         # One pass for one object
    cso status my-cluster            # Show the persisted status record
    cso validate cluster.yaml        # Check documents before applying them
"""

from __future__ import annotations

import asyncio
import json
import sys
from pathlib import Path

import click
import yaml

from .config import Config, ConfigurationError
from .credentials import CredentialError, enforce_file_credentials
from .main import build_reconcilers, main, setup_logging
from .manager import reconcile_key
from .models import ClusterTopology, TopologyValidationError, validate_create, validate_update
from .store import ObjectStore, StoreError, load_file, object_key

KINDS = ("ClusterTopology", "Machine")


def _load_config() -> Config:
    try:
        enforce_file_credentials()
        return Config.from_env()
    except (ConfigurationError, CredentialError) as e:
        raise click.ClickException(str(e)) from e


@click.group()
@click.version_option(version="0.1.0", prog_name="cso")
def cli() -> None:
    """CloudStack topology operator CLI (cso).

    Settings come from the same environment variables the operator reads
    (SPECS_DIR, STATUS_DIR, CLOUD_CONFIG_PATH, ...).
    """
    pass


@cli.command()
def run() -> None:
    """Run the operator until interrupted."""
    sys.exit(asyncio.run(main()))


@cli.command()
@click.argument("name")
@click.option("--kind", type=click.Choice(KINDS), default="ClusterTopology", show_default=True)
@click.option("--namespace", "-n", default="default", show_default=True)
@click.option("--verbose", "-v", is_flag=True, help="Emit JSON logs on stdout")
def reconcile(name: str, kind: str, namespace: str, verbose: bool) -> None:
    """Run one reconciliation pass for NAME and print the outcome."""
    config = _load_config()
    if verbose:
        setup_logging(config.log_level.upper())

    try:
        reconcilers = build_reconcilers(config)
    except CredentialError as e:
        raise click.ClickException(str(e)) from e

    store = ObjectStore(config.specs_dir, config.status_dir)
    key = object_key(kind, namespace, name)
    result = reconcile_key(store, reconcilers, key)
    if result is None:
        raise click.ClickException(f"No such object: {key}")

    click.echo(
        json.dumps(
            {
                "object": result.key,
                "phase": result.phase.value,
                "requeueAfter": result.requeue_after,
                "failedStage": result.failed_stage,
                "errorKind": result.error_kind.value if result.error_kind else None,
                "error": str(result.error) if result.error else None,
                "released": result.released,
            },
            indent=2,
        )
    )
    if result.terminal:
        sys.exit(1)


@cli.command()
@click.argument("name")
@click.option("--kind", type=click.Choice(KINDS), default="ClusterTopology", show_default=True)
@click.option("--namespace", "-n", default="default", show_default=True)
def status(name: str, kind: str, namespace: str) -> None:
    """Print the persisted status record of NAME."""
    config = _load_config()
    store = ObjectStore(config.specs_dir, config.status_dir)
    try:
        record = store.load_record(kind, namespace, name)
    except StoreError as e:
        raise click.ClickException(str(e)) from e
    if record is None:
        raise click.ClickException(f"No status recorded for {object_key(kind, namespace, name)}")

    click.echo(
        yaml.safe_dump(
            {
                "metadata": record.metadata.model_dump(mode="json", by_alias=True, exclude_none=True),
                "status": record.status.model_dump(mode="json", by_alias=True, exclude_none=True),
            },
            sort_keys=False,
        )
    )


@cli.command()
@click.argument("path", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option(
    "--old",
    "old_path",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    help="Previous version of the documents; checks the change as an update",
)
def validate(path: Path, old_path: Path | None) -> None:
    """Validate the ClusterTopology documents in PATH."""
    try:
        objects = load_file(path)
        previous = {obj.key: obj for obj in load_file(old_path)} if old_path else {}
    except StoreError as e:
        raise click.ClickException(str(e)) from e

    failed = False
    for obj in objects:
        if not isinstance(obj, ClusterTopology):
            click.echo(f"{obj.key}: ok (no checks for {obj.kind})")
            continue
        try:
            old = previous.get(obj.key)
            if isinstance(old, ClusterTopology):
                validate_update(old, obj)
            else:
                validate_create(obj)
        except TopologyValidationError as e:
            failed = True
            click.echo(f"{obj.key}: invalid", err=True)
            for error in e.errors:
                click.echo(f"  - {error}", err=True)
            continue
        click.echo(f"{obj.key}: ok")

    if failed:
        raise click.ClickException("validation failed")


if __name__ == "__main__":
    cli()
