"""Vault cluster CLI (hvc).

Runs one lifecycle action against a declared cluster and keeps the
resulting record in a YAML state file next to the declaration.

Usage:
    hvc create cluster.yaml     # Create and wait until provisioned
    hvc read cluster.yaml       # Refresh state; drops it if the cluster is gone
    hvc delete cluster.yaml     # Delete and wait until gone
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from pathlib import Path
from typing import TypeVar

import click

from .client import HCPClient
from .config import Config, ConfigurationError
from .errors import ClusterError, ImmutableFieldError
from .main import setup_logging
from .models import VaultClusterRecord
from .reconciler import Reconciler
from .record_store import load_declaration, load_state, remove_state, save_state

T = TypeVar("T")

STATE_SUFFIX = ".state.yaml"


class ConfigurationFailed(click.ClickException):
    """Configuration problems exit with status 2."""

    exit_code = 2


def default_state_path(record_file: Path) -> Path:
    return record_file.with_name(record_file.stem + STATE_SUFFIX)


def build_reconciler() -> tuple[Reconciler, HCPClient]:
    """Create a reconciler backed by the HTTP client.

    Raises:
        ConfigurationFailed: If the environment is not configured.
    """
    try:
        config = Config.from_env()
        client = HCPClient(config)
    except (ConfigurationError, ValueError) as e:
        raise ConfigurationFailed(str(e)) from e
    return Reconciler(client, config), client


def run_action(action: Callable[[Reconciler], Awaitable[T]]) -> T:
    """Run one lifecycle action, mapping cluster errors to CLI errors."""
    reconciler, client = build_reconciler()
    try:
        return asyncio.run(action(reconciler))
    except ClusterError as e:
        hint = " The change may still complete; run 'hvc read' first." if e.may_have_completed else ""
        raise click.ClickException(f"{type(e).__name__} [{e.outcome.value}]: {e}{hint}") from e
    finally:
        client.close()


def current_record(record_file: Path, state_file: Path) -> VaultClusterRecord:
    try:
        return load_state(state_file) or load_declaration(record_file)
    except ClusterError as e:
        raise click.ClickException(str(e)) from e


def echo_record(record: VaultClusterRecord) -> None:
    for name, value in record.model_dump().items():
        if value is not None:
            click.echo(f"{name} = {value}")


record_argument = click.argument(
    "record_file", type=click.Path(exists=True, dir_okay=False, path_type=Path)
)
state_option = click.option(
    "--state",
    "state_file",
    type=click.Path(dir_okay=False, path_type=Path),
    help=f"State file (default: <record>{STATE_SUFFIX})",
)
timeout_option = click.option(
    "--timeout", type=click.FloatRange(min=0, min_open=True), help="Override the timeout in seconds"
)


@click.group()
@click.version_option(version="0.1.0", prog_name="hvc")
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    default="INFO",
    show_default=True,
    help="Logging level",
)
def cli(log_level: str) -> None:
    """HCP Vault cluster lifecycle CLI (hvc)."""
    setup_logging(log_level)


@cli.command()
@record_argument
@state_option
@timeout_option
def create(record_file: Path, state_file: Path | None, timeout: float | None) -> None:
    """Create the declared cluster and wait until it is provisioned."""
    state_file = state_file or default_state_path(record_file)
    try:
        declared = load_declaration(record_file)
        prior = load_state(state_file)
    except ClusterError as e:
        raise click.ClickException(str(e)) from e

    if prior is not None:
        try:
            Reconciler.check_replacement(prior, declared)
        except ImmutableFieldError as e:
            raise click.ClickException(f"{e}. Run 'hvc delete' first.") from e
        click.echo(f"Cluster {prior.cluster_id} already exists in {state_file}; nothing to do")
        return

    created = run_action(lambda r: r.create(declared, timeout=timeout))
    save_state(state_file, created)
    click.secho(f"✓ Created cluster {created.cluster_id}", fg="green")
    echo_record(created)


@cli.command()
@record_argument
@state_option
@timeout_option
def read(record_file: Path, state_file: Path | None, timeout: float | None) -> None:
    """Refresh the cluster state from the control plane."""
    state_file = state_file or default_state_path(record_file)
    record = current_record(record_file, state_file)

    refreshed = run_action(lambda r: r.read(record, timeout=timeout))
    if refreshed is None:
        remove_state(state_file)
        click.secho(f"Cluster {record.cluster_id} no longer exists; state removed", fg="yellow")
        return

    save_state(state_file, refreshed)
    echo_record(refreshed)


@cli.command()
@record_argument
@state_option
@timeout_option
def delete(record_file: Path, state_file: Path | None, timeout: float | None) -> None:
    """Delete the cluster and wait until it is gone."""
    state_file = state_file or default_state_path(record_file)
    record = current_record(record_file, state_file)

    run_action(lambda r: r.delete(record, timeout=timeout))
    remove_state(state_file)
    click.secho(f"✓ Deleted cluster {record.cluster_id}", fg="green")
