"""Compute provisioner CLI.

Usage:
    compute-operator run                 # Run the controller
    compute-operator validate FILE       # Validate a spec file
    compute-operator names FILE          # Show server names a cluster spec yields
"""

from __future__ import annotations

import asyncio
import os
import sys
from pathlib import Path

import click

from .models import ComputeCluster, ManagedObject
from .server import desired_server_names
from .spec_loader import SpecLoadError, load_spec

# =============================================================================
# Main CLI Group
# =============================================================================


@click.group()
@click.version_option(version="0.1.0", prog_name="compute-operator")
def cli() -> None:
    """Compute provisioner CLI.

    Runs the controller that provisions compute clusters and standalone
    instances on a region service, and inspects declarative spec files.

    \b
    Quick Start:
        compute-operator validate cluster.yaml
        compute-operator names cluster.yaml
        REGION_URL=... IDENTITY_URL=... compute-operator run
    """
    pass


# =============================================================================
# Run Command
# =============================================================================


@cli.command()
@click.option(
    "--specs-dir",
    type=click.Path(exists=True, file_okay=False, path_type=Path),
    envvar="SPECS_DIR",
    help="Directory of YAML specs to preload",
)
def run(specs_dir: Path | None) -> None:
    """Run the controller (configured through the environment)."""
    from .main import main

    if specs_dir is not None:
        os.environ["SPECS_DIR"] = str(specs_dir)

    sys.exit(asyncio.run(main()))


# =============================================================================
# Spec Commands
# =============================================================================


def _load(file: Path) -> ManagedObject:
    try:
        return load_spec(file)
    except SpecLoadError as e:
        raise click.ClickException(str(e)) from e


@cli.command()
@click.argument("file", type=click.Path(exists=True, dir_okay=False, path_type=Path))
def validate(file: Path) -> None:
    """Validate a ComputeCluster or ComputeInstance spec file."""
    obj = _load(file)
    click.secho(f"✓ {file} is a valid {type(obj).__name__}", fg="green")


@cli.command()
@click.argument("file", type=click.Path(exists=True, dir_okay=False, path_type=Path))
def names(file: Path) -> None:
    """Print the server names a ComputeCluster spec would produce."""
    obj = _load(file)
    if not isinstance(obj, ComputeCluster):
        raise click.ClickException(f"{file} is not a ComputeCluster spec")

    for pool in obj.spec.workload_pools:
        click.echo(f"{pool.name} ({pool.replicas} replicas):")
        for name in desired_server_names(pool):
            click.echo(f"  {name}")


# =============================================================================
# Entry Point
# =============================================================================


def main() -> None:
    """Entry point for the CLI."""
    cli()


if __name__ == "__main__":
    main()
