"""Installer CLI.

Usage:
    installer apply plan.yaml      # Reconcile every platform in the plan
    installer validate plan.yaml   # Parse and validate the plan only
    installer order plan.yaml      # Show the resource kinds in reconcile order
"""

from __future__ import annotations

import sys
from pathlib import Path

import click

from .config import Config, ConfigurationError
from .plan_loader import PlanLoadError, load_plan
from .sequencer import CyclicDependencyError, DependencyGraph

PLAN_ARGUMENT = click.Path(exists=True, dir_okay=False, path_type=Path)


# =============================================================================
# Main CLI Group
# =============================================================================


@click.group()
@click.version_option(version="0.1.0", prog_name="installer")
def cli() -> None:
    """Idempotent installer for OpenStack, Rancher, Kubernetes and Keycloak.

    \b
    Quick Start:
        installer validate plan.yaml
        installer apply plan.yaml
    """
    pass


@cli.command()
@click.argument("plan_path", type=PLAN_ARGUMENT)
def apply(plan_path: Path) -> None:
    """Reconcile the plan against every platform it touches.

    Safe to re-run: existing objects are found by name and left alone.
    """
    from .main import run

    sys.exit(run(plan_path))


@cli.command()
@click.argument("plan_path", type=PLAN_ARGUMENT)
def validate(plan_path: Path) -> None:
    """Validate the plan and report settings it still needs."""
    try:
        plan = load_plan(plan_path)
    except PlanLoadError as e:
        raise click.ClickException(str(e)) from e

    click.echo(f"Plan:      {plan.name}")
    click.echo(f"Platforms: {', '.join(sorted(plan.platforms()))}")

    try:
        config = Config.from_env()
    except ConfigurationError as e:
        raise click.ClickException(str(e)) from e

    missing = config.missing_for(plan.platforms())
    if missing:
        raise click.ClickException(f"Missing settings: {', '.join(missing)}")
    click.secho("✓ Plan is valid", fg="green")


@cli.command()
@click.argument("plan_path", type=PLAN_ARGUMENT)
def order(plan_path: Path) -> None:
    """Print the resource kinds of the plan in dependency order."""
    try:
        plan = load_plan(plan_path)
        kinds = DependencyGraph.from_table().order(plan.kinds())
    except (PlanLoadError, CyclicDependencyError) as e:
        raise click.ClickException(str(e)) from e

    for position, kind in enumerate(kinds, start=1):
        click.echo(f"{position:2d}. {kind}")


# =============================================================================
# Entry Point
# =============================================================================


def main() -> None:
    """Entry point for the CLI."""
    cli()


if __name__ == "__main__":
    main()
