"""PAC controller CLI (pacctl).

Usage:
    pacctl run --manifests-dir ./manifests    # Run the controller locally
    pacctl validate ./manifests               # Check manifests offline
    pacctl info                               # Show effective configuration
"""

from __future__ import annotations

import asyncio
import os
import sys
from pathlib import Path

import click

from .catalog import CatalogNotReadyError, validate_vm_catalog
from .config import Config, ConfigurationError
from .manifests import ManifestLoadError, ManifestSet, load_manifests
from .models import CatalogType
from .provisioner import requested_capacity
from .validation import ValidationError, parse_processors

VERSION = "0.1.0"


def check_manifests(manifests: ManifestSet) -> list[str]:
    """Offline problems in a manifest set, one line each.

    Catalogs are checked for a valid VM section: capacity envelope, workspace
    CRN and supported system and processor types. Services are checked for an
    existing catalog reference and a shape that fits the catalog.
    """
    problems: list[str] = []
    catalogs = {c.key: c for c in manifests.catalogs}

    for catalog in manifests.catalogs:
        if catalog.spec.type != CatalogType.VM:
            problems.append(f"Catalog {catalog.key}: unsupported type {catalog.spec.type}")
            continue
        try:
            validate_vm_catalog(catalog)
        except CatalogNotReadyError as e:
            problems.append(f"Catalog {catalog.key}: {e}")

    for service in manifests.services:
        catalog_key = f"{service.namespace}/{service.spec.catalog.name}"
        catalog = catalogs.get(catalog_key)
        if catalog is None:
            problems.append(f"Service {service.key}: catalog {catalog_key} not found")
            continue
        try:
            shape = requested_capacity(service, catalog)
            parse_processors(shape.cpu)
        except ValidationError as e:
            problems.append(f"Service {service.key}: {e}")

    return problems


@click.group()
@click.version_option(version=VERSION, prog_name="pacctl")
def cli() -> None:
    """PAC controller CLI (pacctl).

    Runs the controller that provisions PowerVS virtual machines from
    catalogs and exposes them through a VPC load balancer.

    \b
    Quick Start:
        pacctl validate ./manifests
        pacctl run --manifests-dir ./manifests
    """
    pass


@cli.command()
@click.option(
    "--manifests-dir",
    type=click.Path(exists=True, file_okay=False, path_type=Path),
    envvar="MANIFESTS_DIR",
    help="Directory of Catalog and Service manifests",
)
@click.option("--namespace", "-n", envvar="NAMESPACE", default="default", help="Namespace")
@click.option("--debug/--no-debug", default=False, help="Enable debug logging")
def run(manifests_dir: Path | None, namespace: str, debug: bool) -> None:
    """Run the controller until interrupted.

    Settings not given as options are read from the environment.
    """
    from .main import main

    if manifests_dir is not None:
        os.environ["MANIFESTS_DIR"] = str(manifests_dir)
    os.environ["NAMESPACE"] = namespace
    if debug:
        os.environ["DEBUG"] = "true"

    sys.exit(asyncio.run(main()))


@cli.command()
@click.argument(
    "manifests_dir", type=click.Path(exists=True, file_okay=False, path_type=Path)
)
@click.option("--namespace", "-n", default="default", help="Namespace for manifests without one")
def validate(manifests_dir: Path, namespace: str) -> None:
    """Load manifests and check capacities and references offline."""
    try:
        manifests = load_manifests(manifests_dir, namespace)
    except ManifestLoadError as e:
        raise click.ClickException(str(e)) from e

    problems = check_manifests(manifests)
    if problems:
        for problem in problems:
            click.secho(f"✗ {problem}", fg="red", err=True)
        raise click.ClickException(f"{len(problems)} problem(s) found in {manifests_dir}")

    click.secho(
        f"✓ {len(manifests.catalogs)} catalog(s) and {len(manifests.services)} service(s) valid",
        fg="green",
    )


@cli.command()
def info() -> None:
    """Show the effective configuration."""
    try:
        config = Config.from_env()
    except ConfigurationError as e:
        raise click.ClickException(str(e)) from e

    click.echo(f"pacctl {VERSION}")
    click.echo(f"  Namespace:            {config.namespace}")
    click.echo(f"  Manifests directory:  {config.manifests_dir or '-'}")
    click.echo(f"  Resync interval:      {config.reconcile_interval_seconds}s")
    click.echo(f"  Expiry check:         {config.expiry_check_interval_seconds}s")
    click.echo(f"  Retry delay:          {config.retry_delay_seconds}s")
    click.echo(f"  API timeout:          {config.api_timeout_seconds}s")
    click.echo(f"  Workers per kind:     {config.max_concurrent_reconciles}")
    if config.ingress_enabled:
        click.echo(f"  Ingress:              {config.load_balancer_id} ({config.vpc_region})")
    else:
        click.echo("  Ingress:              disabled")
    if config.mirror.enabled:
        click.echo(f"  Mirror:               {config.mirror.miq_url} -> {config.mirror.catalog}")
    else:
        click.echo("  Mirror:               disabled")


def main() -> None:
    """Entry point for the CLI."""
    cli()


if __name__ == "__main__":
    main()
