"""Site agent CLI (site-agent).

Usage:
    site-agent run                    # Run the agent in the foreground
    site-agent inventory vpc --once   # Run one inventory cycle
    site-agent fingerprint            # Show certificate fingerprints
    site-agent resources              # List managed resources
    site-agent check-config           # Validate configuration
"""

from __future__ import annotations

import asyncio

import click

from .agent import SiteAgent
from .certs import CertificateReadError, compute_fingerprints
from .config import Config, ConfigurationError
from .inventory import InventoryCycleResult
from .main import load_configuration, main, setup_logging
from .overrides import OverrideLoadError, Overrides
from .resources import CATALOGUE, resource_names


def load_or_fail() -> tuple[Config, Overrides]:
    """Load configuration, converting errors into a clean CLI failure."""
    try:
        return load_configuration()
    except (ConfigurationError, OverrideLoadError) as e:
        raise click.ClickException(str(e)) from e


# =============================================================================
# Main CLI Group
# =============================================================================


@click.group()
@click.version_option(version="0.1.0", prog_name="site-agent")
def cli() -> None:
    """Site agent CLI (site-agent).

    Runs and inspects the agent that synchronizes site resources with the
    cloud control plane. Configuration is read from the environment.
    """
    pass


@cli.command()
def run() -> None:
    """Run the site agent until SIGTERM/SIGINT."""
    raise SystemExit(asyncio.run(main()))


async def _inventory(config: Config, overrides: Overrides, resource: str, once: bool) -> InventoryCycleResult | None:
    agent = SiteAgent(config, overrides=overrides)
    try:
        await agent.connect()
        if once:
            return await agent.run_inventory(resource)

        schedule = overrides.schedule_for(resource, config.temporal.inventory_schedule)
        agent.scheduler.register(resource, schedule, agent.engines[resource].collect_and_publish_inventory)
        agent.scheduler.start()
        await agent.run()
        return None
    finally:
        await agent.close()


@cli.command()
@click.argument("resource", type=click.Choice(resource_names()))
@click.option("--once", is_flag=True, help="Run a single cycle and exit")
@click.option("--verbose", "-v", is_flag=True, help="Log to stdout")
def inventory(resource: str, once: bool, verbose: bool) -> None:
    """Collect and publish inventory for RESOURCE."""
    config, overrides = load_or_fail()
    if verbose:
        setup_logging()

    try:
        result = asyncio.run(_inventory(config, overrides, resource, once))
    except KeyboardInterrupt:
        click.echo("Stopped")
        return
    except Exception as e:
        raise click.ClickException(f"Inventory for {resource} failed: {e}") from e

    if result is not None:
        click.secho(
            f"✓ {resource}: {result.pages_published} pages, "
            f"{len(result.published_ids)} items, {result.chunk_fetches} fetches",
            fg="green",
        )


@cli.command()
def fingerprint() -> None:
    """Print the current Site Controller certificate fingerprints."""
    config, _ = load_or_fail()
    site_controller = config.site_controller
    try:
        fingerprints = compute_fingerprints(
            site_controller.client_cert_path,
            site_controller.client_key_path,
            site_controller.server_ca_path,
        )
    except CertificateReadError as e:
        raise click.ClickException(str(e)) from e

    click.echo(f"client: {fingerprints.client}")
    click.echo(f"server: {fingerprints.server}")


@cli.command()
def resources() -> None:
    """List managed resources with their operations and workflows."""
    for definition in CATALOGUE:
        operations = ", ".join(kind.value for kind in definition.operations) or "inventory only"
        click.secho(definition.name, bold=True)
        click.echo(f"  operations: {operations}")
        for binding in definition.bindings():
            click.echo(f"  {binding.workflow_name} -> {binding.method} -> {binding.publish_workflow}")
        click.echo(f"  inventory:  {definition.ids_method} -> {definition.inventory_publish_workflow}")


@cli.command("check-config")
def check_config() -> None:
    """Validate configuration and overrides."""
    config, overrides = load_or_fail()

    click.echo(f"Site ID:          {config.site_id}")
    click.echo(f"Site Controller:  {config.site_controller.address} (secure={config.site_controller.secure})")
    click.echo(f"Workflow engine:  {config.temporal.target} (tls={config.temporal.enable_tls})")
    click.echo(f"Codec:            {config.site_controller.codec}")
    click.echo(f"Publish queue:    {config.temporal.publish_queue}")
    click.echo(f"Subscribe queue:  {config.temporal.subscribe_queue}")
    click.echo(f"Default schedule: {overrides.inventory.default_schedule or config.temporal.inventory_schedule}")
    disabled = [name for name in resource_names() if not overrides.enabled(name)]
    if disabled:
        click.echo(f"Disabled:         {', '.join(disabled)}")
    click.secho("✓ Configuration valid", fg="green")


if __name__ == "__main__":
    cli()
