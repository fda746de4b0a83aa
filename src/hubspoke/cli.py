"""Hub-and-spoke provisioner CLI (hubspoke).

Usage:
    hubspoke                          # Converge every phase
    hubspoke --phase hub              # Networks, firewall, gateways, peerings
    hubspoke --phase routing          # Forced tunneling through the firewall
    hubspoke --phase database         # Private SQL with private DNS
    hubspoke --log-format text        # Human-readable logs
"""

from __future__ import annotations

import asyncio
import sys

import click

from . import __version__
from .main import main as run_provisioner
from .reconciler import ALL_PHASES, Phase

PHASE_CHOICES = [phase.value for phase in ALL_PHASES] + ["all"]


def resolve_phases(selected: tuple[str, ...]) -> list[Phase]:
    """Turn ``--phase`` values into phases in topology order."""
    if not selected or "all" in selected:
        return list(ALL_PHASES)
    return [phase for phase in ALL_PHASES if phase.value in selected]


@click.command()
@click.version_option(version=__version__, prog_name="hubspoke")
@click.option(
    "--phase",
    "-p",
    "phases",
    multiple=True,
    type=click.Choice(PHASE_CHOICES),
    help="Phase to converge; repeat for several (default: all)",
)
@click.option(
    "--log-format",
    type=click.Choice(["json", "text"]),
    default="json",
    show_default=True,
    help="Log output format",
)
def cli(phases: tuple[str, ...], log_format: str) -> None:
    """Provision and reconcile an Azure hub-and-spoke network.

    Configuration is read from the environment; AZURE_SUBSCRIPTION_ID is
    required. Every run is safe to repeat.
    """
    sys.exit(asyncio.run(run_provisioner(resolve_phases(phases), log_format)))


def main() -> None:
    """Entry point for the CLI."""
    cli()


if __name__ == "__main__":
    main()
