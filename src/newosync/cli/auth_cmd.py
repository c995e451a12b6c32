"""Credential commands: reauth, customers."""

from __future__ import annotations

import asyncio
import sys

import click
from rich.table import Table

from ..config import resolve_tenants
from ..errors import ConfigError
from ._common import console, load_environment, run_per_tenant


def register_auth_commands(main: click.Group) -> None:
    """Register reauth and customers."""

    @main.command("reauth")
    @click.option("--customer", default=None, help="Customer IDN (defaults to NEWO_DEFAULT_CUSTOMER).")
    @click.option("--all", "all_customers", is_flag=True, help="Re-authenticate every customer.")
    def reauth(customer, all_customers):
        """Discard stored tokens and exchange the API key again."""
        settings, tenants = load_environment(customer, all_customers)
        results = asyncio.run(run_per_tenant(settings, tenants, lambda engine: engine.reauth()))
        failed = False
        for tenant, _, error in results:
            if error is None:
                console.print(f"  [green]Re-authenticated[/] [cyan]{tenant.idn}[/]")
            else:
                console.print(f"  [bold red]{tenant.idn}:[/] {error}")
                failed = True
        if failed:
            sys.exit(1)

    @main.command("customers")
    def customers():
        """List configured customers (API keys are never shown)."""
        try:
            registry = resolve_tenants()
        except ConfigError as exc:
            console.print(f"[bold red]Configuration error:[/] {exc}")
            sys.exit(1)

        table = Table(show_header=True, header_style="bold", box=None, padding=(0, 2))
        table.add_column("Customer", style="cyan")
        table.add_column("Project")
        table.add_column("Default", justify="center")
        for idn in registry.names():
            tenant = registry.tenants[idn]
            table.add_row(
                idn,
                tenant.project_id or "[dim]all[/]",
                "[green]*[/]" if idn == registry.default else "",
            )
        console.print(table)
