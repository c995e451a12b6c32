"""Sync commands: pull, push, status."""

from __future__ import annotations

import asyncio
import json
import sys

import click
from rich.table import Table

from ..errors import LocalStateError
from ..layout import TenantLayout
from ..sync.models import ChangeStatus
from ..sync.status import StatusEngine
from ._common import console, load_environment, print_report, run_per_tenant

_STATUS_STYLE = {
    ChangeStatus.MODIFIED: "[cyan]modified[/]",
    ChangeStatus.ADDED: "[green]added[/]",
    ChangeStatus.DELETED: "[red]deleted[/]",
    ChangeStatus.PENDING: "[yellow]pending[/]",
    ChangeStatus.UNCHANGED: "[dim]unchanged[/]",
}


def _finish(results, verb: str) -> None:
    """Print per-tenant outcomes and exit 1 if any tenant had errors."""
    failed = False
    for tenant, report, error in results:
        console.print(f"\n  [bold]{verb}[/] [cyan]{tenant.idn}[/]")
        if error is not None:
            console.print(f"    [bold red]failed:[/] {error}")
            failed = True
            continue
        print_report(report)
        if report.ok:
            console.print(f"    [green]done[/] ({report.change_count or len(report.written)} change(s))")
        else:
            failed = True
    console.print()
    if failed:
        sys.exit(1)


def register_sync_commands(main: click.Group) -> None:
    """Register pull, push and status."""

    @main.command("pull")
    @click.option("--customer", default=None, help="Customer IDN (defaults to NEWO_DEFAULT_CUSTOMER).")
    @click.option("--all", "all_customers", is_flag=True, help="Pull every configured customer.")
    @click.option("--project-id", default=None, help="Pull only this project.")
    @click.option("--force", is_flag=True, help="Overwrite files edited locally.")
    def pull(customer, all_customers, project_id, force):
        """Mirror remote projects into newo_customers/."""
        settings, tenants = load_environment(customer, all_customers)
        results = asyncio.run(run_per_tenant(
            settings, tenants, lambda engine: engine.pull(project_id=project_id, force=force),
        ))
        _finish(results, "Pulled")

    @main.command("push")
    @click.option("--customer", default=None, help="Customer IDN (defaults to NEWO_DEFAULT_CUSTOMER).")
    @click.option("--all", "all_customers", is_flag=True, help="Push every configured customer.")
    def push(customer, all_customers):
        """Send local additions, edits and deletions to NEWO."""
        settings, tenants = load_environment(customer, all_customers)
        results = asyncio.run(run_per_tenant(settings, tenants, lambda engine: engine.push()))
        _finish(results, "Pushed")

    @main.command("status")
    @click.option("--customer", default=None, help="Customer IDN (defaults to NEWO_DEFAULT_CUSTOMER).")
    @click.option("--all", "all_customers", is_flag=True, help="Status of every configured customer.")
    @click.option("--json-out", is_flag=True, help="Output as JSON.")
    def status(customer, all_customers, json_out):
        """Show what push would send. Makes no network calls."""
        settings, tenants = load_environment(customer, all_customers)
        output = {}
        failed = False
        for tenant in tenants:
            try:
                output[tenant.idn] = StatusEngine(TenantLayout(settings.root, tenant.idn)).status()
            except LocalStateError as exc:
                console.print(f"[bold red]{tenant.idn}:[/] {exc}")
                failed = True

        if json_out:
            click.echo(json.dumps(
                {
                    idn: [
                        {"path": c.path, "entity": c.entity.value, "status": c.status.value}
                        for c in changes
                    ]
                    for idn, changes in output.items()
                },
                indent=2,
            ))
        else:
            for idn, changes in output.items():
                console.print(f"\n  [bold]Status[/] [cyan]{idn}[/]")
                if not changes:
                    console.print("    [green]clean[/] -- nothing to push")
                    continue
                table = Table(show_header=True, header_style="bold", box=None, padding=(0, 2))
                table.add_column("Status")
                table.add_column("Entity", style="dim")
                table.add_column("Path", style="cyan")
                for c in changes:
                    table.add_row(_STATUS_STYLE[c.status], c.entity.value, c.path)
                console.print(table)
                if any(c.status == ChangeStatus.PENDING for c in changes):
                    console.print(
                        "    [dim]pending: created remotely, id not listed yet; "
                        "the next push or pull looks it up[/]"
                    )
            console.print()
        if failed:
            sys.exit(1)
