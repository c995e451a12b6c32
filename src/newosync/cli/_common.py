"""Shared utilities for all CLI command modules.

Provides the Rich console, tenant selection from the environment, and
the loop that runs one async action per selected tenant.
"""

from __future__ import annotations

import logging
import sys
from typing import Awaitable, Callable, Optional, TypeVar

from rich.console import Console

from ..config import SyncSettings, load_settings, resolve_tenants
from ..errors import ConfigError, NewoSyncError
from ..models import Tenant
from ..sync import SyncEngine, SyncReport, build_client

console = Console()
logger = logging.getLogger("newosync.cli")

T = TypeVar("T")


def load_environment(customer: Optional[str], all_customers: bool) -> tuple[SyncSettings, list[Tenant]]:
    """Resolve settings and the tenants a command should run against.

    Prints the problem and exits 1 on any configuration error.
    """
    try:
        settings = load_settings()
        registry = resolve_tenants()
        if all_customers:
            tenants = [registry.tenants[idn] for idn in registry.names()]
        else:
            tenants = [registry.select(customer)]
    except ConfigError as exc:
        console.print(f"[bold red]Configuration error:[/] {exc}")
        sys.exit(1)
    return settings, tenants


async def run_per_tenant(
    settings: SyncSettings,
    tenants: list[Tenant],
    action: Callable[[SyncEngine], Awaitable[T]],
) -> list[tuple[Tenant, Optional[T], Optional[NewoSyncError]]]:
    """Run ``action`` for each tenant in turn over one shared HTTP client.

    A failure for one tenant is captured and does not stop the others.
    """
    results = []
    async with build_client(settings) as client:
        for tenant in tenants:
            engine = SyncEngine(settings, tenant, client=client)
            try:
                results.append((tenant, await action(engine), None))
            except NewoSyncError as exc:
                logger.debug("Action failed for %s", tenant.idn, exc_info=True)
                results.append((tenant, None, exc))
    return results


def print_report(report: SyncReport) -> None:
    """Summarize one pull or push run."""
    for path in report.written:
        console.print(f"    [green]wrote[/]    {path}")
    for path in report.removed:
        console.print(f"    [yellow]removed[/]  {path}")
    for label in report.created:
        console.print(f"    [green]created[/]  {label}")
    for label in report.updated:
        console.print(f"    [cyan]updated[/]  {label}")
    for label in report.deleted:
        console.print(f"    [yellow]deleted[/]  {label}")
    for warning in report.warnings:
        console.print(f"    [yellow]warning:[/] {warning}")
    for failure in report.errors:
        console.print(f"    [red]error:[/] {failure.entity}: {failure.message}")
