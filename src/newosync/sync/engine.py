"""
Sync Engine -- one tenant's pull, push, status and re-auth behind one object.

    newo-sync pull    ->  PullEngine.pull   (writes mirror + map + hashes)
    newo-sync push    ->  PushEngine.push   (build_plan -> remote calls)
    newo-sync status  ->  StatusEngine      (build_plan, read-only)

Pull and push of the same tenant never interleave: every engine for a
tenant's state dir takes the same lock. Different tenants share nothing
but the HTTP client.
"""

from __future__ import annotations

import asyncio
import logging
import weakref
from pathlib import Path
from typing import Callable, Optional

import httpx

from ..api import RemoteApi
from ..auth import TokenManager
from ..config import SyncSettings
from ..layout import TenantLayout
from ..models import Tenant, now_ms
from ..transport import AuthenticatedTransport
from .models import FileChange, SyncReport
from .pull import PullEngine
from .push import PushEngine
from .status import StatusEngine

logger = logging.getLogger("newosync.sync.engine")

# One writer lock per tenant state dir, alive while any engine holds it.
_LOCKS: "weakref.WeakValueDictionary[Path, asyncio.Lock]" = weakref.WeakValueDictionary()


def _tenant_lock(layout: TenantLayout) -> asyncio.Lock:
    key = layout.state_dir.resolve()
    lock = _LOCKS.get(key)
    if lock is None:
        lock = asyncio.Lock()
        _LOCKS[key] = lock
    return lock


def build_client(settings: SyncSettings, **kwargs) -> httpx.AsyncClient:
    """HTTP client every tenant's requests go through."""
    return httpx.AsyncClient(
        base_url=settings.base_url,
        timeout=settings.timeout,
        headers={"accept": "application/json"},
        **kwargs,
    )


class SyncEngine:
    """Synchronizes one tenant's mirror with the server.

    Use as an async context manager when the engine should own (and
    close) its HTTP client; pass ``client`` to share one across tenants.
    """

    def __init__(
        self,
        settings: SyncSettings,
        tenant: Tenant,
        client: Optional[httpx.AsyncClient] = None,
        clock: Callable[[], int] = now_ms,
    ):
        """Initialize the engine.

        Args:
            settings: Base URL, root directory, concurrency, timeout.
            tenant: The customer to synchronize.
            client: Shared HTTP client. One is created when omitted.
            clock: Epoch-ms clock for token expiry.
        """
        self.settings = settings
        self.tenant = tenant
        self.layout = TenantLayout(settings.root, tenant.idn)
        self._owns_client = client is None
        self.client = client or build_client(settings)
        self.tokens = TokenManager(settings, self.client, clock=clock)
        self.transport = AuthenticatedTransport(tenant, self.tokens, self.client)
        self.api = RemoteApi(self.transport)
        self._lock = _tenant_lock(self.layout)

    async def __aenter__(self) -> "SyncEngine":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._owns_client:
            await self.client.aclose()

    async def pull(self, project_id: Optional[str] = None, force: bool = False) -> SyncReport:
        """Mirror remote state to disk. See ``PullEngine.pull``."""
        async with self._lock:
            engine = PullEngine(self.tenant, self.api, self.layout, self.settings.concurrency)
            return await engine.pull(project_id=project_id, force=force)

    async def push(self) -> SyncReport:
        """Send local changes to the server. See ``PushEngine.push``."""
        async with self._lock:
            return await PushEngine(self.tenant, self.api, self.layout).push()

    def status(self, include_unchanged: bool = False) -> list[FileChange]:
        return StatusEngine(self.layout).status(include_unchanged=include_unchanged)

    async def reauth(self) -> None:
        """Drop the stored token and exchange the API key again."""
        await self.tokens.force_reauth(self.tenant)
        logger.info("Re-authenticated %s", self.tenant.idn)
