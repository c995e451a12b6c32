"""
Status -- read-only view of what ``push`` would do. No network calls.
"""

from __future__ import annotations

from ..hashing import HashStore
from ..idmap import IdentityMapStore
from ..layout import TenantLayout
from .models import FileChange
from .plan import build_plan


class StatusEngine:
    """Classifies a tenant's tracked files without touching the server."""

    def __init__(self, layout: TenantLayout):
        self.layout = layout
        self.hash_store = HashStore(layout.hashes_path)
        self.map_store = IdentityMapStore(layout.map_path)

    def status(self, include_unchanged: bool = False) -> list[FileChange]:
        """Return the change plan push would execute.

        Raises:
            LocalStateError: Nothing pulled yet, or corrupt state files.
        """
        idmap = self.map_store.load(required=True)
        plan = build_plan(self.layout, self.hash_store.load(), idmap)
        if include_unchanged:
            return plan
        return [c for c in plan if c.is_change]
