"""
Identity Map store -- local IDN paths to remote ids, persisted per tenant.

The map is never silently reset. A corrupt map would make every local
file look new and push would then create duplicates of everything
remotely, so corruption is a hard ``LocalStateError``.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any

from pydantic import ValidationError

from .errors import LocalStateError
from .layout import write_atomic
from .models import IdentityMap

logger = logging.getLogger("newosync.idmap")


def _convert_legacy(data: dict[str, Any]) -> dict[str, Any]:
    """Accept maps written with ``projectId``/``projectIdn`` project entries.

    Older maps keyed the remote id of projects as ``projectId`` and stored
    a single project at the top level. Both shapes convert to the
    ``{"projects": {idn: {"id": ..., "agents": ...}}}`` form.
    """
    if "projects" not in data and "projectId" in data and "agents" in data:
        data = {"projects": {data.get("projectIdn") or "": data}}
    projects = {}
    for idn, entry in (data.get("projects") or {}).items():
        if isinstance(entry, dict) and "projectId" in entry and "id" not in entry:
            entry = {"id": entry.get("projectId"), "agents": entry.get("agents", {})}
        projects[idn] = entry
    return {"projects": projects}


class IdentityMapStore:
    """Reads and writes ``map.json`` for one tenant."""

    def __init__(self, path: Path):
        self.path = path

    def exists(self) -> bool:
        return self.path.exists()

    def load(self, required: bool = False) -> IdentityMap:
        """Read the identity map.

        Args:
            required: Raise instead of returning an empty map when missing.

        Raises:
            LocalStateError: Missing (when required), unreadable or malformed.
        """
        if not self.path.exists():
            if required:
                raise LocalStateError(
                    f"No identity map at {self.path}. Run `newo-sync pull` first."
                )
            return IdentityMap()
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as exc:
            raise LocalStateError(f"Identity map {self.path} is unreadable: {exc}") from exc
        if not isinstance(data, dict):
            raise LocalStateError(f"Identity map {self.path} is not an object")
        try:
            return IdentityMap.model_validate(_convert_legacy(data))
        except (ValidationError, AttributeError) as exc:
            raise LocalStateError(f"Identity map {self.path} is malformed: {exc}") from exc

    def save(self, idmap: IdentityMap) -> None:
        write_atomic(self.path, idmap.model_dump_json(indent=2) + "\n")
        logger.debug("Saved identity map (%d projects) to %s", len(idmap.projects), self.path)
