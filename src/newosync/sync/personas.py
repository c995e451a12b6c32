"""
Personas -- ``personas.yaml`` in the mirror, ``personas-map.json`` in state.

Pull lists every persona with the agent it is linked to. Push creates
the personas the snapshot does not know yet. The API has no persona
update or delete: an edited persona is recorded as an error (the file
stays modified until the edit is reverted or a pull replaces it) and a
removed one as a warning. ``agent_idn`` is informational; an agent is
linked to a persona through ``persona_id`` in the agent's metadata.
"""

from __future__ import annotations

import logging
from typing import Any, Optional

from ..api import RemoteApi
from ..errors import RemoteEntityError
from ..layout import TenantLayout, dump_yaml, load_yaml
from ..models import Persona
from .models import SyncReport
from .snapshot import load_snapshot, save_snapshot
from .writer import MirrorWriter

logger = logging.getLogger("newosync.sync.personas")


def _editable(entry: dict[str, Any]) -> dict[str, Any]:
    name = str(entry["name"])
    return {
        "name": name,
        "title": entry.get("title") or name,
        "description": entry.get("description") or "",
    }


async def pull_personas(api: RemoteApi, layout: TenantLayout, writer: MirrorWriter) -> list[Persona]:
    """Fetch every persona into ``personas.yaml`` and the snapshot."""
    personas = sorted(await api.list_personas(), key=lambda p: p.name)
    writer.write(layout.personas_path, dump_yaml({"personas": [p.local() for p in personas]}))
    save_snapshot(layout.personas_map_path, {p.name: {"id": p.id, **p.local()} for p in personas})
    logger.info("Pulled %d personas for %s", len(personas), layout.tenant)
    return personas


def persona_for_agent(layout: TenantLayout, agent: str) -> Optional[str]:
    """Id of the persona linked to ``agent`` (or named like it), if known."""
    snapshot = load_snapshot(layout.personas_map_path)
    for entry in snapshot.values():
        if entry.get("agent_idn") == agent and entry.get("id"):
            return entry["id"]
    entry = snapshot.get(agent)
    return entry.get("id") if entry else None


def _local_entries(layout: TenantLayout) -> list[dict[str, Any]]:
    data = load_yaml(layout.personas_path)
    entries = data.get("personas") or []
    if not isinstance(entries, list):
        raise ValueError(f"{layout.personas_path}: 'personas' must be a list")
    for entry in entries:
        if not isinstance(entry, dict) or not entry.get("name"):
            raise ValueError(f"{layout.personas_path}: every persona needs a name")
    return entries


async def push_personas(api: RemoteApi, layout: TenantLayout, report: SyncReport) -> bool:
    """Create new personas; report edits and removals the API cannot apply.

    Returns:
        True when nothing was left unsent.
    """
    entries = _local_entries(layout)
    snapshot = load_snapshot(layout.personas_map_path)
    ok = True
    try:
        for entry in entries:
            wanted = _editable(entry)
            name = wanted["name"]
            known = snapshot.get(name)
            if known and known.get("id"):
                if _editable(known) == wanted:
                    continue
                report.record_error(
                    f"persona {name}",
                    RemoteEntityError(f"persona {name}", None, "personas cannot be updated through the API"),
                )
                ok = False
                continue
            try:
                new_id = await api.create_persona(wanted)
            except RemoteEntityError as exc:
                logger.warning("Persona %s failed: %s", name, exc)
                report.record_error(f"persona {name}", exc)
                ok = False
                continue
            snapshot[name] = {"id": new_id, **wanted, "agent_idn": None}
            report.created.append(f"persona {name}")
        local = {str(e["name"]) for e in entries}
        for name in sorted(set(snapshot) - local):
            report.warnings.append(f"persona {name}: removed locally, still on the server (no delete endpoint)")
    finally:
        save_snapshot(layout.personas_map_path, snapshot)
    return ok
