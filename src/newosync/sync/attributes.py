"""
Customer attributes -- ``attributes.yaml`` in the mirror, one snapshot in state.

Pull writes every attribute (hidden ones included) to ``attributes.yaml``
and records ``idn -> {id, fields}`` in ``attributes-map.json``. Push
diffs the local file against that snapshot: changed attributes are
updated, unknown ones created. Attributes removed locally are left on
the server; there is no delete endpoint.
"""

from __future__ import annotations

import logging
from typing import Any

from ..api import RemoteApi
from ..errors import RemoteEntityError
from ..layout import TenantLayout, dump_yaml, load_yaml
from .models import SyncReport
from .snapshot import load_snapshot, save_snapshot
from .writer import MirrorWriter

logger = logging.getLogger("newosync.sync.attributes")


async def pull_attributes(api: RemoteApi, layout: TenantLayout, writer: MirrorWriter) -> None:
    """Fetch customer attributes into ``attributes.yaml`` and the snapshot."""
    attributes = await api.get_customer_attributes()
    writer.write(
        layout.attributes_path,
        dump_yaml({"attributes": [a.local() for a in attributes]}),
    )
    save_snapshot(layout.attributes_map_path, {a.idn: {"id": a.id, **a.local()} for a in attributes})
    logger.info("Pulled %d customer attributes for %s", len(attributes), layout.tenant)


def _local_entries(layout: TenantLayout) -> list[dict[str, Any]]:
    data = load_yaml(layout.attributes_path)
    entries = data.get("attributes") or []
    if not isinstance(entries, list):
        raise ValueError(f"{layout.attributes_path}: 'attributes' must be a list")
    for entry in entries:
        if not isinstance(entry, dict) or not entry.get("idn"):
            raise ValueError(f"{layout.attributes_path}: every attribute needs an idn")
    return entries


async def push_attributes(api: RemoteApi, layout: TenantLayout, report: SyncReport) -> bool:
    """Send changed and new attributes to the server.

    Returns:
        True when every attribute went through.
    """
    entries = _local_entries(layout)
    snapshot = load_snapshot(layout.attributes_map_path)
    ok = True
    try:
        for entry in entries:
            idn = str(entry["idn"])
            known = snapshot.get(idn)
            try:
                if known and known.get("id"):
                    if {k: v for k, v in known.items() if k != "id"} == entry:
                        continue
                    await api.update_customer_attribute(known["id"], {**entry, "id": known["id"]})
                    snapshot[idn] = {"id": known["id"], **entry}
                    report.updated.append(f"attribute {idn}")
                else:
                    new_id = await api.create_customer_attribute(entry)
                    snapshot[idn] = {"id": new_id, **entry}
                    report.created.append(f"attribute {idn}")
            except RemoteEntityError as exc:
                logger.warning("Attribute %s failed: %s", idn, exc)
                report.record_error(f"attribute {idn}", exc)
                ok = False
        local = {str(e["idn"]) for e in entries}
        for idn in sorted(set(snapshot) - local):
            report.warnings.append(f"attribute {idn}: removed locally, still on the server (no delete endpoint)")
    finally:
        save_snapshot(layout.attributes_map_path, snapshot)
    return ok
