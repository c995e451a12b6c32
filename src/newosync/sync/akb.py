"""
Knowledge base -- one ``akb/<agent>.yaml`` per persona linked to an agent.

    pull  ->  personas linked to agents -> topics per persona (bounded,
              concurrent) -> akb/<agent>.yaml + akb-map.json
    push  ->  articles new or changed since the snapshot -> append-manual

``akb-map.json`` holds, per agent, the persona id and a fingerprint of
every article as last synchronized. The API can only append articles:
a changed article is imported again as a new one, and an article
removed locally stays on the server with a warning.
"""

from __future__ import annotations

import asyncio
import json
import logging
from pathlib import Path
from typing import Any, Union

from ..api import RemoteApi
from ..errors import NewoSyncError, RemoteEntityError
from ..hashing import fingerprint
from ..layout import AKB_DIRNAME, TenantLayout, dump_yaml, load_yaml
from ..models import AkbTopic, Persona
from .models import SyncReport
from .personas import persona_for_agent
from .snapshot import load_snapshot, save_snapshot
from .writer import MirrorWriter

logger = logging.getLogger("newosync.sync.akb")


def topic_fingerprint(topic: AkbTopic) -> str:
    """Fingerprint of the fields a user edits (timestamps excluded)."""
    fields = {k: v for k, v in topic.local().items() if k not in ("created_at", "updated_at")}
    return fingerprint(json.dumps(fields, sort_keys=True, ensure_ascii=False))


async def pull_akb(
    api: RemoteApi,
    layout: TenantLayout,
    writer: MirrorWriter,
    personas: list[Persona],
    sem: asyncio.Semaphore,
) -> None:
    """Write the articles of every persona linked to an agent.

    A persona whose topics fail to load keeps its previous file and
    snapshot entry; the failure is reported as a warning.
    """
    linked = [p for p in personas if p.agent and p.agent.idn]

    async def fetch(persona: Persona) -> Union[list[AkbTopic], NewoSyncError]:
        try:
            async with sem:
                return await api.list_akb_topics(persona.id)
        except NewoSyncError as exc:
            return exc

    results = await asyncio.gather(*(fetch(p) for p in linked))
    previous = load_snapshot(layout.akb_map_path)
    snapshot: dict[str, Any] = {}
    kept: set[str] = set()

    for persona, result in zip(linked, results):
        agent = persona.agent.idn
        path = layout.akb_path(agent)
        if isinstance(result, NewoSyncError):
            logger.warning("Knowledge base of %s not pulled: %s", agent, result)
            writer.report.warnings.append(f"knowledge base {agent} not pulled: {result}")
            kept.add(layout.rel(path))
            if agent in previous:
                snapshot[agent] = previous[agent]
            continue
        if not result:
            continue
        writer.write(path, dump_yaml({"persona": persona.name, "topics": [t.local() for t in result]}))
        kept.add(layout.rel(path))
        snapshot[agent] = {
            "persona_id": persona.id,
            "topics": {t.topic_name: topic_fingerprint(t) for t in result},
        }

    for rel in [k for k in writer.hashes if k.startswith(AKB_DIRNAME + "/")]:
        if rel not in kept:
            writer.remove(layout.abs(rel))

    save_snapshot(layout.akb_map_path, snapshot)
    logger.info("Pulled knowledge base of %d persona(s) for %s", len(snapshot), layout.tenant)


def _local_topics(path: Path) -> list[AkbTopic]:
    data = load_yaml(path)
    entries = data.get("topics") or []
    if not isinstance(entries, list):
        raise ValueError(f"{path}: 'topics' must be a list")
    for entry in entries:
        if not isinstance(entry, dict) or not entry.get("topic_name"):
            raise ValueError(f"{path}: every topic needs a topic_name")
    return [AkbTopic.model_validate(entry) for entry in entries]


async def push_akb(api: RemoteApi, layout: TenantLayout, path: Path, report: SyncReport) -> bool:
    """Import the new and changed articles of one ``akb/<agent>.yaml``.

    Returns:
        True when every article went through.

    Raises:
        RemoteEntityError: No persona is linked to the file's agent.
    """
    agent = path.stem
    topics = _local_topics(path)
    snapshot = load_snapshot(layout.akb_map_path)
    known = snapshot.get(agent) or {}
    persona_id = known.get("persona_id") or persona_for_agent(layout, agent)
    if not persona_id:
        raise RemoteEntityError(f"akb {agent}", None, "no persona is linked to this agent")

    synced: dict[str, str] = dict(known.get("topics") or {})
    ok = True
    try:
        for topic in topics:
            name = topic.topic_name
            current = topic_fingerprint(topic)
            if synced.get(name) == current:
                continue
            try:
                await api.import_akb_article(topic.article(persona_id))
            except RemoteEntityError as exc:
                logger.warning("Article %s/%s failed: %s", agent, name, exc)
                report.record_error(f"article {agent}/{name}", exc)
                ok = False
                continue
            (report.updated if name in synced else report.created).append(f"article {agent}/{name}")
            synced[name] = current
        local = {t.topic_name for t in topics}
        for name in sorted(set(known.get("topics") or {}) - local):
            report.warnings.append(f"article {agent}/{name}: removed locally, still on the server (no delete endpoint)")
    finally:
        snapshot[agent] = {"persona_id": persona_id, "topics": synced}
        save_snapshot(layout.akb_map_path, snapshot)
    return ok
