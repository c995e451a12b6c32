"""
Change planner -- the one comparison both ``status`` and ``push`` use.

Each tracked file is classified from three inputs only: the file on
disk, its stored fingerprint, and its Identity Map node.

    exists, confirmed node, same fingerprint       unchanged
    exists, confirmed node, other/no fingerprint   modified
    exists, no confirmed node                      added
    flow exists, pending node                      pending
    confirmed node, file gone                      deleted

Tenant-level documents (attributes.yaml, personas.yaml, akb/*.yaml)
have no node; they are compared by fingerprint alone.

Because status renders this plan and push executes it, the two cannot
disagree about what needs doing.
"""

from __future__ import annotations

from pathlib import Path
from typing import Iterator, Optional

from ..hashing import fingerprint_file
from ..layout import AKB_DIRNAME, ATTRIBUTES_FILENAME, METADATA_FILENAME, PERSONAS_FILENAME, TenantLayout
from ..models import SCRIPT_EXTENSIONS, IdentityMap
from .models import ChangeStatus, EntityType, FileChange

_IdnKey = tuple[str, Optional[str], Optional[str], Optional[str]]


def _dirs(path: Path) -> list[Path]:
    if not path.is_dir():
        return []
    return sorted(p for p in path.iterdir() if p.is_dir() and not p.name.startswith("."))


def _scan_local(layout: TenantLayout) -> Iterator[tuple[EntityType, _IdnKey, Path]]:
    """Yield every local file that stands for a remote entity."""
    for project_dir in _dirs(layout.projects_dir):
        p = project_dir.name
        if (project_dir / METADATA_FILENAME).is_file():
            yield EntityType.PROJECT, (p, None, None, None), project_dir / METADATA_FILENAME
        for agent_dir in _dirs(project_dir):
            a = agent_dir.name
            if (agent_dir / METADATA_FILENAME).is_file():
                yield EntityType.AGENT, (p, a, None, None), agent_dir / METADATA_FILENAME
            for flow_dir in _dirs(agent_dir):
                f = flow_dir.name
                if (flow_dir / METADATA_FILENAME).is_file():
                    yield EntityType.FLOW, (p, a, f, None), flow_dir / METADATA_FILENAME
                for script in sorted(flow_dir.iterdir()):
                    if script.is_file() and script.suffix.lower() in SCRIPT_EXTENSIONS:
                        yield EntityType.SKILL, (p, a, f, script.stem), script


def _tracked(layout: TenantLayout, idmap: IdentityMap) -> Iterator[tuple[EntityType, _IdnKey, Path, Optional[str]]]:
    """Yield the expected file of every confirmed Identity Map node."""
    for p, project in idmap.projects.items():
        if not project.is_pending:
            yield EntityType.PROJECT, (p, None, None, None), layout.metadata_path(p), project.id
        for a, agent in project.agents.items():
            if not agent.is_pending:
                yield EntityType.AGENT, (p, a, None, None), layout.metadata_path(p, a), agent.id
            for f, flow in agent.flows.items():
                if not flow.is_pending:
                    yield EntityType.FLOW, (p, a, f, None), layout.metadata_path(p, a, f), flow.id
                for s, skill in flow.skills.items():
                    if not skill.is_pending:
                        path = layout.skill_path(p, a, f, s, skill.runner_type)
                        yield EntityType.SKILL, (p, a, f, s), path, skill.id


def _remote_id(idmap: IdentityMap, entity: EntityType, key: _IdnKey) -> Optional[str]:
    """Confirmed remote id of the node for an entity key, if any."""
    p, a, f, s = key
    if entity == EntityType.PROJECT:
        node = idmap.project(p)
    elif entity == EntityType.AGENT:
        node = idmap.agent(p, a)
    elif entity == EntityType.FLOW:
        node = idmap.flow(p, a, f)
    else:
        node = idmap.skill(p, a, f, s)
    if node is None:
        return None
    return node.id or None


def _is_pending_flow(idmap: IdentityMap, entity: EntityType, key: _IdnKey) -> bool:
    if entity != EntityType.FLOW:
        return False
    node = idmap.flow(*key[:3])
    return node is not None and node.is_pending


def _document_entity(rel: str) -> Optional[EntityType]:
    """Entity of a tenant-level document path, or None for project files."""
    if rel == ATTRIBUTES_FILENAME:
        return EntityType.ATTRIBUTES
    if rel == PERSONAS_FILENAME:
        return EntityType.PERSONAS
    folder, _, name = rel.partition("/")
    if folder == AKB_DIRNAME and name.endswith(".yaml") and "/" not in name:
        return EntityType.AKB
    return None


def _local_documents(layout: TenantLayout) -> Iterator[Path]:
    yield layout.attributes_path
    yield layout.personas_path
    if layout.akb_dir.is_dir():
        yield from sorted(p for p in layout.akb_dir.glob("*.yaml") if not p.name.startswith("."))


def _document_change(rel: str, entity: EntityType, status: ChangeStatus, current, stored) -> FileChange:
    agent = Path(rel).stem if entity == EntityType.AKB else None
    return FileChange(
        path=rel, entity=entity, status=status, agent=agent, fingerprint=current, stored=stored,
    )


def build_plan(
    layout: TenantLayout,
    hashes: dict[str, str],
    idmap: IdentityMap,
) -> list[FileChange]:
    """Classify every tracked file for a tenant.

    Args:
        layout: Tenant paths.
        hashes: Loaded Hash Store contents.
        idmap: Loaded Identity Map.

    Returns:
        File changes ordered parents-first (project, agent, flow, skill,
        then attributes, personas and knowledge base), then by path.
        Unchanged files are included.
    """
    changes: list[FileChange] = []
    local_keys: set[tuple[EntityType, _IdnKey]] = set()

    for entity, key, path in _scan_local(layout):
        local_keys.add((entity, key))
        rel = layout.rel(path)
        current = fingerprint_file(path)
        stored = hashes.get(rel)
        remote_id = _remote_id(idmap, entity, key)
        if remote_id:
            status = ChangeStatus.UNCHANGED if current == stored else ChangeStatus.MODIFIED
        elif _is_pending_flow(idmap, entity, key):
            status = ChangeStatus.PENDING
        else:
            status = ChangeStatus.ADDED
        p, a, f, s = key
        changes.append(FileChange(
            path=rel, entity=entity, status=status, project=p, agent=a, flow=f, skill=s,
            remote_id=remote_id, fingerprint=current, stored=stored,
        ))

    for entity, key, path, remote_id in _tracked(layout, idmap):
        if (entity, key) in local_keys:
            continue
        rel = layout.rel(path)
        p, a, f, s = key
        changes.append(FileChange(
            path=rel, entity=entity, status=ChangeStatus.DELETED, project=p, agent=a, flow=f,
            skill=s, remote_id=remote_id, fingerprint=None, stored=hashes.get(rel),
        ))

    present: set[str] = set()
    for path in _local_documents(layout):
        if not path.is_file():
            continue
        rel = layout.rel(path)
        present.add(rel)
        current = fingerprint_file(path)
        stored = hashes.get(rel)
        if stored is None:
            status = ChangeStatus.ADDED
        else:
            status = ChangeStatus.UNCHANGED if current == stored else ChangeStatus.MODIFIED
        changes.append(_document_change(rel, _document_entity(rel), status, current, stored))

    for rel, stored in hashes.items():
        entity = _document_entity(rel)
        if entity is not None and rel not in present:
            changes.append(_document_change(rel, entity, ChangeStatus.DELETED, None, stored))

    changes.sort(key=lambda c: (c.depth, c.path))
    return changes
