"""
Push -- apply local mirror changes to the server.

    push  ->  build_plan -> for each change, parents first:
              create / update / delete -> persist map + hashes

Created ids are written back into the entity's ``metadata.yaml`` and
the Identity Map before the next change runs, and both state files are
saved after every applied change, so an interrupted push never loses
an id it already obtained. Entity-level failures are recorded and the
run moves on to the next change; authentication and network failures
stop the run. A file is only marked synced when everything it asked
for went through.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Optional

import yaml

from ..api import RemoteApi
from ..errors import LocalChangeError, NewoSyncError, RemoteEntityError
from ..hashing import HashStore, fingerprint
from ..idmap import IdentityMapStore
from ..layout import TenantLayout, dump_yaml, load_yaml, write_atomic
from ..models import (
    RUNNER_EXTENSIONS,
    AgentNode,
    FlowEvent,
    FlowNode,
    FlowState,
    IdentityMap,
    ProjectNode,
    SkillNode,
    Tenant,
    runner_for_extension,
)
from .akb import push_akb
from .attributes import push_attributes
from .models import ChangeStatus, EntityType, FileChange, SyncReport
from .personas import push_personas
from .plan import build_plan

logger = logging.getLogger("newosync.sync.push")

_Key = tuple[str, ...]

# (label, metadata.yaml key / FlowNode field, model)
_FLOW_PARTS = (
    ("event", "events", FlowEvent),
    ("state", "state_fields", FlowState),
)


def _key(change: FileChange) -> _Key:
    parts = (change.project, change.agent, change.flow, change.skill)
    return tuple(p for p in parts if p)


class PushEngine:
    """Executes the change plan of one tenant against the remote API."""

    def __init__(self, tenant: Tenant, api: RemoteApi, layout: TenantLayout):
        self.tenant = tenant
        self.api = api
        self.layout = layout
        self.hash_store = HashStore(layout.hashes_path)
        self.map_store = IdentityMapStore(layout.map_path)

    # -- helpers ----------------------------------------------------------

    def _meta(self, change: FileChange) -> dict[str, Any]:
        return load_yaml(self.layout.abs(change.path))

    def _write_meta(
        self, change: FileChange, meta: dict[str, Any], hashes: dict[str, str], synced: bool = True,
    ) -> None:
        content = dump_yaml(meta)
        write_atomic(self.layout.abs(change.path), content)
        if synced:
            hashes[change.path] = fingerprint(content)

    def _synced(self, change: FileChange, hashes: dict[str, str]) -> None:
        if change.fingerprint:
            hashes[change.path] = change.fingerprint

    def _forget(self, prefix: str, hashes: dict[str, str]) -> None:
        for key in [k for k in hashes if k == prefix or k.startswith(prefix + "/")]:
            del hashes[key]

    def _check_emptied(self, change: FileChange, directory: Path) -> None:
        """Refuse to delete an entity whose directory still holds files."""
        if not directory.is_dir():
            return
        left = [p for p in directory.rglob("*") if p.is_file() and not p.name.startswith(".")]
        if left:
            raise LocalChangeError(
                f"{change.label}: metadata.yaml was removed but {len(left)} file(s) remain in "
                f"{self.layout.rel(directory)}/; remove the whole directory to delete it, "
                "or restore metadata.yaml"
            )

    @staticmethod
    def _parent_id(node: Any, what: str, change: FileChange) -> str:
        if node is None or node.is_pending:
            raise RemoteEntityError(change.label, None, f"{what} has no remote id yet")
        return node.id

    # -- projects ---------------------------------------------------------

    async def _project(self, change: FileChange, idmap: IdentityMap, hashes, report, deleted) -> None:
        p = change.project
        if change.status == ChangeStatus.DELETED:
            self._check_emptied(change, self.layout.project_dir(p))
            await self.api.delete_project(change.remote_id)
            idmap.remove(p)
            self._forget(f"projects/{p}", hashes)
            deleted.add((p,))
            report.deleted.append(change.label)
            return

        meta = self._meta(change)
        payload = {
            "idn": meta.get("idn") or p,
            "title": meta.get("title") or p,
            "description": meta.get("description") or "",
        }
        if change.status == ChangeStatus.ADDED:
            project_id = await self.api.create_project(payload)
            existing = idmap.project(p)
            idmap.projects[p] = ProjectNode(id=project_id, agents=existing.agents if existing else {})
            meta["id"] = project_id
            self._write_meta(change, meta, hashes)
            report.created.append(change.label)
        else:
            await self.api.update_project(change.remote_id, payload)
            self._synced(change, hashes)
            report.updated.append(change.label)

    # -- agents -----------------------------------------------------------

    async def _agent(self, change: FileChange, idmap: IdentityMap, hashes, report, deleted) -> None:
        p, a = change.project, change.agent
        if change.status == ChangeStatus.DELETED:
            self._check_emptied(change, self.layout.agent_dir(p, a))
            await self.api.delete_agent(change.remote_id)
            idmap.remove(p, a)
            self._forget(f"projects/{p}/{a}", hashes)
            deleted.add((p, a))
            report.deleted.append(change.label)
            return

        meta = self._meta(change)
        payload = {
            "idn": meta.get("idn") or a,
            "title": meta.get("title") or a,
            "description": meta.get("description") or "",
            "persona_id": meta.get("persona_id"),
        }
        if change.status == ChangeStatus.ADDED:
            project_id = self._parent_id(idmap.project(p), f"project {p}", change)
            agent_id = await self.api.create_agent(project_id, payload)
            existing = idmap.agent(p, a)
            idmap.projects[p].agents[a] = AgentNode(id=agent_id, flows=existing.flows if existing else {})
            meta["id"] = agent_id
            self._write_meta(change, meta, hashes)
            report.created.append(change.label)
        else:
            await self.api.update_agent(change.remote_id, payload)
            self._synced(change, hashes)
            report.updated.append(change.label)

    # -- flows ------------------------------------------------------------

    async def _reconcile_flow(self, project_id: str, agent_id: str, flow_idn: str) -> Optional[str]:
        """Find the id of a just-created flow in the agent listing."""
        for agent in await self.api.list_agents(project_id):
            if agent.id != agent_id:
                continue
            for flow in agent.flows:
                if flow.idn == flow_idn:
                    return flow.id
        return None

    def _part_calls(self, kind: str):
        if kind == "event":
            return self.api.create_flow_event, self.api.update_flow_event, self.api.delete_flow_event
        return self.api.create_flow_state, self.api.update_flow_state, self.api.delete_flow_state

    async def _sync_flow_parts(
        self, flow_id: str, meta: dict[str, Any], node: FlowNode, report: SyncReport, label: str,
    ) -> tuple[bool, bool]:
        """Create, update and delete events and state fields.

        Local entries are compared with the node's snapshot of the last
        sync. Ids of created parts are set on the ``meta`` entries. A
        failed call keeps the old snapshot entry so the next push tries
        it again.

        Returns:
            ``(ok, created)``: every call went through, and whether any
            part got a new id.
        """
        ok, created = True, False
        for kind, field, model in _FLOW_PARTS:
            create, update, delete = self._part_calls(kind)
            entries = meta.get(field) or []
            if not isinstance(entries, list) or not all(isinstance(e, dict) for e in entries):
                raise ValueError(f"flow {label}: '{field}' must be a list of mappings")
            known = {s["id"]: s for s in getattr(node, field) if s.get("id")}
            synced: list[dict[str, Any]] = []
            seen: set[str] = set()

            for entry in entries:
                part = model.model_validate(entry)
                name = f"{kind} {label}/{part.idn}"
                try:
                    if not part.id:
                        part.id = await create(flow_id, part.payload())
                        entry["id"] = part.id
                        created = True
                        report.created.append(name)
                    elif part.local() != known.get(part.id):
                        await update(part.id, part.payload())
                        report.updated.append(name)
                except RemoteEntityError as exc:
                    logger.warning("%s failed: %s", name, exc)
                    report.record_error(name, exc)
                    ok = False
                    if part.id in known:
                        seen.add(part.id)
                        synced.append(known[part.id])
                    continue
                seen.add(part.id)
                synced.append(part.local())

            for part_id, old in known.items():
                if part_id in seen:
                    continue
                name = f"{kind} {label}/{old.get('idn') or part_id}"
                try:
                    await delete(part_id)
                    report.deleted.append(name)
                except RemoteEntityError as exc:
                    logger.warning("%s failed: %s", name, exc)
                    report.record_error(name, exc)
                    ok = False
                    synced.append(old)
            setattr(node, field, synced)
        return ok, created

    def _skill_file(self, p: str, a: str, f: str, s: str, node: SkillNode):
        path = self.layout.skill_path(p, a, f, s, node.runner_type)
        if path.is_file():
            return path
        for ext in RUNNER_EXTENSIONS.values():
            other = self.layout.flow_dir(p, a, f) / f"{s}.{ext}"
            if other.is_file():
                return other
        return None

    async def _update_skill_metadata(self, change: FileChange, meta: dict[str, Any], node: FlowNode, report) -> None:
        """Push skill metadata edited in the flow's metadata.yaml."""
        p, a, f = change.project, change.agent, change.flow
        for entry in meta.get("skills") or []:
            if not isinstance(entry, dict) or not entry.get("idn"):
                continue
            s = entry["idn"]
            skill = node.skills.get(s)
            if skill is None or skill.is_pending:
                continue
            wanted = {k: entry.get(k, v) for k, v in skill.metadata().items()}
            if wanted == skill.metadata():
                continue
            path = self._skill_file(p, a, f, s, skill)
            content = path.read_text(encoding="utf-8") if path else ""
            await self.api.update_skill(skill.id, {"idn": s, "prompt_script": content, **wanted})
            node.skills[s] = SkillNode(id=skill.id, **wanted)
            report.updated.append(f"skill {p}/{a}/{f}/{s}")

    async def _flow(self, change: FileChange, idmap: IdentityMap, hashes, report, deleted) -> None:
        p, a, f = change.project, change.agent, change.flow
        if change.status == ChangeStatus.DELETED:
            self._check_emptied(change, self.layout.flow_dir(p, a, f))
            await self.api.delete_flow(change.remote_id)
            idmap.remove(p, a, f)
            self._forget(f"projects/{p}/{a}/{f}", hashes)
            deleted.add((p, a, f))
            report.deleted.append(change.label)
            return

        meta = self._meta(change)
        label = f"{p}/{a}/{f}"
        if change.status == ChangeStatus.MODIFIED:
            await self.api.update_flow(change.remote_id, {
                "idn": meta.get("idn") or f,
                "title": meta.get("title") or f,
                "description": meta.get("description") or "",
                "default_runner_type": meta.get("default_runner_type"),
                "default_model": meta.get("default_model") or {},
            })
            report.updated.append(change.label)
            node = idmap.flow(p, a, f)
            await self._update_skill_metadata(change, meta, node, report)
            ok, created = await self._sync_flow_parts(change.remote_id, meta, node, report, label)
            if created:
                self._write_meta(change, meta, hashes, synced=ok)
            elif ok:
                self._synced(change, hashes)
            return

        project_id = self._parent_id(idmap.project(p), f"project {p}", change)
        agent_id = self._parent_id(idmap.agent(p, a), f"agent {p}/{a}", change)
        existing = idmap.flow(p, a, f)
        if existing is None:
            flow_id = await self.api.create_flow(agent_id, {
                "idn": meta.get("idn") or f,
                "title": meta.get("title") or f,
            })
            report.created.append(change.label)
            existing = FlowNode()
            idmap.projects[p].agents[a].flows[f] = existing
        else:
            flow_id = None
        if not flow_id:
            flow_id = await self._reconcile_flow(project_id, agent_id, meta.get("idn") or f)
        if not flow_id:
            logger.info("Flow %s created; id not listed yet", label)
            report.warnings.append(f"flow {label}: created, id pending until the next pull or push")
            return

        existing.id = flow_id
        meta["id"] = flow_id
        ok, _ = await self._sync_flow_parts(flow_id, meta, existing, report, label)
        self._write_meta(change, meta, hashes, synced=ok)

    # -- skills -----------------------------------------------------------

    async def _skill(self, change: FileChange, idmap: IdentityMap, hashes, report, deleted) -> None:
        p, a, f, s = change.project, change.agent, change.flow, change.skill
        if change.status == ChangeStatus.DELETED:
            await self.api.delete_skill(change.remote_id)
            idmap.remove(p, a, f, s)
            hashes.pop(change.path, None)
            report.deleted.append(change.label)
            return

        path = self.layout.abs(change.path)
        data = path.read_bytes()
        content = data.decode("utf-8")
        runner = runner_for_extension(path.suffix)

        if change.status == ChangeStatus.ADDED:
            flow_node = idmap.flow(p, a, f)
            flow_id = self._parent_id(flow_node, f"flow {p}/{a}/{f}", change)
            flow_meta_path = self.layout.metadata_path(p, a, f)
            flow_meta = load_yaml(flow_meta_path) if flow_meta_path.is_file() else {}
            entry = next(
                (e for e in flow_meta.get("skills") or [] if isinstance(e, dict) and e.get("idn") == s),
                {},
            )
            node = SkillNode(
                title=entry.get("title") or s,
                runner_type=runner,
                model=entry.get("model") or flow_meta.get("default_model") or {},
                parameters=entry.get("parameters") or [],
                path=entry.get("path"),
            )
            node.id = await self.api.create_skill(flow_id, {"idn": s, "prompt_script": content, **node.metadata()})
            flow_node.skills[s] = node
            report.created.append(change.label)
        else:
            node = idmap.skill(p, a, f, s)
            node.runner_type = runner
            await self.api.update_skill(change.remote_id, {"idn": s, "prompt_script": content, **node.metadata()})
            report.updated.append(change.label)

        for ext in RUNNER_EXTENSIONS.values():
            other = self.layout.flow_dir(p, a, f) / f"{s}.{ext}"
            if other != path and not other.is_file():
                hashes.pop(self.layout.rel(other), None)
        hashes[change.path] = fingerprint(data)

    # -- tenant-level documents -------------------------------------------

    def _document_removed(self, change: FileChange, hashes, report) -> bool:
        if change.status != ChangeStatus.DELETED:
            return False
        report.warnings.append(f"{change.path}: removed locally; nothing is deleted on the server")
        hashes.pop(change.path, None)
        return True

    async def _attributes(self, change: FileChange, idmap, hashes, report, deleted) -> None:
        if self._document_removed(change, hashes, report):
            return
        if await push_attributes(self.api, self.layout, report):
            self._synced(change, hashes)

    async def _personas(self, change: FileChange, idmap, hashes, report, deleted) -> None:
        if self._document_removed(change, hashes, report):
            return
        if await push_personas(self.api, self.layout, report):
            self._synced(change, hashes)

    async def _akb(self, change: FileChange, idmap, hashes, report, deleted) -> None:
        if self._document_removed(change, hashes, report):
            return
        if await push_akb(self.api, self.layout, self.layout.abs(change.path), report):
            self._synced(change, hashes)

    # -- run --------------------------------------------------------------

    async def push(self) -> SyncReport:
        """Push every local change of the tenant.

        Returns:
            SyncReport listing created/updated/deleted entities and errors.

        Raises:
            LocalStateError: No Identity Map yet (pull first) or corrupt state.
        """
        report = SyncReport(tenant=self.tenant.idn, operation="push")
        idmap = self.map_store.load(required=True)
        hashes = self.hash_store.load()
        plan = [c for c in build_plan(self.layout, hashes, idmap) if c.is_change]
        if not plan:
            logger.info("Nothing to push for %s", self.tenant.idn)
            return report

        handlers = {
            EntityType.PROJECT: self._project,
            EntityType.AGENT: self._agent,
            EntityType.FLOW: self._flow,
            EntityType.SKILL: self._skill,
            EntityType.ATTRIBUTES: self._attributes,
            EntityType.PERSONAS: self._personas,
            EntityType.AKB: self._akb,
        }
        deleted: set[_Key] = set()
        logger.info("Pushing %d change(s) for %s", len(plan), self.tenant.idn)

        for change in plan:
            key = _key(change)
            if change.status == ChangeStatus.DELETED and any(key[:i] in deleted for i in range(1, len(key))):
                # Removed with its already-deleted parent.
                continue
            try:
                await handlers[change.entity](change, idmap, hashes, report, deleted)
            except (RemoteEntityError, LocalChangeError) as exc:
                logger.warning("%s failed: %s", change.label, exc)
                report.record_error(change.label, exc)
                continue
            except (OSError, ValueError, yaml.YAMLError) as exc:
                logger.warning("%s: cannot read local file: %s", change.label, exc)
                report.record_error(change.label, exc)
                continue
            except NewoSyncError as exc:
                logger.error("Push for %s stopped at %s: %s", self.tenant.idn, change.label, exc)
                report.record_error(change.label, exc)
                break
            finally:
                self.map_store.save(idmap)
                self.hash_store.save(hashes)

        logger.info(
            "Push for %s done: %d created, %d updated, %d deleted, %d error(s)",
            self.tenant.idn, len(report.created), len(report.updated),
            len(report.deleted), len(report.errors),
        )
        return report
