"""
Pull -- mirror the remote project tree of one tenant onto disk.

    pull  ->  list projects -> list agents (+flows) -> per flow: skills,
              events, states (concurrently, bounded) -> write mirror ->
              clean up remote deletions -> attributes -> personas ->
              knowledge base -> save map + hashes

Fetching and writing are split: every network call for a project
completes before its files are touched, and files are written in a
fixed order so a repeat pull of unchanged data is byte-identical.
The concurrency limit counts requests in flight, not flows.
A flow that fails to fetch keeps its previous files and map node.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Optional

from ..api import RemoteApi
from ..errors import NewoSyncError
from ..hashing import HashStore
from ..idmap import IdentityMapStore
from ..layout import TenantLayout, dump_yaml
from ..models import (
    RUNNER_EXTENSIONS,
    Agent,
    AgentNode,
    Flow,
    FlowEvent,
    FlowNode,
    FlowState,
    IdentityMap,
    Project,
    ProjectNode,
    Skill,
    Tenant,
)
from .akb import pull_akb
from .attributes import pull_attributes
from .models import SyncReport
from .personas import pull_personas
from .writer import MirrorWriter

logger = logging.getLogger("newosync.sync.pull")


@dataclass
class FlowFetch:
    """Everything fetched for one flow, or the error that stopped it."""

    flow: Flow
    skills: list[Skill] = field(default_factory=list)
    events: list[FlowEvent] = field(default_factory=list)
    states: list[FlowState] = field(default_factory=list)
    error: Optional[Exception] = None


@dataclass
class AgentFetch:
    agent: Agent
    flows: list[FlowFetch] = field(default_factory=list)


@dataclass
class ProjectFetch:
    project: Project
    agents: list[AgentFetch] = field(default_factory=list)
    error: Optional[Exception] = None


def flow_metadata(fetch: FlowFetch) -> dict[str, Any]:
    """Flow ``metadata.yaml`` contents: flow fields, events, states, skills."""
    flow = fetch.flow
    return {
        "id": flow.id,
        "idn": flow.idn,
        "title": flow.title,
        "description": flow.description or "",
        "default_runner_type": flow.default_runner_type,
        "default_model": flow.default_model,
        "events": [e.local() for e in fetch.events],
        "state_fields": [s.local() for s in fetch.states],
        "skills": [{"id": s.id, "idn": s.idn, **s.node().metadata()} for s in fetch.skills],
    }


class PullEngine:
    """Pulls one tenant's projects, agents, flows, skills and attributes."""

    def __init__(
        self,
        tenant: Tenant,
        api: RemoteApi,
        layout: TenantLayout,
        concurrency: int = 4,
    ):
        self.tenant = tenant
        self.api = api
        self.layout = layout
        self.concurrency = max(1, concurrency)
        self.hash_store = HashStore(layout.hashes_path)
        self.map_store = IdentityMapStore(layout.map_path)

    # -- fetch ------------------------------------------------------------

    @staticmethod
    async def _limited(sem: asyncio.Semaphore, call, *args):
        async with sem:
            return await call(*args)

    async def _fetch_flow(self, flow: Flow, sem: asyncio.Semaphore) -> FlowFetch:
        result = FlowFetch(flow=flow)
        try:
            result.skills, result.events, result.states = await asyncio.gather(
                self._limited(sem, self.api.list_flow_skills, flow.id),
                self._limited(sem, self.api.list_flow_events, flow.id),
                self._limited(sem, self.api.list_flow_states, flow.id),
            )
        except NewoSyncError as exc:
            logger.warning("Failed to fetch flow %s: %s", flow.idn, exc)
            result.error = exc
        return result

    async def _fetch_project(self, project: Project, sem: asyncio.Semaphore) -> ProjectFetch:
        result = ProjectFetch(project=project)
        try:
            agents = await self._limited(sem, self.api.list_agents, project.id)
        except NewoSyncError as exc:
            logger.warning("Failed to list agents of project %s: %s", project.idn, exc)
            result.error = exc
            return result

        tasks = []
        for agent in agents:
            fetched = AgentFetch(agent=agent)
            result.agents.append(fetched)
            for flow in agent.flows:
                tasks.append((fetched, self._fetch_flow(flow, sem)))
        flows = await asyncio.gather(*(coro for _, coro in tasks))
        for (fetched, _), flow in zip(tasks, flows):
            fetched.flows.append(flow)
        return result

    # -- write ------------------------------------------------------------

    def _apply_flow(
        self,
        p: str,
        a: str,
        fetch: FlowFetch,
        previous: Optional[FlowNode],
        writer: MirrorWriter,
    ) -> FlowNode:
        f = fetch.flow.idn
        layout = self.layout
        written = writer.write(layout.metadata_path(p, a, f), dump_yaml(flow_metadata(fetch)))

        node = FlowNode(
            id=fetch.flow.id,
            events=[e.local() for e in fetch.events],
            state_fields=[s.local() for s in fetch.states],
        )
        if not written and previous is not None:
            # Local edits kept: push must diff them against what they were based on.
            node.events, node.state_fields = previous.events, previous.state_fields
        for skill in fetch.skills:
            path = layout.skill_path(p, a, f, skill.idn, skill.runner_type)
            writer.write(path, skill.prompt_script or "")
            for ext in RUNNER_EXTENSIONS.values():
                other = layout.flow_dir(p, a, f) / f"{skill.idn}.{ext}"
                if other != path and layout.rel(other) in writer.hashes:
                    writer.remove(other)
            node.skills[skill.idn] = skill.node()

        if previous is not None:
            for s, old in previous.skills.items():
                if s not in node.skills and not old.is_pending:
                    writer.remove(layout.skill_path(p, a, f, s, old.runner_type))
        return node

    def _apply_project(
        self,
        fetch: ProjectFetch,
        previous: Optional[ProjectNode],
        writer: MirrorWriter,
        report: SyncReport,
    ) -> ProjectNode:
        project = fetch.project
        p = project.idn
        layout = self.layout
        writer.write(layout.metadata_path(p), dump_yaml(project.metadata()))

        if fetch.error is not None:
            report.record_error(f"project {p}", fetch.error)
            return ProjectNode(id=project.id, agents=previous.agents if previous else {})

        node = ProjectNode(id=project.id)
        for agent_fetch in fetch.agents:
            agent = agent_fetch.agent
            a = agent.idn
            writer.write(layout.metadata_path(p, a), dump_yaml(agent.metadata()))
            old_agent = previous.agents.get(a) if previous else None
            agent_node = AgentNode(id=agent.id)

            for flow_fetch in agent_fetch.flows:
                f = flow_fetch.flow.idn
                old_flow = old_agent.flows.get(f) if old_agent else None
                if flow_fetch.error is not None:
                    report.record_error(f"flow {p}/{a}/{f}", flow_fetch.error)
                    if old_flow is not None:
                        agent_node.flows[f] = old_flow
                    continue
                agent_node.flows[f] = self._apply_flow(p, a, flow_fetch, old_flow, writer)

            if old_agent is not None:
                for f, old_flow in old_agent.flows.items():
                    if f in agent_node.flows:
                        continue
                    if old_flow.is_pending:
                        # Created by push; the server has not listed it yet.
                        agent_node.flows[f] = old_flow
                    else:
                        writer.remove_tree(layout.flow_dir(p, a, f))
            node.agents[a] = agent_node

        if previous is not None:
            for a, old_agent in previous.agents.items():
                if a not in node.agents and not old_agent.is_pending:
                    writer.remove_tree(layout.agent_dir(p, a))
        return node

    # -- run --------------------------------------------------------------

    async def pull(self, project_id: Optional[str] = None, force: bool = False) -> SyncReport:
        """Pull the tenant's remote state into the mirror.

        Args:
            project_id: Only this project. Defaults to the tenant's
                configured project, else every project.
            force: Overwrite files edited locally since the last sync.

        Returns:
            SyncReport listing written/removed files, warnings and errors.
        """
        report = SyncReport(tenant=self.tenant.idn, operation="pull")
        self.layout.ensure()
        hashes = self.hash_store.load()
        previous = self.map_store.load()
        writer = MirrorWriter(self.layout, hashes, report, force=force)

        project_id = project_id or self.tenant.project_id
        try:
            if project_id:
                projects = [await self.api.get_project(project_id)]
            else:
                projects = await self.api.list_projects()
        except NewoSyncError as exc:
            logger.error("Pull aborted for %s: %s", self.tenant.idn, exc)
            report.record_error("projects", exc)
            return report

        logger.info("Pulling %d project(s) for %s", len(projects), self.tenant.idn)
        sem = asyncio.Semaphore(self.concurrency)
        fetched = await asyncio.gather(*(self._fetch_project(p, sem) for p in projects))

        idmap = IdentityMap(projects=dict(previous.projects))
        for fetch in fetched:
            p = fetch.project.idn
            idmap.projects[p] = self._apply_project(fetch, previous.project(p), writer, report)

        if not project_id:
            listed = {fetch.project.idn for fetch in fetched}
            for p, old in previous.projects.items():
                if p not in listed and not old.is_pending:
                    writer.remove_tree(self.layout.project_dir(p))
                    idmap.projects.pop(p, None)

        try:
            await pull_attributes(self.api, self.layout, writer)
        except NewoSyncError as exc:
            logger.warning("Failed to pull customer attributes: %s", exc)
            report.warnings.append(f"customer attributes not pulled: {exc}")

        try:
            personas = await pull_personas(self.api, self.layout, writer)
        except NewoSyncError as exc:
            logger.warning("Failed to pull personas: %s", exc)
            report.warnings.append(f"personas and knowledge base not pulled: {exc}")
        else:
            await pull_akb(self.api, self.layout, writer, personas, sem)

        self.map_store.save(idmap)
        self.hash_store.save(hashes)
        logger.info(
            "Pull for %s done: %d written, %d removed, %d error(s)",
            self.tenant.idn, len(report.written), len(report.removed), len(report.errors),
        )
        return report
