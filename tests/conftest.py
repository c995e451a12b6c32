"""Shared test fixtures for newosync.

``FakeRemote`` is a small in-memory NEWO server served through
``httpx.MockTransport``: enough of the designer, bff and customer
endpoints for pull and push, plus the API-key token exchange.
"""

from __future__ import annotations

import json
import re
import uuid
from pathlib import Path
from typing import Any, Optional

import httpx
import pytest

from newosync.config import SyncSettings
from newosync.models import Tenant
from newosync.sync import SyncEngine, build_client

BASE_URL = "https://newo.test"
API_KEY = "key-acme"


class FakeRemote:
    """In-memory projects, agents, flows, skills, attributes, personas and
    knowledge-base topics, with request logging."""

    def __init__(self):
        self.projects: dict[str, dict[str, Any]] = {}
        self.agents: dict[str, dict[str, Any]] = {}
        self.flows: dict[str, dict[str, Any]] = {}
        self.skills: dict[str, dict[str, Any]] = {}
        self.events: dict[str, list[dict[str, Any]]] = {}
        self.states: dict[str, list[dict[str, Any]]] = {}
        self.attributes: list[dict[str, Any]] = []
        self.personas: dict[str, dict[str, Any]] = {}
        self.topics: dict[str, list[dict[str, Any]]] = {}

        self.requests: list[tuple[str, str]] = []
        self.bodies: list[tuple[str, str, Any]] = []
        self.valid_tokens: set[str] = set()
        self.exchanges = 0
        self.failures: dict[tuple[str, str], int] = {}
        # Newly created flows stay out of agent listings while True.
        self.hide_new_flows = False
        self._hidden_flows: set[str] = set()

    # -- seeding ----------------------------------------------------------

    def _id(self) -> str:
        return str(uuid.uuid4())

    def add_project(self, idn: str, title: str = "") -> str:
        pid = self._id()
        self.projects[pid] = {"id": pid, "idn": idn, "title": title or idn.title(), "description": ""}
        return pid

    def add_agent(self, project_id: str, idn: str) -> str:
        aid = self._id()
        self.agents[aid] = {
            "id": aid, "idn": idn, "title": idn.title(), "description": "",
            "persona_id": None, "project_id": project_id,
        }
        return aid

    def add_flow(self, agent_id: str, idn: str) -> str:
        fid = self._id()
        self.flows[fid] = {
            "id": fid, "idn": idn, "title": idn, "description": "",
            "default_runner_type": "guidance", "default_model": {"model_idn": "gpt4o"},
            "agent_id": agent_id,
        }
        self.events[fid] = []
        self.states[fid] = []
        return fid

    def add_skill(self, flow_id: str, idn: str, script: str, runner_type: str = "guidance") -> str:
        sid = self._id()
        self.skills[sid] = {
            "id": sid, "idn": idn, "title": idn.title(), "prompt_script": script,
            "runner_type": runner_type, "model": {"model_idn": "gpt4o"},
            "parameters": [], "path": None, "flow_id": flow_id,
        }
        return sid

    def add_attribute(self, idn: str, value: Any) -> str:
        aid = self._id()
        self.attributes.append({
            "id": aid, "idn": idn, "value": value, "title": idn, "description": "",
            "group": "", "is_hidden": False, "possible_values": [], "value_type": "string",
        })
        return aid

    def add_event(self, flow_id: str, idn: str, **fields: Any) -> str:
        eid = self._id()
        self.events[flow_id].append({"id": eid, "idn": idn, "description": "", **fields})
        return eid

    def add_state(self, flow_id: str, idn: str, **fields: Any) -> str:
        sid = self._id()
        self.states[flow_id].append({"id": sid, "idn": idn, "title": idn.title(), **fields})
        return sid

    def add_persona(self, name: str, agent_idn: Optional[str] = None) -> str:
        pid = self._id()
        agent = next((a for a in self.agents.values() if a["idn"] == agent_idn), None)
        self.personas[pid] = {
            "id": pid, "name": name, "title": name.title(), "description": "",
            "agent": {"id": agent["id"], "idn": agent["idn"]} if agent else None,
        }
        self.topics[pid] = []
        return pid

    def add_topic(self, persona_id: str, name: str, summary: str = "") -> None:
        self.topics[persona_id].append({
            "topic_name": name, "topic_summary": summary, "topic_facts": [], "confidence": 1.0,
            "source": "manual", "labels": [], "created_at": "2024-01-01", "updated_at": "2024-01-01",
        })

    def skill_by_idn(self, idn: str) -> Optional[dict[str, Any]]:
        return next((s for s in self.skills.values() if s["idn"] == idn), None)

    def fail(self, method: str, path: str, status: int = 500) -> None:
        self.failures[(method, path)] = status

    def api_requests(self) -> list[tuple[str, str]]:
        """Requests other than the token exchange."""
        return [r for r in self.requests if not r[1].startswith("/api/v1/auth/")]

    # -- serving ----------------------------------------------------------

    def _agent_listing(self, project_id: str) -> list[dict[str, Any]]:
        out = []
        for agent in self.agents.values():
            if agent["project_id"] != project_id:
                continue
            flows = [
                {k: v for k, v in f.items() if k != "agent_id"}
                for f in self.flows.values()
                if f["agent_id"] == agent["id"] and f["id"] not in self._hidden_flows
            ]
            out.append({**{k: v for k, v in agent.items() if k != "project_id"}, "flows": flows})
        return out

    def _public(self, record: dict[str, Any], *private: str) -> dict[str, Any]:
        return {k: v for k, v in record.items() if k not in private}

    def handler(self, request: httpx.Request) -> httpx.Response:
        method, path = request.method, request.url.path
        self.requests.append((method, path))
        body = json.loads(request.content) if request.content else None
        self.bodies.append((method, path, body))

        if path == "/api/v1/auth/api-key/token":
            if request.headers.get("x-api-key") != API_KEY:
                return httpx.Response(401, json={"message": "bad key"})
            self.exchanges += 1
            token = f"tok-{self.exchanges}"
            self.valid_tokens.add(token)
            return httpx.Response(
                200, json={"access_token": token, "refresh_token": f"ref-{self.exchanges}", "expires_in": 3600}
            )

        auth = request.headers.get("authorization", "")
        if not auth.startswith("Bearer ") or auth[len("Bearer "):] not in self.valid_tokens:
            return httpx.Response(401, json={"message": "unauthorized"})

        if (method, path) in self.failures:
            return httpx.Response(self.failures[(method, path)], json={"message": "boom"})

        return self._route(request, method, path, body)

    def _route(self, request: httpx.Request, method: str, path: str, body: Any) -> httpx.Response:
        def match(pattern: str) -> Optional[re.Match]:
            return re.fullmatch(pattern, path)

        if method == "GET" and path == "/api/v1/designer/projects":
            return httpx.Response(200, json=list(self.projects.values()))
        if m := match(r"/api/v1/designer/projects/by-id/([^/]+)"):
            project = self.projects.get(m.group(1))
            return httpx.Response(200, json=project) if project else httpx.Response(404, json={"message": "no project"})
        if method == "POST" and path == "/api/v1/designer/projects":
            pid = self.add_project(body["idn"], body.get("title", ""))
            return httpx.Response(201, json={"id": pid})
        if m := match(r"/api/v1/designer/projects/([^/]+)"):
            return self._put_or_delete(method, self.projects, m.group(1), body)

        if method == "GET" and path == "/api/v1/bff/agents/list":
            return httpx.Response(200, json=self._agent_listing(request.url.params["project_id"]))
        if method == "POST" and (m := match(r"/api/v2/designer/([^/]+)/agents")):
            return httpx.Response(201, json={"id": self.add_agent(m.group(1), body["idn"])})
        if m := match(r"/api/v1/designer/agents/([^/]+)"):
            return self._put_or_delete(method, self.agents, m.group(1), body)

        if method == "POST" and (m := match(r"/api/v1/designer/([^/]+)/flows/empty")):
            fid = self.add_flow(m.group(1), body["idn"])
            if self.hide_new_flows:
                self._hidden_flows.add(fid)
            return httpx.Response(201)
        if m := match(r"/api/v1/designer/flows/skills/([^/]+)"):
            return self._put_or_delete(method, self.skills, m.group(1), body)
        if m := match(r"/api/v1/designer/flows/(events|states)/([^/]+)"):
            kind, part_id = m.groups()
            return self._flow_part(method, self.events if kind == "events" else self.states, part_id, body)
        if m := match(r"/api/v1/designer/flows/([^/]+)/(skills|events|states)"):
            fid, kind = m.groups()
            if method == "GET":
                if kind == "skills":
                    return httpx.Response(200, json=[
                        self._public(s, "flow_id") for s in self.skills.values() if s["flow_id"] == fid
                    ])
                return httpx.Response(200, json=(self.events if kind == "events" else self.states)[fid])
            if kind == "skills":
                sid = self.add_skill(fid, body["idn"], body.get("prompt_script", ""), body.get("runner_type", "guidance"))
                self.skills[sid].update({k: v for k, v in body.items() if k in self.skills[sid] and k != "id"})
                return httpx.Response(201, json={"id": sid})
            record = {**body, "id": self._id()}
            (self.events if kind == "events" else self.states)[fid].append(record)
            return httpx.Response(201, json={"id": record["id"]})
        if m := match(r"/api/v1/designer/flows/([^/]+)"):
            return self._put_or_delete(method, self.flows, m.group(1), body)

        if method == "GET" and path == "/api/v1/bff/customer/attributes":
            return httpx.Response(200, json={"attributes": self.attributes})
        if method == "POST" and path == "/api/v1/customer/attributes":
            aid = self._id()
            self.attributes.append({**body, "id": aid})
            return httpx.Response(201, json={"id": aid})
        if method == "PUT" and (m := match(r"/api/v1/customer/attributes/([^/]+)")):
            for attr in self.attributes:
                if attr["id"] == m.group(1):
                    attr.update(body)
                    return httpx.Response(200, json=attr)
            return httpx.Response(404, json={"message": "no attribute"})

        if method == "GET" and path == "/api/v1/bff/personas/search":
            return self._page(list(self.personas.values()), request)
        if method == "POST" and path == "/api/v1/customer/personas":
            pid = self.add_persona(body["name"])
            self.personas[pid].update({k: v for k, v in body.items() if k in ("title", "description")})
            return httpx.Response(201, json={"id": pid})
        if method == "GET" and path == "/api/v1/akb/topics":
            topics = self.topics.get(request.url.params["persona_id"], [])
            return self._page([{"topic": t} for t in topics], request)
        if method == "POST" and path == "/api/v1/akb/append-manual":
            self.topics[body["persona_id"]].append(
                {**{k: v for k, v in body.items() if k != "persona_id"}, "created_at": None, "updated_at": None}
            )
            return httpx.Response(200, json={"ok": True})

        return httpx.Response(404, json={"message": f"no route {method} {path}"})

    def _page(self, items: list[dict[str, Any]], request: httpx.Request) -> httpx.Response:
        page = int(request.url.params.get("page", 1))
        per = int(request.url.params.get("per", 30))
        chunk = items[(page - 1) * per:page * per]
        return httpx.Response(200, json={"items": chunk, "metadata": {"page": page, "per": per, "total": len(items)}})

    def _flow_part(self, method: str, table: dict, part_id: str, body: Any) -> httpx.Response:
        for parts in table.values():
            for i, part in enumerate(parts):
                if part["id"] != part_id:
                    continue
                if method == "DELETE":
                    del parts[i]
                    return httpx.Response(204)
                part.update({k: v for k, v in body.items() if k != "id"})
                return httpx.Response(200, json=part)
        return httpx.Response(404, json={"message": "not found"})

    def _put_or_delete(self, method: str, table: dict, record_id: str, body: Any) -> httpx.Response:
        if record_id not in table:
            return httpx.Response(404, json={"message": "not found"})
        if method == "DELETE":
            del table[record_id]
            return httpx.Response(204)
        if method == "PUT":
            table[record_id].update({k: v for k, v in body.items() if k in table[record_id] and k != "id"})
            return httpx.Response(200, json=table[record_id])
        return httpx.Response(200, json=table[record_id])


@pytest.fixture
def remote() -> FakeRemote:
    return FakeRemote()


@pytest.fixture
def seeded(remote: FakeRemote) -> FakeRemote:
    """One project/agent/flow holding a guidance skill and a jinja skill."""
    pid = remote.add_project("demo")
    aid = remote.add_agent(pid, "receptionist")
    fid = remote.add_flow(aid, "main")
    remote.add_skill(fid, "greet", "Hello there")
    remote.add_skill(fid, "route", "{{ route() }}", runner_type="nsl")
    remote.add_attribute("company_name", "Acme")
    return remote


@pytest.fixture
def settings(tmp_path: Path) -> SyncSettings:
    return SyncSettings(base_url=BASE_URL, root=tmp_path, concurrency=2, timeout=5.0)


@pytest.fixture
def tenant() -> Tenant:
    return Tenant(idn="acme", api_key=API_KEY)


@pytest.fixture
def make_engine(settings: SyncSettings, tenant: Tenant, remote: FakeRemote):
    """Factory for a SyncEngine wired to the fake remote."""

    def _make(**kwargs) -> SyncEngine:
        client = build_client(settings, transport=httpx.MockTransport(remote.handler))
        return SyncEngine(settings, tenant, client=client, **kwargs)

    return _make


@pytest.fixture
def flow_dir(tmp_path: Path) -> Path:
    return tmp_path / "newo_customers" / "acme" / "projects" / "demo" / "receptionist" / "main"
