"""
Remote API -- one small coroutine per endpoint the sync engine needs.

Every call goes through the tenant's ``AuthenticatedTransport``. Any
non-2xx answer becomes a ``RemoteEntityError`` naming the entity, so
engines can record it and move on to the next sibling.
"""

from __future__ import annotations

import logging
from typing import Any, Optional

import httpx

from .errors import RemoteEntityError
from .models import Agent, AkbTopic, CustomerAttribute, FlowEvent, FlowState, Persona, Project, Skill
from .transport import AuthenticatedTransport

logger = logging.getLogger("newosync.api")

# Flow creation answers 201 with an empty body; the id only shows up
# in a later agent listing.
PENDING_ID = None


def _detail(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text[:200]
    if isinstance(body, dict):
        for key in ("message", "detail", "error", "reasons", "errors"):
            if body.get(key):
                return str(body[key])
    return str(body)[:200]


def _check(response: httpx.Response, entity: str) -> httpx.Response:
    if response.status_code >= 400:
        raise RemoteEntityError(entity, response.status_code, _detail(response))
    return response


def _body(response: httpx.Response, entity: str) -> Any:
    _check(response, entity)
    if not response.content:
        return None
    try:
        return response.json()
    except ValueError as exc:
        raise RemoteEntityError(entity, response.status_code, f"invalid JSON: {exc}") from exc


def _created_id(data: Any, entity: str) -> str:
    if isinstance(data, dict) and data.get("id"):
        return str(data["id"])
    raise RemoteEntityError(entity, None, "create response carried no id")


class RemoteApi:
    """Typed wrapper over the designer/customer endpoints."""

    def __init__(self, transport: AuthenticatedTransport):
        self.http = transport

    # -- projects ---------------------------------------------------------

    async def list_projects(self) -> list[Project]:
        data = _body(await self.http.get("/api/v1/designer/projects"), "project list")
        return [Project.model_validate(p) for p in data or []]

    async def get_project(self, project_id: str) -> Project:
        data = _body(
            await self.http.get(f"/api/v1/designer/projects/by-id/{project_id}"),
            f"project {project_id}",
        )
        return Project.model_validate(data)

    async def create_project(self, payload: dict[str, Any]) -> str:
        entity = f"project {payload.get('idn')}"
        data = _body(await self.http.post("/api/v1/designer/projects", json=payload), entity)
        return _created_id(data, entity)

    async def update_project(self, project_id: str, payload: dict[str, Any]) -> None:
        _check(
            await self.http.put(f"/api/v1/designer/projects/{project_id}", json=payload),
            f"project {payload.get('idn', project_id)}",
        )

    async def delete_project(self, project_id: str) -> None:
        _check(await self.http.delete(f"/api/v1/designer/projects/{project_id}"), f"project {project_id}")

    # -- agents -----------------------------------------------------------

    async def list_agents(self, project_id: str) -> list[Agent]:
        data = _body(
            await self.http.get("/api/v1/bff/agents/list", params={"project_id": project_id}),
            f"agent list of project {project_id}",
        )
        return [Agent.model_validate(a) for a in data or []]

    async def create_agent(self, project_id: str, payload: dict[str, Any]) -> str:
        entity = f"agent {payload.get('idn')}"
        data = _body(await self.http.post(f"/api/v2/designer/{project_id}/agents", json=payload), entity)
        return _created_id(data, entity)

    async def update_agent(self, agent_id: str, payload: dict[str, Any]) -> None:
        _check(
            await self.http.put(f"/api/v1/designer/agents/{agent_id}", json=payload),
            f"agent {payload.get('idn', agent_id)}",
        )

    async def delete_agent(self, agent_id: str) -> None:
        _check(await self.http.delete(f"/api/v1/designer/agents/{agent_id}"), f"agent {agent_id}")

    # -- flows ------------------------------------------------------------

    async def create_flow(self, agent_id: str, payload: dict[str, Any]) -> Optional[str]:
        """Create an empty flow. Returns its id when the server sends one."""
        entity = f"flow {payload.get('idn')}"
        data = _body(await self.http.post(f"/api/v1/designer/{agent_id}/flows/empty", json=payload), entity)
        if isinstance(data, dict) and data.get("id"):
            return str(data["id"])
        return PENDING_ID

    async def update_flow(self, flow_id: str, payload: dict[str, Any]) -> None:
        _check(
            await self.http.put(f"/api/v1/designer/flows/{flow_id}", json=payload),
            f"flow {payload.get('idn', flow_id)}",
        )

    async def delete_flow(self, flow_id: str) -> None:
        _check(await self.http.delete(f"/api/v1/designer/flows/{flow_id}"), f"flow {flow_id}")

    async def list_flow_events(self, flow_id: str) -> list[FlowEvent]:
        data = _body(await self.http.get(f"/api/v1/designer/flows/{flow_id}/events"), f"events of flow {flow_id}")
        return [FlowEvent.model_validate(e) for e in data or []]

    async def create_flow_event(self, flow_id: str, payload: dict[str, Any]) -> str:
        entity = f"event {payload.get('idn')}"
        data = _body(await self.http.post(f"/api/v1/designer/flows/{flow_id}/events", json=payload), entity)
        return _created_id(data, entity)

    async def update_flow_event(self, event_id: str, payload: dict[str, Any]) -> None:
        _check(
            await self.http.put(f"/api/v1/designer/flows/events/{event_id}", json=payload),
            f"event {payload.get('idn', event_id)}",
        )

    async def delete_flow_event(self, event_id: str) -> None:
        _check(await self.http.delete(f"/api/v1/designer/flows/events/{event_id}"), f"event {event_id}")

    async def list_flow_states(self, flow_id: str) -> list[FlowState]:
        data = _body(await self.http.get(f"/api/v1/designer/flows/{flow_id}/states"), f"states of flow {flow_id}")
        return [FlowState.model_validate(s) for s in data or []]

    async def create_flow_state(self, flow_id: str, payload: dict[str, Any]) -> str:
        entity = f"state {payload.get('idn')}"
        data = _body(await self.http.post(f"/api/v1/designer/flows/{flow_id}/states", json=payload), entity)
        return _created_id(data, entity)

    async def update_flow_state(self, state_id: str, payload: dict[str, Any]) -> None:
        _check(
            await self.http.put(f"/api/v1/designer/flows/states/{state_id}", json=payload),
            f"state {payload.get('idn', state_id)}",
        )

    async def delete_flow_state(self, state_id: str) -> None:
        _check(await self.http.delete(f"/api/v1/designer/flows/states/{state_id}"), f"state {state_id}")

    # -- skills -----------------------------------------------------------

    async def list_flow_skills(self, flow_id: str) -> list[Skill]:
        data = _body(await self.http.get(f"/api/v1/designer/flows/{flow_id}/skills"), f"skills of flow {flow_id}")
        return [Skill.model_validate(s) for s in data or []]

    async def create_skill(self, flow_id: str, payload: dict[str, Any]) -> str:
        entity = f"skill {payload.get('idn')}"
        data = _body(await self.http.post(f"/api/v1/designer/flows/{flow_id}/skills", json=payload), entity)
        return _created_id(data, entity)

    async def update_skill(self, skill_id: str, payload: dict[str, Any]) -> None:
        _check(
            await self.http.put(f"/api/v1/designer/flows/skills/{skill_id}", json={**payload, "id": skill_id}),
            f"skill {payload.get('idn', skill_id)}",
        )

    async def delete_skill(self, skill_id: str) -> None:
        _check(await self.http.delete(f"/api/v1/designer/flows/skills/{skill_id}"), f"skill {skill_id}")

    # -- customer attributes ----------------------------------------------

    async def get_customer_attributes(self) -> list[CustomerAttribute]:
        data = _body(
            await self.http.get("/api/v1/bff/customer/attributes", params={"include_hidden": "true"}),
            "customer attributes",
        )
        if isinstance(data, dict):
            data = data.get("attributes", [])
        return [CustomerAttribute.model_validate(a) for a in data or []]

    async def create_customer_attribute(self, payload: dict[str, Any]) -> str:
        entity = f"attribute {payload.get('idn')}"
        data = _body(await self.http.post("/api/v1/customer/attributes", json=payload), entity)
        return _created_id(data, entity)

    async def update_customer_attribute(self, attribute_id: str, payload: dict[str, Any]) -> None:
        _check(
            await self.http.put(f"/api/v1/customer/attributes/{attribute_id}", json=payload),
            f"attribute {payload.get('idn', attribute_id)}",
        )

    # -- personas and knowledge base --------------------------------------

    async def _pages(self, path: str, entity: str, params: dict[str, Any], per: int) -> list[dict[str, Any]]:
        """Collect every item of a ``{items, metadata: {total}}`` listing."""
        items: list[dict[str, Any]] = []
        page = 1
        while True:
            data = _body(await self.http.get(path, params={**params, "page": page, "per": per}), entity) or {}
            batch = list(data.get("items") or [])
            items.extend(batch)
            total = (data.get("metadata") or {}).get("total", len(items))
            if len(batch) < per or len(items) >= total:
                return items
            page += 1

    async def list_personas(self, linked_to_agent: Optional[bool] = None, per: int = 30) -> list[Persona]:
        params: dict[str, Any] = {}
        if linked_to_agent is not None:
            params["is_linked_to_agent"] = "true" if linked_to_agent else "false"
        items = await self._pages("/api/v1/bff/personas/search", "persona list", params, per)
        return [Persona.model_validate(p) for p in items]

    async def create_persona(self, payload: dict[str, Any]) -> str:
        entity = f"persona {payload.get('name')}"
        data = _body(await self.http.post("/api/v1/customer/personas", json=payload), entity)
        return _created_id(data, entity)

    async def list_akb_topics(self, persona_id: str, per: int = 100) -> list[AkbTopic]:
        items = await self._pages(
            "/api/v1/akb/topics",
            f"knowledge base of persona {persona_id}",
            {"persona_id": persona_id, "order_by": "created_at"},
            per,
        )
        return [AkbTopic.model_validate(item.get("topic") or item) for item in items]

    async def import_akb_article(self, article: dict[str, Any]) -> None:
        _check(
            await self.http.post("/api/v1/akb/append-manual", json=article),
            f"article {article.get('topic_name')}",
        )
