"""
Pydantic models for tenants, tokens, the identity map and remote records.

Remote records are parsed leniently (unknown fields are ignored) because
the API grows fields faster than this tool needs them. The identity map
models are what ``map.json`` holds on disk.
"""

from __future__ import annotations

import time
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field

from .errors import ConfigError


class RunnerType(str, Enum):
    """Skill execution mode; decides the content file extension."""

    GUIDANCE = "guidance"
    NSL = "nsl"


RUNNER_EXTENSIONS = {
    RunnerType.GUIDANCE.value: "guidance",
    RunnerType.NSL.value: "jinja",
}
SCRIPT_EXTENSIONS = {f".{ext}": runner for runner, ext in RUNNER_EXTENSIONS.items()}


def extension_for_runner(runner_type: Optional[str]) -> str:
    """Return the content file extension (without dot) for a runner type."""
    return RUNNER_EXTENSIONS.get(runner_type or "", RUNNER_EXTENSIONS["guidance"])


def runner_for_extension(suffix: str) -> str:
    """Return the runner type implied by a content file suffix like ``.jinja``."""
    return SCRIPT_EXTENSIONS.get(suffix.lower(), RunnerType.GUIDANCE.value)


# ---------------------------------------------------------------------------
# Tenants and tokens
# ---------------------------------------------------------------------------


class Tenant(BaseModel):
    """One customer account: credentials plus an optional preferred project."""

    model_config = ConfigDict(frozen=True)

    idn: str
    api_key: str = Field(repr=False)
    project_id: Optional[str] = None


class TenantRegistry(BaseModel):
    """Every tenant resolved from the environment, plus the designated default."""

    tenants: dict[str, Tenant] = Field(default_factory=dict)
    default: Optional[str] = None

    def names(self) -> list[str]:
        """Sorted tenant IDNs."""
        return sorted(self.tenants)

    def get(self, idn: str) -> Optional[Tenant]:
        return self.tenants.get(idn.strip().lower())

    def select(self, idn: Optional[str] = None) -> Tenant:
        """Pick the tenant a command should run against.

        Args:
            idn: Explicitly requested tenant. Falls back to the default.

        Returns:
            The selected tenant.

        Raises:
            ConfigError: Unknown tenant, or several tenants and no default.
        """
        if idn:
            tenant = self.get(idn)
            if tenant is None:
                raise ConfigError(
                    f"Unknown customer '{idn}'. Available: {', '.join(self.names())}"
                )
            return tenant
        if self.default:
            return self.tenants[self.default]
        if len(self.tenants) == 1:
            return next(iter(self.tenants.values()))
        raise ConfigError(
            "Multiple customers configured but no default specified. "
            f"Available: {', '.join(self.names())}. "
            "Set NEWO_DEFAULT_CUSTOMER or pass --customer."
        )


def now_ms() -> int:
    """Current wall-clock time in epoch milliseconds."""
    return int(time.time() * 1000)


class TokenRecord(BaseModel):
    """Access/refresh token pair with an absolute expiry (epoch ms)."""

    access_token: str
    refresh_token: str = ""
    expires_at: int = 0

    def is_expired(self, at_ms: Optional[int] = None) -> bool:
        """Expired once the current time reaches ``expires_at``."""
        return (at_ms if at_ms is not None else now_ms()) >= self.expires_at


# ---------------------------------------------------------------------------
# Identity map
# ---------------------------------------------------------------------------


class SkillNode(BaseModel):
    """Remote id of a skill plus its metadata as last synchronized."""

    id: Optional[str] = None
    title: str = ""
    runner_type: str = RunnerType.GUIDANCE.value
    model: dict[str, Any] = Field(default_factory=dict)
    parameters: list[dict[str, Any]] = Field(default_factory=list)
    path: Optional[str] = None

    @property
    def is_pending(self) -> bool:
        return not self.id

    def metadata(self) -> dict[str, Any]:
        """The fields a flow ``metadata.yaml`` lists for this skill."""
        return {
            "title": self.title,
            "runner_type": self.runner_type,
            "model": self.model,
            "parameters": self.parameters,
            "path": self.path,
        }


class FlowNode(BaseModel):
    """Remote id of a flow, its skills, and its events and state fields
    as last synchronized (``FlowEvent.local()`` / ``FlowState.local()``)."""

    id: Optional[str] = None
    skills: dict[str, SkillNode] = Field(default_factory=dict)
    events: list[dict[str, Any]] = Field(default_factory=list)
    state_fields: list[dict[str, Any]] = Field(default_factory=list)

    @property
    def is_pending(self) -> bool:
        return not self.id


class AgentNode(BaseModel):
    id: Optional[str] = None
    flows: dict[str, FlowNode] = Field(default_factory=dict)

    @property
    def is_pending(self) -> bool:
        return not self.id


class ProjectNode(BaseModel):
    id: Optional[str] = None
    agents: dict[str, AgentNode] = Field(default_factory=dict)

    @property
    def is_pending(self) -> bool:
        return not self.id


class IdentityMap(BaseModel):
    """projectIdn → agentIdn → flowIdn → skillIdn tree of remote ids.

    The only translation layer between stable local IDNs and the opaque
    ids the server assigns.
    """

    projects: dict[str, ProjectNode] = Field(default_factory=dict)

    def project(self, project: str) -> Optional[ProjectNode]:
        return self.projects.get(project)

    def agent(self, project: str, agent: str) -> Optional[AgentNode]:
        node = self.project(project)
        return node.agents.get(agent) if node else None

    def flow(self, project: str, agent: str, flow: str) -> Optional[FlowNode]:
        node = self.agent(project, agent)
        return node.flows.get(flow) if node else None

    def skill(self, project: str, agent: str, flow: str, skill: str) -> Optional[SkillNode]:
        node = self.flow(project, agent, flow)
        return node.skills.get(skill) if node else None

    def remove(
        self,
        project: str,
        agent: Optional[str] = None,
        flow: Optional[str] = None,
        skill: Optional[str] = None,
    ) -> None:
        """Drop the deepest node named by the given IDNs, if present."""
        if agent is None:
            self.projects.pop(project, None)
        elif flow is None:
            node = self.project(project)
            if node:
                node.agents.pop(agent, None)
        elif skill is None:
            node = self.agent(project, agent)
            if node:
                node.flows.pop(flow, None)
        else:
            node = self.flow(project, agent, flow)
            if node:
                node.skills.pop(skill, None)


# ---------------------------------------------------------------------------
# Remote records
# ---------------------------------------------------------------------------


class _Remote(BaseModel):
    model_config = ConfigDict(extra="ignore")


class Project(_Remote):
    id: str
    idn: str
    title: str = ""
    description: Optional[str] = ""
    created_at: Optional[str] = ""
    updated_at: Optional[str] = ""

    def metadata(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "idn": self.idn,
            "title": self.title,
            "description": self.description or "",
            "created_at": self.created_at or "",
            "updated_at": self.updated_at or "",
        }


class Flow(_Remote):
    id: str
    idn: str
    title: str = ""
    description: Optional[str] = ""
    default_runner_type: str = RunnerType.GUIDANCE.value
    default_model: dict[str, Any] = Field(default_factory=dict)


class Agent(_Remote):
    id: str
    idn: str
    title: Optional[str] = ""
    description: Optional[str] = ""
    persona_id: Optional[str] = None
    flows: list[Flow] = Field(default_factory=list)

    def metadata(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "idn": self.idn,
            "title": self.title or "",
            "description": self.description or "",
            "persona_id": self.persona_id,
        }


class Skill(_Remote):
    id: str
    idn: str
    title: str = ""
    prompt_script: Optional[str] = ""
    runner_type: str = RunnerType.GUIDANCE.value
    model: dict[str, Any] = Field(default_factory=dict)
    parameters: list[dict[str, Any]] = Field(default_factory=list)
    path: Optional[str] = None

    def node(self) -> SkillNode:
        return SkillNode(
            id=self.id,
            title=self.title,
            runner_type=self.runner_type,
            model=self.model,
            parameters=self.parameters,
            path=self.path,
        )


class _FlowPart(_Remote):
    """An event or state field as listed in a flow's ``metadata.yaml``."""

    id: Optional[str] = None
    idn: str

    def local(self) -> dict[str, Any]:
        return self.model_dump()

    def payload(self) -> dict[str, Any]:
        """Fields sent on create/update: no id, no unset values."""
        return {k: v for k, v in self.model_dump().items() if k != "id" and v is not None}


class FlowEvent(_FlowPart):
    description: Optional[str] = ""
    skill_selector: Optional[str] = None
    skill_idn: Optional[str] = None
    state_idn: Optional[str] = None
    integration_idn: Optional[str] = None
    connector_idn: Optional[str] = None
    interrupt_mode: Optional[str] = None


class FlowState(_FlowPart):
    title: Optional[str] = ""
    default_value: Optional[Any] = ""
    scope: Optional[str] = None


class PersonaAgent(_Remote):
    id: Optional[str] = None
    idn: str


class Persona(_Remote):
    id: str
    name: str
    title: Optional[str] = ""
    description: Optional[str] = ""
    agent: Optional[PersonaAgent] = None

    def local(self) -> dict[str, Any]:
        """Persona fields as written to ``personas.yaml`` (no id)."""
        return {
            "name": self.name,
            "title": self.title or "",
            "description": self.description or "",
            "agent_idn": self.agent.idn if self.agent else None,
        }


class AkbTopic(_Remote):
    """One knowledge-base article of a persona."""

    topic_name: str
    topic_summary: Optional[str] = ""
    topic_facts: list[str] = Field(default_factory=list)
    confidence: float = 1.0
    source: Optional[str] = ""
    labels: list[str] = Field(default_factory=list)
    created_at: Optional[str] = None
    updated_at: Optional[str] = None

    def local(self) -> dict[str, Any]:
        return {
            "topic_name": self.topic_name,
            "topic_summary": self.topic_summary or "",
            "topic_facts": list(self.topic_facts),
            "confidence": self.confidence,
            "source": self.source or "",
            "labels": list(self.labels),
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }

    def article(self, persona_id: str) -> dict[str, Any]:
        """Body for the manual-append import endpoint."""
        return {
            "persona_id": persona_id,
            "topic_name": self.topic_name,
            "topic_summary": self.topic_summary or "",
            "topic_facts": list(self.topic_facts),
            "confidence": self.confidence,
            "source": self.source or "",
            "labels": list(self.labels),
        }


class CustomerAttribute(_Remote):
    id: Optional[str] = None
    idn: str
    value: Any = ""
    title: Optional[str] = ""
    description: Optional[str] = ""
    group: Optional[str] = ""
    is_hidden: bool = False
    possible_values: list[Any] = Field(default_factory=list)
    value_type: Optional[str] = None

    def local(self) -> dict[str, Any]:
        """Attribute fields as written to ``attributes.yaml`` (no id)."""
        return {
            "idn": self.idn,
            "value": self.value,
            "title": self.title or "",
            "description": self.description or "",
            "group": self.group or "",
            "is_hidden": self.is_hidden,
            "possible_values": list(self.possible_values or []),
            "value_type": self.value_type,
        }
