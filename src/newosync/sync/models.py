"""
Sync data models -- change plan entries and per-tenant run reports.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field

from ..errors import RemoteEntityError


class EntityType(str, Enum):
    """What kind of remote entity a tracked file stands for."""

    PROJECT = "project"
    AGENT = "agent"
    FLOW = "flow"
    SKILL = "skill"
    ATTRIBUTES = "attributes"
    PERSONAS = "personas"
    AKB = "akb"


ENTITY_DEPTH = {
    EntityType.PROJECT: 0,
    EntityType.AGENT: 1,
    EntityType.FLOW: 2,
    EntityType.SKILL: 3,
    EntityType.ATTRIBUTES: 4,
    EntityType.PERSONAS: 5,
    EntityType.AKB: 6,
}


class ChangeStatus(str, Enum):
    """Local state of one tracked file relative to the last sync."""

    UNCHANGED = "unchanged"
    MODIFIED = "modified"
    ADDED = "added"
    DELETED = "deleted"
    # Created remotely, id not listed yet; push retries the lookup.
    PENDING = "pending"


@dataclass
class FileChange:
    """One tracked file and what push would do with it.

    Attributes:
        path: Path relative to the tenant mirror root (posix separators).
        entity: Entity type the file represents.
        status: Comparison result against the Hash Store and Identity Map.
        project: Project IDN (empty for tenant-level documents).
        agent: Agent IDN, for agents, flows, skills and knowledge-base files.
        flow: Flow IDN, for flows and skills.
        skill: Skill IDN, for skills.
        remote_id: Remote id from the Identity Map, if confirmed.
        fingerprint: Fingerprint of the file on disk (None when deleted).
        stored: Fingerprint recorded at the last sync, if any.
    """

    path: str
    entity: EntityType
    status: ChangeStatus
    project: str = ""
    agent: Optional[str] = None
    flow: Optional[str] = None
    skill: Optional[str] = None
    remote_id: Optional[str] = None
    fingerprint: Optional[str] = None
    stored: Optional[str] = None

    @property
    def depth(self) -> int:
        return ENTITY_DEPTH[self.entity]

    @property
    def label(self) -> str:
        """``skill proj/agent/flow/skill`` style label for messages."""
        parts = [p for p in (self.project, self.agent, self.flow, self.skill) if p]
        return f"{self.entity.value} {'/'.join(parts) or self.path}"

    @property
    def is_change(self) -> bool:
        return self.status != ChangeStatus.UNCHANGED


class SyncFailure(BaseModel):
    """An error recorded against one entity during a run."""

    entity: str
    message: str
    status_code: Optional[int] = None


class SyncReport(BaseModel):
    """What one pull or push run did for one tenant."""

    tenant: str
    operation: str
    written: list[str] = Field(default_factory=list)
    removed: list[str] = Field(default_factory=list)
    created: list[str] = Field(default_factory=list)
    updated: list[str] = Field(default_factory=list)
    deleted: list[str] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)
    errors: list[SyncFailure] = Field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.errors

    @property
    def change_count(self) -> int:
        return len(self.created) + len(self.updated) + len(self.deleted)

    def record_error(self, entity: str, exc: Exception) -> None:
        """Attach an entity-level failure to the report."""
        status = exc.status_code if isinstance(exc, RemoteEntityError) else None
        self.errors.append(
            SyncFailure(entity=entity, message=str(exc), status_code=status)
        )
