"""
On-disk layout for one tenant: the mirror tree and the sync state dir.

    <root>/newo_customers/<tenant>/{attributes,personas}.yaml
    <root>/newo_customers/<tenant>/akb/<agent>.yaml
    <root>/newo_customers/<tenant>/projects/<project>/<agent>/<flow>/<skill>.guidance
    <root>/.newo/<tenant>/{map,hashes,tokens,attributes-map,personas-map,akb-map}.json

Every tracked path is stored relative to the tenant mirror root with
posix separators so the state files are portable between machines.
"""

from __future__ import annotations

import os
import tempfile
from pathlib import Path
from typing import Any, Optional

import yaml

from .models import extension_for_runner

MIRROR_DIRNAME = "newo_customers"
STATE_DIRNAME = ".newo"
PROJECTS_DIRNAME = "projects"
METADATA_FILENAME = "metadata.yaml"
ATTRIBUTES_FILENAME = "attributes.yaml"
PERSONAS_FILENAME = "personas.yaml"
AKB_DIRNAME = "akb"


class TenantLayout:
    """Resolves every path the sync engine reads or writes for a tenant."""

    def __init__(self, root: Path, tenant: str):
        self.root = Path(root).expanduser()
        self.tenant = tenant
        self.mirror_dir = self.root / MIRROR_DIRNAME / tenant
        self.projects_dir = self.mirror_dir / PROJECTS_DIRNAME
        self.state_dir = self.root / STATE_DIRNAME / tenant

    # -- state files ------------------------------------------------------

    @property
    def map_path(self) -> Path:
        return self.state_dir / "map.json"

    @property
    def hashes_path(self) -> Path:
        return self.state_dir / "hashes.json"

    @property
    def tokens_path(self) -> Path:
        return self.state_dir / "tokens.json"

    @property
    def attributes_map_path(self) -> Path:
        return self.state_dir / "attributes-map.json"

    @property
    def personas_map_path(self) -> Path:
        return self.state_dir / "personas-map.json"

    @property
    def akb_map_path(self) -> Path:
        return self.state_dir / "akb-map.json"

    # -- mirror files -----------------------------------------------------

    @property
    def attributes_path(self) -> Path:
        return self.mirror_dir / ATTRIBUTES_FILENAME

    @property
    def personas_path(self) -> Path:
        return self.mirror_dir / PERSONAS_FILENAME

    @property
    def akb_dir(self) -> Path:
        return self.mirror_dir / AKB_DIRNAME

    def akb_path(self, agent: str) -> Path:
        """Knowledge-base file of the persona linked to an agent."""
        return self.akb_dir / f"{agent}.yaml"

    def project_dir(self, project: str) -> Path:
        return self.projects_dir / project

    def agent_dir(self, project: str, agent: str) -> Path:
        return self.project_dir(project) / agent

    def flow_dir(self, project: str, agent: str, flow: str) -> Path:
        return self.agent_dir(project, agent) / flow

    def metadata_path(
        self,
        project: str,
        agent: Optional[str] = None,
        flow: Optional[str] = None,
    ) -> Path:
        """metadata.yaml of the deepest entity named."""
        if agent is None:
            base = self.project_dir(project)
        elif flow is None:
            base = self.agent_dir(project, agent)
        else:
            base = self.flow_dir(project, agent, flow)
        return base / METADATA_FILENAME

    def skill_path(
        self, project: str, agent: str, flow: str, skill: str, runner_type: Optional[str]
    ) -> Path:
        ext = extension_for_runner(runner_type)
        return self.flow_dir(project, agent, flow) / f"{skill}.{ext}"

    def rel(self, path: Path) -> str:
        """Mirror-relative posix key for a path."""
        return Path(path).relative_to(self.mirror_dir).as_posix()

    def abs(self, rel: str) -> Path:
        return self.mirror_dir / rel

    def ensure(self) -> None:
        """Create the state dir and the projects dir if missing."""
        self.state_dir.mkdir(parents=True, exist_ok=True)
        self.projects_dir.mkdir(parents=True, exist_ok=True)


def dump_yaml(data: Any) -> str:
    """Deterministic YAML rendering used for every metadata file."""
    return yaml.safe_dump(
        data,
        sort_keys=False,
        allow_unicode=True,
        default_flow_style=False,
        width=4096,
    )


def load_yaml(path: Path) -> dict[str, Any]:
    """Load a YAML mapping; an empty file yields an empty dict.

    Raises:
        yaml.YAMLError: Malformed YAML.
        ValueError: The document is not a mapping.
    """
    data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    if not isinstance(data, dict):
        raise ValueError(f"{path} does not contain a mapping")
    return data


def write_atomic(path: Path, content: str | bytes) -> None:
    """Write via a temp file in the same directory, then rename over."""
    path.parent.mkdir(parents=True, exist_ok=True)
    data = content.encode("utf-8") if isinstance(content, str) else content
    fd, tmp = tempfile.mkstemp(prefix=f".{path.name}.", dir=path.parent)
    try:
        with os.fdopen(fd, "wb") as f:
            f.write(data)
        os.replace(tmp, path)
    except BaseException:
        Path(tmp).unlink(missing_ok=True)
        raise
