"""
Tests for push -- creates, updates and deletes driven by the change plan.
"""

from __future__ import annotations

from pathlib import Path

import pytest
import pytest_asyncio
import yaml

from newosync.errors import LocalStateError
from newosync.layout import dump_yaml
from newosync.sync.models import ChangeStatus


def _write_yaml(path: Path, data: dict) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(dump_yaml(data), encoding="utf-8")


@pytest_asyncio.fixture
async def pulled(seeded, make_engine):
    """An engine whose mirror was just pulled; request log cleared."""
    engine = make_engine()
    await engine.pull()
    seeded.requests.clear()
    seeded.bodies.clear()
    return engine


class TestPushSkills:
    """Tests for skill content changes."""

    @pytest.mark.asyncio
    async def test_edit_greet_updates_one_skill(self, seeded, pulled, flow_dir: Path):
        """Editing one skill file sends exactly one update and leaves status clean."""
        greet = seeded.skill_by_idn("greet")
        (flow_dir / "greet.guidance").write_text("Hi, how can I help?")

        report = await pulled.push()

        assert report.ok
        assert report.updated == ["skill demo/receptionist/main/greet"]
        assert seeded.api_requests() == [("PUT", f"/api/v1/designer/flows/skills/{greet['id']}")]
        assert greet["prompt_script"] == "Hi, how can I help?"
        assert pulled.status() == []

    @pytest.mark.asyncio
    async def test_second_push_makes_no_calls(self, seeded, pulled, flow_dir: Path):
        (flow_dir / "greet.guidance").write_text("Hi")
        await pulled.push()
        seeded.requests.clear()

        report = await pulled.push()

        assert report.change_count == 0
        assert seeded.requests == []

    @pytest.mark.asyncio
    async def test_new_skill_created(self, seeded, pulled, flow_dir: Path):
        (flow_dir / "farewell.jinja").write_text("{{ bye() }}")

        report = await pulled.push()

        assert report.created == ["skill demo/receptionist/main/farewell"]
        created = seeded.skill_by_idn("farewell")
        assert created["runner_type"] == "nsl"
        assert created["prompt_script"] == "{{ bye() }}"
        assert pulled.status() == []

    @pytest.mark.asyncio
    async def test_deleted_skill(self, seeded, pulled, flow_dir: Path):
        route = seeded.skill_by_idn("route")
        (flow_dir / "route.jinja").unlink()

        report = await pulled.push()

        assert report.deleted == ["skill demo/receptionist/main/route"]
        assert seeded.api_requests() == [("DELETE", f"/api/v1/designer/flows/skills/{route['id']}")]
        assert route["id"] not in seeded.skills
        assert pulled.status() == []

    @pytest.mark.asyncio
    async def test_failure_does_not_block_siblings(self, seeded, pulled, flow_dir: Path):
        greet = seeded.skill_by_idn("greet")
        seeded.fail("PUT", f"/api/v1/designer/flows/skills/{greet['id']}", status=422)
        (flow_dir / "greet.guidance").write_text("Hi")
        (flow_dir / "route.jinja").write_text("{{ route(fast=True) }}")

        report = await pulled.push()

        assert [e.entity for e in report.errors] == ["skill demo/receptionist/main/greet"]
        assert report.errors[0].status_code == 422
        assert report.updated == ["skill demo/receptionist/main/route"]
        assert [c.path for c in pulled.status()] == ["projects/demo/receptionist/main/greet.guidance"]

    @pytest.mark.asyncio
    async def test_skill_metadata_edit_in_flow_metadata(self, seeded, pulled, flow_dir: Path):
        """A title edited in the flow's metadata.yaml reaches the skill."""
        meta_path = flow_dir / "metadata.yaml"
        meta = yaml.safe_load(meta_path.read_text())
        meta["skills"][0]["title"] = "Greeting"
        _write_yaml(meta_path, meta)

        report = await pulled.push()

        assert report.ok
        greet = seeded.skill_by_idn("greet")
        assert greet["title"] == "Greeting"
        assert greet["prompt_script"] == "Hello there"
        assert "skill demo/receptionist/main/greet" in report.updated
        assert pulled.status() == []


class TestPushFlows:
    """Tests for flow creation, reconciliation and deletion."""

    def _new_flow(self, flow_dir: Path) -> Path:
        billing = flow_dir.parent / "billing"
        _write_yaml(billing / "metadata.yaml", {
            "idn": "billing",
            "title": "Billing",
            "events": [{"idn": "start", "skill_selector": "skill_idn", "skill_idn": "charge"}],
            "state_fields": [{"idn": "total", "title": "Total", "default_value": "0", "scope": "user"}],
        })
        (billing / "charge.guidance").write_text("Pay up")
        return billing

    @pytest.mark.asyncio
    async def test_new_flow_reconciled_and_filled(self, seeded, pulled, flow_dir: Path):
        billing = self._new_flow(flow_dir)

        report = await pulled.push()

        assert report.ok
        flow = next(f for f in seeded.flows.values() if f["idn"] == "billing")
        meta = yaml.safe_load((billing / "metadata.yaml").read_text())
        assert meta["id"] == flow["id"]
        assert meta["events"][0]["id"] == seeded.events[flow["id"]][0]["id"]
        assert meta["state_fields"][0]["id"] == seeded.states[flow["id"]][0]["id"]
        assert seeded.skill_by_idn("charge")["flow_id"] == flow["id"]
        assert pulled.status() == []

    @pytest.mark.asyncio
    async def test_unlisted_flow_stays_pending(self, seeded, pulled, flow_dir: Path):
        """A flow whose id is not listed yet is never created twice."""
        seeded.hide_new_flows = True
        self._new_flow(flow_dir)

        first = await pulled.push()
        second = await pulled.push()

        creates = [r for r in seeded.requests if r[0] == "POST" and r[1].endswith("/flows/empty")]
        assert len(creates) == 1
        assert any("pending" in w for w in first.warnings)
        assert any("pending" in w for w in second.warnings)
        statuses = {c.path: c.status for c in pulled.status()}
        assert statuses["projects/demo/receptionist/billing/metadata.yaml"] == ChangeStatus.PENDING

        seeded.hide_new_flows = False
        seeded._hidden_flows.clear()
        third = await pulled.push()

        assert third.ok
        assert seeded.skill_by_idn("charge") is not None
        assert pulled.status() == []

    @pytest.mark.asyncio
    async def test_deleted_flow_is_one_call(self, seeded, pulled, flow_dir: Path):
        """Skills under a deleted flow need no calls of their own."""
        import shutil

        fid = next(iter(seeded.flows))
        shutil.rmtree(flow_dir)

        report = await pulled.push()

        assert report.deleted == ["flow demo/receptionist/main"]
        assert seeded.api_requests() == [("DELETE", f"/api/v1/designer/flows/{fid}")]
        assert pulled.status() == []

    @pytest.mark.asyncio
    async def test_removed_metadata_with_skills_left_is_refused(self, seeded, pulled, flow_dir: Path):
        """Deleting only metadata.yaml must not delete the flow under its skill files."""
        fid = next(iter(seeded.flows))
        (flow_dir / "metadata.yaml").unlink()

        report = await pulled.push()

        assert not report.ok
        assert report.errors[0].entity == "flow demo/receptionist/main"
        assert "remain" in report.errors[0].message
        assert not any(method == "DELETE" for method, _ in seeded.api_requests())
        assert fid in seeded.flows
        assert [c.path for c in pulled.status()] == ["projects/demo/receptionist/main/metadata.yaml"]


class TestPushHierarchy:
    @pytest.mark.asyncio
    async def test_new_project_tree(self, seeded, pulled, tmp_path: Path):
        """Project, agent, flow and skill created parents-first in one push."""
        project_dir = tmp_path / "newo_customers" / "acme" / "projects" / "fresh"
        _write_yaml(project_dir / "metadata.yaml", {"idn": "fresh", "title": "Fresh"})
        _write_yaml(project_dir / "bot" / "metadata.yaml", {"idn": "bot", "title": "Bot"})
        _write_yaml(project_dir / "bot" / "main" / "metadata.yaml", {"idn": "main", "title": "Main"})
        (project_dir / "bot" / "main" / "hi.guidance").write_text("Hi")

        report = await pulled.push()

        assert report.ok
        assert report.created == [
            "project fresh", "agent fresh/bot", "flow fresh/bot/main", "skill fresh/bot/main/hi",
        ]
        project = next(p for p in seeded.projects.values() if p["idn"] == "fresh")
        assert yaml.safe_load((project_dir / "metadata.yaml").read_text())["id"] == project["id"]
        assert pulled.status() == []

    @pytest.mark.asyncio
    async def test_project_metadata_update(self, seeded, pulled, tmp_path: Path):
        meta_path = tmp_path / "newo_customers" / "acme" / "projects" / "demo" / "metadata.yaml"
        meta = yaml.safe_load(meta_path.read_text())
        meta["title"] = "Demo Project"
        _write_yaml(meta_path, meta)

        report = await pulled.push()

        assert report.updated == ["project demo"]
        assert next(iter(seeded.projects.values()))["title"] == "Demo Project"

    @pytest.mark.asyncio
    async def test_status_and_push_agree(self, seeded, pulled, flow_dir: Path):
        """Push touches exactly the entities status lists."""
        (flow_dir / "greet.guidance").write_text("Hi")
        (flow_dir / "route.jinja").unlink()
        (flow_dir / "extra.guidance").write_text("More")

        listed = sorted(c.label for c in pulled.status())
        report = await pulled.push()

        assert sorted(report.created + report.updated + report.deleted) == listed

    @pytest.mark.asyncio
    async def test_push_requires_pull(self, make_engine):
        with pytest.raises(LocalStateError, match="pull"):
            await make_engine().push()


class TestPushAttributes:
    @pytest.mark.asyncio
    async def test_changed_and_new_attributes(self, seeded, pulled, tmp_path: Path):
        path = tmp_path / "newo_customers" / "acme" / "attributes.yaml"
        data = yaml.safe_load(path.read_text())
        data["attributes"][0]["value"] = "Acme Corp"
        data["attributes"].append({"idn": "timezone", "value": "UTC"})
        _write_yaml(path, data)

        report = await pulled.push()

        assert report.ok
        assert report.updated == ["attribute company_name"]
        assert report.created == ["attribute timezone"]
        assert seeded.attributes[0]["value"] == "Acme Corp"
        assert seeded.attributes[1]["idn"] == "timezone"
        assert pulled.status() == []


@pytest_asyncio.fixture
async def with_parts(seeded, make_engine):
    """Pulled engine whose main flow has one event and one state field."""
    fid = next(iter(seeded.flows))
    seeded.add_event(fid, "user_message", skill_selector="skill_idn", skill_idn="greet")
    seeded.add_state(fid, "lang", default_value="en", scope="user")
    engine = make_engine()
    await engine.pull()
    seeded.requests.clear()
    seeded.bodies.clear()
    return engine


class TestPushFlowParts:
    """Tests for editing and removing events and state fields of an existing flow."""

    def _edit(self, flow_dir: Path, change) -> None:
        path = flow_dir / "metadata.yaml"
        meta = yaml.safe_load(path.read_text())
        change(meta)
        _write_yaml(path, meta)

    @pytest.mark.asyncio
    async def test_removed_event_is_deleted(self, seeded, with_parts, flow_dir: Path):
        fid = next(iter(seeded.flows))
        eid = seeded.events[fid][0]["id"]
        self._edit(flow_dir, lambda meta: meta.update(events=[]))

        report = await with_parts.push()

        assert report.ok
        assert ("DELETE", f"/api/v1/designer/flows/events/{eid}") in seeded.api_requests()
        assert seeded.events[fid] == []
        assert report.deleted == ["event demo/receptionist/main/user_message"]
        assert with_parts.status() == []

    @pytest.mark.asyncio
    async def test_edited_state_is_updated(self, seeded, with_parts, flow_dir: Path):
        fid = next(iter(seeded.flows))
        sid = seeded.states[fid][0]["id"]
        self._edit(flow_dir, lambda meta: meta["state_fields"][0].update(default_value="de"))

        report = await with_parts.push()

        assert report.ok
        assert ("PUT", f"/api/v1/designer/flows/states/{sid}") in seeded.api_requests()
        assert seeded.states[fid][0]["default_value"] == "de"
        assert "state demo/receptionist/main/lang" in report.updated
        assert with_parts.status() == []

    @pytest.mark.asyncio
    async def test_edited_event_is_updated(self, seeded, with_parts, flow_dir: Path):
        fid = next(iter(seeded.flows))
        self._edit(flow_dir, lambda meta: meta["events"][0].update(skill_idn="route"))

        report = await with_parts.push()

        assert report.ok
        assert seeded.events[fid][0]["skill_idn"] == "route"
        assert "event demo/receptionist/main/user_message" in report.updated

    @pytest.mark.asyncio
    async def test_failed_delete_keeps_flow_modified(self, seeded, with_parts, flow_dir: Path):
        """The flow stays dirty until the removal goes through."""
        fid = next(iter(seeded.flows))
        eid = seeded.events[fid][0]["id"]
        seeded.fail("DELETE", f"/api/v1/designer/flows/events/{eid}")
        self._edit(flow_dir, lambda meta: meta.update(events=[]))

        report = await with_parts.push()

        assert not report.ok
        assert report.errors[0].entity == "event demo/receptionist/main/user_message"
        assert len(seeded.events[fid]) == 1
        assert [(c.path, c.status) for c in with_parts.status()] == [
            ("projects/demo/receptionist/main/metadata.yaml", ChangeStatus.MODIFIED),
        ]

        seeded.failures.clear()
        retry = await with_parts.push()

        assert retry.ok
        assert seeded.events[fid] == []
        assert with_parts.status() == []

    @pytest.mark.asyncio
    async def test_title_edit_sends_only_flow_update(self, seeded, with_parts, flow_dir: Path):
        fid = next(iter(seeded.flows))
        self._edit(flow_dir, lambda meta: meta.update(title="Main Flow"))

        report = await with_parts.push()

        assert report.ok
        assert seeded.api_requests() == [("PUT", f"/api/v1/designer/flows/{fid}")]
        assert seeded.flows[fid]["title"] == "Main Flow"


class TestPushPersonas:
    @pytest.mark.asyncio
    async def test_new_persona_created(self, seeded, pulled, tmp_path: Path):
        path = tmp_path / "newo_customers" / "acme" / "personas.yaml"
        data = yaml.safe_load(path.read_text())
        data["personas"].append({"name": "concierge", "title": "Concierge"})
        _write_yaml(path, data)

        report = await pulled.push()

        assert report.ok
        assert report.created == ["persona concierge"]
        assert [p["name"] for p in seeded.personas.values()] == ["concierge"]
        assert pulled.status() == []

    @pytest.mark.asyncio
    async def test_edited_persona_reported(self, seeded, make_engine, tmp_path: Path):
        """Personas have no update endpoint: the edit is an error and stays visible."""
        seeded.add_persona("concierge")
        engine = make_engine()
        await engine.pull()
        path = tmp_path / "newo_customers" / "acme" / "personas.yaml"
        data = yaml.safe_load(path.read_text())
        data["personas"][0]["title"] = "Head Concierge"
        _write_yaml(path, data)

        report = await engine.push()

        assert not report.ok
        assert report.errors[0].entity == "persona concierge"
        assert [c.path for c in engine.status()] == ["personas.yaml"]


class TestPushKnowledgeBase:
    @pytest.mark.asyncio
    async def test_new_article_imported(self, seeded, make_engine, tmp_path: Path):
        persona_id = seeded.add_persona("reception", agent_idn="receptionist")
        seeded.add_topic(persona_id, "greeting", "How to greet callers")
        engine = make_engine()
        await engine.pull()
        seeded.requests.clear()
        path = tmp_path / "newo_customers" / "acme" / "akb" / "receptionist.yaml"
        data = yaml.safe_load(path.read_text())
        data["topics"].append({"topic_name": "hours", "topic_summary": "Open 9 to 5"})
        _write_yaml(path, data)

        report = await engine.push()

        assert report.ok
        assert report.created == ["article receptionist/hours"]
        assert seeded.api_requests() == [("POST", "/api/v1/akb/append-manual")]
        assert [t["topic_name"] for t in seeded.topics[persona_id]] == ["greeting", "hours"]
        assert engine.status() == []
