"""Tests for the SQLite record store."""

from datetime import datetime, timedelta, timezone

import pytest
import pytest_asyncio

from conftest import make_persona, make_project, make_ticket
from grove.errors import DocumentCapReached, RegressionRejected
from grove.models import CommentKind, DocumentType, TicketState
from grove.roles import Role
from grove.store import RecordStore


@pytest_asyncio.fixture
async def project(store, tmp_path):
    return await store.create_project(make_project(tmp_path))


class TestProjectsAndPersonas:
    @pytest.mark.asyncio
    async def test_create_and_get_project(self, store, project):
        fetched = await store.get_project("p1")
        assert fetched == project
        assert await store.get_project("nope") is None
        assert [p.id for p in await store.list_projects()] == ["p1"]

    @pytest.mark.asyncio
    async def test_list_personas_project_first(self, store, project):
        await store.create_persona(make_persona(Role.DEVELOPER, "global-dev", project_id=None, name="Ada"))
        await store.create_persona(make_persona(Role.DEVELOPER, "local-dev", name="Zed"))

        personas = await store.list_personas("p1")
        assert [p.id for p in personas] == ["local-dev", "global-dev"]

        local_only = await store.list_personas("p1", include_global=False)
        assert [p.id for p in local_only] == ["local-dev"]

    @pytest.mark.asyncio
    async def test_persona_skills_round_trip(self, store, project):
        await store.create_persona(make_persona(Role.HACKER, skills=["fuzzing", "auth"]))
        persona = await store.get_persona("hacker-1")
        assert persona.skills == ["fuzzing", "auth"]
        assert persona.role == Role.HACKER

    @pytest.mark.asyncio
    async def test_find_persona_by_name_is_scoped(self, store, project):
        await store.create_persona(make_persona(Role.CRITIC, "c-local", name="Quinn"))
        await store.create_persona(make_persona(Role.CRITIC, "c-global", project_id=None, name="Quinn"))

        assert (await store.find_persona_by_name("quinn", "p1")).id == "c-local"
        assert (await store.find_persona_by_name("QUINN", None)).id == "c-global"
        assert await store.find_persona_by_name("nobody", "p1") is None


class TestTickets:
    @pytest.mark.asyncio
    async def test_create_and_get(self, store, project):
        await store.create_ticket(make_ticket(description="Find things"))
        ticket = await store.get_ticket("t1")
        assert ticket.title == "Ticket t1"
        assert ticket.state == TicketState.BACKLOG
        assert ticket.last_agent_activity is None

    @pytest.mark.asyncio
    async def test_list_orders_by_priority_then_age(self, store, project):
        base = datetime(2025, 1, 1, tzinfo=timezone.utc)
        await store.create_ticket(make_ticket("old", created_at=base))
        await store.create_ticket(make_ticket("new", created_at=base + timedelta(hours=1)))
        await store.create_ticket(make_ticket("urgent", priority=5, created_at=base + timedelta(hours=2)))

        assert [t.id for t in await store.list_tickets()] == ["urgent", "old", "new"]

    @pytest.mark.asyncio
    async def test_activity_mark_and_clear(self, store, project):
        await store.create_ticket(make_ticket())
        await store.mark_activity("t1", "developer-1")
        ticket = await store.get_ticket("t1")
        assert ticket.assignee_id == "developer-1"
        assert ticket.last_agent_activity is not None

        await store.clear_activity("t1")
        ticket = await store.get_ticket("t1")
        assert ticket.assignee_id is None
        assert ticket.last_agent_activity is None

    @pytest.mark.asyncio
    async def test_set_state_audited(self, store, project):
        await store.create_ticket(make_ticket())
        await store.set_state("t1", TicketState.REVIEW, actor_id="developer-1")

        assert (await store.get_ticket("t1")).state == TicketState.REVIEW
        entries = await store.list_audit("t1", "state_changed")
        assert entries[-1].detail == {"from": "backlog", "to": "review"}
        assert entries[-1].actor_id == "developer-1"

    @pytest.mark.asyncio
    async def test_approvals_advance_state(self, store, project):
        await store.create_ticket(make_ticket())
        await store.approve_research("t1", actor_id="human")
        ticket = await store.get_ticket("t1")
        assert ticket.state == TicketState.PLANNING
        assert ticket.research_approved_at is not None

        await store.approve_plan("t1", actor_id="human")
        ticket = await store.get_ticket("t1")
        assert ticket.state == TicketState.BUILDING
        assert ticket.plan_approved_at is not None
        assert len(await store.list_audit("t1", "approved")) == 2


class TestDocuments:
    @pytest.mark.asyncio
    async def test_research_versions_append(self, store, project):
        await store.create_ticket(make_ticket())
        v1 = await store.add_document("t1", DocumentType.RESEARCH, "a" * 1000, "researcher-1")
        v2 = await store.add_document("t1", DocumentType.RESEARCH, "b" * 1200, "critic-1")

        assert (v1.version, v2.version) == (1, 2)
        assert await store.max_document_version("t1", DocumentType.RESEARCH) == 2
        assert len(await store.list_documents("t1", DocumentType.RESEARCH)) == 2
        assert (await store.get_ticket("t1")).research_completed_at is None

    @pytest.mark.asyncio
    async def test_research_cap_stamps_completion(self, store, project):
        await store.create_ticket(make_ticket())
        for _ in range(3):
            await store.add_document("t1", DocumentType.RESEARCH, "x" * 500)

        assert (await store.get_ticket("t1")).research_completed_at is not None
        with pytest.raises(DocumentCapReached):
            await store.add_document("t1", DocumentType.RESEARCH, "x" * 500)
        assert await store.max_document_version("t1", DocumentType.RESEARCH) == 3

    @pytest.mark.asyncio
    async def test_regression_rejected(self, store, project):
        await store.create_ticket(make_ticket())
        await store.add_document("t1", DocumentType.RESEARCH, "x" * 1000)

        with pytest.raises(RegressionRejected) as exc_info:
            await store.add_document("t1", DocumentType.RESEARCH, "x" * 299)
        assert exc_info.value.previous_length == 1000
        assert exc_info.value.new_length == 299
        assert await store.max_document_version("t1", DocumentType.RESEARCH) == 1

    @pytest.mark.asyncio
    async def test_just_above_ratio_accepted(self, store, project):
        await store.create_ticket(make_ticket())
        await store.add_document("t1", DocumentType.RESEARCH, "x" * 1000)
        doc = await store.add_document("t1", DocumentType.RESEARCH, "x" * 301)
        assert doc.version == 2

    @pytest.mark.asyncio
    async def test_plan_upsert_keeps_single_row(self, store, project):
        await store.create_ticket(make_ticket())
        first = await store.upsert_document("t1", DocumentType.IMPLEMENTATION_PLAN, "plan " * 100)
        second = await store.upsert_document("t1", DocumentType.IMPLEMENTATION_PLAN, "better plan " * 100)

        assert second.id == first.id
        assert second.version == 2
        docs = await store.list_documents("t1", DocumentType.IMPLEMENTATION_PLAN)
        assert len(docs) == 1
        assert docs[0].content.startswith("better plan")
        assert (await store.get_ticket("t1")).plan_completed_at is not None

    @pytest.mark.asyncio
    async def test_plan_upsert_regression_guard(self, store, project):
        await store.create_ticket(make_ticket())
        await store.upsert_document("t1", DocumentType.IMPLEMENTATION_PLAN, "p" * 2000)
        with pytest.raises(RegressionRejected):
            await store.upsert_document("t1", DocumentType.IMPLEMENTATION_PLAN, "short")
        latest = await store.latest_document("t1", DocumentType.IMPLEMENTATION_PLAN)
        assert len(latest.content) == 2000

    @pytest.mark.asyncio
    async def test_custom_ratio(self, tmp_path):
        strict = RecordStore(str(tmp_path / "strict.db"), regression_ratio=0.9)
        await strict.initialize()
        try:
            await strict.create_project(make_project(tmp_path))
            await strict.create_ticket(make_ticket())
            await strict.upsert_document("t1", DocumentType.DESIGN, "d" * 100)
            with pytest.raises(RegressionRejected):
                await strict.upsert_document("t1", DocumentType.DESIGN, "d" * 80)
        finally:
            await strict.close()

    @pytest.mark.asyncio
    async def test_document_writes_audited(self, store, project):
        await store.create_ticket(make_ticket())
        doc = await store.add_document("t1", DocumentType.RESEARCH, "notes", "researcher-1")
        entries = await store.list_audit("t1", "document_created")
        assert entries[0].detail == {"type": "research", "version": 1, "document_id": doc.id}


class TestPhaseSelection:
    @pytest.mark.asyncio
    async def test_research_candidates_exclude_capped(self, store, project):
        await store.create_ticket(make_ticket("fresh"))
        await store.create_ticket(make_ticket("one"))
        await store.create_ticket(make_ticket("done"))
        await store.add_document("one", DocumentType.RESEARCH, "x" * 100)
        for _ in range(3):
            await store.add_document("done", DocumentType.RESEARCH, "x" * 100)

        rows = await store.research_candidates(limit=10)
        assert {t.id: v for t, v in rows} == {"fresh": 0, "one": 1}

    @pytest.mark.asyncio
    async def test_planning_candidates(self, store, project):
        await store.create_ticket(make_ticket("approved"))
        await store.create_ticket(make_ticket("planned"))
        await store.create_ticket(make_ticket("backlog"))
        await store.approve_research("approved")
        await store.approve_research("planned")
        await store.upsert_document("planned", DocumentType.IMPLEMENTATION_PLAN, "plan")

        assert [t.id for t in await store.planning_candidates(10)] == ["approved"]

    @pytest.mark.asyncio
    async def test_implementation_candidates_respect_quiet_period(self, store, project):
        now = datetime.now(timezone.utc)
        for ticket_id in ("idle", "busy", "stale"):
            await store.create_ticket(make_ticket(ticket_id))
            await store.approve_research(ticket_id)
            await store.approve_plan(ticket_id)
        await store.mark_activity("busy", "developer-1", at=now - timedelta(minutes=5))
        await store.mark_activity("stale", "developer-1", at=now - timedelta(hours=2))

        quiet_before = now - timedelta(minutes=30)
        ids = {t.id for t in await store.implementation_candidates(quiet_before, 10)}
        assert ids == {"idle", "stale"}

    @pytest.mark.asyncio
    async def test_blocked_tickets_leave_every_pass(self, store, project):
        await store.create_ticket(make_ticket("research"))
        await store.create_ticket(make_ticket("planning"))
        await store.approve_research("planning")
        await store.create_ticket(make_ticket("building"))
        await store.approve_research("building")
        await store.approve_plan("building")
        for ticket_id in ("research", "planning", "building"):
            await store.block(ticket_id, "conversation reached its context ceiling")

        past = datetime.now(timezone.utc) + timedelta(hours=1)
        assert await store.research_candidates(10) == []
        assert await store.planning_candidates(10) == []
        assert await store.implementation_candidates(past, 10) == []

        await store.unblock("research", actor_id="human")
        assert [t.id for t, _ in await store.research_candidates(10)] == ["research"]
        actions = [e.action for e in await store.list_audit("research")]
        assert actions == ["blocked", "unblocked"]


class TestCommentsAndSettings:
    @pytest.mark.asyncio
    async def test_recent_comments_oldest_first(self, store, project):
        await store.create_ticket(make_ticket())
        for i in range(12):
            await store.add_comment("t1", f"comment {i}")
        comments = await store.recent_comments("t1", limit=10)
        assert [c.body for c in comments] == [f"comment {i}" for i in range(2, 12)]

    @pytest.mark.asyncio
    async def test_comment_kind(self, store, project):
        await store.create_ticket(make_ticket())
        c = await store.add_comment("t1", "done", author_id="developer-1", author_name="Dev", kind=CommentKind.COMPLETION)
        fetched = (await store.recent_comments("t1"))[0]
        assert fetched.id == c.id
        assert fetched.kind == CommentKind.COMPLETION
        assert fetched.author_name == "Dev"

    @pytest.mark.asyncio
    async def test_settings(self, store):
        assert await store.get_setting("k") is None
        await store.set_setting("k", "v1")
        await store.set_setting("k", "v2")
        assert await store.get_setting("k") == "v2"
        await store.delete_setting("k")
        assert await store.get_setting("k") is None

    @pytest.mark.asyncio
    async def test_db_requires_initialize(self, tmp_path):
        s = RecordStore(str(tmp_path / "x.db"))
        with pytest.raises(RuntimeError):
            _ = s.db
