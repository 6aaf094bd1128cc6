"""Tests for completion handling: agent output → documents, comments, state."""

import pytest
import pytest_asyncio
from conftest import make_ticket, seed

from grove.completion import CompletionHandler
from grove.credits import PauseManager
from grove.errors import DocumentCapReached, NotFound, ProcessFailure, RegressionRejected
from grove.models import CommentKind, CompletionPayload, DocumentType, Phase, TicketState

RESEARCH_V1 = "## Summary\nLogin uses a session cookie set in auth.py.\n\n" + "Details. " * 150
REVIEW = "## Summary\nThe research misses the token refresh path in refresh.py.\n\n" + "Notes. " * 80
RESEARCH_V3 = "## Summary\nLogin and refresh both go through auth.py.\n\n" + "Final. " * 200


@pytest_asyncio.fixture
async def handler(store, tmp_path):
    await seed(store, tmp_path)
    await store.create_ticket(make_ticket())
    return CompletionHandler(store, PauseManager(store))


def _payload(persona_id: str, content: str, phase: Phase = Phase.RESEARCH, **kwargs) -> CompletionPayload:
    return CompletionPayload(ticket_id="t1", persona_id=persona_id, content=content, phase=phase, **kwargs)


class TestResearch:
    @pytest.mark.asyncio
    async def test_first_version(self, handler, store):
        result = await handler.handle(_payload("researcher-1", RESEARCH_V1))

        assert result.document.version == 1
        assert result.document.type == DocumentType.RESEARCH
        assert result.comment.kind == CommentKind.STATUS
        assert result.comment.body.startswith("**Research v1**: Login uses a session cookie")

    @pytest.mark.asyncio
    async def test_review_appended_to_v1(self, handler, store):
        await handler.handle(_payload("researcher-1", RESEARCH_V1))
        result = await handler.handle(_payload("critic-1", REVIEW))

        doc = result.document
        assert doc.version == 2
        assert doc.content.startswith(RESEARCH_V1.strip())
        assert "## Review by Critic" in doc.content
        assert doc.content.endswith(REVIEW.strip())

    @pytest.mark.asyncio
    async def test_final_version_completes_research(self, handler, store):
        await handler.handle(_payload("researcher-1", RESEARCH_V1))
        await handler.handle(_payload("critic-1", REVIEW))
        result = await handler.handle(_payload("researcher-1", RESEARCH_V3))

        assert result.document.version == 3
        ticket = await store.get_ticket("t1")
        assert ticket.research_completed_at is not None

    @pytest.mark.asyncio
    async def test_past_cap_becomes_comment(self, handler, store):
        for persona, content in (("researcher-1", RESEARCH_V1), ("critic-1", REVIEW), ("researcher-1", RESEARCH_V3)):
            await handler.handle(_payload(persona, content))
        result = await handler.handle(_payload("researcher-1", "Extra thoughts " * 20))

        assert result.document is None
        assert result.comment.kind == CommentKind.MESSAGE
        assert await store.max_document_version("t1", DocumentType.RESEARCH) == 3

    @pytest.mark.asyncio
    async def test_reviewer_cannot_author_first_version(self, handler, store):
        result = await handler.handle(_payload("critic-1", REVIEW))

        assert result.document is None
        assert result.comment.author_id == "critic-1"
        assert await store.max_document_version("t1", DocumentType.RESEARCH) == 0

    @pytest.mark.asyncio
    async def test_author_cannot_fill_review_slot(self, handler, store):
        await handler.handle(_payload("researcher-1", RESEARCH_V1))
        result = await handler.handle(_payload("researcher-1", RESEARCH_V3))

        assert result.document is None
        assert result.comment.kind == CommentKind.MESSAGE
        doc = await store.latest_document("t1", DocumentType.RESEARCH)
        assert doc.version == 1
        assert "Review by" not in doc.content

    @pytest.mark.asyncio
    async def test_reviewer_cannot_write_final_version(self, handler, store):
        await handler.handle(_payload("researcher-1", RESEARCH_V1))
        await handler.handle(_payload("critic-1", REVIEW))
        result = await handler.handle(_payload("critic-1", RESEARCH_V3))

        assert result.document is None
        assert await store.max_document_version("t1", DocumentType.RESEARCH) == 2

    @pytest.mark.asyncio
    async def test_regression_rejected(self, handler, store):
        await handler.handle(_payload("researcher-1", RESEARCH_V1))
        await handler.handle(_payload("critic-1", REVIEW))
        with pytest.raises(RegressionRejected):
            await handler.handle(_payload("researcher-1", "Too short now."))
        assert await store.max_document_version("t1", DocumentType.RESEARCH) == 2


class TestPlanning:
    @pytest_asyncio.fixture
    async def planning(self, handler, store):
        await store.approve_research("t1")
        return handler

    @pytest.mark.asyncio
    async def test_plan_upserted(self, planning, store):
        first = await planning.handle(_payload("developer-1", "Plan A " * 50, Phase.PLANNING))
        second = await planning.handle(_payload("developer-1", "Plan B " * 50, Phase.PLANNING))

        assert first.document.type == DocumentType.IMPLEMENTATION_PLAN
        assert second.document.id == first.document.id
        docs = await store.list_documents("t1", DocumentType.IMPLEMENTATION_PLAN)
        assert len(docs) == 1
        assert docs[0].content.startswith("Plan B")

    @pytest.mark.asyncio
    async def test_designer_writes_design(self, planning):
        result = await planning.handle(_payload("designer-1", "Design " * 50, Phase.PLANNING))
        assert result.document.type == DocumentType.DESIGN

    @pytest.mark.asyncio
    async def test_reviewer_only_comments(self, planning, store):
        result = await planning.handle(_payload("critic-1", "The plan skips migrations.", Phase.PLANNING))
        assert result.document is None
        assert result.comment.body == "The plan skips migrations."


class TestImplementation:
    @pytest.mark.asyncio
    async def test_developer_moves_ticket_to_review(self, handler, store):
        result = await handler.handle(
            _payload("developer-1", "Implemented. All acceptance criteria met.", Phase.IMPLEMENTATION)
        )
        assert result.comment.kind == CommentKind.COMPLETION
        assert result.state == TicketState.REVIEW
        assert (await store.get_ticket("t1")).state == TicketState.REVIEW

    @pytest.mark.asyncio
    async def test_reviewer_leaves_state(self, handler, store):
        result = await handler.handle(_payload("hacker-1", "Found an injection.", Phase.IMPLEMENTATION))
        assert result.state is None
        assert (await store.get_ticket("t1")).state == TicketState.BACKLOG


class TestHandle:
    @pytest.mark.asyncio
    async def test_conversational_is_comment(self, handler, store):
        result = await handler.handle(_payload("researcher-1", RESEARCH_V1, conversational=True))
        assert result.document is None
        assert result.comment.author_name == "Researcher"
        assert await store.max_document_version("t1", DocumentType.RESEARCH) == 0

    @pytest.mark.asyncio
    async def test_empty_output(self, handler):
        with pytest.raises(ProcessFailure):
            await handler.handle(_payload("researcher-1", "   \n"))

    @pytest.mark.asyncio
    async def test_unknown_ticket_and_persona(self, handler):
        with pytest.raises(NotFound):
            await handler.handle(CompletionPayload(ticket_id="nope", persona_id="researcher-1", content="x", phase=Phase.RESEARCH))
        with pytest.raises(NotFound):
            await handler.handle(_payload("ghost", "x"))

    @pytest.mark.asyncio
    async def test_quota_output_pauses_instead_of_posting(self, handler, store):
        result = await handler.handle(_payload("researcher-1", "You've hit your limit · resets 3pm (UTC)"))

        assert result.paused
        assert result.document is None
        assert await handler.pause.is_paused()
        assert await store.recent_comments("t1") == []

    @pytest.mark.asyncio
    async def test_conversational_reply_mentioning_401_is_posted(self, handler, store):
        reply = "The login endpoint returns 401 because the session cookie is not forwarded by the proxy."
        result = await handler.handle(_payload("researcher-1", reply, conversational=True))

        assert not result.paused
        assert result.comment.body == reply
        assert not await handler.pause.is_paused()

    @pytest.mark.asyncio
    async def test_short_document_about_billing_not_intercepted(self, handler):
        content = "## Summary\nBilling retries live in billing.py; a 429 from the provider triggers a rate limit backoff."
        result = await handler.handle(_payload("researcher-1", content))

        assert not result.paused
        assert result.document.version == 1
        assert not await handler.pause.is_paused()

    @pytest.mark.asyncio
    async def test_long_documents_not_scanned(self, handler):
        content = "Notes on the rate limit handling in api.py. " * 40
        result = await handler.handle(_payload("researcher-1", content))
        assert not result.paused
        assert result.document.version == 1


class TestWorker:
    @pytest.mark.asyncio
    async def test_submit_through_queue(self, handler, store):
        await handler.start()
        try:
            result = await handler.submit(_payload("researcher-1", RESEARCH_V1))
            assert result.document.version == 1
        finally:
            await handler.stop()

    @pytest.mark.asyncio
    async def test_submit_propagates_errors(self, handler):
        await handler.start()
        try:
            with pytest.raises(ProcessFailure):
                await handler.submit(_payload("researcher-1", ""))
        finally:
            await handler.stop()

    @pytest.mark.asyncio
    async def test_submit_without_worker_handles_inline(self, handler):
        result = await handler.submit(_payload("researcher-1", RESEARCH_V1))
        assert result.document.version == 1


class TestCap:
    @pytest.mark.asyncio
    async def test_store_refuses_past_cap(self, handler, store):
        for persona, content in (("researcher-1", RESEARCH_V1), ("critic-1", REVIEW), ("researcher-1", RESEARCH_V3)):
            await handler.handle(_payload(persona, content))
        with pytest.raises(DocumentCapReached):
            await store.add_document("t1", DocumentType.RESEARCH, RESEARCH_V3 * 2, "researcher-1")


