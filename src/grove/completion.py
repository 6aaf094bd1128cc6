"""Completion handling — turns agent output into documents and comments.

Results arrive either through ``submit`` (dispatch jobs, via an
asyncio.Queue drained by a single worker so writes for one ticket never
interleave) or through ``handle`` directly (the HTTP completion
endpoint).

Routing of a successful result:
- conversational runs → one comment
- research → next research version; the reviewer's v2 is appended to v1
  under a "Review by <name>" heading
- planning → plan (or design, for designers) single-slot upsert;
  reviewers only comment
- implementation → completion comment, ticket moves to review

Output that is nothing but a CLI quota or auth banner is never posted; it
pauses dispatching instead. Conversational replies are always posted.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass

from grove.config import DocumentsConfig
from grove.credits import PauseManager, detect_error_banner
from grove.errors import NotFound, ProcessFailure
from grove.models import (
    Comment,
    CommentKind,
    CompletionPayload,
    Document,
    DocumentType,
    Persona,
    Phase,
    Ticket,
    TicketState,
)
from grove.prompts import extract_summary
from grove.roles import Role
from grove.store import RecordStore

logger = logging.getLogger(__name__)


@dataclass
class CompletionResult:
    document: Document | None = None
    comment: Comment | None = None
    state: TicketState | None = None
    paused: bool = False


class CompletionHandler:
    def __init__(
        self,
        store: RecordStore,
        pause: PauseManager,
        config: DocumentsConfig | None = None,
    ):
        self.store = store
        self.pause = pause
        self.config = config or DocumentsConfig()
        self._queue: asyncio.Queue[tuple[CompletionPayload, asyncio.Future]] = asyncio.Queue()
        self._task: asyncio.Task | None = None

    # ── Worker ───────────────────────────────────────────────────────────

    async def start(self) -> None:
        self._task = asyncio.create_task(self._worker(), name="completion-worker")
        logger.info("Completion worker started")

    async def stop(self) -> None:
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("Completion worker stopped")

    async def submit(self, payload: CompletionPayload) -> CompletionResult:
        """Queue a result and wait until the worker has applied it."""
        if self._task is None:
            return await self.handle(payload)
        future: asyncio.Future = asyncio.get_running_loop().create_future()
        await self._queue.put((payload, future))
        return await future

    async def _worker(self) -> None:
        while True:
            payload, future = await self._queue.get()
            try:
                result = await self.handle(payload)
            except Exception as e:
                logger.exception("Completion for ticket %s failed", payload.ticket_id)
                if not future.done():
                    future.set_exception(e)
            else:
                if not future.done():
                    future.set_result(result)
            finally:
                self._queue.task_done()

    # ── Handling ─────────────────────────────────────────────────────────

    async def handle(self, payload: CompletionPayload) -> CompletionResult:
        """Apply one agent result.

        Raises:
            ProcessFailure: Empty content.
            NotFound: Unknown ticket or persona.
            RegressionRejected: The new document version is too short.
        """
        content = payload.content.strip()
        if not content:
            raise ProcessFailure("Agent produced empty output")

        if not payload.conversational:
            exhausted = detect_error_banner(content)
            if exhausted:
                await self.pause.pause(exhausted, payload.ticket_id)
                await self.store.clear_activity(payload.ticket_id)
                logger.warning(
                    "Intercepted quota/auth output for ticket %s: %s",
                    payload.ticket_id,
                    exhausted.reason,
                )
                return CompletionResult(paused=True)

        ticket = await self.store.get_ticket(payload.ticket_id)
        if ticket is None:
            raise NotFound("ticket", payload.ticket_id)
        persona = await self.store.get_persona(payload.persona_id)
        if persona is None:
            raise NotFound("persona", payload.persona_id)

        if payload.conversational:
            return CompletionResult(comment=await self._comment(ticket, persona, content))

        if payload.phase == Phase.RESEARCH:
            return await self._complete_research(ticket, persona, content)
        if payload.phase == Phase.PLANNING:
            return await self._complete_planning(ticket, persona, content)
        if payload.phase == Phase.IMPLEMENTATION:
            return await self._complete_implementation(ticket, persona, content)
        return CompletionResult(comment=await self._comment(ticket, persona, content))

    async def _comment(
        self, ticket: Ticket, persona: Persona, body: str, kind: CommentKind = CommentKind.MESSAGE
    ) -> Comment:
        return await self.store.add_comment(
            ticket.id, body, author_id=persona.id, author_name=persona.name, kind=kind
        )

    async def _document_written(self, ticket: Ticket, persona: Persona, doc: Document) -> CompletionResult:
        summary = extract_summary(doc.content, self.config.summary_chars)
        label = doc.type.value.replace("_", " ")
        comment = await self._comment(
            ticket, persona, f"**{label.capitalize()} v{doc.version}**: {summary}", CommentKind.STATUS
        )
        return CompletionResult(document=doc, comment=comment)

    async def _complete_research(self, ticket: Ticket, persona: Persona, content: str) -> CompletionResult:
        current = await self.store.max_document_version(ticket.id, DocumentType.RESEARCH)
        if current >= self.store.research_version_cap:
            logger.info("Research for %s already complete; posting as comment", ticket.id)
            return CompletionResult(comment=await self._comment(ticket, persona, content))

        # v2 is the review slot; v1 and v3 belong to the author.
        expects_review = current == 1
        if persona.role.is_reviewer != expects_review:
            logger.info(
                "Research v%d for %s expects %s output; posting %s's as comment",
                current + 1,
                ticket.id,
                "reviewer" if expects_review else "author",
                persona.role.value,
            )
            return CompletionResult(comment=await self._comment(ticket, persona, content))

        if current == 1:
            previous = await self.store.latest_document(ticket.id, DocumentType.RESEARCH)
            content = f"{previous.content}\n\n---\n\n## Review by {persona.name}\n\n{content}"

        doc = await self.store.add_document(ticket.id, DocumentType.RESEARCH, content, persona.id)
        return await self._document_written(ticket, persona, doc)

    async def _complete_planning(self, ticket: Ticket, persona: Persona, content: str) -> CompletionResult:
        if persona.role.is_reviewer:
            return CompletionResult(comment=await self._comment(ticket, persona, content))
        doc_type = DocumentType.DESIGN if persona.role == Role.DESIGNER else DocumentType.IMPLEMENTATION_PLAN
        doc = await self.store.upsert_document(ticket.id, doc_type, content, persona.id)
        return await self._document_written(ticket, persona, doc)

    async def _complete_implementation(
        self, ticket: Ticket, persona: Persona, content: str
    ) -> CompletionResult:
        comment = await self._comment(ticket, persona, content, CommentKind.COMPLETION)
        if persona.role.is_reviewer:
            return CompletionResult(comment=comment)
        await self.store.set_state(ticket.id, TicketState.REVIEW, persona.id)
        return CompletionResult(comment=comment, state=TicketState.REVIEW)
