"""Dispatch Router — decides who works a ticket and launches the run.

Target resolution, highest precedence first:
1. explicit persona id
2. @mention by name (project personas, then global ones)
3. explicit role
4. automatic role from the ticket's phase

Broadcast triggers instead select every persona whose role belongs to
the current phase's broadcast set, and post one consolidated note.

Review and shipped tickets are human-owned: nothing is dispatched and
the outcome says so. Every trigger produces either dispatched agents or
skip reasons; an empty outcome never happens.

Each dispatched job runs as its own asyncio task. The router returns as
soon as jobs are launched; ``dispatch_and_wait`` lets the scheduler join
a batch. Successful output is handed to the completion handler by message
passing.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from pathlib import Path

from grove.config import GroveConfig
from grove.cooldown import CooldownTracker
from grove.credits import PauseManager, detect_error_banner, detect_exhaustion
from grove.errors import CredentialOrQuotaExhausted, NotFound
from grove.models import (
    AuditEntry,
    CommentKind,
    CompletionPayload,
    DispatchedAgent,
    DispatchJob,
    DispatchOutcome,
    DispatchTrigger,
    DocumentType,
    Persona,
    Phase,
    Project,
    Skip,
    SkipReason,
    Ticket,
)
from grove.prompts import build_system_prompt, build_task
from grove.roles import BROADCAST_ROLES, Role, target_role
from grove.runner import AgentRunner, RunOutcome
from grove.session import ErrorEvent, SessionContext
from grove.store import RecordStore
from grove.workspace import WorkspaceManager

logger = logging.getLogger(__name__)

ACK_MESSAGE = "Looking into this now."

Deliver = Callable[[CompletionPayload], Awaitable[object]]


@dataclass
class JobResult:
    ticket_id: str
    persona_id: str
    session_dir: str
    status: str  # completed | timeout | failed | blocked | paused | error
    detail: str = ""

    @property
    def ok(self) -> bool:
        return self.status == "completed"


class DispatchRouter:
    def __init__(
        self,
        config: GroveConfig,
        store: RecordStore,
        workspaces: WorkspaceManager,
        cooldown: CooldownTracker,
        pause: PauseManager,
        runner: AgentRunner,
        deliver: Deliver,
    ):
        self.config = config
        self.store = store
        self.workspaces = workspaces
        self.cooldown = cooldown
        self.pause = pause
        self.runner = runner
        self.deliver = deliver
        self._jobs: set[asyncio.Task[JobResult]] = set()
        self._active: dict[str, int] = {}  # ticket_id → in-flight job count

    # ── Public API ───────────────────────────────────────────────────────

    def is_active(self, ticket_id: str) -> bool:
        return self._active.get(ticket_id, 0) > 0

    @property
    def in_flight(self) -> int:
        return sum(self._active.values())

    async def dispatch(self, ticket_id: str, trigger: DispatchTrigger | None = None) -> DispatchOutcome:
        """Resolve targets for a trigger and launch their runs without waiting.

        Raises:
            NotFound: Unknown ticket, or the ticket's project is missing.
        """
        outcome, _ = await self._dispatch(ticket_id, trigger)
        return outcome

    async def dispatch_and_wait(
        self, ticket_id: str, trigger: DispatchTrigger | None = None
    ) -> tuple[DispatchOutcome, list[JobResult]]:
        """Like dispatch, but also wait for every launched run to finish."""
        outcome, tasks = await self._dispatch(ticket_id, trigger)
        results = list(await asyncio.gather(*tasks)) if tasks else []
        return outcome, results

    async def drain(self) -> None:
        """Wait for all in-flight jobs (used on shutdown)."""
        if self._jobs:
            await asyncio.gather(*self._jobs, return_exceptions=True)

    async def _dispatch(
        self, ticket_id: str, trigger: DispatchTrigger | None
    ) -> tuple[DispatchOutcome, list[asyncio.Task[JobResult]]]:
        trigger = trigger or DispatchTrigger()
        ticket = await self.store.get_ticket(ticket_id)
        if ticket is None:
            raise NotFound("ticket", ticket_id)
        project = await self.store.get_project(ticket.project_id)
        if project is None:
            raise NotFound("project", ticket.project_id)

        phase = ticket.phase
        outcome = DispatchOutcome(ticket_id=ticket.id, phase=phase)

        if phase.human_owned:
            outcome.skipped.append(
                Skip(reason=SkipReason.HUMAN_OWNED, detail=f"ticket is {ticket.state.value}")
            )
            logger.info("Skipping dispatch for %s: %s is human-owned", ticket.id, ticket.state.value)
            return outcome, []

        if ticket.blocked_reason:
            outcome.skipped.append(Skip(reason=SkipReason.BLOCKED, detail=ticket.blocked_reason))
            logger.info("Skipping dispatch for %s: blocked (%s)", ticket.id, ticket.blocked_reason)
            return outcome, []

        pause_state = await self.pause.state()
        if pause_state.active:
            detail = "re-authentication required" if pause_state.auth_expired else (
                f"paused until {pause_state.paused_until.isoformat()}"
            )
            outcome.skipped.append(Skip(reason=SkipReason.PAUSED, detail=detail))
            logger.info("Skipping dispatch for %s: %s", ticket.id, detail)
            return outcome, []

        personas = await self.resolve_targets(ticket, project, trigger)
        if not personas:
            outcome.skipped.append(Skip(reason=SkipReason.NO_PERSONA, detail=self._describe(trigger)))
            logger.warning("No persona for ticket %s (%s)", ticket.id, self._describe(trigger))
            return outcome, []

        tasks: list[asyncio.Task[JobResult]] = []
        for persona in personas:
            remaining = self.cooldown.remaining(ticket.id, persona.id, trigger.kind)
            if remaining > 0:
                outcome.skipped.append(
                    Skip(
                        reason=SkipReason.COOLDOWN,
                        persona_id=persona.id,
                        detail=f"{remaining:.0f}s remaining",
                    )
                )
                continue
            launched = await self._launch(ticket, project, persona, trigger)
            if isinstance(launched, Skip):
                outcome.skipped.append(launched)
            else:
                agent, task = launched
                outcome.dispatched.append(agent)
                tasks.append(task)

        if trigger.broadcast and outcome.dispatched and not trigger.suppress_ack:
            names = ", ".join(f"{d.persona_name} ({d.role.value})" for d in outcome.dispatched)
            await self.store.add_comment(
                ticket.id, f"Dispatched to {names}.", kind=CommentKind.STATUS
            )

        return outcome, tasks

    # ── Resolution ───────────────────────────────────────────────────────

    async def resolve_targets(
        self, ticket: Ticket, project: Project, trigger: DispatchTrigger
    ) -> list[Persona]:
        available = await self.store.list_personas(project.id)

        if trigger.broadcast:
            roles = BROADCAST_ROLES[ticket.phase.value]
            return [p for p in available if p.role in roles]

        if trigger.persona_id:
            persona = next((p for p in available if p.id == trigger.persona_id), None)
            return [persona] if persona else []

        if trigger.mention:
            name = trigger.mention.lstrip("@")
            persona = await self.store.find_persona_by_name(name, project.id)
            if persona is None:
                persona = await self.store.find_persona_by_name(name, None)
            return [persona] if persona else []

        if trigger.role:
            persona = next((p for p in available if p.role == trigger.role), None)
            return [persona] if persona else []

        wanted = target_role(ticket.research_approved_at is not None)
        persona = (
            next((p for p in available if p.role == wanted), None)
            or next((p for p in available if p.role == Role.DEVELOPER), None)
            or next((p for p in available if p.role != Role.LEAD), None)
            or (available[0] if available else None)
        )
        return [persona] if persona else []

    @staticmethod
    def _describe(trigger: DispatchTrigger) -> str:
        if trigger.broadcast:
            return "broadcast"
        if trigger.persona_id:
            return f"persona {trigger.persona_id}"
        if trigger.mention:
            return f"mention @{trigger.mention.lstrip('@')}"
        if trigger.role:
            return f"role {trigger.role.value}"
        return "auto"

    # ── Launch ───────────────────────────────────────────────────────────

    async def _launch(
        self, ticket: Ticket, project: Project, persona: Persona, trigger: DispatchTrigger
    ) -> tuple[DispatchedAgent, asyncio.Task[JobResult]] | Skip:
        workspace = await self.workspaces.ensure_workspace(project, ticket.id)
        if not workspace.exists():
            await self.store.add_comment(
                ticket.id,
                f"Could not dispatch {persona.name}: workspace {workspace} is unavailable.",
                kind=CommentKind.STATUS,
            )
            return Skip(
                reason=SkipReason.WORKSPACE_UNAVAILABLE,
                persona_id=persona.id,
                detail=str(workspace),
            )

        phase = ticket.phase
        conversational = trigger.conversational or trigger.message is not None
        job, session = await self._build_job(
            ticket, project, persona, phase, workspace, trigger, conversational
        )

        self.cooldown.mark_dispatched(ticket.id, persona.id)
        await self.store.mark_activity(ticket.id, persona.id)
        await self.store.add_audit(
            AuditEntry(
                ticket_id=ticket.id,
                action="dispatch",
                actor_id=persona.id,
                detail={
                    "phase": phase.value,
                    "role": persona.role.value,
                    "trigger": trigger.kind.value,
                    "session_dir": job.session_dir,
                },
            )
        )
        if not trigger.suppress_ack and not trigger.broadcast:
            await self.store.add_comment(
                ticket.id, ACK_MESSAGE, author_id=persona.id, author_name=persona.name
            )

        self._active[ticket.id] = self._active.get(ticket.id, 0) + 1
        task = asyncio.create_task(self._execute(job, session), name=f"job-{ticket.id}-{persona.id}")
        self._jobs.add(task)
        task.add_done_callback(self._jobs.discard)

        logger.info(
            "Dispatched %s (%s) to ticket %s [%s, %s]",
            persona.name,
            persona.role.value,
            ticket.id,
            phase.value,
            trigger.kind.value,
        )
        agent = DispatchedAgent(
            persona_id=persona.id,
            persona_name=persona.name,
            role=persona.role,
            session_dir=job.session_dir,
        )
        return agent, task

    async def _build_job(
        self,
        ticket: Ticket,
        project: Project,
        persona: Persona,
        phase: Phase,
        workspace: Path,
        trigger: DispatchTrigger,
        conversational: bool,
    ) -> tuple[DispatchJob, SessionContext]:
        docs_cfg = self.config.documents
        documents = []
        for doc_type in DocumentType:
            doc = await self.store.latest_document(ticket.id, doc_type)
            if doc is not None:
                documents.append(doc)
        research_version = await self.store.max_document_version(ticket.id, DocumentType.RESEARCH)
        comments = await self.store.recent_comments(ticket.id, docs_cfg.recent_comments)

        session = SessionContext.create(
            self.config.paths.sessions_dir, ticket.id, phase.value, persona.id
        )
        job = DispatchJob(
            ticket_id=ticket.id,
            persona_id=persona.id,
            project_id=project.id,
            phase=phase,
            role=persona.role,
            tools=list(persona.role.tools),
            timeout=self.config.timeouts.for_phase(phase, conversational),
            session_dir=str(session.directory),
            cwd=str(workspace),
            system_prompt=build_system_prompt(persona, project, ticket, str(workspace)),
            task=build_task(
                ticket,
                persona,
                documents,
                comments,
                research_version=research_version,
                message=trigger.message,
                truncate_at=docs_cfg.doc_truncate_chars,
            ),
            conversational=conversational,
        )
        return job, session

    # ── Execution ────────────────────────────────────────────────────────

    async def _execute(self, job: DispatchJob, session: SessionContext) -> JobResult:
        def _result(status: str, detail: str = "") -> JobResult:
            return JobResult(job.ticket_id, job.persona_id, job.session_dir, status, detail)

        try:
            try:
                outcome = await self.runner.run(job, session)
            except CredentialOrQuotaExhausted as e:
                await self._paused(job, e)
                return _result("paused", e.reason)

            if not outcome.success:
                exhausted = detect_exhaustion(outcome.stderr) or detect_error_banner(outcome.content)
            else:
                exhausted = None
            if exhausted:
                await self._paused(job, exhausted)
                return _result("paused", exhausted.reason)

            for note in outcome.status_messages:
                await self.store.add_comment(job.ticket_id, note, kind=CommentKind.STATUS)

            if outcome.blocked:
                message = await self._blocked(job, outcome)
                return _result("blocked", message)

            if not outcome.success:
                status, message = await self._failed(job, outcome)
                return _result(status, message)

            delivered = await self.deliver(
                CompletionPayload(
                    ticket_id=job.ticket_id,
                    persona_id=job.persona_id,
                    content=outcome.content,
                    phase=job.phase,
                    conversational=job.conversational,
                    session_dir=job.session_dir,
                )
            )
            if getattr(delivered, "paused", False):
                return _result("paused", "output matched a quota/auth signature")
            return _result("completed")
        except Exception as e:
            logger.exception("Dispatch job for ticket %s failed", job.ticket_id)
            session.record(ErrorEvent(message=f"{type(e).__name__}: {e}"))
            await self._safe_clear(job.ticket_id)
            await self._safe_comment(job.ticket_id, f"Agent run failed: {type(e).__name__}: {e}")
            return _result("error", str(e))
        finally:
            remaining = self._active.get(job.ticket_id, 1) - 1
            if remaining > 0:
                self._active[job.ticket_id] = remaining
            else:
                self._active.pop(job.ticket_id, None)

    async def _failed(self, job: DispatchJob, outcome: RunOutcome) -> tuple[str, str]:
        await self.store.clear_activity(job.ticket_id)
        if outcome.timed_out:
            minutes = job.timeout / 60
            message = f"Agent run timed out after {minutes:.0f} min; the ticket will be retried."
            status = "timeout"
        else:
            reason = outcome.detail or f"{outcome.status}, exit {outcome.exit_code}"
            message = f"Agent run failed ({reason}); the ticket will be retried."
            status = "failed"
        await self.store.add_comment(job.ticket_id, message, kind=CommentKind.STATUS)
        logger.warning("Ticket %s: %s", job.ticket_id, message)
        return status, message

    async def _blocked(self, job: DispatchJob, outcome: RunOutcome) -> str:
        # The activity marker stays set; only an operator unblock clears it.
        reason = f"{job.phase.value} conversation reached its context ceiling"
        await self.store.block(job.ticket_id, reason, actor_id=job.persona_id)
        message = (
            f"Agent run blocked: {reason}. Automatic dispatch is stopped for this "
            "ticket until an operator unblocks it."
        )
        await self.store.add_comment(job.ticket_id, message, kind=CommentKind.STATUS)
        return message

    async def _paused(self, job: DispatchJob, error: CredentialOrQuotaExhausted) -> None:
        await self.pause.pause(error, job.ticket_id)
        await self.store.clear_activity(job.ticket_id)
        note = (
            "Agent credentials expired; dispatching is paused until re-authentication."
            if error.auth_expired
            else f"Agent quota exhausted; dispatching is paused ({error.reason})."
        )
        await self.store.add_comment(job.ticket_id, note, kind=CommentKind.STATUS)

    async def _safe_clear(self, ticket_id: str) -> None:
        try:
            await self.store.clear_activity(ticket_id)
        except Exception:
            logger.exception("Failed to clear activity for ticket %s", ticket_id)

    async def _safe_comment(self, ticket_id: str, body: str) -> None:
        try:
            await self.store.add_comment(ticket_id, body, kind=CommentKind.STATUS)
        except Exception:
            logger.exception("Failed to post comment on ticket %s", ticket_id)
