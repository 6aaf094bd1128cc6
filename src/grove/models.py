"""Core data models for Grove."""

from __future__ import annotations

import enum
from datetime import datetime, timezone
from pathlib import Path

from pydantic import BaseModel, Field

from grove.roles import Role


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ── Ticket lifecycle ─────────────────────────────────────────────────────────


class TicketState(str, enum.Enum):
    """Lifecycle state of a ticket, as shown on the board."""

    BACKLOG = "backlog"
    PLANNING = "planning"
    BUILDING = "building"
    REVIEW = "review"
    SHIPPED = "shipped"


class Phase(str, enum.Enum):
    """Which kind of work a ticket needs next."""

    RESEARCH = "research"
    PLANNING = "planning"
    IMPLEMENTATION = "implementation"
    REVIEW = "review"

    @property
    def human_owned(self) -> bool:
        return self is Phase.REVIEW


class DocumentType(str, enum.Enum):
    RESEARCH = "research"
    IMPLEMENTATION_PLAN = "implementation_plan"
    DESIGN = "design"


# ── Records ──────────────────────────────────────────────────────────────────


class Project(BaseModel):
    """A named unit owning tickets and personas."""

    id: str
    name: str
    slug: str
    root: str = Field(description="Filesystem root of the project")
    repo_subdir: str = Field(default="", description="Main checkout, relative to root")

    @property
    def repo_path(self) -> Path:
        root = Path(self.root)
        return root / self.repo_subdir if self.repo_subdir else root


class Persona(BaseModel):
    """A worker identity bound to a role. Global when project_id is None."""

    id: str
    name: str
    role: Role
    project_id: str | None = None
    personality: str = ""
    skills: list[str] = Field(default_factory=list)


class Ticket(BaseModel):
    id: str
    project_id: str
    title: str
    description: str = ""
    acceptance_criteria: str = ""
    state: TicketState = TicketState.BACKLOG
    priority: int = Field(default=0, description="Higher runs first")
    research_completed_at: datetime | None = None
    research_approved_at: datetime | None = None
    plan_completed_at: datetime | None = None
    plan_approved_at: datetime | None = None
    last_agent_activity: datetime | None = None
    assignee_id: str | None = None
    blocked_reason: str | None = Field(
        default=None, description="Set when automatic dispatch needs an operator first"
    )
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @property
    def phase(self) -> Phase:
        """Derive the current phase from state and approvals."""
        if self.state in (TicketState.REVIEW, TicketState.SHIPPED):
            return Phase.REVIEW
        if self.research_approved_at is None:
            return Phase.RESEARCH
        if self.plan_approved_at is None:
            return Phase.PLANNING
        return Phase.IMPLEMENTATION


class Document(BaseModel):
    id: str
    ticket_id: str
    type: DocumentType
    version: int
    content: str
    author_id: str | None = None
    created_at: datetime = Field(default_factory=utcnow)


class CommentKind(str, enum.Enum):
    MESSAGE = "message"
    QUESTION = "question"
    STATUS = "status"
    COMPLETION = "completion"


class Comment(BaseModel):
    id: str
    ticket_id: str
    body: str
    author_id: str | None = Field(default=None, description="Persona id; None for humans/system")
    author_name: str = "system"
    kind: CommentKind = CommentKind.MESSAGE
    created_at: datetime = Field(default_factory=utcnow)


class AuditEntry(BaseModel):
    id: int | None = None
    ticket_id: str | None
    action: str
    actor_id: str | None = None
    detail: dict = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utcnow)


# ── Dispatch ─────────────────────────────────────────────────────────────────


class MentionKind(str, enum.Enum):
    """How a dispatch was triggered; selects the cooldown window."""

    HUMAN = "human"
    AUTO = "auto"
    URGENT = "urgent"


class DispatchTrigger(BaseModel):
    """A request to put an agent on a ticket.

    Resolution precedence: persona_id > mention > role > phase auto-route.
    """

    kind: MentionKind = MentionKind.HUMAN
    persona_id: str | None = None
    mention: str | None = Field(default=None, description="@name from a comment")
    role: Role | None = None
    message: str | None = Field(default=None, description="Comment the agent should answer")
    broadcast: bool = False
    conversational: bool = False
    suppress_ack: bool = False


class SkipReason(str, enum.Enum):
    COOLDOWN = "cooldown"
    HUMAN_OWNED = "human_owned"
    PAUSED = "paused"
    NO_PERSONA = "no_persona"
    AGENT_ACTIVE = "agent_active"
    WORKSPACE_UNAVAILABLE = "workspace_unavailable"
    BLOCKED = "blocked"


class DispatchJob(BaseModel):
    """One agent run, created by the router and consumed by a runner."""

    ticket_id: str
    persona_id: str
    project_id: str
    phase: Phase
    role: Role
    tools: list[str]
    timeout: float
    session_dir: str
    cwd: str
    system_prompt: str
    task: str
    conversational: bool = False


class DispatchedAgent(BaseModel):
    persona_id: str
    persona_name: str
    role: Role
    session_dir: str


class Skip(BaseModel):
    reason: SkipReason
    persona_id: str | None = None
    detail: str = ""


class DispatchOutcome(BaseModel):
    """What the router did with a trigger. Never empty."""

    ticket_id: str
    phase: Phase
    dispatched: list[DispatchedAgent] = Field(default_factory=list)
    skipped: list[Skip] = Field(default_factory=list)

    @property
    def ok(self) -> bool:
        return bool(self.dispatched)


class CompletionPayload(BaseModel):
    """Result of one agent run, delivered to the completion handler."""

    ticket_id: str
    persona_id: str
    content: str
    phase: Phase
    conversational: bool = False
    document_id: str | None = None
    session_dir: str | None = None
