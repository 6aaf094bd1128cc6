"""Record Store — SQLite-backed tickets, documents, personas, comments.

Holds everything the dispatch core reads and writes: projects and their
personas, tickets with per-phase timestamps, versioned documents, the
comment thread, an audit log, and a small key/value settings table used
for the system-wide credit pause.

All writes are last-write-wins. Document writes enforce the regression
guard: a new version shorter than ``regression_ratio`` of the version it
replaces is refused with RegressionRejected and nothing is stored.
"""

from __future__ import annotations

import json
import logging
import uuid
from datetime import datetime, timezone

import aiosqlite

from grove.errors import DocumentCapReached, RegressionRejected
from grove.models import (
    AuditEntry,
    Comment,
    CommentKind,
    Document,
    DocumentType,
    Persona,
    Project,
    Ticket,
    TicketState,
)
from grove.roles import Role

logger = logging.getLogger(__name__)

SCHEMA = """
CREATE TABLE IF NOT EXISTS projects (
    id TEXT PRIMARY KEY,
    name TEXT NOT NULL,
    slug TEXT NOT NULL UNIQUE,
    root TEXT NOT NULL,
    repo_subdir TEXT NOT NULL DEFAULT ''
);

CREATE TABLE IF NOT EXISTS personas (
    id TEXT PRIMARY KEY,
    name TEXT NOT NULL,
    role TEXT NOT NULL,
    project_id TEXT REFERENCES projects(id),
    personality TEXT NOT NULL DEFAULT '',
    skills TEXT NOT NULL DEFAULT '[]'
);

CREATE TABLE IF NOT EXISTS tickets (
    id TEXT PRIMARY KEY,
    project_id TEXT NOT NULL REFERENCES projects(id),
    title TEXT NOT NULL,
    description TEXT NOT NULL DEFAULT '',
    acceptance_criteria TEXT NOT NULL DEFAULT '',
    state TEXT NOT NULL DEFAULT 'backlog',
    priority INTEGER NOT NULL DEFAULT 0,
    research_completed_at TEXT,
    research_approved_at TEXT,
    plan_completed_at TEXT,
    plan_approved_at TEXT,
    last_agent_activity TEXT,
    assignee_id TEXT,
    blocked_reason TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS documents (
    id TEXT PRIMARY KEY,
    ticket_id TEXT NOT NULL REFERENCES tickets(id),
    type TEXT NOT NULL,
    version INTEGER NOT NULL,
    content TEXT NOT NULL,
    author_id TEXT,
    created_at TEXT NOT NULL,
    UNIQUE(ticket_id, type, version)
);

CREATE TABLE IF NOT EXISTS comments (
    id TEXT PRIMARY KEY,
    ticket_id TEXT NOT NULL REFERENCES tickets(id),
    body TEXT NOT NULL,
    author_id TEXT,
    author_name TEXT NOT NULL DEFAULT 'system',
    kind TEXT NOT NULL DEFAULT 'message',
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS audit_log (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    ticket_id TEXT,
    action TEXT NOT NULL,
    actor_id TEXT,
    detail TEXT NOT NULL DEFAULT '{}',
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS settings (
    key TEXT PRIMARY KEY,
    value TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_tickets_state ON tickets(state);
CREATE INDEX IF NOT EXISTS idx_tickets_project ON tickets(project_id);
CREATE INDEX IF NOT EXISTS idx_documents_ticket ON documents(ticket_id, type);
CREATE INDEX IF NOT EXISTS idx_comments_ticket ON comments(ticket_id, created_at);
CREATE INDEX IF NOT EXISTS idx_audit_ticket ON audit_log(ticket_id);
"""

_ORDER = "ORDER BY t.priority DESC, t.created_at ASC"


def _ts(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def _dt(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


class RecordStore:
    """SQLite-backed record store with async access."""

    def __init__(self, db_path: str, regression_ratio: float = 0.30, research_version_cap: int = 3):
        self.db_path = db_path
        self.regression_ratio = regression_ratio
        self.research_version_cap = research_version_cap
        self._db: aiosqlite.Connection | None = None

    async def initialize(self) -> None:
        """Open database and create tables."""
        self._db = await aiosqlite.connect(self.db_path)
        self._db.row_factory = aiosqlite.Row
        await self._db.execute("PRAGMA journal_mode=WAL")
        await self._db.execute("PRAGMA foreign_keys=ON")
        await self._db.executescript(SCHEMA)
        await self._db.commit()
        logger.info("Record store initialized: %s", self.db_path)

    async def close(self) -> None:
        if self._db:
            await self._db.close()
            self._db = None

    @property
    def db(self) -> aiosqlite.Connection:
        if self._db is None:
            raise RuntimeError("Record store not initialized — call initialize() first")
        return self._db

    # ── Projects & Personas ──────────────────────────────────────────────

    async def create_project(self, project: Project) -> Project:
        await self.db.execute(
            "INSERT INTO projects (id, name, slug, root, repo_subdir) VALUES (?, ?, ?, ?, ?)",
            (project.id, project.name, project.slug, project.root, project.repo_subdir),
        )
        await self.db.commit()
        logger.info("Created project: %s (%s)", project.slug, project.root)
        return project

    async def get_project(self, project_id: str) -> Project | None:
        cursor = await self.db.execute("SELECT * FROM projects WHERE id = ?", (project_id,))
        row = await cursor.fetchone()
        return Project(**dict(row)) if row else None

    async def list_projects(self) -> list[Project]:
        cursor = await self.db.execute("SELECT * FROM projects ORDER BY name")
        return [Project(**dict(row)) for row in await cursor.fetchall()]

    async def create_persona(self, persona: Persona) -> Persona:
        await self.db.execute(
            """INSERT INTO personas (id, name, role, project_id, personality, skills)
               VALUES (?, ?, ?, ?, ?, ?)""",
            (
                persona.id,
                persona.name,
                persona.role.value,
                persona.project_id,
                persona.personality,
                json.dumps(persona.skills),
            ),
        )
        await self.db.commit()
        return persona

    async def get_persona(self, persona_id: str) -> Persona | None:
        cursor = await self.db.execute("SELECT * FROM personas WHERE id = ?", (persona_id,))
        row = await cursor.fetchone()
        return self._row_to_persona(row) if row else None

    async def list_personas(self, project_id: str | None, include_global: bool = True) -> list[Persona]:
        """Personas scoped to a project, followed by global ones."""
        if include_global:
            cursor = await self.db.execute(
                "SELECT * FROM personas WHERE project_id = ? OR project_id IS NULL "
                "ORDER BY project_id IS NULL, name",
                (project_id,),
            )
        else:
            cursor = await self.db.execute(
                "SELECT * FROM personas WHERE project_id IS ? ORDER BY name", (project_id,)
            )
        return [self._row_to_persona(row) for row in await cursor.fetchall()]

    async def find_persona_by_name(self, name: str, project_id: str | None) -> Persona | None:
        """Case-insensitive name lookup within one scope (None = global)."""
        cursor = await self.db.execute(
            "SELECT * FROM personas WHERE lower(name) = lower(?) AND project_id IS ? LIMIT 1",
            (name, project_id),
        )
        row = await cursor.fetchone()
        return self._row_to_persona(row) if row else None

    # ── Tickets ──────────────────────────────────────────────────────────

    async def create_ticket(self, ticket: Ticket) -> Ticket:
        now = datetime.now(timezone.utc)
        ticket.created_at = ticket.created_at or now
        ticket.updated_at = now
        await self.db.execute(
            """INSERT INTO tickets
               (id, project_id, title, description, acceptance_criteria, state, priority,
                research_completed_at, research_approved_at, plan_completed_at,
                plan_approved_at, last_agent_activity, assignee_id, blocked_reason,
                created_at, updated_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            (
                ticket.id,
                ticket.project_id,
                ticket.title,
                ticket.description,
                ticket.acceptance_criteria,
                ticket.state.value,
                ticket.priority,
                _ts(ticket.research_completed_at),
                _ts(ticket.research_approved_at),
                _ts(ticket.plan_completed_at),
                _ts(ticket.plan_approved_at),
                _ts(ticket.last_agent_activity),
                ticket.assignee_id,
                ticket.blocked_reason,
                _ts(ticket.created_at),
                _ts(ticket.updated_at),
            ),
        )
        await self.db.commit()
        logger.info("Created ticket: %s (%s)", ticket.id, ticket.title)
        return ticket

    async def get_ticket(self, ticket_id: str) -> Ticket | None:
        cursor = await self.db.execute("SELECT * FROM tickets WHERE id = ?", (ticket_id,))
        row = await cursor.fetchone()
        return self._row_to_ticket(row) if row else None

    async def list_tickets(
        self, project_id: str | None = None, state: TicketState | None = None
    ) -> list[Ticket]:
        clauses, params = [], []
        if project_id is not None:
            clauses.append("t.project_id = ?")
            params.append(project_id)
        if state is not None:
            clauses.append("t.state = ?")
            params.append(state.value)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        cursor = await self.db.execute(f"SELECT t.* FROM tickets t {where} {_ORDER}", params)
        return [self._row_to_ticket(row) for row in await cursor.fetchall()]

    async def _update_ticket(self, ticket_id: str, **fields) -> None:
        fields["updated_at"] = datetime.now(timezone.utc).isoformat()
        assignments = ", ".join(f"{name} = ?" for name in fields)
        await self.db.execute(
            f"UPDATE tickets SET {assignments} WHERE id = ?",
            (*fields.values(), ticket_id),
        )
        await self.db.commit()

    async def mark_activity(self, ticket_id: str, assignee_id: str | None, at: datetime | None = None) -> None:
        """Record that an agent is working the ticket right now."""
        at = at or datetime.now(timezone.utc)
        await self._update_ticket(ticket_id, last_agent_activity=at.isoformat(), assignee_id=assignee_id)

    async def clear_activity(self, ticket_id: str) -> None:
        """Forget the in-progress marker so a later sweep retries the ticket."""
        await self._update_ticket(ticket_id, last_agent_activity=None, assignee_id=None)

    async def block(self, ticket_id: str, reason: str, actor_id: str | None = None) -> None:
        """Keep the ticket out of every automatic pass until ``unblock``."""
        await self._update_ticket(ticket_id, blocked_reason=reason)
        await self.add_audit(
            AuditEntry(ticket_id=ticket_id, action="blocked", actor_id=actor_id, detail={"reason": reason})
        )
        logger.warning("Ticket %s blocked: %s", ticket_id, reason)

    async def unblock(self, ticket_id: str, actor_id: str | None = None) -> None:
        await self._update_ticket(ticket_id, blocked_reason=None, last_agent_activity=None, assignee_id=None)
        await self.add_audit(AuditEntry(ticket_id=ticket_id, action="unblocked", actor_id=actor_id))
        logger.info("Ticket %s unblocked", ticket_id)

    async def set_state(self, ticket_id: str, state: TicketState, actor_id: str | None = None) -> None:
        ticket = await self.get_ticket(ticket_id)
        previous = ticket.state.value if ticket else None
        await self._update_ticket(ticket_id, state=state.value)
        await self.add_audit(
            AuditEntry(
                ticket_id=ticket_id,
                action="state_changed",
                actor_id=actor_id,
                detail={"from": previous, "to": state.value},
            )
        )
        logger.info("Ticket %s: %s → %s", ticket_id, previous, state.value)

    async def approve_research(self, ticket_id: str, actor_id: str | None = None) -> None:
        await self._update_ticket(ticket_id, research_approved_at=datetime.now(timezone.utc).isoformat())
        await self.add_audit(
            AuditEntry(ticket_id=ticket_id, action="approved", actor_id=actor_id, detail={"phase": "research"})
        )
        ticket = await self.get_ticket(ticket_id)
        if ticket and ticket.state == TicketState.BACKLOG:
            await self.set_state(ticket_id, TicketState.PLANNING, actor_id)

    async def approve_plan(self, ticket_id: str, actor_id: str | None = None) -> None:
        await self._update_ticket(ticket_id, plan_approved_at=datetime.now(timezone.utc).isoformat())
        await self.add_audit(
            AuditEntry(ticket_id=ticket_id, action="approved", actor_id=actor_id, detail={"phase": "planning"})
        )
        await self.set_state(ticket_id, TicketState.BUILDING, actor_id)

    # ── Phase selection ──────────────────────────────────────────────────

    async def research_candidates(self, limit: int) -> list[tuple[Ticket, int]]:
        """Backlog tickets with fewer research versions than the cap.

        Returns (ticket, current max research version) pairs.
        """
        cursor = await self.db.execute(
            f"""SELECT t.*, COALESCE(MAX(d.version), 0) AS max_version
                FROM tickets t
                LEFT JOIN documents d ON d.ticket_id = t.id AND d.type = 'research'
                WHERE t.state = 'backlog' AND t.research_completed_at IS NULL
                  AND t.blocked_reason IS NULL
                GROUP BY t.id
                HAVING COALESCE(MAX(d.version), 0) < ?
                {_ORDER}
                LIMIT ?""",
            (self.research_version_cap, limit),
        )
        return [(self._row_to_ticket(row), row["max_version"]) for row in await cursor.fetchall()]

    async def planning_candidates(self, limit: int) -> list[Ticket]:
        """Tickets with approved research and no plan yet."""
        cursor = await self.db.execute(
            f"""SELECT t.* FROM tickets t
                WHERE t.research_approved_at IS NOT NULL
                  AND t.plan_completed_at IS NULL
                  AND t.plan_approved_at IS NULL
                  AND t.state NOT IN ('review', 'shipped')
                  AND t.blocked_reason IS NULL
                  AND NOT EXISTS (
                      SELECT 1 FROM documents d
                      WHERE d.ticket_id = t.id AND d.type = 'implementation_plan'
                  )
                {_ORDER}
                LIMIT ?""",
            (limit,),
        )
        return [self._row_to_ticket(row) for row in await cursor.fetchall()]

    async def implementation_candidates(self, quiet_before: datetime, limit: int) -> list[Ticket]:
        """Building tickets with an approved plan and no recent agent activity."""
        cursor = await self.db.execute(
            f"""SELECT t.* FROM tickets t
                WHERE t.plan_approved_at IS NOT NULL AND t.state = 'building'
                  AND t.blocked_reason IS NULL
                {_ORDER}""",
        )
        tickets = [self._row_to_ticket(row) for row in await cursor.fetchall()]
        idle = [
            t
            for t in tickets
            if t.last_agent_activity is None or t.last_agent_activity < quiet_before
        ]
        return idle[:limit]

    # ── Documents ────────────────────────────────────────────────────────

    async def max_document_version(self, ticket_id: str, doc_type: DocumentType) -> int:
        cursor = await self.db.execute(
            "SELECT COALESCE(MAX(version), 0) FROM documents WHERE ticket_id = ? AND type = ?",
            (ticket_id, doc_type.value),
        )
        row = await cursor.fetchone()
        return row[0]

    async def latest_document(self, ticket_id: str, doc_type: DocumentType) -> Document | None:
        cursor = await self.db.execute(
            "SELECT * FROM documents WHERE ticket_id = ? AND type = ? ORDER BY version DESC LIMIT 1",
            (ticket_id, doc_type.value),
        )
        row = await cursor.fetchone()
        return self._row_to_document(row) if row else None

    async def list_documents(self, ticket_id: str, doc_type: DocumentType | None = None) -> list[Document]:
        if doc_type is None:
            cursor = await self.db.execute(
                "SELECT * FROM documents WHERE ticket_id = ? ORDER BY type, version", (ticket_id,)
            )
        else:
            cursor = await self.db.execute(
                "SELECT * FROM documents WHERE ticket_id = ? AND type = ? ORDER BY version",
                (ticket_id, doc_type.value),
            )
        return [self._row_to_document(row) for row in await cursor.fetchall()]

    async def get_document(self, document_id: str) -> Document | None:
        cursor = await self.db.execute("SELECT * FROM documents WHERE id = ?", (document_id,))
        row = await cursor.fetchone()
        return self._row_to_document(row) if row else None

    def _check_regression(self, previous: Document | None, content: str) -> None:
        if previous is None:
            return
        if len(content) < len(previous.content) * self.regression_ratio:
            raise RegressionRejected(len(previous.content), len(content), self.regression_ratio)

    async def add_document(
        self,
        ticket_id: str,
        doc_type: DocumentType,
        content: str,
        author_id: str | None = None,
    ) -> Document:
        """Append a new version. Used for research, which keeps every version.

        Reaching the research version cap stamps research_completed_at.
        """
        previous = await self.latest_document(ticket_id, doc_type)
        version = (previous.version if previous else 0) + 1
        if doc_type == DocumentType.RESEARCH and version > self.research_version_cap:
            raise DocumentCapReached(ticket_id, self.research_version_cap)
        self._check_regression(previous, content)

        doc = Document(
            id=uuid.uuid4().hex,
            ticket_id=ticket_id,
            type=doc_type,
            version=version,
            content=content,
            author_id=author_id,
        )
        await self.db.execute(
            """INSERT INTO documents (id, ticket_id, type, version, content, author_id, created_at)
               VALUES (?, ?, ?, ?, ?, ?, ?)""",
            (doc.id, ticket_id, doc_type.value, version, content, author_id, _ts(doc.created_at)),
        )
        await self.db.commit()
        await self._after_document_write(doc)
        return doc

    async def upsert_document(
        self,
        ticket_id: str,
        doc_type: DocumentType,
        content: str,
        author_id: str | None = None,
    ) -> Document:
        """Single-slot write for plans and designs: replace content, bump version."""
        previous = await self.latest_document(ticket_id, doc_type)
        self._check_regression(previous, content)

        now = datetime.now(timezone.utc)
        if previous is None:
            doc = Document(
                id=uuid.uuid4().hex,
                ticket_id=ticket_id,
                type=doc_type,
                version=1,
                content=content,
                author_id=author_id,
                created_at=now,
            )
            await self.db.execute(
                """INSERT INTO documents (id, ticket_id, type, version, content, author_id, created_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?)""",
                (doc.id, ticket_id, doc_type.value, 1, content, author_id, now.isoformat()),
            )
        else:
            doc = previous.model_copy(
                update={
                    "version": previous.version + 1,
                    "content": content,
                    "author_id": author_id,
                    "created_at": now,
                }
            )
            await self.db.execute(
                "UPDATE documents SET version = ?, content = ?, author_id = ?, created_at = ? WHERE id = ?",
                (doc.version, content, author_id, now.isoformat(), doc.id),
            )
        await self.db.commit()
        await self._after_document_write(doc)
        return doc

    async def _after_document_write(self, doc: Document) -> None:
        now = datetime.now(timezone.utc).isoformat()
        if doc.type == DocumentType.RESEARCH and doc.version >= self.research_version_cap:
            await self._update_ticket(doc.ticket_id, research_completed_at=now)
        elif doc.type == DocumentType.IMPLEMENTATION_PLAN:
            ticket = await self.get_ticket(doc.ticket_id)
            if ticket and ticket.plan_completed_at is None:
                await self._update_ticket(doc.ticket_id, plan_completed_at=now)
        await self.add_audit(
            AuditEntry(
                ticket_id=doc.ticket_id,
                action="document_created",
                actor_id=doc.author_id,
                detail={"type": doc.type.value, "version": doc.version, "document_id": doc.id},
            )
        )
        logger.info(
            "Stored %s v%d for ticket %s (%d chars)",
            doc.type.value,
            doc.version,
            doc.ticket_id,
            len(doc.content),
        )

    # ── Comments ─────────────────────────────────────────────────────────

    async def add_comment(
        self,
        ticket_id: str,
        body: str,
        author_id: str | None = None,
        author_name: str = "system",
        kind: CommentKind = CommentKind.MESSAGE,
    ) -> Comment:
        comment = Comment(
            id=uuid.uuid4().hex,
            ticket_id=ticket_id,
            body=body,
            author_id=author_id,
            author_name=author_name,
            kind=kind,
        )
        await self.db.execute(
            """INSERT INTO comments (id, ticket_id, body, author_id, author_name, kind, created_at)
               VALUES (?, ?, ?, ?, ?, ?, ?)""",
            (
                comment.id,
                ticket_id,
                body,
                author_id,
                author_name,
                kind.value,
                _ts(comment.created_at),
            ),
        )
        await self.db.commit()
        return comment

    async def recent_comments(self, ticket_id: str, limit: int = 10) -> list[Comment]:
        """Last ``limit`` comments, oldest first."""
        cursor = await self.db.execute(
            "SELECT * FROM comments WHERE ticket_id = ? ORDER BY created_at DESC, rowid DESC LIMIT ?",
            (ticket_id, limit),
        )
        rows = await cursor.fetchall()
        return [
            Comment(
                id=row["id"],
                ticket_id=row["ticket_id"],
                body=row["body"],
                author_id=row["author_id"],
                author_name=row["author_name"],
                kind=CommentKind(row["kind"]),
                created_at=datetime.fromisoformat(row["created_at"]),
            )
            for row in reversed(rows)
        ]

    # ── Audit ────────────────────────────────────────────────────────────

    async def add_audit(self, entry: AuditEntry) -> None:
        await self.db.execute(
            "INSERT INTO audit_log (ticket_id, action, actor_id, detail, created_at) VALUES (?, ?, ?, ?, ?)",
            (
                entry.ticket_id,
                entry.action,
                entry.actor_id,
                json.dumps(entry.detail),
                entry.created_at.isoformat(),
            ),
        )
        await self.db.commit()

    async def list_audit(self, ticket_id: str | None = None, action: str | None = None) -> list[AuditEntry]:
        clauses, params = [], []
        if ticket_id is not None:
            clauses.append("ticket_id = ?")
            params.append(ticket_id)
        if action is not None:
            clauses.append("action = ?")
            params.append(action)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        cursor = await self.db.execute(f"SELECT * FROM audit_log {where} ORDER BY id", params)
        return [
            AuditEntry(
                id=row["id"],
                ticket_id=row["ticket_id"],
                action=row["action"],
                actor_id=row["actor_id"],
                detail=json.loads(row["detail"]),
                created_at=datetime.fromisoformat(row["created_at"]),
            )
            for row in await cursor.fetchall()
        ]

    # ── Settings ─────────────────────────────────────────────────────────

    async def get_setting(self, key: str) -> str | None:
        cursor = await self.db.execute("SELECT value FROM settings WHERE key = ?", (key,))
        row = await cursor.fetchone()
        return row["value"] if row else None

    async def set_setting(self, key: str, value: str) -> None:
        await self.db.execute(
            """INSERT INTO settings (key, value, updated_at) VALUES (?, ?, ?)
               ON CONFLICT(key) DO UPDATE SET value = excluded.value, updated_at = excluded.updated_at""",
            (key, value, datetime.now(timezone.utc).isoformat()),
        )
        await self.db.commit()

    async def delete_setting(self, key: str) -> None:
        await self.db.execute("DELETE FROM settings WHERE key = ?", (key,))
        await self.db.commit()

    # ── Row conversion ───────────────────────────────────────────────────

    @staticmethod
    def _row_to_persona(row: aiosqlite.Row) -> Persona:
        return Persona(
            id=row["id"],
            name=row["name"],
            role=Role(row["role"]),
            project_id=row["project_id"],
            personality=row["personality"],
            skills=json.loads(row["skills"]),
        )

    @staticmethod
    def _row_to_ticket(row: aiosqlite.Row) -> Ticket:
        return Ticket(
            id=row["id"],
            project_id=row["project_id"],
            title=row["title"],
            description=row["description"],
            acceptance_criteria=row["acceptance_criteria"],
            state=TicketState(row["state"]),
            priority=row["priority"],
            research_completed_at=_dt(row["research_completed_at"]),
            research_approved_at=_dt(row["research_approved_at"]),
            plan_completed_at=_dt(row["plan_completed_at"]),
            plan_approved_at=_dt(row["plan_approved_at"]),
            last_agent_activity=_dt(row["last_agent_activity"]),
            assignee_id=row["assignee_id"],
            blocked_reason=row["blocked_reason"],
            created_at=datetime.fromisoformat(row["created_at"]),
            updated_at=datetime.fromisoformat(row["updated_at"]),
        )

    @staticmethod
    def _row_to_document(row: aiosqlite.Row) -> Document:
        return Document(
            id=row["id"],
            ticket_id=row["ticket_id"],
            type=DocumentType(row["type"]),
            version=row["version"],
            content=row["content"],
            author_id=row["author_id"],
            created_at=datetime.fromisoformat(row["created_at"]),
        )
