"""Session records — on-disk evidence of every dispatch attempt.

Provides:
- SessionContext: the per-dispatch value threaded through the runners,
  owning one session directory (task.md, system-prompt.txt, output.md,
  stderr.log, session.jsonl)
- SessionEvent: a typed union of everything that can happen in a run
- SessionLog: the append-only session.jsonl writer/reader
- ConversationStore: per-ticket message history used to resume an
  in-process conversation after a crash

Session directories are created at dispatch time and never rewritten by
other components. The event log is only ever appended to.
"""

from __future__ import annotations

import json
import logging
import os
import re
from datetime import datetime, timezone
from pathlib import Path
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, Field, TypeAdapter, ValidationError

logger = logging.getLogger(__name__)

TASK_FILE = "task.md"
SYSTEM_PROMPT_FILE = "system-prompt.txt"
OUTPUT_FILE = "output.md"
STDERR_FILE = "stderr.log"
EVENTS_FILE = "session.jsonl"


# ── Events ───────────────────────────────────────────────────────────────────


class _Event(BaseModel):
    ts: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class SpawnEvent(_Event):
    event: Literal["spawn"] = "spawn"
    command: list[str]
    cwd: str
    timeout: float
    tools: list[str] = Field(default_factory=list)
    pid: int | None = None


class ResponseEvent(_Event):
    event: Literal["response"] = "response"
    turn: int
    stop_reason: str | None = None
    input_tokens: int = 0
    output_tokens: int = 0
    text_length: int = 0


class ToolCallEvent(_Event):
    event: Literal["tool_call"] = "tool_call"
    turn: int
    tool: str
    tool_use_id: str
    input: dict[str, Any] = Field(default_factory=dict)


class ToolResultEvent(_Event):
    event: Literal["tool_result"] = "tool_result"
    turn: int
    tool: str
    tool_use_id: str
    output_length: int
    is_error: bool = False
    truncated: bool = False


class ContextWarningEvent(_Event):
    event: Literal["context_warning"] = "context_warning"
    input_tokens: int
    threshold: int


class ContextLimitEvent(_Event):
    event: Literal["context_limit"] = "context_limit"
    input_tokens: int
    limit: int


class TimeoutEvent(_Event):
    event: Literal["timeout"] = "timeout"
    elapsed: float
    exit_code: int | None = None
    output_length: int = 0
    stderr_length: int = 0


class CompleteEvent(_Event):
    event: Literal["complete"] = "complete"
    status: str
    exit_code: int | None = None
    output_length: int = 0
    stderr_length: int = 0
    tokens_used: int = 0


class ErrorEvent(_Event):
    event: Literal["error"] = "error"
    message: str


SessionEvent = Annotated[
    Union[
        SpawnEvent,
        ResponseEvent,
        ToolCallEvent,
        ToolResultEvent,
        ContextWarningEvent,
        ContextLimitEvent,
        TimeoutEvent,
        CompleteEvent,
        ErrorEvent,
    ],
    Field(discriminator="event"),
]

_event_adapter: TypeAdapter[SessionEvent] = TypeAdapter(SessionEvent)


def parse_event(line: str) -> SessionEvent:
    return _event_adapter.validate_json(line)


class SessionLog:
    """Append-only JSON-lines event log."""

    def __init__(self, path: Path):
        self.path = path

    def append(self, event: SessionEvent) -> None:
        with open(self.path, "a", encoding="utf-8") as f:
            f.write(event.model_dump_json() + "\n")

    def read(self) -> list[SessionEvent]:
        """Parse every well-formed event. Malformed lines are skipped."""
        if not self.path.exists():
            return []
        events: list[SessionEvent] = []
        for lineno, line in enumerate(self.path.read_text(encoding="utf-8").splitlines(), 1):
            if not line.strip():
                continue
            try:
                events.append(parse_event(line))
            except ValidationError:
                logger.warning("Skipping malformed event at %s:%d", self.path, lineno)
        return events

    def last_terminal(self) -> TimeoutEvent | CompleteEvent | ErrorEvent | None:
        """Most recent terminal event, used for crash diagnosis."""
        for event in reversed(self.read()):
            if isinstance(event, (TimeoutEvent, CompleteEvent, ErrorEvent)):
                return event
        return None


# ── Session context ──────────────────────────────────────────────────────────


class SessionContext:
    """One dispatch attempt's directory and event log.

    Passed explicitly to every runner call; nothing about the current
    session lives in module state.
    """

    def __init__(
        self,
        directory: Path,
        ticket_id: str,
        phase: str,
        persona_id: str | None = None,
    ):
        self.directory = directory
        self.ticket_id = ticket_id
        self.phase = phase
        self.persona_id = persona_id
        self.log = SessionLog(directory / EVENTS_FILE)

    @classmethod
    def create(
        cls,
        sessions_dir: Path,
        ticket_id: str,
        phase: str,
        persona_id: str | None = None,
        now: datetime | None = None,
    ) -> SessionContext:
        """Create a fresh directory keyed by (ticket, phase, timestamp[, persona])."""
        now = now or datetime.now(timezone.utc)
        name = f"{phase}-{now.strftime('%Y%m%dT%H%M%S%f')}"
        if persona_id:
            name = f"{name}-{_sanitize(persona_id)}"
        directory = sessions_dir / _sanitize(ticket_id) / name
        directory.mkdir(parents=True, exist_ok=False)
        return cls(directory, ticket_id, phase, persona_id)

    @property
    def task_path(self) -> Path:
        return self.directory / TASK_FILE

    @property
    def system_prompt_path(self) -> Path:
        return self.directory / SYSTEM_PROMPT_FILE

    @property
    def output_path(self) -> Path:
        return self.directory / OUTPUT_FILE

    @property
    def stderr_path(self) -> Path:
        return self.directory / STDERR_FILE

    def write_inputs(self, system_prompt: str, task: str) -> None:
        """Persist the prompt and task before anything runs."""
        self.system_prompt_path.write_text(system_prompt, encoding="utf-8")
        self.task_path.write_text(task, encoding="utf-8")

    def record(self, event: SessionEvent) -> None:
        self.log.append(event)

    def __repr__(self) -> str:
        return f"SessionContext({self.directory})"


# ── Conversation persistence ─────────────────────────────────────────────────


def _sanitize(key: str) -> str:
    return re.sub(r"[^a-z0-9_-]", "_", key.lower())


class ConversationStore:
    """Per-key message history in JSON-lines files.

    Line 1 is a header ``{"type": "session", "version": 1, ...}``; every
    following ``{"type": "message"}`` line is one API message. Other line
    types and unparseable lines are ignored on load.
    """

    VERSION = 1

    def __init__(self, directory: Path):
        self.directory = directory

    def path_for(self, key: str) -> Path:
        return self.directory / f"{_sanitize(key)}.jsonl"

    def _header(self, key: str) -> str:
        return json.dumps(
            {
                "type": "session",
                "version": self.VERSION,
                "key": key,
                "created_at": datetime.now(timezone.utc).isoformat(),
            }
        )

    def exists(self, key: str) -> bool:
        return self.path_for(key).exists()

    def load(self, key: str) -> list[dict[str, Any]]:
        path = self.path_for(key)
        if not path.exists():
            return []
        messages: list[dict[str, Any]] = []
        for line in path.read_text(encoding="utf-8").splitlines():
            if not line.strip():
                continue
            try:
                entry = json.loads(line)
            except json.JSONDecodeError:
                logger.warning("Skipping malformed conversation line in %s", path)
                continue
            if isinstance(entry, dict) and entry.get("type") == "message":
                messages.append({"role": entry["role"], "content": entry["content"]})
        return messages

    def save(self, key: str, messages: list[dict[str, Any]]) -> None:
        """Overwrite the history for ``key`` atomically."""
        self.directory.mkdir(parents=True, exist_ok=True)
        path = self.path_for(key)
        tmp = path.with_suffix(".jsonl.tmp")
        with open(tmp, "w", encoding="utf-8") as f:
            f.write(self._header(key) + "\n")
            for message in messages:
                f.write(json.dumps({"type": "message", **message}) + "\n")
        os.replace(tmp, path)

    def append(self, key: str, message: dict[str, Any]) -> None:
        self.directory.mkdir(parents=True, exist_ok=True)
        path = self.path_for(key)
        with open(path, "a", encoding="utf-8") as f:
            if f.tell() == 0:
                f.write(self._header(key) + "\n")
            f.write(json.dumps({"type": "message", **message}) + "\n")

    def clear(self, key: str) -> None:
        self.path_for(key).unlink(missing_ok=True)
