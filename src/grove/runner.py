"""Execution strategies behind a single ``run(job, session)`` call.

CliRunner hands the job to the ProcessSupervisor (external agent CLI).
ConversationRunner drives the in-process ConversationRuntime. Both
report a RunOutcome so the router doesn't care which one ran.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Protocol

from grove.conversation import ConversationRuntime, RunStatus
from grove.errors import ProcessFailure, ProcessTimeout
from grove.models import DispatchJob
from grove.session import SessionContext
from grove.supervisor import ProcessSupervisor


@dataclass
class RunOutcome:
    success: bool
    timed_out: bool
    content: str
    stderr: str = ""
    exit_code: int | None = None
    status: str = ""
    detail: str = ""
    status_messages: list[str] = field(default_factory=list)

    @property
    def blocked(self) -> bool:
        """The run cannot make progress without an operator (context ceiling)."""
        return self.status == RunStatus.BLOCKED.value


class AgentRunner(Protocol):
    async def run(self, job: DispatchJob, session: SessionContext) -> RunOutcome: ...


class CliRunner:
    def __init__(self, supervisor: ProcessSupervisor):
        self.supervisor = supervisor

    async def run(self, job: DispatchJob, session: SessionContext) -> RunOutcome:
        result = await self.supervisor.run(
            session,
            job.system_prompt,
            job.task,
            Path(job.cwd),
            job.timeout,
            job.tools,
        )
        status, detail = "completed", ""
        try:
            result.raise_for_outcome()
        except ProcessTimeout as e:
            status, detail = "timeout", str(e)
        except ProcessFailure as e:
            status, detail = "failed", str(e)
        return RunOutcome(
            success=result.success,
            timed_out=result.timed_out,
            content=result.stdout.strip(),
            stderr=result.stderr,
            exit_code=result.exit_code,
            status=status,
            detail=detail,
        )


class ConversationRunner:
    def __init__(self, runtime: ConversationRuntime):
        self.runtime = runtime

    async def run(self, job: DispatchJob, session: SessionContext) -> RunOutcome:
        result = await self.runtime.run(
            session,
            job.system_prompt,
            job.task,
            Path(job.cwd),
            job.timeout,
            conversation_key=f"{job.ticket_id}-{job.phase.value}",
        )
        return RunOutcome(
            success=result.success,
            timed_out=result.status == RunStatus.TIMEOUT,
            content=result.output.strip(),
            status=result.status.value,
            status_messages=result.status_messages,
        )
