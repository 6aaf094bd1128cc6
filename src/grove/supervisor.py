"""Process Supervisor — runs one external agent CLI per dispatch.

The supervisor owns the whole lifecycle of a single agent process:

1. Writes system-prompt.txt and task.md into the session directory
   before spawning, so a crash still leaves the inputs on disk.
2. Spawns the CLI with a role-gated tool allow-list, session persistence
   disabled (Grove keeps its own records), and stdin fed from task.md.
   stdout/stderr stream straight into output.md/stderr.log.
3. Enforces a wall-clock deadline: SIGTERM to the process group on
   expiry, then SIGKILL after a short grace window.
4. Appends spawn and terminal events to session.jsonl.

A run counts as successful only when it did not time out, exited 0, and
produced more than ``min_output_chars`` of output.
"""

from __future__ import annotations

import asyncio
import logging
import os
import signal
import time
from dataclasses import dataclass
from pathlib import Path

from grove.errors import ProcessFailure, ProcessTimeout
from grove.session import CompleteEvent, ErrorEvent, SessionContext, SpawnEvent, TimeoutEvent

logger = logging.getLogger(__name__)

# Secrets the agent's shell tool must never see. The CLI authenticates
# through its own login, not through these.
_SECRET_ENV_VARS: frozenset[str] = frozenset(
    {
        "ANTHROPIC_API_KEY",
        "GROVE_API_TOKEN",
        "GITHUB_TOKEN",
        "GH_TOKEN",
    }
)


def build_agent_env(extra_blocked: set[str] | None = None) -> dict[str, str]:
    """Copy of os.environ for agent subprocesses, minus known secrets.

    Auto-update is disabled so a CLI upgrade can't stall a run mid-sweep.
    """
    blocked = _SECRET_ENV_VARS | (extra_blocked or set())
    env = {k: v for k, v in os.environ.items() if k not in blocked}
    env["DISABLE_AUTOUPDATER"] = "1"
    return env


@dataclass
class ProcessResult:
    stdout: str
    stderr: str
    exit_code: int | None
    timed_out: bool
    elapsed: float
    success: bool
    session_dir: str

    def raise_for_outcome(self) -> None:
        """Raise ProcessTimeout/ProcessFailure unless the run succeeded."""
        if self.timed_out:
            raise ProcessTimeout(self.session_dir, self.elapsed)
        if not self.success:
            if self.exit_code != 0:
                message = f"Agent exited with code {self.exit_code}"
            else:
                message = f"Agent output too short ({len(self.stdout.strip())} chars)"
            raise ProcessFailure(message, exit_code=self.exit_code, stderr=self.stderr)


def _read_tail(path: Path, cap: int) -> str:
    """Read at most the last ``cap`` bytes of a file."""
    if not path.exists():
        return ""
    size = path.stat().st_size
    with open(path, "rb") as f:
        if size > cap:
            f.seek(size - cap)
        data = f.read()
    return data.decode("utf-8", errors="replace")


class ProcessSupervisor:
    """Spawns and supervises agent CLI processes."""

    def __init__(
        self,
        cli_binary: str = "claude",
        model: str = "sonnet",
        min_output_chars: int = 100,
        output_cap_bytes: int = 1_000_000,
        kill_grace: float = 5.0,
    ):
        self.cli_binary = cli_binary
        self.model = model
        self.min_output_chars = min_output_chars
        self.output_cap_bytes = output_cap_bytes
        self.kill_grace = kill_grace

    def build_command(self, system_prompt: str, tools: list[str]) -> list[str]:
        return [
            self.cli_binary,
            "-p",
            "--model",
            self.model,
            "--allowedTools",
            ",".join(tools),
            "--output-format",
            "text",
            "--no-session-persistence",
            "--append-system-prompt",
            system_prompt,
        ]

    async def run(
        self,
        session: SessionContext,
        system_prompt: str,
        task: str,
        cwd: Path,
        timeout: float,
        tools: list[str],
    ) -> ProcessResult:
        """Run the agent CLI to completion or deadline.

        Raises:
            ProcessFailure: If the process could not be started at all.
        """
        session.write_inputs(system_prompt, task)
        command = self.build_command(system_prompt, tools)
        started = time.monotonic()

        with (
            open(session.task_path, "rb") as stdin,
            open(session.output_path, "wb") as stdout,
            open(session.stderr_path, "wb") as stderr,
        ):
            try:
                proc = await asyncio.create_subprocess_exec(
                    *command,
                    cwd=str(cwd),
                    stdin=stdin,
                    stdout=stdout,
                    stderr=stderr,
                    env=build_agent_env(),
                    start_new_session=True,
                )
            except OSError as e:
                session.record(ErrorEvent(message=f"spawn failed: {e}"))
                logger.error("Failed to spawn %s in %s: %s", self.cli_binary, cwd, e)
                raise ProcessFailure(f"Failed to spawn agent: {e}") from e

            # The prompt is already on disk; keep the event small.
            session.record(
                SpawnEvent(
                    command=command[:-1] + ["<system-prompt>"],
                    cwd=str(cwd),
                    timeout=timeout,
                    tools=tools,
                    pid=proc.pid,
                )
            )
            logger.info(
                "Spawned agent pid=%d for ticket %s (%s, timeout=%ds)",
                proc.pid,
                session.ticket_id,
                session.phase,
                timeout,
            )

            timed_out = False
            try:
                await asyncio.wait_for(proc.wait(), timeout=timeout)
            except asyncio.TimeoutError:
                timed_out = True
                logger.warning(
                    "Agent pid=%d exceeded %ds deadline for ticket %s, terminating",
                    proc.pid,
                    timeout,
                    session.ticket_id,
                )
                await self._terminate(proc)
            except asyncio.CancelledError:
                await self._terminate(proc)
                raise

        elapsed = time.monotonic() - started
        output = _read_tail(session.output_path, self.output_cap_bytes)
        errors = _read_tail(session.stderr_path, self.output_cap_bytes)
        exit_code = proc.returncode

        if timed_out:
            session.record(
                TimeoutEvent(
                    elapsed=elapsed,
                    exit_code=exit_code,
                    output_length=len(output),
                    stderr_length=len(errors),
                )
            )
            success = False
        else:
            success = exit_code == 0 and len(output.strip()) > self.min_output_chars
            session.record(
                CompleteEvent(
                    status="completed" if success else "failed",
                    exit_code=exit_code,
                    output_length=len(output),
                    stderr_length=len(errors),
                )
            )
            logger.info(
                "Agent pid=%d finished: exit=%s output=%d chars success=%s (%.1fs)",
                proc.pid,
                exit_code,
                len(output),
                success,
                elapsed,
            )

        return ProcessResult(
            stdout=output,
            stderr=errors,
            exit_code=exit_code,
            timed_out=timed_out,
            elapsed=elapsed,
            success=success,
            session_dir=str(session.directory),
        )

    async def _terminate(self, proc: asyncio.subprocess.Process) -> None:
        """SIGTERM the process group, then SIGKILL after the grace window."""
        self._signal_group(proc, signal.SIGTERM)
        try:
            await asyncio.wait_for(proc.wait(), timeout=self.kill_grace)
            return
        except asyncio.TimeoutError:
            logger.warning("Agent pid=%d ignored SIGTERM, killing", proc.pid)
        self._signal_group(proc, signal.SIGKILL)
        await proc.wait()

    @staticmethod
    def _signal_group(proc: asyncio.subprocess.Process, sig: signal.Signals) -> None:
        try:
            os.killpg(os.getpgid(proc.pid), sig)
        except ProcessLookupError:
            pass
