"""Conversation Runtime — drives an agent as a direct multi-turn exchange.

Used instead of the CLI supervisor when ``runtime.strategy`` is
``conversation``. Each run is a small state machine:

    INIT → (MODEL_TURN → TOOL_EXECUTION)* → COMPLETED | TIMEOUT | BLOCKED

- The deadline is checked before each turn; an in-flight turn finishes.
- Input tokens are summed across turns. Crossing the warning threshold
  adds one status comment; crossing the hard ceiling ends the run
  BLOCKED without another model call.
- Tool results are capped before they go back into the history.
- History is saved after every model turn and every tool-result turn,
  keyed by ticket, so a restarted run picks up where it stopped. Tool
  calls left unanswered by the earlier run are executed before the next
  model call.
- When the accumulated text matches a completion phrase and the model
  stopped on its own, the run ends COMPLETED immediately.
"""

from __future__ import annotations

import enum
import logging
import re
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import httpx

from grove.config import ConversationConfig
from grove.errors import ContextLimitExceeded
from grove.model_client import ModelClient
from grove.session import (
    CompleteEvent,
    ContextLimitEvent,
    ContextWarningEvent,
    ConversationStore,
    ErrorEvent,
    ResponseEvent,
    SessionContext,
    TimeoutEvent,
    ToolCallEvent,
    ToolResultEvent,
)
from grove.tools import LocalToolExecutor, tool_schemas

logger = logging.getLogger(__name__)

COMPLETION_PATTERNS: tuple[re.Pattern[str], ...] = (
    re.compile(r"moved? (?:the )?ticket to verification", re.IGNORECASE),
    re.compile(r"all acceptance criteria (?:are )?(?:now )?met", re.IGNORECASE),
    re.compile(r"(?:work|task|research) (?:is )?complete", re.IGNORECASE),
    re.compile(r"ready for (?:plan )?approval", re.IGNORECASE),
)


def has_completion_signal(text: str) -> bool:
    return any(p.search(text) for p in COMPLETION_PATTERNS)


class RunStatus(str, enum.Enum):
    COMPLETED = "completed"
    INCOMPLETE = "incomplete"  # turn budget spent
    TIMEOUT = "timeout"
    BLOCKED = "blocked"  # context ceiling
    ERROR = "error"


@dataclass
class ConversationResult:
    status: RunStatus
    output: str
    turns: int
    input_tokens: int = 0
    output_tokens: int = 0
    status_messages: list[str] = field(default_factory=list)
    resumed: bool = False

    @property
    def success(self) -> bool:
        return self.status == RunStatus.COMPLETED and bool(self.output.strip())


class ConversationRuntime:
    """Runs one ticket's conversation against the Messages API."""

    def __init__(
        self,
        client: ModelClient,
        store: ConversationStore,
        config: ConversationConfig | None = None,
    ):
        self.client = client
        self.store = store
        self.config = config or ConversationConfig()

    async def run(
        self,
        session: SessionContext,
        system_prompt: str,
        task: str,
        cwd: Path,
        timeout: float,
        conversation_key: str | None = None,
    ) -> ConversationResult:
        cfg = self.config
        key = conversation_key or session.ticket_id
        session.write_inputs(system_prompt, task)
        executor = LocalToolExecutor(cwd, max_output=cfg.max_tool_output)
        tools = tool_schemas()

        messages = self.store.load(key)
        resumed = bool(messages)
        if resumed:
            logger.info("Resuming conversation %s at %d messages", key, len(messages))
            await self._answer_dangling_tools(messages, executor, session)
        else:
            messages = [{"role": "user", "content": task}]
        self.store.save(key, messages)

        started = time.monotonic()
        text = ""
        input_total = 0
        output_total = 0
        warned = False
        status_messages: list[str] = []

        def _result(status: RunStatus, turns: int) -> ConversationResult:
            return ConversationResult(
                status=status,
                output=text,
                turns=turns,
                input_tokens=input_total,
                output_tokens=output_total,
                status_messages=status_messages,
                resumed=resumed,
            )

        turn = 0
        for turn in range(1, cfg.max_turns + 1):
            elapsed = time.monotonic() - started
            if elapsed >= timeout:
                self.store.save(key, messages)
                session.record(TimeoutEvent(elapsed=elapsed, output_length=len(text)))
                logger.warning("Conversation %s timed out before turn %d", key, turn)
                self._write_output(session, text)
                return _result(RunStatus.TIMEOUT, turn - 1)

            try:
                response = await self.client.create_message(
                    model=cfg.model,
                    system=system_prompt,
                    messages=messages,
                    tools=tools,
                    max_tokens=cfg.max_tokens,
                )
            except httpx.HTTPError as e:
                self.store.save(key, messages)
                session.record(ErrorEvent(message=f"model request failed: {e}"))
                logger.error("Conversation %s: model request failed: %s", key, e)
                self._write_output(session, text)
                return _result(RunStatus.ERROR, turn - 1)

            usage = response.get("usage") or {}
            input_total += usage.get("input_tokens", 0)
            output_total += usage.get("output_tokens", 0)
            content: list[dict[str, Any]] = response.get("content") or []
            stop_reason = response.get("stop_reason")

            turn_text = "".join(b.get("text", "") for b in content if b.get("type") == "text")
            text += turn_text
            messages.append({"role": "assistant", "content": content})
            self.store.save(key, messages)
            session.record(
                ResponseEvent(
                    turn=turn,
                    stop_reason=stop_reason,
                    input_tokens=usage.get("input_tokens", 0),
                    output_tokens=usage.get("output_tokens", 0),
                    text_length=len(turn_text),
                )
            )

            try:
                if self._check_context(input_total) and not warned:
                    warned = True
                    session.record(
                        ContextWarningEvent(input_tokens=input_total, threshold=cfg.context_warning_tokens)
                    )
                    status_messages.append(
                        f"Warning: approaching context limit "
                        f"({input_total}/{cfg.context_limit_tokens} tokens)."
                    )
            except ContextLimitExceeded as e:
                session.record(ContextLimitEvent(input_tokens=e.input_tokens, limit=e.limit))
                status_messages.append(
                    f"{e}. This ticket needs conversation compaction or manual intervention."
                )
                logger.warning("Conversation %s blocked: %s", key, e)
                self._write_output(session, text)
                return _result(RunStatus.BLOCKED, turn)

            if stop_reason == "end_turn" and has_completion_signal(text):
                return self._complete(session, key, text, _result(RunStatus.COMPLETED, turn))

            tool_calls = [b for b in content if b.get("type") == "tool_use"]
            if stop_reason in ("end_turn", "stop_sequence") or not tool_calls:
                return self._complete(session, key, text, _result(RunStatus.COMPLETED, turn))

            results = await self._execute_tools(executor, session, turn, tool_calls)
            messages.append({"role": "user", "content": results})
            self.store.save(key, messages)

        logger.warning("Conversation %s used all %d turns without finishing", key, cfg.max_turns)
        self._write_output(session, text)
        session.record(
            CompleteEvent(
                status=RunStatus.INCOMPLETE.value,
                output_length=len(text),
                tokens_used=input_total + output_total,
            )
        )
        return _result(RunStatus.INCOMPLETE, turn)

    async def _execute_tools(
        self,
        executor: LocalToolExecutor,
        session: SessionContext,
        turn: int,
        tool_calls: list[dict[str, Any]],
    ) -> list[dict[str, Any]]:
        results = []
        for call in tool_calls:
            arguments = call.get("input") or {}
            session.record(
                ToolCallEvent(
                    turn=turn,
                    tool=call["name"],
                    tool_use_id=call["id"],
                    input=arguments,
                )
            )
            outcome = await executor.execute(call["name"], arguments)
            session.record(
                ToolResultEvent(
                    turn=turn,
                    tool=call["name"],
                    tool_use_id=call["id"],
                    output_length=len(outcome.content),
                    is_error=outcome.is_error,
                    truncated=outcome.truncated,
                )
            )
            block: dict[str, Any] = {
                "type": "tool_result",
                "tool_use_id": call["id"],
                "content": outcome.content,
            }
            if outcome.is_error:
                block["is_error"] = True
            results.append(block)
        return results

    async def _answer_dangling_tools(
        self,
        messages: list[dict[str, Any]],
        executor: LocalToolExecutor,
        session: SessionContext,
    ) -> None:
        """Make a saved history valid to send again.

        A run that stopped between a tool-use turn and its results leaves
        unanswered tool calls; every tool_use must be followed by its
        tool_result, so those calls are executed now. A plain assistant
        tail gets a nudge to continue.
        """
        last = messages[-1]
        if last["role"] != "assistant":
            return
        content = last["content"] if isinstance(last["content"], list) else []
        tool_calls = [b for b in content if b.get("type") == "tool_use"]
        if tool_calls:
            logger.info("Answering %d unanswered tool call(s) before resuming", len(tool_calls))
            results = await self._execute_tools(executor, session, 0, tool_calls)
            messages.append({"role": "user", "content": results})
        else:
            messages.append({"role": "user", "content": "Continue where you left off."})

    def _check_context(self, input_tokens: int) -> bool:
        """Return True past the warning threshold.

        Raises:
            ContextLimitExceeded: Past the hard ceiling.
        """
        if input_tokens > self.config.context_limit_tokens:
            raise ContextLimitExceeded(input_tokens, self.config.context_limit_tokens)
        return input_tokens > self.config.context_warning_tokens

    def _complete(
        self, session: SessionContext, key: str, text: str, result: ConversationResult
    ) -> ConversationResult:
        self._write_output(session, text)
        session.record(
            CompleteEvent(
                status=result.status.value,
                output_length=len(text),
                tokens_used=result.input_tokens + result.output_tokens,
            )
        )
        # Finished conversations start fresh next time.
        self.store.clear(key)
        logger.info(
            "Conversation %s completed in %d turns (%d chars, %d tokens)",
            key,
            result.turns,
            len(text),
            result.input_tokens + result.output_tokens,
        )
        return result

    @staticmethod
    def _write_output(session: SessionContext, text: str) -> None:
        if text:
            session.output_path.write_text(text, encoding="utf-8")

