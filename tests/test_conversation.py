"""Tests for the Messages API client and the conversation runtime.

HTTP is intercepted with respx; tools run against a real git checkout.
"""

from __future__ import annotations

import json

import httpx
import pytest
import pytest_asyncio
import respx

from grove.config import ConversationConfig
from grove.conversation import ConversationRuntime, RunStatus, has_completion_signal
from grove.errors import CredentialOrQuotaExhausted
from grove.model_client import ModelClient
from grove.session import (
    ContextLimitEvent,
    ContextWarningEvent,
    ConversationStore,
    SessionContext,
    TimeoutEvent,
    ToolResultEvent,
)

MESSAGES_URL = "https://api.anthropic.com/v1/messages"


def _text(text: str, stop_reason: str = "end_turn", input_tokens: int = 10) -> httpx.Response:
    return httpx.Response(
        200,
        json={
            "content": [{"type": "text", "text": text}],
            "stop_reason": stop_reason,
            "usage": {"input_tokens": input_tokens, "output_tokens": 5},
        },
    )


def _tool_use(name: str, arguments: dict, tool_id: str = "tu_1", input_tokens: int = 10) -> httpx.Response:
    return httpx.Response(
        200,
        json={
            "content": [
                {"type": "text", "text": "Let me look. "},
                {"type": "tool_use", "id": tool_id, "name": name, "input": arguments},
            ],
            "stop_reason": "tool_use",
            "usage": {"input_tokens": input_tokens, "output_tokens": 5},
        },
    )


# ── Fixtures ─────────────────────────────────────────────────────────────────


@pytest_asyncio.fixture
async def client():
    c = ModelClient(api_key="sk-test")
    await c.start()
    yield c
    await c.close()


@pytest.fixture
def conversations(tmp_path):
    return ConversationStore(tmp_path / "conversations")


@pytest.fixture
def session(tmp_path):
    return SessionContext.create(tmp_path / "sessions", "t1", "research", "researcher-1")


def _runtime(client, conversations, **overrides) -> ConversationRuntime:
    return ConversationRuntime(client, conversations, ConversationConfig(**overrides))


async def _run(runtime, session, repo, timeout: float = 60, key: str = "t1-research"):
    return await runtime.run(session, "You are a researcher.", "Investigate login.", repo, timeout, key)


# ── Model client ─────────────────────────────────────────────────────────────


class TestModelClient:
    @pytest.mark.asyncio
    async def test_requires_api_key(self):
        with pytest.raises(RuntimeError, match="API key"):
            await ModelClient(api_key=None).start()

    @pytest.mark.asyncio
    async def test_client_before_start(self):
        with pytest.raises(RuntimeError, match="not started"):
            ModelClient(api_key="k").client

    @respx.mock
    @pytest.mark.asyncio
    async def test_request_shape(self, client):
        route = respx.post(MESSAGES_URL).mock(return_value=_text("hello"))
        body = await client.create_message(
            model="claude-sonnet-4-5",
            system="sys",
            messages=[{"role": "user", "content": "hi"}],
            tools=[],
            max_tokens=100,
        )
        assert body["content"][0]["text"] == "hello"
        request = route.calls.last.request
        assert request.headers["x-api-key"] == "sk-test"
        assert request.headers["anthropic-version"] == "2023-06-01"
        sent = json.loads(request.content)
        assert sent["model"] == "claude-sonnet-4-5"
        assert sent["system"] == "sys"
        assert sent["max_tokens"] == 100

    @respx.mock
    @pytest.mark.asyncio
    async def test_rate_limit_carries_retry_after(self, client):
        respx.post(MESSAGES_URL).mock(
            return_value=httpx.Response(429, headers={"retry-after": "120"}, text="slow down")
        )
        with pytest.raises(CredentialOrQuotaExhausted) as exc_info:
            await client.create_message(model="m", system="", messages=[], tools=[], max_tokens=1)
        assert not exc_info.value.auth_expired
        assert exc_info.value.resume_at is not None

    @respx.mock
    @pytest.mark.asyncio
    async def test_auth_failure(self, client):
        respx.post(MESSAGES_URL).mock(return_value=httpx.Response(401, text="bad key"))
        with pytest.raises(CredentialOrQuotaExhausted) as exc_info:
            await client.create_message(model="m", system="", messages=[], tools=[], max_tokens=1)
        assert exc_info.value.auth_expired

    @respx.mock
    @pytest.mark.asyncio
    async def test_server_error_raises_http_error(self, client):
        respx.post(MESSAGES_URL).mock(return_value=httpx.Response(500))
        with pytest.raises(httpx.HTTPStatusError):
            await client.create_message(model="m", system="", messages=[], tools=[], max_tokens=1)


# ── Runtime ──────────────────────────────────────────────────────────────────


class TestCompletionSignal:
    @pytest.mark.parametrize(
        "text",
        ["I moved the ticket to verification.", "All acceptance criteria are met.", "Research complete."],
    )
    def test_matches(self, text):
        assert has_completion_signal(text)

    def test_plain_text(self):
        assert not has_completion_signal("Looking at auth.py now.")


class TestConversationRuntime:
    @respx.mock
    @pytest.mark.asyncio
    async def test_single_turn_completion(self, client, conversations, session, repo):
        respx.post(MESSAGES_URL).mock(return_value=_text("## Summary\nThe research is complete."))
        result = await _run(_runtime(client, conversations), session, repo)

        assert result.status == RunStatus.COMPLETED
        assert result.success
        assert result.turns == 1
        assert session.output_path.read_text() == "## Summary\nThe research is complete."
        # Finished conversations are cleared.
        assert not conversations.exists("t1-research")

    @respx.mock
    @pytest.mark.asyncio
    async def test_tool_loop(self, client, conversations, session, repo):
        route = respx.post(MESSAGES_URL).mock(
            side_effect=[
                _tool_use("read_file", {"path": "README.md"}),
                _text("Found the readme. Work is complete."),
            ]
        )
        result = await _run(_runtime(client, conversations), session, repo)

        assert result.status == RunStatus.COMPLETED
        assert result.turns == 2
        assert result.output == "Let me look. Found the readme. Work is complete."
        assert result.input_tokens == 20

        second = json.loads(route.calls[1].request.content)
        tool_turn = second["messages"][-1]
        assert tool_turn["role"] == "user"
        assert tool_turn["content"][0]["type"] == "tool_result"
        assert tool_turn["content"][0]["tool_use_id"] == "tu_1"
        assert "# demo" in tool_turn["content"][0]["content"]

        tool_events = [e for e in session.log.read() if isinstance(e, ToolResultEvent)]
        assert tool_events[0].tool == "read_file"
        assert not tool_events[0].is_error

    @respx.mock
    @pytest.mark.asyncio
    async def test_tool_error_flagged(self, client, conversations, session, repo):
        route = respx.post(MESSAGES_URL).mock(
            side_effect=[_tool_use("read_file", {"path": "../outside"}), _text("Done, task complete.")]
        )
        await _run(_runtime(client, conversations), session, repo)
        block = json.loads(route.calls[1].request.content)["messages"][-1]["content"][0]
        assert block["is_error"] is True

    @respx.mock
    @pytest.mark.asyncio
    async def test_deadline_checked_before_turn(self, client, conversations, session, repo):
        route = respx.post(MESSAGES_URL).mock(return_value=_text("never"))
        result = await _run(_runtime(client, conversations), session, repo, timeout=0)

        assert result.status == RunStatus.TIMEOUT
        assert result.turns == 0
        assert not route.called
        assert isinstance(session.log.last_terminal(), TimeoutEvent)
        # History is kept for the next attempt.
        assert conversations.exists("t1-research")

    @respx.mock
    @pytest.mark.asyncio
    async def test_context_warning_once(self, client, conversations, session, repo):
        respx.post(MESSAGES_URL).mock(
            side_effect=[
                _tool_use("list_directory", {}, input_tokens=150),
                _text("All acceptance criteria met.", input_tokens=150),
            ]
        )
        runtime = _runtime(client, conversations, context_warning_tokens=100, context_limit_tokens=1000)
        result = await _run(runtime, session, repo)

        assert result.status == RunStatus.COMPLETED
        assert len(result.status_messages) == 1
        assert "approaching context limit" in result.status_messages[0]
        assert sum(isinstance(e, ContextWarningEvent) for e in session.log.read()) == 1

    @respx.mock
    @pytest.mark.asyncio
    async def test_context_ceiling_blocks(self, client, conversations, session, repo):
        route = respx.post(MESSAGES_URL).mock(
            side_effect=[
                _tool_use("list_directory", {}, input_tokens=600),
                _tool_use("list_directory", {}, tool_id="tu_2", input_tokens=600),
                _text("unreachable"),
            ]
        )
        runtime = _runtime(client, conversations, context_warning_tokens=500, context_limit_tokens=1000)
        result = await _run(runtime, session, repo)

        assert result.status == RunStatus.BLOCKED
        assert route.call_count == 2
        assert "Context limit exceeded" in result.status_messages[-1]
        assert isinstance(session.log.read()[-1], ContextLimitEvent)

    @respx.mock
    @pytest.mark.asyncio
    async def test_turn_budget_spent(self, client, conversations, session, repo):
        respx.post(MESSAGES_URL).mock(side_effect=lambda request: _tool_use("list_directory", {}))
        result = await _run(_runtime(client, conversations, max_turns=3), session, repo)

        assert result.status == RunStatus.INCOMPLETE
        assert result.turns == 3
        assert not result.success

    @respx.mock
    @pytest.mark.asyncio
    async def test_resume_continues_history(self, client, conversations, session, repo):
        conversations.save(
            "t1-research",
            [
                {"role": "user", "content": "Investigate login."},
                {"role": "assistant", "content": [{"type": "text", "text": "Starting. "}]},
            ],
        )
        route = respx.post(MESSAGES_URL).mock(return_value=_text("Research complete."))
        result = await _run(_runtime(client, conversations), session, repo)

        assert result.resumed
        sent = json.loads(route.calls.last.request.content)["messages"]
        assert len(sent) == 3
        assert sent[-1] == {"role": "user", "content": "Continue where you left off."}

    @pytest.mark.asyncio
    @respx.mock
    async def test_resume_answers_unfinished_tool_calls(self, client, conversations, session, repo):
        conversations.save(
            "t1-research",
            [
                {"role": "user", "content": "Investigate login."},
                {
                    "role": "assistant",
                    "content": [
                        {"type": "text", "text": "Let me look. "},
                        {"type": "tool_use", "id": "tu_1", "name": "read_file", "input": {"path": "README.md"}},
                    ],
                },
            ],
        )
        route = respx.post(MESSAGES_URL).mock(return_value=_text("Research complete."))
        result = await _run(_runtime(client, conversations), session, repo)

        assert result.status == RunStatus.COMPLETED
        sent = json.loads(route.calls.last.request.content)["messages"]
        assert len(sent) == 3
        tail = sent[-1]
        assert tail["role"] == "user"
        assert tail["content"][0]["type"] == "tool_result"
        assert tail["content"][0]["tool_use_id"] == "tu_1"
        assert "Continue where you left off." not in json.dumps(tail)

    @respx.mock
    @pytest.mark.asyncio
    async def test_http_error_ends_run(self, client, conversations, session, repo):
        respx.post(MESSAGES_URL).mock(return_value=httpx.Response(500))
        result = await _run(_runtime(client, conversations), session, repo)
        assert result.status == RunStatus.ERROR
        assert not result.success

    @respx.mock
    @pytest.mark.asyncio
    async def test_quota_propagates(self, client, conversations, session, repo):
        respx.post(MESSAGES_URL).mock(return_value=httpx.Response(429))
        with pytest.raises(CredentialOrQuotaExhausted):
            await _run(_runtime(client, conversations), session, repo)
