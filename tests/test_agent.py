"""Tests for SessionAgent: operations, turn lifecycle and the agent-local HTTP surface."""

from __future__ import annotations

import asyncio
import json

import pytest

from tests.mock_providers import (
    FailingModelsClient,
    MockClient,
    final_answer,
    text_chunks,
    tool_call_chunks,
)
from tests.mock_tools import FIXED_NOW, ClockTool, EchoTool
from agentchat.config import AppConfig
from agentchat.errors import INTERNAL_ERROR, SessionBusyError, UpstreamError, ValidationError
from agentchat.llm.factory import API_KEY_MISSING
from agentchat.session.agent import (
    MISSING_CREDENTIALS,
    MISSING_MESSAGE,
    AgentRequest,
    SessionAgent,
)
from agentchat.session.channel import StreamChannel
from agentchat.session.store import MEMORY, SessionStore
from agentchat.tools.registry import ToolRegistry
from agentchat.types import ChatMessage, Role, SessionState


class FlakyStore(SessionStore):
    """A store whose first ``failures`` saves raise."""

    def __init__(self, db_path: str, failures: int = 1) -> None:
        super().__init__(db_path)
        self.failures = failures

    async def save_state(self, state: SessionState) -> None:
        if self.failures:
            self.failures -= 1
            raise RuntimeError("disk full")
        await super().save_state(state)


class CountingChannel(StreamChannel):
    def __init__(self, maxsize: int = 16) -> None:
        super().__init__(maxsize)
        self.close_calls = 0

    async def close(self) -> None:
        self.close_calls += 1
        await super().close()


@pytest.fixture
def registry():
    reg = ToolRegistry()
    reg.register(EchoTool())
    return reg


@pytest.fixture
async def store():
    s = SessionStore(MEMORY)
    await s.init()
    yield s
    await s.close()


@pytest.fixture
async def flaky_store():
    s = FlakyStore(MEMORY)
    await s.init()
    yield s
    await s.close()


@pytest.fixture
def counting_channel(monkeypatch):
    monkeypatch.setattr("agentchat.session.agent.StreamChannel", CountingChannel)


def _agent(client, registry, store=None, session_id="s1") -> SessionAgent:
    return SessionAgent(
        session_id,
        registry=registry,
        config=AppConfig(),
        store=store,
        client_factory=lambda state: client,
    )


async def _read(channel) -> str:
    return b"".join([chunk async for chunk in channel]).decode("utf-8")


def _json(response) -> dict:
    return json.loads(response.body)


class TestConfigure:
    @pytest.mark.asyncio
    async def test_requires_key_and_provider(self, registry):
        agent = _agent(MockClient(), registry)
        for key, provider in [(None, "custom"), ("sk", None), ("", "custom")]:
            with pytest.raises(ValidationError, match=MISSING_CREDENTIALS):
                await agent.configure(key, provider)
        assert agent.get_messages().api_key is None

    @pytest.mark.asyncio
    async def test_unknown_provider_rejected(self, registry):
        agent = _agent(MockClient(), registry)
        with pytest.raises(ValidationError, match="Unknown provider"):
            await agent.configure("sk", "martian")

    @pytest.mark.parametrize(
        "key,provider,base_url",
        [(123, "custom", None), ("sk", ["custom"], None), ("sk", "custom", 8080)],
    )
    @pytest.mark.asyncio
    async def test_non_string_fields_rejected_without_state_change(
        self, registry, key, provider, base_url
    ):
        agent = _agent(MockClient(), registry)
        with pytest.raises(ValidationError, match="must be"):
            await agent.configure(key, provider, base_url)
        state = agent.get_messages()
        assert (state.api_key, state.provider, state.base_url) == (None, None, None)

    @pytest.mark.asyncio
    async def test_client_build_failure_keeps_previous_credentials(self, registry):
        good = MockClient(rounds=[text_chunks("still here")])

        def factory(state):
            if state.base_url == "http://broken":
                raise ValidationError("unusable base URL")
            return good

        agent = SessionAgent("s1", registry=registry, config=AppConfig(), client_factory=factory)
        await agent.configure("sk-1", "custom")
        with pytest.raises(ValidationError, match="unusable base URL"):
            await agent.configure("sk-2", "custom", "http://broken")

        state = agent.get_messages()
        assert (state.api_key, state.base_url) == ("sk-1", None)
        reply = await agent.send_message("hi")
        assert reply.messages[-1].content == "still here"

    @pytest.mark.asyncio
    async def test_stores_credentials(self, registry, store):
        agent = _agent(MockClient(), registry, store)
        await agent.configure("sk-abc", "custom", "http://localhost:1234/v1")

        state = agent.get_messages()
        assert (state.api_key, state.provider, state.base_url) == (
            "sk-abc",
            "custom",
            "http://localhost:1234/v1",
        )
        assert (await store.load_state("s1")).api_key == "sk-abc"

    @pytest.mark.asyncio
    async def test_empty_base_url_cleared(self, registry):
        agent = _agent(MockClient(), registry)
        await agent.configure("sk", "custom", "http://x")
        await agent.configure("sk", "custom", "")
        assert agent.get_messages().base_url is None


class TestSendMessage:
    @pytest.mark.asyncio
    async def test_appends_user_and_assistant(self, registry):
        client = MockClient(rounds=[text_chunks("Hi there")])
        agent = _agent(client, registry)

        state = await agent.send_message("  hello  ")

        assert [(m.role, m.content) for m in state.messages] == [
            (Role.USER, "hello"),
            (Role.ASSISTANT, "Hi there"),
        ]
        assert state.is_processing is False
        assert client.last_messages[-1].content == "hello"

    @pytest.mark.parametrize("text", [None, "", "   \n\t", 42])
    @pytest.mark.asyncio
    async def test_empty_message_rejected_without_state_change(self, registry, text):
        agent = _agent(MockClient(), registry)
        with pytest.raises(ValidationError, match=MISSING_MESSAGE):
            await agent.send_message(text)
        assert agent.get_messages().messages == []
        assert agent.is_processing is False

    @pytest.mark.asyncio
    async def test_model_update(self, registry):
        client = MockClient(rounds=[text_chunks("ok")])
        agent = _agent(client, registry)

        state = await agent.send_message("hi", model="gpt-4o-mini")
        assert state.model == "gpt-4o-mini"
        assert client.calls[0]["model"] == "gpt-4o-mini"

    @pytest.mark.asyncio
    async def test_tool_results_recorded(self, registry):
        client = MockClient(
            rounds=[tool_call_chunks("echo", {"message": "ping"}, call_id="c9"), final_answer("pong")]
        )
        state = await _agent(client, registry).send_message("go")

        reply = state.messages[-1]
        assert reply.content == "pong"
        assert reply.tool_calls[0].id == "c9"
        assert reply.tool_calls[0].result == {"echo": "ping"}
        assert reply.to_dict()["toolCalls"][0]["name"] == "echo"

    @pytest.mark.asyncio
    async def test_history_excludes_new_message(self, registry):
        client = MockClient(rounds=[text_chunks("ok")])
        agent = _agent(client, registry)
        agent._state.messages = [
            ChatMessage(role=Role.USER if i % 2 == 0 else Role.ASSISTANT, content=f"m{i}")
            for i in range(15)
        ]
        await agent.send_message("latest")
        sent = client.last_messages
        assert len(sent) == 12
        assert sent[-1].content == "latest"
        assert sent[-2].content == "m14"

    @pytest.mark.asyncio
    async def test_upstream_failure_clears_processing(self, registry):
        agent = _agent(MockClient(rounds=[text_chunks("a b")], fail_after=0), registry)
        with pytest.raises(UpstreamError):
            await agent.send_message("hi")
        state = agent.get_messages()
        assert state.is_processing is False
        assert [m.role for m in state.messages] == [Role.USER]

    @pytest.mark.asyncio
    async def test_missing_api_key_everywhere(self, registry, monkeypatch):
        monkeypatch.delenv("OPENAI_API_KEY", raising=False)
        agent = SessionAgent("s1", registry=registry, config=AppConfig())
        with pytest.raises(ValidationError) as exc_info:
            await agent.send_message("hello")
        assert exc_info.value.message == API_KEY_MISSING
        assert agent.get_messages().messages == []
        assert agent.is_processing is False


class TestStreaming:
    @pytest.mark.asyncio
    async def test_chunks_streamed_and_turn_recorded(self, registry, counting_channel):
        client = MockClient(rounds=[text_chunks("one two three")])
        agent = _agent(client, registry)

        channel = await agent.stream_message("count")
        text = await _read(channel)
        await agent.wait_idle()

        assert text == "one two three"
        assert channel.close_calls == 1
        state = agent.get_messages()
        assert state.messages[-1].content == "one two three"
        assert state.is_processing is False
        assert state.streaming_message is None

    @pytest.mark.asyncio
    async def test_processing_flag_during_turn(self, registry):
        client = MockClient(rounds=[text_chunks("slow reply")])
        client.gate = asyncio.Event()
        agent = _agent(client, registry)

        channel = await agent.stream_message("hi")
        state = agent.get_messages()
        assert state.is_processing is True
        assert state.streaming_message == ""
        assert state.messages[-1].content == "hi"

        client.gate.set()
        await _read(channel)
        await agent.wait_idle()
        assert agent.is_processing is False

    @pytest.mark.asyncio
    async def test_concurrent_turn_rejected(self, registry):
        client = MockClient(rounds=[text_chunks("first answer")])
        client.gate = asyncio.Event()
        agent = _agent(client, registry)

        channel = await agent.stream_message("first")
        with pytest.raises(SessionBusyError):
            await agent.send_message("second")
        with pytest.raises(SessionBusyError):
            await agent.stream_message("third")

        client.gate.set()
        await _read(channel)
        await agent.wait_idle()

        contents = [m.content for m in agent.get_messages().messages]
        assert contents == ["first", "first answer"]
        assert client.call_count == 1

    @pytest.mark.asyncio
    async def test_error_written_to_stream(self, registry, counting_channel):
        agent = _agent(MockClient(rounds=[text_chunks("a b c")], fail_after=1), registry)

        channel = await agent.stream_message("hi")
        text = await _read(channel)
        await agent.wait_idle()

        assert text == "a Sorry, an error occurred: upstream exploded"
        assert channel.close_calls == 1
        state = agent.get_messages()
        assert state.messages[-1].content == "Sorry, an error occurred: upstream exploded"
        assert state.is_processing is False

    @pytest.mark.asyncio
    async def test_disconnected_reader_turn_still_completes(self, registry):
        agent = _agent(MockClient(rounds=[text_chunks("a b c d e f")]), registry)
        agent.config.server.stream_buffer = 1

        channel = await agent.stream_message("hi")
        it = channel.__aiter__()
        await it.__anext__()
        await it.aclose()
        await agent.wait_idle()

        assert channel.detached
        assert agent.get_messages().messages[-1].content == "a b c d e f"

    @pytest.mark.asyncio
    async def test_same_content_as_non_streaming(self, registry):
        def rounds():
            return [
                tool_call_chunks("echo", {"message": "x"}, content_prefix="Looking. "),
                final_answer("Found x."),
            ]

        plain = _agent(MockClient(rounds=rounds()), registry, session_id="plain")
        streamed = _agent(MockClient(rounds=rounds()), registry, session_id="streamed")

        plain_state = await plain.send_message("go")
        await _read(await streamed.stream_message("go"))
        await streamed.wait_idle()
        streamed_state = streamed.get_messages()

        assert [(m.role, m.content) for m in plain_state.messages] == [
            (m.role, m.content) for m in streamed_state.messages
        ]
        assert plain_state.messages[-1].tool_calls == streamed_state.messages[-1].tool_calls

    @pytest.mark.asyncio
    async def test_tool_round_follow_up_is_last_chunk(self, registry):
        client = MockClient(
            rounds=[
                tool_call_chunks("echo", {"message": "x"}, content_prefix="Checking. "),
                final_answer("Result is x."),
            ]
        )
        agent = _agent(client, registry)
        text = await _read(await agent.stream_message("go"))
        await agent.wait_idle()
        assert text == "Checking. Result is x."


class TestClearAndModels:
    @pytest.mark.asyncio
    async def test_clear_keeps_credentials(self, registry):
        agent = _agent(MockClient(rounds=[text_chunks("ok")]), registry)
        await agent.configure("sk-keep", "openai-compatible")
        await agent.send_message("hi")

        state = await agent.clear_messages()
        assert state.messages == []
        assert state.api_key == "sk-keep"
        assert state.provider == "openai-compatible"

    @pytest.mark.asyncio
    async def test_list_models(self, registry):
        agent = _agent(MockClient(models=["b", "a"]), registry)
        assert [m.id for m in await agent.list_models()] == ["a", "b"]


class TestPersistence:
    @pytest.mark.asyncio
    async def test_state_restored_by_new_agent(self, registry, store):
        first = _agent(MockClient(rounds=[text_chunks("remembered")]), registry, store)
        await first.configure("sk", "custom")
        await first.send_message("hello")

        second = _agent(MockClient(), registry, store)
        await second.start()
        state = second.get_messages()
        assert [m.content for m in state.messages] == ["hello", "remembered"]
        assert state.api_key == "sk"

    @pytest.mark.asyncio
    async def test_stuck_processing_reset_on_start(self, registry, store):
        await store.save_state(
            SessionState(session_id="s1", is_processing=True, streaming_message="half")
        )
        agent = _agent(MockClient(), registry, store)
        await agent.start()
        assert agent.is_processing is False
        assert agent.get_messages().streaming_message is None


class TestHandle:
    @pytest.mark.asyncio
    async def test_configure_returns_bare_success(self, registry):
        agent = _agent(MockClient(), registry)
        body = json.dumps({"apiKey": "sk", "provider": "google"}).encode()
        resp = await agent.handle(AgentRequest("POST", "/configure", body=body))
        assert resp.status_code == 200
        assert _json(resp) == {"success": True}

    @pytest.mark.asyncio
    async def test_configure_validation_error(self, registry):
        agent = _agent(MockClient(), registry)
        resp = await agent.handle(AgentRequest("POST", "/configure", body=b"{}"))
        assert resp.status_code == 400
        assert _json(resp) == {"success": False, "error": MISSING_CREDENTIALS}

    @pytest.mark.asyncio
    async def test_messages(self, registry):
        agent = _agent(MockClient(), registry)
        resp = await agent.handle(AgentRequest("GET", "/messages"))
        data = _json(resp)["data"]
        assert data["sessionId"] == "s1"
        assert data["messages"] == []
        assert data["isProcessing"] is False
        assert "apiKey" not in data

    @pytest.mark.asyncio
    async def test_chat_non_streaming(self, registry):
        agent = _agent(MockClient(rounds=[text_chunks("hey")]), registry)
        body = json.dumps({"message": "hi"}).encode()
        resp = await agent.handle(AgentRequest("POST", "/chat", body=body))
        data = _json(resp)["data"]
        assert [m["content"] for m in data["messages"]] == ["hi", "hey"]

    @pytest.mark.asyncio
    async def test_chat_streaming(self, registry):
        agent = _agent(MockClient(rounds=[text_chunks("streamed text")]), registry)
        body = json.dumps({"message": "hi", "stream": True}).encode()
        resp = await agent.handle(AgentRequest("POST", "/chat", body=body))

        assert resp.media_type == "text/plain; charset=utf-8"
        text = b"".join([c async for c in resp.body_iterator]).decode()
        await agent.wait_idle()
        assert text == "streamed text"

    @pytest.mark.asyncio
    async def test_chat_missing_message(self, registry):
        agent = _agent(MockClient(), registry)
        resp = await agent.handle(AgentRequest("POST", "/chat", body=b'{"message": "  "}'))
        assert resp.status_code == 400
        assert _json(resp)["error"] == MISSING_MESSAGE

    @pytest.mark.asyncio
    async def test_chat_busy_conflict(self, registry):
        client = MockClient(rounds=[text_chunks("wait")])
        client.gate = asyncio.Event()
        agent = _agent(client, registry)
        channel = await agent.stream_message("first")

        resp = await agent.handle(AgentRequest("POST", "/chat", body=b'{"message": "second"}'))
        assert resp.status_code == 409
        assert _json(resp)["success"] is False

        client.gate.set()
        await _read(channel)
        await agent.wait_idle()

    @pytest.mark.asyncio
    async def test_clear(self, registry):
        agent = _agent(MockClient(rounds=[text_chunks("x")]), registry)
        await agent.send_message("hi")
        resp = await agent.handle(AgentRequest("DELETE", "/clear"))
        assert _json(resp)["data"]["messages"] == []

    @pytest.mark.asyncio
    async def test_models(self, registry):
        agent = _agent(MockClient(models=["m2", "m1"]), registry)
        resp = await agent.handle(AgentRequest("GET", "/models"))
        assert _json(resp) == {
            "success": True,
            "data": [{"id": "m1", "name": "m1"}, {"id": "m2", "name": "m2"}],
        }

    @pytest.mark.asyncio
    async def test_models_failure(self, registry):
        agent = _agent(FailingModelsClient(), registry)
        resp = await agent.handle(AgentRequest("GET", "/models"))
        assert resp.status_code == 500
        assert _json(resp)["error"].startswith("Could not fetch models")

    @pytest.mark.parametrize(
        "method,path",
        [("GET", "/nope"), ("GET", "/chat"), ("POST", "/messages"), ("PUT", "/configure")],
    )
    @pytest.mark.asyncio
    async def test_unknown_route(self, registry, method, path):
        resp = await _agent(MockClient(), registry).handle(AgentRequest(method, path))
        assert resp.status_code == 404
        assert _json(resp) == {"success": False, "error": "Not Found"}

    @pytest.mark.asyncio
    async def test_invalid_json_body(self, registry):
        resp = await _agent(MockClient(), registry).handle(
            AgentRequest("POST", "/chat", body=b"{not json")
        )
        assert resp.status_code == 400

    @pytest.mark.asyncio
    async def test_configure_non_string_key_is_client_error(self, registry):
        agent = _agent(MockClient(), registry)
        body = json.dumps({"apiKey": 123, "provider": "custom"}).encode()
        resp = await agent.handle(AgentRequest("POST", "/configure", body=body))
        assert resp.status_code == 400
        assert _json(resp)["success"] is False
        assert agent.get_messages().api_key is None

    @pytest.mark.asyncio
    async def test_store_failure_is_500_then_recovers(self, registry, flaky_store):
        agent = _agent(MockClient(rounds=[text_chunks("fine")]), registry, flaky_store)
        body = json.dumps({"message": "hi"}).encode()

        first = await agent.handle(AgentRequest("POST", "/chat", body=body))
        assert first.status_code == 500
        assert _json(first) == {"success": False, "error": INTERNAL_ERROR}

        second = await agent.handle(AgentRequest("POST", "/chat", body=body))
        assert second.status_code == 200
        assert _json(second)["data"]["messages"][-1]["content"] == "fine"


class TestStoreFailureAtTurnStart:
    @pytest.mark.asyncio
    async def test_send_leaves_session_idle(self, registry, flaky_store):
        client = MockClient(rounds=[text_chunks("ok")])
        agent = _agent(client, registry, flaky_store)

        with pytest.raises(RuntimeError, match="disk full"):
            await agent.send_message("hi")
        assert agent.is_processing is False
        assert client.call_count == 0
        assert (await flaky_store.load_state("s1")).is_processing is False

        state = await agent.send_message("again")
        assert state.messages[-1].content == "ok"
        assert state.is_processing is False

    @pytest.mark.asyncio
    async def test_stream_leaves_session_idle(self, registry, flaky_store):
        client = MockClient(rounds=[text_chunks("streamed ok")])
        agent = _agent(client, registry, flaky_store)

        with pytest.raises(RuntimeError, match="disk full"):
            await agent.stream_message("hi")
        state = agent.get_messages()
        assert state.is_processing is False
        assert state.streaming_message is None
        assert client.call_count == 0

        text = await _read(await agent.stream_message("again"))
        await agent.wait_idle()
        assert text == "streamed ok"
        assert agent.is_processing is False


class TestNonJsonToolResults:
    @pytest.mark.asyncio
    async def test_datetime_result_persists_and_reloads(self, store):
        registry = ToolRegistry()
        registry.register(ClockTool())
        client = MockClient(rounds=[tool_call_chunks("clock", {}, call_id="t1"), final_answer("noted")])
        agent = _agent(client, registry, store)

        state = await agent.send_message("what time is it?")
        assert state.messages[-1].tool_calls[0].result["now"] == str(FIXED_NOW)

        restored = _agent(MockClient(), registry, store)
        await restored.start()
        reply = restored.get_messages().messages[-1]
        assert reply.content == "noted"
        assert reply.tool_calls[0].result == {"now": str(FIXED_NOW), "tags": "{'utc'}"}
