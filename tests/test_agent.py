"""
Tests for the conversation agent (streaming + tool calling).
"""

import json

import pytest
from unittest.mock import AsyncMock

from src.callbridge.agent import ConversationAgent, parse_tool_arguments
from src.callbridge.errors import MalformedToolArguments, ToolChainDepthExceeded
from src.callbridge.models import Role
from src.callbridge.prompts import PromptConfig
from src.callbridge.tools import ToolRegistry, ToolSpec, default_registry
from fakes import fake_openai_client, finish_chunk, text_chunk, tool_chunk


PROMPT = PromptConfig(system_prompt="You sell AirPods.", assistant_prompt="Hi! Looking for AirPods?")


def make_agent(config, scripts, tools=None):
    fragments = []

    async def on_fragment(fragment, turn_id):
        fragments.append((turn_id, fragment.sequence_index, fragment.text))

    client = fake_openai_client(scripts)
    agent = ConversationAgent(
        config,
        tools=tools if tools is not None else default_registry(),
        on_fragment=on_fragment,
        client=client,
        prompt=PROMPT,
    )
    return agent, client.chat.completions, fragments


class TestParseToolArguments:
    def test_valid_object(self):
        assert parse_tool_arguments('{"model": "airpods pro"}') == {"model": "airpods pro"}

    def test_blank_is_empty_object(self):
        assert parse_tool_arguments("") == {}
        assert parse_tool_arguments("   ") == {}

    def test_duplicated_object_uses_first(self):
        raw = '{"model": "airpods pro"}{"model": "airpods pro"}'
        assert parse_tool_arguments(raw) == {"model": "airpods pro"}

    def test_unrecoverable_raises(self):
        with pytest.raises(MalformedToolArguments):
            parse_tool_arguments('{"model": ')

    def test_non_object_raises(self):
        with pytest.raises(MalformedToolArguments):
            parse_tool_arguments("[1, 2]")

    def test_trailing_garbage_raises(self):
        with pytest.raises(MalformedToolArguments):
            parse_tool_arguments('{"model": "x"} trailing')


class TestSeeding:
    def test_seeds_system_and_greeting(self, config):
        agent, _, _ = make_agent(config, [])

        assert [t.role for t in agent.turns] == [Role.SYSTEM, Role.ASSISTANT]
        assert agent.get_initial_greeting() == "Hi! Looking for AirPods?"

    def test_set_call_sid_appends_system_turn(self, config):
        agent, _, _ = make_agent(config, [])

        agent.set_call_sid("CA123")

        assert agent.turns[-1].role == Role.SYSTEM
        assert agent.turns[-1].content == "callSid: CA123"
        assert agent.call_sid == "CA123"


class TestStreaming:
    @pytest.mark.asyncio
    async def test_fragments_split_on_phrase_break(self, config):
        agent, _, fragments = make_agent(config, [[
            text_chunk("Claro! "),
            text_chunk("Temos três modelos •"),
            text_chunk(" Qual você prefere?"),
            finish_chunk("stop"),
        ]])

        result = await agent.submit("Quais modelos?", turn_id=1)

        assert fragments == [
            (1, 0, "Claro! Temos três modelos"),
            (1, 1, "Qual você prefere?"),
        ]
        assert result.fragments == 2
        # The log keeps the marker; only synthesis text is cleaned.
        assert agent.turns[-1].role == Role.ASSISTANT
        assert agent.turns[-1].content == "Claro! Temos três modelos • Qual você prefere?"

    @pytest.mark.asyncio
    async def test_indices_restart_each_submit(self, config):
        agent, _, fragments = make_agent(config, [
            [text_chunk("One •"), text_chunk(" two"), finish_chunk("stop")],
            [text_chunk("Three"), finish_chunk("stop")],
        ])

        await agent.submit("first", turn_id=1)
        await agent.submit("second", turn_id=2)

        assert [(t, i) for t, i, _ in fragments] == [(1, 0), (1, 1), (2, 0)]

    @pytest.mark.asyncio
    async def test_stream_without_finish_reason_completes(self, config):
        agent, _, fragments = make_agent(config, [[text_chunk("Hello there")]])

        await agent.submit("hi", turn_id=1)

        assert fragments == [(1, 0, "Hello there")]
        assert agent.turns[-1].content == "Hello there"

    @pytest.mark.asyncio
    async def test_request_carries_log_and_tools(self, config):
        agent, completions, _ = make_agent(config, [[text_chunk("ok"), finish_chunk("stop")]])

        await agent.submit("hello", turn_id=1)

        request = completions.requests[0]
        assert request["stream"] is True
        assert request["model"] == config.openai_model
        assert request["messages"][-1] == {"role": "user", "content": "hello"}
        names = [t["function"]["name"] for t in request["tools"]]
        assert names == ["checkInventory", "lookupPrice", "placeOrder", "transferCall"]


class TestToolCalls:
    @pytest.mark.asyncio
    async def test_tool_round_trip(self, config):
        agent, completions, fragments = make_agent(config, [
            [
                tool_chunk(name="lookupPrice", arguments=""),
                tool_chunk(arguments='{"model": '),
                tool_chunk(arguments='"airpods pro"}'),
                finish_chunk("tool_calls"),
            ],
            [text_chunk("Os AirPods Pro custam 249 dólares."), finish_chunk("stop")],
        ])
        before = len(agent.turns)

        result = await agent.submit("Quanto custa o Pro?", turn_id=3)

        # announcement first, then the follow-up reply
        assert fragments == [
            (3, 0, "Deixa eu conferir o preço, só um instante."),
            (3, 1, "Os AirPods Pro custam 249 dólares."),
        ]
        new_turns = agent.turns[before:]
        assert [t.role for t in new_turns] == [Role.USER, Role.FUNCTION, Role.ASSISTANT]
        tool_turn = new_turns[1]
        assert tool_turn.name == "lookupPrice"
        assert json.loads(tool_turn.content)["price"] == 249

        # exactly one follow-up completion, which sees the tool result
        assert len(completions.requests) == 2
        assert completions.requests[1]["messages"][-1]["role"] == "function"
        assert result.tool_calls == ["lookupPrice"]

    @pytest.mark.asyncio
    async def test_announcement_emitted_before_tool_runs(self, config):
        events = []

        async def handler(args, context):
            events.append("executed")
            return {"ok": True}

        registry = ToolRegistry()
        registry.register(ToolSpec("ping", "Ping", {"type": "object", "properties": {}}, "Um momento.", handler))

        async def on_fragment(fragment, turn_id):
            events.append(f"fragment:{fragment.text}")

        agent = ConversationAgent(
            config,
            tools=registry,
            on_fragment=on_fragment,
            client=fake_openai_client([
                [tool_chunk(name="ping", arguments="{}", finish_reason="tool_calls")],
                [text_chunk("Pronto."), finish_chunk("stop")],
            ]),
            prompt=PROMPT,
        )

        await agent.submit("ping", turn_id=1)

        assert events == ["fragment:Um momento.", "executed", "fragment:Pronto."]

    @pytest.mark.asyncio
    async def test_duplicated_arguments_recovered(self, config):
        agent, _, _ = make_agent(config, [
            [
                tool_chunk(name="checkInventory", arguments='{"model": "airpods max"}{"model": "airpods max"}'),
                finish_chunk("tool_calls"),
            ],
            [text_chunk("Sem estoque."), finish_chunk("stop")],
        ])

        await agent.submit("Tem Max?", turn_id=1)

        tool_turns = [t for t in agent.turns if t.role == Role.FUNCTION]
        assert len(tool_turns) == 1
        assert json.loads(tool_turns[0].content) == {"ok": True, "model": "airpods max", "stock": 0}

    @pytest.mark.asyncio
    async def test_malformed_arguments_drop_the_call(self, config):
        agent, completions, fragments = make_agent(config, [
            [tool_chunk(name="placeOrder", arguments='{"model": '), finish_chunk("tool_calls")],
        ])

        await agent.submit("Quero comprar", turn_id=1)

        assert not any(t.role == Role.FUNCTION for t in agent.turns)
        assert len(completions.requests) == 1
        assert fragments == []

    @pytest.mark.asyncio
    async def test_failing_tool_yields_failed_result_and_one_more_completion(self, config):
        async def broken(args, context):
            raise RuntimeError("inventory service down")

        registry = ToolRegistry()
        registry.register(ToolSpec("checkInventory", "Check", {"type": "object"}, "", broken))

        agent, completions, fragments = make_agent(config, [
            [tool_chunk(name="checkInventory", arguments='{"model": "airpods"}'), finish_chunk("tool_calls")],
            [text_chunk("Não consegui verificar agora."), finish_chunk("stop")],
        ], tools=registry)

        await agent.submit("Tem estoque?", turn_id=1)

        tool_turns = [t for t in agent.turns if t.role == Role.FUNCTION]
        assert len(tool_turns) == 1
        payload = json.loads(tool_turns[0].content)
        assert payload["ok"] is False
        assert "inventory service down" in payload["error"]
        assert len(completions.requests) == 2
        # No announcement configured, so the only fragment is the follow-up.
        assert fragments == [(1, 0, "Não consegui verificar agora.")]

    @pytest.mark.asyncio
    async def test_depth_cap(self, config):
        handler = AsyncMock(return_value={"ok": True})
        registry = ToolRegistry()
        registry.register(ToolSpec("loop", "Loop", {"type": "object"}, "", handler))

        cap = config.max_tool_depth
        scripts = [
            [tool_chunk(name="loop", arguments="{}"), finish_chunk("tool_calls")]
            for _ in range(cap + 1)
        ]
        agent, completions, _ = make_agent(config, scripts, tools=registry)

        with pytest.raises(ToolChainDepthExceeded) as exc_info:
            await agent.submit("go", turn_id=1)

        assert exc_info.value.max_depth == cap
        assert handler.await_count == cap
        assert len(completions.requests) == cap + 1

    @pytest.mark.asyncio
    async def test_text_before_tool_call_is_spoken_and_kept(self, config):
        agent, _, fragments = make_agent(config, [
            [
                text_chunk("Vou ver isso."),
                tool_chunk(name="lookupPrice", arguments='{"model": "airpods"}'),
                finish_chunk("tool_calls"),
            ],
            [text_chunk("Custam 149 dólares."), finish_chunk("stop")],
        ])

        await agent.submit("Preço?", turn_id=1)

        assert [text for _, _, text in fragments] == [
            "Vou ver isso.",
            "Deixa eu conferir o preço, só um instante.",
            "Custam 149 dólares.",
        ]
        roles = [t.role for t in agent.turns[2:]]
        assert roles == [Role.USER, Role.ASSISTANT, Role.FUNCTION, Role.ASSISTANT]
