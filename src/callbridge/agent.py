"""
Conversation agent: OpenAI streaming chat completions with tool calling.

One `submit` is one caller turn. The reply is streamed and cut into
ReplyFragments at phrase-break markers so synthesis can start before the model
finishes. When the model asks for a tool, the tool's announcement is spoken,
the tool runs, its result is appended to the dialogue, and the model is asked
again. The follow-up loop is bounded by `max_tool_depth`.
"""

from __future__ import annotations

import json
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Optional

import structlog
from openai import AsyncOpenAI

from src.callbridge.config import Config, get_config
from src.callbridge.errors import MalformedToolArguments, ToolChainDepthExceeded, ToolExecutionError
from src.callbridge.models import DialogueTurn, ReplyFragment, Role, ToolInvocation
from src.callbridge.prompts import PromptConfig, load_prompt_config
from src.callbridge.tools import ToolContext, ToolRegistry, default_registry

logger = structlog.get_logger(__name__)

_json_decoder = json.JSONDecoder()

FragmentCallback = Callable[[ReplyFragment, int], Awaitable[None]]


def parse_tool_arguments(raw: str) -> dict[str, Any]:
    """
    Parse streamed tool-call arguments into a dict.

    The model occasionally streams the same argument object twice back to back
    (`{...}{...}`); the first object is used in that case.

    Raises:
        MalformedToolArguments: arguments are not a JSON object
    """
    text = (raw or "").strip()
    if not text:
        return {}

    try:
        value = json.loads(text)
    except json.JSONDecodeError as e:
        try:
            value, end = _json_decoder.raw_decode(text)
        except json.JSONDecodeError:
            raise MalformedToolArguments(raw, str(e))
        if not text[end:].lstrip().startswith("{"):
            raise MalformedToolArguments(raw, str(e))
        logger.warning("Duplicated tool arguments from model, using first object", raw=text[:200])

    if not isinstance(value, dict):
        raise MalformedToolArguments(raw, f"expected an object, got {type(value).__name__}")
    return value


@dataclass
class AgentTurnResult:
    """What one `submit` produced."""
    text: str = ""
    fragments: int = 0
    tool_calls: list[str] = field(default_factory=list)
    completions: int = 0
    first_token_ms: float = 0.0
    total_ms: float = 0.0


class ConversationAgent:
    """
    Owns the dialogue log for one call.

    The log is append-only: system prompt, greeting, then user / assistant /
    function turns in the order they happened.
    """

    def __init__(
        self,
        config: Optional[Config] = None,
        tools: Optional[ToolRegistry] = None,
        on_fragment: Optional[FragmentCallback] = None,
        client: Optional[Any] = None,
        prompt: Optional[PromptConfig] = None,
    ):
        if config is None:
            config = get_config()

        self.config = config
        self.tools = tools if tools is not None else default_registry()
        self._on_fragment = on_fragment
        self._client = client or AsyncOpenAI(
            api_key=config.openai_api_key,
            timeout=config.llm_timeout_seconds,
        )
        self._call_sid = ""

        if prompt is None:
            prompt = load_prompt_config(config.prompt_file)
        self._turns: list[DialogueTurn] = [
            DialogueTurn(role=Role.SYSTEM, content=prompt.system_prompt),
            DialogueTurn(role=Role.ASSISTANT, content=prompt.assistant_prompt),
        ]

    @property
    def turns(self) -> tuple[DialogueTurn, ...]:
        return tuple(self._turns)

    @property
    def call_sid(self) -> str:
        return self._call_sid

    def set_fragment_callback(self, callback: FragmentCallback) -> None:
        self._on_fragment = callback

    def set_call_sid(self, call_sid: str) -> None:
        """Expose the call id to the model so tools like call transfer can use it."""
        self._call_sid = call_sid
        self._append(DialogueTurn(role=Role.SYSTEM, content=f"callSid: {call_sid}"))

    def get_initial_greeting(self) -> str:
        return self._turns[1].content

    def get_messages(self) -> list[dict[str, Any]]:
        return [turn.to_message() for turn in self._turns]

    async def submit(self, text: str, turn_id: int) -> AgentTurnResult:
        """
        Run one caller turn to completion.

        Raises:
            ToolChainDepthExceeded: the model kept requesting tools past the cap
            openai.OpenAIError: the completion request failed
        """
        self._append(DialogueTurn(role=Role.USER, content=text))

        result = AgentTurnResult()
        started = time.time()
        next_index = 0
        depth = 0
        marker = self.config.phrase_break_marker

        while True:
            result.completions += 1
            stream = await self._create_stream()

            turn_text = ""
            fragment_text = ""
            invocation = ToolInvocation()
            finish_reason: Optional[str] = None

            async for chunk in stream:
                if not chunk.choices:
                    continue
                choice = chunk.choices[0]
                delta = choice.delta

                if delta is not None:
                    for call in delta.tool_calls or []:
                        if (call.index or 0) != 0:
                            logger.warning("Ignoring parallel tool call", index=call.index)
                            continue
                        function = call.function
                        if function is not None:
                            invocation.add_delta(function.name, function.arguments)

                    content = delta.content or ""
                    if content:
                        if not result.first_token_ms:
                            result.first_token_ms = (time.time() - started) * 1000
                        turn_text += content
                        fragment_text += content
                        if marker and fragment_text.rstrip().endswith(marker):
                            next_index = await self._emit(fragment_text, next_index, turn_id)
                            fragment_text = ""

                if choice.finish_reason:
                    finish_reason = choice.finish_reason

            # Text streamed ahead of a tool call is still spoken and kept.
            next_index = await self._emit(fragment_text, next_index, turn_id)
            if turn_text.strip():
                self._append(DialogueTurn(role=Role.ASSISTANT, content=turn_text))
                result.text += turn_text

            if finish_reason != "tool_calls":
                break

            if depth >= self.config.max_tool_depth:
                logger.error(
                    "Tool chain depth exceeded",
                    max_depth=self.config.max_tool_depth,
                    tool=invocation.name,
                    turn_id=turn_id,
                )
                raise ToolChainDepthExceeded(self.config.max_tool_depth, invocation.name or None)
            depth += 1

            if invocation.is_empty or not invocation.name:
                logger.error("Model finished with tool_calls but sent no tool call", turn_id=turn_id)
                break

            try:
                args = parse_tool_arguments(invocation.raw_arguments)
            except MalformedToolArguments as e:
                logger.error(
                    "Dropping tool call with malformed arguments",
                    tool=invocation.name,
                    error=str(e),
                    turn_id=turn_id,
                )
                invocation.complete(None)
                break
            invocation.complete(args)
            result.tool_calls.append(invocation.name)

            next_index = await self._emit(self.tools.announcement(invocation.name), next_index, turn_id)

            tool_result = await self._run_tool(invocation)
            self._append(
                DialogueTurn(
                    role=Role.FUNCTION,
                    content=json.dumps(tool_result, ensure_ascii=False),
                    name=invocation.name,
                )
            )

        result.fragments = next_index
        result.total_ms = (time.time() - started) * 1000
        logger.info(
            "Agent turn complete",
            turn_id=turn_id,
            fragments=result.fragments,
            tool_calls=result.tool_calls,
            completions=result.completions,
            first_token_ms=round(result.first_token_ms, 2),
            total_ms=round(result.total_ms, 2),
            dialogue_turns=len(self._turns),
        )
        return result

    async def _create_stream(self):
        kwargs: dict[str, Any] = {
            "model": self.config.openai_model,
            "messages": self.get_messages(),
            "stream": True,
        }
        definitions = self.tools.definitions()
        if definitions:
            kwargs["tools"] = definitions
        return await self._client.chat.completions.create(**kwargs)

    async def _run_tool(self, invocation: ToolInvocation) -> dict[str, Any]:
        context = ToolContext(call_sid=self._call_sid, config=self.config)
        try:
            return await self.tools.execute(
                invocation.name,
                invocation.parsed_arguments or {},
                context,
                timeout=self.config.tool_timeout_seconds,
            )
        except ToolExecutionError as e:
            logger.error("Tool execution failed", tool=invocation.name, error=str(e))
            return {"ok": False, "error": str(e)}

    async def _emit(self, text: str, index: int, turn_id: int) -> int:
        """Emit a fragment if it has speakable text; return the next sequence index."""
        marker = self.config.phrase_break_marker
        speakable = (text.replace(marker, " ") if marker else text).strip()
        if not speakable:
            return index

        fragment = ReplyFragment(sequence_index=index, text=" ".join(speakable.split()))
        logger.debug("Reply fragment", turn_id=turn_id, sequence_index=index, text=fragment.text[:60])
        if self._on_fragment:
            await self._on_fragment(fragment, turn_id)
        return index + 1

    def _append(self, turn: DialogueTurn) -> None:
        self._turns.append(turn)
