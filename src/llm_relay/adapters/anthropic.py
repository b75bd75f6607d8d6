"""Anthropic Messages adapter: pure request and stream-event transformations."""

from __future__ import annotations

from typing import Any, Optional

from llm_relay.adapters.openai import tool_content_text
from llm_relay.params import normalize_params
from llm_relay.schema import sanitize_schema
from llm_relay.types import (
    AssistantMessage,
    ChatRequest,
    ResponseChunk,
    SystemMessage,
    ToolCallDelta,
    ToolInfo,
    ToolMessage,
    Usage,
    UserMessage,
)

__all__ = ["AnthropicRequestAdapter", "AnthropicStreamNormalizer"]

DEFAULT_MAX_TOKENS = 4096

_TOOL_CHOICE = {
    "auto": {"type": "auto"},
    "required": {"type": "any"},
    "any": {"type": "any"},
    "none": {"type": "none"},
}


class AnthropicRequestAdapter:
    """Adapter for converting between the relay model and Anthropic Messages."""

    def to_provider(self, request: ChatRequest) -> dict[str, Any]:
        """Build keyword arguments for ``messages.stream``."""
        # Anthropic takes system text out-of-band, so system messages are folded in
        system_parts = [request.system] if request.system else []
        messages: list[dict[str, Any]] = []

        for msg in request.messages:
            if isinstance(msg, SystemMessage):
                system_parts.append(msg.content)
            elif isinstance(msg, UserMessage):
                messages.append({"role": "user", "content": msg.content})
            elif isinstance(msg, ToolMessage):
                block = {
                    "type": "tool_result",
                    "tool_use_id": msg.tool_call_id,
                    "content": tool_content_text(msg.content),
                }
                if msg.is_error:
                    block["is_error"] = True
                # All results for one assistant turn must share a single user message
                last = messages[-1] if messages else None
                if last and last["role"] == "user" and isinstance(last["content"], list):
                    last["content"].append(block)
                else:
                    messages.append({"role": "user", "content": [block]})
            elif isinstance(msg, AssistantMessage):
                blocks = self.assistant_blocks(msg)
                if blocks:
                    messages.append({"role": "assistant", "content": blocks})

        args: dict[str, Any] = {"model": request.model, "messages": messages}
        if system_parts:
            args["system"] = "\n".join(system_parts)
        if request.tools:
            args["tools"] = [self.build_tool(t) for t in request.tools]
        args.update(self.build_params(request.params))
        return args

    def assistant_blocks(self, msg: AssistantMessage) -> list[dict[str, Any]]:
        # Thinking is not replayed: Anthropic requires a server signature on it.
        blocks: list[dict[str, Any]] = []
        if msg.content:
            blocks.append({"type": "text", "text": msg.content})
        for tc in msg.tool_calls:
            blocks.append(
                {
                    "type": "tool_use",
                    "id": tc.id,
                    "name": tc.name,
                    "input": tc.arguments if isinstance(tc.arguments, dict) and tc.is_valid else {},
                }
            )
        return blocks

    def build_tool(self, tool: ToolInfo) -> dict[str, Any]:
        return {
            "name": tool.name,
            "description": tool.description,
            "input_schema": sanitize_schema(tool.parameters),
        }

    def build_params(self, params: dict[str, Any]) -> dict[str, Any]:
        base_params = normalize_params(params)
        extras = base_params.pop("extra")
        base_params = {k: v for k, v in base_params.items() if v is not None}

        # Anthropic requires max_tokens
        base_params.setdefault("max_tokens", DEFAULT_MAX_TOKENS)

        if "stop" in base_params:
            stop = base_params.pop("stop")
            base_params["stop_sequences"] = stop if isinstance(stop, list) else [stop]

        parallel = base_params.pop("parallel_tool_calls", None)
        if "tool_choice" in base_params:
            choice = base_params["tool_choice"]
            if isinstance(choice, str):
                choice = dict(_TOOL_CHOICE.get(choice, {"type": "tool", "name": choice}))
            if parallel is False and choice.get("type") != "none":
                choice["disable_parallel_tool_use"] = True
            base_params["tool_choice"] = choice

        user = base_params.pop("user", None)
        if user:
            base_params["metadata"] = {"user_id": user}
        for unsupported in ("seed", "frequency_penalty", "presence_penalty"):
            base_params.pop(unsupported, None)

        for k, v in extras.items():
            base_params.setdefault(k, v)
        return base_params

    def normalizer(self) -> "AnthropicStreamNormalizer":
        return AnthropicStreamNormalizer()


class AnthropicStreamNormalizer:
    """
    Per-stream translation of Anthropic stream events into ``ResponseChunk``.

    Tool-call fragments are indexed by content-block index. Input tokens arrive
    on ``message_start`` and output tokens on ``message_delta``; both are held
    and emitted once by :meth:`finish`. Helper events synthesized by the SDK
    (``text``, ``input_json``…) duplicate the raw deltas and are ignored.
    """

    def __init__(self) -> None:
        self._prompt_tokens: Optional[int] = None
        self._completion_tokens: Optional[int] = None

    def feed(self, event: Any) -> Optional[ResponseChunk]:
        kind = getattr(event, "type", None)

        if kind == "message_start":
            usage = getattr(event.message, "usage", None)
            if usage is not None:
                self._prompt_tokens = usage.input_tokens
            return None

        if kind == "message_delta":
            usage = getattr(event, "usage", None)
            if usage is not None:
                self._completion_tokens = usage.output_tokens
            return None

        if kind == "content_block_start":
            block = event.content_block
            if block.type == "tool_use":
                return ResponseChunk(
                    tool_calls=(ToolCallDelta(index=event.index, id=block.id, name=block.name),)
                )
            if block.type == "text" and block.text:
                return ResponseChunk(content=block.text)
            if block.type == "thinking" and block.thinking:
                return ResponseChunk(thinking=block.thinking)
            return None

        if kind == "content_block_delta":
            delta = event.delta
            if delta.type == "text_delta":
                return ResponseChunk(content=delta.text) if delta.text else None
            if delta.type == "thinking_delta":
                return ResponseChunk(thinking=delta.thinking) if delta.thinking else None
            if delta.type == "input_json_delta" and delta.partial_json:
                return ResponseChunk(
                    tool_calls=(
                        ToolCallDelta(index=event.index, arguments_fragment=delta.partial_json),
                    )
                )
        return None

    def finish(self) -> Optional[ResponseChunk]:
        if self._prompt_tokens is None and self._completion_tokens is None:
            return None
        return ResponseChunk(
            usage=Usage(
                prompt_tokens=self._prompt_tokens or 0,
                completion_tokens=self._completion_tokens or 0,
            )
        )
