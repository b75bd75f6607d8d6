"""OpenAI Chat Completions adapter: pure request and stream-chunk transformations."""

from __future__ import annotations

import json
from typing import Any, Optional

from openai.types.chat import ChatCompletionChunk

from llm_relay.params import normalize_params
from llm_relay.schema import sanitize_schema
from llm_relay.types import (
    ChatRequest,
    Message,
    ResponseChunk,
    SystemMessage,
    ToolCallDelta,
    ToolInfo,
    ToolMessage,
    Usage,
    UserMessage,
)

__all__ = ["OpenAIRequestAdapter", "OpenAIStreamNormalizer", "tool_content_text"]

# Non-standard fields OpenAI-compatible servers use for reasoning text.
_REASONING_FIELDS = ("reasoning_content", "reasoning")

# Sent through ``extra_body`` because the SDK does not know them on every version.
_PASSTHROUGH_KEYS = ("verbosity", "reasoning_effort")


def tool_content_text(content: Any) -> str:
    """Tool results travel as text on the wire; structured values become JSON."""
    if isinstance(content, str):
        return content
    return json.dumps(content)


class OpenAIRequestAdapter:
    """Adapter for converting between the relay model and OpenAI Chat Completions."""

    #: Echo assistant thinking back as ``reasoning_content`` (llama.cpp, vLLM accept it).
    send_reasoning: bool = False

    def __init__(self, *, send_reasoning: Optional[bool] = None) -> None:
        if send_reasoning is not None:
            self.send_reasoning = send_reasoning

    def to_provider(self, request: ChatRequest) -> dict[str, Any]:
        """Build keyword arguments for ``chat.completions.create``."""
        messages: list[dict[str, Any]] = []
        if request.system:
            messages.append({"role": "system", "content": request.system})
        messages.extend(self.build_message(m) for m in request.messages)

        args: dict[str, Any] = {
            "model": request.model,
            "messages": messages,
            "stream": True,
            "stream_options": {"include_usage": True},
        }
        if request.tools:
            args["tools"] = [self.build_tool(t) for t in request.tools]

        args.update(self.build_params(request.params, request.model))
        return args

    def build_message(self, msg: Message) -> dict[str, Any]:
        if isinstance(msg, (UserMessage, SystemMessage)):
            return {"role": msg.role, "content": msg.content}

        if isinstance(msg, ToolMessage):
            return {
                "role": "tool",
                "tool_call_id": msg.tool_call_id,
                "content": tool_content_text(msg.content),
            }

        openai_msg: dict[str, Any] = {"role": "assistant", "content": msg.content or None}
        if msg.tool_calls:
            openai_msg["tool_calls"] = [
                {
                    "id": tc.id,
                    "type": "function",
                    "function": {"name": tc.name, "arguments": tc.arguments_json()},
                }
                for tc in msg.tool_calls
            ]
        elif openai_msg["content"] is None:
            # OpenAI: content may only be null when tool_calls is present
            openai_msg["content"] = ""
        if self.send_reasoning and msg.thinking:
            openai_msg["reasoning_content"] = msg.thinking
        return openai_msg

    def build_tool(self, tool: ToolInfo) -> dict[str, Any]:
        return {
            "type": "function",
            "function": {
                "name": tool.name,
                "description": tool.description,
                "parameters": sanitize_schema(tool.parameters),
            },
        }

    def build_params(self, params: dict[str, Any], model: str) -> dict[str, Any]:
        """Convert normalized params to OpenAI API arguments."""
        base_params = normalize_params(params)
        extras = base_params.pop("extra")
        base_params = {k: v for k, v in base_params.items() if v is not None}

        if "max_tokens" in base_params and self._requires_max_completion_tokens(model):
            base_params["max_completion_tokens"] = base_params.pop("max_tokens")

        extra_body = dict(extras.pop("extra_body", None) or {})
        for key in _PASSTHROUGH_KEYS:
            if key in extras:
                extra_body[key] = extras.pop(key)
        if extra_body:
            base_params["extra_body"] = extra_body

        for k, v in extras.items():
            base_params.setdefault(k, v)
        return base_params

    def _requires_max_completion_tokens(self, model: str) -> bool:
        """Reasoning models reject ``max_tokens`` in favour of ``max_completion_tokens``."""
        return any(model.startswith(prefix) for prefix in ("gpt-5", "o1", "o3", "o4"))

    def normalizer(self) -> "OpenAIStreamNormalizer":
        return OpenAIStreamNormalizer()


class OpenAIStreamNormalizer:
    """
    Stateful per-stream translation of ``ChatCompletionChunk`` into ``ResponseChunk``.

    Usage is held back and released by :meth:`finish`, so it appears exactly
    once, on the last chunk, regardless of how often the server reports it.
    """

    def __init__(self) -> None:
        self._usage: Optional[Usage] = None
        self._next_index = 0

    def feed(self, raw: ChatCompletionChunk) -> Optional[ResponseChunk]:
        content: list[str] = []
        thinking: list[str] = []
        deltas: list[ToolCallDelta] = []

        for choice in raw.choices or []:
            delta = choice.delta
            if delta is None:
                continue
            if delta.content:
                content.append(delta.content)
            for field in _REASONING_FIELDS:
                text = getattr(delta, field, None)
                if isinstance(text, str) and text:
                    thinking.append(text)
                    break
            for tc in delta.tool_calls or []:
                deltas.append(self._tool_delta(tc))

        if raw.usage is not None:
            self._usage = Usage(
                prompt_tokens=raw.usage.prompt_tokens or 0,
                completion_tokens=raw.usage.completion_tokens or 0,
            )

        if not content and not thinking and not deltas:
            return None
        return ResponseChunk(
            content="".join(content) or None,
            thinking="".join(thinking) or None,
            tool_calls=tuple(deltas),
        )

    def _tool_delta(self, tc: Any) -> ToolCallDelta:
        index = getattr(tc, "index", None)
        if index is None:
            # Some compatible servers (Gemini) omit the index and send whole calls.
            index = self._next_index
        self._next_index = max(self._next_index, index + 1)
        function = tc.function
        return ToolCallDelta(
            index=index,
            id=tc.id or None,
            name=(function.name or None) if function else None,
            arguments_fragment=(function.arguments or None) if function else None,
        )

    def finish(self) -> Optional[ResponseChunk]:
        if self._usage is None:
            return None
        return ResponseChunk(usage=self._usage)
