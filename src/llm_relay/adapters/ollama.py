"""Ollama adapter: pure request and stream-chunk transformations."""

from __future__ import annotations

import json
from typing import Any, Final, Optional

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

__all__ = ["OllamaRequestAdapter", "OllamaStreamNormalizer"]

# Extra keys that are top-level ``chat()`` arguments; everything else is a model option.
_TOP_LEVEL_KEYS: Final[frozenset[str]] = frozenset({"think", "keep_alive", "format"})

_OPTION_NAMES: Final[dict[str, str]] = {
    "max_tokens": "num_predict",
    "temperature": "temperature",
    "top_p": "top_p",
    "seed": "seed",
    "stop": "stop",
    "frequency_penalty": "frequency_penalty",
    "presence_penalty": "presence_penalty",
}


def _as_dict(raw: Any) -> dict[str, Any]:
    if hasattr(raw, "model_dump"):
        return raw.model_dump()
    if isinstance(raw, dict):
        return raw
    return vars(raw)


class OllamaRequestAdapter:
    """Adapter for converting between the relay model and ``ollama.AsyncClient.chat``."""

    def to_provider(self, request: ChatRequest) -> dict[str, Any]:
        messages: list[dict[str, Any]] = []
        if request.system:
            messages.append({"role": "system", "content": request.system})

        for msg in request.messages:
            if isinstance(msg, (UserMessage, SystemMessage)):
                messages.append({"role": msg.role, "content": msg.content})
            elif isinstance(msg, ToolMessage):
                messages.append(
                    {
                        "role": "tool",
                        "content": tool_content_text(msg.content),
                        "tool_name": msg.name,
                    }
                )
            elif isinstance(msg, AssistantMessage):
                ollama_msg: dict[str, Any] = {"role": "assistant", "content": msg.content or ""}
                if msg.thinking:
                    ollama_msg["thinking"] = msg.thinking
                if msg.tool_calls:
                    ollama_msg["tool_calls"] = [
                        {
                            "function": {
                                "name": tc.name,
                                "arguments": tc.arguments if tc.is_valid else {},
                            }
                        }
                        for tc in msg.tool_calls
                    ]
                messages.append(ollama_msg)

        args: dict[str, Any] = {"model": request.model, "messages": messages, "stream": True}
        if request.tools:
            args["tools"] = [self.build_tool(t) for t in request.tools]
        args.update(self.build_params(request.params))
        return args

    def build_tool(self, tool: ToolInfo) -> dict[str, Any]:
        return {
            "type": "function",
            "function": {
                "name": tool.name,
                "description": tool.description,
                "parameters": sanitize_schema(tool.parameters),
            },
        }

    def build_params(self, params: dict[str, Any]) -> dict[str, Any]:
        base_params = normalize_params(params)
        extras = dict(base_params.pop("extra"))

        options: dict[str, Any] = dict(extras.pop("options", None) or {})
        for key, value in base_params.items():
            if value is not None and key in _OPTION_NAMES:
                options[_OPTION_NAMES[key]] = value

        out: dict[str, Any] = {}
        for key in _TOP_LEVEL_KEYS:
            if key in extras:
                out[key] = extras.pop(key)
        options.update(extras)
        if options:
            out["options"] = options
        return out

    def normalizer(self) -> "OllamaStreamNormalizer":
        return OllamaStreamNormalizer()


class OllamaStreamNormalizer:
    """
    Per-stream translation of Ollama chat chunks.

    Ollama sends each tool call whole, with parsed arguments and no id. Every
    call gets the next stream-local index and one complete JSON fragment; ids
    are left for the assembler to assign.
    """

    def __init__(self) -> None:
        self._next_index = 0
        self._usage: Optional[Usage] = None

    def feed(self, raw: Any) -> Optional[ResponseChunk]:
        chunk = _as_dict(raw)
        message = chunk.get("message") or {}

        deltas: list[ToolCallDelta] = []
        for tc in message.get("tool_calls") or []:
            function = tc.get("function") or {}
            arguments = function.get("arguments")
            deltas.append(
                ToolCallDelta(
                    index=self._next_index,
                    name=function.get("name") or None,
                    arguments_fragment=json.dumps(arguments if arguments is not None else {}),
                )
            )
            self._next_index += 1

        if chunk.get("done"):
            self._usage = Usage(
                prompt_tokens=chunk.get("prompt_eval_count") or 0,
                completion_tokens=chunk.get("eval_count") or 0,
            )

        content = message.get("content") or None
        thinking = message.get("thinking") or None
        if not content and not thinking and not deltas:
            return None
        return ResponseChunk(content=content, thinking=thinking, tool_calls=tuple(deltas))

    def finish(self) -> Optional[ResponseChunk]:
        if self._usage is None:
            return None
        return ResponseChunk(usage=self._usage)
