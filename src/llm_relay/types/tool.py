"""
Provider‑neutral dataclasses for tool use.

They are intentionally minimal: everything provider‑specific lives in adapters.
"""
from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any

__all__ = ["ToolCall", "ToolInfo", "ToolResult"]


@dataclass(frozen=True, slots=True)
class ToolCall:
    """A finalized, model‑agnostic request emitted by the LLM to call a tool.

    ``parse_error`` is set when the streamed argument text was not valid JSON;
    the call is then answered with an error instead of being executed.
    """
    id: str
    name: str
    arguments: Any = field(default_factory=dict)
    parse_error: str | None = None
    raw_arguments: str | None = None

    @property
    def is_valid(self) -> bool:
        return self.parse_error is None

    def arguments_json(self) -> str:
        """Argument text as sent back to providers that expect a JSON string."""
        if self.parse_error is not None:
            return self.raw_arguments or ""
        return json.dumps(self.arguments)


@dataclass(frozen=True, slots=True)
class ToolInfo:
    """Name, description and JSON schema of a callable tool."""
    name: str
    description: str = ""
    parameters: dict[str, Any] = field(default_factory=lambda: {"type": "object", "properties": {}})


@dataclass(slots=True)
class ToolResult:
    """Outcome of one tool execution.

    Exactly one of ``content`` (success) or ``error`` is meaningful.
    """
    id: str                     # must match the call id
    name: str
    content: Any = None
    error: str | None = None

    @property
    def is_error(self) -> bool:
        return self.error is not None

    def as_content(self) -> Any:
        """Structured value stored in the Tool message."""
        if self.error is not None:
            return {"error": self.error}
        return self.content
