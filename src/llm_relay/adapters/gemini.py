"""Gemini adapter for Google's OpenAI-compatible endpoint.

The wire format is OpenAI's; only the accepted parameter set differs.
"""

from __future__ import annotations

from typing import Any

from .openai import OpenAIRequestAdapter

__all__ = ["GeminiRequestAdapter"]

# Rejected by the compatibility layer with a 400.
_UNSUPPORTED_KEYS = ("parallel_tool_calls", "frequency_penalty", "presence_penalty", "user")


class GeminiRequestAdapter(OpenAIRequestAdapter):
    """OpenAI wire format minus the parameters Gemini does not accept."""

    def build_params(self, params: dict[str, Any], model: str) -> dict[str, Any]:
        base_params = super().build_params(params, model)
        for key in _UNSUPPORTED_KEYS:
            base_params.pop(key, None)
        return base_params

    def _requires_max_completion_tokens(self, model: str) -> bool:
        return False
