"""Pure transformation adapters for different LLM providers."""

from .openai import OpenAIRequestAdapter, OpenAIStreamNormalizer
from .anthropic import AnthropicRequestAdapter, AnthropicStreamNormalizer
from .gemini import GeminiRequestAdapter
from .ollama import OllamaRequestAdapter, OllamaStreamNormalizer

__all__ = [
    "OpenAIRequestAdapter",
    "OpenAIStreamNormalizer",
    "AnthropicRequestAdapter",
    "AnthropicStreamNormalizer",
    "GeminiRequestAdapter",
    "OllamaRequestAdapter",
    "OllamaStreamNormalizer",
]
