"""
LLM clients with a unified streaming ``stream()`` method.
"""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import (
    Any,
    AsyncIterator,
    Optional,
    Protocol,
    Self,
)

import ollama
from anthropic import AsyncAnthropic
from openai import AsyncOpenAI

from llm_relay._exceptions import MalformedResponseError, ProviderError, classify_error
from llm_relay.adapters import (
    AnthropicRequestAdapter,
    GeminiRequestAdapter,
    OllamaRequestAdapter,
    OpenAIRequestAdapter,
)
from llm_relay.config import Provider, get_api_key, get_host
from llm_relay.types import ChatRequest, ResponseChunk

__all__ = [
    "StreamNormalizer",
    "RequestAdapter",
    "BaseAsyncLLM",
    "OpenAILLM",
    "AnthropicLLM",
    "GeminiLLM",
    "OllamaLLM",
    "create_llm",
]

# Raised by a normalizer when an event does not have the shape it expects.
_DECODE_ERRORS = (AttributeError, KeyError, IndexError, TypeError, ValueError)


class StreamNormalizer(Protocol):
    """Per-stream, stateful mapping from raw vendor events to ``ResponseChunk``."""

    def feed(self, raw: Any) -> Optional[ResponseChunk]:
        """Translate one raw event; ``None`` when it carries nothing to forward."""
        ...

    def finish(self) -> Optional[ResponseChunk]:
        """Final chunk (usage) once the raw stream is exhausted."""
        ...


class RequestAdapter(Protocol):
    """Protocol for adapting between the relay model and a provider wire format."""

    def to_provider(self, request: ChatRequest) -> dict[str, Any]:
        """Convert a ChatRequest into provider-specific request arguments."""
        ...

    def normalizer(self) -> StreamNormalizer:
        """Fresh normalizer for one response stream."""
        ...


class BaseAsyncLLM(ABC):
    """
    Abstract base class for async-first, streaming-only LLM backends.

    ``stream`` is the whole contract: it yields normalized chunks in arrival
    order and raises ``TransportError``, ``AuthError`` or
    ``MalformedResponseError``. Nothing is retried here.
    """

    def __init__(
        self,
        model: str,
        *,
        logger: Optional[logging.Logger] = None,
        name: Optional[str] = None,
        **kwargs: Any,
    ) -> None:
        self.model = model
        self.logger = logger or logging.getLogger(__name__)
        self.name = name or self.__class__.__name__

    @property
    @abstractmethod
    def adapter(self) -> RequestAdapter:
        """Request adapter for this provider."""
        ...

    @abstractmethod
    async def _stream_impl(self, args: dict[str, Any]) -> AsyncIterator[Any]:
        """
        Open the vendor stream.

        Args:
            args: Provider request arguments built by ``adapter.to_provider``.

        Returns:
            Async iterator over raw provider events.
        """
        ...

    async def list_models(self) -> list[str]:
        """Model identifiers offered by this backend."""
        return []

    async def stream(self, request: ChatRequest) -> AsyncIterator[ResponseChunk]:
        """
        Send a chat request and yield normalized response chunks.

        The final chunk carries usage when the provider reports it.
        """
        args = self.adapter.to_provider(request)
        normalizer = self.adapter.normalizer()
        self._log(
            f"Streaming from model {args.get('model')} "
            f"({len(request.messages)} messages, {len(request.tools)} tools)",
            logging.DEBUG,
        )

        try:
            async for raw in self._stream_impl(args):
                try:
                    chunk = normalizer.feed(raw)
                except _DECODE_ERRORS as exc:
                    raise MalformedResponseError(
                        f"Unexpected stream event from {self.name}: {exc!r}", exc
                    ) from exc
                if chunk is not None and not chunk.is_empty:
                    yield chunk
        except (asyncio.CancelledError, ProviderError):
            raise
        except Exception as exc:
            raise classify_error(exc, self.logger) from exc

        final = normalizer.finish()
        if final is not None:
            yield final

    def _log(self, message: str, level: int = logging.INFO) -> None:
        self.logger.log(level, f"[{self.name}] {message}")

    # --- lifecycle ---------------------------------------------------------
    async def aclose(self) -> None:
        """
        Close underlying async HTTP clients to avoid cleanup after the loop closes.
        Safe to call multiple times.
        """
        client = getattr(self, "_client", None)
        close = getattr(client, "close", None) or getattr(client, "aclose", None)
        if close:
            await close()

    async def __aenter__(self) -> Self:
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.aclose()


class OpenAILLM(BaseAsyncLLM):
    """
    OpenAI Chat Completions backend (also any OpenAI-compatible server).

    Use ``OpenAILLM.from_client`` when you already have an ``AsyncOpenAI`` instance.
    """

    adapter_class: type[OpenAIRequestAdapter] = OpenAIRequestAdapter

    def __init__(
        self,
        model: str,
        *,
        api_key: str,
        timeout: float = 60.0,
        max_retries: int = 0,
        logger: Optional[logging.Logger] = None,
        name: Optional[str] = None,
        base_url: Optional[str] = None,
        send_reasoning: Optional[bool] = None,
    ) -> None:
        super().__init__(model=model, logger=logger, name=name)
        self._client = AsyncOpenAI(
            api_key=api_key,
            timeout=timeout,
            max_retries=max_retries,
            base_url=base_url,
        )
        self._adapter = self.adapter_class(send_reasoning=send_reasoning)

    @classmethod
    def from_client(
        cls,
        model: str,
        client: AsyncOpenAI,
        *,
        logger: Optional[logging.Logger] = None,
        name: Optional[str] = None,
        send_reasoning: Optional[bool] = None,
    ) -> Self:
        """
        Build around an already‑configured ``AsyncOpenAI`` client.
        """
        if not isinstance(client, AsyncOpenAI):
            raise TypeError(
                f"{cls.__name__}.from_client expects AsyncOpenAI; got {type(client).__name__}"
            )

        self = cls.__new__(cls)  # bypass __init__
        BaseAsyncLLM.__init__(self, model=model, logger=logger, name=name)
        self._client = client
        self._adapter = cls.adapter_class(send_reasoning=send_reasoning)
        return self

    @property
    def adapter(self) -> RequestAdapter:
        return self._adapter

    async def _stream_impl(self, args: dict[str, Any]) -> AsyncIterator[Any]:
        stream = await self._client.chat.completions.create(**args)
        async for chunk in stream:
            yield chunk

    async def list_models(self) -> list[str]:
        page = await self._client.models.list()
        return [m.id for m in page.data]


_DEFAULT_GEMINI_BASE_URL = "https://generativelanguage.googleapis.com/v1beta/openai/"


class GeminiLLM(OpenAILLM):
    """
    Gemini backend via the OpenAI-compatible endpoint.
    """

    adapter_class = GeminiRequestAdapter

    def __init__(
        self,
        model: str,
        *,
        api_key: str,
        timeout: float = 60.0,
        max_retries: int = 0,
        logger: Optional[logging.Logger] = None,
        name: Optional[str] = None,
        base_url: str = _DEFAULT_GEMINI_BASE_URL,
        send_reasoning: Optional[bool] = None,
    ) -> None:
        super().__init__(
            model,
            api_key=api_key,
            timeout=timeout,
            max_retries=max_retries,
            logger=logger,
            name=name,
            base_url=base_url,
            send_reasoning=send_reasoning,
        )


class AnthropicLLM(BaseAsyncLLM):
    """
    Anthropic Messages backend.

    Use ``AnthropicLLM.from_client`` when you already have an ``AsyncAnthropic`` instance.
    """

    def __init__(
        self,
        model: str,
        *,
        api_key: str,
        timeout: float = 60.0,
        max_retries: int = 0,
        logger: Optional[logging.Logger] = None,
        name: Optional[str] = None,
        base_url: Optional[str] = None,
    ) -> None:
        super().__init__(model=model, logger=logger, name=name)
        self._client = AsyncAnthropic(
            api_key=api_key,
            timeout=timeout,
            max_retries=max_retries,
            base_url=base_url,
        )
        self._adapter = AnthropicRequestAdapter()

    @classmethod
    def from_client(
        cls,
        model: str,
        client: AsyncAnthropic,
        *,
        logger: Optional[logging.Logger] = None,
        name: Optional[str] = None,
    ) -> Self:
        """
        Wrap an existing ``AsyncAnthropic`` client.
        """
        if not isinstance(client, AsyncAnthropic):
            raise TypeError(
                f"AnthropicLLM.from_client expects AsyncAnthropic; got {type(client).__name__}"
            )

        self = cls.__new__(cls)  # bypass __init__
        BaseAsyncLLM.__init__(self, model=model, logger=logger, name=name)
        self._client = client
        self._adapter = AnthropicRequestAdapter()
        return self

    @property
    def adapter(self) -> RequestAdapter:
        return self._adapter

    async def _stream_impl(self, args: dict[str, Any]) -> AsyncIterator[Any]:
        """Anthropic streams through a context manager that owns the connection."""
        async with self._client.messages.stream(**args) as stream:
            async for event in stream:
                yield event

    async def list_models(self) -> list[str]:
        page = await self._client.models.list()
        return [m.id for m in page.data]


class OllamaLLM(BaseAsyncLLM):
    """
    Ollama backend over ``ollama.AsyncClient``.
    """

    def __init__(
        self,
        model: str,
        *,
        host: Optional[str] = None,
        timeout: Optional[float] = None,
        logger: Optional[logging.Logger] = None,
        name: Optional[str] = None,
        **kwargs: Any,
    ) -> None:
        super().__init__(model=model, logger=logger, name=name)
        self.host = host or get_host(Provider.OLLAMA)
        self._client = ollama.AsyncClient(host=self.host, timeout=timeout)
        self._adapter = OllamaRequestAdapter()

    @classmethod
    def from_client(
        cls,
        model: str,
        client: ollama.AsyncClient,
        *,
        logger: Optional[logging.Logger] = None,
        name: Optional[str] = None,
    ) -> Self:
        if not isinstance(client, ollama.AsyncClient):
            raise TypeError(
                f"OllamaLLM.from_client expects ollama.AsyncClient; got {type(client).__name__}"
            )

        self = cls.__new__(cls)  # bypass __init__
        BaseAsyncLLM.__init__(self, model=model, logger=logger, name=name)
        self.host = None
        self._client = client
        self._adapter = OllamaRequestAdapter()
        return self

    @property
    def adapter(self) -> RequestAdapter:
        return self._adapter

    async def _stream_impl(self, args: dict[str, Any]) -> AsyncIterator[Any]:
        async for chunk in await self._client.chat(**args):
            yield chunk

    async def list_models(self) -> list[str]:
        response = await self._client.list()
        return [m.model for m in response.models if m.model]

    async def aclose(self) -> None:
        # ollama.AsyncClient keeps its httpx client on ``_client``
        inner = getattr(self._client, "_client", None)
        close = getattr(inner, "aclose", None)
        if close:
            await close()


# Factory for creating LLM instances

_LLM_REGISTRY: dict[Provider, type[BaseAsyncLLM]] = {
    Provider.OPENAI: OpenAILLM,
    Provider.ANTHROPIC: AnthropicLLM,
    Provider.GEMINI: GeminiLLM,
    Provider.OLLAMA: OllamaLLM,
}


def create_llm(
    provider: Provider,
    model: str,
    *,
    api_key: str | None = None,
    client: AsyncOpenAI | AsyncAnthropic | ollama.AsyncClient | None = None,
    logger: logging.Logger | None = None,
    **provider_kwargs: Any,
) -> BaseAsyncLLM:
    """
    Factory for creating any supported LLM backend.

    Args:
        provider: Which provider to use (OPENAI, ANTHROPIC, GEMINI, OLLAMA).
        model: Model identifier (e.g. "gpt-4.1-mini", "qwen3:8b").
        api_key: Overrides automatic lookup; if omitted, pulled from env.
            Ignored for Ollama.
        client: Optional pre-configured client instance to use.
            - Provider.OPENAI / Provider.GEMINI: an AsyncOpenAI instance
            - Provider.ANTHROPIC: an AsyncAnthropic instance
            - Provider.OLLAMA: an ollama.AsyncClient instance
        logger: Optional custom logger.
        **provider_kwargs: Extra args passed through (timeout, base_url, host…).
    """
    try:
        provider = Provider(provider)
        llm_cls = _LLM_REGISTRY[provider]
    except (KeyError, ValueError) as exc:
        raise ValueError(f"Unsupported provider: {provider}") from exc

    if client is not None:  # use caller‑supplied client verbatim
        return llm_cls.from_client(model, client, logger=logger, **provider_kwargs)

    if llm_cls is OllamaLLM:
        return OllamaLLM(model, logger=logger, **provider_kwargs)

    key = api_key or get_api_key(provider)
    if "base_url" not in provider_kwargs and (host := get_host(provider)):
        provider_kwargs["base_url"] = host
    return llm_cls(model=model, api_key=key, logger=logger, **provider_kwargs)
