"""
Translate noisy provider tracebacks into a small hierarchy of `LLMRelayError`s,
while preserving the original exception for full tracebacks.
"""

from __future__ import annotations

import json
import logging
from typing import TYPE_CHECKING, Final, Optional, Sequence, Type

import anthropic
import httpx
import ollama
import openai
import pydantic

if TYPE_CHECKING:
    from llm_relay.types.chat import Message

__all__: tuple[str, ...] = (
    "LLMRelayError",
    "ProviderError",
    "TransportError",
    "AuthError",
    "MalformedResponseError",
    "ToolCallParseError",
    "ToolExecutionError",
    "ToolTimeoutError",
    "ProviderTransportError",
    "ProviderClosedError",
    "RegistryConfigError",
    "TurnError",
    "CancellationError",
    "TurnLimitError",
    "classify_error",
)


class LLMRelayError(RuntimeError):
    """Public relay‐level exception.

    Attributes:
        original_exc: The underlying exception, if any.
    """

    original_exc: Optional[BaseException]

    def __init__(self, message: str, original_exc: Optional[BaseException] = None) -> None:
        super().__init__(message)
        self.original_exc = original_exc
        if original_exc is not None:
            self.__cause__ = original_exc


# --- provider (turn-fatal) -------------------------------------------------


class ProviderError(LLMRelayError):
    """A provider adapter failed; the turn is aborted and never retried."""

    history: Optional[list["Message"]] = None


class TransportError(ProviderError):
    """Connection, timeout, rate limit or server-side failure."""


class AuthError(ProviderError):
    """Credentials were rejected. Not retryable without caller action."""


class MalformedResponseError(ProviderError):
    """The provider answered with something that could not be decoded."""


# --- call-local ------------------------------------------------------------


class ToolCallParseError(LLMRelayError):
    """Streamed tool-call arguments were not valid JSON."""


class ToolExecutionError(LLMRelayError):
    """A tool ran and failed."""


class ToolTimeoutError(ToolExecutionError):
    """A tool did not answer before its deadline."""


class ProviderTransportError(ToolExecutionError):
    """An external tool provider had a transient transport failure."""


class ProviderClosedError(ToolExecutionError):
    """An external tool provider is gone for good."""


# --- startup ---------------------------------------------------------------


class RegistryConfigError(LLMRelayError):
    """Invalid tool-server registration (bad or duplicate prefix, bad config file)."""


# --- turn-local ------------------------------------------------------------


class TurnError(LLMRelayError):
    """A turn ended without a terminal answer. ``history`` is left consistent."""

    def __init__(
        self,
        message: str,
        original_exc: Optional[BaseException] = None,
        *,
        history: Optional[list["Message"]] = None,
    ) -> None:
        super().__init__(message, original_exc)
        self.history = history


class CancellationError(TurnError):
    """The turn was cancelled or ran past its deadline."""


class TurnLimitError(TurnError):
    """The model kept requesting tools past the configured round limit."""


AUTH_ERRORS: Final[tuple[Type[BaseException], ...]] = (
    openai.AuthenticationError,
    openai.PermissionDeniedError,
    anthropic.AuthenticationError,
    anthropic.PermissionDeniedError,
)

MALFORMED_ERRORS: Final[tuple[Type[BaseException], ...]] = (
    openai.APIResponseValidationError,
    anthropic.APIResponseValidationError,
    pydantic.ValidationError,
    json.JSONDecodeError,
    httpx.DecodingError,
)

CONN_ERRORS: Final[tuple[Type[BaseException], ...]] = (
    openai.APIConnectionError,
    anthropic.APIConnectionError,
    httpx.TransportError,
    TimeoutError,
    ConnectionError,
)

RATE_LIMIT_ERRORS: Final[tuple[Type[BaseException], ...]] = (
    openai.RateLimitError,
    anthropic.RateLimitError,
)

API_ERRORS: Final[tuple[Type[BaseException], ...]] = (
    openai.APIError,
    anthropic.APIError,
    httpx.HTTPError,
)

_AUTH_STATUS: Final[Sequence[int]] = (401, 403)


def classify_error(
    exc: BaseException,
    logger: Optional[logging.Logger] = None,
) -> ProviderError:
    """Wrap an SDK exception in a ProviderError subclass with a concise message."""
    log = logger or logging.getLogger("llm_relay.exceptions")

    if isinstance(exc, ProviderError):
        return exc

    kind: Type[ProviderError]
    if isinstance(exc, AUTH_ERRORS):
        kind, msg = AuthError, "Credentials rejected by the LLM provider"
    elif isinstance(exc, ollama.ResponseError):
        if exc.status_code in _AUTH_STATUS:
            kind, msg = AuthError, "Credentials rejected by the LLM provider"
        else:
            kind, msg = TransportError, f"Provider returned status {exc.status_code}"
    elif isinstance(exc, MALFORMED_ERRORS):
        kind, msg = MalformedResponseError, "Provider sent a malformed response"
    elif isinstance(exc, RATE_LIMIT_ERRORS):
        kind, msg = TransportError, "Rate‑limit exceeded – please retry later"
    elif isinstance(exc, CONN_ERRORS):
        kind, msg = TransportError, "Connection problem – unable to reach the LLM provider"
    elif isinstance(exc, API_ERRORS):
        kind, msg = TransportError, "Provider reported an internal error"
    else:
        kind, msg = TransportError, exc.__class__.__name__

    log.warning("Wrapping provider exception", extra={"exc": exc})
    return kind(f"{msg}: {exc}", exc)
