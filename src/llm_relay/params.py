"""
Request parameter normalization for llm-relay.

Callers put sampling options in ``ChatRequest.params`` as a plain dict.

Contract
- Standard keys are understood by every adapter:
  temperature: float
  max_tokens: int
  top_p: float
  stop: str | list[str]
  tool_choice: str | dict
  parallel_tool_calls: bool
  seed: int
  user: str

- Anything else is vendor specific and is moved under ``extra``, which each
  adapter forwards unchanged (``reasoning_effort``, ``think``, ``options``…).

``stream`` and ``tools`` are not parameters: streaming is always on and the tool
catalog travels in ``ChatRequest.tools``.
"""

from __future__ import annotations

from typing import Any, Final

__all__ = ["STANDARD_KEYS", "normalize_params", "merge_params"]

STANDARD_KEYS: Final[frozenset[str]] = frozenset(
    {
        "temperature",
        "max_tokens",
        "top_p",
        "stop",
        "tool_choice",
        "parallel_tool_calls",
        "seed",
        "user",
        "frequency_penalty",
        "presence_penalty",
    }
)

_RESERVED_KEYS: Final[frozenset[str]] = frozenset({"stream", "tools", "messages", "model"})


def normalize_params(params: dict[str, Any] | None) -> dict[str, Any]:
    """
    Split *params* into standard keys plus an ``extra`` dict.

    Rules:
      - Reserved keys (``stream``, ``tools``, ``messages``, ``model``) are dropped
      - Keys not in STANDARD_KEYS are moved into ``extra``
      - A caller-provided ``extra`` dict is merged last and wins
      - None values are kept so adapters can decide to drop them

    Example
    -------
    >>> normalize_params({"temperature": 0.2, "reasoning_effort": "high"})
    {'temperature': 0.2, 'extra': {'reasoning_effort': 'high'}}
    """
    if params is None:
        return {"extra": {}}
    if not isinstance(params, dict):
        raise TypeError(f"params must be a dict, got {type(params).__name__}")

    user_extra = params.get("extra") or {}
    if not isinstance(user_extra, dict):
        raise TypeError("params['extra'] must be a dict")

    std: dict[str, Any] = {}
    moved: dict[str, Any] = {}
    for key, value in params.items():
        if key == "extra" or key in _RESERVED_KEYS:
            continue
        if key in STANDARD_KEYS:
            std[key] = value
        else:
            moved[key] = value

    std["extra"] = {**moved, **user_extra}
    return std


def merge_params(
    defaults: dict[str, Any] | None, overrides: dict[str, Any] | None
) -> dict[str, Any]:
    """
    Shallow-merge client defaults with per-request overrides, then normalize.

    Top-level keys are overwritten by *overrides*; ``extra`` is merged per key.
    """
    base = normalize_params(defaults)
    over = normalize_params(overrides)
    extra = {**base.pop("extra"), **over.pop("extra")}
    return {**base, **over, "extra": extra}
