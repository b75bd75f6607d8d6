"""Environment and file based configuration."""

from __future__ import annotations

import json
import os
from dataclasses import dataclass, field
from enum import StrEnum
from pathlib import Path
from typing import Any, Final

from dotenv import load_dotenv

from llm_relay._exceptions import RegistryConfigError

load_dotenv()

__all__ = [
    "Provider",
    "get_api_key",
    "get_host",
    "DEFAULT_OLLAMA_HOST",
    "DEFAULT_TOOL_DELIMITER",
    "McpServerConfig",
    "load_mcp_config",
]

DEFAULT_OLLAMA_HOST: Final[str] = "http://127.0.0.1:11434"
DEFAULT_TOOL_DELIMITER: Final[str] = "_"


class Provider(StrEnum):
    OPENAI = "openai"
    ANTHROPIC = "anthropic"
    GEMINI = "gemini"
    OLLAMA = "ollama"


_ENV_VARS: Final[dict[Provider, str]] = {
    Provider.OPENAI: "OPENAI_API_KEY",
    Provider.ANTHROPIC: "ANTHROPIC_API_KEY",
    Provider.GEMINI: "GEMINI_API_KEY",
}

_HOST_VARS: Final[dict[Provider, str]] = {
    Provider.OPENAI: "OPENAI_BASE_URL",
    Provider.ANTHROPIC: "ANTHROPIC_BASE_URL",
    Provider.OLLAMA: "OLLAMA_HOST",
}


def get_api_key(provider: Provider) -> str:
    """Return the API key for *provider* or raise RuntimeError."""
    try:
        env_var = _ENV_VARS[provider]
    except KeyError:
        raise RuntimeError(f"{provider!s} does not use an API key") from None

    try:
        return os.environ[env_var]
    except KeyError as exc:
        raise RuntimeError(f"{env_var} missing") from exc


def get_host(provider: Provider) -> str | None:
    """Return the configured endpoint override for *provider*, if any."""
    env_var = _HOST_VARS.get(provider)
    host = os.environ.get(env_var) if env_var else None
    if provider is Provider.OLLAMA:
        return host or DEFAULT_OLLAMA_HOST
    return host


@dataclass(frozen=True, slots=True)
class McpServerConfig:
    """How to launch one stdio tool server. ``name`` doubles as its tool prefix."""

    name: str
    command: str
    args: list[str] = field(default_factory=list)
    env: dict[str, str] = field(default_factory=dict)


def load_mcp_config(path: str | os.PathLike[str]) -> list[McpServerConfig]:
    """
    Parse a ``{"mcpServers": {name: {command, args, env}}}`` JSON file.

    Raises:
        RegistryConfigError: if the file is missing, unreadable or malformed.
    """
    try:
        data: Any = json.loads(Path(path).read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as exc:
        raise RegistryConfigError(f"Cannot read MCP config {path}: {exc}", exc) from exc

    servers = data.get("mcpServers") if isinstance(data, dict) else None
    if not isinstance(servers, dict):
        raise RegistryConfigError(f"{path}: 'mcpServers' must be an object")

    configs: list[McpServerConfig] = []
    for name, entry in servers.items():
        if not isinstance(entry, dict) or not isinstance(entry.get("command"), str):
            raise RegistryConfigError(f"{path}: server {name!r} needs a 'command' string")
        configs.append(
            McpServerConfig(
                name=name,
                command=entry["command"],
                args=[str(a) for a in entry.get("args", [])],
                env={str(k): str(v) for k, v in entry.get("env", {}).items()},
            )
        )
    return configs
