"""Environment lookups and MCP config file parsing."""

import json

import pytest

from llm_relay._exceptions import RegistryConfigError
from llm_relay.config import (
    DEFAULT_OLLAMA_HOST,
    Provider,
    get_api_key,
    get_host,
    load_mcp_config,
)


class TestEnvironment:
    def test_api_key_from_env(self, monkeypatch):
        monkeypatch.setenv("GEMINI_API_KEY", "g-key")

        assert get_api_key(Provider.GEMINI) == "g-key"

    def test_ollama_has_no_key(self):
        with pytest.raises(RuntimeError):
            get_api_key(Provider.OLLAMA)

    def test_ollama_host(self, monkeypatch):
        monkeypatch.delenv("OLLAMA_HOST", raising=False)
        assert get_host(Provider.OLLAMA) == DEFAULT_OLLAMA_HOST

        monkeypatch.setenv("OLLAMA_HOST", "http://gpu-box:11434")
        assert get_host(Provider.OLLAMA) == "http://gpu-box:11434"

    def test_openai_base_url(self, monkeypatch):
        monkeypatch.delenv("OPENAI_BASE_URL", raising=False)
        assert get_host(Provider.OPENAI) is None

        monkeypatch.setenv("OPENAI_BASE_URL", "http://localhost:8080/v1")
        assert get_host(Provider.OPENAI) == "http://localhost:8080/v1"


class TestLoadMcpConfig:
    def test_parses_servers(self, tmp_path):
        path = tmp_path / "mcp.json"
        path.write_text(
            json.dumps(
                {
                    "mcpServers": {
                        "files": {"command": "npx", "args": ["-y", "server-fs", 1]},
                        "git": {"command": "uvx", "env": {"GIT_DIR": "/repo", "DEPTH": 3}},
                    }
                }
            )
        )

        files, git = load_mcp_config(path)

        assert files.name == "files"
        assert files.args == ["-y", "server-fs", "1"]
        assert git.env == {"GIT_DIR": "/repo", "DEPTH": "3"}
        assert git.args == []

    @pytest.mark.parametrize(
        "content",
        [
            "not json",
            json.dumps([]),
            json.dumps({"mcpServers": []}),
            json.dumps({"mcpServers": {"files": {"args": []}}}),
        ],
    )
    def test_rejects_bad_files(self, tmp_path, content):
        path = tmp_path / "mcp.json"
        path.write_text(content)

        with pytest.raises(RegistryConfigError):
            load_mcp_config(path)

    def test_missing_file(self, tmp_path):
        with pytest.raises(RegistryConfigError):
            load_mcp_config(tmp_path / "absent.json")
