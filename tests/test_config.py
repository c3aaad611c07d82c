"""Tests for Settings defaults, aliases and validation."""

import pytest
from pydantic import ValidationError

from magma.config import Settings
from magma.errors import ConfigurationError


def test_defaults():
    settings = Settings(ANTHROPIC_API_KEY="k", _env_file=None)

    assert settings.max_tool_rounds == 10
    assert settings.port == 3001
    assert settings.include_history_in_done is True


def test_db_url_from_aliases():
    settings = Settings(
        DB_HOST="db", DB_PORT=6543, DB_USER="u", DB_PASSWORD="p", DB_NAME="maps", _env_file=None
    )

    assert settings.db_url == "postgresql+asyncpg://u:p@db:6543/maps"


def test_tool_server_url_alias():
    settings = Settings(MCP_SERVER_URL="http://mcp-server:3000", _env_file=None)

    assert settings.tool_server_url == "http://mcp-server:3000"


def test_round_limit_must_be_positive():
    with pytest.raises(ValidationError):
        Settings(max_tool_rounds=0, _env_file=None)


def test_require_credentials():
    Settings(ANTHROPIC_AUTH_TOKEN="token", ANTHROPIC_API_KEY="", _env_file=None).require_credentials()

    with pytest.raises(ConfigurationError):
        Settings(ANTHROPIC_API_KEY="", ANTHROPIC_AUTH_TOKEN="", _env_file=None).require_credentials()
