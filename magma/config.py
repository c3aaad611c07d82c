"""Settings via pydantic-settings with MAGMA_ env prefix.

DB connection fields and credentials use validation_alias to read the
same unprefixed env vars (DB_PASSWORD, ANTHROPIC_API_KEY, etc.) that
docker-compose uses, so a single .env file drives every service.
"""

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from magma.errors import ConfigurationError


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="MAGMA_", env_file=".env", extra="ignore")

    # DB connection: unprefixed aliases match docker-compose env vars
    db_host: str = Field("localhost", validation_alias="DB_HOST")
    db_port: int = Field(5432, validation_alias="DB_PORT")
    db_user: str = Field("postgres", validation_alias="DB_USER")
    db_password: str = Field("postgres", validation_alias="DB_PASSWORD")
    db_name: str = Field("magma_soup", validation_alias="DB_NAME")

    db_pool_size: int = 10
    db_max_overflow: int = 5
    log_level: str = "info"

    # API server
    host: str = "0.0.0.0"
    port: int = 3001
    cors_origins: list[str] = ["*"]

    # Credentials: auth_token (Bearer) takes precedence over api_key (x-api-key)
    anthropic_api_key: str = Field("", validation_alias="ANTHROPIC_API_KEY")
    anthropic_auth_token: str = Field("", validation_alias="ANTHROPIC_AUTH_TOKEN")

    # LLM
    model: str = "claude-sonnet-4-5-20250929"
    max_tokens: int = 4096
    api_base_url: str = "https://api.anthropic.com"
    api_timeout_connect: int = 10  # seconds
    api_timeout_read: int = 120  # seconds

    # Orchestration
    max_tool_rounds: int = 10  # Model round-trips requesting tool use, not tool calls
    include_history_in_done: bool = True

    # Cost estimation, USD per million tokens
    input_cost_per_mtok: float = 3.0
    output_cost_per_mtok: float = 15.0

    # Remote tool service
    tool_server_url: str = Field("http://localhost:3000", validation_alias="MCP_SERVER_URL")
    tool_timeout_read: int = 30  # seconds
    tool_server_host: str = "0.0.0.0"
    tool_server_port: int = 3000
    google_maps_api_key: str = Field("", validation_alias="GOOGLE_MAPS_API_KEY")
    mcp_enabled: bool = True

    @model_validator(mode="after")
    def _validate_limits(self) -> "Settings":
        if self.max_tool_rounds < 1:
            raise ValueError("max_tool_rounds must be >= 1")
        return self

    @property
    def db_url(self) -> str:
        return f"postgresql+asyncpg://{self.db_user}:{self.db_password}@{self.db_host}:{self.db_port}/{self.db_name}"

    def require_credentials(self) -> None:
        """Fail fast at startup when no Anthropic credential is configured."""
        if not self.anthropic_api_key and not self.anthropic_auth_token:
            raise ConfigurationError(
                "Neither ANTHROPIC_API_KEY nor ANTHROPIC_AUTH_TOKEN is set"
            )
