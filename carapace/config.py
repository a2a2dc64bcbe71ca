"""Settings via pydantic-settings with CARAPACE_ env prefix.

Credentials and DB connection fields use validation_alias to read the same
unprefixed env vars (ANTHROPIC_API_KEY, DB_PASSWORD, ...) that the rest of
the deployment uses, so a single .env file drives everything.
"""

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="CARAPACE_", env_file=".env")

    # DB connection -- unprefixed aliases match docker-compose env vars
    db_host: str = Field("localhost", validation_alias="DB_HOST")
    db_port: int = Field(5432, validation_alias="DB_PORT")
    db_user: str = Field("carapace", validation_alias="DB_USER")
    db_password: str = Field("carapace_dev_password", validation_alias="DB_PASSWORD")
    db_name: str = Field("carapace", validation_alias="DB_NAME")
    # Full URL override (e.g. sqlite+aiosqlite:///carapace.db)
    database_url: str = Field("", validation_alias="DATABASE_URL")

    db_pool_size: int = 10
    db_max_overflow: int = 5
    log_level: str = "info"

    # Provider
    anthropic_api_key: str = Field("", validation_alias="ANTHROPIC_API_KEY")
    # Dual auth: auth_token (Bearer) takes precedence over api_key (x-api-key)
    anthropic_auth_token: str = Field("", validation_alias="ANTHROPIC_AUTH_TOKEN")
    api_base_url: str = "https://api.anthropic.com"
    api_timeout_connect: int = 10  # seconds
    api_timeout_read: int = 120  # seconds

    # LLM
    model: str = "claude-sonnet-4-5-20250929"
    max_tokens: int = 4096
    system_brain: str = ""

    # Tool loop
    max_tool_iterations: int = 10
    auto_approve_tools: bool = False
    tool_timeout_secs: int = 120
    workspace_dir: str = "."

    # Context budget
    default_context_window: int = 200_000
    tool_overhead_tokens: int = 500  # per registered tool schema
    response_reserve_tokens: int = 16_384
    history_budget_ratio: float = 0.70

    # Auto-compaction
    compaction_threshold: float = 80.0  # percent of effective window
    compaction_keep_recent: int = 8  # last 4 user/assistant pairs
    memory_dir: str = "~/.carapace/memory"

    # Loop detection
    loop_window: int = 15
    loop_threshold_exploration: int = 10
    loop_threshold_mutation: int = 2
    loop_threshold_default: int = 3

    @model_validator(mode="after")
    def _validate_budget(self) -> "Settings":
        if not 0.0 < self.history_budget_ratio <= 1.0:
            raise ValueError("history_budget_ratio must be in (0, 1]")
        thresholds = (
            self.loop_threshold_exploration,
            self.loop_threshold_mutation,
            self.loop_threshold_default,
        )
        if min(thresholds) < 1:
            raise ValueError("loop thresholds must be >= 1")
        if max(thresholds) >= self.loop_window:
            raise ValueError(
                f"loop_window ({self.loop_window}) must exceed every loop threshold"
            )
        if self.max_tool_iterations < 1:
            raise ValueError("max_tool_iterations must be >= 1")
        return self

    @property
    def db_url(self) -> str:
        if self.database_url:
            return self.database_url
        return f"postgresql+asyncpg://{self.db_user}:{self.db_password}@{self.db_host}:{self.db_port}/{self.db_name}"
