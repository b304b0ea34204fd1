"""Settings via pydantic-settings with PARLEY_ env prefix.

Credentials use validation_alias to read the same unprefixed env vars
(ANTHROPIC_API_KEY, ANTHROPIC_AUTH_TOKEN) that other Anthropic tooling
uses, so one .env file drives everything.
"""

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="PARLEY_", env_file=".env")

    log_level: str = "info"

    # Runtime
    host: str = "0.0.0.0"
    port: int = 8000
    db_url: str = "sqlite+aiosqlite:///parley.db"
    db_pool_size: int = 5
    db_max_overflow: int = 5

    # Credentials: auth_token (Bearer) takes precedence over api_key (x-api-key)
    anthropic_api_key: str = Field("", validation_alias="ANTHROPIC_API_KEY")
    anthropic_auth_token: str = Field("", validation_alias="ANTHROPIC_AUTH_TOKEN")

    # Agent identity
    agent_name: str = "Parley"
    agent_description: str = "A focused engineering assistant with local tool access"
    identity_prompt: str = ""

    # LLM
    model: str = "claude-sonnet-4-5-20250929"
    max_tokens: int = 8192

    # Direct API settings
    api_base_url: str = "https://api.anthropic.com"
    api_timeout_connect: int = 10  # seconds
    api_timeout_read: int = 300  # seconds
    error_body_max_bytes: int = 4096

    # Tool loop
    max_tool_iterations: int = 25
    tool_result_preview_chars: int = 200
    max_sessions: int = 100

    # Context window management
    max_context_tokens: int = 150_000
    full_context_window: int = 12  # turns kept verbatim (Tier 1)
    tool_result_max_chars: int = 50_000  # inline truncation on insert
    tier2_tool_result_chars: int = 500
    tier2_preview_chars: int = 200
    tier3_text_chars: int = 500
    min_messages: int = 4
    chars_per_token: float = 3.5
    token_overhead_factor: float = 1.15
    max_system_blocks: int = 10

    # System prompt
    workspace_dir: str = "~/Development"
    global_instructions_dir: str = "~/.parley"
    instructions_filename: str = "PARLEY.md"
    instructions_max_chars: int = 24_000
    kb_context_max_chars: int = 2_000

    # Fallback (no API credential configured)
    fallback_cli_path: str = "claude"
    fallback_cli_args: list[str] = Field(
        default_factory=lambda: ["--dangerously-skip-permissions"],
    )

    @model_validator(mode="after")
    def _validate_context(self) -> "Settings":
        if self.full_context_window < 1:
            raise ValueError("full_context_window must be >= 1")
        if self.min_messages < 1:
            raise ValueError("min_messages must be >= 1")
        if self.chars_per_token <= 0:
            raise ValueError("chars_per_token must be > 0")
        return self

    @property
    def has_credentials(self) -> bool:
        return bool(self.anthropic_api_key or self.anthropic_auth_token)
