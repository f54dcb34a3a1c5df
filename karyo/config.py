"""Settings via pydantic-settings with KARYO_ env prefix.

Provider API keys use validation_alias to read the unprefixed variables
(ANTHROPIC_API_KEY, OPENAI_API_KEY, GOOGLE_API_KEY or GEMINI_API_KEY)
that the provider SDKs and most shells already export.
"""

from pathlib import Path

from pydantic import AliasChoices, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="KARYO_", env_file=".env", extra="ignore")

    # LLM
    model: str = "claude-sonnet-4-20250514"
    max_tokens: int = 8192
    max_steps: int = 20  # Model calls per user turn

    # Provider credentials, read from unprefixed env vars
    anthropic_api_key: str = Field("", validation_alias="ANTHROPIC_API_KEY")
    openai_api_key: str = Field("", validation_alias="OPENAI_API_KEY")
    google_api_key: str = Field("", validation_alias=AliasChoices("GOOGLE_API_KEY", "GEMINI_API_KEY"))

    # Direct API settings
    anthropic_base_url: str = "https://api.anthropic.com"
    openai_base_url: str = "https://api.openai.com"
    google_base_url: str = "https://generativelanguage.googleapis.com"
    api_timeout_connect: int = 10  # seconds
    api_timeout_read: int = 300  # seconds

    # Tools
    workspace_dir: str = Field(default_factory=lambda: str(Path.cwd()))
    bash_timeout: int = 120  # seconds

    log_level: str = "warning"

    @field_validator("max_steps", "max_tokens", "bash_timeout")
    @classmethod
    def _positive(cls, value: int) -> int:
        if value < 1:
            raise ValueError("must be >= 1")
        return value

    @property
    def workspace(self) -> Path:
        return Path(self.workspace_dir).expanduser().resolve()
