"""
Application settings management.

Settings are loaded from environment variables with .env file support.
All configuration is validated using Pydantic.
"""

from pathlib import Path
from typing import List, Optional

import yaml
from pydantic import BaseModel, Field, field_validator, ValidationInfo
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Application settings loaded from environment.

    Environment variables take precedence over .env file values.
    """

    model_config = SettingsConfigDict(
        env_file=".env", env_file_encoding="utf-8", extra="ignore"
    )

    # ==========================================================================
    # Paths
    # ==========================================================================

    config_dir: Path = Field(
        default=Path("config"),
        description="Directory containing YAML configuration files",
    )
    tenants_dir: Optional[Path] = Field(
        default=None,
        description="Directory containing tenant YAML files (default: <config_dir>/tenants)",
    )
    data_dir: Path = Field(
        default=Path("data"), description="Directory for database and other data files"
    )

    # ==========================================================================
    # Database
    # ==========================================================================

    database_path: Path = Field(
        default=Path("data/sessions.db"), description="Path to SQLite database file"
    )

    # ==========================================================================
    # Completion / Moderation Configuration
    # ==========================================================================
    #
    # Defaults are defined in src/llm/client.py. Set environment variables
    # below only to override defaults (e.g., LLM_COMPLETION_PROVIDER=deepseek)

    llm_completion_provider: Optional[str] = Field(
        default=None,
        description="Override completion provider (default: openai)",
    )
    llm_completion_model: Optional[str] = Field(
        default=None, description="Override completion model name"
    )
    llm_base_url: Optional[str] = Field(
        default=None, description="Override provider base URL"
    )
    llm_timeout_seconds: float = Field(
        default=30.0, gt=0, description="Per-call completion timeout"
    )
    moderation_provider: str = Field(
        default="openai", description="Moderation provider: openai or none"
    )
    moderation_timeout_seconds: float = Field(
        default=10.0, gt=0, description="Per-call moderation timeout"
    )

    # API Keys (required for providers you use)
    openai_api_key: Optional[str] = Field(default=None, description="OpenAI API key")
    anthropic_api_key: Optional[str] = Field(
        default=None, description="Anthropic API key"
    )
    deepseek_api_key: Optional[str] = Field(
        default=None, description="DeepSeek API key"
    )
    kimi_api_key: Optional[str] = Field(
        default=None, description="Kimi (Moonshot AI) API key"
    )

    # ==========================================================================
    # Notifications
    # ==========================================================================

    notification_relay_url: Optional[str] = Field(
        default=None,
        description="HTTP relay for outbound email; unset logs notifications instead",
    )
    notification_timeout_seconds: float = Field(default=10.0, gt=0)
    notification_sender: str = Field(default="no-reply@example.com")

    # ==========================================================================
    # Templates / Logging
    # ==========================================================================

    template_fallback: str = Field(
        default="",
        description="Text substituted when a template fails to render",
    )
    redact_fields: List[str] = Field(
        default_factory=lambda: ["email", "phone", "password", "api_key", "token"],
        description="Parameter names masked in action audit logs",
    )

    # ==========================================================================
    # Server Configuration
    # ==========================================================================

    host: str = Field(default="127.0.0.1", description="Server host address")
    port: int = Field(default=8000, ge=1, le=65535, description="Server port")
    debug: bool = Field(default=False, description="Enable debug mode")

    @property
    def resolved_tenants_dir(self) -> Path:
        return self.tenants_dir or (self.config_dir / "tenants")


# ============================================================================
# Engine Configuration (from YAML)
# ============================================================================


class RetryConfig(BaseModel):
    """Bounded exponential backoff for transient collaborator failures."""

    max_attempts: int = Field(
        default=3, ge=1, le=10, description="Attempts including the first call"
    )
    base_delay: float = Field(
        default=1.0, ge=0, description="Delay before the first retry (seconds)"
    )
    max_delay: float = Field(
        default=8.0, ge=0, description="Upper bound on a single retry delay"
    )

    @field_validator("max_delay")
    @classmethod
    def max_not_below_base(cls, v: float, info: ValidationInfo) -> float:
        base = info.data.get("base_delay", 0.0)
        if v < base:
            raise ValueError("max_delay must be >= base_delay")
        return v


class TurnConfig(BaseModel):
    """Per-turn limits."""

    max_completion_rounds: int = Field(
        default=4,
        ge=1,
        le=20,
        description="Completion calls allowed in one turn (trigger_next_turn loop)",
    )


class RegistryConfig(BaseModel):
    """Session registry eviction policy."""

    idle_timeout_seconds: float = Field(
        default=1800.0, gt=0, description="Inactivity before a session is evicted"
    )
    eviction_interval_seconds: float = Field(
        default=60.0, gt=0, description="How often the eviction loop runs"
    )


class EngineConfig(BaseModel):
    """
    Complete engine configuration loaded from engine_config.yaml.

    Holds the retry, turn and eviction policy shared by every tenant.
    """

    completion_retry: RetryConfig = Field(default_factory=RetryConfig)
    moderation_retry: RetryConfig = Field(default_factory=RetryConfig)
    persistence_retry: RetryConfig = Field(
        default_factory=lambda: RetryConfig(max_attempts=2, base_delay=0.5)
    )
    notification_retry: RetryConfig = Field(
        default_factory=lambda: RetryConfig(max_attempts=2, base_delay=0.5)
    )
    turn: TurnConfig = Field(default_factory=TurnConfig)
    registry: RegistryConfig = Field(default_factory=RegistryConfig)


def load_engine_config(config_path: Optional[Path] = None) -> EngineConfig:
    """
    Load engine configuration from YAML file.

    Args:
        config_path: Path to engine_config.yaml. If None, uses default path.

    Returns:
        EngineConfig with validated settings

    Raises:
        ValueError: If config validation fails
    """
    if config_path is None:
        # Default path: config/engine_config.yaml relative to project root
        current = Path(__file__).resolve().parent.parent.parent
        check_path = current / "config" / "engine_config.yaml"
        if check_path.exists():
            config_path = check_path
        else:
            cwd_config = Path.cwd() / "config" / "engine_config.yaml"
            if cwd_config.exists():
                config_path = cwd_config
            else:
                return EngineConfig()

    config_path = Path(config_path).resolve()

    if not config_path.exists():
        return EngineConfig()

    with open(str(config_path)) as f:
        config_data = yaml.safe_load(f)

    if not config_data:
        return EngineConfig()

    return EngineConfig(**config_data)


# Global settings instance
settings = Settings()

# Global engine config instance
engine_config = load_engine_config()
