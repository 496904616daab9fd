"""
Configuration for the Flow Engine.
"""

from functools import lru_cache

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class EngineSettings(BaseSettings):
    """Execution engine configuration."""

    model_config = SettingsConfigDict(env_prefix="ENGINE_")

    max_steps_per_event: int = Field(
        default=50,
        ge=1,
        description="Max node entries processed for a single inbound event",
    )
    fallback_message: str = Field(
        default="Sorry, something went wrong. Please try again later.",
        description="Generic message surfaced when a conversation fails",
    )
    capture_key: str = Field(
        default="user_input",
        description="Context key receiving the raw text of an awaited reply",
    )


class ValidationSettings(BaseSettings):
    """Graph validation limits."""

    model_config = SettingsConfigDict(env_prefix="VALIDATION_")

    max_nodes_per_flow: int = Field(default=500, description="Max nodes per flow")
    max_connections_per_node: int = Field(
        default=20,
        description="Max incoming plus outgoing edges per node",
    )


class ExecutorSettings(BaseSettings):
    """Function and webhook action execution."""

    model_config = SettingsConfigDict(env_prefix="EXECUTOR_")

    webhook_timeout_seconds: float = Field(default=30.0, description="Webhook request timeout")
    store_results: bool = Field(
        default=True,
        description="Write function and webhook results into the conversation context",
    )


class StoreSettings(BaseSettings):
    """Execution state storage."""

    model_config = SettingsConfigDict(env_prefix="STORE_")

    ttl_seconds: int = Field(default=3600, description="State TTL in Redis")
    archive_size: int = Field(
        default=1000,
        description="Finished conversations kept in the in-memory archive",
    )
    key_prefix: str = Field(default="flow_state", description="Redis key prefix")


class Settings(BaseSettings):
    """Main application settings."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    service_name: str = Field(default="flowbot-engine", description="Service name")
    environment: str = Field(default="development", description="Deployment environment")
    log_level: str = Field(default="error", description="Log level when --debug is not given")
    log_format: str = Field(default="pretty", description="Log format (json, pretty)")

    engine: EngineSettings = Field(default_factory=EngineSettings)
    validation: ValidationSettings = Field(default_factory=ValidationSettings)
    executor: ExecutorSettings = Field(default_factory=ExecutorSettings)
    store: StoreSettings = Field(default_factory=StoreSettings)


@lru_cache
def get_settings() -> Settings:
    """Get cached settings."""
    return Settings()
