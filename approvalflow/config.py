"""
Configuration management using Pydantic Settings.
Reads from environment variables.
"""

from typing import Literal

from pydantic import ConfigDict, Field
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings."""

    model_config = ConfigDict(env_file=".env", case_sensitive=False)

    # LLM Configuration
    openai_api_key: str | None = Field(default=None, alias="OPENAI_API_KEY")
    litellm_model: str = Field(default="gpt-4o-mini", alias="LITELLM_MODEL")
    receipt_model: str = Field(default="gpt-4o-mini", alias="RECEIPT_MODEL")
    llm_temperature: float = Field(default=0.0, alias="LLM_TEMPERATURE")
    llm_max_tokens: int = Field(default=1024, alias="LLM_MAX_TOKENS")

    # Orchestration loop
    max_iterations: int = Field(default=15, alias="MAX_ITERATIONS")
    max_history: int = Field(default=4, alias="MAX_HISTORY")

    # Session memory controls
    max_sessions: int = Field(default=1000, alias="MAX_SESSIONS")
    session_ttl_seconds: int = Field(default=1800, alias="SESSION_TTL_SECONDS")

    # Persistence (empty -> seeded in-memory store)
    database_url: str = Field(default="", alias="DATABASE_URL")

    # Snowflake Configuration (employee directory)
    snowflake_account: str = Field(default="", alias="SNOWFLAKE_ACCOUNT")
    snowflake_user: str = Field(default="", alias="SNOWFLAKE_USER")
    snowflake_password: str = Field(default="", alias="SNOWFLAKE_PASSWORD")
    snowflake_warehouse: str = Field(default="", alias="SNOWFLAKE_WAREHOUSE")
    snowflake_database: str = Field(default="", alias="SNOWFLAKE_DATABASE")
    snowflake_schema: str = Field(default="", alias="SNOWFLAKE_SCHEMA")

    # Policy routing
    insufficient_balance_mode: Literal["confirm", "auto_escalate"] = Field(
        default="confirm", alias="INSUFFICIENT_BALANCE_MODE"
    )

    # Application Configuration
    environment: str = Field(default="development", alias="ENVIRONMENT")
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")

    # Circuit Breaker Configuration
    circuit_breaker_failure_threshold: int = Field(
        default=5, alias="CIRCUIT_BREAKER_FAILURE_THRESHOLD"
    )
    circuit_breaker_timeout: int = Field(default=60, alias="CIRCUIT_BREAKER_TIMEOUT")


# Global settings instance
settings = Settings()
