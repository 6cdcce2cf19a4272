"""Configuration management using Pydantic Settings."""

from functools import lru_cache
from typing import Any, Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_prefix="",
        case_sensitive=False,
        extra="ignore",
    )

    # External services
    planner_url: str = Field(
        default="http://localhost:3000/api/agent/plan",
        description="Endpoint that streams the levels-format plan",
    )
    executor_url: str = Field(
        default="http://localhost:3000/api/agent/execute",
        description="Endpoint that executes a single task and streams packets",
    )
    result_url: str | None = Field(
        default=None,
        description="Optional endpoint that stores task results",
    )

    # Waggle Configuration
    waggle_log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO",
        description="Logging level",
    )
    waggle_debug: bool = Field(
        default=False,
        description="Enable debug mode",
    )
    waggle_logs_dir: str = Field(
        default="logs",
        description="Directory for rotating log files",
    )
    waggle_plan_format: Literal["yaml", "json"] = Field(
        default="yaml",
        description="Encoding the planner streams the levels plan in",
    )
    waggle_poll_interval: float = Field(
        default=0.1,
        gt=0,
        le=10,
        description="Fixed scheduler backoff in seconds when no task is ready",
    )
    waggle_request_timeout: float = Field(
        default=600.0,
        ge=1,
        description="Timeout for planner and executor requests in seconds",
    )
    waggle_max_concurrent_tasks: int = Field(
        default=0,
        ge=0,
        description="Maximum concurrent task executions (0 = unbounded)",
    )

    # Agent settings forwarded to the services as creationProps
    waggle_plan_model: str = Field(
        default="gpt-4o",
        description="Model used by the planner",
    )
    waggle_execute_model: str = Field(
        default="gpt-4o",
        description="Model used by the task executor",
    )
    waggle_temperature: float = Field(
        default=0.0,
        ge=0,
        le=2,
        description="Sampling temperature forwarded to the services",
    )

    # API server
    waggle_api_host: str = Field(
        default="127.0.0.1",
        description="Host for the HTTP API",
    )
    waggle_api_port: int = Field(
        default=8000,
        ge=1,
        le=65535,
        description="Port for the HTTP API",
    )
    waggle_api_max_runs: int = Field(
        default=100,
        ge=1,
        description="Finished runs the HTTP API keeps before evicting the oldest",
    )

    def creation_props(self, kind: Literal["plan", "execute"]) -> dict[str, Any]:
        """Build the creationProps payload for a planning or execution request."""
        model = self.waggle_plan_model if kind == "plan" else self.waggle_execute_model
        return {
            "modelName": model,
            "temperature": self.waggle_temperature,
            "streaming": True,
        }


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance.

    Returns:
        Settings instance loaded from environment.

    Example:
        >>> settings = get_settings()
        >>> settings.waggle_poll_interval
        0.1
    """
    return Settings()


def clear_settings_cache() -> None:
    """Clear the settings cache (useful for testing)."""
    get_settings.cache_clear()
