from __future__ import annotations

from functools import lru_cache
from typing import Literal
from urllib.parse import urlparse

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from . import __version__


class Settings(BaseSettings):
    """Runtime configuration for the Foundry proxy."""

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    # Azure AI Foundry project and agent
    project_endpoint: str = Field(..., alias="AI_FOUNDRY_ENDPOINT")
    agent_id: str = Field(..., alias="AI_FOUNDRY_AGENT_ID")
    agent_name: str = Field(default="AI in A Box", alias="AI_FOUNDRY_AGENT_NAME")
    workspace_name: str = Field(default="Unknown", alias="AI_FOUNDRY_WORKSPACE_NAME")
    # Unset uses the SDK's default service version
    api_version: str | None = Field(default=None, alias="AI_FOUNDRY_API_VERSION")
    token_scope: str = Field(default="https://ai.azure.com/.default", alias="AI_FOUNDRY_TOKEN_SCOPE")
    azure_client_id: str | None = Field(default=None, alias="AZURE_CLIENT_ID")

    # "simulation" swaps in canned replies for local development without credentials
    agent_backend: Literal["foundry", "simulation"] = Field(default="foundry", alias="AGENT_BACKEND")
    request_timeout: float = Field(default=30.0, gt=0, alias="AGENT_REQUEST_TIMEOUT")

    # Run polling
    poll_initial_interval: float = Field(default=1.0, gt=0, alias="RUN_POLL_INITIAL_INTERVAL")
    poll_max_interval: float = Field(default=4.0, gt=0, alias="RUN_POLL_MAX_INTERVAL")
    poll_backoff_factor: float = Field(default=1.5, ge=1.0, alias="RUN_POLL_BACKOFF_FACTOR")
    run_deadline: float = Field(default=90.0, gt=0, alias="RUN_DEADLINE_SECONDS")

    # Conversation turns
    max_message_length: int = Field(default=4000, ge=1, alias="MAX_MESSAGE_LENGTH")
    conflict_policy: Literal["reject", "wait"] = Field(default="reject", alias="THREAD_CONFLICT_POLICY")

    # Health probe
    health_probe_timeout: float = Field(default=10.0, gt=0, alias="HEALTH_PROBE_TIMEOUT")
    app_environment: str = Field(default="Unknown", alias="APP_ENVIRONMENT")
    app_version: str = Field(default=__version__, alias="APP_VERSION")

    # FastAPI configuration
    cors_allow_origins: str = Field(default="*", alias="CORS_ALLOW_ORIGINS")
    app_host: str = Field(default="0.0.0.0", alias="APP_HOST")
    app_port: int = Field(default=8080, alias="APP_PORT")
    debug: bool = Field(default=False, alias="DEBUG")

    @field_validator("project_endpoint")
    @classmethod
    def _validate_endpoint(cls, value: str) -> str:
        parsed = urlparse(value.strip())
        if parsed.scheme not in ("http", "https") or not parsed.netloc:
            raise ValueError(f"Invalid endpoint URL format: {value!r}")
        return value.strip().rstrip("/")

    @model_validator(mode="after")
    def _validate_poll_bounds(self) -> "Settings":
        if self.poll_max_interval < self.poll_initial_interval:
            raise ValueError("RUN_POLL_MAX_INTERVAL must be >= RUN_POLL_INITIAL_INTERVAL")
        return self

    @property
    def cors_origins(self) -> list[str]:
        return [origin.strip() for origin in self.cors_allow_origins.split(",") if origin.strip()]


@lru_cache
def get_settings() -> Settings:
    """Return memoized settings so multiple imports share a single instance."""

    return Settings()  # type: ignore[call-arg]
