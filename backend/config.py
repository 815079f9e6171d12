"""Application configuration using Pydantic Settings.

This module provides centralized configuration management for the Lovibe
agent backend. All settings can be overridden via environment variables or
a .env file.
"""

import json
import logging
import os
from typing import Any

import structlog
from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables.

    Attributes:
        openai_api_key: API key forwarded to LiteLLM for OpenAI models.
        code_agent_model: Model driving the coding agent turns.
        code_agent_temperature: Sampling temperature for the coding agent.
        finalizer_model: Model used by the title and response generators.
        llm_request_timeout_seconds: Timeout for a single LLM API call.
        max_agent_turns: Upper bound on coding agent turns per run.
        max_tool_rounds_per_turn: Upper bound on model/tool round-trips
            inside one turn.
        conversation_history_limit: Number of prior project messages handed
            to the coding agent.
        step_max_attempts: Attempts per workflow step before the run fails.
        step_retry_base_delay: Base delay for exponential step backoff.
        step_retry_max_delay: Cap for the step backoff delay.
        resume_incomplete_runs: Resume runs left running by a previous process.
        sandbox_template: Docker image used as the sandbox template.
        sandbox_workspace: Working directory inside the sandbox.
        sandbox_app_port: Port the generated app listens on.
        sandbox_timeout_minutes: Idle timeout, reset on every connect.
        sandbox_public_host: Host used to build the reachable sandbox URL.
        sandbox_url_scheme: URL scheme for the reachable sandbox URL.
        command_timeout_seconds: Timeout for one terminal command.
        free_points: Credits per window on the free plan.
        pro_points: Credits per window on the pro plan.
        credit_window_days: Length of one credit window.
        generation_cost: Credits consumed by one run.
        database_path: Path of the SQLite database file.
        backend_port: Port for the FastAPI server.
        cors_origins: Allowed origins for CORS.
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR).
        log_format: Log format (json or text).
    """

    # LLM Configuration
    openai_api_key: str = ""
    # Model names must include provider prefix for LiteLLM (e.g., openai/)
    code_agent_model: str = "openai/gpt-4.1"
    code_agent_temperature: float = 0.1
    finalizer_model: str = "openai/gpt-4o"
    llm_request_timeout_seconds: int = 120

    # Agent Limits
    max_agent_turns: int = 10
    max_tool_rounds_per_turn: int = 20
    conversation_history_limit: int = 5

    # Workflow Runner
    step_max_attempts: int = 4
    step_retry_base_delay: float = 1.0
    step_retry_max_delay: float = 4.0
    resume_incomplete_runs: bool = True

    # Sandbox Configuration
    sandbox_template: str = "lovibe-nextjs-test"
    sandbox_workspace: str = "/home/user"
    sandbox_app_port: int = 3000
    sandbox_timeout_minutes: int = 30
    sandbox_public_host: str = "localhost"
    sandbox_url_scheme: str = "http"
    command_timeout_seconds: int = 600

    # Credits
    free_points: int = 10
    pro_points: int = 150
    credit_window_days: int = 30
    generation_cost: int = 1

    # Database Configuration
    database_path: str = "./data/lovibe.db"

    # Server Configuration
    backend_port: int = 8000
    cors_origins: str | list[str] = ["http://localhost:3000"]
    log_level: str = "INFO"
    log_format: str = "json"

    @field_validator("cors_origins", mode="before")
    @classmethod
    def parse_cors_origins(cls, v: Any) -> list[str]:
        """Parse CORS origins from string or list.

        Accepts:
        - JSON array: '["http://localhost:3000"]'
        - Comma-separated: 'http://localhost:3000,http://localhost:8080'
        - Single value: 'http://localhost:3000'
        - Already a list: ["http://localhost:3000"]
        """
        if isinstance(v, list):
            return v
        if isinstance(v, str):
            v = v.strip()
            if v.startswith("["):
                try:
                    return json.loads(v)
                except json.JSONDecodeError:
                    pass
            return [origin.strip() for origin in v.split(",") if origin.strip()]
        return ["http://localhost:3000"]

    @field_validator("max_agent_turns", "step_max_attempts")
    @classmethod
    def require_positive(cls, v: int) -> int:
        if v < 1:
            raise ValueError("must be at least 1")
        return v

    model_config = SettingsConfigDict(
        # Support running `uvicorn` from either the repo root or `backend/`
        env_file=(".env", "../.env"),
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    def model_post_init(self, __context: Any) -> None:
        """Export the OpenAI key to os.environ for LiteLLM discovery."""
        if self.openai_api_key:
            os.environ.setdefault("OPENAI_API_KEY", self.openai_api_key)


def configure_logging(log_level: str = "INFO", log_format: str = "json") -> None:
    """Configure structured logging for the application.

    Sets up structlog with appropriate processors for either JSON or console output.

    Args:
        log_level: The minimum log level to emit (DEBUG, INFO, WARNING, ERROR).
        log_format: Output format - 'json' for production, 'text' for development.
    """
    processors: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]

    if log_format == "json":
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=True))

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, log_level.upper(), logging.INFO)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


# Global settings instance
settings = Settings()

# Configure logging on module import
configure_logging(settings.log_level, settings.log_format)
