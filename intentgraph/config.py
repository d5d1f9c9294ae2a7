"""Application configuration using Pydantic Settings.

This module provides centralized configuration management for intentgraph.
All settings can be overridden via environment variables or a .env file.
"""

import json
import logging
import os
from typing import Any

import structlog
from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


def _parse_str_list(v: Any, default: list[str]) -> list[str]:
    """Parse a list setting given as JSON array, comma-separated string or list."""
    if isinstance(v, list):
        return [str(item) for item in v]
    if isinstance(v, str):
        v = v.strip()
        if v.startswith("["):
            try:
                return [str(item) for item in json.loads(v)]
            except json.JSONDecodeError:
                pass
        return [item.strip() for item in v.split(",") if item.strip()]
    return list(default)


class Settings(BaseSettings):
    """Application settings loaded from environment variables.

    Attributes:
        default_model: LiteLLM model identifier used by the agent loop.
        llm_api_base: Optional base URL for an OpenAI-compatible endpoint.
        llm_api_key: Optional API key passed straight to LiteLLM.
        llm_temperature: Sampling temperature for proposal calls.
        llm_request_timeout_seconds: Timeout for a single chat completion.
        max_tool_iterations: Hard cap on tool-call rounds per agent run.
        llm_max_retries: Retries after a rate-limited chat completion.
        llm_backoff_base_seconds: Base of the exponential backoff when the
            backend gives no retry hint.
        llm_max_retry_wait_seconds: Upper bound for any single retry wait.
        sandbox_roots: Directories the execute_code tool may read from.
        sandbox_timeout_seconds: Wall-clock budget for one execute_code call.
        max_tool_result_chars: Tool payloads are truncated beyond this size.
        max_sub_agents: Ceiling on concurrently running sub-agents.
        backend_port: Port for the FastAPI server.
        cors_origins: Allowed origins for CORS.
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR).
        log_format: Log format (json or text).
    """

    # LLM Configuration
    # Model names must include provider prefix where LiteLLM needs one
    default_model: str = "gpt-4o"
    llm_api_base: str | None = None
    llm_api_key: str | None = None
    llm_temperature: float = 0.2
    llm_request_timeout_seconds: int = 120

    # Agent Limits
    max_tool_iterations: int = 10
    llm_max_retries: int = 3
    llm_backoff_base_seconds: float = 20.0
    llm_max_retry_wait_seconds: float = 120.0

    # Sandbox Configuration
    sandbox_roots: str | list[str] = []
    sandbox_timeout_seconds: float = 5.0
    max_tool_result_chars: int = 60_000

    # Delegation
    max_sub_agents: int = 5

    # Server Configuration
    backend_port: int = 8000
    cors_origins: str | list[str] = ["http://localhost:3000"]
    log_level: str = "INFO"
    log_format: str = "json"

    @field_validator("sandbox_roots", mode="before")
    @classmethod
    def parse_sandbox_roots(cls, v: Any) -> list[str]:
        """Parse sandbox roots; defaults to the current working directory."""
        roots = _parse_str_list(v, [])
        return roots or [os.getcwd()]

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
        return _parse_str_list(v, ["http://localhost:3000"])

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        validate_default=True,
    )


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
