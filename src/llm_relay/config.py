"""Configuration management for llm-relay."""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field, model_validator

from llm_relay.llm.retry import RetryConfig

_logger = logging.getLogger(__name__)


class ProviderConfig(BaseModel):
    base_url: str = ""
    api_key: str = "no-key"
    api_key_env: str | None = None  # read the key from this variable instead
    api_type: str = "openai"  # "openai", "ollama" or "gemini"
    enabled: bool = True
    default_model: str = ""
    context_length: int = 0  # num_ctx for Ollama (0 = provider default)
    extra_params: dict[str, Any] = Field(default_factory=dict)  # merged into every request

    def resolve_api_key(self) -> str:
        if self.api_key_env:
            value = os.environ.get(self.api_key_env)
            if not value:
                raise ValueError(
                    f"Environment variable {self.api_key_env} is not set"
                )
            return value
        return self.api_key


class RetrySettings(BaseModel):
    max_retries: int = 3
    initial_delay: float = 1.0  # seconds
    max_delay: float = 10.0
    backoff_multiplier: float = 2.0
    jitter_factor: float = 0.1

    @model_validator(mode="after")
    def _check_schedule(self) -> RetrySettings:
        self.to_retry_config()  # raises ValueError on invalid combinations
        return self

    def to_retry_config(self) -> RetryConfig:
        return RetryConfig(
            max_retries=self.max_retries,
            initial_delay=self.initial_delay,
            max_delay=self.max_delay,
            backoff_multiplier=self.backoff_multiplier,
            jitter_factor=self.jitter_factor,
        )


class RelayConfig(BaseModel):
    default_provider: str = "local"
    providers: dict[str, ProviderConfig] = Field(
        default_factory=lambda: {
            "local": ProviderConfig(
                base_url="http://localhost:1234/v1",
                api_type="openai",
            ),
        }
    )
    retry: RetrySettings = Field(default_factory=RetrySettings)
    timeout: float | None = None  # seconds for a whole send_chat call


CONFIG_FILENAME = "llm_relay.yaml"

_ENV_RETRY_OVERRIDES = {
    "LLM_RELAY_MAX_RETRIES": ("max_retries", int),
    "LLM_RELAY_RETRY_INITIAL_DELAY": ("initial_delay", float),
    "LLM_RELAY_RETRY_MAX_DELAY": ("max_delay", float),
    "LLM_RELAY_RETRY_BACKOFF_MULTIPLIER": ("backoff_multiplier", float),
    "LLM_RELAY_RETRY_JITTER_FACTOR": ("jitter_factor", float),
}


def _apply_env_overrides(raw: dict[str, Any]) -> dict[str, Any]:
    retry = dict(raw.get("retry") or {})
    for var, (key, cast) in _ENV_RETRY_OVERRIDES.items():
        value = os.environ.get(var)
        if value is None or not value.strip():
            continue
        try:
            retry[key] = cast(value)
        except ValueError as e:
            raise ValueError(f"{var} must be a number, got {value!r}") from e
    if retry:
        raw = {**raw, "retry": retry}
    return raw


def load_config(
    config_path: str | Path | None = None,
) -> tuple[RelayConfig, Path | None]:
    """Load configuration from YAML file.

    Returns (config, resolved_path).  *resolved_path* is ``None`` when
    no file was found and built-in defaults are used.

    Search order (first match wins):
      1. Explicit ``--config`` path
      2. Current working directory: ``./llm_relay.yaml``
      3. User config dir: ``~/.llm_relay/llm_relay.yaml``

    ``LLM_RELAY_*`` retry variables override values from the file.
    """
    if config_path is None:
        for d in (Path.cwd(), Path.home() / ".llm_relay"):
            candidate = d / CONFIG_FILENAME
            if candidate.exists():
                config_path = candidate
                break

    raw: dict[str, Any] = {}
    resolved: Path | None = None
    if config_path is not None:
        resolved = Path(config_path)
        if not resolved.exists():
            raise FileNotFoundError(f"Config file not found: {config_path}")
        _logger.info("Loading config from %s", resolved)
        with open(resolved) as f:
            raw = yaml.safe_load(f) or {}
        resolved = resolved.resolve()
    else:
        _logger.info("No config file found -- using defaults")

    return RelayConfig.model_validate(_apply_env_overrides(raw)), resolved
