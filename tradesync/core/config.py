"""tradesync.core.config

Two config surfaces only:
1) `config/default.yaml`
2) Environment variables (`TRADESYNC_` prefix, `__` for nesting)

Broker secrets never live here; they come from the credential vault.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any, Literal

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator
from pydantic_settings import BaseSettings

from tradesync.core.exceptions import ConfigError


def _deep_merge(base: dict[str, Any], overlay: dict[str, Any]) -> dict[str, Any]:
    result: dict[str, Any] = dict(base)
    for k, v in overlay.items():
        if k in result and isinstance(result[k], dict) and isinstance(v, dict):
            result[k] = _deep_merge(result[k], v)
        else:
            result[k] = v
    return result


class LoggingConfig(BaseModel):
    level: str = "INFO"
    json_output: bool = False


class RetryConfig(BaseModel):
    """Exponential backoff: delay(n) = min(max_delay_s, initial_delay_s * backoff_multiplier**n)."""

    enabled: bool = True
    max_retries: int = 3
    initial_delay_s: float = 1.0
    max_delay_s: float = 10.0
    backoff_multiplier: float = 2.0

    @field_validator("max_retries")
    @classmethod
    def max_retries_non_negative(cls, v: int) -> int:
        if v < 0:
            raise ValueError("max_retries must be >= 0")
        return v

    @model_validator(mode="after")
    def delays_are_ordered(self) -> RetryConfig:
        if self.initial_delay_s < 0 or self.max_delay_s < self.initial_delay_s:
            raise ValueError("require 0 <= initial_delay_s <= max_delay_s")
        if self.backoff_multiplier < 1.0:
            raise ValueError("backoff_multiplier must be >= 1.0")
        return self


class CircuitBreakerConfig(BaseModel):
    enabled: bool = True
    failure_threshold: int = 5
    success_threshold: int = 2
    reset_timeout_s: float = 60.0
    timeout_s: float = 30.0
    half_open_max_calls: int = 1
    latency_window: int = 100

    @field_validator("failure_threshold", "success_threshold", "half_open_max_calls", "latency_window")
    @classmethod
    def positive(cls, v: int) -> int:
        if v < 1:
            raise ValueError("must be >= 1")
        return v


class ScopeLimit(BaseModel):
    requests_per_second: float = 10.0
    cost_per_minute: float | None = None  # None = unlimited


class RateLimitConfig(BaseModel):
    global_scope: ScopeLimit = Field(default_factory=ScopeLimit)
    per_user: ScopeLimit = Field(default_factory=lambda: ScopeLimit(requests_per_second=2.0))


class ProviderSettings(BaseModel):
    base_url: str | None = None  # overrides the environment-derived default
    environment: Literal["demo", "live", "paper", "practice"] | None = None
    timeout_s: float | None = None  # None = circuit_breaker.timeout_s
    max_response_bytes: int = 5_000_000
    max_items: int = 10_000


class MergeConfig(BaseModel):
    price_tolerance_pct: float = 0.005
    price_tolerance_abs: float = 0.005
    placeholder_times: list[str] = Field(default_factory=lambda: ["00:00:00", "00:00:01"])

    @field_validator("price_tolerance_pct")
    @classmethod
    def tolerance_in_range(cls, v: float) -> float:
        if not 0.0 <= v < 1.0:
            raise ValueError("price_tolerance_pct must be in [0, 1)")
        return v


class AIConfig(BaseModel):
    preferred_provider: str = "gemini"
    fallback_provider: str | None = "openai"
    enable_retry: bool = True
    enable_circuit_breaker: bool = True
    max_tokens: int = 4096
    temperature: float = 0.7
    models: dict[str, str] = Field(
        default_factory=lambda: {"gemini": "gemini-2.0-flash", "openai": "gpt-4o-mini"}
    )


class MonitoringConfig(BaseModel):
    success_rate_threshold: float = 0.95
    degraded_margin: float = 0.10
    min_requests: int = 10
    alert_cooldown_s: float = 3600.0

    @field_validator("success_rate_threshold", "degraded_margin")
    @classmethod
    def rate_in_range(cls, v: float) -> float:
        if not 0.0 <= v <= 1.0:
            raise ValueError("must be in [0, 1]")
        return v


class SyncConfig(BaseModel):
    interval_minutes: float = 60.0


class StoreConfig(BaseModel):
    db_path: Path = Path("data/tradesync.db")


class Config(BaseSettings):
    """Root configuration. Single source of truth."""

    config_dir: Path = Path("config")

    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    retry: RetryConfig = Field(default_factory=RetryConfig)
    retry_overrides: dict[str, RetryConfig] = Field(default_factory=dict)
    circuit_breaker: CircuitBreakerConfig = Field(default_factory=CircuitBreakerConfig)
    rate_limits: dict[str, RateLimitConfig] = Field(default_factory=dict)
    providers: dict[str, ProviderSettings] = Field(default_factory=dict)
    merge: MergeConfig = Field(default_factory=MergeConfig)
    ai: AIConfig = Field(default_factory=AIConfig)
    store: StoreConfig = Field(default_factory=StoreConfig)
    monitoring: MonitoringConfig = Field(default_factory=MonitoringConfig)
    sync: SyncConfig = Field(default_factory=SyncConfig)

    model_config = {"env_prefix": "TRADESYNC_", "env_nested_delimiter": "__"}

    def retry_for(self, provider: str) -> RetryConfig:
        return self.retry_overrides.get(provider, self.retry)

    def rate_limit_for(self, provider: str) -> RateLimitConfig:
        if provider in self.rate_limits:
            return self.rate_limits[provider]
        return self.rate_limits.get("default", RateLimitConfig())

    def provider_settings(self, provider: str) -> ProviderSettings:
        return self.providers.get(provider, ProviderSettings())

    def timeout_for(self, provider: str) -> float:
        t = self.provider_settings(provider).timeout_s
        return float(t) if t is not None else float(self.circuit_breaker.timeout_s)

    @classmethod
    def load(cls, **overrides: Any) -> Config:
        """Construct, converting pydantic validation errors into ConfigError."""

        try:
            return cls(**overrides)
        except ValidationError as e:
            raise ConfigError(str(e)) from e

    @classmethod
    def from_yaml(cls, path: Path, **overrides: Any) -> Config:
        if not path.exists():
            raise ConfigError(f"Config file not found: {path}")

        try:
            raw = yaml.safe_load(path.read_text()) or {}
        except yaml.YAMLError as e:
            raise ConfigError(f"Invalid YAML in {path}: {e}") from e
        if not isinstance(raw, dict):
            raise ConfigError(f"Config root must be a mapping: {path}")

        raw = _deep_merge(raw, overrides)
        raw.setdefault("config_dir", str(path.parent))
        return cls.load(**raw)

    @classmethod
    def from_repo_defaults(cls, repo_root: Path | None = None) -> Config:
        root = repo_root or Path.cwd()
        return cls.from_yaml(root / "config" / "default.yaml")
