"""
Configuration management using Pydantic for validation.

Type-safe settings for the remote services, the paginated fetcher and
the persistent cache, loadable from YAML with ``${VAR}`` expansion.
"""
import os
import re
from pathlib import Path
from typing import Optional

import yaml
from pydantic import BaseModel, Field, field_validator, model_validator

from drive_analytics.utils.exceptions import ConfigurationError


_ENV_PATTERN = re.compile(r'\$\{([^}]+)\}')


def _expand_env_vars(value: str) -> str:
    """Replace ``${VAR}`` occurrences with environment values (empty if unset)."""
    return _ENV_PATTERN.sub(lambda m: os.environ.get(m.group(1), ''), value)


class ApiSettings(BaseModel):
    """Remote service endpoints and per-call timeouts."""
    telemetry_base_url: str = Field("http://localhost:5000", description="Primary telemetry API")
    analytics_base_url: str = Field("http://localhost:8000", description="Analytics API")
    short_timeout_s: float = Field(30.0, gt=0, description="Timeout for status/list calls")
    long_timeout_s: float = Field(300.0, gt=0, description="Timeout for heavy processing calls")
    slow_call_warn_s: float = Field(5.0, gt=0, description="Log a warning above this duration")
    verify_tls: bool = True

    @field_validator('telemetry_base_url', 'analytics_base_url', mode='before')
    @classmethod
    def expand_url(cls, v):
        if isinstance(v, str):
            v = _expand_env_vars(v).rstrip('/')
        return v

    @model_validator(mode='after')
    def check_timeouts(self):
        if self.long_timeout_s < self.short_timeout_s:
            raise ValueError("long_timeout_s must not be shorter than short_timeout_s")
        return self


class FetchSettings(BaseModel):
    """Paginated retrieval and neighbor-resolution parameters."""
    page_size: int = Field(20000, ge=1, description="Records requested per page")
    max_pages: int = Field(100, ge=1, description="Hard page bound per fetch")
    page_delay_s: float = Field(0.1, ge=0, description="Pause between page requests")
    neighbor_delay_s: float = Field(0.2, ge=0, description="Pause between per-session neighbor calls")
    neighbor_cache_ttl_s: float = Field(300.0, ge=0, description="Neighbor result reuse window")


class CacheSettings(BaseModel):
    """Persistent cache settings."""
    enabled: bool = True
    path: Path = Field(Path(".cache/drive_analytics.sqlite3"))
    expiry_days: float = Field(7.0, gt=0, description="Entries older than this are purged on open")
    flush_interval_s: float = Field(1.0, ge=0, description="Batch window for durable writes")

    @field_validator('path', mode='before')
    @classmethod
    def expand_path(cls, v):
        if isinstance(v, str):
            return Path(_expand_env_vars(v))
        return v


class PipelineConfig(BaseModel):
    """Complete pipeline configuration."""
    api: ApiSettings = Field(default_factory=ApiSettings)
    fetch: FetchSettings = Field(default_factory=FetchSettings)
    cache: CacheSettings = Field(default_factory=CacheSettings)
    log_level: str = "INFO"
    json_logs: bool = False

    @field_validator('log_level')
    @classmethod
    def check_level(cls, v: str) -> str:
        if v.upper() not in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
            raise ValueError(f"Unknown log level: {v}")
        return v.upper()


def load_config(config_path: Path) -> PipelineConfig:
    """
    Load and validate configuration from a YAML file.

    Args:
        config_path: Path to YAML config file

    Returns:
        Validated PipelineConfig object

    Raises:
        FileNotFoundError: If config file doesn't exist
        ConfigurationError: If the YAML is malformed or not a mapping
        ValidationError: If config validation fails

    Example:
        >>> config = load_config(Path("config/drive_analytics.yaml"))
        >>> config.fetch.page_size
        20000
    """
    if not config_path.exists():
        raise FileNotFoundError(f"Config file not found: {config_path}")

    try:
        with open(config_path, 'r') as f:
            config_dict = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigurationError(f"Malformed config file {config_path}: {e}") from e

    if config_dict is None:
        config_dict = {}
    if not isinstance(config_dict, dict):
        raise ConfigurationError(f"Config root must be a mapping: {config_path}")

    return PipelineConfig(**config_dict)


def get_default_config(cache_path: Optional[Path] = None) -> PipelineConfig:
    """
    Get default configuration.

    Args:
        cache_path: Optional override of the cache database location

    Returns:
        Default PipelineConfig
    """
    config = PipelineConfig()
    if cache_path is not None:
        config.cache.path = cache_path
    return config
