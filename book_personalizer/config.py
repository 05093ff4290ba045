from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, Optional, Union

import yaml
from loguru import logger

from .exceptions import ConfigurationError


@dataclass
class RateLimitSettings:
    min_delay_ms: float = 2000
    max_delay_ms: float = 60000


@dataclass
class RetrySettings:
    max_retries: int = 5
    base_delay_ms: float = 3000
    max_jitter_ms: float = 2000


@dataclass
class BatchSettings:
    batch_size: int = 3
    inter_page_delay_ms: float = 2000
    inter_batch_delay_ms: float = 3000


@dataclass
class OutputSettings:
    directory: str = "outputs"
    page_width: int = 1024
    page_height: int = 1024
    maintain_aspect_ratio: bool = True
    smart_crop: bool = False
    background_color: str = "white"
    log_level: str = "INFO"


@dataclass
class Settings:
    generation: Dict[str, Any] = field(default_factory=dict)
    rate_limit: RateLimitSettings = field(default_factory=RateLimitSettings)
    retry: RetrySettings = field(default_factory=RetrySettings)
    batching: BatchSettings = field(default_factory=BatchSettings)
    output: OutputSettings = field(default_factory=OutputSettings)


def _build_section(section_cls, values: Optional[Dict[str, Any]], name: str):
    if values is None:
        return section_cls()
    if not isinstance(values, dict):
        raise ConfigurationError(f"Config section '{name}' must be a mapping")

    known = {f.name for f in fields(section_cls)}
    unknown = set(values) - known
    if unknown:
        logger.warning(f"Ignoring unknown keys in config section '{name}': {', '.join(sorted(unknown))}")
    return section_cls(**{k: v for k, v in values.items() if k in known})


def settings_from_dict(config: Optional[Dict[str, Any]]) -> Settings:
    config = config or {}
    generation = config.get('generation') or {}
    if not isinstance(generation, dict):
        raise ConfigurationError("Config section 'generation' must be a mapping")

    settings = Settings(
        generation=generation,
        rate_limit=_build_section(RateLimitSettings, config.get('rate_limit'), 'rate_limit'),
        retry=_build_section(RetrySettings, config.get('retry'), 'retry'),
        batching=_build_section(BatchSettings, config.get('batching'), 'batching'),
        output=_build_section(OutputSettings, config.get('output'), 'output'),
    )
    if settings.batching.batch_size < 1:
        raise ConfigurationError(f"batching.batch_size must be positive, got {settings.batching.batch_size}")
    if settings.retry.max_retries < 1:
        raise ConfigurationError(f"retry.max_retries must be at least 1, got {settings.retry.max_retries}")
    if settings.rate_limit.max_delay_ms < settings.rate_limit.min_delay_ms:
        raise ConfigurationError("rate_limit.max_delay_ms must not be below rate_limit.min_delay_ms")
    return settings


def load_settings(config_path: Optional[Union[str, Path]] = None) -> Settings:
    """Load configuration from a YAML file; a missing path means all defaults."""
    if config_path is None:
        return Settings()

    path = Path(config_path)
    if not path.exists():
        raise ConfigurationError(f"Configuration file not found: {path}")

    try:
        with open(path, 'r') as f:
            config = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigurationError(f"Invalid YAML in {path}: {e}") from e

    if config is not None and not isinstance(config, dict):
        raise ConfigurationError(f"Top level of {path} must be a mapping")
    return settings_from_dict(config)
