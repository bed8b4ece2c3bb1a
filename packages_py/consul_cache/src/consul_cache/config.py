"""
Configuration utilities for consul_cache
"""
import logging
import os
import random
from dataclasses import dataclass, field, replace
from typing import Mapping, Optional

from consul_timeout import TimeoutAdjustmentConfig
from consul_timeout import validate_config as validate_timeout_config


logger = logging.getLogger("consul_cache.config")

ENV_PREFIX = "CONSUL_CACHE_"


@dataclass
class CacheConfig:
    """Cache configuration"""

    wait_seconds: int = 10
    """Wait budget sent with every blocking query (seconds). Default: 10"""

    backoff_base_seconds: float = 1.0
    """Delay after the first consecutive failure (seconds). Default: 1.0"""

    backoff_max_seconds: float = 10.0
    """Upper bound for the backoff delay (seconds). Default: 10.0"""

    jitter_factor: float = 0.5
    """Jitter factor (0-1) applied to the backoff delay. Default: 0.5"""

    min_delay_between_requests_seconds: float = 0.0
    """Pause after every successful fetch (seconds). Default: 0"""

    min_delay_on_empty_result_seconds: float = 0.0
    """Pause after a successful fetch that returned no entities (seconds). Default: 0"""

    timeout_adjustment: TimeoutAdjustmentConfig = field(default_factory=TimeoutAdjustmentConfig)
    """Read timeout auto adjustment for the blocking queries"""

    stop_timeout_seconds: float = 5.0
    """How long stop() waits for the poll thread to finish (seconds). Default: 5.0"""

    dispatch_listeners_in_background: bool = False
    """Deliver notifications on a separate worker instead of the poll loop. Default: False"""


# Default cache configuration
DEFAULT_CACHE_CONFIG = CacheConfig()


def merge_config(config: Optional[CacheConfig] = None) -> CacheConfig:
    """
    Merge configuration with defaults.

    Args:
        config: User-provided configuration

    Returns:
        Complete configuration with defaults
    """
    if config is None:
        return DEFAULT_CACHE_CONFIG
    return config


def validate_config(config: CacheConfig) -> list[str]:
    """Validate configuration values"""
    errors = []

    if config.wait_seconds < 1:
        errors.append("wait_seconds must be at least 1")

    if config.backoff_base_seconds < 0:
        errors.append("backoff_base_seconds must be non-negative")

    if config.backoff_max_seconds < 0:
        errors.append("backoff_max_seconds must be non-negative")

    if not 0 <= config.jitter_factor <= 1:
        errors.append("jitter_factor must be between 0 and 1")

    if config.min_delay_between_requests_seconds < 0:
        errors.append("min_delay_between_requests_seconds must be non-negative")

    if config.min_delay_on_empty_result_seconds < 0:
        errors.append("min_delay_on_empty_result_seconds must be non-negative")

    if config.stop_timeout_seconds <= 0:
        errors.append("stop_timeout_seconds must be positive")

    # Cross-field validations
    if config.backoff_base_seconds > config.backoff_max_seconds:
        errors.append("backoff_base_seconds cannot exceed backoff_max_seconds")

    errors.extend(validate_timeout_config(config.timeout_adjustment))

    return errors


def calculate_backoff_delay(error_count: int, config: CacheConfig) -> float:
    """
    Calculate the delay before the next poll after consecutive failures.

    Exponential growth from the base delay, capped at the maximum, with jitter
    spread around the capped value:
        delay = min(max, base * 2^(errors - 1)) * (1 - jitter/2) + random(0, jitter * that)

    Args:
        error_count: Number of consecutive failures, including the current one
        config: Cache configuration

    Returns:
        Delay in seconds
    """
    if error_count <= 0:
        return 0.0

    base = config.backoff_base_seconds
    max_delay = config.backoff_max_seconds
    jitter = config.jitter_factor

    # Cap the exponent so huge error streaks don't overflow
    exponent = min(error_count - 1, 32)
    exponential_delay = min(max_delay, base * (2 ** exponent))

    jitter_amount = random.random() * jitter * exponential_delay
    delay = exponential_delay * (1 - jitter / 2) + jitter_amount

    return min(delay, max_delay)


def _parse_bool(value: str) -> bool:
    return value.strip().lower() in ("1", "true", "yes", "on")


def load_config_from_env(
    prefix: str = ENV_PREFIX,
    environ: Optional[Mapping[str, str]] = None,
    base: Optional[CacheConfig] = None,
) -> CacheConfig:
    """
    Build a configuration from environment variables.

    Recognised variables (with the default prefix):
        CONSUL_CACHE_WAIT_SECONDS
        CONSUL_CACHE_BACKOFF_BASE_SECONDS
        CONSUL_CACHE_BACKOFF_MAX_SECONDS
        CONSUL_CACHE_JITTER_FACTOR
        CONSUL_CACHE_MIN_DELAY_BETWEEN_REQUESTS_SECONDS
        CONSUL_CACHE_MIN_DELAY_ON_EMPTY_RESULT_SECONDS
        CONSUL_CACHE_STOP_TIMEOUT_SECONDS
        CONSUL_CACHE_DISPATCH_LISTENERS_IN_BACKGROUND
        CONSUL_CACHE_TIMEOUT_AUTO_ADJUSTMENT_ENABLED
        CONSUL_CACHE_TIMEOUT_AUTO_ADJUSTMENT_MARGIN_MS

    Args:
        prefix: Variable name prefix
        environ: Mapping to read from (default: os.environ)
        base: Configuration supplying values for unset variables

    Returns:
        The resulting configuration
    """
    env = os.environ if environ is None else environ
    config = merge_config(base)

    def get(name: str) -> Optional[str]:
        value = env.get(f"{prefix}{name}")
        if value is None or value.strip() == "":
            return None
        return value

    overrides: dict = {}
    numeric_fields = {
        "WAIT_SECONDS": ("wait_seconds", int),
        "BACKOFF_BASE_SECONDS": ("backoff_base_seconds", float),
        "BACKOFF_MAX_SECONDS": ("backoff_max_seconds", float),
        "JITTER_FACTOR": ("jitter_factor", float),
        "MIN_DELAY_BETWEEN_REQUESTS_SECONDS": ("min_delay_between_requests_seconds", float),
        "MIN_DELAY_ON_EMPTY_RESULT_SECONDS": ("min_delay_on_empty_result_seconds", float),
        "STOP_TIMEOUT_SECONDS": ("stop_timeout_seconds", float),
    }
    for name, (attr, cast) in numeric_fields.items():
        value = get(name)
        if value is None:
            continue
        try:
            overrides[attr] = cast(value)
        except ValueError:
            raise ValueError(f"Invalid value for {prefix}{name}: {value!r}") from None

    dispatch = get("DISPATCH_LISTENERS_IN_BACKGROUND")
    if dispatch is not None:
        overrides["dispatch_listeners_in_background"] = _parse_bool(dispatch)

    timeout_adjustment = config.timeout_adjustment
    enabled = get("TIMEOUT_AUTO_ADJUSTMENT_ENABLED")
    if enabled is not None:
        timeout_adjustment = replace(timeout_adjustment, enabled=_parse_bool(enabled))
    margin = get("TIMEOUT_AUTO_ADJUSTMENT_MARGIN_MS")
    if margin is not None:
        try:
            timeout_adjustment = replace(timeout_adjustment, margin_ms=int(margin))
        except ValueError:
            raise ValueError(
                f"Invalid value for {prefix}TIMEOUT_AUTO_ADJUSTMENT_MARGIN_MS: {margin!r}"
            ) from None
    overrides["timeout_adjustment"] = timeout_adjustment

    if len(overrides) > 1:
        logger.debug(f"Loaded cache config overrides from environment: {sorted(overrides)}")

    return replace(config, **overrides)
