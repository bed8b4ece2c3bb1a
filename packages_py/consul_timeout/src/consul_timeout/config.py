"""
Configuration for consul_timeout
"""
from dataclasses import dataclass
from typing import Optional


@dataclass
class TimeoutAdjustmentConfig:
    """Read-timeout auto adjustment configuration"""

    enabled: bool = True
    """Whether blocking queries get a read timeout sized from their wait. Default: True"""

    margin_ms: int = 2000
    """Extra time allowed on top of the wait and its jitter (milliseconds). Default: 2000"""


DEFAULT_TIMEOUT_ADJUSTMENT_CONFIG = TimeoutAdjustmentConfig()


def merge_config(config: Optional[TimeoutAdjustmentConfig] = None) -> TimeoutAdjustmentConfig:
    """
    Merge configuration with defaults.

    Args:
        config: User-provided configuration

    Returns:
        Complete configuration with defaults
    """
    if config is None:
        return DEFAULT_TIMEOUT_ADJUSTMENT_CONFIG
    return config


def validate_config(config: TimeoutAdjustmentConfig) -> list[str]:
    """Validate configuration values"""
    errors = []

    if config.margin_ms < 0:
        errors.append("margin_ms must be non-negative")

    return errors
