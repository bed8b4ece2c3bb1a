"""
Read timeout auto adjustment for Consul blocking queries.
"""
from .config import (
    TimeoutAdjustmentConfig,
    DEFAULT_TIMEOUT_ADJUSTMENT_CONFIG,
    merge_config,
    validate_config,
)
from .calculator import (
    parse_wait,
    format_wait,
    compute_read_timeout_ms,
    JITTER_DIVISOR,
)
from .transport import (
    adjust_request_timeout,
    TimeoutAdjustingTransport,
    SyncTimeoutAdjustingTransport,
)


__all__ = [
    # Config
    "TimeoutAdjustmentConfig",
    "DEFAULT_TIMEOUT_ADJUSTMENT_CONFIG",
    "merge_config",
    "validate_config",
    # Calculator
    "parse_wait",
    "format_wait",
    "compute_read_timeout_ms",
    "JITTER_DIVISOR",
    # Transport wrappers
    "adjust_request_timeout",
    "TimeoutAdjustingTransport",
    "SyncTimeoutAdjustingTransport",
]

__version__ = "1.0.0"
