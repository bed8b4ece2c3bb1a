"""
Read timeout calculation for blocking queries.

Consul holds a blocking query open for up to ``wait`` and adds a random
jitter of up to wait/16 before answering. The transport read timeout has to
outlast both, otherwise every idle long poll ends in a client-side timeout.
"""
import logging
import math
import re
from typing import Optional

from .config import TimeoutAdjustmentConfig, merge_config


logger = logging.getLogger("consul_timeout.calculator")

# Only seconds and minutes are recognised
_WAIT_PATTERN = re.compile(r"^(\d+)([sm])$")

_UNIT_MS = {
    "s": 1000,
    "m": 60 * 1000,
}

JITTER_DIVISOR = 16


def parse_wait(value: Optional[str]) -> Optional[int]:
    """
    Parse a blocking query ``wait`` value.

    Args:
        value: Wait value such as "10s" or "5m"

    Returns:
        The wait in milliseconds, or None when the value is absent or not
        adjustable (bare integers, other units, garbage)
    """
    if not value:
        return None

    match = _WAIT_PATTERN.match(value.strip())
    if match is None:
        logger.debug(f"Wait value {value!r} is not adjustable")
        return None

    amount, unit = match.groups()
    return int(amount) * _UNIT_MS[unit]


def format_wait(seconds: int) -> str:
    """Format a wait budget in seconds as a query parameter value."""
    if seconds >= 60 and seconds % 60 == 0:
        return f"{seconds // 60}m"
    return f"{seconds}s"


def compute_read_timeout_ms(
    wait: Optional[str],
    default_timeout_ms: Optional[int],
    config: Optional[TimeoutAdjustmentConfig] = None,
) -> Optional[int]:
    """
    Compute the read timeout for a single request.

    The result replaces the default for that request; it is never added to it:
        timeout = wait + ceil(wait / 16) + margin

    Args:
        wait: The request's ``wait`` query parameter
        default_timeout_ms: The transport's current read timeout (milliseconds)
        config: Adjustment configuration

    Returns:
        The read timeout in milliseconds (the default when adjustment is
        disabled or the wait is not adjustable)
    """
    cfg = merge_config(config)
    if not cfg.enabled:
        return default_timeout_ms

    wait_ms = parse_wait(wait)
    if wait_ms is None:
        return default_timeout_ms

    return wait_ms + math.ceil(wait_ms / JITTER_DIVISOR) + cfg.margin_ms
