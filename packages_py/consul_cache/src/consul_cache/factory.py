"""
Factory functions for composing Consul transports
"""
from typing import Callable, Optional

import httpx

from consul_failover import FailoverStrategy, FailoverTransport
from consul_timeout import TimeoutAdjustingTransport, TimeoutAdjustmentConfig


def compose_transport(
    base: httpx.AsyncBaseTransport,
    *wrappers: Callable[[httpx.AsyncBaseTransport], httpx.AsyncBaseTransport],
) -> httpx.AsyncBaseTransport:
    """
    Compose multiple transport wrappers together.

    Args:
        base: The base transport to wrap
        *wrappers: Transport wrapper functions to apply in order (the last one
            becomes the outermost transport)

    Returns:
        Composed transport with all wrappers applied
    """
    transport = base
    for wrapper in wrappers:
        transport = wrapper(transport)
    return transport


def create_consul_transport(
    base: Optional[httpx.AsyncBaseTransport] = None,
    *,
    strategy: Optional[FailoverStrategy] = None,
    timeout_adjustment: Optional[TimeoutAdjustmentConfig] = None,
) -> httpx.AsyncBaseTransport:
    """
    Create the transport stack used for blocking queries.

    The read timeout is adjusted per attempt, and failover wraps everything so
    that each retry on another target goes through the adjustment again:
        Failover -> TimeoutAdjusting -> base

    Args:
        base: Innermost transport (default: httpx.AsyncHTTPTransport())
        strategy: Failover strategy; no failover layer when omitted
        timeout_adjustment: Read timeout adjustment configuration

    Returns:
        Composed transport

    Example:
        strategy = BlacklistingFailoverStrategy(["consul-1:8500", "consul-2:8500"])
        transport = create_consul_transport(strategy=strategy)
        client = httpx.AsyncClient(transport=transport, base_url="http://consul-1:8500")
    """
    wrappers: list[Callable[[httpx.AsyncBaseTransport], httpx.AsyncBaseTransport]] = [
        lambda inner: TimeoutAdjustingTransport(inner, timeout_adjustment),
    ]
    if strategy is not None:
        wrappers.append(lambda inner: FailoverTransport(inner, strategy))

    return compose_transport(base or httpx.AsyncHTTPTransport(), *wrappers)
