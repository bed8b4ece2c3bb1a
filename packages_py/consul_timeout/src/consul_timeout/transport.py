"""
Read timeout adjusting transport wrappers for httpx
"""
import logging
from typing import Optional

import httpx

from .calculator import compute_read_timeout_ms
from .config import TimeoutAdjustmentConfig, merge_config


logger = logging.getLogger("consul_timeout.transport")


def adjust_request_timeout(
    request: httpx.Request,
    config: Optional[TimeoutAdjustmentConfig] = None,
) -> httpx.Request:
    """
    Size the read timeout of a request from its ``wait`` query parameter.

    Only the ``read`` entry of the request's timeout extension is replaced;
    connect, write and pool timeouts are left untouched.

    Args:
        request: The outgoing request
        config: Adjustment configuration

    Returns:
        The same request, with its timeout extension updated when needed
    """
    timeout = request.extensions.get("timeout") or {}
    default_read = timeout.get("read")
    default_ms = None if default_read is None else int(round(default_read * 1000))

    wait = request.url.params.get("wait")
    adjusted_ms = compute_read_timeout_ms(wait, default_ms, config)
    if adjusted_ms == default_ms:
        return request

    logger.debug(
        f"Adjusted read timeout for {request.url.path} from {default_ms}ms to {adjusted_ms}ms (wait={wait})"
    )
    request.extensions["timeout"] = {**timeout, "read": adjusted_ms / 1000}
    return request


class TimeoutAdjustingTransport(httpx.AsyncBaseTransport):
    """
    Timeout adjusting transport wrapper for httpx.

    Keeps the client-side read timeout compatible with the server-side long-poll
    deadline of each blocking query.

    Example:
        base = httpx.AsyncHTTPTransport()
        transport = TimeoutAdjustingTransport(base, TimeoutAdjustmentConfig(margin_ms=2000))
        client = httpx.AsyncClient(transport=transport, timeout=5.0)
    """

    def __init__(
        self,
        inner: httpx.AsyncBaseTransport,
        config: Optional[TimeoutAdjustmentConfig] = None,
    ) -> None:
        """
        Create a new TimeoutAdjustingTransport.

        Args:
            inner: The wrapped transport to delegate requests to
            config: Adjustment configuration
        """
        self._inner = inner
        self._config = merge_config(config)

    @property
    def config(self) -> TimeoutAdjustmentConfig:
        return self._config

    async def handle_async_request(self, request: httpx.Request) -> httpx.Response:
        """Handle an async HTTP request with an adjusted read timeout"""
        return await self._inner.handle_async_request(
            adjust_request_timeout(request, self._config)
        )

    async def aclose(self) -> None:
        """Close the transport"""
        await self._inner.aclose()


class SyncTimeoutAdjustingTransport(httpx.BaseTransport):
    """Synchronous timeout adjusting transport wrapper for httpx."""

    def __init__(
        self,
        inner: httpx.BaseTransport,
        config: Optional[TimeoutAdjustmentConfig] = None,
    ) -> None:
        self._inner = inner
        self._config = merge_config(config)

    @property
    def config(self) -> TimeoutAdjustmentConfig:
        return self._config

    def handle_request(self, request: httpx.Request) -> httpx.Response:
        """Handle a sync HTTP request with an adjusted read timeout"""
        return self._inner.handle_request(adjust_request_timeout(request, self._config))

    def close(self) -> None:
        """Close the transport"""
        self._inner.close()
