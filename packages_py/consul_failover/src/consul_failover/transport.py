"""
Failover transport wrappers for httpx
"""
import logging
from typing import Optional

import httpx

from .exceptions import NoViableTargetError, TargetsExhaustedError
from .strategy import FailoverStrategy
from .types import Target


logger = logging.getLogger("consul_failover.transport")

TARGET_EXTENSION = "consul_target"
"""Response extension holding the Target that actually served the request"""


class FailoverTransport(httpx.AsyncBaseTransport):
    """
    Failover transport wrapper for httpx.

    Wraps another transport and sends each request to the target chosen by a
    failover strategy. A transport-level failure blacklists the target and the
    request moves on to the next viable one. Any HTTP response, including 4xx
    and 5xx, ends the cycle: a 404 or 403 from Consul is a valid answer.

    Example:
        strategy = BlacklistingFailoverStrategy(["consul-1:8500", "consul-2:8500"])
        transport = FailoverTransport(httpx.AsyncHTTPTransport(), strategy)
        client = httpx.AsyncClient(transport=transport, base_url="http://consul-1:8500")
    """

    def __init__(self, inner: httpx.AsyncBaseTransport, strategy: FailoverStrategy) -> None:
        """
        Create a new FailoverTransport.

        Args:
            inner: The wrapped transport to delegate requests to
            strategy: Strategy deciding which target each attempt goes to
        """
        self._inner = inner
        self._strategy = strategy

    @property
    def strategy(self) -> FailoverStrategy:
        return self._strategy

    async def handle_async_request(self, request: httpx.Request) -> httpx.Response:
        """Handle an async HTTP request with failover"""
        if not self._strategy.is_request_viable(request):
            raise NoViableTargetError(_targets_of(self._strategy))

        attempted: list[Target] = []
        previous = request
        last_error: Optional[Exception] = None

        while True:
            next_request = self._strategy.compute_next_stage(previous, attempted)
            if next_request is None:
                raise TargetsExhaustedError(
                    _targets_of(self._strategy), attempted, last_error
                ) from last_error

            target = Target.from_request(next_request)
            previous = next_request

            try:
                response = await self._inner.handle_async_request(next_request)
            except httpx.TransportError as error:
                logger.debug(f"Failed to connect to {next_request.url}: {error!r}")
                self._strategy.mark_request_failed(next_request)
                attempted.append(target)
                last_error = error
                continue

            response.extensions[TARGET_EXTENSION] = target
            return response

    async def aclose(self) -> None:
        """Close the transport"""
        await self._inner.aclose()


class SyncFailoverTransport(httpx.BaseTransport):
    """
    Synchronous failover transport wrapper for httpx.

    Same behaviour as FailoverTransport for httpx.Client.
    """

    def __init__(self, inner: httpx.BaseTransport, strategy: FailoverStrategy) -> None:
        self._inner = inner
        self._strategy = strategy

    @property
    def strategy(self) -> FailoverStrategy:
        return self._strategy

    def handle_request(self, request: httpx.Request) -> httpx.Response:
        """Handle a sync HTTP request with failover"""
        if not self._strategy.is_request_viable(request):
            raise NoViableTargetError(_targets_of(self._strategy))

        attempted: list[Target] = []
        previous = request
        last_error: Optional[Exception] = None

        while True:
            next_request = self._strategy.compute_next_stage(previous, attempted)
            if next_request is None:
                raise TargetsExhaustedError(
                    _targets_of(self._strategy), attempted, last_error
                ) from last_error

            target = Target.from_request(next_request)
            previous = next_request

            try:
                response = self._inner.handle_request(next_request)
            except httpx.TransportError as error:
                logger.debug(f"Failed to connect to {next_request.url}: {error!r}")
                self._strategy.mark_request_failed(next_request)
                attempted.append(target)
                last_error = error
                continue

            response.extensions[TARGET_EXTENSION] = target
            return response

    def close(self) -> None:
        """Close the transport"""
        self._inner.close()


def _targets_of(strategy: FailoverStrategy) -> tuple[Target, ...]:
    return tuple(getattr(strategy, "targets", ()))
