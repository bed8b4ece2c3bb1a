"""
Shared fixtures for consul_cache tests.
"""
import asyncio
import threading
import time
from typing import Any, Callable, Optional

import pytest
import httpx

from consul_cache import CacheConfig, ConsulClient
from consul_timeout import TimeoutAdjustmentConfig


class FakeConsul:
    """
    In-memory Consul endpoint served through httpx.MockTransport.

    Blocking queries are held while the requested index is current, like a
    real agent would, but only for ``hold_seconds``. Scripted responses are
    served first, one per request, before falling back to the live dataset.
    """

    def __init__(self, hold_seconds: float = 0.05) -> None:
        self.hold_seconds = hold_seconds
        self.index = 1
        self.dataset: list[Any] = []
        self.down: set[str] = set()
        self.requests: list[httpx.Request] = []
        self._script: list[Any] = []
        self._lock = threading.Lock()

    def publish(self, dataset: list[Any]) -> None:
        """Replace the dataset and move the index forward."""
        with self._lock:
            self.dataset = list(dataset)
            self.index += 1

    def register(self, entity: dict) -> None:
        with self._lock:
            dataset = self.dataset + [entity]
        self.publish(dataset)

    def script(self, *items: Any) -> None:
        """Queue responses (httpx.Response) or exceptions for the next requests."""
        with self._lock:
            self._script.extend(items)

    @property
    def request_count(self) -> int:
        with self._lock:
            return len(self.requests)

    def hosts(self) -> list[str]:
        with self._lock:
            return [request.url.host for request in self.requests]

    async def handler(self, request: httpx.Request) -> httpx.Response:
        with self._lock:
            self.requests.append(request)
            if request.url.host in self.down:
                raise httpx.ConnectError("connection refused", request=request)
            item = self._script.pop(0) if self._script else None

        if isinstance(item, Exception):
            raise item
        if item is not None:
            return item

        requested = request.url.params.get("index")
        deadline = time.monotonic() + self.hold_seconds
        while requested is not None and int(requested) >= self.index and time.monotonic() < deadline:
            await asyncio.sleep(0.005)

        with self._lock:
            return httpx.Response(
                200,
                json=list(self.dataset),
                headers={"X-Consul-Index": str(self.index), "X-Consul-KnownLeader": "true"},
            )


def wait_for(predicate: Callable[[], bool], timeout: float = 3.0) -> bool:
    """Poll a condition from the test thread."""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return predicate()


@pytest.fixture
def fake_consul():
    """FakeConsul with a short hold."""
    return FakeConsul()


@pytest.fixture
def make_client(fake_consul):
    """Build a ConsulClient whose sessions talk to fake_consul."""

    def factory(base_url: Optional[str] = None, **kwargs: Any) -> ConsulClient:
        if base_url is None and "targets" not in kwargs:
            base_url = "http://consul-a:8500"
        return ConsulClient(
            base_url,
            transport_factory=lambda: httpx.MockTransport(fake_consul.handler),
            **kwargs,
        )

    return factory


@pytest.fixture
def fast_config():
    """Cache config with short waits and backoff."""
    return CacheConfig(
        wait_seconds=1,
        backoff_base_seconds=0.01,
        backoff_max_seconds=0.05,
        jitter_factor=0,
        timeout_adjustment=TimeoutAdjustmentConfig(margin_ms=500),
        stop_timeout_seconds=2.0,
    )
