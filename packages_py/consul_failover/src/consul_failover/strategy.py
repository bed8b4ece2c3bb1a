"""
Failover strategies for choosing which Consul agent receives a request
"""
import logging
import threading
import time
from typing import Callable, Collection, Iterable, Optional, Protocol, Union

import httpx

from .types import BlacklistEntry, Target


logger = logging.getLogger("consul_failover.strategy")

DEFAULT_BLACKLIST_WINDOW_SECONDS = 60.0


class FailoverStrategy(Protocol):
    """Strategy consulted before and during every outgoing request."""

    def is_request_viable(self, request: Optional[httpx.Request] = None) -> bool:
        """Whether at least one target could currently serve a request."""
        ...

    def compute_next_stage(
        self,
        request: httpx.Request,
        attempted: Collection[Target] = (),
    ) -> Optional[httpx.Request]:
        """Return the request to send next, or None when no target remains."""
        ...

    def mark_request_failed(self, request: httpx.Request) -> None:
        """Record that the target of a request could not be reached."""
        ...

    def mark_failed(self, target: Target) -> None:
        """Record that a target failed."""
        ...


class BlacklistingFailoverStrategy:
    """
    Failover strategy that temporarily excludes targets that failed.

    A failed target is blacklisted for ``blacklist_window_seconds``. There is no
    explicit recovery step: once the window has elapsed the entry simply stops
    excluding the target, and it is purged the next time it is inspected.

    A single instance is meant to be shared by every request issued through one
    transport, so all blacklist access happens under a lock.

    Example:
        strategy = BlacklistingFailoverStrategy(
            [Target("consul-1"), Target("consul-2")],
            blacklist_window_seconds=30.0,
        )
        transport = FailoverTransport(httpx.AsyncHTTPTransport(), strategy)
    """

    def __init__(
        self,
        targets: Iterable[Union[Target, str]],
        blacklist_window_seconds: float = DEFAULT_BLACKLIST_WINDOW_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """
        Create a new BlacklistingFailoverStrategy.

        Args:
            targets: Candidate targets, in order of preference
            blacklist_window_seconds: How long a failed target stays excluded
            clock: Monotonic clock, overridable for tests
        """
        candidates: list[Target] = []
        for target in targets:
            parsed = Target.parse(target) if isinstance(target, str) else target
            if parsed not in candidates:
                candidates.append(parsed)

        if not candidates:
            raise ValueError("At least one target is required")
        if blacklist_window_seconds < 0:
            raise ValueError("blacklist_window_seconds must be non-negative")

        self._targets = tuple(candidates)
        self._window = blacklist_window_seconds
        self._clock = clock
        self._blacklist: dict[Target, float] = {}
        self._lock = threading.Lock()

    @property
    def targets(self) -> tuple[Target, ...]:
        """Candidate targets in order of preference."""
        return self._targets

    @property
    def blacklist_window_seconds(self) -> float:
        return self._window

    def _is_blacklisted(self, target: Target, now: float) -> bool:
        # Caller holds the lock
        failed_at = self._blacklist.get(target)
        if failed_at is None:
            return False
        if now - failed_at > self._window:
            del self._blacklist[target]
            return False
        return True

    def is_request_viable(self, request: Optional[httpx.Request] = None) -> bool:
        """
        Check whether any candidate target is currently outside the blacklist.

        Args:
            request: The request about to be sent (unused, accepted for symmetry
                with the other hooks)

        Returns:
            True if at least one candidate is not blacklisted
        """
        with self._lock:
            now = self._clock()
            return any(not self._is_blacklisted(target, now) for target in self._targets)

    def compute_next_target(
        self,
        previous: Optional[Target] = None,
        attempted: Collection[Target] = (),
    ) -> Optional[Target]:
        """
        Choose the target for the next attempt.

        The previous target is kept as long as it is healthy and has not already
        been tried in this cycle. Otherwise the first candidate that is neither
        blacklisted nor already attempted wins.

        Args:
            previous: Target of the previous attempt, if any
            attempted: Targets already tried in the current attempt cycle

        Returns:
            The next target, or None once the cycle is exhausted
        """
        with self._lock:
            now = self._clock()
            if (
                previous is not None
                and previous not in attempted
                and not self._is_blacklisted(previous, now)
            ):
                return previous

            for target in self._targets:
                if target in attempted:
                    continue
                if not self._is_blacklisted(target, now):
                    return target

        return None

    def compute_next_stage(
        self,
        request: httpx.Request,
        attempted: Collection[Target] = (),
    ) -> Optional[httpx.Request]:
        """
        Return the request to send for the next attempt.

        Args:
            request: The previously attempted (or original) request
            attempted: Targets already tried in the current attempt cycle

        Returns:
            The request unchanged when its target is still usable, a copy pointed
            at another target, or None when no target remains
        """
        current = Target.from_request(request)
        target = self.compute_next_target(current, attempted)
        if target is None:
            return None
        if target == current:
            return request
        return retarget_request(request, target)

    def mark_failed(self, target: Target) -> None:
        """Insert or refresh the blacklist entry for a target."""
        with self._lock:
            self._blacklist[target] = self._clock()
        logger.debug(f"Blacklisted {target} for {self._window}s")

    def mark_request_failed(self, request: httpx.Request) -> None:
        """Blacklist the target a request was sent to."""
        self.mark_failed(Target.from_request(request))

    def blacklisted(self) -> list[BlacklistEntry]:
        """Snapshot of the targets that are currently blacklisted."""
        with self._lock:
            now = self._clock()
            entries = []
            for target in list(self._blacklist):
                if self._is_blacklisted(target, now):
                    failed_at = self._blacklist[target]
                    entries.append(BlacklistEntry(target, failed_at, failed_at + self._window))
            return entries


def retarget_request(request: httpx.Request, target: Target) -> httpx.Request:
    """
    Copy a request, sending it to a different host and port.

    Method, path, query, headers, body and extensions are preserved; the Host
    header is rewritten to match the new target.
    """
    url = request.url.copy_with(host=target.host, port=target.port)
    headers = request.headers.copy()
    headers["Host"] = url.netloc.decode("ascii")
    return httpx.Request(
        request.method,
        url,
        headers=headers,
        stream=request.stream,
        extensions=dict(request.extensions),
    )
