"""
Ordered registry of snapshot listeners
"""
import logging
import threading
from typing import Callable, Optional

from .types import CacheListener, Snapshot


logger = logging.getLogger("consul_cache.listeners")


class ListenerRegistry:
    """
    Ordered set of callbacks invoked with each new snapshot.

    Listeners are called in registration order. A listener that raises is
    logged and skipped; delivery to the remaining listeners continues.
    Registering never replays past snapshots.
    """

    def __init__(self, name: str = "cache") -> None:
        self._name = name
        self._listeners: list[CacheListener] = []
        self._lock = threading.Lock()

    def add(self, listener: CacheListener) -> Callable[[], None]:
        """
        Register a listener.

        Args:
            listener: Callback receiving each new snapshot

        Returns:
            Function to remove the listener
        """
        with self._lock:
            if listener not in self._listeners:
                self._listeners.append(listener)
        return lambda: self.remove(listener)

    def remove(self, listener: CacheListener) -> bool:
        """Remove a listener. Returns whether it was registered."""
        with self._lock:
            if listener in self._listeners:
                self._listeners.remove(listener)
                return True
            return False

    def clear(self) -> None:
        with self._lock:
            self._listeners.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._listeners)

    def notify(
        self,
        snapshot: Snapshot,
        on_error: Optional[Callable[[CacheListener, Exception], None]] = None,
        should_continue: Optional[Callable[[], bool]] = None,
    ) -> int:
        """
        Deliver a snapshot to every registered listener.

        Args:
            snapshot: The newly committed snapshot
            on_error: Called with the listener and its exception when one fails
            should_continue: Checked before each listener; the round ends as
                soon as it returns False

        Returns:
            Number of listeners that raised
        """
        with self._lock:
            listeners = list(self._listeners)

        failures = 0
        for listener in listeners:
            if should_continue is not None and not should_continue():
                logger.debug(f"Notification round of {self._name} at index {snapshot.index} cut short")
                break
            try:
                listener(snapshot)
            except Exception as error:
                failures += 1
                logger.exception(f"Listener {listener!r} of {self._name} failed at index {snapshot.index}")
                if on_error is not None:
                    try:
                        on_error(listener, error)
                    except Exception:
                        logger.exception(f"Error handler of {self._name} failed")
        return failures
