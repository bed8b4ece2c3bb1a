"""
Blocking query cache engine.

A ConsulCache keeps a local snapshot of a remote dataset up to date by
repeatedly issuing blocking queries and notifies listeners of every new
snapshot. The poll loop runs as an asyncio task on a dedicated thread with
its own event loop, so applications interact with the cache from ordinary
threads and stop() can cancel an in-flight query or backoff sleep right away.
"""
import asyncio
import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Callable, Dict, Iterable, Optional, Protocol

from consul_failover import FailoverStrategy, NoViableTargetError
from consul_timeout import TimeoutAdjustmentConfig, format_wait

from .client import ConsulSession
from .config import CacheConfig, calculate_backoff_delay, merge_config, validate_config
from .exceptions import ConsulHttpError, ConsulResponseError
from .listeners import ListenerRegistry
from .types import (
    CacheEvent,
    CacheEventListener,
    CacheEventType,
    CacheListener,
    CacheState,
    FatalFailure,
    FetchEmpty,
    FetchOutcome,
    FetchSuccess,
    KeyExtractor,
    QueryResponse,
    RetryableFailure,
    Snapshot,
)


logger = logging.getLogger("consul_cache.engine")


class BlockingQueryClient(Protocol):
    """What the cache needs from a client: sessions and an optional failover strategy."""

    @property
    def failover_strategy(self) -> Optional[FailoverStrategy]:
        ...

    def open_session(
        self,
        timeout_adjustment: Optional[TimeoutAdjustmentConfig] = None,
    ) -> ConsulSession:
        ...


def index_increased(previous: Optional[int], current: Optional[int]) -> bool:
    """Whether a response index represents a newer revision than the committed one."""
    if current is None:
        return False
    if previous is None:
        return True
    return current > previous


class ConsulCache:
    """
    Continuously updated, in-memory view of a Consul endpoint.

    Lifecycle: NOT_STARTED -> STARTING -> RUNNING -> STOPPED. The cache moves to
    RUNNING on the first successful fetch; STOPPED is terminal.

    Example:
        cache = ConsulCache(client, "/v1/catalog/service/web", lambda s: s["ServiceID"])
        cache.add_listener(lambda snapshot: print(len(snapshot)))
        cache.start()
        cache.await_initialized(5.0)
        ...
        cache.stop()
    """

    def __init__(
        self,
        client: BlockingQueryClient,
        path: str,
        key_extractor: KeyExtractor,
        config: Optional[CacheConfig] = None,
        params: Optional[Dict[str, str]] = None,
        name: Optional[str] = None,
    ) -> None:
        """
        Create a new ConsulCache.

        Args:
            client: Client issuing the blocking queries
            path: API path to poll
            key_extractor: Maps each entity of the dataset to its key
            config: Cache configuration
            params: Extra query parameters sent with every query
            name: Name used in logs and events (default: the path)
        """
        cfg = merge_config(config)
        errors = validate_config(cfg)
        if errors:
            raise ValueError(f"Invalid cache config: {'; '.join(errors)}")

        self._client = client
        self._path = path
        self._key_extractor = key_extractor
        self._config = cfg
        self._params = dict(params or {})
        self._name = name or path
        self._wait = format_wait(cfg.wait_seconds)

        self._state = CacheState.NOT_STARTED
        self._state_lock = threading.Lock()

        self._snapshot = Snapshot.empty()
        self._snapshot_lock = threading.Lock()

        self._initialized = threading.Event()
        self._stop_requested = threading.Event()

        self._listeners = ListenerRegistry(self._name)
        self._event_listeners: list[CacheEventListener] = []
        self._event_lock = threading.Lock()

        self._error_count = 0

        self._thread: Optional[threading.Thread] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._task: Optional[asyncio.Task] = None
        self._loop_lock = threading.Lock()
        self._dispatcher: Optional[ThreadPoolExecutor] = None
        self._dispatcher_thread_id: Optional[int] = None

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    @property
    def name(self) -> str:
        return self._name

    @property
    def path(self) -> str:
        return self._path

    @property
    def config(self) -> CacheConfig:
        return self._config

    @property
    def state(self) -> CacheState:
        with self._state_lock:
            return self._state

    @property
    def error_count(self) -> int:
        """Number of consecutive failed polls."""
        return self._error_count

    def start(self) -> None:
        """
        Start polling on a background thread.

        Calling start() on a cache that is already started is a no-op.

        Raises:
            RuntimeError: If the cache has been stopped
        """
        with self._state_lock:
            if self._state == CacheState.STOPPED:
                raise RuntimeError(f"Cache {self._name} has been stopped and cannot be restarted")
            if self._state != CacheState.NOT_STARTED:
                return
            self._state = CacheState.STARTING

            if self._config.dispatch_listeners_in_background:
                self._dispatcher = ThreadPoolExecutor(
                    max_workers=1,
                    thread_name_prefix=f"consul-cache-listeners-{self._name}",
                    initializer=self._record_dispatcher_thread,
                )

            self._thread = threading.Thread(
                target=self._run,
                name=f"consul-cache-{self._name}",
                daemon=True,
            )
            self._thread.start()

        logger.info(f"Started cache {self._name} (wait={self._wait})")
        self._emit(CacheEventType.STARTED)

    def stop(self) -> None:
        """
        Stop polling.

        Cancels any in-flight query or backoff sleep and waits (up to
        ``stop_timeout_seconds``) for the poll thread to finish. No listener is
        notified after stop() returns. Calling stop() again is a no-op.
        """
        with self._state_lock:
            if self._state == CacheState.STOPPED:
                return
            self._state = CacheState.STOPPED

        self._stop_requested.set()

        with self._loop_lock:
            loop, task = self._loop, self._task
            if loop is not None and task is not None and not loop.is_closed():
                loop.call_soon_threadsafe(task.cancel)

        thread = self._thread
        if thread is not None and thread is not threading.current_thread():
            thread.join(self._config.stop_timeout_seconds)
            if thread.is_alive():
                logger.warning(
                    f"Poll thread of cache {self._name} did not finish within "
                    f"{self._config.stop_timeout_seconds}s"
                )

        if self._dispatcher is not None:
            self._dispatcher.shutdown(wait=not self._on_dispatcher_thread(), cancel_futures=True)

        logger.info(f"Stopped cache {self._name}")
        self._emit(CacheEventType.STOPPED)

    def add_listener(self, listener: CacheListener) -> Callable[[], None]:
        """
        Register a listener for snapshots committed from now on.

        Args:
            listener: Callback receiving each new snapshot

        Returns:
            Function to remove the listener
        """
        return self._listeners.add(listener)

    def remove_listener(self, listener: CacheListener) -> bool:
        """Remove a listener. Returns whether it was registered."""
        return self._listeners.remove(listener)

    def await_initialized(self, timeout_seconds: Optional[float] = None) -> bool:
        """
        Block until the first successful fetch.

        Args:
            timeout_seconds: Maximum time to wait (None waits forever)

        Returns:
            True once initialized, False if the timeout elapsed first
        """
        return self._initialized.wait(timeout_seconds)

    def get_snapshot(self) -> Snapshot:
        """The most recently committed snapshot (empty before the first fetch)."""
        with self._snapshot_lock:
            return self._snapshot

    def on(self, listener: CacheEventListener) -> Callable[[], None]:
        """
        Add an event listener.

        Args:
            listener: Event listener function

        Returns:
            Function to remove the listener
        """
        with self._event_lock:
            self._event_listeners.append(listener)
        return lambda: self.off(listener)

    def off(self, listener: CacheEventListener) -> None:
        """Remove an event listener."""
        with self._event_lock:
            if listener in self._event_listeners:
                self._event_listeners.remove(listener)

    def __enter__(self) -> "ConsulCache":
        self.start()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.stop()

    def __repr__(self) -> str:
        return f"{type(self).__name__}(name={self._name!r}, state={self.state.value})"

    # ------------------------------------------------------------------
    # Poll loop
    # ------------------------------------------------------------------

    def _run(self) -> None:
        with self._loop_lock:
            if self._stop_requested.is_set():
                return
            loop = asyncio.new_event_loop()
            self._loop = loop
            self._task = loop.create_task(self._poll_loop())
            task = self._task

        try:
            loop.run_until_complete(task)
        except asyncio.CancelledError:
            logger.debug(f"Poll loop of cache {self._name} cancelled")
        except Exception:
            logger.exception(f"Poll loop of cache {self._name} terminated unexpectedly")
        finally:
            with self._loop_lock:
                try:
                    loop.run_until_complete(loop.shutdown_asyncgens())
                finally:
                    loop.close()

    async def _poll_loop(self) -> None:
        """Keep a session open and poll through it, reopening it after failures."""
        while not self._stop_requested.is_set():
            try:
                async with self._client.open_session(self._config.timeout_adjustment) as session:
                    await self._poll_session(session)
            except Exception as error:
                if self._stop_requested.is_set():
                    logger.debug(f"Closing session of cache {self._name} failed: {error!r}")
                    break
                delay = self._on_failure(RetryableFailure(error))
                if delay > 0:
                    await asyncio.sleep(delay)

    async def _poll_session(self, session: ConsulSession) -> None:
        while not self._stop_requested.is_set():
            outcome = await self._fetch(session)

            try:
                delay = self._handle_outcome(outcome)
            except Exception:
                logger.exception(f"Failed to process poll result of cache {self._name}")
                self._error_count += 1
                delay = calculate_backoff_delay(self._error_count, self._config)

            if self._stop_requested.is_set():
                break
            if delay > 0:
                await asyncio.sleep(delay)

    async def _fetch(self, session: ConsulSession) -> FetchOutcome:
        """Issue one blocking query and classify the result."""
        strategy = self._client.failover_strategy
        if strategy is not None and not strategy.is_request_viable():
            return FatalFailure(NoViableTargetError(getattr(strategy, "targets", ())))

        index = self.get_snapshot().index
        try:
            response = await session.query(
                self._path,
                index=index,
                wait=self._wait,
                params=self._params,
            )
        except NoViableTargetError as error:
            return FatalFailure(error)
        except ConsulHttpError as error:
            return RetryableFailure(error, error.target, error.status)
        except Exception as error:
            return RetryableFailure(error, getattr(error, "target", None))

        if response.index is None:
            return RetryableFailure(
                ConsulResponseError(
                    f"Response for {self._path} has no X-Consul-Index header", response.target
                ),
                response.target,
            )

        if response.not_found:
            return FetchEmpty(response)
        return FetchSuccess(response)

    def _handle_outcome(self, outcome: FetchOutcome) -> float:
        """Apply a fetch outcome and return the delay before the next poll."""
        if isinstance(outcome, (FetchSuccess, FetchEmpty)):
            return self._on_success(outcome.response)
        return self._on_failure(outcome)

    def _on_success(self, response: QueryResponse) -> float:
        previous = self.get_snapshot()

        if previous.available and not index_increased(previous.index, response.index):
            # Long poll ended without a change
            self._error_count = 0
            logger.debug(f"Cache {self._name} unchanged at index {response.index}")
            self._emit(CacheEventType.POLL_UNCHANGED, index=response.index)
            return self._success_delay(response)

        try:
            entries = self._extract_entries(response.dataset)
        except Exception as error:
            return self._on_failure(RetryableFailure(error, response.target))

        snapshot = Snapshot(
            entries,
            index=response.index,
            known_leader=response.known_leader,
            last_contact_ms=response.last_contact_ms,
        )
        with self._snapshot_lock:
            self._snapshot = snapshot

        with self._state_lock:
            if self._state == CacheState.STARTING:
                self._state = CacheState.RUNNING

        self._error_count = 0
        self._initialized.set()

        logger.debug(
            f"Cache {self._name} updated to index {response.index} "
            f"({len(snapshot)} entries from {response.target})"
        )
        self._emit(
            CacheEventType.POLL_SUCCESS,
            index=response.index,
            size=len(snapshot),
            target=str(response.target) if response.target else None,
        )

        self._deliver(snapshot)
        return self._success_delay(response)

    def _on_failure(self, outcome: FetchOutcome) -> float:
        self._error_count += 1
        fatal = isinstance(outcome, FatalFailure)

        if isinstance(outcome, RetryableFailure) and outcome.blames_target:
            strategy = self._client.failover_strategy
            if strategy is not None:
                strategy.mark_failed(outcome.target)

        delay = calculate_backoff_delay(self._error_count, self._config)
        logger.warning(
            f"Polling cache {self._name} failed ({self._error_count} consecutive errors), "
            f"retrying in {delay:.2f}s: {outcome.error}"
        )
        self._emit(
            CacheEventType.POLL_ERROR,
            error=str(outcome.error),
            error_type=type(outcome.error).__name__,
            error_count=self._error_count,
            delay_seconds=delay,
            fatal=fatal,
        )
        return delay

    def _success_delay(self, response: QueryResponse) -> float:
        delay = self._config.min_delay_between_requests_seconds
        if not response.dataset:
            delay = max(delay, self._config.min_delay_on_empty_result_seconds)
        return delay

    def _extract_entries(self, dataset: Iterable[Any]) -> Dict[str, Any]:
        entries: Dict[str, Any] = {}
        for entity in dataset:
            entries[self._key_extractor(entity)] = entity
        return entries

    # ------------------------------------------------------------------
    # Notification
    # ------------------------------------------------------------------

    def _deliver(self, snapshot: Snapshot) -> None:
        if self._stop_requested.is_set():
            return

        if self._dispatcher is None:
            self._notify(snapshot)
            return

        try:
            self._dispatcher.submit(self._notify, snapshot)
        except RuntimeError:
            # Dispatcher shut down by a concurrent stop()
            logger.debug(f"Dropped notification of cache {self._name} at index {snapshot.index}")

    def _notify(self, snapshot: Snapshot) -> None:
        if self._stop_requested.is_set():
            return
        self._listeners.notify(
            snapshot,
            on_error=self._on_listener_error,
            should_continue=lambda: not self._stop_requested.is_set(),
        )

    def _on_listener_error(self, listener: CacheListener, error: Exception) -> None:
        self._emit(
            CacheEventType.LISTENER_ERROR,
            listener=repr(listener),
            error=str(error),
            error_type=type(error).__name__,
        )

    def _record_dispatcher_thread(self) -> None:
        self._dispatcher_thread_id = threading.get_ident()

    def _on_dispatcher_thread(self) -> bool:
        return threading.get_ident() == self._dispatcher_thread_id

    def _emit(self, event_type: CacheEventType, **data: Any) -> None:
        """Emit an event to all event listeners."""
        with self._event_lock:
            listeners = list(self._event_listeners)

        event = CacheEvent(type=event_type, cache=self._name, data=data)
        for listener in listeners:
            try:
                listener(event)
            except Exception:
                logger.debug(f"Event listener of cache {self._name} failed", exc_info=True)
