"""
Tests for the ConsulCache engine.

Test coverage includes:
- Lifecycle: state transitions, idempotent start/stop, no restart
- Snapshot delivery: monotonic growth, unchanged index, 404 as empty
- Failure handling: backoff, target blacklisting on 5xx, no blacklisting on 4xx
- Failover: exhausted targets, no network call when nothing is viable
- Listener isolation, background dispatch and prompt stop
"""

import threading
import time
from dataclasses import replace

import pytest
import httpx

from consul_cache import (
    CacheConfig,
    CacheEventType,
    CacheState,
    ConsulCache,
    ConsulClient,
    index_increased,
)
from consul_failover import BlacklistingFailoverStrategy, Target

from conftest import wait_for


A = Target("consul-a", 8500)
B = Target("consul-b", 8500)


def by_id(entity):
    return entity["ID"]


class Recorder:
    """Listener collecting every delivered snapshot."""

    def __init__(self):
        self.snapshots = []
        self.threads = []

    def __call__(self, snapshot):
        self.snapshots.append(snapshot)
        self.threads.append(threading.current_thread().name)


class EventRecorder:
    """Event listener collecting every cache event."""

    def __init__(self):
        self.events = []

    def __call__(self, event):
        self.events.append(event)

    def of(self, event_type):
        return [event for event in list(self.events) if event.type == event_type]


@pytest.fixture
def cache_factory(make_client, fast_config):
    """Build caches and make sure they are stopped after the test."""
    caches = []

    def factory(client=None, config=None, path="/v1/catalog/service/web", **kwargs):
        cache = ConsulCache(client or make_client(), path, by_id, config or fast_config, **kwargs)
        caches.append(cache)
        return cache

    yield factory

    for cache in caches:
        cache.stop()


class TestIndexIncreased:
    """Tests for index_increased."""

    def test_first_index(self):
        """Should accept any index when none was committed."""
        assert index_increased(None, 0) is True

    def test_greater(self):
        """Should accept a strictly greater index."""
        assert index_increased(4, 5) is True

    @pytest.mark.parametrize("current", [4, 3, None])
    def test_not_greater(self, current):
        """Should reject equal, smaller and missing indexes."""
        assert index_increased(4, current) is False


class TestConstructor:
    """Tests for ConsulCache construction."""

    def test_invalid_config(self, make_client):
        """Should raise ValueError listing every problem."""
        config = CacheConfig(wait_seconds=0, jitter_factor=2)
        with pytest.raises(ValueError) as exc_info:
            ConsulCache(make_client(), "/v1/kv/app", by_id, config)
        assert "wait_seconds" in str(exc_info.value)
        assert "jitter_factor" in str(exc_info.value)

    def test_initial_state(self, cache_factory):
        """Should start out NOT_STARTED with an empty snapshot."""
        cache = cache_factory(name="web")
        assert cache.state == CacheState.NOT_STARTED
        assert cache.name == "web"
        assert cache.get_snapshot().available is False
        assert cache.await_initialized(0.01) is False


class TestLifecycle:
    """Tests for start/stop."""

    def test_runs_after_first_fetch(self, cache_factory, fake_consul):
        """Should move to RUNNING once the first fetch succeeds."""
        fake_consul.publish([{"ID": "web-1"}])
        cache = cache_factory()

        cache.start()

        assert cache.await_initialized(3.0) is True
        assert cache.state == CacheState.RUNNING
        assert dict(cache.get_snapshot()) == {"web-1": {"ID": "web-1"}}

    def test_start_is_idempotent(self, cache_factory):
        """Should ignore a second start()."""
        events = EventRecorder()
        cache = cache_factory()
        cache.on(events)

        cache.start()
        thread = cache._thread
        cache.start()

        assert cache._thread is thread
        assert len(events.of(CacheEventType.STARTED)) == 1

    def test_stop_is_terminal(self, cache_factory):
        """Should refuse to restart a stopped cache."""
        cache = cache_factory()
        cache.start()
        cache.stop()
        cache.stop()

        assert cache.state == CacheState.STOPPED
        with pytest.raises(RuntimeError):
            cache.start()

    def test_stop_before_start(self, cache_factory, fake_consul):
        """Should stop without ever polling."""
        cache = cache_factory()
        cache.stop()
        assert cache.state == CacheState.STOPPED
        assert fake_consul.request_count == 0

    def test_stop_cancels_in_flight_query(self, cache_factory, fake_consul):
        """Should interrupt a held blocking query promptly."""
        fake_consul.hold_seconds = 30
        cache = cache_factory()
        cache.start()
        assert cache.await_initialized(3.0)
        assert wait_for(lambda: fake_consul.request_count >= 2)

        started = time.monotonic()
        cache.stop()

        assert time.monotonic() - started < 2.0
        assert not cache._thread.is_alive()

    def test_context_manager(self, cache_factory):
        """Should start on enter and stop on exit."""
        cache = cache_factory()
        with cache as entered:
            assert entered is cache
            assert cache.await_initialized(3.0)
        assert cache.state == CacheState.STOPPED


class TestSnapshots:
    """Tests for snapshot delivery."""

    def test_monotonic_growth(self, cache_factory, fake_consul):
        """Should deliver {}, {A}, {A, B} in order as entities are registered."""
        recorder = Recorder()
        cache = cache_factory()
        cache.add_listener(recorder)
        cache.start()

        assert wait_for(lambda: len(recorder.snapshots) == 1)
        fake_consul.register({"ID": "a"})
        assert wait_for(lambda: len(recorder.snapshots) == 2)
        fake_consul.register({"ID": "b"})
        assert wait_for(lambda: len(recorder.snapshots) == 3)

        cache.stop()
        assert [sorted(snapshot) for snapshot in recorder.snapshots] == [[], ["a"], ["a", "b"]]
        indexes = [snapshot.index for snapshot in recorder.snapshots]
        assert indexes == sorted(set(indexes))

    def test_unchanged_index_is_noop(self, cache_factory, fake_consul):
        """Should not notify when the index did not move."""
        fake_consul.publish([{"ID": "web-1"}])
        recorder = Recorder()
        events = EventRecorder()
        cache = cache_factory()
        cache.add_listener(recorder)
        cache.on(events)
        cache.start()

        assert wait_for(lambda: len(events.of(CacheEventType.POLL_UNCHANGED)) >= 3)
        cache.stop()

        assert len(recorder.snapshots) == 1
        assert len(events.of(CacheEventType.POLL_SUCCESS)) == 1

    def test_sends_index_and_wait(self, cache_factory, fake_consul):
        """Should long-poll with the committed index and the configured wait."""
        cache = cache_factory(params={"tag": "primary"})
        cache.start()
        assert wait_for(lambda: fake_consul.request_count >= 2)
        cache.stop()

        first, second = fake_consul.requests[:2]
        assert "index" not in first.url.params
        assert first.url.params["wait"] == "1s"
        assert first.url.params["tag"] == "primary"
        assert second.url.params["index"] == str(fake_consul.index)
        assert first.extensions["timeout"]["read"] == pytest.approx(1.0 + 0.063 + 0.5)

    def test_not_found_is_empty_snapshot(self, cache_factory, fake_consul):
        """Should commit an empty snapshot for a 404."""
        fake_consul.script(httpx.Response(404, headers={"X-Consul-Index": "5"}))
        recorder = Recorder()
        cache = cache_factory()
        cache.add_listener(recorder)
        cache.start()

        assert wait_for(lambda: len(recorder.snapshots) == 1)
        snapshot = recorder.snapshots[0]
        assert snapshot.available is True
        assert snapshot.index == 5
        assert len(snapshot) == 0

    def test_listener_added_late_gets_no_replay(self, cache_factory, fake_consul):
        """Should only deliver snapshots committed after registration."""
        first = Recorder()
        cache = cache_factory()
        cache.add_listener(first)
        cache.start()
        assert wait_for(lambda: len(first.snapshots) == 1)

        recorder = Recorder()
        cache.add_listener(recorder)
        time.sleep(0.1)
        assert recorder.snapshots == []

        fake_consul.register({"ID": "a"})
        assert wait_for(lambda: len(recorder.snapshots) == 1)

    def test_no_notification_after_stop(self, cache_factory, fake_consul):
        """Should not notify listeners once stop() returned."""
        recorder = Recorder()
        cache = cache_factory()
        cache.add_listener(recorder)
        cache.start()
        assert wait_for(lambda: len(recorder.snapshots) == 1)

        cache.stop()
        fake_consul.register({"ID": "late"})
        time.sleep(0.1)

        assert len(recorder.snapshots) == 1

    def test_remove_listener(self, cache_factory, fake_consul):
        """Should stop delivering to a removed listener."""
        recorder = Recorder()
        cache = cache_factory()
        remove = cache.add_listener(recorder)
        cache.start()
        assert wait_for(lambda: len(recorder.snapshots) == 1)

        remove()
        fake_consul.register({"ID": "a"})
        assert wait_for(lambda: len(cache.get_snapshot()) == 1)

        assert len(recorder.snapshots) == 1
        assert cache.remove_listener(recorder) is False


class TestListeners:
    """Tests for listener isolation and dispatch."""

    def test_failing_listener_is_isolated(self, cache_factory):
        """Should keep delivering to other listeners and report the failure."""
        events = EventRecorder()
        recorder = Recorder()

        def broken(snapshot):
            raise RuntimeError("listener bug")

        cache = cache_factory()
        cache.on(events)
        cache.add_listener(broken)
        cache.add_listener(recorder)
        cache.start()

        assert wait_for(lambda: len(recorder.snapshots) == 1)
        errors = events.of(CacheEventType.LISTENER_ERROR)
        assert len(errors) == 1
        assert errors[0].data["error_type"] == "RuntimeError"
        assert cache.state == CacheState.RUNNING

    def test_inline_dispatch_runs_on_poll_thread(self, cache_factory):
        """Should notify from the poll thread by default."""
        recorder = Recorder()
        cache = cache_factory(name="inline")
        cache.add_listener(recorder)
        cache.start()

        assert wait_for(lambda: len(recorder.snapshots) == 1)
        assert recorder.threads[0] == "consul-cache-inline"

    def test_background_dispatch_preserves_order(self, cache_factory, fake_consul, fast_config):
        """Should notify from a separate worker, in commit order."""
        recorder = Recorder()
        config = replace(fast_config, dispatch_listeners_in_background=True)
        cache = cache_factory(config=config, name="bg")
        cache.add_listener(recorder)
        cache.start()

        assert wait_for(lambda: len(recorder.snapshots) == 1)
        fake_consul.register({"ID": "a"})
        assert wait_for(lambda: len(recorder.snapshots) == 2)
        fake_consul.register({"ID": "b"})
        assert wait_for(lambda: len(recorder.snapshots) == 3)

        assert [len(snapshot) for snapshot in recorder.snapshots] == [0, 1, 2]
        assert all(name.startswith("consul-cache-listeners-bg") for name in recorder.threads)

    def test_event_listener_removal(self, cache_factory):
        """Should stop emitting to a removed event listener."""
        events = EventRecorder()
        cache = cache_factory()
        remove = cache.on(events)
        remove()
        cache.start()
        assert cache.await_initialized(3.0)
        assert events.events == []


class TestFailures:
    """Tests for failure handling."""

    def test_retries_after_server_error(self, cache_factory, fake_consul):
        """Should back off after errors and reset the counter on success."""
        fake_consul.script(
            httpx.Response(500, text="rpc error"),
            httpx.Response(500, text="rpc error"),
        )
        events = EventRecorder()
        cache = cache_factory()
        cache.on(events)
        cache.start()

        assert cache.await_initialized(3.0)
        errors = events.of(CacheEventType.POLL_ERROR)
        assert [event.data["error_count"] for event in errors] == [1, 2]
        assert errors[0].data["fatal"] is False
        assert cache.error_count == 0

    def test_missing_index_is_retried(self, cache_factory, fake_consul):
        """Should treat a response without X-Consul-Index as a failure."""
        fake_consul.script(httpx.Response(200, json=[{"ID": "x"}]))
        events = EventRecorder()
        cache = cache_factory()
        cache.on(events)
        cache.start()

        assert cache.await_initialized(3.0)
        assert events.of(CacheEventType.POLL_ERROR)[0].data["error_type"] == "ConsulResponseError"
        assert "x" not in cache.get_snapshot()

    def test_key_extractor_failure_is_retried(self, cache_factory, fake_consul):
        """Should keep the previous snapshot when an entity cannot be keyed."""
        fake_consul.publish([{"ID": "ok"}])
        cache = cache_factory()
        events = EventRecorder()
        cache.on(events)
        cache.start()
        assert cache.await_initialized(3.0)

        fake_consul.register({"Name": "no id"})
        assert wait_for(lambda: len(events.of(CacheEventType.POLL_ERROR)) >= 1)

        assert list(cache.get_snapshot()) == ["ok"]

    def test_server_error_blacklists_target(self, cache_factory, make_client, fake_consul):
        """Should mark the target of a 5xx as failed and move to another one."""
        fake_consul.script(httpx.Response(503, text="no leader"))
        fake_consul.publish([{"ID": "web-1"}])
        client = make_client(targets=["consul-a", "consul-b"])
        cache = cache_factory(client=client)
        cache.start()

        assert cache.await_initialized(3.0)
        hosts = fake_consul.hosts()
        assert hosts[:2] == ["consul-a", "consul-b"]
        assert [entry.target for entry in client.failover_strategy.blacklisted()] == [A]

    def test_client_error_does_not_blacklist(self, cache_factory, make_client, fake_consul):
        """Should retry a 4xx without blaming the target."""
        fake_consul.script(httpx.Response(403, text="ACL not found"))
        client = make_client(targets=["consul-a", "consul-b"])
        events = EventRecorder()
        cache = cache_factory(client=client)
        cache.on(events)
        cache.start()

        assert cache.await_initialized(3.0)
        assert client.failover_strategy.blacklisted() == []
        assert set(fake_consul.hosts()) == {"consul-a"}
        assert events.of(CacheEventType.POLL_ERROR)[0].data["error_type"] == "ConsulHttpError"

    def test_fails_over_on_connection_error(self, cache_factory, make_client, fake_consul):
        """Should serve the snapshot from the next target when one is down."""
        fake_consul.down.add("consul-a")
        client = make_client(targets=["consul-a", "consul-b"])
        cache = cache_factory(client=client)
        cache.start()

        assert cache.await_initialized(3.0)
        assert fake_consul.hosts()[:2] == ["consul-a", "consul-b"]
        assert cache.state == CacheState.RUNNING

    def test_exhausted_targets_are_fatal(self, cache_factory, make_client, fake_consul):
        """Should report a fatal failure when every target is unreachable."""
        fake_consul.down.update({"consul-a", "consul-b"})
        client = make_client(targets=["consul-a", "consul-b"])
        events = EventRecorder()
        cache = cache_factory(client=client)
        cache.on(events)
        cache.start()

        assert wait_for(lambda: len(events.of(CacheEventType.POLL_ERROR)) >= 1)
        error = events.of(CacheEventType.POLL_ERROR)[0]
        assert error.data["fatal"] is True
        assert error.data["error_type"] == "TargetsExhaustedError"
        assert cache.await_initialized(0.05) is False

    def test_no_network_call_when_nothing_viable(self, cache_factory, make_client, fake_consul):
        """Should not issue any request while every target is blacklisted."""
        strategy = BlacklistingFailoverStrategy([A, B], blacklist_window_seconds=600)
        strategy.mark_failed(A)
        strategy.mark_failed(B)
        client = make_client("http://consul-a:8500", failover_strategy=strategy)
        events = EventRecorder()
        cache = cache_factory(client=client)
        cache.on(events)
        cache.start()

        assert wait_for(lambda: len(events.of(CacheEventType.POLL_ERROR)) >= 3)
        cache.stop()

        assert fake_consul.request_count == 0
        errors = events.of(CacheEventType.POLL_ERROR)
        assert all(event.data["fatal"] for event in errors)
        assert [event.data["error_count"] for event in errors[:3]] == [1, 2, 3]
        assert cache.get_snapshot().available is False


class TestStopping:
    """Tests for stopping from listeners and during backoff."""

    def test_listener_stopping_cache_ends_round(self, cache_factory):
        """Should not notify later listeners once a listener stopped the cache."""
        order = []
        cache = cache_factory()

        def stopping(snapshot):
            cache.stop()
            order.append("stop-returned")

        def later(snapshot):
            order.append("later-notified")

        cache.add_listener(stopping)
        cache.add_listener(later)
        cache.start()

        assert wait_for(lambda: cache.state == CacheState.STOPPED)
        assert wait_for(lambda: not cache._thread.is_alive())
        assert order == ["stop-returned"]

    def test_background_listener_stopping_cache_ends_round(self, cache_factory, fast_config):
        """Should cut the round short on the dispatcher worker as well."""
        order = []
        config = replace(fast_config, dispatch_listeners_in_background=True)
        cache = cache_factory(config=config)

        def stopping(snapshot):
            cache.stop()
            order.append("stop-returned")

        cache.add_listener(stopping)
        cache.add_listener(lambda snapshot: order.append("later-notified"))
        cache.start()

        assert wait_for(lambda: order == ["stop-returned"])
        time.sleep(0.1)
        assert order == ["stop-returned"]

    def test_stop_cancels_backoff_sleep(self, cache_factory, fake_consul, fast_config):
        """Should interrupt a pending backoff sleep promptly."""
        fake_consul.script(httpx.Response(500, text="rpc error"))
        config = replace(fast_config, backoff_base_seconds=30.0, backoff_max_seconds=30.0)
        events = EventRecorder()
        cache = cache_factory(config=config)
        cache.on(events)
        cache.start()

        assert wait_for(lambda: len(events.of(CacheEventType.POLL_ERROR)) == 1)
        assert events.of(CacheEventType.POLL_ERROR)[0].data["delay_seconds"] == 30.0

        started = time.monotonic()
        cache.stop()

        assert time.monotonic() - started < 2.0
        assert not cache._thread.is_alive()
        assert fake_consul.request_count == 1


class TestAwaitInitialized:
    """Tests for await_initialized."""

    def test_releases_every_waiter(self, cache_factory):
        """Should release all blocked threads on the first success."""
        cache = cache_factory()
        results = []
        waiters = [
            threading.Thread(target=lambda: results.append(cache.await_initialized(5.0)))
            for _ in range(5)
        ]
        for waiter in waiters:
            waiter.start()
        time.sleep(0.05)
        assert results == []

        cache.start()
        for waiter in waiters:
            waiter.join(5.0)

        assert results == [True] * 5
        started = time.monotonic()
        assert cache.await_initialized(0) is True
        assert cache.await_initialized() is True
        assert time.monotonic() - started < 0.5


class TestDispatcherThread:
    """Tests for dispatcher thread identification."""

    def test_identifies_only_its_own_worker(self, cache_factory, fast_config):
        """Should not mistake another cache's worker for its own."""
        config = replace(fast_config, dispatch_listeners_in_background=True)
        short = cache_factory(config=config, name="a")
        longer = cache_factory(config=config, name="ab")
        short.start()
        longer.start()

        seen = longer._dispatcher.submit(
            lambda: (short._on_dispatcher_thread(), longer._on_dispatcher_thread())
        ).result(3.0)

        assert seen == (False, True)
        assert short._on_dispatcher_thread() is False


class TestSessionFailures:
    """Tests for failures opening or closing the HTTP session."""

    def test_retries_when_session_cannot_open(self, fake_consul, fast_config):
        """Should back off and reopen the session instead of giving up."""
        attempts = []

        def transport_factory():
            attempts.append(1)
            if len(attempts) == 1:
                raise RuntimeError("transport unavailable")
            return httpx.MockTransport(fake_consul.handler)

        client = ConsulClient("http://consul-a:8500", transport_factory=transport_factory)
        events = EventRecorder()
        cache = ConsulCache(client, "/v1/catalog/service/web", by_id, fast_config)
        cache.on(events)
        try:
            cache.start()
            assert cache.await_initialized(3.0)
        finally:
            cache.stop()

        assert len(attempts) == 2
        error = events.of(CacheEventType.POLL_ERROR)[0]
        assert error.data["error_type"] == "RuntimeError"
        assert error.data["error_count"] == 1
        assert cache.error_count == 0
