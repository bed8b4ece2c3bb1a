"""
Generic blocking query client for Consul's HTTP API.

The client knows nothing about specific resources: it issues a GET against a
path with ``index`` and ``wait`` query parameters and hands back the decoded
body together with the index read from the response headers.
"""
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, Literal, Optional, Union

import httpx

from consul_failover import (
    BlacklistingFailoverStrategy,
    DEFAULT_BLACKLIST_WINDOW_SECONDS,
    FailoverStrategy,
    TARGET_EXTENSION,
    Target,
)
from consul_timeout import TimeoutAdjustmentConfig

from .exceptions import ConsulHttpError, ConsulResponseError
from .factory import create_consul_transport
from .types import QueryResponse


logger = logging.getLogger("consul_cache.client")

INDEX_HEADER = "X-Consul-Index"
KNOWN_LEADER_HEADER = "X-Consul-KnownLeader"
LAST_CONTACT_HEADER = "X-Consul-LastContact"

NOT_FOUND_404 = 404

DEFAULT_BASE_URL = "http://localhost:8500"

ConsistencyMode = Literal["default", "stale", "consistent"]


@dataclass
class TimeoutConfig:
    """Timeout configuration in seconds."""

    connect: float = 5.0
    read: float = 15.0
    write: float = 10.0


@dataclass
class QueryOptions:
    """Options added to every query issued through a client or cache"""

    datacenter: Optional[str] = None
    consistency_mode: ConsistencyMode = "default"
    extra: Dict[str, str] = field(default_factory=dict)

    def to_params(self) -> Dict[str, str]:
        """Render the options as query parameters"""
        params: Dict[str, str] = {}
        if self.datacenter:
            params["dc"] = self.datacenter
        if self.consistency_mode == "stale":
            params["stale"] = ""
        elif self.consistency_mode == "consistent":
            params["consistent"] = ""
        params.update(self.extra)
        return params


def parse_index(headers: httpx.Headers) -> Optional[int]:
    """Read the X-Consul-Index header, or None when absent or malformed."""
    value = headers.get(INDEX_HEADER)
    if value is None:
        return None
    try:
        return int(value)
    except ValueError:
        logger.warning(f"Ignoring malformed {INDEX_HEADER} header: {value!r}")
        return None


def _parse_known_leader(headers: httpx.Headers) -> Optional[bool]:
    value = headers.get(KNOWN_LEADER_HEADER)
    if value is None:
        return None
    return value.strip().lower() == "true"


def _parse_last_contact(headers: httpx.Headers) -> Optional[int]:
    value = headers.get(LAST_CONTACT_HEADER)
    if value is None:
        return None
    try:
        return int(value)
    except ValueError:
        return None


def parse_query_response(response: httpx.Response) -> QueryResponse:
    """
    Interpret a blocking query response.

    Args:
        response: The HTTP response

    Returns:
        The parsed response; a 404 is an empty dataset, not an error

    Raises:
        ConsulHttpError: For any other non-2xx status
        ConsulResponseError: When a 2xx body is not valid JSON
    """
    target = response.extensions.get(TARGET_EXTENSION)
    if target is None:
        try:
            target = Target.from_request(response.request)
        except RuntimeError:
            # Response built without a request
            target = None

    index = parse_index(response.headers)
    known_leader = _parse_known_leader(response.headers)
    last_contact = _parse_last_contact(response.headers)

    if response.status_code == NOT_FOUND_404:
        return QueryResponse(
            index=index,
            dataset=[],
            target=target,
            known_leader=known_leader,
            last_contact_ms=last_contact,
            not_found=True,
        )

    if not response.is_success:
        raise ConsulHttpError(response.status_code, response.text, target)

    if not response.content:
        body: Any = []
    else:
        try:
            body = response.json()
        except json.JSONDecodeError as error:
            raise ConsulResponseError(f"Invalid JSON from {target}: {error}", target) from error

    if body is None:
        dataset: list = []
    elif isinstance(body, list):
        dataset = body
    else:
        dataset = [body]

    return QueryResponse(
        index=index,
        dataset=dataset,
        target=target,
        known_leader=known_leader,
        last_contact_ms=last_contact,
    )


class ConsulSession:
    """
    An open HTTP session bound to one event loop.

    Created by ConsulClient.open_session(); use as an async context manager.
    """

    def __init__(self, http: httpx.AsyncClient, default_params: Optional[Dict[str, str]] = None) -> None:
        self._http = http
        self._default_params = dict(default_params or {})

    async def query(
        self,
        path: str,
        index: Optional[int] = None,
        wait: Optional[str] = None,
        params: Optional[Dict[str, str]] = None,
    ) -> QueryResponse:
        """
        Issue one blocking query.

        Args:
            path: API path, e.g. "/v1/catalog/service/web"
            index: Last index seen; the server holds the request until the
                index moves past it or the wait elapses
            wait: Wait budget, e.g. "10s"
            params: Extra query parameters

        Returns:
            The parsed response
        """
        query: Dict[str, str] = dict(self._default_params)
        if params:
            query.update(params)
        if index is not None:
            query["index"] = str(index)
        if wait:
            query["wait"] = wait

        response = await self._http.get(path, params=query)
        return parse_query_response(response)

    async def aclose(self) -> None:
        await self._http.aclose()

    async def __aenter__(self) -> "ConsulSession":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.aclose()


class ConsulClient:
    """
    Connection settings shared by every cache talking to one Consul cluster.

    The client itself holds no connections. Each cache opens its own session on
    its own event loop, while the failover strategy (and therefore the blacklist)
    is shared by all of them.

    Example:
        client = ConsulClient(targets=["consul-1:8500", "consul-2:8500"])
        cache = ServiceCatalogCache.new_cache(client, "web")
    """

    def __init__(
        self,
        base_url: Optional[str] = None,
        *,
        targets: Optional[Iterable[Union[Target, str]]] = None,
        failover_strategy: Optional[FailoverStrategy] = None,
        blacklist_window_seconds: float = DEFAULT_BLACKLIST_WINDOW_SECONDS,
        timeout: Optional[TimeoutConfig] = None,
        query_options: Optional[QueryOptions] = None,
        headers: Optional[Dict[str, str]] = None,
        transport_factory: Optional[Callable[[], httpx.AsyncBaseTransport]] = None,
    ) -> None:
        """
        Create a new ConsulClient.

        Args:
            base_url: Agent URL (default: first target, or http://localhost:8500)
            targets: Candidate agents for failover
            failover_strategy: Custom strategy (overrides targets)
            blacklist_window_seconds: Blacklist window for the default strategy
            timeout: Default transport timeouts
            query_options: Options added to every query
            headers: Extra headers sent with every request
            transport_factory: Builds the innermost transport for each session
                (default: httpx.AsyncHTTPTransport)
        """
        target_list = [Target.parse(t) if isinstance(t, str) else t for t in targets or ()]

        if failover_strategy is None and target_list:
            failover_strategy = BlacklistingFailoverStrategy(target_list, blacklist_window_seconds)

        if base_url is None:
            base_url = f"http://{target_list[0]}" if target_list else DEFAULT_BASE_URL

        self._base_url = base_url.rstrip("/")
        self._strategy = failover_strategy
        self._timeout = timeout or TimeoutConfig()
        self._query_options = query_options or QueryOptions()
        self._headers = dict(headers or {})
        self._transport_factory = transport_factory

    @property
    def base_url(self) -> str:
        return self._base_url

    @property
    def failover_strategy(self) -> Optional[FailoverStrategy]:
        return self._strategy

    @property
    def timeout(self) -> TimeoutConfig:
        return self._timeout

    @property
    def query_options(self) -> QueryOptions:
        return self._query_options

    def open_session(
        self,
        timeout_adjustment: Optional[TimeoutAdjustmentConfig] = None,
    ) -> ConsulSession:
        """
        Open a session for the calling event loop.

        Args:
            timeout_adjustment: Read timeout adjustment for blocking queries

        Returns:
            A session to use as an async context manager
        """
        base = self._transport_factory() if self._transport_factory else None
        transport = create_consul_transport(
            base,
            strategy=self._strategy,
            timeout_adjustment=timeout_adjustment,
        )
        http = httpx.AsyncClient(
            base_url=self._base_url,
            transport=transport,
            headers=self._headers,
            timeout=httpx.Timeout(
                connect=self._timeout.connect,
                read=self._timeout.read,
                write=self._timeout.write,
                pool=self._timeout.connect,
            ),
        )
        return ConsulSession(http, self._query_options.to_params())
