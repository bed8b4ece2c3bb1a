"""
Type definitions for consul_cache
"""
from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import Any, Callable, Iterator, Mapping, Optional, Union

from consul_failover import Target


class CacheState(str, Enum):
    """Cache lifecycle state"""

    NOT_STARTED = "not_started"
    STARTING = "starting"
    RUNNING = "running"
    STOPPED = "stopped"


@dataclass(frozen=True)
class Snapshot(Mapping[str, Any]):
    """
    Immutable view of the remote dataset at a given index.

    Behaves as a read-only mapping from entity key to entity value.
    """

    entries: Mapping[str, Any] = field(default_factory=dict)
    index: Optional[int] = None
    known_leader: Optional[bool] = None
    last_contact_ms: Optional[int] = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "entries", MappingProxyType(dict(self.entries)))

    @classmethod
    def empty(cls) -> "Snapshot":
        """Snapshot returned before the first successful fetch"""
        return cls()

    @property
    def available(self) -> bool:
        """Whether this snapshot comes from a successful fetch"""
        return self.index is not None

    def __getitem__(self, key: str) -> Any:
        return self.entries[key]

    def __iter__(self) -> Iterator[str]:
        return iter(self.entries)

    def __len__(self) -> int:
        return len(self.entries)

    def __eq__(self, other: object) -> bool:
        # Snapshots are equal when observed at the same index
        if isinstance(other, Snapshot):
            return self.index == other.index and dict(self.entries) == dict(other.entries)
        return NotImplemented

    def __hash__(self) -> int:
        return hash((self.index, len(self.entries)))


@dataclass
class QueryResponse:
    """Result of one blocking query"""

    index: Optional[int]
    """Value of the X-Consul-Index header"""

    dataset: list[Any]
    """Decoded response body (empty when not found)"""

    target: Optional[Target] = None
    """Target that actually served the request"""

    known_leader: Optional[bool] = None
    last_contact_ms: Optional[int] = None

    not_found: bool = False
    """Whether the server answered 404"""


@dataclass(frozen=True)
class FetchSuccess:
    """A fetch returned data"""

    response: QueryResponse


@dataclass(frozen=True)
class FetchEmpty:
    """A fetch returned the defined "not found" outcome, an empty dataset"""

    response: QueryResponse


@dataclass(frozen=True)
class RetryableFailure:
    """A fetch failed in a way that is retried after backoff"""

    error: Exception
    target: Optional[Target] = None
    status: Optional[int] = None

    @property
    def blames_target(self) -> bool:
        """Server errors count against the target that produced them"""
        return self.target is not None and self.status is not None and self.status >= 500


@dataclass(frozen=True)
class FatalFailure:
    """No fetch was possible this cycle (every target blacklisted)"""

    error: Exception


FetchOutcome = Union[FetchSuccess, FetchEmpty, RetryableFailure, FatalFailure]


class CacheEventType(str, Enum):
    """Cache event types"""

    STARTED = "cache:started"
    STOPPED = "cache:stopped"
    POLL_SUCCESS = "poll:success"
    POLL_UNCHANGED = "poll:unchanged"
    POLL_ERROR = "poll:error"
    LISTENER_ERROR = "listener:error"


@dataclass
class CacheEvent:
    """Event emitted by a cache"""

    type: CacheEventType
    """Event type"""

    cache: str
    """Name of the emitting cache"""

    data: dict[str, Any] = field(default_factory=dict)
    """Event-specific data"""


# Listener types
CacheListener = Callable[[Snapshot], None]
CacheEventListener = Callable[[CacheEvent], None]
KeyExtractor = Callable[[Any], str]
