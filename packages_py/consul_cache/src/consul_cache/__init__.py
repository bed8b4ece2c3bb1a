"""
Locally cached views of Consul endpoints, kept current with blocking queries.
"""
from .types import (
    CacheState,
    Snapshot,
    QueryResponse,
    FetchSuccess,
    FetchEmpty,
    RetryableFailure,
    FatalFailure,
    FetchOutcome,
    CacheEvent,
    CacheEventType,
    CacheListener,
    CacheEventListener,
    KeyExtractor,
)
from .config import (
    CacheConfig,
    DEFAULT_CACHE_CONFIG,
    merge_config,
    validate_config,
    calculate_backoff_delay,
    load_config_from_env,
)
from .exceptions import (
    ConsulCacheError,
    ConsulHttpError,
    ConsulResponseError,
)
from .factory import (
    compose_transport,
    create_consul_transport,
)
from .client import (
    ConsulClient,
    ConsulSession,
    QueryOptions,
    TimeoutConfig,
    parse_index,
    parse_query_response,
    INDEX_HEADER,
    KNOWN_LEADER_HEADER,
    LAST_CONTACT_HEADER,
)
from .listeners import ListenerRegistry
from .engine import BlockingQueryClient, ConsulCache, index_increased
from .caches import (
    KVCache,
    ServiceCatalogCache,
    ServiceHealthCache,
    trim_leading_slash,
)


__all__ = [
    # Types
    "CacheState",
    "Snapshot",
    "QueryResponse",
    "FetchSuccess",
    "FetchEmpty",
    "RetryableFailure",
    "FatalFailure",
    "FetchOutcome",
    "CacheEvent",
    "CacheEventType",
    "CacheListener",
    "CacheEventListener",
    "KeyExtractor",
    # Config
    "CacheConfig",
    "DEFAULT_CACHE_CONFIG",
    "merge_config",
    "validate_config",
    "calculate_backoff_delay",
    "load_config_from_env",
    # Errors
    "ConsulCacheError",
    "ConsulHttpError",
    "ConsulResponseError",
    # Transport
    "compose_transport",
    "create_consul_transport",
    # Client
    "ConsulClient",
    "ConsulSession",
    "QueryOptions",
    "TimeoutConfig",
    "parse_index",
    "parse_query_response",
    "INDEX_HEADER",
    "KNOWN_LEADER_HEADER",
    "LAST_CONTACT_HEADER",
    # Engine
    "ListenerRegistry",
    "BlockingQueryClient",
    "ConsulCache",
    "index_increased",
    # Resource caches
    "KVCache",
    "ServiceCatalogCache",
    "ServiceHealthCache",
    "trim_leading_slash",
]

__version__ = "1.0.0"
