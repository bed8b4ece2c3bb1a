"""
Target failover for Consul agents, with temporary blacklisting of unreachable hosts.
"""
from .types import (
    Target,
    BlacklistEntry,
    DEFAULT_CONSUL_PORT,
)
from .exceptions import (
    FailoverError,
    NoViableTargetError,
    TargetsExhaustedError,
)
from .strategy import (
    FailoverStrategy,
    BlacklistingFailoverStrategy,
    DEFAULT_BLACKLIST_WINDOW_SECONDS,
    retarget_request,
)
from .transport import (
    FailoverTransport,
    SyncFailoverTransport,
    TARGET_EXTENSION,
)


__all__ = [
    # Types
    "Target",
    "BlacklistEntry",
    "DEFAULT_CONSUL_PORT",
    # Errors
    "FailoverError",
    "NoViableTargetError",
    "TargetsExhaustedError",
    # Strategy
    "FailoverStrategy",
    "BlacklistingFailoverStrategy",
    "DEFAULT_BLACKLIST_WINDOW_SECONDS",
    "retarget_request",
    # Transport wrappers
    "FailoverTransport",
    "SyncFailoverTransport",
    "TARGET_EXTENSION",
]

__version__ = "1.0.0"
