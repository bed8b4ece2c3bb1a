"""
Errors raised by consul_cache
"""
from typing import Optional

from consul_failover import Target


class ConsulCacheError(Exception):
    """Base error for consul_cache"""


class ConsulHttpError(ConsulCacheError):
    """Raised when Consul answers with a non-2xx status other than 404"""

    def __init__(self, status: int, body: str = "", target: Optional[Target] = None) -> None:
        where = f" from {target}" if target is not None else ""
        super().__init__(f"Consul returned HTTP {status}{where}: {body[:200]}")
        self.status = status
        self.body = body
        self.target = target


class ConsulResponseError(ConsulCacheError):
    """Raised when a successful response cannot be decoded"""

    def __init__(self, message: str, target: Optional[Target] = None) -> None:
        super().__init__(message)
        self.target = target
