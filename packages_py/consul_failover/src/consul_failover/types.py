"""
Type definitions for consul_failover
"""
from dataclasses import dataclass
from typing import Union

import httpx


DEFAULT_CONSUL_PORT = 8500

# httpx drops these ports from URLs
SCHEME_DEFAULT_PORTS = {
    "http": 80,
    "https": 443,
}


@dataclass(frozen=True)
class Target:
    """A coordination-service endpoint"""

    host: str
    port: int = DEFAULT_CONSUL_PORT

    @classmethod
    def parse(cls, value: str) -> "Target":
        """
        Parse a "host:port" string.

        Args:
            value: Host with optional port (e.g. "consul-1:8500" or "consul-1")

        Returns:
            The parsed target
        """
        value = value.strip()
        if not value:
            raise ValueError("Target must not be empty")

        if value.startswith("["):
            # IPv6 literal, e.g. [::1]:8500
            end = value.find("]")
            if end == -1:
                raise ValueError(f"Invalid target: {value}")
            host = value[1:end]
            rest = value[end + 1:]
            if not rest:
                return cls(host)
            if not rest.startswith(":"):
                raise ValueError(f"Invalid target: {value}")
            return cls(host, _parse_port(rest[1:], value))

        host, sep, port = value.rpartition(":")
        if not sep:
            return cls(value)
        if not host:
            raise ValueError(f"Invalid target: {value}")
        return cls(host, _parse_port(port, value))

    @classmethod
    def from_url(cls, url: Union[str, httpx.URL]) -> "Target":
        """
        Build a target from the host and port of a URL.

        A URL without a port uses the default port of its scheme, since httpx
        strips :80 and :443 from http and https URLs.
        """
        parsed = url if isinstance(url, httpx.URL) else httpx.URL(url)
        if not parsed.host:
            raise ValueError(f"URL has no host: {url}")
        port = parsed.port or SCHEME_DEFAULT_PORTS.get(parsed.scheme, DEFAULT_CONSUL_PORT)
        return cls(parsed.host, port)

    @classmethod
    def from_request(cls, request: httpx.Request) -> "Target":
        """Build a target from the URL of a request"""
        return cls.from_url(request.url)

    def __str__(self) -> str:
        if ":" in self.host:
            return f"[{self.host}]:{self.port}"
        return f"{self.host}:{self.port}"


def _parse_port(port: str, original: str) -> int:
    try:
        value = int(port)
    except ValueError:
        raise ValueError(f"Invalid port in target: {original}") from None
    if not 0 < value < 65536:
        raise ValueError(f"Port out of range in target: {original}")
    return value


@dataclass(frozen=True)
class BlacklistEntry:
    """A blacklisted target and when it last failed"""

    target: Target

    failed_at: float
    """Clock reading of the most recent failure"""

    expires_at: float
    """Clock reading after which the target is viable again"""
