"""
Caches keyed for specific Consul resources.

Entities are kept as the raw decoded JSON objects; these classes only decide
which endpoint is polled and how each entity is keyed.
"""
import re
from typing import Any, Dict, Optional
from urllib.parse import quote

from .config import CacheConfig
from .engine import BlockingQueryClient, ConsulCache


_LEADING_SLASHES = re.compile(r"^/+")


def trim_leading_slash(value: str) -> str:
    """Remove every leading "/" from a key path."""
    return _LEADING_SLASHES.sub("", value)


class KVCache(ConsulCache):
    """Cache of every key under a KV root, keyed by the path relative to the root."""

    @classmethod
    def new_cache(
        cls,
        client: BlockingQueryClient,
        root_path: str,
        config: Optional[CacheConfig] = None,
        params: Optional[Dict[str, str]] = None,
        name: Optional[str] = None,
    ) -> "KVCache":
        root = trim_leading_slash(root_path)

        def key_of(entry: Dict[str, Any]) -> str:
            key = entry["Key"]
            if root and key.startswith(root):
                key = trim_leading_slash(key[len(root):])
            return key

        query = {"recurse": ""}
        if params:
            query.update(params)

        return cls(
            client,
            f"/v1/kv/{quote(root)}",
            key_of,
            config=config,
            params=query,
            name=name or f"kv:{root or '/'}",
        )


class ServiceCatalogCache(ConsulCache):
    """Cache of the catalog entries of one service, keyed by ServiceID."""

    @classmethod
    def new_cache(
        cls,
        client: BlockingQueryClient,
        service_name: str,
        config: Optional[CacheConfig] = None,
        params: Optional[Dict[str, str]] = None,
        name: Optional[str] = None,
    ) -> "ServiceCatalogCache":
        return cls(
            client,
            f"/v1/catalog/service/{quote(service_name, safe='')}",
            lambda entry: entry["ServiceID"],
            config=config,
            params=params,
            name=name or f"catalog:{service_name}",
        )


class ServiceHealthCache(ConsulCache):
    """
    Cache of the health entries of one service.

    Entries are keyed "<node>/<service id>" since the same service ID may be
    registered on several nodes.
    """

    @classmethod
    def new_cache(
        cls,
        client: BlockingQueryClient,
        service_name: str,
        passing: bool = False,
        config: Optional[CacheConfig] = None,
        params: Optional[Dict[str, str]] = None,
        name: Optional[str] = None,
    ) -> "ServiceHealthCache":
        query: Dict[str, str] = {}
        if passing:
            query["passing"] = "true"
        if params:
            query.update(params)

        return cls(
            client,
            f"/v1/health/service/{quote(service_name, safe='')}",
            lambda entry: f"{entry['Node']['Node']}/{entry['Service']['ID']}",
            config=config,
            params=query,
            name=name or f"health:{service_name}",
        )
