from __future__ import annotations

import os
from typing import Any, Protocol

from vercel.cache import AsyncRuntimeCache


# TTL in seconds for cached run payloads
_TTL_SECONDS: int = int(os.getenv("RUN_STORE_TTL_SECONDS", "900"))
_NAMESPACE = os.getenv("RUN_STORE_NAMESPACE", "appbuilder-runs")


def _cache_key(run_id: str) -> str:
    return f"run:{run_id}"


class RunStore(Protocol):
    async def set_run_payload(self, run_id: str, payload: dict[str, Any]) -> None: ...

    async def get_run_payload(self, run_id: str) -> dict[str, Any] | None: ...


class RuntimeCacheRunStore:
    """Run payloads kept in Vercel Runtime Cache between create and connect."""

    def __init__(self, namespace: str = _NAMESPACE, ttl_seconds: int = _TTL_SECONDS):
        self.cache = AsyncRuntimeCache(namespace=namespace)
        self.ttl_seconds = ttl_seconds

    async def set_run_payload(self, run_id: str, payload: dict[str, Any]) -> None:
        await self.cache.set(
            _cache_key(run_id),
            dict(payload),
            {"ttl": self.ttl_seconds, "tags": [f"run:{run_id}"]},
        )

    async def get_run_payload(self, run_id: str) -> dict[str, Any] | None:
        val = await self.cache.get(_cache_key(run_id))
        return dict(val) if isinstance(val, dict) else None


class InMemoryRunStore:
    def __init__(self) -> None:
        self._runs: dict[str, dict[str, Any]] = {}

    async def set_run_payload(self, run_id: str, payload: dict[str, Any]) -> None:
        self._runs[_cache_key(run_id)] = dict(payload)

    async def get_run_payload(self, run_id: str) -> dict[str, Any] | None:
        val = self._runs.get(_cache_key(run_id))
        return dict(val) if val is not None else None
