from __future__ import annotations

import os
from typing import Protocol

from vercel.cache import AsyncRuntimeCache

from appbuilder.models import CreditLedgerEntry


class LedgerStore(Protocol):
    """Append-only credit ledger keyed by user id, plus the running balance."""

    async def balance(self, user_id: str) -> int | None: ...

    async def set_balance(self, user_id: str, balance: int) -> None: ...

    async def append(self, entry: CreditLedgerEntry) -> None: ...

    async def entries(self, user_id: str) -> list[CreditLedgerEntry]: ...


class InMemoryLedger:
    def __init__(self, balances: dict[str, int] | None = None):
        self._balances: dict[str, int] = dict(balances or {})
        self._entries: dict[str, list[CreditLedgerEntry]] = {}

    async def balance(self, user_id: str) -> int | None:
        return self._balances.get(user_id)

    async def set_balance(self, user_id: str, balance: int) -> None:
        self._balances[user_id] = balance

    async def append(self, entry: CreditLedgerEntry) -> None:
        self._entries.setdefault(entry.user_id, []).append(entry)

    async def entries(self, user_id: str) -> list[CreditLedgerEntry]:
        return list(self._entries.get(user_id, []))


# TTL in seconds for cached ledger data
_TTL_SECONDS: int = int(os.getenv("LEDGER_TTL_SECONDS", str(30 * 24 * 3600)))
_NAMESPACE = os.getenv("LEDGER_NAMESPACE", "appbuilder-credits")


class RuntimeCacheLedger:
    """Ledger stored in Vercel Runtime Cache.

    Balances and entry lists live under per-user keys. Entries are appended by
    rewriting the list, so a single writer per user is assumed.
    """

    def __init__(self, namespace: str = _NAMESPACE, ttl_seconds: int = _TTL_SECONDS):
        self.cache = AsyncRuntimeCache(namespace=namespace)
        self.ttl_seconds = ttl_seconds

    def _opts(self, user_id: str) -> dict:
        return {"ttl": self.ttl_seconds, "tags": [f"user:{user_id}"]}

    async def balance(self, user_id: str) -> int | None:
        val = await self.cache.get(f"balance:{user_id}")
        return int(val) if isinstance(val, (int, float)) else None

    async def set_balance(self, user_id: str, balance: int) -> None:
        await self.cache.set(f"balance:{user_id}", int(balance), self._opts(user_id))

    async def append(self, entry: CreditLedgerEntry) -> None:
        key = f"ledger:{entry.user_id}"
        current = await self.cache.get(key)
        items = list(current) if isinstance(current, list) else []
        items.append(entry.model_dump())
        await self.cache.set(key, items, self._opts(entry.user_id))

    async def entries(self, user_id: str) -> list[CreditLedgerEntry]:
        current = await self.cache.get(f"ledger:{user_id}")
        if not isinstance(current, list):
            return []
        return [CreditLedgerEntry(**item) for item in current if isinstance(item, dict)]
