"""
In-memory cache for per-tenant attachment lists and summaries.

Entries are only ever dropped on mutation, never updated in place.
"""
import time
from typing import Any


class TenantCache:
    """TTL cache keyed by (tenant_id, name)."""

    def __init__(self, ttl_seconds: int = 300):
        self.ttl_seconds = ttl_seconds
        self._entries: dict[tuple[str, str], tuple[float, Any]] = {}

    def get(self, tenant_id: str, name: str) -> Any | None:
        entry = self._entries.get((tenant_id, name))
        if entry is None:
            return None
        expires_at, value = entry
        if time.monotonic() >= expires_at:
            self._entries.pop((tenant_id, name), None)
            return None
        return value

    def set(self, tenant_id: str, name: str, value: Any) -> None:
        if self.ttl_seconds <= 0:
            return
        self._entries[(tenant_id, name)] = (time.monotonic() + self.ttl_seconds, value)

    def invalidate_tenant(self, tenant_id: str) -> None:
        for key in [k for k in self._entries if k[0] == tenant_id]:
            self._entries.pop(key, None)

    def clear(self) -> None:
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)
