"""AnalyticsStore analytics_cache methods (durable cache tier)."""
from __future__ import annotations

import json
from datetime import datetime
from typing import Iterable, Optional

from crm_analytics.models import CacheEntry


class CacheRowsMixin:

    async def cache_get_row(self, key: str, now: datetime) -> Optional[CacheEntry]:
        """Unexpired cache row for ``key``, or None."""
        row = await self._fetch_one("""
            SELECT cache_key, cache_value, cache_type, expires_at
            FROM analytics_cache
            WHERE cache_key = ? AND expires_at > ?
        """, [key, now], operation="cache_get_row")
        if row is None:
            return None
        return CacheEntry(key=row[0], value=json.loads(row[1]), cache_type=row[2], expires_at=row[3])

    async def cache_upsert_row(self, entry: CacheEntry, now: datetime) -> None:
        await self._execute("""
            INSERT INTO analytics_cache (cache_key, cache_value, cache_type, expires_at, created_at)
            VALUES (?, ?, ?, ?, ?)
            ON CONFLICT (cache_key) DO UPDATE SET
                cache_value = EXCLUDED.cache_value,
                cache_type = EXCLUDED.cache_type,
                expires_at = EXCLUDED.expires_at,
                created_at = EXCLUDED.created_at
        """, [
            entry.key, json.dumps(entry.value, default=str), entry.cache_type,
            entry.expires_at, now,
        ], operation="cache_upsert_row")

    async def cache_delete_rows(self, keys: Iterable[str]) -> int:
        keys = list(keys)
        if not keys:
            return 0
        placeholders = ", ".join("?" for _ in keys)

        def _delete(conn):
            count = conn.execute(
                f"SELECT COUNT(*) FROM analytics_cache WHERE cache_key IN ({placeholders})", keys
            ).fetchone()[0]
            conn.execute(f"DELETE FROM analytics_cache WHERE cache_key IN ({placeholders})", keys)
            return int(count)

        return await self._run("cache_delete_rows", _delete)

    async def cache_clear_rows(self, cache_type: Optional[str] = None) -> int:
        """Delete all rows, or only rows tagged ``cache_type``."""
        where_sql = "WHERE cache_type = ?" if cache_type else ""
        params = [cache_type] if cache_type else []

        def _clear(conn):
            count = conn.execute(f"SELECT COUNT(*) FROM analytics_cache {where_sql}", params).fetchone()[0]
            conn.execute(f"DELETE FROM analytics_cache {where_sql}", params)
            return int(count)

        return await self._run("cache_clear_rows", _clear)

    async def cache_delete_expired(self, now: datetime) -> int:
        def _purge(conn):
            count = conn.execute(
                "SELECT COUNT(*) FROM analytics_cache WHERE expires_at <= ?", [now]
            ).fetchone()[0]
            conn.execute("DELETE FROM analytics_cache WHERE expires_at <= ?", [now])
            return int(count)

        return await self._run("cache_delete_expired", _purge)

    async def cache_row_count(self) -> int:
        row = await self._fetch_one("SELECT COUNT(*) FROM analytics_cache", operation="cache_row_count")
        return int(row[0] or 0)
