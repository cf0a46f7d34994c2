from __future__ import annotations

import json
import logging
import os
from datetime import date, datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

import aiosqlite
from dateutil.parser import isoparse

from citybrief.models.content import CacheEntry, DataType, normalize_city_name


def _as_date_str(value: date | str) -> str:
    if isinstance(value, datetime):
        return value.date().isoformat()
    if isinstance(value, date):
        return value.isoformat()
    return str(value)


class CacheService:
    """
    SQLite-backed (city, date, type) content cache.

    At most one row exists per key. A refresh deletes the old row and inserts
    the new one inside a single transaction, so readers never observe a gap.
    City names are normalised to title case on every read and write.
    """

    def __init__(self, db_path: str = "citybrief.db"):
        self.db_path = db_path
        self.logger = logging.getLogger(__name__)
        # Call await initialize_db() after constructing.

    async def initialize_db(self) -> None:
        """Create the cache table and indexes."""
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute(
                """
                CREATE TABLE IF NOT EXISTS city_data (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    city TEXT NOT NULL,
                    date TEXT NOT NULL,
                    type TEXT NOT NULL,
                    payload TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    UNIQUE (city, date, type)
                );
                """
            )
            await db.execute(
                "CREATE INDEX IF NOT EXISTS idx_city_data_date ON city_data(date)"
            )
            await db.execute(
                "CREATE INDEX IF NOT EXISTS idx_city_data_city_date ON city_data(city, date)"
            )
            await db.commit()

    def _row_to_entry(self, row: aiosqlite.Row) -> CacheEntry:
        return CacheEntry(
            city=row["city"],
            date=date.fromisoformat(row["date"]),
            type=DataType(row["type"]),
            payload=json.loads(row["payload"]),
            created_at=isoparse(row["created_at"]) if row["created_at"] else None,
        )

    async def get_entry(self, city: str, target_date: date, data_type: DataType) -> Optional[CacheEntry]:
        """Point lookup for one (city, date, type) key."""
        city = normalize_city_name(city)
        async with aiosqlite.connect(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            cur = await db.execute(
                "SELECT * FROM city_data WHERE city = ? AND date = ? AND type = ?",
                (city, _as_date_str(target_date), DataType(data_type).value),
            )
            row = await cur.fetchone()
        return self._row_to_entry(row) if row else None

    async def exists(self, city: str, target_date: date, data_type: DataType) -> bool:
        city = normalize_city_name(city)
        async with aiosqlite.connect(self.db_path) as db:
            cur = await db.execute(
                "SELECT 1 FROM city_data WHERE city = ? AND date = ? AND type = ? LIMIT 1",
                (city, _as_date_str(target_date), DataType(data_type).value),
            )
            return (await cur.fetchone()) is not None

    async def save_entry(self, city: str, target_date: date, data_type: DataType, payload: Any) -> CacheEntry:
        """
        Replace the entry for (city, date, type).

        Delete and insert run in one transaction; a failure rolls back and
        leaves the previous row intact.
        """
        city = normalize_city_name(city)
        data_type = DataType(data_type)
        created_at = datetime.now(timezone.utc)
        encoded = json.dumps(payload, ensure_ascii=False)

        async with aiosqlite.connect(self.db_path) as db:
            try:
                await db.execute("BEGIN IMMEDIATE")
                await db.execute(
                    "DELETE FROM city_data WHERE city = ? AND date = ? AND type = ?",
                    (city, _as_date_str(target_date), data_type.value),
                )
                await db.execute(
                    "INSERT INTO city_data (city, date, type, payload, created_at) VALUES (?, ?, ?, ?, ?)",
                    (city, _as_date_str(target_date), data_type.value, encoded, created_at.isoformat()),
                )
                await db.commit()
            except Exception:
                await db.rollback()
                raise

        self.logger.debug(f"💾 Cached {data_type.value} for {city} on {_as_date_str(target_date)}")
        return CacheEntry(city=city, date=target_date, type=data_type, payload=payload, created_at=created_at)

    async def get_city_entries(self, city: str, target_date: date) -> Dict[DataType, CacheEntry]:
        """All cached entries for one city and day, keyed by type."""
        city = normalize_city_name(city)
        async with aiosqlite.connect(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            cur = await db.execute(
                "SELECT * FROM city_data WHERE city = ? AND date = ?",
                (city, _as_date_str(target_date)),
            )
            rows = await cur.fetchall()
        entries = [self._row_to_entry(row) for row in rows]
        return {entry.type: entry for entry in entries}

    async def clear_cache(self, city: Optional[str] = None, data_type: Optional[DataType] = None) -> int:
        """Delete cached rows, optionally filtered by city and/or type. Returns rows removed."""
        clauses = []
        params: List[Any] = []
        if city:
            clauses.append("city = ?")
            params.append(normalize_city_name(city))
        if data_type:
            clauses.append("type = ?")
            params.append(DataType(data_type).value)

        query = "DELETE FROM city_data"
        if clauses:
            query += " WHERE " + " AND ".join(clauses)

        async with aiosqlite.connect(self.db_path) as db:
            cur = await db.execute(query, params)
            await db.commit()
            removed = cur.rowcount

        self.logger.info(
            f"🗑️ Cleared {removed} cache rows"
            + (f" for {normalize_city_name(city)}" if city else "")
            + (f" of type {DataType(data_type).value}" if data_type else "")
        )
        return removed

    async def cleanup(self, days: int = 30) -> int:
        """Remove entries for days older than `days` days ago."""
        cutoff = (datetime.now(timezone.utc).date() - timedelta(days=days)).isoformat()
        async with aiosqlite.connect(self.db_path) as db:
            cur = await db.execute("DELETE FROM city_data WHERE date < ?", (cutoff,))
            await db.commit()
            removed = cur.rowcount
        self.logger.info(f"🧹 Cleanup removed {removed} cache rows older than {cutoff}")
        return removed

    async def get_cache_statistics(self) -> Dict[str, Any]:
        """Summary of cache contents for the operator CLI."""
        stats: Dict[str, Any] = {
            "total_entries": 0,
            "entries_by_type": {},
            "entries_by_city": {},
            "date_range": {},
            "storage_info": {},
        }

        async with aiosqlite.connect(self.db_path) as db:
            cur = await db.execute("SELECT COUNT(*) FROM city_data")
            row = await cur.fetchone()
            stats["total_entries"] = row[0] if row else 0

            if stats["total_entries"] > 0:
                cur = await db.execute(
                    "SELECT type, COUNT(*) FROM city_data GROUP BY type ORDER BY COUNT(*) DESC"
                )
                stats["entries_by_type"] = {r[0]: r[1] for r in await cur.fetchall()}

                cur = await db.execute(
                    "SELECT city, COUNT(*) FROM city_data GROUP BY city ORDER BY COUNT(*) DESC"
                )
                stats["entries_by_city"] = {r[0]: r[1] for r in await cur.fetchall()}

                cur = await db.execute("SELECT MIN(date), MAX(date) FROM city_data")
                row = await cur.fetchone()
                if row and row[0] and row[1]:
                    stats["date_range"] = {"oldest": row[0], "newest": row[1]}

        if os.path.exists(self.db_path):
            stats["storage_info"]["db_size_mb"] = round(os.path.getsize(self.db_path) / (1024 * 1024), 2)

        return stats
