import logging
import re
from datetime import datetime, timezone
from typing import List, Optional

import aiosqlite
from dateutil.parser import isoparse

from citybrief.models.content import City, Subscriber, normalize_city_name
from citybrief.utils.error_monitoring import CityBriefError


EMAIL_PATTERN = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


class SubscriptionError(CityBriefError):
    """Invalid subscription request (missing email/city or malformed address)"""
    pass


def slugify(name: str) -> str:
    return re.sub(r"[^a-z0-9]+", "-", name.lower()).strip("-")


class RegistryService:
    """City and subscriber registries, stored next to the content cache."""

    def __init__(self, db_path: str = "citybrief.db"):
        self.db_path = db_path
        self.logger = logging.getLogger(__name__)

    async def initialize_db(self) -> None:
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute(
                """
                CREATE TABLE IF NOT EXISTS cities (
                    slug TEXT PRIMARY KEY,
                    display_name TEXT NOT NULL,
                    is_active INTEGER NOT NULL DEFAULT 1,
                    publication_id TEXT,
                    state_name TEXT
                );
                """
            )
            await db.execute(
                """
                CREATE TABLE IF NOT EXISTS subscribers (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    email TEXT NOT NULL,
                    city TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    UNIQUE (email, city)
                );
                """
            )
            await db.execute("CREATE INDEX IF NOT EXISTS idx_subscribers_city ON subscribers(city)")
            await db.commit()

    # Cities

    @staticmethod
    def _row_to_city(row: aiosqlite.Row) -> City:
        return City(
            slug=row["slug"],
            display_name=row["display_name"],
            is_active=bool(row["is_active"]),
            publication_id=row["publication_id"],
            state_name=row["state_name"],
        )

    async def upsert_city(
        self,
        display_name: str,
        is_active: bool = True,
        publication_id: Optional[str] = None,
        state_name: Optional[str] = None,
    ) -> City:
        display_name = normalize_city_name(display_name)
        city = City(
            slug=slugify(display_name),
            display_name=display_name,
            is_active=is_active,
            publication_id=publication_id,
            state_name=state_name,
        )
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute(
                """
                INSERT INTO cities (slug, display_name, is_active, publication_id, state_name)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT(slug) DO UPDATE SET
                    display_name = excluded.display_name,
                    is_active = excluded.is_active,
                    publication_id = excluded.publication_id,
                    state_name = excluded.state_name
                """,
                (city.slug, city.display_name, int(city.is_active), city.publication_id, city.state_name),
            )
            await db.commit()
        return city

    async def get_city(self, slug: str) -> Optional[City]:
        async with aiosqlite.connect(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            cur = await db.execute("SELECT * FROM cities WHERE slug = ?", (slug,))
            row = await cur.fetchone()
        return self._row_to_city(row) if row else None

    async def list_active_cities(self) -> List[City]:
        async with aiosqlite.connect(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            cur = await db.execute("SELECT * FROM cities WHERE is_active = 1 ORDER BY display_name")
            rows = await cur.fetchall()
        return [self._row_to_city(row) for row in rows]

    # Subscribers

    async def add_subscriber(self, email: str, city: str) -> Subscriber:
        """Register a subscriber. Re-subscribing to the same city is a no-op."""
        email = (email or "").strip().lower()
        city = normalize_city_name(city or "")
        if not email or not city:
            raise SubscriptionError("Email and city are required")
        if not EMAIL_PATTERN.match(email):
            raise SubscriptionError(f"Invalid email address: {email}")

        created_at = datetime.now(timezone.utc)
        async with aiosqlite.connect(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            await db.execute(
                "INSERT OR IGNORE INTO subscribers (email, city, created_at) VALUES (?, ?, ?)",
                (email, city, created_at.isoformat()),
            )
            await db.commit()
            cur = await db.execute(
                "SELECT * FROM subscribers WHERE email = ? AND city = ?", (email, city)
            )
            row = await cur.fetchone()

        self.logger.info(f"📬 Subscriber registered for {city}")
        return self._row_to_subscriber(row)

    @staticmethod
    def _row_to_subscriber(row: aiosqlite.Row) -> Subscriber:
        return Subscriber(
            id=row["id"],
            email=row["email"],
            city=row["city"],
            created_at=isoparse(row["created_at"]) if row["created_at"] else None,
        )

    async def list_subscribers(self, city: Optional[str] = None) -> List[Subscriber]:
        async with aiosqlite.connect(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            if city:
                cur = await db.execute(
                    "SELECT * FROM subscribers WHERE city = ? ORDER BY id", (normalize_city_name(city),)
                )
            else:
                cur = await db.execute("SELECT * FROM subscribers ORDER BY id")
            rows = await cur.fetchall()
        return [self._row_to_subscriber(row) for row in rows]

    async def list_subscriber_cities(self) -> List[str]:
        async with aiosqlite.connect(self.db_path) as db:
            cur = await db.execute("SELECT DISTINCT city FROM subscribers ORDER BY city")
            rows = await cur.fetchall()
        return [row[0] for row in rows]

    async def delete_subscriber(self, subscriber_id: int) -> bool:
        async with aiosqlite.connect(self.db_path) as db:
            cur = await db.execute("DELETE FROM subscribers WHERE id = ?", (subscriber_id,))
            await db.commit()
            return cur.rowcount > 0

    async def delete_subscribers_for_city(self, city: str) -> int:
        async with aiosqlite.connect(self.db_path) as db:
            cur = await db.execute("DELETE FROM subscribers WHERE city = ?", (normalize_city_name(city),))
            await db.commit()
            return cur.rowcount

    async def delete_all_subscribers(self) -> int:
        async with aiosqlite.connect(self.db_path) as db:
            cur = await db.execute("DELETE FROM subscribers")
            await db.commit()
            removed = cur.rowcount
        self.logger.warning(f"Deleted all {removed} subscribers")
        return removed
