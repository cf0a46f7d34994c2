from datetime import date, datetime, timedelta, timezone

import aiosqlite
import pytest

from citybrief.models.content import DataType

from conftest import TARGET_DATE, seed_cache


async def _row_count(db_path: str, city: str, data_type: DataType) -> int:
    async with aiosqlite.connect(db_path) as db:
        cur = await db.execute(
            "SELECT COUNT(*) FROM city_data WHERE city = ? AND date = ? AND type = ?",
            (city, TARGET_DATE.isoformat(), data_type.value),
        )
        row = await cur.fetchone()
    return row[0]


@pytest.mark.asyncio
async def test_save_and_get_entry_round_trips_payload(cache):
    payload = [{"title": "Library opens", "link": "https://example.com"}]
    await cache.save_entry("Austin", TARGET_DATE, DataType.NEWS, payload)

    entry = await cache.get_entry("Austin", TARGET_DATE, DataType.NEWS)

    assert entry is not None
    assert entry.payload == payload
    assert entry.type == DataType.NEWS
    assert entry.date == TARGET_DATE
    assert entry.created_at is not None


@pytest.mark.asyncio
async def test_missing_entry_returns_none(cache):
    assert await cache.get_entry("Austin", TARGET_DATE, DataType.WEATHER) is None
    assert not await cache.exists("Austin", TARGET_DATE, DataType.WEATHER)


@pytest.mark.asyncio
async def test_repeated_saves_keep_one_row_with_latest_payload(cache, db_path):
    for temp in (70, 75, 80):
        await cache.save_entry("Austin", TARGET_DATE, DataType.WEATHER, {"high": temp})

    assert await _row_count(db_path, "Austin", DataType.WEATHER) == 1
    entry = await cache.get_entry("Austin", TARGET_DATE, DataType.WEATHER)
    assert entry.payload == {"high": 80}


@pytest.mark.asyncio
async def test_city_names_are_normalised(cache, db_path):
    await cache.save_entry("new  YORK", TARGET_DATE, DataType.NEWS, [])
    await cache.save_entry("New York", TARGET_DATE, DataType.NEWS, [{"title": "x"}])

    assert await _row_count(db_path, "New York", DataType.NEWS) == 1
    assert await cache.exists("NEW YORK", TARGET_DATE, DataType.NEWS)


@pytest.mark.asyncio
async def test_failed_save_leaves_previous_row(cache):
    await cache.save_entry("Austin", TARGET_DATE, DataType.NEWS, [{"title": "kept"}])

    with pytest.raises(TypeError):
        await cache.save_entry("Austin", TARGET_DATE, DataType.NEWS, {"bad": object()})

    entry = await cache.get_entry("Austin", TARGET_DATE, DataType.NEWS)
    assert entry.payload == [{"title": "kept"}]


@pytest.mark.asyncio
async def test_get_city_entries_keyed_by_type(cache):
    await seed_cache(cache, "Austin", TARGET_DATE)
    await cache.save_entry("Austin", TARGET_DATE + timedelta(days=1), DataType.NEWS, [])
    await cache.save_entry("Dallas", TARGET_DATE, DataType.NEWS, [])

    entries = await cache.get_city_entries("austin", TARGET_DATE)

    assert set(entries) == {DataType.WEATHER, DataType.NEWS, DataType.BRIEF, DataType.EVENTS, DataType.SPORTS}
    assert entries[DataType.BRIEF].payload == {"brief": [{"title": "Library opens downtown"}]}


@pytest.mark.asyncio
async def test_clear_cache_by_city_and_type(cache):
    await seed_cache(cache, "Austin", TARGET_DATE)
    await seed_cache(cache, "Dallas", TARGET_DATE)

    assert await cache.clear_cache(city="austin", data_type=DataType.NEWS) == 1
    assert not await cache.exists("Austin", TARGET_DATE, DataType.NEWS)
    assert await cache.exists("Dallas", TARGET_DATE, DataType.NEWS)

    assert await cache.clear_cache(city="Dallas") == 5
    assert await cache.clear_cache() == 4


@pytest.mark.asyncio
async def test_cleanup_removes_old_days(cache):
    today = datetime.now(timezone.utc).date()
    await cache.save_entry("Austin", today - timedelta(days=45), DataType.NEWS, [])
    await cache.save_entry("Austin", today, DataType.NEWS, [])

    removed = await cache.cleanup(days=30)

    assert removed == 1
    assert await cache.exists("Austin", today, DataType.NEWS)


@pytest.mark.asyncio
async def test_cache_statistics(cache):
    await seed_cache(cache, "Austin", TARGET_DATE)
    await cache.save_entry("Dallas", date(2025, 7, 28), DataType.WEATHER, {})

    stats = await cache.get_cache_statistics()

    assert stats["total_entries"] == 6
    assert stats["entries_by_type"]["weather"] == 2
    assert stats["entries_by_city"] == {"Austin": 5, "Dallas": 1}
    assert stats["date_range"] == {"oldest": "2025-07-28", "newest": "2025-07-29"}
    assert stats["storage_info"]["db_size_mb"] >= 0
