from unittest.mock import AsyncMock, MagicMock

import pytest

from citybrief.models.content import DataType
from citybrief.pipeline.dispatch_pipeline import DispatchPipeline, missing_categories
from citybrief.pipeline.email_compiler import EmailCompiler
from citybrief.utils.error_monitoring import ErrorHandler

from conftest import TARGET_DATE, FakeMailer, complete_cache_payloads, seed_cache


class StubAggregator:
    def __init__(self, repair=None):
        self.error_handler = ErrorHandler()
        self.collect_and_cache = AsyncMock(side_effect=repair)

    def today(self):
        return TARGET_DATE


def _pipeline(cache, registry, mailer=None, aggregator=None, **kwargs) -> DispatchPipeline:
    kwargs.setdefault("batch_delay", 0)
    kwargs.setdefault("broadcast_delay", 0)
    return DispatchPipeline(
        cache,
        aggregator or StubAggregator(),
        EmailCompiler(),
        mailer or FakeMailer(),
        registry,
        **kwargs,
    )


@pytest.mark.asyncio
async def test_missing_categories(cache):
    await seed_cache(cache, "Austin", TARGET_DATE)
    entries = await cache.get_city_entries("Austin", TARGET_DATE)
    assert missing_categories(entries) == []

    del entries[DataType.WEATHER]
    del entries[DataType.EVENTS]
    assert missing_categories(entries) == ["weather", "events"]


@pytest.mark.asyncio
async def test_empty_payloads_count_as_missing(cache):
    await seed_cache(cache, "Austin", TARGET_DATE)
    await cache.save_entry("Austin", TARGET_DATE, DataType.BRIEF, {"brief": []})
    await cache.save_entry("Austin", TARGET_DATE, DataType.SPORTS, {"sports": [], "upcoming_matches": {"golf": []}})

    entries = await cache.get_city_entries("Austin", TARGET_DATE)

    assert missing_categories(entries) == ["brief", "sports"]


@pytest.mark.asyncio
async def test_sends_to_every_recipient_when_cache_complete(cache, registry):
    await seed_cache(cache, "Austin", TARGET_DATE)
    mailer = FakeMailer()
    aggregator = StubAggregator()
    pipeline = _pipeline(cache, registry, mailer, aggregator)

    result = await pipeline.send_for_city("austin", ["a@example.com", "b@example.com"], TARGET_DATE)

    assert (result.sent, result.failed) == (2, 0)
    aggregator.collect_and_cache.assert_not_called()
    assert mailer.sent[0]["subject"] == "Austin Update — Tuesday, July 29"
    assert "Library opens downtown" in mailer.sent[0]["html"]
    assert "Jazz concert" in mailer.sent[0]["text"]


@pytest.mark.asyncio
async def test_one_missing_category_is_tolerated(cache, registry):
    await seed_cache(cache, "Austin", TARGET_DATE, skip=[DataType.SPORTS])
    aggregator = StubAggregator()
    pipeline = _pipeline(cache, registry, aggregator=aggregator)

    result = await pipeline.send_for_city("Austin", ["a@example.com"], TARGET_DATE)

    assert result.sent == 1
    aggregator.collect_and_cache.assert_not_called()


@pytest.mark.asyncio
async def test_insufficient_cache_gets_one_repair_then_fails_all(cache, registry):
    await seed_cache(cache, "Austin", TARGET_DATE, skip=[DataType.WEATHER, DataType.EVENTS])
    mailer = FakeMailer()
    aggregator = StubAggregator()
    pipeline = _pipeline(cache, registry, mailer, aggregator)

    result = await pipeline.send_for_city("Austin", ["a@example.com", "b@example.com", "c@example.com"], TARGET_DATE)

    assert aggregator.collect_and_cache.await_count == 1
    assert (result.sent, result.failed) == (0, 3)
    assert mailer.sent == []
    assert aggregator.error_handler.get_error_summary()["by_type"] == {"InsufficientCacheError": 1}


@pytest.mark.asyncio
async def test_repair_that_fills_cache_allows_sending(cache, registry):
    await seed_cache(cache, "Austin", TARGET_DATE, skip=[DataType.WEATHER, DataType.EVENTS])
    payloads = complete_cache_payloads()

    async def repair(city, target_date):
        await cache.save_entry(city, target_date, DataType.WEATHER, payloads[DataType.WEATHER])
        await cache.save_entry(city, target_date, DataType.EVENTS, payloads[DataType.EVENTS])

    aggregator = StubAggregator(repair=repair)
    pipeline = _pipeline(cache, registry, aggregator=aggregator)

    result = await pipeline.send_for_city("Austin", ["a@example.com"], TARGET_DATE)

    assert aggregator.collect_and_cache.await_count == 1
    assert result.sent == 1


@pytest.mark.asyncio
async def test_repair_exception_is_captured(cache, registry):
    aggregator = StubAggregator(repair=RuntimeError("upstream down"))
    pipeline = _pipeline(cache, registry, aggregator=aggregator)

    result = await pipeline.send_for_city("Austin", ["a@example.com"], TARGET_DATE)

    assert result.failed == 1
    assert result.sent == 0


@pytest.mark.asyncio
async def test_recipients_sent_in_bounded_batches(cache, registry):
    await seed_cache(cache, "Austin", TARGET_DATE)
    mailer = FakeMailer(failing=["c@example.com"])
    pipeline = _pipeline(cache, registry, mailer, batch_size=2)
    recipients = [f"{name}@example.com" for name in "abcde"]

    result = await pipeline.send_for_city("Austin", recipients, TARGET_DATE)

    assert (result.sent, result.failed) == (4, 1)
    assert mailer.max_in_flight <= 2
    assert any("c@example.com" in e for e in result.errors)


@pytest.mark.asyncio
async def test_recipients_default_to_city_subscribers(cache, registry):
    await seed_cache(cache, "Austin", TARGET_DATE)
    await registry.add_subscriber("a@example.com", "Austin")
    await registry.add_subscriber("z@example.com", "Dallas")
    mailer = FakeMailer()

    result = await _pipeline(cache, registry, mailer).send_for_city("Austin", target_date=TARGET_DATE)

    assert result.sent == 1
    assert [m["to"] for m in mailer.sent] == ["a@example.com"]


@pytest.mark.asyncio
async def test_send_daily_emails_groups_by_city(cache, registry):
    await seed_cache(cache, "Austin", TARGET_DATE)
    await seed_cache(cache, "Dallas", TARGET_DATE)
    for email, city in [("a@example.com", "Austin"), ("b@example.com", "Austin"), ("c@example.com", "Dallas")]:
        await registry.add_subscriber(email, city)
    mailer = FakeMailer()
    pipeline = _pipeline(cache, registry, mailer)

    result = await pipeline.send_daily_emails(TARGET_DATE)

    assert result.sent == 3
    subjects = {m["to"]: m["subject"] for m in mailer.sent}
    assert subjects["c@example.com"].startswith("Dallas Update")
    assert not pipeline.is_running


@pytest.mark.asyncio
async def test_send_daily_emails_is_single_flight(cache, registry):
    pipeline = _pipeline(cache, registry)
    pipeline._sending = True

    assert await pipeline.send_daily_emails(TARGET_DATE) is None


@pytest.mark.asyncio
async def test_publish_broadcasts_per_active_city(cache, registry):
    await registry.upsert_city("Austin", publication_id="austin-segment")
    await registry.upsert_city("Dallas")
    await seed_cache(cache, "Austin", TARGET_DATE)
    broadcast = MagicMock()
    broadcast.enabled = True
    broadcast.create_post = AsyncMock()
    pipeline = _pipeline(cache, registry, broadcast_service=broadcast)

    result = await pipeline.publish_broadcasts(TARGET_DATE)

    assert (result.sent, result.skipped, result.failed) == (1, 1, 0)
    kwargs = broadcast.create_post.await_args.kwargs
    assert kwargs["segment_ids"] == ["austin-segment"]
    assert kwargs["title"] == "Austin Update — Tuesday, July 29"


@pytest.mark.asyncio
async def test_publish_broadcasts_captures_per_city_failures(cache, registry):
    await registry.upsert_city("Austin")
    await registry.upsert_city("Dallas")
    await seed_cache(cache, "Austin", TARGET_DATE)
    await seed_cache(cache, "Dallas", TARGET_DATE)
    broadcast = MagicMock()
    broadcast.enabled = True
    broadcast.create_post = AsyncMock(side_effect=[RuntimeError("beehiiv 500"), None])
    pipeline = _pipeline(cache, registry, broadcast_service=broadcast)

    result = await pipeline.publish_broadcasts(TARGET_DATE)

    assert (result.sent, result.failed) == (1, 1)
    assert result.errors[0].startswith("Austin:")


@pytest.mark.asyncio
async def test_publish_broadcasts_without_provider_is_a_no_op(cache, registry):
    result = await _pipeline(cache, registry).publish_broadcasts(TARGET_DATE)
    assert (result.sent, result.failed) == (0, 0)
