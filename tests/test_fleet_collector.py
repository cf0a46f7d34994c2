import asyncio
from unittest.mock import MagicMock

import pytest

from citybrief.models.content import CollectionResult
from citybrief.pipeline.fleet_collector import FleetCollector
from citybrief.services.notification_service import NotificationService
from citybrief.utils.error_monitoring import ErrorHandler, TotalPipelineFailure

from conftest import TARGET_DATE, FakeMailer


class ScriptedAggregator:
    """collect_and_cache returns or raises per city; optionally blocks until released."""

    def __init__(self, outcomes=None, gate: asyncio.Event = None):
        self.outcomes = outcomes or {}
        self.gate = gate
        self.error_handler = ErrorHandler()
        self.calls = []

    def today(self):
        return TARGET_DATE

    async def collect_and_cache(self, city, target_date=None):
        self.calls.append(city)
        if self.gate is not None:
            await self.gate.wait()
        outcome = self.outcomes.get(city)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome or CollectionResult(city=city, date=target_date, fetched=["news"])


@pytest.mark.asyncio
async def test_target_cities_union_of_active_and_subscribed(registry):
    await registry.upsert_city("austin")
    await registry.upsert_city("Houston", is_active=False)
    await registry.add_subscriber("a@example.com", "AUSTIN")
    await registry.add_subscriber("b@example.com", "boston")

    collector = FleetCollector(ScriptedAggregator(), registry)

    assert await collector.target_cities() == ["Austin", "Boston"]


@pytest.mark.asyncio
async def test_summary_counts_success_failure_and_fully_cached(registry):
    for city in ("Austin", "Boston", "Chicago"):
        await registry.upsert_city(city)
    aggregator = ScriptedAggregator({
        "Austin": CollectionResult("Austin", TARGET_DATE, fetched=["news"], errors={"weather": "timeout"}),
        "Boston": TotalPipelineFailure("Boston", {"news": "x"}),
        "Chicago": CollectionResult("Chicago", TARGET_DATE, cached=["news", "events", "sports", "weather"]),
    })
    collector = FleetCollector(aggregator, registry)

    summary = await collector.run_daily_collection(TARGET_DATE)

    assert summary.successful == 2
    assert summary.failed == 1
    assert summary.skipped == 1
    assert any(e.startswith("Boston:") for e in summary.errors)
    assert "Austin weather: timeout" in summary.errors
    assert collector.last_summary is summary
    assert aggregator.error_handler.get_error_summary()["by_type"] == {"TotalPipelineFailure": 1}


@pytest.mark.asyncio
async def test_second_trigger_while_running_is_ignored(registry):
    await registry.upsert_city("Austin")
    gate = asyncio.Event()
    aggregator = ScriptedAggregator(gate=gate)
    collector = FleetCollector(aggregator, registry)

    first = asyncio.create_task(collector.run_daily_collection(TARGET_DATE))
    while not aggregator.calls:
        await asyncio.sleep(0)

    assert collector.is_running
    assert await collector.run_daily_collection(TARGET_DATE) is None

    gate.set()
    summary = await first
    assert summary.successful == 1
    assert aggregator.calls == ["Austin"]
    assert not collector.is_running


@pytest.mark.asyncio
async def test_notification_failures_do_not_fail_the_run(registry):
    await registry.upsert_city("Austin")
    notifier = NotificationService(FakeMailer(admin_raises=True))
    collector = FleetCollector(ScriptedAggregator(), registry, notifier=notifier)

    summary = await collector.run_daily_collection(TARGET_DATE)

    assert summary.successful == 1


@pytest.mark.asyncio
async def test_start_and_completion_notifications_sent(registry):
    await registry.upsert_city("Austin")
    mailer = FakeMailer()
    collector = FleetCollector(ScriptedAggregator(), registry, notifier=NotificationService(mailer))

    await collector.run_daily_collection(TARGET_DATE)

    assert mailer.admin_messages == ["CityBrief Data Collection Started", "CityBrief Data Collection Completed"]


@pytest.mark.asyncio
async def test_no_cities_returns_empty_summary(registry):
    notifier = MagicMock()
    collector = FleetCollector(ScriptedAggregator(), registry, notifier=notifier)

    summary = await collector.run_daily_collection(TARGET_DATE)

    assert summary.successful == 0 and summary.failed == 0
    notifier.notify.assert_not_called()


@pytest.mark.asyncio
async def test_collect_city_propagates_errors(registry):
    aggregator = ScriptedAggregator({"Austin": TotalPipelineFailure("Austin", {"news": "x"})})
    collector = FleetCollector(aggregator, registry)

    with pytest.raises(TotalPipelineFailure):
        await collector.collect_city("Austin", TARGET_DATE)
