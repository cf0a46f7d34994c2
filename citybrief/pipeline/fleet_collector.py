import asyncio
import logging
import time
from datetime import date
from typing import List, Optional

from citybrief.models.content import CollectionResult, CollectionSummary, normalize_city_name
from citybrief.pipeline.content_aggregator import ContentAggregator
from citybrief.services.notification_service import (
    NotificationDetails,
    NotificationService,
    NotificationStatus,
    NotificationType,
)
from citybrief.services.registry_service import RegistryService
from citybrief.utils.error_monitoring import ErrorHandler


class FleetCollector:
    """
    Daily collection across every known city.

    A process-local flag makes the run single-flight: a trigger that arrives
    while a run is in progress is logged and ignored.
    """

    def __init__(
        self,
        aggregator: ContentAggregator,
        registry: RegistryService,
        notifier: Optional[NotificationService] = None,
        error_handler: Optional[ErrorHandler] = None,
    ) -> None:
        self.aggregator = aggregator
        self.registry = registry
        self.notifier = notifier or NotificationService()
        self.error_handler = error_handler or aggregator.error_handler
        self._running = False
        self.last_summary: Optional[CollectionSummary] = None
        self.logger = logging.getLogger(__name__)

    @property
    def is_running(self) -> bool:
        return self._running

    async def target_cities(self) -> List[str]:
        """Active registry cities plus every city with subscribers, normalised and deduplicated."""
        active = [c.display_name for c in await self.registry.list_active_cities()]
        subscribed = await self.registry.list_subscriber_cities()

        seen = set()
        cities = []
        for name in active + subscribed:
            normalized = normalize_city_name(name)
            if normalized and normalized not in seen:
                seen.add(normalized)
                cities.append(normalized)
        return cities

    async def collect_city(self, city: str, target_date: Optional[date] = None) -> CollectionResult:
        """Manual single-city trigger; exceptions propagate to the caller."""
        return await self.aggregator.collect_and_cache(city, target_date)

    async def run_daily_collection(self, target_date: Optional[date] = None) -> Optional[CollectionSummary]:
        """
        Collect and cache content for every target city concurrently.

        Returns:
            CollectionSummary, or None when a run was already in progress
        """
        if self._running:
            self.logger.info("⏳ Data collection already running, skipping")
            return None

        self._running = True
        start = time.monotonic()
        try:
            target_date = target_date or self.aggregator.today()
            cities = await self.target_cities()
            summary = CollectionSummary()

            if not cities:
                self.logger.warning("No cities to collect: no active cities and no subscribers")
                self.last_summary = summary
                return summary

            self.logger.info(f"🚀 Starting daily data collection for {len(cities)} cities ({target_date.isoformat()})")
            await self.notifier.notify(
                NotificationType.DATA_COLLECTION,
                NotificationStatus.STARTED,
                NotificationDetails(total_cities=len(cities)),
            )

            results = await asyncio.gather(
                *(self.collect_city(city, target_date) for city in cities),
                return_exceptions=True,
            )

            for city, outcome in zip(cities, results):
                if isinstance(outcome, Exception):
                    summary.failed += 1
                    summary.errors.append(f"{city}: {outcome}")
                    self.error_handler.handle_error(
                        outcome, service="fleet_collector", operation="collect_city", context={"city": city}
                    )
                elif not outcome.fetched and not outcome.errors:
                    # Everything was already cached
                    summary.successful += 1
                    summary.skipped += 1
                else:
                    summary.successful += 1
                    summary.errors.extend(
                        f"{city} {data_type}: {message}" for data_type, message in outcome.errors.items()
                    )

            duration = time.monotonic() - start
            self.logger.info(
                f"✅ Data collection completed: {summary.successful} successful, {summary.failed} failed, "
                f"{summary.skipped} fully cached ({duration:.2f}s)"
            )
            await self.notifier.notify(
                NotificationType.DATA_COLLECTION,
                NotificationStatus.COMPLETED,
                NotificationDetails(
                    successful=summary.successful,
                    failed=summary.failed,
                    duration=f"{duration:.2f}s",
                    errors=summary.errors[:5],
                ),
            )
            self.last_summary = summary
            return summary
        finally:
            self._running = False
