import asyncio
import logging
import time
from dataclasses import dataclass
from datetime import date, datetime
from typing import Any, Dict, List, Optional
from zoneinfo import ZoneInfo

from citybrief.models.content import (
    COLLECTED_TYPES,
    CollectionResult,
    DataType,
    NewsItem,
    normalize_city_name,
)
from citybrief.models.payloads import (
    decode_event_results,
    decode_eventbrite_events,
    decode_news_results,
    decode_weather,
)
from citybrief.pipeline.content_normalizer import (
    ContentNormalizer,
    build_brief,
    build_weather_snapshot,
    needs_secondary_events,
)
from citybrief.services.cache_service import CacheService
from citybrief.services.upstream_service import UpstreamService
from citybrief.utils.error_monitoring import ErrorHandler, TotalPipelineFailure, UpstreamError
from citybrief.utils.logging_config import PerformanceTracker


@dataclass
class FetchResult:
    """Outcome of collecting one data type for one city"""
    data_type: DataType
    payload: Any
    from_cache: bool
    fetch_time: float
    error: Optional[str] = None


class ContentAggregator:
    """
    Cache-aside collection for one city and day.

    For each data type: a cache hit is reused without touching upstream; a
    miss is fetched, normalised and written through. Types run concurrently
    and fail independently.
    """

    NEWS_QUERY_SIZE = 30
    EVENTS_QUERY_SIZE = 20
    SPORTS_QUERY_SIZE = 25

    def __init__(
        self,
        upstream: UpstreamService,
        normalizer: ContentNormalizer,
        cache_service: CacheService,
        error_handler: Optional[ErrorHandler] = None,
        timezone: str = "UTC",
    ) -> None:
        self.upstream = upstream
        self.normalizer = normalizer
        self.cache_service = cache_service
        self.error_handler = error_handler or ErrorHandler()
        self.timezone = ZoneInfo(timezone)
        self.logger = logging.getLogger(__name__)

        self._fetchers = {
            DataType.NEWS: self._fetch_news,
            DataType.EVENTS: self._fetch_events,
            DataType.SPORTS: self._fetch_sports,
            DataType.WEATHER: self._fetch_weather,
        }

    def today(self) -> date:
        return datetime.now(self.timezone).date()

    async def collect_and_cache(self, city: str, target_date: Optional[date] = None) -> CollectionResult:
        """
        Ensure every data type for (city, target_date) is cached.

        Idempotent: a second call on the same day makes no upstream calls for
        types already cached. Partial failure is reported in the result;
        TotalPipelineFailure is raised only when every type failed.
        """
        city = normalize_city_name(city)
        target_date = target_date or self.today()
        result = CollectionResult(city=city, date=target_date)

        with PerformanceTracker(f"collect {city} {target_date.isoformat()}", self.logger):
            tasks = [self._collect_type(city, target_date, data_type) for data_type in COLLECTED_TYPES]
            outcomes = await asyncio.gather(*tasks, return_exceptions=True)

        news_payload = None
        for data_type, outcome in zip(COLLECTED_TYPES, outcomes):
            if isinstance(outcome, Exception):
                # _collect_type records its own failures; this is a bug guard
                result.errors[data_type.value] = str(outcome)
                continue
            if outcome.error is not None:
                result.errors[data_type.value] = outcome.error
                continue
            (result.cached if outcome.from_cache else result.fetched).append(data_type.value)
            if data_type == DataType.NEWS:
                news_payload = outcome.payload

        if len(result.errors) == len(COLLECTED_TYPES):
            raise TotalPipelineFailure(city, result.errors)

        if news_payload is not None:
            await self._ensure_brief(city, target_date, news_payload, result)

        if result.errors:
            self.logger.warning(
                f"⚠️ Partial collection for {city}: fetched={result.fetched} cached={result.cached} "
                f"failed={list(result.errors)}"
            )
        else:
            self.logger.info(f"✅ {city}: fetched={result.fetched} cached={result.cached}")
        return result

    async def _collect_type(self, city: str, target_date: date, data_type: DataType) -> FetchResult:
        start = time.monotonic()
        try:
            entry = await self.cache_service.get_entry(city, target_date, data_type)
            if entry is not None:
                self.logger.debug(f"📦 Cache hit: {city} {data_type.value}")
                return FetchResult(data_type, entry.payload, True, time.monotonic() - start)

            self.logger.info(f"🔄 Cache miss for {city} {data_type.value}, fetching from upstream")
            payload = await self._fetchers[data_type](city, target_date)
            await self.cache_service.save_entry(city, target_date, data_type, payload)
            return FetchResult(data_type, payload, False, time.monotonic() - start)

        except Exception as e:
            self.error_handler.handle_error(
                e, service="content_aggregator", operation=f"collect_{data_type.value}",
                context={"city": city, "date": target_date.isoformat()},
            )
            return FetchResult(data_type, None, False, time.monotonic() - start, error=f"{type(e).__name__}: {e}")

    async def _ensure_brief(self, city: str, target_date: date, news_payload: List[Dict], result: CollectionResult) -> None:
        try:
            if await self.cache_service.exists(city, target_date, DataType.BRIEF):
                result.cached.append(DataType.BRIEF.value)
                return
            brief = build_brief(news_payload or [])
            await self.cache_service.save_entry(city, target_date, DataType.BRIEF, {"brief": brief})
            result.fetched.append(DataType.BRIEF.value)
        except Exception as e:
            self.error_handler.handle_error(e, service="content_aggregator", operation="collect_brief",
                                            context={"city": city})
            result.errors[DataType.BRIEF.value] = f"{type(e).__name__}: {e}"

    async def _fetch_news(self, city: str, target_date: date) -> List[Dict[str, Any]]:
        response = await self.upstream.fetch_search("google_news", city, {"num": self.NEWS_QUERY_SIZE})
        raw = decode_news_results(response)
        news: List[NewsItem] = await self.normalizer.normalize_news(raw, city)
        return [item.to_dict() for item in news]

    async def _fetch_events(self, city: str, target_date: date) -> List[Dict[str, Any]]:
        try:
            response = await self.upstream.fetch_search(
                "google_events", f"{city} events concerts shows", {"num": self.EVENTS_QUERY_SIZE}
            )
        except UpstreamError as e:
            self.logger.warning(f"❌ google_events failed for {city} ({e}), trying google_search...")
            response = await self.upstream.fetch_search(
                "google_search", f"{city} upcoming events concerts shows", {"num": self.EVENTS_QUERY_SIZE}
            )
        primary = decode_event_results(response)

        secondary = None
        if needs_secondary_events(primary) and self.upstream.eventbrite_key:
            try:
                secondary = decode_eventbrite_events(await self.upstream.fetch_eventbrite_events(city))
                self.logger.info(f"📊 Added {len(secondary)} events from Eventbrite for {city}")
            except Exception as e:
                self.logger.warning(f"Eventbrite fallback failed for {city}: {e}")

        reference = datetime.combine(target_date, datetime.min.time())
        events = await self.normalizer.normalize_events(primary, secondary, reference=reference)
        return [event.to_dict() for event in events]

    async def _fetch_sports(self, city: str, target_date: date) -> Dict[str, Any]:
        response = await self.upstream.fetch_search(
            "google_news", f"{city} sports news events matches schedule", {"num": self.SPORTS_QUERY_SIZE}
        )
        raw = decode_news_results(response)
        digest = await self.normalizer.normalize_sports(raw, city)
        return digest.to_dict()

    async def _fetch_weather(self, city: str, target_date: date) -> Dict[str, Any]:
        raw = await self.upstream.fetch_weather(city, units="imperial")
        snapshot = build_weather_snapshot(decode_weather(raw), target_date)
        return snapshot.to_dict()
