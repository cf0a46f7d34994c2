from __future__ import annotations

import asyncio
from datetime import date, datetime, timezone
from typing import Any, Dict, List, Optional

import pytest
import pytest_asyncio

from citybrief.models.content import (
    DataType,
    EventItem,
    MatchItem,
    NewsItem,
    SportsDigest,
    SportsNewsItem,
    WeatherSnapshot,
)
from citybrief.models.payloads import RawEventResult, RawNewsResult
from citybrief.services.cache_service import CacheService
from citybrief.services.classification_service import (
    ContentClassifier,
    MatchExtraction,
    NewsClassification,
    SportsSummary,
)
from citybrief.services.registry_service import RegistryService
from citybrief.utils.error_monitoring import UpstreamTransientError


TARGET_DATE = date(2025, 7, 29)


def _ts(*args) -> int:
    return int(datetime(*args, tzinfo=timezone.utc).timestamp())


def news_response(count: int = 3) -> Dict[str, Any]:
    return {
        "news_results": [
            {
                "title": f"Austin story number {i} about the new library",
                "link": f"https://example.com/news/{i}",
                "snippet": f"Snippet {i}",
                "date": "2 hours ago",
                "source": {"name": "Austin Daily"},
            }
            for i in range(count)
        ]
    }


def events_response() -> Dict[str, Any]:
    return {
        "events_results": [
            {"title": "Jazz concert", "date": {"when": "Thu, Jul 31, 8:00 PM"}, "address": ["Zilker Park", "Austin"],
             "link": "https://example.com/jazz"},
            {"title": "Farmers market", "date": {"start_date": "Jul 30"}, "venue": {"name": "Mueller"}},
            {"title": "Mystery night", "date": {"when": "Date TBA"}, "venue": {"name": "Somewhere"}},
        ]
    }


def sports_response() -> Dict[str, Any]:
    return {
        "news_results": [
            {"title": "Longhorns vs Aggies set for Saturday", "link": "https://example.com/s/1", "snippet": "Big game"},
            {"title": "Austin FC signs new midfielder", "link": "https://example.com/s/2", "snippet": "MLS news"},
        ]
    }


def weather_response(offset_seconds: int = -18000) -> Dict[str, Any]:
    """Forecast around TARGET_DATE for a city at UTC-5."""
    def slice_(ts: int, temp: float, condition: str = "Clear", speed: float = 5.0, deg: float = 90):
        return {
            "dt": ts,
            "main": {"temp": temp, "temp_min": temp, "temp_max": temp},
            "weather": [{"main": condition}],
            "wind": {"speed": speed, "deg": deg},
        }

    return {
        "current": {"main": {"temp": 77}, "weather": [{"main": "Clouds"}], "wind": {"speed": 3, "deg": 180}},
        "forecast": {
            "city": {"name": "Austin", "timezone": offset_seconds},
            "list": [
                slice_(_ts(2025, 7, 29, 3), 100),           # Jul 28 22:00 local
                slice_(_ts(2025, 7, 29, 6), 70),            # Jul 29 01:00 local
                slice_(_ts(2025, 7, 29, 12), 85),
                slice_(_ts(2025, 7, 29, 18), 80, "Rain"),
                slice_(_ts(2025, 7, 30, 3), 65),            # Jul 29 22:00 local
                slice_(_ts(2025, 7, 30, 6), 50),            # Jul 30 01:00 local
            ],
        },
    }


class FakeUpstream:
    """Stands in for UpstreamService; routes by engine/query and records every call."""

    def __init__(
        self,
        fail: Optional[List[str]] = None,
        eventbrite_key: Optional[str] = None,
        events: Optional[Dict[str, Any]] = None,
    ):
        self.fail = set(fail or [])
        self.eventbrite_key = eventbrite_key
        self.events = events or events_response()
        self.calls: List[str] = []

    def _maybe_fail(self, kind: str) -> None:
        self.calls.append(kind)
        if kind in self.fail:
            raise UpstreamTransientError(f"{kind} timed out", service=kind)

    async def fetch_search(self, engine: str, query: str, params: Optional[Dict[str, Any]] = None):
        if engine == "google_events":
            self._maybe_fail("events")
            return self.events
        if engine == "google_search" and "upcoming events" in query:
            self._maybe_fail("events_fallback")
            return self.events
        if "sports" in query:
            self._maybe_fail("sports")
            return sports_response()
        self._maybe_fail("news")
        return news_response()

    async def fetch_weather(self, city: str, units: str = "imperial"):
        self._maybe_fail("weather")
        return weather_response()

    async def fetch_eventbrite_events(self, city: str):
        self._maybe_fail("eventbrite")
        return {
            "events": [
                {"name": {"text": "Symphony in the park"}, "start": {"local": "2025-08-01T19:00:00"},
                 "venue": {"name": "Long Center"}, "url": "https://example.com/eb/1"},
            ]
        }


class FakeClassifier(ContentClassifier):
    """Scripted classifier. Values keyed by title may be results or exceptions to raise."""

    def __init__(
        self,
        news: Optional[Dict[str, Any]] = None,
        categories: Optional[Dict[str, Any]] = None,
        matches: Optional[Dict[str, Any]] = None,
        sports: Optional[Dict[str, Any]] = None,
    ):
        self.news = news or {}
        self.categories = categories or {}
        self.matches = matches or {}
        self.sports = sports or {}
        self.calls: List[str] = []

    @staticmethod
    def _resolve(value: Any) -> Any:
        if isinstance(value, Exception):
            raise value
        return value

    async def classify_news(self, item: RawNewsResult, city: str) -> NewsClassification:
        self.calls.append(f"news:{item.title}")
        if item.title in self.news:
            return self._resolve(self.news[item.title])
        return NewsClassification(True, True, True, title=item.title, summary=item.snippet or "")

    async def classify_event_category(self, event: RawEventResult) -> str:
        self.calls.append(f"event:{event.title}")
        return self._resolve(self.categories.get(event.title, "Music"))

    async def summarize_sports(self, item: RawNewsResult, city: str) -> SportsSummary:
        self.calls.append(f"sports:{item.title}")
        if item.title in self.sports:
            return self._resolve(self.sports[item.title])
        return SportsSummary(title=item.title.upper(), summary="summary")

    async def extract_match(self, item: RawNewsResult) -> MatchExtraction:
        self.calls.append(f"match:{item.title}")
        if item.title in self.matches:
            return self._resolve(self.matches[item.title])
        if " vs " in item.title:
            return MatchExtraction(is_match=True, title=item.title, teams=item.title, sport="football")
        return MatchExtraction(is_match=False)


class FakeMailer:
    """Stands in for EmailService."""

    def __init__(self, failing: Optional[List[str]] = None, admin_raises: bool = False):
        self.failing = set(failing or [])
        self.admin_raises = admin_raises
        self.sent: List[Dict[str, str]] = []
        self.admin_messages: List[str] = []
        self.in_flight = 0
        self.max_in_flight = 0

    async def send_email(self, recipient: str, subject: str, html_content: str, plain_text: Optional[str] = None) -> bool:
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            await asyncio.sleep(0)
            if recipient in self.failing:
                raise ConnectionError(f"mailbox unavailable: {recipient}")
            self.sent.append({"to": recipient, "subject": subject, "html": html_content, "text": plain_text or ""})
            return True
        finally:
            self.in_flight -= 1

    async def send_admin_notification(self, subject: str, body: str) -> bool:
        if self.admin_raises:
            raise ConnectionError("admin mailbox down")
        self.admin_messages.append(subject)
        return True

    async def send_error_alert(self, error_message: str) -> bool:
        return await self.send_admin_notification("CityBrief Error Alert", error_message)


def complete_cache_payloads() -> Dict[DataType, Any]:
    return {
        DataType.WEATHER: WeatherSnapshot("Clear", 91, 74, "S 9-14 mph", "Tuesday, July 29").to_dict(),
        DataType.NEWS: [
            NewsItem("Library opens downtown", "New branch", "https://example.com/n/1", source="Austin Daily").to_dict(),
        ],
        DataType.BRIEF: {"brief": [{"title": "Library opens downtown"}]},
        DataType.EVENTS: [EventItem("Jazz concert", "Thu, Jul 31, 8:00 PM", venue="Zilker Park",
                                    category="Music").to_dict()],
        DataType.SPORTS: SportsDigest(
            sports=[SportsNewsItem("Longhorns win", "Longhorns win", "Big night")],
            upcoming_matches={"football": [MatchItem("Longhorns vs Aggies", sport="football")]},
        ).to_dict(),
    }


async def seed_cache(cache: CacheService, city: str, target_date: date, skip: Optional[List[DataType]] = None) -> None:
    for data_type, payload in complete_cache_payloads().items():
        if skip and data_type in skip:
            continue
        await cache.save_entry(city, target_date, data_type, payload)


@pytest.fixture
def db_path(tmp_path) -> str:
    return str(tmp_path / "citybrief.db")


@pytest_asyncio.fixture
async def cache(db_path) -> CacheService:
    service = CacheService(db_path)
    await service.initialize_db()
    return service


@pytest_asyncio.fixture
async def registry(db_path) -> RegistryService:
    service = RegistryService(db_path)
    await service.initialize_db()
    return service
