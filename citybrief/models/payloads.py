"""
Typed records for raw upstream JSON.

Each provider response is decoded once here. A response whose top-level
shape is wrong raises PayloadDecodeError; individual malformed entries in a
result list are skipped so one bad record never sinks the batch.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

from citybrief.utils.error_monitoring import PayloadDecodeError

logger = logging.getLogger(__name__)


@dataclass
class RawNewsResult:
    title: str
    link: Optional[str] = None
    snippet: Optional[str] = None
    date: Optional[str] = None
    source: Optional[str] = None

    @classmethod
    def from_serpapi(cls, entry: Dict[str, Any]) -> Optional["RawNewsResult"]:
        title = entry.get("title")
        if not isinstance(title, str) or not title.strip():
            return None

        source = entry.get("source")
        if isinstance(source, dict):
            source = source.get("name")

        return cls(
            title=title.strip(),
            link=entry.get("link") if isinstance(entry.get("link"), str) else None,
            snippet=entry.get("snippet") if isinstance(entry.get("snippet"), str) else None,
            date=entry.get("date") if isinstance(entry.get("date"), str) else None,
            source=source if isinstance(source, str) else None,
        )


@dataclass
class RawEventResult:
    title: str
    date: str
    venue: Optional[str] = None
    link: Optional[str] = None
    snippet: Optional[str] = None
    thumbnail: Optional[str] = None

    @staticmethod
    def _text(value: Any) -> Optional[str]:
        if isinstance(value, str):
            return value.strip() or None
        if isinstance(value, list):
            joined = ", ".join(str(v) for v in value if v)
            return joined or None
        if isinstance(value, dict):
            name = value.get("name")
            return name if isinstance(name, str) and name else None
        return None

    @classmethod
    def from_serpapi(cls, entry: Dict[str, Any]) -> "RawEventResult":
        date_value = entry.get("date")
        date_text = ""
        if isinstance(date_value, str):
            date_text = date_value
        elif isinstance(date_value, dict):
            date_text = date_value.get("when") or date_value.get("start_date") or ""
        elif isinstance(entry.get("date_when"), str):
            date_text = entry["date_when"]

        venue = None
        for key in ("venue", "location", "address", "place", "venue_name"):
            venue = cls._text(entry.get(key))
            if venue:
                break

        title = entry.get("title")
        return cls(
            title=title.strip() if isinstance(title, str) else "",
            date=date_text.strip() if isinstance(date_text, str) else "",
            venue=venue,
            link=entry.get("link") or entry.get("event_link"),
            snippet=entry.get("snippet") or entry.get("description"),
            thumbnail=entry.get("thumbnail"),
        )

    @classmethod
    def from_eventbrite(cls, entry: Dict[str, Any]) -> "RawEventResult":
        name = entry.get("name") or {}
        start = entry.get("start") or {}
        venue = entry.get("venue") or {}
        description = (entry.get("description") or {}).get("text") or ""
        logo = entry.get("logo") or {}
        return cls(
            title=(name.get("text") or "").strip(),
            date=start.get("local") or "",
            venue=venue.get("name"),
            link=entry.get("url"),
            snippet=description[:200] or None,
            thumbnail=logo.get("url"),
        )


def _object(value: Any) -> Dict[str, Any]:
    return value if isinstance(value, dict) else {}


def _number(value: Any) -> Optional[float]:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    return value


def _first_condition(weather: Any) -> Optional[str]:
    if not isinstance(weather, list) or not weather:
        return None
    condition = _object(weather[0]).get("main")
    return condition if isinstance(condition, str) else None


@dataclass
class ForecastSlice:
    """One 3-hour forecast slice."""
    dt: datetime
    temp: Optional[float] = None
    temp_min: Optional[float] = None
    temp_max: Optional[float] = None
    condition: Optional[str] = None
    wind_speed: Optional[float] = None
    wind_deg: Optional[float] = None

    @classmethod
    def from_openweather(cls, entry: Dict[str, Any]) -> Optional["ForecastSlice"]:
        if _number(entry.get("dt")) is None or not isinstance(entry.get("main"), dict):
            return None
        main = entry["main"]
        wind = _object(entry.get("wind"))
        return cls(
            dt=datetime.fromtimestamp(entry["dt"], tz=timezone.utc),
            temp=_number(main.get("temp")),
            temp_min=_number(main.get("temp_min")),
            temp_max=_number(main.get("temp_max")),
            condition=_first_condition(entry.get("weather")),
            wind_speed=_number(wind.get("speed")),
            wind_deg=_number(wind.get("deg")),
        )


@dataclass
class WeatherPayload:
    """Current conditions plus forecast slices for one city."""
    current_temp: Optional[float] = None
    current_condition: Optional[str] = None
    current_wind_speed: Optional[float] = None
    current_wind_deg: Optional[float] = None
    utc_offset: timedelta = timedelta(0)
    slices: List[ForecastSlice] = field(default_factory=list)


def decode_news_results(response: Any) -> List[RawNewsResult]:
    """Decode a SerpApi google_news response into news records."""
    if not isinstance(response, dict):
        raise PayloadDecodeError(f"news response is {type(response).__name__}, expected object")

    results = response.get("news_results", [])
    if not isinstance(results, list):
        raise PayloadDecodeError("news_results is not a list")

    decoded = []
    for entry in results:
        if not isinstance(entry, dict):
            continue
        item = RawNewsResult.from_serpapi(entry)
        if item is not None:
            decoded.append(item)

    skipped = len(results) - len(decoded)
    if skipped:
        logger.debug(f"Skipped {skipped} malformed news entries")
    return decoded


def decode_event_results(response: Any) -> List[RawEventResult]:
    if not isinstance(response, dict):
        raise PayloadDecodeError(f"events response is {type(response).__name__}, expected object")

    results = response.get("events_results", [])
    if not isinstance(results, list):
        raise PayloadDecodeError("events_results is not a list")

    return [RawEventResult.from_serpapi(entry) for entry in results if isinstance(entry, dict)]


def decode_eventbrite_events(response: Any) -> List[RawEventResult]:
    if not isinstance(response, dict):
        raise PayloadDecodeError("eventbrite response is not an object")

    events = response.get("events", [])
    if not isinstance(events, list):
        raise PayloadDecodeError("eventbrite events is not a list")

    return [RawEventResult.from_eventbrite(entry) for entry in events if isinstance(entry, dict)]


def decode_weather(raw: Any) -> WeatherPayload:
    """Decode the combined {current, forecast} OpenWeatherMap response."""
    if not isinstance(raw, dict):
        raise PayloadDecodeError("weather payload is not an object")

    current = raw.get("current")
    forecast = raw.get("forecast")
    if not isinstance(current, dict) or not isinstance(forecast, dict):
        raise PayloadDecodeError("weather payload must carry 'current' and 'forecast' objects")

    forecast_list = forecast.get("list", [])
    if not isinstance(forecast_list, list):
        raise PayloadDecodeError("forecast.list is not a list")

    city_info = _object(forecast.get("city"))
    offset_seconds = _number(city_info.get("timezone", current.get("timezone", 0))) or 0

    current_main = _object(current.get("main"))
    current_wind = _object(current.get("wind"))

    slices = []
    for entry in forecast_list:
        if not isinstance(entry, dict):
            continue
        decoded = ForecastSlice.from_openweather(entry)
        if decoded is not None:
            slices.append(decoded)

    return WeatherPayload(
        current_temp=_number(current_main.get("temp")),
        current_condition=_first_condition(current.get("weather")),
        current_wind_speed=_number(current_wind.get("speed")),
        current_wind_deg=_number(current_wind.get("deg")),
        utc_offset=timedelta(seconds=offset_seconds),
        slices=slices,
    )
