"""
Per data type normalisation of decoded upstream records.

Turns RawNewsResult / RawEventResult / WeatherPayload records into the
canonical items that get cached: filters, deduplicates, classifies and
parses dates. Classifier failures degrade per item; only an explicit
rejection from the classifier drops an item.
"""

import logging
import math
from datetime import date, datetime
from typing import Dict, Iterable, List, Optional, Union

from citybrief.models.content import (
    SPORT_BUCKETS,
    SPORT_KEYWORDS,
    EventItem,
    MatchItem,
    NewsItem,
    SportsDigest,
    SportsNewsItem,
    WeatherSnapshot,
)
from citybrief.models.payloads import ForecastSlice, RawEventResult, RawNewsResult, WeatherPayload
from citybrief.services.classification_service import ContentClassifier, NewsClassification
from citybrief.utils.date_extraction import event_sort_key, parse_event_date
from citybrief.utils.error_monitoring import PayloadDecodeError
from citybrief.utils.logging_config import log_pipeline_metrics

logger = logging.getLogger(__name__)


NEWS_INPUT_CAP = 30
NEWS_OUTPUT_CAP = 20
EVENTS_CAP = 20
SPORTS_NEWS_CAP = 10
MATCHES_CAP = 15
BRIEF_SIZE = 5
DISPATCH_NEWS_CAP = 8
WEATHER_FALLBACK_SLICES = 8
DEDUP_WORDS = 6

COMPASS_POINTS = [
    "N", "NNE", "NE", "ENE", "E", "ESE", "SE", "SSE",
    "S", "SSW", "SW", "WSW", "W", "WNW", "NW", "NNW",
]
MPS_TO_MPH = 2.237


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def has_usable_link(link: Optional[str]) -> bool:
    if not link or not link.strip():
        return False
    link = link.strip()
    return link != "#" and link.lower().startswith(("http://", "https://"))


def title_fingerprint(title: str) -> str:
    """Lowercased first six words of a title."""
    return " ".join((title or "").lower().split()[:DEDUP_WORDS])


def dedupe_news(items: Iterable[NewsItem]) -> List[NewsItem]:
    """Drop items whose title fingerprint was already seen; first occurrence wins."""
    seen = set()
    unique = []
    for item in items:
        key = title_fingerprint(item.title)
        if key in seen:
            continue
        seen.add(key)
        unique.append(item)
    return unique


def filter_news_for_dispatch(news: Iterable[Union[NewsItem, Dict]], cap: int = DISPATCH_NEWS_CAP) -> List[NewsItem]:
    """Final newsletter-side news filter: usable link, not flagged inappropriate, deduplicated, capped."""
    items = [n if isinstance(n, NewsItem) else NewsItem.from_dict(n) for n in news]
    kept = [n for n in items if has_usable_link(n.link) and n.is_appropriate is not False]
    return dedupe_news(kept)[:cap]


def build_brief(news: Iterable[Union[NewsItem, Dict]]) -> List[Dict[str, str]]:
    """First five news titles."""
    brief = []
    for item in news:
        title = item.title if isinstance(item, NewsItem) else (item or {}).get("title")
        if title:
            brief.append({"title": title})
        if len(brief) >= BRIEF_SIZE:
            break
    return brief


def bucket_for_sport(text: Optional[str]) -> str:
    lower = (text or "").lower()
    for bucket, keywords in SPORT_KEYWORDS.items():
        if any(keyword in lower for keyword in keywords):
            return bucket
    return "other"


def bucket_matches(matches: Iterable[MatchItem]) -> Dict[str, List[MatchItem]]:
    """Group matches by sport bucket; every bucket key is present, possibly empty."""
    buckets: Dict[str, List[MatchItem]] = {bucket: [] for bucket in SPORT_BUCKETS}
    for match in matches:
        buckets[bucket_for_sport(match.sport or match.title)].append(match)
    return buckets


def wind_direction(degrees: Optional[float]) -> str:
    if degrees is None:
        return "N"
    return COMPASS_POINTS[_round_half_up(degrees / 22.5) % 16]


def format_wind(speed_mps: Optional[float], degrees: Optional[float]) -> str:
    mph = _round_half_up((speed_mps or 0) * MPS_TO_MPH)
    return f"{wind_direction(degrees)} {mph}-{mph + 5} mph"


def format_display_date(target_date: date) -> str:
    """'Tuesday, July 29'"""
    return f"{target_date:%A}, {target_date:%B} {target_date.day}"


def slices_for_local_day(payload: WeatherPayload, target_date: date) -> List[ForecastSlice]:
    """Forecast slices whose timestamp falls on target_date in the city's local time."""
    day_slices = [s for s in payload.slices if (s.dt + payload.utc_offset).date() == target_date]
    if day_slices:
        return day_slices
    return payload.slices[:WEATHER_FALLBACK_SLICES]


def build_weather_snapshot(payload: WeatherPayload, target_date: date) -> WeatherSnapshot:
    """
    Summarise one local calendar day of forecast slices.

    High/low come from slice temp_max/temp_min (falling back to temp, then to
    current conditions). Condition and wind come from the middle slice.
    """
    day_slices = slices_for_local_day(payload, target_date)

    highs = [s.temp_max if s.temp_max is not None else s.temp for s in day_slices]
    lows = [s.temp_min if s.temp_min is not None else s.temp for s in day_slices]
    highs = [t for t in highs if t is not None]
    lows = [t for t in lows if t is not None]

    if not highs or not lows:
        if payload.current_temp is None:
            raise PayloadDecodeError("weather payload carries no temperatures")
        highs = highs or [payload.current_temp]
        lows = lows or [payload.current_temp]

    middle = day_slices[len(day_slices) // 2] if day_slices else None

    condition = (middle.condition if middle else None) or payload.current_condition or "Unknown"
    speed = middle.wind_speed if middle and middle.wind_speed is not None else payload.current_wind_speed
    degrees = middle.wind_deg if middle and middle.wind_deg is not None else payload.current_wind_deg

    return WeatherSnapshot(
        condition=condition,
        high=_round_half_up(max(highs)),
        low=_round_half_up(min(lows)),
        wind=format_wind(speed, degrees),
        date=format_display_date(target_date),
    )


def needs_secondary_events(primary: List[RawEventResult]) -> bool:
    """True when there are primary events and none of them carries a venue."""
    return bool(primary) and all(not event.venue for event in primary)


def has_required_event_fields(event: RawEventResult) -> bool:
    return bool(event.title and event.title.strip() and event.date and event.date.strip())


class ContentNormalizer:
    """
    Classifier-driven normalisation for news, events and sports.

    Calls to the classifier within one batch are sequential.
    """

    def __init__(self, classifier: ContentClassifier):
        self.classifier = classifier
        self.logger = logging.getLogger(__name__)

    async def normalize_news(self, raw: List[RawNewsResult], city: str) -> List[NewsItem]:
        candidates = raw[:NEWS_INPUT_CAP]
        kept: List[NewsItem] = []

        for item in candidates:
            if not has_usable_link(item.link):
                continue

            try:
                verdict = await self.classifier.classify_news(item, city)
                title, summary = verdict.title or item.title, verdict.summary
            except Exception as e:
                # No verdict is not a rejection: keep the raw item
                self.logger.warning(f"News classifier failed for '{item.title[:60]}': {e}; keeping raw item")
                verdict = NewsClassification(True, True, True, item.title, item.snippet or "")
                title, summary = item.title, item.snippet or ""

            news = NewsItem(
                title=title,
                summary=summary,
                link=item.link,
                date=item.date,
                source=item.source,
                is_relevant=verdict.is_relevant,
                is_appropriate=verdict.is_appropriate,
                is_positive=verdict.is_positive,
            )
            if news.passes_filters():
                kept.append(news)

        result = kept[:NEWS_OUTPUT_CAP]
        log_pipeline_metrics(self.logger, f"news:{city}", len(raw), len(result))
        return result

    async def normalize_events(
        self,
        primary: List[RawEventResult],
        secondary: Optional[List[RawEventResult]] = None,
        reference: Optional[datetime] = None,
    ) -> List[EventItem]:
        structured = [e for e in primary if has_required_event_fields(e)]
        if secondary:
            structured.extend(e for e in secondary if has_required_event_fields(e))

        reference = reference or datetime.now()
        parsed = [(parse_event_date(e.date, reference), index, e) for index, e in enumerate(structured)]
        # index keeps the sort stable among equal keys
        parsed.sort(key=lambda entry: (event_sort_key(entry[0]), entry[1]))

        events: List[EventItem] = []
        for _, _, raw in parsed[:EVENTS_CAP]:
            try:
                category = await self.classifier.classify_event_category(raw)
            except Exception as e:
                self.logger.warning(f"Event category classifier failed for '{raw.title[:60]}': {e}")
                category = "Other"

            events.append(EventItem(
                title=raw.title,
                date=raw.date,
                venue=raw.venue,
                link=raw.link,
                snippet=raw.snippet,
                thumbnail=raw.thumbnail,
                category=category or "Other",
            ))

        log_pipeline_metrics(
            self.logger, "events", len(primary) + len(secondary or []), len(events),
            unparseable_dates=sum(1 for p in parsed if p[0] is None),
        )
        return events

    async def summarize_sports_news(self, raw: List[RawNewsResult], city: str) -> List[SportsNewsItem]:
        summaries = []
        for item in raw[:SPORTS_NEWS_CAP]:
            try:
                summary = await self.classifier.summarize_sports(item, city)
                ai_title, ai_summary = summary.title, summary.summary
            except Exception as e:
                self.logger.warning(f"Sports summary failed for '{item.title[:60]}': {e}")
                ai_title, ai_summary = item.title, item.snippet or ""

            summaries.append(SportsNewsItem(
                original_title=item.title,
                ai_title=ai_title,
                ai_summary=ai_summary,
                link=item.link,
                date=item.date,
                source=item.source,
            ))
        return summaries

    async def extract_matches(self, raw: List[RawNewsResult]) -> List[MatchItem]:
        matches = []
        for item in raw[:MATCHES_CAP]:
            try:
                extraction = await self.classifier.extract_match(item)
            except Exception as e:
                self.logger.warning(f"Match extraction failed for '{item.title[:60]}': {e}; keeping raw item")
                matches.append(MatchItem(title=item.title, date=item.date, link=item.link))
                continue

            if not extraction.is_match:
                continue

            matches.append(MatchItem(
                title=extraction.title or item.title,
                date=item.date,
                time=extraction.time or None,
                teams=extraction.teams or None,
                venue=extraction.venue or None,
                sport=extraction.sport or None,
                link=item.link,
            ))
        return matches

    async def normalize_sports(self, raw: List[RawNewsResult], city: str) -> SportsDigest:
        """Classify one raw batch twice: as summarised news and as upcoming matches."""
        sports = await self.summarize_sports_news(raw, city)
        matches = await self.extract_matches(raw)
        digest = SportsDigest(sports=sports, upcoming_matches=bucket_matches(matches))
        log_pipeline_metrics(self.logger, f"sports:{city}", len(raw), len(sports), matches=len(matches))
        return digest
