"""
Content models for the city newsletter system.

Every model that ends up in the cache round-trips through plain dicts
(``to_dict`` / ``from_dict``) so the stored payload is ordinary JSON.
"""

from dataclasses import dataclass, field, asdict
from datetime import date, datetime
from enum import Enum
from typing import Any, Dict, List, Optional


class DataType(str, Enum):
    WEATHER = "weather"
    NEWS = "news"
    EVENTS = "events"
    SPORTS = "sports"
    BRIEF = "brief"


# Types fetched from upstream; brief is derived from news
COLLECTED_TYPES = (DataType.NEWS, DataType.EVENTS, DataType.SPORTS, DataType.WEATHER)

EVENT_CATEGORIES = ["Music", "Art", "Theatre", "Sports", "Festivals", "Markets", "Food", "Other"]

# Order matters: first bucket whose keyword appears wins
SPORT_KEYWORDS: Dict[str, List[str]] = {
    "basketball": ["basketball", "basketbol", "nba"],
    "football": ["football", "futbol", "nfl"],
    "soccer": ["soccer", "mls", "süper lig", "super lig", "premier league", "la liga", "serie a", "bundesliga"],
    "tennis": ["tennis", "tenis"],
    "baseball": ["baseball", "mlb"],
    "hockey": ["hockey", "hokey", "nhl"],
    "volleyball": ["volleyball", "voleybol"],
    "golf": ["golf"],
    "rugby": ["rugby"],
    "boxing": ["boxing", "boks"],
    "mma": ["mma", "ufc"],
    "racing": ["racing", "yarış", "f1", "nascar"],
}
SPORT_BUCKETS = list(SPORT_KEYWORDS.keys()) + ["other"]


def normalize_city_name(city: str) -> str:
    """Title-case each whitespace-separated word: 'new  YORK' -> 'New York'."""
    return " ".join(word[:1].upper() + word[1:].lower() for word in city.split())


@dataclass
class CacheEntry:
    """One cached payload for a (city, date, type) key."""
    city: str
    date: date
    type: DataType
    payload: Any
    created_at: Optional[datetime] = None


@dataclass
class NewsItem:
    """Represents a classified local news story."""

    title: str
    summary: str
    link: str
    date: Optional[str] = None
    source: Optional[str] = None
    is_relevant: bool = True
    is_appropriate: bool = True
    is_positive: bool = True

    def passes_filters(self) -> bool:
        return self.is_relevant and self.is_appropriate and self.is_positive

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "NewsItem":
        return cls(
            title=data.get("title", ""),
            summary=data.get("summary", ""),
            link=data.get("link", ""),
            date=data.get("date"),
            source=data.get("source"),
            is_relevant=data.get("is_relevant", True),
            is_appropriate=data.get("is_appropriate", True),
            is_positive=data.get("is_positive", True),
        )

    def __hash__(self):
        return hash((self.title, self.link))


@dataclass
class EventItem:
    title: str
    date: str
    venue: Optional[str] = None
    link: Optional[str] = None
    snippet: Optional[str] = None
    thumbnail: Optional[str] = None
    category: str = "Other"

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "EventItem":
        return cls(
            title=data.get("title", ""),
            date=data.get("date", ""),
            venue=data.get("venue"),
            link=data.get("link"),
            snippet=data.get("snippet"),
            thumbnail=data.get("thumbnail"),
            category=data.get("category") or "Other",
        )


@dataclass
class SportsNewsItem:
    original_title: str
    ai_title: str
    ai_summary: str
    link: Optional[str] = None
    date: Optional[str] = None
    source: Optional[str] = None
    type: str = "news"

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SportsNewsItem":
        return cls(
            original_title=data.get("original_title", ""),
            ai_title=data.get("ai_title", ""),
            ai_summary=data.get("ai_summary", ""),
            link=data.get("link"),
            date=data.get("date"),
            source=data.get("source"),
        )


@dataclass
class MatchItem:
    title: str
    date: Optional[str] = None
    time: Optional[str] = None
    teams: Optional[str] = None
    venue: Optional[str] = None
    sport: Optional[str] = None
    link: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "MatchItem":
        return cls(**{k: data.get(k) for k in ("title", "date", "time", "teams", "venue", "sport", "link")})


@dataclass
class SportsDigest:
    """Cached sports payload: summarised stories plus bucketed upcoming matches."""
    sports: List[SportsNewsItem] = field(default_factory=list)
    upcoming_matches: Dict[str, List[MatchItem]] = field(default_factory=dict)

    def has_content(self) -> bool:
        return bool(self.sports) or any(self.upcoming_matches.values())

    def to_dict(self) -> Dict[str, Any]:
        return {
            "sports": [s.to_dict() for s in self.sports],
            "upcoming_matches": {
                bucket: [m.to_dict() for m in matches]
                for bucket, matches in self.upcoming_matches.items()
            },
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SportsDigest":
        return cls(
            sports=[SportsNewsItem.from_dict(s) for s in data.get("sports") or []],
            upcoming_matches={
                bucket: [MatchItem.from_dict(m) for m in matches]
                for bucket, matches in (data.get("upcoming_matches") or {}).items()
            },
        )


@dataclass
class WeatherSnapshot:
    condition: str
    high: int
    low: int
    wind: str
    date: str

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "WeatherSnapshot":
        return cls(
            condition=data.get("condition", ""),
            high=data.get("high", 0),
            low=data.get("low", 0),
            wind=data.get("wind", ""),
            date=data.get("date", ""),
        )


@dataclass
class City:
    slug: str
    display_name: str
    is_active: bool = True
    publication_id: Optional[str] = None
    state_name: Optional[str] = None


@dataclass
class Subscriber:
    id: int
    email: str
    city: str
    created_at: Optional[datetime] = None


@dataclass
class CollectionResult:
    """Outcome of one city's collect-and-cache run. Partial failure lives in ``errors``."""
    city: str
    date: date
    fetched: List[str] = field(default_factory=list)
    cached: List[str] = field(default_factory=list)
    errors: Dict[str, str] = field(default_factory=dict)

    @property
    def is_partial(self) -> bool:
        return bool(self.errors)


@dataclass
class CollectionSummary:
    successful: int = 0
    failed: int = 0
    errors: List[str] = field(default_factory=list)
    skipped: int = 0


@dataclass
class DispatchResult:
    sent: int = 0
    failed: int = 0
    skipped: int = 0
    errors: List[str] = field(default_factory=list)

    def merge(self, other: "DispatchResult") -> None:
        self.sent += other.sent
        self.failed += other.failed
        self.skipped += other.skipped
        self.errors.extend(other.errors)
