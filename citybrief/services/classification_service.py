"""
Content classifiers.

ContentClassifier is the seam the normalizer talks to. LLMClassifier asks
Gemini through AIService; RuleBasedClassifier is a deterministic keyword
classifier used when no LLM is configured and as the per-item fallback when
an LLM call fails.
"""

import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

from citybrief.models.content import EVENT_CATEGORIES
from citybrief.models.payloads import RawEventResult, RawNewsResult
from citybrief.services.ai_service import AIService
from citybrief.utils.error_monitoring import ClassifierMalformedOutputError

logger = logging.getLogger(__name__)


NEGATIVE_KEYWORDS = [
    'death', 'dead', 'died', 'killed', 'murder', 'homicide', 'suicide',
    'accident', 'crash', 'fatal', 'injury', 'wounded', 'shot', 'stabbed',
    'disease', 'outbreak', 'epidemic', 'pandemic', 'virus', 'infection',
    'crime', 'robbery', 'theft', 'assault', 'rape', 'abuse', 'violence',
    'terrorism', 'bomb', 'explosion', 'fire', 'disaster', 'emergency',
    'crisis', 'tragedy', 'funeral', 'obituary', 'memorial', 'victim',
    'suspect', 'arrest', 'jail', 'prison', 'conviction', 'sentence',
    'protest', 'riot', 'demonstration', 'conflict', 'war', 'battle',
    'casualty', 'casualties', 'missing', 'disappeared', 'kidnapped',
    'legionnaires', 'legionella', 'contamination', 'poisoning',
]

CATEGORY_KEYWORDS = [
    ("Music", ["music", "concert", "band", "singer", "dj ", "orchestra", "symphony"]),
    ("Art", ["art ", "art:", "gallery", "exhibition", "museum"]),
    ("Theatre", ["theatre", "theater", "play", "comedy", "drama", "musical"]),
    ("Sports", ["sport", "game", "match", "race", "marathon"]),
    ("Festivals", ["festival", "fest", "celebration", "parade"]),
    ("Markets", ["market", "fair", "farmers", "bazaar"]),
    ("Food", ["food", "restaurant", "dining", "tasting", "brunch"]),
]

MATCH_MARKERS = [" vs ", " vs. ", " v ", " versus ", " @ "]

# Category answers below this confidence fall back to Other
MIN_CATEGORY_CONFIDENCE = 0.5


@dataclass
class NewsClassification:
    is_relevant: bool
    is_appropriate: bool
    is_positive: bool
    title: str
    summary: str


@dataclass
class SportsSummary:
    title: str
    summary: str


@dataclass
class MatchExtraction:
    is_match: bool
    title: str = ""
    teams: str = ""
    sport: str = ""
    venue: str = ""
    time: str = ""


def contains_negative_content(text: str) -> bool:
    lower = text.lower()
    return any(keyword in lower for keyword in NEGATIVE_KEYWORDS)


def truncate(text: str, limit: int) -> str:
    text = (text or "").strip()
    if len(text) <= limit:
        return text
    return text[:limit - 1].rstrip() + "…"


class ContentClassifier:
    """Interface for per-item classification. Implementations may raise on failure."""

    async def classify_news(self, item: RawNewsResult, city: str) -> NewsClassification:
        raise NotImplementedError

    async def classify_event_category(self, event: RawEventResult) -> str:
        raise NotImplementedError

    async def summarize_sports(self, item: RawNewsResult, city: str) -> SportsSummary:
        raise NotImplementedError

    async def extract_match(self, item: RawNewsResult) -> MatchExtraction:
        raise NotImplementedError


class RuleBasedClassifier(ContentClassifier):
    """Keyword classifier with no external calls."""

    async def classify_news(self, item: RawNewsResult, city: str) -> NewsClassification:
        text = f"{item.title} {item.snippet or ''}"
        return NewsClassification(
            is_relevant=True,
            is_appropriate=not contains_negative_content(text),
            is_positive=not contains_negative_content(text),
            title=truncate(item.title, 80),
            summary=truncate(item.snippet or item.title, 150),
        )

    async def classify_event_category(self, event: RawEventResult) -> str:
        return self.basic_category(event.title)

    @staticmethod
    def basic_category(title: str) -> str:
        lower = f"{(title or '').lower()} "
        for category, keywords in CATEGORY_KEYWORDS:
            if any(keyword in lower for keyword in keywords):
                return category
        return "Other"

    async def summarize_sports(self, item: RawNewsResult, city: str) -> SportsSummary:
        return SportsSummary(title=item.title, summary=item.snippet or "")

    async def extract_match(self, item: RawNewsResult) -> MatchExtraction:
        lower = f" {item.title.lower()} "
        marker = next((m for m in MATCH_MARKERS if m in lower), None)
        if marker is None:
            return MatchExtraction(is_match=False)

        start = lower.index(marker)
        teams = item.title[max(0, start - 40):start + len(marker) + 40].strip()
        return MatchExtraction(is_match=True, title=item.title, teams=teams)


class LLMClassifier(ContentClassifier):
    """Gemini-backed classifier. Malformed output raises ClassifierMalformedOutputError."""

    def __init__(self, ai_service: AIService):
        self.ai = ai_service
        self.logger = logging.getLogger(__name__)

    @staticmethod
    def _require_bool(content: Dict[str, Any], key: str) -> bool:
        value = content.get(key)
        if not isinstance(value, bool):
            raise ClassifierMalformedOutputError(f"'{key}' missing or not a boolean", raw_output=str(content))
        return value

    async def classify_news(self, item: RawNewsResult, city: str) -> NewsClassification:
        response = await self.ai.generate_json("news_classification", {
            "city": city,
            "title": item.title,
            "snippet": item.snippet or "",
        })
        content = response.content
        result = NewsClassification(
            is_relevant=self._require_bool(content, "isRelevant"),
            is_appropriate=self._require_bool(content, "isAppropriate"),
            is_positive=self._require_bool(content, "isPositive"),
            title=truncate(content.get("title") or item.title, 80),
            summary=truncate(content.get("summary") or item.snippet or item.title, 150),
        )
        self.logger.debug(
            f"News '{item.title[:50]}': relevant={result.is_relevant} "
            f"appropriate={result.is_appropriate} positive={result.is_positive}"
        )
        return result

    async def classify_event_category(self, event: RawEventResult) -> str:
        response = await self.ai.generate_json("event_category", {
            "title": event.title,
            "snippet": event.snippet or "",
        })
        category = str(response.content.get("category", "")).strip().title()
        confidence = response.content.get("confidence", 1.0)
        if category not in EVENT_CATEGORIES:
            return "Other"
        if isinstance(confidence, (int, float)) and confidence < MIN_CATEGORY_CONFIDENCE:
            return "Other"
        return category

    async def summarize_sports(self, item: RawNewsResult, city: str) -> SportsSummary:
        response = await self.ai.generate_json("sports_summary", {
            "city": city,
            "title": item.title,
            "snippet": item.snippet or "",
        })
        title = response.content.get("title")
        summary = response.content.get("summary")
        if not isinstance(title, str) or not title.strip():
            raise ClassifierMalformedOutputError("sports summary missing 'title'", raw_output=str(response.content))
        return SportsSummary(
            title=truncate(title, 80),
            summary=truncate(summary if isinstance(summary, str) else (item.snippet or ""), 200),
        )

    async def extract_match(self, item: RawNewsResult) -> MatchExtraction:
        response = await self.ai.generate_json("match_extraction", {
            "title": item.title,
            "snippet": item.snippet or "No summary",
        })
        content = response.content
        if not self._require_bool(content, "isMatch"):
            return MatchExtraction(is_match=False)

        def text(key: str) -> str:
            value = content.get(key)
            return value.strip() if isinstance(value, str) else ""

        return MatchExtraction(
            is_match=True,
            title=text("title") or item.title,
            teams=text("teams"),
            sport=text("sport"),
            venue=text("venue"),
            time=text("time"),
        )
