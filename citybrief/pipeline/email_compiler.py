import logging
from dataclasses import dataclass, field
from datetime import date, datetime
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import premailer
import pytz
from jinja2 import Environment, FileSystemLoader, TemplateError, select_autoescape

from citybrief.models.content import (
    EVENT_CATEGORIES,
    EventItem,
    NewsItem,
    SportsDigest,
    WeatherSnapshot,
)
from citybrief.pipeline.content_normalizer import format_display_date
from citybrief.utils.error_monitoring import CityBriefError


DEFAULT_TEMPLATE_DIR = Path(__file__).resolve().parent.parent / "templates"

SPORT_LABELS = {
    "basketball": "🏀 Basketball",
    "football": "🏈 Football",
    "soccer": "⚽ Soccer",
    "tennis": "🎾 Tennis",
    "baseball": "⚾ Baseball",
    "hockey": "🏒 Hockey",
    "volleyball": "🏐 Volleyball",
    "golf": "⛳ Golf",
    "rugby": "🏉 Rugby",
    "boxing": "🥊 Boxing",
    "mma": "🥋 MMA",
    "racing": "🏁 Racing",
    "other": "🏆 Other",
}


@dataclass
class NewsletterContent:
    """Everything the template needs for one city and day"""
    city: str
    date: date
    weather: Optional[WeatherSnapshot] = None
    brief: List[Dict[str, str]] = field(default_factory=list)
    news: List[NewsItem] = field(default_factory=list)
    events: List[EventItem] = field(default_factory=list)
    sports: SportsDigest = field(default_factory=SportsDigest)


@dataclass
class CompiledEmail:
    """Complete compiled email ready for sending"""
    subject: str
    html_content: str
    plain_text: str
    preview_text: str

    compile_time: datetime
    total_items: int

    is_valid: bool = False
    validation_errors: List[str] = field(default_factory=list)


class CompilationError(CityBriefError):
    """Custom exception for compilation failures"""
    pass


class EmailCompiler:
    """Renders the daily city newsletter into inlined HTML and plain text."""

    def __init__(self, template_dir: Optional[str] = None, display_timezone: str = "UTC") -> None:
        self.template_dir = str(template_dir or DEFAULT_TEMPLATE_DIR)

        try:
            self.env = Environment(
                loader=FileSystemLoader(self.template_dir),
                autoescape=select_autoescape(enabled_extensions=("html.j2",), default=False),
                trim_blocks=True,
                lstrip_blocks=True,
            )
        except Exception as e:  # noqa: BLE001
            raise CompilationError(f"Failed to initialize Jinja2 environment: {e}") from e

        self.env.filters["truncate_words"] = self._truncate_words_filter

        self.max_email_size_kb = 102  # Gmail clipping limit
        self.display_timezone = pytz.timezone(display_timezone)
        self.logger = logging.getLogger(__name__)

    @staticmethod
    def generate_subject_line(city: str, newsletter_date: date) -> str:
        return f"{city} Update — {format_display_date(newsletter_date)}"

    def compile_newsletter(self, content: NewsletterContent) -> CompiledEmail:
        compile_time = datetime.now(self.display_timezone)
        try:
            template_data = self._prepare_template_data(content)
            html_raw = self._render_template("newsletter.html.j2", template_data)
            html_inlined = self._inline_css(html_raw)
            plain_text = self._render_template("newsletter_plain.j2", template_data)
        except CompilationError:
            raise
        except Exception as e:  # noqa: BLE001
            self.logger.critical("Newsletter compilation failed for %s: %s", content.city, e, exc_info=True)
            raise CompilationError(f"Critical failure in email compilation: {e}") from e

        compiled = CompiledEmail(
            subject=template_data["subject"],
            html_content=html_inlined,
            plain_text=plain_text,
            preview_text=template_data["preview_text"],
            compile_time=compile_time,
            total_items=template_data["total_items"],
        )
        compiled.is_valid, compiled.validation_errors = self._validate_email(compiled)
        if not compiled.is_valid:
            self.logger.warning("Email validation errors for %s: %s", content.city, compiled.validation_errors)
        return compiled

    def _prepare_template_data(self, content: NewsletterContent) -> Dict[str, Any]:
        events_by_category: Dict[str, List[EventItem]] = {}
        for category in EVENT_CATEGORIES:
            matching = [e for e in content.events if e.category == category]
            if matching:
                events_by_category[category] = matching

        match_groups: List[Tuple[str, List[Any]]] = [
            (SPORT_LABELS.get(bucket, bucket.title()), matches)
            for bucket, matches in content.sports.upcoming_matches.items()
            if matches
        ]

        total_items = (
            len(content.news) + len(content.events) + len(content.sports.sports)
            + sum(len(m) for _, m in match_groups)
        )

        return {
            "subject": self.generate_subject_line(content.city, content.date),
            "preview_text": self._generate_preview_text(content),
            "city": content.city,
            "date": format_display_date(content.date),
            "weather": content.weather,
            "brief": content.brief,
            "news": content.news,
            "events_by_category": events_by_category,
            "sports_news": content.sports.sports,
            "match_groups": match_groups,
            "total_items": total_items,
        }

    def _generate_preview_text(self, content: NewsletterContent) -> str:
        """Inbox preview line. 150 chars max."""
        if content.weather:
            text = f"{content.weather.condition}, high {content.weather.high}°F"
            if content.brief:
                text += f" · {content.brief[0]['title']}"
            return text[:150]
        if content.brief:
            return content.brief[0]["title"][:150]
        return f"Your daily {content.city} update."[:150]

    def _render_template(self, name: str, template_data: Dict[str, Any]) -> str:
        try:
            template = self.env.get_template(name)
            return template.render(template_data)
        except TemplateError as e:  # noqa: BLE001
            self.logger.error("Template %s rendering failed: %s", name, e, exc_info=True)
            raise CompilationError(f"Template error in {name}: {e}") from e

    def _inline_css(self, html: str) -> str:
        """Inline CSS for email client compatibility."""
        try:
            return premailer.transform(
                html,
                keep_style_tags=True,
                strip_important=False,
                cssutils_logging_level=logging.ERROR,
            )
        except Exception as e:  # noqa: BLE001
            self.logger.error("CSS inlining failed: %s", e, exc_info=True)
            raise CompilationError(f"CSS inlining error: {e}") from e

    def _validate_email(self, compiled: CompiledEmail) -> Tuple[bool, List[str]]:
        errors: List[str] = []
        if not compiled.subject:
            errors.append("Missing subject line.")
        if not compiled.html_content:
            errors.append("Empty HTML content.")
        if not compiled.plain_text:
            errors.append("Empty plain text content.")
        size_kb = len(compiled.html_content.encode("utf-8")) / 1024
        if size_kb > self.max_email_size_kb:
            errors.append(f"Email size ({size_kb:.1f}KB) exceeds limit of {self.max_email_size_kb}KB.")
        return (len(errors) == 0), errors

    def _truncate_words_filter(self, text: Optional[str], count: int = 30) -> str:
        words = (text or "").split()
        if len(words) <= count:
            return " ".join(words)
        return " ".join(words[:count]) + "…"
