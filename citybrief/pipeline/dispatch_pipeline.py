import asyncio
import logging
import time
from collections import OrderedDict
from datetime import date, datetime, time as dt_time
from typing import Any, Dict, List, Optional
from zoneinfo import ZoneInfo

from citybrief.models.content import (
    CacheEntry,
    DataType,
    DispatchResult,
    EventItem,
    SportsDigest,
    WeatherSnapshot,
    normalize_city_name,
)
from citybrief.pipeline.content_aggregator import ContentAggregator
from citybrief.pipeline.content_normalizer import filter_news_for_dispatch
from citybrief.pipeline.email_compiler import CompiledEmail, EmailCompiler, NewsletterContent
from citybrief.services.broadcast_service import BroadcastService
from citybrief.services.cache_service import CacheService
from citybrief.services.email_service import EmailService
from citybrief.services.notification_service import (
    NotificationDetails,
    NotificationService,
    NotificationStatus,
    NotificationType,
)
from citybrief.services.registry_service import RegistryService
from citybrief.utils.error_monitoring import ErrorHandler, InsufficientCacheError


QUORUM_CATEGORIES = ("weather", "brief", "events", "sports")


def _weather_present(payload: Any) -> bool:
    if not isinstance(payload, dict):
        return False
    if payload.get("high") is not None and payload.get("condition"):
        return True
    current = payload.get("current") or {}
    return bool((current.get("main") or {}).get("temp") is not None or current.get("weather"))


def _sports_present(payload: Any) -> bool:
    if not isinstance(payload, dict):
        return False
    if payload.get("sports"):
        return True
    return any(matches for matches in (payload.get("upcoming_matches") or {}).values())


def missing_categories(entries: Dict[DataType, CacheEntry]) -> List[str]:
    """Quorum categories with no usable cached content."""
    def payload(data_type: DataType) -> Any:
        entry = entries.get(data_type)
        return entry.payload if entry else None

    brief = payload(DataType.BRIEF)
    checks = {
        "weather": _weather_present(payload(DataType.WEATHER)),
        "brief": bool(isinstance(brief, dict) and brief.get("brief")),
        "events": bool(isinstance(payload(DataType.EVENTS), list) and payload(DataType.EVENTS)),
        "sports": _sports_present(payload(DataType.SPORTS)),
    }
    return [name for name in QUORUM_CATEGORIES if not checks[name]]


class DispatchPipeline:
    """
    Reads the day's cache, renders the newsletter and delivers it.

    A city whose cache misses more quorum categories than
    ``max_missing_categories`` gets exactly one repair collection before
    delivery is abandoned for that city.
    """

    def __init__(
        self,
        cache_service: CacheService,
        aggregator: ContentAggregator,
        compiler: EmailCompiler,
        email_service: EmailService,
        registry: RegistryService,
        broadcast_service: Optional[BroadcastService] = None,
        notifier: Optional[NotificationService] = None,
        error_handler: Optional[ErrorHandler] = None,
        max_missing_categories: int = 1,
        batch_size: int = 10,
        batch_delay: float = 0.5,
        broadcast_delay: float = 2.0,
        broadcast_send_time: str = "15:00",
        timezone: str = "UTC",
    ) -> None:
        self.cache_service = cache_service
        self.aggregator = aggregator
        self.compiler = compiler
        self.email_service = email_service
        self.registry = registry
        self.broadcast_service = broadcast_service
        self.notifier = notifier or NotificationService()
        self.error_handler = error_handler or aggregator.error_handler

        self.max_missing_categories = max_missing_categories
        self.batch_size = max(1, batch_size)
        self.batch_delay = batch_delay
        self.broadcast_delay = broadcast_delay
        hour, minute = (int(part) for part in broadcast_send_time.split(":"))
        self.broadcast_send_time = dt_time(hour, minute)
        self.timezone = ZoneInfo(timezone)

        self._sending = False
        self._broadcasting = False
        self.logger = logging.getLogger(__name__)

    @property
    def is_running(self) -> bool:
        return self._sending

    @property
    def is_broadcasting(self) -> bool:
        return self._broadcasting

    def is_sufficient(self, entries: Dict[DataType, CacheEntry]) -> bool:
        return len(missing_categories(entries)) <= self.max_missing_categories

    async def load_validated_entries(self, city: str, target_date: date) -> Optional[Dict[DataType, CacheEntry]]:
        """
        Load the day's cache for a city, repairing it once if it fails the quorum.

        Returns None when the cache is still insufficient after the repair.
        """
        entries = await self.cache_service.get_city_entries(city, target_date)
        missing = missing_categories(entries)
        if len(missing) <= self.max_missing_categories:
            return entries

        self.logger.warning(f"🔧 Cache for {city} missing {missing}; running one repair collection")
        try:
            await self.aggregator.collect_and_cache(city, target_date)
        except Exception as e:
            self.error_handler.handle_error(e, service="dispatch_pipeline", operation="repair_collection",
                                            context={"city": city})

        entries = await self.cache_service.get_city_entries(city, target_date)
        missing = missing_categories(entries)
        if len(missing) <= self.max_missing_categories:
            return entries

        self.error_handler.handle_error(
            InsufficientCacheError(city, missing), service="dispatch_pipeline", operation="validate_cache",
            context={"city": city, "date": target_date.isoformat()},
        )
        return None

    def build_content(self, city: str, target_date: date, entries: Dict[DataType, CacheEntry]) -> NewsletterContent:
        def payload(data_type: DataType, default: Any) -> Any:
            entry = entries.get(data_type)
            return entry.payload if entry and entry.payload is not None else default

        weather_payload = payload(DataType.WEATHER, None)
        brief_payload = payload(DataType.BRIEF, {})
        return NewsletterContent(
            city=city,
            date=target_date,
            weather=WeatherSnapshot.from_dict(weather_payload) if _weather_present(weather_payload) else None,
            brief=brief_payload.get("brief", []) if isinstance(brief_payload, dict) else [],
            news=filter_news_for_dispatch(payload(DataType.NEWS, [])),
            events=[EventItem.from_dict(e) for e in payload(DataType.EVENTS, [])],
            sports=SportsDigest.from_dict(payload(DataType.SPORTS, {})),
        )

    async def _send_one(self, recipient: str, compiled: CompiledEmail) -> bool:
        return await self.email_service.send_email(
            recipient, compiled.subject, compiled.html_content, compiled.plain_text
        )

    async def send_for_city(
        self,
        city: str,
        recipients: Optional[List[str]] = None,
        target_date: Optional[date] = None,
    ) -> DispatchResult:
        city = normalize_city_name(city)
        target_date = target_date or self.aggregator.today()
        result = DispatchResult()

        if recipients is None:
            recipients = [s.email for s in await self.registry.list_subscribers(city)]
        if not recipients:
            self.logger.info(f"No recipients for {city}; nothing to send")
            return result

        entries = await self.load_validated_entries(city, target_date)
        if entries is None:
            result.failed = len(recipients)
            result.errors.append(f"{city}: insufficient cached data after repair")
            return result

        try:
            compiled = self.compiler.compile_newsletter(self.build_content(city, target_date, entries))
        except Exception as e:
            self.error_handler.handle_error(e, service="dispatch_pipeline", operation="compile",
                                            context={"city": city})
            result.failed = len(recipients)
            result.errors.append(f"{city}: compilation failed: {e}")
            return result

        for start in range(0, len(recipients), self.batch_size):
            batch = recipients[start:start + self.batch_size]
            outcomes = await asyncio.gather(
                *(self._send_one(recipient, compiled) for recipient in batch),
                return_exceptions=True,
            )
            for recipient, outcome in zip(batch, outcomes):
                if outcome is True:
                    result.sent += 1
                else:
                    result.failed += 1
                    reason = outcome if isinstance(outcome, Exception) else "send returned False"
                    result.errors.append(f"{city} {recipient}: {reason}")

            if start + self.batch_size < len(recipients) and self.batch_delay > 0:
                await asyncio.sleep(self.batch_delay)

        self.logger.info(f"📧 {city}: {result.sent} sent, {result.failed} failed")
        return result

    async def send_daily_emails(self, target_date: Optional[date] = None) -> Optional[DispatchResult]:
        """Send the day's newsletter to every subscriber, grouped by city. Single-flight."""
        if self._sending:
            self.logger.info("⏳ Email sending already running, skipping")
            return None

        self._sending = True
        started = time.monotonic()
        try:
            target_date = target_date or self.aggregator.today()
            subscribers = await self.registry.list_subscribers()

            by_city: "OrderedDict[str, List[str]]" = OrderedDict()
            for subscriber in subscribers:
                by_city.setdefault(normalize_city_name(subscriber.city), []).append(subscriber.email)

            total = DispatchResult()
            if not by_city:
                self.logger.info("No subscribers found; nothing to send")
                return total

            await self.notifier.notify(
                NotificationType.EMAIL_SENDING, NotificationStatus.STARTED,
                NotificationDetails(total_users=len(subscribers), total_cities=len(by_city)),
            )

            for city, emails in by_city.items():
                try:
                    total.merge(await self.send_for_city(city, emails, target_date))
                except Exception as e:
                    self.error_handler.handle_error(e, service="dispatch_pipeline", operation="send_for_city",
                                                    context={"city": city})
                    total.failed += len(emails)
                    total.errors.append(f"{city}: {e}")

            duration = time.monotonic() - started
            await self.notifier.notify(
                NotificationType.EMAIL_SENDING, NotificationStatus.COMPLETED,
                NotificationDetails(
                    emails_sent=total.sent,
                    emails_failed=total.failed,
                    duration=f"{duration:.2f}s",
                    errors=total.errors[:5],
                ),
            )
            self.logger.info(f"✅ Daily email sending completed: {total.sent} sent, {total.failed} failed ({duration:.2f}s)")
            return total
        finally:
            self._sending = False

    def _broadcast_time(self, target_date: date) -> Optional[datetime]:
        scheduled = datetime.combine(target_date, self.broadcast_send_time, tzinfo=self.timezone)
        if scheduled <= datetime.now(self.timezone):
            return None
        return scheduled

    async def publish_broadcasts(self, target_date: Optional[date] = None) -> Optional[DispatchResult]:
        """Create one scheduled Beehiiv post per active city from its cached content. Single-flight."""
        if self._broadcasting:
            self.logger.info("⏳ Broadcast scheduling already running, skipping")
            return None
        if self.broadcast_service is None or not self.broadcast_service.enabled:
            self.logger.warning("Broadcast provider not configured; skipping broadcasts")
            return DispatchResult()

        self._broadcasting = True
        started = time.monotonic()
        try:
            target_date = target_date or self.aggregator.today()
            cities = await self.registry.list_active_cities()
            result = DispatchResult()
            scheduled_at = self._broadcast_time(target_date)

            for index, city in enumerate(cities):
                name = city.display_name
                try:
                    entries = await self.cache_service.get_city_entries(name, target_date)
                    if not entries:
                        self.logger.warning(f"⚠️ No cached data for {name}; skipping broadcast")
                        result.skipped += 1
                        continue

                    compiled = self.compiler.compile_newsletter(self.build_content(name, target_date, entries))
                    await self.broadcast_service.create_post(
                        title=compiled.subject,
                        html=compiled.html_content,
                        segment_ids=[city.publication_id] if city.publication_id else None,
                        scheduled_at=scheduled_at,
                        email_subject=compiled.subject,
                    )
                    result.sent += 1
                except Exception as e:
                    self.error_handler.handle_error(e, service="dispatch_pipeline", operation="publish_broadcast",
                                                    context={"city": name})
                    result.failed += 1
                    result.errors.append(f"{name}: {e}")

                if index < len(cities) - 1 and self.broadcast_delay > 0:
                    await asyncio.sleep(self.broadcast_delay)

            await self.notifier.notify(
                NotificationType.BROADCAST, NotificationStatus.COMPLETED,
                NotificationDetails(
                    successful=result.sent,
                    failed=result.failed,
                    duration=f"{time.monotonic() - started:.2f}s",
                    errors=result.errors[:5],
                ),
            )
            return result
        finally:
            self._broadcasting = False
