#!/usr/bin/env python3
import os
import sys
import asyncio
import logging
import signal
from typing import Dict, Any, Optional
from dataclasses import dataclass
from datetime import date
from pathlib import Path

# Load environment variables from .env file
from dotenv import load_dotenv
load_dotenv()

from citybrief.models.content import DataType, normalize_city_name
from citybrief.services.ai_service import AIService
from citybrief.services.broadcast_service import BroadcastService
from citybrief.services.cache_service import CacheService
from citybrief.services.classification_service import ContentClassifier, LLMClassifier, RuleBasedClassifier
from citybrief.services.email_service import EmailConfig, EmailService
from citybrief.services.notification_service import NotificationService
from citybrief.services.registry_service import RegistryService, SubscriptionError
from citybrief.services.upstream_service import UpstreamService
from citybrief.pipeline.content_aggregator import ContentAggregator
from citybrief.pipeline.content_normalizer import ContentNormalizer
from citybrief.pipeline.dispatch_pipeline import DispatchPipeline
from citybrief.pipeline.email_compiler import EmailCompiler
from citybrief.pipeline.fleet_collector import FleetCollector
from citybrief.pipeline.scheduler import DailyScheduler, parse_time_of_day
from citybrief.utils.error_monitoring import ConfigurationError, ErrorHandler
from citybrief.utils.logging_config import setup_logging


@dataclass
class AppConfig:
    """Application configuration"""
    # API Keys
    serpapi_key: str
    openweather_key: str
    eventbrite_key: Optional[str] = None
    gemini_api_key: Optional[str] = None
    gemini_model: Optional[str] = None
    beehiiv_api_key: Optional[str] = None
    beehiiv_publication_id: Optional[str] = None

    # Email settings
    smtp_host: str = "smtp.gmail.com"
    smtp_port: int = 587
    smtp_user: str = ""
    smtp_password: str = ""
    from_email: str = ""
    admin_email: Optional[str] = None

    # Timing (HH:MM in `timezone`)
    timezone: str = "UTC"
    collection_time: str = "06:00"
    dispatch_time: str = "07:00"
    broadcast_time: str = "06:30"
    broadcast_send_time: str = "15:00"

    # Dispatch tuning
    max_missing_categories: int = 1
    dispatch_batch_size: int = 10
    dispatch_batch_delay: float = 0.5
    search_throttle_seconds: float = 1.5

    # Paths
    database_path: str = "data/citybrief.db"
    log_dir: str = "logs"
    log_level: str = "INFO"
    log_json: bool = False

    # Features
    dry_run: bool = False

    @classmethod
    def from_env(cls, dry_run: Optional[bool] = None) -> "AppConfig":
        return cls(
            serpapi_key=os.getenv("SERPAPI_KEY", ""),
            openweather_key=os.getenv("OPENWEATHERMAP_KEY", ""),
            eventbrite_key=os.getenv("EVENTBRITE_API_KEY") or None,
            gemini_api_key=os.getenv("GEMINI_API_KEY") or None,
            gemini_model=os.getenv("GEMINI_MODEL") or None,
            beehiiv_api_key=os.getenv("BEEHIIV_API_KEY") or None,
            beehiiv_publication_id=os.getenv("BEEHIIV_PUBLICATION_ID") or None,
            smtp_host=os.getenv("SMTP_HOST", "smtp.gmail.com"),
            smtp_port=int(os.getenv("SMTP_PORT", "587")),
            smtp_user=os.getenv("SMTP_USER", ""),
            smtp_password=os.getenv("SMTP_PASSWORD", ""),
            from_email=os.getenv("FROM_EMAIL", "") or os.getenv("SMTP_USER", ""),
            admin_email=os.getenv("ADMIN_EMAIL") or None,
            timezone=os.getenv("TIMEZONE", "UTC"),
            collection_time=os.getenv("COLLECTION_TIME", "06:00"),
            dispatch_time=os.getenv("DISPATCH_TIME", "07:00"),
            broadcast_time=os.getenv("BROADCAST_TIME", "06:30"),
            broadcast_send_time=os.getenv("BROADCAST_SEND_TIME", "15:00"),
            max_missing_categories=int(os.getenv("MAX_MISSING_CATEGORIES", "1")),
            dispatch_batch_size=int(os.getenv("DISPATCH_BATCH_SIZE", "10")),
            dispatch_batch_delay=float(os.getenv("DISPATCH_BATCH_DELAY", "0.5")),
            search_throttle_seconds=float(os.getenv("SEARCH_THROTTLE_SECONDS", "1.5")),
            database_path=os.getenv("DATABASE_PATH", "data/citybrief.db"),
            log_dir=os.getenv("LOG_DIR", "logs"),
            log_level=os.getenv("LOG_LEVEL", "INFO"),
            log_json=os.getenv("LOG_JSON", "false").lower() == "true",
            dry_run=dry_run if dry_run is not None else os.getenv("DRY_RUN", "false").lower() == "true",
        )


class CityBriefApp:
    """
    Wires the services together and exposes the operator entry points.
    """

    def __init__(self, config: Optional[AppConfig] = None):
        self.config = config or AppConfig.from_env()
        self.services: Dict[str, Any] = {}
        self.scheduler: Optional[DailyScheduler] = None
        self.logger = logging.getLogger(__name__)

    def _validate_config(self) -> None:
        cfg = self.config
        if not cfg.serpapi_key:
            raise ConfigurationError("Missing SERPAPI_KEY")
        if not cfg.openweather_key:
            raise ConfigurationError("Missing OPENWEATHERMAP_KEY")
        if not cfg.dry_run and (not cfg.smtp_user or not cfg.smtp_password):
            raise ConfigurationError("Missing SMTP credentials (SMTP_USER / SMTP_PASSWORD)")

    def _build_classifier(self) -> ContentClassifier:
        if self.config.gemini_api_key:
            ai = AIService(api_key=self.config.gemini_api_key, model=self.config.gemini_model)
            self.services["ai"] = ai
            return LLMClassifier(ai)
        self.logger.warning("GEMINI_API_KEY not set; using keyword rules for classification")
        return RuleBasedClassifier()

    async def initialize_services(self) -> Dict[str, Any]:
        """
        Initialize all required services.
        """
        self._validate_config()
        cfg = self.config

        Path(cfg.database_path).parent.mkdir(parents=True, exist_ok=True)
        cache = CacheService(db_path=cfg.database_path)
        await cache.initialize_db()
        registry = RegistryService(db_path=cfg.database_path)
        await registry.initialize_db()

        upstream = UpstreamService(
            serpapi_key=cfg.serpapi_key,
            openweather_key=cfg.openweather_key,
            eventbrite_key=cfg.eventbrite_key,
            throttle_seconds=cfg.search_throttle_seconds,
        )
        email_cfg = EmailConfig(
            smtp_host=cfg.smtp_host,
            smtp_port=cfg.smtp_port,
            smtp_user=cfg.smtp_user,
            smtp_password=cfg.smtp_password,
            from_email=cfg.from_email,
            admin_email=cfg.admin_email,
        )
        email = EmailService(email_cfg, dry_run=cfg.dry_run)
        notifier = NotificationService(email)
        broadcast = BroadcastService(cfg.beehiiv_api_key, cfg.beehiiv_publication_id)
        error_handler = ErrorHandler()

        normalizer = ContentNormalizer(self._build_classifier())
        aggregator = ContentAggregator(upstream, normalizer, cache, error_handler=error_handler, timezone=cfg.timezone)
        collector = FleetCollector(aggregator, registry, notifier=notifier, error_handler=error_handler)
        compiler = EmailCompiler(display_timezone=cfg.timezone)
        dispatcher = DispatchPipeline(
            cache,
            aggregator,
            compiler,
            email,
            registry,
            broadcast_service=broadcast,
            notifier=notifier,
            error_handler=error_handler,
            max_missing_categories=cfg.max_missing_categories,
            batch_size=cfg.dispatch_batch_size,
            batch_delay=cfg.dispatch_batch_delay,
            broadcast_send_time=cfg.broadcast_send_time,
            timezone=cfg.timezone,
        )

        self.services.update({
            'cache': cache,
            'registry': registry,
            'upstream': upstream,
            'email': email,
            'notifier': notifier,
            'broadcast': broadcast,
            'error_handler': error_handler,
            'aggregator': aggregator,
            'collector': collector,
            'compiler': compiler,
            'dispatcher': dispatcher,
        })
        return self.services

    async def close(self) -> None:
        for key in ('upstream', 'broadcast'):
            service = self.services.get(key)
            if service is not None:
                await service.close_session()

    def build_scheduler(self) -> DailyScheduler:
        cfg = self.config
        collector: FleetCollector = self.services['collector']
        dispatcher: DispatchPipeline = self.services['dispatcher']

        scheduler = DailyScheduler(timezone=cfg.timezone, on_failure=self._handle_failure)
        scheduler.add_job("collection", parse_time_of_day(cfg.collection_time), collector.run_daily_collection)
        scheduler.add_job("dispatch", parse_time_of_day(cfg.dispatch_time), dispatcher.send_daily_emails)
        if self.services['broadcast'].enabled:
            scheduler.add_job("broadcast", parse_time_of_day(cfg.broadcast_time), dispatcher.publish_broadcasts)
        self.scheduler = scheduler
        return scheduler

    async def _handle_failure(self, job_name: str, error: Exception) -> None:
        email: EmailService = self.services['email']
        await email.send_error_alert(f"Scheduled job '{job_name}' failed: {type(error).__name__}: {error}")

    def _handle_shutdown(self, signum, frame) -> None:
        self.logger.info(f"Received signal {signum}, shutting down")
        if self.scheduler is not None:
            self.scheduler.shutdown()

    async def run_scheduler(self) -> None:
        scheduler = self.build_scheduler()
        try:
            signal.signal(signal.SIGINT, self._handle_shutdown)
            signal.signal(signal.SIGTERM, self._handle_shutdown)
        except ValueError:
            # Not on the main thread
            pass
        self.logger.info(f"🗓️ Scheduler starting with jobs: {', '.join(scheduler.jobs)} ({self.config.timezone})")
        await scheduler.run_forever()

    async def health_check(self) -> Dict[str, bool]:
        health: Dict[str, bool] = {}
        upstream: UpstreamService = self.services['upstream']
        health.update(await upstream.health_check())

        try:
            await self.services['cache'].get_cache_statistics()
            health['cache'] = True
        except Exception:
            health['cache'] = False

        health['smtp'] = await self.services['email'].test_connection()
        ai: Optional[AIService] = self.services.get('ai')
        health['gemini'] = await ai.test_connection() if ai else False
        health['beehiiv'] = self.services['broadcast'].enabled
        return health

    async def status(self) -> Dict[str, Any]:
        cache: CacheService = self.services['cache']
        registry: RegistryService = self.services['registry']
        error_handler: ErrorHandler = self.services['error_handler']
        stats = await cache.get_cache_statistics()
        return {
            'timezone': self.config.timezone,
            'schedule': {
                'collection': self.config.collection_time,
                'dispatch': self.config.dispatch_time,
                'broadcast': self.config.broadcast_time if self.services['broadcast'].enabled else None,
            },
            'active_cities': [c.display_name for c in await registry.list_active_cities()],
            'subscribers': len(await registry.list_subscribers()),
            'cache_entries': stats['total_entries'],
            'collection_running': self.services['collector'].is_running,
            'dispatch_running': self.services['dispatcher'].is_running,
            'errors': error_handler.get_error_summary(),
            'dry_run': self.config.dry_run,
        }


async def handle_cache_management(args, cache_service: CacheService) -> None:
    """Handle cache management commands"""
    if args.cache_stats:
        print("📊 Cache Statistics")
        print("=" * 50)
        stats = await cache_service.get_cache_statistics()

        print(f"Total entries in cache: {stats['total_entries']}")

        if stats['total_entries'] > 0:
            if stats.get('date_range'):
                print(f"\nDate range:")
                print(f"  Oldest: {stats['date_range']['oldest']}")
                print(f"  Newest: {stats['date_range']['newest']}")

            print(f"\nEntries by type:")
            for data_type, count in stats['entries_by_type'].items():
                print(f"  {data_type}: {count}")

            print(f"\nEntries by city:")
            for city, count in stats['entries_by_city'].items():
                print(f"  {city}: {count}")

        print(f"\nStorage info:")
        print(f"  Database size: {stats['storage_info']['db_size_mb']} MB")

    if args.clear_cache:
        city = normalize_city_name(args.city) if args.city else None
        data_type = DataType(args.type) if args.type else None
        if city is None and data_type is None:
            print("🗑️  WARNING: This will clear ALL cache data!")
            response = input("Are you sure? Type 'yes' to confirm: ")
            if response.lower() != 'yes':
                print("❌ Cache clear cancelled")
                return
        removed = await cache_service.clear_cache(city=city, data_type=data_type)
        scope = " / ".join(part for part in (city, data_type.value if data_type else None) if part) or "all"
        print(f"✅ Cleared {removed} cache entries ({scope})")

    if args.cleanup is not None:
        removed = await cache_service.cleanup(days=args.cleanup)
        print(f"🧹 Removed {removed} cache entries older than {args.cleanup} days")


async def handle_registry_management(args, registry: RegistryService) -> None:
    """Handle city and subscriber administration commands"""
    if args.add_city:
        city = await registry.upsert_city(args.add_city, publication_id=args.publication_id)
        print(f"✅ City registered: {city.display_name} ({city.slug})")

    if args.show_city:
        city = await registry.get_city(args.show_city)
        if city is None:
            print(f"❌ No city registered as '{args.show_city}'")
        else:
            state = "active" if city.is_active else "inactive"
            print(f"{city.display_name} ({city.slug}): {state}, publication {city.publication_id or '-'}")

    if args.subscribe:
        subscriber = await registry.add_subscriber(args.subscribe, args.city)
        print(f"✅ Subscribed {subscriber.email} to {subscriber.city}")

    if args.list_subscribers:
        subscribers = await registry.list_subscribers(args.city)
        print(f"👥 {len(subscribers)} subscribers")
        for subscriber in subscribers:
            print(f"  [{subscriber.id}] {subscriber.email} ({subscriber.city})")

    if args.unsubscribe is not None:
        if await registry.delete_subscriber(args.unsubscribe):
            print(f"✅ Removed subscriber {args.unsubscribe}")
        else:
            print(f"❌ No subscriber with id {args.unsubscribe}")

    if args.delete_subscribers:
        if args.city:
            removed = await registry.delete_subscribers_for_city(args.city)
            print(f"✅ Removed {removed} subscribers for {normalize_city_name(args.city)}")
        else:
            print("🗑️  WARNING: This will delete ALL subscribers!")
            response = input("Are you sure? Type 'yes' to confirm: ")
            if response.lower() != 'yes':
                print("❌ Subscriber deletion cancelled")
                return
            removed = await registry.delete_all_subscribers()
            print(f"✅ Removed {removed} subscribers")


async def main():
    """Main entry point"""
    import argparse
    parser = argparse.ArgumentParser(description="CityBrief daily city newsletter pipeline")
    parser.add_argument('--collect', action='store_true', help='Run data collection now')
    parser.add_argument('--send', action='store_true', help='Send the daily newsletter now')
    parser.add_argument('--broadcast', action='store_true', help='Schedule Beehiiv broadcasts now')
    parser.add_argument('--city', help='Limit --collect, --send or --clear-cache to one city')
    parser.add_argument('--date', help='Target date (YYYY-MM-DD), defaults to today')
    parser.add_argument('--dry-run', action='store_true', help='Log emails instead of sending them')
    parser.add_argument('--health', action='store_true', help='Health check only')
    parser.add_argument('--status', action='store_true', help='Show pipeline status')

    # Registry commands
    parser.add_argument('--add-city', metavar='NAME', help='Register or reactivate a city')
    parser.add_argument('--publication-id', help='Beehiiv segment id for --add-city')
    parser.add_argument('--show-city', metavar='SLUG', help='Show one registered city')
    parser.add_argument('--subscribe', metavar='EMAIL', help='Subscribe an email to --city')
    parser.add_argument('--list-subscribers', action='store_true', help='List subscribers (optionally by --city)')
    parser.add_argument('--unsubscribe', metavar='ID', type=int, help='Delete one subscriber by id')
    parser.add_argument('--delete-subscribers', action='store_true',
                        help='Delete subscribers for --city, or all subscribers')

    # Cache management commands
    parser.add_argument('--clear-cache', action='store_true', help='Clear cache data (optionally by --city/--type)')
    parser.add_argument('--type', choices=[t.value for t in DataType], help='Data type for --clear-cache')
    parser.add_argument('--cache-stats', action='store_true', help='Show cache statistics')
    parser.add_argument('--cleanup', metavar='DAYS', type=int, help='Remove cache entries older than DAYS days')
    args = parser.parse_args()

    config = AppConfig.from_env(dry_run=True if args.dry_run else None)
    setup_logging(log_level=config.log_level, log_dir=config.log_dir, structured=config.log_json)
    app = CityBriefApp(config)
    target_date = date.fromisoformat(args.date) if args.date else None

    try:
        # Cache and registry management never need API keys
        if args.clear_cache or args.cache_stats or args.cleanup is not None:
            Path(config.database_path).parent.mkdir(parents=True, exist_ok=True)
            cache_service = CacheService(config.database_path)
            await cache_service.initialize_db()
            await handle_cache_management(args, cache_service)
            return

        if (args.add_city or args.show_city or args.subscribe or args.list_subscribers
                or args.unsubscribe is not None or args.delete_subscribers):
            if args.subscribe and not args.city:
                parser.error("--subscribe requires --city")
            Path(config.database_path).parent.mkdir(parents=True, exist_ok=True)
            registry = RegistryService(db_path=config.database_path)
            await registry.initialize_db()
            await handle_registry_management(args, registry)
            return

        services = await app.initialize_services()

        if args.health:
            health = await app.health_check()
            print("Service Health Status:")
            for service, status in health.items():
                print(f"  {service}: {'✅' if status else '❌'}")
        elif args.status:
            status = await app.status()
            print("Pipeline Status:")
            for key, value in status.items():
                print(f"  {key}: {value}")
        elif args.collect:
            collector: FleetCollector = services['collector']
            if args.city:
                result = await collector.collect_city(args.city, target_date)
                print(f"✅ {result.city}: fetched {', '.join(result.fetched) or '-'}; cached {', '.join(result.cached) or '-'}")
                for data_type, error in result.errors.items():
                    print(f"  ⚠️ {data_type}: {error}")
            else:
                summary = await collector.run_daily_collection(target_date)
                if summary is None:
                    print("⏳ Collection already running")
                else:
                    print(f"✅ Collection: {summary.successful} succeeded, {summary.failed} failed, "
                          f"{summary.skipped} fully cached")
                    if summary.failed:
                        sys.exit(1)
        elif args.send:
            dispatcher: DispatchPipeline = services['dispatcher']
            if args.city:
                result = await dispatcher.send_for_city(args.city, target_date=target_date)
            else:
                result = await dispatcher.send_daily_emails(target_date)
            if result is None:
                print("⏳ Sending already running")
            else:
                print(f"📧 {result.sent} sent, {result.failed} failed")
                for error in result.errors[:10]:
                    print(f"  ⚠️ {error}")
                if result.failed:
                    sys.exit(1)
        elif args.broadcast:
            result = await services['dispatcher'].publish_broadcasts(target_date)
            if result is None:
                print("⏳ Broadcast scheduling already running")
            else:
                print(f"📣 {result.sent} scheduled, {result.failed} failed, {result.skipped} skipped")
        else:
            print("Starting daily scheduler...")
            await app.run_scheduler()
    except KeyboardInterrupt:
        print("\n⚠️ Shutting down gracefully...")
    except ConfigurationError as e:
        print(f"❌ Configuration error: {e}")
        sys.exit(2)
    except SubscriptionError as e:
        print(f"❌ {e}")
        sys.exit(2)
    except Exception as e:  # noqa: BLE001
        print(f"❌ Fatal error: {e}")
        logging.exception("Fatal error in main")
        sys.exit(1)
    finally:
        await app.close()


def run() -> None:
    asyncio.run(main())


if __name__ == "__main__":
    run()
