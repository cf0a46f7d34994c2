"""
Upstream gateway for the third-party content providers.

Wraps SerpApi (news, events, sports search), OpenWeatherMap (current
conditions and 5-day forecast) and Eventbrite (secondary events source)
behind one retrying aiohttp client. Nothing is cached at this layer.
"""

import asyncio
import logging
import ssl
from typing import Any, Dict, Optional

import aiohttp
import certifi

from citybrief.utils.error_monitoring import (
    ConfigurationError,
    PayloadDecodeError,
    UpstreamRejectionError,
    UpstreamTransientError,
)

logger = logging.getLogger(__name__)


class UpstreamService:
    """
    Retrying HTTP client for every content provider.

    Retry policy:
    - Timeouts, connection errors and 5xx responses are transient and retried
      up to ``max_retries`` times with a fixed ``retry_delay``.
    - 4xx responses are rejections and raised immediately.
    - Every search call first awaits the shared search throttle.
    """

    SERPAPI_URL = "https://serpapi.com/search"
    OPENWEATHER_URL = "https://api.openweathermap.org/data/2.5"
    EVENTBRITE_URL = "https://www.eventbriteapi.com/v3"

    def __init__(
        self,
        serpapi_key: Optional[str] = None,
        openweather_key: Optional[str] = None,
        eventbrite_key: Optional[str] = None,
        timeout_seconds: float = 10.0,
        max_retries: int = 2,
        retry_delay: float = 1.0,
        throttle_seconds: float = 1.5,
    ):
        self.serpapi_key = serpapi_key
        self.openweather_key = openweather_key
        self.eventbrite_key = eventbrite_key

        self.timeout = aiohttp.ClientTimeout(total=timeout_seconds)
        self.max_retries = max_retries
        self.retry_delay = retry_delay
        self.throttle_seconds = throttle_seconds

        self.session: Optional[aiohttp.ClientSession] = None
        self._throttle_lock = asyncio.Lock()
        self.logger = logger

    async def _get_session(self) -> aiohttp.ClientSession:
        """Get or create aiohttp ClientSession with proper SSL configuration."""
        if self.session is None or self.session.closed:
            ssl_context = ssl.create_default_context(cafile=certifi.where())
            connector = aiohttp.TCPConnector(ssl=ssl_context)
            self.session = aiohttp.ClientSession(timeout=self.timeout, connector=connector)
        return self.session

    async def close_session(self):
        if self.session and not self.session.closed:
            await self.session.close()
            self.session = None

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close_session()
        return False

    async def search_throttle(self) -> None:
        """Serialise search calls with a fixed gap between them, across all cities."""
        async with self._throttle_lock:
            if self.throttle_seconds > 0:
                await asyncio.sleep(self.throttle_seconds)

    async def _request_json(
        self,
        service: str,
        url: str,
        params: Optional[Dict[str, Any]] = None,
        headers: Optional[Dict[str, str]] = None,
    ) -> Any:
        session = await self._get_session()
        attempts = self.max_retries + 1
        last_error: Optional[BaseException] = None

        for attempt in range(1, attempts + 1):
            try:
                async with session.get(url, params=params, headers=headers) as response:
                    if 400 <= response.status < 500:
                        body = await response.text()
                        raise UpstreamRejectionError(
                            f"{service} rejected request with HTTP {response.status}: {body[:200]}",
                            service=service,
                            status=response.status,
                        )
                    if response.status >= 500:
                        last_error = UpstreamTransientError(
                            f"{service} returned HTTP {response.status}",
                            service=service,
                            status=response.status,
                        )
                    else:
                        try:
                            return await response.json(content_type=None)
                        except ValueError as e:
                            raise PayloadDecodeError(f"{service} returned a non-JSON body: {e}") from e

            except UpstreamRejectionError:
                raise
            except asyncio.TimeoutError as e:
                last_error = e
            except aiohttp.ClientConnectionError as e:
                last_error = e

            if attempt < attempts:
                self.logger.warning(
                    f"{service} transient failure (attempt {attempt}/{attempts}): {last_error!r}. "
                    f"Retrying in {self.retry_delay:.1f}s..."
                )
                await asyncio.sleep(self.retry_delay)

        if isinstance(last_error, UpstreamTransientError):
            raise last_error
        raise UpstreamTransientError(
            f"{service} failed after {attempts} attempts: {last_error!r}",
            service=service,
        ) from last_error

    async def fetch_search(self, engine: str, query: str, params: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """
        Run one SerpApi search.

        Args:
            engine: SerpApi engine (google_news, google_events, ...)
            query: Search query
            params: Extra engine parameters (num, location, ...)

        Returns:
            Decoded JSON response
        """
        if not self.serpapi_key:
            raise ConfigurationError("SERPAPI_KEY is not configured")

        request_params = {
            "engine": engine,
            "q": query,
            "api_key": self.serpapi_key,
            "hl": "en",
            "gl": "us",
        }
        if params:
            request_params.update(params)

        await self.search_throttle()
        self.logger.debug(f"SerpApi {engine} search: '{query}'")
        return await self._request_json("serpapi", self.SERPAPI_URL, params=request_params)

    async def fetch_weather(self, city: str, units: str = "imperial") -> Dict[str, Any]:
        """Fetch current conditions and the forecast concurrently."""
        if not self.openweather_key:
            raise ConfigurationError("OPENWEATHERMAP_KEY is not configured")

        params = {"q": city, "appid": self.openweather_key, "units": units, "lang": "en"}
        current, forecast = await asyncio.gather(
            self._request_json("openweathermap", f"{self.OPENWEATHER_URL}/weather", params=params),
            self._request_json("openweathermap", f"{self.OPENWEATHER_URL}/forecast", params=params),
        )
        return {"current": current, "forecast": forecast}

    async def fetch_eventbrite_events(self, city: str) -> Dict[str, Any]:
        if not self.eventbrite_key:
            raise ConfigurationError("EVENTBRITE_API_KEY is not configured")

        params = {
            "location.address": city,
            "expand": "venue",
            "status": "live",
        }
        headers = {"Authorization": f"Bearer {self.eventbrite_key}"}
        return await self._request_json(
            "eventbrite", f"{self.EVENTBRITE_URL}/events/search/", params=params, headers=headers
        )

    async def health_check(self) -> Dict[str, bool]:
        """Report which providers have credentials configured."""
        return {
            "serpapi": bool(self.serpapi_key),
            "openweathermap": bool(self.openweather_key),
            "eventbrite": bool(self.eventbrite_key),
        }
