"""
Beehiiv v2 posts client for scheduled per-city broadcasts.
"""

import asyncio
import logging
import ssl
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import aiohttp
import certifi

from citybrief.utils.error_monitoring import (
    ConfigurationError,
    UpstreamRejectionError,
    UpstreamTransientError,
)


@dataclass
class BroadcastPost:
    """Result of a created Beehiiv post."""
    post_id: Optional[str]
    title: str
    scheduled_at: Optional[datetime]
    status: str


class BroadcastService:
    BASE_URL = "https://api.beehiiv.com/v2"

    def __init__(self, api_key: Optional[str], publication_id: Optional[str], timeout_seconds: float = 20.0):
        self.api_key = api_key
        self.publication_id = publication_id
        self.timeout = aiohttp.ClientTimeout(total=timeout_seconds)
        self.session: Optional[aiohttp.ClientSession] = None
        self.logger = logging.getLogger(__name__)

    @property
    def enabled(self) -> bool:
        return bool(self.api_key and self.publication_id)

    async def _get_session(self) -> aiohttp.ClientSession:
        if self.session is None or self.session.closed:
            ssl_context = ssl.create_default_context(cafile=certifi.where())
            self.session = aiohttp.ClientSession(
                timeout=self.timeout,
                connector=aiohttp.TCPConnector(ssl=ssl_context),
            )
        return self.session

    async def close_session(self):
        if self.session and not self.session.closed:
            await self.session.close()
            self.session = None

    @staticmethod
    def format_segment_ids(segment_ids: List[str]) -> List[str]:
        """Beehiiv segment ids carry a 'seg_' prefix."""
        return [sid if sid.startswith("seg_") else f"seg_{sid}" for sid in segment_ids if sid]

    def build_post_body(
        self,
        title: str,
        html: str,
        segment_ids: Optional[List[str]] = None,
        status: str = "confirmed",
        scheduled_at: Optional[datetime] = None,
        hide_from_feed: Optional[bool] = True,
        email_subject: Optional[str] = None,
    ) -> Dict[str, Any]:
        body: Dict[str, Any] = {
            "title": title,
            "body_content": html,
            "status": status,
        }

        segments = self.format_segment_ids(segment_ids or [])
        if segments:
            body["recipients"] = {
                "email": {"include_segment_ids": segments},
                "web": {"include_segment_ids": segments},
            }

        if email_subject:
            body["email_settings"] = {"email_subject_line": email_subject}

        if hide_from_feed is not None:
            body["web_settings"] = {
                "hide_from_feed": hide_from_feed,
                "display_thumbnail_on_web": False,
            }

        if scheduled_at is not None:
            if scheduled_at.tzinfo is None:
                scheduled_at = scheduled_at.replace(tzinfo=timezone.utc)
            body["scheduled_at"] = scheduled_at.astimezone(timezone.utc).isoformat()

        return body

    async def create_post(
        self,
        title: str,
        html: str,
        segment_ids: Optional[List[str]] = None,
        scheduled_at: Optional[datetime] = None,
        email_subject: Optional[str] = None,
        status: str = "confirmed",
    ) -> BroadcastPost:
        """
        Create (and optionally schedule) a post.

        Raises:
            ConfigurationError: API key or publication id missing
            UpstreamRejectionError: Beehiiv answered 4xx
            UpstreamTransientError: 5xx, timeout or connection failure
        """
        if not self.enabled:
            raise ConfigurationError("BEEHIIV_API_KEY and BEEHIIV_PUBLICATION_ID must be configured")

        url = f"{self.BASE_URL}/publications/{self.publication_id}/posts"
        body = self.build_post_body(
            title=title,
            html=html,
            segment_ids=segment_ids,
            status=status,
            scheduled_at=scheduled_at,
            email_subject=email_subject or title,
        )
        headers = {"Authorization": f"Bearer {self.api_key}", "Content-Type": "application/json"}

        session = await self._get_session()
        try:
            async with session.post(url, json=body, headers=headers) as response:
                if 400 <= response.status < 500:
                    text = await response.text()
                    raise UpstreamRejectionError(
                        f"Beehiiv rejected post '{title}' with HTTP {response.status}: {text[:300]}",
                        service="beehiiv",
                        status=response.status,
                    )
                if response.status >= 500:
                    raise UpstreamTransientError(
                        f"Beehiiv returned HTTP {response.status}", service="beehiiv", status=response.status
                    )
                data = await response.json(content_type=None)
        except (aiohttp.ClientConnectionError, asyncio.TimeoutError) as e:
            raise UpstreamTransientError(f"Beehiiv request failed: {e!r}", service="beehiiv") from e

        post_id = (data or {}).get("data", {}).get("id") if isinstance(data, dict) else None
        self.logger.info(f"🐝 Beehiiv post created: {title} (id={post_id})")
        return BroadcastPost(post_id=post_id, title=title, scheduled_at=scheduled_at, status=status)
