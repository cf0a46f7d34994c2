import os
import smtplib
import asyncio
import logging
import re
from typing import Optional
from dataclasses import dataclass
from email.mime.text import MIMEText
from email.mime.multipart import MIMEMultipart

from citybrief.utils.error_monitoring import CityBriefError, ConfigurationError


@dataclass
class EmailConfig:
    """Email service configuration"""
    smtp_host: str
    smtp_port: int
    smtp_user: str
    smtp_password: str
    from_email: str
    admin_email: Optional[str] = None
    reply_to: Optional[str] = None
    use_tls: bool = True


class EmailServiceError(CityBriefError):
    """Custom exception for email service failures"""
    pass


class EmailService:
    """
    SMTP delivery for per-recipient newsletters and admin alerts.

    smtplib is blocking, so each send runs in a worker thread; a batch of
    recipients can then be sent concurrently from the event loop.
    """

    def __init__(self, config: Optional[EmailConfig] = None, dry_run: bool = False):
        self.config = config or self._load_config_from_env()
        self.dry_run = dry_run
        self.logger = logging.getLogger(__name__)

        if not self.dry_run and not self.config.smtp_password:
            raise ConfigurationError("SMTP password required. Set SMTP_PASSWORD environment variable.")

    def _load_config_from_env(self) -> EmailConfig:
        """Load email configuration from environment variables"""
        return EmailConfig(
            smtp_host=os.getenv("SMTP_HOST", "smtp.gmail.com"),
            smtp_port=int(os.getenv("SMTP_PORT", "587")),
            smtp_user=os.getenv("SMTP_USER", ""),
            smtp_password=os.getenv("SMTP_PASSWORD", ""),
            from_email=os.getenv("FROM_EMAIL", ""),
            admin_email=os.getenv("ADMIN_EMAIL"),
            reply_to=os.getenv("REPLY_TO_EMAIL"),
            use_tls=os.getenv("SMTP_USE_TLS", "true").lower() == "true",
        )

    async def test_connection(self) -> bool:
        """Test SMTP connection and authentication."""
        if self.dry_run:
            return True
        self.logger.info("Testing SMTP connection to %s:%s", self.config.smtp_host, self.config.smtp_port)
        try:
            await asyncio.to_thread(self._login_only)
            self.logger.info("SMTP connection and authentication successful")
            return True
        except (smtplib.SMTPException, OSError) as exc:
            self.logger.error("SMTP connection test failed: %s", exc)
            return False

    def _login_only(self) -> None:
        with smtplib.SMTP(self.config.smtp_host, self.config.smtp_port, timeout=30) as server:
            if self.config.use_tls:
                server.starttls()
            server.login(self.config.smtp_user, self.config.smtp_password)

    async def send_email(
        self,
        recipient: str,
        subject: str,
        html_content: str,
        plain_text: Optional[str] = None,
    ) -> bool:
        """Send one multipart email. Raises EmailServiceError on SMTP failure."""
        message = MIMEMultipart('alternative')
        message['Subject'] = subject
        message['From'] = self.config.from_email or self.config.smtp_user
        message['To'] = recipient
        if self.config.reply_to:
            message['Reply-To'] = self.config.reply_to

        message.attach(MIMEText(plain_text or self.create_plain_text_version(html_content), 'plain'))
        message.attach(MIMEText(html_content, 'html'))

        return await self._send_via_smtp(message)

    def create_plain_text_version(self, html_content: str) -> str:
        """Create plain text version from HTML."""
        text = re.sub(r'<(script|style)[^>]*>[\s\S]*?</\1>', '', html_content, flags=re.IGNORECASE)
        text = re.sub(r'<\s*br\s*/?>', '\n', text, flags=re.IGNORECASE)
        text = re.sub(r'</p\s*>', '\n', text, flags=re.IGNORECASE)
        text = re.sub(r'<[^>]+>', '', text)
        text = re.sub(r'\n\s*\n+', '\n\n', text)
        return text.strip()

    async def _send_via_smtp(self, message: MIMEMultipart) -> bool:
        if self.dry_run:
            self.logger.info("[dry-run] Would send '%s' to %s", message['Subject'], message['To'])
            return True
        try:
            await asyncio.to_thread(self._send_blocking, message)
            self.logger.debug("SMTP send_message completed for %s", message['To'])
            return True
        except (smtplib.SMTPException, OSError) as exc:
            self.logger.error("SMTP send to %s failed: %s", message['To'], exc)
            raise EmailServiceError(f"SMTP send failed: {exc}") from exc

    def _send_blocking(self, message: MIMEMultipart) -> None:
        with smtplib.SMTP(self.config.smtp_host, self.config.smtp_port, timeout=30) as server:
            if self.config.use_tls:
                server.starttls()
            server.login(self.config.smtp_user, self.config.smtp_password)
            server.send_message(message)

    async def send_admin_notification(self, subject: str, body: str) -> bool:
        """Plain-text message to the configured admin address. Returns False if none is set."""
        recipient = self.config.admin_email
        if not recipient:
            self.logger.debug("No ADMIN_EMAIL configured; skipping admin notification '%s'", subject)
            return False

        alert = MIMEMultipart('alternative')
        alert['Subject'] = subject
        alert['From'] = self.config.from_email or self.config.smtp_user
        alert['To'] = recipient
        alert.attach(MIMEText(body, 'plain'))
        return await self._send_via_smtp(alert)

    async def send_error_alert(self, error_message: str) -> bool:
        return await self.send_admin_notification(
            "CityBrief Error Alert",
            f"A critical error occurred in the newsletter pipeline:\n\n{error_message}",
        )
