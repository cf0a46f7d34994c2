import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import List, Optional

from citybrief.services.email_service import EmailService


class NotificationType(str, Enum):
    DATA_COLLECTION = "data_collection"
    EMAIL_SENDING = "email_sending"
    BROADCAST = "broadcast"


class NotificationStatus(str, Enum):
    STARTED = "started"
    COMPLETED = "completed"


@dataclass
class NotificationDetails:
    total_cities: Optional[int] = None
    total_users: Optional[int] = None
    successful: Optional[int] = None
    failed: Optional[int] = None
    emails_sent: Optional[int] = None
    emails_failed: Optional[int] = None
    duration: Optional[str] = None
    errors: List[str] = field(default_factory=list)


class NotificationService:
    """
    Operator notifications for pipeline start and completion.

    Delivery failures are logged and swallowed: a broken admin mailbox must
    never fail a collection or dispatch run.
    """

    MAX_ERRORS_SHOWN = 5

    def __init__(self, email_service: Optional[EmailService] = None):
        self.email_service = email_service
        self.logger = logging.getLogger(__name__)

    @staticmethod
    def _titles(notification_type: NotificationType, status: NotificationStatus) -> str:
        type_title = {
            NotificationType.DATA_COLLECTION: "Data Collection",
            NotificationType.EMAIL_SENDING: "Email Sending",
            NotificationType.BROADCAST: "Broadcast Scheduling",
        }[notification_type]
        return f"{type_title} {status.value.title()}"

    def format_body(
        self,
        notification_type: NotificationType,
        status: NotificationStatus,
        details: NotificationDetails,
    ) -> str:
        lines = [
            f"CityBrief {self._titles(notification_type, status)}",
            f"Time: {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}",
            "",
        ]

        if status == NotificationStatus.STARTED:
            if details.total_cities is not None:
                lines.append(f"Total Cities: {details.total_cities}")
            if details.total_users is not None:
                lines.append(f"Total Users: {details.total_users}")
        else:
            if notification_type == NotificationType.EMAIL_SENDING:
                lines.append(f"Emails Sent: {details.emails_sent or 0}")
                lines.append(f"Emails Failed: {details.emails_failed or 0}")
            else:
                lines.append(f"Successful: {details.successful or 0}")
                lines.append(f"Failed: {details.failed or 0}")
            lines.append(f"Duration: {details.duration or 'Unknown'}")

        if details.errors:
            lines.append("")
            lines.append("Errors:")
            lines.extend(f"- {error}" for error in details.errors[:self.MAX_ERRORS_SHOWN])

        return "\n".join(lines)

    async def notify(
        self,
        notification_type: NotificationType,
        status: NotificationStatus,
        details: Optional[NotificationDetails] = None,
    ) -> bool:
        details = details or NotificationDetails()
        subject = f"CityBrief {self._titles(notification_type, status)}"

        if self.email_service is None:
            self.logger.info(f"📣 {subject} (no mailer configured)")
            return False

        try:
            sent = await self.email_service.send_admin_notification(
                subject, self.format_body(notification_type, status, details)
            )
            if sent:
                self.logger.info(f"📧 Admin notification sent: {subject}")
            return sent
        except Exception as e:
            self.logger.error(f"❌ Failed to send admin notification '{subject}': {e}")
            return False
