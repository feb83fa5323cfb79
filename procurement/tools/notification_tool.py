import logging
from typing import Any, Dict, List, Optional

from procurement.models.notification import DeliveryStatus, NotificationLog, NotificationTemplate

logger = logging.getLogger(__name__)

SUBJECTS = {
    NotificationTemplate.APPROVAL_GRANTED: "Purchase order {po_number} approved",
    NotificationTemplate.APPROVAL_REJECTED: "Purchase order {po_number} rejected",
    NotificationTemplate.BULK_APPROVAL: "{success_count} purchase orders approved",
    NotificationTemplate.PARTIAL_RECEIPT: "Purchase order {po_number} partially received",
    NotificationTemplate.FULL_RECEIPT: "Purchase order {po_number} fully received",
    NotificationTemplate.PRICE_VARIANCE_ALERT: "Price variance detected on {po_number}",
}

class NotificationTool:
    def __init__(self, channels: Optional[List[str]] = None):
        self.channels = channels or ["email"]

    async def send(self, template_id: str, recipients: List[str], variables: Dict[str, Any]) -> List[NotificationLog]:
        """
        Routes a templated notification to every recipient on every channel.
        Returns one log entry per delivery. A failed delivery is logged and
        reported, never raised.
        """
        subject = self._subject(template_id, variables)
        message = variables.get("message") or subject
        logs = []

        for recipient in recipients:
            for channel in self.channels:
                try:
                    if channel == "slack":
                        await self._send_slack(recipient, message)
                    elif channel == "email":
                        await self._send_email(recipient, subject, message)
                    else:
                        raise ValueError(f"Unsupported channel {channel}")
                    logs.append(NotificationLog(
                        template_id=template_id,
                        recipient=recipient,
                        channel=channel,
                        status=DeliveryStatus.SENT,
                    ))
                except Exception as e:
                    logger.warning(f"Notification {template_id} to {recipient} via {channel} failed: {e}")
                    logs.append(NotificationLog(
                        template_id=template_id,
                        recipient=recipient,
                        channel=channel,
                        status=DeliveryStatus.FAILED,
                        error=str(e),
                    ))
        return logs

    def _subject(self, template_id: str, variables: Dict[str, Any]) -> str:
        try:
            pattern = SUBJECTS[NotificationTemplate(template_id)]
            return pattern.format(**variables)
        except (ValueError, KeyError):
            return f"Purchase order notification: {template_id}"

    async def _send_slack(self, user: str, message: str):
        # Mock Slack API integration
        logger.info(f"[SLACK] To {user}: {message[:50]}...")

    async def _send_email(self, user: str, subject: str, body: str):
        # Mock Email integration (or use SMTP)
        logger.info(f"[EMAIL] To {user} | Subject: {subject}")
