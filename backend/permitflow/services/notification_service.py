"""
Notification dispatch.

Delivery (email/SMS, user channel preferences) belongs to the notification
service; this module only hands it a user, a template and the template
data. Every send is fire-and-forget relative to the state change that
triggered it: failures are logged and never raised to the caller.
"""

from typing import Any, Dict, Iterable, Optional
import httpx

from ..core.config import settings
from ..core.logging_config import get_permit_logger

logger = get_permit_logger(__name__)


class NotificationService:
    """Client for the platform notification service"""

    def __init__(self, base_url: Optional[str] = None, timeout: Optional[float] = None,
                 transport: Optional[httpx.AsyncBaseTransport] = None):
        self.base_url = base_url if base_url is not None else settings.NOTIFICATION_SERVICE_URL
        self.timeout = timeout or settings.NOTIFICATION_TIMEOUT_SECONDS
        self.transport = transport

    async def send_notification(
        self,
        user_id: str,
        template_type: str,
        data: Dict[str, Any],
        municipality_id: Optional[str] = None
    ) -> bool:
        """
        Ask the notification service to notify a user.

        Returns:
            True when the service accepted the notification, False when it was
            skipped or failed
        """
        if not user_id:
            return False

        if not self.base_url:
            logger.info("Notification service not configured; skipping",
                        template_type=template_type, recipient=user_id)
            return False

        payload = {
            "user_id": user_id,
            "template_type": template_type,
            "municipality_id": municipality_id,
            "data": data,
        }
        try:
            async with httpx.AsyncClient(base_url=self.base_url, timeout=self.timeout,
                                         transport=self.transport) as client:
                response = await client.post("/notifications", json=payload)
                response.raise_for_status()
        except (httpx.HTTPError, httpx.InvalidURL) as e:
            logger.warning(f"Failed to send notification: {e}",
                           template_type=template_type, recipient=user_id)
            return False

        logger.debug("Notification queued", template_type=template_type, recipient=user_id)
        return True

    async def send_bulk(self, user_ids: Iterable[str], template_type: str, data: Dict[str, Any],
                        municipality_id: Optional[str] = None) -> int:
        sent = 0
        for user_id in dict.fromkeys(user_ids):
            if await self.send_notification(user_id, template_type, data, municipality_id):
                sent += 1
        return sent


notification_service = NotificationService()
