"""
Team notification channels for escalated inbound messages.

Channels:
- database: no-op, the notification row is written by the orchestrator
- log: WARNING log line carrying the payload
- whatsapp: short alert text to ADMIN_PHONE through the messaging transport
"""

import logging
from typing import Iterable

from polaris_crm.config import Settings

logger = logging.getLogger(__name__)


class NotificationDispatcher:
    """Fan a notification payload out to the configured channels, isolating failures."""

    def __init__(self, settings: Settings, transport):
        self._transport = transport
        self._admin_phone = settings.ADMIN_PHONE
        self._app_name = settings.APP_NAME
        self._channels = {
            "database": self._notify_database,
            "log": self._notify_log,
            "whatsapp": self._notify_whatsapp,
        }

    def notify(self, channel_names: Iterable[str], payload: dict) -> dict:
        """
        Deliver the payload on each named channel.

        Returns:
            {channel: True/False} for every known channel attempted
        """
        results = {}
        for name in channel_names:
            channel = self._channels.get(name)
            if channel is None:
                logger.warning(f"Unknown notification channel skipped: {name}")
                continue
            try:
                channel(payload)
                results[name] = True
            except Exception as e:
                logger.error(f"Notification channel {name} failed: {e}", exc_info=True)
                results[name] = False
        return results

    def _notify_database(self, payload: dict) -> None:
        pass

    def _notify_log(self, payload: dict) -> None:
        logger.warning("Urgent member message", extra={"notification": payload})

    def _notify_whatsapp(self, payload: dict) -> None:
        if not self._admin_phone:
            raise RuntimeError("ADMIN_PHONE is not configured")

        member = payload.get("member") or {}
        name = f"{member.get('first_name', '')} {member.get('last_name', '')}".strip()
        alert = (
            f"[{self._app_name}] Urgent message from {name or 'unknown'} "
            f"({member.get('phone', '?')}), urgency {payload.get('urgency') or 'n/a'}:\n"
            f"{payload.get('message', '')}"
        )
        result = self._transport.send_text(self._admin_phone, alert)
        if not result.success:
            raise RuntimeError(result.error or "WhatsApp alert not delivered")
