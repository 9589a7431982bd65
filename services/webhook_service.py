"""Best-effort webhook notifier for custody and operation status changes"""

import logging
from typing import Any, Dict, Optional

import aiohttp

from config import Config
from utils.datetime_helpers import isoformat_utc, get_naive_utc_now

logger = logging.getLogger(__name__)


class WebhookNotifier:
    """
    POSTs {event, data, timestamp} to the configured sink.

    Delivery is bounded by a short timeout and never retried; failures are
    logged and swallowed so they cannot affect the transaction that fired them.
    """

    def __init__(self, url: Optional[str] = None, timeout_seconds: Optional[float] = None):
        self.url = url if url is not None else Config.WEBHOOK_URL
        self.timeout_seconds = timeout_seconds or Config.WEBHOOK_TIMEOUT_SECONDS
        self.delivered = 0
        self.failed = 0

    async def notify_status_update(self, event: str, data: Dict[str, Any]) -> bool:
        """Send one event; True when the sink acknowledged with 2xx"""
        if not self.url:
            logger.debug(f"WEBHOOK_SKIPPED: no sink configured for {event}")
            return False

        body = {
            "event": event,
            "data": data,
            "timestamp": isoformat_utc(get_naive_utc_now()),
        }

        try:
            timeout = aiohttp.ClientTimeout(total=self.timeout_seconds)
            async with aiohttp.ClientSession(timeout=timeout) as session:
                async with session.post(self.url, json=body) as response:
                    if 200 <= response.status < 300:
                        self.delivered += 1
                        logger.info(f"📤 WEBHOOK_SENT: {event} -> HTTP {response.status}")
                        return True
                    error_text = await response.text()
                    self.failed += 1
                    logger.warning(f"⚠️ WEBHOOK_REJECTED: {event} -> HTTP {response.status}: {error_text[:200]}")
                    return False
        except Exception as e:
            self.failed += 1
            logger.error(f"❌ WEBHOOK_ERROR: Failed to send {event}: {e}")
            return False
