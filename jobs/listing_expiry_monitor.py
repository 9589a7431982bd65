"""Listing Expiry Monitor - expires ACTIVE listings past their expiry date"""

import logging
from typing import Any, Dict

from services.engine import CustodyEngine
from utils.datetime_helpers import get_naive_utc_now

logger = logging.getLogger(__name__)


async def expire_stale_listings(engine: CustodyEngine) -> Dict[str, Any]:
    try:
        expired = await engine.settlement.expire_listings()
        return {"status": "completed", "expired": expired, "timestamp": get_naive_utc_now().isoformat()}
    except Exception as e:
        logger.error(f"❌ LISTING_EXPIRY_SWEEP_FAILED: {e}")
        return {"status": "error", "error": str(e), "timestamp": get_naive_utc_now().isoformat()}
