"""Drops monitor registry entries that outlived their polling budget"""

import logging
from typing import Any, Dict

from services.engine import CustodyEngine

logger = logging.getLogger(__name__)


async def monitor_registry_cleanup(engine: CustodyEngine) -> Dict[str, Any]:
    try:
        removed = await engine.registry.cleanup_expired()
        active = await engine.registry.active_task_ids()
        return {"status": "completed", "removed": removed, "active": len(active)}
    except Exception as e:
        logger.error(f"❌ MONITOR_REGISTRY_CLEANUP_FAILED: {e}")
        return {"status": "error", "error": str(e)}
