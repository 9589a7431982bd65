#!/usr/bin/env python3
"""
AssetLink Custody Engine - process entry point

Startup sequence:
- logging (plus the optional audit JSON-lines file)
- database tables
- engine wiring and the periodic sweeps
- run until SIGINT/SIGTERM, then drain background work and dispose the engine
"""

import asyncio
import logging
import signal

from config import Config
from database import create_tables, dispose_engine

logging.basicConfig(
    level=getattr(logging, Config.LOG_LEVEL, logging.INFO),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


def configure_audit_log() -> None:
    """Mirror the audit trail into AUDIT_LOG_FILE as raw JSON lines"""
    if not Config.AUDIT_LOG_FILE:
        return
    handler = logging.FileHandler(Config.AUDIT_LOG_FILE, encoding="utf-8")
    handler.setFormatter(logging.Formatter("%(message)s"))
    audit_logger = logging.getLogger("audit")
    audit_logger.addHandler(handler)
    audit_logger.setLevel(logging.INFO)
    logger.info(f"📝 Audit trail mirrored to {Config.AUDIT_LOG_FILE}")


async def main() -> None:
    from jobs.scheduler import CustodyScheduler
    from services.engine import get_engine

    configure_audit_log()
    Config.log_environment_config()

    logger.info("🗄️ Initializing database...")
    await create_tables()

    engine = get_engine()
    scheduler = CustodyScheduler(engine)
    scheduler.start()

    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_event.set)
        except NotImplementedError:
            # Windows event loops have no signal handlers
            pass

    logger.info("🚀 AssetLink custody engine running")
    try:
        await stop_event.wait()
    finally:
        logger.info("🛑 Shutting down custody engine...")
        scheduler.stop()
        await engine.shutdown()
        await dispose_engine()
        logger.info("✅ Shutdown complete")


def run() -> None:
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        logger.info("Interrupted")


if __name__ == "__main__":
    run()
