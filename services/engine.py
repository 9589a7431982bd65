"""Wiring for the custody engine services"""

import asyncio
import logging
from typing import Any, Awaitable, Callable, Optional

from caching.keyed_store import InMemoryKeyedStore, KeyedStore
from services.audit_service import AuditService
from services.custody_provider import CustodyProvider
from services.custody_service import CustodyService
from services.fireblocks_client import get_custody_provider
from services.gas_service import GasStationService
from services.operation_executor import OperationExecutor
from services.operation_service import OperationService
from services.reconciliation_monitor import BackoffPolicy, MonitorRegistry, ReconciliationMonitor
from services.settlement_service import SettlementService
from services.webhook_service import WebhookNotifier
from utils.background_task_runner import BackgroundTaskRunner

logger = logging.getLogger(__name__)


class CustodyEngine:
    """
    One instance per process. Every collaborator is injectable so tests can
    swap the provider, the keyed store and the sleep used by backoff loops.
    """

    def __init__(
        self,
        provider: Optional[CustodyProvider] = None,
        store: Optional[KeyedStore] = None,
        notifier: Optional[WebhookNotifier] = None,
        runner: Optional[BackgroundTaskRunner] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        mint_policy: Optional[BackoffPolicy] = None,
        burn_policy: Optional[BackoffPolicy] = None,
        resync_cooldown_seconds: Optional[float] = None,
        gas_station: Optional[GasStationService] = None,
    ):
        self.provider = provider or get_custody_provider()
        self.store = store or InMemoryKeyedStore()
        self.notifier = notifier or WebhookNotifier()
        self.runner = runner or BackgroundTaskRunner()
        self.audit = AuditService()

        self.gas_station = gas_station or GasStationService(self.provider, self.store, sleep=sleep)
        self.custody = CustodyService(self.provider, self.audit, self.notifier, self.gas_station)
        self.registry = MonitorRegistry(self.store)
        self.monitor = ReconciliationMonitor(
            self.provider,
            self.registry,
            self.runner,
            self.audit,
            self.notifier,
            self.custody,
            sleep=sleep,
            resync_cooldown_seconds=resync_cooldown_seconds,
        )
        # Reads resync through the monitor
        self.custody.reconciliation = self.monitor

        self.executor = OperationExecutor(
            self.custody, self.provider, self.gas_station, self.audit,
            mint_policy=mint_policy, burn_policy=burn_policy,
        )
        self.operations = OperationService(
            self.custody, self.executor, self.monitor, self.runner, self.audit, self.notifier
        )
        self.settlement = SettlementService(self.audit, self.notifier, self.provider)
        logger.info(f"🏗️ CUSTODY_ENGINE_READY: provider={type(self.provider).__name__}")

    async def shutdown(self) -> None:
        """Cancel running executions and monitors"""
        await self.runner.shutdown()
        logger.info("🛑 CUSTODY_ENGINE_STOPPED")


_engine: Optional[CustodyEngine] = None


def get_engine() -> CustodyEngine:
    global _engine
    if _engine is None:
        _engine = CustodyEngine()
    return _engine
