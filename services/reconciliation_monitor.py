"""
Reconciliation Monitor
======================

Background polling of provider tasks (token issuance, burn transactions)
until they reach a terminal status, then writing that outcome back onto the
custody record and the operation.

- One monitor per external task id, deduplicated through MonitorRegistry
- Explicit backoff loop: delay = min(initial + attempts * step, max)
- Transient provider errors consume an attempt; rate-limit/auth errors wait
  a longer cooldown
- A provider-reported failure is provisional until a recovery check against
  live provider state confirms it
- Exhaustion leaves the record untouched and audits a timeout; reads resync it
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from caching.keyed_store import KeyedStore
from config import Config
from database import async_managed_session
from models import CustodyRecord, CustodyStatus, Operation, OperationStatus, OperationType
from services.audit_service import AuditEvent, AuditService
from services.custody_provider import CustodyProvider, TaskStatusResult
from services.custody_service import CustodyService
from services.errors import ProviderError, ReconciliationTimeout
from services.operation_ledger import load_operation, mirror_provider_status, set_operation_status
from services.webhook_service import WebhookNotifier
from utils.background_task_runner import BackgroundTaskRunner
from utils.datetime_helpers import get_naive_utc_now, seconds_since

logger = logging.getLogger(__name__)


class MonitorOutcome(Enum):
    SUCCEEDED = "succeeded"
    RECOVERED = "recovered"
    FAILED = "failed"
    TIMED_OUT = "timed_out"
    SKIPPED = "skipped"
    ERROR = "error"


@dataclass
class MonitorResult:
    outcome: MonitorOutcome
    task_id: Optional[str] = None
    polls: int = 0
    last_status: Optional[str] = None
    reason: Optional[str] = None
    error: Optional[Exception] = None


@dataclass(frozen=True)
class BackoffPolicy:
    """Polling schedule for one monitor kind"""
    initial_delay: float
    step_delay: float
    max_delay: float
    max_attempts: int
    rate_limit_cooldown: float
    milestones: Dict[int, str] = field(default_factory=dict, hash=False)

    def delay_for(self, attempts: int) -> float:
        return min(self.initial_delay + attempts * self.step_delay, self.max_delay)

    def schedule(self) -> List[float]:
        """Every sleep a monitor takes when the task never becomes terminal"""
        return [self.initial_delay] + [self.delay_for(n) for n in range(1, self.max_attempts)]

    @classmethod
    def for_mint(cls) -> "BackoffPolicy":
        return cls(
            initial_delay=Config.MINT_MONITOR_INITIAL_DELAY_SECONDS,
            step_delay=Config.MINT_MONITOR_STEP_DELAY_SECONDS,
            max_delay=Config.MINT_MONITOR_MAX_DELAY_SECONDS,
            max_attempts=Config.MINT_MONITOR_MAX_ATTEMPTS,
            rate_limit_cooldown=Config.MINT_MONITOR_RATE_LIMIT_COOLDOWN_SECONDS,
            milestones=dict(Config.MONITOR_PROGRESS_MILESTONES),
        )

    @classmethod
    def for_burn(cls) -> "BackoffPolicy":
        return cls(
            initial_delay=Config.BURN_MONITOR_INITIAL_DELAY_SECONDS,
            step_delay=Config.BURN_MONITOR_STEP_DELAY_SECONDS,
            max_delay=Config.BURN_MONITOR_MAX_DELAY_SECONDS,
            max_attempts=Config.BURN_MONITOR_MAX_ATTEMPTS,
            rate_limit_cooldown=Config.BURN_MONITOR_RATE_LIMIT_COOLDOWN_SECONDS,
            milestones=dict(Config.MONITOR_PROGRESS_MILESTONES),
        )


class MonitorRegistry:
    """Active monitors keyed by external task id, backed by an injected store"""

    PREFIX = "monitor:"

    def __init__(self, store: KeyedStore, max_age_seconds: Optional[float] = None):
        self.store = store
        self.max_age_seconds = max_age_seconds or Config.MONITOR_REGISTRY_MAX_AGE_HOURS * 3600

    def _key(self, task_id: str) -> str:
        return f"{self.PREFIX}{task_id}"

    async def register(self, task_id: str, info: Optional[Dict[str, Any]] = None) -> bool:
        """False when a monitor for task_id is already registered"""
        entry = {"started_at": time.time(), **(info or {})}
        return await self.store.set_if_absent(self._key(task_id), entry, ttl=self.max_age_seconds)

    async def release(self, task_id: str) -> None:
        await self.store.delete(self._key(task_id))

    async def is_active(self, task_id: str) -> bool:
        return await self.store.exists(self._key(task_id))

    async def active_task_ids(self) -> List[str]:
        return [k[len(self.PREFIX):] for k in await self.store.keys(self.PREFIX)]

    async def cleanup_expired(self, max_age_seconds: Optional[float] = None) -> int:
        """Drop entries older than max_age; returns how many were removed"""
        max_age = max_age_seconds if max_age_seconds is not None else self.max_age_seconds
        cutoff = time.time() - max_age
        removed = 0
        for key in await self.store.keys(self.PREFIX):
            entry = await self.store.get(key)
            if entry and entry.get("started_at", 0) < cutoff:
                await self.store.delete(key)
                removed += 1
        if removed:
            logger.info(f"🧹 MONITOR_REGISTRY_CLEANUP: removed {removed} stale monitors")
        return removed


@dataclass
class ReconciliationContext:
    """What a monitor needs to write the outcome back"""
    task_id: str
    custody_record_id: str
    operation_id: Optional[str]
    actor: str = "system"
    vault_id: Optional[str] = None
    token_symbol: Optional[str] = None
    total_supply: Optional[str] = None
    amount: Optional[str] = None


class ReconciliationHandler:
    """Kind-specific behaviour plugged into the shared polling loop"""

    kind = "task"
    timeout_event = AuditEvent.RECONCILIATION_ERROR
    failure_event = AuditEvent.RECONCILIATION_ERROR
    recovered_event = AuditEvent.RECONCILIATION_ERROR

    def __init__(self, context: ReconciliationContext, policy: BackoffPolicy):
        self.context = context
        self.policy = policy

    async def fetch_status(self, provider: CustodyProvider) -> TaskStatusResult:
        raise NotImplementedError

    async def recovery_check(self, provider: CustodyProvider, status: TaskStatusResult) -> Optional[TaskStatusResult]:
        return None

    async def apply_success(
        self, custody: CustodyService, session: AsyncSession, status: TaskStatusResult, recovered: bool
    ) -> CustodyRecord:
        raise NotImplementedError

    async def apply_failure(
        self, custody: CustodyService, session: AsyncSession, status: TaskStatusResult
    ) -> CustodyRecord:
        """Move the record to FAILED with the provider diagnostic attached"""
        record = await custody._load(session, self.context.custody_record_id, for_update=True)
        failure = {"failure_reason": status.failure_reason(), "failure_details": status.raw or {"status": status.status}}
        if record.status == CustodyStatus.FAILED.value:
            record.failure_reason = failure["failure_reason"]
            record.failure_details = failure["failure_details"]
            record.updated_at = get_naive_utc_now()
            await session.flush()
            return record
        return await custody.transition_status(
            record.id, CustodyStatus.FAILED.value, failure, self.context.actor, session, self.context.operation_id
        )


class MintReconciliation(ReconciliationHandler):
    kind = OperationType.MINT.value
    timeout_event = AuditEvent.TOKEN_MINT_TIMEOUT
    failure_event = AuditEvent.TOKEN_MINT_FAILED
    recovered_event = AuditEvent.TOKEN_MINT_RECOVERED

    async def fetch_status(self, provider: CustodyProvider) -> TaskStatusResult:
        return await provider.get_task_status(self.context.task_id)

    async def recovery_check(self, provider: CustodyProvider, status: TaskStatusResult) -> Optional[TaskStatusResult]:
        # The provider has reported FAILED for issuances that did deploy
        if not self.context.vault_id or not self.context.token_symbol:
            return None
        live = await provider.find_live_token(self.context.vault_id, self.context.token_symbol)
        if live is not None and live.is_completed and live.contract_address:
            return live
        return None

    async def apply_success(
        self, custody: CustodyService, session: AsyncSession, status: TaskStatusResult, recovered: bool
    ) -> CustodyRecord:
        record = await custody._load(session, self.context.custody_record_id, for_update=True)
        if record.status == CustodyStatus.MINTED.value and record.token_id == self.context.task_id:
            return record

        metadata: Dict[str, Any] = {
            "token_standard": status.token_standard or Config.DEFAULT_TOKEN_STANDARD,
            "token_address": status.contract_address or self.context.task_id,
            "token_id": self.context.task_id,
            "quantity": self.context.total_supply or record.quantity,
            "tx_hash": status.tx_hash,
            "minted_at": get_naive_utc_now(),
            "recovered": recovered,
        }
        if status.blockchain_id:
            metadata["blockchain"] = status.blockchain_id
        if self.context.token_symbol:
            metadata["token_symbol"] = self.context.token_symbol
        return await custody.transition_status(
            record.id, CustodyStatus.MINTED.value, metadata, self.context.actor, session, self.context.operation_id
        )


class BurnReconciliation(ReconciliationHandler):
    kind = OperationType.BURN.value
    timeout_event = AuditEvent.TOKEN_BURN_TIMEOUT
    failure_event = AuditEvent.TOKEN_BURN_FAILED
    recovered_event = AuditEvent.TOKEN_BURN_RECOVERED

    async def fetch_status(self, provider: CustodyProvider) -> TaskStatusResult:
        return await provider.get_transaction_status(self.context.task_id)

    async def recovery_check(self, provider: CustodyProvider, status: TaskStatusResult) -> Optional[TaskStatusResult]:
        # Re-read the transaction once; a late COMPLETED with a hash wins
        again = await provider.get_transaction_status(self.context.task_id)
        if again.is_completed and again.tx_hash:
            return again
        return None

    async def apply_success(
        self, custody: CustodyService, session: AsyncSession, status: TaskStatusResult, recovered: bool
    ) -> CustodyRecord:
        record = await custody._load(session, self.context.custody_record_id, for_update=True)
        current = Decimal(record.quantity or "0")
        burned = Decimal(self.context.amount or "0")
        remaining = max(Decimal("0"), current - burned)
        target = CustodyStatus.BURNED.value if remaining <= 0 else CustodyStatus.MINTED.value

        metadata: Dict[str, Any] = {
            "quantity": remaining,
            "tx_hash": status.tx_hash,
            "burned_amount": str(burned),
            "previous_quantity": str(current),
            "recovered": recovered,
        }
        if target == CustodyStatus.BURNED.value:
            metadata["burned_at"] = get_naive_utc_now()
        return await custody.transition_status(
            record.id, target, metadata, self.context.actor, session, self.context.operation_id
        )


class ReconciliationMonitor:
    """Runs reconciliation loops as tracked background tasks"""

    def __init__(
        self,
        provider: CustodyProvider,
        registry: MonitorRegistry,
        runner: BackgroundTaskRunner,
        audit: AuditService,
        notifier: WebhookNotifier,
        custody: CustodyService,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        resync_cooldown_seconds: Optional[float] = None,
    ):
        self.provider = provider
        self.registry = registry
        self.runner = runner
        self.audit = audit
        self.notifier = notifier
        self.custody = custody
        self._sleep = sleep
        self.resync_cooldown_seconds = (
            Config.RESYNC_COOLDOWN_SECONDS if resync_cooldown_seconds is None else resync_cooldown_seconds
        )

    @staticmethod
    def task_name(handler: ReconciliationHandler) -> str:
        return f"monitor:{handler.kind}:{handler.context.task_id}"

    async def start(self, handler: ReconciliationHandler) -> bool:
        """Register and launch a monitor; False when one already runs for the task"""
        ctx = handler.context
        registered = await self.registry.register(
            ctx.task_id,
            {"kind": handler.kind, "custody_record_id": ctx.custody_record_id, "operation_id": ctx.operation_id},
        )
        if not registered:
            logger.info(f"⏭️ MONITOR_ALREADY_ACTIVE: {handler.kind} task {ctx.task_id}")
            return False

        try:
            self.runner.submit(self.task_name(handler), self.run(handler))
        except Exception:
            await self.registry.release(ctx.task_id)
            raise
        logger.info(f"👀 MONITOR_STARTED: {handler.kind} task {ctx.task_id} for record {ctx.custody_record_id}")
        return True

    async def run(self, handler: ReconciliationHandler) -> MonitorResult:
        """Polling loop for a registered monitor; always releases the registry entry"""
        ctx = handler.context
        policy = handler.policy
        attempts = 0
        last_status: Optional[str] = None

        try:
            await self._sleep(policy.initial_delay)
            while True:
                try:
                    status = await handler.fetch_status(self.provider)
                except Exception as e:
                    error = ProviderError.from_exception(e)
                    attempts += 1
                    if attempts >= policy.max_attempts:
                        return await self._exhausted(handler, attempts, last_status, error)
                    delay = policy.rate_limit_cooldown if error.is_rate_limited else policy.delay_for(attempts)
                    logger.warning(
                        f"⚠️ MONITOR_POLL_ERROR: {handler.kind} task {ctx.task_id} "
                        f"attempt {attempts}/{policy.max_attempts}, retry in {delay}s: {error.message}"
                    )
                    await self._sleep(delay)
                    continue

                last_status = status.status
                await self._record_progress(handler, attempts + 1, status)

                if status.is_terminal:
                    result = await self._handle_terminal(handler, status)
                    result.polls = attempts + 1
                    return result

                attempts += 1
                if attempts >= policy.max_attempts:
                    return await self._exhausted(handler, attempts, last_status)

                delay = policy.delay_for(attempts)
                logger.info(
                    f"⏳ MONITOR_WAITING: {handler.kind} task {ctx.task_id} is {status.status}, "
                    f"next check in {delay}s ({attempts}/{policy.max_attempts})"
                )
                await self._sleep(delay)
        except asyncio.CancelledError:
            logger.info(f"🛑 MONITOR_CANCELLED: {handler.kind} task {ctx.task_id}")
            raise
        finally:
            await self.registry.release(ctx.task_id)

    async def _record_progress(self, handler: ReconciliationHandler, poll: int, status: TaskStatusResult) -> None:
        ctx = handler.context
        if ctx.operation_id:
            async with async_managed_session() as session:
                await mirror_provider_status(session, ctx.operation_id, status.status, status.tx_hash)

        milestone = handler.policy.milestones.get(poll)
        if milestone and not status.is_terminal:
            await self.audit.append(
                milestone,
                "system",
                {"kind": handler.kind, "task_id": ctx.task_id, "provider_status": status.status, "poll": poll},
                custody_record_id=ctx.custody_record_id,
                operation_id=ctx.operation_id,
            )

    async def _handle_terminal(self, handler: ReconciliationHandler, status: TaskStatusResult) -> MonitorResult:
        ctx = handler.context
        try:
            if status.is_completed:
                return await self._apply_success(handler, status, recovered=False)

            recovered: Optional[TaskStatusResult] = None
            try:
                recovered = await handler.recovery_check(self.provider, status)
            except Exception as e:
                logger.warning(f"⚠️ RECOVERY_CHECK_ERROR: {handler.kind} task {ctx.task_id}: {e}")

            if recovered is not None:
                logger.warning(
                    f"🩹 MONITOR_RECOVERED: {handler.kind} task {ctx.task_id} reported {status.status} "
                    f"but live state shows success"
                )
                return await self._apply_success(handler, recovered, recovered=True, reported=status)
            return await self._apply_failure(handler, status)

        except Exception as e:
            logger.error(f"❌ RECONCILIATION_ERROR: {handler.kind} task {ctx.task_id}: {e}", exc_info=True)
            await self.audit.append(
                AuditEvent.RECONCILIATION_ERROR,
                "system",
                {"kind": handler.kind, "task_id": ctx.task_id, "provider_status": status.status, "error": str(e)},
                custody_record_id=ctx.custody_record_id,
                operation_id=ctx.operation_id,
            )
            return MonitorResult(MonitorOutcome.ERROR, ctx.task_id, last_status=status.status, reason=str(e), error=e)

    async def _apply_success(
        self,
        handler: ReconciliationHandler,
        status: TaskStatusResult,
        recovered: bool,
        reported: Optional[TaskStatusResult] = None,
    ) -> MonitorResult:
        ctx = handler.context
        operation = None
        async with async_managed_session() as session:
            record = await handler.apply_success(self.custody, session, status, recovered)
            if recovered:
                await self.audit.append(
                    handler.recovered_event,
                    "system",
                    {"task_id": ctx.task_id, "reported_status": reported.status if reported else None,
                     "reported_failure": reported.raw if reported else None},
                    custody_record_id=ctx.custody_record_id,
                    operation_id=ctx.operation_id,
                    session=session,
                )
            operation = await self._finish_operation(
                session, ctx, OperationStatus.EXECUTED.value,
                provider_status=status.status, tx_hash=status.tx_hash,
            )

        logger.info(
            f"✅ MONITOR_COMPLETED: {handler.kind} task {ctx.task_id} -> record {record.status}"
            f"{' (recovered)' if recovered else ''}"
        )
        if operation is not None:
            await self.notifier.notify_status_update("operation.updated", operation.to_dict())
        await self.notifier.notify_status_update(f"custody.{record.status.lower()}", record.to_dict())
        outcome = MonitorOutcome.RECOVERED if recovered else MonitorOutcome.SUCCEEDED
        return MonitorResult(outcome, ctx.task_id, last_status=status.status)

    async def _apply_failure(self, handler: ReconciliationHandler, status: TaskStatusResult) -> MonitorResult:
        ctx = handler.context
        reason = status.failure_reason()
        async with async_managed_session() as session:
            record = await handler.apply_failure(self.custody, session, status)
            await self.audit.append(
                handler.failure_event,
                "system",
                {"task_id": ctx.task_id, "status": status.status, "failure_reason": reason, "raw": status.raw},
                custody_record_id=ctx.custody_record_id,
                operation_id=ctx.operation_id,
                session=session,
            )
            operation = await self._finish_operation(
                session, ctx, OperationStatus.FAILED.value,
                provider_status=status.status, failure_reason=reason, failure_details=status.raw or None,
            )

        logger.error(f"❌ MONITOR_FAILED: {handler.kind} task {ctx.task_id}: {reason}")
        if operation is not None:
            await self.notifier.notify_status_update("operation.updated", operation.to_dict())
        await self.notifier.notify_status_update("custody.failed", record.to_dict())
        return MonitorResult(MonitorOutcome.FAILED, ctx.task_id, last_status=status.status, reason=reason)

    async def _finish_operation(
        self, session: AsyncSession, ctx: ReconciliationContext, new_status: str, **fields: Any
    ) -> Optional[Operation]:
        if not ctx.operation_id:
            return None
        operation = await load_operation(session, ctx.operation_id, for_update=True)
        if operation.is_terminal:
            logger.warning(
                f"⚠️ OPERATION_ALREADY_TERMINAL: {operation.id} is {operation.status}, not moving to {new_status}"
            )
            return operation
        if operation.status == OperationStatus.APPROVED.value:
            # Reconciled before the executor recorded the dispatch
            await set_operation_status(session, operation, OperationStatus.EXECUTING.value, self.audit, "system")
        fields = {k: v for k, v in fields.items() if v is not None}
        return await set_operation_status(session, operation, new_status, self.audit, ctx.actor, **fields)

    async def _exhausted(
        self,
        handler: ReconciliationHandler,
        attempts: int,
        last_status: Optional[str],
        error: Optional[ProviderError] = None,
    ) -> MonitorResult:
        ctx = handler.context
        timeout = ReconciliationTimeout(
            f"{handler.kind} task {ctx.task_id} not terminal after {attempts} attempts",
            details={"task_id": ctx.task_id, "attempts": attempts, "last_status": last_status,
                     "last_error": error.message if error else None},
        )
        logger.error(f"⏰ MONITOR_TIMEOUT: {timeout.message}")
        await self.audit.append(
            handler.timeout_event,
            "system",
            timeout.details,
            custody_record_id=ctx.custody_record_id,
            operation_id=ctx.operation_id,
        )
        return MonitorResult(
            MonitorOutcome.TIMED_OUT, ctx.task_id, polls=attempts, last_status=last_status,
            reason=timeout.message, error=timeout,
        )

    # ------------------------------------------------------------------
    # on-demand resync
    # ------------------------------------------------------------------

    @staticmethod
    def _resync_handler(
        record: CustodyRecord, operation: Optional[Operation], task_id: str, vault_id: Optional[str]
    ) -> ReconciliationHandler:
        payload = (operation.payload if operation is not None else None) or {}
        context = ReconciliationContext(
            task_id=task_id,
            custody_record_id=record.id,
            operation_id=operation.id if operation is not None else None,
            actor="system:resync",
            vault_id=vault_id,
            token_symbol=record.token_symbol or payload.get("token_symbol"),
        )
        if operation is not None and operation.operation_type == OperationType.BURN.value:
            context.amount = str(payload.get("amount")) if payload.get("amount") is not None else None
            return BurnReconciliation(context, BackoffPolicy.for_burn())
        if payload.get("total_supply") is not None:
            context.total_supply = str(payload["total_supply"])
        return MintReconciliation(context, BackoffPolicy.for_mint())

    async def resync_custody_record(self, record_id: str, force: bool = False) -> MonitorResult:
        """
        Replay terminal handling for provider work that no monitor finished.

        Two cases qualify: a live EXECUTING mint or burn operation (its
        monitor timed out or died), and a never-minted LINKED/FAILED record
        whose mint task id is known. Records that were minted and later
        failed are left alone; their quantity belongs to later operations.
        Skipped inside the cooldown window and while a live monitor owns the task.
        """
        async with async_managed_session() as session:
            record = await self.custody._load(session, record_id)
            live_operation = (
                await session.execute(
                    select(Operation)
                    .where(
                        Operation.custody_record_id == record_id,
                        Operation.status == OperationStatus.EXECUTING.value,
                        Operation.operation_type.in_((OperationType.MINT.value, OperationType.BURN.value)),
                        Operation.external_task_id.isnot(None),
                    )
                    .order_by(Operation.created_at.desc())
                    .limit(1)
                )
            ).scalar_one_or_none()
            mint_operation = None
            if live_operation is None and record.token_id:
                mint_operation = (
                    await session.execute(
                        select(Operation)
                        .where(
                            Operation.custody_record_id == record_id,
                            Operation.operation_type == OperationType.MINT.value,
                            Operation.external_task_id == record.token_id,
                        )
                        .order_by(Operation.created_at.desc())
                        .limit(1)
                    )
                ).scalar_one_or_none()
            vault_id = record.vault_wallet.provider_vault_id if record.vault_wallet else None

        if live_operation is not None:
            operation, task_id = live_operation, live_operation.external_task_id
        elif (
            record.token_id
            and record.minted_at is None
            and record.status in (CustodyStatus.LINKED.value, CustodyStatus.FAILED.value)
        ):
            operation, task_id = mint_operation, record.token_id
        else:
            return MonitorResult(MonitorOutcome.SKIPPED, record.token_id, reason="nothing to resync")

        if not force:
            age = seconds_since(record.updated_at)
            if age is not None and age < self.resync_cooldown_seconds:
                return MonitorResult(MonitorOutcome.SKIPPED, task_id, reason="cooldown")
            claimed = await self.registry.store.set_if_absent(
                f"resync:{record_id}", True, ttl=self.resync_cooldown_seconds
            )
            if not claimed:
                return MonitorResult(MonitorOutcome.SKIPPED, task_id, reason="cooldown")

        handler = self._resync_handler(record, operation, task_id, vault_id)
        if not await self.registry.register(task_id, {"kind": "resync", "custody_record_id": record.id}):
            return MonitorResult(MonitorOutcome.SKIPPED, task_id, reason="monitor active")
        try:
            status = await handler.fetch_status(self.provider)
            logger.info(
                f"🔁 CUSTODY_RESYNC: {record.asset_id} {handler.kind} task {task_id} provider={status.status}"
            )
            if not status.is_terminal:
                if handler.context.operation_id:
                    async with async_managed_session() as session:
                        await mirror_provider_status(session, handler.context.operation_id, status.status, status.tx_hash)
                return MonitorResult(MonitorOutcome.SKIPPED, task_id, polls=1,
                                     last_status=status.status, reason="still pending")
            if status.is_failed and live_operation is None and record.status == CustodyStatus.FAILED.value:
                recovered = await handler.recovery_check(self.provider, status)
                if recovered is None:
                    return MonitorResult(MonitorOutcome.FAILED, task_id, polls=1,
                                         last_status=status.status, reason="already failed")
                result = await self._apply_success(handler, recovered, recovered=True, reported=status)
            else:
                result = await self._handle_terminal(handler, status)
            result.polls = 1
            return result
        finally:
            await self.registry.release(task_id)
