"""
Operation Service - maker-checker workflow

A maker initiates an operation against a custody record, a different
checker approves or rejects it, and approval hands execution to the
background runner. The caller gets the APPROVED operation back immediately;
the runner's completion channel and the operation/custody status show what
happened next.
"""

import hashlib
import json
import logging
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError

from database import async_managed_session
from models import CustodyRecord, CustodyStatus, Operation, OperationStatus, OperationType, TERMINAL_OPERATION_STATUSES
from services.audit_service import AuditEvent, AuditService
from services.custody_service import CustodyService
from services.errors import (
    BadRequestError, ConflictError, ForbiddenError, NotFoundError, ProviderError, ValidationError,
)
from services.operation_executor import ExecutionResult, OperationExecutor
from services.operation_ledger import load_operation, set_operation_status
from services.reconciliation_monitor import ReconciliationMonitor
from services.webhook_service import WebhookNotifier
from utils.background_task_runner import BackgroundTaskRunner
from utils.datetime_helpers import get_naive_utc_now

logger = logging.getLogger(__name__)

MINT_REQUIRED_FIELDS = ("asset_id", "token_symbol", "token_name", "total_supply", "decimals", "blockchain_id")


def generate_offchain_tx_hash(operation_type: str, custody_record_id: str, payload: Dict[str, Any], maker: str) -> str:
    """Opaque traceability hash for an operation that has no on-chain id yet"""
    material = json.dumps(
        {
            "type": operation_type,
            "custody_record_id": custody_record_id,
            "payload": payload,
            "maker": maker,
            "at": get_naive_utc_now().isoformat(),
        },
        sort_keys=True,
        default=str,
    )
    return "0x" + hashlib.sha256(material.encode("utf-8")).hexdigest()


class OperationService:
    """Maker-checker operations and their execution"""

    def __init__(
        self,
        custody: CustodyService,
        executor: OperationExecutor,
        monitor: ReconciliationMonitor,
        runner: BackgroundTaskRunner,
        audit: AuditService,
        notifier: WebhookNotifier,
    ):
        self.custody = custody
        self.executor = executor
        self.monitor = monitor
        self.runner = runner
        self.audit = audit
        self.notifier = notifier

    @staticmethod
    def execution_task_name(operation_id: str) -> str:
        return f"execute:{operation_id}"

    # ------------------------------------------------------------------
    # initiation
    # ------------------------------------------------------------------

    async def initiate_operation(
        self,
        operation_type: str,
        custody_record_id: str,
        payload: Optional[Dict[str, Any]],
        maker: str,
        tenant_id: Optional[str] = None,
    ) -> Operation:
        """Create a PENDING_CHECKER operation; one live operation per custody record"""
        if not maker:
            raise ValidationError("maker is required")
        try:
            operation_type = OperationType(operation_type).value
        except ValueError:
            raise ValidationError(f"Unknown operation type: {operation_type}")
        payload = dict(payload or {})

        async with async_managed_session() as session:
            record = await self.custody._load(session, custody_record_id, tenant_id)

            live = (
                await session.execute(
                    select(Operation).where(
                        Operation.custody_record_id == record.id,
                        Operation.status.notin_(TERMINAL_OPERATION_STATUSES),
                    )
                )
            ).scalars().first()
            if live is not None:
                raise ConflictError(
                    f"Custody record {record.id} already has a pending operation",
                    details={"operation_id": live.id, "status": live.status},
                )

            operation = Operation(
                operation_type=operation_type,
                status=OperationStatus.PENDING_CHECKER.value,
                custody_record_id=record.id,
                vault_wallet_id=record.vault_wallet_id,
                payload=payload,
                initiated_by=maker,
                offchain_tx_hash=generate_offchain_tx_hash(operation_type, record.id, payload, maker),
            )
            session.add(operation)
            try:
                await session.flush()
            except IntegrityError:
                # Lost the race to a concurrent initiation; the partial unique index decided
                raise ConflictError(f"Custody record {record.id} already has a pending operation")

            await self.audit.append(
                AuditEvent.OPERATION_CREATED,
                maker,
                {"operation_type": operation_type, "payload": payload, "offchain_tx_hash": operation.offchain_tx_hash},
                custody_record_id=record.id,
                operation_id=operation.id,
                session=session,
            )

        logger.info(f"📝 OPERATION_CREATED: {operation.id} {operation_type} on {custody_record_id} by {maker}")
        return operation

    async def initiate_mint_operation(
        self, custody_record_id: str, mint_params: Dict[str, Any], maker: str, tenant_id: Optional[str] = None
    ) -> Operation:
        missing = [name for name in MINT_REQUIRED_FIELDS if mint_params.get(name) in (None, "")]
        if missing:
            raise ValidationError(f"Missing mint parameters: {', '.join(missing)}", details={"missing": missing})

        try:
            total_supply = Decimal(str(mint_params["total_supply"]))
            decimals = int(mint_params["decimals"])
        except (InvalidOperation, ValueError, TypeError):
            raise ValidationError("total_supply must be a number and decimals an integer")
        if total_supply <= 0:
            raise ValidationError("total_supply must be positive")
        if not 0 <= decimals <= 36:
            raise ValidationError("decimals must be between 0 and 36")

        async with async_managed_session() as session:
            record = await self.custody._load(session, custody_record_id, tenant_id)
        if record.asset_id != mint_params["asset_id"]:
            raise ValidationError(f"asset_id does not match custody record {custody_record_id}")
        if not self.custody.is_mintable(record):
            raise BadRequestError(
                f"Asset must be LINKED (or FAILED before minting) to mint, current status is {record.status}"
            )

        payload = {
            "asset_id": mint_params["asset_id"],
            "token_symbol": str(mint_params["token_symbol"]).upper(),
            "token_name": mint_params["token_name"],
            "total_supply": str(total_supply),
            "decimals": decimals,
            "blockchain_id": mint_params["blockchain_id"],
        }
        if mint_params.get("contract_template_id"):
            payload["contract_template_id"] = mint_params["contract_template_id"]
        return await self.initiate_operation(OperationType.MINT.value, custody_record_id, payload, maker, tenant_id)

    # ------------------------------------------------------------------
    # checker decisions
    # ------------------------------------------------------------------

    async def approve_operation(
        self, operation_id: str, checker: str, bypass_maker_checker: bool = False
    ) -> Operation:
        """
        Approve and hand off to background execution.

        Re-approving an APPROVED operation re-submits execution instead of
        approving twice, so a caller can retry after a failed dispatch hand-off.
        """
        if not checker:
            raise ValidationError("checker is required")

        async with async_managed_session() as session:
            operation = await load_operation(session, operation_id, for_update=True)

            if checker == operation.initiated_by and not bypass_maker_checker:
                logger.warning(f"🚫 MAKER_CHECKER_VIOLATION: {checker} tried to approve own operation {operation_id}")
                raise ForbiddenError("Maker and checker must be different users")

            already_approved = operation.status == OperationStatus.APPROVED.value
            if already_approved:
                logger.info(f"🔁 OPERATION_REEXECUTE: {operation_id} already APPROVED, re-submitting execution")
            else:
                operation = await set_operation_status(
                    session,
                    operation,
                    OperationStatus.APPROVED.value,
                    self.audit,
                    checker,
                    details={"checker_identity": checker, "maker_identity": operation.initiated_by,
                             "bypass_maker_checker": bypass_maker_checker},
                    approved_by=checker,
                    approved_at=get_naive_utc_now(),
                )

        if not already_approved:
            logger.info(f"✅ OPERATION_APPROVED: {operation_id} by {checker}")
            await self.notifier.notify_status_update("operation.approved", operation.to_dict())
        self._submit_execution(operation.id)
        return operation

    async def reject_operation(self, operation_id: str, checker: str, reason: str) -> Operation:
        if not checker:
            raise ValidationError("checker is required")
        if not reason:
            raise ValidationError("A rejection reason is required")

        async with async_managed_session() as session:
            operation = await load_operation(session, operation_id, for_update=True)
            operation = await set_operation_status(
                session,
                operation,
                OperationStatus.REJECTED.value,
                self.audit,
                checker,
                details={"checker_identity": checker},
                rejected_by=checker,
                rejection_reason=reason,
            )

        logger.info(f"🚫 OPERATION_REJECTED: {operation_id} by {checker}: {reason}")
        await self.notifier.notify_status_update("operation.rejected", operation.to_dict())
        return operation

    # ------------------------------------------------------------------
    # execution
    # ------------------------------------------------------------------

    def _submit_execution(self, operation_id: str) -> None:
        name = self.execution_task_name(operation_id)
        if self.runner.is_running(name):
            logger.info(f"⏭️ EXECUTION_ALREADY_RUNNING: {operation_id}")
            return
        self.runner.submit(name, self._execute_in_background(operation_id))

    async def _execute_in_background(self, operation_id: str) -> Optional[Operation]:
        """Runner entry point: failures are already recorded on the operation, so only log them"""
        try:
            return await self.execute_operation(operation_id)
        except Exception as e:
            logger.error(f"❌ BACKGROUND_EXECUTION_FAILED: {operation_id}: {e}")
            return None

    async def execute_operation(self, operation_id: str) -> Operation:
        """Dispatch an APPROVED operation; on error mark it FAILED and re-raise"""
        async with async_managed_session() as session:
            operation = await load_operation(session, operation_id)
            if operation.status != OperationStatus.APPROVED.value:
                raise BadRequestError(
                    f"Operation {operation_id} is {operation.status}, only APPROVED operations execute"
                )
            record = await self.custody._load(session, operation.custody_record_id)

        try:
            result = await self.executor.execute(operation, record)
            operation = await self._record_dispatch(operation_id, result)
        except Exception as e:
            await self._mark_failed(operation_id, e)
            raise

        if result.reconciliation is not None:
            await self.monitor.start(result.reconciliation)

        await self.notifier.notify_status_update("operation.updated", operation.to_dict())
        return operation

    async def _record_dispatch(self, operation_id: str, result: ExecutionResult) -> Operation:
        async with async_managed_session() as session:
            operation = await load_operation(session, operation_id, for_update=True)
            fields = {
                "external_task_id": result.external_task_id,
                "tx_hash": result.tx_hash,
                "provider_status": result.provider_status,
            }
            return await set_operation_status(
                session,
                operation,
                result.final_status,
                self.audit,
                operation.approved_by or "system",
                details=result.detail,
                **{k: v for k, v in fields.items() if v is not None},
            )

    async def _mark_failed(self, operation_id: str, error: Exception) -> None:
        details: Dict[str, Any] = {"error_type": type(error).__name__}
        if isinstance(error, ProviderError):
            details.update(error.to_dict().get("details") or {})
            if error.raw:
                details["raw"] = error.raw

        async with async_managed_session() as session:
            operation = await load_operation(session, operation_id, for_update=True)
            if operation.is_terminal:
                logger.warning(f"⚠️ OPERATION_ALREADY_TERMINAL: {operation_id} is {operation.status}")
                return
            operation = await set_operation_status(
                session,
                operation,
                OperationStatus.FAILED.value,
                self.audit,
                "system",
                failure_reason=str(error) or type(error).__name__,
                failure_details=details,
            )

        logger.error(f"❌ OPERATION_FAILED: {operation_id}: {error}")
        await self.notifier.notify_status_update("operation.failed", operation.to_dict())

    # ------------------------------------------------------------------
    # reads
    # ------------------------------------------------------------------

    async def get_operation_details(self, operation_id: str, tenant_id: Optional[str] = None) -> Dict[str, Any]:
        async with async_managed_session() as session:
            operation = await load_operation(session, operation_id)
            record = operation.custody_record
            if tenant_id is not None and (record is None or record.tenant_id != tenant_id):
                raise NotFoundError(f"Operation {operation_id} not found")

        data = operation.to_dict()
        data["custody_record"] = record.to_dict() if record else None
        outcome = self.runner.last_outcome(self.execution_task_name(operation_id))
        data["execution_state"] = (
            "running" if self.runner.is_running(self.execution_task_name(operation_id))
            else outcome.state.value if outcome else None
        )
        return data

    async def list_operations(
        self,
        custody_record_id: Optional[str] = None,
        status: Optional[str] = None,
        operation_type: Optional[str] = None,
        tenant_id: Optional[str] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> Tuple[List[Operation], int]:
        if status is not None and status not in {s.value for s in OperationStatus}:
            raise ValidationError(f"Unknown operation status: {status}")
        if operation_type is not None and operation_type not in {t.value for t in OperationType}:
            raise ValidationError(f"Unknown operation type: {operation_type}")

        conditions = []
        if custody_record_id is not None:
            conditions.append(Operation.custody_record_id == custody_record_id)
        if status is not None:
            conditions.append(Operation.status == status)
        if operation_type is not None:
            conditions.append(Operation.operation_type == operation_type)
        if tenant_id is not None:
            conditions.append(
                Operation.custody_record_id.in_(select(CustodyRecord.id).where(CustodyRecord.tenant_id == tenant_id))
            )

        async with async_managed_session() as session:
            stmt = select(Operation).where(*conditions).order_by(Operation.created_at.desc()).limit(limit).offset(offset)
            operations = list((await session.execute(stmt)).scalars().all())
            total = (await session.execute(select(func.count(Operation.id)).where(*conditions))).scalar_one()
        return operations, total
