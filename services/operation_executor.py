"""
Provider Executor
=================

Turns an APPROVED operation into exactly one provider call. Dispatch is
closed over OperationType: OPERATION_HANDLERS maps every member to one
handler class and the module refuses to import when a member is missing.

Synchronous kinds (LINK_ASSET, FREEZE, UNFREEZE, TRANSFER) finish as
EXECUTED. MINT and BURN finish as EXECUTING and hand back a reconciliation
handler for the monitor to follow.
"""

import logging
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Optional, Type

from config import Config
from models import CustodyRecord, CustodyStatus, Operation, OperationStatus, OperationType
from services.audit_service import AuditEvent
from services.custody_provider import TokenConfig
from services.errors import BadRequestError, ProviderError, ValidationError
from services.reconciliation_monitor import (
    BackoffPolicy, BurnReconciliation, MintReconciliation, ReconciliationContext, ReconciliationHandler,
)
from utils.datetime_helpers import get_naive_utc_now

logger = logging.getLogger(__name__)

BURN_SELECTOR = "0x42966c68"  # burn(uint256)
DEFAULT_TOKEN_DECIMALS = 18


@dataclass
class ExecutionResult:
    final_status: str
    external_task_id: Optional[str] = None
    tx_hash: Optional[str] = None
    provider_status: Optional[str] = None
    detail: Dict[str, Any] = field(default_factory=dict)
    reconciliation: Optional[ReconciliationHandler] = None


def to_base_units(amount: Any, decimals: int) -> int:
    try:
        value = Decimal(str(amount))
    except (InvalidOperation, ValueError):
        raise ValidationError(f"Invalid amount: {amount}")
    return int(value * (Decimal(10) ** decimals))


def encode_burn_call_data(amount: Any, decimals: int) -> str:
    """ABI-encode burn(uint256) for a human amount with the token's decimals"""
    base_units = to_base_units(amount, decimals)
    if base_units <= 0 or base_units >= 2 ** 256:
        raise ValidationError(f"Burn amount out of range: {amount}")
    return BURN_SELECTOR + format(base_units, "064x")


def _require_positive(payload: Dict[str, Any], key: str) -> Decimal:
    raw = payload.get(key)
    try:
        value = Decimal(str(raw))
    except (InvalidOperation, ValueError):
        raise ValidationError(f"{key} must be a number, got {raw!r}")
    if value <= 0:
        raise ValidationError(f"{key} must be positive, got {raw}")
    return value


def _vault_id(record: CustodyRecord) -> str:
    if record.vault_wallet is None:
        raise BadRequestError(f"Custody record {record.id} has no vault wallet")
    return record.vault_wallet.provider_vault_id


class OperationHandler:
    """Common interface for one operation kind"""

    def __init__(self, executor: "OperationExecutor"):
        self.executor = executor

    @property
    def custody(self):
        return self.executor.custody

    @property
    def provider(self):
        return self.executor.provider

    async def execute(self, operation: Operation, record: CustodyRecord) -> ExecutionResult:
        raise NotImplementedError


class LinkAssetHandler(OperationHandler):
    async def execute(self, operation: Operation, record: CustodyRecord) -> ExecutionResult:
        checker = operation.approved_by or operation.initiated_by
        linked = await self.custody.approve_link(record.id, checker)
        return ExecutionResult(
            final_status=OperationStatus.EXECUTED.value,
            detail={"vault_wallet_id": linked.vault_wallet_id, "custody_status": linked.status},
        )


class MintHandler(OperationHandler):
    async def execute(self, operation: Operation, record: CustodyRecord) -> ExecutionResult:
        if not self.custody.is_mintable(record):
            raise BadRequestError(f"Cannot mint for custody record in status {record.status}")
        payload = operation.payload or {}
        vault_id = _vault_id(record)
        blockchain = payload.get("blockchain_id") or record.blockchain or Config.DEFAULT_BLOCKCHAIN
        total_supply = _require_positive(payload, "total_supply")

        # Never submit against an unfunded vault
        await self.executor.gas_station.ensure_gas_for_vault(vault_id, blockchain, wait=True)

        token_config = TokenConfig(
            name=payload["token_name"],
            symbol=payload["token_symbol"],
            decimals=int(payload.get("decimals", DEFAULT_TOKEN_DECIMALS)),
            total_supply=str(total_supply),
            blockchain_id=blockchain,
            contract_template_id=payload.get("contract_template_id"),
        )
        issued = await self.provider.issue_token(vault_id, token_config)
        logger.info(f"🪙 MINT_DISPATCHED: operation {operation.id} task {issued.task_id} ({issued.status})")

        await self.custody.attach_pending_token(
            record.id, issued.task_id, token_config.symbol, operation.approved_by or "system", operation.id
        )
        handler = MintReconciliation(
            ReconciliationContext(
                task_id=issued.task_id,
                custody_record_id=record.id,
                operation_id=operation.id,
                actor=operation.approved_by or "system",
                vault_id=vault_id,
                token_symbol=token_config.symbol,
                total_supply=str(total_supply),
            ),
            self.executor.mint_policy,
        )
        return ExecutionResult(
            final_status=OperationStatus.EXECUTING.value,
            external_task_id=issued.task_id,
            provider_status=issued.status,
            detail={"token_symbol": token_config.symbol, "vault_id": vault_id},
            reconciliation=handler,
        )


class BurnHandler(OperationHandler):
    async def execute(self, operation: Operation, record: CustodyRecord) -> ExecutionResult:
        if record.status != CustodyStatus.MINTED.value or not record.token_id:
            raise BadRequestError(f"Cannot burn for custody record in status {record.status}")
        payload = operation.payload or {}
        amount = _require_positive(payload, "amount")
        if amount > Decimal(record.quantity or "0"):
            raise ValidationError(f"Burn amount {amount} exceeds quantity {record.quantity}")
        vault_id = _vault_id(record)

        token = await self.provider.get_task_status(record.token_id)
        contract_address = token.contract_address or record.token_address
        if not contract_address:
            raise ProviderError(f"No contract address for token {record.token_id}")
        decimals = token.decimals if token.decimals is not None else DEFAULT_TOKEN_DECIMALS
        blockchain = token.blockchain_id or record.blockchain or Config.DEFAULT_BLOCKCHAIN

        await self.executor.gas_station.ensure_gas_for_vault(vault_id, blockchain, wait=True)

        call_data = encode_burn_call_data(amount, decimals)
        tx_id = await self.provider.contract_call(
            vault_id, contract_address, call_data, blockchain, note=f"Burn {amount} {record.token_symbol or ''}".strip()
        )
        logger.info(f"🔥 BURN_DISPATCHED: operation {operation.id} tx {tx_id} amount {amount}")

        await self.executor.audit.append(
            AuditEvent.TOKEN_BURN_INITIATED,
            operation.approved_by or "system",
            {"tx_id": tx_id, "amount": str(amount), "contract_address": contract_address, "call_data": call_data},
            custody_record_id=record.id,
            operation_id=operation.id,
        )
        handler = BurnReconciliation(
            ReconciliationContext(
                task_id=tx_id,
                custody_record_id=record.id,
                operation_id=operation.id,
                actor=operation.approved_by or "system",
                vault_id=vault_id,
                token_symbol=record.token_symbol,
                amount=str(amount),
            ),
            self.executor.burn_policy,
        )
        return ExecutionResult(
            final_status=OperationStatus.EXECUTING.value,
            external_task_id=tx_id,
            detail={"amount": str(amount), "decimals": decimals},
            reconciliation=handler,
        )


class FreezeHandler(OperationHandler):
    async def execute(self, operation: Operation, record: CustodyRecord) -> ExecutionResult:
        reason = (operation.payload or {}).get("reason")
        frozen = await self.custody.freeze_token(
            record.id, operation.approved_by or "system", reason, operation_id=operation.id
        )
        return ExecutionResult(final_status=OperationStatus.EXECUTED.value, detail={"custody_status": frozen.status})


class UnfreezeHandler(OperationHandler):
    async def execute(self, operation: Operation, record: CustodyRecord) -> ExecutionResult:
        reason = (operation.payload or {}).get("reason")
        unfrozen = await self.custody.unfreeze_token(
            record.id, operation.approved_by or "system", reason, operation_id=operation.id
        )
        return ExecutionResult(final_status=OperationStatus.EXECUTED.value, detail={"custody_status": unfrozen.status})


class TransferHandler(OperationHandler):
    async def execute(self, operation: Operation, record: CustodyRecord) -> ExecutionResult:
        payload = operation.payload or {}
        amount = _require_positive(payload, "amount")
        to_vault_id = payload.get("to_vault_id")
        if not to_vault_id:
            raise ValidationError("to_vault_id is required for a transfer")
        from_vault_id = payload.get("from_vault_id") or _vault_id(record)
        asset_symbol = payload.get("asset_symbol") or record.blockchain or Config.DEFAULT_BLOCKCHAIN
        withdrawal = bool(payload.get("withdrawal"))
        if withdrawal and record.status != CustodyStatus.MINTED.value:
            raise BadRequestError(f"Cannot withdraw custody record in status {record.status}")

        tx_id = await self.provider.transfer(from_vault_id, to_vault_id, asset_symbol, amount)
        logger.info(f"💸 TRANSFER_DISPATCHED: operation {operation.id} tx {tx_id}")

        if withdrawal:
            await self.custody.transition_status(
                record.id,
                CustodyStatus.WITHDRAWN.value,
                {"withdrawn_at": get_naive_utc_now(), "tx_hash": tx_id, "to_vault_id": to_vault_id, "amount": str(amount)},
                operation.approved_by or "system",
                operation_id=operation.id,
            )
        return ExecutionResult(
            final_status=OperationStatus.EXECUTED.value,
            external_task_id=tx_id,
            tx_hash=tx_id,
            detail={"to_vault_id": to_vault_id, "amount": str(amount), "withdrawal": withdrawal},
        )


OPERATION_HANDLERS: Dict[OperationType, Type[OperationHandler]] = {
    OperationType.LINK_ASSET: LinkAssetHandler,
    OperationType.MINT: MintHandler,
    OperationType.BURN: BurnHandler,
    OperationType.FREEZE: FreezeHandler,
    OperationType.UNFREEZE: UnfreezeHandler,
    OperationType.TRANSFER: TransferHandler,
}

_unhandled = set(OperationType) - set(OPERATION_HANDLERS)
if _unhandled:
    raise RuntimeError(f"No executor handler for operation types: {sorted(t.value for t in _unhandled)}")


class OperationExecutor:
    """Selects the handler for an operation's type and runs it"""

    def __init__(self, custody, provider, gas_station, audit,
                 mint_policy: Optional[BackoffPolicy] = None, burn_policy: Optional[BackoffPolicy] = None):
        self.custody = custody
        self.provider = provider
        self.gas_station = gas_station
        self.audit = audit
        self.mint_policy = mint_policy or BackoffPolicy.for_mint()
        self.burn_policy = burn_policy or BackoffPolicy.for_burn()
        self._handlers = {op_type: handler_cls(self) for op_type, handler_cls in OPERATION_HANDLERS.items()}

    def handler_for(self, operation_type: str) -> OperationHandler:
        try:
            return self._handlers[OperationType(operation_type)]
        except ValueError:
            raise ValidationError(f"Unknown operation type: {operation_type}")

    async def execute(self, operation: Operation, record: CustodyRecord) -> ExecutionResult:
        handler = self.handler_for(operation.operation_type)
        logger.info(f"⚙️ OPERATION_DISPATCH: {operation.id} {operation.operation_type} via {type(handler).__name__}")
        return await handler.execute(operation, record)
