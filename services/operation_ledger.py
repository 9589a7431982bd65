"""Shared persistence helpers for Operation rows"""

import logging
from typing import Any, Dict, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from models import Operation, OperationStatus
from services.audit_service import AuditEvent, AuditService
from services.errors import NotFoundError
from utils.custody_state_machine import OperationStateValidator
from utils.datetime_helpers import get_naive_utc_now

logger = logging.getLogger(__name__)

_EVENT_BY_STATUS = {
    OperationStatus.APPROVED.value: AuditEvent.OPERATION_APPROVED,
    OperationStatus.REJECTED.value: AuditEvent.OPERATION_REJECTED,
    OperationStatus.EXECUTED.value: AuditEvent.OPERATION_EXECUTED,
    OperationStatus.FAILED.value: AuditEvent.OPERATION_FAILED,
}

# Columns set_operation_status may write alongside the status
OPERATION_FIELDS = (
    "approved_by", "approved_at", "rejected_by", "rejection_reason", "external_task_id",
    "provider_status", "tx_hash", "failure_reason", "failure_details", "executed_at",
)


async def load_operation(session: AsyncSession, operation_id: str, for_update: bool = False) -> Operation:
    stmt = select(Operation).where(Operation.id == operation_id)
    if for_update:
        stmt = stmt.with_for_update()
    operation = (await session.execute(stmt)).scalar_one_or_none()
    if operation is None:
        raise NotFoundError(f"Operation {operation_id} not found")
    return operation


async def set_operation_status(
    session: AsyncSession,
    operation: Operation,
    new_status: str,
    audit: AuditService,
    actor: str,
    details: Optional[Dict[str, Any]] = None,
    **fields: Any,
) -> Operation:
    """Validate and apply one operation status change plus its audit entry"""
    current_status = operation.status
    OperationStateValidator.validate_transition(current_status, new_status)

    for name, value in fields.items():
        if name not in OPERATION_FIELDS:
            raise ValueError(f"Unknown operation field: {name}")
        setattr(operation, name, value)

    if new_status == OperationStatus.EXECUTED.value and operation.executed_at is None:
        operation.executed_at = get_naive_utc_now()

    operation.status = new_status
    operation.updated_at = get_naive_utc_now()
    await session.flush()

    event_type = _EVENT_BY_STATUS.get(new_status)
    if event_type is not None:
        await audit.append(
            event_type,
            actor,
            {
                "from_status": current_status,
                "to_status": new_status,
                "operation_type": operation.operation_type,
                **{k: v for k, v in fields.items() if v is not None},
                **(details or {}),
            },
            custody_record_id=operation.custody_record_id,
            operation_id=operation.id,
            session=session,
        )
    logger.info(f"🔄 OPERATION_TRANSITION: {operation.id} {current_status} -> {new_status}")
    return operation


async def mirror_provider_status(
    session: AsyncSession,
    operation_id: str,
    provider_status: str,
    tx_hash: Optional[str] = None,
) -> Optional[Operation]:
    """Update the granular provider status without changing the operation status"""
    operation = await load_operation(session, operation_id)
    if operation.is_terminal:
        return operation
    operation.provider_status = provider_status
    if tx_hash:
        operation.tx_hash = tx_hash
    operation.updated_at = get_naive_utc_now()
    await session.flush()
    return operation
