"""
Append-only audit trail

Every custody/operation state transition writes exactly one row here. Rows
are mirrored as JSON lines on the dedicated 'audit' logger so an operator can
ship them to a file or SIEM. There is intentionally no update or delete API.
"""

import json
import logging
from typing import Any, Dict, List, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from database import async_managed_session
from models import AuditLog

logger = logging.getLogger(__name__)
audit_logger = logging.getLogger("audit")


class AuditEvent:
    """Audit event type names"""

    ASSET_LINKED = "ASSET_LINKED"
    CUSTODY_LINKED = "CUSTODY_LINKED"
    CUSTODY_REJECTED = "CUSTODY_REJECTED"
    CUSTODY_FAILED = "CUSTODY_FAILED"
    CUSTODY_RECOVERED = "CUSTODY_RECOVERED"
    CUSTODY_STATUS_CHANGED = "CUSTODY_STATUS_CHANGED"
    GAS_FUNDING_DEFERRED = "GAS_FUNDING_DEFERRED"

    OPERATION_CREATED = "OPERATION_CREATED"
    OPERATION_APPROVED = "OPERATION_APPROVED"
    OPERATION_REJECTED = "OPERATION_REJECTED"
    OPERATION_EXECUTED = "OPERATION_EXECUTED"
    OPERATION_FAILED = "OPERATION_FAILED"

    TOKEN_MINT_INITIATED = "TOKEN_MINT_INITIATED"
    TOKEN_MINTED = "TOKEN_MINTED"
    TOKEN_MINT_RECOVERED = "TOKEN_MINT_RECOVERED"
    TOKEN_MINT_FAILED = "TOKEN_MINT_FAILED"
    TOKEN_MINT_TIMEOUT = "TOKEN_MINT_TIMEOUT"
    TOKEN_BURN_INITIATED = "TOKEN_BURN_INITIATED"
    TOKEN_BURNED = "TOKEN_BURNED"
    TOKEN_PARTIALLY_BURNED = "TOKEN_PARTIALLY_BURNED"
    TOKEN_BURN_RECOVERED = "TOKEN_BURN_RECOVERED"
    TOKEN_BURN_FAILED = "TOKEN_BURN_FAILED"
    TOKEN_BURN_TIMEOUT = "TOKEN_BURN_TIMEOUT"
    TOKEN_FROZEN = "TOKEN_FROZEN"
    TOKEN_UNFROZEN = "TOKEN_UNFROZEN"
    TOKEN_TRANSFERRED = "TOKEN_TRANSFERRED"
    RECONCILIATION_ERROR = "RECONCILIATION_ERROR"
    ON_CHAIN_SUBMISSION = "ON_CHAIN_SUBMISSION"
    BLOCK_PROPAGATION = "BLOCK_PROPAGATION"
    FINALIZING_SETTLEMENT = "FINALIZING_SETTLEMENT"

    LISTING_CREATED = "LISTING_CREATED"
    LISTING_CANCELLED = "LISTING_CANCELLED"
    LISTING_EXPIRED = "LISTING_EXPIRED"
    BID_PLACED = "BID_PLACED"
    BID_ACCEPTED = "BID_ACCEPTED"
    BID_REJECTED = "BID_REJECTED"
    OWNERSHIP_TRANSFERRED = "OWNERSHIP_TRANSFERRED"
    PURCHASE_PAYMENT_ORPHANED = "PURCHASE_PAYMENT_ORPHANED"
    BALANCE_CREDITED = "BALANCE_CREDITED"


class AuditService:
    """Service for the append-only audit trail"""

    async def append(
        self,
        event_type: str,
        actor: str,
        details: Optional[Dict[str, Any]] = None,
        custody_record_id: Optional[str] = None,
        operation_id: Optional[str] = None,
        session: Optional[AsyncSession] = None,
    ) -> str:
        """
        Append one audit entry and return its id.

        With a session the row joins the caller's transaction, so it commits
        or rolls back together with the state change it describes.
        """
        entry = AuditLog(
            event_type=event_type,
            actor=actor or "system",
            custody_record_id=custody_record_id,
            operation_id=operation_id,
            details=_json_safe(details or {}),
        )

        if session is None:
            async with async_managed_session() as new_session:
                new_session.add(entry)
                await new_session.flush()
        else:
            session.add(entry)
            await session.flush()

        audit_logger.info(json.dumps({
            "id": entry.id,
            "event_type": event_type,
            "actor": entry.actor,
            "custody_record_id": custody_record_id,
            "operation_id": operation_id,
            "details": entry.details,
        }, default=str))
        logger.debug(f"📝 AUDIT: {event_type} by {entry.actor} (record={custody_record_id}, op={operation_id})")
        return entry.id

    async def list_events(
        self,
        custody_record_id: Optional[str] = None,
        operation_id: Optional[str] = None,
        event_type: Optional[str] = None,
        limit: int = 100,
    ) -> List[AuditLog]:
        """Read the trail oldest-first, optionally filtered"""
        async with async_managed_session() as session:
            stmt = select(AuditLog)
            if custody_record_id:
                stmt = stmt.where(AuditLog.custody_record_id == custody_record_id)
            if operation_id:
                stmt = stmt.where(AuditLog.operation_id == operation_id)
            if event_type:
                stmt = stmt.where(AuditLog.event_type == event_type)
            stmt = stmt.order_by(AuditLog.created_at.asc()).limit(limit)
            result = await session.execute(stmt)
            return list(result.scalars().all())


def _json_safe(details: Dict[str, Any]) -> Dict[str, Any]:
    """Round-trip through json so Decimal/datetime values become strings"""
    return json.loads(json.dumps(details, default=str))
