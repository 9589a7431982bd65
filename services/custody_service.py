"""
Custody Service - lifecycle of custody records

Linking, link approval (vault + wallet provisioning), rejection, and the
single generic status mutator used by the operation executor and the
reconciliation monitor. Every status change goes through
CustodyStateValidator and writes exactly one audit entry in the same
transaction.
"""

import hashlib
import logging
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from config import Config
from database import async_managed_session
from models import CustodyRecord, CustodyStatus, VaultWallet, VaultType
from services.audit_service import AuditEvent, AuditService
from services.custody_provider import CustodyProvider
from services.errors import ConflictError, NotFoundError, ValidationError
from services.gas_service import GasStationService
from services.webhook_service import WebhookNotifier
from utils.custody_state_machine import CustodyStateValidator
from utils.datetime_helpers import get_naive_utc_now, whole_days_since

logger = logging.getLogger(__name__)


# Fields transition_status may copy from metadata onto the record
TRANSITION_FIELDS = (
    "vault_wallet_id", "blockchain", "token_standard", "token_address", "token_id", "token_symbol",
    "quantity", "tx_hash", "failure_reason", "failure_details", "approved_by", "rejection_reason",
    "linked_at", "minted_at", "withdrawn_at", "burned_at", "frozen_at",
)

_EVENT_BY_TARGET = {
    CustodyStatus.PENDING.value: AuditEvent.ASSET_LINKED,
    CustodyStatus.LINKED.value: AuditEvent.CUSTODY_LINKED,
    CustodyStatus.UNLINKED.value: AuditEvent.CUSTODY_REJECTED,
    CustodyStatus.MINTED.value: AuditEvent.TOKEN_MINTED,
    CustodyStatus.BURNED.value: AuditEvent.TOKEN_BURNED,
    CustodyStatus.WITHDRAWN.value: AuditEvent.TOKEN_TRANSFERRED,
    CustodyStatus.FROZEN.value: AuditEvent.TOKEN_FROZEN,
    CustodyStatus.FAILED.value: AuditEvent.CUSTODY_FAILED,
}

_EVENT_BY_PAIR = {
    (CustodyStatus.FROZEN.value, CustodyStatus.MINTED.value): AuditEvent.TOKEN_UNFROZEN,
    (CustodyStatus.MINTED.value, CustodyStatus.MINTED.value): AuditEvent.TOKEN_PARTIALLY_BURNED,
    (CustodyStatus.FAILED.value, CustodyStatus.LINKED.value): AuditEvent.CUSTODY_RECOVERED,
}


def transition_event_type(current_status: Optional[str], new_status: str) -> str:
    return _EVENT_BY_PAIR.get((current_status, new_status)) or _EVENT_BY_TARGET.get(
        new_status, AuditEvent.CUSTODY_STATUS_CHANGED
    )


class CustodyService:
    """Custody record lifecycle"""

    def __init__(
        self,
        provider: CustodyProvider,
        audit: AuditService,
        notifier: WebhookNotifier,
        gas_station: GasStationService,
        default_blockchain: Optional[str] = None,
    ):
        self.provider = provider
        self.audit = audit
        self.notifier = notifier
        self.gas_station = gas_station
        self.default_blockchain = default_blockchain or Config.DEFAULT_BLOCKCHAIN
        # Wired by the engine; used for on-demand resync on reads
        self.reconciliation = None

    # ------------------------------------------------------------------
    # helpers
    # ------------------------------------------------------------------

    @staticmethod
    def generate_public_contract_address(asset_id: str, blockchain: str) -> str:
        digest = hashlib.sha256(f"{asset_id}:{blockchain}".encode("utf-8")).hexdigest()[:40]
        return f"alca_{blockchain.lower()}_{digest}"

    @staticmethod
    async def _load(
        session: AsyncSession, record_id: str, tenant_id: Optional[str] = None, for_update: bool = False
    ) -> CustodyRecord:
        stmt = select(CustodyRecord).where(CustodyRecord.id == record_id)
        if for_update:
            stmt = stmt.with_for_update()
        record = (await session.execute(stmt)).scalar_one_or_none()
        # Tenant mismatch is reported as not found to avoid leaking existence
        if record is None or (tenant_id is not None and record.tenant_id != tenant_id):
            raise NotFoundError(f"Custody record {record_id} not found")
        return record

    @staticmethod
    def is_mintable(record: CustodyRecord) -> bool:
        """LINKED, or FAILED before any token was minted (a failed mint can be retried)"""
        if record.status == CustodyStatus.LINKED.value:
            return True
        return record.status == CustodyStatus.FAILED.value and record.minted_at is None

    @staticmethod
    def _normalize_quantity(value: Any) -> str:
        try:
            quantity = Decimal(str(value))
        except (InvalidOperation, ValueError):
            raise ValidationError(f"Invalid quantity: {value}")
        if quantity < 0:
            raise ValidationError(f"Quantity cannot be negative: {value}")
        return format(quantity.normalize(), "f") if quantity != quantity.to_integral() else str(int(quantity))

    # ------------------------------------------------------------------
    # generic mutator
    # ------------------------------------------------------------------

    async def transition_status(
        self,
        record_id: str,
        new_status: str,
        metadata: Optional[Dict[str, Any]] = None,
        actor: str = "system",
        session: Optional[AsyncSession] = None,
        operation_id: Optional[str] = None,
    ) -> CustodyRecord:
        """Validate and apply one status change plus its audit entry"""
        if session is None:
            async with async_managed_session() as new_session:
                return await self._transition(new_session, record_id, new_status, metadata, actor, operation_id)
        return await self._transition(session, record_id, new_status, metadata, actor, operation_id)

    async def _transition(
        self,
        session: AsyncSession,
        record_id: str,
        new_status: str,
        metadata: Optional[Dict[str, Any]],
        actor: str,
        operation_id: Optional[str],
    ) -> CustodyRecord:
        record = await self._load(session, record_id, for_update=True)
        current_status = record.status
        CustodyStateValidator.validate_transition(current_status, new_status)

        metadata = dict(metadata or {})
        for field_name in TRANSITION_FIELDS:
            if field_name in metadata:
                value = metadata[field_name]
                if field_name == "quantity" and value is not None:
                    value = self._normalize_quantity(value)
                setattr(record, field_name, value)

        if new_status == CustodyStatus.FROZEN.value and "frozen_at" not in metadata:
            record.frozen_at = get_naive_utc_now()
        if new_status in (CustodyStatus.LINKED.value, CustodyStatus.MINTED.value):
            # A successful move clears any previous failure
            if "failure_reason" not in metadata:
                record.failure_reason = None
                record.failure_details = None

        record.status = new_status
        record.updated_at = get_naive_utc_now()
        await session.flush()

        event_type = transition_event_type(current_status, new_status)
        await self.audit.append(
            event_type,
            actor,
            {"from_status": current_status, "to_status": new_status, **metadata},
            custody_record_id=record.id,
            operation_id=operation_id,
            session=session,
        )
        logger.info(f"🔄 CUSTODY_TRANSITION: {record.asset_id} {current_status} -> {new_status} ({event_type})")
        return record

    # ------------------------------------------------------------------
    # linking
    # ------------------------------------------------------------------

    async def link_asset(
        self,
        asset_id: str,
        tenant_id: str,
        created_by: str,
        metadata: Optional[Dict[str, Any]] = None,
        blockchain: Optional[str] = None,
    ) -> CustodyRecord:
        """Request custody for an asset; creates a PENDING record"""
        if not asset_id or not tenant_id or not created_by:
            raise ValidationError("asset_id, tenant_id and created_by are required")

        blockchain = blockchain or self.default_blockchain
        async with async_managed_session() as session:
            existing = (
                await session.execute(select(CustodyRecord).where(CustodyRecord.asset_id == asset_id))
            ).scalar_one_or_none()

            if existing is not None:
                if existing.status != CustodyStatus.UNLINKED.value or existing.tenant_id != tenant_id:
                    raise ConflictError(f"Asset {asset_id} is already linked", details={"status": existing.status})
                # A rejected link can be requested again
                if metadata:
                    existing.asset_metadata = metadata
                return await self._transition(
                    session, existing.id, CustodyStatus.PENDING.value, {"rejection_reason": None}, created_by, None
                )

            record = CustodyRecord(
                asset_id=asset_id,
                tenant_id=tenant_id,
                created_by=created_by,
                status=CustodyStatus.PENDING.value,
                blockchain=blockchain,
                public_contract_address=self.generate_public_contract_address(asset_id, blockchain),
                asset_metadata=metadata or {},
                quantity="0",
            )
            session.add(record)
            try:
                await session.flush()
            except IntegrityError:
                raise ConflictError(f"Asset {asset_id} is already linked")

            await self.audit.append(
                AuditEvent.ASSET_LINKED,
                created_by,
                {"asset_id": asset_id, "tenant_id": tenant_id, "to_status": CustodyStatus.PENDING.value},
                custody_record_id=record.id,
                session=session,
            )

        logger.info(f"✅ CUSTODY_LINK_REQUESTED: {asset_id} for tenant {tenant_id} (record {record.id})")
        return record

    async def approve_link(self, record_id: str, checker: str, tenant_id: Optional[str] = None) -> CustodyRecord:
        """
        Provision vault + wallet, request gas, persist the VaultWallet and move to LINKED.

        Gas funding failures are logged and audited but do not block approval;
        the mint pre-flight re-checks gas before any on-chain work.
        """
        async with async_managed_session() as session:
            record = await self._load(session, record_id, tenant_id)
            CustodyStateValidator.validate_transition(record.status, CustodyStatus.LINKED.value)
            asset_id = record.asset_id
            blockchain = record.blockchain or self.default_blockchain

        vault_id = await self.provider.create_vault(f"AssetLink-{asset_id}", customer_ref_id=record_id)
        address = await self.provider.create_or_get_address(vault_id, blockchain)

        funding_tx_id = None
        try:
            gas = await self.gas_station.ensure_gas_for_vault(vault_id, blockchain, wait=False)
            funding_tx_id = gas.funding_tx_id
        except Exception as e:
            logger.warning(f"⚠️ GAS_FUNDING_DEFERRED: vault {vault_id} for {asset_id}: {e}")
            await self.audit.append(
                AuditEvent.GAS_FUNDING_DEFERRED,
                "system",
                {"vault_id": vault_id, "blockchain": blockchain, "error": str(e)},
                custody_record_id=record_id,
            )

        now = get_naive_utc_now()
        async with async_managed_session() as session:
            wallet = VaultWallet(
                provider_vault_id=str(vault_id),
                blockchain=blockchain,
                address=address,
                vault_type=VaultType.CUSTODY.value,
                gas_funding_tx_id=funding_tx_id,
                gas_funded_at=now if funding_tx_id else None,
            )
            session.add(wallet)
            await session.flush()

            record = await self._transition(
                session,
                record_id,
                CustodyStatus.LINKED.value,
                {
                    "vault_wallet_id": wallet.id,
                    "blockchain": blockchain,
                    "approved_by": checker,
                    "linked_at": now,
                    "provider_vault_id": str(vault_id),
                    "address": address,
                },
                checker,
                None,
            )

        logger.info(f"✅ CUSTODY_LINKED: {asset_id} vault={vault_id} address={address}")
        await self.notifier.notify_status_update("custody.linked", record.to_dict())
        return record

    async def reject_link(self, record_id: str, reason: str, actor: str, tenant_id: Optional[str] = None) -> CustodyRecord:
        if not reason:
            raise ValidationError("A rejection reason is required")
        async with async_managed_session() as session:
            await self._load(session, record_id, tenant_id)
            record = await self._transition(
                session, record_id, CustodyStatus.UNLINKED.value, {"rejection_reason": reason}, actor, None
            )
        logger.info(f"🚫 CUSTODY_LINK_REJECTED: {record.asset_id}: {reason}")
        await self.notifier.notify_status_update("custody.rejected", record.to_dict())
        return record

    # ------------------------------------------------------------------
    # token state helpers used by the executor
    # ------------------------------------------------------------------

    async def attach_pending_token(
        self,
        record_id: str,
        task_id: str,
        token_symbol: Optional[str],
        actor: str,
        operation_id: Optional[str] = None,
        session: Optional[AsyncSession] = None,
    ) -> None:
        """Remember the provider task id before completion so resync can find it"""
        async def _attach(s: AsyncSession):
            record = await self._load(s, record_id, for_update=True)
            record.token_id = task_id
            if token_symbol:
                record.token_symbol = token_symbol
            record.updated_at = get_naive_utc_now()
            await s.flush()
            await self.audit.append(
                AuditEvent.TOKEN_MINT_INITIATED,
                actor,
                {"token_link_id": task_id, "token_symbol": token_symbol},
                custody_record_id=record_id,
                operation_id=operation_id,
                session=s,
            )

        if session is None:
            async with async_managed_session() as new_session:
                await _attach(new_session)
        else:
            await _attach(session)

    async def freeze_token(
        self, record_id: str, actor: str, reason: Optional[str] = None,
        session: Optional[AsyncSession] = None, operation_id: Optional[str] = None,
    ) -> CustodyRecord:
        return await self.transition_status(
            record_id, CustodyStatus.FROZEN.value, {"reason": reason}, actor, session, operation_id
        )

    async def unfreeze_token(
        self, record_id: str, actor: str, reason: Optional[str] = None,
        session: Optional[AsyncSession] = None, operation_id: Optional[str] = None,
    ) -> CustodyRecord:
        return await self.transition_status(
            record_id, CustodyStatus.MINTED.value, {"reason": reason, "frozen_at": None}, actor, session, operation_id
        )

    async def recover_failed_record(self, record_id: str, actor: str) -> CustodyRecord:
        """Return a FAILED record to LINKED (never minted) or MINTED"""
        async with async_managed_session() as session:
            record = await self._load(session, record_id)
            target = CustodyStatus.MINTED.value if record.minted_at else CustodyStatus.LINKED.value
            return await self._transition(
                session, record_id, target, {"failure_reason": None, "failure_details": None}, actor, None
            )

    # ------------------------------------------------------------------
    # reads
    # ------------------------------------------------------------------

    async def get_custody_record(self, record_id: str, tenant_id: Optional[str] = None) -> CustodyRecord:
        async with async_managed_session() as session:
            return await self._load(session, record_id, tenant_id)

    async def get_custody_status(
        self,
        asset_id: str,
        tenant_id: Optional[str] = None,
        end_user_id: Optional[str] = None,
        resync: bool = True,
    ) -> Dict[str, Any]:
        """
        Read a record by asset id with two-level isolation (tenant, then end user).

        Records with a known token id are resynced against the provider
        first (unfinished mint or burn), subject to the resync cooldown.
        """
        record = await self._find_by_asset(asset_id, tenant_id, end_user_id)

        if (
            resync
            and self.reconciliation is not None
            and record.token_id
            and record.status not in (CustodyStatus.WITHDRAWN.value, CustodyStatus.BURNED.value)
        ):
            try:
                await self.reconciliation.resync_custody_record(record.id)
                record = await self._find_by_asset(asset_id, tenant_id, end_user_id)
            except Exception as e:
                logger.warning(f"⚠️ CUSTODY_RESYNC_SKIPPED: {asset_id}: {e}")

        return self.enrich_custody_record(record)

    async def _find_by_asset(
        self, asset_id: str, tenant_id: Optional[str], end_user_id: Optional[str]
    ) -> CustodyRecord:
        async with async_managed_session() as session:
            record = (
                await session.execute(select(CustodyRecord).where(CustodyRecord.asset_id == asset_id))
            ).scalar_one_or_none()
        if record is None:
            raise NotFoundError(f"No custody record for asset {asset_id}")
        if tenant_id is not None and record.tenant_id != tenant_id:
            raise NotFoundError(f"No custody record for asset {asset_id}")
        if end_user_id is not None and record.created_by != end_user_id:
            raise NotFoundError(f"No custody record for asset {asset_id}")
        return record

    async def list_custody_records(
        self,
        tenant_id: Optional[str] = None,
        status: Optional[str] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> Tuple[List[CustodyRecord], int]:
        if status is not None and status not in {s.value for s in CustodyStatus}:
            raise ValidationError(f"Unknown custody status: {status}")

        async with async_managed_session() as session:
            stmt = select(CustodyRecord)
            count_stmt = select(func.count(CustodyRecord.id))
            if tenant_id is not None:
                stmt = stmt.where(CustodyRecord.tenant_id == tenant_id)
                count_stmt = count_stmt.where(CustodyRecord.tenant_id == tenant_id)
            if status is not None:
                stmt = stmt.where(CustodyRecord.status == status)
                count_stmt = count_stmt.where(CustodyRecord.status == status)
            stmt = stmt.order_by(CustodyRecord.created_at.desc()).limit(limit).offset(offset)
            records = list((await session.execute(stmt)).scalars().all())
            total = (await session.execute(count_stmt)).scalar_one()
        return records, total

    async def get_statistics(self, tenant_id: Optional[str] = None) -> Dict[str, int]:
        async with async_managed_session() as session:
            stmt = select(CustodyRecord.status, func.count(CustodyRecord.id)).group_by(CustodyRecord.status)
            if tenant_id is not None:
                stmt = stmt.where(CustodyRecord.tenant_id == tenant_id)
            rows = (await session.execute(stmt)).all()

        stats = {status.value: 0 for status in CustodyStatus}
        for status, count in rows:
            stats[status] = count
        stats["total"] = sum(count for _, count in rows)
        return stats

    @staticmethod
    def enrich_custody_record(record: CustodyRecord) -> Dict[str, Any]:
        data = record.to_dict()
        data["is_active"] = record.status in (CustodyStatus.LINKED.value, CustodyStatus.MINTED.value)
        data["has_token"] = bool(record.token_address)
        data["days_in_custody"] = whole_days_since(record.linked_at)
        return data
