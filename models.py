"""
AssetLink Custody Engine - Database Schema
==========================================

Schema for the custody lifecycle of tokenized real-world assets:
- Custody records and the custodial vault wallets provisioned for them
- Maker-checker governed operations dispatched to the custody provider
- Marketplace listings, bids, ownership and off-chain balances
- Append-only audit trail
"""

import uuid
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Optional

from sqlalchemy import (
    Boolean, CheckConstraint, DateTime, ForeignKey, Index, JSON, Numeric, String, Text,
    UniqueConstraint, text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

from utils.datetime_helpers import get_naive_utc_now


class Base(DeclarativeBase):
    """Base class for all database models"""
    pass


JSONType = JSON().with_variant(JSONB(), "postgresql")


def generate_id() -> str:
    return str(uuid.uuid4())


# ============================================================================
# ENUMS - Business Logic Constants
# ============================================================================

class CustodyStatus(Enum):
    """Custody record lifecycle states"""
    UNLINKED = "UNLINKED"
    PENDING = "PENDING"
    LINKED = "LINKED"
    MINTED = "MINTED"
    FROZEN = "FROZEN"
    WITHDRAWN = "WITHDRAWN"
    BURNED = "BURNED"
    FAILED = "FAILED"


class OperationStatus(Enum):
    """Maker-checker operation states"""
    PENDING_MAKER = "PENDING_MAKER"
    PENDING_CHECKER = "PENDING_CHECKER"
    APPROVED = "APPROVED"
    EXECUTING = "EXECUTING"  # dispatched to provider, not yet confirmed
    EXECUTED = "EXECUTED"
    REJECTED = "REJECTED"
    FAILED = "FAILED"


TERMINAL_OPERATION_STATUSES = (
    OperationStatus.EXECUTED.value,
    OperationStatus.REJECTED.value,
    OperationStatus.FAILED.value,
)


class OperationType(Enum):
    """Operation kinds, one executor handler per member"""
    LINK_ASSET = "LINK_ASSET"
    MINT = "MINT"
    BURN = "BURN"
    FREEZE = "FREEZE"
    UNFREEZE = "UNFREEZE"
    TRANSFER = "TRANSFER"


class ListingStatus(Enum):
    """Marketplace listing states"""
    ACTIVE = "ACTIVE"
    SOLD = "SOLD"
    CANCELLED = "CANCELLED"
    EXPIRED = "EXPIRED"


class BidStatus(Enum):
    """Marketplace bid states"""
    PENDING = "PENDING"
    ACCEPTED = "ACCEPTED"
    REJECTED = "REJECTED"


class VaultType(Enum):
    CUSTODY = "CUSTODY"
    GAS = "GAS"


# ============================================================================
# CUSTODY
# ============================================================================

class VaultWallet(Base):
    """Custodial vault + address provisioned when a link is approved"""
    __tablename__ = "vault_wallets"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=generate_id)
    provider_vault_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    blockchain: Mapped[str] = mapped_column(String(32), nullable=False)
    address: Mapped[str] = mapped_column(String(128), nullable=False)
    vault_type: Mapped[str] = mapped_column(String(16), default=VaultType.CUSTODY.value, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    gas_funding_tx_id: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    gas_funded_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=get_naive_utc_now, nullable=False)

    __table_args__ = (
        UniqueConstraint("provider_vault_id", "blockchain", name="uq_vault_wallet_vault_chain"),
    )


class CustodyRecord(Base):
    """Authoritative lifecycle record for one asset under custody"""
    __tablename__ = "custody_records"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=generate_id)
    asset_id: Mapped[str] = mapped_column(String(128), unique=True, nullable=False, index=True)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    created_by: Mapped[str] = mapped_column(String(128), nullable=False)
    status: Mapped[str] = mapped_column(String(16), default=CustodyStatus.PENDING.value, nullable=False, index=True)

    vault_wallet_id: Mapped[Optional[str]] = mapped_column(String(36), ForeignKey("vault_wallets.id"), nullable=True)
    public_contract_address: Mapped[Optional[str]] = mapped_column(String(96), unique=True, nullable=True)

    # On-chain references
    blockchain: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    token_standard: Mapped[Optional[str]] = mapped_column(String(16), nullable=True)
    token_address: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    token_id: Mapped[Optional[str]] = mapped_column(String(128), nullable=True, index=True)
    token_symbol: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    quantity: Mapped[str] = mapped_column(String(78), default="0", nullable=False)  # decimal string
    tx_hash: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)

    failure_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    failure_details: Mapped[Optional[Dict[str, Any]]] = mapped_column(JSONType, nullable=True)
    asset_metadata: Mapped[Optional[Dict[str, Any]]] = mapped_column(JSONType, nullable=True)
    approved_by: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    rejection_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    linked_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    minted_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    withdrawn_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    burned_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    frozen_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=get_naive_utc_now, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=get_naive_utc_now, onupdate=get_naive_utc_now, nullable=False)

    vault_wallet: Mapped[Optional["VaultWallet"]] = relationship("VaultWallet", lazy="selectin")

    __table_args__ = (
        Index("ix_custody_records_tenant_status", "tenant_id", "status"),
    )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "asset_id": self.asset_id,
            "tenant_id": self.tenant_id,
            "created_by": self.created_by,
            "status": self.status,
            "vault_wallet_id": self.vault_wallet_id,
            "public_contract_address": self.public_contract_address,
            "blockchain": self.blockchain,
            "token_standard": self.token_standard,
            "token_address": self.token_address,
            "token_id": self.token_id,
            "token_symbol": self.token_symbol,
            "quantity": self.quantity,
            "tx_hash": self.tx_hash,
            "failure_reason": self.failure_reason,
            "failure_details": self.failure_details,
            "linked_at": self.linked_at.isoformat() if self.linked_at else None,
            "minted_at": self.minted_at.isoformat() if self.minted_at else None,
            "withdrawn_at": self.withdrawn_at.isoformat() if self.withdrawn_at else None,
            "burned_at": self.burned_at.isoformat() if self.burned_at else None,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }


class Operation(Base):
    """Maker-checker governed request against a custody record"""
    __tablename__ = "operations"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=generate_id)
    operation_type: Mapped[str] = mapped_column(String(16), nullable=False)
    status: Mapped[str] = mapped_column(String(16), default=OperationStatus.PENDING_CHECKER.value, nullable=False, index=True)
    custody_record_id: Mapped[str] = mapped_column(String(36), ForeignKey("custody_records.id"), nullable=False, index=True)
    vault_wallet_id: Mapped[Optional[str]] = mapped_column(String(36), ForeignKey("vault_wallets.id"), nullable=True)
    payload: Mapped[Dict[str, Any]] = mapped_column(JSONType, default=dict, nullable=False)

    initiated_by: Mapped[str] = mapped_column(String(128), nullable=False)
    approved_by: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    rejected_by: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    rejection_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    offchain_tx_hash: Mapped[Optional[str]] = mapped_column(String(80), nullable=True)
    external_task_id: Mapped[Optional[str]] = mapped_column(String(128), nullable=True, index=True)
    provider_status: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    tx_hash: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    failure_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    failure_details: Mapped[Optional[Dict[str, Any]]] = mapped_column(JSONType, nullable=True)

    approved_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    executed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=get_naive_utc_now, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=get_naive_utc_now, onupdate=get_naive_utc_now, nullable=False)

    custody_record: Mapped["CustodyRecord"] = relationship("CustodyRecord", lazy="selectin")

    __table_args__ = (
        # At most one live operation per custody record
        Index(
            "uq_operations_live_custody_record",
            "custody_record_id",
            unique=True,
            postgresql_where=text("status NOT IN ('EXECUTED', 'REJECTED', 'FAILED')"),
            sqlite_where=text("status NOT IN ('EXECUTED', 'REJECTED', 'FAILED')"),
        ),
        Index("ix_operations_type_status", "operation_type", "status"),
    )

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_OPERATION_STATUSES

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "operation_type": self.operation_type,
            "status": self.status,
            "custody_record_id": self.custody_record_id,
            "vault_wallet_id": self.vault_wallet_id,
            "payload": self.payload,
            "initiated_by": self.initiated_by,
            "approved_by": self.approved_by,
            "rejected_by": self.rejected_by,
            "rejection_reason": self.rejection_reason,
            "offchain_tx_hash": self.offchain_tx_hash,
            "external_task_id": self.external_task_id,
            "provider_status": self.provider_status,
            "tx_hash": self.tx_hash,
            "failure_reason": self.failure_reason,
            "failure_details": self.failure_details,
            "approved_at": self.approved_at.isoformat() if self.approved_at else None,
            "executed_at": self.executed_at.isoformat() if self.executed_at else None,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }


# ============================================================================
# MARKETPLACE
# ============================================================================

class Ownership(Base):
    """Fractional holding of a tokenized asset"""
    __tablename__ = "ownerships"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=generate_id)
    asset_id: Mapped[str] = mapped_column(String(128), nullable=False, index=True)
    owner_id: Mapped[str] = mapped_column(String(128), nullable=False, index=True)
    custody_record_id: Mapped[Optional[str]] = mapped_column(String(36), ForeignKey("custody_records.id"), nullable=True)
    tenant_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    quantity: Mapped[Decimal] = mapped_column(Numeric(38, 18), default=0, nullable=False)
    purchase_price: Mapped[Optional[Decimal]] = mapped_column(Numeric(38, 18), nullable=True)
    currency: Mapped[Optional[str]] = mapped_column(String(10), nullable=True)
    wallet_address: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=get_naive_utc_now, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=get_naive_utc_now, onupdate=get_naive_utc_now, nullable=False)

    __table_args__ = (
        UniqueConstraint("asset_id", "owner_id", name="uq_ownership_asset_owner"),
        CheckConstraint("quantity >= 0", name="ck_ownership_quantity_positive"),
    )


class UserBalance(Base):
    """Off-chain cash balance used to settle bids"""
    __tablename__ = "user_balances"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=generate_id)
    user_id: Mapped[str] = mapped_column(String(128), unique=True, nullable=False, index=True)
    balance: Mapped[Decimal] = mapped_column(Numeric(38, 18), default=0, nullable=False)
    currency: Mapped[str] = mapped_column(String(10), default="USD", nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=get_naive_utc_now, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=get_naive_utc_now, onupdate=get_naive_utc_now, nullable=False)

    __table_args__ = (
        CheckConstraint("balance >= 0", name="ck_user_balance_positive"),
    )


class Listing(Base):
    """Marketplace listing of a minted asset"""
    __tablename__ = "listings"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=generate_id)
    asset_id: Mapped[str] = mapped_column(String(128), nullable=False, index=True)
    custody_record_id: Mapped[str] = mapped_column(String(36), ForeignKey("custody_records.id"), nullable=False)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False)
    seller_id: Mapped[str] = mapped_column(String(128), nullable=False, index=True)
    price: Mapped[Decimal] = mapped_column(Numeric(38, 18), nullable=False)
    currency: Mapped[str] = mapped_column(String(10), nullable=False)
    quantity_listed: Mapped[Decimal] = mapped_column(Numeric(38, 18), nullable=False)
    quantity_sold: Mapped[Decimal] = mapped_column(Numeric(38, 18), default=0, nullable=False)
    status: Mapped[str] = mapped_column(String(16), default=ListingStatus.ACTIVE.value, nullable=False, index=True)
    expiry_date: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=get_naive_utc_now, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=get_naive_utc_now, onupdate=get_naive_utc_now, nullable=False)

    __table_args__ = (
        CheckConstraint("quantity_sold <= quantity_listed", name="ck_listing_not_oversold"),
        Index("ix_listings_seller_asset_status", "seller_id", "asset_id", "status"),
    )

    @property
    def quantity_remaining(self) -> Decimal:
        return Decimal(self.quantity_listed) - Decimal(self.quantity_sold)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "asset_id": self.asset_id,
            "seller_id": self.seller_id,
            "price": str(self.price),
            "currency": self.currency,
            "quantity_listed": str(self.quantity_listed),
            "quantity_sold": str(self.quantity_sold),
            "status": self.status,
            "expiry_date": self.expiry_date.isoformat() if self.expiry_date else None,
        }


class Bid(Base):
    """Buyer's offer against a listing"""
    __tablename__ = "bids"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=generate_id)
    listing_id: Mapped[str] = mapped_column(String(36), ForeignKey("listings.id"), nullable=False, index=True)
    tenant_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    buyer_id: Mapped[str] = mapped_column(String(128), nullable=False, index=True)
    amount: Mapped[Decimal] = mapped_column(Numeric(38, 18), nullable=False)  # unit price offered
    quantity: Mapped[Decimal] = mapped_column(Numeric(38, 18), nullable=False)
    status: Mapped[str] = mapped_column(String(16), default=BidStatus.PENDING.value, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=get_naive_utc_now, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=get_naive_utc_now, onupdate=get_naive_utc_now, nullable=False)

    listing: Mapped["Listing"] = relationship("Listing", lazy="selectin")

    __table_args__ = (
        CheckConstraint("quantity > 0", name="ck_bid_quantity_positive"),
    )

    @property
    def total_cost(self) -> Decimal:
        return Decimal(self.amount) * Decimal(self.quantity)


# ============================================================================
# AUDIT
# ============================================================================

class AuditLog(Base):
    """Append-only audit trail; no code path updates or deletes rows"""
    __tablename__ = "audit_logs"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=generate_id)
    event_type: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    actor: Mapped[str] = mapped_column(String(128), nullable=False)
    custody_record_id: Mapped[Optional[str]] = mapped_column(String(36), nullable=True, index=True)
    operation_id: Mapped[Optional[str]] = mapped_column(String(36), nullable=True, index=True)
    details: Mapped[Optional[Dict[str, Any]]] = mapped_column(JSONType, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=get_naive_utc_now, nullable=False, index=True)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "event_type": self.event_type,
            "actor": self.actor,
            "custody_record_id": self.custody_record_id,
            "operation_id": self.operation_id,
            "details": self.details,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }
