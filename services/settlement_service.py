"""
Settlement Engine - marketplace listings, bids and atomic settlement

Accepting a bid moves ownership and off-chain balances, and advances the
listing, in one transaction. Any failed check raises before the commit, so
Ownership, UserBalance, Listing and Bid rows are either all updated or all
untouched.
"""

import logging
from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, List, Optional

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from database import async_managed_session
from models import Bid, BidStatus, CustodyRecord, CustodyStatus, Listing, ListingStatus, Ownership, UserBalance
from services.audit_service import AuditEvent, AuditService
from services.custody_provider import CustodyProvider
from services.errors import BadRequestError, ConflictError, ForbiddenError, NotFoundError, ValidationError
from services.webhook_service import WebhookNotifier
from utils.atomic_transactions import async_atomic_transaction
from utils.datetime_helpers import ensure_naive_datetime, get_naive_utc_now

logger = logging.getLogger(__name__)


def _positive_decimal(value: Any, name: str) -> Decimal:
    try:
        result = Decimal(str(value))
    except (InvalidOperation, ValueError):
        raise ValidationError(f"{name} must be a number, got {value!r}")
    if result <= 0:
        raise ValidationError(f"{name} must be positive, got {value}")
    return result


class SettlementService:
    """Listings, bids and the atomic bid settlement"""

    def __init__(
        self,
        audit: AuditService,
        notifier: WebhookNotifier,
        provider: Optional[CustodyProvider] = None,
    ):
        self.audit = audit
        self.notifier = notifier
        self.provider = provider

    # ------------------------------------------------------------------
    # helpers
    # ------------------------------------------------------------------

    @staticmethod
    async def _get_ownership(session: AsyncSession, asset_id: str, owner_id: str, for_update: bool = False) -> Optional[Ownership]:
        stmt = select(Ownership).where(Ownership.asset_id == asset_id, Ownership.owner_id == owner_id)
        if for_update:
            stmt = stmt.with_for_update()
        return (await session.execute(stmt)).scalar_one_or_none()

    @staticmethod
    async def _get_balance(session: AsyncSession, user_id: str, for_update: bool = False) -> Optional[UserBalance]:
        stmt = select(UserBalance).where(UserBalance.user_id == user_id)
        if for_update:
            stmt = stmt.with_for_update()
        return (await session.execute(stmt)).scalar_one_or_none()

    @staticmethod
    async def _load_listing(session: AsyncSession, listing_id: str, for_update: bool = False) -> Listing:
        stmt = select(Listing).where(Listing.id == listing_id)
        if for_update:
            stmt = stmt.with_for_update()
        listing = (await session.execute(stmt)).scalar_one_or_none()
        if listing is None:
            raise NotFoundError(f"Listing {listing_id} not found")
        return listing

    @staticmethod
    async def _load_bid(session: AsyncSession, bid_id: str, for_update: bool = False) -> Bid:
        stmt = select(Bid).where(Bid.id == bid_id)
        if for_update:
            stmt = stmt.with_for_update()
        bid = (await session.execute(stmt)).scalar_one_or_none()
        if bid is None:
            raise NotFoundError(f"Bid {bid_id} not found")
        return bid

    @staticmethod
    async def reserved_quantity(
        session: AsyncSession, asset_id: str, seller_id: str, exclude_listing_id: Optional[str] = None
    ) -> Decimal:
        """Unsold quantity across the seller's ACTIVE listings of the asset"""
        stmt = select(func.coalesce(func.sum(Listing.quantity_listed - Listing.quantity_sold), 0)).where(
            Listing.asset_id == asset_id,
            Listing.seller_id == seller_id,
            Listing.status == ListingStatus.ACTIVE.value,
        )
        if exclude_listing_id is not None:
            stmt = stmt.where(Listing.id != exclude_listing_id)
        return Decimal(str((await session.execute(stmt)).scalar_one()))

    @staticmethod
    async def allocated_quantity(session: AsyncSession, asset_id: str) -> Decimal:
        stmt = select(func.coalesce(func.sum(Ownership.quantity), 0)).where(Ownership.asset_id == asset_id)
        return Decimal(str((await session.execute(stmt)).scalar_one()))

    async def _reject_pending_bids(self, session: AsyncSession, listing: Listing, actor: str, reason: str) -> int:
        bids = (
            await session.execute(
                select(Bid).where(Bid.listing_id == listing.id, Bid.status == BidStatus.PENDING.value)
            )
        ).scalars().all()
        for bid in bids:
            bid.status = BidStatus.REJECTED.value
            bid.updated_at = get_naive_utc_now()
            await self.audit.append(
                AuditEvent.BID_REJECTED,
                actor,
                {"bid_id": bid.id, "listing_id": listing.id, "reason": reason},
                custody_record_id=listing.custody_record_id,
                session=session,
            )
        return len(bids)

    # ------------------------------------------------------------------
    # listings
    # ------------------------------------------------------------------

    async def create_listing(
        self,
        asset_id: str,
        seller_id: str,
        price: Any,
        currency: str,
        quantity: Any,
        expiry_date: datetime,
    ) -> Listing:
        """
        List part of a seller's holding.

        The issuer (record creator or tenant) without an Ownership row gets
        one seeded with the minted quantity not yet held by anyone else, and
        is refused once other owners hold all of it. Anyone else must already
        own the asset.
        """
        price = _positive_decimal(price, "price")
        quantity = _positive_decimal(quantity, "quantity")
        if not currency:
            raise ValidationError("currency is required")
        expiry_date = ensure_naive_datetime(expiry_date)
        if expiry_date is None or expiry_date <= get_naive_utc_now():
            raise ValidationError("expiry_date must be in the future")

        async with async_atomic_transaction() as session:
            record = (
                await session.execute(select(CustodyRecord).where(CustodyRecord.asset_id == asset_id))
            ).scalar_one_or_none()
            if record is None:
                raise NotFoundError(f"No custody record for asset {asset_id}")
            if record.status != CustodyStatus.MINTED.value:
                raise BadRequestError(f"Asset {asset_id} must be MINTED to list, current status is {record.status}")

            ownership = await self._get_ownership(session, asset_id, seller_id, for_update=True)
            if ownership is None:
                if seller_id not in (record.created_by, record.tenant_id):
                    raise ForbiddenError(f"{seller_id} does not own asset {asset_id}")
                allocated = await self.allocated_quantity(session, asset_id)
                unallocated = Decimal(record.quantity or "0") - allocated
                if unallocated <= 0:
                    raise ConflictError(
                        f"{seller_id} holds none of asset {asset_id}: all supply is held by other owners",
                        details={"supply": str(record.quantity), "allocated": str(allocated)},
                    )
                ownership = Ownership(
                    asset_id=asset_id,
                    owner_id=seller_id,
                    custody_record_id=record.id,
                    tenant_id=record.tenant_id,
                    quantity=unallocated,
                )
                session.add(ownership)
                await session.flush()
                logger.info(f"🌱 OWNERSHIP_SEEDED: {seller_id} holds {ownership.quantity} of {asset_id}")

            owned = Decimal(ownership.quantity)
            reserved = await self.reserved_quantity(session, asset_id, seller_id)
            available = owned - reserved
            if quantity > available:
                raise ConflictError(
                    f"Cannot list {quantity} of {asset_id}: only {available} available",
                    details={"owned": str(owned), "reserved": str(reserved), "available": str(available)},
                )

            listing = Listing(
                asset_id=asset_id,
                custody_record_id=record.id,
                tenant_id=record.tenant_id,
                seller_id=seller_id,
                price=price,
                currency=currency.upper(),
                quantity_listed=quantity,
                quantity_sold=Decimal("0"),
                status=ListingStatus.ACTIVE.value,
                expiry_date=expiry_date,
            )
            session.add(listing)
            await session.flush()
            await self.audit.append(
                AuditEvent.LISTING_CREATED,
                seller_id,
                {"listing_id": listing.id, "price": str(price), "currency": listing.currency,
                 "quantity": str(quantity), "available_before": str(available)},
                custody_record_id=record.id,
                session=session,
            )

        logger.info(f"🏷️ LISTING_CREATED: {listing.id} {quantity} of {asset_id} at {price} {listing.currency}")
        return listing

    async def cancel_listing(self, listing_id: str, seller_id: str) -> Listing:
        async with async_atomic_transaction() as session:
            listing = await self._load_listing(session, listing_id, for_update=True)
            if listing.seller_id != seller_id:
                raise ForbiddenError("Only the seller can cancel a listing")
            if listing.status != ListingStatus.ACTIVE.value:
                raise BadRequestError(f"Listing {listing_id} is {listing.status}, only ACTIVE listings can be cancelled")

            listing.status = ListingStatus.CANCELLED.value
            listing.updated_at = get_naive_utc_now()
            rejected = await self._reject_pending_bids(session, listing, seller_id, "listing cancelled")
            await self.audit.append(
                AuditEvent.LISTING_CANCELLED,
                seller_id,
                {"listing_id": listing.id, "bids_rejected": rejected},
                custody_record_id=listing.custody_record_id,
                session=session,
            )

        logger.info(f"🗑️ LISTING_CANCELLED: {listing_id} ({rejected} pending bids rejected)")
        await self.notifier.notify_status_update("listing.cancelled", listing.to_dict())
        return listing

    async def expire_listings(self, now: Optional[datetime] = None) -> int:
        """Flip ACTIVE listings past their expiry to EXPIRED; returns how many"""
        now = ensure_naive_datetime(now) or get_naive_utc_now()
        async with async_atomic_transaction() as session:
            listings = (
                await session.execute(
                    select(Listing)
                    .where(Listing.status == ListingStatus.ACTIVE.value, Listing.expiry_date <= now)
                    .with_for_update()
                )
            ).scalars().all()
            for listing in listings:
                listing.status = ListingStatus.EXPIRED.value
                listing.updated_at = now
                rejected = await self._reject_pending_bids(session, listing, "system", "listing expired")
                await self.audit.append(
                    AuditEvent.LISTING_EXPIRED,
                    "system",
                    {"listing_id": listing.id, "expiry_date": listing.expiry_date, "bids_rejected": rejected},
                    custody_record_id=listing.custody_record_id,
                    session=session,
                )

        if listings:
            logger.info(f"⌛ LISTINGS_EXPIRED: {len(listings)} listings")
        return len(listings)

    async def get_listing_details(self, listing_id: str) -> Dict[str, Any]:
        async with async_managed_session() as session:
            listing = await self._load_listing(session, listing_id)
            bid_counts = dict(
                (
                    await session.execute(
                        select(Bid.status, func.count(Bid.id)).where(Bid.listing_id == listing_id).group_by(Bid.status)
                    )
                ).all()
            )
        data = listing.to_dict()
        data["quantity_remaining"] = str(listing.quantity_remaining)
        data["bids"] = {status.value: bid_counts.get(status.value, 0) for status in BidStatus}
        return data

    async def get_listing_bids(self, listing_id: str, status: Optional[str] = None) -> List[Bid]:
        async with async_managed_session() as session:
            await self._load_listing(session, listing_id)
            stmt = select(Bid).where(Bid.listing_id == listing_id)
            if status is not None:
                stmt = stmt.where(Bid.status == status)
            stmt = stmt.order_by(Bid.created_at.asc())
            return list((await session.execute(stmt)).scalars().all())

    # ------------------------------------------------------------------
    # bids
    # ------------------------------------------------------------------

    async def place_bid(self, listing_id: str, buyer_id: str, amount: Any, quantity: Any) -> Bid:
        """Bid a unit price for part of a listing; the buyer must be able to pay in full"""
        amount = _positive_decimal(amount, "amount")
        quantity = _positive_decimal(quantity, "quantity")

        async with async_managed_session() as session:
            listing = await self._load_listing(session, listing_id)
            if listing.status != ListingStatus.ACTIVE.value:
                raise BadRequestError(f"Listing {listing_id} is {listing.status}")
            if listing.expiry_date <= get_naive_utc_now():
                raise BadRequestError(f"Listing {listing_id} has expired")
            if listing.seller_id == buyer_id:
                raise ForbiddenError("Sellers cannot bid on their own listing")
            if quantity > listing.quantity_remaining:
                raise ConflictError(
                    f"Bid quantity {quantity} exceeds remaining {listing.quantity_remaining}",
                    details={"remaining": str(listing.quantity_remaining)},
                )

            total = amount * quantity
            balance = await self._get_balance(session, buyer_id)
            if balance is None or Decimal(balance.balance) < total:
                raise ConflictError(
                    f"Insufficient balance for bid of {total}",
                    details={"required": str(total), "balance": str(balance.balance if balance else 0)},
                )

            bid = Bid(
                listing_id=listing.id,
                tenant_id=listing.tenant_id,
                buyer_id=buyer_id,
                amount=amount,
                quantity=quantity,
                status=BidStatus.PENDING.value,
            )
            session.add(bid)
            await session.flush()
            await self.audit.append(
                AuditEvent.BID_PLACED,
                buyer_id,
                {"bid_id": bid.id, "listing_id": listing.id, "amount": str(amount), "quantity": str(quantity)},
                custody_record_id=listing.custody_record_id,
                session=session,
            )

        logger.info(f"💬 BID_PLACED: {bid.id} {quantity} @ {amount} on {listing_id} by {buyer_id}")
        return bid

    async def accept_bid(self, bid_id: str, seller_id: str) -> Dict[str, Any]:
        """Settle a bid atomically; any failed check leaves every row unchanged"""
        async with async_atomic_transaction() as session:
            bid = await self._load_bid(session, bid_id, for_update=True)
            listing = await self._load_listing(session, bid.listing_id, for_update=True)

            if listing.seller_id != seller_id:
                raise ForbiddenError("Only the seller can accept bids on this listing")
            if bid.status != BidStatus.PENDING.value:
                raise BadRequestError(f"Bid {bid_id} is {bid.status}")
            if listing.status != ListingStatus.ACTIVE.value:
                raise BadRequestError(f"Listing {listing.id} is {listing.status}")

            quantity = Decimal(bid.quantity)
            total = Decimal(bid.amount) * quantity
            if quantity > listing.quantity_remaining:
                raise ConflictError(f"Bid quantity {quantity} exceeds remaining {listing.quantity_remaining}")

            seller_ownership = await self._get_ownership(session, listing.asset_id, seller_id, for_update=True)
            if seller_ownership is None or Decimal(seller_ownership.quantity) < quantity:
                raise ConflictError(
                    f"Seller holds insufficient quantity of {listing.asset_id}",
                    details={"required": str(quantity),
                             "owned": str(seller_ownership.quantity if seller_ownership else 0)},
                )

            buyer_balance = await self._get_balance(session, bid.buyer_id, for_update=True)
            if buyer_balance is None or Decimal(buyer_balance.balance) < total:
                raise ConflictError(
                    "Buyer balance is insufficient to settle the bid",
                    details={"required": str(total), "balance": str(buyer_balance.balance if buyer_balance else 0)},
                )

            now = get_naive_utc_now()

            # Seller side: delete when fully consumed
            remaining_owned = Decimal(seller_ownership.quantity) - quantity
            if remaining_owned == 0:
                await session.delete(seller_ownership)
            else:
                seller_ownership.quantity = remaining_owned
                seller_ownership.updated_at = now

            buyer_ownership = await self._get_ownership(session, listing.asset_id, bid.buyer_id, for_update=True)
            if buyer_ownership is None:
                buyer_ownership = Ownership(
                    asset_id=listing.asset_id,
                    owner_id=bid.buyer_id,
                    custody_record_id=listing.custody_record_id,
                    tenant_id=listing.tenant_id,
                    quantity=quantity,
                    purchase_price=Decimal(bid.amount),
                    currency=listing.currency,
                )
                session.add(buyer_ownership)
            else:
                buyer_ownership.quantity = Decimal(buyer_ownership.quantity) + quantity
                buyer_ownership.purchase_price = Decimal(bid.amount)
                buyer_ownership.updated_at = now

            buyer_balance.balance = Decimal(buyer_balance.balance) - total
            buyer_balance.updated_at = now
            seller_balance = await self._get_balance(session, seller_id, for_update=True)
            if seller_balance is None:
                seller_balance = UserBalance(user_id=seller_id, balance=total, currency=listing.currency)
                session.add(seller_balance)
            else:
                seller_balance.balance = Decimal(seller_balance.balance) + total
                seller_balance.updated_at = now

            listing.quantity_sold = Decimal(listing.quantity_sold) + quantity
            if listing.quantity_remaining <= 0:
                listing.status = ListingStatus.SOLD.value
            listing.updated_at = now

            bid.status = BidStatus.ACCEPTED.value
            bid.updated_at = now
            await session.flush()

            await self.audit.append(
                AuditEvent.BID_ACCEPTED,
                seller_id,
                {"bid_id": bid.id, "listing_id": listing.id, "quantity": str(quantity), "total": str(total),
                 "listing_status": listing.status},
                custody_record_id=listing.custody_record_id,
                session=session,
            )
            await self.audit.append(
                AuditEvent.OWNERSHIP_TRANSFERRED,
                seller_id,
                {"asset_id": listing.asset_id, "from": seller_id, "to": bid.buyer_id, "quantity": str(quantity)},
                custody_record_id=listing.custody_record_id,
                session=session,
            )

        logger.info(
            f"🤝 BID_ACCEPTED: {bid_id} {quantity} of {listing.asset_id} {seller_id} -> {bid.buyer_id} "
            f"for {total} {listing.currency} (listing {listing.status})"
        )
        settlement = {
            "bid_id": bid.id,
            "listing": listing.to_dict(),
            "buyer_id": bid.buyer_id,
            "seller_id": seller_id,
            "quantity": str(quantity),
            "total": str(total),
        }
        await self.notifier.notify_status_update("bid.accepted", settlement)
        return settlement

    async def reject_bid(self, bid_id: str, seller_id: str) -> Bid:
        async with async_managed_session() as session:
            bid = await self._load_bid(session, bid_id, for_update=True)
            listing = await self._load_listing(session, bid.listing_id)
            if listing.seller_id != seller_id:
                raise ForbiddenError("Only the seller can reject bids on this listing")
            if bid.status != BidStatus.PENDING.value:
                raise BadRequestError(f"Bid {bid_id} is {bid.status}")
            bid.status = BidStatus.REJECTED.value
            bid.updated_at = get_naive_utc_now()
            await session.flush()
            await self.audit.append(
                AuditEvent.BID_REJECTED,
                seller_id,
                {"bid_id": bid.id, "listing_id": listing.id},
                custody_record_id=listing.custody_record_id,
                session=session,
            )
        logger.info(f"🚫 BID_REJECTED: {bid_id} by {seller_id}")
        return bid

    async def execute_purchase(
        self,
        listing_id: str,
        buyer_id: str,
        quantity: Any,
        source_vault_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Buy at the listing price in one call: optional on-chain payment from
        the buyer's vault to the seller's custody vault, then a bid placed
        and settled in the same flow.

        Settlement checks run before any payment is sent. If settlement still
        fails after the payment went out, the bid is rejected and the payment
        tx is recorded as PURCHASE_PAYMENT_ORPHANED before the error is raised.
        """
        quantity = _positive_decimal(quantity, "quantity")
        async with async_managed_session() as session:
            listing = await self._load_listing(session, listing_id)
            record = (
                await session.execute(select(CustodyRecord).where(CustodyRecord.id == listing.custody_record_id))
            ).scalar_one()
            seller_vault_id = record.vault_wallet.provider_vault_id if record.vault_wallet else None

            if source_vault_id and (self.provider is None or seller_vault_id is None):
                raise BadRequestError("On-chain payment requires a provider and a seller vault")
            seller_ownership = await self._get_ownership(session, listing.asset_id, listing.seller_id)
            if seller_ownership is None or Decimal(seller_ownership.quantity) < quantity:
                raise ConflictError(
                    f"Seller holds insufficient quantity of {listing.asset_id}",
                    details={"required": str(quantity),
                             "owned": str(seller_ownership.quantity if seller_ownership else 0)},
                )

        bid = await self.place_bid(listing_id, buyer_id, listing.price, quantity)
        total = Decimal(listing.price) * Decimal(bid.quantity)

        payment_tx_id = None
        try:
            if source_vault_id:
                payment_tx_id = await self.provider.transfer(source_vault_id, seller_vault_id, listing.currency, total)
                logger.info(f"💸 PURCHASE_PAYMENT_SUBMITTED: {total} {listing.currency} tx={payment_tx_id}")
            settlement = await self.accept_bid(bid.id, listing.seller_id)
        except Exception as e:
            await self._abandon_purchase(bid.id, listing, total, payment_tx_id, str(e))
            raise

        settlement["payment_tx_id"] = payment_tx_id
        return settlement

    async def _abandon_purchase(
        self, bid_id: str, listing: Listing, total: Decimal, payment_tx_id: Optional[str], reason: str
    ) -> None:
        """Reject a purchase bid that could not settle and record any payment already sent"""
        async with async_managed_session() as session:
            bid = await self._load_bid(session, bid_id, for_update=True)
            if bid.status == BidStatus.PENDING.value:
                bid.status = BidStatus.REJECTED.value
                bid.updated_at = get_naive_utc_now()
                await session.flush()
                await self.audit.append(
                    AuditEvent.BID_REJECTED,
                    "system:purchase",
                    {"bid_id": bid.id, "listing_id": listing.id, "reason": reason},
                    custody_record_id=listing.custody_record_id,
                    session=session,
                )
            if payment_tx_id is not None:
                await self.audit.append(
                    AuditEvent.PURCHASE_PAYMENT_ORPHANED,
                    "system:purchase",
                    {"bid_id": bid.id, "listing_id": listing.id, "buyer_id": bid.buyer_id,
                     "seller_id": listing.seller_id, "payment_tx_id": payment_tx_id,
                     "total": str(total), "currency": listing.currency, "reason": reason},
                    custody_record_id=listing.custody_record_id,
                    session=session,
                )

        if payment_tx_id is not None:
            logger.error(
                f"❌ PURCHASE_PAYMENT_ORPHANED: tx={payment_tx_id} {total} {listing.currency} "
                f"for bid {bid_id} needs refund: {reason}"
            )
        else:
            logger.warning(f"⚠️ PURCHASE_ABANDONED: bid {bid_id} rejected: {reason}")

    # ------------------------------------------------------------------
    # balances
    # ------------------------------------------------------------------

    async def credit_balance(self, user_id: str, amount: Any, currency: str = "USD", actor: str = "system") -> UserBalance:
        amount = _positive_decimal(amount, "amount")
        async with async_atomic_transaction() as session:
            balance = await self._get_balance(session, user_id, for_update=True)
            if balance is None:
                balance = UserBalance(user_id=user_id, balance=amount, currency=currency.upper())
                session.add(balance)
            else:
                balance.balance = Decimal(balance.balance) + amount
                balance.updated_at = get_naive_utc_now()
            await session.flush()
            await self.audit.append(
                AuditEvent.BALANCE_CREDITED,
                actor,
                {"user_id": user_id, "amount": str(amount), "currency": balance.currency},
                session=session,
            )
        logger.info(f"💰 BALANCE_CREDITED: {user_id} +{amount} {balance.currency}")
        return balance

    async def get_balance(self, user_id: str) -> Decimal:
        async with async_managed_session() as session:
            balance = await self._get_balance(session, user_id)
        return Decimal(balance.balance) if balance else Decimal("0")

    async def get_ownership(self, asset_id: str, owner_id: str) -> Optional[Ownership]:
        async with async_managed_session() as session:
            return await self._get_ownership(session, asset_id, owner_id)
