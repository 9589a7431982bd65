"""
Test Settlement Engine
Listings, bids and the all-or-nothing bid settlement
"""

from datetime import timedelta
from decimal import Decimal

import pytest
import pytest_asyncio
from sqlalchemy import select

from database import async_managed_session
from models import UserBalance
from services.audit_service import AuditEvent
from services.errors import BadRequestError, ConflictError, ForbiddenError, NotFoundError, ValidationError
from tests.fixtures import link_and_approve, mint_asset
from utils.datetime_helpers import get_naive_utc_now

ISSUER = "issuer-1"
BUYER = "buyer-1"


def _next_week():
    return get_naive_utc_now() + timedelta(days=7)


@pytest_asyncio.fixture
async def minted(engine):
    """Asset A1 minted with 5 units held by its issuer"""
    record = await link_and_approve(engine, "A1", created_by=ISSUER)
    await mint_asset(engine, record.id, "A1", total_supply="5")
    return record


async def _snapshot(engine, listing_id, bid_id):
    listing = await engine.settlement.get_listing_details(listing_id)
    bids = {b.id: b.status for b in await engine.settlement.get_listing_bids(listing_id)}
    seller = await engine.settlement.get_ownership("A1", ISSUER)
    buyer = await engine.settlement.get_ownership("A1", BUYER)
    return {
        "listing_status": listing["status"],
        "quantity_sold": Decimal(listing["quantity_sold"]),
        "bid_status": bids[bid_id],
        "seller_quantity": Decimal(seller.quantity) if seller else None,
        "buyer_quantity": Decimal(buyer.quantity) if buyer else None,
        "buyer_balance": await engine.settlement.get_balance(BUYER),
        "seller_balance": await engine.settlement.get_balance(ISSUER),
    }


class TestListings:
    """Listing creation and availability"""

    @pytest.mark.asyncio
    async def test_issuer_listing_seeds_ownership(self, engine, minted):
        listing = await engine.settlement.create_listing("A1", ISSUER, "10", "usd", "3", _next_week())

        assert listing.status == "ACTIVE"
        assert listing.currency == "USD"
        ownership = await engine.settlement.get_ownership("A1", ISSUER)
        assert Decimal(ownership.quantity) == Decimal("5")

    @pytest.mark.asyncio
    async def test_active_listings_reserve_quantity(self, engine, minted):
        await engine.settlement.create_listing("A1", ISSUER, "10", "USD", "3", _next_week())

        with pytest.raises(ConflictError) as exc_info:
            await engine.settlement.create_listing("A1", ISSUER, "10", "USD", "3", _next_week())
        assert Decimal(exc_info.value.details["available"]) == Decimal("2")

        second = await engine.settlement.create_listing("A1", ISSUER, "12", "USD", "2", _next_week())
        assert second.status == "ACTIVE"

    @pytest.mark.asyncio
    async def test_listing_requires_minted_asset_and_owner(self, engine, minted):
        await link_and_approve(engine, "B1")

        with pytest.raises(BadRequestError):
            await engine.settlement.create_listing("B1", ISSUER, "10", "USD", "1", _next_week())
        with pytest.raises(ForbiddenError):
            await engine.settlement.create_listing("A1", "stranger", "10", "USD", "1", _next_week())
        with pytest.raises(NotFoundError):
            await engine.settlement.create_listing("NOPE", ISSUER, "10", "USD", "1", _next_week())
        with pytest.raises(ValidationError):
            await engine.settlement.create_listing("A1", ISSUER, "10", "USD", "1", get_naive_utc_now() - timedelta(days=1))
        with pytest.raises(ValidationError):
            await engine.settlement.create_listing("A1", ISSUER, "-1", "USD", "1", _next_week())

    @pytest.mark.asyncio
    async def test_issuer_cannot_relist_after_selling_out(self, engine, minted):
        listing = await engine.settlement.create_listing("A1", ISSUER, "10", "USD", "5", _next_week())
        await engine.settlement.credit_balance(BUYER, "100")
        bid = await engine.settlement.place_bid(listing.id, BUYER, "10", "5")
        await engine.settlement.accept_bid(bid.id, ISSUER)
        assert await engine.settlement.get_ownership("A1", ISSUER) is None

        with pytest.raises(ConflictError) as exc_info:
            await engine.settlement.create_listing("A1", ISSUER, "10", "USD", "1", _next_week())

        assert Decimal(exc_info.value.details["allocated"]) == Decimal("5")
        assert await engine.settlement.get_ownership("A1", ISSUER) is None
        assert Decimal((await engine.settlement.get_ownership("A1", BUYER)).quantity) == Decimal("5")

    @pytest.mark.asyncio
    async def test_cancel_rejects_pending_bids(self, engine, minted):
        listing = await engine.settlement.create_listing("A1", ISSUER, "10", "USD", "5", _next_week())
        await engine.settlement.credit_balance(BUYER, "100")
        bid = await engine.settlement.place_bid(listing.id, BUYER, "10", "1")

        with pytest.raises(ForbiddenError):
            await engine.settlement.cancel_listing(listing.id, BUYER)
        cancelled = await engine.settlement.cancel_listing(listing.id, ISSUER)

        assert cancelled.status == "CANCELLED"
        bids = await engine.settlement.get_listing_bids(listing.id)
        assert [(b.id, b.status) for b in bids] == [(bid.id, "REJECTED")]
        with pytest.raises(BadRequestError):
            await engine.settlement.place_bid(listing.id, BUYER, "10", "1")

    @pytest.mark.asyncio
    async def test_expiry_sweep(self, engine, minted):
        listing = await engine.settlement.create_listing(
            "A1", ISSUER, "10", "USD", "2", get_naive_utc_now() + timedelta(hours=1)
        )
        await engine.settlement.credit_balance(BUYER, "100")
        await engine.settlement.place_bid(listing.id, BUYER, "10", "1")

        assert await engine.settlement.expire_listings() == 0
        assert await engine.settlement.expire_listings(now=get_naive_utc_now() + timedelta(hours=2)) == 1

        details = await engine.settlement.get_listing_details(listing.id)
        assert details["status"] == "EXPIRED"
        assert details["bids"]["REJECTED"] == 1
        assert details["bids"]["PENDING"] == 0


class TestBids:
    """Bid validation"""

    @pytest.mark.asyncio
    async def test_bid_checks(self, engine, minted):
        listing = await engine.settlement.create_listing("A1", ISSUER, "10", "USD", "3", _next_week())

        with pytest.raises(ForbiddenError):
            await engine.settlement.place_bid(listing.id, ISSUER, "10", "1")
        with pytest.raises(ConflictError):
            await engine.settlement.place_bid(listing.id, BUYER, "10", "1")

        await engine.settlement.credit_balance(BUYER, "100")
        with pytest.raises(ConflictError):
            await engine.settlement.place_bid(listing.id, BUYER, "10", "4")
        with pytest.raises(ConflictError):
            await engine.settlement.place_bid(listing.id, BUYER, "60", "2")
        with pytest.raises(ValidationError):
            await engine.settlement.place_bid(listing.id, BUYER, "10", "0")

        bid = await engine.settlement.place_bid(listing.id, BUYER, "10", "2")
        assert bid.status == "PENDING"
        assert bid.total_cost == Decimal("20")

    @pytest.mark.asyncio
    async def test_reject_bid(self, engine, minted):
        listing = await engine.settlement.create_listing("A1", ISSUER, "10", "USD", "3", _next_week())
        await engine.settlement.credit_balance(BUYER, "100")
        bid = await engine.settlement.place_bid(listing.id, BUYER, "10", "1")

        with pytest.raises(ForbiddenError):
            await engine.settlement.reject_bid(bid.id, BUYER)
        rejected = await engine.settlement.reject_bid(bid.id, ISSUER)
        assert rejected.status == "REJECTED"
        with pytest.raises(BadRequestError):
            await engine.settlement.accept_bid(bid.id, ISSUER)


class TestSettlement:
    """Atomic bid acceptance"""

    @pytest.mark.asyncio
    async def test_partial_fills_then_sold_out(self, engine, minted, notifier):
        listing = await engine.settlement.create_listing("A1", ISSUER, "10", "USD", "5", _next_week())
        await engine.settlement.credit_balance(BUYER, "100")
        await engine.settlement.credit_balance("buyer-2", "100")

        first = await engine.settlement.place_bid(listing.id, BUYER, "10", "2")
        settlement = await engine.settlement.accept_bid(first.id, ISSUER)

        assert Decimal(settlement["total"]) == Decimal("20")
        details = await engine.settlement.get_listing_details(listing.id)
        assert details["status"] == "ACTIVE"
        assert Decimal(details["quantity_sold"]) == Decimal("2")
        assert Decimal(details["quantity_remaining"]) == Decimal("3")
        assert Decimal((await engine.settlement.get_ownership("A1", ISSUER)).quantity) == Decimal("3")
        assert Decimal((await engine.settlement.get_ownership("A1", BUYER)).quantity) == Decimal("2")
        assert await engine.settlement.get_balance(BUYER) == Decimal("80")
        assert await engine.settlement.get_balance(ISSUER) == Decimal("20")

        second = await engine.settlement.place_bid(listing.id, BUYER, "11", "1")
        third = await engine.settlement.place_bid(listing.id, "buyer-2", "12", "2")
        await engine.settlement.accept_bid(second.id, ISSUER)
        await engine.settlement.accept_bid(third.id, ISSUER)

        details = await engine.settlement.get_listing_details(listing.id)
        assert details["status"] == "SOLD"
        assert Decimal(details["quantity_remaining"]) == Decimal("0")
        assert details["bids"]["ACCEPTED"] == 3

        # Seller's holding fully consumed
        assert await engine.settlement.get_ownership("A1", ISSUER) is None
        assert Decimal((await engine.settlement.get_ownership("A1", BUYER)).quantity) == Decimal("3")
        assert Decimal((await engine.settlement.get_ownership("A1", "buyer-2")).quantity) == Decimal("2")
        assert await engine.settlement.get_balance(ISSUER) == Decimal("55")
        assert notifier.names().count("bid.accepted") == 3

        transfers = await engine.audit.list_events(event_type=AuditEvent.OWNERSHIP_TRANSFERRED)
        assert len(transfers) == 3

    @pytest.mark.asyncio
    async def test_insufficient_balance_at_settlement_changes_nothing(self, engine, minted):
        listing = await engine.settlement.create_listing("A1", ISSUER, "30", "USD", "5", _next_week())
        await engine.settlement.credit_balance(BUYER, "100")
        first = await engine.settlement.place_bid(listing.id, BUYER, "30", "2")
        second = await engine.settlement.place_bid(listing.id, BUYER, "30", "2")
        await engine.settlement.accept_bid(first.id, ISSUER)

        before = await _snapshot(engine, listing.id, second.id)
        with pytest.raises(ConflictError):
            await engine.settlement.accept_bid(second.id, ISSUER)
        after = await _snapshot(engine, listing.id, second.id)

        assert after == before
        assert after["bid_status"] == "PENDING"
        assert after["buyer_balance"] == Decimal("40")

    @pytest.mark.asyncio
    async def test_oversized_bid_at_settlement_changes_nothing(self, engine, minted):
        listing = await engine.settlement.create_listing("A1", ISSUER, "10", "USD", "3", _next_week())
        await engine.settlement.credit_balance(BUYER, "100")
        await engine.settlement.credit_balance("buyer-2", "100")
        big = await engine.settlement.place_bid(listing.id, BUYER, "10", "3")
        other = await engine.settlement.place_bid(listing.id, "buyer-2", "10", "2")
        await engine.settlement.accept_bid(other.id, ISSUER)

        before = await _snapshot(engine, listing.id, big.id)
        with pytest.raises(ConflictError):
            await engine.settlement.accept_bid(big.id, ISSUER)
        assert await _snapshot(engine, listing.id, big.id) == before

    @pytest.mark.asyncio
    async def test_only_seller_accepts(self, engine, minted):
        listing = await engine.settlement.create_listing("A1", ISSUER, "10", "USD", "3", _next_week())
        await engine.settlement.credit_balance(BUYER, "100")
        bid = await engine.settlement.place_bid(listing.id, BUYER, "10", "1")

        with pytest.raises(ForbiddenError):
            await engine.settlement.accept_bid(bid.id, BUYER)

    @pytest.mark.asyncio
    async def test_purchase_with_on_chain_payment(self, engine, minted, provider):
        listing = await engine.settlement.create_listing("A1", ISSUER, "10", "USD", "5", _next_week())
        await engine.settlement.credit_balance(BUYER, "100")

        settlement = await engine.settlement.execute_purchase(listing.id, BUYER, "2", source_vault_id="buyer-vault")

        transfer = [c for c in provider.calls if c[0] == "transfer"][-1]
        assert transfer[1:5] == ("buyer-vault", "vault-1", "USD", Decimal("20"))
        assert settlement["payment_tx_id"] == transfer[-1]
        assert Decimal((await engine.settlement.get_ownership("A1", BUYER)).quantity) == Decimal("2")

    @pytest.mark.asyncio
    async def test_purchase_checks_run_before_payment(self, engine, minted, provider):
        listing = await engine.settlement.create_listing("A1", ISSUER, "10", "USD", "5", _next_week())
        await engine.settlement.credit_balance(BUYER, "5")

        with pytest.raises(ConflictError):
            await engine.settlement.execute_purchase(listing.id, BUYER, "2", source_vault_id="buyer-vault")

        assert [c for c in provider.calls if c[0] == "transfer"] == []
        assert await engine.settlement.get_listing_bids(listing.id) == []

    @pytest.mark.asyncio
    async def test_settlement_failing_after_payment_rejects_bid_and_records_payment(
        self, engine, minted, provider, monkeypatch
    ):
        listing = await engine.settlement.create_listing("A1", ISSUER, "10", "USD", "5", _next_week())
        await engine.settlement.credit_balance(BUYER, "20")
        send = provider.transfer

        async def transfer_then_drain_balance(*args):
            tx_id = await send(*args)
            async with async_managed_session() as session:
                balance = (
                    await session.execute(select(UserBalance).where(UserBalance.user_id == BUYER))
                ).scalar_one()
                balance.balance = Decimal("0")
            return tx_id

        monkeypatch.setattr(provider, "transfer", transfer_then_drain_balance)

        with pytest.raises(ConflictError):
            await engine.settlement.execute_purchase(listing.id, BUYER, "2", source_vault_id="buyer-vault")

        tx_id = [c for c in provider.calls if c[0] == "transfer"][-1][-1]
        assert [b.status for b in await engine.settlement.get_listing_bids(listing.id)] == ["REJECTED"]
        orphaned = await engine.audit.list_events(event_type=AuditEvent.PURCHASE_PAYMENT_ORPHANED)
        assert len(orphaned) == 1
        assert orphaned[0].details["payment_tx_id"] == tx_id
        assert Decimal(orphaned[0].details["total"]) == Decimal("20")
        assert await engine.settlement.get_ownership("A1", BUYER) is None
        details = await engine.settlement.get_listing_details(listing.id)
        assert details["status"] == "ACTIVE"
        assert Decimal(details["quantity_sold"]) == Decimal("0")
