"""
Tests for the credit ledger: reservations, grants, deductions and payments.
"""

import asyncio
from datetime import timedelta
from decimal import Decimal

import pytest

from shared.errors import (
    AlreadyCreditedError,
    InsufficientCreditsError,
    OrderNotFoundError,
    ReservationNotFoundError,
    ValidationError,
)
from shared.models import PaymentOrder, utc_now
from modules.credit_ledger import CreditLedger


async def _transactions(store, user_id, *types):
    async with store.session() as s:
        return await s.list_transactions(user_id=user_id, types=list(types) or None)


@pytest.mark.asyncio
async def test_starter_credits_on_first_use(store):
    """Test that a new user gets the starter grant and one bonus entry."""
    ledger = CreditLedger(store, default_free_credits=50)
    assert await ledger.get_available_balance("new-user") == 50
    await ledger.reserve("new-user", 5, "story_writing")
    assert await ledger.get_available_balance("new-user") == 45
    starter = await _transactions(store, "new-user", "bonus")
    assert len(starter) == 1
    assert starter[0].amount == 50


@pytest.mark.asyncio
async def test_reserve_then_release_restores_balance(ledger):
    """Test that releasing a hold returns every reserved credit."""
    await ledger.grant("u1", 10, "purchase")
    reservation_id = await ledger.reserve("u1", 7, "image_generation", project_id="p1")
    assert await ledger.get_available_balance("u1") == 3

    summary = await ledger.get_balance_summary("u1")
    assert summary["reserved"] == 7

    assert await ledger.release(reservation_id) == "released"
    assert await ledger.get_available_balance("u1") == 10


@pytest.mark.asyncio
async def test_reserve_more_than_available_fails(ledger, store):
    """Test that the available balance never goes negative."""
    await ledger.grant("u1", 5, "purchase")
    with pytest.raises(InsufficientCreditsError) as exc_info:
        await ledger.reserve("u1", 6, "video_generation")
    assert exc_info.value.required == 6
    assert exc_info.value.available == 5
    assert await ledger.get_available_balance("u1") == 5
    assert await _transactions(store, "u1", "reservation") == []


@pytest.mark.asyncio
async def test_reserve_rejects_non_positive_amount(ledger):
    with pytest.raises(ValidationError):
        await ledger.reserve("u1", 0, "story_writing")


@pytest.mark.asyncio
async def test_settle_refunds_difference(ledger, store):
    """Test that settling below the hold refunds the rest and records usage."""
    await ledger.grant("u1", 20, "purchase")
    reservation_id = await ledger.reserve("u1", 10, "image_generation", project_id="p1")

    status = await ledger.settle(reservation_id, 6, metadata={"job_id": "j1"}, provider="replicate", model="flux")

    assert status == "settled"
    assert await ledger.get_available_balance("u1") == 14
    usage = await _transactions(store, "u1", "usage")
    assert len(usage) == 1
    assert usage[0].amount == -6
    assert usage[0].provider == "replicate"
    assert usage[0].metadata["job_id"] == "j1"
    summary = await ledger.get_balance_summary("u1")
    assert summary["lifetime_credits_used"] == 6
    assert summary["reserved"] == 0


@pytest.mark.asyncio
async def test_settle_caps_overage_at_reservation(ledger, store):
    """Test that charges above the hold are capped and the overage recorded."""
    await ledger.grant("u1", 20, "purchase")
    reservation_id = await ledger.reserve("u1", 5, "video_generation")
    await ledger.settle(reservation_id, 9)
    assert await ledger.get_available_balance("u1") == 15
    usage = (await _transactions(store, "u1", "usage"))[0]
    assert usage.amount == -5
    assert usage.metadata["uncharged_overage"] == 4


@pytest.mark.asyncio
async def test_double_settle_and_release_are_noops(ledger, store):
    """Test that closing a reservation twice changes nothing."""
    await ledger.grant("u1", 10, "purchase")
    reservation_id = await ledger.reserve("u1", 4, "image_generation")
    assert await ledger.settle(reservation_id, 4) == "settled"
    assert await ledger.settle(reservation_id, 4) == "settled"
    assert await ledger.release(reservation_id) == "settled"
    assert await ledger.get_available_balance("u1") == 6
    assert len(await _transactions(store, "u1", "usage")) == 1


@pytest.mark.asyncio
async def test_unknown_reservation(ledger):
    with pytest.raises(ReservationNotFoundError):
        await ledger.release("missing")


@pytest.mark.asyncio
async def test_bonus_credits_consumed_first(ledger):
    """Test that reservations draw from bonus grants before purchased credits."""
    await ledger.grant("u1", 10, "purchase")
    await ledger.grant("u1", 5, "bonus", expires_at=utc_now() + timedelta(days=30))

    reservation_id = await ledger.reserve("u1", 7, "image_generation")
    summary = await ledger.get_balance_summary("u1")
    assert summary["bonus_balance"] == 0
    assert summary["balance"] == 8

    # 3 charged, 4 refunded: purchased portion first, then the bonus grant
    await ledger.settle(reservation_id, 3)
    summary = await ledger.get_balance_summary("u1")
    assert summary["balance"] == 10
    assert summary["bonus_balance"] == 2
    assert summary["available"] == 12


@pytest.mark.asyncio
async def test_sooner_expiring_bonus_used_first(ledger, store):
    await ledger.grant("u1", 5, "bonus", expires_at=utc_now() + timedelta(days=30))
    await ledger.grant("u1", 5, "bonus", expires_at=utc_now() + timedelta(days=1))
    await ledger.deduct("u1", 4, "manual adjustment")
    async with store.session() as s:
        grants = await s.list_active_bonus_credits("u1")
    assert [g.remaining_amount for g in grants] == [1, 5]


@pytest.mark.asyncio
async def test_concurrent_reserves_never_overdraw(ledger):
    """Test that parallel holds cannot exceed the balance."""
    await ledger.grant("u1", 10, "purchase")
    results = await asyncio.gather(
        *(ledger.reserve("u1", 4, "image_generation") for _ in range(3)),
        return_exceptions=True,
    )
    successes = [r for r in results if isinstance(r, str)]
    failures = [r for r in results if isinstance(r, InsufficientCreditsError)]
    assert len(successes) == 2
    assert len(failures) == 1
    assert await ledger.get_available_balance("u1") == 2


@pytest.mark.asyncio
async def test_deduct_records_usage_or_admin_deduction(ledger, store):
    await ledger.grant("u1", 10, "admin_grant", admin_user_id="admin-1")
    await ledger.deduct("u1", 2, "manual correction", admin_user_id="admin-1")
    await ledger.deduct("u1", 3, "story", operation_type="story_writing", project_id="p1")
    assert len(await _transactions(store, "u1", "admin_deduction")) == 1
    usage = await _transactions(store, "u1", "usage")
    assert usage[0].metadata["credit_sources"]["purchased"] == 3
    assert await ledger.get_available_balance("u1") == 5
    with pytest.raises(InsufficientCreditsError):
        await ledger.deduct("u1", 6, "too much")


@pytest.mark.asyncio
async def test_grant_validation(ledger):
    with pytest.raises(ValidationError):
        await ledger.grant("u1", 0, "purchase")
    with pytest.raises(ValidationError):
        await ledger.grant("u1", 5, "gift")


@pytest.mark.asyncio
async def test_expired_bonus_is_forfeited_on_release(ledger, store):
    """Test that credits returned to a grant that expired meanwhile are not revived."""
    await ledger.grant("u1", 5, "bonus", expires_at=utc_now() + timedelta(hours=1))
    reservation_id = await ledger.reserve("u1", 3, "image_generation")

    # The sweep forfeits the 2 unreserved credits and marks the grant expired
    assert await ledger.expire_bonus_credits(utc_now() + timedelta(hours=2)) == 1
    await ledger.release(reservation_id)

    summary = await ledger.get_balance_summary("u1")
    assert summary["available"] == 0
    forfeits = await _transactions(store, "u1", "bonus_expired")
    assert sorted(t.amount for t in forfeits) == [-3, -2]


@pytest.mark.asyncio
async def test_expire_bonus_credits_forfeits_remaining(ledger, store):
    await ledger.grant("u1", 8, "bonus", expires_at=utc_now() + timedelta(hours=1))
    await ledger.deduct("u1", 3, "usage", operation_type="story_writing")
    assert await ledger.expire_bonus_credits(utc_now() + timedelta(hours=2)) == 1
    assert await ledger.get_available_balance("u1") == 0
    expired = await _transactions(store, "u1", "bonus_expired")
    assert [t.amount for t in expired] == [-5]
    assert await ledger.expire_bonus_credits(utc_now() + timedelta(hours=2)) == 0


@pytest.mark.asyncio
async def test_low_balance_threshold(ledger, store):
    await ledger.set_low_balance_threshold("u1", 20)
    async with store.session() as s:
        assert (await s.get_balance("u1")).low_balance_threshold == 20
    with pytest.raises(ValidationError):
        await ledger.set_low_balance_threshold("u1", -1)


@pytest.mark.asyncio
async def test_credit_payment_order_exactly_once(ledger, store):
    """Test that an order is credited once and stamped with the purchase entry."""
    order = PaymentOrder(user_id="u1", external_order_id="order_1", credits=100, amount=Decimal("99.00"), status="created")
    async with store.session() as s:
        await s.insert_payment_order(order)

    txn = await ledger.credit_payment_order(order.id, external_payment_id="pay_1")
    assert txn.type == "purchase"
    assert txn.amount == 100
    assert await ledger.get_available_balance("u1") == 100

    with pytest.raises(AlreadyCreditedError) as exc_info:
        await ledger.credit_payment_order(order.id)
    assert exc_info.value.credit_transaction_id == txn.id

    async with store.session() as s:
        stored = await s.get_payment_order(order.id)
    assert stored.status == "captured"
    assert stored.credit_transaction_id == txn.id
    assert len(await _transactions(store, "u1", "purchase")) == 1


@pytest.mark.asyncio
async def test_credit_missing_order(ledger):
    with pytest.raises(OrderNotFoundError):
        await ledger.credit_payment_order("missing")
