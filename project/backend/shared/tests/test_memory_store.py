"""
Tests for the in-process store's transactional and conditional-update semantics.
"""

from datetime import timedelta

import pytest

from shared.models import (
    BonusCredit,
    CreditBalance,
    CreditReservation,
    DailyUsageSummary,
    PaymentOrder,
    PipelineRun,
    PipelineRunStage,
    utc_now,
)
from shared.store import MemoryStore


@pytest.mark.asyncio
async def test_transaction_rolls_back_on_error():
    """Test that a failing transaction leaves no partial writes."""
    store = MemoryStore()
    async with store.session() as s:
        await s.create_balance(CreditBalance(user_id="u1", balance=10))

    with pytest.raises(RuntimeError):
        async with store.transaction() as tx:
            balance = await tx.lock_balance("u1")
            balance.balance = 0
            await tx.save_balance(balance)
            raise RuntimeError("boom")

    async with store.session() as s:
        assert (await s.get_balance("u1")).balance == 10


@pytest.mark.asyncio
async def test_create_balance_only_once():
    store = MemoryStore()
    async with store.session() as s:
        assert await s.create_balance(CreditBalance(user_id="u1", balance=5)) is True
        assert await s.create_balance(CreditBalance(user_id="u1", balance=99)) is False
        assert (await s.get_balance("u1")).balance == 5


@pytest.mark.asyncio
async def test_close_reservation_is_conditional():
    """Test that only an active reservation can be closed."""
    store = MemoryStore()
    reservation = CreditReservation(
        user_id="u1", amount=5, operation_type="image_generation", expires_at=utc_now() + timedelta(hours=1)
    )
    async with store.session() as s:
        await s.insert_reservation(reservation)
        assert await s.close_reservation(reservation.id, "settled", 4, utc_now()) is True
        assert await s.close_reservation(reservation.id, "released", None, utc_now()) is False
        stored = await s.get_reservation(reservation.id)
    assert stored.status == "settled"
    assert stored.settled_amount == 4


@pytest.mark.asyncio
async def test_bonus_credits_ordered_by_expiry():
    """Test that soonest-expiring grants come first and open-ended grants last."""
    store = MemoryStore()
    now = utc_now()
    never = BonusCredit(user_id="u1", amount=5, remaining_amount=5)
    late = BonusCredit(user_id="u1", amount=5, remaining_amount=5, expires_at=now + timedelta(days=30))
    soon = BonusCredit(user_id="u1", amount=5, remaining_amount=5, expires_at=now + timedelta(days=1))
    spent = BonusCredit(user_id="u1", amount=5, remaining_amount=0, expires_at=now + timedelta(hours=1))
    async with store.session() as s:
        for grant in (never, late, soon, spent):
            await s.insert_bonus_credit(grant)
        active = await s.list_active_bonus_credits("u1")
        expiring = await s.list_expiring_bonus_credits(now + timedelta(days=2))
    assert [g.id for g in active] == [soon.id, late.id, never.id]
    assert [g.id for g in expiring] == [soon.id]


@pytest.mark.asyncio
async def test_daily_summary_upsert_replaces_row():
    store = MemoryStore()
    day = utc_now().date()
    async with store.session() as s:
        await s.upsert_daily_summary(DailyUsageSummary(user_id="u1", date=day, total_credits_used=5))
        await s.upsert_daily_summary(DailyUsageSummary(user_id="u1", date=day, total_credits_used=8))
        rows = await s.list_daily_summaries("u1")
    assert len(rows) == 1
    assert rows[0].total_credits_used == 8


@pytest.mark.asyncio
async def test_update_payment_order_require_uncredited():
    """Test that the uncredited guard blocks updates to credited orders."""
    store = MemoryStore()
    order = PaymentOrder(user_id="u1", external_order_id="order_1", credits=100, amount=99, credit_transaction_id="t1")
    async with store.session() as s:
        await s.insert_payment_order(order)
        assert await s.update_payment_order(order.id, {"status": "failed"}, require_uncredited=True) is False
        assert await s.update_payment_order(order.id, {"status": "refunded"}) is True
        assert (await s.get_payment_order_by_external_id("order_1")).status == "refunded"


@pytest.mark.asyncio
async def test_run_and_stage_transitions_are_conditional():
    store = MemoryStore()
    run = PipelineRun(project_id="p1", user_id="u1", template_id="t1")
    async with store.session() as s:
        await s.insert_run(run)
        assert await s.transition_run(run.id, ["pending"], "running") is True
        assert await s.transition_run(run.id, ["pending"], "running") is False

        row = PipelineRunStage(run_id=run.id, stage_id="s1", job_count=2)
        assert await s.insert_run_stage_if_absent(row) is True
        assert await s.insert_run_stage_if_absent(PipelineRunStage(run_id=run.id, stage_id="s1")) is False

        await s.increment_run_stage(run.id, "s1", True)
        updated = await s.increment_run_stage(run.id, "s1", False, "provider down")
        assert (updated.completed_jobs, updated.failed_jobs, updated.last_error) == (1, 1, "provider down")

        assert await s.transition_run_stage(run.id, "s1", ["running"], "completed") is True
        assert await s.transition_run_stage(run.id, "s1", ["running"], "failed") is False
        assert await s.increment_run_stage(run.id, "s1", True) is None


@pytest.mark.asyncio
async def test_increment_ignores_other_attempts():
    store = MemoryStore()
    async with store.session() as s:
        await s.insert_run_stage_if_absent(PipelineRunStage(run_id="r1", stage_id="s1", attempt=2, job_count=3))
        assert await s.increment_run_stage("r1", "s1", True, attempt=1) is None
        row = await s.increment_run_stage("r1", "s1", True, attempt=2)
    assert row.completed_jobs == 1


@pytest.mark.asyncio
async def test_one_active_run_per_project():
    store = MemoryStore()
    async with store.session() as s:
        assert await s.insert_run(PipelineRun(project_id="p1", user_id="u1", template_id="t1", status="running")) is True
        assert await s.insert_run(PipelineRun(project_id="p1", user_id="u1", template_id="t1")) is False
        assert await s.insert_run(PipelineRun(project_id="p2", user_id="u1", template_id="t1")) is True
