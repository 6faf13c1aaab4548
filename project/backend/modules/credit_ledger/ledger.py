"""
Credit ledger.

Every balance mutation happens inside one store transaction that holds the
user's balance row lock, and appends the matching ledger entries in the same
transaction. Bonus credits are always consumed before purchased credits,
oldest-expiring grant first.
"""

from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Sequence, Tuple

from shared.config import Settings
from shared.errors import (
    AlreadyCreditedError,
    ConcurrencyConflictError,
    InsufficientCreditsError,
    OrderNotFoundError,
    ReservationNotFoundError,
    ValidationError,
)
from shared.logging import get_logger
from shared.models import (
    BonusAllocation,
    BonusCredit,
    CreditBalance,
    CreditReservation,
    CreditTransaction,
    utc_now,
)
from shared.retry import retry_async
from shared.store import Store, StoreSession

logger = get_logger("credit_ledger")

GRANT_SOURCES = ("purchase", "bonus", "admin_grant", "refund")
DEFAULT_TRANSACTION_LIMIT = 50


class CreditLedger:
    """Reserve / settle / release / grant / deduct on per-user balances."""

    def __init__(
        self,
        store: Store,
        default_free_credits: int = 50,
        reservation_ttl_seconds: int = 3600,
        max_conflict_retries: int = 3,
    ):
        self.store = store
        self.default_free_credits = default_free_credits
        self.reservation_ttl = timedelta(seconds=reservation_ttl_seconds)
        self.max_conflict_retries = max_conflict_retries

    @classmethod
    def from_settings(cls, store: Store, settings: Settings) -> "CreditLedger":
        return cls(
            store,
            default_free_credits=settings.default_free_credits,
            reservation_ttl_seconds=settings.reservation_ttl_seconds,
            max_conflict_retries=settings.ledger_max_conflict_retries,
        )

    async def _run(self, operation: str, func):
        """Run a transactional ledger call, retrying immediately on lock conflicts."""
        return await retry_async(
            func,
            max_attempts=self.max_conflict_retries,
            base_delay=0,
            retryable_exceptions=(ConcurrencyConflictError,),
            operation=f"ledger.{operation}",
        )

    # Balance row helpers (caller holds a transaction)

    async def _lock_or_create(self, tx: StoreSession, user_id: str) -> CreditBalance:
        balance = await tx.lock_balance(user_id)
        if balance is not None:
            return balance
        starter = CreditBalance(
            user_id=user_id,
            balance=self.default_free_credits,
            lifetime_credits_received=self.default_free_credits,
        )
        if await tx.create_balance(starter) and self.default_free_credits > 0:
            await tx.insert_transaction(CreditTransaction(
                user_id=user_id,
                type="bonus",
                amount=self.default_free_credits,
                description="Starter credits",
                metadata={"source": "signup"},
            ))
            logger.info("Balance created with starter credits", extra={"user_id": user_id, "credits": self.default_free_credits})
        return await tx.lock_balance(user_id)

    async def _debit(
        self,
        tx: StoreSession,
        balance: CreditBalance,
        amount: int,
    ) -> Tuple[int, List[BonusAllocation]]:
        """Take `amount` from bonus grants first, then the purchased balance."""
        remaining = amount
        allocations: List[BonusAllocation] = []
        for grant in await tx.list_active_bonus_credits(balance.user_id):
            if remaining == 0:
                break
            take = min(grant.remaining_amount, remaining)
            grant.remaining_amount -= take
            await tx.save_bonus_credit(grant)
            allocations.append(BonusAllocation(bonus_credit_id=grant.id, amount=take))
            remaining -= take
        bonus_amount = amount - remaining
        balance.bonus_balance -= bonus_amount
        balance.balance -= remaining
        return bonus_amount, allocations

    async def _credit_back(
        self,
        tx: StoreSession,
        balance: CreditBalance,
        reservation: CreditReservation,
        refund: int,
    ) -> int:
        """
        Return `refund` credits of a reservation: purchased portion first, then
        bonus grants in reverse draw order. Grants that expired meanwhile are
        not revived.

        Returns:
            Credits forfeited to expired grants
        """
        to_purchased = min(refund, reservation.purchased_amount)
        balance.balance += to_purchased
        rest = refund - to_purchased
        forfeited = 0
        for allocation in reversed(reservation.bonus_allocations):
            if rest == 0:
                break
            give = min(allocation.amount, rest)
            rest -= give
            grant = await tx.get_bonus_credit(allocation.bonus_credit_id)
            if grant is None or grant.is_expired:
                forfeited += give
                continue
            grant.remaining_amount += give
            await tx.save_bonus_credit(grant)
            balance.bonus_balance += give
        if forfeited:
            logger.info(
                "Bonus credits forfeited on reservation close",
                extra={"reservation_id": reservation.id, "forfeited": forfeited}
            )
        return forfeited

    # Reservations

    async def reserve(
        self,
        user_id: str,
        amount: int,
        operation_type: str,
        project_id: Optional[str] = None,
    ) -> str:
        """
        Hold `amount` credits for one unit of work.

        Raises:
            ValidationError: If amount is not positive
            InsufficientCreditsError: If available balance is below amount
        """
        if amount <= 0:
            raise ValidationError(f"Reservation amount must be positive, got {amount}")

        async def _reserve() -> str:
            async with self.store.transaction() as tx:
                balance = await self._lock_or_create(tx, user_id)
                if balance.available < amount:
                    raise InsufficientCreditsError(user_id, amount, balance.available)
                bonus_amount, allocations = await self._debit(tx, balance, amount)
                await tx.save_balance(balance)
                reservation = CreditReservation(
                    user_id=user_id,
                    project_id=project_id,
                    amount=amount,
                    bonus_amount=bonus_amount,
                    bonus_allocations=allocations,
                    operation_type=operation_type,
                    expires_at=utc_now() + self.reservation_ttl,
                )
                await tx.insert_reservation(reservation)
                await tx.insert_transaction(CreditTransaction(
                    user_id=user_id,
                    type="reservation",
                    amount=-amount,
                    description=f"Reserved for {operation_type}",
                    project_id=project_id,
                    operation_type=operation_type,
                    metadata={"reservation_id": reservation.id, "bonus_amount": bonus_amount},
                ))
                return reservation.id

        reservation_id = await self._run("reserve", _reserve)
        logger.info(
            "Credits reserved",
            extra={"user_id": user_id, "amount": amount, "operation_type": operation_type, "reservation_id": reservation_id}
        )
        return reservation_id

    async def settle(
        self,
        reservation_id: str,
        actual_amount: int,
        description: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
        provider: Optional[str] = None,
        model: Optional[str] = None,
    ) -> str:
        """
        Convert a reservation into a usage charge of `actual_amount`.

        The difference is returned to the user. Charges above the reserved
        amount are capped at it. Settling a reservation that is no longer
        active changes nothing and returns its current status.

        Returns:
            The reservation's status after the call
        """
        if actual_amount < 0:
            raise ValidationError(f"Settlement amount cannot be negative, got {actual_amount}")

        async def _settle() -> str:
            async with self.store.transaction() as tx:
                reservation = await self._get_reservation(tx, reservation_id)
                if reservation.status != "active":
                    return reservation.status
                balance = await self._lock_or_create(tx, reservation.user_id)
                charged = min(actual_amount, reservation.amount)
                if not await tx.close_reservation(reservation_id, "settled", charged, utc_now()):
                    return (await self._get_reservation(tx, reservation_id)).status

                if actual_amount > reservation.amount:
                    logger.warning(
                        "Actual cost exceeded reservation, charge capped",
                        extra={"reservation_id": reservation_id, "reserved": reservation.amount, "actual": actual_amount}
                    )
                await self._credit_back(tx, balance, reservation, reservation.amount - charged)
                balance.lifetime_credits_used += charged
                await tx.save_balance(balance)

                entry_metadata = {"reservation_id": reservation_id, **(metadata or {})}
                if actual_amount > reservation.amount:
                    entry_metadata["uncharged_overage"] = actual_amount - reservation.amount
                await tx.insert_transaction(CreditTransaction(
                    user_id=reservation.user_id,
                    type="reservation_settle",
                    amount=reservation.amount,
                    description="Reservation settled",
                    project_id=reservation.project_id,
                    operation_type=reservation.operation_type,
                    metadata={"reservation_id": reservation_id},
                ))
                await tx.insert_transaction(CreditTransaction(
                    user_id=reservation.user_id,
                    type="usage",
                    amount=-charged,
                    description=description or f"Usage: {reservation.operation_type}",
                    project_id=reservation.project_id,
                    operation_type=reservation.operation_type,
                    provider=provider,
                    model=model,
                    metadata=entry_metadata,
                ))
                return "settled"

        status = await self._run("settle", _settle)
        logger.info(
            "Reservation settled",
            extra={"reservation_id": reservation_id, "actual_amount": actual_amount, "status": status}
        )
        return status

    async def release(self, reservation_id: str) -> str:
        """
        Return a reservation's full amount. No-op if it is no longer active.

        Returns:
            The reservation's status after the call
        """
        return await self._close_with_refund(reservation_id, "released", "Reservation released")

    async def expire(self, reservation_id: str) -> str:
        """Release an abandoned reservation, marking it expired."""
        return await self._close_with_refund(reservation_id, "expired", "Reservation expired")

    async def _close_with_refund(self, reservation_id: str, status: str, description: str) -> str:
        async def _close() -> str:
            async with self.store.transaction() as tx:
                reservation = await self._get_reservation(tx, reservation_id)
                if reservation.status != "active":
                    return reservation.status
                balance = await self._lock_or_create(tx, reservation.user_id)
                if not await tx.close_reservation(reservation_id, status, None, utc_now()):
                    return (await self._get_reservation(tx, reservation_id)).status
                forfeited = await self._credit_back(tx, balance, reservation, reservation.amount)
                await tx.save_balance(balance)
                await tx.insert_transaction(CreditTransaction(
                    user_id=reservation.user_id,
                    type="reservation_release",
                    amount=reservation.amount,
                    description=description,
                    project_id=reservation.project_id,
                    operation_type=reservation.operation_type,
                    metadata={"reservation_id": reservation_id, "forfeited_bonus": forfeited},
                ))
                if forfeited:
                    await tx.insert_transaction(CreditTransaction(
                        user_id=reservation.user_id,
                        type="bonus_expired",
                        amount=-forfeited,
                        description="Bonus credits expired while reserved",
                        project_id=reservation.project_id,
                        metadata={"reservation_id": reservation_id},
                    ))
                return status

        result = await self._run(status, _close)
        logger.info("Reservation closed", extra={"reservation_id": reservation_id, "status": result})
        return result

    @staticmethod
    async def _get_reservation(tx: StoreSession, reservation_id: str) -> CreditReservation:
        reservation = await tx.get_reservation(reservation_id)
        if reservation is None:
            raise ReservationNotFoundError(f"Reservation {reservation_id} not found")
        return reservation

    # Grants and deductions

    async def grant(
        self,
        user_id: str,
        amount: int,
        source: str,
        expires_at: Optional[datetime] = None,
        admin_user_id: Optional[str] = None,
        description: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> CreditTransaction:
        """
        Add credits to a user.

        Bonus grants, and any grant with an expiry, land in the bonus balance
        as a tracked BonusCredit; everything else lands in the purchased
        balance.
        """
        if amount <= 0:
            raise ValidationError(f"Grant amount must be positive, got {amount}")
        if source not in GRANT_SOURCES:
            raise ValidationError(f"Unknown grant source: {source}")
        as_bonus = source == "bonus" or expires_at is not None

        async def _grant() -> CreditTransaction:
            async with self.store.transaction() as tx:
                balance = await self._lock_or_create(tx, user_id)
                entry_metadata = dict(metadata or {})
                if admin_user_id:
                    entry_metadata["admin_user_id"] = admin_user_id
                if as_bonus:
                    bonus = BonusCredit(
                        user_id=user_id,
                        amount=amount,
                        remaining_amount=amount,
                        source=source,
                        description=description,
                        expires_at=expires_at,
                    )
                    await tx.insert_bonus_credit(bonus)
                    balance.bonus_balance += amount
                    entry_metadata["bonus_credit_id"] = bonus.id
                    if expires_at:
                        entry_metadata["expires_at"] = expires_at.isoformat()
                else:
                    balance.balance += amount
                balance.lifetime_credits_received += amount
                await tx.save_balance(balance)
                txn = CreditTransaction(
                    user_id=user_id,
                    type=source,
                    amount=amount,
                    description=description or f"Credits granted ({source})",
                    metadata=entry_metadata,
                )
                return await tx.insert_transaction(txn)

        txn = await self._run("grant", _grant)
        logger.info(
            "Credits granted",
            extra={"user_id": user_id, "amount": amount, "source": source, "bonus": as_bonus}
        )
        return txn

    async def deduct(
        self,
        user_id: str,
        amount: int,
        reason: str,
        admin_user_id: Optional[str] = None,
        operation_type: Optional[str] = None,
        project_id: Optional[str] = None,
        provider: Optional[str] = None,
        model: Optional[str] = None,
    ) -> CreditTransaction:
        """
        Debit credits directly, bonus first.

        Recorded as `usage` when an operation type is given, otherwise as an
        `admin_deduction`.

        Raises:
            InsufficientCreditsError: If available balance is below amount
        """
        if amount <= 0:
            raise ValidationError(f"Deduction amount must be positive, got {amount}")

        async def _deduct() -> CreditTransaction:
            async with self.store.transaction() as tx:
                balance = await self._lock_or_create(tx, user_id)
                if balance.available < amount:
                    raise InsufficientCreditsError(user_id, amount, balance.available)
                bonus_amount, allocations = await self._debit(tx, balance, amount)
                balance.lifetime_credits_used += amount
                await tx.save_balance(balance)
                entry_metadata: Dict[str, Any] = {
                    "credit_sources": {
                        "bonus": bonus_amount,
                        "purchased": amount - bonus_amount,
                        "bonus_allocations": [a.model_dump() for a in allocations],
                    }
                }
                if admin_user_id:
                    entry_metadata["admin_user_id"] = admin_user_id
                txn = CreditTransaction(
                    user_id=user_id,
                    type="usage" if operation_type else "admin_deduction",
                    amount=-amount,
                    description=reason,
                    project_id=project_id,
                    operation_type=operation_type,
                    provider=provider,
                    model=model,
                    metadata=entry_metadata,
                )
                return await tx.insert_transaction(txn)

        txn = await self._run("deduct", _deduct)
        logger.info("Credits deducted", extra={"user_id": user_id, "amount": amount, "type": txn.type})
        return txn

    # Reads

    async def get_available_balance(self, user_id: str) -> int:
        """
        Credits the user can reserve right now.

        Active holds are already debited, so this is gross credits minus the
        sum of active reservations.
        """
        async with self.store.session() as s:
            balance = await s.get_balance(user_id)
        if balance is None:
            return self.default_free_credits
        return balance.available

    async def get_balance_summary(self, user_id: str) -> Dict[str, int]:
        async with self.store.session() as s:
            balance = await s.get_balance(user_id)
            active = await s.list_active_reservations(user_id=user_id)
        if balance is None:
            balance = CreditBalance(user_id=user_id, balance=self.default_free_credits)
        return {
            "balance": balance.balance,
            "bonus_balance": balance.bonus_balance,
            "reserved": sum(r.amount for r in active),
            "available": balance.available,
            "lifetime_credits_received": balance.lifetime_credits_received,
            "lifetime_credits_used": balance.lifetime_credits_used,
        }

    async def list_transactions(
        self,
        user_id: str,
        types: Optional[Sequence[str]] = None,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
        limit: int = DEFAULT_TRANSACTION_LIMIT,
    ) -> List[CreditTransaction]:
        async with self.store.session() as s:
            return await s.list_transactions(user_id=user_id, types=types, since=since, until=until, limit=limit)

    async def set_low_balance_threshold(self, user_id: str, threshold: Optional[int]) -> None:
        if threshold is not None and threshold < 0:
            raise ValidationError("Low balance threshold cannot be negative")

        async def _set() -> None:
            async with self.store.transaction() as tx:
                balance = await self._lock_or_create(tx, user_id)
                balance.low_balance_threshold = threshold
                await tx.save_balance(balance)

        await self._run("set_low_balance_threshold", _set)

    # Payments

    async def credit_payment_order(
        self,
        order_id: str,
        external_payment_id: Optional[str] = None,
        note: Optional[str] = None,
    ) -> CreditTransaction:
        """
        Credit a paid order exactly once.

        Locks the order row, re-checks that it has no credit transaction,
        credits the balance, appends the purchase entry and stamps
        credit_transaction_id with a conditional update, all in one
        transaction.

        Raises:
            OrderNotFoundError: If the order does not exist
            AlreadyCreditedError: If the order was already credited
        """
        async def _credit() -> CreditTransaction:
            async with self.store.transaction() as tx:
                order = await tx.get_payment_order(order_id, for_update=True)
                if order is None:
                    raise OrderNotFoundError(f"Payment order {order_id} not found")
                if order.credit_transaction_id:
                    raise AlreadyCreditedError(order.id, order.credit_transaction_id)

                balance = await self._lock_or_create(tx, order.user_id)
                balance.balance += order.credits
                balance.lifetime_credits_received += order.credits
                await tx.save_balance(balance)

                payment_id = external_payment_id or order.external_payment_id
                txn = await tx.insert_transaction(CreditTransaction(
                    user_id=order.user_id,
                    type="purchase",
                    amount=order.credits,
                    description=note or f"Purchased {order.credits} credits",
                    metadata={
                        "payment_order_id": order.id,
                        "provider": order.provider,
                        "external_order_id": order.external_order_id,
                        "external_payment_id": payment_id,
                        "amount": str(order.amount),
                        "currency": order.currency,
                    },
                ))
                credited = await tx.update_payment_order(
                    order.id,
                    {
                        "status": "captured",
                        "external_payment_id": payment_id,
                        "credit_transaction_id": txn.id,
                        "paid_at": utc_now(),
                        "failure_reason": None,
                    },
                    require_uncredited=True,
                )
                if not credited:
                    raise AlreadyCreditedError(order.id)
                return txn

        txn = await self._run("credit_payment_order", _credit)
        logger.info(
            "Payment order credited",
            extra={"order_id": order_id, "credit_transaction_id": txn.id, "credits": txn.amount}
        )
        return txn

    # Bonus expiry

    async def expire_bonus_credits(self, now: Optional[datetime] = None) -> int:
        """
        Expire every bonus grant past its expiry.

        Returns:
            Number of grants expired
        """
        now = now or utc_now()
        async with self.store.session() as s:
            due = await s.list_expiring_bonus_credits(now)

        expired = 0
        for grant in due:
            forfeited = await self._run(
                "expire_bonus_credit",
                lambda grant=grant: self._expire_grant(grant.id, grant.user_id),
            )
            if forfeited is not None:
                expired += 1
        if expired:
            logger.info("Bonus credits expired", extra={"count": expired})
        return expired

    async def _expire_grant(self, grant_id: str, user_id: str) -> Optional[int]:
        async with self.store.transaction() as tx:
            balance = await self._lock_or_create(tx, user_id)
            grant = await tx.get_bonus_credit(grant_id)
            if grant is None or grant.is_expired:
                return None
            forfeited = grant.remaining_amount
            grant.remaining_amount = 0
            grant.is_expired = True
            await tx.save_bonus_credit(grant)
            balance.bonus_balance = max(0, balance.bonus_balance - forfeited)
            await tx.save_balance(balance)
            if forfeited:
                await tx.insert_transaction(CreditTransaction(
                    user_id=user_id,
                    type="bonus_expired",
                    amount=-forfeited,
                    description="Bonus credits expired",
                    metadata={"bonus_credit_id": grant_id},
                ))
            return forfeited
