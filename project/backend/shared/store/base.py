"""
Ledger store contract.

A Store hands out sessions. `transaction()` sessions are atomic: every write
commits together or not at all, and `lock_*` / `for_update` reads hold row
locks until the scope exits. `session()` sessions autocommit each call.

Sessions must not be nested on one task: open one scope, do the work through
it, and leave.
"""

from abc import ABC, abstractmethod
from datetime import date, datetime
from typing import Any, AsyncContextManager, Dict, Iterable, List, Optional, Sequence

from shared.models import (
    BonusCredit,
    CreditAlert,
    CreditBalance,
    CreditReservation,
    CreditTransaction,
    DailyUsageSummary,
    GeneratedMedia,
    PaymentOrder,
    PipelineRun,
    PipelineRunStage,
    Project,
    Scene,
    Story,
)


class StoreSession(ABC):
    """Operations available inside a store scope."""

    # Balances

    @abstractmethod
    async def get_balance(self, user_id: str) -> Optional[CreditBalance]:
        """Read a balance without locking."""

    @abstractmethod
    async def lock_balance(self, user_id: str) -> Optional[CreditBalance]:
        """Read a balance holding its row lock (SELECT ... FOR UPDATE)."""

    @abstractmethod
    async def create_balance(self, balance: CreditBalance) -> bool:
        """Insert a balance row; False if the user already has one."""

    @abstractmethod
    async def save_balance(self, balance: CreditBalance) -> None:
        """Write back a balance previously read with lock_balance."""

    @abstractmethod
    async def list_balances(self) -> List[CreditBalance]:
        """All balance rows, unlocked."""

    @abstractmethod
    async def stamp_low_balance_notified(self, user_id: str, at: datetime) -> None:
        """Set low_balance_notified_at without touching any amount column."""

    # Transactions

    @abstractmethod
    async def insert_transaction(self, txn: CreditTransaction) -> CreditTransaction:
        """Append a ledger entry."""

    @abstractmethod
    async def list_transactions(
        self,
        user_id: Optional[str] = None,
        types: Optional[Sequence[str]] = None,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
        limit: Optional[int] = None,
    ) -> List[CreditTransaction]:
        """Ledger entries, newest first. `until` is exclusive."""

    # Reservations

    @abstractmethod
    async def insert_reservation(self, reservation: CreditReservation) -> None:
        """Persist a new active reservation."""

    @abstractmethod
    async def get_reservation(self, reservation_id: str, for_update: bool = False) -> Optional[CreditReservation]:
        """Read a reservation, optionally holding its row lock."""

    @abstractmethod
    async def close_reservation(
        self,
        reservation_id: str,
        status: str,
        settled_amount: Optional[int],
        settled_at: datetime,
    ) -> bool:
        """Move an active reservation to a terminal status; False if it was not active."""

    @abstractmethod
    async def list_active_reservations(
        self,
        expired_before: Optional[datetime] = None,
        project_ids: Optional[Iterable[str]] = None,
        user_id: Optional[str] = None,
    ) -> List[CreditReservation]:
        """Active reservations, filtered by expiry, project or user."""

    # Bonus credits

    @abstractmethod
    async def insert_bonus_credit(self, bonus: BonusCredit) -> None:
        """Persist a bonus grant."""

    @abstractmethod
    async def get_bonus_credit(self, bonus_id: str) -> Optional[BonusCredit]:
        """Read one bonus grant."""

    @abstractmethod
    async def save_bonus_credit(self, bonus: BonusCredit) -> None:
        """Write back a bonus grant (callers hold the owner's balance lock)."""

    @abstractmethod
    async def list_active_bonus_credits(self, user_id: str) -> List[BonusCredit]:
        """Unexpired grants with remaining credits, oldest-expiring first."""

    @abstractmethod
    async def list_expiring_bonus_credits(self, before: datetime) -> List[BonusCredit]:
        """Unexpired grants with remaining credits expiring at or before `before`."""

    # Alerts

    @abstractmethod
    async def insert_alert(self, alert: CreditAlert) -> None:
        """Persist an alert."""

    @abstractmethod
    async def find_open_alert(
        self,
        user_id: str,
        alert_type: str,
        bonus_credit_id: Optional[str] = None,
    ) -> Optional[CreditAlert]:
        """Most recent unresolved alert of a type (and bonus grant, when given)."""

    @abstractmethod
    async def resolve_alerts(self, user_id: str, alert_type: str, at: datetime) -> int:
        """Resolve every open alert of a type; returns how many were resolved."""

    # Daily usage summaries

    @abstractmethod
    async def upsert_daily_summary(self, summary: DailyUsageSummary) -> None:
        """Insert or replace the summary keyed on (user_id, date)."""

    @abstractmethod
    async def get_daily_summary(self, user_id: str, day: date) -> Optional[DailyUsageSummary]:
        """Read one day's summary."""

    @abstractmethod
    async def list_daily_summaries(self, user_id: Optional[str] = None) -> List[DailyUsageSummary]:
        """All summaries, optionally for one user."""

    # Payment orders

    @abstractmethod
    async def insert_payment_order(self, order: PaymentOrder) -> None:
        """Persist a new order."""

    @abstractmethod
    async def get_payment_order(self, order_id: str, for_update: bool = False) -> Optional[PaymentOrder]:
        """Read an order by id, optionally holding its row lock."""

    @abstractmethod
    async def get_payment_order_by_external_id(self, external_order_id: str) -> Optional[PaymentOrder]:
        """Read an order by the provider's order id."""

    @abstractmethod
    async def get_payment_order_by_idempotency_key(self, user_id: str, key: str) -> Optional[PaymentOrder]:
        """Read an order by the client's idempotency key."""

    @abstractmethod
    async def update_payment_order(
        self,
        order_id: str,
        fields: Dict[str, Any],
        require_uncredited: bool = False,
    ) -> bool:
        """Update an order; with require_uncredited only if credit_transaction_id IS NULL."""

    @abstractmethod
    async def list_payment_orders(self, status: str, uncredited_only: bool = False) -> List[PaymentOrder]:
        """Orders in a status, oldest first."""

    # Pipeline runs

    @abstractmethod
    async def insert_run(self, run: PipelineRun) -> bool:
        """Persist a new run; False if its project already has a pending or running run."""

    @abstractmethod
    async def get_run(self, run_id: str) -> Optional[PipelineRun]:
        """Read a run."""

    @abstractmethod
    async def update_run(self, run_id: str, fields: Dict[str, Any]) -> None:
        """Unconditional field update."""

    @abstractmethod
    async def transition_run(
        self,
        run_id: str,
        from_statuses: Sequence[str],
        to_status: str,
        fields: Optional[Dict[str, Any]] = None,
    ) -> bool:
        """Conditional status change; False if the run was not in `from_statuses`."""

    @abstractmethod
    async def list_runs(self, status: str, project_id: Optional[str] = None) -> List[PipelineRun]:
        """Runs in a status, optionally for one project."""

    # Pipeline run stages

    @abstractmethod
    async def insert_run_stage_if_absent(self, run_stage: PipelineRunStage) -> bool:
        """Create the (run_id, stage_id) row; False if it already exists."""

    @abstractmethod
    async def get_run_stage(self, run_id: str, stage_id: str) -> Optional[PipelineRunStage]:
        """Read one stage row."""

    @abstractmethod
    async def list_run_stages(self, run_id: str) -> List[PipelineRunStage]:
        """All stage rows of a run."""

    @abstractmethod
    async def update_run_stage(self, run_id: str, stage_id: str, fields: Dict[str, Any]) -> None:
        """Unconditional field update."""

    @abstractmethod
    async def transition_run_stage(
        self,
        run_id: str,
        stage_id: str,
        from_statuses: Sequence[str],
        to_status: str,
        fields: Optional[Dict[str, Any]] = None,
    ) -> bool:
        """Conditional status change; False if the stage was not in `from_statuses`."""

    @abstractmethod
    async def increment_run_stage(
        self,
        run_id: str,
        stage_id: str,
        succeeded: bool,
        error: Optional[str] = None,
        attempt: Optional[int] = None,
    ) -> Optional[PipelineRunStage]:
        """
        Atomically bump completed_jobs or failed_jobs of a running stage and
        return the updated row.

        Returns None when the stage is not running or, if `attempt` is given,
        when the stage has moved on to a different attempt.
        """

    # Projects, stories, scenes, media

    @abstractmethod
    async def insert_project(self, project: Project) -> None:
        """Persist a new project."""

    @abstractmethod
    async def get_project(self, project_id: str) -> Optional[Project]:
        """Read a project."""

    @abstractmethod
    async def update_project(self, project_id: str, fields: Dict[str, Any]) -> None:
        """Field update."""

    @abstractmethod
    async def save_story(self, story: Story) -> None:
        """Insert or replace the project's story."""

    @abstractmethod
    async def get_story(self, project_id: str) -> Optional[Story]:
        """Read the project's story."""

    @abstractmethod
    async def replace_scenes(self, project_id: str, scenes: List[Scene]) -> None:
        """Delete the project's scenes and insert `scenes`."""

    @abstractmethod
    async def list_scenes(self, project_id: str) -> List[Scene]:
        """Scenes ordered by index."""

    @abstractmethod
    async def get_scene(self, scene_id: str) -> Optional[Scene]:
        """Read a scene."""

    @abstractmethod
    async def update_scene(self, scene_id: str, fields: Dict[str, Any]) -> None:
        """Field update."""

    @abstractmethod
    async def insert_media(self, media: GeneratedMedia) -> None:
        """Persist a generated media record."""

    @abstractmethod
    async def update_media(self, media_id: str, fields: Dict[str, Any]) -> None:
        """Field update."""

    @abstractmethod
    async def list_media(self, project_id: str) -> List[GeneratedMedia]:
        """Media records of a project, oldest first."""


class Store(ABC):
    """Factory for store sessions."""

    @abstractmethod
    def session(self) -> AsyncContextManager[StoreSession]:
        """Autocommit scope."""

    @abstractmethod
    def transaction(self) -> AsyncContextManager[StoreSession]:
        """Atomic scope; rolled back if the block raises."""

    async def connect(self) -> None:
        """Open connections. Default: nothing to open."""

    async def close(self) -> None:
        """Release connections. Default: nothing to release."""

    async def health_check(self) -> bool:
        """Cheap round trip to the backing store."""
        return True
