"""
In-process store.

Implements the full store contract over dicts for local runs and tests.
Every scope holds one asyncio lock, so transactions are fully serialized;
a transaction snapshots the tables on entry and restores them if the block
raises.
"""

import asyncio
import copy
from contextlib import asynccontextmanager
from datetime import date, datetime
from typing import Any, AsyncIterator, Dict, Iterable, List, Optional, Sequence, Tuple

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
    utc_now,
)
from shared.store.base import Store, StoreSession

_FAR_FUTURE = datetime.max.replace(tzinfo=None)


def _expiry_key(bonus: BonusCredit) -> Tuple[int, Any, datetime]:
    # Never-expiring grants sort after every expiring one
    if bonus.expires_at is None:
        return (1, _FAR_FUTURE, bonus.created_at)
    return (0, bonus.expires_at, bonus.created_at)


class _Tables:
    def __init__(self):
        self.balances: Dict[str, CreditBalance] = {}
        self.transactions: List[CreditTransaction] = []
        self.reservations: Dict[str, CreditReservation] = {}
        self.bonus_credits: Dict[str, BonusCredit] = {}
        self.alerts: List[CreditAlert] = []
        self.summaries: Dict[Tuple[str, date], DailyUsageSummary] = {}
        self.orders: Dict[str, PaymentOrder] = {}
        self.runs: Dict[str, PipelineRun] = {}
        self.run_stages: Dict[Tuple[str, str], PipelineRunStage] = {}
        self.projects: Dict[str, Project] = {}
        self.stories: Dict[str, Story] = {}
        self.scenes: Dict[str, Scene] = {}
        self.media: Dict[str, GeneratedMedia] = {}


def _copy(model):
    return model.model_copy(deep=True) if model is not None else None


def _apply(model, fields: Dict[str, Any]):
    return model.model_copy(update=fields, deep=True)


class MemorySession(StoreSession):
    """Store session over the in-process tables."""

    def __init__(self, tables: _Tables):
        self._t = tables

    # Balances

    async def get_balance(self, user_id: str) -> Optional[CreditBalance]:
        return _copy(self._t.balances.get(user_id))

    async def lock_balance(self, user_id: str) -> Optional[CreditBalance]:
        return _copy(self._t.balances.get(user_id))

    async def create_balance(self, balance: CreditBalance) -> bool:
        if balance.user_id in self._t.balances:
            return False
        self._t.balances[balance.user_id] = _copy(balance)
        return True

    async def save_balance(self, balance: CreditBalance) -> None:
        self._t.balances[balance.user_id] = _apply(balance, {"updated_at": utc_now()})

    async def list_balances(self) -> List[CreditBalance]:
        return [_copy(b) for b in self._t.balances.values()]

    async def stamp_low_balance_notified(self, user_id: str, at: datetime) -> None:
        balance = self._t.balances.get(user_id)
        if balance is not None:
            balance.low_balance_notified_at = at

    # Transactions

    async def insert_transaction(self, txn: CreditTransaction) -> CreditTransaction:
        self._t.transactions.append(_copy(txn))
        return txn

    async def list_transactions(
        self,
        user_id: Optional[str] = None,
        types: Optional[Sequence[str]] = None,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
        limit: Optional[int] = None,
    ) -> List[CreditTransaction]:
        rows = [
            t for t in self._t.transactions
            if (user_id is None or t.user_id == user_id)
            and (types is None or t.type in types)
            and (since is None or t.created_at >= since)
            and (until is None or t.created_at < until)
        ]
        rows.sort(key=lambda t: t.created_at, reverse=True)
        if limit is not None:
            rows = rows[:limit]
        return [_copy(t) for t in rows]

    # Reservations

    async def insert_reservation(self, reservation: CreditReservation) -> None:
        self._t.reservations[reservation.id] = _copy(reservation)

    async def get_reservation(self, reservation_id: str, for_update: bool = False) -> Optional[CreditReservation]:
        return _copy(self._t.reservations.get(reservation_id))

    async def close_reservation(
        self,
        reservation_id: str,
        status: str,
        settled_amount: Optional[int],
        settled_at: datetime,
    ) -> bool:
        reservation = self._t.reservations.get(reservation_id)
        if reservation is None or reservation.status != "active":
            return False
        self._t.reservations[reservation_id] = _apply(
            reservation,
            {"status": status, "settled_amount": settled_amount, "settled_at": settled_at}
        )
        return True

    async def list_active_reservations(
        self,
        expired_before: Optional[datetime] = None,
        project_ids: Optional[Iterable[str]] = None,
        user_id: Optional[str] = None,
    ) -> List[CreditReservation]:
        projects = set(project_ids) if project_ids is not None else None
        return [
            _copy(r) for r in self._t.reservations.values()
            if r.status == "active"
            and (expired_before is None or r.expires_at < expired_before)
            and (projects is None or r.project_id in projects)
            and (user_id is None or r.user_id == user_id)
        ]

    # Bonus credits

    async def insert_bonus_credit(self, bonus: BonusCredit) -> None:
        self._t.bonus_credits[bonus.id] = _copy(bonus)

    async def get_bonus_credit(self, bonus_id: str) -> Optional[BonusCredit]:
        return _copy(self._t.bonus_credits.get(bonus_id))

    async def save_bonus_credit(self, bonus: BonusCredit) -> None:
        self._t.bonus_credits[bonus.id] = _copy(bonus)

    async def list_active_bonus_credits(self, user_id: str) -> List[BonusCredit]:
        rows = [
            b for b in self._t.bonus_credits.values()
            if b.user_id == user_id and not b.is_expired and b.remaining_amount > 0
        ]
        rows.sort(key=_expiry_key)
        return [_copy(b) for b in rows]

    async def list_expiring_bonus_credits(self, before: datetime) -> List[BonusCredit]:
        rows = [
            b for b in self._t.bonus_credits.values()
            if not b.is_expired and b.remaining_amount > 0
            and b.expires_at is not None and b.expires_at <= before
        ]
        rows.sort(key=_expiry_key)
        return [_copy(b) for b in rows]

    # Alerts

    async def insert_alert(self, alert: CreditAlert) -> None:
        self._t.alerts.append(_copy(alert))

    async def find_open_alert(
        self,
        user_id: str,
        alert_type: str,
        bonus_credit_id: Optional[str] = None,
    ) -> Optional[CreditAlert]:
        matches = [
            a for a in self._t.alerts
            if a.user_id == user_id and a.type == alert_type and not a.resolved
            and (bonus_credit_id is None or a.bonus_credit_id == bonus_credit_id)
        ]
        if not matches:
            return None
        return _copy(max(matches, key=lambda a: a.created_at))

    async def resolve_alerts(self, user_id: str, alert_type: str, at: datetime) -> int:
        count = 0
        for alert in self._t.alerts:
            if alert.user_id == user_id and alert.type == alert_type and not alert.resolved:
                alert.resolved = True
                alert.resolved_at = at
                count += 1
        return count

    # Daily usage summaries

    async def upsert_daily_summary(self, summary: DailyUsageSummary) -> None:
        self._t.summaries[(summary.user_id, summary.date)] = _apply(summary, {"updated_at": utc_now()})

    async def get_daily_summary(self, user_id: str, day: date) -> Optional[DailyUsageSummary]:
        return _copy(self._t.summaries.get((user_id, day)))

    async def list_daily_summaries(self, user_id: Optional[str] = None) -> List[DailyUsageSummary]:
        return [
            _copy(s) for (uid, _), s in sorted(self._t.summaries.items(), key=lambda kv: kv[0])
            if user_id is None or uid == user_id
        ]

    # Payment orders

    async def insert_payment_order(self, order: PaymentOrder) -> None:
        self._t.orders[order.id] = _copy(order)

    async def get_payment_order(self, order_id: str, for_update: bool = False) -> Optional[PaymentOrder]:
        return _copy(self._t.orders.get(order_id))

    async def get_payment_order_by_external_id(self, external_order_id: str) -> Optional[PaymentOrder]:
        for order in self._t.orders.values():
            if order.external_order_id == external_order_id:
                return _copy(order)
        return None

    async def get_payment_order_by_idempotency_key(self, user_id: str, key: str) -> Optional[PaymentOrder]:
        for order in self._t.orders.values():
            if order.user_id == user_id and order.idempotency_key == key:
                return _copy(order)
        return None

    async def update_payment_order(
        self,
        order_id: str,
        fields: Dict[str, Any],
        require_uncredited: bool = False,
    ) -> bool:
        order = self._t.orders.get(order_id)
        if order is None:
            return False
        if require_uncredited and order.credit_transaction_id is not None:
            return False
        self._t.orders[order_id] = _apply(order, {**fields, "updated_at": utc_now()})
        return True

    async def list_payment_orders(self, status: str, uncredited_only: bool = False) -> List[PaymentOrder]:
        rows = [
            o for o in self._t.orders.values()
            if o.status == status and (not uncredited_only or o.credit_transaction_id is None)
        ]
        rows.sort(key=lambda o: o.created_at)
        return [_copy(o) for o in rows]

    # Pipeline runs

    async def insert_run(self, run: PipelineRun) -> bool:
        for other in self._t.runs.values():
            if other.project_id == run.project_id and other.status in ("pending", "running"):
                return False
        self._t.runs[run.id] = _copy(run)
        return True

    async def get_run(self, run_id: str) -> Optional[PipelineRun]:
        return _copy(self._t.runs.get(run_id))

    async def update_run(self, run_id: str, fields: Dict[str, Any]) -> None:
        run = self._t.runs.get(run_id)
        if run is not None:
            self._t.runs[run_id] = _apply(run, {**fields, "updated_at": utc_now()})

    async def transition_run(
        self,
        run_id: str,
        from_statuses: Sequence[str],
        to_status: str,
        fields: Optional[Dict[str, Any]] = None,
    ) -> bool:
        run = self._t.runs.get(run_id)
        if run is None or run.status not in from_statuses:
            return False
        self._t.runs[run_id] = _apply(run, {**(fields or {}), "status": to_status, "updated_at": utc_now()})
        return True

    async def list_runs(self, status: str, project_id: Optional[str] = None) -> List[PipelineRun]:
        return [
            _copy(r) for r in self._t.runs.values()
            if r.status == status and (project_id is None or r.project_id == project_id)
        ]

    # Pipeline run stages

    async def insert_run_stage_if_absent(self, run_stage: PipelineRunStage) -> bool:
        key = (run_stage.run_id, run_stage.stage_id)
        if key in self._t.run_stages:
            return False
        self._t.run_stages[key] = _copy(run_stage)
        return True

    async def get_run_stage(self, run_id: str, stage_id: str) -> Optional[PipelineRunStage]:
        return _copy(self._t.run_stages.get((run_id, stage_id)))

    async def list_run_stages(self, run_id: str) -> List[PipelineRunStage]:
        rows = [s for (rid, _), s in self._t.run_stages.items() if rid == run_id]
        rows.sort(key=lambda s: s.started_at)
        return [_copy(s) for s in rows]

    async def update_run_stage(self, run_id: str, stage_id: str, fields: Dict[str, Any]) -> None:
        key = (run_id, stage_id)
        if key in self._t.run_stages:
            self._t.run_stages[key] = _apply(self._t.run_stages[key], fields)

    async def transition_run_stage(
        self,
        run_id: str,
        stage_id: str,
        from_statuses: Sequence[str],
        to_status: str,
        fields: Optional[Dict[str, Any]] = None,
    ) -> bool:
        key = (run_id, stage_id)
        row = self._t.run_stages.get(key)
        if row is None or row.status not in from_statuses:
            return False
        self._t.run_stages[key] = _apply(row, {**(fields or {}), "status": to_status})
        return True

    async def increment_run_stage(
        self,
        run_id: str,
        stage_id: str,
        succeeded: bool,
        error: Optional[str] = None,
        attempt: Optional[int] = None,
    ) -> Optional[PipelineRunStage]:
        row = self._t.run_stages.get((run_id, stage_id))
        if row is None or row.status != "running":
            return None
        if attempt is not None and row.attempt != attempt:
            return None
        if succeeded:
            row.completed_jobs += 1
        else:
            row.failed_jobs += 1
            if error:
                row.last_error = error
        return _copy(row)

    # Projects, stories, scenes, media

    async def insert_project(self, project: Project) -> None:
        self._t.projects[project.id] = _copy(project)

    async def get_project(self, project_id: str) -> Optional[Project]:
        return _copy(self._t.projects.get(project_id))

    async def update_project(self, project_id: str, fields: Dict[str, Any]) -> None:
        project = self._t.projects.get(project_id)
        if project is not None:
            self._t.projects[project_id] = _apply(project, {**fields, "updated_at": utc_now()})

    async def save_story(self, story: Story) -> None:
        self._t.stories[story.project_id] = _copy(story)

    async def get_story(self, project_id: str) -> Optional[Story]:
        return _copy(self._t.stories.get(project_id))

    async def replace_scenes(self, project_id: str, scenes: List[Scene]) -> None:
        self._t.scenes = {k: s for k, s in self._t.scenes.items() if s.project_id != project_id}
        for scene in scenes:
            self._t.scenes[scene.id] = _copy(scene)

    async def list_scenes(self, project_id: str) -> List[Scene]:
        rows = [s for s in self._t.scenes.values() if s.project_id == project_id]
        rows.sort(key=lambda s: s.index)
        return [_copy(s) for s in rows]

    async def get_scene(self, scene_id: str) -> Optional[Scene]:
        return _copy(self._t.scenes.get(scene_id))

    async def update_scene(self, scene_id: str, fields: Dict[str, Any]) -> None:
        scene = self._t.scenes.get(scene_id)
        if scene is not None:
            self._t.scenes[scene_id] = _apply(scene, {**fields, "updated_at": utc_now()})

    async def insert_media(self, media: GeneratedMedia) -> None:
        self._t.media[media.id] = _copy(media)

    async def update_media(self, media_id: str, fields: Dict[str, Any]) -> None:
        media = self._t.media.get(media_id)
        if media is not None:
            self._t.media[media_id] = _apply(media, {**fields, "updated_at": utc_now()})

    async def list_media(self, project_id: str) -> List[GeneratedMedia]:
        rows = [m for m in self._t.media.values() if m.project_id == project_id]
        rows.sort(key=lambda m: m.created_at)
        return [_copy(m) for m in rows]


class MemoryStore(Store):
    """Dict-backed store; one scope at a time."""

    def __init__(self):
        self._tables = _Tables()
        self._lock = asyncio.Lock()

    @asynccontextmanager
    async def session(self) -> AsyncIterator[MemorySession]:
        async with self._lock:
            yield MemorySession(self._tables)

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[MemorySession]:
        async with self._lock:
            snapshot = copy.deepcopy(self._tables)
            try:
                yield MemorySession(self._tables)
            except BaseException:
                self._tables = snapshot
                raise
