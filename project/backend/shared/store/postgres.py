"""
Postgres store.

asyncpg connection pool implementing the store contract. Row locks are taken
with SELECT ... FOR UPDATE inside `transaction()`; counters and status
transitions are single conditional UPDATE statements.
"""

import json
from contextlib import asynccontextmanager
from datetime import date, datetime
from typing import Any, AsyncIterator, Dict, Iterable, List, Optional, Sequence, Type, TypeVar

import asyncpg
from pydantic import BaseModel

from shared.errors import ConcurrencyConflictError, ConfigError, RetryableError
from shared.logging import get_logger
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

logger = get_logger("store.postgres")

M = TypeVar("M", bound=BaseModel)

_CONFLICT_ERRORS = (
    asyncpg.exceptions.SerializationError,
    asyncpg.exceptions.DeadlockDetectedError,
    asyncpg.exceptions.LockNotAvailableError,
)
_CONNECTION_ERRORS = (
    asyncpg.exceptions.PostgresConnectionError,
    asyncpg.exceptions.InterfaceError,
    ConnectionError,
    OSError,
)


def _quote(column: str) -> str:
    return f'"{column}"'


def _rowcount(status: str) -> int:
    # asyncpg returns command tags like "UPDATE 1"
    try:
        return int(status.split()[-1])
    except (ValueError, IndexError):
        return 0


def _to_model(model: Type[M], row: Optional[asyncpg.Record]) -> Optional[M]:
    if row is None:
        return None
    return model.model_validate(dict(row))


async def _init_connection(conn: asyncpg.Connection) -> None:
    for type_name in ("json", "jsonb"):
        await conn.set_type_codec(
            type_name,
            encoder=lambda value: json.dumps(value, default=str),
            decoder=json.loads,
            schema="pg_catalog",
        )


class PostgresSession(StoreSession):
    """Store session bound to one pooled connection."""

    def __init__(self, conn: asyncpg.Connection):
        self._conn = conn

    async def _insert(self, table: str, model: BaseModel, suffix: str = "") -> str:
        data = model.model_dump()
        columns = list(data)
        placeholders = ", ".join(f"${i}" for i in range(1, len(columns) + 1))
        sql = f"INSERT INTO {table} ({', '.join(map(_quote, columns))}) VALUES ({placeholders}) {suffix}"
        return await self._conn.execute(sql, *data.values())

    async def _update(
        self,
        table: str,
        fields: Dict[str, Any],
        where: Dict[str, Any],
        extra_where: str = "",
        returning: bool = False,
    ):
        args: List[Any] = []
        assignments = []
        for column, value in fields.items():
            args.append(value)
            assignments.append(f"{_quote(column)} = ${len(args)}")
        conditions = []
        for column, value in where.items():
            if isinstance(value, (list, tuple, set)):
                args.append(list(value))
                conditions.append(f"{_quote(column)} = ANY(${len(args)})")
            else:
                args.append(value)
                conditions.append(f"{_quote(column)} = ${len(args)}")
        if extra_where:
            conditions.append(extra_where)
        sql = f"UPDATE {table} SET {', '.join(assignments)} WHERE {' AND '.join(conditions)}"
        if returning:
            return await self._conn.fetchrow(sql + " RETURNING *", *args)
        return _rowcount(await self._conn.execute(sql, *args))

    # Balances

    async def get_balance(self, user_id: str) -> Optional[CreditBalance]:
        row = await self._conn.fetchrow("SELECT * FROM credit_balances WHERE user_id = $1", user_id)
        return _to_model(CreditBalance, row)

    async def lock_balance(self, user_id: str) -> Optional[CreditBalance]:
        row = await self._conn.fetchrow("SELECT * FROM credit_balances WHERE user_id = $1 FOR UPDATE", user_id)
        return _to_model(CreditBalance, row)

    async def create_balance(self, balance: CreditBalance) -> bool:
        status = await self._insert("credit_balances", balance, "ON CONFLICT (user_id) DO NOTHING")
        return _rowcount(status) == 1

    async def save_balance(self, balance: CreditBalance) -> None:
        fields = balance.model_dump(exclude={"user_id", "created_at"})
        fields["updated_at"] = utc_now()
        await self._update("credit_balances", fields, {"user_id": balance.user_id})

    async def list_balances(self) -> List[CreditBalance]:
        rows = await self._conn.fetch("SELECT * FROM credit_balances ORDER BY user_id")
        return [CreditBalance.model_validate(dict(r)) for r in rows]

    async def stamp_low_balance_notified(self, user_id: str, at: datetime) -> None:
        await self._conn.execute(
            "UPDATE credit_balances SET low_balance_notified_at = $1 WHERE user_id = $2", at, user_id
        )

    # Transactions

    async def insert_transaction(self, txn: CreditTransaction) -> CreditTransaction:
        await self._insert("credit_transactions", txn)
        return txn

    async def list_transactions(
        self,
        user_id: Optional[str] = None,
        types: Optional[Sequence[str]] = None,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
        limit: Optional[int] = None,
    ) -> List[CreditTransaction]:
        args: List[Any] = []
        conditions = []
        if user_id is not None:
            args.append(user_id)
            conditions.append(f"user_id = ${len(args)}")
        if types is not None:
            args.append(list(types))
            conditions.append(f"type = ANY(${len(args)})")
        if since is not None:
            args.append(since)
            conditions.append(f"created_at >= ${len(args)}")
        if until is not None:
            args.append(until)
            conditions.append(f"created_at < ${len(args)}")
        sql = "SELECT * FROM credit_transactions"
        if conditions:
            sql += " WHERE " + " AND ".join(conditions)
        sql += " ORDER BY created_at DESC"
        if limit is not None:
            args.append(limit)
            sql += f" LIMIT ${len(args)}"
        rows = await self._conn.fetch(sql, *args)
        return [CreditTransaction.model_validate(dict(r)) for r in rows]

    # Reservations

    async def insert_reservation(self, reservation: CreditReservation) -> None:
        await self._insert("credit_reservations", reservation)

    async def get_reservation(self, reservation_id: str, for_update: bool = False) -> Optional[CreditReservation]:
        sql = "SELECT * FROM credit_reservations WHERE id = $1"
        if for_update:
            sql += " FOR UPDATE"
        return _to_model(CreditReservation, await self._conn.fetchrow(sql, reservation_id))

    async def close_reservation(
        self,
        reservation_id: str,
        status: str,
        settled_amount: Optional[int],
        settled_at: datetime,
    ) -> bool:
        count = await self._update(
            "credit_reservations",
            {"status": status, "settled_amount": settled_amount, "settled_at": settled_at},
            {"id": reservation_id},
            extra_where="status = 'active'",
        )
        return count == 1

    async def list_active_reservations(
        self,
        expired_before: Optional[datetime] = None,
        project_ids: Optional[Iterable[str]] = None,
        user_id: Optional[str] = None,
    ) -> List[CreditReservation]:
        args: List[Any] = []
        conditions = ["status = 'active'"]
        if expired_before is not None:
            args.append(expired_before)
            conditions.append(f"expires_at < ${len(args)}")
        if project_ids is not None:
            args.append(list(project_ids))
            conditions.append(f"project_id = ANY(${len(args)})")
        if user_id is not None:
            args.append(user_id)
            conditions.append(f"user_id = ${len(args)}")
        rows = await self._conn.fetch(
            f"SELECT * FROM credit_reservations WHERE {' AND '.join(conditions)} ORDER BY created_at", *args
        )
        return [CreditReservation.model_validate(dict(r)) for r in rows]

    # Bonus credits

    async def insert_bonus_credit(self, bonus: BonusCredit) -> None:
        await self._insert("bonus_credits", bonus)

    async def get_bonus_credit(self, bonus_id: str) -> Optional[BonusCredit]:
        row = await self._conn.fetchrow("SELECT * FROM bonus_credits WHERE id = $1", bonus_id)
        return _to_model(BonusCredit, row)

    async def save_bonus_credit(self, bonus: BonusCredit) -> None:
        await self._update(
            "bonus_credits",
            bonus.model_dump(exclude={"id", "user_id", "created_at"}),
            {"id": bonus.id},
        )

    async def list_active_bonus_credits(self, user_id: str) -> List[BonusCredit]:
        rows = await self._conn.fetch(
            "SELECT * FROM bonus_credits WHERE user_id = $1 AND NOT is_expired AND remaining_amount > 0 "
            "ORDER BY expires_at ASC NULLS LAST, created_at ASC",
            user_id,
        )
        return [BonusCredit.model_validate(dict(r)) for r in rows]

    async def list_expiring_bonus_credits(self, before: datetime) -> List[BonusCredit]:
        rows = await self._conn.fetch(
            "SELECT * FROM bonus_credits WHERE NOT is_expired AND remaining_amount > 0 "
            "AND expires_at IS NOT NULL AND expires_at <= $1 ORDER BY expires_at ASC, created_at ASC",
            before,
        )
        return [BonusCredit.model_validate(dict(r)) for r in rows]

    # Alerts

    async def insert_alert(self, alert: CreditAlert) -> None:
        await self._insert("credit_alerts", alert)

    async def find_open_alert(
        self,
        user_id: str,
        alert_type: str,
        bonus_credit_id: Optional[str] = None,
    ) -> Optional[CreditAlert]:
        sql = "SELECT * FROM credit_alerts WHERE user_id = $1 AND type = $2 AND NOT resolved"
        args: List[Any] = [user_id, alert_type]
        if bonus_credit_id is not None:
            args.append(bonus_credit_id)
            sql += " AND bonus_credit_id = $3"
        sql += " ORDER BY created_at DESC LIMIT 1"
        return _to_model(CreditAlert, await self._conn.fetchrow(sql, *args))

    async def resolve_alerts(self, user_id: str, alert_type: str, at: datetime) -> int:
        return await self._update(
            "credit_alerts",
            {"resolved": True, "resolved_at": at},
            {"user_id": user_id, "type": alert_type},
            extra_where="NOT resolved",
        )

    # Daily usage summaries

    async def upsert_daily_summary(self, summary: DailyUsageSummary) -> None:
        summary = summary.model_copy(update={"updated_at": utc_now()})
        await self._insert(
            "daily_usage_summaries",
            summary,
            'ON CONFLICT (user_id, "date") DO UPDATE SET '
            "total_requests = EXCLUDED.total_requests, "
            "total_credits_used = EXCLUDED.total_credits_used, "
            "operation_breakdown = EXCLUDED.operation_breakdown, "
            "provider_breakdown = EXCLUDED.provider_breakdown, "
            "model_breakdown = EXCLUDED.model_breakdown, "
            "updated_at = EXCLUDED.updated_at",
        )

    async def get_daily_summary(self, user_id: str, day: date) -> Optional[DailyUsageSummary]:
        row = await self._conn.fetchrow(
            'SELECT * FROM daily_usage_summaries WHERE user_id = $1 AND "date" = $2', user_id, day
        )
        return _to_model(DailyUsageSummary, row)

    async def list_daily_summaries(self, user_id: Optional[str] = None) -> List[DailyUsageSummary]:
        if user_id is None:
            rows = await self._conn.fetch('SELECT * FROM daily_usage_summaries ORDER BY user_id, "date"')
        else:
            rows = await self._conn.fetch(
                'SELECT * FROM daily_usage_summaries WHERE user_id = $1 ORDER BY "date"', user_id
            )
        return [DailyUsageSummary.model_validate(dict(r)) for r in rows]

    # Payment orders

    async def insert_payment_order(self, order: PaymentOrder) -> None:
        await self._insert("payment_orders", order)

    async def get_payment_order(self, order_id: str, for_update: bool = False) -> Optional[PaymentOrder]:
        sql = "SELECT * FROM payment_orders WHERE id = $1"
        if for_update:
            sql += " FOR UPDATE"
        return _to_model(PaymentOrder, await self._conn.fetchrow(sql, order_id))

    async def get_payment_order_by_external_id(self, external_order_id: str) -> Optional[PaymentOrder]:
        row = await self._conn.fetchrow(
            "SELECT * FROM payment_orders WHERE external_order_id = $1", external_order_id
        )
        return _to_model(PaymentOrder, row)

    async def get_payment_order_by_idempotency_key(self, user_id: str, key: str) -> Optional[PaymentOrder]:
        row = await self._conn.fetchrow(
            "SELECT * FROM payment_orders WHERE user_id = $1 AND idempotency_key = $2", user_id, key
        )
        return _to_model(PaymentOrder, row)

    async def update_payment_order(
        self,
        order_id: str,
        fields: Dict[str, Any],
        require_uncredited: bool = False,
    ) -> bool:
        count = await self._update(
            "payment_orders",
            {**fields, "updated_at": utc_now()},
            {"id": order_id},
            extra_where="credit_transaction_id IS NULL" if require_uncredited else "",
        )
        return count == 1

    async def list_payment_orders(self, status: str, uncredited_only: bool = False) -> List[PaymentOrder]:
        sql = "SELECT * FROM payment_orders WHERE status = $1"
        if uncredited_only:
            sql += " AND credit_transaction_id IS NULL"
        rows = await self._conn.fetch(sql + " ORDER BY created_at", status)
        return [PaymentOrder.model_validate(dict(r)) for r in rows]

    # Pipeline runs

    async def insert_run(self, run: PipelineRun) -> bool:
        # The partial unique index on active runs turns a second start into a no-op
        status = await self._insert("pipeline_runs", run, "ON CONFLICT DO NOTHING")
        return _rowcount(status) == 1

    async def get_run(self, run_id: str) -> Optional[PipelineRun]:
        return _to_model(PipelineRun, await self._conn.fetchrow("SELECT * FROM pipeline_runs WHERE id = $1", run_id))

    async def update_run(self, run_id: str, fields: Dict[str, Any]) -> None:
        await self._update("pipeline_runs", {**fields, "updated_at": utc_now()}, {"id": run_id})

    async def transition_run(
        self,
        run_id: str,
        from_statuses: Sequence[str],
        to_status: str,
        fields: Optional[Dict[str, Any]] = None,
    ) -> bool:
        count = await self._update(
            "pipeline_runs",
            {**(fields or {}), "status": to_status, "updated_at": utc_now()},
            {"id": run_id, "status": tuple(from_statuses)},
        )
        return count == 1

    async def list_runs(self, status: str, project_id: Optional[str] = None) -> List[PipelineRun]:
        if project_id is None:
            rows = await self._conn.fetch("SELECT * FROM pipeline_runs WHERE status = $1", status)
        else:
            rows = await self._conn.fetch(
                "SELECT * FROM pipeline_runs WHERE status = $1 AND project_id = $2", status, project_id
            )
        return [PipelineRun.model_validate(dict(r)) for r in rows]

    # Pipeline run stages

    async def insert_run_stage_if_absent(self, run_stage: PipelineRunStage) -> bool:
        status = await self._insert("pipeline_run_stages", run_stage, "ON CONFLICT (run_id, stage_id) DO NOTHING")
        return _rowcount(status) == 1

    async def get_run_stage(self, run_id: str, stage_id: str) -> Optional[PipelineRunStage]:
        row = await self._conn.fetchrow(
            "SELECT * FROM pipeline_run_stages WHERE run_id = $1 AND stage_id = $2", run_id, stage_id
        )
        return _to_model(PipelineRunStage, row)

    async def list_run_stages(self, run_id: str) -> List[PipelineRunStage]:
        rows = await self._conn.fetch(
            "SELECT * FROM pipeline_run_stages WHERE run_id = $1 ORDER BY started_at", run_id
        )
        return [PipelineRunStage.model_validate(dict(r)) for r in rows]

    async def update_run_stage(self, run_id: str, stage_id: str, fields: Dict[str, Any]) -> None:
        await self._update("pipeline_run_stages", fields, {"run_id": run_id, "stage_id": stage_id})

    async def transition_run_stage(
        self,
        run_id: str,
        stage_id: str,
        from_statuses: Sequence[str],
        to_status: str,
        fields: Optional[Dict[str, Any]] = None,
    ) -> bool:
        count = await self._update(
            "pipeline_run_stages",
            {**(fields or {}), "status": to_status},
            {"run_id": run_id, "stage_id": stage_id, "status": tuple(from_statuses)},
        )
        return count == 1

    async def increment_run_stage(
        self,
        run_id: str,
        stage_id: str,
        succeeded: bool,
        error: Optional[str] = None,
        attempt: Optional[int] = None,
    ) -> Optional[PipelineRunStage]:
        where = (
            "WHERE run_id = $1 AND stage_id = $2 AND status = 'running' "
            "AND ($3::integer IS NULL OR attempt = $3) RETURNING *"
        )
        if succeeded:
            sql = "UPDATE pipeline_run_stages SET completed_jobs = completed_jobs + 1 " + where
            row = await self._conn.fetchrow(sql, run_id, stage_id, attempt)
        else:
            sql = (
                "UPDATE pipeline_run_stages SET failed_jobs = failed_jobs + 1, "
                "last_error = COALESCE($4, last_error) " + where
            )
            row = await self._conn.fetchrow(sql, run_id, stage_id, attempt, error)
        return _to_model(PipelineRunStage, row)

    # Projects, stories, scenes, media

    async def insert_project(self, project: Project) -> None:
        await self._insert("projects", project)

    async def get_project(self, project_id: str) -> Optional[Project]:
        return _to_model(Project, await self._conn.fetchrow("SELECT * FROM projects WHERE id = $1", project_id))

    async def update_project(self, project_id: str, fields: Dict[str, Any]) -> None:
        await self._update("projects", {**fields, "updated_at": utc_now()}, {"id": project_id})

    async def save_story(self, story: Story) -> None:
        await self._insert(
            "stories",
            story,
            "ON CONFLICT (project_id) DO UPDATE SET title = EXCLUDED.title, "
            "synopsis = EXCLUDED.synopsis, body = EXCLUDED.body",
        )

    async def get_story(self, project_id: str) -> Optional[Story]:
        return _to_model(Story, await self._conn.fetchrow("SELECT * FROM stories WHERE project_id = $1", project_id))

    async def replace_scenes(self, project_id: str, scenes: List[Scene]) -> None:
        await self._conn.execute("DELETE FROM scenes WHERE project_id = $1", project_id)
        for scene in scenes:
            await self._insert("scenes", scene)

    async def list_scenes(self, project_id: str) -> List[Scene]:
        rows = await self._conn.fetch('SELECT * FROM scenes WHERE project_id = $1 ORDER BY "index"', project_id)
        return [Scene.model_validate(dict(r)) for r in rows]

    async def get_scene(self, scene_id: str) -> Optional[Scene]:
        return _to_model(Scene, await self._conn.fetchrow("SELECT * FROM scenes WHERE id = $1", scene_id))

    async def update_scene(self, scene_id: str, fields: Dict[str, Any]) -> None:
        await self._update("scenes", {**fields, "updated_at": utc_now()}, {"id": scene_id})

    async def insert_media(self, media: GeneratedMedia) -> None:
        await self._insert("generated_media", media)

    async def update_media(self, media_id: str, fields: Dict[str, Any]) -> None:
        await self._update("generated_media", {**fields, "updated_at": utc_now()}, {"id": media_id})

    async def list_media(self, project_id: str) -> List[GeneratedMedia]:
        rows = await self._conn.fetch(
            "SELECT * FROM generated_media WHERE project_id = $1 ORDER BY created_at", project_id
        )
        return [GeneratedMedia.model_validate(dict(r)) for r in rows]


class PostgresStore(Store):
    """asyncpg pool wrapper."""

    def __init__(self, dsn: str, min_size: int = 2, max_size: int = 10):
        if not dsn:
            raise ConfigError("Postgres store requires a DSN")
        self.dsn = dsn
        self.min_size = min_size
        self.max_size = max_size
        self._pool: Optional[asyncpg.Pool] = None

    async def connect(self) -> None:
        if self._pool is not None:
            return
        try:
            self._pool = await asyncpg.create_pool(
                self.dsn,
                min_size=self.min_size,
                max_size=self.max_size,
                init=_init_connection,
            )
        except _CONNECTION_ERRORS as e:
            raise RetryableError(f"Failed to connect to Postgres: {str(e)}") from e
        logger.info("Postgres pool ready", extra={"min_size": self.min_size, "max_size": self.max_size})

    async def close(self) -> None:
        if self._pool is not None:
            await self._pool.close()
            self._pool = None

    def _require_pool(self) -> asyncpg.Pool:
        if self._pool is None:
            raise ConfigError("PostgresStore.connect() must be awaited before use")
        return self._pool

    @asynccontextmanager
    async def session(self) -> AsyncIterator[PostgresSession]:
        try:
            async with self._require_pool().acquire() as conn:
                yield PostgresSession(conn)
        except _CONFLICT_ERRORS as e:
            raise ConcurrencyConflictError(f"Store conflict: {str(e)}") from e
        except _CONNECTION_ERRORS as e:
            raise RetryableError(f"Store unavailable: {str(e)}") from e

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[PostgresSession]:
        try:
            async with self._require_pool().acquire() as conn:
                async with conn.transaction():
                    yield PostgresSession(conn)
        except _CONFLICT_ERRORS as e:
            raise ConcurrencyConflictError(f"Store conflict: {str(e)}") from e
        except _CONNECTION_ERRORS as e:
            raise RetryableError(f"Store unavailable: {str(e)}") from e

    async def health_check(self) -> bool:
        try:
            async with self.session() as s:
                await s._conn.fetchval("SELECT 1")
            return True
        except RetryableError:
            return False
