"""
Subscription Storage

Persistence for subscription records and per-period usage counters with:
- One record per user (unique user_id)
- One usage row per (user_id, metric_type, period_start)
- Atomic counter increments at the storage layer
- Single-transaction limit re-basing on subscription updates

Backends: in-memory (tests), SQLite via aiosqlite, PostgreSQL via asyncpg.
"""

from __future__ import annotations

import asyncio
import sqlite3
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from dataclasses import replace
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, AsyncIterator, Dict, List, Mapping, Optional, Sequence

import aiosqlite
import asyncpg
import structlog

from tiergate.subscription.errors import DuplicateSubscriptionError
from tiergate.subscription.models import (
    BillingCycle,
    Subscription,
    SubscriptionStatus,
    SubscriptionTier,
    UsageMetric,
    UsageMetricType,
    utcnow,
)

logger = structlog.get_logger(__name__)

# Columns a partial update may touch.
UPDATABLE_FIELDS = (
    "tier",
    "status",
    "billing_cycle",
    "current_period_start",
    "current_period_end",
    "cancel_at_period_end",
    "trial_end",
)


# =============================================================================
# SQL Schema
# =============================================================================

POSTGRES_SCHEMA = """
CREATE TABLE IF NOT EXISTS subscriptions (
    id VARCHAR(64) PRIMARY KEY,
    user_id VARCHAR(255) NOT NULL UNIQUE,
    tier VARCHAR(20) NOT NULL,
    status VARCHAR(20) NOT NULL,
    billing_cycle VARCHAR(20) NOT NULL,
    current_period_start TIMESTAMP WITH TIME ZONE NOT NULL,
    current_period_end TIMESTAMP WITH TIME ZONE NOT NULL,
    cancel_at_period_end BOOLEAN NOT NULL DEFAULT FALSE,
    trial_end TIMESTAMP WITH TIME ZONE,
    created_at TIMESTAMP WITH TIME ZONE NOT NULL DEFAULT CURRENT_TIMESTAMP,
    updated_at TIMESTAMP WITH TIME ZONE NOT NULL DEFAULT CURRENT_TIMESTAMP
);

CREATE TABLE IF NOT EXISTS usage_metrics (
    id VARCHAR(64) PRIMARY KEY,
    subscription_id VARCHAR(64) NOT NULL REFERENCES subscriptions(id) ON DELETE CASCADE,
    user_id VARCHAR(255) NOT NULL,
    metric_type VARCHAR(40) NOT NULL,
    current_value DOUBLE PRECISION NOT NULL DEFAULT 0,
    limit_value DOUBLE PRECISION NOT NULL,
    period_start TIMESTAMP WITH TIME ZONE NOT NULL,
    period_end TIMESTAMP WITH TIME ZONE NOT NULL,
    created_at TIMESTAMP WITH TIME ZONE NOT NULL DEFAULT CURRENT_TIMESTAMP,
    updated_at TIMESTAMP WITH TIME ZONE NOT NULL DEFAULT CURRENT_TIMESTAMP,

    CONSTRAINT usage_metrics_non_negative CHECK (current_value >= 0),
    CONSTRAINT usage_metrics_period_unique UNIQUE (user_id, metric_type, period_start)
);

CREATE INDEX IF NOT EXISTS idx_usage_metrics_user_period
    ON usage_metrics(user_id, period_start DESC);
"""

SQLITE_SCHEMA = """
CREATE TABLE IF NOT EXISTS subscriptions (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL UNIQUE,
    tier TEXT NOT NULL,
    status TEXT NOT NULL,
    billing_cycle TEXT NOT NULL,
    current_period_start TEXT NOT NULL,
    current_period_end TEXT NOT NULL,
    cancel_at_period_end INTEGER NOT NULL DEFAULT 0,
    trial_end TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS usage_metrics (
    id TEXT PRIMARY KEY,
    subscription_id TEXT NOT NULL REFERENCES subscriptions(id) ON DELETE CASCADE,
    user_id TEXT NOT NULL,
    metric_type TEXT NOT NULL,
    current_value REAL NOT NULL DEFAULT 0 CHECK (current_value >= 0),
    limit_value REAL NOT NULL,
    period_start TEXT NOT NULL,
    period_end TEXT NOT NULL,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    UNIQUE (user_id, metric_type, period_start)
);

CREATE INDEX IF NOT EXISTS idx_usage_metrics_user_period
    ON usage_metrics(user_id, period_start);
"""


# =============================================================================
# Abstract Storage
# =============================================================================

class SubscriptionStore(ABC):
    """
    Abstract base for subscription and usage metric storage.

    Subscription records and usage rows share one transaction scope so that
    record updates and limit re-basing commit together.
    """

    async def connect(self) -> None:
        """Open connections and create the schema."""

    async def disconnect(self) -> None:
        """Release connections."""

    async def __aenter__(self) -> "SubscriptionStore":
        await self.connect()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.disconnect()

    # === Subscriptions ===

    @abstractmethod
    async def get_subscription(self, subscription_id: str) -> Optional[Subscription]:
        """Get a subscription by id."""

    @abstractmethod
    async def get_subscription_for_user(self, user_id: str) -> Optional[Subscription]:
        """Get the subscription held by a user."""

    @abstractmethod
    async def create_subscription(
        self,
        subscription: Subscription,
        metrics: Sequence[UsageMetric] = (),
        reactivate: bool = False,
    ) -> Subscription:
        """
        Insert a subscription and its initial usage rows in one transaction.

        With reactivate=True the user's existing CANCELED record is
        overwritten in place instead. Raises DuplicateSubscriptionError when
        the user already holds a record that may not be replaced.
        """

    @abstractmethod
    async def update_subscription(
        self,
        subscription_id: str,
        changes: Mapping[str, Any],
        limits: Optional[Mapping[UsageMetricType, float]] = None,
        seed_metrics: Sequence[UsageMetric] = (),
    ) -> Optional[Subscription]:
        """
        Apply a partial update and refresh updated_at.

        seed_metrics rows missing for the updated current period are
        inserted; their period window and subscription id are taken from
        the updated record. When limits is given, the limit_value of every
        usage row of the user whose period_start equals the updated
        current_period_start is then replaced. All of it runs in one
        transaction and current_value is never touched.
        Returns None when the id does not resolve.
        """

    # === Usage Metrics ===

    @abstractmethod
    async def get_metric(
        self,
        user_id: str,
        metric_type: UsageMetricType,
        period_start: datetime,
    ) -> Optional[UsageMetric]:
        """Get one usage row."""

    @abstractmethod
    async def list_metrics(self, user_id: str, period_start: datetime) -> List[UsageMetric]:
        """All rows of a user for one period, ordered by metric type."""

    @abstractmethod
    async def list_metrics_between(
        self,
        user_id: str,
        start: datetime,
        end: datetime,
    ) -> List[UsageMetric]:
        """Rows whose period_start lies in [start, end], by metric type then newest first."""

    @abstractmethod
    async def increment_metric(self, seed: UsageMetric, amount: float) -> UsageMetric:
        """
        Atomically add amount to a usage row, creating it from seed first
        when absent. Returns the row after the increment.
        """

    @abstractmethod
    async def set_metric_value(self, seed: UsageMetric, value: float) -> UsageMetric:
        """Overwrite current_value of a usage row, creating it from seed when absent."""


# =============================================================================
# Row Conversion
# =============================================================================

def _to_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _encode(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, datetime):
        return _to_utc(value)
    return value


def _stamp_seeds(subscription: Subscription, seeds: Sequence[UsageMetric]) -> List[UsageMetric]:
    """Rebind seed rows to a subscription's id and current period."""
    return [
        replace(
            seed,
            subscription_id=subscription.id,
            period_start=subscription.current_period_start,
            period_end=subscription.current_period_end,
        )
        for seed in seeds
    ]


def _subscription_from_row(row: Mapping[str, Any], parse_ts=_to_utc) -> Subscription:
    return Subscription(
        id=row["id"],
        user_id=row["user_id"],
        tier=SubscriptionTier(row["tier"]),
        status=SubscriptionStatus(row["status"]),
        billing_cycle=BillingCycle(row["billing_cycle"]),
        current_period_start=parse_ts(row["current_period_start"]),
        current_period_end=parse_ts(row["current_period_end"]),
        cancel_at_period_end=bool(row["cancel_at_period_end"]),
        trial_end=parse_ts(row["trial_end"]) if row["trial_end"] else None,
        created_at=parse_ts(row["created_at"]),
        updated_at=parse_ts(row["updated_at"]),
    )


def _metric_from_row(row: Mapping[str, Any], parse_ts=_to_utc) -> UsageMetric:
    return UsageMetric(
        id=row["id"],
        subscription_id=row["subscription_id"],
        user_id=row["user_id"],
        metric_type=UsageMetricType(row["metric_type"]),
        current_value=row["current_value"],
        limit_value=row["limit_value"],
        period_start=parse_ts(row["period_start"]),
        period_end=parse_ts(row["period_end"]),
        created_at=parse_ts(row["created_at"]),
        updated_at=parse_ts(row["updated_at"]),
    )


# =============================================================================
# PostgreSQL Storage
# =============================================================================

class PostgresSubscriptionStore(SubscriptionStore):
    """
    PostgreSQL-based storage for production.

    Increments are single INSERT ... ON CONFLICT DO UPDATE statements, so
    concurrent callers never lose an update.
    """

    def __init__(
        self,
        dsn: str = "postgresql://localhost/tiergate",
        min_size: int = 2,
        max_size: int = 10,
    ):
        self.dsn = dsn
        self.min_size = min_size
        self.max_size = max_size

        self._pool: Optional[asyncpg.Pool] = None
        self._connected = False

    async def connect(self) -> None:
        if self._connected:
            return

        self._pool = await asyncpg.create_pool(
            self.dsn,
            min_size=self.min_size,
            max_size=self.max_size,
        )
        async with self._pool.acquire() as conn:
            await conn.execute(POSTGRES_SCHEMA)

        self._connected = True
        logger.info("PostgreSQL subscription store connected", max_size=self.max_size)

    async def disconnect(self) -> None:
        if self._pool:
            await self._pool.close()
            self._pool = None
            logger.info("PostgreSQL subscription store disconnected")
        self._connected = False

    async def _get_pool(self) -> asyncpg.Pool:
        if not self._connected:
            await self.connect()
        return self._pool

    # === Subscriptions ===

    async def get_subscription(self, subscription_id: str) -> Optional[Subscription]:
        pool = await self._get_pool()
        row = await pool.fetchrow("SELECT * FROM subscriptions WHERE id = $1", subscription_id)
        return _subscription_from_row(row) if row else None

    async def get_subscription_for_user(self, user_id: str) -> Optional[Subscription]:
        pool = await self._get_pool()
        row = await pool.fetchrow("SELECT * FROM subscriptions WHERE user_id = $1", user_id)
        return _subscription_from_row(row) if row else None

    async def create_subscription(
        self,
        subscription: Subscription,
        metrics: Sequence[UsageMetric] = (),
        reactivate: bool = False,
    ) -> Subscription:
        pool = await self._get_pool()
        s = subscription

        async with pool.acquire() as conn:
            async with conn.transaction():
                if reactivate:
                    row = await conn.fetchrow(
                        """
                        UPDATE subscriptions SET
                            tier = $2, status = $3, billing_cycle = $4,
                            current_period_start = $5, current_period_end = $6,
                            cancel_at_period_end = $7, trial_end = $8, updated_at = $9
                        WHERE user_id = $1 AND status = 'CANCELED'
                        RETURNING *
                        """,
                        s.user_id, s.tier.value, s.status.value, s.billing_cycle.value,
                        s.current_period_start, s.current_period_end,
                        s.cancel_at_period_end, s.trial_end, s.updated_at,
                    )
                    if row is None:
                        raise DuplicateSubscriptionError(s.user_id)
                else:
                    try:
                        row = await conn.fetchrow(
                            """
                            INSERT INTO subscriptions
                                (id, user_id, tier, status, billing_cycle,
                                 current_period_start, current_period_end,
                                 cancel_at_period_end, trial_end, created_at, updated_at)
                            VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11)
                            RETURNING *
                            """,
                            s.id, s.user_id, s.tier.value, s.status.value, s.billing_cycle.value,
                            s.current_period_start, s.current_period_end,
                            s.cancel_at_period_end, s.trial_end, s.created_at, s.updated_at,
                        )
                    except asyncpg.UniqueViolationError:
                        raise DuplicateSubscriptionError(s.user_id) from None

                created = _subscription_from_row(row)
                await self._insert_metrics(conn, created.id, metrics)

        return created

    @staticmethod
    async def _insert_metrics(
        conn: asyncpg.Connection,
        subscription_id: str,
        metrics: Sequence[UsageMetric],
    ) -> None:
        if not metrics:
            return
        await conn.executemany(
            """
            INSERT INTO usage_metrics
                (id, subscription_id, user_id, metric_type, current_value,
                 limit_value, period_start, period_end, created_at, updated_at)
            VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10)
            ON CONFLICT (user_id, metric_type, period_start) DO NOTHING
            """,
            [
                (
                    m.id, subscription_id, m.user_id, m.metric_type.value,
                    m.current_value, m.limit_value, m.period_start,
                    m.period_end, m.created_at, m.updated_at,
                )
                for m in metrics
            ],
        )

    async def update_subscription(
        self,
        subscription_id: str,
        changes: Mapping[str, Any],
        limits: Optional[Mapping[UsageMetricType, float]] = None,
        seed_metrics: Sequence[UsageMetric] = (),
    ) -> Optional[Subscription]:
        pool = await self._get_pool()
        fields = [name for name in changes if name in UPDATABLE_FIELDS]
        assignments = [f"{name} = ${i + 2}" for i, name in enumerate(fields)]
        assignments.append(f"updated_at = ${len(fields) + 2}")
        params = [_encode(changes[name]) for name in fields]

        async with pool.acquire() as conn:
            async with conn.transaction():
                row = await conn.fetchrow(
                    f"UPDATE subscriptions SET {', '.join(assignments)} WHERE id = $1 RETURNING *",
                    subscription_id, *params, utcnow(),
                )
                if row is None:
                    return None

                updated = _subscription_from_row(row)
                await self._insert_metrics(conn, updated.id, _stamp_seeds(updated, seed_metrics))
                if limits:
                    status = await conn.execute(
                        """
                        UPDATE usage_metrics AS u
                        SET limit_value = v.limit_value, updated_at = CURRENT_TIMESTAMP
                        FROM unnest($3::text[], $4::float8[]) AS v(metric_type, limit_value)
                        WHERE u.user_id = $1 AND u.period_start = $2
                          AND u.metric_type = v.metric_type
                        """,
                        updated.user_id,
                        updated.current_period_start,
                        [m.value for m in limits],
                        [float(v) for v in limits.values()],
                    )
                    logger.info(
                        "Usage limits re-based",
                        subscription_id=subscription_id,
                        tier=updated.tier.value,
                        rows=int(status.split()[-1]),
                    )

        return updated

    # === Usage Metrics ===

    async def get_metric(
        self,
        user_id: str,
        metric_type: UsageMetricType,
        period_start: datetime,
    ) -> Optional[UsageMetric]:
        pool = await self._get_pool()
        row = await pool.fetchrow(
            """
            SELECT * FROM usage_metrics
            WHERE user_id = $1 AND metric_type = $2 AND period_start = $3
            """,
            user_id, metric_type.value, period_start,
        )
        return _metric_from_row(row) if row else None

    async def list_metrics(self, user_id: str, period_start: datetime) -> List[UsageMetric]:
        pool = await self._get_pool()
        rows = await pool.fetch(
            """
            SELECT * FROM usage_metrics
            WHERE user_id = $1 AND period_start = $2
            ORDER BY metric_type ASC
            """,
            user_id, period_start,
        )
        return [_metric_from_row(r) for r in rows]

    async def list_metrics_between(
        self,
        user_id: str,
        start: datetime,
        end: datetime,
    ) -> List[UsageMetric]:
        pool = await self._get_pool()
        rows = await pool.fetch(
            """
            SELECT * FROM usage_metrics
            WHERE user_id = $1 AND period_start >= $2 AND period_start <= $3
            ORDER BY metric_type ASC, period_start DESC
            """,
            user_id, start, end,
        )
        return [_metric_from_row(r) for r in rows]

    async def _upsert_metric(self, seed: UsageMetric, value: float, accumulate: bool) -> UsageMetric:
        pool = await self._get_pool()
        on_conflict = (
            "usage_metrics.current_value + EXCLUDED.current_value"
            if accumulate
            else "EXCLUDED.current_value"
        )
        row = await pool.fetchrow(
            f"""
            INSERT INTO usage_metrics
                (id, subscription_id, user_id, metric_type, current_value,
                 limit_value, period_start, period_end, created_at, updated_at)
            VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $9)
            ON CONFLICT (user_id, metric_type, period_start) DO UPDATE SET
                current_value = {on_conflict},
                updated_at = EXCLUDED.updated_at
            RETURNING *
            """,
            seed.id, seed.subscription_id, seed.user_id, seed.metric_type.value,
            value, seed.limit_value, seed.period_start, seed.period_end, utcnow(),
        )
        return _metric_from_row(row)

    async def increment_metric(self, seed: UsageMetric, amount: float) -> UsageMetric:
        return await self._upsert_metric(seed, amount, accumulate=True)

    async def set_metric_value(self, seed: UsageMetric, value: float) -> UsageMetric:
        return await self._upsert_metric(seed, value, accumulate=False)


# =============================================================================
# SQLite Storage
# =============================================================================

class SQLiteSubscriptionStore(SubscriptionStore):
    """
    SQLite storage for single-node deployments.

    WAL mode allows concurrent readers; writers are serialised through a
    lock and run inside BEGIN IMMEDIATE transactions.
    """

    def __init__(self, path: str | Path = "./data/tiergate.db", busy_timeout_ms: int = 5000):
        self.path = str(path)
        self.busy_timeout_ms = busy_timeout_ms

        self._conn: Optional[aiosqlite.Connection] = None
        self._write_lock = asyncio.Lock()
        self._connected = False

    @staticmethod
    def _dict_factory(cursor: sqlite3.Cursor, row: tuple) -> dict[str, Any]:
        """Convert row to dictionary."""
        return {
            col[0]: row[idx]
            for idx, col in enumerate(cursor.description)
        }

    @staticmethod
    def _ts(value: datetime) -> str:
        return _to_utc(value).isoformat(timespec="microseconds")

    @staticmethod
    def _parse_ts(value: str) -> datetime:
        return _to_utc(datetime.fromisoformat(value))

    async def connect(self) -> None:
        if self._connected:
            return

        if self.path != ":memory:":
            Path(self.path).parent.mkdir(parents=True, exist_ok=True)

        self._conn = await aiosqlite.connect(self.path, isolation_level=None)
        self._conn.row_factory = self._dict_factory

        await self._conn.execute("PRAGMA journal_mode=WAL")
        await self._conn.execute(f"PRAGMA busy_timeout={int(self.busy_timeout_ms)}")
        await self._conn.execute("PRAGMA foreign_keys=ON")
        await self._conn.executescript(SQLITE_SCHEMA)

        self._connected = True
        logger.info("SQLite subscription store connected", path=self.path)

    async def disconnect(self) -> None:
        if self._conn:
            await self._conn.close()
            self._conn = None
            logger.info("SQLite subscription store disconnected", path=self.path)
        self._connected = False

    async def _connection(self) -> aiosqlite.Connection:
        if not self._connected:
            await self.connect()
        return self._conn

    @asynccontextmanager
    async def _transaction(self) -> AsyncIterator[aiosqlite.Connection]:
        conn = await self._connection()
        async with self._write_lock:
            await conn.execute("BEGIN IMMEDIATE")
            try:
                yield conn
            except BaseException:
                await conn.execute("ROLLBACK")
                raise
            else:
                await conn.execute("COMMIT")

    async def _fetch_one(self, conn: aiosqlite.Connection, query: str, params: tuple) -> Optional[dict]:
        cursor = await conn.execute(query, params)
        return await cursor.fetchone()

    async def _fetch_all(self, query: str, params: tuple) -> List[dict]:
        # Reads skip the write lock and share the connection, so they may
        # observe rows of another task's transaction before it commits.
        conn = await self._connection()
        cursor = await conn.execute(query, params)
        return await cursor.fetchall()

    def _param(self, value: Any) -> Any:
        value = _encode(value)
        if isinstance(value, datetime):
            return self._ts(value)
        if isinstance(value, bool):
            return int(value)
        return value

    # === Subscriptions ===

    async def get_subscription(self, subscription_id: str) -> Optional[Subscription]:
        rows = await self._fetch_all("SELECT * FROM subscriptions WHERE id = ?", (subscription_id,))
        return _subscription_from_row(rows[0], self._parse_ts) if rows else None

    async def get_subscription_for_user(self, user_id: str) -> Optional[Subscription]:
        rows = await self._fetch_all("SELECT * FROM subscriptions WHERE user_id = ?", (user_id,))
        return _subscription_from_row(rows[0], self._parse_ts) if rows else None

    async def create_subscription(
        self,
        subscription: Subscription,
        metrics: Sequence[UsageMetric] = (),
        reactivate: bool = False,
    ) -> Subscription:
        s = subscription
        values = {
            "tier": s.tier,
            "status": s.status,
            "billing_cycle": s.billing_cycle,
            "current_period_start": s.current_period_start,
            "current_period_end": s.current_period_end,
            "cancel_at_period_end": s.cancel_at_period_end,
            "trial_end": s.trial_end,
            "updated_at": s.updated_at,
        }

        async with self._transaction() as conn:
            if reactivate:
                existing = await self._fetch_one(
                    conn,
                    "SELECT id FROM subscriptions WHERE user_id = ? AND status = ?",
                    (s.user_id, SubscriptionStatus.CANCELED.value),
                )
                if existing is None:
                    raise DuplicateSubscriptionError(s.user_id)
                subscription_id = existing["id"]
                await conn.execute(
                    f"UPDATE subscriptions SET {', '.join(f'{k} = ?' for k in values)} WHERE id = ?",
                    (*(self._param(v) for v in values.values()), subscription_id),
                )
            else:
                subscription_id = s.id
                try:
                    await conn.execute(
                        """
                        INSERT INTO subscriptions
                            (id, user_id, created_at, tier, status, billing_cycle,
                             current_period_start, current_period_end,
                             cancel_at_period_end, trial_end, updated_at)
                        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                        """,
                        (
                            s.id, s.user_id, self._ts(s.created_at),
                            *(self._param(v) for v in values.values()),
                        ),
                    )
                except sqlite3.IntegrityError:
                    raise DuplicateSubscriptionError(s.user_id) from None

            await self._insert_metrics(conn, subscription_id, metrics)

            row = await self._fetch_one(
                conn, "SELECT * FROM subscriptions WHERE id = ?", (subscription_id,)
            )

        return _subscription_from_row(row, self._parse_ts)

    async def _insert_metrics(
        self,
        conn: aiosqlite.Connection,
        subscription_id: str,
        metrics: Sequence[UsageMetric],
    ) -> None:
        await conn.executemany(
            """
            INSERT INTO usage_metrics
                (id, subscription_id, user_id, metric_type, current_value,
                 limit_value, period_start, period_end, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT (user_id, metric_type, period_start) DO NOTHING
            """,
            [
                (
                    m.id, subscription_id, m.user_id, m.metric_type.value,
                    m.current_value, m.limit_value, self._ts(m.period_start),
                    self._ts(m.period_end), self._ts(m.created_at), self._ts(m.updated_at),
                )
                for m in metrics
            ],
        )

    async def _rebase_limits(
        self,
        conn: aiosqlite.Connection,
        subscription: Subscription,
        limits: Mapping[UsageMetricType, float],
    ) -> int:
        now = self._ts(utcnow())
        cursor = await conn.executemany(
            """
            UPDATE usage_metrics SET limit_value = ?, updated_at = ?
            WHERE user_id = ? AND metric_type = ? AND period_start = ?
            """,
            [
                (
                    limit, now, subscription.user_id, metric_type.value,
                    self._ts(subscription.current_period_start),
                )
                for metric_type, limit in limits.items()
            ],
        )
        return cursor.rowcount

    async def update_subscription(
        self,
        subscription_id: str,
        changes: Mapping[str, Any],
        limits: Optional[Mapping[UsageMetricType, float]] = None,
        seed_metrics: Sequence[UsageMetric] = (),
    ) -> Optional[Subscription]:
        fields = [name for name in changes if name in UPDATABLE_FIELDS]
        assignments = [f"{name} = ?" for name in fields] + ["updated_at = ?"]
        params = [self._param(changes[name]) for name in fields]

        async with self._transaction() as conn:
            cursor = await conn.execute(
                f"UPDATE subscriptions SET {', '.join(assignments)} WHERE id = ?",
                (*params, self._ts(utcnow()), subscription_id),
            )
            if cursor.rowcount == 0:
                return None

            row = await self._fetch_one(
                conn, "SELECT * FROM subscriptions WHERE id = ?", (subscription_id,)
            )
            updated = _subscription_from_row(row, self._parse_ts)
            await self._insert_metrics(conn, updated.id, _stamp_seeds(updated, seed_metrics))
            if limits:
                rows = await self._rebase_limits(conn, updated, limits)
                logger.info(
                    "Usage limits re-based",
                    subscription_id=subscription_id,
                    tier=updated.tier.value,
                    rows=rows,
                )

        return updated

    # === Usage Metrics ===

    async def get_metric(
        self,
        user_id: str,
        metric_type: UsageMetricType,
        period_start: datetime,
    ) -> Optional[UsageMetric]:
        rows = await self._fetch_all(
            """
            SELECT * FROM usage_metrics
            WHERE user_id = ? AND metric_type = ? AND period_start = ?
            """,
            (user_id, metric_type.value, self._ts(period_start)),
        )
        return _metric_from_row(rows[0], self._parse_ts) if rows else None

    async def list_metrics(self, user_id: str, period_start: datetime) -> List[UsageMetric]:
        rows = await self._fetch_all(
            """
            SELECT * FROM usage_metrics
            WHERE user_id = ? AND period_start = ?
            ORDER BY metric_type ASC
            """,
            (user_id, self._ts(period_start)),
        )
        return [_metric_from_row(r, self._parse_ts) for r in rows]

    async def list_metrics_between(
        self,
        user_id: str,
        start: datetime,
        end: datetime,
    ) -> List[UsageMetric]:
        rows = await self._fetch_all(
            """
            SELECT * FROM usage_metrics
            WHERE user_id = ? AND period_start >= ? AND period_start <= ?
            ORDER BY metric_type ASC, period_start DESC
            """,
            (user_id, self._ts(start), self._ts(end)),
        )
        return [_metric_from_row(r, self._parse_ts) for r in rows]

    async def _upsert_metric(self, seed: UsageMetric, value: float, accumulate: bool) -> UsageMetric:
        on_conflict = (
            "current_value + excluded.current_value" if accumulate else "excluded.current_value"
        )
        now = self._ts(utcnow())

        async with self._transaction() as conn:
            await conn.execute(
                f"""
                INSERT INTO usage_metrics
                    (id, subscription_id, user_id, metric_type, current_value,
                     limit_value, period_start, period_end, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT (user_id, metric_type, period_start) DO UPDATE SET
                    current_value = {on_conflict},
                    updated_at = excluded.updated_at
                """,
                (
                    seed.id, seed.subscription_id, seed.user_id, seed.metric_type.value,
                    value, seed.limit_value, self._ts(seed.period_start),
                    self._ts(seed.period_end), now, now,
                ),
            )
            row = await self._fetch_one(
                conn,
                """
                SELECT * FROM usage_metrics
                WHERE user_id = ? AND metric_type = ? AND period_start = ?
                """,
                (seed.user_id, seed.metric_type.value, self._ts(seed.period_start)),
            )

        return _metric_from_row(row, self._parse_ts)

    async def increment_metric(self, seed: UsageMetric, amount: float) -> UsageMetric:
        return await self._upsert_metric(seed, amount, accumulate=True)

    async def set_metric_value(self, seed: UsageMetric, value: float) -> UsageMetric:
        return await self._upsert_metric(seed, value, accumulate=False)


# =============================================================================
# Memory Storage (for testing)
# =============================================================================

class MemorySubscriptionStore(SubscriptionStore):
    """In-memory store for testing. Every operation holds one lock."""

    def __init__(self):
        self._subscriptions: Dict[str, Subscription] = {}
        self._user_index: Dict[str, str] = {}
        self._metrics: Dict[tuple, UsageMetric] = {}
        self._lock = asyncio.Lock()

    @staticmethod
    def _key(user_id: str, metric_type: UsageMetricType, period_start: datetime) -> tuple:
        return (user_id, metric_type, _to_utc(period_start))

    async def get_subscription(self, subscription_id: str) -> Optional[Subscription]:
        async with self._lock:
            sub = self._subscriptions.get(subscription_id)
            return sub.copy() if sub else None

    async def get_subscription_for_user(self, user_id: str) -> Optional[Subscription]:
        async with self._lock:
            subscription_id = self._user_index.get(user_id)
            if subscription_id is None:
                return None
            return self._subscriptions[subscription_id].copy()

    async def create_subscription(
        self,
        subscription: Subscription,
        metrics: Sequence[UsageMetric] = (),
        reactivate: bool = False,
    ) -> Subscription:
        async with self._lock:
            existing_id = self._user_index.get(subscription.user_id)
            record = subscription.copy()

            if existing_id is not None:
                existing = self._subscriptions[existing_id]
                if not reactivate or existing.status != SubscriptionStatus.CANCELED:
                    raise DuplicateSubscriptionError(subscription.user_id)
                record.id = existing.id
                record.created_at = existing.created_at
            elif reactivate:
                raise DuplicateSubscriptionError(subscription.user_id)

            self._subscriptions[record.id] = record
            self._user_index[record.user_id] = record.id

            for metric in metrics:
                key = self._key(metric.user_id, metric.metric_type, metric.period_start)
                if key not in self._metrics:
                    row = metric.copy()
                    row.subscription_id = record.id
                    self._metrics[key] = row

            return record.copy()

    async def update_subscription(
        self,
        subscription_id: str,
        changes: Mapping[str, Any],
        limits: Optional[Mapping[UsageMetricType, float]] = None,
        seed_metrics: Sequence[UsageMetric] = (),
    ) -> Optional[Subscription]:
        async with self._lock:
            current = self._subscriptions.get(subscription_id)
            if current is None:
                return None

            updated = current.copy()
            for name in UPDATABLE_FIELDS:
                if name in changes:
                    setattr(updated, name, changes[name])
            updated.updated_at = utcnow()
            self._subscriptions[subscription_id] = updated

            for seed in _stamp_seeds(updated, seed_metrics):
                key = self._key(seed.user_id, seed.metric_type, seed.period_start)
                if key not in self._metrics:
                    self._metrics[key] = seed

            if limits:
                now = utcnow()
                rows = 0
                for metric_type, limit in limits.items():
                    row = self._metrics.get(
                        self._key(updated.user_id, metric_type, updated.current_period_start)
                    )
                    if row is not None:
                        row.limit_value = limit
                        row.updated_at = now
                        rows += 1
                logger.info(
                    "Usage limits re-based",
                    subscription_id=subscription_id,
                    tier=updated.tier.value,
                    rows=rows,
                )

            return updated.copy()

    async def get_metric(
        self,
        user_id: str,
        metric_type: UsageMetricType,
        period_start: datetime,
    ) -> Optional[UsageMetric]:
        async with self._lock:
            row = self._metrics.get(self._key(user_id, metric_type, period_start))
            return row.copy() if row else None

    async def list_metrics(self, user_id: str, period_start: datetime) -> List[UsageMetric]:
        start = _to_utc(period_start)
        async with self._lock:
            rows = [
                m.copy() for (uid, _, ps), m in self._metrics.items()
                if uid == user_id and ps == start
            ]
        return sorted(rows, key=lambda m: m.metric_type.value)

    async def list_metrics_between(
        self,
        user_id: str,
        start: datetime,
        end: datetime,
    ) -> List[UsageMetric]:
        lower, upper = _to_utc(start), _to_utc(end)
        async with self._lock:
            rows = [
                m.copy() for (uid, _, ps), m in self._metrics.items()
                if uid == user_id and lower <= ps <= upper
            ]
        rows.sort(key=lambda m: m.period_start, reverse=True)
        rows.sort(key=lambda m: m.metric_type.value)
        return rows

    async def _upsert_metric(self, seed: UsageMetric, value: float, accumulate: bool) -> UsageMetric:
        key = self._key(seed.user_id, seed.metric_type, seed.period_start)
        async with self._lock:
            row = self._metrics.get(key)
            if row is None:
                row = seed.copy()
                row.current_value = 0
                self._metrics[key] = row
            current = row.current_value
            # Suspends between read and write; the lock keeps other writers out.
            await asyncio.sleep(0)
            row.current_value = current + value if accumulate else value
            row.updated_at = utcnow()
            return row.copy()

    async def increment_metric(self, seed: UsageMetric, amount: float) -> UsageMetric:
        return await self._upsert_metric(seed, amount, accumulate=True)

    async def set_metric_value(self, seed: UsageMetric, value: float) -> UsageMetric:
        return await self._upsert_metric(seed, value, accumulate=False)

    async def clear(self) -> None:
        """Clear all data (for testing)."""
        async with self._lock:
            self._subscriptions.clear()
            self._user_index.clear()
            self._metrics.clear()


# =============================================================================
# Factory
# =============================================================================

def create_subscription_store(
    backend: str = "memory",
    **kwargs: Any,
) -> SubscriptionStore:
    """Create a subscription store instance."""
    if backend == "memory":
        return MemorySubscriptionStore()
    elif backend == "sqlite":
        return SQLiteSubscriptionStore(**kwargs)
    elif backend == "postgres" or backend == "postgresql":
        return PostgresSubscriptionStore(**kwargs)
    else:
        raise ValueError(f"Unknown store backend: {backend}")
