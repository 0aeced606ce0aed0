"""
Resource Tables

Read-only access to the externally owned account and bank-connection
tables. The subscription core never writes to them.
"""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, List, Optional

import asyncpg
import structlog

logger = structlog.get_logger(__name__)


class ResourceSource(ABC):
    """Abstract base for resource table readers."""

    async def connect(self) -> None:
        pass

    async def disconnect(self) -> None:
        pass

    async def __aenter__(self) -> "ResourceSource":
        await self.connect()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.disconnect()

    @abstractmethod
    async def count_accounts(self, user_id: str) -> int:
        """Number of account rows owned by a user."""

    @abstractmethod
    async def list_account_balances(self, user_id: str) -> List[Optional[Decimal]]:
        """Current balance of each account of a user (None when unknown)."""

    @abstractmethod
    async def count_synced_connections(self, user_id: str, since: datetime) -> int:
        """Connections of a user whose last sync is at or after since."""


# =============================================================================
# PostgreSQL
# =============================================================================

class PostgresResourceSource(ResourceSource):
    """Reads the application's account and connection tables."""

    def __init__(
        self,
        dsn: str = "postgresql://localhost/tiergate",
        accounts_table: str = "accounts",
        connections_table: str = "plaid_connections",
        pool_size: int = 5,
    ):
        self.dsn = dsn
        self.accounts_table = accounts_table
        self.connections_table = connections_table
        self.pool_size = pool_size

        self._pool: Optional[asyncpg.Pool] = None
        self._connected = False

    async def connect(self) -> None:
        if self._connected:
            return

        self._pool = await asyncpg.create_pool(self.dsn, min_size=1, max_size=self.pool_size)
        self._connected = True
        logger.info(
            "Resource source connected",
            accounts_table=self.accounts_table,
            connections_table=self.connections_table,
        )

    async def disconnect(self) -> None:
        if self._pool:
            await self._pool.close()
            self._pool = None
        self._connected = False

    async def _get_pool(self) -> asyncpg.Pool:
        if not self._connected:
            await self.connect()
        return self._pool

    async def count_accounts(self, user_id: str) -> int:
        pool = await self._get_pool()
        return await pool.fetchval(
            f"SELECT COUNT(*) FROM {self.accounts_table} WHERE user_id = $1",
            user_id,
        )

    async def list_account_balances(self, user_id: str) -> List[Optional[Decimal]]:
        pool = await self._get_pool()
        rows = await pool.fetch(
            f"SELECT balance_current FROM {self.accounts_table} WHERE user_id = $1",
            user_id,
        )
        return [
            Decimal(str(r["balance_current"])) if r["balance_current"] is not None else None
            for r in rows
        ]

    async def count_synced_connections(self, user_id: str, since: datetime) -> int:
        pool = await self._get_pool()
        return await pool.fetchval(
            f"""
            SELECT COUNT(*) FROM {self.connections_table}
            WHERE user_id = $1 AND last_sync >= $2
            """,
            user_id,
            since,
        )


# =============================================================================
# Memory (for testing)
# =============================================================================

@dataclass
class AccountRecord:
    account_id: str
    balance: Optional[Decimal] = None


@dataclass
class ConnectionRecord:
    connection_id: str
    last_sync: Optional[datetime] = None


class MemoryResourceSource(ResourceSource):
    """In-memory resource tables for tests and local development."""

    def __init__(self):
        self._accounts: Dict[str, List[AccountRecord]] = {}
        self._connections: Dict[str, List[ConnectionRecord]] = {}
        self._lock = asyncio.Lock()

    async def add_account(
        self,
        user_id: str,
        balance: Any = None,
        account_id: Optional[str] = None,
    ) -> AccountRecord:
        async with self._lock:
            accounts = self._accounts.setdefault(user_id, [])
            record = AccountRecord(
                account_id=account_id or f"acct-{len(accounts) + 1}",
                balance=Decimal(str(balance)) if balance is not None else None,
            )
            accounts.append(record)
            return record

    async def add_connection(
        self,
        user_id: str,
        last_sync: Optional[datetime] = None,
        connection_id: Optional[str] = None,
    ) -> ConnectionRecord:
        async with self._lock:
            connections = self._connections.setdefault(user_id, [])
            record = ConnectionRecord(
                connection_id=connection_id or f"conn-{len(connections) + 1}",
                last_sync=last_sync,
            )
            connections.append(record)
            return record

    async def count_accounts(self, user_id: str) -> int:
        async with self._lock:
            return len(self._accounts.get(user_id, []))

    async def list_account_balances(self, user_id: str) -> List[Optional[Decimal]]:
        async with self._lock:
            return [a.balance for a in self._accounts.get(user_id, [])]

    async def count_synced_connections(self, user_id: str, since: datetime) -> int:
        if since.tzinfo is None:
            since = since.replace(tzinfo=timezone.utc)
        async with self._lock:
            return sum(
                1
                for c in self._connections.get(user_id, [])
                if c.last_sync is not None and c.last_sync >= since
            )


def create_resource_source(backend: str = "memory", **kwargs: Any) -> ResourceSource:
    """Create a resource source instance."""
    if backend == "memory":
        return MemoryResourceSource()
    elif backend == "postgres" or backend == "postgresql":
        return PostgresResourceSource(**kwargs)
    else:
        raise ValueError(f"Unknown resource backend: {backend}")
