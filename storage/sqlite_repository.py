"""SQLite-backed order store for resting limit orders and their notifications."""
from __future__ import annotations

import asyncio
import sqlite3
import threading
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from constants import MAX_NOTIFICATIONS_PER_WALLET
from services.exceptions import (
    DuplicateNonceError,
    InvalidTransitionError,
    OrderNotFoundError,
    OrderStoreError,
    StoreCorruptedError,
)
from storage.models import NotificationRecord, Order, OrderStatus, OrderType

ISO_FORMAT = "%Y-%m-%dT%H:%M:%S.%fZ"


def _now() -> str:
    return datetime.now(timezone.utc).strftime(ISO_FORMAT)


def _format_ts(value: datetime) -> str:
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc)
    return value.strftime(ISO_FORMAT)


def _parse_ts(value: str) -> datetime:
    return datetime.strptime(value, ISO_FORMAT).replace(tzinfo=timezone.utc)


class SQLiteOrderStore:
    """
    Durable order records keyed by id.

    Orders are never deleted. Status moves one way, pending -> executed/canceled/expired,
    through a single conditional UPDATE so concurrent writers cannot both win.
    """

    def __init__(self, db_path: Path | str = Path("data/limit_orders.db")) -> None:
        self.db_path = Path(db_path)
        if self.db_path != Path(":memory:"):
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()
        # dedicated worker, independent of the loop's default executor
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="order-store")
        try:
            self._connection = sqlite3.connect(
                str(self.db_path),
                detect_types=sqlite3.PARSE_DECLTYPES,
                check_same_thread=False,
            )
            self._connection.row_factory = sqlite3.Row
            self._verify_integrity()
            self._configure()
            self._create_schema()
        except sqlite3.DatabaseError as exc:
            raise StoreCorruptedError(f"order store {self.db_path} is unreadable: {exc}") from exc

    def _verify_integrity(self) -> None:
        with self._lock:
            cursor = self._connection.cursor()
            cursor.execute("PRAGMA integrity_check;")
            result = cursor.fetchone()
            cursor.close()
        if result is None or result[0] != "ok":
            raise StoreCorruptedError(f"integrity check failed for {self.db_path}: {result[0] if result else None}")

    def _configure(self) -> None:
        with self._lock:
            cursor = self._connection.cursor()
            try:
                cursor.execute("PRAGMA journal_mode=WAL;")
            except sqlite3.DatabaseError:
                pass
            cursor.execute("PRAGMA synchronous=FULL;")
            cursor.execute("PRAGMA busy_timeout=5000;")
            cursor.close()

    def _create_schema(self) -> None:
        statements = [
            """
            CREATE TABLE IF NOT EXISTS limit_order (
                id TEXT PRIMARY KEY,
                trader TEXT NOT NULL,
                token_in TEXT NOT NULL,
                token_out TEXT NOT NULL,
                amount_in TEXT NOT NULL,
                amount_out_min TEXT NOT NULL,
                limit_price_e18 TEXT NOT NULL,
                slippage_bps INTEGER NOT NULL,
                deadline INTEGER NOT NULL,
                nonce TEXT NOT NULL,
                signature TEXT NOT NULL,
                order_type TEXT NOT NULL,
                status TEXT NOT NULL DEFAULT 'pending',
                pool_address TEXT,
                last_error TEXT,
                limit_price_reference TEXT NOT NULL DEFAULT '0',
                limit_price_usd TEXT NOT NULL DEFAULT '0',
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            );
            """,
            """
            CREATE UNIQUE INDEX IF NOT EXISTS idx_limit_order_trader_nonce
                ON limit_order(trader, nonce);
            """,
            """
            CREATE INDEX IF NOT EXISTS idx_limit_order_status_pool
                ON limit_order(status, pool_address);
            """,
            """
            CREATE TABLE IF NOT EXISTS order_notification (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                wallet_address TEXT NOT NULL,
                order_id TEXT,
                message TEXT NOT NULL,
                created_at TEXT NOT NULL
            );
            """,
            """
            CREATE INDEX IF NOT EXISTS idx_order_notification_wallet
                ON order_notification(wallet_address, created_at);
            """,
        ]

        with self._lock:
            cursor = self._connection.cursor()
            for statement in statements:
                cursor.execute(statement)
            self._connection.commit()
            cursor.close()

    async def _run(self, func, *args):
        loop = asyncio.get_running_loop()
        try:
            return await loop.run_in_executor(self._executor, func, *args)
        except sqlite3.Error as exc:
            await loop.run_in_executor(self._executor, self._rollback_sync)
            raise OrderStoreError(f"order store {self.db_path}: {exc}") from exc

    def _rollback_sync(self) -> None:
        with self._lock:
            try:
                if self._connection.in_transaction:
                    self._connection.rollback()
            except sqlite3.ProgrammingError:
                # connection already closed
                pass

    # --- orders ---

    async def create(self, order: Order) -> None:
        order.validate()
        await self._run(self._create_sync, order)

    def _create_sync(self, order: Order) -> None:
        now = _now()
        with self._lock:
            cursor = self._connection.cursor()
            try:
                cursor.execute(
                    """
                    INSERT INTO limit_order (
                        id, trader, token_in, token_out, amount_in, amount_out_min,
                        limit_price_e18, slippage_bps, deadline, nonce, signature,
                        order_type, status, pool_address, last_error,
                        limit_price_reference, limit_price_usd, created_at, updated_at
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        order.id,
                        order.trader.lower(),
                        order.token_in.lower(),
                        order.token_out.lower(),
                        str(order.amount_in),
                        str(order.amount_out_min),
                        str(order.limit_price_e18),
                        order.slippage_bps,
                        order.deadline,
                        str(order.nonce),
                        order.signature,
                        OrderType(order.order_type).value,
                        OrderStatus(order.status).value,
                        order.pool_address.lower() if order.pool_address else None,
                        order.last_error,
                        order.limit_price_reference,
                        order.limit_price_usd,
                        _format_ts(order.created_at),
                        now,
                    ),
                )
                self._connection.commit()
            except sqlite3.IntegrityError as exc:
                self._connection.rollback()
                if "trader" in str(exc):
                    raise DuplicateNonceError(order.trader.lower(), order.nonce) from exc
                raise OrderStoreError(f"order {order.id} already exists") from exc
            finally:
                cursor.close()

    async def get(self, order_id: str) -> Optional[Order]:
        return await self._run(self._get_sync, order_id)

    def _get_sync(self, order_id: str) -> Optional[Order]:
        with self._lock:
            cursor = self._connection.cursor()
            cursor.execute("SELECT * FROM limit_order WHERE id = ?", (order_id,))
            row = cursor.fetchone()
            cursor.close()
        return self._row_to_order(row) if row is not None else None

    async def list_pending(self, pool: Optional[str] = None) -> list[Order]:
        return await self._run(
            self._list_pending_sync,
            pool.lower() if pool else None,
        )

    def _list_pending_sync(self, pool: Optional[str]) -> list[Order]:
        with self._lock:
            cursor = self._connection.cursor()
            cursor.execute(
                """
                SELECT * FROM limit_order
                WHERE status = 'pending'
                  AND (? IS NULL OR pool_address = ?)
                ORDER BY deadline ASC, created_at ASC
                """,
                (pool, pool),
            )
            rows = cursor.fetchall()
            cursor.close()
        return [self._row_to_order(row) for row in rows]

    async def list_orders(
        self,
        *,
        trader: Optional[str] = None,
        status: Optional[OrderStatus] = None,
        limit: int = 50,
    ) -> list[Order]:
        return await self._run(
            self._list_orders_sync,
            trader.lower() if trader else None,
            OrderStatus(status).value if status else None,
            limit,
        )

    def _list_orders_sync(self, trader: Optional[str], status: Optional[str], limit: int) -> list[Order]:
        with self._lock:
            cursor = self._connection.cursor()
            cursor.execute(
                """
                SELECT * FROM limit_order
                WHERE (? IS NULL OR trader = ?)
                  AND (? IS NULL OR status = ?)
                ORDER BY created_at DESC
                LIMIT ?
                """,
                (trader, trader, status, status, limit),
            )
            rows = cursor.fetchall()
            cursor.close()
        return [self._row_to_order(row) for row in rows]

    async def transition(self, order_id: str, new_status: OrderStatus) -> bool:
        """
        Move a pending order to a terminal status.

        Returns True if this call changed the status and False if the order was
        already in `new_status`. Raises OrderNotFoundError or InvalidTransitionError.
        """
        return await self._run(self._transition_sync, order_id, OrderStatus(new_status))

    def _transition_sync(self, order_id: str, new_status: OrderStatus) -> bool:
        with self._lock:
            cursor = self._connection.cursor()
            try:
                if new_status.is_terminal:
                    cursor.execute(
                        """
                        UPDATE limit_order
                        SET status = ?, updated_at = ?
                        WHERE id = ? AND status = 'pending'
                        """,
                        (new_status.value, _now(), order_id),
                    )
                    if cursor.rowcount == 1:
                        self._connection.commit()
                        return True
                cursor.execute("SELECT status FROM limit_order WHERE id = ?", (order_id,))
                row = cursor.fetchone()
            finally:
                cursor.close()
        if row is None:
            raise OrderNotFoundError(order_id)
        current = OrderStatus(row["status"])
        if current is new_status and current.is_terminal:
            return False
        raise InvalidTransitionError(order_id, current.value, new_status.value)

    async def assign_pool(self, order_id: str, pool: str) -> None:
        await self._run(self._assign_pool_sync, order_id, pool.lower())

    def _assign_pool_sync(self, order_id: str, pool: str) -> None:
        with self._lock:
            cursor = self._connection.cursor()
            cursor.execute(
                """
                UPDATE limit_order
                SET pool_address = ?, updated_at = ?
                WHERE id = ? AND pool_address IS NULL
                """,
                (pool, _now(), order_id),
            )
            self._connection.commit()
            cursor.close()

    async def annotate_error(self, order_id: str, error: Optional[str]) -> None:
        await self._run(self._annotate_error_sync, order_id, error)

    def _annotate_error_sync(self, order_id: str, error: Optional[str]) -> None:
        with self._lock:
            cursor = self._connection.cursor()
            cursor.execute(
                """
                UPDATE limit_order
                SET last_error = ?, updated_at = ?
                WHERE id = ?
                """,
                (error, _now(), order_id),
            )
            self._connection.commit()
            cursor.close()

    # --- notifications ---

    async def record_notification(
        self,
        *,
        wallet_address: str,
        order_id: Optional[str],
        message: str,
        created_at: datetime,
    ) -> int:
        return await self._run(
            self._record_notification_sync,
            wallet_address.lower(),
            order_id,
            message,
            created_at,
        )

    def _record_notification_sync(
        self,
        wallet_address: str,
        order_id: Optional[str],
        message: str,
        created_at: datetime,
    ) -> int:
        with self._lock:
            cursor = self._connection.cursor()
            cursor.execute(
                """
                INSERT INTO order_notification (wallet_address, order_id, message, created_at)
                VALUES (?, ?, ?, ?)
                """,
                (wallet_address, order_id, message, _format_ts(created_at)),
            )
            notification_id = cursor.lastrowid
            cursor.execute(
                """
                DELETE FROM order_notification
                WHERE wallet_address = ?
                  AND id NOT IN (
                      SELECT id FROM order_notification
                      WHERE wallet_address = ?
                      ORDER BY created_at DESC, id DESC
                      LIMIT ?
                  )
                """,
                (wallet_address, wallet_address, MAX_NOTIFICATIONS_PER_WALLET),
            )
            self._connection.commit()
            cursor.close()
        return notification_id

    async def fetch_notifications(self, wallet_address: str, limit: int = 20) -> list[NotificationRecord]:
        return await self._run(self._fetch_notifications_sync, wallet_address.lower(), limit)

    def _fetch_notifications_sync(self, wallet_address: str, limit: int) -> list[NotificationRecord]:
        with self._lock:
            cursor = self._connection.cursor()
            cursor.execute(
                """
                SELECT * FROM order_notification
                WHERE wallet_address = ?
                ORDER BY created_at DESC, id DESC
                LIMIT ?
                """,
                (wallet_address, limit),
            )
            rows = cursor.fetchall()
            cursor.close()
        return [
            NotificationRecord(
                id=row["id"],
                wallet_address=row["wallet_address"],
                order_id=row["order_id"],
                message=row["message"],
                created_at=_parse_ts(row["created_at"]),
            )
            for row in rows
        ]

    @staticmethod
    def _row_to_order(row: sqlite3.Row) -> Order:
        return Order(
            id=row["id"],
            trader=row["trader"],
            token_in=row["token_in"],
            token_out=row["token_out"],
            amount_in=int(row["amount_in"]),
            amount_out_min=int(row["amount_out_min"]),
            limit_price_e18=int(row["limit_price_e18"]),
            slippage_bps=row["slippage_bps"],
            deadline=row["deadline"],
            nonce=int(row["nonce"]),
            signature=row["signature"],
            order_type=OrderType(row["order_type"]),
            status=OrderStatus(row["status"]),
            created_at=_parse_ts(row["created_at"]),
            pool_address=row["pool_address"],
            last_error=row["last_error"],
            limit_price_reference=row["limit_price_reference"],
            limit_price_usd=row["limit_price_usd"],
        )

    async def close(self) -> None:
        await self._run(self._close_sync)

    def _close_sync(self) -> None:
        with self._lock:
            self._connection.commit()
            self._connection.close()
        self._executor.shutdown(wait=False)


__all__ = ["SQLiteOrderStore"]
