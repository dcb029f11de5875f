"""Customer and executor balances with a transaction log."""

from __future__ import annotations

import contextlib
import sqlite3
import uuid
from pathlib import Path
from threading import RLock
from typing import cast

from settlement_service.core.exceptions import ServiceError
from settlement_service.services.timestamps import now_iso


class BalanceLedger:
    """
    Keeps one integer balance per account, in minor currency units.

    Every balance mutation and its transaction log entry happen in a single
    database transaction. Credits are idempotent per (account, reference),
    so replaying a settlement credit never pays twice.
    """

    def __init__(self, db_path: str) -> None:
        self._lock = RLock()
        Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        self._db = sqlite3.connect(db_path, check_same_thread=False)
        self._db.execute("PRAGMA journal_mode=WAL")
        self._db.execute("PRAGMA busy_timeout=5000")
        self._init_schema()

    def _init_schema(self) -> None:
        """Create tables if they don't exist."""
        with self._lock:
            self._db.executescript(
                """
                CREATE TABLE IF NOT EXISTS accounts (
                    account_id TEXT PRIMARY KEY,
                    balance INTEGER NOT NULL DEFAULT 0 CHECK (balance >= 0),
                    created_at TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS balance_transactions (
                    tx_id TEXT PRIMARY KEY,
                    account_id TEXT NOT NULL,
                    type TEXT NOT NULL,
                    amount INTEGER NOT NULL CHECK (amount > 0),
                    balance_after INTEGER NOT NULL,
                    reference TEXT NOT NULL,
                    timestamp TEXT NOT NULL
                );

                CREATE UNIQUE INDEX IF NOT EXISTS ux_balance_credit_reference
                    ON balance_transactions(account_id, reference)
                    WHERE type = 'credit';

                CREATE INDEX IF NOT EXISTS ix_balance_transactions_account
                    ON balance_transactions(account_id, timestamp, tx_id);
                """
            )
            self._db.commit()

    def _new_tx_id(self) -> str:
        """Generate a new transaction ID."""
        return f"tx-{uuid.uuid4()}"

    @staticmethod
    def _require_positive(amount: int) -> None:
        if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
            raise ServiceError(
                "INVALID_AMOUNT",
                "Amount must be a positive integer",
                400,
                {},
            )

    def get_balance(self, account_id: str) -> int:
        """Current balance of an account; unknown accounts hold nothing."""
        with self._lock:
            row = self._db.execute(
                "SELECT balance FROM accounts WHERE account_id = ?",
                (account_id,),
            ).fetchone()
        return int(row[0]) if row is not None else 0

    def get_account(self, account_id: str) -> dict[str, object] | None:
        """Look up an account by ID. Returns None if not found."""
        with self._lock:
            row = self._db.execute(
                "SELECT account_id, balance, created_at FROM accounts WHERE account_id = ?",
                (account_id,),
            ).fetchone()
        if row is None:
            return None
        return {"account_id": row[0], "balance": row[1], "created_at": row[2]}

    def credit(self, account_id: str, amount: int, reference: str) -> dict[str, object]:
        """
        Add funds to an account, creating it on first use.

        Args:
            account_id: Target account.
            amount: Positive integer.
            reference: Context string (e.g. ``escrow_release:esc-...``).

        Returns:
            {"tx_id": "...", "balance_after": N}; a repeated reference returns
            the original transaction without crediting again.

        Raises:
            ServiceError: INVALID_AMOUNT, PAYLOAD_MISMATCH.
        """
        self._require_positive(amount)

        with self._lock:
            now = now_iso()
            tx_id = self._new_tx_id()

            try:
                self._db.execute("BEGIN IMMEDIATE")
                self._db.execute(
                    "INSERT INTO accounts (account_id, balance, created_at) VALUES (?, 0, ?) "
                    "ON CONFLICT(account_id) DO NOTHING",
                    (account_id, now),
                )
                self._db.execute(
                    "UPDATE accounts SET balance = balance + ? WHERE account_id = ?",
                    (amount, account_id),
                )
                row = self._db.execute(
                    "SELECT balance FROM accounts WHERE account_id = ?",
                    (account_id,),
                ).fetchone()
                new_balance = cast("int", row[0])
                self._db.execute(
                    "INSERT INTO balance_transactions "
                    "(tx_id, account_id, type, amount, balance_after, reference, timestamp) "
                    "VALUES (?, ?, 'credit', ?, ?, ?, ?)",
                    (tx_id, account_id, amount, new_balance, reference, now),
                )
                self._db.commit()
            except sqlite3.IntegrityError as exc:
                self._db.rollback()
                existing = self._db.execute(
                    "SELECT tx_id, amount, balance_after FROM balance_transactions "
                    "WHERE account_id = ? AND type = 'credit' AND reference = ?",
                    (account_id, reference),
                ).fetchone()
                if existing is None:
                    raise
                if cast("int", existing[1]) != amount:
                    raise ServiceError(
                        "PAYLOAD_MISMATCH",
                        "Duplicate credit reference used with a different amount",
                        409,
                        {"reference": reference},
                    ) from exc
                return {"tx_id": existing[0], "balance_after": existing[2]}
            except Exception:
                with contextlib.suppress(sqlite3.Error):
                    self._db.rollback()
                raise

        return {"tx_id": tx_id, "balance_after": new_balance}

    def debit(self, account_id: str, amount: int, reference: str) -> dict[str, object]:
        """
        Take funds from an account.

        Raises:
            ServiceError: INVALID_AMOUNT, INSUFFICIENT_BALANCE (402).
        """
        self._require_positive(amount)

        with self._lock:
            now = now_iso()
            tx_id = self._new_tx_id()

            try:
                self._db.execute("BEGIN IMMEDIATE")
                cursor = self._db.execute(
                    "UPDATE accounts SET balance = balance - ? "
                    "WHERE account_id = ? AND balance >= ?",
                    (amount, account_id, amount),
                )
                if cursor.rowcount == 0:
                    raise ServiceError(
                        "INSUFFICIENT_BALANCE",
                        "Insufficient balance",
                        402,
                        {"account_id": account_id, "required": amount},
                    )
                row = self._db.execute(
                    "SELECT balance FROM accounts WHERE account_id = ?",
                    (account_id,),
                ).fetchone()
                new_balance = cast("int", row[0])
                self._db.execute(
                    "INSERT INTO balance_transactions "
                    "(tx_id, account_id, type, amount, balance_after, reference, timestamp) "
                    "VALUES (?, ?, 'debit', ?, ?, ?, ?)",
                    (tx_id, account_id, amount, new_balance, reference, now),
                )
                self._db.commit()
            except Exception:
                with contextlib.suppress(sqlite3.Error):
                    self._db.rollback()
                raise

        return {"tx_id": tx_id, "balance_after": new_balance}

    def get_transactions(self, account_id: str) -> list[dict[str, object]]:
        """Transaction history of an account, oldest first."""
        with self._lock:
            cursor = self._db.execute(
                "SELECT tx_id, type, amount, balance_after, reference, timestamp "
                "FROM balance_transactions WHERE account_id = ? ORDER BY timestamp, tx_id",
                (account_id,),
            )
            return [
                {
                    "tx_id": row[0],
                    "type": row[1],
                    "amount": row[2],
                    "balance_after": row[3],
                    "reference": row[4],
                    "timestamp": row[5],
                }
                for row in cursor.fetchall()
            ]

    def close(self) -> None:
        """Close the database connection."""
        with self._lock:
            self._db.close()
