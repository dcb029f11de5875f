"""SQLite-backed settlement storage."""

from __future__ import annotations

import contextlib
import json
import sqlite3
from collections.abc import Iterable
from pathlib import Path
from threading import RLock
from typing import Any


class DuplicateRecordError(Exception):
    """Raised when an insert collides with a unique key."""


class DuplicateTaskError(DuplicateRecordError):
    """Raised when a task with the same task_id already exists."""


class DuplicateEscrowError(DuplicateRecordError):
    """Raised when an escrow already exists for the task/executor pair or contract."""


class DuplicateViolationError(DuplicateRecordError):
    """Raised when a violation of the same type was already recorded for an assignment."""


class DuplicateDisputeError(DuplicateRecordError):
    """Raised when a dispute already exists for the contract."""


class SettlementStore:
    """
    SQLite-backed storage for tasks, contracts, assignments, escrows,
    violations, restrictions and disputes.

    Every state change of a mutable entity goes through
    compare_and_transition(), a single ``UPDATE ... WHERE key = ? AND
    status IN (...)`` that reports whether this caller won the transition.
    """

    _KEY_COLUMNS: dict[str, str] = {
        "tasks": "task_id",
        "contracts": "contract_id",
        "assignments": "assignment_id",
        "escrows": "escrow_id",
        "disputes": "dispute_id",
    }
    _JSON_COLUMNS: dict[str, tuple[str, ...]] = {"disputes": ("reason", "decision")}
    _BOOL_COLUMNS: dict[str, tuple[str, ...]] = {"assignments": ("pause_used",)}
    _DEADLINE_COLUMNS = frozenset(
        {"start_deadline_at", "execution_deadline_at", "pause_auto_accept_at", "paused_until"}
    )

    def __init__(self, db_path: str) -> None:
        self._lock = RLock()
        self._closed = False
        Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        self._db = sqlite3.connect(db_path, check_same_thread=False)
        self._db.row_factory = sqlite3.Row
        self._db.execute("PRAGMA journal_mode=WAL")
        self._db.execute("PRAGMA foreign_keys=ON")
        self._db.execute("PRAGMA busy_timeout=5000")
        self._init_schema()
        self._columns: dict[str, frozenset[str]] = {
            table: self._table_columns(table)
            for table in (
                *self._KEY_COLUMNS,
                "executor_violations",
                "rating_adjustments",
                "dispute_messages",
            )
        }

    def _init_schema(self) -> None:
        with self._lock:
            self._db.executescript(
                """
                CREATE TABLE IF NOT EXISTS tasks (
                    task_id TEXT PRIMARY KEY,
                    customer_id TEXT NOT NULL,
                    budget_amount INTEGER NOT NULL,
                    max_executors INTEGER NOT NULL,
                    status TEXT NOT NULL DEFAULT 'open',
                    completed_at TEXT,
                    version INTEGER NOT NULL DEFAULT 1,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS task_executors (
                    task_id TEXT NOT NULL,
                    executor_id TEXT NOT NULL,
                    added_at TEXT NOT NULL,
                    PRIMARY KEY (task_id, executor_id)
                );

                CREATE TABLE IF NOT EXISTS contracts (
                    contract_id TEXT PRIMARY KEY,
                    task_id TEXT NOT NULL,
                    customer_id TEXT NOT NULL,
                    executor_id TEXT NOT NULL,
                    escrow_amount INTEGER NOT NULL,
                    status TEXT NOT NULL,
                    revision_included INTEGER NOT NULL DEFAULT 2,
                    revision_used INTEGER NOT NULL DEFAULT 0,
                    last_revision_message TEXT,
                    last_revision_requested_at TEXT,
                    version INTEGER NOT NULL DEFAULT 1,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    UNIQUE(task_id, executor_id)
                );

                CREATE TABLE IF NOT EXISTS assignments (
                    assignment_id TEXT PRIMARY KEY,
                    task_id TEXT NOT NULL,
                    executor_id TEXT NOT NULL,
                    contract_id TEXT,
                    status TEXT NOT NULL,
                    assigned_at TEXT NOT NULL,
                    start_deadline_at TEXT NOT NULL,
                    started_at TEXT,
                    execution_base_deadline_at TEXT,
                    execution_extension_ms INTEGER NOT NULL DEFAULT 0,
                    execution_deadline_at TEXT,
                    submitted_at TEXT,
                    overdue_at TEXT,
                    accepted_at TEXT,
                    cancelled_at TEXT,
                    removed_at TEXT,
                    pause_used INTEGER NOT NULL DEFAULT 0,
                    pause_reason_id TEXT,
                    pause_comment TEXT,
                    pause_requested_at TEXT,
                    pause_requested_duration_ms INTEGER,
                    pause_auto_accept_at TEXT,
                    pause_decision TEXT,
                    pause_decided_at TEXT,
                    paused_at TEXT,
                    paused_until TEXT,
                    version INTEGER NOT NULL DEFAULT 1,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    UNIQUE(task_id, executor_id)
                );

                CREATE INDEX IF NOT EXISTS ix_assignments_start_deadline
                    ON assignments(status, start_deadline_at);
                CREATE INDEX IF NOT EXISTS ix_assignments_execution_deadline
                    ON assignments(status, execution_deadline_at);
                CREATE INDEX IF NOT EXISTS ix_assignments_pause_auto_accept
                    ON assignments(status, pause_auto_accept_at);
                CREATE INDEX IF NOT EXISTS ix_assignments_paused_until
                    ON assignments(status, paused_until);
                CREATE INDEX IF NOT EXISTS ix_assignments_executor
                    ON assignments(executor_id, updated_at);

                CREATE TABLE IF NOT EXISTS escrows (
                    escrow_id TEXT PRIMARY KEY,
                    task_id TEXT NOT NULL,
                    executor_id TEXT NOT NULL,
                    contract_id TEXT,
                    customer_id TEXT NOT NULL,
                    amount INTEGER NOT NULL CHECK (amount > 0),
                    status TEXT NOT NULL,
                    executor_payout INTEGER,
                    customer_payout INTEGER,
                    settled_at TEXT,
                    version INTEGER NOT NULL DEFAULT 1,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    UNIQUE(task_id, executor_id)
                );

                CREATE UNIQUE INDEX IF NOT EXISTS ux_escrows_contract
                    ON escrows(contract_id) WHERE contract_id IS NOT NULL;

                CREATE TABLE IF NOT EXISTS executor_violations (
                    violation_id TEXT PRIMARY KEY,
                    executor_id TEXT NOT NULL,
                    type TEXT NOT NULL,
                    task_id TEXT NOT NULL,
                    assignment_id TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    UNIQUE(assignment_id, type)
                );

                CREATE INDEX IF NOT EXISTS ix_violations_executor
                    ON executor_violations(executor_id, type, created_at);

                CREATE TABLE IF NOT EXISTS executor_restrictions (
                    executor_id TEXT PRIMARY KEY,
                    account_status TEXT NOT NULL DEFAULT 'active',
                    respond_blocked_until TEXT,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS rating_adjustments (
                    adjustment_id TEXT PRIMARY KEY,
                    violation_id TEXT NOT NULL UNIQUE,
                    executor_id TEXT NOT NULL,
                    reason TEXT NOT NULL,
                    delta_percent INTEGER NOT NULL,
                    created_at TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS disputes (
                    dispute_id TEXT PRIMARY KEY,
                    contract_id TEXT NOT NULL UNIQUE,
                    task_id TEXT NOT NULL,
                    opened_by_user_id TEXT NOT NULL,
                    customer_id TEXT NOT NULL,
                    executor_id TEXT NOT NULL,
                    reason TEXT NOT NULL,
                    status TEXT NOT NULL,
                    assigned_arbiter_id TEXT,
                    sla_due_at TEXT NOT NULL,
                    decision TEXT,
                    locked_decision_at TEXT,
                    version INTEGER NOT NULL DEFAULT 1,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                );

                CREATE INDEX IF NOT EXISTS ix_disputes_status
                    ON disputes(status, updated_at);

                CREATE TABLE IF NOT EXISTS dispute_messages (
                    message_id TEXT PRIMARY KEY,
                    dispute_id TEXT NOT NULL,
                    author_user_id TEXT NOT NULL,
                    kind TEXT NOT NULL,
                    text TEXT NOT NULL,
                    created_at TEXT NOT NULL
                );

                CREATE INDEX IF NOT EXISTS ix_dispute_messages_dispute
                    ON dispute_messages(dispute_id, created_at);
                """
            )
            self._db.commit()

    def _table_columns(self, table: str) -> frozenset[str]:
        with self._lock:
            rows = self._db.execute(f"PRAGMA table_info({table})").fetchall()
        return frozenset(str(row["name"]) for row in rows)

    # ------------------------------------------------------------------
    # Encoding
    # ------------------------------------------------------------------

    @staticmethod
    def _encode(value: Any) -> Any:
        if isinstance(value, bool):
            return int(value)
        if isinstance(value, (dict, list)):
            return json.dumps(value, sort_keys=True)
        return value

    def _decode(self, table: str, row: sqlite3.Row) -> dict[str, Any]:
        record: dict[str, Any] = dict(row)
        for column in self._JSON_COLUMNS.get(table, ()):
            raw = record.get(column)
            record[column] = json.loads(raw) if raw is not None else None
        for column in self._BOOL_COLUMNS.get(table, ()):
            record[column] = bool(record[column])
        if table == "escrows":
            executor_payout = record.pop("executor_payout")
            customer_payout = record.pop("customer_payout")
            record["payouts"] = (
                None
                if executor_payout is None
                else {"executor_amount": executor_payout, "customer_amount": customer_payout}
            )
        return record

    # ------------------------------------------------------------------
    # Generic write helpers
    # ------------------------------------------------------------------

    def _insert(
        self,
        table: str,
        row: dict[str, Any],
        duplicate_error: type[DuplicateRecordError],
        *,
        on_conflict_ignore: bool = False,
    ) -> bool:
        unknown = set(row) - self._columns[table]
        if unknown:
            msg = f"Attempted to insert unknown {table} column(s): {sorted(unknown)}"
            raise ValueError(msg)

        columns = ", ".join(row)
        placeholders = ", ".join("?" for _ in row)
        verb = "INSERT OR IGNORE" if on_conflict_ignore else "INSERT"
        query = f"{verb} INTO {table} ({columns}) VALUES ({placeholders})"  # nosec B608
        values = tuple(self._encode(value) for value in row.values())

        with self._lock:
            try:
                self._db.execute("BEGIN IMMEDIATE")
                cursor = self._db.execute(query, values)
                self._db.commit()
            except sqlite3.IntegrityError as exc:
                with contextlib.suppress(sqlite3.Error):
                    self._db.execute("ROLLBACK")
                if "unique" in str(exc).lower():
                    raise duplicate_error(f"Duplicate {table} row") from exc
                raise
            except Exception:
                with contextlib.suppress(sqlite3.Error):
                    self._db.execute("ROLLBACK")
                raise
        return int(cursor.rowcount) > 0

    def _execute_write(self, query: str, params: Iterable[Any]) -> int:
        with self._lock:
            try:
                cursor = self._db.execute(query, tuple(params))
                self._db.commit()
            except Exception:
                with contextlib.suppress(sqlite3.Error):
                    self._db.rollback()
                raise
        return int(cursor.rowcount)

    def _fetch_one(self, table: str, query: str, params: Iterable[Any]) -> dict[str, Any] | None:
        with self._lock:
            row = self._db.execute(query, tuple(params)).fetchone()
        if row is None:
            return None
        return self._decode(table, row)

    def _fetch_all(self, table: str, query: str, params: Iterable[Any]) -> list[dict[str, Any]]:
        with self._lock:
            rows = self._db.execute(query, tuple(params)).fetchall()
        return [self._decode(table, row) for row in rows]

    def compare_and_transition(
        self,
        table: str,
        key: str,
        expected_status: str | Iterable[str] | None,
        updates: dict[str, Any],
        *,
        expected_version: int | None = None,
    ) -> bool:
        """
        Apply ``updates`` only if the row still has one of the expected statuses.

        The row's ``version`` is incremented as part of the same statement.
        When ``expected_version`` is given, the row's version must match too.

        Returns:
            True if this call changed the row, False if a guard failed
        """
        key_column = self._KEY_COLUMNS.get(table)
        if key_column is None:
            msg = f"Table does not support transitions: {table}"
            raise ValueError(msg)
        if any(column not in self._columns[table] for column in updates):
            msg = f"Attempted to update unknown {table} column"
            raise ValueError(msg)
        if "version" in updates or key_column in updates:
            msg = "version and key columns are managed by the store"
            raise ValueError(msg)

        assignments = [f"{column} = ?" for column in updates]
        assignments.append("version = version + 1")
        params: list[Any] = [self._encode(value) for value in updates.values()]

        query = f"UPDATE {table} SET {', '.join(assignments)} WHERE {key_column} = ?"  # nosec B608
        params.append(key)

        if expected_status is not None:
            statuses = (
                (expected_status,) if isinstance(expected_status, str) else tuple(expected_status)
            )
            query += f" AND status IN ({', '.join('?' for _ in statuses)})"
            params.extend(statuses)
        if expected_version is not None:
            query += " AND version = ?"
            params.append(expected_version)

        return self._execute_write(query, params) == 1

    # ------------------------------------------------------------------
    # Tasks
    # ------------------------------------------------------------------

    def insert_task(self, task: dict[str, Any]) -> None:
        """Insert a new task row."""
        self._insert("tasks", task, DuplicateTaskError)

    def get_task(self, task_id: str) -> dict[str, Any] | None:
        """Fetch a task by ID together with its assigned executor set."""
        task = self._fetch_one("tasks", "SELECT * FROM tasks WHERE task_id = ?", (task_id,))
        if task is None:
            return None
        task["assigned_executor_ids"] = self.list_task_executor_ids(task_id)
        return task

    def list_task_executor_ids(self, task_id: str) -> list[str]:
        """Return the executors currently assigned to a task, oldest first."""
        with self._lock:
            rows = self._db.execute(
                "SELECT executor_id FROM task_executors WHERE task_id = ? "
                "ORDER BY added_at, executor_id",
                (task_id,),
            ).fetchall()
        return [str(row[0]) for row in rows]

    def add_task_executor(self, task_id: str, executor_id: str, added_at: str) -> bool:
        """Add an executor to the task's assigned set. Returns False if already present."""
        return self._execute_write(
            "INSERT OR IGNORE INTO task_executors (task_id, executor_id, added_at) "
            "VALUES (?, ?, ?)",
            (task_id, executor_id, added_at),
        ) == 1

    def remove_task_executor(self, task_id: str, executor_id: str) -> bool:
        """Remove an executor from the task's assigned set."""
        return self._execute_write(
            "DELETE FROM task_executors WHERE task_id = ? AND executor_id = ?",
            (task_id, executor_id),
        ) == 1

    # ------------------------------------------------------------------
    # Contracts
    # ------------------------------------------------------------------

    def insert_contract_if_absent(self, contract: dict[str, Any]) -> dict[str, Any]:
        """Insert a contract unless one exists for the pair; return the stored row."""
        self._insert("contracts", contract, DuplicateRecordError, on_conflict_ignore=True)
        stored = self.get_contract_by_pair(contract["task_id"], contract["executor_id"])
        if stored is None:
            msg = "Contract vanished after insert"
            raise RuntimeError(msg)
        return stored

    def get_contract(self, contract_id: str) -> dict[str, Any] | None:
        """Fetch a contract by ID."""
        return self._fetch_one(
            "contracts", "SELECT * FROM contracts WHERE contract_id = ?", (contract_id,)
        )

    def get_contract_by_pair(self, task_id: str, executor_id: str) -> dict[str, Any] | None:
        """Fetch the contract of a task/executor pair."""
        return self._fetch_one(
            "contracts",
            "SELECT * FROM contracts WHERE task_id = ? AND executor_id = ?",
            (task_id, executor_id),
        )

    def list_contracts(
        self,
        *,
        executor_id: str | None = None,
        customer_id: str | None = None,
        limit: int | None = None,
    ) -> list[dict[str, Any]]:
        """List contracts of an executor or of a customer's tasks, newest first."""
        query = "SELECT * FROM contracts"
        clauses: list[str] = []
        params: list[object] = []

        if executor_id is not None:
            clauses.append("executor_id = ?")
            params.append(executor_id)
        if customer_id is not None:
            clauses.append("task_id IN (SELECT task_id FROM tasks WHERE customer_id = ?)")
            params.append(customer_id)

        if len(clauses) > 0:
            query += " WHERE " + " AND ".join(clauses)

        query += " ORDER BY created_at DESC, contract_id"

        if limit is not None:
            query += " LIMIT ?"
            params.append(limit)

        return self._fetch_all("contracts", query, params)

    # ------------------------------------------------------------------
    # Assignments
    # ------------------------------------------------------------------

    def insert_assignment_if_absent(self, assignment: dict[str, Any]) -> dict[str, Any]:
        """
        Insert an assignment unless one exists for the pair; return the stored row.

        An existing row only gains a contract id when it has none yet.
        """
        inserted = self._insert(
            "assignments", assignment, DuplicateRecordError, on_conflict_ignore=True
        )
        if not inserted and assignment.get("contract_id") is not None:
            self._execute_write(
                "UPDATE assignments SET contract_id = ? "
                "WHERE task_id = ? AND executor_id = ? AND contract_id IS NULL",
                (assignment["contract_id"], assignment["task_id"], assignment["executor_id"]),
            )
        stored = self.get_assignment_by_pair(assignment["task_id"], assignment["executor_id"])
        if stored is None:
            msg = "Assignment vanished after insert"
            raise RuntimeError(msg)
        return stored

    def get_assignment(self, assignment_id: str) -> dict[str, Any] | None:
        """Fetch an assignment by ID."""
        return self._fetch_one(
            "assignments", "SELECT * FROM assignments WHERE assignment_id = ?", (assignment_id,)
        )

    def get_assignment_by_pair(self, task_id: str, executor_id: str) -> dict[str, Any] | None:
        """Fetch the assignment of a task/executor pair."""
        return self._fetch_one(
            "assignments",
            "SELECT * FROM assignments WHERE task_id = ? AND executor_id = ?",
            (task_id, executor_id),
        )

    def list_assignments(
        self,
        *,
        task_id: str | None = None,
        executor_id: str | None = None,
        customer_id: str | None = None,
        status: str | None = None,
        limit: int | None = None,
    ) -> list[dict[str, Any]]:
        """List assignments with optional filters, most recently assigned first."""
        query = "SELECT * FROM assignments"
        clauses: list[str] = []
        params: list[object] = []

        if task_id is not None:
            clauses.append("task_id = ?")
            params.append(task_id)
        if executor_id is not None:
            clauses.append("executor_id = ?")
            params.append(executor_id)
        if customer_id is not None:
            clauses.append("task_id IN (SELECT task_id FROM tasks WHERE customer_id = ?)")
            params.append(customer_id)
        if status is not None:
            clauses.append("status = ?")
            params.append(status)

        if len(clauses) > 0:
            query += " WHERE " + " AND ".join(clauses)

        query += " ORDER BY assigned_at DESC, assignment_id"

        if limit is not None:
            query += " LIMIT ?"
            params.append(limit)

        return self._fetch_all("assignments", query, params)

    def list_due_assignments(
        self,
        status: str,
        deadline_column: str,
        now: str,
        limit: int,
    ) -> list[dict[str, Any]]:
        """List assignments in ``status`` whose deadline column is at or before ``now``."""
        if deadline_column not in self._DEADLINE_COLUMNS:
            msg = f"Unknown deadline column: {deadline_column}"
            raise ValueError(msg)
        query = (
            f"SELECT * FROM assignments WHERE status = ? "  # nosec B608
            f"AND {deadline_column} IS NOT NULL AND {deadline_column} <= ? "
            f"ORDER BY {deadline_column} ASC, assignment_id LIMIT ?"
        )
        return self._fetch_all("assignments", query, (status, now, limit))

    # ------------------------------------------------------------------
    # Escrows
    # ------------------------------------------------------------------

    def insert_escrow(self, escrow: dict[str, Any]) -> None:
        """Insert a frozen escrow. Raises DuplicateEscrowError on a unique clash."""
        self._insert("escrows", escrow, DuplicateEscrowError)

    def get_escrow(self, task_id: str, executor_id: str) -> dict[str, Any] | None:
        """Fetch the escrow of a task/executor pair."""
        return self._fetch_one(
            "escrows",
            "SELECT * FROM escrows WHERE task_id = ? AND executor_id = ?",
            (task_id, executor_id),
        )

    def get_escrow_by_id(self, escrow_id: str) -> dict[str, Any] | None:
        """Fetch an escrow by ID."""
        return self._fetch_one("escrows", "SELECT * FROM escrows WHERE escrow_id = ?", (escrow_id,))

    def attach_escrow_contract(self, escrow_id: str, contract_id: str, updated_at: str) -> bool:
        """Set the contract id of an escrow that has none yet."""
        return self._execute_write(
            "UPDATE escrows SET contract_id = ?, updated_at = ?, version = version + 1 "
            "WHERE escrow_id = ? AND contract_id IS NULL",
            (contract_id, updated_at, escrow_id),
        ) == 1

    def mark_escrow_settled(self, escrow_id: str, settled_at: str) -> bool:
        """Record that every credit of a resolved escrow has posted."""
        return self._execute_write(
            "UPDATE escrows SET settled_at = ?, updated_at = ?, version = version + 1 "
            "WHERE escrow_id = ? AND status != 'frozen' AND settled_at IS NULL",
            (settled_at, settled_at, escrow_id),
        ) == 1

    def list_unsettled_escrows(self, limit: int) -> list[dict[str, Any]]:
        """List resolved escrows whose credits have not all posted, oldest first."""
        return self._fetch_all(
            "escrows",
            "SELECT * FROM escrows WHERE status != 'frozen' AND settled_at IS NULL "
            "ORDER BY updated_at ASC, escrow_id LIMIT ?",
            (limit,),
        )

    def sum_escrow_amounts(self, status: str) -> int:
        """Sum escrow amounts in a given status."""
        with self._lock:
            row = self._db.execute(
                "SELECT COALESCE(SUM(amount), 0) FROM escrows WHERE status = ?", (status,)
            ).fetchone()
        return int(row[0]) if row is not None else 0

    # ------------------------------------------------------------------
    # Violations, restrictions, rating adjustments
    # ------------------------------------------------------------------

    def insert_violation(self, violation: dict[str, Any]) -> None:
        """Insert a violation. Raises DuplicateViolationError for a repeated (assignment, type)."""
        self._insert("executor_violations", violation, DuplicateViolationError)

    def get_violation(self, assignment_id: str, violation_type: str) -> dict[str, Any] | None:
        """Fetch the violation recorded for an assignment and type."""
        return self._fetch_one(
            "executor_violations",
            "SELECT * FROM executor_violations WHERE assignment_id = ? AND type = ?",
            (assignment_id, violation_type),
        )

    def list_violations(self, executor_id: str, violation_type: str) -> list[dict[str, Any]]:
        """List an executor's violations of one type in chronological order."""
        return self._fetch_all(
            "executor_violations",
            "SELECT * FROM executor_violations WHERE executor_id = ? AND type = ? "
            "ORDER BY created_at ASC, violation_id",
            (executor_id, violation_type),
        )

    def get_restriction(self, executor_id: str) -> dict[str, Any] | None:
        """Fetch the restriction row of an executor."""
        return self._fetch_one(
            "executor_restrictions",
            "SELECT * FROM executor_restrictions WHERE executor_id = ?",
            (executor_id,),
        )

    def extend_respond_block(self, executor_id: str, until: str, now: str) -> str:
        """
        Raise the executor's respond block to ``until`` unless it is already later.

        Returns:
            The block that is in force after the call
        """
        self._execute_write(
            """
            INSERT INTO executor_restrictions
                (executor_id, account_status, respond_blocked_until, created_at, updated_at)
            VALUES (?, 'active', ?, ?, ?)
            ON CONFLICT(executor_id) DO UPDATE SET
                respond_blocked_until = CASE
                    WHEN executor_restrictions.respond_blocked_until IS NULL
                      OR executor_restrictions.respond_blocked_until
                         < excluded.respond_blocked_until
                    THEN excluded.respond_blocked_until
                    ELSE executor_restrictions.respond_blocked_until
                END,
                updated_at = excluded.updated_at
            """,
            (executor_id, until, now, now),
        )
        restriction = self.get_restriction(executor_id)
        if restriction is None or restriction["respond_blocked_until"] is None:
            msg = "Restriction vanished after upsert"
            raise RuntimeError(msg)
        return str(restriction["respond_blocked_until"])

    def mark_banned(self, executor_id: str, now: str) -> None:
        """Set the executor's account status to banned."""
        self._execute_write(
            """
            INSERT INTO executor_restrictions
                (executor_id, account_status, respond_blocked_until, created_at, updated_at)
            VALUES (?, 'banned', NULL, ?, ?)
            ON CONFLICT(executor_id) DO UPDATE SET
                account_status = 'banned',
                updated_at = excluded.updated_at
            """,
            (executor_id, now, now),
        )

    def insert_rating_adjustment(self, adjustment: dict[str, Any]) -> bool:
        """Insert a rating adjustment. Returns False if the violation already has one."""
        try:
            self._insert("rating_adjustments", adjustment, DuplicateRecordError)
        except DuplicateRecordError:
            return False
        return True

    def list_rating_adjustments(self, executor_id: str) -> list[dict[str, Any]]:
        """List rating adjustments of an executor, oldest first."""
        return self._fetch_all(
            "rating_adjustments",
            "SELECT * FROM rating_adjustments WHERE executor_id = ? ORDER BY created_at ASC",
            (executor_id,),
        )

    # ------------------------------------------------------------------
    # Disputes
    # ------------------------------------------------------------------

    def insert_dispute(self, dispute: dict[str, Any]) -> None:
        """Insert a dispute. Raises DuplicateDisputeError if the contract already has one."""
        self._insert("disputes", dispute, DuplicateDisputeError)

    def get_dispute(self, dispute_id: str) -> dict[str, Any] | None:
        """Fetch a dispute by ID."""
        return self._fetch_one(
            "disputes", "SELECT * FROM disputes WHERE dispute_id = ?", (dispute_id,)
        )

    def get_dispute_by_contract(self, contract_id: str) -> dict[str, Any] | None:
        """Fetch the dispute of a contract."""
        return self._fetch_one(
            "disputes", "SELECT * FROM disputes WHERE contract_id = ?", (contract_id,)
        )

    def list_disputes(
        self,
        *,
        party_id: str | None = None,
        status: str | None = None,
        limit: int | None = None,
    ) -> list[dict[str, Any]]:
        """List disputes, optionally restricted to one party, most recently updated first."""
        query = "SELECT * FROM disputes"
        clauses: list[str] = []
        params: list[object] = []

        if party_id is not None:
            clauses.append("(customer_id = ? OR executor_id = ?)")
            params.extend([party_id, party_id])
        if status is not None:
            clauses.append("status = ?")
            params.append(status)

        if len(clauses) > 0:
            query += " WHERE " + " AND ".join(clauses)

        query += " ORDER BY updated_at DESC, dispute_id"

        if limit is not None:
            query += " LIMIT ?"
            params.append(limit)

        return self._fetch_all("disputes", query, params)

    def insert_dispute_message(self, message: dict[str, Any]) -> None:
        """Append a message to a dispute thread."""
        self._insert("dispute_messages", message, DuplicateRecordError)

    def list_dispute_messages(self, dispute_id: str) -> list[dict[str, Any]]:
        """List a dispute's messages in chronological order."""
        return self._fetch_all(
            "dispute_messages",
            "SELECT * FROM dispute_messages WHERE dispute_id = ? "
            "ORDER BY created_at ASC, rowid ASC",
            (dispute_id,),
        )

    # ------------------------------------------------------------------
    # Statistics and lifecycle
    # ------------------------------------------------------------------

    def count_by_status(self, table: str) -> dict[str, int]:
        """Count rows of a stateful table grouped by status."""
        if table not in self._KEY_COLUMNS:
            msg = f"Unknown table: {table}"
            raise ValueError(msg)
        with self._lock:
            rows = self._db.execute(
                f"SELECT status, COUNT(*) FROM {table} GROUP BY status"  # nosec B608
            ).fetchall()
        return {str(row[0]): int(row[1]) for row in rows}

    def is_ready(self) -> bool:
        """Return True while the database answers queries."""
        if self._closed:
            return False
        try:
            with self._lock:
                self._db.execute("SELECT 1").fetchone()
        except sqlite3.Error:
            return False
        return True

    def close(self) -> None:
        """Close the database connection."""
        with self._lock:
            if self._closed:
                return
            self._closed = True
            self._db.close()
