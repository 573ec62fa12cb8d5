"""
WasteWise — SQLite storage.

One class per entity, all sharing a single database file. Every public
method either opens its own short write transaction or joins one passed in
via `conn=`, so the service layer can compose several writes (task update,
ledger entry, notification) into one atomic unit.

Task transitions are conditional updates (compare-and-swap on status)
executed under `BEGIN IMMEDIATE`; concurrent writers serialize on the
database lock instead of overwriting each other.
"""

from __future__ import annotations

import json
import logging
import sqlite3
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Iterator

from src.core.errors import (
    DuplicateUser,
    Forbidden,
    InvalidAmount,
    InvalidTransition,
    NotFound,
    StoreUnavailable,
)
from src.data.models import (
    CollectionRecord,
    Judgment,
    LedgerEntry,
    LedgerKind,
    Notification,
    RewardOffer,
    Task,
    TaskStatus,
    User,
)

logger = logging.getLogger(__name__)

_SCHEMA = """
CREATE TABLE IF NOT EXISTS users (
    id                INTEGER PRIMARY KEY AUTOINCREMENT,
    email             TEXT    NOT NULL UNIQUE,
    name              TEXT    NOT NULL,
    telegram_user_id  INTEGER UNIQUE,
    created_at        TEXT    NOT NULL
);

CREATE TABLE IF NOT EXISTS tasks (
    id                   INTEGER PRIMARY KEY AUTOINCREMENT,
    reporter_id          INTEGER NOT NULL REFERENCES users(id),
    location             TEXT    NOT NULL,
    waste_type           TEXT    NOT NULL,
    amount               TEXT    NOT NULL,
    photo_ref            TEXT,
    verification_result  TEXT,
    status               TEXT    NOT NULL DEFAULT 'pending',
    collector_id         INTEGER REFERENCES users(id),
    created_at           TEXT    NOT NULL,
    CHECK ((status = 'pending') = (collector_id IS NULL))
);

CREATE TABLE IF NOT EXISTS transactions (
    id           INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id      INTEGER NOT NULL REFERENCES users(id),
    type         TEXT    NOT NULL,
    amount       INTEGER NOT NULL CHECK (amount > 0),
    description  TEXT    NOT NULL,
    created_at   TEXT    NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_transactions_user_date
    ON transactions (user_id, created_at DESC, id DESC);

CREATE TABLE IF NOT EXISTS rewards (
    id               INTEGER PRIMARY KEY AUTOINCREMENT,
    name             TEXT    NOT NULL,
    cost             INTEGER NOT NULL CHECK (cost > 0),
    description      TEXT    NOT NULL DEFAULT '',
    collection_info  TEXT    NOT NULL DEFAULT '',
    is_available     INTEGER NOT NULL DEFAULT 1
);

CREATE TABLE IF NOT EXISTS notifications (
    id          INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id     INTEGER NOT NULL REFERENCES users(id),
    message     TEXT    NOT NULL,
    type        TEXT    NOT NULL,
    is_read     INTEGER NOT NULL DEFAULT 0,
    created_at  TEXT    NOT NULL
);

CREATE TABLE IF NOT EXISTS collected_waste (
    id            INTEGER PRIMARY KEY AUTOINCREMENT,
    task_id       INTEGER NOT NULL UNIQUE REFERENCES tasks(id),
    collector_id  INTEGER NOT NULL REFERENCES users(id),
    collected_at  TEXT    NOT NULL,
    status        TEXT    NOT NULL DEFAULT 'verified'
);
"""


def _now() -> str:
    return datetime.now().isoformat(timespec="microseconds")


def _rollback(conn: sqlite3.Connection) -> None:
    if conn.in_transaction:
        conn.execute("ROLLBACK")


class _SQLiteStore:
    """Connection handling shared by every entity store."""

    def __init__(self, db_path: str | None = None, timeout: float | None = None) -> None:
        if db_path is None or timeout is None:
            from src.config import settings
            db_path = db_path or settings.DATABASE_PATH
            timeout = timeout if timeout is not None else settings.DB_TIMEOUT_SECONDS

        self._db_path = db_path
        self._timeout = timeout
        Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        self._init_db()

    def _connect(self) -> sqlite3.Connection:
        # isolation_level=None: transactions are opened explicitly below
        conn = sqlite3.connect(self._db_path, timeout=self._timeout, isolation_level=None)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        return conn

    def _init_db(self) -> None:
        """Create all tables if they don't exist."""
        with self.transaction() as conn:
            for statement in _SCHEMA.split(";"):
                if statement.strip():
                    conn.execute(statement)
        logger.debug("Schema initialized at %s", self._db_path)

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """Open a write transaction. Commits on success, rolls back on any error.

        Lock timeouts, I/O failures and corrupt files surface as StoreUnavailable.
        Constraint violations and API misuse propagate unchanged.
        """
        conn: sqlite3.Connection | None = None
        try:
            conn = self._connect()
            conn.execute("BEGIN IMMEDIATE")
            yield conn
            conn.execute("COMMIT")
        except (sqlite3.IntegrityError, sqlite3.ProgrammingError):
            if conn is not None:
                _rollback(conn)
            raise
        except sqlite3.DatabaseError as exc:
            if conn is not None:
                _rollback(conn)
            logger.error("Store unavailable at %s: %s", self._db_path, exc)
            raise StoreUnavailable(str(exc)) from exc
        except BaseException:
            if conn is not None:
                _rollback(conn)
            raise
        finally:
            if conn is not None:
                conn.close()

    @contextmanager
    def _session(self, conn: sqlite3.Connection | None) -> Iterator[sqlite3.Connection]:
        """Join the caller's transaction, or open a fresh one."""
        if conn is not None:
            yield conn
            return
        with self.transaction() as own:
            yield own

    @contextmanager
    def _read(self) -> Iterator[sqlite3.Connection]:
        conn: sqlite3.Connection | None = None
        try:
            conn = self._connect()
            yield conn
        except (sqlite3.IntegrityError, sqlite3.ProgrammingError):
            raise
        except sqlite3.DatabaseError as exc:
            logger.error("Store unavailable at %s: %s", self._db_path, exc)
            raise StoreUnavailable(str(exc)) from exc
        finally:
            if conn is not None:
                conn.close()


class UserDB(_SQLiteStore):
    """Registered reporters and collectors, keyed by unique email."""

    @staticmethod
    def _row_to_user(row: sqlite3.Row) -> User:
        return User(
            id=row["id"],
            email=row["email"],
            name=row["name"],
            created_at=row["created_at"],
            telegram_user_id=row["telegram_user_id"],
        )

    def add_user(
        self,
        email: str,
        name: str,
        telegram_user_id: int | None = None,
        conn: sqlite3.Connection | None = None,
    ) -> User:
        """Register a new user. Emails are compared case-insensitively."""
        email = email.strip().lower()
        now = _now()
        try:
            with self._session(conn) as c:
                cursor = c.execute(
                    "INSERT INTO users (email, name, telegram_user_id, created_at) VALUES (?, ?, ?, ?)",
                    (email, name.strip(), telegram_user_id, now),
                )
                user_id = cursor.lastrowid
        except sqlite3.IntegrityError as exc:
            raise DuplicateUser(f"User {email!r} is already registered") from exc

        logger.info("User registered: #%d <%s>", user_id, email)
        return User(
            id=user_id,
            email=email,
            name=name.strip(),
            created_at=now,
            telegram_user_id=telegram_user_id,
        )

    def _get_one(self, where: str, value: object, conn: sqlite3.Connection | None) -> User | None:
        query = f"SELECT * FROM users WHERE {where} = ?"
        if conn is not None:
            row = conn.execute(query, (value,)).fetchone()
        else:
            with self._read() as c:
                row = c.execute(query, (value,)).fetchone()
        return self._row_to_user(row) if row is not None else None

    def get_user(self, user_id: int, conn: sqlite3.Connection | None = None) -> User | None:
        return self._get_one("id", user_id, conn)

    def get_by_email(self, email: str) -> User | None:
        return self._get_one("email", email.strip().lower(), None)

    def get_by_telegram_id(self, telegram_user_id: int) -> User | None:
        return self._get_one("telegram_user_id", telegram_user_id, None)

    def rename(self, user_id: int, name: str) -> User:
        """Change a user's display name — the only mutable user field."""
        with self.transaction() as conn:
            cursor = conn.execute(
                "UPDATE users SET name = ? WHERE id = ?", (name.strip(), user_id),
            )
            if cursor.rowcount == 0:
                raise NotFound(f"User {user_id} not found")
            user = self.get_user(user_id, conn=conn)
        logger.info("User #%d renamed to '%s'", user_id, user.name)
        return user

    def list_users(self) -> list[User]:
        with self._read() as conn:
            rows = conn.execute("SELECT * FROM users ORDER BY id").fetchall()
        return [self._row_to_user(r) for r in rows]


class TaskDB(_SQLiteStore):
    """Collection tasks and their forward-only status machine."""

    @staticmethod
    def _row_to_task(row: sqlite3.Row) -> Task:
        raw = row["verification_result"]
        return Task(
            id=row["id"],
            reporter_id=row["reporter_id"],
            location=row["location"],
            waste_type=row["waste_type"],
            amount=row["amount"],
            status=TaskStatus(row["status"]),
            created_at=row["created_at"],
            photo_ref=row["photo_ref"],
            verification=Judgment.from_dict(json.loads(raw)) if raw else None,
            collector_id=row["collector_id"],
        )

    def add_task(
        self,
        reporter_id: int,
        location: str,
        waste_type: str,
        amount: str,
        photo_ref: str | None = None,
        conn: sqlite3.Connection | None = None,
    ) -> Task:
        """Insert a new pending task with no collector."""
        now = _now()
        with self._session(conn) as c:
            cursor = c.execute(
                """
                INSERT INTO tasks
                    (reporter_id, location, waste_type, amount, photo_ref, status, created_at)
                VALUES (?, ?, ?, ?, ?, 'pending', ?)
                """,
                (reporter_id, location, waste_type, amount, photo_ref, now),
            )
            task_id = cursor.lastrowid

        logger.info("Task added: #%d %s (%s) at '%s'", task_id, waste_type, amount, location)
        return Task(
            id=task_id,
            reporter_id=reporter_id,
            location=location,
            waste_type=waste_type,
            amount=amount,
            status=TaskStatus.PENDING,
            created_at=now,
            photo_ref=photo_ref,
        )

    def get_task(self, task_id: int, conn: sqlite3.Connection | None = None) -> Task | None:
        if conn is not None:
            row = conn.execute("SELECT * FROM tasks WHERE id = ?", (task_id,)).fetchone()
        else:
            with self._read() as c:
                row = c.execute("SELECT * FROM tasks WHERE id = ?", (task_id,)).fetchone()
        return self._row_to_task(row) if row is not None else None

    def list_tasks(self, limit: int = 10) -> list[Task]:
        """Oldest first, so the collection queue reads in reporting order."""
        with self._read() as conn:
            rows = conn.execute(
                "SELECT * FROM tasks ORDER BY created_at, id LIMIT ?", (limit,),
            ).fetchall()
        return [self._row_to_task(r) for r in rows]

    def list_recent(self, limit: int = 5) -> list[Task]:
        """Newest first."""
        with self._read() as conn:
            rows = conn.execute(
                "SELECT * FROM tasks ORDER BY created_at DESC, id DESC LIMIT ?", (limit,),
            ).fetchall()
        return [self._row_to_task(r) for r in rows]

    def claim(
        self, task_id: int, collector_id: int, conn: sqlite3.Connection | None = None,
    ) -> Task:
        """pending → in_progress, assigning the collector. Exactly one concurrent claim wins."""
        with self._session(conn) as c:
            cursor = c.execute(
                "UPDATE tasks SET status = ?, collector_id = ? WHERE id = ? AND status = ?",
                (TaskStatus.IN_PROGRESS.value, collector_id, task_id, TaskStatus.PENDING.value),
            )
            if cursor.rowcount == 0:
                current = self.get_task(task_id, conn=c)
                if current is None:
                    raise NotFound(f"Task {task_id} not found")
                raise InvalidTransition(
                    f"Task {task_id} is {current.status.value}, only pending tasks can be claimed"
                )
            task = self.get_task(task_id, conn=c)

        logger.info("Task #%d claimed by collector #%d", task_id, collector_id)
        return task

    def mark_completed(
        self, task_id: int, collector_id: int, conn: sqlite3.Connection | None = None,
    ) -> Task:
        """Optional manual step: in_progress → completed."""
        return self._advance(
            task_id, collector_id,
            allowed_from=(TaskStatus.IN_PROGRESS,),
            to=TaskStatus.COMPLETED,
            conn=conn,
        )

    def mark_verified(
        self,
        task_id: int,
        collector_id: int,
        judgment: Judgment | None = None,
        conn: sqlite3.Connection | None = None,
    ) -> Task:
        """in_progress (or completed) → verified, only for the assigned collector."""
        return self._advance(
            task_id, collector_id,
            allowed_from=(TaskStatus.IN_PROGRESS, TaskStatus.COMPLETED),
            to=TaskStatus.VERIFIED,
            judgment=judgment,
            conn=conn,
        )

    def _advance(
        self,
        task_id: int,
        collector_id: int,
        allowed_from: tuple[TaskStatus, ...],
        to: TaskStatus,
        judgment: Judgment | None = None,
        conn: sqlite3.Connection | None = None,
    ) -> Task:
        placeholders = ", ".join("?" for _ in allowed_from)
        verification = json.dumps(judgment.to_dict()) if judgment is not None else None
        with self._session(conn) as c:
            cursor = c.execute(
                f"""
                UPDATE tasks
                   SET status = ?,
                       verification_result = COALESCE(?, verification_result)
                 WHERE id = ? AND collector_id = ? AND status IN ({placeholders})
                """,
                (to.value, verification, task_id, collector_id, *(s.value for s in allowed_from)),
            )
            if cursor.rowcount == 0:
                self._raise_for_rejected_advance(c, task_id, collector_id, allowed_from, to)
            task = self.get_task(task_id, conn=c)

        logger.info("Task #%d → %s by collector #%d", task_id, to.value, collector_id)
        return task

    def _raise_for_rejected_advance(
        self,
        conn: sqlite3.Connection,
        task_id: int,
        collector_id: int,
        allowed_from: tuple[TaskStatus, ...],
        to: TaskStatus,
    ) -> None:
        current = self.get_task(task_id, conn=conn)
        if current is None:
            raise NotFound(f"Task {task_id} not found")
        if current.status.has_collector and current.collector_id != collector_id:
            logger.warning(
                "Collector #%d tried to move task #%d owned by #%s",
                collector_id, task_id, current.collector_id,
            )
            raise Forbidden(f"Task {task_id} is assigned to another collector")
        if current.status.rank >= to.rank:
            raise InvalidTransition(f"Task {task_id} is already {current.status.value}")
        raise InvalidTransition(
            f"Task {task_id} is {current.status.value}, cannot move to {to.value}"
        )


class LedgerDB(_SQLiteStore):
    """Append-only point transactions. There is no update or delete."""

    @staticmethod
    def _row_to_entry(row: sqlite3.Row) -> LedgerEntry:
        return LedgerEntry(
            id=row["id"],
            user_id=row["user_id"],
            kind=LedgerKind(row["type"]),
            amount=row["amount"],
            description=row["description"],
            created_at=row["created_at"],
        )

    def append(
        self,
        user_id: int,
        kind: LedgerKind | str,
        amount: int,
        description: str,
        conn: sqlite3.Connection | None = None,
    ) -> LedgerEntry:
        """Record a point event. `amount` must be a positive int; the kind gives the sign."""
        if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
            raise InvalidAmount(f"Ledger amount must be a positive integer, got {amount!r}")
        kind = LedgerKind(kind)

        now = _now()
        with self._session(conn) as c:
            cursor = c.execute(
                "INSERT INTO transactions (user_id, type, amount, description, created_at) "
                "VALUES (?, ?, ?, ?, ?)",
                (user_id, kind.value, amount, description, now),
            )
            entry_id = cursor.lastrowid

        logger.info("Ledger #%d: user #%d %s %d", entry_id, user_id, kind.value, amount)
        return LedgerEntry(
            id=entry_id,
            user_id=user_id,
            kind=kind,
            amount=amount,
            description=description,
            created_at=now,
        )

    def list_recent(
        self,
        user_id: int,
        limit: int | None = 10,
        conn: sqlite3.Connection | None = None,
    ) -> list[LedgerEntry]:
        """Most recent first. `limit=None` returns the whole history."""
        query = "SELECT * FROM transactions WHERE user_id = ? ORDER BY created_at DESC, id DESC"
        params: list = [user_id]
        if limit is not None:
            query += " LIMIT ?"
            params.append(limit)

        if conn is not None:
            rows = conn.execute(query, params).fetchall()
        else:
            with self._read() as c:
                rows = c.execute(query, params).fetchall()
        return [self._row_to_entry(r) for r in rows]


class RewardDB(_SQLiteStore):
    """The redeemable reward catalog. Catalog rows never belong to a user."""

    @staticmethod
    def _row_to_offer(row: sqlite3.Row) -> RewardOffer:
        return RewardOffer(
            id=row["id"],
            name=row["name"],
            cost=row["cost"],
            description=row["description"],
            collection_info=row["collection_info"],
            is_available=bool(row["is_available"]),
        )

    def add_offer(
        self,
        name: str,
        cost: int,
        description: str = "",
        collection_info: str = "",
        is_available: bool = True,
    ) -> RewardOffer:
        if isinstance(cost, bool) or not isinstance(cost, int) or cost <= 0:
            raise InvalidAmount(f"Reward cost must be a positive integer, got {cost!r}")
        with self.transaction() as conn:
            cursor = conn.execute(
                "INSERT INTO rewards (name, cost, description, collection_info, is_available) "
                "VALUES (?, ?, ?, ?, ?)",
                (name, cost, description, collection_info, int(is_available)),
            )
            offer_id = cursor.lastrowid
        logger.info("Reward offer added: #%d '%s' for %d points", offer_id, name, cost)
        return RewardOffer(
            id=offer_id,
            name=name,
            cost=cost,
            description=description,
            collection_info=collection_info,
            is_available=is_available,
        )

    def get_offer(
        self, offer_id: int, conn: sqlite3.Connection | None = None,
    ) -> RewardOffer | None:
        if conn is not None:
            row = conn.execute("SELECT * FROM rewards WHERE id = ?", (offer_id,)).fetchone()
        else:
            with self._read() as c:
                row = c.execute("SELECT * FROM rewards WHERE id = ?", (offer_id,)).fetchone()
        return self._row_to_offer(row) if row is not None else None

    def list_available(self) -> list[RewardOffer]:
        with self._read() as conn:
            rows = conn.execute(
                "SELECT * FROM rewards WHERE is_available = 1 ORDER BY cost, id"
            ).fetchall()
        return [self._row_to_offer(r) for r in rows]

    def set_available(self, offer_id: int, is_available: bool) -> None:
        with self.transaction() as conn:
            cursor = conn.execute(
                "UPDATE rewards SET is_available = ? WHERE id = ?",
                (int(is_available), offer_id),
            )
            if cursor.rowcount == 0:
                raise NotFound(f"Reward {offer_id} not found")
        logger.info("Reward #%d availability → %s", offer_id, is_available)


class NotificationDB(_SQLiteStore):
    """User-facing event messages. Only the read flag ever changes."""

    @staticmethod
    def _row_to_notification(row: sqlite3.Row) -> Notification:
        return Notification(
            id=row["id"],
            user_id=row["user_id"],
            message=row["message"],
            type=row["type"],
            is_read=bool(row["is_read"]),
            created_at=row["created_at"],
        )

    def create(
        self,
        user_id: int,
        message: str,
        type: str,
        conn: sqlite3.Connection | None = None,
    ) -> Notification:
        now = _now()
        with self._session(conn) as c:
            cursor = c.execute(
                "INSERT INTO notifications (user_id, message, type, is_read, created_at) "
                "VALUES (?, ?, ?, 0, ?)",
                (user_id, message, type, now),
            )
            notification_id = cursor.lastrowid
        logger.debug("Notification #%d for user #%d: %s", notification_id, user_id, message)
        return Notification(
            id=notification_id,
            user_id=user_id,
            message=message,
            type=type,
            is_read=False,
            created_at=now,
        )

    def get(self, notification_id: int) -> Notification | None:
        with self._read() as conn:
            row = conn.execute(
                "SELECT * FROM notifications WHERE id = ?", (notification_id,),
            ).fetchone()
        return self._row_to_notification(row) if row is not None else None

    def mark_read(self, notification_id: int) -> None:
        """Idempotent: marking an already-read notification is a no-op."""
        with self.transaction() as conn:
            row = conn.execute(
                "SELECT is_read FROM notifications WHERE id = ?", (notification_id,),
            ).fetchone()
            if row is None:
                raise NotFound(f"Notification {notification_id} not found")
            if row["is_read"]:
                return
            conn.execute(
                "UPDATE notifications SET is_read = 1 WHERE id = ?", (notification_id,),
            )
        logger.debug("Notification #%d marked read", notification_id)

    def list_unread(self, user_id: int) -> list[Notification]:
        with self._read() as conn:
            rows = conn.execute(
                "SELECT * FROM notifications WHERE user_id = ? AND is_read = 0 "
                "ORDER BY created_at, id",
                (user_id,),
            ).fetchall()
        return [self._row_to_notification(r) for r in rows]


class CollectionDB(_SQLiteStore):
    """One row per verified collection."""

    @staticmethod
    def _row_to_record(row: sqlite3.Row) -> CollectionRecord:
        return CollectionRecord(
            id=row["id"],
            task_id=row["task_id"],
            collector_id=row["collector_id"],
            collected_at=row["collected_at"],
            status=row["status"],
        )

    def record(
        self, task_id: int, collector_id: int, conn: sqlite3.Connection | None = None,
    ) -> CollectionRecord:
        now = _now()
        with self._session(conn) as c:
            cursor = c.execute(
                "INSERT INTO collected_waste (task_id, collector_id, collected_at, status) "
                "VALUES (?, ?, ?, 'verified')",
                (task_id, collector_id, now),
            )
            record_id = cursor.lastrowid
        return CollectionRecord(
            id=record_id, task_id=task_id, collector_id=collector_id, collected_at=now,
        )

    def list_for_collector(self, collector_id: int) -> list[CollectionRecord]:
        with self._read() as conn:
            rows = conn.execute(
                "SELECT * FROM collected_waste WHERE collector_id = ? ORDER BY collected_at, id",
                (collector_id,),
            ).fetchall()
        return [self._row_to_record(r) for r in rows]
