#!/usr/bin/env python3
"""
Run database for the collective trading run orchestrator.

SQLite database with WAL mode for concurrent access from:
- Run scheduler (periodic ticks, worker threads via asyncio.to_thread)
- Operator CLI (force-start/force-end, status queries)
- Vote/join entrypoints (append-only votes, lobby joins)

Uniqueness is enforced at the storage layer:
- one participant row per (run, user)
- one round per (run, round) and at most one OPEN round per run
- one vote per (run, user, round)
- one trade per (run, round)
"""

import json
import os
import sqlite3
import threading
import time
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from env_utils import CHAOSRUN_DB_PATH
from logging_utils import get_logger
from run_errors import ConflictError, NotFoundError, StateError
from run_status import (
    ROUND_STATUS_EXECUTING,
    ROUND_STATUS_OPEN,
    RUN_STATUS_ACTIVE,
    RUN_STATUS_ENDED,
    RUN_STATUS_WAITING,
    can_transition_run_status,
)


# =============================================================================
# Data Classes
# =============================================================================

@dataclass
class RunRecord:
    """A run row."""
    id: str
    status: str
    market_symbol: str
    created_at: float
    lobby_duration: int
    voting_interval: int
    total_rounds: int
    min_deposit: float
    max_deposit: float
    max_participants: int
    total_pool: float = 0.0
    starting_pool: float = 0.0
    countdown: Optional[int] = None
    current_round: int = 0
    started_at: Optional[float] = None
    ended_at: Optional[float] = None
    end_requested_at: Optional[float] = None

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "RunRecord":
        return cls(
            id=row["id"],
            status=row["status"],
            market_symbol=row["market_symbol"],
            created_at=float(row["created_at"]),
            lobby_duration=int(row["lobby_duration"]),
            voting_interval=int(row["voting_interval"]),
            total_rounds=int(row["total_rounds"]),
            min_deposit=float(row["min_deposit"]),
            max_deposit=float(row["max_deposit"]),
            max_participants=int(row["max_participants"]),
            total_pool=float(row["total_pool"] or 0.0),
            starting_pool=float(row["starting_pool"] or 0.0),
            countdown=row["countdown"],
            current_round=int(row["current_round"] or 0),
            started_at=row["started_at"],
            ended_at=row["ended_at"],
            end_requested_at=row["end_requested_at"],
        )

    def to_dict(self) -> Dict[str, Any]:
        return dict(self.__dict__)


@dataclass
class ParticipantRecord:
    run_id: str
    user_id: str
    deposit_amount: float
    joined_at: float
    final_share: Optional[float] = None
    withdrawn: bool = False
    withdrawn_at: Optional[float] = None
    votes_correct: int = 0
    total_votes: int = 0

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "ParticipantRecord":
        return cls(
            run_id=row["run_id"],
            user_id=row["user_id"],
            deposit_amount=float(row["deposit_amount"]),
            joined_at=float(row["joined_at"]),
            final_share=row["final_share"],
            withdrawn=bool(row["withdrawn"]),
            withdrawn_at=row["withdrawn_at"],
            votes_correct=int(row["votes_correct"] or 0),
            total_votes=int(row["total_votes"] or 0),
        )

    def to_dict(self) -> Dict[str, Any]:
        return dict(self.__dict__)


@dataclass
class RoundRecord:
    run_id: str
    round: int
    status: str
    leverage: float
    position_size_percent: float
    current_price: float
    started_at: float
    time_remaining: int
    vote_distribution: Optional[Dict[str, int]] = None
    closed_at: Optional[float] = None
    executed_at: Optional[float] = None

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "RoundRecord":
        dist = None
        if row["vote_distribution"]:
            try:
                dist = json.loads(row["vote_distribution"])
            except json.JSONDecodeError:
                dist = None
        return cls(
            run_id=row["run_id"],
            round=int(row["round"]),
            status=row["status"],
            leverage=float(row["leverage"]),
            position_size_percent=float(row["position_size_percent"]),
            current_price=float(row["current_price"]),
            started_at=float(row["started_at"]),
            time_remaining=int(row["time_remaining"] or 0),
            vote_distribution=dist,
            closed_at=row["closed_at"],
            executed_at=row["executed_at"],
        )

    def to_dict(self) -> Dict[str, Any]:
        return dict(self.__dict__)


@dataclass
class TradeRecord:
    run_id: str
    round: int
    direction: str
    leverage: float
    position_size_percent: float
    notional: float
    entry_price: float
    executed_at: float
    exit_price: Optional[float] = None
    pnl: float = 0.0
    pnl_percentage: float = 0.0
    tx_id: Optional[str] = None
    open_error: Optional[str] = None
    exit_source: Optional[str] = None
    settled_at: Optional[float] = None

    @property
    def is_open(self) -> bool:
        return self.exit_price is None

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "TradeRecord":
        return cls(
            run_id=row["run_id"],
            round=int(row["round"]),
            direction=row["direction"],
            leverage=float(row["leverage"]),
            position_size_percent=float(row["position_size_percent"]),
            notional=float(row["notional"] or 0.0),
            entry_price=float(row["entry_price"]),
            executed_at=float(row["executed_at"]),
            exit_price=row["exit_price"],
            pnl=float(row["pnl"] or 0.0),
            pnl_percentage=float(row["pnl_percentage"] or 0.0),
            tx_id=row["tx_id"],
            open_error=row["open_error"],
            exit_source=row["exit_source"],
            settled_at=row["settled_at"],
        )

    def to_dict(self) -> Dict[str, Any]:
        out = dict(self.__dict__)
        out["is_open"] = self.is_open
        return out


# =============================================================================
# Database Class
# =============================================================================

class RunDB:
    """
    SQLite database for runs, rounds, votes, trades and settlement state.

    Features:
    - WAL mode for concurrent access
    - BEGIN IMMEDIATE for read-modify-write paths (joins, closes, settlement)
    - Storage-level uniqueness (duplicate votes/joins surface as ConflictError)
    - Guarded status updates (UPDATE ... WHERE status = ?) so transitions
      are idempotent and monotonic
    """

    def __init__(self, db_path: str = CHAOSRUN_DB_PATH):
        self.db_path = Path(db_path)
        self.log = get_logger("run_db")
        self._local = threading.local()
        self._conn_lock = threading.Lock()
        self._conn_by_tid: Dict[int, sqlite3.Connection] = {}
        self._conn_pid: int = int(os.getpid())
        self._init_db()

    def _open_connection(self) -> sqlite3.Connection:
        conn = sqlite3.connect(str(self.db_path), timeout=30.0)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA busy_timeout=30000")
        conn.execute("PRAGMA foreign_keys=ON")
        conn.execute("PRAGMA synchronous=NORMAL")
        return conn

    def _get_connection(self) -> sqlite3.Connection:
        """Get a per-thread database connection."""
        tid = int(threading.get_ident())
        current_pid = int(os.getpid())
        with self._conn_lock:
            # After fork, inherited sqlite handles are unsafe in the child.
            if current_pid != int(self._conn_pid):
                for conn in self._conn_by_tid.values():
                    try:
                        conn.close()
                    except sqlite3.Error:
                        pass
                self._conn_by_tid.clear()
                self._local.conn = None
                self._conn_pid = current_pid
            self._cleanup_stale_connections_locked()
            conn = self._conn_by_tid.get(tid)
            if conn is None:
                conn = self._open_connection()
                self._conn_by_tid[tid] = conn
                self._local.conn = conn
            return conn

    def _cleanup_stale_connections_locked(self) -> None:
        alive = {int(t.ident) for t in threading.enumerate() if t.ident is not None}
        stale_tids = [tid for tid in self._conn_by_tid.keys() if tid not in alive]
        for tid in stale_tids:
            conn = self._conn_by_tid.pop(tid, None)
            if conn is None:
                continue
            try:
                conn.close()
            except sqlite3.Error:
                pass

    def close(self) -> None:
        with self._conn_lock:
            for conn in self._conn_by_tid.values():
                try:
                    conn.close()
                except sqlite3.Error:
                    pass
            self._conn_by_tid.clear()
            self._local.conn = None

    def _init_db(self) -> None:
        """Initialize database with WAL mode and all tables."""
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

        with self._get_connection() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS runs (
                    id TEXT PRIMARY KEY,
                    status TEXT NOT NULL DEFAULT 'WAITING'
                        CHECK (status IN ('WAITING', 'ACTIVE', 'ENDED')),
                    market_symbol TEXT NOT NULL,
                    created_at REAL NOT NULL,
                    started_at REAL,
                    ended_at REAL,
                    end_requested_at REAL,
                    lobby_duration INTEGER NOT NULL,
                    voting_interval INTEGER NOT NULL,
                    total_rounds INTEGER NOT NULL,
                    min_deposit REAL NOT NULL,
                    max_deposit REAL NOT NULL,
                    max_participants INTEGER NOT NULL,
                    total_pool REAL NOT NULL DEFAULT 0.0 CHECK (total_pool >= 0),
                    starting_pool REAL NOT NULL DEFAULT 0.0,
                    countdown INTEGER,
                    current_round INTEGER NOT NULL DEFAULT 0,
                    updated_at REAL
                )
            """)
            conn.execute("CREATE INDEX IF NOT EXISTS idx_runs_status ON runs (status, created_at)")
            run_columns = {row[1] for row in conn.execute("PRAGMA table_info(runs)").fetchall()}
            if "end_requested_at" not in run_columns:
                conn.execute("ALTER TABLE runs ADD COLUMN end_requested_at REAL")

            conn.execute("""
                CREATE TABLE IF NOT EXISTS run_participants (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    run_id TEXT NOT NULL REFERENCES runs(id),
                    user_id TEXT NOT NULL,
                    deposit_amount REAL NOT NULL,
                    final_share REAL,
                    withdrawn INTEGER NOT NULL DEFAULT 0,
                    withdrawn_at REAL,
                    votes_correct INTEGER NOT NULL DEFAULT 0,
                    total_votes INTEGER NOT NULL DEFAULT 0,
                    joined_at REAL NOT NULL,
                    UNIQUE (run_id, user_id)
                )
            """)

            conn.execute("""
                CREATE TABLE IF NOT EXISTS voting_rounds (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    run_id TEXT NOT NULL REFERENCES runs(id),
                    round INTEGER NOT NULL,
                    status TEXT NOT NULL DEFAULT 'OPEN'
                        CHECK (status IN ('OPEN', 'EXECUTING')),
                    leverage REAL NOT NULL,
                    position_size_percent REAL NOT NULL,
                    current_price REAL NOT NULL,
                    vote_distribution TEXT,
                    started_at REAL NOT NULL,
                    time_remaining INTEGER NOT NULL DEFAULT 0,
                    closed_at REAL,
                    executed_at REAL,
                    UNIQUE (run_id, round)
                )
            """)
            # At most one OPEN round per run.
            conn.execute("""
                CREATE UNIQUE INDEX IF NOT EXISTS idx_voting_rounds_one_open
                ON voting_rounds (run_id) WHERE status = 'OPEN'
            """)

            conn.execute("""
                CREATE TABLE IF NOT EXISTS votes (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    run_id TEXT NOT NULL REFERENCES runs(id),
                    user_id TEXT NOT NULL,
                    round INTEGER NOT NULL,
                    choice TEXT NOT NULL CHECK (choice IN ('LONG', 'SHORT', 'SKIP')),
                    voted_at REAL NOT NULL,
                    UNIQUE (run_id, user_id, round)
                )
            """)

            conn.execute("""
                CREATE TABLE IF NOT EXISTS trades (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    run_id TEXT NOT NULL REFERENCES runs(id),
                    round INTEGER NOT NULL,
                    direction TEXT NOT NULL CHECK (direction IN ('LONG', 'SHORT', 'SKIP')),
                    leverage REAL NOT NULL,
                    position_size_percent REAL NOT NULL,
                    notional REAL NOT NULL DEFAULT 0.0,
                    entry_price REAL NOT NULL,
                    exit_price REAL,
                    pnl REAL NOT NULL DEFAULT 0.0,
                    pnl_percentage REAL NOT NULL DEFAULT 0.0,
                    tx_id TEXT,
                    open_error TEXT,
                    exit_source TEXT,
                    executed_at REAL NOT NULL,
                    settled_at REAL,
                    UNIQUE (run_id, round)
                )
            """)

            # Cross-process lease: one in-flight phase transition per run.
            conn.execute("""
                CREATE TABLE IF NOT EXISTS run_locks (
                    run_id TEXT PRIMARY KEY,
                    owner TEXT NOT NULL,
                    acquired_at REAL NOT NULL,
                    expires_at REAL NOT NULL
                )
            """)
            conn.execute("CREATE INDEX IF NOT EXISTS idx_run_locks_expires ON run_locks (expires_at)")

            conn.execute("""
                CREATE TABLE IF NOT EXISTS system_logs (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    run_id TEXT,
                    type TEXT NOT NULL,
                    message TEXT NOT NULL,
                    metadata TEXT,
                    created_at REAL NOT NULL
                )
            """)
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_system_logs_run ON system_logs (run_id, created_at)"
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_system_logs_type ON system_logs (type, created_at)"
            )

    # ---------------------------------------------------------------------
    # Runs
    # ---------------------------------------------------------------------

    def create_run(
        self,
        *,
        market_symbol: str,
        lobby_duration: int,
        voting_interval: int,
        total_rounds: int,
        min_deposit: float,
        max_deposit: float,
        max_participants: int,
        run_id: Optional[str] = None,
        created_at: Optional[float] = None,
    ) -> RunRecord:
        rid = str(run_id or uuid.uuid4().hex)
        now = float(created_at if created_at is not None else time.time())
        with self._get_connection() as conn:
            conn.execute(
                """
                INSERT INTO runs (
                    id, status, market_symbol, created_at, lobby_duration, voting_interval,
                    total_rounds, min_deposit, max_deposit, max_participants, countdown, updated_at
                ) VALUES (?, 'WAITING', ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    rid,
                    str(market_symbol).upper(),
                    now,
                    int(lobby_duration),
                    int(voting_interval),
                    int(total_rounds),
                    float(min_deposit),
                    float(max_deposit),
                    int(max_participants),
                    int(lobby_duration),
                    now,
                ),
            )
        self.log.info(f"Run created: {rid} ({market_symbol}, {total_rounds} rounds)")
        run = self.get_run(rid)
        assert run is not None
        return run

    def get_run(self, run_id: str) -> Optional[RunRecord]:
        with self._get_connection() as conn:
            row = conn.execute("SELECT * FROM runs WHERE id = ?", (run_id,)).fetchone()
        return RunRecord.from_row(row) if row else None

    def require_run(self, run_id: str) -> RunRecord:
        run = self.get_run(run_id)
        if run is None:
            raise NotFoundError(f"Run {run_id} not found")
        return run

    def list_runs(self, statuses: Optional[Iterable[str]] = None, limit: int = 500) -> List[RunRecord]:
        q = "SELECT * FROM runs"
        args: List[Any] = []
        wanted = [str(s).upper() for s in (statuses or [])]
        if wanted:
            q += f" WHERE status IN ({','.join('?' for _ in wanted)})"
            args.extend(wanted)
        q += " ORDER BY created_at ASC LIMIT ?"
        args.append(int(limit))
        with self._get_connection() as conn:
            rows = conn.execute(q, args).fetchall()
        return [RunRecord.from_row(r) for r in rows]

    def update_countdown(self, run_id: str, countdown: Optional[int]) -> None:
        with self._get_connection() as conn:
            conn.execute(
                "UPDATE runs SET countdown = ?, updated_at = ? WHERE id = ? AND status = 'WAITING'",
                (countdown, time.time(), run_id),
            )

    def transition_run(
        self,
        run_id: str,
        from_status: str,
        to_status: str,
        **fields: Any,
    ) -> bool:
        """Guarded status update; returns False if the run was not in from_status."""
        if not can_transition_run_status(from_status, to_status):
            raise StateError(f"Illegal run transition {from_status} -> {to_status}")
        allowed = {"started_at", "ended_at", "starting_pool", "countdown", "current_round"}
        unknown = set(fields) - allowed
        if unknown:
            raise ValueError(f"Unknown run fields: {sorted(unknown)}")

        sets = ["status = ?", "updated_at = ?"]
        args: List[Any] = [to_status, time.time()]
        for key, value in fields.items():
            sets.append(f"{key} = ?")
            args.append(value)
        args.extend([run_id, from_status])
        with self._get_connection() as conn:
            cur = conn.execute(
                f"UPDATE runs SET {', '.join(sets)} WHERE id = ? AND status = ?",
                args,
            )
            changed = cur.rowcount > 0
        if changed:
            self.log.info(f"Run {run_id} status {from_status} -> {to_status}")
        return changed

    def activate_run(self, run_id: str, started_at: Optional[float] = None) -> Optional[float]:
        """WAITING -> ACTIVE with starting_pool taken from the pool at the moment of the flip.

        Returns the starting pool, or None if the run was no longer WAITING.
        """
        now = float(started_at if started_at is not None else time.time())
        with self._get_connection() as conn:
            conn.execute("BEGIN IMMEDIATE")
            row = conn.execute("SELECT status, total_pool FROM runs WHERE id = ?", (run_id,)).fetchone()
            if not row:
                raise NotFoundError(f"Run {run_id} not found")
            if row["status"] != RUN_STATUS_WAITING:
                return None
            count = conn.execute(
                "SELECT COUNT(*) FROM run_participants WHERE run_id = ?", (run_id,)
            ).fetchone()[0]
            if int(count) == 0:
                raise StateError(f"Run {run_id} has no participants; cannot start")
            conn.execute(
                """
                UPDATE runs
                SET status = ?, started_at = ?, starting_pool = total_pool, countdown = 0, updated_at = ?
                WHERE id = ? AND status = ?
                """,
                (RUN_STATUS_ACTIVE, now, now, run_id, RUN_STATUS_WAITING),
            )
            starting_pool = float(row["total_pool"] or 0.0)
        self.log.info(f"Run {run_id} status {RUN_STATUS_WAITING} -> {RUN_STATUS_ACTIVE} (pool {starting_pool:.6f})")
        return starting_pool

    def request_end(self, run_id: str, requested_at: Optional[float] = None) -> bool:
        """Mark an ACTIVE run for settlement; no further rounds are traded or opened."""
        now = float(requested_at if requested_at is not None else time.time())
        with self._get_connection() as conn:
            cur = conn.execute(
                """
                UPDATE runs SET end_requested_at = ?, updated_at = ?
                WHERE id = ? AND status = ? AND end_requested_at IS NULL
                """,
                (now, now, run_id, RUN_STATUS_ACTIVE),
            )
            return cur.rowcount > 0

    def update_total_pool(self, run_id: str, total_pool: float) -> None:
        if total_pool < 0:
            raise StateError(f"Refusing negative pool {total_pool} for run {run_id}")
        with self._get_connection() as conn:
            conn.execute(
                "UPDATE runs SET total_pool = ?, updated_at = ? WHERE id = ?",
                (float(total_pool), time.time(), run_id),
            )

    def set_current_round(self, run_id: str, round_no: int) -> None:
        with self._get_connection() as conn:
            conn.execute(
                "UPDATE runs SET current_round = ?, updated_at = ? WHERE id = ?",
                (int(round_no), time.time(), run_id),
            )

    # ---------------------------------------------------------------------
    # Participants
    # ---------------------------------------------------------------------

    def add_participant(self, run_id: str, user_id: str, deposit_amount: float) -> ParticipantRecord:
        """Join a WAITING run: insert participant and grow the pool atomically."""
        now = time.time()
        with self._get_connection() as conn:
            conn.execute("BEGIN IMMEDIATE")
            run_row = conn.execute(
                "SELECT status, max_participants, total_pool FROM runs WHERE id = ?",
                (run_id,),
            ).fetchone()
            if not run_row:
                raise NotFoundError(f"Run {run_id} not found")
            if run_row["status"] != RUN_STATUS_WAITING:
                raise StateError(f"Run {run_id} is not accepting new participants")
            count = conn.execute(
                "SELECT COUNT(*) FROM run_participants WHERE run_id = ?", (run_id,)
            ).fetchone()[0]
            if int(count) >= int(run_row["max_participants"]):
                raise StateError(f"Run {run_id} is full")
            try:
                conn.execute(
                    """
                    INSERT INTO run_participants (run_id, user_id, deposit_amount, joined_at)
                    VALUES (?, ?, ?, ?)
                    """,
                    (run_id, user_id, float(deposit_amount), now),
                )
            except sqlite3.IntegrityError as exc:
                raise ConflictError(f"User {user_id} is already in run {run_id}") from exc
            conn.execute(
                "UPDATE runs SET total_pool = total_pool + ?, updated_at = ? WHERE id = ?",
                (float(deposit_amount), now, run_id),
            )
        participant = self.get_participant(run_id, user_id)
        assert participant is not None
        return participant

    def remove_participant(self, run_id: str, user_id: str) -> float:
        """Leave a WAITING run; returns the refunded deposit."""
        with self._get_connection() as conn:
            conn.execute("BEGIN IMMEDIATE")
            run_row = conn.execute("SELECT status FROM runs WHERE id = ?", (run_id,)).fetchone()
            if not run_row:
                raise NotFoundError(f"Run {run_id} not found")
            if run_row["status"] != RUN_STATUS_WAITING:
                raise StateError("Cannot leave run after it has started")
            row = conn.execute(
                "SELECT deposit_amount FROM run_participants WHERE run_id = ? AND user_id = ?",
                (run_id, user_id),
            ).fetchone()
            if not row:
                raise NotFoundError(f"User {user_id} is not in run {run_id}")
            deposit = float(row["deposit_amount"])
            conn.execute(
                "DELETE FROM run_participants WHERE run_id = ? AND user_id = ?",
                (run_id, user_id),
            )
            conn.execute(
                "UPDATE runs SET total_pool = MAX(0, total_pool - ?), updated_at = ? WHERE id = ?",
                (deposit, time.time(), run_id),
            )
        return deposit

    def get_participant(self, run_id: str, user_id: str) -> Optional[ParticipantRecord]:
        with self._get_connection() as conn:
            row = conn.execute(
                "SELECT * FROM run_participants WHERE run_id = ? AND user_id = ?",
                (run_id, user_id),
            ).fetchone()
        return ParticipantRecord.from_row(row) if row else None

    def list_participants(self, run_id: str) -> List[ParticipantRecord]:
        with self._get_connection() as conn:
            rows = conn.execute(
                "SELECT * FROM run_participants WHERE run_id = ? ORDER BY joined_at ASC, id ASC",
                (run_id,),
            ).fetchall()
        return [ParticipantRecord.from_row(r) for r in rows]

    def count_participants(self, run_id: str) -> int:
        with self._get_connection() as conn:
            row = conn.execute(
                "SELECT COUNT(*) FROM run_participants WHERE run_id = ?", (run_id,)
            ).fetchone()
        return int(row[0] or 0)

    def increment_vote_counters(
        self,
        run_id: str,
        user_ids: Sequence[str],
        *,
        total: int = 0,
        correct: int = 0,
    ) -> int:
        if not user_ids or (total == 0 and correct == 0):
            return 0
        with self._get_connection() as conn:
            cur = conn.executemany(
                """
                UPDATE run_participants
                SET total_votes = total_votes + ?, votes_correct = votes_correct + ?
                WHERE run_id = ? AND user_id = ? AND withdrawn = 0
                """,
                [(int(total), int(correct), run_id, uid) for uid in user_ids],
            )
            return int(cur.rowcount or 0)

    def mark_withdrawn(self, run_id: str, user_id: str) -> bool:
        """Mark a settled participant as paid out; the row is frozen afterwards."""
        with self._get_connection() as conn:
            cur = conn.execute(
                """
                UPDATE run_participants SET withdrawn = 1, withdrawn_at = ?
                WHERE run_id = ? AND user_id = ? AND withdrawn = 0 AND final_share IS NOT NULL
                """,
                (time.time(), run_id, user_id),
            )
            return cur.rowcount > 0

    # ---------------------------------------------------------------------
    # Voting rounds
    # ---------------------------------------------------------------------

    def create_round(
        self,
        run_id: str,
        round_no: int,
        *,
        leverage: float,
        position_size_percent: float,
        current_price: float,
        time_remaining: int,
        started_at: Optional[float] = None,
    ) -> Tuple[RoundRecord, bool]:
        """Insert an OPEN round. Returns (round, created); an existing round is returned as-is."""
        now = float(started_at if started_at is not None else time.time())
        try:
            with self._get_connection() as conn:
                conn.execute(
                    """
                    INSERT INTO voting_rounds (
                        run_id, round, status, leverage, position_size_percent,
                        current_price, started_at, time_remaining
                    ) VALUES (?, ?, 'OPEN', ?, ?, ?, ?, ?)
                    """,
                    (
                        run_id,
                        int(round_no),
                        float(leverage),
                        float(position_size_percent),
                        float(current_price),
                        now,
                        int(time_remaining),
                    ),
                )
                conn.execute(
                    "UPDATE runs SET current_round = MAX(current_round, ?), updated_at = ? WHERE id = ?",
                    (int(round_no), now, run_id),
                )
        except sqlite3.IntegrityError as exc:
            existing = self.get_round(run_id, round_no)
            if existing is not None:
                return existing, False
            raise StateError(f"Run {run_id} already has an OPEN round") from exc
        created = self.get_round(run_id, round_no)
        assert created is not None
        return created, True

    def get_round(self, run_id: str, round_no: int) -> Optional[RoundRecord]:
        with self._get_connection() as conn:
            row = conn.execute(
                "SELECT * FROM voting_rounds WHERE run_id = ? AND round = ?",
                (run_id, int(round_no)),
            ).fetchone()
        return RoundRecord.from_row(row) if row else None

    def get_open_round(self, run_id: str) -> Optional[RoundRecord]:
        with self._get_connection() as conn:
            row = conn.execute(
                "SELECT * FROM voting_rounds WHERE run_id = ? AND status = 'OPEN' ORDER BY round DESC LIMIT 1",
                (run_id,),
            ).fetchone()
        return RoundRecord.from_row(row) if row else None

    def list_rounds(self, run_id: str) -> List[RoundRecord]:
        with self._get_connection() as conn:
            rows = conn.execute(
                "SELECT * FROM voting_rounds WHERE run_id = ? ORDER BY round ASC",
                (run_id,),
            ).fetchall()
        return [RoundRecord.from_row(r) for r in rows]

    def get_max_round(self, run_id: str) -> int:
        with self._get_connection() as conn:
            row = conn.execute(
                "SELECT MAX(round) FROM voting_rounds WHERE run_id = ?", (run_id,)
            ).fetchone()
        return int(row[0] or 0)

    def count_rounds(self, run_id: str, status: Optional[str] = None) -> int:
        q = "SELECT COUNT(*) FROM voting_rounds WHERE run_id = ?"
        args: List[Any] = [run_id]
        if status:
            q += " AND status = ?"
            args.append(status)
        with self._get_connection() as conn:
            row = conn.execute(q, args).fetchone()
        return int(row[0] or 0)

    def close_round(self, run_id: str, round_no: int, vote_distribution: Dict[str, int]) -> bool:
        """OPEN -> EXECUTING with a frozen distribution; False if already closed."""
        with self._get_connection() as conn:
            cur = conn.execute(
                """
                UPDATE voting_rounds
                SET status = ?, vote_distribution = ?, closed_at = ?, time_remaining = 0
                WHERE run_id = ? AND round = ? AND status = ?
                """,
                (
                    ROUND_STATUS_EXECUTING,
                    json.dumps(vote_distribution, sort_keys=True),
                    time.time(),
                    run_id,
                    int(round_no),
                    ROUND_STATUS_OPEN,
                ),
            )
            return cur.rowcount > 0

    def record_round_execution(
        self,
        run_id: str,
        round_no: int,
        *,
        leverage: float,
        position_size_percent: float,
    ) -> None:
        """Overwrite the display-time chaos sample with the traded one."""
        with self._get_connection() as conn:
            conn.execute(
                """
                UPDATE voting_rounds
                SET leverage = ?, position_size_percent = ?, executed_at = ?
                WHERE run_id = ? AND round = ?
                """,
                (float(leverage), float(position_size_percent), time.time(), run_id, int(round_no)),
            )

    def update_round_time_remaining(self, run_id: str, round_no: int, remaining: int) -> None:
        with self._get_connection() as conn:
            conn.execute(
                "UPDATE voting_rounds SET time_remaining = ? WHERE run_id = ? AND round = ? AND status = 'OPEN'",
                (int(remaining), run_id, int(round_no)),
            )

    # ---------------------------------------------------------------------
    # Votes
    # ---------------------------------------------------------------------

    def insert_vote(self, run_id: str, user_id: str, round_no: int, choice: str) -> None:
        try:
            with self._get_connection() as conn:
                conn.execute(
                    "INSERT INTO votes (run_id, user_id, round, choice, voted_at) VALUES (?, ?, ?, ?, ?)",
                    (run_id, user_id, int(round_no), str(choice).upper(), time.time()),
                )
        except sqlite3.IntegrityError as exc:
            raise ConflictError(f"User {user_id} already voted in round {round_no}") from exc

    def list_votes(self, run_id: str, round_no: int) -> List[Dict[str, Any]]:
        with self._get_connection() as conn:
            rows = conn.execute(
                "SELECT user_id, choice, voted_at FROM votes WHERE run_id = ? AND round = ? ORDER BY id ASC",
                (run_id, int(round_no)),
            ).fetchall()
        return [dict(r) for r in rows]

    # ---------------------------------------------------------------------
    # Trades
    # ---------------------------------------------------------------------

    def insert_trade(
        self,
        run_id: str,
        round_no: int,
        *,
        direction: str,
        leverage: float,
        position_size_percent: float,
        notional: float,
        entry_price: float,
        tx_id: Optional[str] = None,
        open_error: Optional[str] = None,
    ) -> Tuple[TradeRecord, bool]:
        """Insert the round's trade once. Returns (trade, created)."""
        try:
            with self._get_connection() as conn:
                conn.execute(
                    """
                    INSERT INTO trades (
                        run_id, round, direction, leverage, position_size_percent, notional,
                        entry_price, tx_id, open_error, executed_at
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        run_id,
                        int(round_no),
                        str(direction).upper(),
                        float(leverage),
                        float(position_size_percent),
                        float(notional),
                        float(entry_price),
                        tx_id,
                        open_error,
                        time.time(),
                    ),
                )
            created = True
        except sqlite3.IntegrityError:
            created = False
        trade = self.get_trade(run_id, round_no)
        assert trade is not None
        if not created:
            self.log.warning(f"Duplicate trade prevented for run {run_id} round {round_no}; reusing existing row")
        return trade, created

    def get_trade(self, run_id: str, round_no: int) -> Optional[TradeRecord]:
        with self._get_connection() as conn:
            row = conn.execute(
                "SELECT * FROM trades WHERE run_id = ? AND round = ?",
                (run_id, int(round_no)),
            ).fetchone()
        return TradeRecord.from_row(row) if row else None

    def list_trades(self, run_id: str) -> List[TradeRecord]:
        with self._get_connection() as conn:
            rows = conn.execute(
                "SELECT * FROM trades WHERE run_id = ? ORDER BY round ASC", (run_id,)
            ).fetchall()
        return [TradeRecord.from_row(r) for r in rows]

    def get_open_trades(self, run_id: str) -> List[TradeRecord]:
        with self._get_connection() as conn:
            rows = conn.execute(
                "SELECT * FROM trades WHERE run_id = ? AND exit_price IS NULL ORDER BY round ASC",
                (run_id,),
            ).fetchall()
        return [TradeRecord.from_row(r) for r in rows]

    def close_trade(
        self,
        run_id: str,
        round_no: int,
        *,
        exit_price: float,
        pnl: float,
        pnl_percentage: float,
        exit_source: str,
        pool_after: float,
    ) -> bool:
        """Close an open trade and persist the resulting pool in one transaction.

        Returns False (and changes nothing) if the trade was already closed.
        """
        if pool_after < 0:
            raise StateError(f"Refusing negative pool {pool_after} for run {run_id}")
        now = time.time()
        with self._get_connection() as conn:
            conn.execute("BEGIN IMMEDIATE")
            cur = conn.execute(
                """
                UPDATE trades
                SET exit_price = ?, pnl = ?, pnl_percentage = ?, exit_source = ?, settled_at = ?
                WHERE run_id = ? AND round = ? AND exit_price IS NULL
                """,
                (float(exit_price), float(pnl), float(pnl_percentage), exit_source, now, run_id, int(round_no)),
            )
            if cur.rowcount == 0:
                return False
            conn.execute(
                "UPDATE runs SET total_pool = ?, updated_at = ? WHERE id = ?",
                (float(pool_after), now, run_id),
            )
        return True

    # ---------------------------------------------------------------------
    # Settlement
    # ---------------------------------------------------------------------

    def finalize_settlement(
        self,
        run_id: str,
        shares: Sequence[Tuple[str, float]],
        *,
        ended_at: Optional[float] = None,
    ) -> bool:
        """Persist final shares and flip ACTIVE -> ENDED atomically."""
        now = float(ended_at if ended_at is not None else time.time())
        with self._get_connection() as conn:
            conn.execute("BEGIN IMMEDIATE")
            row = conn.execute("SELECT status FROM runs WHERE id = ?", (run_id,)).fetchone()
            if not row:
                raise NotFoundError(f"Run {run_id} not found")
            if row["status"] != RUN_STATUS_ACTIVE:
                return False
            conn.executemany(
                """
                UPDATE run_participants SET final_share = ?
                WHERE run_id = ? AND user_id = ? AND withdrawn = 0
                """,
                [(float(share), run_id, uid) for uid, share in shares],
            )
            conn.execute(
                """
                UPDATE runs SET status = ?, ended_at = ?, countdown = NULL, updated_at = ?
                WHERE id = ? AND status = ?
                """,
                (RUN_STATUS_ENDED, now, now, run_id, RUN_STATUS_ACTIVE),
            )
        self.log.info(f"Run {run_id} settled internally ({len(shares)} shares)")
        return True

    # ---------------------------------------------------------------------
    # Run locks
    # ---------------------------------------------------------------------

    def acquire_run_lock(self, run_id: str, owner: str, ttl_seconds: float = 120.0) -> bool:
        """Cross-process guard: one in-flight phase transition per run."""
        now = time.time()
        exp = now + float(ttl_seconds or 0)
        if not run_id or not owner:
            return False

        with self._get_connection() as conn:
            conn.execute("BEGIN IMMEDIATE")
            conn.execute("DELETE FROM run_locks WHERE expires_at < ?", (now,))

            # Re-entrant acquire: if we already hold it, extend TTL.
            row = conn.execute("SELECT owner FROM run_locks WHERE run_id = ?", (run_id,)).fetchone()
            if row and str(row[0] or "") == str(owner):
                conn.execute("UPDATE run_locks SET expires_at = ? WHERE run_id = ?", (exp, run_id))
                return True
            if row:
                return False
            conn.execute(
                "INSERT INTO run_locks (run_id, owner, acquired_at, expires_at) VALUES (?, ?, ?, ?)",
                (run_id, owner, now, exp),
            )
            return True

    def release_run_lock(self, run_id: str, owner: Optional[str] = None) -> bool:
        with self._get_connection() as conn:
            if owner:
                cur = conn.execute(
                    "DELETE FROM run_locks WHERE run_id = ? AND owner = ?", (run_id, str(owner))
                )
            else:
                cur = conn.execute("DELETE FROM run_locks WHERE run_id = ?", (run_id,))
            return cur.rowcount > 0

    def get_run_lock(self, run_id: str) -> Optional[Dict[str, Any]]:
        with self._get_connection() as conn:
            row = conn.execute(
                "SELECT * FROM run_locks WHERE run_id = ? AND expires_at >= ?",
                (run_id, time.time()),
            ).fetchone()
        return dict(row) if row else None

    # ---------------------------------------------------------------------
    # System log
    # ---------------------------------------------------------------------

    def record_system_log(
        self,
        run_id: Optional[str],
        log_type: str,
        message: str,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> None:
        with self._get_connection() as conn:
            conn.execute(
                "INSERT INTO system_logs (run_id, type, message, metadata, created_at) VALUES (?, ?, ?, ?, ?)",
                (
                    run_id,
                    str(log_type).upper(),
                    message,
                    json.dumps(metadata, default=str) if metadata is not None else None,
                    time.time(),
                ),
            )

    def get_system_logs(self, run_id: Optional[str] = None, limit: int = 100) -> List[Dict[str, Any]]:
        q = "SELECT * FROM system_logs"
        args: List[Any] = []
        if run_id:
            q += " WHERE run_id = ?"
            args.append(run_id)
        q += " ORDER BY created_at DESC, id DESC LIMIT ?"
        args.append(int(limit))
        with self._get_connection() as conn:
            rows = conn.execute(q, args).fetchall()
        out = []
        for r in rows:
            item = dict(r)
            if item.get("metadata"):
                try:
                    item["metadata"] = json.loads(item["metadata"])
                except json.JSONDecodeError:
                    pass
            out.append(item)
        return out
