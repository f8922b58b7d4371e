"""
Commitment ledger: agent registry, commit-execute-reveal state machine,
verification and enumeration.

State is persisted in SQLite. Every write runs inside a BEGIN IMMEDIATE
transaction while holding an exclusive file lock, so writes form a single
total order across threads and processes and each call is all-or-nothing.
The payment gateway is invoked inside the open transaction; the
transaction only commits once the gateway reports success.
"""

from __future__ import annotations

import fcntl
import logging
import sqlite3
import threading
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Callable, Iterator, Optional

from .audit import AuditEvent, AuditTrail, EventType
from .errors import (
    AlreadyExecutedError,
    AlreadyRegisteredError,
    AlreadyRevealedError,
    CommitmentExistsError,
    CommitmentNotFoundError,
    HashMismatchError,
    NotRegisteredError,
    NotYourCommitmentError,
    TransferFailedError,
)
from .gateway import PaymentGateway
from .models import Agent, Commitment
from .money import validate_amount
from .reasoning import hash_reasoning, normalize_address, normalize_hex32
from .storage import default_home, ensure_private_dir, ensure_private_file
from .verification import VerificationResult, check_reasoning, hashes_match, verify_commitment

logger = logging.getLogger(__name__)

Subscriber = Callable[[AuditEvent], None]


class CommitmentLedger:
    """
    Owns all agent and commitment records.

    Write operations take the authenticated caller as their first argument;
    authenticating that principal is the job of the layer in front of the
    ledger. Reads never take the write lock and only observe committed state.
    """

    def __init__(
        self,
        gateway: PaymentGateway,
        state_dir: Optional[Path] = None,
        audit: Optional[AuditTrail] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.gateway = gateway
        self.audit = audit
        self.state_dir = state_dir or default_home()
        ensure_private_dir(self.state_dir)
        self.db_path = self.state_dir / "ledger.sqlite3"
        self._lock_path = self.state_dir / ".ledger.lock"
        ensure_private_file(self._lock_path)
        self._clock = clock
        self._thread_lock = threading.Lock()
        self._local = threading.local()
        self._subscribers: list[Subscriber] = []
        self._init_db()

    # ── Storage plumbing ────────────────────────────────────────────

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path, timeout=30.0, isolation_level=None)
        conn.row_factory = sqlite3.Row
        return conn

    def _init_db(self) -> None:
        conn = self._connect()
        try:
            conn.execute("PRAGMA journal_mode=WAL")
            conn.execute("PRAGMA synchronous=FULL")
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS agents (
                    agent TEXT PRIMARY KEY,
                    commit_count INTEGER NOT NULL DEFAULT 0,
                    reveal_count INTEGER NOT NULL DEFAULT 0,
                    executed_count INTEGER NOT NULL DEFAULT 0,
                    total_moved TEXT NOT NULL DEFAULT '0',
                    registered_at INTEGER NOT NULL
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS agent_index (
                    position INTEGER PRIMARY KEY AUTOINCREMENT,
                    agent TEXT NOT NULL UNIQUE
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS commitments (
                    commitment_id TEXT PRIMARY KEY,
                    agent TEXT NOT NULL,
                    reasoning_hash TEXT NOT NULL,
                    recipient TEXT NOT NULL,
                    amount TEXT NOT NULL,
                    committed_at INTEGER NOT NULL,
                    executed_at INTEGER NOT NULL DEFAULT 0,
                    revealed_at INTEGER NOT NULL DEFAULT 0,
                    executed INTEGER NOT NULL DEFAULT 0,
                    revealed INTEGER NOT NULL DEFAULT 0,
                    reasoning TEXT NOT NULL DEFAULT ''
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS commitment_index (
                    position INTEGER PRIMARY KEY AUTOINCREMENT,
                    commitment_id TEXT NOT NULL UNIQUE
                )
                """
            )
        finally:
            conn.close()

    @contextmanager
    def _write(self) -> Iterator[tuple[sqlite3.Connection, list[AuditEvent]]]:
        """Run one serialized, atomic write; any exception rolls everything back.

        Events staged in the yielded list are published after COMMIT but
        before the locks are released, so notifications follow write order.
        """
        if getattr(self._local, "writing", False):
            raise RuntimeError("Re-entrant ledger write (gateway called back into the ledger)")
        with self._thread_lock, open(self._lock_path, "r+") as lockf:
            fcntl.flock(lockf.fileno(), fcntl.LOCK_EX)
            self._local.writing = True
            conn = self._connect()
            events: list[AuditEvent] = []
            try:
                conn.execute("BEGIN IMMEDIATE")
                try:
                    yield conn, events
                except BaseException:
                    conn.execute("ROLLBACK")
                    raise
                conn.execute("COMMIT")
                self._publish(events)
            finally:
                conn.close()
                self._local.writing = False
                fcntl.flock(lockf.fileno(), fcntl.LOCK_UN)

    @contextmanager
    def _read(self) -> Iterator[sqlite3.Connection]:
        conn = self._connect()
        try:
            yield conn
        finally:
            conn.close()

    def _now(self) -> int:
        return int(self._clock())

    @staticmethod
    def _row_to_agent(row: sqlite3.Row) -> Agent:
        return Agent(
            agent=row["agent"],
            registered=True,
            commit_count=row["commit_count"],
            reveal_count=row["reveal_count"],
            executed_count=row["executed_count"],
            total_moved=int(row["total_moved"]),
            registered_at=row["registered_at"],
        )

    @staticmethod
    def _row_to_commitment(row: sqlite3.Row) -> Commitment:
        return Commitment(
            commitment_id=row["commitment_id"],
            agent=row["agent"],
            reasoning_hash=row["reasoning_hash"],
            recipient=row["recipient"],
            amount=int(row["amount"]),
            committed_at=row["committed_at"],
            executed_at=row["executed_at"],
            revealed_at=row["revealed_at"],
            executed=bool(row["executed"]),
            revealed=bool(row["revealed"]),
            reasoning=row["reasoning"],
        )

    def _load_agent(self, conn: sqlite3.Connection, agent: str) -> Optional[Agent]:
        row = conn.execute("SELECT * FROM agents WHERE agent = ?", (agent,)).fetchone()
        return self._row_to_agent(row) if row else None

    def _load_commitment(self, conn: sqlite3.Connection, commitment_id: str) -> Optional[Commitment]:
        row = conn.execute(
            "SELECT * FROM commitments WHERE commitment_id = ?",
            (commitment_id,),
        ).fetchone()
        return self._row_to_commitment(row) if row else None

    # ── Notifications ───────────────────────────────────────────────

    def subscribe(self, callback: Subscriber) -> Callable[[], None]:
        """Receive every notification published after a successful write.

        Callbacks run while the write lock is still held: they may read the
        ledger but a write from a callback fails as re-entrant.
        """
        self._subscribers.append(callback)

        def unsubscribe() -> None:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return unsubscribe

    def _publish(self, events: list[AuditEvent]) -> None:
        # Called only after COMMIT; sink failures cannot undo a durable write.
        for event in events:
            if self.audit is not None:
                try:
                    self.audit.append(event)
                except (OSError, ValueError):
                    logger.exception("Failed to append %s to audit trail", event.event_type)
            for callback in list(self._subscribers):
                try:
                    callback(event)
                except Exception:
                    logger.exception("Notification subscriber failed on %s", event.event_type)

    # ── Agent registry ──────────────────────────────────────────────

    def register_agent(self, caller: str) -> Agent:
        """Register the caller as an agent. Registration is permanent."""
        agent = normalize_address(caller)
        now = self._now()
        with self._write() as (conn, events):
            if self._load_agent(conn, agent) is not None:
                raise AlreadyRegisteredError(agent)
            conn.execute(
                "INSERT INTO agents (agent, registered_at) VALUES (?, ?)",
                (agent, now),
            )
            conn.execute("INSERT INTO agent_index (agent) VALUES (?)", (agent,))
            events.append(AuditEvent.create(EventType.AGENT_REGISTERED, timestamp=now, agent=agent))

        logger.info("Agent registered: %s", agent)
        return Agent(agent=agent, registered=True, registered_at=now)

    def get_agent(self, agent: str) -> Agent:
        """Agent snapshot; an unknown identity yields an unregistered, zeroed record."""
        try:
            normalized = normalize_address(agent)
        except ValueError:
            # A malformed identity can never have registered.
            return Agent.unregistered(str(agent))
        with self._read() as conn:
            found = self._load_agent(conn, normalized)
        return found or Agent.unregistered(normalized)

    def is_registered(self, agent: str) -> bool:
        return self.get_agent(agent).registered

    def agent_count(self) -> int:
        with self._read() as conn:
            return conn.execute("SELECT COUNT(*) FROM agent_index").fetchone()[0]

    def list_agents(self, offset: int = 0, limit: int = 100) -> list[str]:
        """Registered identities in registration order."""
        offset, limit = _check_page(offset, limit)
        with self._read() as conn:
            rows = conn.execute(
                "SELECT agent FROM agent_index ORDER BY position LIMIT ? OFFSET ?",
                (limit, offset),
            ).fetchall()
        return [row["agent"] for row in rows]

    # ── Commitment state machine ────────────────────────────────────

    def _require_registered(self, conn: sqlite3.Connection, agent: str) -> None:
        if self._load_agent(conn, agent) is None:
            raise NotRegisteredError(agent)

    def _insert_commitment(self, conn: sqlite3.Connection, commitment: Commitment) -> None:
        conn.execute(
            """
            INSERT INTO commitments (
                commitment_id, agent, reasoning_hash, recipient, amount,
                committed_at, executed_at, revealed_at, executed, revealed, reasoning
            ) VALUES (?, ?, ?, ?, ?, ?, ?, 0, ?, 0, '')
            """,
            (
                commitment.commitment_id,
                commitment.agent,
                commitment.reasoning_hash,
                commitment.recipient,
                str(commitment.amount),
                commitment.committed_at,
                commitment.executed_at,
                int(commitment.executed),
            ),
        )
        conn.execute(
            "INSERT INTO commitment_index (commitment_id) VALUES (?)",
            (commitment.commitment_id,),
        )
        conn.execute(
            "UPDATE agents SET commit_count = commit_count + 1 WHERE agent = ?",
            (commitment.agent,),
        )

    def _owned(self, conn: sqlite3.Connection, commitment_id: str, agent: str) -> Commitment:
        record = self._load_commitment(conn, commitment_id)
        if record is None:
            raise CommitmentNotFoundError(commitment_id)
        if record.agent != agent:
            raise NotYourCommitmentError(commitment_id, caller=agent, owner=record.agent)
        return record

    def _move_funds(self, record: Commitment) -> None:
        try:
            ok = self.gateway.move_funds(record.agent, record.recipient, record.amount)
        except Exception as exc:
            logger.warning("Gateway raised during transfer for %s: %s", record.commitment_id, exc)
            raise TransferFailedError(record.commitment_id, f"{type(exc).__name__}: {exc}") from exc
        if ok is not True:
            logger.warning("Gateway declined transfer for %s", record.commitment_id)
            raise TransferFailedError(record.commitment_id)

    def _credit_execution(self, conn: sqlite3.Connection, agent: str, amount: int) -> None:
        row = conn.execute("SELECT total_moved FROM agents WHERE agent = ?", (agent,)).fetchone()
        total_moved = int(row["total_moved"]) + amount
        conn.execute(
            """
            UPDATE agents
            SET executed_count = executed_count + 1, total_moved = ?
            WHERE agent = ?
            """,
            (str(total_moved), agent),
        )

    def commit(
        self,
        caller: str,
        commitment_id: str,
        reasoning_hash: str,
        recipient: str,
        amount: int,
    ) -> Commitment:
        """Record a reasoning hash for a future payment."""
        agent = normalize_address(caller)
        record = Commitment(
            commitment_id=normalize_hex32(commitment_id, "commitment_id"),
            agent=agent,
            reasoning_hash=normalize_hex32(reasoning_hash, "reasoning_hash"),
            recipient=normalize_address(recipient),
            amount=validate_amount(amount),
            committed_at=self._now(),
        )
        with self._write() as (conn, events):
            self._require_registered(conn, agent)
            if self._load_commitment(conn, record.commitment_id) is not None:
                raise CommitmentExistsError(record.commitment_id)
            self._insert_commitment(conn, record)
            events.append(_committed_event(record))

        logger.info(
            "Reasoning committed: %s (agent: %s, amount: %d)",
            record.commitment_id,
            agent,
            record.amount,
        )
        return record

    def execute(self, caller: str, commitment_id: str) -> Commitment:
        """Execute the payment of a committed record through the gateway."""
        agent = normalize_address(caller)
        cid = normalize_hex32(commitment_id, "commitment_id")
        now = self._now()
        with self._write() as (conn, events):
            record = self._owned(conn, cid, agent)
            if record.executed:
                raise AlreadyExecutedError(cid)
            conn.execute(
                "UPDATE commitments SET executed = 1, executed_at = ? WHERE commitment_id = ?",
                (now, cid),
            )
            self._move_funds(record)
            self._credit_execution(conn, agent, record.amount)
            executed = self._load_commitment(conn, cid)
            assert executed is not None
            events.append(_executed_event(executed))

        logger.info("Payment executed: %s (%d -> %s)", cid, executed.amount, executed.recipient)
        return executed

    def commit_and_execute(
        self,
        caller: str,
        commitment_id: str,
        reasoning_hash: str,
        recipient: str,
        amount: int,
    ) -> Commitment:
        """Commit and pay in one atomic step; a failed transfer leaves no trace."""
        agent = normalize_address(caller)
        now = self._now()
        record = Commitment(
            commitment_id=normalize_hex32(commitment_id, "commitment_id"),
            agent=agent,
            reasoning_hash=normalize_hex32(reasoning_hash, "reasoning_hash"),
            recipient=normalize_address(recipient),
            amount=validate_amount(amount),
            committed_at=now,
            executed_at=now,
            executed=True,
        )
        with self._write() as (conn, events):
            self._require_registered(conn, agent)
            if self._load_commitment(conn, record.commitment_id) is not None:
                raise CommitmentExistsError(record.commitment_id)
            self._insert_commitment(conn, record)
            self._move_funds(record)
            self._credit_execution(conn, agent, record.amount)
            events.extend([_committed_event(record), _executed_event(record)])

        logger.info(
            "Reasoning committed and payment executed: %s (%d -> %s)",
            record.commitment_id,
            record.amount,
            record.recipient,
        )
        return record

    def reveal(self, caller: str, commitment_id: str, reasoning: str) -> Commitment:
        """Publish the reasoning text; it must hash to the committed value."""
        agent = normalize_address(caller)
        cid = normalize_hex32(commitment_id, "commitment_id")
        actual_hash = hash_reasoning(reasoning)
        now = self._now()
        with self._write() as (conn, events):
            record = self._owned(conn, cid, agent)
            if record.revealed:
                raise AlreadyRevealedError(cid)
            if not hashes_match(record.reasoning_hash, actual_hash):
                logger.warning(
                    "Reveal rejected for %s: committed %s, revealed text hashes to %s",
                    cid,
                    record.reasoning_hash,
                    actual_hash,
                )
                raise HashMismatchError(cid, expected=record.reasoning_hash, actual=actual_hash)
            conn.execute(
                """
                UPDATE commitments
                SET reasoning = ?, revealed = 1, revealed_at = ?
                WHERE commitment_id = ?
                """,
                (reasoning, now, cid),
            )
            conn.execute(
                "UPDATE agents SET reveal_count = reveal_count + 1 WHERE agent = ?",
                (agent,),
            )
            revealed = self._load_commitment(conn, cid)
            assert revealed is not None
            events.append(
                AuditEvent.create(
                    EventType.REASONING_REVEALED,
                    timestamp=now,
                    agent=agent,
                    commitment_id=cid,
                    reasoning=reasoning,
                )
            )

        logger.info("Reasoning revealed: %s (agent: %s)", cid, agent)
        return revealed

    # ── Queries ─────────────────────────────────────────────────────

    def get_commitment(self, commitment_id: str) -> Optional[Commitment]:
        """Stored record, or None when the identifier is unknown or malformed."""
        try:
            cid = normalize_hex32(commitment_id, "commitment_id")
        except ValueError:
            return None
        with self._read() as conn:
            return self._load_commitment(conn, cid)

    def verify(self, commitment_id: str) -> VerificationResult:
        """Recompute and compare the reasoning hash of a commitment."""
        return verify_commitment(self.get_commitment(commitment_id))

    def check_reasoning(self, commitment_id: str, candidate: str) -> tuple[bool, str]:
        """Test a candidate text against a commitment without revealing it."""
        return check_reasoning(self.get_commitment(commitment_id), candidate)

    def total_count(self) -> int:
        with self._read() as conn:
            return conn.execute("SELECT COUNT(*) FROM commitment_index").fetchone()[0]

    def page_ids(self, offset: int, limit: int) -> list[str]:
        """Commitment identifiers in creation order, ``limit`` at a time from ``offset``."""
        offset, limit = _check_page(offset, limit)
        if limit == 0:
            return []
        with self._read() as conn:
            rows = conn.execute(
                "SELECT commitment_id FROM commitment_index ORDER BY position LIMIT ? OFFSET ?",
                (limit, offset),
            ).fetchall()
        return [row["commitment_id"] for row in rows]

    def page_commitments(self, offset: int, limit: int) -> list[Commitment]:
        ids = self.page_ids(offset, limit)
        if not ids:
            return []
        with self._read() as conn:
            records = [self._load_commitment(conn, cid) for cid in ids]
        return [r for r in records if r is not None]


def _check_page(offset: int, limit: int) -> tuple[int, int]:
    if offset < 0:
        raise ValueError("offset must be >= 0")
    if limit < 0:
        raise ValueError("limit must be >= 0")
    return int(offset), int(limit)


def _committed_event(record: Commitment) -> AuditEvent:
    return AuditEvent.create(
        EventType.REASONING_COMMITTED,
        timestamp=record.committed_at,
        agent=record.agent,
        commitment_id=record.commitment_id,
        reasoning_hash=record.reasoning_hash,
        recipient=record.recipient,
        amount=record.amount,
    )


def _executed_event(record: Commitment) -> AuditEvent:
    return AuditEvent.create(
        EventType.PAYMENT_EXECUTED,
        timestamp=record.executed_at,
        agent=record.agent,
        commitment_id=record.commitment_id,
        recipient=record.recipient,
        amount=record.amount,
    )
