"""
Audit trail of ledger notifications.

Every successful register/commit/execute/reveal produces one event.
Events are append-only JSONL entries with an HMAC hash chain so
tampering is detected during reads.
"""

from __future__ import annotations

import fcntl
import hashlib
import hmac
import json
import os
import secrets
import threading
import time
from contextlib import contextmanager
from dataclasses import asdict, dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Optional

from .errors import AuditIntegrityError
from .storage import default_home, ensure_private_dir, ensure_private_file


DEFAULT_AUDIT_KEY_PATH = Path.home() / ".commitpay-secrets" / "audit_hmac.key"
AUDIT_KEY_ENV = "COMMITPAY_AUDIT_HMAC_KEY"


class EventType(str, Enum):
    AGENT_REGISTERED = "agent_registered"
    REASONING_COMMITTED = "reasoning_committed"
    PAYMENT_EXECUTED = "payment_executed"
    REASONING_REVEALED = "reasoning_revealed"


@dataclass
class AuditEvent:
    """A single notification / audit trail entry."""

    event_type: str
    timestamp: float
    agent: Optional[str] = None
    commitment_id: Optional[str] = None
    reasoning_hash: Optional[str] = None
    recipient: Optional[str] = None
    amount: Optional[int] = None
    reasoning: Optional[str] = None
    prev_hash: Optional[str] = None
    event_hash: Optional[str] = None

    @classmethod
    def create(cls, event_type: EventType, timestamp: Optional[float] = None, **fields: Any) -> AuditEvent:
        return cls(
            event_type=event_type.value,
            timestamp=time.time() if timestamp is None else timestamp,
            **fields,
        )

    def payload(self) -> dict[str, Any]:
        """Chained fields only (excludes the hash links themselves)."""
        return {
            k: v
            for k, v in asdict(self).items()
            if v is not None and k not in {"prev_hash", "event_hash"}
        }

    def to_json(self) -> str:
        d = {k: v for k, v in asdict(self).items() if v is not None}
        return json.dumps(d, separators=(",", ":"), ensure_ascii=False)


class AuditTrail:
    """Tamper-evident append-only audit log.

    Several trails (threads or processes) may share one file: appends are
    serialized by an exclusive file lock and always chain onto the last
    event actually on disk.
    """

    def __init__(
        self,
        path: Optional[Path] = None,
        key_path: Optional[Path] = None,
    ):
        self.path = path or default_home() / "audit.jsonl"
        self.key_path = key_path or DEFAULT_AUDIT_KEY_PATH
        self._lock_path = self.path.with_name(self.path.name + ".lock")

        ensure_private_dir(self.path.parent)
        ensure_private_file(self.path)
        ensure_private_file(self._lock_path)

        self._write_lock = threading.Lock()
        self._hmac_key = self._load_or_create_key()
        self._last_hash = self._scan_last_hash()
        self._known_size = self.path.stat().st_size

    @contextmanager
    def _file_lock(self):
        with open(self._lock_path, "r+") as lockf:
            fcntl.flock(lockf.fileno(), fcntl.LOCK_EX)
            try:
                yield
            finally:
                fcntl.flock(lockf.fileno(), fcntl.LOCK_UN)

    def _chain_head(self) -> str:
        # Rescan only when another writer has appended since our last write.
        size = self.path.stat().st_size
        if size != self._known_size:
            self._last_hash = self._scan_last_hash()
            self._known_size = size
        return self._last_hash

    def _load_or_create_key(self) -> bytes:
        env_key = os.getenv(AUDIT_KEY_ENV)
        if env_key:
            return env_key.encode()
        ensure_private_dir(self.key_path.parent)
        if self.key_path.exists() and self.key_path.stat().st_size > 0:
            return self.key_path.read_bytes().strip()
        key = secrets.token_hex(32).encode()
        self.key_path.write_bytes(key)
        ensure_private_file(self.key_path)
        return key

    def _scan_last_hash(self) -> str:
        if not self.path.exists():
            return ""
        last = ""
        with open(self.path, "r", encoding="utf-8") as f:
            for line in f:
                if not line.strip():
                    continue
                event = json.loads(line)
                last = event.get("event_hash", "")
        return last

    def _event_hash(self, event_payload: dict, prev_hash: str) -> str:
        canonical = json.dumps(event_payload, sort_keys=True, separators=(",", ":"), ensure_ascii=False)
        digest = hmac.new(self._hmac_key, f"{prev_hash}|{canonical}".encode(), hashlib.sha256)
        return digest.hexdigest()

    def append(self, event: AuditEvent) -> AuditEvent:
        """Chain and persist an event built by the ledger."""
        with self._write_lock, self._file_lock():
            payload = event.payload()
            prev_hash = self._chain_head()
            current_hash = self._event_hash(payload, prev_hash)
            event.prev_hash = prev_hash or None
            event.event_hash = current_hash

            with open(self.path, "a", encoding="utf-8") as f:
                f.write(event.to_json() + "\n")
                f.flush()
                os.fsync(f.fileno())
            ensure_private_file(self.path)

            self._last_hash = current_hash
            self._known_size = self.path.stat().st_size
        return event

    def read_events(
        self,
        commitment_id: Optional[str] = None,
        agent: Optional[str] = None,
        event_type: Optional[EventType] = None,
        limit: int = 100,
    ) -> list[AuditEvent]:
        if not self.path.exists():
            return []

        events: list[AuditEvent] = []
        expected_prev = ""
        with open(self.path, "r", encoding="utf-8") as f:
            for line in f:
                line = line.strip()
                if not line:
                    continue
                raw = json.loads(line)

                payload = {
                    k: v
                    for k, v in raw.items()
                    if k not in {"prev_hash", "event_hash"}
                }
                prev_hash = raw.get("prev_hash", "") or ""
                event_hash = raw.get("event_hash", "") or ""
                if prev_hash != expected_prev:
                    raise AuditIntegrityError("Audit chain broken: previous hash mismatch")
                expected_hash = self._event_hash(payload, prev_hash)
                if not hmac.compare_digest(expected_hash, event_hash):
                    raise AuditIntegrityError("Audit chain broken: event hash mismatch")
                expected_prev = event_hash

                if commitment_id and raw.get("commitment_id") != commitment_id:
                    continue
                if agent and raw.get("agent") != agent:
                    continue
                if event_type and raw.get("event_type") != event_type.value:
                    continue

                events.append(
                    AuditEvent(
                        **{
                            k: v
                            for k, v in raw.items()
                            if k in AuditEvent.__dataclass_fields__
                        }
                    )
                )

        return events[-limit:]

    def summary(self, agent: Optional[str] = None) -> dict:
        events = self.read_events(agent=agent, limit=100_000)
        by_type: dict[str, int] = {}
        moved = 0
        for e in events:
            by_type[e.event_type] = by_type.get(e.event_type, 0) + 1
            if e.event_type == EventType.PAYMENT_EXECUTED.value and e.amount:
                moved += e.amount
        return {
            "total_events": len(events),
            "by_type": by_type,
            "total_moved": moved,
            "last_event": events[-1].to_json() if events else None,
        }
