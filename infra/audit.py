"""
Immutable Audit Log
-------------------
HMAC-chained audit trail for permission decisions and relation changes.

Trust Boundary:
- Tamper-evident, NOT tamper-proof
- Assumes HMAC key protected at OS/process boundary
- Attacker with DB + key access can recompute chain

Design:
- Append-only (no UPDATE, no DELETE in code)
- HMAC chain for ordering integrity
- Canonical JSON serialization for determinism
- check_id for tracing a denial back to its log records
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional
import hashlib
import hmac
import json
import os
import platform
import sqlite3
import threading

from infra.logging import get_check_id, get_logger

AUDIT_KEY_ENV = "GATEKEEPER_AUDIT_KEY"


class EventType(str, Enum):
    """Audit event types."""
    ACCESS_DENIED = "ACCESS_DENIED"        # Hook denied a tool or bash call
    SCOPE_DENIED = "SCOPE_DENIED"          # Enforcer denied a CLI command
    RELATION_GRANTED = "RELATION_GRANTED"
    RELATION_REVOKED = "RELATION_REVOKED"
    RELATIONS_SYNCED = "RELATIONS_SYNCED"


OPERATOR = "operator"


@dataclass
class AuditEntry:
    """
    A single audit log entry.

    Each entry contains:
    - check_id for correlation with log records
    - Event details (type, actor, action, target)
    - prev_hash for chain integrity
    - entry_hash (HMAC) for tamper detection
    """
    id: Optional[int] = None
    check_id: str = "-"
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    event_type: EventType = EventType.ACCESS_DENIED
    actor: str = OPERATOR
    action: str = ""
    target: Optional[str] = None
    details: Optional[Dict[str, Any]] = None
    prev_hash: str = ""
    entry_hash: str = ""

    def to_dict(self) -> Dict[str, Any]:
        """Serialize for storage and export."""
        return {
            "id": self.id,
            "check_id": self.check_id,
            "timestamp": self.timestamp.isoformat(),
            "event_type": self.event_type.value,
            "actor": self.actor,
            "action": self.action,
            "target": self.target,
            "details": json.dumps(self.details, sort_keys=True) if self.details else None,
            "prev_hash": self.prev_hash,
            "entry_hash": self.entry_hash,
        }

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "AuditEntry":
        details = None
        if row["details"]:
            try:
                details = json.loads(row["details"])
            except json.JSONDecodeError:
                details = {"_raw": row["details"]}

        return cls(
            id=row["id"],
            check_id=row["check_id"],
            timestamp=datetime.fromisoformat(row["timestamp"]),
            event_type=EventType(row["event_type"]),
            actor=row["actor"],
            action=row["action"],
            target=row["target"],
            details=details,
            prev_hash=row["prev_hash"] or "",
            entry_hash=row["entry_hash"],
        )


@dataclass
class VerifyResult:
    """Result of chain verification."""
    valid: bool
    entries_checked: int
    broken_at: Optional[int] = None  # Entry ID where chain broke
    expected_hash: Optional[str] = None
    actual_hash: Optional[str] = None
    error: Optional[str] = None


class AuditLog:
    """
    Append-only audit log with HMAC chain verification.

    Writers may call from any thread (the audit emitter runs publishers on a
    pool); reading the previous hash and inserting happen under one lock so
    the chain never forks.
    """

    GENESIS_HASH = "0" * 64

    def __init__(self, db_path: str = "gatekeeper.db", key: Optional[bytes] = None):
        self._db_path = db_path
        self._logger = get_logger("infra.audit")
        self._lock = threading.Lock()
        self._key = key or self._load_key()
        self._ensure_schema()

    @property
    def db_path(self) -> str:
        return self._db_path

    def _load_key(self) -> bytes:
        """
        Load HMAC key from the environment or derive it from machine identity.

        The derived key is deterministic per machine, good enough for
        development; production sets GATEKEEPER_AUDIT_KEY.
        """
        env_key = os.environ.get(AUDIT_KEY_ENV)
        if env_key:
            return env_key.encode("utf-8")

        machine_id = f"{platform.node()}-{platform.machine()}-gatekeeper-audit"
        return hashlib.sha256(machine_id.encode()).digest()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self._db_path)
        conn.row_factory = sqlite3.Row
        return conn

    def _ensure_schema(self) -> None:
        Path(self._db_path).parent.mkdir(parents=True, exist_ok=True)
        conn = self._connect()
        try:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS audit_log (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    check_id TEXT NOT NULL,
                    timestamp TEXT NOT NULL,
                    event_type TEXT NOT NULL,
                    actor TEXT NOT NULL,
                    action TEXT NOT NULL,
                    target TEXT,
                    details TEXT,
                    prev_hash TEXT,
                    entry_hash TEXT NOT NULL
                )
            """)
            conn.execute("CREATE INDEX IF NOT EXISTS idx_audit_actor ON audit_log(actor)")
            conn.execute("CREATE INDEX IF NOT EXISTS idx_audit_timestamp ON audit_log(timestamp)")
            conn.commit()
            self._logger.debug("Audit log schema ensured")
        finally:
            conn.close()

    def _canonical_payload(self, entry: AuditEntry, prev_hash: str) -> bytes:
        """Fixed field set, sorted keys, compact separators, UTF-8."""
        payload = {
            "prev_hash": prev_hash,
            "check_id": entry.check_id,
            "timestamp": entry.timestamp.isoformat(),
            "event_type": entry.event_type.value,
            "actor": entry.actor,
            "action": entry.action,
            "target": entry.target,
            "details": entry.details,
        }
        return json.dumps(payload, sort_keys=True, separators=(",", ":")).encode("utf-8")

    def _compute_hash(self, entry: AuditEntry, prev_hash: str) -> str:
        return hmac.new(self._key, self._canonical_payload(entry, prev_hash), hashlib.sha256).hexdigest()

    def _get_last_hash(self, conn: sqlite3.Connection) -> str:
        row = conn.execute("SELECT entry_hash FROM audit_log ORDER BY id DESC LIMIT 1").fetchone()
        return row[0] if row else self.GENESIS_HASH

    def log(
        self,
        event_type: EventType,
        actor: Optional[str],
        action: str,
        target: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        check_id: Optional[str] = None,
    ) -> str:
        """
        Append an entry to the audit log.

        Returns the entry_hash.
        """
        entry = AuditEntry(
            check_id=check_id or get_check_id() or "-",
            timestamp=datetime.now(timezone.utc),
            event_type=event_type,
            actor=actor or OPERATOR,
            action=action,
            target=target,
            details=details,
        )

        with self._lock:
            conn = self._connect()
            try:
                entry.prev_hash = self._get_last_hash(conn)
                entry.entry_hash = self._compute_hash(entry, entry.prev_hash)

                row = entry.to_dict()
                cursor = conn.execute("""
                    INSERT INTO audit_log
                    (check_id, timestamp, event_type, actor, action, target, details, prev_hash, entry_hash)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """, (
                    row["check_id"], row["timestamp"], row["event_type"], row["actor"],
                    row["action"], row["target"], row["details"], row["prev_hash"], row["entry_hash"],
                ))
                conn.commit()
                entry.id = cursor.lastrowid
            finally:
                conn.close()

        self._logger.debug(f"Audit: {entry.event_type.value} | {entry.actor} | {entry.action}")
        return entry.entry_hash

    # Typed helpers used by the relation store and the audit emitter

    def record_denial(self, event: Dict[str, Any]) -> str:
        """Persist a denial event ({type, agentId, denied, reason, command?})."""
        event_type = EventType.SCOPE_DENIED if event.get("type") == "scope" else EventType.ACCESS_DENIED
        details = {"reason": event.get("reason")}
        if event.get("command"):
            details["command"] = event["command"]
        return self.log(
            event_type,
            actor=event.get("agentId"),
            action=event.get("type", "denied"),
            target=event.get("denied"),
            details=details,
        )

    def record_grant(self, subject_type: str, subject_id: str, relation: str,
                     object_type: str, object_id: str) -> str:
        return self.log(
            EventType.RELATION_GRANTED,
            actor=OPERATOR,
            action=relation,
            target=f"{object_type}:{object_id}",
            details={"subject": f"{subject_type}:{subject_id}"},
        )

    def record_revoke(self, subject_type: str, subject_id: str, relation: str,
                      object_type: str, object_id: str) -> str:
        return self.log(
            EventType.RELATION_REVOKED,
            actor=OPERATOR,
            action=relation,
            target=f"{object_type}:{object_id}",
            details={"subject": f"{subject_type}:{subject_id}"},
        )

    def record_sync(self, agent_count: int, granted: int) -> str:
        return self.log(
            EventType.RELATIONS_SYNCED,
            actor=OPERATOR,
            action="sync",
            details={"agents": agent_count, "granted": granted},
        )

    def get_entries(
        self,
        from_id: int = 1,
        to_id: Optional[int] = None,
        limit: int = 1000,
        event_type: Optional[EventType] = None,
    ) -> List[AuditEntry]:
        """Get entries in an id range, optionally of one type."""
        sql = "SELECT * FROM audit_log WHERE id >= ?"
        params: List[Any] = [from_id]
        if to_id:
            sql += " AND id <= ?"
            params.append(to_id)
        if event_type is not None:
            sql += " AND event_type = ?"
            params.append(event_type.value)
        sql += " ORDER BY id LIMIT ?"
        params.append(limit)

        conn = self._connect()
        try:
            return [AuditEntry.from_row(row) for row in conn.execute(sql, params).fetchall()]
        finally:
            conn.close()

    def verify_chain(self, from_id: int = 1, to_id: Optional[int] = None) -> VerifyResult:
        """
        Verify HMAC chain integrity.

        Returns VerifyResult with:
        - valid: True if chain is intact
        - broken_at: Entry ID where chain broke (if any)
        """
        conn = self._connect()
        try:
            if to_id:
                cursor = conn.execute(
                    "SELECT * FROM audit_log WHERE id >= ? AND id <= ? ORDER BY id",
                    (from_id, to_id)
                )
            else:
                cursor = conn.execute(
                    "SELECT * FROM audit_log WHERE id >= ? ORDER BY id",
                    (from_id,)
                )
            entries = [AuditEntry.from_row(row) for row in cursor.fetchall()]

            if not entries:
                return VerifyResult(valid=True, entries_checked=0)

            if from_id == 1:
                expected_prev_hash = self.GENESIS_HASH
            else:
                prev_row = conn.execute(
                    "SELECT entry_hash FROM audit_log WHERE id = ?", (from_id - 1,)
                ).fetchone()
                expected_prev_hash = prev_row[0] if prev_row else self.GENESIS_HASH
        finally:
            conn.close()

        for checked, entry in enumerate(entries):
            if entry.prev_hash != expected_prev_hash:
                return VerifyResult(
                    valid=False,
                    entries_checked=checked,
                    broken_at=entry.id,
                    expected_hash=expected_prev_hash,
                    actual_hash=entry.prev_hash,
                    error=f"prev_hash mismatch at entry {entry.id}",
                )

            computed = self._compute_hash(entry, entry.prev_hash)
            if entry.entry_hash != computed:
                return VerifyResult(
                    valid=False,
                    entries_checked=checked,
                    broken_at=entry.id,
                    expected_hash=computed,
                    actual_hash=entry.entry_hash,
                    error=f"entry_hash mismatch at entry {entry.id}",
                )

            expected_prev_hash = entry.entry_hash

        return VerifyResult(valid=True, entries_checked=len(entries))

    def get_stats(self) -> Dict[str, Any]:
        """Get audit log statistics."""
        conn = self._connect()
        try:
            count = conn.execute("SELECT COUNT(*) AS count FROM audit_log").fetchone()["count"]
            row = conn.execute(
                "SELECT MIN(timestamp) AS first, MAX(timestamp) AS last FROM audit_log"
            ).fetchone()
            by_type = {
                r["event_type"]: r["count"]
                for r in conn.execute(
                    "SELECT event_type, COUNT(*) AS count FROM audit_log GROUP BY event_type"
                ).fetchall()
            }
            return {
                "total_entries": count,
                "first_entry": row["first"],
                "last_entry": row["last"],
                "by_type": by_type,
            }
        finally:
            conn.close()
