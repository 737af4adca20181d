"""
Audit Tests
-----------
Tests for the HMAC-chained audit log and the denial emitter.

Tests cover:
- Entry append and typed helpers
- Chain integrity and tamper detection
- Fire-and-forget emission, bounds, flush and failure isolation
- HTTP event publisher
"""

import json
import sqlite3
import threading

import httpx
import pytest
from pathlib import Path

import sys
sys.path.insert(0, str(Path(__file__).parent.parent))

from infra.audit import AuditEntry, AuditLog, EventType, OPERATOR
from infra.event_bus import (
    AuditEmitter,
    AuditLogPublisher,
    HttpEventPublisher,
    build_emitter,
)
from infra.logging import CheckContext

DENIAL = {
    "type": "bash",
    "agentId": "dev",
    "denied": "executable:rm",
    "reason": "Permission denied: agent:dev requires execute on executable:rm",
    "command": "rm -rf build",
}


@pytest.fixture
def db_path(tmp_path):
    return str(tmp_path / "audit.db")


@pytest.fixture
def audit_log(db_path):
    return AuditLog(db_path=db_path, key=b"test-key")


class TestAuditEntry:
    """Tests for AuditEntry basics."""

    def test_entry_defaults(self):
        """Entry has sensible defaults."""
        entry = AuditEntry(action="test")

        assert entry.timestamp is not None
        assert entry.actor == OPERATOR
        assert entry.check_id == "-"

    def test_entry_to_dict(self):
        """Entry serializes with canonical details."""
        entry = AuditEntry(
            event_type=EventType.SCOPE_DENIED,
            actor="dev",
            action="scope",
            target="system:*",
            details={"reason": "x", "command": "permissions grant"},
        )

        data = entry.to_dict()
        assert data["event_type"] == "SCOPE_DENIED"
        assert data["actor"] == "dev"
        assert json.loads(data["details"]) == {"reason": "x", "command": "permissions grant"}


class TestAuditLogAppend:
    """Tests for audit log append operations."""

    def test_log_returns_hash(self, audit_log):
        """log returns the entry hash."""
        entry_hash = audit_log.log(EventType.RELATION_GRANTED, OPERATOR, "use", "tool:Read")

        assert len(entry_hash) == 64
        [entry] = audit_log.get_entries()
        assert entry.entry_hash == entry_hash
        assert entry.prev_hash == AuditLog.GENESIS_HASH

    def test_check_id_from_context(self, audit_log):
        """Entries carry the current check_id."""
        with CheckContext("chk_test123"):
            audit_log.log(EventType.ACCESS_DENIED, "dev", "bash")

        assert audit_log.get_entries()[0].check_id == "chk_test123"

    def test_record_denial_types(self, audit_log):
        """Scope denials and hook denials are told apart."""
        audit_log.record_denial(DENIAL)
        audit_log.record_denial({"type": "scope", "agentId": "dev", "denied": "system:*", "reason": "r"})

        first, second = audit_log.get_entries()
        assert first.event_type == EventType.ACCESS_DENIED
        assert first.actor == "dev"
        assert first.target == "executable:rm"
        assert first.details == {"reason": DENIAL["reason"], "command": "rm -rf build"}
        assert second.event_type == EventType.SCOPE_DENIED
        assert second.details == {"reason": "r"}

    def test_relation_helpers(self, audit_log):
        """Grant, revoke and sync are recorded by the operator."""
        audit_log.record_grant("agent", "dev", "use", "tool", "Read")
        audit_log.record_revoke("agent", "dev", "use", "tool", "Read")
        audit_log.record_sync(agent_count=2, granted=5)

        entries = audit_log.get_entries()
        assert [e.event_type for e in entries] == [
            EventType.RELATION_GRANTED, EventType.RELATION_REVOKED, EventType.RELATIONS_SYNCED,
        ]
        assert entries[0].details == {"subject": "agent:dev"}
        assert entries[2].details == {"agents": 2, "granted": 5}

    def test_filter_by_type(self, audit_log):
        """get_entries can select one event type."""
        audit_log.record_denial(DENIAL)
        audit_log.record_grant("agent", "dev", "use", "tool", "Read")

        entries = audit_log.get_entries(event_type=EventType.RELATION_GRANTED)
        assert len(entries) == 1

    def test_stats(self, audit_log):
        """Stats count entries per type."""
        audit_log.record_denial(DENIAL)
        audit_log.record_denial(DENIAL)

        stats = audit_log.get_stats()
        assert stats["total_entries"] == 2
        assert stats["by_type"] == {"ACCESS_DENIED": 2}

    def test_concurrent_writers_keep_chain(self, audit_log):
        """Writers on several threads never fork the chain."""
        threads = [
            threading.Thread(target=lambda: [audit_log.record_denial(DENIAL) for _ in range(5)])
            for _ in range(4)
        ]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        result = audit_log.verify_chain()
        assert result.valid
        assert result.entries_checked == 20


class TestTamperDetection:
    """Tests for tamper detection."""

    @pytest.fixture
    def filled(self, audit_log):
        for i in range(4):
            audit_log.log(EventType.ACCESS_DENIED, "dev", "bash", f"executable:x{i}")
        return audit_log

    def test_untampered_chain_valid(self, filled):
        """verify_chain returns valid for an untampered log."""
        result = filled.verify_chain()

        assert result.valid
        assert result.entries_checked == 4

    def test_content_modification_detected(self, filled, db_path):
        """Modifying entry content breaks the chain."""
        conn = sqlite3.connect(db_path)
        conn.execute("UPDATE audit_log SET target = 'executable:ls' WHERE id = 2")
        conn.commit()
        conn.close()

        result = filled.verify_chain()
        assert not result.valid
        assert result.broken_at == 2

    def test_deletion_detected(self, filled, db_path):
        """Deleting an entry breaks the link of the next one."""
        conn = sqlite3.connect(db_path)
        conn.execute("DELETE FROM audit_log WHERE id = 3")
        conn.commit()
        conn.close()

        result = filled.verify_chain()
        assert not result.valid
        assert result.broken_at == 4
        assert "prev_hash mismatch" in result.error

    def test_wrong_key_detected(self, filled, db_path):
        """A different key cannot validate the chain."""
        result = AuditLog(db_path=db_path, key=b"other-key").verify_chain()

        assert not result.valid
        assert result.broken_at == 1

    def test_partial_range(self, filled):
        """Verification can start mid-chain."""
        result = filled.verify_chain(from_id=3)

        assert result.valid
        assert result.entries_checked == 2


class RecordingPublisher:
    def __init__(self):
        self.events = []

    def publish(self, event):
        self.events.append(event)


class FailingPublisher:
    def publish(self, event):
        raise RuntimeError("sink down")


class BlockingPublisher:
    def __init__(self):
        self.release = threading.Event()

    def publish(self, event):
        self.release.wait(timeout=5)


class TestAuditEmitter:
    """Tests for fire-and-forget emission."""

    def test_emit_and_flush(self):
        """Events reach publishers by the time flush returns."""
        publisher = RecordingPublisher()
        emitter = AuditEmitter([publisher])

        assert emitter.emit(DENIAL)
        assert emitter.flush(timeout=2.0)

        assert publisher.events == [DENIAL]
        emitter.close()

    def test_no_publishers_is_noop(self):
        """An emitter with no sinks drops silently."""
        emitter = AuditEmitter()

        assert emitter.emit(DENIAL) is False
        assert emitter.dropped == 0
        emitter.close()

    def test_failing_publisher_isolated(self):
        """One failing sink does not stop the others."""
        good = RecordingPublisher()
        emitter = AuditEmitter([FailingPublisher(), good])

        emitter.emit(DENIAL)
        emitter.flush(timeout=2.0)

        assert good.events == [DENIAL]
        assert emitter.failed == 1
        emitter.close()

    def test_backlog_bound_drops(self):
        """Events beyond max_in_flight are dropped, never queued."""
        blocker = BlockingPublisher()
        emitter = AuditEmitter([blocker], max_in_flight=2, max_workers=1)

        assert emitter.emit(DENIAL)
        assert emitter.emit(DENIAL)
        assert emitter.emit(DENIAL) is False
        assert emitter.dropped == 1

        blocker.release.set()
        assert emitter.flush(timeout=5.0)
        emitter.close()

    def test_flush_timeout(self):
        """flush reports events still pending."""
        blocker = BlockingPublisher()
        emitter = AuditEmitter([blocker], max_workers=1)

        emitter.emit(DENIAL)
        assert emitter.flush(timeout=0.05) is False

        blocker.release.set()
        assert emitter.close(timeout=5.0)

    def test_emit_after_close_dropped(self):
        """A closed emitter refuses new events."""
        emitter = AuditEmitter([RecordingPublisher()])
        emitter.close()

        assert emitter.emit(DENIAL) is False
        assert emitter.dropped == 1

    def test_audit_log_publisher(self, audit_log):
        """Denials land in the chained log."""
        emitter = AuditEmitter([AuditLogPublisher(audit_log)])

        emitter.emit(DENIAL)
        emitter.close(timeout=2.0)

        [entry] = audit_log.get_entries()
        assert entry.target == "executable:rm"
        assert audit_log.verify_chain().valid

    def test_build_emitter(self, audit_log):
        """build_emitter wires the configured sinks."""
        emitter = build_emitter(audit_log=audit_log)

        emitter.emit(DENIAL)
        emitter.close(timeout=2.0)

        assert audit_log.get_stats()["total_entries"] == 1


class TestHttpEventPublisher:
    """Tests for the event bus publisher."""

    def test_posts_topic_and_data(self):
        """The event is wrapped in a topic envelope."""
        seen = []

        def handler(request):
            seen.append(json.loads(request.content))
            return httpx.Response(202)

        publisher = HttpEventPublisher("http://bus.local/events")
        publisher._client = httpx.Client(transport=httpx.MockTransport(handler))

        publisher.publish(DENIAL)
        publisher.close()

        assert seen == [{"topic": "gatekeeper.audit.denied", "data": DENIAL}]

    def test_error_status_raises(self):
        """Non-2xx responses count as failed deliveries."""
        publisher = HttpEventPublisher("http://bus.local/events")
        publisher._client = httpx.Client(transport=httpx.MockTransport(lambda r: httpx.Response(500)))

        emitter = AuditEmitter([publisher])
        emitter.emit(DENIAL)
        emitter.close(timeout=2.0)

        assert emitter.failed == 1
