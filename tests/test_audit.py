"""
Test suite for audit module

Tests the hash-chained audit trail, tamper detection and integrity
verification of loan and agent events.
"""

import pytest
from datetime import datetime, timezone
from decimal import Decimal

from field_lending.storage import InMemoryStorage
from field_lending.audit import AuditTrail, AuditEvent, AuditEventType


class TestAuditEvent:
    """Test AuditEvent functionality"""

    def test_metadata_serialization(self):
        """Decimals, datetimes and enums in metadata are stored as JSON values"""
        now = datetime.now(timezone.utc)
        event = AuditEvent(
            id="AUDIT001",
            created_at=now,
            updated_at=now,
            event_type=AuditEventType.LOAN_APPROVED,
            entity_type="loan",
            entity_id="LN-1",
            sequence=0,
            previous_hash="",
            current_hash="",
            metadata={
                "amount_approved": Decimal('10000.00'),
                "approved_at": now,
                "event": AuditEventType.LOAN_SUBMITTED,
                "nested": {"interest": Decimal('1000.00')}
            }
        )

        assert event.metadata["amount_approved"] == "10000.00"
        assert event.metadata["approved_at"] == now.isoformat()
        assert event.metadata["event"] == "loan_submitted"
        assert event.metadata["nested"]["interest"] == "1000.00"

    def test_hash_covers_metadata(self):
        now = datetime.now(timezone.utc)
        event = AuditEvent(
            id="AUDIT002",
            created_at=now,
            updated_at=now,
            event_type=AuditEventType.LOAN_PAYMENT_RECORDED,
            entity_type="loan",
            entity_id="LN-1",
            sequence=0,
            previous_hash="",
            current_hash="",
            metadata={"amount": "100.00"}
        )
        event.current_hash = event.calculate_hash()
        assert event.verify_hash()

        event.metadata["amount"] = "1000.00"
        assert not event.verify_hash()


class TestAuditTrail:
    """Test AuditTrail chaining and queries"""

    def setup_method(self):
        self.storage = InMemoryStorage()
        self.audit = AuditTrail(self.storage)

    def test_events_are_chained(self):
        first = self.audit.log_event(AuditEventType.LOAN_SUBMITTED, "loan", "LN-1")
        second = self.audit.log_event(AuditEventType.LOAN_APPROVED, "loan", "LN-1",
                                      metadata={"amount_approved": Decimal('500.00')})

        assert first.previous_hash == ""
        assert second.previous_hash == first.current_hash
        assert second.sequence == first.sequence + 1

    def test_verify_integrity_valid_chain(self):
        for i in range(5):
            self.audit.log_event(AuditEventType.LOAN_PAYMENT_RECORDED, "loan", "LN-1",
                                 metadata={"amount": Decimal(i + 1)})

        result = self.audit.verify_integrity()
        assert result["valid"]
        assert result["total_events"] == 5
        assert result["hash_errors"] == []
        assert result["chain_breaks"] == []

    def test_tampered_metadata_is_detected(self):
        event = self.audit.log_event(AuditEventType.LOAN_PAYMENT_RECORDED, "loan", "LN-1",
                                     metadata={"amount": "100.00"})
        self.audit.log_event(AuditEventType.LOAN_FULLY_PAID, "loan", "LN-1")

        stored = self.storage.load("audit_events", event.id)
        stored["metadata"]["amount"] = "1.00"
        self.storage.save("audit_events", event.id, stored)

        result = self.audit.verify_integrity()
        assert not result["valid"]
        assert result["hash_errors"][0]["event_id"] == event.id

    def test_deleted_event_breaks_chain(self):
        self.audit.log_event(AuditEventType.LOAN_SUBMITTED, "loan", "LN-1")
        middle = self.audit.log_event(AuditEventType.LOAN_APPROVED, "loan", "LN-1")
        self.audit.log_event(AuditEventType.LOAN_DISBURSED, "loan", "LN-1")

        self.storage.delete("audit_events", middle.id)

        result = self.audit.verify_integrity()
        assert not result["valid"]
        assert len(result["chain_breaks"]) == 1

    def test_chain_resumes_after_restart(self):
        last = self.audit.log_event(AuditEventType.AGENT_CREATED, "agent", "A1")

        reopened = AuditTrail(self.storage)
        event = reopened.log_event(AuditEventType.AGENT_UPDATED, "agent", "A1")

        assert event.previous_hash == last.current_hash
        assert reopened.verify_integrity()["valid"]

    def test_queries(self):
        self.audit.log_event(AuditEventType.LOAN_SUBMITTED, "loan", "LN-1")
        self.audit.log_event(AuditEventType.LOAN_SUBMITTED, "loan", "LN-2")
        self.audit.log_event(AuditEventType.LOAN_REJECTED, "loan", "LN-2")

        events = self.audit.get_events_for_entity("loan", "LN-2")
        assert [e.event_type for e in events] == [AuditEventType.LOAN_SUBMITTED,
                                                  AuditEventType.LOAN_REJECTED]
        assert len(self.audit.get_events_by_type(AuditEventType.LOAN_SUBMITTED)) == 2
        assert len(self.audit.get_events_by_type(AuditEventType.LOAN_SUBMITTED, limit=1)) == 1
        assert self.audit.count_events() == 3
