"""
Test suite for the audit trail

Covers hash chaining, tamper detection and the audit events written by
lifecycle and ledger operations.
"""

import pytest
from datetime import datetime, timezone

from bank_engine.audit import AuditTrail, AuditEvent, AuditEventType
from bank_engine.config import EngineConfig
from bank_engine.errors import InvalidTransitionError
from bank_engine.lifecycle import ResourceKind
from bank_engine.rbac import Principal, Role
from bank_engine.storage import InMemoryStorage
from bank_engine.system import BankingEngine


ADMIN = Principal("admin-1", Role.ADMIN)
ALICE = Principal("alice")


class TestAuditEvent:
    """Test AuditEvent hashing"""
    
    def _event(self, **overrides):
        now = datetime.now(timezone.utc)
        fields = dict(
            id="evt_001",
            created_at=now,
            updated_at=now,
            sequence=1,
            event_type=AuditEventType.RESOURCE_CREATED,
            entity_type="account",
            entity_id="acc_001",
            previous_hash="",
            current_hash="",
            metadata={"status": "PENDING"},
            user_id="alice"
        )
        fields.update(overrides)
        return AuditEvent(**fields)
    
    def test_hash_verification(self):
        event = self._event()
        event.current_hash = event.calculate_hash()
        assert event.verify_hash()
        
        event.metadata["status"] = "ACTIVE"
        assert not event.verify_hash()
    
    def test_hash_depends_on_previous_hash(self):
        first = self._event()
        second = self._event(previous_hash="abc")
        assert first.calculate_hash() != second.calculate_hash()
    
    def test_round_trip(self):
        event = self._event()
        event.current_hash = event.calculate_hash()
        restored = AuditEvent.from_dict(event.to_dict())
        
        assert restored.event_type == AuditEventType.RESOURCE_CREATED
        assert restored.verify_hash()


class TestAuditTrail:
    """Test AuditTrail chaining and integrity checks"""
    
    def setup_method(self):
        self.storage = InMemoryStorage()
        self.audit_trail = AuditTrail(self.storage)
    
    def test_log_multiple_events_chain(self):
        first = self.audit_trail.log_event(AuditEventType.RESOURCE_CREATED, "account", "a1")
        second = self.audit_trail.log_event(AuditEventType.RESOURCE_APPROVED, "account", "a1")
        
        assert first.sequence == 1
        assert first.previous_hash == ""
        assert second.sequence == 2
        assert second.previous_hash == first.current_hash
    
    def test_verify_integrity_valid_chain(self):
        for i in range(5):
            self.audit_trail.log_event(AuditEventType.RESOURCE_CREATED, "loan", f"l{i}")
        
        result = self.audit_trail.verify_integrity()
        assert result['valid']
        assert result['total_events'] == 5
    
    def test_verify_integrity_detects_hash_tampering(self):
        event = self.audit_trail.log_event(AuditEventType.BALANCE_CREDITED, "account", "a1",
                                           metadata={"amount": "EUR 10.00"})
        data = self.storage.load("audit_events", event.id)
        data['metadata']['amount'] = "EUR 10000.00"
        self.storage.save("audit_events", event.id, data)
        
        result = self.audit_trail.verify_integrity()
        assert not result['valid']
        assert len(result['hash_errors']) == 1
    
    def test_verify_integrity_detects_chain_break(self):
        self.audit_trail.log_event(AuditEventType.RESOURCE_CREATED, "card", "c1")
        middle = self.audit_trail.log_event(AuditEventType.RESOURCE_APPROVED, "card", "c1")
        self.audit_trail.log_event(AuditEventType.RESOURCE_CANCELLED, "card", "c1")
        self.storage.delete("audit_events", middle.id)
        
        result = self.audit_trail.verify_integrity()
        assert not result['valid']
        assert len(result['chain_breaks']) == 1
    
    def test_disabled_trail_logs_nothing(self):
        trail = AuditTrail(self.storage, enabled=False)
        assert trail.log_event(AuditEventType.RESOURCE_CREATED, "account", "a1") is None
        assert trail.count_events() == 0
    
    def test_events_by_entity_and_type(self):
        self.audit_trail.log_event(AuditEventType.RESOURCE_CREATED, "account", "a1")
        self.audit_trail.log_event(AuditEventType.RESOURCE_CREATED, "account", "a2")
        self.audit_trail.log_event(AuditEventType.RESOURCE_APPROVED, "account", "a1")
        
        assert len(self.audit_trail.get_events_for_entity("account", "a1")) == 2
        assert len(self.audit_trail.get_events_for_entity("account", "a1", limit=1)) == 1
        assert len(self.audit_trail.get_events_by_type(AuditEventType.RESOURCE_CREATED)) == 2


class TestEngineAuditing:
    """Audit events written by engine operations"""
    
    def setup_method(self):
        self.storage = InMemoryStorage()
        self.engine = BankingEngine(storage=self.storage, config=EngineConfig(database_url="memory://"))
    
    def test_lifecycle_events(self):
        account = self.engine.create_account(ALICE, {"type": "CHECKING"})
        self.engine.lifecycle.approve(ResourceKind.ACCOUNT, account.id, ADMIN)
        self.engine.lifecycle.toggle_status(ResourceKind.ACCOUNT, account.id, ALICE)
        
        events = self.engine.audit_trail.get_events_for_entity("account", account.id)
        assert [e.event_type for e in events] == [
            AuditEventType.RESOURCE_CREATED,
            AuditEventType.RESOURCE_APPROVED,
            AuditEventType.RESOURCE_STATUS_TOGGLED,
        ]
        assert events[1].user_id == ADMIN.user_id
        assert events[1].metadata == {"previous_status": "PENDING", "new_status": "ACTIVE"}
        assert self.engine.verify_audit_integrity()['valid']
    
    def test_failed_operations_leave_no_events(self):
        account = self.engine.create_account(ALICE, {"type": "CHECKING"})
        before = self.engine.audit_trail.count_events()
        
        with pytest.raises(InvalidTransitionError):
            self.engine.lifecycle.toggle_status(ResourceKind.ACCOUNT, account.id, ADMIN)
        
        assert self.engine.audit_trail.count_events() == before
    
    def test_transfer_events(self):
        source = self.engine.create_account(ALICE, {"type": "CHECKING"})
        destination = self.engine.create_account(ALICE, {"type": "SAVINGS"})
        for account in (source, destination):
            self.engine.lifecycle.approve(ResourceKind.ACCOUNT, account.id, ADMIN)
        self.engine.lifecycle.update(ResourceKind.ACCOUNT, source.id, ADMIN, {"balance": "100"})
        
        transfer = self.engine.create_transfer(ALICE, {
            "from_account_id": source.id, "to_account_id": destination.id, "amount": "25"
        })
        self.engine.process_transfer(transfer.id, ADMIN)
        
        transfer_events = self.engine.audit_trail.get_events_for_entity("transfer", transfer.id)
        assert [e.event_type for e in transfer_events] == [
            AuditEventType.TRANSFER_CREATED, AuditEventType.TRANSFER_COMPLETED
        ]
        assert len(self.engine.audit_trail.get_events_by_type(AuditEventType.BALANCE_DEBITED)) == 1
        assert len(self.engine.audit_trail.get_events_by_type(AuditEventType.BALANCE_CREDITED)) == 1
        assert self.engine.verify_audit_integrity()['valid']
    
    def test_audit_can_be_disabled(self):
        engine = BankingEngine(storage=InMemoryStorage(), config=EngineConfig(
            database_url="memory://", enable_audit_logging=False
        ))
        engine.create_account(ALICE, {"type": "CHECKING"})
        assert engine.audit_trail.count_events() == 0
