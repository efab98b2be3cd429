"""
Tests for idempotent retries of mutating operations
"""

import pytest

from bank_engine.config import EngineConfig
from bank_engine.errors import ConflictError, InsufficientFundsError, InvalidTransitionError
from bank_engine.idempotency import IdempotencyStore
from bank_engine.lifecycle import ResourceKind
from bank_engine.accounts import AccountStatus
from bank_engine.rbac import Principal, Role
from bank_engine.storage import InMemoryStorage
from bank_engine.system import BankingEngine
from bank_engine.transfers import TransferStatus


ADMIN = Principal("admin-1", Role.ADMIN)
OTHER_ADMIN = Principal("admin-2", Role.ADMIN)
ALICE = Principal("alice")

EXTERNAL_IBAN = "DE89370400440532013000"


class TestIdempotencyStore:
    """Test the keyed outcome store"""
    
    def setup_method(self):
        self.store = IdempotencyStore(InMemoryStorage())
    
    def test_unused_key(self):
        assert self.store.lookup("key-1", "alice", "create:account") is None
    
    def test_no_key_disables_tracking(self):
        self.store.record(None, "alice", "create:account", "ACCOUNT", {"id": "a1"})
        assert self.store.lookup(None, "alice", "create:account") is None
    
    def test_recorded_outcome(self):
        self.store.record("key-1", "alice", "create:account", "ACCOUNT", {"id": "a1"})
        
        previous = self.store.lookup("key-1", "alice", "create:account")
        assert previous.result == {"id": "a1"}
        assert previous.kind == "ACCOUNT"
    
    def test_key_reused_for_other_operation(self):
        self.store.record("key-1", "alice", "create:account", "ACCOUNT", {"id": "a1"})
        with pytest.raises(ConflictError):
            self.store.lookup("key-1", "alice", "create:loan")
    
    def test_keys_are_scoped_per_principal(self):
        self.store.record("key-1", "alice", "create:account", "ACCOUNT", {"id": "a1"})
        assert self.store.lookup("key-1", "bob", "create:loan") is None


class TestIdempotentOperations:
    """Retried engine calls apply once"""
    
    def setup_method(self):
        self.storage = InMemoryStorage()
        self.engine = BankingEngine(storage=self.storage, config=EngineConfig(database_url="memory://"))
        self.lifecycle = self.engine.lifecycle
    
    def test_create_retry_returns_same_record(self):
        first = self.engine.create_account(ALICE, {"type": "CHECKING"}, idempotency_key="open-1")
        second = self.engine.create_account(ALICE, {"type": "CHECKING"}, idempotency_key="open-1")
        
        assert second.id == first.id
        assert second.iban == first.iban
        assert self.storage.count("accounts") == 1
    
    def test_approve_retry_does_not_fail(self):
        """A retried approve after a dropped response returns the approved record"""
        account = self.engine.create_account(ALICE, {"type": "CHECKING"})
        
        first = self.lifecycle.approve(ResourceKind.ACCOUNT, account.id, ADMIN, idempotency_key="approve-1")
        retry = self.lifecycle.approve(ResourceKind.ACCOUNT, account.id, ADMIN, idempotency_key="approve-1")
        
        assert first.status == AccountStatus.ACTIVE
        assert retry.status == AccountStatus.ACTIVE
        assert retry.version == first.version == 1
        
        # Without the key the second call is a genuine, invalid transition
        with pytest.raises(InvalidTransitionError):
            self.lifecycle.approve(ResourceKind.ACCOUNT, account.id, ADMIN)
    
    def test_key_reused_for_different_resource(self):
        first = self.engine.create_account(ALICE, {"type": "CHECKING"})
        second = self.engine.create_account(ALICE, {"type": "CHECKING"})
        self.lifecycle.approve(ResourceKind.ACCOUNT, first.id, ADMIN, idempotency_key="k")
        
        with pytest.raises(ConflictError):
            self.lifecycle.approve(ResourceKind.ACCOUNT, second.id, ADMIN, idempotency_key="k")
        assert self.lifecycle.get(ResourceKind.ACCOUNT, second.id, ADMIN).status == AccountStatus.PENDING
    
    def test_failed_operation_can_be_retried_with_same_key(self):
        account = self.engine.create_account(ALICE, {"type": "CHECKING"})
        
        with pytest.raises(InvalidTransitionError):
            self.lifecycle.toggle_status(ResourceKind.ACCOUNT, account.id, ALICE, idempotency_key="t-1")
        
        self.lifecycle.approve(ResourceKind.ACCOUNT, account.id, ADMIN)
        toggled = self.lifecycle.toggle_status(ResourceKind.ACCOUNT, account.id, ALICE, idempotency_key="t-1")
        assert toggled.status == AccountStatus.FROZEN
    
    def test_process_retry_never_double_debits(self):
        account = self.engine.create_account(ALICE, {"type": "CHECKING"})
        self.lifecycle.approve(ResourceKind.ACCOUNT, account.id, ADMIN)
        self.lifecycle.update(ResourceKind.ACCOUNT, account.id, ADMIN, {"balance": "100"})
        transfer = self.engine.create_transfer(ALICE, {
            "from_account_id": account.id, "to_iban": EXTERNAL_IBAN, "amount": "10"
        })
        
        first = self.engine.process_transfer(transfer.id, ADMIN, idempotency_key="p-1")
        retry = self.engine.process_transfer(transfer.id, ADMIN, idempotency_key="p-1")
        
        assert first.status == retry.status == TransferStatus.COMPLETED
        balance = self.lifecycle.get(ResourceKind.ACCOUNT, account.id, ADMIN).balance
        assert str(balance.amount) == "89.50"
    
    def test_insufficient_funds_is_not_recorded(self):
        account = self.engine.create_account(ALICE, {"type": "CHECKING"})
        self.lifecycle.approve(ResourceKind.ACCOUNT, account.id, ADMIN)
        transfer = self.engine.create_transfer(ALICE, {
            "from_account_id": account.id, "to_iban": EXTERNAL_IBAN, "amount": "10"
        })
        
        with pytest.raises(InsufficientFundsError):
            self.engine.process_transfer(transfer.id, ADMIN, idempotency_key="p-2")
        with pytest.raises(InvalidTransitionError):
            self.engine.process_transfer(transfer.id, ADMIN, idempotency_key="p-2")
    
    def test_permanent_delete_retry(self):
        account = self.engine.create_account(ALICE, {"type": "CHECKING"})
        
        assert self.lifecycle.permanent_delete(ResourceKind.ACCOUNT, account.id, ADMIN, idempotency_key="d-1") is None
        assert self.lifecycle.permanent_delete(ResourceKind.ACCOUNT, account.id, ADMIN, idempotency_key="d-1") is None
        assert not self.storage.exists("accounts", account.id)
    
    def test_keys_do_not_leak_between_admins(self):
        account = self.engine.create_account(ALICE, {"type": "CHECKING"})
        self.lifecycle.approve(ResourceKind.ACCOUNT, account.id, ADMIN, idempotency_key="same")
        
        with pytest.raises(InvalidTransitionError):
            self.lifecycle.approve(ResourceKind.ACCOUNT, account.id, OTHER_ADMIN, idempotency_key="same")
