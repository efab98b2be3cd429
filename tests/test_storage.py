"""
Tests for storage backends, transactions and compare-and-swap writes
"""

import pytest
import tempfile
from datetime import datetime, timezone
from pathlib import Path

from bank_engine.errors import ConcurrencyError, NotFoundError
from bank_engine.lifecycle import ResourceKind
from bank_engine.rbac import Principal, Role
from bank_engine.storage import (
    InMemoryStorage, SQLiteStorage, StorageRecord, create_storage
)
from bank_engine.system import BankingEngine


# Test data
test_data = {
    "id": "test_001",
    "name": "Test Record",
    "amount": "100.50",
    "version": 0,
    "created_at": datetime.now(timezone.utc).isoformat(),
    "updated_at": datetime.now(timezone.utc).isoformat()
}


def _exercise_crud(storage):
    # Save and load
    storage.save("test_table", "record_1", test_data)
    loaded = storage.load("test_table", "record_1")
    assert loaded == test_data
    
    # Exists
    assert storage.exists("test_table", "record_1")
    assert not storage.exists("test_table", "non_existent")
    
    # Load all
    storage.save("test_table", "record_2", {"id": "record_2", "data": "test"})
    assert len(storage.load_all("test_table")) == 2
    
    # Find
    results = storage.find("test_table", {"id": "test_001"})
    assert len(results) == 1
    assert results[0]["id"] == "test_001"
    assert storage.find("test_table", {"missing_key": "x"}) == []
    
    # Count and delete
    assert storage.count("test_table") == 2
    assert storage.delete("test_table", "record_1")
    assert not storage.delete("test_table", "record_1")
    assert storage.count("test_table") == 1
    
    # Clear
    storage.clear_table("test_table")
    assert storage.count("test_table") == 0


class TestStorageInterface:
    """Test basic CRUD on both backends"""
    
    def test_in_memory_storage_basic_operations(self):
        storage = InMemoryStorage()
        _exercise_crud(storage)
        storage.close()
    
    def test_sqlite_storage_basic_operations(self):
        with tempfile.TemporaryDirectory() as temp_dir:
            storage = SQLiteStorage(Path(temp_dir) / "test.db")
            _exercise_crud(storage)
            storage.close()
    
    def test_in_memory_returns_copies(self):
        """Mutating a loaded record never changes the stored one"""
        storage = InMemoryStorage()
        storage.save("test_table", "record_1", test_data)
        
        loaded = storage.load("test_table", "record_1")
        loaded["name"] = "Changed"
        
        assert storage.load("test_table", "record_1")["name"] == "Test Record"


class TestCompareAndSwap:
    """Test version-guarded writes"""
    
    def _check_backend(self, storage):
        storage.save("accounts", "acc_1", {"id": "acc_1", "balance": "10.00", "version": 0})
        
        # Matching version wins and bumps
        assert storage.compare_and_swap("accounts", "acc_1", 0,
                                        {"id": "acc_1", "balance": "20.00", "version": 1})
        assert storage.load("accounts", "acc_1")["balance"] == "20.00"
        
        # A stale version loses and leaves the record alone
        assert not storage.compare_and_swap("accounts", "acc_1", 0,
                                            {"id": "acc_1", "balance": "99.00", "version": 1})
        assert storage.load("accounts", "acc_1")["balance"] == "20.00"
        
        # Missing records never swap
        assert not storage.compare_and_swap("accounts", "missing", 0, {"id": "missing", "version": 1})
        assert not storage.exists("accounts", "missing")
    
    def test_in_memory_compare_and_swap(self):
        self._check_backend(InMemoryStorage())
    
    def test_sqlite_compare_and_swap(self):
        with tempfile.TemporaryDirectory() as temp_dir:
            storage = SQLiteStorage(Path(temp_dir) / "test.db")
            self._check_backend(storage)
            storage.close()
    
    def test_records_without_version_count_as_zero(self):
        storage = InMemoryStorage()
        storage.save("accounts", "acc_1", {"id": "acc_1"})
        assert storage.compare_and_swap("accounts", "acc_1", 0, {"id": "acc_1", "version": 1})


class TestTransactionSupport:
    """Test atomic transaction support"""
    
    def test_in_memory_commit_and_rollback(self):
        """A failed atomic block restores every table"""
        storage = InMemoryStorage()
        
        with storage.atomic():
            storage.save("test_table", "record_1", test_data)
        assert storage.count("test_table") == 1
        
        with pytest.raises(ValueError):
            with storage.atomic():
                storage.save("test_table", "record_2", {"id": "record_2"})
                storage.delete("test_table", "record_1")
                storage.save("other_table", "x", {"id": "x"})
                raise ValueError("Simulated error")
        
        assert storage.exists("test_table", "record_1")
        assert not storage.exists("test_table", "record_2")
        assert storage.count("other_table") == 0
    
    def test_in_memory_nested_rollback(self):
        """An inner failure propagating out rolls back the outer block too"""
        storage = InMemoryStorage()
        
        with pytest.raises(RuntimeError):
            with storage.atomic():
                storage.save("test_table", "outer", {"id": "outer"})
                with storage.atomic():
                    storage.save("test_table", "inner", {"id": "inner"})
                    raise RuntimeError("inner failure")
        
        assert storage.count("test_table") == 0
    
    def test_sqlite_commit_and_rollback(self):
        with tempfile.TemporaryDirectory() as temp_dir:
            storage = SQLiteStorage(Path(temp_dir) / "test.db")
            
            with storage.atomic():
                storage.save("test_table", "record_1", test_data)
                storage.save("test_table", "record_2", {"id": "record_2", "data": "test"})
            assert storage.count("test_table") == 2
            
            with pytest.raises(ValueError):
                with storage.atomic():
                    storage.save("test_table", "record_3", {"id": "record_3"})
                    storage.delete("test_table", "record_1")
                    raise ValueError("Simulated error")
            
            assert storage.count("test_table") == 2
            assert storage.exists("test_table", "record_1")
            assert not storage.exists("test_table", "record_3")
            storage.close()
    
    def test_sqlite_table_created_in_rolled_back_transaction(self):
        """A table first touched by a rolled-back transaction is recreated on next use"""
        with tempfile.TemporaryDirectory() as temp_dir:
            storage = SQLiteStorage(Path(temp_dir) / "test.db")
    
            with pytest.raises(ValueError):
                with storage.atomic():
                    assert storage.load("fresh_table", "missing") is None
                    raise ValueError("Simulated error")
    
            assert storage.load_all("fresh_table") == []
            storage.save("fresh_table", "record_1", test_data)
            assert storage.load("fresh_table", "record_1") == test_data
            storage.close()
    
    def test_sqlite_table_created_in_committed_transaction(self):
        with tempfile.TemporaryDirectory() as temp_dir:
            storage = SQLiteStorage(Path(temp_dir) / "test.db")
            with storage.atomic():
                with storage.atomic():
                    storage.save("fresh_table", "record_1", test_data)
    
            assert storage.count("fresh_table") == 1
            storage.close()
    
    def test_failed_lookup_does_not_break_engine(self):
        """A NotFoundError on a fresh database leaves later operations working"""
        with tempfile.TemporaryDirectory() as temp_dir:
            engine = BankingEngine(storage=SQLiteStorage(Path(temp_dir) / "bank.db"))
            admin = Principal("admin-1", Role.ADMIN)
    
            with pytest.raises(NotFoundError):
                engine.lifecycle.approve(ResourceKind.ACCOUNT, "missing", admin)
    
            account = engine.create_account(Principal("alice"), {"type": "CHECKING"})
            assert engine.lifecycle.approve(ResourceKind.ACCOUNT, account.id, admin).status.value == "ACTIVE"
            engine.close()
    
    def test_sqlite_persists_across_connections(self):
        with tempfile.TemporaryDirectory() as temp_dir:
            db_path = Path(temp_dir) / "test.db"
            storage = SQLiteStorage(db_path)
            with storage.atomic():
                storage.save("test_table", "record_1", test_data)
            storage.close()
            
            reopened = SQLiteStorage(db_path)
            assert reopened.load("test_table", "record_1") == test_data
            reopened.close()
    
    def test_sqlite_lock_timeout_is_retryable(self):
        """A writer blocked past the busy timeout surfaces ConcurrencyError"""
        with tempfile.TemporaryDirectory() as temp_dir:
            db_path = Path(temp_dir) / "test.db"
            first = SQLiteStorage(db_path, timeout=0.1)
            second = SQLiteStorage(db_path, timeout=0.1)
            first.save("test_table", "record_1", test_data)
            
            first.begin_transaction()
            try:
                with pytest.raises(ConcurrencyError) as exc_info:
                    with second.atomic():
                        second.save("test_table", "record_2", {"id": "record_2"})
                assert exc_info.value.retryable
            finally:
                first.rollback()
            
            first.close()
            second.close()


class TestStorageRecord:
    """Test record serialization"""
    
    def test_round_trip_datetimes(self):
        now = datetime.now(timezone.utc)
        record = StorageRecord(id="r1", created_at=now, updated_at=now)
        
        data = record.to_dict()
        assert data == {"id": "r1", "created_at": now.isoformat(), "updated_at": now.isoformat()}
        
        restored = StorageRecord.from_dict(data)
        assert restored.created_at == now


class TestCreateStorage:
    """Test backend selection from a database URL"""
    
    def test_memory_url(self):
        assert isinstance(create_storage("memory://"), InMemoryStorage)
    
    def test_sqlite_url(self):
        with tempfile.TemporaryDirectory() as temp_dir:
            storage = create_storage(f"sqlite:///{temp_dir}/bank.db")
            assert isinstance(storage, SQLiteStorage)
            assert storage.db_path == f"{temp_dir}/bank.db"
            storage.close()
    
    def test_bare_sqlite_url_is_in_memory(self):
        storage = create_storage("sqlite://")
        assert storage.db_path == ":memory:"
        storage.close()
    
    def test_unsupported_url(self):
        with pytest.raises(ValueError):
            create_storage("postgresql://localhost/bank")
