"""
Tests for storage backends and transaction support
"""

import pytest
import tempfile
from datetime import datetime, timezone
from pathlib import Path

from field_lending.storage import InMemoryStorage, SQLiteStorage


# Test data
test_data = {
    "id": "test_001",
    "name": "Test Record",
    "amount": "100.50",
    "created_at": datetime(2024, 1, 1, tzinfo=timezone.utc).isoformat(),
    "updated_at": datetime(2024, 1, 1, tzinfo=timezone.utc).isoformat()
}


class TestStorageInterface:
    """Test base storage interface functionality"""
    
    def test_in_memory_storage_basic_operations(self):
        """Test basic CRUD operations with InMemoryStorage"""
        storage = InMemoryStorage()
        
        # Test save and load
        storage.save("test_table", "record_1", test_data)
        loaded = storage.load("test_table", "record_1")
        assert loaded == test_data
        
        # Test exists
        assert storage.exists("test_table", "record_1")
        assert not storage.exists("test_table", "non_existent")
        
        # Test load_all
        storage.save("test_table", "record_2", {"id": "record_2", "data": "test"})
        all_records = storage.load_all("test_table")
        assert len(all_records) == 2
        
        # Test find
        results = storage.find("test_table", {"id": "test_001"})
        assert len(results) == 1
        assert results[0]["id"] == "test_001"
        
        # Test count
        assert storage.count("test_table") == 2
        
        # Test delete
        assert storage.delete("test_table", "record_1")
        assert not storage.exists("test_table", "record_1")
        assert storage.count("test_table") == 1
        
        # Test clear_table
        storage.clear_table("test_table")
        assert storage.count("test_table") == 0
        
        storage.close()
    
    def test_in_memory_storage_returns_copies(self):
        """Mutating a loaded record must not change the stored one"""
        storage = InMemoryStorage()
        storage.save("test_table", "record_1", {"id": "record_1", "tags": ["a"]})
        
        loaded = storage.load("test_table", "record_1")
        loaded["tags"].append("b")
        
        assert storage.load("test_table", "record_1")["tags"] == ["a"]
    
    def test_sqlite_storage_basic_operations(self):
        """Test basic CRUD operations with SQLiteStorage"""
        with tempfile.TemporaryDirectory() as temp_dir:
            db_path = Path(temp_dir) / "test.db"
            storage = SQLiteStorage(db_path)
            
            # Test save and load
            storage.save("test_table", "record_1", test_data)
            loaded = storage.load("test_table", "record_1")
            assert loaded == test_data
            
            # Test exists
            assert storage.exists("test_table", "record_1")
            assert not storage.exists("test_table", "non_existent")
            
            # Test find
            storage.save("test_table", "record_2", {"id": "record_2", "data": "test"})
            results = storage.find("test_table", {"data": "test"})
            assert len(results) == 1
            assert results[0]["id"] == "record_2"
            
            # Test count and delete
            assert storage.count("test_table") == 2
            assert storage.delete("test_table", "record_1")
            assert not storage.delete("test_table", "record_1")
            assert storage.count("test_table") == 1
            
            storage.close()
    
    def test_sqlite_load_all_keeps_insertion_order_on_update(self):
        """Updating a record keeps its original position"""
        storage = SQLiteStorage()
        for record_id in ["a", "b", "c"]:
            storage.save("ordered", record_id, {"id": record_id, "version": 1})
        
        storage.save("ordered", "a", {"id": "a", "version": 2})
        
        records = storage.load_all("ordered")
        assert [r["id"] for r in records] == ["a", "b", "c"]
        assert records[0]["version"] == 2
        storage.close()
    
    def test_sqlite_survives_restart(self):
        """Committed records are visible to a new connection"""
        with tempfile.TemporaryDirectory() as temp_dir:
            db_path = Path(temp_dir) / "restart.db"
            storage = SQLiteStorage(db_path)
            storage.save("local_kv", "queue", {"value": "[]"})
            storage.close()
            
            reopened = SQLiteStorage(db_path)
            assert reopened.load("local_kv", "queue") == {"value": "[]"}
            reopened.close()


class TestTransactionSupport:
    """Test atomic transaction support"""
    
    def test_in_memory_atomic_context_manager(self):
        """Test atomic context manager with InMemoryStorage"""
        storage = InMemoryStorage()
        
        with storage.atomic():
            storage.save("test_table", "record_1", test_data)
            storage.save("test_table", "record_2", {"id": "record_2", "data": "test"})
        
        assert storage.count("test_table") == 2
        
        # Errors propagate out of the context manager
        with pytest.raises(ValueError):
            with storage.atomic():
                storage.save("test_table", "record_3", {"id": "record_3"})
                raise ValueError("Simulated error")
        
        assert storage.exists("test_table", "record_3") is False
        assert storage.count("test_table") == 2
        
        storage.close()
    
    def test_sqlite_atomic_commit(self):
        """Test atomic transactions with SQLiteStorage"""
        with tempfile.TemporaryDirectory() as temp_dir:
            db_path = Path(temp_dir) / "test.db"
            storage = SQLiteStorage(db_path)
            
            with storage.atomic():
                storage.save("test_table", "record_1", test_data)
                storage.save("test_table", "record_2", {"id": "record_2", "data": "test"})
            
            assert storage.count("test_table") == 2
            storage.close()
    
    def test_sqlite_atomic_rollback(self):
        """A failed atomic block leaves no partial writes"""
        with tempfile.TemporaryDirectory() as temp_dir:
            db_path = Path(temp_dir) / "test.db"
            storage = SQLiteStorage(db_path)
            storage.save("test_table", "record_1", test_data)
            
            with pytest.raises(RuntimeError):
                with storage.atomic():
                    storage.save("test_table", "record_2", {"id": "record_2"})
                    raise RuntimeError("Simulated error")
            
            assert storage.count("test_table") == 1
            assert storage.load("test_table", "record_2") is None
            
            # Storage keeps working after a rollback
            storage.save("test_table", "record_3", {"id": "record_3"})
            assert storage.count("test_table") == 2
            storage.close()
