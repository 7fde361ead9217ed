"""
Test suite for storage backends

Runs the same checks against InMemoryStorage and SQLiteStorage.
"""

import threading

import pytest

from caseflow.storage import InMemoryStorage, SQLiteStorage, create_storage


@pytest.fixture(params=["memory", "sqlite"])
def backend(request, tmp_path):
    if request.param == "memory":
        storage = InMemoryStorage()
    else:
        storage = SQLiteStorage(tmp_path / "caseflow.db")
    yield storage
    storage.close()


class TestBasicOperations:
    """Test CRUD operations"""

    def test_save_and_load(self, backend):
        backend.save("cases", "c1", {'id': 'c1', 'category': 'grades', 'tags': ['a', 'b']})

        assert backend.load("cases", "c1") == {'id': 'c1', 'category': 'grades', 'tags': ['a', 'b']}
        assert backend.load("cases", "missing") is None
        assert backend.exists("cases", "c1")
        assert not backend.exists("cases", "missing")

    def test_loaded_records_are_copies(self, backend):
        backend.save("cases", "c1", {'id': 'c1', 'tags': ['a']})

        loaded = backend.load("cases", "c1")
        loaded['tags'].append('b')

        assert backend.load("cases", "c1")['tags'] == ['a']

    def test_delete(self, backend):
        backend.save("cases", "c1", {'id': 'c1'})

        assert backend.delete("cases", "c1") is True
        assert backend.delete("cases", "c1") is False
        assert backend.count("cases") == 0

    def test_find_and_count(self, backend):
        backend.save("cases", "c1", {'id': 'c1', 'category': 'grades'})
        backend.save("cases", "c2", {'id': 'c2', 'category': 'attendance'})
        backend.save("cases", "c3", {'id': 'c3', 'category': 'grades'})

        found = backend.find("cases", {'category': 'grades'})

        assert sorted(record['id'] for record in found) == ['c1', 'c3']
        assert backend.find("cases", {'category': 'field_trip'}) == []
        assert backend.count("cases") == 3

    def test_clear_table(self, backend):
        backend.save("cases", "c1", {'id': 'c1'})
        backend.clear_table("cases")
        assert backend.load_all("cases") == []


class TestCompareAndSwap:
    """Test versioned writes"""

    def test_insert_if_absent(self, backend):
        assert backend.compare_and_swap("instances", "c1", {'id': 'c1', 'step': 'draft'}, 0) is True
        assert backend.load("instances", "c1")['version'] == 1

        assert backend.compare_and_swap("instances", "c1", {'id': 'c1', 'step': 'other'}, 0) is False
        assert backend.load("instances", "c1")['step'] == 'draft'

    def test_version_advances(self, backend):
        backend.compare_and_swap("instances", "c1", {'id': 'c1', 'step': 'draft'}, 0)

        assert backend.compare_and_swap("instances", "c1", {'id': 'c1', 'step': 'review'}, 1) is True
        assert backend.compare_and_swap("instances", "c1", {'id': 'c1', 'step': 'stale'}, 1) is False

        record = backend.load("instances", "c1")
        assert record['step'] == 'review'
        assert record['version'] == 2

    def test_concurrent_writers_single_winner(self, backend):
        backend.compare_and_swap("instances", "c1", {'id': 'c1', 'step': 'draft'}, 0)
        barrier = threading.Barrier(8)
        wins = []

        def writer(n):
            barrier.wait()
            if backend.compare_and_swap("instances", "c1", {'id': 'c1', 'step': f'w{n}'}, 1):
                wins.append(n)

        threads = [threading.Thread(target=writer, args=(n,)) for n in range(8)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(timeout=10)

        assert len(wins) == 1
        assert backend.load("instances", "c1")['step'] == f'w{wins[0]}'


class TestDurability:

    def test_sqlite_writes_are_visible_to_other_connections(self, tmp_path):
        path = tmp_path / "shared.db"
        writer = SQLiteStorage(path)
        reader = SQLiteStorage(path)

        writer.save("cases", "c1", {'id': 'c1'})
        assert reader.exists("cases", "c1")

        writer.compare_and_swap("instances", "c1", {'id': 'c1'}, 0)
        assert reader.load("instances", "c1")['version'] == 1

        writer.delete("cases", "c1")
        assert not reader.exists("cases", "c1")
        writer.close()
        reader.close()

    def test_sqlite_persists_across_connections(self, tmp_path):
        path = tmp_path / "persist.db"
        first = SQLiteStorage(path)
        first.compare_and_swap("instances", "c1", {'id': 'c1'}, 0)
        first.close()

        second = SQLiteStorage(path)
        assert second.load("instances", "c1")['version'] == 1
        assert second.compare_and_swap("instances", "c1", {'id': 'c1'}, 1) is True
        second.close()


class TestCreateStorage:

    def test_memory_url(self):
        assert isinstance(create_storage("memory://"), InMemoryStorage)

    def test_sqlite_url(self, tmp_path):
        storage = create_storage(f"sqlite:///{tmp_path / 'db.sqlite'}")
        assert isinstance(storage, SQLiteStorage)
        storage.close()

    def test_unsupported_url(self):
        with pytest.raises(ValueError, match="Unsupported database URL"):
            create_storage("postgresql://localhost/caseflow")
