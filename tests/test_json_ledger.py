"""Tests specific to the in-memory ledger and its snapshot worker."""

import json
import threading

import pytest

from mealbot.models.audit import LedgerEventType
from mealbot.models.snapshot import LegacySnapshot
from mealbot.services.storage import (
    JsonLedger,
    NoActiveDatabase,
    SnapshotError,
    StorageError,
)


LEGACY_DOCUMENT = {
    "Users": [{"ID": 0, "UPN": "alice"}, {"ID": 1, "UPN": "bob"}],
    "Reciepts": [
        {"Payer": 0, "Payee": 1, "NumMeals": 2, "DateTime": "2023-05-01T12:00:00Z"},
        {"Payer": 1, "Payee": 0, "NumMeals": -1, "DateTime": "2023-05-02T12:00:00.5+02:00"},
    ],
}


@pytest.fixture
def snapshot_path(tmp_path):
    return tmp_path / "mealbot.json"


def read_snapshot(path) -> LegacySnapshot:
    return LegacySnapshot.from_json_bytes(path.read_bytes())


class TestSnapshotLoading:
    """Tests for init() reading an existing snapshot."""

    def test_missing_file_starts_empty(self, snapshot_path, audit_logger):
        """Test a missing snapshot is not an error."""
        ledger = JsonLedger(audit_logger=audit_logger)
        ledger.init(str(snapshot_path))
        try:
            assert ledger.get_users() == []
            assert ledger.get_all_records() == []
        finally:
            ledger.close()

    def test_loads_legacy_document(self, snapshot_path, audit_logger):
        """Test a snapshot written by the legacy service loads as-is."""
        snapshot_path.write_text(json.dumps(LEGACY_DOCUMENT))
        ledger = JsonLedger(audit_logger=audit_logger)
        ledger.init(str(snapshot_path))
        try:
            assert [a.username for a in ledger.get_users()] == ["alice", "bob"]
            records = ledger.get_all_records()
            assert [(r.payer, r.recipient, r.credits) for r in records] == [
                ("bob", "alice", -1),
                ("alice", "bob", 2),
            ]
            assert len(audit_logger.of_type(LedgerEventType.SNAPSHOT_LOADED)) == 1
        finally:
            ledger.close()

    def test_negative_credits_flip_direction(self, snapshot_path, audit_logger):
        """Test a negative receipt counts in the opposite direction."""
        snapshot_path.write_text(json.dumps(LEGACY_DOCUMENT))
        ledger = JsonLedger(audit_logger=audit_logger)
        ledger.init(str(snapshot_path))
        try:
            summary = ledger.get_summary()
            # alice paid bob 2; bob "paid" alice -1, i.e. alice owes one more
            assert summary["alice"]["bob"].outgoing_credits == 3
            assert summary["alice"]["bob"].incoming_credits == 0
            assert summary["bob"]["alice"].incoming_credits == 3
            assert summary["bob"]["alice"].outgoing_credits == 0
        finally:
            ledger.close()

    def test_null_lists_accepted(self, snapshot_path, audit_logger):
        snapshot_path.write_text('{"Users": null, "Reciepts": null}')
        ledger = JsonLedger(audit_logger=audit_logger)
        ledger.init(str(snapshot_path))
        try:
            assert ledger.get_users() == []
        finally:
            ledger.close()

    def test_corrupt_snapshot_raises(self, snapshot_path, audit_logger):
        """Test an unreadable snapshot fails init with SnapshotError."""
        snapshot_path.write_text("{not json")
        ledger = JsonLedger(audit_logger=audit_logger)
        with pytest.raises(SnapshotError):
            ledger.init(str(snapshot_path))

    def test_dangling_receipt_raises(self, snapshot_path, audit_logger):
        """Test a receipt pointing past the user list is rejected."""
        document = dict(LEGACY_DOCUMENT)
        document["Users"] = [{"ID": 0, "UPN": "alice"}]
        snapshot_path.write_text(json.dumps(document))
        with pytest.raises(SnapshotError):
            JsonLedger(audit_logger=audit_logger).init(str(snapshot_path))


class TestFlushing:
    """Tests for the background snapshot worker."""

    def test_close_flushes_everything(self, snapshot_path, audit_logger):
        """Test every mutation before close() is on disk afterwards."""
        ledger = JsonLedger(audit_logger=audit_logger)
        ledger.init(str(snapshot_path))
        for i in range(25):
            ledger.create_user(f"user{i}")
        ledger.create_record("user0", "user1", 4)
        ledger.close()

        snapshot = read_snapshot(snapshot_path)
        assert [u.upn for u in snapshot.users] == [f"user{i}" for i in range(25)]
        assert [(r.payer, r.payee, r.num_meals) for r in snapshot.receipts] == [(0, 1, 4)]

    def test_bursts_coalesce(self, snapshot_path, audit_logger, monkeypatch):
        """Test a burst during a slow write collapses into a few flushes."""
        ledger = JsonLedger(queue_size=5, audit_logger=audit_logger)
        ledger.init(str(snapshot_path))

        writing = threading.Event()
        release = threading.Event()
        original = ledger._replace_file

        def slow_write(data):
            writing.set()
            release.wait(timeout=5)
            original(data)

        monkeypatch.setattr(ledger, "_replace_file", slow_write)
        ledger.create_user("user0")
        assert writing.wait(timeout=5)

        # The worker is stuck on the first write; these only queue signals
        for i in range(1, 50):
            ledger.create_user(f"user{i}")
        release.set()
        ledger.close()

        flushes = audit_logger.of_type(LedgerEventType.SNAPSHOT_FLUSHED)
        assert len(flushes) <= 5
        assert any(e.details["coalesced_signals"] > 0 for e in flushes)
        assert len(read_snapshot(snapshot_path).users) == 50

    def test_mutations_do_not_wait_for_disk(self, snapshot_path, audit_logger, monkeypatch):
        """Test reads and writes proceed while a snapshot write is in progress."""
        ledger = JsonLedger(audit_logger=audit_logger)
        ledger.init(str(snapshot_path))

        writing = threading.Event()
        release = threading.Event()
        original = ledger._replace_file

        def slow_write(data):
            writing.set()
            release.wait(timeout=5)
            original(data)

        monkeypatch.setattr(ledger, "_replace_file", slow_write)
        ledger.create_user("alice")
        assert writing.wait(timeout=5)

        def mutate():
            ledger.create_user("bob")
            ledger.create_record("alice", "bob", 1)
            ledger.get_summary()

        thread = threading.Thread(target=mutate)
        thread.start()
        thread.join(timeout=2)
        try:
            assert not thread.is_alive()
        finally:
            release.set()
            thread.join()
            ledger.close()

        assert len(read_snapshot(snapshot_path).receipts) == 1

    def test_no_temp_files_left(self, snapshot_path, audit_logger):
        """Test the temp file is renamed over the destination."""
        ledger = JsonLedger(audit_logger=audit_logger)
        ledger.init(str(snapshot_path))
        ledger.create_user("alice")
        ledger.close()

        assert [p.name for p in snapshot_path.parent.iterdir()] == [snapshot_path.name]

    def test_export_matches_file(self, snapshot_path, audit_logger):
        """Test the on-disk file and get_legacy_database agree."""
        ledger = JsonLedger(audit_logger=audit_logger)
        ledger.init(str(snapshot_path))
        ledger.create_user("alice")
        ledger.create_user("bob")
        ledger.create_record("alice", "bob", 1)
        exported = ledger.get_legacy_database()
        ledger.close()

        assert read_snapshot(snapshot_path) == LegacySnapshot.from_json_bytes(exported)

    def test_failed_flush_is_logged_and_worker_survives(
        self, snapshot_path, audit_logger, monkeypatch
    ):
        """Test a failing write is logged and later flushes still happen."""
        ledger = JsonLedger(retry_attempts=1, audit_logger=audit_logger)
        ledger.init(str(snapshot_path))

        failed = threading.Event()
        original = ledger._replace_file

        def failing(data):
            failed.set()
            raise OSError("disk full")

        monkeypatch.setattr(ledger, "_replace_file", failing)
        ledger.create_user("alice")
        assert failed.wait(timeout=5)

        monkeypatch.setattr(ledger, "_replace_file", original)
        ledger.create_user("bob")
        ledger.close()

        assert audit_logger.of_type(LedgerEventType.SNAPSHOT_FLUSH_FAILED)
        assert [u.upn for u in read_snapshot(snapshot_path).users] == ["alice", "bob"]

    def test_failed_flush_leaves_previous_snapshot(
        self, snapshot_path, audit_logger, monkeypatch
    ):
        """Test a failed write never truncates the existing snapshot."""
        ledger = JsonLedger(retry_attempts=1, audit_logger=audit_logger)
        ledger.init(str(snapshot_path))
        ledger.create_user("alice")
        ledger.close()
        before = snapshot_path.read_bytes()

        ledger.init(str(snapshot_path))

        def failing(data):
            raise OSError("disk full")

        monkeypatch.setattr(ledger, "_replace_file", failing)
        ledger.create_user("bob")
        ledger.close()

        assert snapshot_path.read_bytes() == before


class TestLifecycle:
    """Tests for operations around init() and close()."""

    def test_operations_after_close_fail(self, snapshot_path, audit_logger):
        ledger = JsonLedger(audit_logger=audit_logger)
        ledger.init(str(snapshot_path))
        ledger.close()
        with pytest.raises(NoActiveDatabase):
            ledger.create_user("alice")

    def test_double_init_rejected(self, snapshot_path, audit_logger):
        ledger = JsonLedger(audit_logger=audit_logger)
        ledger.init(str(snapshot_path))
        try:
            with pytest.raises(StorageError):
                ledger.init(str(snapshot_path))
        finally:
            ledger.close()

    def test_concurrent_writers(self, snapshot_path, audit_logger):
        """Test concurrent mutations are all applied and all flushed."""
        ledger = JsonLedger(audit_logger=audit_logger)
        ledger.init(str(snapshot_path))
        ledger.create_user("alice")
        ledger.create_user("bob")

        def pay():
            for _ in range(20):
                ledger.create_record("alice", "bob", 1)
                ledger.get_summary()

        threads = [threading.Thread(target=pay) for _ in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert ledger.get_summary()["alice"]["bob"].outgoing_credits == 80
        ledger.close()
        assert len(read_snapshot(snapshot_path).receipts) == 80
