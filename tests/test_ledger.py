"""
Test suite for the transaction ledger

Tests id allocation, append-only behaviour, account queries and replay.
"""

import os
import tempfile
from decimal import Decimal

import pytest

from kodbank.errors import PersistenceError, ValidationError
from kodbank.ledger import Ledger, TransactionRecord
from kodbank.storage import InMemoryStorage, SQLiteStorage


class TestLedger:

    def setup_method(self):
        self.storage = InMemoryStorage()
        self.ledger = Ledger(self.storage)

    def test_append_assigns_increasing_ids(self):
        first = self.ledger.append("KBA", "KBB", Decimal("10.00"), "rent")
        second = self.ledger.append("KBB", "KBC", Decimal("2.50"))

        assert first.transaction_id == 1
        assert second.transaction_id == 2
        assert first.description == "rent"
        assert second.description == ""
        assert first.transaction_type == "transfer"
        assert self.ledger.count() == 2

    @pytest.mark.parametrize("amount", [Decimal("0"), Decimal("-1.00")])
    def test_append_rejects_non_positive_amounts(self, amount):
        with pytest.raises(ValidationError):
            self.ledger.append("KBA", "KBB", amount)
        assert self.ledger.count() == 0

    def test_get(self):
        record = self.ledger.append("KBA", "KBB", Decimal("10.00"))

        assert self.ledger.get(record.transaction_id) == record
        assert self.ledger.get(99) is None

    def test_records_are_immutable(self):
        record = self.ledger.append("KBA", "KBB", Decimal("10.00"))
        with pytest.raises(AttributeError):
            record.amount = Decimal("1.00")

    def test_existing_entry_is_never_overwritten(self):
        self.ledger.append("KBA", "KBB", Decimal("10.00"))
        # A second ledger on the same store that missed the first write
        stale = Ledger(self.storage)
        stale._last_id = 0

        with pytest.raises(PersistenceError, match="append-only"):
            stale.append("KBC", "KBD", Decimal("1.00"))
        assert self.ledger.get(1).from_account == "KBA"

    def test_storage_failure_leaves_sequence_untouched(self):
        self.ledger.append("KBA", "KBB", Decimal("10.00"))

        def failing_save(*args, **kwargs):
            raise PersistenceError("disk full")

        original_save = self.storage.save
        self.storage.save = failing_save
        try:
            with pytest.raises(PersistenceError):
                self.ledger.append("KBA", "KBB", Decimal("1.00"))
        finally:
            self.storage.save = original_save

        assert self.ledger.append("KBA", "KBB", Decimal("1.00")).transaction_id == 2

    def test_entries_oldest_first(self):
        for amount in ("1", "2", "3"):
            self.ledger.append("KBA", "KBB", Decimal(amount))
        assert [r.transaction_id for r in self.ledger.entries()] == [1, 2, 3]

    def test_query_by_accounts_newest_first(self):
        self.ledger.append("KBA", "KBB", Decimal("1"))
        self.ledger.append("KBC", "KBD", Decimal("2"))
        self.ledger.append("KBB", "KBC", Decimal("3"))
        self.ledger.append("KBD", "KBA", Decimal("4"))

        history = self.ledger.query_by_accounts(["KBA"])
        assert [r.transaction_id for r in history] == [4, 1]

        history = self.ledger.query_by_accounts(["KBB", "KBC"])
        assert [r.transaction_id for r in history] == [3, 2, 1]

        assert self.ledger.query_by_accounts([]) == []

    def test_replay(self):
        self.ledger.append("KBA", "KBB", Decimal("300.00"))
        self.ledger.append("KBB", "KBC", Decimal("100.00"))

        balances = self.ledger.replay({"KBA": Decimal("1000.00"), "KBB": Decimal("0.00")})

        assert balances == {
            "KBA": Decimal("700.00"),
            "KBB": Decimal("200.00"),
            "KBC": Decimal("100.00"),
        }

    def test_record_dict_round_trip(self):
        record = self.ledger.append("KBA", "KBB", Decimal("12.34"), "lunch")
        assert TransactionRecord.from_dict(record.to_dict()) == record


class TestLedgerPersistence:

    def setup_method(self):
        self.temp_dir = tempfile.mkdtemp()
        self.db_path = os.path.join(self.temp_dir, "ledger.db")

    def teardown_method(self):
        for name in os.listdir(self.temp_dir):
            os.remove(os.path.join(self.temp_dir, name))
        os.rmdir(self.temp_dir)

    def test_ids_resume_after_restart(self):
        storage = SQLiteStorage(self.db_path)
        ledger = Ledger(storage)
        ledger.append("KBA", "KBB", Decimal("1.00"))
        ledger.append("KBA", "KBB", Decimal("2.00"))
        storage.close()

        storage = SQLiteStorage(self.db_path)
        try:
            ledger = Ledger(storage)
            record = ledger.append("KBA", "KBB", Decimal("3.00"))
            assert record.transaction_id == 3
            assert [r.amount for r in ledger.entries()] == [
                Decimal("1.00"), Decimal("2.00"), Decimal("3.00")
            ]
        finally:
            storage.close()
